"""Peer-connection engine capability and its implementations."""

from callbridge.engine.base import IceServer, LegObserver, PeerEngine, PeerLeg, TERMINAL_STATES

__all__ = ["IceServer", "LegObserver", "PeerEngine", "PeerLeg", "TERMINAL_STATES"]
