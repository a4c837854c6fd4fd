"""Browser signaling channels."""

from callbridge.channels.base import BrowserChannel, ChannelHub

__all__ = ["BrowserChannel", "ChannelHub"]
