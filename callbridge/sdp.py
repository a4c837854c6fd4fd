"""SDP shaping helpers.

The WhatsApp leg is picky about two attributes:

* offers it sends do not always advertise ``a=setup:actpass``; the bridge
  needs the provider leg to act as DTLS server, so the attribute is added
  before the offer is applied;
* answers it receives must use ``a=setup:active`` and advertise
  ``a=ice-options:trickle``.

Each helper takes a raw session description and returns a new one that is
guaranteed to satisfy its post-condition. Line endings are preserved.
"""

from __future__ import annotations

from loguru import logger

from callbridge.core.errors import SdpError

SETUP_ACTPASS = "a=setup:actpass"
SETUP_ACTIVE = "a=setup:active"
ICE_TRICKLE = "a=ice-options:trickle"


def _check(sdp: str) -> None:
    if not isinstance(sdp, str) or not sdp.lstrip().startswith("v="):
        raise SdpError("Session description must be a non-empty SDP starting with 'v='")


def _split(sdp: str) -> tuple[list[str], str]:
    eol = "\r\n" if "\r\n" in sdp else "\n"
    return sdp.split(eol), eol


def media_lines(sdp: str) -> list[str]:
    """Return the ``m=`` lines of a description (for logging)."""
    lines, _ = _split(sdp or "")
    return [line for line in lines if line.startswith("m=")]


def summarize(sdp: str | None, limit: int = 100) -> str:
    """Short single-line preview of an SDP blob."""
    if not sdp:
        return "<empty>"
    flat = sdp.replace("\r\n", " | ").replace("\n", " | ")
    return flat[:limit] + ("..." if len(flat) > limit else "")


def ensure_actpass(sdp: str) -> str:
    """Guarantee that the description carries ``a=setup:actpass``.

    Existing role attributes are rewritten to ``actpass``. When there is no
    role attribute at all, one is inserted after every fingerprint line, or
    after every ``m=`` line when the description has no fingerprint.
    """
    _check(sdp)
    lines, eol = _split(sdp)

    if SETUP_ACTPASS in lines:
        return sdp

    if any(line.startswith("a=setup:") for line in lines):
        out = [SETUP_ACTPASS if line.startswith("a=setup:") else line for line in lines]
        logger.debug("Rewrote negotiation role to actpass")
        return eol.join(out)

    out: list[str] = []
    if any(line.startswith("a=fingerprint:") for line in lines):
        for line in lines:
            out.append(line)
            if line.startswith("a=fingerprint:"):
                out.append(SETUP_ACTPASS)
    else:
        # Right after each media line (or at the end when there is no media)
        has_media = False
        for line in lines:
            out.append(line)
            if line.startswith("m="):
                out.append(SETUP_ACTPASS)
                has_media = True
        if not has_media:
            _append_before_blank(out, SETUP_ACTPASS)

    logger.debug("Inserted a=setup:actpass into offer")
    result = eol.join(out)
    if SETUP_ACTPASS not in result:
        raise SdpError("Failed to add a=setup:actpass")
    return result


def to_active_setup(sdp: str) -> str:
    """Replace every ``a=setup:actpass`` with ``a=setup:active``."""
    _check(sdp)
    lines, eol = _split(sdp)
    out = [SETUP_ACTIVE if line == SETUP_ACTPASS else line for line in lines]
    return eol.join(out)


def ensure_trickle(sdp: str) -> str:
    """Guarantee that ``trickle`` is advertised in the ICE options."""
    _check(sdp)
    lines, eol = _split(sdp)

    for i, line in enumerate(lines):
        if line.startswith("a=ice-options:"):
            options = line[len("a=ice-options:"):].split()
            if "trickle" in options:
                return sdp
            lines[i] = line + " trickle"
            return eol.join(lines)

    out: list[str] = []
    inserted = False
    for line in lines:
        if not inserted and line.startswith("m="):
            out.append(ICE_TRICKLE)
            inserted = True
        out.append(line)
        if not inserted and line.startswith("a=group:BUNDLE"):
            out.append(ICE_TRICKLE)
            inserted = True
    if not inserted:
        _append_before_blank(out, ICE_TRICKLE)
    return eol.join(out)


def normalize_provider_offer(sdp: str) -> str:
    """Shape an offer received from the provider before applying it."""
    return ensure_actpass(sdp)


def normalize_provider_answer(sdp: str) -> str:
    """Shape a locally produced answer before sending it to the provider."""
    return ensure_trickle(to_active_setup(sdp))


def _append_before_blank(out: list[str], line: str) -> None:
    # Keep the trailing empty element produced by a final line ending last
    if out and out[-1] == "":
        out.insert(len(out) - 1, line)
    else:
        out.append(line)
