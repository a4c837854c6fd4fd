"""Tests for SDP normalization helpers."""

import pytest

from callbridge import sdp
from callbridge.core.errors import SdpError

OFFER_NO_SETUP = (
    "v=0\r\n"
    "o=- 1 2 IN IP4 127.0.0.1\r\n"
    "s=-\r\n"
    "t=0 0\r\n"
    "a=group:BUNDLE audio\r\n"
    "m=audio 3480 UDP/TLS/RTP/SAVPF 111\r\n"
    "a=mid:audio\r\n"
    "a=fingerprint:sha-256 DD:EE:FF\r\n"
    "a=rtpmap:111 opus/48000/2\r\n"
)


class TestPreconditions:

    @pytest.mark.parametrize("bad", ["", "   ", "o=- 1 2 IN IP4 1.2.3.4\r\n", None])
    def test_rejects_non_sdp(self, bad):
        with pytest.raises(SdpError):
            sdp.ensure_actpass(bad)
        with pytest.raises(SdpError):
            sdp.ensure_trickle(bad)
        with pytest.raises(SdpError):
            sdp.to_active_setup(bad)


class TestEnsureActpass:

    def test_inserted_after_fingerprint(self):
        result = sdp.ensure_actpass(OFFER_NO_SETUP)
        lines = result.split("\r\n")
        idx = lines.index("a=fingerprint:sha-256 DD:EE:FF")
        assert lines[idx + 1] == "a=setup:actpass"

    def test_already_present_unchanged(self):
        offer = OFFER_NO_SETUP.replace(
            "a=fingerprint:sha-256 DD:EE:FF\r\n",
            "a=fingerprint:sha-256 DD:EE:FF\r\na=setup:actpass\r\n",
        )
        assert sdp.ensure_actpass(offer) == offer

    def test_other_role_rewritten(self):
        offer = OFFER_NO_SETUP.replace(
            "a=fingerprint:sha-256 DD:EE:FF\r\n",
            "a=fingerprint:sha-256 DD:EE:FF\r\na=setup:passive\r\n",
        )
        result = sdp.ensure_actpass(offer)
        assert "a=setup:passive" not in result
        assert result.count("a=setup:actpass") == 1

    def test_every_media_section_without_fingerprint(self):
        offer = (
            "v=0\r\n"
            "s=-\r\n"
            "m=audio 1 RTP/AVP 0\r\n"
            "a=mid:0\r\n"
            "m=audio 2 RTP/AVP 0\r\n"
            "a=mid:1\r\n"
        )
        result = sdp.ensure_actpass(offer)
        lines = result.split("\r\n")
        assert result.count("a=setup:actpass") == 2
        first = lines.index("m=audio 1 RTP/AVP 0")
        second = lines.index("m=audio 2 RTP/AVP 0")
        assert lines[first + 1] == "a=setup:actpass"
        assert lines[second + 1] == "a=setup:actpass"
        assert result.endswith("a=mid:1\r\n")

    def test_line_endings_preserved(self):
        lf_offer = OFFER_NO_SETUP.replace("\r\n", "\n")
        result = sdp.ensure_actpass(lf_offer)
        assert "\r\n" not in result
        assert "a=setup:actpass\n" in result


class TestAnswerNormalization:

    ANSWER = (
        "v=0\r\n"
        "o=- 1 2 IN IP4 127.0.0.1\r\n"
        "s=-\r\n"
        "t=0 0\r\n"
        "a=group:BUNDLE 0\r\n"
        "m=audio 9 UDP/TLS/RTP/SAVPF 111\r\n"
        "a=setup:actpass\r\n"
    )

    def test_to_active_setup(self):
        result = sdp.to_active_setup(self.ANSWER)
        assert "a=setup:actpass" not in result
        assert "a=setup:active" in result

    def test_trickle_after_bundle(self):
        lines = sdp.ensure_trickle(self.ANSWER).split("\r\n")
        assert lines[lines.index("a=group:BUNDLE 0") + 1] == "a=ice-options:trickle"

    def test_trickle_before_media_without_bundle(self):
        answer = self.ANSWER.replace("a=group:BUNDLE 0\r\n", "")
        lines = sdp.ensure_trickle(answer).split("\r\n")
        assert lines[lines.index("m=audio 9 UDP/TLS/RTP/SAVPF 111") - 1] == "a=ice-options:trickle"

    def test_trickle_extends_existing_options(self):
        answer = self.ANSWER.replace("a=group:BUNDLE 0\r\n", "a=group:BUNDLE 0\r\na=ice-options:renomination\r\n")
        result = sdp.ensure_trickle(answer)
        assert "a=ice-options:renomination trickle" in result
        assert result.count("a=ice-options:") == 1

    def test_trickle_idempotent(self):
        once = sdp.ensure_trickle(self.ANSWER)
        assert sdp.ensure_trickle(once) == once

    def test_normalize_provider_answer(self):
        result = sdp.normalize_provider_answer(self.ANSWER)
        assert "a=setup:active" in result
        assert "a=setup:actpass" not in result
        assert "a=ice-options:trickle" in result

    def test_normalize_provider_offer(self):
        assert "a=setup:actpass" in sdp.normalize_provider_offer(OFFER_NO_SETUP)


class TestHelpers:

    def test_media_lines(self):
        assert sdp.media_lines(OFFER_NO_SETUP) == ["m=audio 3480 UDP/TLS/RTP/SAVPF 111"]

    def test_summarize_truncates(self):
        summary = sdp.summarize(OFFER_NO_SETUP, limit=20)
        assert len(summary) == 23
        assert summary.endswith("...")
        assert "\r\n" not in summary

    def test_summarize_empty(self):
        assert sdp.summarize("") == "<empty>"
