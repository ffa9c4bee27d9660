"""
Tests for the audio relay: pre-handshake buffering and carrier framing.
"""

import base64
import json
from unittest.mock import AsyncMock

import pytest

from src.concierge.relay import AudioRelay
from src.concierge.twilio_protocol import TWILIO_FRAME_SIZE


def _relay(capacity=256):
    return AudioRelay(
        send_to_agent=AsyncMock(),
        send_to_carrier=AsyncMock(),
        stream_sid="MZ123",
        capacity=capacity,
    )


def _sent_frames(mock):
    return [base64.b64decode(json.loads(c.args[0])["media"]["payload"]) for c in mock.await_args_list]


class TestBuffering:
    @pytest.mark.asyncio
    async def test_audio_held_until_gate_opens_then_flushed_in_order(self):
        relay = _relay()
        chunks = [bytes([i]) * 160 for i in range(5)]

        for chunk in chunks:
            await relay.to_agent(chunk)

        relay._send_to_agent.assert_not_awaited()

        flushed = await relay.open_gate()

        assert flushed == 5
        assert [c.args[0] for c in relay._send_to_agent.await_args_list] == chunks
        assert not relay.pending

    @pytest.mark.asyncio
    async def test_live_audio_after_gate_open(self):
        relay = _relay()
        await relay.open_gate()

        await relay.to_agent(b"\x01" * 160)

        relay._send_to_agent.assert_awaited_once_with(b"\x01" * 160)

    @pytest.mark.asyncio
    async def test_overflow_drops_oldest(self):
        relay = _relay(capacity=3)
        for i in range(5):
            await relay.to_agent(bytes([i]))

        assert list(relay.pending) == [b"\x02", b"\x03", b"\x04"]
        assert relay.dropped_chunks == 2

        await relay.open_gate()
        assert [c.args[0] for c in relay._send_to_agent.await_args_list] == [b"\x02", b"\x03", b"\x04"]

    @pytest.mark.asyncio
    async def test_open_gate_twice_flushes_once(self):
        relay = _relay()
        await relay.to_agent(b"\x01")

        assert await relay.open_gate() == 1
        assert await relay.open_gate() == 0

    @pytest.mark.asyncio
    async def test_closed_relay_ignores_audio(self):
        relay = _relay()
        await relay.to_agent(b"\x01")
        relay.close()

        await relay.to_agent(b"\x02")
        await relay.open_gate()

        relay._send_to_agent.assert_not_awaited()

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            _relay(capacity=0)


class TestCarrierFraming:
    @pytest.mark.asyncio
    async def test_audio_split_into_20ms_frames_with_remainder_carried(self):
        relay = _relay()

        await relay.to_carrier(b"\x10" * 400)

        frames = _sent_frames(relay._send_to_carrier)
        assert len(frames) == 2
        assert all(len(f) == TWILIO_FRAME_SIZE for f in frames)

        # The 80 leftover bytes complete a frame with the next delta.
        await relay.to_carrier(b"\x20" * 80)
        frames = _sent_frames(relay._send_to_carrier)
        assert len(frames) == 3
        assert frames[2] == b"\x10" * 80 + b"\x20" * 80

    @pytest.mark.asyncio
    async def test_flush_pads_with_silence(self):
        relay = _relay()
        await relay.to_carrier(b"\x10" * 100)

        await relay.flush_carrier()

        frames = _sent_frames(relay._send_to_carrier)
        assert frames == [b"\x10" * 100 + b"\xff" * 60]

    @pytest.mark.asyncio
    async def test_discarded_remainder_not_flushed(self):
        relay = _relay()
        await relay.to_carrier(b"\x10" * 100)

        relay.discard_carrier_remainder()
        await relay.flush_carrier()

        relay._send_to_carrier.assert_not_awaited()
