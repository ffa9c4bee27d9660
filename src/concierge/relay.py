"""
Bidirectional audio relay between the Twilio media socket and the agent socket.

Caller audio goes to the agent as raw mu-law bytes; until the agent confirms its
settings the relay gate is closed and chunks are held in a bounded FIFO that
drops the oldest chunk on overflow. Agent audio goes to Twilio as 20ms media
frames, accumulated across deltas so no padding is inserted mid-utterance.
"""

from __future__ import annotations

from collections import deque
from typing import Awaitable, Callable

import structlog

from src.concierge.twilio_protocol import TWILIO_FRAME_SIZE, ULAW_SILENCE, create_media_message

logger = structlog.get_logger(__name__)

DEFAULT_BUFFER_CHUNKS = 256


class AudioRelay:
    def __init__(
        self,
        *,
        send_to_agent: Callable[[bytes], Awaitable[None]],
        send_to_carrier: Callable[[str], Awaitable[None]],
        stream_sid: str,
        capacity: int = DEFAULT_BUFFER_CHUNKS,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._send_to_agent = send_to_agent
        self._send_to_carrier = send_to_carrier
        self.stream_sid = stream_sid
        self.capacity = capacity

        self.pending: deque[bytes] = deque(maxlen=capacity)
        self.dropped_chunks: int = 0
        self.gate_open: bool = False
        self.closed: bool = False

        self._carrier_remainder: bytes = b""

    async def to_agent(self, chunk: bytes) -> None:
        """Forward caller audio, or hold it while the gate is closed."""
        if self.closed or not chunk:
            return
        if not self.gate_open:
            if len(self.pending) == self.capacity:
                self.dropped_chunks += 1
            self.pending.append(chunk)
            return
        await self._send_to_agent(chunk)

    async def open_gate(self) -> int:
        """Flush held audio in arrival order and start forwarding live. Returns the flushed count."""
        if self.closed or self.gate_open:
            return 0
        flushed = 0
        while self.pending:
            await self._send_to_agent(self.pending.popleft())
            flushed += 1
        self.gate_open = True
        if self.dropped_chunks:
            logger.warning(
                "Audio buffer overflowed before agent was ready",
                stream_sid=self.stream_sid,
                dropped_chunks=self.dropped_chunks,
            )
        return flushed

    async def to_carrier(self, audio: bytes) -> None:
        """Frame agent audio into Twilio media messages."""
        if self.closed or not audio:
            return
        self._carrier_remainder += audio
        while len(self._carrier_remainder) >= TWILIO_FRAME_SIZE:
            frame = self._carrier_remainder[:TWILIO_FRAME_SIZE]
            self._carrier_remainder = self._carrier_remainder[TWILIO_FRAME_SIZE:]
            await self._send_to_carrier(create_media_message(self.stream_sid, frame))

    async def flush_carrier(self) -> None:
        """Send the partial frame left at the end of an agent utterance."""
        if self.closed or not self._carrier_remainder:
            return
        frame = self._carrier_remainder.ljust(TWILIO_FRAME_SIZE, ULAW_SILENCE)
        self._carrier_remainder = b""
        await self._send_to_carrier(create_media_message(self.stream_sid, frame))

    def discard_carrier_remainder(self) -> None:
        self._carrier_remainder = b""

    def close(self) -> None:
        self.closed = True
        self.pending.clear()
        self._carrier_remainder = b""
