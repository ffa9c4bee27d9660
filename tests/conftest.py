"""
Pytest configuration and fixtures.
"""

import asyncio
import base64
import json
import os
import time
from unittest.mock import patch

import pytest

from src.concierge.store import InMemoryCallStore


MENU_ROWS = [
    {"id": "m1", "name": "Butter Chicken", "price_cents": 1500},
    {"id": "m2", "name": "Garlic Naan", "price_cents": 400},
    {"id": "m3", "name": "Samosa", "price_cents": 600},
    {"id": "m4", "name": "Samosa Chana Chat", "price_cents": 900},
]


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_AUTH_TOKEN": "",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "SUPABASE_URL": "",
        "SUPABASE_SERVICE_ROLE_KEY": "",
        "RESTAURANT_NAME": "Test Kitchen",
        "AUDIO_BUFFER_CHUNKS": "256",
        "REQUIRE_BOOKING_CONFIRMATION": "false",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.concierge.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def store():
    """In-memory store seeded with a small menu."""
    return InMemoryCallStore(menu_rows=[dict(row) for row in MENU_ROWS], restaurant_name="Test Kitchen")


class FakeAgentSocket:
    """
    Stand-in for the agent websocket: records what we send and yields whatever
    the test feeds it. Closing ends iteration.
    """

    def __init__(self):
        self.sent = []
        self.closed = False
        self._inbox = asyncio.Queue()

    async def send(self, message):
        self.sent.append(message)

    async def close(self):
        self.closed = True
        self._inbox.put_nowait(None)

    def feed(self, message):
        if isinstance(message, dict):
            message = json.dumps(message)
        self._inbox.put_nowait(message)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def sent_json(self):
        return [json.loads(m) for m in self.sent if isinstance(m, str)]

    def sent_audio(self):
        return [m for m in self.sent if isinstance(m, bytes)]


@pytest.fixture
def fake_agent():
    return FakeAgentSocket()


async def _wait_until(predicate, timeout=1.0):
    """Yield to the event loop until `predicate()` holds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {"from": "+15551234567"},
        }
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": "12345",
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
    })
