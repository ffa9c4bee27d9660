"""
Tests for the HTTP and WebSocket endpoints.
"""

import os
import time
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient
from twilio.request_validator import RequestValidator

from server.app import app

WEBHOOK_PARAMS = {"CallSid": "CA789012", "From": "+15551234567", "To": "+15550001111"}


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.01)
    return True


class TestHttpEndpoints:
    def test_health(self):
        with TestClient(app) as client:
            response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["active_calls"] == 0

    def test_metrics(self):
        with TestClient(app) as client:
            response = client.get("/metrics")

        assert response.status_code == 200
        assert "uptime_seconds" in response.json()

    def test_voice_webhook_returns_stream_twiml(self):
        with TestClient(app) as client:
            response = client.post("/twilio/voice", data=WEBHOOK_PARAMS)
            call = app.state.store.calls["CA789012"]

        assert response.status_code == 200
        assert "application/xml" in response.headers.get("content-type", "")
        content = response.text
        assert "<Connect>" in content
        assert '<Stream url="wss://test.ngrok.io/twilio/media">' in content
        assert 'name="from"' in content
        assert 'value="+15551234567"' in content

        assert call["status"] == "in_progress"
        assert call["from_number"] == "+15551234567"
        assert call["to_number"] == "+15550001111"

    def test_webhook_signature_enforced_when_token_set(self):
        with patch.dict(os.environ, {"TWILIO_AUTH_TOKEN": "secret-token"}):
            from src.concierge.config import get_config
            get_config.cache_clear()

            signature = RequestValidator("secret-token").compute_signature(
                "https://test.ngrok.io/twilio/voice", WEBHOOK_PARAMS
            )

            with TestClient(app) as client:
                missing = client.post("/twilio/voice", data=WEBHOOK_PARAMS)
                forged = client.post("/twilio/voice", data=WEBHOOK_PARAMS, headers={"X-Twilio-Signature": "bogus"})
                valid = client.post("/twilio/voice", data=WEBHOOK_PARAMS, headers={"X-Twilio-Signature": signature})
                calls = dict(app.state.store.calls)

        assert missing.status_code == 403
        assert forged.status_code == 403
        assert valid.status_code == 200
        assert list(calls) == ["CA789012"]


class TestMediaStream:
    def test_stream_lifecycle(self, fake_agent, twilio_start_message, twilio_media_message, twilio_stop_message):
        with TestClient(app) as client:
            registry = app.state.registry
            store = app.state.store
            registry.agent_connector = AsyncMock(return_value=fake_agent)

            with client.websocket_connect("/twilio/media") as ws:
                ws.send_text(twilio_start_message)
                assert _wait_for(lambda: registry.get("CA789012") is not None)

                ws.send_text(twilio_media_message)
                session = registry.get("CA789012")
                assert _wait_for(lambda: len(session.relay.pending) == 1)

                ws.send_text(twilio_stop_message)
                assert _wait_for(lambda: store.calls["CA789012"]["status"] == "completed")

            assert registry.active_count == 0
            assert session.caller_phone == "+15551234567"
            assert fake_agent.closed is True
            assert "twilio.start" in [e["event_type"] for e in store.events]
