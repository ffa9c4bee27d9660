"""
Tests for the Settings handshake and prompt assembly.
"""

from unittest.mock import AsyncMock

import pytest

from src.concierge.config import get_config
from src.concierge.handshake import (
    CATALOG_UNAVAILABLE_PROMPT,
    Handshake,
    build_guardrail_prompt,
    build_settings_message,
)
from src.concierge.menu import MenuCatalog
from src.concierge.tools import tool_definitions


def test_settings_declare_mulaw_8k_both_directions():
    message = build_settings_message(get_config(), "")

    assert message["type"] == "Settings"
    assert message["audio"]["input"] == {"encoding": "mulaw", "sample_rate": 8000}
    assert message["audio"]["output"] == {"encoding": "mulaw", "sample_rate": 8000, "container": "none"}


def test_settings_carry_models_prompt_and_functions():
    config = get_config()
    message = build_settings_message(config, "Allowed menu items:\n- Samosa ($6.00)", functions=tool_definitions())

    think = message["agent"]["think"]
    assert think["provider"] == {"type": "open_ai", "model": "gpt-4o-mini"}
    assert "Test Kitchen" in think["prompt"]
    assert "- Samosa ($6.00)" in think["prompt"]
    assert [f["name"] for f in think["functions"]] == ["create_order", "create_reservation"]
    assert message["agent"]["speak"]["provider"]["model"] == "aura-2-thalia-en"
    assert message["agent"]["greeting"] == config.agent_greeting


def test_empty_guardrail_uses_fallback_sentence():
    message = build_settings_message(get_config(), "   ")

    assert CATALOG_UNAVAILABLE_PROMPT in message["agent"]["think"]["prompt"]


def test_guardrail_lists_items_with_prices():
    catalog = MenuCatalog.from_rows([
        {"id": "b", "name": "Samosa", "price_cents": 600},
        {"id": "a", "name": "Butter Chicken", "price_cents": 1500},
    ])

    prompt = build_guardrail_prompt(catalog, restaurant_name="Test Kitchen")

    lines = prompt.splitlines()
    assert lines[-2:] == ["- Butter Chicken ($15.00)", "- Samosa ($6.00)"]
    assert build_guardrail_prompt(MenuCatalog()) == ""


class TestHandshake:
    @pytest.mark.asyncio
    async def test_settings_sent_exactly_once(self):
        send = AsyncMock()
        handshake = Handshake(config=get_config(), fetch_guardrail=AsyncMock(return_value="- Samosa ($6.00)"), send=send)

        assert await handshake.run() is True
        assert await handshake.run() is False

        send.assert_awaited_once()
        assert handshake.sent is True

    @pytest.mark.asyncio
    async def test_guardrail_fetch_failure_falls_back(self):
        send = AsyncMock()
        handshake = Handshake(
            config=get_config(),
            fetch_guardrail=AsyncMock(side_effect=RuntimeError("db down")),
            send=send,
        )

        await handshake.run()

        prompt = send.await_args.args[0]["agent"]["think"]["prompt"]
        assert CATALOG_UNAVAILABLE_PROMPT in prompt

    @pytest.mark.asyncio
    async def test_store_guardrail_from_catalog(self, store):
        prompt = await store.fetch_guardrail_prompt()

        assert "Test Kitchen" in prompt
        assert "- Garlic Naan ($4.00)" in prompt
