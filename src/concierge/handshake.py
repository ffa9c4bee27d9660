"""
Settings handshake for the Deepgram Voice Agent socket.

The agent sends `Welcome` once it is ready; we answer with exactly one
`Settings` message carrying the audio format (Twilio-native mu-law 8kHz in both
directions, no container), the behavior prompt and the tool definitions.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

import structlog

from src.concierge.config import Config
from src.concierge.menu import MenuCatalog

logger = structlog.get_logger(__name__)

AUDIO_ENCODING = "mulaw"
AUDIO_SAMPLE_RATE = 8000

DEMEANOR_PROMPT = (
    "You are a professional phone concierge for {restaurant}. "
    "You take food pickup orders and table reservations. "
    "Keep every turn short and phone-friendly. "
    "Do not repeat the same phrase twice in a call. "
    "Ask one question at a time. "
    "If you do not know the caller's name yet, ask for it before any other detail. "
    "Always read back the details before finalizing. "
    "When an order is final call create_order; when a reservation is final call create_reservation. "
    "If a reservation cannot be confirmed, collect callback details, set status to escalated "
    "and tell the caller a staff member will follow up."
)

CATALOG_UNAVAILABLE_PROMPT = (
    "The menu is unavailable right now. Do not take orders; ask the caller to wait for staff assistance."
)


def build_guardrail_prompt(catalog: MenuCatalog, *, restaurant_name: str = "the restaurant") -> str:
    """Render the allowed catalog and the decline rule."""
    if not catalog:
        return ""
    return "\n".join(
        [
            f"You can only take orders for the exact {restaurant_name} menu items listed below.",
            "If the caller asks for anything not listed, politely say it is unavailable and offer listed alternatives.",
            "Before finalizing an order, read back items, quantities, and pickup time.",
            "Allowed menu items:",
            *catalog.to_prompt_lines(),
        ]
    )


def build_prompt(config: Config, guardrail_prompt: str) -> str:
    demeanor = DEMEANOR_PROMPT.format(restaurant=config.restaurant_name)
    guardrail = (guardrail_prompt or "").strip() or CATALOG_UNAVAILABLE_PROMPT
    return f"{demeanor}\n\n{guardrail}"


def build_settings_message(
    config: Config,
    guardrail_prompt: str,
    *,
    functions: Optional[list[dict[str, Any]]] = None,
) -> dict[str, Any]:
    think: dict[str, Any] = {
        "provider": {
            "type": config.deepgram_think_provider,
            "model": config.deepgram_think_model,
        },
        "prompt": build_prompt(config, guardrail_prompt),
    }
    if functions:
        think["functions"] = functions

    agent: dict[str, Any] = {
        "listen": {"provider": {"type": "deepgram", "model": "nova-3"}},
        "think": think,
        "speak": {"provider": {"type": "deepgram", "model": config.deepgram_speak_model}},
    }
    if config.agent_greeting:
        agent["greeting"] = config.agent_greeting

    return {
        "type": "Settings",
        "audio": {
            "input": {
                "encoding": AUDIO_ENCODING,
                "sample_rate": AUDIO_SAMPLE_RATE,
            },
            "output": {
                "encoding": AUDIO_ENCODING,
                "sample_rate": AUDIO_SAMPLE_RATE,
                "container": "none",
            },
        },
        "agent": agent,
    }


class Handshake:
    """
    One-shot settings negotiation.

    `run()` fetches the guardrail fragment (falling back to the static sentence on
    any error) and sends the Settings payload; later calls are no-ops.
    """

    def __init__(
        self,
        *,
        config: Config,
        fetch_guardrail: Callable[[], Awaitable[str]],
        send: Callable[[dict[str, Any]], Awaitable[None]],
        functions: Optional[list[dict[str, Any]]] = None,
        call_sid: str = "",
    ):
        self.config = config
        self._fetch_guardrail = fetch_guardrail
        self._send = send
        self._functions = functions
        self._call_sid = call_sid
        self.sent: bool = False

    async def _guardrail(self) -> str:
        try:
            prompt = await self._fetch_guardrail()
        except Exception as e:
            logger.warning("Guardrail prompt fetch failed; using fallback", call_sid=self._call_sid, error=str(e))
            return ""
        if not (prompt or "").strip():
            logger.warning("Guardrail prompt empty; using fallback", call_sid=self._call_sid)
            return ""
        return prompt

    async def run(self) -> bool:
        if self.sent:
            return False
        # Mark before awaiting so a duplicate Welcome cannot send twice.
        self.sent = True

        guardrail = await self._guardrail()
        message = build_settings_message(self.config, guardrail, functions=self._functions)
        await self._send(message)

        logger.info(
            "Agent welcome received, settings sent",
            call_sid=self._call_sid,
            think_provider=self.config.deepgram_think_provider,
            think_model=self.config.deepgram_think_model,
            speak_model=self.config.deepgram_speak_model,
            guardrail=bool(guardrail),
        )
        return True
