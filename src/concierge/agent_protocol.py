"""
Deepgram Voice Agent message protocol.

Inbound JSON events are loosely typed; they are normalized into an `AgentEvent`
discriminated by `AgentEventKind` so the session can dispatch through a lookup
table. Anything unrecognized becomes `UNKNOWN` and is ignored by the dispatcher.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from src.concierge.outcome import Role

_TEXT_FIELDS = ("text", "transcript", "message", "content")


class AgentEventKind(str, Enum):
    WELCOME = "Welcome"
    SETTINGS_APPLIED = "SettingsApplied"
    USER_STARTED_SPEAKING = "UserStartedSpeaking"
    AGENT_STARTED_SPEAKING = "AgentStartedSpeaking"
    AGENT_AUDIO_DONE = "AgentAudioDone"
    AUDIO = "Audio"
    CONVERSATION_TEXT = "ConversationText"
    FUNCTION_CALL_REQUEST = "FunctionCallRequest"
    ERROR = "Error"
    WARNING = "Warning"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class AgentEvent:
    kind: AgentEventKind
    tag: str  # raw `type`/`event` value as sent by the agent
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> Optional[str]:
        return extract_text(self.payload)


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any]


def _classify_kind(tag: str) -> AgentEventKind:
    try:
        return AgentEventKind(tag)
    except ValueError:
        pass
    lowered = tag.lower()
    if lowered == "welcome" or lowered == "ready":
        return AgentEventKind.WELCOME
    if lowered in ("settingsapplied", "settings_applied"):
        return AgentEventKind.SETTINGS_APPLIED
    if ("tool" in lowered or "functioncall" in lowered) and "response" not in lowered:
        return AgentEventKind.FUNCTION_CALL_REQUEST
    return AgentEventKind.UNKNOWN


def parse_agent_message(raw: str | bytes) -> AgentEvent:
    """
    Parse one JSON text frame from the agent socket.

    Raises:
        ValueError: If the frame is not a JSON object
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid JSON: {e}")
    if not isinstance(data, dict):
        raise ValueError("Invalid JSON: expected an object")

    tag = str(data.get("type") or data.get("event") or "unknown")
    return AgentEvent(kind=_classify_kind(tag), tag=tag, payload=data)


def extract_text(payload: dict[str, Any]) -> Optional[str]:
    for key in _TEXT_FIELDS:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def classify_role(event: AgentEvent) -> Optional[Role]:
    """
    Role of a conversational message: explicit `role` field first, then a keyword
    match on the event tag. None means the event is not conversational text.
    """
    role = event.payload.get("role")
    if isinstance(role, str):
        lowered = role.strip().lower()
        if lowered in ("user", "caller", "human"):
            return Role.USER
        if lowered in ("assistant", "agent", "bot"):
            return Role.ASSISTANT
        if lowered == "system":
            return Role.SYSTEM

    tag = event.tag.lower()
    if "transcript" in tag or tag.startswith("user"):
        return Role.USER
    if "response" in tag or "assistant" in tag or tag.startswith("agent"):
        return Role.ASSISTANT
    if "system" in tag or "prompt" in tag:
        return Role.SYSTEM
    return None


def extract_audio(payload: dict[str, Any]) -> bytes:
    """Decode base64 audio carried in a JSON frame (`data` or `audio`). Empty on bad input."""
    value = payload.get("data") or payload.get("audio")
    if not isinstance(value, str) or not value:
        return b""
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return b""


def _coerce_arguments(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip():
        try:
            parsed = json.loads(value)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def extract_tool_calls(event: AgentEvent) -> list[ToolCall]:
    """
    Tool calls carried by a FunctionCallRequest.

    Supports the current `functions: [{id, name, arguments}]` shape and the older flat
    shape (`function_name`/`name`/`tool.name` with `input`/`arguments`).
    """
    payload = event.payload
    calls: list[ToolCall] = []

    functions = payload.get("functions")
    if isinstance(functions, list):
        for fn in functions:
            if not isinstance(fn, dict):
                continue
            name = fn.get("name")
            if not isinstance(name, str) or not name:
                continue
            calls.append(
                ToolCall(
                    id=str(fn.get("id") or ""),
                    name=name,
                    arguments=_coerce_arguments(fn.get("arguments")),
                )
            )
        return calls

    tool = payload.get("tool") if isinstance(payload.get("tool"), dict) else {}
    name = payload.get("function_name") or payload.get("name") or payload.get("tool_name") or tool.get("name")
    if not isinstance(name, str) or not name:
        return calls

    args = payload.get("input")
    if args is None:
        args = payload.get("arguments")
    if args is None:
        args = tool.get("arguments")
    call_id = payload.get("function_call_id") or payload.get("id") or ""
    calls.append(ToolCall(id=str(call_id), name=name, arguments=_coerce_arguments(args)))
    return calls


def create_close_message() -> dict[str, Any]:
    return {"type": "Close"}


def create_function_call_response(call: ToolCall, result: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "FunctionCallResponse",
        "id": call.id,
        "name": call.name,
        "content": safe_json_dumps(result),
    }


def safe_json_dumps(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except Exception:
        return json.dumps({"ok": False, "error": "json_encode_failed"})
