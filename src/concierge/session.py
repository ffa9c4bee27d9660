"""
Call bridge session: Twilio Media Streams <-> Deepgram Voice Agent.

One session per call. The two sockets open independently, so the session
sequences them:

    connecting -> awaiting_handshake -> buffering -> streaming -> closing -> closed

- connecting: agent socket is opening; caller audio is held in the relay buffer.
- awaiting_handshake: agent sent `Welcome`; we fetch the guardrail prompt and send Settings.
- buffering: Settings sent, waiting for `SettingsApplied`; caller audio still held.
- streaming: buffer flushed in arrival order, audio relayed live both ways.
- closing/closed: carrier `stop` or socket close, whichever comes first. Idempotent.

Independently of the state machine, every agent text frame is inspected for
conversational text (persisted as transcript turns) and tool calls.
"""

from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog
import websockets

from src.concierge.agent_protocol import (
    AgentEvent,
    AgentEventKind,
    classify_role,
    create_close_message,
    create_function_call_response,
    extract_audio,
    extract_tool_calls,
    parse_agent_message,
)
from src.concierge.config import Config, get_config
from src.concierge.handshake import Handshake
from src.concierge.materializer import OutcomeMaterializer
from src.concierge.outcome import Role, TranscriptTurn
from src.concierge.relay import AudioRelay
from src.concierge.store import CallStore, utcnow
from src.concierge.tools import ToolCallValidator
from src.concierge.twilio_protocol import TwilioStartEvent, create_clear_message

logger = structlog.get_logger(__name__)

MAX_LOGGED_TEXT = 500

# History replays earlier turns; AgentThinking is reasoning, not speech.
_TRANSCRIPT_IGNORED_TAGS = frozenset({"History", "AgentThinking"})

AgentConnector = Callable[[], Awaitable[Any]]


class BridgeState(str, Enum):
    CONNECTING = "connecting"
    AWAITING_HANDSHAKE = "awaiting_handshake"
    BUFFERING = "buffering"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"


def deepgram_agent_connector(config: Config) -> AgentConnector:
    async def _connect() -> Any:
        return await websockets.connect(
            config.deepgram_agent_ws_url,
            additional_headers={"Authorization": f"Token {config.deepgram_api_key}"},
            open_timeout=10,
        )

    return _connect


class CallBridgeSession:
    """
    Bridges one Twilio media stream to one agent socket.

    `send_message` writes a text frame to the Twilio socket.
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        *,
        call_sid: str,
        stream_sid: str,
        store: CallStore,
        materializer: OutcomeMaterializer,
        config: Optional[Config] = None,
        caller_phone: Optional[str] = None,
        agent_connector: Optional[AgentConnector] = None,
    ):
        self.config = config or get_config()
        self.call_sid = call_sid
        self.stream_sid = stream_sid
        self.caller_phone = caller_phone or None

        self._send_message = send_message
        self._store = store
        self._connect_agent = agent_connector or deepgram_agent_connector(self.config)

        self.state: BridgeState = BridgeState.CONNECTING
        self.agent_ready: bool = False
        self.turns: list[TranscriptTurn] = []
        self.turn_counter: int = 0

        self._agent_ws: Optional[Any] = None
        self._recv_task: Optional[asyncio.Task] = None

        self.relay = AudioRelay(
            send_to_agent=self._send_agent_audio,
            send_to_carrier=self._send_carrier,
            stream_sid=stream_sid,
            capacity=self.config.audio_buffer_chunks,
        )
        self.tools = ToolCallValidator(
            store=store,
            materializer=materializer,
            call_sid=call_sid,
            caller_phone=self.caller_phone,
        )
        self.handshake = Handshake(
            config=self.config,
            fetch_guardrail=store.fetch_guardrail_prompt,
            send=self._send_agent_json,
            functions=self.tools.tool_definitions(),
            call_sid=call_sid,
        )

        self._handlers: dict[AgentEventKind, Callable[[AgentEvent], Awaitable[None]]] = {
            AgentEventKind.WELCOME: self._on_welcome,
            AgentEventKind.SETTINGS_APPLIED: self._on_settings_applied,
            AgentEventKind.USER_STARTED_SPEAKING: self._on_user_started_speaking,
            AgentEventKind.AGENT_AUDIO_DONE: self._on_agent_audio_done,
            AgentEventKind.AUDIO: self._on_agent_audio,
            AgentEventKind.FUNCTION_CALL_REQUEST: self._on_tool_call,
            AgentEventKind.ERROR: self._on_error,
            AgentEventKind.WARNING: self._on_warning,
        }

    @property
    def settings_sent(self) -> bool:
        return self.handshake.sent

    @property
    def is_closed(self) -> bool:
        return self.state in (BridgeState.CLOSING, BridgeState.CLOSED)

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Open the agent socket. Failures are logged; the carrier stop path still tears down."""
        logger.info("Call bridge starting", call_sid=self.call_sid, stream_sid=self.stream_sid)

        try:
            await self._store.upsert_call(self.call_sid, status="in_progress", from_number=self.caller_phone)
        except Exception as e:
            logger.warning("Failed to mark call in progress", call_sid=self.call_sid, error=str(e))

        try:
            ws = await self._connect_agent()
        except Exception as e:
            logger.error("Agent websocket connect failed", call_sid=self.call_sid, error=str(e))
            return

        if self.is_closed:
            # Carrier hung up while we were connecting.
            try:
                await ws.close()
            except Exception as e:
                logger.debug("Agent socket close failed", call_sid=self.call_sid, error=str(e))
            return

        self._agent_ws = ws
        self._recv_task = asyncio.create_task(self._receive_loop())
        logger.info("Agent websocket opened", call_sid=self.call_sid, stream_sid=self.stream_sid)

    async def close(self, reason: str = "stop") -> bool:
        """
        Send the close signal to the agent and close its socket.

        Returns False when the session was already closing or closed.
        """
        if self.is_closed:
            return False
        self.state = BridgeState.CLOSING
        self.relay.close()

        ws = self._agent_ws
        if ws is not None:
            try:
                await ws.send(json.dumps(create_close_message()))
            except Exception as e:
                logger.debug("Agent close signal not delivered", call_sid=self.call_sid, error=str(e))
            try:
                await ws.close()
            except Exception as e:
                logger.debug("Agent socket close failed", call_sid=self.call_sid, error=str(e))

        task = self._recv_task
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        self._agent_ws = None
        self._recv_task = None
        self.state = BridgeState.CLOSED
        logger.info(
            "Call bridge closed",
            call_sid=self.call_sid,
            reason=reason,
            total_turns=self.turn_counter,
            dropped_chunks=self.relay.dropped_chunks,
        )
        return True

    # -- carrier -> agent ----------------------------------------------------

    async def handle_carrier_media(self, payload: bytes) -> None:
        if self.is_closed or not payload:
            return
        await self.relay.to_agent(payload)

    # -- agent -> carrier ----------------------------------------------------

    async def _receive_loop(self) -> None:
        ws = self._agent_ws
        if ws is None:
            return

        try:
            async for raw in ws:
                if self.is_closed:
                    break
                if isinstance(raw, (bytes, bytearray)):
                    await self.relay.to_carrier(bytes(raw))
                    continue
                try:
                    event = parse_agent_message(raw)
                except ValueError:
                    logger.warning("Non-JSON agent message", call_sid=self.call_sid, text=str(raw)[:200])
                    continue
                await self.handle_agent_event(event)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Agent receive loop failed", call_sid=self.call_sid, error=str(e))
        finally:
            logger.warning("Agent session ended", call_sid=self.call_sid, total_turns=self.turn_counter)

    async def handle_agent_event(self, event: AgentEvent) -> None:
        handler = self._handlers.get(event.kind, self._on_unhandled)
        try:
            await handler(event)
        except Exception:
            logger.exception("Agent event handler failed", call_sid=self.call_sid, kind=event.tag)

        await self._observe_transcript(event)

        if event.kind == AgentEventKind.AUDIO:
            return
        try:
            await self._store.insert_event(self.call_sid, f"deepgram.{event.tag}", event.payload)
        except Exception as e:
            logger.debug("Failed to log agent event", call_sid=self.call_sid, kind=event.tag, error=str(e))

        logger.debug(
            "Agent event processed",
            call_sid=self.call_sid,
            kind=event.tag,
            state=self.state.value,
            keys=list(event.payload.keys())[:20],
        )

    async def _on_welcome(self, event: AgentEvent) -> None:
        if self.state != BridgeState.CONNECTING:
            logger.warning("Duplicate agent welcome ignored", call_sid=self.call_sid, state=self.state.value)
            return
        self.state = BridgeState.AWAITING_HANDSHAKE
        await self.handshake.run()
        if self.state == BridgeState.AWAITING_HANDSHAKE:
            self.state = BridgeState.BUFFERING

    async def _on_settings_applied(self, event: AgentEvent) -> None:
        if self.is_closed or self.agent_ready:
            return
        self.agent_ready = True
        flushed = await self.relay.open_gate()
        self.state = BridgeState.STREAMING
        logger.info("Agent settings applied, streaming", call_sid=self.call_sid, flushed_chunks=flushed)

    async def _on_user_started_speaking(self, event: AgentEvent) -> None:
        if self.state == BridgeState.CLOSED:
            return
        # Barge-in: drop whatever agent speech Twilio still has queued.
        self.relay.discard_carrier_remainder()
        await self._send_carrier(create_clear_message(self.stream_sid))
        logger.info("User started speaking (barge-in)", call_sid=self.call_sid)

    async def _on_agent_audio(self, event: AgentEvent) -> None:
        await self.relay.to_carrier(extract_audio(event.payload))

    async def _on_agent_audio_done(self, event: AgentEvent) -> None:
        await self.relay.flush_carrier()

    async def _on_tool_call(self, event: AgentEvent) -> None:
        calls = extract_tool_calls(event)
        if not calls:
            logger.warning("Tool call event without a usable function", call_sid=self.call_sid, payload=event.payload)
            return
        for call in calls:
            result = await self.tools.handle(call.name, call.arguments)
            if call.id:
                await self._send_agent_json(create_function_call_response(call, result))

    async def _on_error(self, event: AgentEvent) -> None:
        logger.error("Agent error", call_sid=self.call_sid, details=event.payload)

    async def _on_warning(self, event: AgentEvent) -> None:
        logger.warning("Agent warning", call_sid=self.call_sid, details=event.payload)

    async def _on_unhandled(self, event: AgentEvent) -> None:
        return None

    # -- transcript ----------------------------------------------------------

    async def _observe_transcript(self, event: AgentEvent) -> None:
        if event.tag in _TRANSCRIPT_IGNORED_TAGS:
            return
        text = event.text
        if not text:
            return
        role = classify_role(event)
        if role is None:
            return
        await self.record_turn(role, text)

    async def record_turn(self, role: Role, text: str) -> TranscriptTurn:
        turn = TranscriptTurn(role=role, text=text)
        self.turns.append(turn)
        self.turn_counter += 1
        logger.info(
            "Conversation transcript",
            call_sid=self.call_sid,
            turn=self.turn_counter,
            role=role.value,
            text=text[:MAX_LOGGED_TEXT],
        )
        try:
            await self._store.insert_transcript_turn(self.call_sid, turn)
        except Exception as e:
            logger.warning("Failed to write transcript turn", call_sid=self.call_sid, role=role.value, error=str(e))
        return turn

    # -- socket writes -------------------------------------------------------

    async def _send_agent_json(self, message: dict[str, Any]) -> None:
        ws = self._agent_ws
        if ws is None or self.state == BridgeState.CLOSED:
            return
        try:
            await ws.send(json.dumps(message))
        except Exception as e:
            logger.warning("Agent send failed", call_sid=self.call_sid, type=message.get("type"), error=str(e))

    async def _send_agent_audio(self, chunk: bytes) -> None:
        ws = self._agent_ws
        if ws is None:
            return
        try:
            await ws.send(chunk)
        except Exception as e:
            logger.debug("Agent audio send failed", call_sid=self.call_sid, error=str(e))

    async def _send_carrier(self, message: str) -> None:
        try:
            await self._send_message(message)
        except Exception as e:
            logger.warning("Failed to send Twilio message", call_sid=self.call_sid, error=str(e))


class SessionRegistry:
    """
    Process-wide map of active call sessions, keyed by CallSid.

    Only touched from the event loop, so no locking. `finish()` is the single
    teardown path for both the carrier `stop` event and the socket closing.
    """

    def __init__(
        self,
        *,
        store: CallStore,
        config: Optional[Config] = None,
        materializer: Optional[OutcomeMaterializer] = None,
        agent_connector: Optional[AgentConnector] = None,
    ):
        self.config = config or get_config()
        self.store = store
        self.materializer = materializer or OutcomeMaterializer(store)
        self.agent_connector = agent_connector
        self._sessions: dict[str, CallBridgeSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, call_sid: object) -> bool:
        return call_sid in self._sessions

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def get(self, call_sid: str) -> Optional[CallBridgeSession]:
        return self._sessions.get(call_sid)

    def register(self, session: CallBridgeSession) -> None:
        if session.call_sid in self._sessions:
            logger.warning("Replacing registered session", call_sid=session.call_sid)
        self._sessions[session.call_sid] = session

    async def open_session(
        self,
        send_message: Callable[[str], Awaitable[None]],
        event: TwilioStartEvent,
    ) -> CallBridgeSession:
        """Create, register and start the session for a Twilio `start` event."""
        previous = self._sessions.get(event.call_sid)
        if previous is not None:
            await self.finish(event.call_sid, reason="restarted")

        session = CallBridgeSession(
            send_message,
            call_sid=event.call_sid,
            stream_sid=event.stream_sid,
            store=self.store,
            materializer=self.materializer,
            config=self.config,
            caller_phone=event.caller_number,
            agent_connector=self.agent_connector,
        )
        self.register(session)
        await session.start()
        return session

    async def _caller_phone(self, session: CallBridgeSession) -> Optional[str]:
        if session.caller_phone:
            return session.caller_phone
        try:
            call = await self.store.get_call(session.call_sid)
        except Exception as e:
            logger.debug("Call lookup failed", call_sid=session.call_sid, error=str(e))
            return None
        return (call or {}).get("from_number") or None

    async def finish(self, call_sid: str, *, reason: str = "stop") -> bool:
        """
        Tear down a call: close the session, mark the call completed and run the
        transcript fallback. Returns False when the call was already finished.
        """
        session = self._sessions.pop(call_sid, None)
        if session is None:
            return False

        await session.close(reason)

        try:
            await self.store.upsert_call(call_sid, status="completed", ended_at=utcnow())
        except Exception as e:
            logger.error("Failed to close call", call_sid=call_sid, error=str(e))

        try:
            await self.materializer.materialize_from_transcript(
                call_sid,
                session.turns,
                caller_phone=await self._caller_phone(session),
                require_booking_confirmation=self.config.require_booking_confirmation,
            )
        except Exception as e:
            logger.error("Failed to persist fallback order/reservation", call_sid=call_sid, error=str(e))
        finally:
            self.materializer.forget(call_sid)

        return True

    async def close_all(self) -> None:
        for call_sid in list(self._sessions):
            await self.finish(call_sid, reason="shutdown")
