"""
FastAPI server for the restaurant phone concierge.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /twilio/voice: Twilio voice webhook, answers with TwiML <Connect><Stream>
- WS /twilio/media: Twilio Media Streams WebSocket, bridged to the voice agent
"""

import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse
import structlog
import uvicorn
from twilio.request_validator import RequestValidator
from twilio.twiml.voice_response import Connect, VoiceResponse

from src.concierge.config import Config, get_config, init_config, ConfigError
from src.concierge.materializer import OutcomeMaterializer
from src.concierge.reconciler import StaleCallReconciler
from src.concierge.session import CallBridgeSession, SessionRegistry
from src.concierge.store import CallStore, create_store, utcnow
from src.concierge.twilio_protocol import TwilioEventType, parse_twilio_message


# Initialize structured logging
def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    total_calls: int = 0
    webhook_calls: int = 0
    rejected_webhooks: int = 0
    errors: int = 0

    def to_dict(self, active_calls: int = 0) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": active_calls,
            "webhook_calls": self.webhook_calls,
            "rejected_webhooks": self.rejected_webhooks,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting restaurant concierge server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        store = create_store(config)
        materializer = OutcomeMaterializer(store)
        registry = SessionRegistry(store=store, config=config, materializer=materializer)
        reconciler = StaleCallReconciler(
            store,
            threshold_minutes=config.stale_call_minutes,
            interval_seconds=config.reconcile_interval_seconds,
        )
        reconciler.start()

        app.state.store = store
        app.state.registry = registry
        app.state.reconciler = reconciler

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            media_ws_url=config.media_ws_url,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    await reconciler.stop()
    await registry.close_all()
    await store.aclose()


app = FastAPI(
    title="Restaurant Phone Concierge",
    description="Bridges Twilio phone calls to a Deepgram voice agent that takes orders and reservations",
    version="1.0.0",
    lifespan=lifespan,
)


def _registry(request_or_ws: Any) -> SessionRegistry:
    return request_or_ws.app.state.registry


def _store(request_or_ws: Any) -> CallStore:
    return request_or_ws.app.state.store


@app.get("/health")
async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": _registry(request).active_count,
        }
    )


@app.get("/metrics")
async def get_metrics(request: Request) -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict(active_calls=_registry(request).active_count))


def _signed_url(config: Config, request: Request) -> str:
    # Twilio signs the public URL; the request may arrive through a TLS-terminating proxy.
    url = f"{config.base_url}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


def build_stream_twiml(config: Config, from_number: Optional[str]) -> str:
    response = VoiceResponse()
    connect = Connect()
    stream = connect.stream(url=config.media_ws_url)
    if from_number:
        stream.parameter(name="from", value=from_number)
    response.append(connect)
    return str(response)


@app.post("/twilio/voice")
async def twilio_voice(request: Request) -> Response:
    """
    Twilio voice webhook.

    Records the call as in progress and returns TwiML that connects the call
    audio to our media WebSocket. When TWILIO_AUTH_TOKEN is set, requests
    without a valid X-Twilio-Signature are rejected.
    """
    config = get_config()
    metrics.webhook_calls += 1

    form = await request.form()
    params = {key: str(value) for key, value in form.items()}

    if config.twilio_auth_token:
        signature = request.headers.get("X-Twilio-Signature", "")
        validator = RequestValidator(config.twilio_auth_token)
        if not signature or not validator.validate(_signed_url(config, request), params, signature):
            metrics.rejected_webhooks += 1
            logger.warning("Rejected Twilio webhook: bad signature", path=request.url.path)
            return Response(content="Forbidden", status_code=403)

    call_sid = params.get("CallSid", "")
    from_number = params.get("From") or None
    to_number = params.get("To") or None

    if call_sid:
        try:
            await _store(request).upsert_call(
                call_sid,
                status="in_progress",
                from_number=from_number,
                to_number=to_number,
                started_at=utcnow(),
            )
        except Exception as e:
            logger.error("Failed to record incoming call", call_sid=call_sid, error=str(e))

    logger.info("Incoming call", call_sid=call_sid, from_number=from_number, ws_url=config.media_ws_url)

    return Response(
        content=build_stream_twiml(config, from_number),
        media_type="application/xml",
    )


@app.websocket("/twilio/media")
async def twilio_media(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    `start` opens the bridge session, `media` feeds it caller audio, and
    `stop` (or the socket closing, whichever comes first) tears it down.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1

    registry = _registry(websocket)
    store = _store(websocket)
    session: Optional[CallBridgeSession] = None

    logger.info("WebSocket connected", active_calls=registry.active_count)

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        await websocket.send_text(message)

    try:
        while True:
            try:
                raw = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", call_sid=session.call_sid if session else None)
                break

            try:
                event_type, event = parse_twilio_message(raw)
            except ValueError as e:
                logger.warning("Dropping malformed Twilio frame", error=str(e))
                continue

            if event_type == TwilioEventType.START:
                metrics.total_calls += 1
                session = await registry.open_session(send_message, event)
                try:
                    await store.insert_event(
                        event.call_sid,
                        "twilio.start",
                        {"streamSid": event.stream_sid, "customParameters": event.custom_parameters},
                    )
                except Exception as e:
                    logger.debug("Failed to log start event", call_sid=event.call_sid, error=str(e))

            elif event_type == TwilioEventType.MEDIA:
                if session is not None:
                    await session.handle_carrier_media(event.payload)

            elif event_type == TwilioEventType.STOP:
                logger.info("Twilio stream stopped", call_sid=session.call_sid if session else None)
                if session is not None:
                    await registry.finish(session.call_sid, reason="stop")
                break

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            call_sid=session.call_sid if session else None,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        if session is not None:
            try:
                await registry.finish(session.call_sid, reason="socket_closed")
            except Exception as e:
                logger.error("Error finishing call", call_sid=session.call_sid, error=str(e))

        metrics.active_connections -= 1

        logger.info(
            "Call ended",
            call_sid=session.call_sid if session else None,
            active_calls=registry.active_count,
        )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    try:
        config = get_config()
        port, log_level = config.port, config.log_level
    except Exception:
        port, log_level = 8080, "INFO"

    configure_logging(log_level)

    logger.info("Starting server", port=port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=port,
        log_level=log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
