"""
Agent tool calls: `create_order` and `create_reservation`.

The agent is told about both functions in the Settings message. When it calls
one, the arguments are validated against a strict schema; malformed payloads
are logged and rejected (never raised), valid ones are recorded as a
`model_tool` outcome and persisted right away.
"""

from __future__ import annotations

import time
from typing import Any, Literal, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from src.concierge.materializer import OutcomeMaterializer
from src.concierge.menu import MenuCatalog
from src.concierge.outcome import (
    Customer,
    Intents,
    OrderLine,
    OrderOutcome,
    OutcomeSource,
    ReservationOutcome,
    ReservationStatus,
    StructuredOutcome,
)
from src.concierge.store import CallStore

logger = structlog.get_logger(__name__)

CREATE_ORDER = "create_order"
CREATE_RESERVATION = "create_reservation"
DEFAULT_TOOL_PICKUP_TIME = "ASAP"


class _ToolArgs(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        # Models often send explicit nulls for optional fields; treat them as absent.
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class OrderItemArgs(_ToolArgs):
    menu_item_id: Optional[str] = None
    name: Optional[str] = None
    qty: int = Field(default=1, gt=0)
    modifiers: list[Any] = Field(default_factory=list)
    line_total_cents: Optional[int] = Field(default=None, ge=0)


class CreateOrderArgs(_ToolArgs):
    customer_name: str = Field(min_length=1)
    caller_phone: Optional[str] = None
    pickup_time: Optional[str] = None
    notes: Optional[str] = None
    total_cents: Optional[int] = Field(default=None, ge=0)
    items: list[OrderItemArgs] = Field(default_factory=list)


class CreateReservationArgs(_ToolArgs):
    guest_name: str = Field(min_length=1)
    caller_phone: Optional[str] = None
    party_size: int = Field(default=2, gt=0)
    reservation_time: str = "ASAP"
    notes: Optional[str] = None
    status: Literal["confirmed", "escalated"] = "confirmed"

    @field_validator("reservation_time")
    @classmethod
    def _default_time(cls, value: str) -> str:
        return value or "ASAP"


_SCHEMAS: dict[str, type[_ToolArgs]] = {
    CREATE_ORDER: CreateOrderArgs,
    CREATE_RESERVATION: CreateReservationArgs,
}


def tool_definitions() -> list[dict[str, Any]]:
    """Function schemas advertised to the agent."""
    return [
        {
            "name": CREATE_ORDER,
            "description": (
                "Create a pickup order once the caller has confirmed the items, their name and the pickup time. "
                "Only use items from the allowed menu."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "customer_name": {"type": "string"},
                    "caller_phone": {"type": "string"},
                    "pickup_time": {"type": "string"},
                    "notes": {"type": "string"},
                    "total_cents": {"type": "integer", "minimum": 0},
                    "items": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "menu_item_id": {"type": "string"},
                                "name": {"type": "string"},
                                "qty": {"type": "integer", "minimum": 1},
                                "modifiers": {"type": "array", "items": {"type": "string"}},
                                "line_total_cents": {"type": "integer", "minimum": 0},
                            },
                        },
                    },
                },
                "required": ["customer_name", "items"],
            },
        },
        {
            "name": CREATE_RESERVATION,
            "description": (
                "Create a table reservation. Use status=escalated when the request cannot be confirmed "
                "and a staff member must call back."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "guest_name": {"type": "string"},
                    "caller_phone": {"type": "string"},
                    "party_size": {"type": "integer", "minimum": 1},
                    "reservation_time": {"type": "string"},
                    "notes": {"type": "string"},
                    "status": {"type": "string", "enum": ["confirmed", "escalated"]},
                },
                "required": ["guest_name"],
            },
        },
    ]


def order_outcome(args: CreateOrderArgs, *, caller_phone: Optional[str], catalog: Optional[MenuCatalog] = None) -> StructuredOutcome:
    by_id = catalog.by_id() if catalog else {}
    lines = []
    for item in args.items:
        known = by_id.get(item.menu_item_id) if item.menu_item_id else None
        line_total = item.line_total_cents
        if line_total is None:
            line_total = known.price_cents * item.qty if known else 0
        lines.append(
            OrderLine(
                name=item.name or (known.name if known else None),
                menu_item_id=item.menu_item_id,
                qty=item.qty,
                line_total_cents=line_total,
                modifiers=list(item.modifiers),
            )
        )
    total = args.total_cents if args.total_cents is not None else sum(line.line_total_cents for line in lines)
    return StructuredOutcome(
        source=OutcomeSource.MODEL_TOOL,
        customer=Customer(name=args.customer_name, has_verified_name=True, phone=args.caller_phone or caller_phone),
        intents=Intents(order=True),
        order=OrderOutcome(
            pickup_time=args.pickup_time or DEFAULT_TOOL_PICKUP_TIME,
            total_cents=total,
            items=lines,
            notes=args.notes,
        ),
    )


def reservation_outcome(args: CreateReservationArgs, *, caller_phone: Optional[str]) -> StructuredOutcome:
    return StructuredOutcome(
        source=OutcomeSource.MODEL_TOOL,
        customer=Customer(name=args.guest_name, has_verified_name=True, phone=args.caller_phone or caller_phone),
        intents=Intents(reservation=True),
        reservation=ReservationOutcome(
            party_size=args.party_size,
            # The tool carries one free-text slot; keep it whole.
            date="",
            time=args.reservation_time,
            status=ReservationStatus(args.status),
            notes=args.notes,
        ),
    )


class ToolCallValidator:
    """
    Validates tool-call payloads for one call and materializes the valid ones.

    `handle()` always returns a JSON-serializable result for the agent's
    FunctionCallResponse and never raises.
    """

    def __init__(
        self,
        *,
        store: CallStore,
        materializer: OutcomeMaterializer,
        call_sid: str,
        caller_phone: Optional[str] = None,
    ):
        self._store = store
        self._materializer = materializer
        self.call_sid = call_sid
        self.caller_phone = caller_phone

    def tool_definitions(self) -> list[dict[str, Any]]:
        return tool_definitions()

    def validate(self, tool_name: str, args: Any) -> Optional[_ToolArgs]:
        schema = _SCHEMAS.get(tool_name)
        if schema is None:
            logger.warning("Tool call rejected: unknown tool", call_sid=self.call_sid, tool=tool_name, payload=args)
            return None
        try:
            return schema.model_validate(args if isinstance(args, dict) else {})
        except ValidationError as e:
            logger.warning(
                "Tool call rejected: invalid arguments",
                call_sid=self.call_sid,
                tool=tool_name,
                payload=args,
                errors=e.errors(include_url=False),
            )
            return None

    async def _catalog(self) -> Optional[MenuCatalog]:
        try:
            return await self._store.fetch_active_catalog()
        except Exception as e:
            logger.debug("Catalog unavailable for tool call", call_sid=self.call_sid, error=str(e))
            return None

    async def handle(self, tool_name: str, args: Any) -> dict[str, Any]:
        started = time.time()
        parsed = self.validate(tool_name, args)
        if parsed is None:
            error = "invalid_arguments" if tool_name in _SCHEMAS else f"unknown_tool:{tool_name}"
            return {"ok": False, "error": error}

        if isinstance(parsed, CreateOrderArgs):
            outcome = order_outcome(parsed, caller_phone=self.caller_phone, catalog=await self._catalog())
        else:
            outcome = reservation_outcome(parsed, caller_phone=self.caller_phone)

        try:
            await self._store.insert_event(self.call_sid, f"outcome.{OutcomeSource.MODEL_TOOL.value}", outcome.to_dict())
        except Exception as e:
            logger.warning("Failed to log tool outcome", call_sid=self.call_sid, error=str(e))

        is_order = tool_name == CREATE_ORDER
        try:
            result = await self._materializer.materialize(
                self.call_sid,
                outcome,
                order=is_order,
                reservation=not is_order,
            )
        except Exception as e:
            logger.error("Failed to persist tool outcome", call_sid=self.call_sid, tool=tool_name, error=str(e))
            return {"ok": False, "error": "persist_failed"}

        logger.info(
            "Tool call handled",
            call_sid=self.call_sid,
            tool=tool_name,
            ms=int((time.time() - started) * 1000),
        )
        if is_order:
            return {"ok": True, "order_id": result.order_id, "already_recorded": result.order_existed}
        return {
            "ok": True,
            "reservation_id": result.reservation_id,
            "status": outcome.reservation.status.value,
            "already_recorded": result.reservation_existed,
        }
