"""
Persistence interface for calls, transcripts, events, orders and reservations.

`CallStore` is the seam consumed by the bridge; `SupabaseCallStore`
(supabase_store.py) is the production implementation and `InMemoryCallStore`
is a dict-backed store for local development and tests.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog

from src.concierge.config import Config
from src.concierge.handshake import build_guardrail_prompt
from src.concierge.menu import MenuCatalog
from src.concierge.outcome import TranscriptTurn

logger = structlog.get_logger(__name__)

CALL_STATUSES = ("ringing", "in_progress", "completed", "failed")


class StoreError(Exception):
    """Raised when a persistence operation fails."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class CallStore(ABC):
    """Abstract persistence collaborator used by the call bridge."""

    def __init__(self, *, restaurant_name: str = "the restaurant"):
        self.restaurant_name = restaurant_name

    @abstractmethod
    async def upsert_call(
        self,
        call_sid: str,
        *,
        status: str,
        from_number: Optional[str] = None,
        to_number: Optional[str] = None,
        started_at: Optional[datetime] = None,
        ended_at: Optional[datetime] = None,
    ) -> None:
        """Insert or update the call row keyed by the carrier call id. Only given fields change."""

    @abstractmethod
    async def get_call(self, call_sid: str) -> Optional[dict[str, Any]]: ...

    @abstractmethod
    async def insert_transcript_turn(self, call_sid: str, turn: TranscriptTurn) -> None: ...

    @abstractmethod
    async def insert_event(self, call_sid: str, event_type: str, payload: dict[str, Any]) -> None: ...

    @abstractmethod
    async def create_order(
        self,
        *,
        customer_name: str,
        pickup_time: str,
        caller_phone: Optional[str] = None,
        notes: Optional[str] = None,
        total_cents: int = 0,
        items: Optional[list[dict[str, Any]]] = None,
    ) -> str:
        """Create an order (status `new`) and its item rows. Returns the order id."""

    @abstractmethod
    async def create_reservation(
        self,
        *,
        guest_name: str,
        party_size: int,
        reservation_time: str,
        caller_phone: Optional[str] = None,
        notes: Optional[str] = None,
        status: str = "confirmed",
    ) -> str: ...

    @abstractmethod
    async def fetch_active_catalog(self) -> MenuCatalog: ...

    @abstractmethod
    async def find_tagged_record(self, table: str, tag: str) -> Optional[dict[str, Any]]:
        """Find an `orders`/`reservations` row whose notes contain `tag`."""

    @abstractmethod
    async def update_call_summary(self, call_sid: str, summary: str) -> None: ...

    @abstractmethod
    async def reconcile_stale(self, threshold_minutes: int) -> int:
        """Mark `in_progress` calls created before now - threshold as completed. Returns the count."""

    async def fetch_guardrail_prompt(self) -> str:
        """Guardrail fragment listing the orderable items; empty when the catalog is empty."""
        catalog = await self.fetch_active_catalog()
        if not catalog:
            return ""
        return build_guardrail_prompt(catalog, restaurant_name=self.restaurant_name)

    async def aclose(self) -> None:
        return None


class InMemoryCallStore(CallStore):
    """
    Dict-backed store with the same interface as SupabaseCallStore.

    All data is lost on process restart.
    """

    def __init__(self, *, menu_rows: Optional[list[dict[str, Any]]] = None, restaurant_name: str = "the restaurant"):
        super().__init__(restaurant_name=restaurant_name)
        self.calls: dict[str, dict[str, Any]] = {}  # call_sid -> call row
        self.messages: list[dict[str, Any]] = []
        self.events: list[dict[str, Any]] = []
        self.orders: list[dict[str, Any]] = []
        self.order_items: list[dict[str, Any]] = []
        self.reservations: list[dict[str, Any]] = []
        self.menu_items: list[dict[str, Any]] = [
            {"id": row.get("id") or uuid.uuid4().hex, "active": True, **row} for row in (menu_rows or [])
        ]

    async def upsert_call(
        self,
        call_sid: str,
        *,
        status: str,
        from_number: Optional[str] = None,
        to_number: Optional[str] = None,
        started_at: Optional[datetime] = None,
        ended_at: Optional[datetime] = None,
    ) -> None:
        if status not in CALL_STATUSES:
            raise StoreError(f"Invalid call status: {status}")

        row = self.calls.get(call_sid)
        if row is None:
            row = {
                "id": uuid.uuid4().hex,
                "twilio_call_sid": call_sid,
                "from_number": None,
                "to_number": None,
                "started_at": None,
                "ended_at": None,
                "summary": None,
                "created_at": utcnow(),
            }
            self.calls[call_sid] = row

        row["status"] = status
        for key, value in (
            ("from_number", from_number),
            ("to_number", to_number),
            ("started_at", started_at),
            ("ended_at", ended_at),
        ):
            if value is not None:
                row[key] = value

    async def get_call(self, call_sid: str) -> Optional[dict[str, Any]]:
        row = self.calls.get(call_sid)
        return dict(row) if row else None

    async def insert_transcript_turn(self, call_sid: str, turn: TranscriptTurn) -> None:
        call = self.calls.get(call_sid)
        if call is None:
            raise StoreError(f"Call row not found: {call_sid}")
        self.messages.append(
            {
                "id": uuid.uuid4().hex,
                "call_id": call["id"],
                "role": turn.role.value,
                "text": turn.text,
                "created_at": datetime.fromtimestamp(turn.timestamp, tz=timezone.utc),
            }
        )

    async def insert_event(self, call_sid: str, event_type: str, payload: dict[str, Any]) -> None:
        call = self.calls.get(call_sid)
        if call is None:
            return
        self.events.append(
            {
                "id": uuid.uuid4().hex,
                "call_id": call["id"],
                "event_type": event_type,
                "payload": payload,
                "created_at": utcnow(),
            }
        )

    async def create_order(
        self,
        *,
        customer_name: str,
        pickup_time: str,
        caller_phone: Optional[str] = None,
        notes: Optional[str] = None,
        total_cents: int = 0,
        items: Optional[list[dict[str, Any]]] = None,
    ) -> str:
        order_id = uuid.uuid4().hex
        self.orders.append(
            {
                "id": order_id,
                "caller_phone": caller_phone,
                "customer_name": customer_name,
                "pickup_time": pickup_time,
                "notes": notes,
                "total_cents": total_cents,
                "status": "new",
                "created_at": utcnow(),
            }
        )
        for item in items or []:
            self.order_items.append(
                {
                    "id": uuid.uuid4().hex,
                    "order_id": order_id,
                    "menu_item_id": item.get("menu_item_id"),
                    "qty": item.get("qty", 1),
                    "modifier_json": item.get("modifiers") or [],
                    "line_total_cents": item.get("line_total_cents") or 0,
                }
            )
        return order_id

    async def create_reservation(
        self,
        *,
        guest_name: str,
        party_size: int,
        reservation_time: str,
        caller_phone: Optional[str] = None,
        notes: Optional[str] = None,
        status: str = "confirmed",
    ) -> str:
        reservation_id = uuid.uuid4().hex
        self.reservations.append(
            {
                "id": reservation_id,
                "caller_phone": caller_phone,
                "guest_name": guest_name,
                "party_size": party_size,
                "reservation_time": reservation_time,
                "notes": notes,
                "status": status,
                "created_at": utcnow(),
            }
        )
        return reservation_id

    async def fetch_active_catalog(self) -> MenuCatalog:
        return MenuCatalog.from_rows(row for row in self.menu_items if row.get("active"))

    async def find_tagged_record(self, table: str, tag: str) -> Optional[dict[str, Any]]:
        rows = {"orders": self.orders, "reservations": self.reservations}.get(table)
        if rows is None:
            raise StoreError(f"Unknown table: {table}")
        for row in rows:
            if tag in (row.get("notes") or ""):
                return dict(row)
        return None

    async def update_call_summary(self, call_sid: str, summary: str) -> None:
        call = self.calls.get(call_sid)
        if call is None:
            raise StoreError(f"Call row not found: {call_sid}")
        call["summary"] = summary

    async def reconcile_stale(self, threshold_minutes: int) -> int:
        now = utcnow()
        cutoff = now - timedelta(minutes=threshold_minutes)
        count = 0
        for call in self.calls.values():
            if call.get("status") == "in_progress" and call["created_at"] < cutoff:
                call["status"] = "completed"
                call["ended_at"] = now
                count += 1
        return count


def create_store(config: Config) -> CallStore:
    """Supabase when configured, otherwise an in-memory store."""
    if config.supabase_enabled:
        from src.concierge.supabase_store import SupabaseCallStore

        return SupabaseCallStore(
            url=config.supabase_url,
            service_role_key=config.supabase_service_role_key,
            restaurant_name=config.restaurant_name,
        )

    logger.warning("Supabase not configured; using in-memory store (data is not persisted)")
    return InMemoryCallStore(restaurant_name=config.restaurant_name)
