"""
Supabase persistence over the PostgREST API (`{SUPABASE_URL}/rest/v1`).

Uses the service role key, so row level security does not apply. One
httpx.AsyncClient is shared by all calls handled by the process.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
import structlog

from src.concierge.menu import MenuCatalog
from src.concierge.outcome import TranscriptTurn
from src.concierge.store import CALL_STATUSES, CallStore, StoreError, isoformat, utcnow

logger = structlog.get_logger(__name__)

REQUEST_TIMEOUT_SECONDS = 10.0
_TAGGED_TABLES = ("orders", "reservations")


class SupabaseCallStore(CallStore):
    def __init__(
        self,
        *,
        url: str,
        service_role_key: str,
        restaurant_name: str = "the restaurant",
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(restaurant_name=restaurant_name)
        self.base_url = f"{url.rstrip('/')}/rest/v1"
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "apikey": service_role_key,
                "Authorization": f"Bearer {service_role_key}",
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: Optional[dict[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = await self._client.request(method, f"/{table}", params=params, json=json, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise StoreError(
                f"{method} {table} failed: {e.response.status_code} {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise StoreError(f"{method} {table} failed: {e}") from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise StoreError(f"{method} {table} returned invalid JSON") from e

    async def _first(self, table: str, params: dict[str, str]) -> Optional[dict[str, Any]]:
        rows = await self._request("GET", table, params={**params, "limit": "1"})
        if isinstance(rows, list) and rows:
            return rows[0]
        return None

    async def _call_id(self, call_sid: str) -> Optional[str]:
        row = await self._first("calls", {"select": "id", "twilio_call_sid": f"eq.{call_sid}"})
        return row["id"] if row else None

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

        row: dict[str, Any] = {"twilio_call_sid": call_sid, "status": status}
        if from_number is not None:
            row["from_number"] = from_number
        if to_number is not None:
            row["to_number"] = to_number
        if started_at is not None:
            row["started_at"] = isoformat(started_at)
        if ended_at is not None:
            row["ended_at"] = isoformat(ended_at)

        await self._request(
            "POST",
            "calls",
            params={"on_conflict": "twilio_call_sid"},
            json=row,
            prefer="resolution=merge-duplicates,return=minimal",
        )

    async def get_call(self, call_sid: str) -> Optional[dict[str, Any]]:
        return await self._first("calls", {"select": "*", "twilio_call_sid": f"eq.{call_sid}"})

    async def insert_transcript_turn(self, call_sid: str, turn: TranscriptTurn) -> None:
        call_id = await self._call_id(call_sid)
        if call_id is None:
            raise StoreError(f"Call row not found: {call_sid}")
        await self._request(
            "POST",
            "call_messages",
            json={
                "call_id": call_id,
                "role": turn.role.value,
                "text": turn.text,
                "created_at": datetime.fromtimestamp(turn.timestamp, tz=timezone.utc).isoformat(),
            },
            prefer="return=minimal",
        )

    async def insert_event(self, call_sid: str, event_type: str, payload: dict[str, Any]) -> None:
        call_id = await self._call_id(call_sid)
        if call_id is None:
            logger.debug("Event dropped: call row not found", call_sid=call_sid, event_type=event_type)
            return
        await self._request(
            "POST",
            "call_events",
            json={"call_id": call_id, "event_type": event_type, "payload": payload},
            prefer="return=minimal",
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
        rows = await self._request(
            "POST",
            "orders",
            json={
                "caller_phone": caller_phone,
                "customer_name": customer_name,
                "pickup_time": pickup_time,
                "status": "new",
                "notes": notes,
                "total_cents": total_cents,
            },
            prefer="return=representation",
        )
        if not isinstance(rows, list) or not rows or "id" not in rows[0]:
            raise StoreError("Order insert returned no row")
        order_id = str(rows[0]["id"])

        item_rows = [
            {
                "order_id": order_id,
                "menu_item_id": item.get("menu_item_id"),
                "qty": item.get("qty", 1),
                "modifier_json": item.get("modifiers") or [],
                "line_total_cents": item.get("line_total_cents") or 0,
            }
            for item in items or []
        ]
        if item_rows:
            await self._request("POST", "order_items", json=item_rows, prefer="return=minimal")
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
        rows = await self._request(
            "POST",
            "reservations",
            json={
                "caller_phone": caller_phone,
                "guest_name": guest_name,
                "party_size": party_size,
                "reservation_time": reservation_time,
                "status": status,
                "notes": notes,
            },
            prefer="return=representation",
        )
        if not isinstance(rows, list) or not rows or "id" not in rows[0]:
            raise StoreError("Reservation insert returned no row")
        return str(rows[0]["id"])

    async def fetch_active_catalog(self) -> MenuCatalog:
        rows = await self._request(
            "GET",
            "menu_items",
            params={"select": "id,name,price_cents", "active": "eq.true", "order": "name.asc"},
        )
        return MenuCatalog.from_rows(rows or [])

    async def find_tagged_record(self, table: str, tag: str) -> Optional[dict[str, Any]]:
        if table not in _TAGGED_TABLES:
            raise StoreError(f"Unknown table: {table}")
        return await self._first(table, {"select": "id,notes", "notes": f"like.*{tag}*"})

    async def update_call_summary(self, call_sid: str, summary: str) -> None:
        await self._request(
            "PATCH",
            "calls",
            params={"twilio_call_sid": f"eq.{call_sid}"},
            json={"summary": summary},
            prefer="return=minimal",
        )

    async def reconcile_stale(self, threshold_minutes: int) -> int:
        now = utcnow()
        cutoff = now - timedelta(minutes=threshold_minutes)
        rows = await self._request(
            "PATCH",
            "calls",
            params={"status": "eq.in_progress", "created_at": f"lt.{cutoff.isoformat()}"},
            json={"status": "completed", "ended_at": now.isoformat()},
            prefer="return=representation",
        )
        return len(rows) if isinstance(rows, list) else 0

    async def aclose(self) -> None:
        await self._client.aclose()
