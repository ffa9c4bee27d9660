"""
Outcome materialization: turn a StructuredOutcome into order/reservation rows.

Each persisted row carries a `[call:<CallSid>]` tag in its notes. Before an
insert we look the tag up, so a call never gets a second order (or a second
reservation) no matter how many times it is materialized.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional, Sequence

import structlog

from src.concierge.menu import MenuCatalog
from src.concierge.outcome import OutcomeSource, StructuredOutcome, TranscriptTurn
from src.concierge.store import CallStore
from src.concierge.transcript_extract import extract_outcome

logger = structlog.get_logger(__name__)

MAX_SUMMARY_ITEMS = 5


def call_tag(call_sid: str) -> str:
    return f"[call:{call_sid}]"


@dataclass
class MaterializationResult:
    order_id: Optional[str] = None
    reservation_id: Optional[str] = None
    order_existed: bool = False
    reservation_existed: bool = False


def _item_label(name: Optional[str], menu_item_id: Optional[str]) -> str:
    return name or (f"item {menu_item_id}" if menu_item_id else "item")


def order_notes(outcome: StructuredOutcome, tag: str) -> str:
    order = outcome.order
    parts = []
    if order.notes:
        parts.append(order.notes)
    if order.items:
        items = ", ".join(f"{_item_label(i.name, i.menu_item_id)} x{i.qty}" for i in order.items)
        parts.append(f"Items: {items}")
    else:
        parts.append("Items: none captured")
    parts.append(f"Pickup: {order.pickup_time}")
    parts.append(f"Source: {outcome.source.value}")
    parts.append(tag)
    return " | ".join(parts)


def reservation_notes(outcome: StructuredOutcome, tag: str) -> str:
    reservation = outcome.reservation
    parts = []
    if reservation.notes:
        parts.append(reservation.notes)
    if reservation.date:
        parts.append(f"Date: {reservation.date}")
    parts.extend(
        [
            f"Time: {reservation.time}",
            f"Party: {reservation.party_size}",
            f"Occasion: {reservation.occasion}",
            f"Source: {outcome.source.value}",
            tag,
        ]
    )
    return " | ".join(parts)


def summarize(outcome: StructuredOutcome) -> str:
    """One-line call summary: customer, detected intents, up to five item names."""
    intents = [
        label
        for label, flag in (("order", outcome.intents.order), ("reservation", outcome.intents.reservation))
        if flag
    ]
    parts = [
        outcome.customer.name or "Caller",
        f"intents: {', '.join(intents) if intents else 'none'}",
    ]
    names: list[str] = []
    for line in outcome.order.items:
        label = _item_label(line.name, line.menu_item_id)
        if label not in names:
            names.append(label)
    if names:
        parts.append(f"items: {', '.join(names[:MAX_SUMMARY_ITEMS])}")
    return " | ".join(parts)


class OutcomeMaterializer:
    def __init__(self, store: CallStore):
        self._store = store
        self._locks: dict[str, asyncio.Lock] = {}
        # Calls whose outcome came from a tool call; the transcript fallback leaves them alone.
        self._tool_materialized: set[str] = set()

    def has_tool_outcome(self, call_sid: str) -> bool:
        return call_sid in self._tool_materialized

    def _lock(self, call_sid: str) -> asyncio.Lock:
        lock = self._locks.get(call_sid)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[call_sid] = lock
        return lock

    def forget(self, call_sid: str) -> None:
        self._locks.pop(call_sid, None)
        self._tool_materialized.discard(call_sid)

    async def materialize(
        self,
        call_sid: str,
        outcome: StructuredOutcome,
        *,
        order: bool = True,
        reservation: bool = True,
    ) -> MaterializationResult:
        """
        Persist the order and/or reservation described by `outcome`.

        Only objects whose intent is set are considered, and an object already tagged
        with this call is left alone. Store errors on inserts propagate to the caller.
        """
        result = MaterializationResult()
        tag = call_tag(call_sid)

        # Check-then-insert must not interleave for the same call.
        async with self._lock(call_sid):
            if order and outcome.intents.order:
                if await self._store.find_tagged_record("orders", tag):
                    result.order_existed = True
                else:
                    result.order_id = await self._store.create_order(
                        customer_name=outcome.customer.name or "Caller",
                        pickup_time=outcome.order.pickup_time,
                        caller_phone=outcome.customer.phone,
                        notes=order_notes(outcome, tag),
                        total_cents=outcome.order.total_cents,
                        items=[
                            {
                                "menu_item_id": line.menu_item_id,
                                "qty": line.qty,
                                "modifiers": line.modifiers,
                                "line_total_cents": line.line_total_cents,
                            }
                            for line in outcome.order.items
                        ],
                    )

            if reservation and outcome.intents.reservation:
                if await self._store.find_tagged_record("reservations", tag):
                    result.reservation_existed = True
                else:
                    result.reservation_id = await self._store.create_reservation(
                        guest_name=outcome.customer.name or "Caller",
                        party_size=outcome.reservation.party_size,
                        reservation_time=outcome.reservation.reservation_time,
                        caller_phone=outcome.customer.phone,
                        notes=reservation_notes(outcome, tag),
                        status=outcome.reservation.status.value,
                    )

            if outcome.source == OutcomeSource.MODEL_TOOL:
                self._tool_materialized.add(call_sid)

        try:
            await self._store.update_call_summary(call_sid, summarize(outcome))
        except Exception as e:
            logger.warning("Failed to update call summary", call_sid=call_sid, error=str(e))

        logger.info(
            "Outcome materialized",
            call_sid=call_sid,
            source=outcome.source.value,
            order_id=result.order_id,
            reservation_id=result.reservation_id,
            order_existed=result.order_existed,
            reservation_existed=result.reservation_existed,
        )
        return result

    async def materialize_from_transcript(
        self,
        call_sid: str,
        turns: Sequence[TranscriptTurn],
        *,
        caller_phone: Optional[str] = None,
        require_booking_confirmation: bool = False,
    ) -> Optional[StructuredOutcome]:
        """
        Fallback path run at call end: mine the transcript and persist the outcome.

        Skipped (returns None) when a tool call already materialized this call's
        outcome, so the summary and rows stay the ones the agent described.
        """
        if self.has_tool_outcome(call_sid):
            logger.info("Tool outcome present, transcript fallback skipped", call_sid=call_sid)
            try:
                await self._store.insert_event(call_sid, "outcome.transcript_fallback_skipped", {"reason": "model_tool"})
            except Exception as e:
                logger.warning("Failed to log skipped fallback", call_sid=call_sid, error=str(e))
            return None

        try:
            catalog = await self._store.fetch_active_catalog()
        except Exception as e:
            logger.warning("Catalog fetch failed; extracting without items", call_sid=call_sid, error=str(e))
            catalog = MenuCatalog()

        outcome = extract_outcome(
            turns,
            catalog,
            caller_phone,
            require_booking_confirmation=require_booking_confirmation,
        )

        try:
            await self._store.insert_event(call_sid, "outcome.transcript_fallback", outcome.to_dict())
        except Exception as e:
            logger.warning("Failed to log fallback outcome", call_sid=call_sid, error=str(e))

        await self.materialize(call_sid, outcome)
        return outcome
