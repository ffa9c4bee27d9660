"""
Tests for tool-call validation and persistence.
"""

import pytest
import pytest_asyncio

from src.concierge.materializer import OutcomeMaterializer
from src.concierge.tools import (
    CreateReservationArgs,
    ToolCallValidator,
    reservation_outcome,
)

CALL_SID = "CA1"


@pytest_asyncio.fixture
async def validator(store):
    await store.upsert_call(CALL_SID, status="in_progress", from_number="+15551234567")
    return ToolCallValidator(
        store=store,
        materializer=OutcomeMaterializer(store),
        call_sid=CALL_SID,
        caller_phone="+15551234567",
    )


def _event_types(store):
    return [e["event_type"] for e in store.events]


class TestRejection:
    @pytest.mark.asyncio
    async def test_missing_customer_name_rejected(self, store, validator):
        result = await validator.handle("create_order", {"items": [{"menu_item_id": "m1"}]})

        assert result == {"ok": False, "error": "invalid_arguments"}
        assert store.orders == []
        assert "outcome.model_tool" not in _event_types(store)

    @pytest.mark.asyncio
    async def test_blank_customer_name_rejected(self, store, validator):
        result = await validator.handle("create_order", {"customer_name": "   ", "items": []})

        assert result["ok"] is False
        assert store.orders == []

    @pytest.mark.asyncio
    async def test_non_positive_quantity_rejected(self, store, validator):
        result = await validator.handle(
            "create_order", {"customer_name": "Alex", "items": [{"menu_item_id": "m1", "qty": 0}]}
        )

        assert result["ok"] is False
        assert store.orders == []

    @pytest.mark.asyncio
    async def test_unknown_tool_rejected(self, store, validator):
        result = await validator.handle("issue_refund", {"amount": 10})

        assert result == {"ok": False, "error": "unknown_tool:issue_refund"}
        assert store.orders == [] and store.reservations == []

    @pytest.mark.asyncio
    async def test_bad_reservation_status_rejected(self, store, validator):
        result = await validator.handle("create_reservation", {"guest_name": "Sam", "status": "maybe"})

        assert result["ok"] is False
        assert store.reservations == []


class TestPersistence:
    @pytest.mark.asyncio
    async def test_valid_order_persisted_with_catalog_prices(self, store, validator):
        result = await validator.handle(
            "create_order",
            {
                "customer_name": "Alex Rivera",
                "items": [{"menu_item_id": "m1", "qty": 2}, {"menu_item_id": "m2", "name": "Garlic Naan"}],
            },
        )

        assert result["ok"] is True
        assert result["already_recorded"] is False
        assert len(store.orders) == 1

        order = store.orders[0]
        assert order["id"] == result["order_id"]
        assert order["customer_name"] == "Alex Rivera"
        assert order["caller_phone"] == "+15551234567"
        assert order["pickup_time"] == "ASAP"
        assert order["total_cents"] == 3400
        assert order["status"] == "new"
        assert "[call:CA1]" in order["notes"]
        assert "Butter Chicken x2" in order["notes"]
        assert [i["line_total_cents"] for i in store.order_items] == [3000, 400]
        assert "outcome.model_tool" in _event_types(store)

    @pytest.mark.asyncio
    async def test_repeated_order_call_is_idempotent(self, store, validator):
        args = {"customer_name": "Alex", "items": [{"menu_item_id": "m3"}]}

        first = await validator.handle("create_order", args)
        second = await validator.handle("create_order", args)

        assert first["ok"] and second["ok"]
        assert second["already_recorded"] is True
        assert len(store.orders) == 1

    @pytest.mark.asyncio
    async def test_reservation_nulls_use_defaults(self, store, validator):
        result = await validator.handle(
            "create_reservation",
            {"guest_name": "Sam", "party_size": None, "reservation_time": "tomorrow 7 pm", "status": "escalated"},
        )

        assert result["ok"] is True
        assert result["status"] == "escalated"
        reservation = store.reservations[0]
        assert reservation["party_size"] == 2
        assert reservation["reservation_time"] == "tomorrow 7 pm"
        assert reservation["status"] == "escalated"
        assert "Date:" not in reservation["notes"]

    @pytest.mark.asyncio
    async def test_order_tool_does_not_create_reservation(self, store, validator):
        await validator.handle("create_order", {"customer_name": "Alex", "items": []})

        assert len(store.orders) == 1
        assert store.reservations == []

    @pytest.mark.asyncio
    async def test_persist_failure_reported(self, store, validator):
        async def broken(**kwargs):
            raise RuntimeError("db down")

        store.create_order = broken

        result = await validator.handle("create_order", {"customer_name": "Alex", "items": []})

        assert result == {"ok": False, "error": "persist_failed"}


def test_reservation_time_empty_defaults_to_asap():
    args = CreateReservationArgs.model_validate({"guest_name": "Sam", "reservation_time": ""})
    outcome = reservation_outcome(args, caller_phone=None)

    assert outcome.reservation.reservation_time == "ASAP"
    assert outcome.customer.has_verified_name is True
