"""
Tests for the Supabase PostgREST store.
"""

import json

import httpx
import pytest
import respx

from src.concierge.outcome import Role, TranscriptTurn
from src.concierge.store import StoreError
from src.concierge.supabase_store import SupabaseCallStore

SUPABASE_URL = "https://proj.supabase.co"
REST = f"{SUPABASE_URL}/rest/v1"


def _store():
    return SupabaseCallStore(url=SUPABASE_URL, service_role_key="service-key", restaurant_name="Test Kitchen")


def _body(route, index=0):
    return json.loads(route.calls[index].request.content)


class TestCalls:
    @pytest.mark.asyncio
    async def test_upsert_sends_only_given_fields(self):
        with respx.mock:
            route = respx.post(f"{REST}/calls").mock(return_value=httpx.Response(201))
            store = _store()

            await store.upsert_call("CA1", status="in_progress", from_number="+15551234567")

            request = route.calls[0].request
            assert request.headers["apikey"] == "service-key"
            assert request.headers["authorization"] == "Bearer service-key"
            assert "resolution=merge-duplicates" in request.headers["prefer"]
            assert request.url.params["on_conflict"] == "twilio_call_sid"
            assert _body(route) == {"twilio_call_sid": "CA1", "status": "in_progress", "from_number": "+15551234567"}
            await store.aclose()

    @pytest.mark.asyncio
    async def test_invalid_status_rejected_without_request(self):
        with respx.mock:
            route = respx.post(f"{REST}/calls").mock(return_value=httpx.Response(201))
            store = _store()

            with pytest.raises(StoreError):
                await store.upsert_call("CA1", status="exploded")

            assert not route.called
            await store.aclose()

    @pytest.mark.asyncio
    async def test_http_error_becomes_store_error(self):
        with respx.mock:
            respx.post(f"{REST}/calls").mock(return_value=httpx.Response(500, text="boom"))
            store = _store()

            with pytest.raises(StoreError, match="500"):
                await store.upsert_call("CA1", status="completed")
            await store.aclose()

    @pytest.mark.asyncio
    async def test_transcript_turn_resolves_call_id(self):
        with respx.mock:
            lookup = respx.get(f"{REST}/calls").mock(return_value=httpx.Response(200, json=[{"id": "call-uuid"}]))
            insert = respx.post(f"{REST}/call_messages").mock(return_value=httpx.Response(201))
            store = _store()

            await store.insert_transcript_turn("CA1", TranscriptTurn(role=Role.USER, text="hello"))

            assert lookup.calls[0].request.url.params["twilio_call_sid"] == "eq.CA1"
            body = _body(insert)
            assert body["call_id"] == "call-uuid"
            assert body["role"] == "user"
            assert body["text"] == "hello"
            await store.aclose()

    @pytest.mark.asyncio
    async def test_transcript_turn_for_unknown_call_fails(self):
        with respx.mock:
            respx.get(f"{REST}/calls").mock(return_value=httpx.Response(200, json=[]))
            store = _store()

            with pytest.raises(StoreError):
                await store.insert_transcript_turn("CA1", TranscriptTurn(role=Role.USER, text="hello"))
            await store.aclose()

    @pytest.mark.asyncio
    async def test_event_for_unknown_call_skipped(self):
        with respx.mock:
            respx.get(f"{REST}/calls").mock(return_value=httpx.Response(200, json=[]))
            insert = respx.post(f"{REST}/call_events").mock(return_value=httpx.Response(201))
            store = _store()

            await store.insert_event("CA1", "deepgram.Welcome", {"type": "Welcome"})

            assert not insert.called
            await store.aclose()

    @pytest.mark.asyncio
    async def test_reconcile_counts_updated_rows(self):
        with respx.mock:
            route = respx.patch(f"{REST}/calls").mock(
                return_value=httpx.Response(200, json=[{"id": "a"}, {"id": "b"}])
            )
            store = _store()

            assert await store.reconcile_stale(3) == 2

            params = route.calls[0].request.url.params
            assert params["status"] == "eq.in_progress"
            assert params["created_at"].startswith("lt.")
            assert _body(route)["status"] == "completed"
            await store.aclose()


class TestOrdersAndMenu:
    @pytest.mark.asyncio
    async def test_create_order_inserts_items(self):
        with respx.mock:
            orders = respx.post(f"{REST}/orders").mock(return_value=httpx.Response(201, json=[{"id": "order-1"}]))
            items = respx.post(f"{REST}/order_items").mock(return_value=httpx.Response(201))
            store = _store()

            order_id = await store.create_order(
                customer_name="Alex",
                pickup_time="6 pm",
                notes="[call:CA1]",
                total_cents=1500,
                items=[{"menu_item_id": "m1", "qty": 1, "line_total_cents": 1500}],
            )

            assert order_id == "order-1"
            assert orders.calls[0].request.headers["prefer"] == "return=representation"
            assert _body(orders)["status"] == "new"
            assert _body(items) == [
                {"order_id": "order-1", "menu_item_id": "m1", "qty": 1, "modifier_json": [], "line_total_cents": 1500}
            ]
            await store.aclose()

    @pytest.mark.asyncio
    async def test_order_without_items_skips_item_insert(self):
        with respx.mock:
            respx.post(f"{REST}/orders").mock(return_value=httpx.Response(201, json=[{"id": "order-1"}]))
            items = respx.post(f"{REST}/order_items").mock(return_value=httpx.Response(201))
            store = _store()

            await store.create_order(customer_name="Alex", pickup_time="ASAP")

            assert not items.called
            await store.aclose()

    @pytest.mark.asyncio
    async def test_active_catalog_and_guardrail(self):
        with respx.mock:
            route = respx.get(f"{REST}/menu_items").mock(
                return_value=httpx.Response(200, json=[
                    {"id": "m2", "name": "Samosa", "price_cents": 600},
                    {"id": "m1", "name": "Butter Chicken", "price_cents": 1500},
                ])
            )
            store = _store()

            catalog = await store.fetch_active_catalog()
            prompt = await store.fetch_guardrail_prompt()

            assert [item.name for item in catalog.items] == ["Butter Chicken", "Samosa"]
            assert route.calls[0].request.url.params["active"] == "eq.true"
            assert "- Samosa ($6.00)" in prompt
            await store.aclose()

    @pytest.mark.asyncio
    async def test_find_tagged_record(self):
        with respx.mock:
            route = respx.get(f"{REST}/reservations").mock(
                return_value=httpx.Response(200, json=[{"id": "r1", "notes": "x | [call:CA1]"}])
            )
            store = _store()

            row = await store.find_tagged_record("reservations", "[call:CA1]")

            assert row["id"] == "r1"
            assert route.calls[0].request.url.params["notes"] == "like.*[call:CA1]*"
            await store.aclose()

    @pytest.mark.asyncio
    async def test_find_tagged_record_unknown_table(self):
        store = _store()

        with pytest.raises(StoreError):
            await store.find_tagged_record("menu_items", "[call:CA1]")
        await store.aclose()
