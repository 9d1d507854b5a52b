from __future__ import annotations

import asyncio

import pytest

from auth.spapi_auth import SpApiAuthError
from conftest import NOW, FakeClient, no_sleep, raw_order
from services import db as db_service
from services.order_cache import OrderCache
from services.order_enrichment import OrderEnricher
from services.order_models import ERROR_ITEM_ID, QUOTA_EXCEEDED_ITEM_ID
from services.order_pagination import OrderPaginator
from services.order_parser import parse_order
from services.order_store import OrderStore
from services.orders_pipeline import OrdersNotLoadedError, OrdersPipeline, OrdersQuery
from services.spapi_client import SpApiError, SpApiQuotaError


def _pipeline(tmp_path, monkeypatch, client):
    monkeypatch.setattr(db_service, "ORDERS_DB_PATH", tmp_path / "orders.db")
    clock = lambda: NOW  # noqa: E731
    enricher = OrderEnricher(client, group_pause_seconds=0, sleep=no_sleep)
    paginator = OrderPaginator(client, enricher, clock=clock)
    store = OrderStore(clock=clock)
    cache = OrderCache(tmp_path / "cache", clock=clock)
    return OrdersPipeline(client, enricher, paginator, store, cache, clock=clock)


def _page(*order_ids, token=None, **kwargs):
    return ([raw_order(order_id, **kwargs) for order_id in order_ids], token)


def test_second_request_is_served_from_cache(tmp_path, monkeypatch):
    client = FakeClient(pages=[_page("A", "B")])
    pipeline = _pipeline(tmp_path, monkeypatch, client)

    first = asyncio.run(pipeline.get_orders(OrdersQuery()))
    second = asyncio.run(pipeline.get_orders(OrdersQuery()))

    assert first["fromCache"] is False
    assert first["stopReason"] == "exhausted"
    assert second["fromCache"] is True
    assert [order["id"] for order in second["orders"]] == ["A", "B"]
    assert len(client.orders_calls) == 1
    assert pipeline.store.is_data_valid() is True


def test_refresh_bypasses_cache_and_keeps_sent_flag(tmp_path, monkeypatch):
    client = FakeClient(pages=[_page("A"), _page("A")])
    pipeline = _pipeline(tmp_path, monkeypatch, client)
    asyncio.run(pipeline.get_orders(OrdersQuery()))
    sent = pipeline.store.get_order("A").model_copy(
        update={"review_request_sent": True, "review_request_status": "sent"}
    )
    pipeline.store.put_order(sent)

    payload = asyncio.run(pipeline.get_orders(OrdersQuery(refresh=True)))

    assert payload["fromCache"] is False
    assert payload["orders"][0]["reviewRequestSent"] is True
    assert payload["orders"][0]["reviewRequestStatus"] == "sent"


def test_partial_fetch_is_not_cached(tmp_path, monkeypatch):
    client = FakeClient(pages=[_page("A", token="t1"), SpApiError("boom", status_code=500)])
    pipeline = _pipeline(tmp_path, monkeypatch, client)

    payload = asyncio.run(pipeline.get_orders(OrdersQuery()))

    assert payload["partial"] is True
    assert payload["warning"]
    assert asyncio.run(pipeline.cache.get()) is None
    assert pipeline.store.get_order("A") is not None


def test_continuation_page_is_not_cached(tmp_path, monkeypatch):
    client = FakeClient(pages=[_page("C")])
    pipeline = _pipeline(tmp_path, monkeypatch, client)

    payload = asyncio.run(pipeline.get_orders(OrdersQuery(next_token="t1")))

    assert client.orders_calls[0]["next_token"] == "t1"
    assert payload["totalCount"] == 1
    assert asyncio.run(pipeline.cache.get()) is None


def test_current_collection_falls_back_to_store(tmp_path, monkeypatch):
    pipeline = _pipeline(tmp_path, monkeypatch, FakeClient())

    with pytest.raises(OrdersNotLoadedError):
        asyncio.run(pipeline.current_collection())

    pipeline.store.save_orders([parse_order(raw_order("A"))])
    collection = asyncio.run(pipeline.current_collection())
    assert [order.id for order in collection.orders] == ["A"]


def test_sync_prunes_merges_and_rechecks(tmp_path, monkeypatch):
    client = FakeClient(pages=[_page("NEW", "KEEP")])
    pipeline = _pipeline(tmp_path, monkeypatch, client)
    pipeline.store.save_orders([parse_order(raw_order("KEEP")), parse_order(raw_order("OLD", days_ago=45))])

    result = asyncio.run(pipeline.sync())

    assert result["success"] is True
    assert result["cleanup"] == {"removedCount": 1, "remainingCount": 1}
    assert result["sync"]["addedCount"] == 1
    assert result["sync"]["updatedCount"] == 1
    assert result["sync"]["totalCount"] == 2
    assert result["stats"]["totalOrders"] == 2
    assert client.orders_calls[0]["created_after"] == "2025-06-08T12:00:00Z"
    stored = pipeline.store.get_order("KEEP")
    assert stored.solicitation_eligible is True
    assert stored.solicitation_reason_code == "eligible"
    cached = asyncio.run(pipeline.cache.get())
    assert {order.id for order in cached.orders} == {"NEW", "KEEP"}


def test_sync_recheck_overrides_stale_failure(tmp_path, monkeypatch):
    client = FakeClient(pages=[_page()])
    pipeline = _pipeline(tmp_path, monkeypatch, client)
    failed = parse_order(raw_order("A")).model_copy(
        update={"solicitation_eligible": False, "solicitation_reason_code": "check_failed"}
    )
    done = parse_order(raw_order("B")).model_copy(
        update={"solicitation_eligible": False, "solicitation_reason_code": "not_eligible_upstream"}
    )
    pipeline.store.save_orders([failed, done])

    result = asyncio.run(pipeline.sync())

    assert result["solicitation"]["recheckCount"] == 1
    assert client.solicitation_calls == ["A"]
    assert pipeline.store.get_order("A").solicitation_eligible is True
    assert pipeline.store.get_order("B").solicitation_reason_code == "not_eligible_upstream"


def test_refresh_items_handles_quota_and_errors(tmp_path, monkeypatch):
    client = FakeClient(
        failing_orders={
            "B": SpApiQuotaError("quota", status_code=429),
            "C": SpApiError("boom", status_code=500),
        }
    )
    pipeline = _pipeline(tmp_path, monkeypatch, client)
    pipeline.store.save_orders([parse_order(raw_order(order_id)) for order_id in ("A", "B", "C")])

    result = asyncio.run(pipeline.refresh_items(["A", "B", "C", "MISSING"]))

    assert result["processedCount"] == 3
    assert result["updatedItems"]["A"][0]["asin"] == "B0TEST0001"
    assert result["updatedItems"]["B"][0]["id"] == QUOTA_EXCEEDED_ITEM_ID
    assert result["updatedItems"]["C"][0]["id"] == ERROR_ITEM_ID
    cached = asyncio.run(pipeline.cache.get())
    assert cached.orders[0].items[0].asin == "B0TEST0001"


def test_refresh_items_caps_order_count(tmp_path, monkeypatch):
    client = FakeClient()
    pipeline = _pipeline(tmp_path, monkeypatch, client)
    ids = [f"O{i}" for i in range(15)]
    pipeline.store.save_orders([parse_order(raw_order(order_id)) for order_id in ids])

    result = asyncio.run(pipeline.refresh_items(ids))

    assert result["processedCount"] == 10
    assert client.items_calls == ids[:10]


def test_refresh_items_propagates_auth_failure(tmp_path, monkeypatch):
    client = FakeClient(failing_orders={"A": SpApiAuthError("expired", status_code=401)})
    pipeline = _pipeline(tmp_path, monkeypatch, client)
    pipeline.store.save_orders([parse_order(raw_order("A"))])

    with pytest.raises(SpApiAuthError):
        asyncio.run(pipeline.refresh_items(["A"]))


def test_enrich_by_ids_persists_results(tmp_path, monkeypatch):
    client = FakeClient()
    pipeline = _pipeline(tmp_path, monkeypatch, client)
    pipeline.store.save_orders([parse_order(raw_order(order_id)) for order_id in ("A", "B")])

    enriched = asyncio.run(pipeline.enrich_by_ids(["B"]))

    assert [order.id for order in enriched] == ["B"]
    assert pipeline.store.get_order("B").has_resolved_items()
    assert not pipeline.store.get_order("A").has_resolved_items()


def _mark_sent(store, order_id):
    store.update_order(
        order_id,
        {
            "review_request_sent": True,
            "review_request_sent_at": "2025-06-15T11:30:00Z",
            "review_request_status": "sent",
            "solicitation_eligible": False,
            "solicitation_reason": "Review request sent",
            "solicitation_reason_code": "already_sent",
        },
    )


class SentDuringItemsClient(FakeClient):
    """Marks the order sent in the store while its items are being fetched."""

    store = None

    def get_order_items(self, order_id):
        _mark_sent(self.store, order_id)
        return super().get_order_items(order_id)


class SentDuringCheckClient(FakeClient):
    """Marks the order sent in the store while its solicitation check runs."""

    store = None

    def is_solicitation_allowed(self, order_id):
        _mark_sent(self.store, order_id)
        return super().is_solicitation_allowed(order_id)


def test_enrich_by_ids_does_not_clear_concurrent_send(tmp_path, monkeypatch):
    client = SentDuringItemsClient()
    pipeline = _pipeline(tmp_path, monkeypatch, client)
    client.store = pipeline.store
    pipeline.store.save_orders([parse_order(raw_order("A"))])
    asyncio.run(pipeline.cache.set(pipeline.store.load_collection()))

    enriched = asyncio.run(pipeline.enrich_by_ids(["A"]))

    stored = pipeline.store.get_order("A")
    assert stored.review_request_sent is True
    assert stored.review_request_status == "sent"
    assert stored.solicitation_reason_code == "already_sent"
    assert stored.has_resolved_items()
    assert enriched[0].review_request_sent is True
    cached = asyncio.run(pipeline.cache.get())
    assert cached.orders[0].review_request_sent is True


def test_sync_recheck_does_not_clear_concurrent_send(tmp_path, monkeypatch):
    client = SentDuringCheckClient(pages=[_page()])
    pipeline = _pipeline(tmp_path, monkeypatch, client)
    client.store = pipeline.store
    pipeline.store.save_orders([parse_order(raw_order("A"))])

    result = asyncio.run(pipeline.sync())

    assert result["solicitation"]["recheckCount"] == 1
    stored = pipeline.store.get_order("A")
    assert stored.review_request_sent is True
    assert stored.solicitation_eligible is False
    assert stored.solicitation_reason_code == "already_sent"
    cached = asyncio.run(pipeline.cache.get())
    assert cached.orders[0].review_request_sent is True


def test_prefetch_job_runs_in_background(tmp_path, monkeypatch):
    client = FakeClient(pages=[_page("A", "B")])
    pipeline = _pipeline(tmp_path, monkeypatch, client)

    async def scenario():
        handle = await pipeline.start_prefetch(OrdersQuery(max_results=10))
        result = await handle.wait(timeout=5)
        return handle, result

    handle, result = asyncio.run(scenario())

    assert handle.status == "completed"
    assert result == {"totalCount": 2, "partial": False}
    assert handle.progress["done"] == 2
