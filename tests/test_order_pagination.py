from __future__ import annotations

import asyncio
import logging
import math

from conftest import NOW, FakeClient, no_sleep, raw_order
from services import db as db_service
from services.order_enrichment import OrderEnricher
from services.order_models import LOADING_ITEM_ID
from services.order_pagination import OrderFilter, OrderPaginator, clamp_created_before, page_cap
from services.order_store import OrderStore
from services.spapi_client import SpApiError


def _page(prefix, count, token):
    return ([raw_order(f"{prefix}-{i:03d}") for i in range(count)], token)


def _paginator(client, enrich=False):
    enricher = OrderEnricher(client, group_pause_seconds=0, sleep=no_sleep) if enrich else None
    return OrderPaginator(client, enricher, clock=lambda: NOW)


def test_always_present_token_stops_at_target():
    client = FakeClient(always_token=True)
    result = asyncio.run(_paginator(client).fetch_orders(OrderFilter(), 250, enrich=False))

    assert len(client.orders_calls) == math.ceil(250 / 100) == 3
    assert [call["max_results_per_page"] for call in client.orders_calls] == [100, 100, 50]
    assert result.total_count == 250
    assert result.stop_reason == "target_reached"
    assert result.next_token is not None


def test_exhausted_pages_merge_into_empty_store(tmp_path, monkeypatch):
    monkeypatch.setattr(db_service, "ORDERS_DB_PATH", tmp_path / "orders.db")
    client = FakeClient(pages=[_page("P1", 100, "t1"), _page("P2", 100, "t2"), _page("P3", 50, None)])

    result = asyncio.run(_paginator(client).fetch_orders(OrderFilter(), 500, enrich=False))

    assert result.pages == 3
    assert result.total_count == 250
    assert result.next_token is None
    assert result.stop_reason == "exhausted"
    assert [call["next_token"] for call in client.orders_calls] == [None, "t1", "t2"]

    merge = OrderStore(clock=lambda: NOW).merge_with_new(result.orders)
    assert (merge.added, merge.updated, merge.total_count) == (250, 0, 250)


def test_failed_page_returns_partial_result():
    client = FakeClient(pages=[_page("P1", 100, "t1"), SpApiError("down", status_code=503)])

    result = asyncio.run(_paginator(client).fetch_orders(OrderFilter(), 500, enrich=False))

    assert result.partial is True
    assert result.stop_reason == "upstream_error"
    assert result.total_count == 100
    assert result.next_token == "t1"
    assert "down" in result.error


def test_duplicates_across_pages_are_dropped():
    page_one = [raw_order("A"), raw_order("B")]
    page_two = [raw_order("B"), raw_order("C")]
    client = FakeClient(pages=[(page_one, "t1"), (page_two, None)])

    result = asyncio.run(_paginator(client).fetch_orders(OrderFilter(), 10, enrich=False))

    assert [order.id for order in result.orders] == ["A", "B", "C"]


def test_page_is_trimmed_to_target(caplog):
    client = FakeClient(pages=[_page("P1", 10, "t1")])
    with caplog.at_level(logging.WARNING, logger="services.order_pagination"):
        result = asyncio.run(_paginator(client).fetch_orders(OrderFilter(), 4, enrich=False))

    assert result.total_count == 4
    assert client.orders_calls[0]["max_results_per_page"] == 4
    assert "dropping 6 past the target" in caplog.text


def test_short_pages_with_token_continue_to_exhaustion():
    client = FakeClient(
        pages=[_page("P1", 10, "t1"), _page("P2", 10, "t2"), _page("P3", 10, "t3"), _page("P4", 5, None)]
    )

    result = asyncio.run(_paginator(client).fetch_orders(OrderFilter(), 50, enrich=False))

    assert result.pages == 4
    assert result.total_count == 35
    assert result.stop_reason == "exhausted"
    assert [call["max_results_per_page"] for call in client.orders_calls] == [50, 40, 30, 20]


def test_short_pages_with_token_continue_to_target():
    client = FakeClient(pages=[_page(f"P{n}", 3, f"t{n}") for n in range(4)])

    result = asyncio.run(_paginator(client).fetch_orders(OrderFilter(), 10, enrich=False))

    assert result.total_count == 10
    assert result.stop_reason == "target_reached"
    assert [call["max_results_per_page"] for call in client.orders_calls] == [10, 7, 4, 1]


def test_empty_pages_with_token_stop_at_page_cap():
    assert page_cap(10, 100) == 6
    assert page_cap(1000, 100) == 20
    client = FakeClient(pages=[([], f"t{n}") for n in range(10)])

    result = asyncio.run(_paginator(client).fetch_orders(OrderFilter(), 10, enrich=False))

    assert result.stop_reason == "page_cap"
    assert result.pages == 6
    assert result.orders == []
    assert result.next_token == "t5"


def test_non_finite_counts_do_not_abort_the_page():
    bad = raw_order("BAD")
    bad["NumberOfItemsShipped"] = "Infinity"
    client = FakeClient(pages=[([bad, raw_order("OK")], None)])

    result = asyncio.run(_paginator(client).fetch_orders(OrderFilter(), 10, enrich=False))

    assert [order.id for order in result.orders] == ["BAD", "OK"]
    assert result.orders[0].number_of_items_shipped == 0


def test_each_page_is_enriched_before_next_request():
    client = FakeClient(pages=[_page("P1", 2, "t1"), _page("P2", 1, None)])
    seen = []

    result = asyncio.run(
        _paginator(client, enrich=True).fetch_orders(
            OrderFilter(), 10, on_page=lambda pages, total: seen.append((pages, total, len(client.items_calls)))
        )
    )

    assert seen == [(1, 2, 2), (2, 3, 3)]
    assert all(order.items[0].id != LOADING_ITEM_ID for order in result.orders)


def test_cancellation_before_first_page():
    client = FakeClient(pages=[_page("P1", 5, None)])
    result = asyncio.run(_paginator(client).fetch_orders(OrderFilter(), 10, should_stop=lambda: True))

    assert result.stop_reason == "cancelled"
    assert result.orders == []
    assert client.orders_calls == []


def test_default_window_and_created_before_clamp():
    client = FakeClient(pages=[_page("P1", 1, None)])
    asyncio.run(
        _paginator(client).fetch_orders(OrderFilter(created_before="2099-01-01T00:00:00Z"), 10, enrich=False)
    )

    call = client.orders_calls[0]
    assert call["created_before"] == "2025-06-15T11:58:00Z"
    assert call["created_after"] == "2025-05-16T12:00:00Z"


def test_clamp_keeps_past_values():
    assert clamp_created_before("2025-06-01T00:00:00Z", NOW) == "2025-06-01T00:00:00Z"
    assert clamp_created_before(None, NOW) == "2025-06-15T11:58:00Z"
