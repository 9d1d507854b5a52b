from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from services.order_models import iso_utc
from services.spapi_schemas import CatalogItem, OrdersPage, RawOrderItem

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


def raw_order(
    order_id: str,
    *,
    days_ago: int = 3,
    status: str = "Shipped",
    email: Optional[str] = "buyer@example.com",
    now: datetime = NOW,
) -> Dict[str, Any]:
    return {
        "AmazonOrderId": order_id,
        "PurchaseDate": iso_utc(now - timedelta(days=days_ago)),
        "OrderStatus": status,
        "FulfillmentChannel": "AFN",
        "SalesChannel": "Amazon.co.jp",
        "OrderTotal": {"Amount": "1980", "CurrencyCode": "JPY"},
        "NumberOfItemsShipped": 1,
        "NumberOfItemsUnshipped": 0,
        "BuyerInfo": {"BuyerEmail": email, "BuyerName": "山田 太郎"} if email else {},
    }


def raw_item(order_id: str, asin: str = "B0TEST0001", qty: int = 1) -> Dict[str, Any]:
    return {
        "OrderItemId": f"{order_id}-item",
        "ASIN": asin,
        "Title": "",
        "QuantityOrdered": qty,
        "ItemPrice": {"Amount": "1980", "CurrencyCode": "JPY"},
    }


class FakeAuth:
    def __init__(self, missing: Optional[List[str]] = None):
        self._missing = missing or []

    def missing_credentials(self) -> List[str]:
        return list(self._missing)

    def invalidate(self) -> None:
        pass


class FakeClient:
    """
    Stand-in for SpApiClient. ``pages`` is a list of (orders, next_token)
    tuples or exceptions, consumed one per get_orders call. ``failing_orders``
    maps order ids to the exception get_order_items raises for them.
    """

    def __init__(
        self,
        pages: Optional[List[Any]] = None,
        *,
        always_token: bool = False,
        failing_orders: Optional[Dict[str, Exception]] = None,
        catalog_failures: Optional[set] = None,
        solicitation_allowed: bool = True,
        send_status: int = 201,
        send_failures: Optional[Dict[str, Exception]] = None,
    ):
        self.pages = list(pages or [])
        self.always_token = always_token
        self.failing_orders = failing_orders or {}
        self.catalog_failures = catalog_failures or set()
        self.solicitation_allowed = solicitation_allowed
        self.send_status = send_status
        self.send_failures = send_failures or {}
        self.marketplace_id = "A1VC38T7YXB528"
        self.base_url = "https://sellingpartnerapi-fe.amazon.com"
        self.use_mock = False
        self.auth = FakeAuth()
        self.orders_calls: List[Dict[str, Any]] = []
        self.items_calls: List[str] = []
        self.catalog_calls: List[str] = []
        self.solicitation_calls: List[str] = []
        self.sent: List[str] = []
        self._lock = threading.Lock()
        self._counter = 0

    def get_orders(self, **kwargs: Any) -> OrdersPage:
        with self._lock:
            self.orders_calls.append(kwargs)
            if self.always_token:
                size = kwargs["max_results_per_page"]
                orders = [raw_order(f"ALWAYS-{self._counter + i:05d}") for i in range(size)]
                self._counter += size
                return OrdersPage.model_validate({"Orders": orders, "NextToken": f"token-{self._counter}"})
            step = self.pages.pop(0)
        if isinstance(step, Exception):
            raise step
        orders, token = step
        return OrdersPage.model_validate({"Orders": orders, "NextToken": token})

    def get_order_items(self, order_id: str) -> List[RawOrderItem]:
        with self._lock:
            self.items_calls.append(order_id)
        if order_id in self.failing_orders:
            raise self.failing_orders[order_id]
        return [RawOrderItem.model_validate(raw_item(order_id))]

    def get_catalog_item(self, asin: str) -> CatalogItem:
        with self._lock:
            self.catalog_calls.append(asin)
        if asin in self.catalog_failures:
            raise RuntimeError(f"catalog down for {asin}")
        return CatalogItem.model_validate(
            {
                "asin": asin,
                "summaries": [{"marketplaceId": self.marketplace_id, "itemName": f"Widget {asin}", "brand": "Acme"}],
                "images": [
                    {
                        "marketplaceId": self.marketplace_id,
                        "images": [{"variant": "MAIN", "link": f"https://img.example/{asin}.jpg"}],
                    }
                ],
            }
        )

    def is_solicitation_allowed(self, order_id: str) -> bool:
        with self._lock:
            self.solicitation_calls.append(order_id)
        return self.solicitation_allowed

    def send_review_solicitation(self, order_id: str) -> int:
        if order_id in self.send_failures:
            raise self.send_failures[order_id]
        self.sent.append(order_id)
        return self.send_status


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
