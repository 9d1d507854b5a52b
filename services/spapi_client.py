"""
Rate-limited SP-API client for the Orders, OrderItems, Catalog and
Solicitations endpoints.

Every call goes through a per-endpoint ``RatePacer`` that enforces a hard
minimum spacing between call starts. Pacers are thread-safe because the
async pipeline issues these blocking calls from worker threads
(``asyncio.to_thread``). No call is retried here; callers decide whether to
degrade, stop or retry.
"""

import logging
import threading
import time
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import requests
from pydantic import ValidationError

import config
from auth.spapi_auth import SpApiAuth
from services.order_models import iso_utc, utcnow
from services.perf import time_block
from services.spapi_schemas import (
    CatalogItem,
    OrderItemsPage,
    OrdersPage,
    RawOrderItem,
    SolicitationActions,
)

logger = logging.getLogger(__name__)

USER_AGENT = "seller-orders-review-manager/1.0"
PRODUCT_REVIEW_ACTION = "productReviewAndSellerFeedback"
MAX_ORDERS_PAGE_SIZE = 100
MAX_ORDER_ITEM_PAGES = 5

SP_API_ENDPOINTS = {
    "us-east-1": "https://sellingpartnerapi-na.amazon.com",
    "eu-west-1": "https://sellingpartnerapi-eu.amazon.com",
    "us-west-2": "https://sellingpartnerapi-fe.amazon.com",
}
EU_MARKETPLACE_IDS = {"A2VIGQ35RCS4UG", "A1PA6795UKMFR9", "A13V1IB3VIYZZH", "A1RKKUPIHCS9HS", "A1F83G8C2ARO7P", "APJ6JRA9NG5V4"}
FE_MARKETPLACE_IDS = {"A1VC38T7YXB528", "A39IBJ37TRP1C6", "A19VAU5U5O7RUS"}


class Endpoint(str, Enum):
    ORDERS = "orders"
    ORDER_ITEMS = "order_items"
    CATALOG = "catalog"
    SOLICITATIONS = "solicitations"


# Minimum seconds between two call starts on the same endpoint.
MIN_CALL_INTERVALS = {
    Endpoint.ORDERS: 0.0,
    Endpoint.ORDER_ITEMS: 2.0,
    Endpoint.CATALOG: 0.3,
    Endpoint.SOLICITATIONS: 1.0,
}


class SpApiError(RuntimeError):
    """Non-2xx response (or transport failure) from SP-API."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def is_transient(self) -> bool:
        return self.status_code is None or self.status_code >= 500


class SpApiQuotaError(SpApiError):
    """Raised when SP-API returns a QuotaExceeded / 429."""


class SpApiPayloadError(ValueError):
    """The response body did not have the expected top-level shape."""


class RatePacer:
    def __init__(
        self,
        min_interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = max(0.0, float(min_interval))
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_call: Optional[float] = None

    def wait(self) -> float:
        """Block until the next call may start; returns the seconds slept."""
        with self._lock:
            waited = 0.0
            if self._last_call is not None and self.min_interval > 0:
                remaining = self._last_call + self.min_interval - self._clock()
                if remaining > 0:
                    self._sleep(remaining)
                    waited = remaining
            self._last_call = self._clock()
            return waited


def build_pacers(
    *,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[Endpoint, RatePacer]:
    return {endpoint: RatePacer(interval, clock=clock, sleep=sleep) for endpoint, interval in MIN_CALL_INTERVALS.items()}


def resolve_spapi_host(marketplace_id: str) -> str:
    """Map a marketplace id to its regional SP-API host (NA is the fallback)."""
    marketplace_id = (marketplace_id or "").strip()
    if marketplace_id in EU_MARKETPLACE_IDS:
        return SP_API_ENDPOINTS["eu-west-1"]
    if marketplace_id in FE_MARKETPLACE_IDS:
        return SP_API_ENDPOINTS["us-west-2"]
    return SP_API_ENDPOINTS["us-east-1"]


def _payload_section(data: Any, endpoint: Endpoint) -> Dict[str, Any]:
    if not isinstance(data, dict) or not isinstance(data.get("payload"), dict):
        keys = list(data.keys()) if isinstance(data, dict) else type(data).__name__
        raise SpApiPayloadError(f"{endpoint.value} response missing 'payload' object (got {keys})")
    return data["payload"]


class SpApiClient:
    def __init__(
        self,
        auth: Optional[SpApiAuth] = None,
        *,
        marketplace_id: Optional[str] = None,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        pacers: Optional[Dict[Endpoint, RatePacer]] = None,
        timeout: Optional[float] = None,
        use_mock: Optional[bool] = None,
    ):
        self.auth = auth or SpApiAuth()
        self.marketplace_id = marketplace_id or config.MARKETPLACE_ID
        self.base_url = (base_url or config.SPAPI_BASE_URL or resolve_spapi_host(self.marketplace_id)).rstrip("/")
        self.session = session or requests.Session()
        self.pacers = pacers or build_pacers()
        self.timeout = config.SPAPI_TIMEOUT_SECONDS if timeout is None else timeout
        self.use_mock = config.USE_MOCK_DATA if use_mock is None else use_mock

    # ------------------------------------------------------------
    # Core request
    # ------------------------------------------------------------
    def _execute(
        self,
        endpoint: Endpoint,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Dict[str, Any]]:
        if self.use_mock:
            return _mock_response(endpoint, method, path)

        pacer = self.pacers.get(endpoint)
        if pacer is not None:
            pacer.wait()

        access_token = self.auth.get_lwa_access_token()
        headers = {
            "x-amz-access-token": access_token,
            "accept": "application/json",
            "content-type": "application/json",
            "user-agent": USER_AGENT,
        }
        url = f"{self.base_url}{path}"
        try:
            with time_block(f"spapi.{endpoint.value}"):
                resp = self.session.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    headers=headers,
                    timeout=self.timeout,
                )
        except requests.exceptions.Timeout as exc:
            logger.error("[SpApi] Timeout after %ss on %s %s", self.timeout, method, path)
            raise SpApiError(f"{endpoint.value} request timed out", body=str(exc)) from exc
        except requests.exceptions.RequestException as exc:
            logger.error("[SpApi] Network error on %s %s: %s", method, path, exc)
            raise SpApiError(f"{endpoint.value} network error: {exc}", body=str(exc)) from exc

        if resp.status_code == 429:
            logger.warning("[SpApi] %s %s -> 429 QuotaExceeded", method, path)
            raise SpApiQuotaError(f"QuotaExceeded on {endpoint.value}", status_code=429, body=resp.text)
        if resp.status_code in (401, 403):
            # Force a token refresh on the next call; the current one may have been revoked.
            self.auth.invalidate()
        if resp.status_code >= 300:
            logger.error("[SpApi] %s %s failed %s: %s", method, path, resp.status_code, resp.text[:500])
            raise SpApiError(
                f"API request failed: {resp.status_code} on {endpoint.value}",
                status_code=resp.status_code,
                body=resp.text,
            )
        if not resp.content:
            return resp.status_code, {}
        try:
            data = resp.json()
        except ValueError as exc:
            raise SpApiPayloadError(f"{endpoint.value} returned non-JSON body") from exc
        return resp.status_code, data if isinstance(data, dict) else {"payload": data}

    def request(
        self,
        endpoint: Endpoint,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        _status, data = self._execute(endpoint, method, path, params=params, json_body=json_body)
        return data

    # ------------------------------------------------------------
    # Typed endpoint helpers
    # ------------------------------------------------------------
    def get_orders(
        self,
        *,
        created_after: Optional[str] = None,
        created_before: Optional[str] = None,
        order_statuses: Optional[Iterable[str]] = None,
        max_results_per_page: int = MAX_ORDERS_PAGE_SIZE,
        next_token: Optional[str] = None,
    ) -> OrdersPage:
        params: Dict[str, Any] = {
            "MarketplaceIds": self.marketplace_id,
            "MaxResultsPerPage": max(1, min(MAX_ORDERS_PAGE_SIZE, int(max_results_per_page))),
        }
        if created_after:
            params["CreatedAfter"] = created_after
        if created_before:
            params["CreatedBefore"] = created_before
        statuses = [s for s in (order_statuses or []) if s]
        if statuses:
            params["OrderStatuses"] = ",".join(statuses)
        if next_token:
            params["NextToken"] = next_token
        data = self.request(Endpoint.ORDERS, "GET", "/orders/v0/orders", params=params)
        return OrdersPage.model_validate(_payload_section(data, Endpoint.ORDERS))

    def get_order_items(self, order_id: str) -> List[RawOrderItem]:
        items: List[RawOrderItem] = []
        next_token: Optional[str] = None
        for _page in range(MAX_ORDER_ITEM_PAGES):
            params = {"NextToken": next_token} if next_token else None
            data = self.request(Endpoint.ORDER_ITEMS, "GET", f"/orders/v0/orders/{order_id}/orderItems", params=params)
            page = OrderItemsPage.model_validate(_payload_section(data, Endpoint.ORDER_ITEMS))
            items.extend(page.order_items)
            next_token = page.next_token
            if not next_token:
                break
        return items

    def get_catalog_item(self, asin: str) -> CatalogItem:
        params = {
            "marketplaceIds": self.marketplace_id,
            "includedData": "summaries,images,productTypes",
        }
        data = self.request(Endpoint.CATALOG, "GET", f"/catalog/2022-04-01/items/{asin}", params=params)
        payload = data.get("item") if isinstance(data.get("item"), dict) else data
        payload = dict(payload)
        payload.setdefault("asin", asin)
        try:
            return CatalogItem.model_validate(payload)
        except ValidationError as exc:
            raise SpApiPayloadError(f"Catalog payload for {asin} is malformed: {exc}") from exc

    def get_solicitation_actions(self, order_id: str) -> SolicitationActions:
        data = self.request(
            Endpoint.SOLICITATIONS,
            "GET",
            f"/solicitations/v1/orders/{order_id}",
            params={"marketplaceIds": self.marketplace_id},
        )
        return SolicitationActions.model_validate(data)

    def is_solicitation_allowed(self, order_id: str) -> bool:
        return self.get_solicitation_actions(order_id).allows(PRODUCT_REVIEW_ACTION)

    def send_review_solicitation(self, order_id: str) -> int:
        status, _data = self._execute(
            Endpoint.SOLICITATIONS,
            "POST",
            f"/solicitations/v1/orders/{order_id}/solicitations/{PRODUCT_REVIEW_ACTION}",
            params={"marketplaceIds": self.marketplace_id},
            json_body={},
        )
        return status


# ------------------------------------------------------------
# Mock mode (USE_MOCK_DATA=true): canned payloads, no network
# ------------------------------------------------------------
def _mock_response(endpoint: Endpoint, method: str, path: str) -> Tuple[int, Dict[str, Any]]:
    now = utcnow()
    if endpoint == Endpoint.ORDERS:
        return 200, {
            "payload": {
                "Orders": [
                    {
                        "AmazonOrderId": "112-1234567-1234567",
                        "PurchaseDate": iso_utc(now - timedelta(days=3)),
                        "OrderStatus": "Shipped",
                        "FulfillmentChannel": "AFN",
                        "SalesChannel": "Amazon.co.jp",
                        "OrderTotal": {"Amount": "12800", "CurrencyCode": "JPY"},
                        "NumberOfItemsShipped": 2,
                        "NumberOfItemsUnshipped": 0,
                        "BuyerInfo": {"BuyerName": "田中太郎", "BuyerEmail": "customer@example.com"},
                    },
                    {
                        "AmazonOrderId": "112-1234567-1234568",
                        "PurchaseDate": iso_utc(now - timedelta(days=4)),
                        "OrderStatus": "Pending",
                        "FulfillmentChannel": "MFN",
                        "SalesChannel": "Amazon.co.jp",
                        "OrderTotal": {"Amount": "8900", "CurrencyCode": "JPY"},
                        "NumberOfItemsShipped": 0,
                        "NumberOfItemsUnshipped": 1,
                        "BuyerInfo": {"BuyerName": "佐藤花子", "BuyerEmail": "customer2@example.com"},
                    },
                ],
                "NextToken": None,
            }
        }
    if endpoint == Endpoint.ORDER_ITEMS:
        return 200, {
            "payload": {
                "OrderItems": [
                    {
                        "OrderItemId": "12345678901234",
                        "Title": "VTコスメティックス シカスキン テスト商品",
                        "ASIN": "B09VBFCBWZ",
                        "QuantityOrdered": "1",
                        "ItemPrice": {"Amount": "2480", "CurrencyCode": "JPY"},
                    }
                ]
            }
        }
    if endpoint == Endpoint.CATALOG:
        asin = path.rstrip("/").rsplit("/", 1)[-1]
        return 200, {
            "asin": asin,
            "summaries": [{"itemName": f"Mock product {asin}", "brand": "MockBrand", "productType": "BEAUTY"}],
            "images": [],
        }
    if endpoint == Endpoint.SOLICITATIONS:
        if method.upper() == "POST":
            return 201, {}
        return 200, {
            "_links": {
                "actions": [
                    {"href": f"{path}/solicitations/{PRODUCT_REVIEW_ACTION}", "name": PRODUCT_REVIEW_ACTION}
                ]
            }
        }
    return 200, {"payload": {}}
