"""
Order enrichment: line items, catalog detail and solicitation eligibility.

Orders are processed in small concurrent groups with a pause between
groups. Inside one order, catalog lookups and the solicitation check run
concurrently once the line items are known. The per-endpoint pacing itself
lives in the client's ``RatePacer`` objects, so concurrent orders still
queue behind the OrderItems / Catalog / Solicitations minimum spacing.

A failing order never aborts the batch: it comes back degraded with
``reviewRequestStatus="error"``. Only authentication failures propagate.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import config
from auth.spapi_auth import SpApiAuthError
from services.async_utils import process_in_groups, run_single_arg
from services.order_models import UNKNOWN_ITEM_ID, Order, OrderItem, SolicitationReasonCode
from services.order_parser import (
    error_item,
    generate_image_url,
    parse_order_item,
    placeholder_item,
    quota_exceeded_item,
)
from services.spapi_client import SpApiClient, SpApiQuotaError
from services.spapi_schemas import CatalogItem

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


def fallback_title(asin: str) -> str:
    return f"商品 {asin}"


def apply_catalog(item: OrderItem, catalog: Optional[CatalogItem]) -> OrderItem:
    if not item.asin:
        return item
    if catalog is None:
        return item.model_copy(
            update={
                "title": item.title or fallback_title(item.asin),
                "image_url": item.image_url or generate_image_url(item.asin),
            }
        )
    return item.model_copy(
        update={
            "title": item.title or catalog.title() or fallback_title(item.asin),
            "image_url": catalog.main_image() or item.image_url or generate_image_url(item.asin),
            "brand": catalog.brand() or item.brand,
            "manufacturer": catalog.manufacturer() or item.manufacturer,
            "product_type": catalog.product_type() or item.product_type,
        }
    )


def degraded_order(order: Order, exc: BaseException) -> Order:
    items = order.items if order.has_resolved_items() else [error_item()]
    return order.model_copy(
        update={
            "items": items,
            "review_request_status": "error",
            "solicitation_reason": f"Enrichment failed: {exc}",
            "solicitation_reason_code": SolicitationReasonCode.CHECK_FAILED.value,
        }
    )


class OrderEnricher:
    def __init__(
        self,
        client: SpApiClient,
        *,
        group_size: int = config.ENRICH_GROUP_SIZE,
        group_pause_seconds: float = config.ENRICH_GROUP_PAUSE_SECONDS,
        check_solicitation: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.group_size = max(1, int(group_size))
        self.group_pause_seconds = max(0.0, float(group_pause_seconds))
        self.check_solicitation = check_solicitation
        self._sleep = sleep
        self._catalog_memo: Dict[str, CatalogItem] = {}

    async def enrich(
        self,
        orders: Sequence[Order],
        *,
        should_stop: Optional[Callable[[], bool]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[Order]:
        """
        Enrich ``orders`` and return a list of the same length and order.

        When ``should_stop`` fires between groups, the orders not yet
        processed are returned unchanged (still carrying placeholders).
        """
        orders = list(orders)
        if not orders:
            return []
        processed = await process_in_groups(
            orders,
            self.enrich_order,
            group_size=self.group_size,
            pause_seconds=self.group_pause_seconds,
            should_stop=should_stop,
            on_group_done=on_progress,
            sleep=self._sleep,
        )
        if len(processed) < len(orders):
            logger.info("[Enrich] Stopped after %s/%s orders", len(processed), len(orders))
        return processed + orders[len(processed):]

    async def enrich_order(self, order: Order) -> Order:
        try:
            return await self._enrich_order(order)
        except SpApiAuthError:
            raise
        except Exception as exc:
            logger.warning("[Enrich] Order %s degraded: %s", order.amazon_order_id, exc)
            return degraded_order(order, exc)

    async def _enrich_order(self, order: Order) -> Order:
        try:
            raw_items = await asyncio.to_thread(self.client.get_order_items, order.amazon_order_id)
        except SpApiQuotaError:
            logger.warning("[Enrich] API quota exceeded for order %s, skipping items", order.amazon_order_id)
            return order.model_copy(update={"items": [quota_exceeded_item()]})

        items = [parse_order_item(raw) for raw in raw_items]
        if not items:
            items = [placeholder_item(UNKNOWN_ITEM_ID, "商品情報なし")]

        asins = []
        for item in items:
            if item.asin and item.asin not in asins:
                asins.append(item.asin)
        if not asins:
            return order.model_copy(update={"items": items})

        catalog_map, solicitation = await asyncio.gather(
            self._fetch_catalog(asins),
            self.solicitation_update(order),
        )
        update: Dict[str, Any] = {"items": [apply_catalog(item, catalog_map.get(item.asin)) for item in items]}
        update.update(solicitation)
        return order.model_copy(update=update)

    async def _fetch_catalog(self, asins: List[str]) -> Dict[str, CatalogItem]:
        found = {asin: self._catalog_memo[asin] for asin in asins if asin in self._catalog_memo}
        missing = [asin for asin in asins if asin not in found]
        if not missing:
            return found
        results = await run_single_arg(self.client.get_catalog_item, missing, max_concurrency=len(missing), return_exceptions=True)
        for asin, result in zip(missing, results):
            if isinstance(result, CatalogItem):
                self._catalog_memo[asin] = result
                found[asin] = result
            else:
                logger.info("[Enrich] Catalog lookup failed for %s: %s", asin, result)
        return found

    async def solicitation_update(self, order: Order, *, force: bool = False) -> Dict[str, Any]:
        """Field updates from the Solicitations check; empty when skipped."""
        if order.review_request_sent or not (self.check_solicitation or force):
            return {}
        try:
            allowed = await asyncio.to_thread(self.client.is_solicitation_allowed, order.amazon_order_id)
        except SpApiAuthError:
            raise
        except Exception as exc:
            logger.info("[Enrich] Solicitation check failed for %s: %s", order.amazon_order_id, exc)
            return {
                "solicitation_reason": f"Eligibility check failed: {exc}",
                "solicitation_reason_code": SolicitationReasonCode.CHECK_FAILED.value,
            }
        return solicitation_fields(allowed)


def solicitation_fields(allowed: bool) -> Dict[str, Any]:
    if allowed:
        return {
            "solicitation_eligible": True,
            "solicitation_reason": "Eligible for a review request",
            "solicitation_reason_code": SolicitationReasonCode.ELIGIBLE.value,
            "review_request_status": "eligible",
        }
    return {
        "solicitation_eligible": False,
        "solicitation_reason": "Not eligible on Amazon (already requested or excluded)",
        "solicitation_reason_code": SolicitationReasonCode.NOT_ELIGIBLE_UPSTREAM.value,
        "review_request_status": "not_eligible",
    }
