import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import config
from services.order_enrichment import OrderEnricher
from services.order_models import Order, iso_utc, parse_iso_datetime, utcnow
from services.order_parser import parse_order
from services.spapi_client import MAX_ORDERS_PAGE_SIZE, SpApiClient, SpApiError

logger = logging.getLogger(__name__)

# Orders API rejects CreatedBefore values closer than two minutes to now.
CREATED_BEFORE_SAFETY_MARGIN = timedelta(minutes=2)
PAGE_CAP_SLACK = 5


@dataclass
class OrderFilter:
    created_after: Optional[str] = None
    created_before: Optional[str] = None
    order_statuses: List[str] = field(default_factory=list)
    next_token: Optional[str] = None


@dataclass
class OrdersFetchResult:
    orders: List[Order]
    next_token: Optional[str]
    total_count: int
    pages: int = 0
    partial: bool = False
    error: Optional[str] = None
    stop_reason: str = ""


def page_cap(target: int, page_size: int) -> int:
    """Safety backstop on page count; short pages with a token keep the loop going."""
    pages_needed = math.ceil(target / page_size)
    return max(pages_needed * 2, pages_needed + PAGE_CAP_SLACK)


def clamp_created_before(value: Optional[str], now: datetime) -> str:
    latest_allowed = now - CREATED_BEFORE_SAFETY_MARGIN
    requested = parse_iso_datetime(value)
    if requested is None or requested > latest_allowed:
        return iso_utc(latest_allowed)
    return iso_utc(requested)


class OrderPaginator:
    """Drives the Orders endpoint page by page, enriching each page before requesting the next."""

    def __init__(
        self,
        client: SpApiClient,
        enricher: Optional[OrderEnricher] = None,
        *,
        page_size: int = MAX_ORDERS_PAGE_SIZE,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.client = client
        self.enricher = enricher
        self.page_size = max(1, min(MAX_ORDERS_PAGE_SIZE, int(page_size)))
        self._clock = clock

    async def fetch_orders(
        self,
        order_filter: OrderFilter,
        target_count: int,
        *,
        enrich: bool = True,
        should_stop: Optional[Callable[[], bool]] = None,
        on_page: Optional[Callable[[int, int], None]] = None,
    ) -> OrdersFetchResult:
        target = max(1, int(target_count))
        max_pages = page_cap(target, self.page_size)
        now = self._clock()

        created_after = order_filter.created_after
        if not created_after and not order_filter.next_token:
            created_after = iso_utc(now - timedelta(days=config.ORDERS_DEFAULT_LOOKBACK_DAYS))
        created_before = clamp_created_before(order_filter.created_before, now)

        accumulated: List[Order] = []
        seen_ids = set()
        token = order_filter.next_token
        pages = 0
        partial = False
        error: Optional[str] = None
        stop_reason = ""

        while True:
            if should_stop is not None and should_stop():
                stop_reason = "cancelled"
                break
            remaining = target - len(accumulated)
            try:
                page = await asyncio.to_thread(
                    self.client.get_orders,
                    created_after=created_after,
                    created_before=created_before,
                    order_statuses=order_filter.order_statuses,
                    max_results_per_page=min(self.page_size, remaining),
                    next_token=token,
                )
            except SpApiError as exc:
                logger.warning(
                    "[Orders] Page %s failed (status=%s); returning %s accumulated orders",
                    pages + 1,
                    exc.status_code,
                    len(accumulated),
                )
                partial = True
                error = str(exc)
                stop_reason = "upstream_error"
                break

            pages += 1
            parsed: List[Order] = []
            for raw in page.orders:
                if raw.amazon_order_id in seen_ids:
                    logger.info("[Orders] Duplicate order %s on page %s ignored", raw.amazon_order_id, pages)
                    continue
                seen_ids.add(raw.amazon_order_id)
                parsed.append(parse_order(raw))
            if len(parsed) > remaining:
                logger.warning(
                    "[Orders] Page %s returned %s new orders for %s requested; dropping %s past the target",
                    pages,
                    len(parsed),
                    remaining,
                    len(parsed) - remaining,
                )
                parsed = parsed[:remaining]

            if enrich and self.enricher is not None and parsed:
                parsed = await self.enricher.enrich(parsed, should_stop=should_stop)

            accumulated.extend(parsed)
            token = page.next_token
            logger.info(
                "[Orders] Page %s: %s orders (total %s/%s, nextToken=%s)",
                pages,
                len(parsed),
                len(accumulated),
                target,
                "present" if token else "none",
            )
            if on_page is not None:
                on_page(pages, len(accumulated))

            if len(accumulated) >= target:
                stop_reason = "target_reached"
                break
            if not token:
                stop_reason = "exhausted"
                break
            if pages >= max_pages:
                stop_reason = "page_cap"
                break

        return OrdersFetchResult(
            orders=accumulated,
            next_token=token or None,
            total_count=len(accumulated),
            pages=pages,
            partial=partial,
            error=error,
            stop_reason=stop_reason,
        )
