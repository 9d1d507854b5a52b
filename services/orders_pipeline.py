"""
The order fetch pipeline shared by the HTTP routes and background jobs:

    cache read -> [miss] pagination (client -> parser -> enrichment)
               -> store merge + persist -> cache write

Page size, enrichment and background execution are parameters of one
pipeline rather than separate code paths.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

import config
from auth.spapi_auth import SpApiAuthError
from services.async_utils import process_in_groups
from services.order_cache import OrderCache
from services.order_enrichment import OrderEnricher
from services.order_jobs import OrderJobHandle, OrderJobManager
from services.order_models import CachedOrderCollection, Order, iso_utc, utcnow
from services.order_pagination import OrderFilter, OrderPaginator, clamp_created_before
from services.order_parser import error_item, parse_order_item, quota_exceeded_item
from services.order_store import OrderStore, needs_solicitation_recheck
from services.spapi_client import SpApiClient, SpApiError, SpApiQuotaError

LOGGER = logging.getLogger(__name__)

MAX_ITEM_REFRESH_ORDERS = 10
SYNC_TARGET_COUNT = 500


class OrdersNotLoadedError(LookupError):
    """No cached or stored order collection to work from."""


@dataclass
class OrdersQuery:
    refresh: bool = False
    created_after: Optional[str] = None
    created_before: Optional[str] = None
    next_token: Optional[str] = None
    max_results: int = config.ORDERS_DEFAULT_MAX_RESULTS
    order_statuses: Sequence[str] = ()
    enrich: bool = True


class OrdersPipeline:
    def __init__(
        self,
        client: SpApiClient,
        enricher: OrderEnricher,
        paginator: OrderPaginator,
        store: OrderStore,
        cache: OrderCache,
        jobs: Optional[OrderJobManager] = None,
        *,
        clock: Callable = utcnow,
    ):
        self.client = client
        self.enricher = enricher
        self.paginator = paginator
        self.store = store
        self.cache = cache
        self.jobs = jobs or OrderJobManager()
        self._clock = clock

    # ----------------------------
    # GET /api/orders
    # ----------------------------
    async def get_orders(
        self,
        query: OrdersQuery,
        *,
        should_stop: Optional[Callable[[], bool]] = None,
        on_page: Optional[Callable[[int, int], None]] = None,
    ) -> Dict[str, Any]:
        if not query.refresh and not query.next_token:
            cached = await self.cache.get()
            if cached is not None:
                LOGGER.info(f"[Orders] Returning cached orders: {len(cached.orders)}")
                return {**cached.to_payload(), "fromCache": True}

        order_filter = OrderFilter(
            created_after=query.created_after,
            created_before=query.created_before,
            order_statuses=list(query.order_statuses),
            next_token=query.next_token,
        )
        result = await self.paginator.fetch_orders(
            order_filter,
            query.max_results,
            enrich=query.enrich,
            should_stop=should_stop,
            on_page=on_page,
        )

        orders = result.orders
        if orders:
            full_fetch = not query.next_token and result.stop_reason == "exhausted"
            merge = await asyncio.to_thread(
                self.store.merge_with_new, orders, next_token=result.next_token, full_fetch=full_fetch
            )
            merged_by_id = {order.id: order for order in merge.merged}
            orders = [merged_by_id.get(order.id, order) for order in orders]

        collection = CachedOrderCollection(
            orders=orders,
            last_updated=iso_utc(self._clock()),
            total_count=len(orders),
            next_token=result.next_token,
        )
        # Only a first page is cached; continuation pages are served straight through.
        if not query.next_token and not result.partial:
            collection = await self.cache.set(collection)

        payload = collection.to_payload()
        payload.update(
            {
                "fromCache": False,
                "pages": result.pages,
                "partial": result.partial,
                "stopReason": result.stop_reason,
            }
        )
        if result.error:
            payload["warning"] = result.error
        return payload

    async def current_collection(self) -> CachedOrderCollection:
        cached = await self.cache.get()
        if cached is not None:
            return cached
        stored = await asyncio.to_thread(self.store.load_collection)
        if stored.orders:
            return stored
        raise OrdersNotLoadedError("No order data loaded yet; fetch orders first")

    async def find_orders(self, order_ids: Sequence[str]) -> List[Order]:
        collection = await self.current_collection()
        wanted = set(order_ids)
        return [order for order in collection.orders if order.id in wanted or order.amazon_order_id in wanted]

    # ----------------------------
    # POST /api/orders/sync
    # ----------------------------
    async def sync(self) -> Dict[str, Any]:
        cleanup = await asyncio.to_thread(self.store.prune_expired)

        now = self._clock()
        order_filter = OrderFilter(
            created_after=iso_utc(now - timedelta(days=config.ORDERS_SYNC_LOOKBACK_DAYS)),
            created_before=clamp_created_before(None, now),
        )
        result = await self.paginator.fetch_orders(order_filter, SYNC_TARGET_COUNT, enrich=True)
        merge = await asyncio.to_thread(self.store.merge_with_new, result.orders)

        needs_check = [order for order in merge.merged if needs_solicitation_recheck(order)]
        recheck_count = 0
        if needs_check:
            rechecked = await self.recheck_solicitations(needs_check)
            await asyncio.to_thread(self.store.upsert_orders, rechecked)
            recheck_count = len(rechecked)

        await self.cache.set(await asyncio.to_thread(self.store.load_collection))
        stats = await asyncio.to_thread(self.store.get_stats)
        return {
            "success": True,
            "cleanup": cleanup,
            "sync": {
                "addedCount": merge.added,
                "updatedCount": merge.updated,
                "totalCount": merge.total_count,
                "partial": result.partial,
            },
            "solicitation": {"recheckCount": recheck_count},
            "stats": stats,
        }

    async def recheck_solicitations(self, orders: Sequence[Order]) -> List[Order]:
        async def _recheck(order: Order) -> Order:
            update = await self.enricher.solicitation_update(order, force=True)
            return order.model_copy(update=update) if update else order

        return await process_in_groups(
            list(orders),
            _recheck,
            group_size=self.enricher.group_size,
            pause_seconds=self.enricher.group_pause_seconds,
        )

    # ----------------------------
    # GET /api/orders/load-from-storage
    # ----------------------------
    async def load_from_storage(self) -> Dict[str, Any]:
        collection = await asyncio.to_thread(self.store.load_collection)
        stats = await asyncio.to_thread(self.store.get_stats)
        return {
            "orders": [order.to_payload() for order in collection.orders],
            "totalCount": len(collection.orders),
            "lastUpdated": stats["lastUpdated"],
            "dataFetchedAt": stats["dataFetchedAt"],
            "isValid": stats["isValid"],
            "fromStorage": True,
        }

    # ----------------------------
    # POST /api/orders/items
    # ----------------------------
    async def refresh_items(self, order_ids: Sequence[str]) -> Dict[str, Any]:
        collection = await self.current_collection()
        by_id = {order.amazon_order_id: order for order in collection.orders}
        updated_items: Dict[str, List[Dict[str, Any]]] = {}

        for order_id in list(order_ids)[:MAX_ITEM_REFRESH_ORDERS]:
            order = by_id.get(order_id)
            if order is None:
                LOGGER.warning(f"[Orders] Order not found for item refresh: {order_id}")
                continue
            try:
                raw_items = await asyncio.to_thread(self.client.get_order_items, order_id)
                items = [parse_order_item(raw) for raw in raw_items]
            except SpApiAuthError:
                raise
            except SpApiQuotaError:
                items = [quota_exceeded_item()]
            except (ValueError, SpApiError) as exc:
                LOGGER.warning(f"[Orders] Item refresh failed for {order_id}: {exc}")
                items = [error_item()]
            updated = order.model_copy(update={"items": items}) if items else order
            by_id[order_id] = updated
            updated_items[order_id] = [item.to_payload() for item in updated.items]

        if updated_items:
            orders = [by_id.get(order.amazon_order_id, order) for order in collection.orders]
            await self.cache.set(collection.model_copy(update={"orders": orders}))
        return {"success": True, "updatedItems": updated_items, "processedCount": len(updated_items)}

    # ----------------------------
    # POST /api/orders/enrich
    # ----------------------------
    async def enrich_by_ids(
        self,
        order_ids: Sequence[str],
        *,
        should_stop: Optional[Callable[[], bool]] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> List[Order]:
        targets = await self.find_orders(order_ids)
        if not targets:
            return []
        enriched = await self.enricher.enrich(targets, should_stop=should_stop, on_progress=on_progress)
        await asyncio.to_thread(self.store.upsert_orders, enriched)
        stored = await asyncio.to_thread(self.store.get_orders, [order.id for order in enriched])
        await self.cache.update_orders(stored)
        return stored

    # ----------------------------
    # Background jobs
    # ----------------------------
    async def start_prefetch(self, query: OrdersQuery) -> OrderJobHandle:
        query.refresh = True

        async def _job(handle: OrderJobHandle) -> Dict[str, Any]:
            payload = await self.get_orders(
                query,
                should_stop=handle.should_stop,
                on_page=lambda pages, count: handle.update_progress(count, query.max_results, pages=pages),
            )
            return {"totalCount": payload.get("totalCount"), "partial": payload.get("partial")}

        return await self.jobs.start("prefetch", _job)

    async def start_enrich(self, order_ids: Sequence[str]) -> OrderJobHandle:
        async def _job(handle: OrderJobHandle) -> Dict[str, Any]:
            enriched = await self.enrich_by_ids(
                order_ids, should_stop=handle.should_stop, on_progress=handle.update_progress
            )
            return {"count": len(enriched)}

        return await self.jobs.start("enrich", _job)
