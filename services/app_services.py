"""
Service container built once at startup and stored on ``app.state.services``.
Routes resolve it with ``Depends(get_services)``; tests swap in their own
container by assigning ``app.state.services``.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fastapi import Request

import config
from auth.spapi_auth import SpApiAuth
from services.order_cache import OrderCache
from services.order_enrichment import OrderEnricher
from services.order_jobs import OrderJobManager
from services.order_pagination import OrderPaginator
from services.order_store import OrderStore
from services.orders_pipeline import OrdersPipeline
from services.review_service import ReviewService
from services.spapi_client import SpApiClient

LOGGER = logging.getLogger(__name__)


@dataclass
class AppServices:
    client: SpApiClient
    store: OrderStore
    cache: OrderCache
    enricher: OrderEnricher
    paginator: OrderPaginator
    jobs: OrderJobManager
    pipeline: OrdersPipeline
    review: ReviewService

    @property
    def db_path(self) -> Optional[Path]:
        return self.store.db_path


def build_services(
    client: Optional[SpApiClient] = None,
    *,
    db_path: Optional[Path] = None,
    cache_dir: Optional[Path] = None,
    group_pause_seconds: float = config.ENRICH_GROUP_PAUSE_SECONDS,
) -> AppServices:
    client = client or SpApiClient(SpApiAuth())
    store = OrderStore(db_path or config.ORDERS_DB_PATH)
    cache = OrderCache(cache_dir or config.ORDERS_CACHE_DIR)
    enricher = OrderEnricher(client, group_size=config.ENRICH_GROUP_SIZE, group_pause_seconds=group_pause_seconds)
    paginator = OrderPaginator(client, enricher)
    jobs = OrderJobManager()
    pipeline = OrdersPipeline(client, enricher, paginator, store, cache, jobs)
    review = ReviewService(client, store, cache)
    LOGGER.info(
        f"[Services] Built (marketplace={client.marketplace_id}, host={client.base_url}, mock={client.use_mock})"
    )
    return AppServices(
        client=client,
        store=store,
        cache=cache,
        enricher=enricher,
        paginator=paginator,
        jobs=jobs,
        pipeline=pipeline,
        review=review,
    )


def get_services(request: Request) -> AppServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        services = build_services()
        request.app.state.services = services
    return services
