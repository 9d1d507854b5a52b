from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Query
from pydantic import BaseModel, ConfigDict, Field, ValidationError

import config
from routes.error_handlers import error_response
from services.app_services import AppServices, get_services
from services.order_models import ReviewTemplate, SolicitationReasonCode
from services.orders_pipeline import OrdersQuery
from services.review_service import is_locally_eligible, summarize_batch

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders")
JOB_STREAMS = {"prefetch", "enrich"}


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class OrderIdsRequest(_Body):
    order_ids: List[str] = Field(..., alias="orderIds", min_length=1)


class EnrichRequest(_Body):
    order_ids: List[str] = Field(..., alias="orderIds")
    background: bool = False


class ReviewRequestBody(_Body):
    order_ids: List[str] = Field(..., alias="orderIds", min_length=1)
    type: Literal["single", "batch"] = "batch"
    custom_template: Optional[ReviewTemplate] = Field(None, alias="customTemplate")


class PrefetchRequest(_Body):
    created_after: Optional[str] = Field(None, alias="createdAfter")
    created_before: Optional[str] = Field(None, alias="createdBefore")
    max_results: int = Field(config.ORDERS_DEFAULT_MAX_RESULTS, alias="maxResults", ge=1)


def _parse(model, payload: Any):
    """Validate a request body; returns (model, None) or (None, 400 response)."""
    try:
        return model.model_validate(payload if isinstance(payload, dict) else {}), None
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        detail = f"{'.'.join(str(p) for p in first.get('loc', ()))}: {first.get('msg', 'invalid')}"
        return None, error_response(400, "invalid_request", detail)


@router.get("")
async def get_orders(
    refresh: bool = False,
    created_after: Optional[str] = Query(None, alias="createdAfter"),
    created_before: Optional[str] = Query(None, alias="createdBefore"),
    next_token: Optional[str] = Query(None, alias="nextToken"),
    max_results: int = Query(config.ORDERS_DEFAULT_MAX_RESULTS, alias="maxResults", ge=1),
    services: AppServices = Depends(get_services),
):
    logger.info(
        "[Orders] GET refresh=%s nextToken=%s maxResults=%s", refresh, "present" if next_token else "none", max_results
    )
    query = OrdersQuery(
        refresh=refresh,
        created_after=created_after,
        created_before=created_before,
        next_token=next_token,
        max_results=max_results,
    )
    return await services.pipeline.get_orders(query)


@router.get("/load-from-storage")
async def load_from_storage(services: AppServices = Depends(get_services)):
    return await services.pipeline.load_from_storage()


@router.post("/sync")
async def sync_orders(services: AppServices = Depends(get_services)):
    return await services.pipeline.sync()


@router.post("/items")
async def refresh_order_items(payload: dict = Body(default_factory=dict), services: AppServices = Depends(get_services)):
    body, error = _parse(OrderIdsRequest, payload)
    if error is not None:
        return error
    return await services.pipeline.refresh_items(body.order_ids)


@router.post("/enrich")
async def enrich_orders(payload: dict = Body(default_factory=dict), services: AppServices = Depends(get_services)):
    body, error = _parse(EnrichRequest, payload)
    if error is not None:
        return error
    if body.background:
        handle = await services.pipeline.start_enrich(body.order_ids)
        return {"success": True, "job": handle.snapshot()}
    orders = await services.pipeline.enrich_by_ids(body.order_ids)
    return {"success": True, "orders": [order.to_payload() for order in orders], "count": len(orders)}


@router.post("/prefetch")
async def prefetch_orders(payload: dict = Body(default_factory=dict), services: AppServices = Depends(get_services)):
    body, error = _parse(PrefetchRequest, payload)
    if error is not None:
        return error
    handle = await services.pipeline.start_prefetch(
        OrdersQuery(
            refresh=True,
            created_after=body.created_after,
            created_before=body.created_before,
            max_results=body.max_results,
        )
    )
    return {"success": True, "job": handle.snapshot()}


@router.get("/jobs/{stream}")
def get_job(stream: str, services: AppServices = Depends(get_services)):
    if stream not in JOB_STREAMS:
        return error_response(404, f"Unknown job stream: {stream}")
    handle = services.jobs.get(stream)
    if handle is None:
        return {"stream": stream, "status": "idle"}
    return handle.snapshot()


@router.delete("/jobs/{stream}")
async def cancel_job(stream: str, services: AppServices = Depends(get_services)):
    if stream not in JOB_STREAMS:
        return error_response(404, f"Unknown job stream: {stream}")
    cancelled = await services.jobs.cancel(stream)
    return {"stream": stream, "cancelled": cancelled}


@router.get("/cache/stats")
async def cache_stats(services: AppServices = Depends(get_services)):
    store_stats = await asyncio.to_thread(services.store.get_stats)
    return {"cache": services.cache.stats(), "storage": store_stats}


# ----------------------------
# Review requests
# ----------------------------
@router.get("/review-request")
async def get_review_candidates(services: AppServices = Depends(get_services)):
    collection = await services.pipeline.current_collection()
    eligible = services.review.get_eligible(collection.orders)
    return {
        "success": True,
        "totalOrders": len(collection.orders),
        "eligibleOrders": len(eligible),
        "orders": [order.to_payload() for order in eligible],
    }


@router.post("/review-request")
async def send_review_requests(payload: dict = Body(default_factory=dict), services: AppServices = Depends(get_services)):
    body, error = _parse(ReviewRequestBody, payload)
    if error is not None:
        return error

    targets = await services.pipeline.find_orders(body.order_ids)
    if not targets:
        return error_response(404, "指定された注文IDの注文が見つかりません")

    eligible = services.review.get_eligible(targets)
    if not eligible:
        return error_response(
            400,
            "レビュー依頼可能な注文がありません",
            "発送済み、30日以内、未送信、メールアドレスありの条件を満たす注文がありません",
        )

    if body.type == "batch":
        batch = await services.review.send_batch(eligible, body.custom_template)
        return summarize_batch(batch)

    if len(eligible) > 1:
        return error_response(400, "個別送信の場合は1件の注文のみ指定してください")
    result = await services.review.send_single(eligible[0], body.custom_template)
    sent = result.status == "sent"
    return {
        "success": sent,
        "type": "single",
        "result": result.to_payload(),
        "message": "レビュー依頼を送信しました" if sent else f"レビュー依頼の送信に失敗しました: {result.message}",
    }


@router.post("/check-eligibility")
async def check_eligibility(payload: dict = Body(default_factory=dict), services: AppServices = Depends(get_services)):
    body, error = _parse(OrderIdsRequest, payload)
    if error is not None:
        return error

    collection = await services.pipeline.current_collection()
    by_id = {order.id: order for order in collection.orders}
    now = services.review.now()
    results: Dict[str, Dict[str, Any]] = {}
    checked_orders = []
    for order_id in body.order_ids:
        order = by_id.get(order_id)
        if order is None:
            results[order_id] = {
                "eligible": False,
                "reason": "注文が見つかりません",
                "reasonCode": SolicitationReasonCode.ORDER_NOT_FOUND.value,
            }
            continue
        if not is_locally_eligible(order, now):
            results[order_id] = {
                "eligible": False,
                "reason": "基本条件不適合（期限切れ、未発送、メール不明等）",
                "reasonCode": SolicitationReasonCode.BASIC_CRITERIA_FAILED.value,
            }
            continue
        checked = await services.review.check_eligibility(order)
        checked_orders.append(checked)
        results[order_id] = {
            "eligible": bool(checked.solicitation_eligible),
            "reason": "送信可能" if checked.solicitation_eligible else checked.solicitation_reason,
            "reasonCode": checked.solicitation_reason_code,
        }

    if checked_orders:
        await asyncio.to_thread(services.store.upsert_orders, checked_orders)
        stored = await asyncio.to_thread(services.store.get_orders, [order.id for order in checked_orders])
        await services.cache.update_orders(stored)
    return {"success": True, "results": results}


def register_orders_routes(app: FastAPI) -> None:
    app.include_router(router)
