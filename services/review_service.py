"""
Review-request eligibility and dispatch.

Local predicate first (recent, shipped, not yet requested, has a contact
email), then the upstream Solicitations check, then dispatch through a
``ReviewSink``. Batches run strictly one order at a time; the Solicitations
pacer in the client keeps the spacing. A successful send is written back to
the durable store and the cache.
"""

import asyncio
import json
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from auth.spapi_auth import SpApiAuthError
from services import db as db_service
from services.order_cache import OrderCache
from services.order_enrichment import solicitation_fields
from services.order_models import (
    Order,
    ReviewRequest,
    ReviewRequestBatch,
    ReviewTemplate,
    SolicitationReasonCode,
    iso_utc,
    utcnow,
)
from services.order_store import OrderStore
from services.spapi_client import SpApiClient, SpApiError

LOGGER = logging.getLogger(__name__)

REVIEW_WINDOW = timedelta(days=30)
REVIEWABLE_STATUSES = {"発送済み", "完了", "配送中", "Shipped", "Delivered"}
REVIEW_TEMPLATE_KEY = "review.template"
TEMPLATE_FIELDS = ("subject", "greeting", "mainMessage", "callToAction", "footer")


@dataclass
class DispatchOutcome:
    success: bool
    message: str = ""
    status_code: Optional[int] = None


class ReviewSink(Protocol):
    def send(self, order: Order, rendered: Optional[Dict[str, str]] = None) -> DispatchOutcome: ...


class SolicitationSink:
    """Sends the productReviewAndSellerFeedback solicitation. Blocking; run it on a worker thread."""

    def __init__(self, client: SpApiClient):
        self.client = client

    def send(self, order: Order, rendered: Optional[Dict[str, str]] = None) -> DispatchOutcome:
        try:
            status = self.client.send_review_solicitation(order.amazon_order_id)
        except SpApiError as exc:
            return DispatchOutcome(success=False, message=_error_message(exc), status_code=exc.status_code)
        if 200 <= status < 300:
            return DispatchOutcome(success=True, message="Amazon経由でレビュー依頼を送信しました", status_code=status)
        return DispatchOutcome(success=False, message=f"HTTP {status}", status_code=status)


def _error_message(exc: SpApiError) -> str:
    try:
        body = json.loads(exc.body or "{}")
    except ValueError:
        body = {}
    errors = body.get("errors") if isinstance(body, dict) else None
    if isinstance(errors, list) and errors and isinstance(errors[0], dict) and errors[0].get("message"):
        return str(errors[0]["message"])
    return str(exc)


# ----------------------------
# Eligibility
# ----------------------------
def is_locally_eligible(order: Order, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    purchased = order.purchased_at()
    if purchased is None or purchased < now - REVIEW_WINDOW:
        return False
    if order.order_status not in REVIEWABLE_STATUSES:
        return False
    if order.review_request_sent:
        return False
    return bool(order.contact_email())


# ----------------------------
# Templates
# ----------------------------
TEMPLATE_VARIABLES = {
    "{{orderNumber}}": "注文番号（例: 503-1234567-1234567）",
    "{{customerName}}": "顧客名（例: 田中太郎、または「お客様」）",
    "{{purchaseDate}}": "購入日（例: 2024年1月15日）",
    "{{itemCount}}": "商品数（例: 3点）",
}
SAMPLE_VALUES = {
    "orderNumber": "503-1234567-1234567",
    "customerName": "田中太郎",
    "purchaseDate": "2024年1月15日",
    "itemCount": "2点",
}


def template_values(order: Order) -> Dict[str, str]:
    purchased = order.purchased_at()
    item_count = sum(item.quantity for item in order.items if not item.is_placeholder) or len(order.items)
    return {
        "orderNumber": order.amazon_order_id,
        "customerName": order.contact_name() or "お客",
        "purchaseDate": f"{purchased.year}年{purchased.month}月{purchased.day}日" if purchased else order.purchase_date,
        "itemCount": f"{item_count}点",
    }


def render_template(template: ReviewTemplate, values: Dict[str, str]) -> Dict[str, str]:
    rendered: Dict[str, str] = {}
    payload = template.to_payload()
    for alias in TEMPLATE_FIELDS:
        text = payload.get(alias) or ""
        for name, value in values.items():
            text = text.replace("{{" + name + "}}", value)
        rendered[alias] = text
    return rendered


def load_review_template(db_path=None) -> ReviewTemplate:
    db_service.ensure_orders_schema(db_path)
    with db_service.get_db_connection(db_path) as conn:
        raw = db_service.get_app_kv(conn, REVIEW_TEMPLATE_KEY)
    if not raw:
        return ReviewTemplate()
    try:
        return ReviewTemplate.model_validate(json.loads(raw))
    except ValueError as exc:
        LOGGER.warning(f"[Review] Stored template unreadable, using defaults: {exc}")
        return ReviewTemplate()


def save_review_template(template: ReviewTemplate, db_path=None) -> ReviewTemplate:
    db_service.ensure_orders_schema(db_path)
    with db_service.write_transaction(db_path) as conn:
        db_service.set_app_kv(conn, REVIEW_TEMPLATE_KEY, json.dumps(template.to_payload(), ensure_ascii=False))
    LOGGER.info("[Review] Review template saved")
    return template


def new_batch_id(clock: Callable[[], float] = time.time) -> str:
    return f"batch_{int(clock() * 1000)}_{secrets.token_hex(5)[:9]}"


class ReviewService:
    def __init__(
        self,
        client: SpApiClient,
        store: Optional[OrderStore] = None,
        cache: Optional[OrderCache] = None,
        *,
        sink: Optional[ReviewSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.client = client
        self.store = store
        self.cache = cache
        self.sink = sink or SolicitationSink(client)
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def get_eligible(self, orders: Iterable[Order]) -> List[Order]:
        now = self._clock()
        return [order for order in orders if is_locally_eligible(order, now)]

    async def check_eligibility(self, order: Order) -> Order:
        """Ask the Solicitations API whether a review request is allowed; returns the updated order."""
        if order.review_request_sent:
            return order.model_copy(
                update={
                    "solicitation_eligible": False,
                    "solicitation_reason": "Review request already sent",
                    "solicitation_reason_code": SolicitationReasonCode.ALREADY_SENT.value,
                }
            )
        try:
            allowed = await asyncio.to_thread(self.client.is_solicitation_allowed, order.amazon_order_id)
        except SpApiAuthError:
            raise
        except (SpApiError, ValueError) as exc:
            LOGGER.warning(f"[Review] Eligibility check failed for {order.amazon_order_id}: {exc}")
            return order.model_copy(
                update={
                    "solicitation_eligible": False,
                    "solicitation_reason": f"Eligibility check failed: {exc}",
                    "solicitation_reason_code": SolicitationReasonCode.CHECK_FAILED.value,
                }
            )
        return order.model_copy(update=solicitation_fields(allowed))

    async def send_single(self, order: Order, template: Optional[ReviewTemplate] = None) -> ReviewRequest:
        requested_at = iso_utc(self._clock())
        rendered = render_template(template, template_values(order)) if template is not None else None
        record = {
            "order_id": order.id,
            "customer_email": order.contact_email(),
            "customer_name": order.contact_name(),
            "items": order.items,
            "requested_at": requested_at,
            "rendered": rendered,
        }
        if not order.contact_email():
            return ReviewRequest(**record, status="failed", message="顧客のメールアドレスが見つかりません")

        checked = await self.check_eligibility(order)
        if not checked.solicitation_eligible:
            LOGGER.info(f"[Review] Order {order.amazon_order_id} not eligible: {checked.solicitation_reason}")
            await self._persist(checked)
            return ReviewRequest(
                **record,
                status="failed",
                message="この注文はレビュー依頼の対象ではありません（既に送信済み、または期限切れ）",
            )

        try:
            outcome = await asyncio.to_thread(self.sink.send, checked, rendered)
        except SpApiAuthError:
            raise
        except Exception as exc:
            LOGGER.error(f"[Review] Dispatch raised for {order.amazon_order_id}: {exc}", exc_info=True)
            outcome = DispatchOutcome(success=False, message=str(exc))

        if not outcome.success:
            LOGGER.warning(f"[Review] Send failed for {order.amazon_order_id}: {outcome.message}")
            return ReviewRequest(**record, status="failed", message=outcome.message)

        sent = checked.model_copy(
            update={
                "review_request_sent": True,
                "review_request_sent_at": requested_at,
                "review_request_status": "sent",
                "solicitation_eligible": False,
                "solicitation_reason": "Review request sent",
                "solicitation_reason_code": SolicitationReasonCode.ALREADY_SENT.value,
            }
        )
        await self._persist(sent)
        LOGGER.info(f"[Review] Review request sent for {order.amazon_order_id}")
        return ReviewRequest(**record, status="sent", message=outcome.message)

    async def send_batch(self, orders: Iterable[Order], template: Optional[ReviewTemplate] = None) -> ReviewRequestBatch:
        orders = list(orders)
        batch = ReviewRequestBatch(
            id=new_batch_id(),
            order_ids=[order.id for order in orders],
            requested_at=iso_utc(self._clock()),
            total_count=len(orders),
        )
        results: List[ReviewRequest] = []
        for index, order in enumerate(orders, start=1):
            result = await self.send_single(order, template)
            results.append(result)
            LOGGER.info(f"[Review] Batch {batch.id} progress: {index}/{len(orders)}")

        sent_count = sum(1 for r in results if r.status == "sent")
        failed_count = len(results) - sent_count
        if failed_count == 0:
            status = "completed"
        elif sent_count == 0:
            status = "failed"
        else:
            status = "partial"
        return batch.model_copy(
            update={"results": results, "sent_count": sent_count, "failed_count": failed_count, "status": status}
        )

    async def _persist(self, order: Order) -> None:
        if self.store is not None:
            await asyncio.to_thread(self.store.put_order, order)
        if self.cache is not None:
            await self.cache.update_order(order)


def summarize_batch(batch: ReviewRequestBatch) -> Dict[str, Any]:
    return {
        "success": batch.status in ("completed", "partial"),
        "type": "batch",
        "result": batch.to_payload(),
        "message": f"{batch.sent_count}件のレビュー依頼を送信しました（失敗: {batch.failed_count}件）",
    }
