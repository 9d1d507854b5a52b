"""Internal order / review-request models shared by the pipeline, store, cache and routes."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ReviewRequestStatus = Literal["pending", "sent", "failed", "eligible", "not_eligible", "error"]
FulfillmentChannel = Literal["AFN", "MFN"]

LOADING_ITEM_ID = "loading"
QUOTA_EXCEEDED_ITEM_ID = "quota-exceeded"
ERROR_ITEM_ID = "error"
UNKNOWN_ITEM_ID = "unknown"
PLACEHOLDER_ITEM_IDS = {LOADING_ITEM_ID, QUOTA_EXCEEDED_ITEM_ID, ERROR_ITEM_ID, UNKNOWN_ITEM_ID}


class SolicitationReasonCode(str, Enum):
    ELIGIBLE = "eligible"
    NOT_ELIGIBLE_UPSTREAM = "not_eligible_upstream"
    ALREADY_SENT = "already_sent"
    BASIC_CRITERIA_FAILED = "basic_criteria_failed"
    NO_PRODUCT = "no_product"
    CHECK_FAILED = "check_failed"
    ORDER_NOT_FOUND = "order_not_found"


# Reasons that permanently exclude an order from further solicitation checks.
TERMINAL_REASON_CODES = frozenset(
    {
        SolicitationReasonCode.NOT_ELIGIBLE_UPSTREAM.value,
        SolicitationReasonCode.ALREADY_SENT.value,
    }
)


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        extra="ignore",
    )

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class OrderItem(_Model):
    id: str
    title: str = ""
    asin: str = ""
    quantity: int = 1
    price: float = 0.0
    image_url: Optional[str] = None
    brand: Optional[str] = None
    manufacturer: Optional[str] = None
    product_type: Optional[str] = None

    @property
    def is_placeholder(self) -> bool:
        return self.id in PLACEHOLDER_ITEM_IDS


class BuyerInfoModel(_Model):
    buyer_email: Optional[str] = None
    buyer_name: Optional[str] = None


class Customer(_Model):
    name: Optional[str] = None
    email: Optional[str] = None
    buyer_info: Optional[BuyerInfoModel] = None


class Order(_Model):
    id: str
    amazon_order_id: str
    purchase_date: str = ""
    order_status: str = ""
    fulfillment_channel: FulfillmentChannel = "MFN"
    sales_channel: str = ""
    total_amount: float = 0.0
    currency: str = ""
    number_of_items_shipped: int = 0
    number_of_items_unshipped: int = 0
    customer: Customer = Field(default_factory=Customer)
    items: List[OrderItem] = Field(default_factory=list)
    shipping_address: Optional[Dict[str, Any]] = None

    review_request_sent: bool = False
    review_request_sent_at: Optional[str] = None
    review_request_status: Optional[ReviewRequestStatus] = "pending"
    solicitation_eligible: Optional[bool] = None
    solicitation_reason: Optional[str] = None
    solicitation_reason_code: Optional[SolicitationReasonCode] = None

    def contact_email(self) -> Optional[str]:
        if self.customer.email:
            return self.customer.email
        if self.customer.buyer_info and self.customer.buyer_info.buyer_email:
            return self.customer.buyer_info.buyer_email
        return None

    def contact_name(self) -> Optional[str]:
        if self.customer.name:
            return self.customer.name
        if self.customer.buyer_info:
            return self.customer.buyer_info.buyer_name
        return None

    def purchased_at(self) -> Optional[datetime]:
        return parse_iso_datetime(self.purchase_date)

    def has_resolved_items(self) -> bool:
        return any(not item.is_placeholder for item in self.items)

    def asins(self) -> List[str]:
        seen: List[str] = []
        for item in self.items:
            if item.asin and item.asin not in seen:
                seen.append(item.asin)
        return seen


class CachedOrderCollection(_Model):
    orders: List[Order] = Field(default_factory=list)
    last_updated: str = ""
    total_count: int = 0
    next_token: Optional[str] = None
    data_fetched_at: Optional[str] = None
    valid_until: Optional[str] = None


class ReviewTemplate(_Model):
    subject: str = "【レビューのお願い】{{orderNumber}} - ご購入商品のレビューをお願いいたします"
    greeting: str = "いつもご利用いただき、ありがとうございます。"
    main_message: str = "{{customerName}}様にご購入いただいた商品はいかがでしたでしょうか？"
    call_to_action: str = "お時間があるときに、ぜひ商品のレビューをお書きいただけますでしょうか？"
    footer: str = "今後このようなメールを希望されない場合は、お手数ですがご連絡ください。"


class ReviewRequest(_Model):
    order_id: str
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    items: List[OrderItem] = Field(default_factory=list)
    requested_at: str
    status: Literal["sent", "failed"]
    message: str = ""
    rendered: Optional[Dict[str, str]] = None


class ReviewRequestBatch(_Model):
    id: str
    order_ids: List[str] = Field(default_factory=list)
    requested_at: str
    total_count: int = 0
    sent_count: int = 0
    failed_count: int = 0
    status: Literal["processing", "completed", "partial", "failed"] = "processing"
    results: List[ReviewRequest] = Field(default_factory=list)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    candidate = str(value).strip()
    if not candidate:
        return None
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
