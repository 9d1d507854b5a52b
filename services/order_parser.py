import logging
import math
import threading
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Union

from services.order_models import (
    ERROR_ITEM_ID,
    LOADING_ITEM_ID,
    QUOTA_EXCEEDED_ITEM_ID,
    BuyerInfoModel,
    Customer,
    Order,
    OrderItem,
)
from services.spapi_schemas import RawOrder, RawOrderItem

logger = logging.getLogger(__name__)

ORDER_STATUS_MAP = {
    "Pending": "処理中",
    "Unshipped": "未発送",
    "PartiallyShipped": "一部発送",
    "Shipped": "発送済み",
    "Canceled": "キャンセル",
    "Unfulfillable": "配送不可",
}
NETWORK_FULFILLED_CODE = "AFN"
MERCHANT_FULFILLED_CODE = "MFN"
IMAGE_URL_TEMPLATE = "https://m.media-amazon.com/images/I/{asin}.jpg"

_unknown_statuses: set = set()
_unknown_lock = threading.Lock()


def map_order_status(raw_status: Optional[str]) -> str:
    raw_status = (raw_status or "").strip()
    if raw_status in ORDER_STATUS_MAP:
        return ORDER_STATUS_MAP[raw_status]
    if raw_status:
        with _unknown_lock:
            first_seen = raw_status not in _unknown_statuses
            _unknown_statuses.add(raw_status)
        if first_seen:
            logger.info("[OrderParser] Unmapped order status %r passed through", raw_status)
    return raw_status


def normalize_fulfillment_channel(raw_channel: Optional[str]) -> str:
    if (raw_channel or "").strip().upper() == NETWORK_FULFILLED_CODE:
        return NETWORK_FULFILLED_CODE
    return MERCHANT_FULFILLED_CODE


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    # NaN and Infinity parse but are not usable amounts.
    return number if number.is_finite() else None


def to_float(value: Any) -> float:
    """Degrade missing, unparseable or non-finite amounts to 0."""
    number = _to_decimal(value)
    if number is None:
        return 0.0
    result = float(number)
    return result if math.isfinite(result) else 0.0


def to_int(value: Any) -> int:
    """Degrade missing, unparseable or non-finite counts to 0."""
    number = _to_decimal(value)
    return 0 if number is None else int(number)


def generate_image_url(asin: Optional[str]) -> str:
    if not asin:
        return ""
    return IMAGE_URL_TEMPLATE.format(asin=asin)


def placeholder_item(item_id: str = LOADING_ITEM_ID, title: str = "商品情報を読み込み中...") -> OrderItem:
    return OrderItem(id=item_id, title=title, asin="", quantity=1, price=0.0, image_url="")


def quota_exceeded_item() -> OrderItem:
    return placeholder_item(QUOTA_EXCEEDED_ITEM_ID, "API制限により商品情報を取得できませんでした")


def error_item() -> OrderItem:
    return placeholder_item(ERROR_ITEM_ID, "商品情報取得エラー")


def parse_order(raw: Union[RawOrder, Dict[str, Any]]) -> Order:
    """Map one upstream order to an Order carrying a single loading placeholder item."""
    if not isinstance(raw, RawOrder):
        raw = RawOrder.model_validate(raw)

    buyer = raw.buyer_info
    customer = Customer(
        name=buyer.buyer_name if buyer else None,
        email=buyer.buyer_email if buyer else None,
        buyer_info=BuyerInfoModel(buyer_email=buyer.buyer_email, buyer_name=buyer.buyer_name) if buyer else None,
    )
    total = raw.order_total
    return Order(
        id=raw.amazon_order_id,
        amazon_order_id=raw.amazon_order_id,
        purchase_date=raw.purchase_date or "",
        order_status=map_order_status(raw.order_status),
        fulfillment_channel=normalize_fulfillment_channel(raw.fulfillment_channel),
        sales_channel=raw.sales_channel or "",
        total_amount=to_float(total.amount if total else None),
        currency=(total.currency_code if total else None) or "",
        number_of_items_shipped=to_int(raw.number_of_items_shipped),
        number_of_items_unshipped=to_int(raw.number_of_items_unshipped),
        customer=customer,
        items=[placeholder_item()],
        shipping_address=raw.shipping_address or raw.ship_from_address,
        review_request_sent=False,
        review_request_status="pending",
    )


def parse_order_item(raw: Union[RawOrderItem, Dict[str, Any]]) -> OrderItem:
    if not isinstance(raw, RawOrderItem):
        raw = RawOrderItem.model_validate(raw)
    asin = (raw.asin or "").strip()
    return OrderItem(
        id=raw.order_item_id,
        title=raw.title or "",
        asin=asin,
        quantity=to_int(raw.quantity_ordered),
        price=to_float(raw.item_price.amount if raw.item_price else None),
        image_url=generate_image_url(asin),
    )
