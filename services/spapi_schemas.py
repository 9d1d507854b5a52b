"""
Validated shapes of the SP-API payloads this app consumes.

Only the fields we read are declared; everything else is kept via
``extra="allow"``. Identifier fields are required so a malformed page fails
here instead of leaking half-empty orders into the store. Numeric fields are
typed ``Any`` on purpose: the parser degrades bad numbers to zero.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _Upstream(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class Money(_Upstream):
    amount: Any = Field(default=None, alias="Amount")
    currency_code: Optional[str] = Field(default=None, alias="CurrencyCode")


class BuyerInfo(_Upstream):
    buyer_email: Optional[str] = Field(default=None, alias="BuyerEmail")
    buyer_name: Optional[str] = Field(default=None, alias="BuyerName")


class RawOrder(_Upstream):
    amazon_order_id: str = Field(alias="AmazonOrderId")
    purchase_date: Optional[str] = Field(default=None, alias="PurchaseDate")
    order_status: Optional[str] = Field(default=None, alias="OrderStatus")
    fulfillment_channel: Optional[str] = Field(default=None, alias="FulfillmentChannel")
    sales_channel: Optional[str] = Field(default=None, alias="SalesChannel")
    order_total: Optional[Money] = Field(default=None, alias="OrderTotal")
    number_of_items_shipped: Any = Field(default=None, alias="NumberOfItemsShipped")
    number_of_items_unshipped: Any = Field(default=None, alias="NumberOfItemsUnshipped")
    buyer_info: Optional[BuyerInfo] = Field(default=None, alias="BuyerInfo")
    shipping_address: Optional[Dict[str, Any]] = Field(default=None, alias="ShippingAddress")
    ship_from_address: Optional[Dict[str, Any]] = Field(default=None, alias="DefaultShipFromLocationAddress")

    @field_validator("amazon_order_id")
    @classmethod
    def _require_order_id(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("AmazonOrderId must not be empty")
        return value


class OrdersPage(_Upstream):
    orders: List[RawOrder] = Field(default_factory=list, alias="Orders")
    next_token: Optional[str] = Field(default=None, alias="NextToken")


class RawOrderItem(_Upstream):
    order_item_id: str = Field(alias="OrderItemId")
    title: Optional[str] = Field(default=None, alias="Title")
    asin: Optional[str] = Field(default=None, alias="ASIN")
    seller_sku: Optional[str] = Field(default=None, alias="SellerSKU")
    quantity_ordered: Any = Field(default=None, alias="QuantityOrdered")
    item_price: Optional[Money] = Field(default=None, alias="ItemPrice")


class OrderItemsPage(_Upstream):
    order_items: List[RawOrderItem] = Field(default_factory=list, alias="OrderItems")
    amazon_order_id: Optional[str] = Field(default=None, alias="AmazonOrderId")
    next_token: Optional[str] = Field(default=None, alias="NextToken")


class CatalogImage(_Upstream):
    link: Optional[str] = None
    variant: Optional[str] = None


class CatalogImageSet(_Upstream):
    marketplace_id: Optional[str] = Field(default=None, alias="marketplaceId")
    images: List[CatalogImage] = Field(default_factory=list)


class CatalogSummary(_Upstream):
    marketplace_id: Optional[str] = Field(default=None, alias="marketplaceId")
    item_name: Optional[str] = Field(default=None, alias="itemName")
    brand: Optional[str] = Field(default=None, alias="brand")
    brand_name: Optional[str] = Field(default=None, alias="brandName")
    manufacturer: Optional[str] = Field(default=None, alias="manufacturer")
    product_type: Optional[str] = Field(default=None, alias="productType")


class CatalogItem(_Upstream):
    asin: str
    summaries: List[CatalogSummary] = Field(default_factory=list)
    images: List[CatalogImageSet] = Field(default_factory=list)
    product_types: List[Dict[str, Any]] = Field(default_factory=list, alias="productTypes")

    def title(self) -> Optional[str]:
        for summary in self.summaries:
            if summary.item_name:
                return summary.item_name
        return None

    def brand(self) -> Optional[str]:
        for summary in self.summaries:
            if summary.brand or summary.brand_name:
                return summary.brand or summary.brand_name
        return None

    def manufacturer(self) -> Optional[str]:
        for summary in self.summaries:
            if summary.manufacturer:
                return summary.manufacturer
        return None

    def product_type(self) -> Optional[str]:
        for summary in self.summaries:
            if summary.product_type:
                return summary.product_type
        for entry in self.product_types:
            if isinstance(entry, dict) and entry.get("productType"):
                return entry["productType"]
        return None

    def main_image(self) -> Optional[str]:
        """Prefer the MAIN variant, otherwise the first link found."""
        first_link = None
        for image_set in self.images:
            for image in image_set.images:
                if not image.link:
                    continue
                if image.variant == "MAIN":
                    return image.link
                first_link = first_link or image.link
        return first_link


class SolicitationLink(_Upstream):
    href: Optional[str] = None
    name: Optional[str] = None


class SolicitationLinks(_Upstream):
    actions: List[SolicitationLink] = Field(default_factory=list)


class SolicitationActions(_Upstream):
    links: SolicitationLinks = Field(default_factory=SolicitationLinks, alias="_links")

    def allows(self, action_name: str) -> bool:
        return any(action.href and action_name in action.href for action in self.links.actions)
