"""
Pydantic schemas for the sync records persisted in the audit log and retry queue,
and for the inbound Shopify order webhook payload.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models import SyncStatus


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ProductRef(_CamelModel):
    sku: str
    quantity: int
    title: Optional[str] = None
    price: Optional[float] = None


class SaleLine(_CamelModel):
    item_id: int = Field(alias="itemID")
    quantity: int
    unit_price: float = Field(alias="unitPrice")


class SyncAttempt(_CamelModel):
    """One sync attempt for a Shopify order; the unit stored in the retry queue and the order history."""

    attempt_id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="attemptId")
    shopify_order_id: str = Field(alias="shopifyOrderId")
    order_number: Optional[str] = Field(default=None, alias="orderNumber")
    shop_domain: str = Field(alias="shopDomain")
    ls_customer_id: str = Field(alias="lsCustomerID")
    timestamp: str = Field(default_factory=_now_iso)
    status: SyncStatus
    products: List[ProductRef] = Field(default_factory=list)
    sale_lines: List[SaleLine] = Field(default_factory=list, alias="saleLines")
    ls_sale_id: Optional[str] = Field(default=None, alias="lsSaleID")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    error_details: Optional[Any] = Field(default=None, alias="errorDetails")
    line_items_count: Optional[int] = Field(default=None, alias="lineItemsCount")
    retry_count: int = Field(default=0, ge=0, alias="retryCount")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str) -> "SyncAttempt":
        return cls.model_validate_json(raw)


class ShopifyLineItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sku: Optional[str] = None
    quantity: int = 0
    price: Optional[float] = None
    title: Optional[str] = None


class ShopifyOrderPayload(BaseModel):
    """The subset of the orders/create webhook body the bridge reads."""

    model_config = ConfigDict(extra="ignore")

    id: Any
    name: Optional[str] = None
    total_price: Optional[float] = None
    line_items: List[ShopifyLineItem] = Field(default_factory=list)
