"""
Lightspeed Retail catalog and sale client.

- Item lookup by systemSku (the field Shopify SKUs are mirrored into)
- Item fetch by id (authoritative avgCost/defaultCost)
- Completed-sale creation with fulfillment pricing (cost grossed up by the margin divisor) and flat tax

Every call gets exactly one refresh-and-retry when Lightspeed answers 401 or no token is cached.
"""
import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Awaitable, Callable, Iterable, List, Optional, TypeVar

import httpx

from app.config import settings
from app.http.requests.schemas import ProductRef, SaleLine
from app.services.exceptions import (
    ItemNotFoundError,
    LightspeedAPIError,
    LightspeedAuthError,
    MissingCustomerError,
    MissingTokenError,
)
from app.services.http_client import get_with_retry, post_json, response_body
from app.services.lightspeed_oauth import TokenLifecycleManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

CENT = Decimal("0.01")
MAX_AUTH_RETRIES = 1


def _to_decimal(value: Any) -> Optional[Decimal]:
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    return d if d.is_finite() else None


def compute_fulfillment_price(cost: Any, margin_divisor: Any = None) -> Optional[Decimal]:
    """cost / divisor rounded to cents; None when the cost is missing, non-numeric or the price is not positive."""
    divisor = _to_decimal(margin_divisor if margin_divisor is not None else settings.FULFILLMENT_MARGIN_DIVISOR)
    cost_d = _to_decimal(cost)
    if cost_d is None or not divisor:
        return None
    price = (cost_d / divisor).quantize(CENT, rounding=ROUND_HALF_UP)
    if price <= 0:
        return None
    return price


def compute_sale_total(lines: Iterable[dict], tax_rate: Any = None) -> tuple[Decimal, Decimal]:
    """(subtotal, total with tax) for formatted sale lines, total rounded to cents."""
    rate = _to_decimal(tax_rate if tax_rate is not None else settings.SALE_TAX_RATE) or Decimal("0")
    subtotal = sum(
        (Decimal(str(line["unitPrice"])) * Decimal(str(line["unitQuantity"])) for line in lines),
        Decimal("0"),
    )
    total = (subtotal * (1 + rate)).quantize(CENT, rounding=ROUND_HALF_UP)
    return subtotal, total


def item_cost(item: dict) -> Any:
    """avgCost, falling back to defaultCost, else 0."""
    return item.get("avgCost") or item.get("defaultCost") or 0


class LightspeedClient:
    """Lightspeed Retail API client. Uses provided ids or falls back to settings (env)."""

    def __init__(
        self,
        tokens: TokenLifecycleManager,
        account_id: str | None = None,
        employee_id: str | None = None,
        register_id: str | None = None,
        shop_id: str | None = None,
        api_base: str | None = None,
        margin_divisor: str | None = None,
        tax_rate: str | None = None,
        tax_category_id: int | None = None,
        payment_type_id: int | None = None,
        timeout: float | None = None,
    ):
        self.tokens = tokens
        self.account_id = account_id or settings.LIGHTSPEED_ACCOUNT_ID
        self.employee_id = employee_id or settings.LIGHTSPEED_EMPLOYEE_ID
        self.register_id = register_id or settings.LIGHTSPEED_REGISTER_ID
        self.shop_id = shop_id or settings.LIGHTSPEED_SHOP_ID
        self.api_base = (api_base or settings.LIGHTSPEED_API_BASE).rstrip("/")
        self.margin_divisor = margin_divisor or settings.FULFILLMENT_MARGIN_DIVISOR
        self.tax_rate = tax_rate or settings.SALE_TAX_RATE
        self.tax_category_id = tax_category_id if tax_category_id is not None else settings.LIGHTSPEED_TAX_CATEGORY_ID
        self.payment_type_id = payment_type_id if payment_type_id is not None else settings.LIGHTSPEED_PAYMENT_TYPE_ID
        self.timeout = timeout

    @property
    def account_url(self) -> str:
        return f"{self.api_base}/API/Account/{self.account_id}"

    async def _with_auth_retry(self, label: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run call; on 401 or a missing token refresh once and run it once more. The second failure propagates."""
        attempt = 0
        while True:
            try:
                return await call()
            except (LightspeedAuthError, MissingTokenError):
                if attempt >= MAX_AUTH_RETRIES:
                    raise
                attempt += 1
                logger.info("[%s] Token expired or missing - refreshing...", label)
                await self.tokens.refresh()

    def _check(self, resp, what: str) -> Any:
        if resp.status_code == 401:
            raise LightspeedAuthError(f"{what}: unauthorized", status_code=401, response_body=response_body(resp))
        if not resp.is_success:
            body = response_body(resp)
            logger.error("%s failed: HTTP %s - %s", what, resp.status_code, body)
            raise LightspeedAPIError(
                f"{what} failed: HTTP {resp.status_code}",
                status_code=resp.status_code,
                response_body=body,
            )
        return response_body(resp)

    async def lookup_item_by_sku(self, sku: str) -> dict:
        """Find the Lightspeed item whose systemSku equals the trimmed SKU."""
        if sku is None or not str(sku).strip():
            raise ItemNotFoundError("No SKU provided for item lookup", sku=sku)
        trimmed = str(sku).strip()

        async def _lookup() -> dict:
            logger.debug("Looking up Lightspeed item by systemSku: %r", trimmed)
            resp = await get_with_retry(
                f"{self.account_url}/Item.json",
                params={"systemSku": trimmed},
                headers=self.tokens.auth_header(),
                timeout=self.timeout,
            )
            data = self._check(resp, f"Item lookup for {trimmed}")
            item = data.get("Item") if isinstance(data, dict) else None
            if isinstance(item, list):
                item = item[0] if item else None
            if not isinstance(item, dict) or not item.get("itemID"):
                raise ItemNotFoundError(f"Item not found for systemSku: {trimmed}", sku=trimmed)
            logger.info("Found itemID %s for SKU %s (%s)", item["itemID"], trimmed, item.get("description"))
            return item

        return await self._with_auth_retry("ITEM", _lookup)

    async def _fetch_item(self, item_id: Any) -> dict:
        resp = await get_with_retry(
            f"{self.account_url}/Item/{item_id}.json",
            headers=self.tokens.auth_header(),
            timeout=self.timeout,
        )
        data = self._check(resp, f"Item fetch {item_id}")
        item = data.get("Item") if isinstance(data, dict) else None
        if isinstance(item, list):
            item = item[0] if item else None
        if not isinstance(item, dict):
            raise ItemNotFoundError(f"Item {item_id} not found")
        return item

    async def get_item(self, item_id: Any) -> dict:
        """Fetch one item by id, with the single refresh-and-retry."""
        return await self._with_auth_retry("ITEM", lambda: self._fetch_item(item_id))

    async def _format_lines(self, sale_lines: List[SaleLine]) -> List[dict]:
        formatted = []
        for line in sale_lines:
            item = await self._fetch_item(line.item_id)
            cost = item_cost(item)
            price = compute_fulfillment_price(cost, self.margin_divisor)
            if price is None:
                logger.warning("Invalid avgCost %r for item %s - using original price", cost, line.item_id)
                price = Decimal(str(line.unit_price)).quantize(CENT, rounding=ROUND_HALF_UP)
            logger.info("Item %s: cost %s -> fulfillment price %s", line.item_id, cost, price)
            formatted.append({
                "itemID": line.item_id,
                "unitQuantity": line.quantity,
                "unitPrice": float(price),
            })
        return formatted

    def build_sale_payload(self, customer_id: Any, formatted_lines: List[dict]) -> dict:
        _, total = compute_sale_total(formatted_lines, self.tax_rate)
        return {
            "customerID": int(customer_id),
            "employeeID": int(self.employee_id) if self.employee_id else None,
            "registerID": int(self.register_id) if self.register_id else None,
            "shopID": int(self.shop_id) if self.shop_id else None,
            "completed": True,
            "enablePromotions": False,
            "taxCategoryID": self.tax_category_id,
            "SaleLines": {"SaleLine": formatted_lines},
            "SalePayments": {
                "SalePayment": [{
                    "paymentTypeID": self.payment_type_id,
                    "amount": f"{total:.2f}",
                }]
            },
        }

    async def create_sale(self, sale_lines: List[SaleLine], customer_id: Any) -> dict:
        """
        Create a completed sale for the customer. Each line is re-priced from the item's
        current cost; a 401 anywhere in the call refreshes once and repeats the whole call.

        Raises:
            MissingCustomerError: customer_id is empty.
            LightspeedAPIError: Lightspeed rejected the sale (response body attached).
        """
        if customer_id is None or not str(customer_id).strip():
            raise MissingCustomerError("Customer ID required")
        lines = [line if isinstance(line, SaleLine) else SaleLine.model_validate(line) for line in sale_lines]

        async def _create() -> dict:
            logger.info("Creating sale for Lightspeed customer %s with %d line(s)", customer_id, len(lines))
            payload = self.build_sale_payload(customer_id, await self._format_lines(lines))
            logger.debug("Sending sale payload: %s", payload)
            resp = await post_json(
                f"{self.account_url}/Sale.json",
                json=payload,
                headers=self.tokens.auth_header(),
                timeout=self.timeout,
            )
            data = self._check(resp, "Sale creation")
            sale = data.get("Sale") if isinstance(data, dict) else None
            if not isinstance(sale, dict):
                raise LightspeedAPIError("Sale creation returned no Sale", status_code=resp.status_code, response_body=data)
            logger.info(
                "Sale synced: Sale ID %s - Total: %s",
                sale.get("saleID"),
                payload["SalePayments"]["SalePayment"][0]["amount"],
            )
            return sale

        return await self._with_auth_retry("SALE", _create)

    async def resolve_sale_lines(self, products: List[ProductRef]) -> tuple[List[SaleLine], List[ProductRef]]:
        """
        Map order lines to Lightspeed items, sequentially and in order. A line whose lookup
        fails is logged and dropped; credential failures and a 401 that survives the refresh propagate.
        """
        sale_lines: List[SaleLine] = []
        resolved: List[ProductRef] = []
        for product in products:
            sku = (product.sku or "").strip()
            if not sku:
                continue
            try:
                item = await self.lookup_item_by_sku(sku)
            except LightspeedAuthError:
                raise
            except (ItemNotFoundError, LightspeedAPIError, httpx.HTTPError) as e:
                logger.warning(" -> Failed to find item for SKU %s: %s", sku, e)
                continue
            sale_lines.append(SaleLine(
                item_id=int(item["itemID"]),
                quantity=int(product.quantity),
                unit_price=float(product.price or 0),
            ))
            resolved.append(product)
        return sale_lines, resolved
