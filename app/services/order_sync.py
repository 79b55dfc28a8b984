"""
Shopify orders/create webhook intake: HMAC verification per store, in-process dedupe,
token readiness gate, SKU mapping and Lightspeed sale submission.
Every outcome is written to the order history; failures and skips are also queued for retry.
"""
import base64
import hmac
import hashlib
import json
import logging
from typing import Dict, List, Optional

from pydantic import ValidationError

from app.config import StoreMapping
from app.http.requests.schemas import ProductRef, SaleLine, ShopifyOrderPayload, SyncAttempt
from app.models import SyncStatus
from app.services.audit_log import AuditLog
from app.services.exceptions import CredentialError, LightspeedAuthError, error_details
from app.services.lightspeed_oauth import TokenLifecycleManager
from app.services.lightspeed_service import LightspeedClient
from app.services.retry_queue import RetryQueue

logger = logging.getLogger(__name__)


def verify_webhook_hmac(body: bytes, hmac_header: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify X-Shopify-Hmac-Sha256: HMAC-SHA256(raw_body, secret) base64 == header.
    """
    if not secret or not hmac_header or body is None:
        return False
    computed = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256,
    ).digest()
    computed_b64 = base64.b64encode(computed).decode("utf-8")
    return hmac.compare_digest(computed_b64, hmac_header.strip())


class ProcessedOrderSet:
    """Order ids accepted during this process's lifetime. Not durable: a restart clears it."""

    def __init__(self):
        self._seen: set[str] = set()

    def add_if_new(self, order_id) -> bool:
        key = str(order_id)
        if key in self._seen:
            return False
        self._seen.add(key)
        return True

    def __contains__(self, order_id) -> bool:
        return str(order_id) in self._seen

    def __len__(self) -> int:
        return len(self._seen)


class IntakeResult:
    """HTTP-facing outcome of one webhook delivery."""

    def __init__(self, status_code: int, message: str, attempt: Optional[SyncAttempt] = None):
        self.status_code = status_code
        self.message = message
        self.attempt = attempt

    def __repr__(self):
        return f"IntakeResult({self.status_code}, {self.message!r})"


class OrderIntakeHandler:
    def __init__(
        self,
        stores: Dict[str, StoreMapping],
        tokens: TokenLifecycleManager,
        client: LightspeedClient,
        queue: RetryQueue,
        audit: AuditLog,
        processed: Optional[ProcessedOrderSet] = None,
        allow_manual: bool = False,
    ):
        self.stores = stores
        self.tokens = tokens
        self.client = client
        self.queue = queue
        self.audit = audit
        self.processed = processed if processed is not None else ProcessedOrderSet()
        self.allow_manual = allow_manual

    def store_for(self, shop_domain: Optional[str]) -> Optional[StoreMapping]:
        return self.stores.get((shop_domain or "").strip().lower())

    async def handle(
        self,
        shop_domain: Optional[str],
        raw_body: bytes,
        hmac_header: Optional[str],
        manual: bool = False,
    ) -> IntakeResult:
        """Run one delivery through received -> authenticated -> deduplicated -> skipped/synced/failed."""
        shop_domain = (shop_domain or "").strip().lower()
        if not shop_domain:
            logger.warning("Shopify webhook: missing X-Shopify-Shop-Domain")
            return IntakeResult(400, "Missing shop domain")

        store = self.store_for(shop_domain)
        if store is None:
            logger.warning("Shopify webhook from unknown store %s - returning 401", shop_domain)
            return IntakeResult(401, "Unauthorized - unknown store")

        bypass = manual and self.allow_manual
        if manual and not self.allow_manual:
            logger.warning("Manual webhook flag ignored for %s (bypass disabled)", shop_domain)
        if not bypass and not verify_webhook_hmac(raw_body, hmac_header, store.webhook_secret):
            logger.warning("HMAC mismatch for %s - returning 401", shop_domain)
            return IntakeResult(401, "Unauthorized")
        logger.info("Webhook verified for %s (manual: %s)", shop_domain, bypass)

        try:
            order = ShopifyOrderPayload.model_validate(json.loads(raw_body.decode("utf-8")))
        except (ValueError, ValidationError) as e:
            logger.warning("Shopify webhook: invalid order payload from %s: %s", shop_domain, e)
            return IntakeResult(400, "Invalid order payload")
        if order.id is None or str(order.id).strip() == "":
            return IntakeResult(400, "Order id missing")

        order_id = str(order.id)
        if not self.processed.add_if_new(order_id):
            logger.info("Order #%s already processed - ignoring duplicate delivery", order_id)
            return IntakeResult(200, "OK")

        products = self._products(order)

        if not self.tokens.has_valid_token():
            logger.info("Lightspeed token not ready yet. Skipping order #%s", order_id)
            attempt = self._skip(order, store, products, "Lightspeed token not ready",
                                 "Token expired or missing - scheduled refresh should restore it")
            return IntakeResult(200, "OK", attempt)

        logger.info("Processing Shopify order #%s from %s - Total: %s", order_id, shop_domain, order.total_price)
        try:
            sale_lines, resolved = await self.client.resolve_sale_lines(products)
        except CredentialError as e:
            attempt = self._skip(order, store, products, str(e), error_details(e))
            return IntakeResult(200, "OK", attempt)
        except LightspeedAuthError as e:
            attempt = self._fail(order, store, products, [], e)
            return IntakeResult(500, "Internal Server Error", attempt)

        if not sale_lines:
            logger.info("Order #%s has no syncable items", order_id)
            return IntakeResult(200, "OK - No syncable items")

        try:
            sale = await self.client.create_sale(sale_lines, store.ls_customer_id)
        except CredentialError as e:
            attempt = self._skip(order, store, products, str(e), error_details(e), sale_lines)
            return IntakeResult(200, "OK", attempt)
        except Exception as e:
            attempt = self._fail(order, store, products, sale_lines, e)
            return IntakeResult(500, "Internal Server Error", attempt)

        attempt = SyncAttempt(
            shopify_order_id=order_id,
            order_number=order.name,
            shop_domain=shop_domain,
            ls_customer_id=store.ls_customer_id,
            status=SyncStatus.SUCCESS,
            products=resolved,
            sale_lines=sale_lines,
            ls_sale_id=str(sale.get("saleID") or "unknown"),
        )
        self.audit.append(attempt)
        logger.info("Sale %s created for Shopify order #%s from %s", attempt.ls_sale_id, order_id, shop_domain)
        return IntakeResult(200, "OK", attempt)

    @staticmethod
    def _products(order: ShopifyOrderPayload) -> List[ProductRef]:
        return [
            ProductRef(
                sku=(item.sku or "").strip(),
                quantity=item.quantity,
                title=item.title,
                price=item.price,
            )
            for item in order.line_items
        ]

    def _skip(
        self,
        order: ShopifyOrderPayload,
        store: StoreMapping,
        products: List[ProductRef],
        message: str,
        details,
        sale_lines: Optional[List[SaleLine]] = None,
    ) -> SyncAttempt:
        attempt = SyncAttempt(
            shopify_order_id=str(order.id),
            order_number=order.name,
            shop_domain=store.domain,
            ls_customer_id=store.ls_customer_id,
            status=SyncStatus.SKIPPED,
            products=products,
            sale_lines=sale_lines or [],
            error_message=message,
            error_details=details,
            retry_count=0,
        )
        self.audit.append(attempt)
        self.queue.enqueue(attempt)
        logger.warning("Order #%s skipped and queued: %s", attempt.shopify_order_id, message)
        return attempt

    def _fail(
        self,
        order: ShopifyOrderPayload,
        store: StoreMapping,
        products: List[ProductRef],
        sale_lines: List[SaleLine],
        exc: Exception,
    ) -> SyncAttempt:
        attempt = SyncAttempt(
            shopify_order_id=str(order.id),
            order_number=order.name,
            shop_domain=store.domain,
            ls_customer_id=store.ls_customer_id,
            status=SyncStatus.FAILED,
            products=products,
            sale_lines=sale_lines,
            error_message=str(exc),
            error_details=error_details(exc),
            line_items_count=len(order.line_items),
            retry_count=0,
        )
        self.queue.enqueue(attempt)
        self.audit.append(attempt)
        logger.error("Order sync failed for #%s from %s: %s", attempt.shopify_order_id, store.domain, exc)
        return attempt
