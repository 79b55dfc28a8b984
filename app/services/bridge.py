"""
Wires the bridge components over one session factory. main.py builds one OrderBridge per
app and keeps it on app.state; controllers reach it through get_bridge().
"""
import logging
from typing import Callable, Dict, Optional

from fastapi import Request
from sqlalchemy.orm import Session

from app.config import StoreMapping, load_store_mappings, settings
from app.services.audit_log import AuditLog
from app.services.credentials import CredentialStore
from app.services.lightspeed_oauth import TokenLifecycleManager
from app.services.lightspeed_service import LightspeedClient
from app.services.order_sync import OrderIntakeHandler
from app.services.retry_queue import RetryQueue

logger = logging.getLogger(__name__)


class OrderBridge:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        stores: Optional[Dict[str, StoreMapping]] = None,
        encryption_key: Optional[str] = None,
        api_base: Optional[str] = None,
        token_url: Optional[str] = None,
        allow_manual: Optional[bool] = None,
    ):
        self.session_factory = session_factory
        self.stores = load_store_mappings() if stores is None else stores
        self.credential_store = CredentialStore(session_factory, encryption_key=encryption_key)
        self.tokens = TokenLifecycleManager(self.credential_store, token_url=token_url)
        self.client = LightspeedClient(self.tokens, api_base=api_base)
        self.audit = AuditLog(session_factory)
        self.queue = RetryQueue(session_factory, self.client, self.audit)
        self.intake = OrderIntakeHandler(
            self.stores,
            self.tokens,
            self.client,
            self.queue,
            self.audit,
            allow_manual=settings.ALLOW_MANUAL_WEBHOOKS if allow_manual is None else allow_manual,
        )
        if not self.stores:
            logger.warning("No Shopify stores configured (SHOPIFY_STORE_<KEY>_DOMAIN); all webhooks will be rejected")

    def store_name(self, shop_domain: Optional[str]) -> str:
        store = self.stores.get((shop_domain or "").strip().lower())
        if store is not None:
            return store.name
        return shop_domain or "Unknown Store"

    def startup(self) -> None:
        """Load persisted tokens so webhooks can sync immediately after a restart."""
        if not self.tokens.load():
            logger.warning("No Lightspeed tokens yet - visit /lightspeed/auth to connect")

    async def refresh_if_missing(self) -> bool:
        """Refresh only when no access token is cached. Returns True when a refresh happened."""
        valid = self.tokens.has_valid_token()
        logger.info("[TOKEN-CRON] Token valid? %s", valid)
        if valid:
            return False
        await self.tokens.refresh()
        return True


def get_bridge(request: Request) -> OrderBridge:
    """FastAPI dependency: the app's OrderBridge."""
    return request.app.state.bridge
