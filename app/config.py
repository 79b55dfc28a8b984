"""
Application configuration with automatic environment detection
"""
import logging
import os
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


class Settings:
    """Application settings with automatic environment detection"""

    # Environment detection
    ENV = os.getenv("ENV", "DEV").upper()
    IS_PRODUCTION = ENV == "PROD" or ENV == "PRODUCTION"
    IS_DEVELOPMENT = not IS_PRODUCTION

    # Render sets RENDER=true, Vercel sets VERCEL=true, Heroku sets DYNO, Railway sets RAILWAY_ENVIRONMENT
    RENDER = os.getenv("RENDER", "").lower() == "true" or "render.com" in os.getenv("RENDER_EXTERNAL_URL", "")
    VERCEL = os.getenv("VERCEL", "").lower() == "true"
    HEROKU = bool(os.getenv("DYNO"))
    RAILWAY = bool(os.getenv("RAILWAY_ENVIRONMENT"))
    IS_CLOUD = RENDER or VERCEL or HEROKU or RAILWAY

    # Server configuration
    HOST = os.getenv("HOST", "0.0.0.0" if IS_CLOUD else "127.0.0.1")
    PORT = int(os.getenv("PORT", 8000))

    # Database (durable store for tokens, order history and the retry queue)
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./order_bridge.db")

    # Encryption of the persisted token pair
    ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY", "your-32-character-encryption-key!!")

    # Lightspeed OAuth
    LIGHTSPEED_CLIENT_ID = os.getenv("LIGHTSPEED_CLIENT_ID", "")
    LIGHTSPEED_CLIENT_SECRET = os.getenv("LIGHTSPEED_CLIENT_SECRET", "")
    LIGHTSPEED_REDIRECT_URI = os.getenv("LIGHTSPEED_REDIRECT_URI", "")
    LIGHTSPEED_AUTHORIZE_URL = os.getenv(
        "LIGHTSPEED_AUTHORIZE_URL", "https://cloud.lightspeedapp.com/auth/oauth/authorize"
    )
    LIGHTSPEED_TOKEN_URL = os.getenv("LIGHTSPEED_TOKEN_URL", "https://cloud.lightspeedapp.com/auth/oauth/token")
    LIGHTSPEED_SCOPE = os.getenv("LIGHTSPEED_SCOPE", "employee:register employee:all")

    # Lightspeed Retail account the sales are booked against
    LIGHTSPEED_API_BASE = os.getenv("LIGHTSPEED_API_BASE", "https://api.lightspeedapp.com")
    LIGHTSPEED_ACCOUNT_ID = os.getenv("LIGHTSPEED_ACCOUNT_ID", "")
    LIGHTSPEED_EMPLOYEE_ID = os.getenv("LIGHTSPEED_EMPLOYEE_ID", "")
    LIGHTSPEED_REGISTER_ID = os.getenv("LIGHTSPEED_REGISTER_ID", "")
    LIGHTSPEED_SHOP_ID = os.getenv("LIGHTSPEED_SHOP_ID", "")
    LIGHTSPEED_TAX_CATEGORY_ID = int(os.getenv("LIGHTSPEED_TAX_CATEGORY_ID", "3"))
    LIGHTSPEED_PAYMENT_TYPE_ID = int(os.getenv("LIGHTSPEED_PAYMENT_TYPE_ID", "17"))

    # Pricing: fulfillment price = cost / divisor (0.80 => 20% margin), flat sale tax
    FULFILLMENT_MARGIN_DIVISOR = os.getenv("FULFILLMENT_MARGIN_DIVISOR", "0.80")
    SALE_TAX_RATE = os.getenv("SALE_TAX_RATE", "0.07")

    # Retry queue
    MAX_SYNC_RETRIES = int(os.getenv("MAX_SYNC_RETRIES", "5"))
    RETRY_BATCH_SIZE = int(os.getenv("RETRY_BATCH_SIZE", "10"))

    # Outbound HTTP
    HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "30"))

    # Webhook signature bypass (?manual=true); never honored in production
    ALLOW_MANUAL_WEBHOOKS = _env_flag("ALLOW_MANUAL_WEBHOOKS") and not IS_PRODUCTION

    # In-process scheduler (0 = disabled; an external cron hits /cron/retry-failed and /refresh-token)
    RETRY_SWEEP_INTERVAL_SEC = int(os.getenv("RETRY_SWEEP_INTERVAL_SEC", "0"))
    TOKEN_REFRESH_INTERVAL_SEC = int(os.getenv("TOKEN_REFRESH_INTERVAL_SEC", "0"))

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if IS_PRODUCTION else "DEBUG")

    def __str__(self):
        return f"Settings(ENV={self.ENV}, IS_PRODUCTION={self.IS_PRODUCTION}, IS_CLOUD={self.IS_CLOUD})"


class StoreMapping:
    """Per-storefront configuration: the webhook signing secret and the Lightspeed customer sales go to."""

    def __init__(self, domain: str, webhook_secret: str, ls_customer_id: str, name: Optional[str] = None):
        self.domain = domain
        self.webhook_secret = webhook_secret
        self.ls_customer_id = ls_customer_id
        self.name = name or domain

    def __repr__(self):
        return f"StoreMapping(domain={self.domain!r}, ls_customer_id={self.ls_customer_id!r}, name={self.name!r})"


STORE_PREFIX = "SHOPIFY_STORE_"


def load_store_mappings(environ: Optional[Mapping[str, str]] = None) -> Dict[str, StoreMapping]:
    """
    Build the shop domain -> StoreMapping lookup from SHOPIFY_STORE_<KEY>_DOMAIN,
    _WEBHOOK_SECRET, _LS_CUSTOMER and optional _NAME variables.
    Incomplete groups are logged and skipped; called once at startup.
    """
    env = os.environ if environ is None else environ
    mappings: Dict[str, StoreMapping] = {}
    for key, value in env.items():
        if not (key.startswith(STORE_PREFIX) and key.endswith("_DOMAIN")):
            continue
        prefix = key[: -len("_DOMAIN")]
        domain = (value or "").strip().lower()
        secret = (env.get(f"{prefix}_WEBHOOK_SECRET") or "").strip()
        customer = (env.get(f"{prefix}_LS_CUSTOMER") or "").strip()
        if not domain:
            continue
        if not secret or not customer:
            logger.warning("Store %s (%s) is missing a webhook secret or Lightspeed customer; ignoring", prefix, domain)
            continue
        if domain in mappings:
            logger.warning("Store domain %s configured twice; keeping %s", domain, prefix)
        mappings[domain] = StoreMapping(
            domain=domain,
            webhook_secret=secret,
            ls_customer_id=customer,
            name=(env.get(f"{prefix}_NAME") or "").strip() or None,
        )
    return mappings


# Global settings instance
settings = Settings()
