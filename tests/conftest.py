"""
Shared fixtures: in-memory SQLite durable store, token manager, Lightspeed client, queue and bridge.
"""
import base64
import hashlib
import hmac
import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENV", "TEST")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import StoreMapping
from app.database import Base
import app.models  # noqa: F401  (registers tables on Base.metadata)
from app.services.audit_log import AuditLog
from app.services.bridge import OrderBridge
from app.services.credentials import CredentialStore, TokenPair
from app.services.lightspeed_oauth import TokenLifecycleManager
from app.services.lightspeed_service import LightspeedClient
from app.services.retry_queue import RetryQueue

API_BASE = "https://api.lightspeed.test"
TOKEN_URL = "https://cloud.lightspeed.test/auth/oauth/token"
ACCOUNT_URL = f"{API_BASE}/API/Account/12345"
ENCRYPTION_KEY = "test-encryption-key-0123456789abcdef"

STORE_DOMAIN = "store-a.example"
STORE_SECRET = "s3cr3t"
STORE_CUSTOMER = "42"


def sign(body: bytes, secret: str = STORE_SECRET) -> str:
    """Shopify-style X-Shopify-Hmac-Sha256 value for a raw body."""
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def order_body(order_id=1001, lines=None, name="#1001") -> bytes:
    if lines is None:
        lines = [{"sku": "ABC", "quantity": 2, "price": "10.00", "title": "Widget"}]
    return json.dumps({
        "id": order_id,
        "name": name,
        "total_price": "20.00",
        "line_items": lines,
    }).encode()


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def credential_store(session_factory):
    return CredentialStore(session_factory, encryption_key=ENCRYPTION_KEY)


@pytest.fixture
def tokens(credential_store):
    """Token manager with nothing cached."""
    return TokenLifecycleManager(
        credential_store,
        client_id="ls-client",
        client_secret="ls-secret",
        redirect_uri="https://bridge.test/lightspeed/callback",
        token_url=TOKEN_URL,
        authorize_url="https://cloud.lightspeed.test/auth/oauth/authorize",
        scope="employee:register employee:all",
        timeout=5,
    )


@pytest.fixture
def authed_tokens(tokens, credential_store):
    """Token manager with a persisted and loaded pair."""
    credential_store.save(TokenPair("access-1", "refresh-1"))
    tokens.load()
    return tokens


def make_client(tokens) -> LightspeedClient:
    return LightspeedClient(
        tokens,
        account_id="12345",
        employee_id="7",
        register_id="3",
        shop_id="1",
        api_base=API_BASE,
        margin_divisor="0.80",
        tax_rate="0.07",
        tax_category_id=3,
        payment_type_id=17,
        timeout=5,
    )


@pytest.fixture
def client(authed_tokens):
    return make_client(authed_tokens)


@pytest.fixture
def audit(session_factory):
    return AuditLog(session_factory)


@pytest.fixture
def queue(session_factory, client, audit):
    return RetryQueue(session_factory, client, audit, max_retries=5)


@pytest.fixture
def stores():
    return {
        STORE_DOMAIN: StoreMapping(STORE_DOMAIN, STORE_SECRET, STORE_CUSTOMER, name="Store A"),
    }


@pytest.fixture
def bridge(session_factory, stores):
    """Fully wired bridge over the in-memory store, no tokens cached yet."""
    b = OrderBridge(
        session_factory,
        stores=stores,
        encryption_key=ENCRYPTION_KEY,
        api_base=API_BASE,
        token_url=TOKEN_URL,
        allow_manual=False,
    )
    b.client.account_id = "12345"
    b.client.employee_id = "7"
    b.client.register_id = "3"
    b.client.shop_id = "1"
    b.tokens.client_id = "ls-client"
    b.tokens.client_secret = "ls-secret"
    return b
