"""
SQLAlchemy models for the durable store.
All model and enum definitions live here for simplicity and to avoid circular imports.
"""
from sqlalchemy import Column, String, Integer, DateTime, Text, UniqueConstraint
from sqlalchemy.sql import func
from app.database import Base
import enum
import uuid


class SyncStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRYING = "retrying"
    PERMANENT_FAIL = "permanent-fail"


class ProviderCredential(Base):
    """One encrypted value per provider key (e.g. the Lightspeed token pair under "lightspeed_tokens")."""
    __tablename__ = "provider_credentials"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    provider_id = Column("provider_id", String, nullable=False, index=True)
    value_encrypted = Column("value_encrypted", Text, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (UniqueConstraint("provider_id", name="uq_provider_credentials_provider"),)


class OrderHistoryEntry(Base):
    """Audit log row: one serialized sync attempt per processed order event."""
    __tablename__ = "order_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    attempt_id = Column("attempt_id", String, nullable=False, index=True)
    shopify_order_id = Column("shopify_order_id", String, nullable=False, index=True)
    shop_domain = Column("shop_domain", String, nullable=True, index=True)
    status = Column("status", String, nullable=False, index=True)
    record = Column("record", Text, nullable=False)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())


class RetryQueueEntry(Base):
    """Retry queue row keyed by attempt id; payload is the exact serialized attempt."""
    __tablename__ = "sync_retry_queue"

    attempt_id = Column("attempt_id", String, primary_key=True)
    shopify_order_id = Column("shopify_order_id", String, nullable=False, index=True)
    retry_count = Column("retry_count", Integer, nullable=False, default=0)
    payload = Column("payload", Text, nullable=False)
    enqueued_at = Column("enqueued_at", DateTime, nullable=False, server_default=func.now(), index=True)
