"""
Order history (audit log): every processed order event as a serialized SyncAttempt.
Rows are append-only except the status update a successful or failed retry performs.
"""
import logging
from typing import Any, Callable, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.http.requests.schemas import SyncAttempt
from app.models import OrderHistoryEntry, SyncStatus
from app.services.exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)

# Fields a retry outcome may carry onto the existing entry
UPDATABLE_FIELDS = {"ls_sale_id", "retry_count", "error_message", "error_details"}


class AuditLog:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def append(self, attempt: SyncAttempt) -> None:
        db = self._session_factory()
        try:
            db.add(OrderHistoryEntry(
                attempt_id=attempt.attempt_id,
                shopify_order_id=attempt.shopify_order_id,
                shop_domain=attempt.shop_domain,
                status=attempt.status.value,
                record=attempt.to_json(),
            ))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def list(self, limit: Optional[int] = None) -> List[SyncAttempt]:
        """All readable entries, newest first. Corrupt rows are logged and skipped."""
        db = self._session_factory()
        try:
            query = db.query(OrderHistoryEntry).order_by(OrderHistoryEntry.id.desc())
            if limit:
                query = query.limit(limit)
            rows = query.all()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Order history unavailable: {e}") from e
        finally:
            db.close()
        attempts = []
        for row in rows:
            try:
                attempts.append(SyncAttempt.from_json(row.record))
            except ValidationError as e:
                logger.error("Order history row %s corrupted: %s (%s)", row.id, row.record[:200], e.error_count())
        return attempts

    def latest_for_order(self, shopify_order_id: str, status: Optional[SyncStatus] = None) -> Optional[SyncAttempt]:
        db = self._session_factory()
        try:
            query = db.query(OrderHistoryEntry).filter(OrderHistoryEntry.shopify_order_id == str(shopify_order_id))
            if status is not None:
                query = query.filter(OrderHistoryEntry.status == status.value)
            row = query.order_by(OrderHistoryEntry.id.desc()).first()
        finally:
            db.close()
        if not row:
            return None
        try:
            return SyncAttempt.from_json(row.record)
        except ValidationError:
            logger.error("Order history row %s corrupted", row.id)
            return None

    def mark_status(self, attempt_id: str, status: SyncStatus, **fields: Any) -> bool:
        """Update the status (and retry outcome fields) of the entries for an attempt. Returns False if none exist."""
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update audit fields: {sorted(unknown)}")
        db = self._session_factory()
        try:
            rows = db.query(OrderHistoryEntry).filter(OrderHistoryEntry.attempt_id == attempt_id).all()
            if not rows:
                logger.warning("No order history entry for attempt %s", attempt_id)
                return False
            for row in rows:
                try:
                    record = SyncAttempt.from_json(row.record)
                except ValidationError:
                    logger.error("Order history row %s corrupted; status only", row.id)
                    row.status = status.value
                    continue
                updated = record.model_copy(update={"status": status, **fields})
                row.status = status.value
                row.record = updated.to_json()
            db.commit()
            return True
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
