"""
Durable retry queue for sync attempts that failed or were skipped.

Rows are keyed by attempt id and hold the exact serialized attempt. Removal deletes by
key AND the payload that was read, so a record changed between read and remove is left alone.
drain() is an idempotent sweep meant for a single external scheduler; it takes no lock.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.http.requests.schemas import SyncAttempt
from app.models import RetryQueueEntry, SyncStatus
from app.services.audit_log import AuditLog
from app.services.exceptions import AttemptNotFoundError, ItemNotFoundError, StoreUnavailableError, error_details
from app.services.lightspeed_service import LightspeedClient

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class QueuedRecord:
    """A queue row as read: its key and the exact serialized payload."""

    def __init__(self, attempt_id: str, payload: str):
        self.attempt_id = attempt_id
        self.payload = payload


class SyncOutcome:
    def __init__(
        self,
        attempt: SyncAttempt,
        success: bool,
        sale_id: Optional[str] = None,
        error_message: Optional[str] = None,
        error_details=None,
    ):
        self.attempt = attempt
        self.success = success
        self.sale_id = sale_id
        self.error_message = error_message
        self.error_details = error_details

    def to_dict(self) -> dict:
        return {
            "orderId": self.attempt.shopify_order_id,
            "attemptId": self.attempt.attempt_id,
            "success": self.success,
            "lsSaleID": self.sale_id,
            "retryCount": self.attempt.retry_count,
            "errorMessage": self.error_message,
            "errorDetails": self.error_details,
        }


class DrainResult:
    def __init__(self):
        self.processed = 0
        self.succeeded = 0
        self.failed = 0
        self.evicted = 0
        self.corrupt = 0

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "evicted": self.evicted,
            "corrupt": self.corrupt,
        }


class RetryQueue:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        client: LightspeedClient,
        audit: AuditLog,
        max_retries: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.client = client
        self.audit = audit
        self.max_retries = settings.MAX_SYNC_RETRIES if max_retries is None else max_retries

    # -- storage -----------------------------------------------------------

    def enqueue(self, attempt: SyncAttempt) -> None:
        db = self._session_factory()
        try:
            db.add(self._row(attempt))
            db.commit()
            logger.info("Queued attempt %s for order #%s (retryCount=%s)",
                        attempt.attempt_id, attempt.shopify_order_id, attempt.retry_count)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def pending(self, limit: int) -> List[QueuedRecord]:
        """Oldest-first slice of the queue."""
        db = self._session_factory()
        try:
            rows = (
                db.query(RetryQueueEntry)
                .order_by(RetryQueueEntry.enqueued_at.asc(), RetryQueueEntry.attempt_id.asc())
                .limit(limit)
                .all()
            )
            return [QueuedRecord(r.attempt_id, r.payload) for r in rows]
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Retry queue unavailable: {e}") from e
        finally:
            db.close()

    def find_by_order(self, shopify_order_id: str) -> Optional[QueuedRecord]:
        """Most recently queued record for an order, read from the durable store."""
        db = self._session_factory()
        try:
            row = (
                db.query(RetryQueueEntry)
                .filter(RetryQueueEntry.shopify_order_id == str(shopify_order_id))
                .order_by(RetryQueueEntry.enqueued_at.desc())
                .first()
            )
            return QueuedRecord(row.attempt_id, row.payload) if row else None
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Retry queue unavailable: {e}") from e
        finally:
            db.close()

    def remove(self, record: QueuedRecord) -> bool:
        """Delete exactly this record. False when it is gone or its payload changed since it was read."""
        db = self._session_factory()
        try:
            deleted = (
                db.query(RetryQueueEntry)
                .filter(RetryQueueEntry.attempt_id == record.attempt_id, RetryQueueEntry.payload == record.payload)
                .delete(synchronize_session=False)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        if not deleted:
            logger.warning("Queue record %s changed or vanished before removal; left untouched", record.attempt_id)
        return bool(deleted)

    def requeue(self, record: QueuedRecord, updated: SyncAttempt) -> bool:
        """Remove the record as read and insert its updated version at the back, in one transaction."""
        db = self._session_factory()
        try:
            deleted = (
                db.query(RetryQueueEntry)
                .filter(RetryQueueEntry.attempt_id == record.attempt_id, RetryQueueEntry.payload == record.payload)
                .delete(synchronize_session=False)
            )
            if not deleted:
                db.rollback()
                logger.warning("Queue record %s changed or vanished before requeue; skipped", record.attempt_id)
                return False
            db.add(self._row(updated))
            db.commit()
            return True
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def list(self) -> List[SyncAttempt]:
        """Every readable queued attempt, oldest first."""
        db = self._session_factory()
        try:
            rows = db.query(RetryQueueEntry).order_by(RetryQueueEntry.enqueued_at.asc()).all()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Retry queue unavailable: {e}") from e
        finally:
            db.close()
        attempts = []
        for row in rows:
            try:
                attempts.append(SyncAttempt.from_json(row.payload))
            except ValidationError:
                logger.error("Queue record %s corrupted: %s", row.attempt_id, row.payload[:200])
        return attempts

    @staticmethod
    def _row(attempt: SyncAttempt) -> RetryQueueEntry:
        return RetryQueueEntry(
            attempt_id=attempt.attempt_id,
            shopify_order_id=attempt.shopify_order_id,
            retry_count=attempt.retry_count,
            payload=attempt.to_json(),
            enqueued_at=_utcnow(),
        )

    # -- processing --------------------------------------------------------

    async def _submit(self, attempt: SyncAttempt) -> dict:
        sale_lines = attempt.sale_lines
        if not sale_lines:
            # Skipped before line mapping; resolve from the order's products now.
            sale_lines, _ = await self.client.resolve_sale_lines(attempt.products)
            if not sale_lines:
                raise ItemNotFoundError(f"No syncable items for order #{attempt.shopify_order_id}")
        return await self.client.create_sale(sale_lines, attempt.ls_customer_id)

    async def _retry(self, record: QueuedRecord, attempt: SyncAttempt) -> SyncOutcome:
        try:
            sale = await self._submit(attempt)
        except Exception as e:
            retry_count = attempt.retry_count + 1
            details = error_details(e)
            logger.error("[RETRY] Failed for #%s (retry %s): %s", attempt.shopify_order_id, retry_count, e)
            updated = attempt.model_copy(update={
                "retry_count": retry_count,
                "status": SyncStatus.RETRYING,
                "error_message": str(e),
                "error_details": details,
            })
            self.requeue(record, updated)
            self.audit.mark_status(
                attempt.attempt_id,
                SyncStatus.RETRYING,
                retry_count=retry_count,
                error_message=str(e),
                error_details=details,
            )
            return SyncOutcome(updated, False, error_message=str(e), error_details=details)

        sale_id = str(sale.get("saleID") or "unknown")
        logger.info("[RETRY] Success for #%s (sale %s)", attempt.shopify_order_id, sale_id)
        self.remove(record)
        self.audit.mark_status(
            attempt.attempt_id,
            SyncStatus.SUCCESS,
            ls_sale_id=sale_id,
            retry_count=attempt.retry_count,
            error_message=None,
        )
        return SyncOutcome(attempt, True, sale_id=sale_id)

    def _parse(self, record: QueuedRecord) -> Optional[SyncAttempt]:
        try:
            return SyncAttempt.from_json(record.payload)
        except ValidationError:
            logger.error("[RETRY] Corrupted queued item %s - deleting: %s", record.attempt_id, record.payload[:200])
            self.remove(record)
            return None

    async def drain(self, max_items: Optional[int] = None) -> DrainResult:
        """
        Process up to max_items queued attempts. At the retry ceiling an attempt is evicted and
        marked permanent-fail; otherwise the sale is re-submitted. Success evicts, failure
        re-queues with retryCount + 1.

        Raises:
            StoreUnavailableError: the queue could not be read.
        """
        limit = settings.RETRY_BATCH_SIZE if max_items is None else max_items
        records = self.pending(limit)
        result = DrainResult()
        if not records:
            logger.info("[RETRY] No queued orders to retry")
            return result

        logger.info("[RETRY] Processing %d queued attempt(s)", len(records))
        for record in records:
            result.processed += 1
            attempt = self._parse(record)
            if attempt is None:
                result.corrupt += 1
                continue

            if attempt.retry_count >= self.max_retries:
                logger.warning("[RETRY] Max retries for #%s - evicting", attempt.shopify_order_id)
                if self.remove(record):
                    self.audit.mark_status(attempt.attempt_id, SyncStatus.PERMANENT_FAIL, retry_count=attempt.retry_count)
                result.evicted += 1
                continue

            outcome = await self._retry(record, attempt)
            if outcome.success:
                result.succeeded += 1
            else:
                result.failed += 1
        logger.info("[RETRY] Sweep done: %s", result.to_dict())
        return result

    async def resync(self, shopify_order_id: str) -> SyncOutcome:
        """
        Manually retry an order. Looks in the durable queue first (no retry ceiling on this path);
        an order evicted as permanent-fail is retried from its order history record.

        Raises:
            AttemptNotFoundError: nothing queued or permanently failed for the order.
        """
        order_id = str(shopify_order_id)
        record = self.find_by_order(order_id)
        if record is not None:
            attempt = self._parse(record)
            if attempt is None:
                raise AttemptNotFoundError(f"Queued record for order {order_id} was corrupted", order_id=order_id)
            logger.info("[RESYNC] Retrying queued order #%s", order_id)
            return await self._retry(record, attempt)

        attempt = self.audit.latest_for_order(order_id, status=SyncStatus.PERMANENT_FAIL)
        if attempt is None:
            raise AttemptNotFoundError(f"Order {order_id} not found in retry queue", order_id=order_id)

        logger.info("[RESYNC] Retrying permanently failed order #%s", order_id)
        try:
            sale = await self._submit(attempt)
        except Exception as e:
            details = error_details(e)
            logger.error("[RESYNC] Failed for #%s: %s", order_id, e)
            self.audit.mark_status(attempt.attempt_id, SyncStatus.PERMANENT_FAIL,
                                   error_message=str(e), error_details=details)
            return SyncOutcome(attempt, False, error_message=str(e), error_details=details)
        sale_id = str(sale.get("saleID") or "unknown")
        self.audit.mark_status(attempt.attempt_id, SyncStatus.SUCCESS, ls_sale_id=sale_id, error_message=None)
        return SyncOutcome(attempt, True, sale_id=sale_id)
