"""
Operational triggers: token refresh and retry-queue sweep (hit by an external cron),
and the manual resync of a single order.
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from app.services.bridge import OrderBridge, get_bridge
from app.services.exceptions import AttemptNotFoundError, CredentialError, StoreUnavailableError

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/refresh-token")
async def refresh_token(bridge: OrderBridge = Depends(get_bridge)):
    """Refresh the Lightspeed token only when none is cached."""
    logger.info("[TOKEN-CRON] Refresh called at %s", datetime.now(timezone.utc).isoformat())
    try:
        refreshed = await bridge.refresh_if_missing()
    except CredentialError as e:
        logger.error("[TOKEN-CRON] REFRESH FAILED: %s", e)
        raise HTTPException(status_code=500, detail="Refresh failed")
    if refreshed:
        return {"ok": True, "message": "Token refreshed successfully"}
    return {"ok": True, "message": "Token still valid"}


@router.get("/cron/retry-failed")
async def retry_failed(bridge: OrderBridge = Depends(get_bridge)):
    """Drain up to RETRY_BATCH_SIZE queued attempts, oldest first."""
    try:
        result = await bridge.queue.drain()
    except StoreUnavailableError as e:
        logger.error("[RETRY-CRON] %s", e)
        raise HTTPException(status_code=503, detail="Retry queue not available")
    if result.processed == 0:
        message = "No queued orders to retry"
    else:
        message = f"Processed {result.processed} queued retries"
    return {"ok": True, "message": message, **result.to_dict()}


@router.post("/resync/{order_id}")
async def resync_order(order_id: str, bridge: OrderBridge = Depends(get_bridge)):
    """Retry one queued (or permanently failed) order now, ignoring the retry ceiling."""
    try:
        outcome = await bridge.queue.resync(order_id)
    except AttemptNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found in retry queue")
    except StoreUnavailableError as e:
        logger.error("[RESYNC] %s", e)
        raise HTTPException(status_code=503, detail="Retry queue not available")

    if outcome.success:
        return {"success": True, "message": "Resync successful", "lsSaleID": outcome.sale_id}
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": outcome.error_message,
            "details": outcome.error_details,
        },
    )
