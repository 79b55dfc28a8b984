"""
Read-only dashboard data: order history and the retry queue, decorated with store display names.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app.http.requests.schemas import SyncAttempt
from app.models import SyncStatus
from app.services.bridge import OrderBridge, get_bridge
from app.services.exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)
router = APIRouter()


def _row(bridge: OrderBridge, attempt: SyncAttempt) -> dict:
    data = attempt.model_dump(mode="json", by_alias=True)
    data["orderNumber"] = attempt.order_number or attempt.shopify_order_id or "-"
    data["storeName"] = bridge.store_name(attempt.shop_domain)
    return data


@router.get("")
async def dashboard(bridge: OrderBridge = Depends(get_bridge)):
    """Totals per status plus the most recent orders."""
    try:
        orders = bridge.audit.list()
        queued = bridge.queue.list()
    except StoreUnavailableError as e:
        logger.warning("Dashboard store unavailable: %s", e)
        return {"totalOrders": 0, "byStatus": {}, "queued": 0, "orders": [], "degraded": True}

    by_status = {s.value: 0 for s in SyncStatus}
    for attempt in orders:
        by_status[attempt.status.value] += 1
    logger.debug("[DASHBOARD] %d history entries, %d queued", len(orders), len(queued))
    return {
        "totalOrders": len(orders),
        "byStatus": by_status,
        "queued": len(queued),
        "tokenReady": bridge.tokens.has_valid_token(),
        "orders": [_row(bridge, a) for a in orders[:50]],
    }


@router.get("/orders")
async def dashboard_orders(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    status: Optional[SyncStatus] = Query(None),
    bridge: OrderBridge = Depends(get_bridge),
):
    try:
        orders = bridge.audit.list(limit=limit)
    except StoreUnavailableError:
        raise HTTPException(status_code=503, detail="Order history not available")
    if status is not None:
        orders = [a for a in orders if a.status == status]
    return {"total": len(orders), "orders": [_row(bridge, a) for a in orders]}


@router.get("/failed")
async def dashboard_failed(bridge: OrderBridge = Depends(get_bridge)):
    """Attempts currently waiting in the retry queue, oldest first."""
    try:
        queued = bridge.queue.list()
    except StoreUnavailableError:
        raise HTTPException(status_code=503, detail="Retry queue not available")
    return {
        "total": len(queued),
        "maxRetries": bridge.queue.max_retries,
        "orders": [_row(bridge, a) for a in queued],
    }
