"""
Shopify orders/create webhook receiver. Public endpoint (no auth header); HMAC verified per store.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from app.services.bridge import OrderBridge, get_bridge

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/orders-create")
async def shopify_order_created(
    request: Request,
    manual: bool = Query(False),
    bridge: OrderBridge = Depends(get_bridge),
):
    """
    Verify X-Shopify-Hmac-Sha256 against the store's secret, then sync the order to Lightspeed.
    200 for synced, skipped (queued) and duplicate deliveries; 500 only when the sale submission failed.
    The order is already queued for retry in that case, so a Shopify redelivery only repeats work.
    """
    raw_body = await request.body()
    result = await bridge.intake.handle(
        shop_domain=request.headers.get("X-Shopify-Shop-Domain"),
        raw_body=raw_body,
        hmac_header=request.headers.get("X-Shopify-Hmac-Sha256"),
        manual=manual,
    )
    if result.status_code != 200:
        raise HTTPException(status_code=result.status_code, detail=result.message)
    return {"ok": True, "message": result.message}
