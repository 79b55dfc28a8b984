"""
Lightspeed OAuth connect flow: redirect to consent, then exchange the returned code.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse

from app.services.bridge import OrderBridge, get_bridge
from app.services.exceptions import ExchangeError

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/auth")
async def lightspeed_auth(bridge: OrderBridge = Depends(get_bridge)):
    url = bridge.tokens.authorize_url()
    logger.info("Redirecting to Lightspeed consent for client %s", bridge.tokens.client_id)
    return RedirectResponse(url=url, status_code=302)


@router.get("/callback")
async def lightspeed_callback(
    code: Optional[str] = Query(None),
    bridge: OrderBridge = Depends(get_bridge),
):
    if not code:
        raise HTTPException(status_code=400, detail="Missing code")
    try:
        await bridge.tokens.exchange_code(code)
    except ExchangeError as e:
        logger.error("OAuth failed: %s", e)
        raise HTTPException(status_code=500, detail="OAuth failed")
    return {"ok": True, "message": "Lightspeed connected successfully"}
