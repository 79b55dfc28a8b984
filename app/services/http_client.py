"""
Shared HTTP helpers for the Lightspeed API and OAuth endpoints.
Every call carries an explicit timeout. Idempotent reads retry on gateway errors
and connection failures; writes (sales, token grants) are sent exactly once.
"""
import asyncio
import logging
from typing import Any, Optional

import httpx

from app.config import settings

logger = logging.getLogger(__name__)

DEFAULT_RETRIES = 2
RETRY_BACKOFF_BASE = 1.0  # seconds
RETRY_ON_STATUS = (502, 503, 504)


async def _sleep_backoff(attempt: int) -> None:
    if attempt <= 0:
        return
    delay = RETRY_BACKOFF_BASE * (2 ** (attempt - 1))
    await asyncio.sleep(min(delay, 10.0))


def _timeout(timeout: Optional[float]) -> float:
    return settings.HTTP_TIMEOUT if timeout is None else timeout


async def get_with_retry(
    url: str,
    *,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    timeout: Optional[float] = None,
    max_retries: int = DEFAULT_RETRIES,
) -> httpx.Response:
    """
    GET with retries on 502/503/504 and connection errors.
    Any other status (including 401) is returned to the caller on the first attempt.
    """
    for attempt in range(max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=_timeout(timeout)) as client:
                resp = await client.get(url, params=params, headers=headers)
        except (httpx.ConnectError, httpx.ReadTimeout, httpx.ConnectTimeout) as e:
            if attempt >= max_retries:
                raise
            logger.warning("HTTP GET %s attempt %s failed: %s", url, attempt + 1, e)
            await _sleep_backoff(attempt + 1)
            continue
        if attempt < max_retries and resp.status_code in RETRY_ON_STATUS:
            logger.warning("HTTP GET %s returned %s, retrying", url, resp.status_code)
            await _sleep_backoff(attempt + 1)
            continue
        return resp
    raise RuntimeError("unreachable")  # pragma: no cover


async def post_json(
    url: str,
    *,
    json: Optional[dict] = None,
    headers: Optional[dict] = None,
    timeout: Optional[float] = None,
) -> httpx.Response:
    """POST a JSON body once (non-idempotent)."""
    async with httpx.AsyncClient(timeout=_timeout(timeout)) as client:
        return await client.post(url, json=json or {}, headers=headers or {})


async def post_form(
    url: str,
    *,
    data: dict[str, Any],
    timeout: Optional[float] = None,
) -> httpx.Response:
    """POST an application/x-www-form-urlencoded body once (OAuth token grants)."""
    async with httpx.AsyncClient(timeout=_timeout(timeout)) as client:
        return await client.post(
            url,
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )


def response_body(resp: httpx.Response) -> Any:
    """Decoded JSON body when possible, else the (truncated) text, for error diagnostics."""
    try:
        return resp.json()
    except ValueError:
        return resp.text[:2000]
