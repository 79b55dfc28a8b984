"""
Lightspeed OAuth token lifecycle: authorization-code exchange, refresh, and the
in-memory cache of the current access/refresh token pair.
"""
import logging
from typing import Optional
from urllib.parse import urlencode

import httpx

from app.config import settings
from app.services.credentials import CredentialStore, TokenPair
from app.services.exceptions import ExchangeError, MissingTokenError, NoRefreshTokenError, RefreshError
from app.services.http_client import post_form, response_body

logger = logging.getLogger(__name__)


class TokenLifecycleManager:
    """
    Owns the current Lightspeed credential. Validity is discovered reactively: callers that
    get a 401 call refresh(). Concurrent refreshes are not serialized; each writes the full pair.
    Uses provided client settings or falls back to settings (env).
    """

    def __init__(
        self,
        store: CredentialStore,
        client_id: str | None = None,
        client_secret: str | None = None,
        redirect_uri: str | None = None,
        token_url: str | None = None,
        authorize_url: str | None = None,
        scope: str | None = None,
        timeout: float | None = None,
    ):
        self.store = store
        self.client_id = client_id or settings.LIGHTSPEED_CLIENT_ID
        self.client_secret = client_secret or settings.LIGHTSPEED_CLIENT_SECRET
        self.redirect_uri = redirect_uri or settings.LIGHTSPEED_REDIRECT_URI
        self.token_url = token_url or settings.LIGHTSPEED_TOKEN_URL
        self.authorize_url_base = authorize_url or settings.LIGHTSPEED_AUTHORIZE_URL
        self.scope = scope or settings.LIGHTSPEED_SCOPE
        self.timeout = timeout
        self._access_token: Optional[str] = None
        self._refresh_token: Optional[str] = None

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    @property
    def refresh_token(self) -> Optional[str]:
        return self._refresh_token

    def load(self) -> bool:
        """Pull the persisted pair into memory. Returns True when both tokens were loaded."""
        pair = self.store.load()
        if pair:
            self._access_token = pair.access_token
            self._refresh_token = pair.refresh_token
            logger.info("[TOKEN-LOAD] Loaded Lightspeed tokens from durable store")
            return True
        logger.warning("[TOKEN-LOAD] Tokens missing after load - re-auth required")
        return False

    def has_valid_token(self) -> bool:
        """Presence check only; no remote validation."""
        return bool(self._access_token)

    def auth_header(self) -> dict:
        if not self._access_token:
            raise MissingTokenError("Lightspeed token missing")
        return {"Authorization": f"Bearer {self._access_token}"}

    def authorize_url(self, state: str | None = None) -> str:
        """Consent URL the operator is redirected to."""
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
        }
        if state:
            params["state"] = state
        return f"{self.authorize_url_base}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> str:
        """Exchange an authorization code for the token pair and persist it."""
        try:
            resp = await post_form(
                self.token_url,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uri": self.redirect_uri,
                },
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise ExchangeError(f"Token exchange request failed: {e}") from e
        if not resp.is_success:
            logger.error("Token exchange failed: HTTP %s - %s", resp.status_code, resp.text[:200])
            raise ExchangeError(f"Token exchange failed: HTTP {resp.status_code}")

        data = response_body(resp)
        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            raise ExchangeError("No access_token in Lightspeed token response")

        self._access_token = access_token
        self._refresh_token = data.get("refresh_token")
        self._persist()
        logger.info("Lightspeed tokens saved after exchange")
        return access_token

    async def refresh(self) -> str:
        """
        Refresh the access token. Loads the persisted pair first when memory has no refresh token.
        The refresh token is replaced only when the response rotates it.
        """
        logger.info("[REFRESH] Starting...")
        if not self._refresh_token:
            self.load()
        if not self._refresh_token:
            raise NoRefreshTokenError("No refresh token available")

        try:
            resp = await post_form(
                self.token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": self._refresh_token,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            raise RefreshError(f"Token refresh request failed: {e}") from e
        if not resp.is_success:
            logger.error("[REFRESH] Failed: HTTP %s - %s", resp.status_code, resp.text[:200])
            raise RefreshError(f"Token refresh failed: HTTP {resp.status_code}")

        data = response_body(resp)
        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            raise RefreshError("No access_token in Lightspeed refresh response")

        self._access_token = access_token
        self._refresh_token = data.get("refresh_token") or self._refresh_token
        self._persist()
        logger.info("[REFRESH] Success - tokens saved")
        return access_token

    def _persist(self) -> None:
        if not self._access_token or not self._refresh_token:
            logger.warning("Token response had no refresh token; pair not persisted")
            return
        try:
            self.store.save(TokenPair(self._access_token, self._refresh_token))
        except Exception as e:
            # Tokens stay usable in memory; the next successful refresh writes them again.
            logger.exception("Failed to persist Lightspeed tokens: %s", e)
