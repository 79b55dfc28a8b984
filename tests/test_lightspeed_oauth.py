"""
Token lifecycle tests: encrypted persistence, authorization-code exchange and refresh.
"""
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import respx

from app.models import ProviderCredential
from app.services.credentials import TokenPair, decrypt_token, encrypt_token
from app.services.exceptions import ExchangeError, MissingTokenError, NoRefreshTokenError, RefreshError

from conftest import ENCRYPTION_KEY, TOKEN_URL


def _stored_value(session_factory):
    db = session_factory()
    try:
        row = db.query(ProviderCredential).filter(ProviderCredential.provider_id == "lightspeed_tokens").first()
        return row.value_encrypted if row else None
    finally:
        db.close()


def _store_raw(session_factory, value):
    db = session_factory()
    db.add(ProviderCredential(provider_id="lightspeed_tokens", value_encrypted=value))
    db.commit()
    db.close()


class TestCredentialStore:
    def test_pair_is_encrypted_at_rest(self, credential_store, session_factory):
        credential_store.save(TokenPair("access-1", "refresh-1"))

        value = _stored_value(session_factory)
        assert "access-1" not in value
        assert "refresh-1" in decrypt_token(value, ENCRYPTION_KEY)
        assert credential_store.load() == TokenPair("access-1", "refresh-1")

    def test_save_overwrites_the_single_record(self, credential_store, session_factory):
        credential_store.save(TokenPair("access-1", "refresh-1"))
        credential_store.save(TokenPair("access-2", "refresh-2"))

        db = session_factory()
        assert db.query(ProviderCredential).count() == 1
        db.close()
        assert credential_store.load() == TokenPair("access-2", "refresh-2")

    def test_undecryptable_record_is_deleted(self, credential_store, session_factory):
        _store_raw(session_factory, encrypt_token('{"accessToken": "a", "refreshToken": "r"}', "another-key"))

        assert credential_store.load() is None
        assert _stored_value(session_factory) is None

    def test_record_missing_a_token_is_deleted(self, credential_store, session_factory):
        _store_raw(session_factory, encrypt_token('{"accessToken": "a"}', ENCRYPTION_KEY))

        assert credential_store.load() is None
        assert _stored_value(session_factory) is None

    def test_empty_store(self, credential_store):
        assert credential_store.load() is None


class TestTokenLifecycle:
    def test_authorize_url(self, tokens):
        url = tokens.authorize_url(state="xyz")

        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        assert url.startswith("https://cloud.lightspeed.test/auth/oauth/authorize?")
        assert query["response_type"] == ["code"]
        assert query["client_id"] == ["ls-client"]
        assert query["redirect_uri"] == ["https://bridge.test/lightspeed/callback"]
        assert query["scope"] == ["employee:register employee:all"]
        assert query["state"] == ["xyz"]

    def test_auth_header_requires_token(self, tokens):
        assert tokens.has_valid_token() is False
        with pytest.raises(MissingTokenError):
            tokens.auth_header()

    def test_load_from_store(self, tokens, credential_store):
        credential_store.save(TokenPair("access-1", "refresh-1"))

        assert tokens.load() is True
        assert tokens.auth_header() == {"Authorization": "Bearer access-1"}

    @pytest.mark.asyncio
    @respx.mock
    async def test_exchange_code_persists_pair(self, tokens, credential_store):
        route = respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "access-1", "refresh_token": "refresh-1"})
        )

        assert await tokens.exchange_code("the-code") == "access-1"

        form = parse_qs(route.calls.last.request.content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["the-code"]
        assert form["client_secret"] == ["ls-secret"]
        assert credential_store.load() == TokenPair("access-1", "refresh-1")

    @pytest.mark.asyncio
    @respx.mock
    async def test_exchange_code_rejected(self, tokens, credential_store):
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(400, json={"error": "invalid_grant"}))

        with pytest.raises(ExchangeError):
            await tokens.exchange_code("bad-code")
        assert tokens.has_valid_token() is False
        assert credential_store.load() is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_exchange_code_network_error(self, tokens):
        respx.post(TOKEN_URL).mock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(ExchangeError):
            await tokens.exchange_code("the-code")

    @pytest.mark.asyncio
    async def test_refresh_without_refresh_token(self, tokens):
        with pytest.raises(NoRefreshTokenError):
            await tokens.refresh()

    @pytest.mark.asyncio
    @respx.mock
    async def test_refresh_keeps_refresh_token_unless_rotated(self, authed_tokens, credential_store):
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json={"access_token": "access-2"}))

        await authed_tokens.refresh()

        assert authed_tokens.access_token == "access-2"
        assert authed_tokens.refresh_token == "refresh-1"
        assert credential_store.load() == TokenPair("access-2", "refresh-1")

    @pytest.mark.asyncio
    @respx.mock
    async def test_refresh_failure_keeps_current_pair(self, authed_tokens, credential_store):
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(401, json={"error": "invalid_client"}))

        with pytest.raises(RefreshError):
            await authed_tokens.refresh()

        assert authed_tokens.access_token == "access-1"
        assert credential_store.load() == TokenPair("access-1", "refresh-1")

    @pytest.mark.asyncio
    @respx.mock
    async def test_persist_failure_is_not_fatal(self, authed_tokens, monkeypatch):
        respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "access-2", "refresh_token": "refresh-2"})
        )

        def _broken_save(pair):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(authed_tokens.store, "save", _broken_save)

        assert await authed_tokens.refresh() == "access-2"
        assert authed_tokens.auth_header() == {"Authorization": "Bearer access-2"}
