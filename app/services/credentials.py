"""
Credential encryption/decryption and the durable Lightspeed token store.
"""
import json
import base64
import logging
from typing import Callable, Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session

from app.config import settings
from app.models import ProviderCredential

logger = logging.getLogger(__name__)

LIGHTSPEED_TOKENS_KEY = "lightspeed_tokens"


def get_encryption_key(key_str: Optional[str] = None) -> bytes:
    """Derive the Fernet key from ENCRYPTION_KEY"""
    key_str = key_str or settings.ENCRYPTION_KEY
    # Ensure key is 32 bytes for Fernet
    key_bytes = key_str.encode()[:32].ljust(32, b'0')
    return base64.urlsafe_b64encode(key_bytes)


def encrypt_token(token: str, key_str: Optional[str] = None) -> str:
    """Encrypt a token"""
    f = Fernet(get_encryption_key(key_str))
    return f.encrypt(token.encode()).decode()


def decrypt_token(encrypted: str, key_str: Optional[str] = None) -> str:
    """Decrypt a token"""
    f = Fernet(get_encryption_key(key_str))
    return f.decrypt(encrypted.encode()).decode()


class TokenPair:
    def __init__(self, access_token: str, refresh_token: str):
        self.access_token = access_token
        self.refresh_token = refresh_token

    def to_dict(self) -> dict:
        return {"accessToken": self.access_token, "refreshToken": self.refresh_token}

    def __eq__(self, other):
        return isinstance(other, TokenPair) and self.to_dict() == other.to_dict()

    def __repr__(self):
        return "TokenPair(access_token=***, refresh_token=***)"


class CredentialStore:
    """
    Durable home of the Lightspeed token pair: one encrypted JSON value under a fixed key.
    A record that cannot be decrypted, parsed, or lacks either token is deleted on load.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        key: str = LIGHTSPEED_TOKENS_KEY,
        encryption_key: Optional[str] = None,
    ):
        self._session_factory = session_factory
        self.key = key
        self._encryption_key = encryption_key

    def load(self) -> Optional[TokenPair]:
        db = self._session_factory()
        try:
            row = db.query(ProviderCredential).filter(ProviderCredential.provider_id == self.key).first()
            if not row or not row.value_encrypted:
                logger.warning("[TOKEN-LOAD] No tokens found in durable store")
                return None
            try:
                data = json.loads(decrypt_token(row.value_encrypted, self._encryption_key))
            except (InvalidToken, ValueError) as e:
                logger.error("[TOKEN-LOAD] Stored tokens unreadable (%s) - deleting key", type(e).__name__)
                db.delete(row)
                db.commit()
                return None
            if not isinstance(data, dict) or not data.get("accessToken") or not data.get("refreshToken"):
                logger.warning("[TOKEN-LOAD] Invalid token structure - deleting key")
                db.delete(row)
                db.commit()
                return None
            return TokenPair(str(data["accessToken"]), str(data["refreshToken"]))
        finally:
            db.close()

    def save(self, pair: TokenPair) -> None:
        """Write the full pair in one transaction."""
        value = encrypt_token(json.dumps(pair.to_dict()), self._encryption_key)
        db = self._session_factory()
        try:
            row = db.query(ProviderCredential).filter(ProviderCredential.provider_id == self.key).first()
            if row:
                row.value_encrypted = value
            else:
                db.add(ProviderCredential(provider_id=self.key, value_encrypted=value))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def delete(self) -> None:
        db = self._session_factory()
        try:
            db.query(ProviderCredential).filter(ProviderCredential.provider_id == self.key).delete()
            db.commit()
        finally:
            db.close()
