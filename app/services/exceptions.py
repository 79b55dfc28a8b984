"""Order-sync bridge exceptions."""
import traceback
from typing import Any, Optional


class BridgeError(Exception):
    """Base exception for order-sync errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class WebhookAuthError(BridgeError):
    """Webhook came from an unknown store or carried a bad signature."""


# Credential errors


class CredentialError(BridgeError):
    """No usable Lightspeed credential."""


class MissingTokenError(CredentialError):
    """No access token is cached."""


class NoRefreshTokenError(CredentialError):
    """No refresh token in memory or in the durable store."""


class RefreshError(CredentialError):
    """The refresh-token grant failed."""


class ExchangeError(CredentialError):
    """The authorization-code grant failed."""


# Lightspeed API errors


class LightspeedAPIError(BridgeError):
    """Request to the Lightspeed API failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class LightspeedAuthError(LightspeedAPIError):
    """Lightspeed rejected the access token (401)."""


class ItemNotFoundError(BridgeError):
    """No Lightspeed item matches the SKU."""

    def __init__(self, message: str, sku: Optional[str] = None) -> None:
        super().__init__(message)
        self.sku = sku


class MissingCustomerError(BridgeError):
    """A sale was requested without a Lightspeed customer id."""


# Durable store errors


class StoreUnavailableError(BridgeError):
    """The durable store could not be reached."""


class AttemptNotFoundError(BridgeError):
    """No queued (or permanently failed) attempt exists for the order."""

    def __init__(self, message: str, order_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.order_id = order_id


def error_details(exc: BaseException) -> Any:
    """Diagnostic detail kept with a failed attempt: the remote error body when there is one, else the traceback."""
    body = getattr(exc, "response_body", None)
    if body is not None:
        return body
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))[-4000:]
