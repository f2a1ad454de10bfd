"""
Integration error taxonomy.

Provider clients classify every failure exactly once, at the HTTP boundary,
into one of the IntegrationError subclasses below. Callers (sync orchestrator,
routes) only read `.code` and `.retryable`.
"""

from enum import Enum
from typing import Optional


class IntegrationErrorCode(str, Enum):
    """Standardized integration error codes."""
    MISSING_TOKEN = "MISSING_TOKEN"
    INVALID_TOKEN = "INVALID_TOKEN"
    RATE_LIMIT = "RATE_LIMIT"
    FORBIDDEN = "FORBIDDEN"
    API_ERROR = "API_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    FETCH_ERROR = "FETCH_ERROR"


# Error code to HTTP status mapping (for routes)
ERROR_CODE_TO_STATUS: dict[IntegrationErrorCode, int] = {
    IntegrationErrorCode.MISSING_TOKEN: 401,
    IntegrationErrorCode.INVALID_TOKEN: 401,
    IntegrationErrorCode.RATE_LIMIT: 429,
    IntegrationErrorCode.FORBIDDEN: 403,
    IntegrationErrorCode.API_ERROR: 502,
    IntegrationErrorCode.NETWORK_ERROR: 503,
    IntegrationErrorCode.FETCH_ERROR: 500,
}


class IntegrationError(Exception):
    """
    Base exception for provider integration failures.

    Attributes:
        message: Human-readable message (never contains tokens)
        provider: Provider value, e.g. "github"
        code: IntegrationErrorCode
        retryable: Whether the sync orchestrator may retry
        status_code: Upstream HTTP status, when there was one
    """

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        code: IntegrationErrorCode = IntegrationErrorCode.FETCH_ERROR,
        retryable: bool = False,
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.provider = provider
        self.code = code
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)

    @property
    def http_status(self) -> int:
        return ERROR_CODE_TO_STATUS.get(self.code, 500)

    def to_dict(self) -> dict:
        return {
            "error": self.code.value,
            "message": self.message,
            "provider": self.provider,
            "retryable": self.retryable,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value}, provider={self.provider!r}, message={self.message!r})"


class MissingTokenError(IntegrationError):
    def __init__(self, provider: Optional[str] = None, message: Optional[str] = None):
        super().__init__(
            message or f"{provider or 'Provider'} is not connected",
            provider=provider,
            code=IntegrationErrorCode.MISSING_TOKEN,
            retryable=False,
        )


class InvalidTokenError(IntegrationError):
    def __init__(self, provider: Optional[str] = None, message: Optional[str] = None, status_code: Optional[int] = 401):
        super().__init__(
            message or "Access token is invalid or revoked",
            provider=provider,
            code=IntegrationErrorCode.INVALID_TOKEN,
            retryable=False,
            status_code=status_code,
        )


class ReauthRequiredError(InvalidTokenError):
    """The credential can no longer be refreshed; the user must reconnect."""

    def __init__(self, provider: Optional[str] = None, message: Optional[str] = None):
        super().__init__(
            provider=provider,
            message=message or "Reauthorization required",
            status_code=None,
        )


class RateLimitError(IntegrationError):
    def __init__(
        self,
        provider: Optional[str] = None,
        message: Optional[str] = None,
        retry_after: Optional[int] = None,
        status_code: Optional[int] = 429,
    ):
        super().__init__(
            message or "Provider rate limit exceeded",
            provider=provider,
            code=IntegrationErrorCode.RATE_LIMIT,
            retryable=True,
            status_code=status_code,
        )
        self.retry_after = retry_after


class ForbiddenError(IntegrationError):
    def __init__(self, provider: Optional[str] = None, message: Optional[str] = None):
        super().__init__(
            message or "Access forbidden",
            provider=provider,
            code=IntegrationErrorCode.FORBIDDEN,
            retryable=False,
            status_code=403,
        )


class ProviderAPIError(IntegrationError):
    """Non-2xx response (or API-level failure). Retryable only for 5xx."""

    def __init__(self, message: str, provider: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(
            message,
            provider=provider,
            code=IntegrationErrorCode.API_ERROR,
            retryable=status_code is not None and status_code >= 500,
            status_code=status_code,
        )


class ProviderServerError(ProviderAPIError):
    """5xx from the provider."""


class ProviderClientError(ProviderAPIError):
    """4xx (other than 401/403/429) or an API-level rejection. Never retried."""

    def __init__(self, message: str, provider: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, provider=provider, status_code=status_code)
        self.retryable = False


class NetworkError(IntegrationError):
    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(
            message,
            provider=provider,
            code=IntegrationErrorCode.NETWORK_ERROR,
            retryable=True,
        )


class ProviderTimeoutError(NetworkError):
    """Connect or read timeout talking to the provider."""


# =============================================================================
# OAuth / encryption errors (not provider fetch failures)
# =============================================================================

class OAuthError(Exception):
    """OAuth exchange or refresh was rejected by the provider."""

    def __init__(self, message: str, provider: Optional[str] = None):
        self.provider = provider
        super().__init__(message)


class OAuthConfigError(OAuthError):
    """Provider OAuth credentials are not configured."""


class EncryptionConfigError(Exception):
    """ENCRYPTION_MASTER_KEY is missing."""


class DecryptionError(Exception):
    """Raised for every decryption failure, always with the same message."""

    def __init__(self, message: str = "Failed to decrypt data"):
        super().__init__(message)


def is_retryable_error(error: BaseException) -> bool:
    """Classify an exception for the retry loop. Unknown errors never retry."""
    if isinstance(error, IntegrationError):
        return error.retryable
    return False
