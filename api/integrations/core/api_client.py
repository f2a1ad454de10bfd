"""
Shared HTTP plumbing for provider API clients.

Every provider client makes single-shot requests through `_request`, which
maps transport failures and non-2xx responses onto the IntegrationError
taxonomy. Retries are the sync orchestrator's job, not the client's.
"""

import logging
from typing import Any, Optional

import httpx

from .errors import (
    ForbiddenError,
    IntegrationError,
    IntegrationErrorCode,
    InvalidTokenError,
    MissingTokenError,
    NetworkError,
    ProviderClientError,
    ProviderServerError,
    ProviderTimeoutError,
    RateLimitError,
)

logger = logging.getLogger(__name__)

# Shared timeout for all provider API calls
_API_TIMEOUT = httpx.Timeout(30.0, connect=10.0)


def parse_retry_after(response: httpx.Response) -> Optional[int]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


class ProviderAPIClient:
    """
    Base class for provider REST clients.

    Subclasses set `provider` and `base_url`, and may override `_headers`,
    `_classify_response` and `_parse_body` for provider quirks.
    """

    provider: str = ""
    base_url: str = ""

    def __init__(self, access_token: str):
        if not access_token:
            raise MissingTokenError(self.provider)
        self._access_token = access_token

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        url = path if path.startswith("http") else f"{self.base_url}{path}"

        try:
            async with httpx.AsyncClient(timeout=_API_TIMEOUT) as client:
                response = await client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"{self.provider} request timed out: {type(e).__name__}", self.provider) from e
        except httpx.TransportError as e:
            raise NetworkError(f"{self.provider} network error: {type(e).__name__}", self.provider) from e

        if not response.is_success:
            error = self._classify_response(response)
            logger.warning(f"[{self.provider.upper()}_API] {method} {path} -> {response.status_code} ({error.code.value})")
            raise error

        return self._parse_body(response)

    async def _get(self, path: str, **kwargs) -> Any:
        return await self._request("GET", path, **kwargs)

    async def _post(self, path: str, **kwargs) -> Any:
        return await self._request("POST", path, **kwargs)

    def _classify_response(self, response: httpx.Response) -> IntegrationError:
        status = response.status_code
        if status == 401:
            return InvalidTokenError(self.provider)
        if status == 429:
            return RateLimitError(self.provider, retry_after=parse_retry_after(response))
        if status == 403:
            return ForbiddenError(self.provider)
        error_type = ProviderServerError if status >= 500 else ProviderClientError
        return error_type(
            f"{self.provider} API error: {status}",
            self.provider,
            status_code=status,
        )

    def _parse_body(self, response: httpx.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise IntegrationError(
                f"{self.provider} returned invalid JSON",
                provider=self.provider,
                code=IntegrationErrorCode.FETCH_ERROR,
            ) from e


def is_fatal_for_sync(error: IntegrationError) -> bool:
    """Errors that abort a multi-resource fetch instead of skipping one resource."""
    return error.code in (
        IntegrationErrorCode.INVALID_TOKEN,
        IntegrationErrorCode.MISSING_TOKEN,
        IntegrationErrorCode.RATE_LIMIT,
        IntegrationErrorCode.NETWORK_ERROR,
    )
