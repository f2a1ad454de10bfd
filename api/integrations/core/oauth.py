"""
OAuth flow management for integrations.

Handles authorization URLs, code exchange, refresh and revocation for
GitHub, Notion, Slack and Google Calendar. State (CSRF) tokens live in
state.py; this module only talks to providers.
"""

import os
import base64
import logging
from typing import Optional
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

import httpx

from .errors import OAuthError, OAuthConfigError, ReauthRequiredError
from .types import IntegrationProvider, OAuthTokens

logger = logging.getLogger(__name__)

_OAUTH_TIMEOUT = httpx.Timeout(30.0, connect=10.0)

# Google access tokens last an hour when the response omits expires_in
DEFAULT_EXPIRES_IN = 3600


# =============================================================================
# OAuth Configuration
# =============================================================================

class OAuthConfig:
    """OAuth configuration for a provider. Credentials are read from env on access."""

    def __init__(
        self,
        provider: str,
        client_id_env: str,
        client_secret_env: str,
        authorize_url: str,
        token_url: str,
        scopes: list[str],
        redirect_path: str,
        revoke_url: Optional[str] = None,
    ):
        self.provider = provider
        self.client_id_env = client_id_env
        self.client_secret_env = client_secret_env
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.scopes = scopes
        self.redirect_path = redirect_path
        self.revoke_url = revoke_url

    @property
    def client_id(self) -> str:
        return os.getenv(self.client_id_env, "")

    @property
    def client_secret(self) -> str:
        return os.getenv(self.client_secret_env, "")

    @property
    def redirect_uri(self) -> str:
        """Get the full redirect URI."""
        base_url = os.getenv("API_BASE_URL", "http://localhost:8000")
        return f"{base_url.rstrip('/')}{self.redirect_path}"

    @property
    def is_configured(self) -> bool:
        """Check if OAuth credentials are configured."""
        return bool(self.client_id and self.client_secret)


# Provider-specific OAuth configs
OAUTH_CONFIGS: dict[str, OAuthConfig] = {
    "github": OAuthConfig(
        provider="github",
        client_id_env="GITHUB_CLIENT_ID",
        client_secret_env="GITHUB_CLIENT_SECRET",
        authorize_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        scopes=["repo", "read:user", "read:org"],
        redirect_path="/api/integrations/github/callback",
        revoke_url="https://api.github.com/applications/{client_id}/token",
    ),
    "notion": OAuthConfig(
        provider="notion",
        client_id_env="NOTION_CLIENT_ID",
        client_secret_env="NOTION_CLIENT_SECRET",
        authorize_url="https://api.notion.com/v1/oauth/authorize",
        token_url="https://api.notion.com/v1/oauth/token",
        scopes=["read_content", "read_user"],
        redirect_path="/api/integrations/notion/callback",
    ),
    "slack": OAuthConfig(
        provider="slack",
        client_id_env="SLACK_CLIENT_ID",
        client_secret_env="SLACK_CLIENT_SECRET",
        authorize_url="https://slack.com/oauth/v2/authorize",
        token_url="https://slack.com/api/oauth.v2.access",
        scopes=[
            "channels:history",     # Read public channel messages
            "channels:read",        # List public channels
            "users:read",           # Resolve user info
            "team:read",            # Workspace name
            "im:history",           # Count DM activity
            "reactions:read",
        ],
        redirect_path="/api/integrations/slack/callback",
        revoke_url="https://slack.com/api/auth.revoke",
    ),
    "calendar": OAuthConfig(
        provider="calendar",
        client_id_env="GOOGLE_CLIENT_ID",
        client_secret_env="GOOGLE_CLIENT_SECRET",
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        scopes=[
            "https://www.googleapis.com/auth/calendar.readonly",
            "https://www.googleapis.com/auth/calendar.events.readonly",
        ],
        redirect_path="/api/integrations/calendar/callback",
        revoke_url="https://oauth2.googleapis.com/revoke",
    ),
}


def _provider_value(provider) -> str:
    return provider.value if isinstance(provider, IntegrationProvider) else str(provider)


def get_oauth_config(provider) -> OAuthConfig:
    """
    Get the config for a provider.

    Raises:
        OAuthConfigError: Unknown provider or credentials not set
    """
    provider_value = _provider_value(provider)
    config = OAUTH_CONFIGS.get(provider_value)
    if not config:
        raise OAuthConfigError(f"Unknown provider: {provider_value}", provider_value)
    if not config.is_configured:
        raise OAuthConfigError(f"{provider_value} OAuth not configured", provider_value)
    return config


def get_configured_providers() -> list[IntegrationProvider]:
    """Providers whose client id and secret are present in the environment."""
    return [
        IntegrationProvider(name)
        for name, config in OAUTH_CONFIGS.items()
        if config.is_configured
    ]


# =============================================================================
# OAuth Flow Functions
# =============================================================================

def get_authorization_url(provider, state: str) -> str:
    """
    Get the OAuth authorization URL for a provider.

    Args:
        provider: Integration provider
        state: CSRF state token from OAuthStateManager.generate_state

    Returns:
        Full authorization URL to redirect user to
    """
    provider_value = _provider_value(provider)
    config = get_oauth_config(provider_value)

    params = {
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "scope": " ".join(config.scopes),
        "response_type": "code",
        "state": state,
    }

    if provider_value == "calendar":
        params["access_type"] = "offline"  # Required for refresh token
        params["prompt"] = "consent"  # Force consent to get refresh token
    elif provider_value == "notion":
        params["owner"] = "user"
    elif provider_value == "slack":
        # User token scopes; activity is read as the user, not a bot
        params["user_scope"] = ",".join(config.scopes)

    return f"{config.authorize_url}?{urlencode(params)}"


def _parse_token_response(
    provider_value: str,
    data: dict,
    existing_refresh_token: Optional[str] = None,
) -> OAuthTokens:
    metadata: dict = {}

    if provider_value == "slack":
        # User token lives under authed_user when user_scope was requested
        authed_user = data.get("authed_user") or {}
        access_token = authed_user.get("access_token") or data.get("access_token")
        refresh_token = authed_user.get("refresh_token") or data.get("refresh_token")
        expires_in = authed_user.get("expires_in") or data.get("expires_in")
        scope = authed_user.get("scope") or data.get("scope")
        metadata = {
            "team_id": (data.get("team") or {}).get("id"),
            "team_name": (data.get("team") or {}).get("name"),
            "authed_user_id": authed_user.get("id"),
        }
    else:
        access_token = data.get("access_token")
        refresh_token = data.get("refresh_token")
        expires_in = data.get("expires_in")
        scope = data.get("scope")
        if provider_value == "notion":
            metadata = {
                "workspace_id": data.get("workspace_id"),
                "workspace_name": data.get("workspace_name"),
                "bot_id": data.get("bot_id"),
            }

    if not access_token:
        raise OAuthError(f"{provider_value} token response missing access_token", provider_value)

    if expires_in is None and provider_value == "calendar":
        expires_in = DEFAULT_EXPIRES_IN

    expires_at = None
    if expires_in is not None:
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))

    return OAuthTokens(
        access_token=access_token,
        refresh_token=refresh_token or existing_refresh_token,
        expires_at=expires_at,
        scope=scope,
        metadata={k: v for k, v in metadata.items() if v is not None},
    )


async def _post_token_request(config: OAuthConfig, payload: dict, action: str) -> dict:
    """POST to the provider token endpoint and return the decoded body."""
    provider_value = config.provider

    try:
        async with httpx.AsyncClient(timeout=_OAUTH_TIMEOUT) as client:
            if provider_value == "notion":
                # Notion uses Basic auth and a JSON body
                auth = base64.b64encode(
                    f"{config.client_id}:{config.client_secret}".encode()
                ).decode()
                response = await client.post(
                    config.token_url,
                    headers={
                        "Authorization": f"Basic {auth}",
                        "Content-Type": "application/json",
                        "Accept": "application/json",
                    },
                    json=payload,
                )
            else:
                response = await client.post(
                    config.token_url,
                    headers={"Accept": "application/json"},
                    data={
                        "client_id": config.client_id,
                        "client_secret": config.client_secret,
                        **payload,
                    },
                )
    except httpx.HTTPError as e:
        raise OAuthError(f"Token {action} failed for {provider_value}: {e}", provider_value) from e

    if not response.is_success:
        raise OAuthError(
            f"Token {action} failed for {provider_value}: {response.status_code} {response.text}",
            provider_value,
        )

    try:
        data = response.json()
    except ValueError as e:
        raise OAuthError(f"Token {action} failed for {provider_value}: invalid JSON", provider_value) from e

    # Some providers return 200 with an error body
    if "error" in data or (provider_value == "slack" and not data.get("ok")):
        error = data.get("error_description") or data.get("error") or "unknown"
        raise OAuthError(f"Token {action} failed for {provider_value}: {error}", provider_value)

    return data


async def exchange_code_for_tokens(provider, code: str) -> OAuthTokens:
    """
    Exchange an authorization code for access tokens.

    State must already have been validated by the caller.

    Raises:
        OAuthError: Provider rejected the exchange
    """
    provider_value = _provider_value(provider)
    config = get_oauth_config(provider_value)

    payload = {"code": code, "redirect_uri": config.redirect_uri}
    if provider_value != "github":
        payload["grant_type"] = "authorization_code"

    data = await _post_token_request(config, payload, "exchange")
    tokens = _parse_token_response(provider_value, data)
    logger.info(f"[OAUTH] Exchanged code for {provider_value} tokens")
    return tokens


async def refresh_access_token(provider, refresh_token: str) -> OAuthTokens:
    """
    Refresh an expired access token.

    The previous refresh token is kept when the provider does not rotate it.

    Raises:
        ReauthRequiredError: GitHub (OAuth app tokens cannot be refreshed)
        OAuthError: Provider rejected the refresh
    """
    provider_value = _provider_value(provider)

    if provider_value == "github":
        raise ReauthRequiredError(
            provider_value,
            "GitHub does not support token refresh. User must reauthorize.",
        )

    config = get_oauth_config(provider_value)
    data = await _post_token_request(
        config,
        {"refresh_token": refresh_token, "grant_type": "refresh_token"},
        "refresh",
    )
    tokens = _parse_token_response(provider_value, data, existing_refresh_token=refresh_token)
    logger.info(f"[OAUTH] Refreshed {provider_value} access token")
    return tokens


async def revoke_token(provider, token: str) -> bool:
    """
    Revoke a token at the provider. Best effort: never raises.

    Returns True if the provider confirmed revocation.
    """
    provider_value = _provider_value(provider)
    config = OAUTH_CONFIGS.get(provider_value)

    if not config or not config.is_configured:
        logger.warning(f"[OAUTH] {provider_value} not configured, skipping revocation")
        return False
    if not config.revoke_url:
        logger.info(f"[OAUTH] No revoke endpoint for {provider_value}, skipping revocation")
        return False

    try:
        async with httpx.AsyncClient(timeout=_OAUTH_TIMEOUT) as client:
            if provider_value == "github":
                response = await client.request(
                    "DELETE",
                    config.revoke_url.format(client_id=config.client_id),
                    auth=(config.client_id, config.client_secret),
                    headers={"Accept": "application/vnd.github+json"},
                    json={"access_token": token},
                )
            elif provider_value == "slack":
                response = await client.post(
                    config.revoke_url,
                    headers={"Authorization": f"Bearer {token}"},
                    data={"token": token},
                )
            else:
                response = await client.post(
                    config.revoke_url,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                    data={"token": token},
                )
    except httpx.HTTPError as e:
        logger.warning(f"[OAUTH] Revocation request failed for {provider_value}: {e}")
        return False

    if not response.is_success:
        logger.warning(f"[OAUTH] Revocation failed for {provider_value}: {response.status_code}")
        return False

    if provider_value == "slack":
        try:
            if not response.json().get("ok"):
                logger.warning(f"[OAUTH] Slack revocation rejected: {response.json().get('error')}")
                return False
        except ValueError:
            return False

    logger.info(f"[OAUTH] Revoked {provider_value} token")
    return True


def get_frontend_redirect_url(success: bool, provider: str, error: Optional[str] = None) -> str:
    """Get the URL to redirect the user to after OAuth."""
    base_url = os.getenv("FRONTEND_URL", "http://localhost:3000")

    params = {"provider": provider}
    if success:
        params["status"] = "connected"
    else:
        params["status"] = "error"
        if error:
            params["error"] = error
    return f"{base_url}/dashboard/integrations?{urlencode(params)}"
