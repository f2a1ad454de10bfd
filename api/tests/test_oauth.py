"""
Tests for the OAuth flow against mocked provider endpoints.

Run: cd api && python -m pytest tests/test_oauth.py

These use respx to mock HTTP requests to the provider token/revoke endpoints.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import respx

from integrations.core.errors import OAuthConfigError, OAuthError, ReauthRequiredError
from integrations.core.oauth import (
    exchange_code_for_tokens,
    get_authorization_url,
    get_configured_providers,
    get_frontend_redirect_url,
    get_oauth_config,
    refresh_access_token,
    revoke_token,
)
from integrations.core.types import IntegrationProvider

STATE = "a" * 64


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


# =============================================================================
# Test: Authorization URLs
# =============================================================================

def test_github_authorization_url(oauth_env):
    url = get_authorization_url(IntegrationProvider.GITHUB, STATE)
    params = _query(url)

    assert url.startswith("https://github.com/login/oauth/authorize?")
    assert params["client_id"] == "gh-client"
    assert params["state"] == STATE
    assert params["redirect_uri"] == "https://api.example.com/api/integrations/github/callback"
    assert params["scope"] == "repo read:user read:org"


def test_calendar_authorization_url_requests_offline_access(oauth_env):
    params = _query(get_authorization_url("calendar", STATE))

    assert params["access_type"] == "offline"
    assert params["prompt"] == "consent"
    assert "calendar.readonly" in params["scope"]


def test_slack_and_notion_authorization_extras(oauth_env):
    assert "user_scope" in _query(get_authorization_url("slack", STATE))
    assert _query(get_authorization_url("notion", STATE))["owner"] == "user"


def test_unconfigured_provider_raises(monkeypatch):
    monkeypatch.delenv("GITHUB_CLIENT_ID", raising=False)
    monkeypatch.delenv("GITHUB_CLIENT_SECRET", raising=False)

    with pytest.raises(OAuthConfigError):
        get_oauth_config("github")
    with pytest.raises(OAuthConfigError):
        get_oauth_config("jira")
    assert IntegrationProvider.GITHUB not in get_configured_providers()


def test_frontend_redirect_url(oauth_env):
    assert get_frontend_redirect_url(True, "github") == (
        "https://app.example.com/dashboard/integrations?provider=github&status=connected"
    )
    failed = _query(get_frontend_redirect_url(False, "slack", "Invalid state"))
    assert failed == {"provider": "slack", "status": "error", "error": "Invalid state"}


# =============================================================================
# Test: Code exchange
# =============================================================================

@respx.mock
def test_github_exchange(oauth_env):
    route = respx.post("https://github.com/login/oauth/access_token").respond(
        200, json={"access_token": "gho_new", "scope": "repo,read:user", "token_type": "bearer"}
    )

    tokens = asyncio.run(exchange_code_for_tokens("github", "code123"))

    assert tokens.access_token == "gho_new"
    assert tokens.refresh_token is None
    assert tokens.expires_at is None
    body = parse_qs(route.calls.last.request.content.decode())
    assert body["code"] == ["code123"]
    assert "grant_type" not in body


@respx.mock
def test_github_exchange_error_body_raises(oauth_env):
    respx.post("https://github.com/login/oauth/access_token").respond(
        200, json={"error": "bad_verification_code", "error_description": "The code is incorrect"}
    )

    with pytest.raises(OAuthError, match="The code is incorrect"):
        asyncio.run(exchange_code_for_tokens("github", "stale"))


@respx.mock
def test_notion_exchange_uses_basic_auth_and_json(oauth_env):
    route = respx.post("https://api.notion.com/v1/oauth/token").respond(
        200,
        json={
            "access_token": "secret_notion",
            "workspace_id": "ws-1",
            "workspace_name": "Acme",
            "bot_id": "bot-1",
        },
    )

    tokens = asyncio.run(exchange_code_for_tokens("notion", "code123"))

    request = route.calls.last.request
    assert request.headers["Authorization"].startswith("Basic ")
    assert json.loads(request.content)["grant_type"] == "authorization_code"
    assert tokens.metadata == {"workspace_id": "ws-1", "workspace_name": "Acme", "bot_id": "bot-1"}
    assert tokens.expires_at is None


@respx.mock
def test_slack_exchange_reads_user_token(oauth_env):
    respx.post("https://slack.com/api/oauth.v2.access").respond(
        200,
        json={
            "ok": True,
            "team": {"id": "T1", "name": "Acme"},
            "authed_user": {"id": "U1", "access_token": "xoxp-user", "scope": "channels:history"},
        },
    )

    tokens = asyncio.run(exchange_code_for_tokens("slack", "code123"))

    assert tokens.access_token == "xoxp-user"
    assert tokens.metadata == {"team_id": "T1", "team_name": "Acme", "authed_user_id": "U1"}


@respx.mock
def test_slack_exchange_not_ok_raises(oauth_env):
    respx.post("https://slack.com/api/oauth.v2.access").respond(
        200, json={"ok": False, "error": "invalid_code"}
    )

    with pytest.raises(OAuthError, match="invalid_code"):
        asyncio.run(exchange_code_for_tokens("slack", "code123"))


@respx.mock
def test_calendar_exchange_sets_expiry(oauth_env):
    respx.post("https://oauth2.googleapis.com/token").respond(
        200, json={"access_token": "ya29.a", "refresh_token": "1//r", "expires_in": 3599}
    )

    before = datetime.now(timezone.utc)
    tokens = asyncio.run(exchange_code_for_tokens("calendar", "4/0Adeu5B-code"))

    assert tokens.refresh_token == "1//r"
    assert before + timedelta(seconds=3590) < tokens.expires_at <= datetime.now(timezone.utc) + timedelta(seconds=3599)


@respx.mock
def test_exchange_http_error_raises(oauth_env):
    respx.post("https://oauth2.googleapis.com/token").respond(400, json={"error": "invalid_grant"})

    with pytest.raises(OAuthError):
        asyncio.run(exchange_code_for_tokens("calendar", "code"))


@respx.mock
def test_exchange_network_error_raises(oauth_env):
    respx.post("https://oauth2.googleapis.com/token").mock(side_effect=httpx.ConnectError("boom"))

    with pytest.raises(OAuthError):
        asyncio.run(exchange_code_for_tokens("calendar", "code"))


# =============================================================================
# Test: Refresh
# =============================================================================

@respx.mock
def test_calendar_refresh_keeps_refresh_token(oauth_env):
    route = respx.post("https://oauth2.googleapis.com/token").respond(
        200, json={"access_token": "ya29.new", "expires_in": 3600}
    )

    tokens = asyncio.run(refresh_access_token("calendar", "1//keep"))

    assert tokens.access_token == "ya29.new"
    assert tokens.refresh_token == "1//keep"
    body = parse_qs(route.calls.last.request.content.decode())
    assert body["grant_type"] == ["refresh_token"]


@respx.mock
def test_calendar_refresh_defaults_expiry_to_one_hour(oauth_env):
    respx.post("https://oauth2.googleapis.com/token").respond(200, json={"access_token": "ya29.new"})

    tokens = asyncio.run(refresh_access_token("calendar", "1//keep"))

    assert tokens.expires_at > datetime.now(timezone.utc) + timedelta(minutes=59)


def test_github_refresh_requires_reauth(oauth_env):
    with pytest.raises(ReauthRequiredError):
        asyncio.run(refresh_access_token("github", "anything"))


# =============================================================================
# Test: Revocation (best effort)
# =============================================================================

@respx.mock
def test_github_revoke(oauth_env):
    route = respx.delete("https://api.github.com/applications/gh-client/token").respond(204)

    assert asyncio.run(revoke_token("github", "gho_x")) is True
    request = route.calls.last.request
    assert request.headers["Authorization"].startswith("Basic ")
    assert json.loads(request.content) == {"access_token": "gho_x"}


@respx.mock
def test_slack_revoke_checks_ok(oauth_env):
    respx.post("https://slack.com/api/auth.revoke").respond(200, json={"ok": False, "error": "invalid_auth"})
    assert asyncio.run(revoke_token("slack", "xoxp")) is False


@respx.mock
def test_revoke_never_raises(oauth_env):
    respx.post("https://oauth2.googleapis.com/revoke").mock(side_effect=httpx.ConnectError("down"))
    assert asyncio.run(revoke_token("calendar", "ya29")) is False


def test_notion_revoke_skipped(oauth_env):
    assert asyncio.run(revoke_token("notion", "secret")) is False
