"""
Tests for TokenManager: encrypted storage and refresh-on-demand.

Run: cd api && python -m pytest tests/test_tokens.py

Tests validate:
1. Tokens are stored encrypted and read back decrypted
2. Expired tokens are refreshed through the callback and re-stored
3. Unrefreshable or undecryptable tokens move the record to reauth_required
4. Disconnect clears token fields
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from integrations.core.errors import MissingTokenError, OAuthError, ReauthRequiredError
from integrations.core.tokens import CONNECTIONS_TABLE, parse_timestamp
from integrations.core.types import IntegrationProvider, IntegrationStatus, OAuthTokens

CALENDAR = IntegrationProvider.CALENDAR
GITHUB = IntegrationProvider.GITHUB


def _row(db, user_id, provider):
    rows = [
        r for r in db.rows(CONNECTIONS_TABLE)
        if r["user_id"] == user_id and r["platform"] == provider.value
    ]
    assert len(rows) == 1
    return rows[0]


def _expired_calendar_tokens(refresh_token="1//refresh") -> OAuthTokens:
    return OAuthTokens(
        access_token="ya29.old",
        refresh_token=refresh_token,
        expires_at=datetime.now(timezone.utc) - timedelta(minutes=5),
        metadata={"email": "dev@example.com"},
    )


# =============================================================================
# Test: Storage
# =============================================================================

def test_store_token_encrypts_at_rest(db, token_manager, user_id):
    token_manager.store_token(user_id, GITHUB, OAuthTokens(access_token="gho_plaintext"))

    row = _row(db, user_id, GITHUB)
    assert row["status"] == "active"
    assert "gho_plaintext" not in row["credentials_encrypted"]
    assert row["refresh_token_encrypted"] is None

    tokens = token_manager.get_token(user_id, GITHUB)
    assert tokens.access_token == "gho_plaintext"


def test_store_token_overwrites_previous(db, token_manager, user_id):
    token_manager.store_token(user_id, GITHUB, OAuthTokens(access_token="first"))
    token_manager.store_token(user_id, GITHUB, OAuthTokens(access_token="second"))

    assert len(db.rows(CONNECTIONS_TABLE)) == 1
    assert token_manager.get_token(user_id, GITHUB).access_token == "second"


def test_get_token_none_when_never_connected(token_manager, user_id):
    assert token_manager.get_token(user_id, GITHUB) is None
    assert not token_manager.is_connected(user_id, GITHUB)
    assert token_manager.get_connection_status(user_id, GITHUB) is None


def test_connected_providers(token_manager, user_id):
    token_manager.store_token(user_id, GITHUB, OAuthTokens(access_token="gho"))
    token_manager.store_token(user_id, CALENDAR, OAuthTokens(access_token="ya29"))
    token_manager.delete_token(user_id, CALENDAR)

    assert token_manager.get_connected_providers(user_id) == [GITHUB]
    assert token_manager.get_active_user_ids(GITHUB) == [user_id]
    assert token_manager.get_active_user_ids(CALENDAR) == []


# =============================================================================
# Test: get_valid_token
# =============================================================================

def test_valid_token_returned_without_refresh(token_manager, user_id):
    token_manager.store_token(user_id, CALENDAR, OAuthTokens(
        access_token="ya29.fresh",
        refresh_token="1//refresh",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    ))
    refresh = AsyncMock()

    token = asyncio.run(token_manager.get_valid_token(user_id, CALENDAR, refresh))

    assert token == "ya29.fresh"
    refresh.assert_not_called()


def test_token_without_expiry_never_refreshes(token_manager, user_id):
    token_manager.store_token(user_id, GITHUB, OAuthTokens(access_token="gho_forever"))

    assert asyncio.run(token_manager.get_valid_token(user_id, GITHUB)) == "gho_forever"


def test_token_inside_expiry_buffer_is_refreshed(token_manager, user_id):
    token_manager.store_token(user_id, CALENDAR, OAuthTokens(
        access_token="ya29.almost",
        refresh_token="1//refresh",
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=30),
    ))
    refresh = AsyncMock(return_value=OAuthTokens(
        access_token="ya29.new",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    ))

    assert asyncio.run(token_manager.get_valid_token(user_id, CALENDAR, refresh)) == "ya29.new"
    refresh.assert_awaited_once_with("1//refresh")


def test_expired_token_refreshed_and_stored(db, token_manager, user_id):
    token_manager.store_token(user_id, CALENDAR, _expired_calendar_tokens())
    new_expiry = datetime.now(timezone.utc) + timedelta(hours=1)
    refresh = AsyncMock(return_value=OAuthTokens(access_token="ya29.new", expires_at=new_expiry))

    token = asyncio.run(token_manager.get_valid_token(user_id, CALENDAR, refresh))

    assert token == "ya29.new"
    stored = token_manager.get_token(user_id, CALENDAR)
    assert stored.access_token == "ya29.new"
    # Refresh token and metadata carried over when the provider doesn't rotate them
    assert stored.refresh_token == "1//refresh"
    assert stored.metadata == {"email": "dev@example.com"}
    assert parse_timestamp(_row(db, user_id, CALENDAR)["token_expires_at"]) == new_expiry


def test_refresh_failure_requires_reauth(db, token_manager, user_id):
    token_manager.store_token(user_id, CALENDAR, _expired_calendar_tokens())
    refresh = AsyncMock(side_effect=OAuthError("invalid_grant", "calendar"))

    with pytest.raises(ReauthRequiredError):
        asyncio.run(token_manager.get_valid_token(user_id, CALENDAR, refresh))

    row = _row(db, user_id, CALENDAR)
    assert row["status"] == IntegrationStatus.REAUTH_REQUIRED.value
    assert row["credentials_encrypted"] is None
    assert row["refresh_token_encrypted"] is None
    assert row["token_expires_at"] is None


def test_expired_without_refresh_token_requires_reauth(db, token_manager, user_id):
    token_manager.store_token(user_id, CALENDAR, _expired_calendar_tokens(refresh_token=None))
    refresh = AsyncMock()

    with pytest.raises(ReauthRequiredError):
        asyncio.run(token_manager.get_valid_token(user_id, CALENDAR, refresh))

    refresh.assert_not_called()
    assert _row(db, user_id, CALENDAR)["status"] == "reauth_required"


def test_reauth_required_state_short_circuits(token_manager, user_id):
    token_manager.store_token(user_id, CALENDAR, _expired_calendar_tokens(refresh_token=None))
    with pytest.raises(ReauthRequiredError):
        asyncio.run(token_manager.get_valid_token(user_id, CALENDAR))

    # Second call sees the persisted state, never MissingTokenError
    with pytest.raises(ReauthRequiredError):
        asyncio.run(token_manager.get_valid_token(user_id, CALENDAR))
    assert token_manager.get_reauth_providers(user_id) == [CALENDAR]


def test_undecryptable_token_requires_reauth(db, token_manager, encryption, user_id):
    token_manager.store_token(user_id, GITHUB, OAuthTokens(access_token="gho_token"))
    # Another user's blob can't be decrypted for this user
    _row(db, user_id, GITHUB)["credentials_encrypted"] = encryption.encrypt("gho_token", "someone-else")

    with pytest.raises(ReauthRequiredError):
        asyncio.run(token_manager.get_valid_token(user_id, GITHUB))
    assert _row(db, user_id, GITHUB)["status"] == "reauth_required"


def test_missing_token_raises(token_manager, user_id):
    with pytest.raises(MissingTokenError):
        asyncio.run(token_manager.get_valid_token(user_id, GITHUB))


# =============================================================================
# Test: Disconnect & sync bookkeeping
# =============================================================================

def test_delete_token_clears_fields(db, token_manager, user_id):
    token_manager.store_token(user_id, CALENDAR, _expired_calendar_tokens())
    token_manager.delete_token(user_id, CALENDAR)

    row = _row(db, user_id, CALENDAR)
    assert row["status"] == "disconnected"
    assert row["credentials_encrypted"] is None
    assert token_manager.get_token(user_id, CALENDAR) is None
    with pytest.raises(MissingTokenError):
        asyncio.run(token_manager.get_valid_token(user_id, CALENDAR))


def test_last_sync_round_trip(token_manager, user_id):
    token_manager.store_token(user_id, GITHUB, OAuthTokens(access_token="gho"))
    assert token_manager.get_last_sync(user_id, GITHUB) is None

    synced_at = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    token_manager.update_last_sync(user_id, GITHUB, synced_at)

    assert token_manager.get_last_sync(user_id, GITHUB) == synced_at
