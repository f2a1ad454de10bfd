"""
Tests for the sync orchestrator and the scheduled sync job.

Run: cd api && python -m pytest tests/test_sync_service.py

Provider clients are replaced with scripted fakes; the database is the
in-memory Supabase fake. Sleep is injected so retry delays are recorded
instead of waited on.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from integrations.core.errors import (
    InvalidTokenError,
    MissingTokenError,
    NetworkError,
    OAuthError,
    ProviderAPIError,
    RateLimitError,
)
from integrations.core.github_client import (
    GitHubActivity,
    GitHubCommit,
    GitHubIssue,
    GitHubPullRequest,
)
from integrations.core.slack_client import SlackActivity
from integrations.core.tokens import CONNECTIONS_TABLE
from integrations.core.types import IntegrationProvider, OAuthTokens
from jobs.platform_sync_scheduler import providers_for_interval, run_platform_sync_scheduler
from services.activities import ACTIVITIES_TABLE
from services.cron_monitoring import CRON_EXECUTIONS_TABLE
from services.health_monitor import HealthMonitor
from services.notifications import NOTIFICATIONS_TABLE, NotificationService
from services.retry_policy import RetryPolicy
from services.sync_logs import SYNC_LOGS_TABLE
from services.sync_service import FIRST_SYNC_WINDOW_DAYS, SyncService

GITHUB = IntegrationProvider.GITHUB
SLACK = IntegrationProvider.SLACK
CALENDAR = IntegrationProvider.CALENDAR


def scripted_client(method: str, *outcomes):
    """Client class whose `method` returns (or raises) each outcome in turn, repeating the last."""
    calls = []

    class ScriptedClient:
        def __init__(self, access_token: str):
            self.access_token = access_token

    async def fetch(self, since):
        calls.append({"since": since, "token": self.access_token})
        outcome = outcomes[min(len(calls), len(outcomes)) - 1]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    setattr(ScriptedClient, method, fetch)
    ScriptedClient.calls = calls
    return ScriptedClient


def github_activity() -> GitHubActivity:
    now = datetime.now(timezone.utc)
    return GitHubActivity(
        commits=[GitHubCommit(
            sha="abc1234def", message="Fix login", url="https://github.com/acme/api/commit/abc1234def",
            repo="acme/api", author_name="Octo", authored_at=now - timedelta(days=1),
        )],
        pull_requests=[GitHubPullRequest(
            number=7, title="Add sync", state="merged", url="https://github.com/acme/api/pull/7",
            repo="acme/api", created_at=now - timedelta(days=2), merged_at=now - timedelta(days=1),
        )],
        issues=[GitHubIssue(
            number=9, title="Bug", state="open", url="https://github.com/acme/api/issues/9",
            repo="acme/api", created_at=now - timedelta(days=3),
        )],
    )


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


def make_service(db, token_manager, sleep, clients, refresh_fn=None) -> SyncService:
    return SyncService(
        db,
        token_manager=token_manager,
        clients=clients,
        sleep=sleep,
        refresh_fn=refresh_fn or AsyncMock(),
    )


def _logs(db, provider=None):
    return [r for r in db.rows(SYNC_LOGS_TABLE) if provider is None or r["provider"] == provider.value]


# =============================================================================
# Test: Successful sync
# =============================================================================

def test_first_sync_uses_thirty_day_window(db, token_manager, user_id, sleep):
    token_manager.store_token(user_id, GITHUB, OAuthTokens(access_token="gho_token"))
    client = scripted_client("fetch_activity", github_activity())
    service = make_service(db, token_manager, sleep, {GITHUB: client})

    before = datetime.now(timezone.utc)
    result = asyncio.run(service.sync_provider(user_id, GITHUB))

    assert result.success is True
    assert result.items_synced == 3  # commits + PRs + issues
    since = client.calls[0]["since"]
    expected = before - timedelta(days=FIRST_SYNC_WINDOW_DAYS)
    assert abs((since - expected).total_seconds()) < 5
    assert client.calls[0]["token"] == "gho_token"

    logs = _logs(db)
    assert len(logs) == 1
    assert logs[0]["status"] == "success"
    assert logs[0]["items_synced"] == 3
    assert token_manager.get_last_sync(user_id, GITHUB) >= before
    sleep.assert_not_called()


def test_resync_is_idempotent(db, token_manager, user_id, sleep):
    token_manager.store_token(user_id, GITHUB, OAuthTokens(access_token="gho_token"))
    client = scripted_client("fetch_activity", github_activity())
    service = make_service(db, token_manager, sleep, {GITHUB: client})

    asyncio.run(service.sync_provider(user_id, GITHUB))
    first_sync = token_manager.get_last_sync(user_id, GITHUB)
    second = asyncio.run(service.sync_provider(user_id, GITHUB))

    assert second.success is True
    assert second.items_synced == 0  # everything already stored

    external_ids = sorted(r["external_id"] for r in db.rows(ACTIVITIES_TABLE))
    assert external_ids == ["abc1234def", "issue-acme/api-9", "pr-acme/api-7"]
    # Second sync starts from the last successful one
    assert client.calls[1]["since"] == first_sync
    assert [log["status"] for log in _logs(db)] == ["success", "success"]


def test_slack_same_day_resync_keeps_full_day_counts(db, token_manager, user_id, sleep):
    token_manager.store_token(user_id, SLACK, OAuthTokens(access_token="xoxp"))
    today = datetime.now(timezone.utc).date()
    morning = SlackActivity(user_id="U1", team="Acme", messages_sent=4, dm_messages=0, reactions_given=2, day=today)
    afternoon = SlackActivity(user_id="U1", team="Acme", messages_sent=11, dm_messages=1, reactions_given=3, day=today)
    client = scripted_client("fetch_user_activity", [morning], [afternoon])
    service = make_service(db, token_manager, sleep, {SLACK: client})

    first = asyncio.run(service.sync_provider(user_id, SLACK))
    last_sync = token_manager.get_last_sync(user_id, SLACK)
    second = asyncio.run(service.sync_provider(user_id, SLACK))

    assert first.items_synced == 1
    assert second.items_synced == 1
    # Slack windows start at midnight UTC so each day is refetched whole
    assert client.calls[0]["since"].hour == 0 and client.calls[0]["since"].minute == 0
    assert client.calls[1]["since"] == last_sync.replace(hour=0, minute=0, second=0, microsecond=0)

    [row] = db.rows(ACTIVITIES_TABLE)
    assert row["external_id"] == f"slack-U1-{today.isoformat()}"
    assert row["metadata"]["messages_sent"] == 11
    assert row["metadata"]["dm_messages"] == 1


# =============================================================================
# Test: Retry policy
# =============================================================================

def test_retryable_failure_stops_after_three_attempts(db, token_manager, user_id, sleep):
    token_manager.store_token(user_id, GITHUB, OAuthTokens(access_token="gho_token"))
    client = scripted_client("fetch_activity", NetworkError("github network error: ConnectError", "github"))
    service = make_service(db, token_manager, sleep, {GITHUB: client})

    result = asyncio.run(service.sync_provider(user_id, GITHUB))

    assert result.success is False
    assert "network error" in result.error
    assert len(client.calls) == 3
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    logs = _logs(db)
    assert len(logs) == 1
    assert logs[0]["status"] == "failed"
    assert logs[0]["error_message"] == result.error
    assert token_manager.get_last_sync(user_id, GITHUB) is None


def test_server_error_retries_then_succeeds(db, token_manager, user_id, sleep):
    token_manager.store_token(user_id, GITHUB, OAuthTokens(access_token="gho_token"))
    client = scripted_client(
        "fetch_activity",
        ProviderAPIError("github API error: 502", "github", status_code=502),
        github_activity(),
    )
    service = make_service(db, token_manager, sleep, {GITHUB: client})

    result = asyncio.run(service.sync_provider(user_id, GITHUB))

    assert result.success is True
    assert len(client.calls) == 2
    assert [log["status"] for log in _logs(db)] == ["success"]


def test_rate_limit_uses_long_schedule(db, token_manager, user_id, sleep):
    token_manager.store_token(user_id, GITHUB, OAuthTokens(access_token="gho_token"))
    client = scripted_client("fetch_activity", RateLimitError("github", retry_after=5))
    service = make_service(db, token_manager, sleep, {GITHUB: client})

    result = asyncio.run(service.sync_provider(user_id, GITHUB))

    assert result.success is False
    assert [c.args[0] for c in sleep.await_args_list] == [60, 300]


def test_invalid_token_is_not_retried(db, token_manager, user_id, sleep):
    token_manager.store_token(user_id, GITHUB, OAuthTokens(access_token="gho_token"))
    client = scripted_client("fetch_activity", InvalidTokenError("github"))
    service = make_service(db, token_manager, sleep, {GITHUB: client})

    result = asyncio.run(service.sync_provider(user_id, GITHUB))

    assert result.success is False
    assert len(client.calls) == 1
    sleep.assert_not_called()


def test_unexpected_error_fails_without_retry(db, token_manager, user_id, sleep):
    token_manager.store_token(user_id, GITHUB, OAuthTokens(access_token="gho_token"))
    client = scripted_client("fetch_activity", KeyError("sha"))
    service = make_service(db, token_manager, sleep, {GITHUB: client})

    result = asyncio.run(service.sync_provider(user_id, GITHUB))

    assert result.success is False
    assert len(client.calls) == 1


# =============================================================================
# Test: Token lifecycle during sync
# =============================================================================

def test_expired_token_is_refreshed_before_fetch(db, token_manager, user_id, sleep):
    token_manager.store_token(user_id, CALENDAR, OAuthTokens(
        access_token="ya29.old",
        refresh_token="1//r",
        expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
    ))
    refresh_fn = AsyncMock(return_value=OAuthTokens(
        access_token="ya29.new",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    ))
    client = scripted_client("fetch_events", [])
    service = make_service(db, token_manager, sleep, {CALENDAR: client}, refresh_fn=refresh_fn)

    result = asyncio.run(service.sync_provider(user_id, CALENDAR))

    assert result.success is True
    assert result.items_synced == 0
    refresh_fn.assert_awaited_once_with(CALENDAR, "1//r")
    assert client.calls[0]["token"] == "ya29.new"


def test_failed_refresh_marks_reauth_and_fails(db, token_manager, user_id, sleep):
    token_manager.store_token(user_id, CALENDAR, OAuthTokens(
        access_token="ya29.old",
        refresh_token="1//r",
        expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
    ))
    refresh_fn = AsyncMock(side_effect=OAuthError("invalid_grant", "calendar"))
    client = scripted_client("fetch_events", [])
    service = make_service(db, token_manager, sleep, {CALENDAR: client}, refresh_fn=refresh_fn)

    result = asyncio.run(service.sync_provider(user_id, CALENDAR))

    assert result.success is False
    assert result.error == "Reauthorization required"
    assert client.calls == []
    sleep.assert_not_called()
    assert db.rows(CONNECTIONS_TABLE)[0]["status"] == "reauth_required"


def test_sync_without_connection_fails(db, token_manager, user_id, sleep):
    service = make_service(db, token_manager, sleep, {GITHUB: scripted_client("fetch_activity", github_activity())})

    result = asyncio.run(service.sync_provider(user_id, GITHUB))

    assert result.success is False
    assert "not connected" in result.error


# =============================================================================
# Test: Sync all / status / disconnect
# =============================================================================

def test_one_provider_failure_does_not_block_others(db, token_manager, user_id, sleep):
    token_manager.store_token(user_id, GITHUB, OAuthTokens(access_token="gho_token"))
    token_manager.store_token(user_id, SLACK, OAuthTokens(access_token="xoxp"))
    service = make_service(db, token_manager, sleep, {
        GITHUB: scripted_client("fetch_activity", github_activity()),
        SLACK: scripted_client("fetch_user_activity", InvalidTokenError("slack", "Slack token rejected: invalid_auth")),
    })

    results = {r.provider: r for r in asyncio.run(service.sync_all_providers(user_id))}

    assert results[GITHUB].success is True
    assert results[GITHUB].items_synced == 3
    assert results[SLACK].success is False
    assert results[SLACK].error == "Slack token rejected: invalid_auth"
    assert len(db.rows(ACTIVITIES_TABLE)) == 3


def test_sync_all_with_no_connections(db, token_manager, user_id, sleep):
    service = make_service(db, token_manager, sleep, {})
    assert asyncio.run(service.sync_all_providers(user_id)) == []


def test_sync_status(db, token_manager, user_id, sleep):
    token_manager.store_token(user_id, GITHUB, OAuthTokens(access_token="gho_token"))
    service = make_service(db, token_manager, sleep, {GITHUB: scripted_client("fetch_activity", github_activity())})

    assert service.get_sync_status(user_id, GITHUB).status == "never_synced"

    asyncio.run(service.sync_provider(user_id, GITHUB))
    status = service.get_sync_status(user_id, GITHUB)

    assert status.status == "success"
    assert status.items_synced == 3
    assert status.last_sync is not None


def test_disconnect_revokes_and_purges(db, token_manager, user_id, sleep):
    token_manager.store_token(user_id, GITHUB, OAuthTokens(access_token="gho_token"))
    service = make_service(db, token_manager, sleep, {GITHUB: scripted_client("fetch_activity", github_activity())})
    asyncio.run(service.sync_provider(user_id, GITHUB))
    notifications = NotificationService(db)
    asyncio.run(notifications.notify_sync_failures(user_id, GITHUB, 3))

    with patch("services.sync_service.oauth.revoke_token", new=AsyncMock(return_value=True)) as revoke:
        asyncio.run(service.disconnect_provider(user_id, GITHUB, notifications))

    revoke.assert_awaited_once_with(GITHUB, "gho_token")
    assert db.rows(CONNECTIONS_TABLE)[0]["status"] == "disconnected"
    assert db.rows(CONNECTIONS_TABLE)[0]["credentials_encrypted"] is None
    assert db.rows(ACTIVITIES_TABLE) == []
    assert db.rows(SYNC_LOGS_TABLE) == []
    assert db.rows(NOTIFICATIONS_TABLE) == []


def test_disconnect_proceeds_when_revocation_fails(db, token_manager, user_id, sleep):
    token_manager.store_token(user_id, GITHUB, OAuthTokens(access_token="gho_token"))
    service = make_service(db, token_manager, sleep, {})

    with patch("services.sync_service.oauth.revoke_token", new=AsyncMock(return_value=False)):
        asyncio.run(service.disconnect_provider(user_id, GITHUB))

    assert not token_manager.is_connected(user_id, GITHUB)


# =============================================================================
# Test: Scheduled sync job
# =============================================================================

def test_interval_groups():
    assert providers_for_interval("15min") == [GITHUB]
    assert providers_for_interval("30min") == [IntegrationProvider.NOTION, SLACK, CALENDAR]
    assert len(providers_for_interval("all")) == 4
    with pytest.raises(ValueError):
        providers_for_interval("5min")


def test_scheduler_syncs_active_users_and_checks_health(db, token_manager, user_id, sleep):
    other_user = "00000000-0000-0000-0000-000000000002"
    token_manager.store_token(user_id, GITHUB, OAuthTokens(access_token="gho_a"))
    token_manager.store_token(other_user, GITHUB, OAuthTokens(access_token="gho_b"))
    token_manager.store_token(user_id, SLACK, OAuthTokens(access_token="xoxp"))

    github = scripted_client("fetch_activity", github_activity())
    slack = scripted_client("fetch_user_activity", [])
    service = make_service(db, token_manager, sleep, {GITHUB: github, SLACK: slack})
    monitor = HealthMonitor(db, token_manager=token_manager)

    # Abandoned sync from a previous run
    db.tables.setdefault(SYNC_LOGS_TABLE, []).append({
        "id": "stale-1",
        "user_id": user_id,
        "provider": "github",
        "status": "syncing",
        "started_at": (datetime.now(timezone.utc) - timedelta(hours=2)).isoformat(),
        "created_at": (datetime.now(timezone.utc) - timedelta(hours=2)).isoformat(),
    })

    run = asyncio.run(run_platform_sync_scheduler("15min", db_client=db, sync_service=service, monitor=monitor))

    assert run.users == 2
    assert run.syncs == 2
    assert run.successes == 2
    assert run.stale_marked == 1
    assert len(github.calls) == 2
    assert slack.calls == []
    stale = next(r for r in db.rows(SYNC_LOGS_TABLE) if r["id"] == "stale-1")
    assert stale["status"] == "failed"

    [execution] = db.rows(CRON_EXECUTIONS_TABLE)
    assert execution["job_name"] == "platform_sync:15min"
    assert execution["status"] == "success"
    assert execution["users_processed"] == 2
    assert execution["success_count"] == 2
    assert execution["failure_count"] == 0


def test_scheduler_records_failed_execution(db):
    service = MagicMock()
    service.token_manager.get_active_user_ids.side_effect = RuntimeError("connections table unavailable")

    with pytest.raises(RuntimeError):
        asyncio.run(run_platform_sync_scheduler("all", db_client=db, sync_service=service, monitor=MagicMock()))

    [execution] = db.rows(CRON_EXECUTIONS_TABLE)
    assert execution["job_name"] == "platform_sync:all"
    assert execution["status"] == "failed"
    assert execution["error_message"] == "connections table unavailable"


# =============================================================================
# Test: RetryPolicy
# =============================================================================

def test_retry_policy_delays():
    policy = RetryPolicy()

    assert policy.get_delay(1, NetworkError("down", "slack")) == 1.0
    assert policy.get_delay(2, NetworkError("down", "slack")) == 2.0
    assert policy.get_delay(1, RateLimitError("slack")) == 60
    assert policy.get_delay(3, RateLimitError("slack")) == 3600
    # Provider asks for longer than the schedule
    assert policy.get_delay(1, RateLimitError("slack", retry_after=600)) == 600


def test_retry_policy_ceiling_and_classification():
    policy = RetryPolicy(max_attempts=3)

    assert policy.should_retry(1, NetworkError("down", "slack"))
    assert policy.should_retry(2, ProviderAPIError("boom", "slack", status_code=503))
    assert not policy.should_retry(3, NetworkError("down", "slack"))
    assert not policy.should_retry(1, ProviderAPIError("bad request", "slack", status_code=400))
    assert not policy.should_retry(1, InvalidTokenError("slack"))
    assert not policy.should_retry(1, ValueError("unexpected"))


# =============================================================================
# Test: Live provider stats
# =============================================================================

def test_provider_stats_github(db, token_manager, user_id, sleep):
    token_manager.store_token(user_id, GITHUB, OAuthTokens(access_token="gho_live"))
    github = scripted_client("fetch_stats", {"commits": 3, "pull_requests": 1})
    service = make_service(db, token_manager, sleep, {GITHUB: github})

    stats = asyncio.run(service.fetch_provider_stats(user_id, "github", days=7))

    assert stats == {"provider": "github", "days": 7, "commits": 3, "pull_requests": 1}
    [call] = github.calls
    assert call["token"] == "gho_live"
    expected_since = datetime.now(timezone.utc) - timedelta(days=7)
    assert abs((call["since"] - expected_since).total_seconds()) < 60


def test_provider_stats_calendar_counts_calendars(db, token_manager, user_id, sleep):
    class CalendarStub:
        def __init__(self, access_token: str):
            pass

        async def fetch_calendars(self):
            return [{"id": "primary"}, {"id": "team@group"}]

        async def fetch_meeting_stats(self, since):
            return {"total_meetings": 4, "total_minutes": 120}

    token_manager.store_token(user_id, CALENDAR, OAuthTokens(access_token="ya29"))
    service = make_service(db, token_manager, sleep, {CALENDAR: CalendarStub})

    stats = asyncio.run(service.fetch_provider_stats(user_id, CALENDAR))

    assert stats["calendars"] == 2
    assert stats["total_meetings"] == 4
    assert stats["days"] == 30


def test_provider_stats_without_token_raises(db, token_manager, user_id, sleep):
    service = make_service(db, token_manager, sleep, {GITHUB: scripted_client("fetch_stats", {})})

    with pytest.raises(MissingTokenError):
        asyncio.run(service.fetch_provider_stats(user_id, GITHUB))
