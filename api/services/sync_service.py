"""
Sync Orchestrator

Pulls activity from a provider and persists it as activity records.

Per attempt:
    fetch valid token (refreshing if expired)
    -> fetch provider data since the last successful sync (30 days on first sync)
    -> transform into activity records
    -> idempotent upsert (items_synced counts rows actually written)

A sync_provider call makes at most RetryPolicy.max_attempts attempts,
writes one `syncing` log row up front and moves it to success/failed once
at the end. It never raises for provider failures; the outcome is the
returned SyncResult.

sync_all_providers runs every connected provider concurrently and isolates
failures: one provider failing never prevents another from succeeding.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from integrations.core import oauth
from integrations.core.errors import DecryptionError, IntegrationError
from integrations.core.github_client import GitHubAPIClient
from integrations.core.google_client import GoogleCalendarClient
from integrations.core.notion_client import NotionAPIClient
from integrations.core.slack_client import SlackAPIClient
from integrations.core.tokens import TokenManager
from integrations.core.types import (
    IntegrationProvider,
    OAuthTokens,
    SyncLogStatus,
    SyncResult,
    SyncStatus,
)
from services.activities import (
    delete_provider_activities,
    transform_calendar_events,
    transform_github_activity,
    transform_notion_pages,
    transform_slack_activity,
    upsert_activities,
)
from services.notifications import NotificationService
from services.retry_policy import DEFAULT_RETRY_POLICY, RetryPolicy
from services.sync_logs import (
    complete_sync_log,
    delete_provider_sync_logs,
    get_recent_sync_logs,
    start_sync_log,
)

logger = logging.getLogger(__name__)

FIRST_SYNC_WINDOW_DAYS = 30

# Default window for live provider stats
STATS_WINDOW_DAYS = 30

# Providers stored as one aggregate per day; their windows start at midnight
# UTC and each sync rewrites the days it covers.
DAILY_AGGREGATE_PROVIDERS = {IntegrationProvider.SLACK}

RefreshFn = Callable[[IntegrationProvider, str], Awaitable[OAuthTokens]]

DEFAULT_CLIENTS = {
    IntegrationProvider.GITHUB: GitHubAPIClient,
    IntegrationProvider.NOTION: NotionAPIClient,
    IntegrationProvider.SLACK: SlackAPIClient,
    IntegrationProvider.CALENDAR: GoogleCalendarClient,
}


def start_of_day(moment: datetime) -> datetime:
    return moment.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def _error_message(error: BaseException) -> str:
    if isinstance(error, IntegrationError):
        return error.message
    return str(error) or type(error).__name__


class SyncService:
    """
    Usage:
        service = SyncService(db_client)
        result = await service.sync_provider(user_id, IntegrationProvider.GITHUB)
        results = await service.sync_all_providers(user_id)
    """

    def __init__(
        self,
        db_client=None,
        token_manager: Optional[TokenManager] = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        refresh_fn: Optional[RefreshFn] = None,
        clients: Optional[dict] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if db_client is None:
            from services.supabase import get_service_client
            db_client = get_service_client()
        self._db = db_client
        self._tokens = token_manager or TokenManager(db_client)
        self._retry_policy = retry_policy
        self._refresh_fn = refresh_fn or oauth.refresh_access_token
        self._clients = clients or DEFAULT_CLIENTS
        self._sleep = sleep

    @property
    def token_manager(self) -> TokenManager:
        return self._tokens

    # =========================================================================
    # Provider pipelines (fetch -> transform)
    # =========================================================================

    async def _fetch_records(self, provider: IntegrationProvider, user_id: str, access_token: str, since: datetime) -> list[dict]:
        client = self._clients[provider](access_token)

        if provider == IntegrationProvider.GITHUB:
            activity = await client.fetch_activity(since)
            logger.info(
                f"[SYNC] github: {len(activity.commits)} commits, "
                f"{len(activity.pull_requests)} PRs, {len(activity.issues)} issues"
            )
            return transform_github_activity(user_id, activity)

        if provider == IntegrationProvider.NOTION:
            pages = await client.fetch_recent_pages(since)
            return transform_notion_pages(user_id, pages)

        if provider == IntegrationProvider.SLACK:
            activities = await client.fetch_user_activity(since)
            return transform_slack_activity(user_id, activities)

        if provider == IntegrationProvider.CALENDAR:
            events = await client.fetch_events(since)
            return transform_calendar_events(user_id, events)

        raise ValueError(f"Unsupported provider: {provider}")

    async def _access_token(self, user_id: str, provider: IntegrationProvider) -> str:
        return await self._tokens.get_valid_token(
            user_id,
            provider,
            refresh_callback=lambda refresh_token: self._refresh_fn(provider, refresh_token),
        )

    async def _attempt(self, user_id: str, provider: IntegrationProvider) -> int:
        access_token = await self._access_token(user_id, provider)

        since = self._tokens.get_last_sync(user_id, provider)
        if since is None:
            since = datetime.now(timezone.utc) - timedelta(days=FIRST_SYNC_WINDOW_DAYS)

        replace = provider in DAILY_AGGREGATE_PROVIDERS
        if replace:
            since = start_of_day(since)

        records = await self._fetch_records(provider, user_id, access_token, since)
        return upsert_activities(self._db, records, replace=replace)

    # =========================================================================
    # Public API
    # =========================================================================

    async def sync_provider(self, user_id: str, provider) -> SyncResult:
        """Sync one provider with retry. Never raises for provider failures."""
        provider = IntegrationProvider(provider)
        started = time.monotonic()
        log_id = start_sync_log(self._db, user_id, provider)
        logger.info(f"[SYNC] Starting {provider.value} sync for user {user_id[:8]}")

        attempt = 0
        while True:
            attempt += 1
            try:
                items_synced = await self._attempt(user_id, provider)
            except Exception as e:
                if self._retry_policy.should_retry(attempt, e):
                    delay = self._retry_policy.get_delay(attempt, e)
                    logger.warning(
                        f"[SYNC] {provider.value} attempt {attempt} failed ({_error_message(e)}), "
                        f"retrying in {delay}s"
                    )
                    await self._sleep(delay)
                    continue

                duration_ms = int((time.monotonic() - started) * 1000)
                message = _error_message(e)
                complete_sync_log(
                    self._db, log_id, SyncLogStatus.FAILED,
                    error_message=message, duration_ms=duration_ms,
                )
                if isinstance(e, IntegrationError):
                    logger.error(f"[SYNC] {provider.value} failed after {attempt} attempt(s): {e.code.value} {message}")
                else:
                    logger.exception(f"[SYNC] {provider.value} failed with unexpected error")
                return SyncResult(
                    provider=provider,
                    success=False,
                    error=message,
                    duration_ms=duration_ms,
                )

            duration_ms = int((time.monotonic() - started) * 1000)
            complete_sync_log(
                self._db, log_id, SyncLogStatus.SUCCESS,
                items_synced=items_synced, duration_ms=duration_ms,
            )
            self._tokens.update_last_sync(user_id, provider)
            logger.info(f"[SYNC] {provider.value} synced {items_synced} items in {duration_ms}ms")
            return SyncResult(
                provider=provider,
                success=True,
                items_synced=items_synced,
                duration_ms=duration_ms,
            )

    async def sync_all_providers(self, user_id: str) -> list[SyncResult]:
        """Sync every connected provider concurrently; one result per provider."""
        providers = self._tokens.get_connected_providers(user_id)
        if not providers:
            return []

        outcomes = await asyncio.gather(
            *(self.sync_provider(user_id, provider) for provider in providers),
            return_exceptions=True,
        )

        results = []
        for provider, outcome in zip(providers, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"[SYNC] {provider.value} sync crashed: {outcome}")
                results.append(SyncResult(provider=provider, success=False, error=_error_message(outcome)))
            else:
                results.append(outcome)
        return results

    def get_sync_status(self, user_id: str, provider) -> SyncStatus:
        provider = IntegrationProvider(provider)
        logs = get_recent_sync_logs(self._db, user_id, provider, limit=1)
        last_sync = self._tokens.get_last_sync(user_id, provider)

        if not logs:
            return SyncStatus(last_sync=last_sync)

        latest = logs[0]
        return SyncStatus(
            last_sync=last_sync,
            status=latest.get("status", "never_synced"),
            last_error=latest.get("error_message"),
            items_synced=latest.get("items_synced"),
        )

    async def fetch_provider_stats(self, user_id: str, provider, days: int = STATS_WINDOW_DAYS) -> dict[str, Any]:
        """
        Live figures read straight from the provider API for the last `days`.

        Nothing is persisted. Raises IntegrationError subclasses (missing or
        unusable token, provider failures) for the route to map.
        """
        provider = IntegrationProvider(provider)
        client = self._clients[provider](await self._access_token(user_id, provider))
        since = datetime.now(timezone.utc) - timedelta(days=days)

        if provider == IntegrationProvider.GITHUB:
            stats = await client.fetch_stats(since)

        elif provider == IntegrationProvider.NOTION:
            databases = await client.fetch_databases()
            pages = await client.fetch_recent_pages(since)
            stats = {
                "databases": len(databases),
                "database_titles": [db["title"] for db in databases],
                "pages_edited": len(pages),
            }

        elif provider == IntegrationProvider.SLACK:
            team = await client.fetch_team_info()
            channels = await client.fetch_channels(types="public_channel,private_channel")
            stats = {
                "team": team.get("name"),
                "channels_joined": len(channels),
                "private_channels_joined": sum(1 for ch in channels if ch["is_private"]),
            }

        elif provider == IntegrationProvider.CALENDAR:
            calendars = await client.fetch_calendars()
            stats = await client.fetch_meeting_stats(since)
            stats["calendars"] = len(calendars)

        else:
            raise ValueError(f"Unsupported provider: {provider}")

        logger.info(f"[SYNC] Fetched live {provider.value} stats for user {user_id[:8]}")
        return {"provider": provider.value, "days": days, **stats}

    async def disconnect_provider(
        self,
        user_id: str,
        provider,
        notifications: Optional[NotificationService] = None,
    ) -> None:
        """
        Revoke (best effort), clear the credential, and purge the provider's
        activities, sync logs and notifications.
        """
        provider = IntegrationProvider(provider)

        try:
            tokens = self._tokens.get_token(user_id, provider)
        except DecryptionError as e:
            logger.warning(f"[SYNC] Could not read {provider.value} token for revocation: {e}")
            tokens = None
        if tokens:
            await oauth.revoke_token(provider, tokens.access_token)

        self._tokens.delete_token(user_id, provider)
        delete_provider_activities(self._db, user_id, provider)
        delete_provider_sync_logs(self._db, user_id, provider)
        (notifications or NotificationService(self._db)).clear_provider_notifications(user_id, provider)
        logger.info(f"[SYNC] Disconnected {provider.value} for user {user_id[:8]}")
