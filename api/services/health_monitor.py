"""
Integration Health Monitor

Derives per-provider health from recent sync logs and credential state, and
raises a notification for each problem it finds:

- consecutive_failures (error): 3+ failed syncs in a row among the 10 newest
  logs. `syncing` rows older than 30 minutes count as failures.
- token_expired (error): access token expires within 5 minutes.
- reauth_required (warning): credential is in reauth_required state, or one
  of the 3 newest failure messages looks like an auth problem.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from integrations.core.tokens import TokenManager
from integrations.core.types import (
    HealthIssue,
    HealthIssueType,
    IntegrationHealth,
    IntegrationProvider,
    IntegrationStatus,
    SyncLogStatus,
)
from services.notifications import NotificationService
from services.sync_logs import get_recent_sync_logs, is_stale_sync

logger = logging.getLogger(__name__)

RECENT_LOG_LIMIT = 10
CONSECUTIVE_FAILURE_THRESHOLD = 3
TOKEN_EXPIRY_WARNING_MINUTES = 5
AUTH_ERROR_SAMPLE = 3

AUTH_ERROR_KEYWORDS = (
    "unauthorized",
    "authentication",
    "invalid token",
    "token expired",
    "token rejected",
    "access denied",
    "reauthorization",
    "401",
    "403",
)


def count_consecutive_failures(logs: list[dict], now: Optional[datetime] = None) -> int:
    """Failures (including stale syncs) from the newest log back to the first success."""
    count = 0
    for log in logs:
        status = log.get("status")
        if status == SyncLogStatus.FAILED.value or is_stale_sync(log, now):
            count += 1
        elif status == SyncLogStatus.SYNCING.value:
            # In flight; neither breaks nor extends the streak
            continue
        else:
            break
    return count


def has_auth_errors(logs: list[dict]) -> bool:
    failures = [
        log for log in logs
        if log.get("status") == SyncLogStatus.FAILED.value and log.get("error_message")
    ][:AUTH_ERROR_SAMPLE]
    return any(
        keyword in log["error_message"].lower()
        for log in failures
        for keyword in AUTH_ERROR_KEYWORDS
    )


class HealthMonitor:
    """
    Usage:
        monitor = HealthMonitor(db_client)
        health = await monitor.check_integration_health(user_id, IntegrationProvider.GITHUB)
    """

    def __init__(
        self,
        db_client=None,
        token_manager: Optional[TokenManager] = None,
        notifications: Optional[NotificationService] = None,
    ):
        if db_client is None:
            from services.supabase import get_service_client
            db_client = get_service_client()
        self._db = db_client
        self._tokens = token_manager or TokenManager(db_client)
        self._notifications = notifications or NotificationService(db_client)

    async def check_integration_health(self, user_id: str, provider) -> IntegrationHealth:
        provider = IntegrationProvider(provider)
        now = datetime.now(timezone.utc)
        issues: list[HealthIssue] = []

        try:
            logs = get_recent_sync_logs(self._db, user_id, provider, limit=RECENT_LOG_LIMIT)

            failures = count_consecutive_failures(logs, now)
            if failures >= CONSECUTIVE_FAILURE_THRESHOLD:
                issues.append(HealthIssue(
                    type=HealthIssueType.CONSECUTIVE_FAILURES,
                    severity="error",
                    message=f"{failures} consecutive sync failures",
                    details={"failure_count": failures},
                ))
                await self._notifications.notify_sync_failures(user_id, provider, failures)

            expires_at = self._tokens.get_token_expiry(user_id, provider)
            if expires_at and expires_at <= now + timedelta(minutes=TOKEN_EXPIRY_WARNING_MINUTES):
                issues.append(HealthIssue(
                    type=HealthIssueType.TOKEN_EXPIRED,
                    severity="error",
                    message="Access token has expired" if expires_at <= now else "Access token expires soon",
                    details={"expires_at": expires_at.isoformat()},
                ))
                await self._notifications.notify_token_expired(user_id, provider)

            status = self._tokens.get_connection_status(user_id, provider)
            if status == IntegrationStatus.REAUTH_REQUIRED or has_auth_errors(logs):
                issues.append(HealthIssue(
                    type=HealthIssueType.REAUTH_REQUIRED,
                    severity="warning",
                    message="Reauthorization required",
                ))
                await self._notifications.notify_reauthorization_required(user_id, provider)

        except Exception as e:
            logger.error(f"[HEALTH] Check failed for {provider.value}: {e}")
            return IntegrationHealth(
                provider=provider,
                healthy=False,
                issues=[HealthIssue(
                    type=HealthIssueType.ERROR,
                    severity="error",
                    message=f"Health check failed: {e}",
                )],
                last_checked=now,
            )

        if issues:
            logger.info(f"[HEALTH] {provider.value} unhealthy: {[i.type.value for i in issues]}")

        return IntegrationHealth(
            provider=provider,
            healthy=not issues,
            issues=issues,
            last_checked=now,
        )

    async def check_all_integrations_health(self, user_id: str) -> list[IntegrationHealth]:
        """Check connected providers plus those awaiting reauthorization, concurrently."""
        providers = self._tokens.get_connected_providers(user_id)
        for provider in self._tokens.get_reauth_providers(user_id):
            if provider not in providers:
                providers.append(provider)

        if not providers:
            return []

        outcomes = await asyncio.gather(
            *(self.check_integration_health(user_id, provider) for provider in providers),
            return_exceptions=True,
        )

        results = []
        for provider, outcome in zip(providers, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"[HEALTH] {provider.value} check crashed: {outcome}")
                outcome = IntegrationHealth(
                    provider=provider,
                    healthy=False,
                    issues=[HealthIssue(type=HealthIssueType.ERROR, severity="error", message=str(outcome))],
                    last_checked=datetime.now(timezone.utc),
                )
            results.append(outcome)
        return results
