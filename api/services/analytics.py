"""
Integration analytics - read-only aggregates over synced data.

Counts come from the activities table (`source` is the provider) and sync
health from integration_sync_logs. Nothing here writes.

Periods:
- 7d:  last 7 days
- 30d: last 30 days
- all: no lower bound
"""

from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel

from integrations.core.store import InMemoryStore
from integrations.core.tokens import TokenManager, parse_timestamp
from integrations.core.types import IntegrationProvider, SyncLogStatus
from services.activities import ACTIVITIES_TABLE
from services.sync_logs import SYNC_LOGS_TABLE

PERIOD_DAYS: dict[str, Optional[int]] = {"7d": 7, "30d": 30, "all": None}
DEFAULT_PERIOD = "30d"

# Sync statistics look at this many of the newest log rows
SYNC_STATS_WINDOW = 100

ANALYTICS_CACHE_TTL_SECONDS = 60


class ProviderAnalytics(BaseModel):
    provider: IntegrationProvider
    total_activities: int
    last_7_days: int
    last_30_days: int
    all_time: int
    last_sync: Optional[datetime] = None
    distribution: dict[str, int] = {}


class PeriodDistribution(BaseModel):
    period: str
    total_activities: int
    by_provider: dict[str, int]


class RecentSync(BaseModel):
    status: str
    items_synced: int
    duration_ms: int
    timestamp: Optional[datetime] = None


class SyncStatistics(BaseModel):
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    average_duration_ms: float = 0
    recent_syncs: list[RecentSync] = []


def period_start(period: str, now: Optional[datetime] = None) -> Optional[datetime]:
    if period not in PERIOD_DAYS:
        raise ValueError(f"Invalid period: {period}")
    days = PERIOD_DAYS[period]
    if days is None:
        return None
    return (now or datetime.now(timezone.utc)) - timedelta(days=days)


def _provider_value(provider) -> str:
    return provider.value if isinstance(provider, IntegrationProvider) else str(provider)


# =============================================================================
# Activity counts
# =============================================================================

def count_provider_activities(
    client,
    user_id: str,
    provider,
    since: Optional[datetime] = None,
) -> int:
    query = (
        client.table(ACTIVITIES_TABLE)
        .select("id", count="exact")
        .eq("user_id", user_id)
        .eq("source", _provider_value(provider))
    )
    if since is not None:
        query = query.gte("created_at", since.isoformat())
    result = query.limit(1).execute()
    return result.count or 0


def get_activity_type_distribution(
    client,
    user_id: str,
    provider,
    since: Optional[datetime] = None,
) -> dict[str, int]:
    """Activity count per type for one provider."""
    query = (
        client.table(ACTIVITIES_TABLE)
        .select("type")
        .eq("user_id", user_id)
        .eq("source", _provider_value(provider))
    )
    if since is not None:
        query = query.gte("created_at", since.isoformat())
    rows = query.execute().data or []
    return dict(Counter(row.get("type") or "other" for row in rows))


def get_provider_analytics(
    client,
    user_id: str,
    provider,
    token_manager: Optional[TokenManager] = None,
    now: Optional[datetime] = None,
) -> ProviderAnalytics:
    provider = IntegrationProvider(provider)
    now = now or datetime.now(timezone.utc)
    tokens = token_manager or TokenManager(client)

    all_time = count_provider_activities(client, user_id, provider)
    return ProviderAnalytics(
        provider=provider,
        total_activities=all_time,
        last_7_days=count_provider_activities(client, user_id, provider, period_start("7d", now)),
        last_30_days=count_provider_activities(client, user_id, provider, period_start("30d", now)),
        all_time=all_time,
        last_sync=tokens.get_last_sync(user_id, provider),
        distribution=get_activity_type_distribution(client, user_id, provider),
    )


def get_all_providers_analytics(
    client,
    user_id: str,
    token_manager: Optional[TokenManager] = None,
) -> list[ProviderAnalytics]:
    tokens = token_manager or TokenManager(client)
    return [
        get_provider_analytics(client, user_id, provider, token_manager=tokens)
        for provider in IntegrationProvider
    ]


def get_activity_distribution_by_provider(
    client,
    user_id: str,
    period: str = DEFAULT_PERIOD,
    now: Optional[datetime] = None,
) -> PeriodDistribution:
    """Activity counts for every provider over one period."""
    since = period_start(period, now)
    by_provider = {
        provider.value: count_provider_activities(client, user_id, provider, since)
        for provider in IntegrationProvider
    }
    return PeriodDistribution(
        period=period,
        total_activities=sum(by_provider.values()),
        by_provider=by_provider,
    )


# =============================================================================
# Sync statistics
# =============================================================================

def get_sync_statistics(client, user_id: str, provider, limit: int = 10) -> SyncStatistics:
    """
    Success/failure counts and mean duration over the newest
    SYNC_STATS_WINDOW sync log rows, plus the `limit` most recent syncs.
    """
    logs = (
        client.table(SYNC_LOGS_TABLE)
        .select("*")
        .eq("user_id", user_id)
        .eq("provider", _provider_value(provider))
        .order("created_at", desc=True)
        .limit(SYNC_STATS_WINDOW)
        .execute()
    ).data or []

    if not logs:
        return SyncStatistics()

    # Rows still `syncing` carry no duration
    durations = [log["duration_ms"] for log in logs if log.get("duration_ms")]
    return SyncStatistics(
        total_syncs=len(logs),
        successful_syncs=sum(1 for log in logs if log.get("status") == SyncLogStatus.SUCCESS.value),
        failed_syncs=sum(1 for log in logs if log.get("status") == SyncLogStatus.FAILED.value),
        average_duration_ms=sum(durations) / len(durations) if durations else 0,
        recent_syncs=[
            RecentSync(
                status=log.get("status", ""),
                items_synced=log.get("items_synced") or 0,
                duration_ms=log.get("duration_ms") or 0,
                timestamp=parse_timestamp(log.get("created_at")),
            )
            for log in logs[:limit]
        ],
    )


# =============================================================================
# Response cache
# =============================================================================

_analytics_cache: Optional[InMemoryStore] = None


def get_analytics_cache() -> InMemoryStore:
    """Per-process cache for period distributions, keyed "{user_id}:{period}"."""
    global _analytics_cache
    if _analytics_cache is None:
        _analytics_cache = InMemoryStore()
    return _analytics_cache
