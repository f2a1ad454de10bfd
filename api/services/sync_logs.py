"""
Sync log - append-only history in `integration_sync_logs`.

Each sync_provider call writes one row in `syncing` state and moves it to a
terminal state (success | failed | partial) exactly once. No other mutation
is allowed, except reclassifying abandoned `syncing` rows as failed.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from integrations.core.tokens import parse_timestamp
from integrations.core.types import IntegrationProvider, SyncLogStatus

logger = logging.getLogger(__name__)

SYNC_LOGS_TABLE = "integration_sync_logs"

# A `syncing` row older than this was abandoned (crash, deploy)
STALE_SYNC_MINUTES = 30

STALE_SYNC_MESSAGE = "Sync did not complete (stale)"


def _provider_value(provider) -> str:
    return provider.value if isinstance(provider, IntegrationProvider) else str(provider)


def start_sync_log(client, user_id: str, provider) -> Optional[str]:
    """Insert a `syncing` row. Returns its id."""
    now = datetime.now(timezone.utc).isoformat()
    result = client.table(SYNC_LOGS_TABLE).insert({
        "user_id": user_id,
        "provider": _provider_value(provider),
        "status": SyncLogStatus.SYNCING.value,
        "items_synced": 0,
        "started_at": now,
        "created_at": now,
    }).execute()
    return result.data[0]["id"] if result.data else None


def complete_sync_log(
    client,
    log_id: Optional[str],
    status: SyncLogStatus,
    items_synced: int = 0,
    error_message: Optional[str] = None,
    duration_ms: int = 0,
) -> None:
    """Move a `syncing` row to its terminal status."""
    if not log_id:
        return
    if status == SyncLogStatus.SYNCING:
        raise ValueError("complete_sync_log requires a terminal status")

    (
        client.table(SYNC_LOGS_TABLE)
        .update({
            "status": status.value,
            "items_synced": items_synced,
            "error_message": error_message,
            "duration_ms": duration_ms,
            "completed_at": datetime.now(timezone.utc).isoformat(),
        })
        .eq("id", log_id)
        .eq("status", SyncLogStatus.SYNCING.value)
        .execute()
    )


def get_recent_sync_logs(client, user_id: str, provider, limit: int = 10) -> list[dict]:
    """Newest first."""
    result = (
        client.table(SYNC_LOGS_TABLE)
        .select("*")
        .eq("user_id", user_id)
        .eq("provider", _provider_value(provider))
        .order("created_at", desc=True)
        .limit(limit)
        .execute()
    )
    return result.data or []


def is_stale_sync(log: dict, now: Optional[datetime] = None) -> bool:
    if log.get("status") != SyncLogStatus.SYNCING.value:
        return False
    started = parse_timestamp(log.get("started_at") or log.get("created_at"))
    if started is None:
        return False
    now = now or datetime.now(timezone.utc)
    return now - started > timedelta(minutes=STALE_SYNC_MINUTES)


def mark_stale_syncs_failed(client, now: Optional[datetime] = None) -> int:
    """Reclassify abandoned `syncing` rows as failed. Returns how many."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=STALE_SYNC_MINUTES)
    result = (
        client.table(SYNC_LOGS_TABLE)
        .update({
            "status": SyncLogStatus.FAILED.value,
            "error_message": STALE_SYNC_MESSAGE,
            "completed_at": now.isoformat(),
        })
        .eq("status", SyncLogStatus.SYNCING.value)
        .lt("started_at", cutoff.isoformat())
        .execute()
    )
    count = len(result.data or [])
    if count:
        logger.warning(f"[SYNC_LOG] Marked {count} stale syncs as failed")
    return count


def delete_provider_sync_logs(client, user_id: str, provider) -> None:
    (
        client.table(SYNC_LOGS_TABLE)
        .delete()
        .eq("user_id", user_id)
        .eq("provider", _provider_value(provider))
        .execute()
    )
