"""
Platform Sync Scheduler

Scheduled sync of every user with an active connection, followed by a
health check per (user, provider) so failures surface as notifications.

Interval groups:
- 15min: GitHub
- 30min: Notion, Slack, Calendar
- all:   every provider (default)

Run via cron:
  schedule: "*/15 * * * *"
  command: cd api && python -m jobs.platform_sync_scheduler --interval 15min
  schedule: "*/30 * * * *"
  command: cd api && python -m jobs.platform_sync_scheduler --interval 30min
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from integrations.core.types import IntegrationProvider
from services.cron_monitoring import CronMonitoringService
from services.health_monitor import HealthMonitor
from services.sync_logs import mark_stale_syncs_failed
from services.sync_service import SyncService

logger = logging.getLogger(__name__)


INTERVAL_PROVIDERS: dict[str, list[IntegrationProvider]] = {
    "15min": [IntegrationProvider.GITHUB],
    "30min": [
        IntegrationProvider.NOTION,
        IntegrationProvider.SLACK,
        IntegrationProvider.CALENDAR,
    ],
    "all": list(IntegrationProvider),
}


@dataclass
class SchedulerRunResult:
    interval: str
    users: int = 0
    syncs: int = 0
    successes: int = 0
    failures: int = 0
    stale_marked: int = 0
    duration_ms: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "interval": self.interval,
            "users": self.users,
            "syncs": self.syncs,
            "successes": self.successes,
            "failures": self.failures,
            "stale_marked": self.stale_marked,
            "duration_ms": self.duration_ms,
            "errors": self.errors,
        }


def job_name_for_interval(interval: str) -> str:
    return f"platform_sync:{interval}"


def providers_for_interval(interval: str) -> list[IntegrationProvider]:
    if interval not in INTERVAL_PROVIDERS:
        raise ValueError(f"Unknown interval: {interval}. Expected one of {sorted(INTERVAL_PROVIDERS)}")
    return INTERVAL_PROVIDERS[interval]


async def process_user_sync(
    sync_service: SyncService,
    monitor: HealthMonitor,
    user_id: str,
    providers: list[IntegrationProvider],
) -> dict[str, bool]:
    """Sync the given providers for one user concurrently, then health-check them."""
    results = await asyncio.gather(
        *(sync_service.sync_provider(user_id, provider) for provider in providers)
    )
    await asyncio.gather(
        *(monitor.check_integration_health(user_id, provider) for provider in providers)
    )
    return {result.provider.value: result.success for result in results}


async def run_platform_sync_scheduler(
    interval: str = "all",
    db_client=None,
    sync_service: Optional[SyncService] = None,
    monitor: Optional[HealthMonitor] = None,
    monitoring: Optional[CronMonitoringService] = None,
) -> SchedulerRunResult:
    """
    Main scheduler entry point.

    Finds users with active connections for the interval's providers and
    syncs each of them. One user's failure never stops the run. The run is
    recorded in cron_job_executions under job_name_for_interval(interval).
    """
    started = time.monotonic()
    providers = providers_for_interval(interval)
    run = SchedulerRunResult(interval=interval)

    if db_client is None:
        from services.supabase import get_service_client
        db_client = get_service_client()
    sync_service = sync_service or SyncService(db_client)
    monitor = monitor or HealthMonitor(db_client, token_manager=sync_service.token_manager)
    monitoring = monitoring or CronMonitoringService(db_client)

    now = datetime.now(timezone.utc)
    logger.info(f"[{now.isoformat()}] Starting platform sync scheduler ({interval})...")

    execution_id = monitoring.start_execution(
        job_name_for_interval(interval),
        metadata={"providers": [p.value for p in providers]},
    )
    try:
        await _sync_connected_users(run, db_client, sync_service, monitor, providers, now)
    except Exception as e:
        monitoring.complete_execution(
            execution_id,
            success=False,
            duration_ms=int((time.monotonic() - started) * 1000),
            error_message=str(e),
        )
        raise

    run.duration_ms = int((time.monotonic() - started) * 1000)
    monitoring.complete_execution(
        execution_id,
        success=not run.errors,
        users_processed=run.users,
        providers_synced=run.syncs,
        success_count=run.successes,
        failure_count=run.failures,
        duration_ms=run.duration_ms,
        error_message="; ".join(run.errors) or None,
    )
    logger.info(
        f"[SYNC] Completed: {run.successes}/{run.syncs} provider syncs successful "
        f"in {run.duration_ms}ms"
    )
    return run


async def _sync_connected_users(
    run: SchedulerRunResult,
    db_client,
    sync_service: SyncService,
    monitor: HealthMonitor,
    providers: list[IntegrationProvider],
    now: datetime,
) -> None:
    run.stale_marked = mark_stale_syncs_failed(db_client, now)

    # Group providers by user
    user_providers: dict[str, list[IntegrationProvider]] = {}
    for provider in providers:
        for user_id in sync_service.token_manager.get_active_user_ids(provider):
            user_providers.setdefault(user_id, []).append(provider)

    run.users = len(user_providers)
    logger.info(f"[SYNC] Found {run.users} user(s) to sync")

    for user_id, user_provider_list in user_providers.items():
        try:
            results = await process_user_sync(sync_service, monitor, user_id, user_provider_list)
        except Exception as e:
            logger.error(f"[SYNC] Unexpected error for user {user_id[:8]}: {e}")
            run.errors.append(f"{user_id[:8]}: {e}")
            continue

        run.syncs += len(results)
        run.successes += sum(1 for ok in results.values() if ok)
        run.failures += sum(1 for ok in results.values() if not ok)


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Run scheduled integration syncs")
    parser.add_argument("--interval", default="all", choices=sorted(INTERVAL_PROVIDERS))
    args = parser.parse_args(argv)

    from dotenv import load_dotenv
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    asyncio.run(run_platform_sync_scheduler(args.interval))


if __name__ == "__main__":
    main()
