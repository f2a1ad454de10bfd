"""
Cron Monitoring

Execution history for scheduled jobs in `cron_job_executions`, with
per-job statistics and alerting.

Each scheduler run writes one `running` row up front and moves it to
success or failed when it ends. Alerts are computed on read:
- high_failure_rate: more than half of >= 5 executions failed
- consecutive_failures: the newest 3+ finished executions all failed
- long_duration: mean duration above 5 minutes
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import BaseModel

from integrations.core.tokens import parse_timestamp

logger = logging.getLogger(__name__)

CRON_EXECUTIONS_TABLE = "cron_job_executions"

HIGH_FAILURE_RATE_THRESHOLD = 0.5
HIGH_FAILURE_RATE_MIN_EXECUTIONS = 5
CONSECUTIVE_FAILURES_THRESHOLD = 3
LONG_DURATION_THRESHOLD_MS = 5 * 60 * 1000

DEFAULT_TIME_RANGE_HOURS = 24
DEFAULT_RETENTION_DAYS = 30


class CronJobStats(BaseModel):
    job_name: str
    total_executions: int = 0
    success_count: int = 0
    failure_count: int = 0
    success_rate: float = 0
    average_duration_ms: float = 0
    last_execution: Optional[datetime] = None
    last_status: Optional[str] = None
    recent_failures: int = 0


class CronJobExecution(BaseModel):
    id: str
    job_name: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    status: str
    users_processed: int = 0
    providers_synced: int = 0
    success_count: int = 0
    failure_count: int = 0
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    metadata: dict[str, Any] = {}


class CronJobAlert(BaseModel):
    job_name: str
    alert_type: str  # "high_failure_rate" | "consecutive_failures" | "long_duration"
    threshold: float
    current_value: float
    message: str
    severity: str  # "warning" | "error"
    triggered_at: datetime


class CronMonitoringService:
    """
    Usage:
        monitoring = CronMonitoringService(db_client)
        execution_id = monitoring.start_execution("platform_sync:all")
        monitoring.complete_execution(execution_id, success=True, users_processed=3)
        dashboard = monitoring.get_dashboard_data(time_range_hours=24)
    """

    def __init__(self, db_client=None):
        if db_client is None:
            from services.supabase import get_service_client
            db_client = get_service_client()
        self._db = db_client

    # =========================================================================
    # Recording
    # =========================================================================

    def start_execution(self, job_name: str, metadata: Optional[dict] = None) -> Optional[str]:
        result = self._db.table(CRON_EXECUTIONS_TABLE).insert({
            "job_name": job_name,
            "status": "running",
            "started_at": datetime.now(timezone.utc).isoformat(),
            "users_processed": 0,
            "providers_synced": 0,
            "success_count": 0,
            "failure_count": 0,
            "metadata": metadata or {},
        }).execute()
        return result.data[0]["id"] if result.data else None

    def complete_execution(
        self,
        execution_id: Optional[str],
        success: bool,
        users_processed: int = 0,
        providers_synced: int = 0,
        success_count: int = 0,
        failure_count: int = 0,
        duration_ms: int = 0,
        error_message: Optional[str] = None,
    ) -> None:
        if not execution_id:
            return
        (
            self._db.table(CRON_EXECUTIONS_TABLE)
            .update({
                "status": "success" if success else "failed",
                "completed_at": datetime.now(timezone.utc).isoformat(),
                "users_processed": users_processed,
                "providers_synced": providers_synced,
                "success_count": success_count,
                "failure_count": failure_count,
                "duration_ms": duration_ms,
                "error_message": error_message,
            })
            .eq("id", execution_id)
            .eq("status", "running")
            .execute()
        )

    # =========================================================================
    # Statistics
    # =========================================================================

    def _executions_since(self, since: datetime, job_name: Optional[str] = None) -> list[dict]:
        query = self._db.table(CRON_EXECUTIONS_TABLE).select("*").gte("started_at", since.isoformat())
        if job_name:
            query = query.eq("job_name", job_name)
        return query.order("started_at", desc=True).execute().data or []

    @staticmethod
    def _stats_from_executions(job_name: str, executions: list[dict]) -> CronJobStats:
        """`executions` must be newest first."""
        if not executions:
            return CronJobStats(job_name=job_name)

        total = len(executions)
        successes = sum(1 for e in executions if e.get("status") == "success")
        failures = sum(1 for e in executions if e.get("status") == "failed")
        durations = [e["duration_ms"] for e in executions if e.get("duration_ms") is not None]

        # Running rows neither break nor extend the streak
        recent_failures = 0
        for execution in executions:
            if execution.get("status") == "failed":
                recent_failures += 1
            elif execution.get("status") == "success":
                break

        latest = executions[0]
        return CronJobStats(
            job_name=job_name,
            total_executions=total,
            success_count=successes,
            failure_count=failures,
            success_rate=successes / total,
            average_duration_ms=sum(durations) / len(durations) if durations else 0,
            last_execution=parse_timestamp(latest.get("started_at")),
            last_status=latest.get("status") if latest.get("status") in ("success", "failed") else None,
            recent_failures=recent_failures,
        )

    def get_job_stats(self, job_name: str, time_range_hours: int = DEFAULT_TIME_RANGE_HOURS) -> CronJobStats:
        since = datetime.now(timezone.utc) - timedelta(hours=time_range_hours)
        return self._stats_from_executions(job_name, self._executions_since(since, job_name))

    def get_all_job_stats(self, time_range_hours: int = DEFAULT_TIME_RANGE_HOURS) -> list[CronJobStats]:
        since = datetime.now(timezone.utc) - timedelta(hours=time_range_hours)
        by_job: dict[str, list[dict]] = {}
        for execution in self._executions_since(since):
            by_job.setdefault(execution["job_name"], []).append(execution)
        return [self._stats_from_executions(name, rows) for name, rows in sorted(by_job.items())]

    def get_recent_executions(self, job_name: str, limit: int = 10) -> list[CronJobExecution]:
        rows = (
            self._db.table(CRON_EXECUTIONS_TABLE)
            .select("*")
            .eq("job_name", job_name)
            .order("started_at", desc=True)
            .limit(limit)
            .execute()
        ).data or []
        return [
            CronJobExecution(
                id=row["id"],
                job_name=row["job_name"],
                started_at=parse_timestamp(row.get("started_at")),
                completed_at=parse_timestamp(row.get("completed_at")),
                status=row.get("status", "running"),
                users_processed=row.get("users_processed") or 0,
                providers_synced=row.get("providers_synced") or 0,
                success_count=row.get("success_count") or 0,
                failure_count=row.get("failure_count") or 0,
                error_message=row.get("error_message"),
                duration_ms=row.get("duration_ms"),
                metadata=row.get("metadata") or {},
            )
            for row in rows
        ]

    # =========================================================================
    # Alerts
    # =========================================================================

    @staticmethod
    def alerts_for(stats: CronJobStats, now: Optional[datetime] = None) -> list[CronJobAlert]:
        now = now or datetime.now(timezone.utc)
        alerts = []

        if (
            stats.total_executions >= HIGH_FAILURE_RATE_MIN_EXECUTIONS
            and stats.success_rate < 1 - HIGH_FAILURE_RATE_THRESHOLD
        ):
            alerts.append(CronJobAlert(
                job_name=stats.job_name,
                alert_type="high_failure_rate",
                threshold=HIGH_FAILURE_RATE_THRESHOLD,
                current_value=1 - stats.success_rate,
                message=(
                    f"High failure rate detected: "
                    f"{stats.failure_count / stats.total_executions * 100:.1f}% "
                    f"({stats.failure_count}/{stats.total_executions} executions failed)"
                ),
                severity="error",
                triggered_at=now,
            ))

        if stats.recent_failures >= CONSECUTIVE_FAILURES_THRESHOLD:
            alerts.append(CronJobAlert(
                job_name=stats.job_name,
                alert_type="consecutive_failures",
                threshold=CONSECUTIVE_FAILURES_THRESHOLD,
                current_value=stats.recent_failures,
                message=f"{stats.recent_failures} consecutive failures detected",
                severity="error",
                triggered_at=now,
            ))

        if stats.average_duration_ms > LONG_DURATION_THRESHOLD_MS:
            alerts.append(CronJobAlert(
                job_name=stats.job_name,
                alert_type="long_duration",
                threshold=LONG_DURATION_THRESHOLD_MS,
                current_value=stats.average_duration_ms,
                message=f"Average execution time is high: {stats.average_duration_ms / 1000:.1f}s",
                severity="warning",
                triggered_at=now,
            ))

        return alerts

    def check_for_alerts(
        self,
        time_range_hours: int = DEFAULT_TIME_RANGE_HOURS,
        stats: Optional[list[CronJobStats]] = None,
    ) -> list[CronJobAlert]:
        stats = stats if stats is not None else self.get_all_job_stats(time_range_hours)
        alerts = [alert for stat in stats for alert in self.alerts_for(stat)]
        for alert in alerts:
            logger.warning(f"[CRON_MONITOR] [{alert.severity.upper()}] {alert.job_name}: {alert.message}")
        return alerts

    def get_dashboard_data(self, time_range_hours: int = DEFAULT_TIME_RANGE_HOURS) -> dict:
        now = datetime.now(timezone.utc)
        stats = self.get_all_job_stats(time_range_hours)
        return {
            "stats": stats,
            "alerts": self.check_for_alerts(time_range_hours, stats=stats),
            "recent_executions": {
                stat.job_name: self.get_recent_executions(stat.job_name, limit=5)
                for stat in stats
            },
            "time_range": {
                "hours": time_range_hours,
                "since": now - timedelta(hours=time_range_hours),
            },
        }

    # =========================================================================
    # Retention
    # =========================================================================

    def cleanup_old_logs(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Delete executions that started before the retention window. Returns how many."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        result = (
            self._db.table(CRON_EXECUTIONS_TABLE)
            .delete()
            .lt("started_at", cutoff.isoformat())
            .execute()
        )
        deleted = len(result.data or [])
        logger.info(f"[CRON_MONITOR] Cleaned up {deleted} executions older than {retention_days} days")
        return deleted
