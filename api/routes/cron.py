"""
Cron Routes

HTTP trigger for the platform sync scheduler, for hosts whose cron can only
call URLs, plus execution monitoring for scheduled jobs.

Endpoints:
- POST /cron/sync-integrations - Run the scheduler (CRON_SECRET)
- GET /cron/monitoring - Job statistics, alerts and recent executions (session)
- POST /cron/monitoring/cleanup - Delete old execution rows (CRON_SECRET)
"""

import os
import logging
import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel

from jobs.platform_sync_scheduler import INTERVAL_PROVIDERS, run_platform_sync_scheduler
from services.cron_monitoring import (
    DEFAULT_RETENTION_DAYS,
    DEFAULT_TIME_RANGE_HOURS,
    CronMonitoringService,
)
from services.supabase import CurrentUserId, get_service_client

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_TIME_RANGE_HOURS = 168
MAX_RETENTION_DAYS = 365


def _verify_cron_secret(authorization: Optional[str]) -> None:
    expected = os.getenv("CRON_SECRET")
    if not expected:
        raise HTTPException(status_code=503, detail="CRON_SECRET not configured")
    provided = (authorization or "").replace("Bearer ", "", 1)
    if not hmac.compare_digest(provided, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


def get_cron_monitoring() -> CronMonitoringService:
    return CronMonitoringService(get_service_client())


class CleanupRequest(BaseModel):
    retention_days: int = DEFAULT_RETENTION_DAYS


@router.post("/cron/sync-integrations")
async def cron_sync_integrations(
    interval: str = Query("all"),
    authorization: Optional[str] = Header(None),
) -> dict:
    _verify_cron_secret(authorization)
    if interval not in INTERVAL_PROVIDERS:
        raise HTTPException(status_code=400, detail=f"Invalid interval: {interval}")

    run = await run_platform_sync_scheduler(interval)
    logger.info(f"[CRON] sync-integrations ({interval}) finished: {run.successes}/{run.syncs}")
    return {"success": not run.errors, **run.to_dict()}


@router.get("/cron/monitoring")
async def get_cron_monitoring_dashboard(
    user_id: CurrentUserId,
    time_range: int = Query(DEFAULT_TIME_RANGE_HOURS, description="Hours to analyze (1-168)"),
    monitoring: CronMonitoringService = Depends(get_cron_monitoring),
) -> dict:
    """Job-level statistics only; no per-user data is returned."""
    if not 1 <= time_range <= MAX_TIME_RANGE_HOURS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid time range. Must be between 1 and {MAX_TIME_RANGE_HOURS} hours.",
        )
    return monitoring.get_dashboard_data(time_range)


@router.post("/cron/monitoring/cleanup")
async def cleanup_cron_executions(
    body: CleanupRequest,
    authorization: Optional[str] = Header(None),
    monitoring: CronMonitoringService = Depends(get_cron_monitoring),
) -> dict:
    _verify_cron_secret(authorization)
    if not 1 <= body.retention_days <= MAX_RETENTION_DAYS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid retention days. Must be between 1 and {MAX_RETENTION_DAYS}.",
        )

    deleted = monitoring.cleanup_old_logs(body.retention_days)
    return {"message": "Cleanup completed", "deleted_count": deleted, "retention_days": body.retention_days}
