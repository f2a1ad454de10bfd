"""
Integration Routes

Connect, sync and monitor GitHub, Notion, Slack and Google Calendar.

Endpoints:
- GET /integrations - List user's integrations and their status
- GET /integrations/health - Health of all connected integrations
- POST /integrations/sync - Sync all connected integrations
- GET /integrations/summary - Activity summary for a date range
- GET /integrations/analytics - Activity counts per provider for a period
- GET /integrations/notifications - List integration notifications
- GET /integrations/notifications/count - Unread notification count
- POST /integrations/notifications/read-all - Mark all notifications read
- POST /integrations/notifications/:id/read - Mark one notification read
- DELETE /integrations/notifications/:id - Delete a notification
- GET /integrations/:provider/authorize - Initiate OAuth flow
- GET /integrations/:provider/callback - OAuth callback (redirect from provider)
- POST /integrations/:provider/disconnect - Revoke and purge an integration
- POST /integrations/:provider/sync - Sync one integration
- GET /integrations/:provider/status - Last sync status
- GET /integrations/:provider/health - Integration health
- GET /integrations/:provider/analytics - Stored activity analytics and sync statistics
- GET /integrations/:provider/stats - Live figures from the provider API
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from integrations.core.errors import IntegrationError, OAuthConfigError, OAuthError
from integrations.core.oauth import (
    exchange_code_for_tokens,
    get_authorization_url,
    get_frontend_redirect_url,
)
from integrations.core.rate_limit import (
    get_rate_limiter,
    rate_limit_headers,
    rate_limit_key,
)
from integrations.core.state import OAuthStateManager, get_state_manager
from integrations.core.types import (
    IntegrationHealth,
    IntegrationProvider,
    Notification,
    SyncResult,
    SyncStatus,
)
from integrations.validation import (
    validate_date_range,
    validate_oauth_callback,
    validate_provider,
    validate_summary_type,
)
from services.analytics import (
    ANALYTICS_CACHE_TTL_SECONDS,
    DEFAULT_PERIOD,
    PERIOD_DAYS,
    SYNC_STATS_WINDOW,
    PeriodDistribution,
    ProviderAnalytics,
    SyncStatistics,
    get_activity_distribution_by_provider,
    get_analytics_cache,
    get_provider_analytics,
    get_sync_statistics,
)
from services.health_monitor import HealthMonitor
from services.notifications import NotificationService
from services.summaries import generate_summary
from services.supabase import CurrentUserId, get_service_client
from services.sync_service import STATS_WINDOW_DAYS, SyncService

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Dependencies
# =============================================================================

def get_db_client():
    return get_service_client()


def get_sync_service() -> SyncService:
    return SyncService(get_service_client())


def get_health_monitor() -> HealthMonitor:
    return HealthMonitor(get_service_client())


def get_notification_service() -> NotificationService:
    return NotificationService(get_service_client())


def _require_provider(provider: str) -> IntegrationProvider:
    result = validate_provider(provider)
    if not result.valid:
        raise HTTPException(status_code=400, detail=result.error)
    return result.value


def _enforce_rate_limit(action: str, user_id: str) -> dict[str, str]:
    result = get_rate_limiter(action).check(rate_limit_key(action, user_id))
    headers = rate_limit_headers(result)
    if not result.allowed:
        raise HTTPException(
            status_code=429,
            detail={
                "error": "Rate limit exceeded",
                "message": f"Too many requests. Please try again in {result.retry_after} seconds.",
                "retry_after": result.retry_after,
            },
            headers=headers,
        )
    return headers


def general_rate_limit(user_id: CurrentUserId) -> str:
    """Authenticate and count the request against the general limit."""
    _enforce_rate_limit("general", user_id)
    return user_id


RateLimitedUserId = Annotated[str, Depends(general_rate_limit)]


# =============================================================================
# Response Models
# =============================================================================

class IntegrationResponse(BaseModel):
    provider: IntegrationProvider
    connected: bool
    status: Optional[str] = None
    sync: SyncStatus


class IntegrationListResponse(BaseModel):
    integrations: list[IntegrationResponse]


class SyncAllResponse(BaseModel):
    results: list[SyncResult]
    success: bool


class NotificationListResponse(BaseModel):
    notifications: list[Notification]
    unread_count: int


class ProviderAnalyticsResponse(BaseModel):
    analytics: ProviderAnalytics
    sync_statistics: SyncStatistics


class SummaryResponse(BaseModel):
    summary: str
    highlights: list[str]
    insights: list[str]
    recommendations: list[str]
    stats: dict
    start: datetime
    end: datetime


# =============================================================================
# List / Status
# =============================================================================

@router.get("/integrations")
async def list_integrations(
    user_id: RateLimitedUserId,
    sync_service: SyncService = Depends(get_sync_service),
) -> IntegrationListResponse:
    """All providers with connection and last sync status (no tokens)."""
    tokens = sync_service.token_manager
    integrations = []
    for provider in IntegrationProvider:
        status = tokens.get_connection_status(user_id, provider)
        integrations.append(IntegrationResponse(
            provider=provider,
            connected=tokens.is_connected(user_id, provider),
            status=status.value if status else None,
            sync=sync_service.get_sync_status(user_id, provider),
        ))
    return IntegrationListResponse(integrations=integrations)


@router.get("/integrations/health")
async def get_all_integrations_health(
    user_id: RateLimitedUserId,
    monitor: HealthMonitor = Depends(get_health_monitor),
) -> list[IntegrationHealth]:
    return await monitor.check_all_integrations_health(user_id)


@router.post("/integrations/sync")
async def sync_all_integrations(
    user_id: CurrentUserId,
    sync_service: SyncService = Depends(get_sync_service),
) -> SyncAllResponse:
    """Sync every connected provider. Partial failure still returns 200."""
    _enforce_rate_limit("sync", user_id)
    results = await sync_service.sync_all_providers(user_id)
    return SyncAllResponse(results=results, success=all(r.success for r in results))


# =============================================================================
# Summary
# =============================================================================

_SUMMARY_WINDOWS = {"daily": 1, "weekly": 7, "monthly": 30}


@router.get("/integrations/summary")
async def get_activity_summary(
    user_id: CurrentUserId,
    start: Optional[str] = Query(None, description="ISO start date"),
    end: Optional[str] = Query(None, description="ISO end date"),
    summary_type: Optional[str] = Query(None, alias="type", description="daily | weekly | monthly"),
    db=Depends(get_db_client),
) -> SummaryResponse:
    _enforce_rate_limit("summary", user_id)

    type_result = validate_summary_type(summary_type)
    if not type_result.valid:
        raise HTTPException(status_code=400, detail=type_result.error)

    range_result = validate_date_range(start, end)
    if not range_result.valid:
        raise HTTPException(status_code=400, detail=range_result.error)

    start_dt, end_dt = range_result.value
    end_dt = end_dt or datetime.now(timezone.utc)
    start_dt = start_dt or end_dt - timedelta(days=_SUMMARY_WINDOWS[type_result.value])

    summary = await generate_summary(db, user_id, start_dt, end_dt)
    return SummaryResponse(
        summary=summary.summary,
        highlights=summary.highlights,
        insights=summary.insights,
        recommendations=summary.recommendations,
        stats=summary.stats,
        start=start_dt,
        end=end_dt,
    )


# =============================================================================
# Notifications
# =============================================================================

@router.get("/integrations/notifications")
async def list_notifications(
    user_id: RateLimitedUserId,
    unread_only: bool = Query(False),
    notifications: NotificationService = Depends(get_notification_service),
) -> NotificationListResponse:
    return NotificationListResponse(
        notifications=notifications.get_notifications(user_id, unread_only=unread_only),
        unread_count=notifications.get_unread_count(user_id),
    )


@router.get("/integrations/notifications/count")
async def get_unread_notification_count(
    user_id: RateLimitedUserId,
    notifications: NotificationService = Depends(get_notification_service),
) -> dict:
    return {"unread_count": notifications.get_unread_count(user_id)}


@router.post("/integrations/notifications/read-all")
async def mark_all_notifications_read(
    user_id: RateLimitedUserId,
    notifications: NotificationService = Depends(get_notification_service),
) -> dict:
    return {"success": True, "updated": notifications.mark_all_as_read(user_id)}


@router.post("/integrations/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    user_id: RateLimitedUserId,
    notifications: NotificationService = Depends(get_notification_service),
) -> dict:
    if not notifications.mark_as_read(user_id, notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True}


@router.delete("/integrations/notifications/{notification_id}")
async def delete_notification(
    notification_id: str,
    user_id: RateLimitedUserId,
    notifications: NotificationService = Depends(get_notification_service),
) -> dict:
    notifications.delete_notification(user_id, notification_id)
    return {"success": True}


# =============================================================================
# Analytics
# =============================================================================

@router.get("/integrations/analytics")
async def get_integration_analytics(
    response: Response,
    user_id: RateLimitedUserId,
    period: str = Query(DEFAULT_PERIOD, description="7d | 30d | all"),
    db=Depends(get_db_client),
) -> PeriodDistribution:
    """Activity counts per provider for a period, cached per user for 60s."""
    if period not in PERIOD_DAYS:
        raise HTTPException(status_code=400, detail=f"Invalid period: {period}")

    cache = get_analytics_cache()
    cache_key = f"{user_id}:{period}"
    distribution = cache.get(cache_key)
    response.headers["Cache-Control"] = f"private, max-age={ANALYTICS_CACHE_TTL_SECONDS}"
    if distribution is not None:
        response.headers["X-Cache"] = "HIT"
        return distribution

    distribution = get_activity_distribution_by_provider(db, user_id, period)
    cache.set(cache_key, distribution, cache.now() + ANALYTICS_CACHE_TTL_SECONDS)
    response.headers["X-Cache"] = "MISS"
    return distribution


@router.get("/integrations/{provider}/analytics")
async def get_provider_integration_analytics(
    provider: str,
    user_id: RateLimitedUserId,
    limit: int = Query(10, ge=1, le=SYNC_STATS_WINDOW, description="Recent syncs to include"),
    db=Depends(get_db_client),
    sync_service: SyncService = Depends(get_sync_service),
) -> ProviderAnalyticsResponse:
    provider_enum = _require_provider(provider)
    return ProviderAnalyticsResponse(
        analytics=get_provider_analytics(db, user_id, provider_enum, token_manager=sync_service.token_manager),
        sync_statistics=get_sync_statistics(db, user_id, provider_enum, limit=limit),
    )


@router.get("/integrations/{provider}/stats")
async def get_provider_live_stats(
    provider: str,
    user_id: RateLimitedUserId,
    days: int = Query(STATS_WINDOW_DAYS, ge=1, le=90),
    sync_service: SyncService = Depends(get_sync_service),
) -> dict:
    """Live figures from the provider API (not from synced data)."""
    provider_enum = _require_provider(provider)

    if not sync_service.token_manager.is_connected(user_id, provider_enum):
        raise HTTPException(status_code=404, detail=f"{provider} is not connected")

    try:
        return await sync_service.fetch_provider_stats(user_id, provider_enum, days=days)
    except IntegrationError as e:
        logger.warning(f"[INTEGRATIONS] Live {provider} stats failed: {e.code.value} {e.message}")
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


# =============================================================================
# OAuth Flow
# =============================================================================

@router.get("/integrations/{provider}/authorize")
async def initiate_oauth(
    provider: str,
    user_id: RateLimitedUserId,
    state_manager: OAuthStateManager = Depends(get_state_manager),
) -> dict:
    """
    Initiate OAuth flow for a provider.

    Returns the authorization URL to redirect the user to.
    """
    provider_enum = _require_provider(provider)

    try:
        state = state_manager.generate_state(user_id, provider_enum.value)
        auth_url = get_authorization_url(provider_enum, state)
    except OAuthConfigError as e:
        raise HTTPException(status_code=503, detail=str(e))

    logger.info(f"[INTEGRATIONS] User {user_id[:8]} initiating {provider} OAuth")
    return {"authorization_url": auth_url}


@router.get("/integrations/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None, description="Authorization code from provider"),
    state: Optional[str] = Query(None, description="State parameter for CSRF protection"),
    error: Optional[str] = Query(None, description="Error from provider"),
    state_manager: OAuthStateManager = Depends(get_state_manager),
    sync_service: SyncService = Depends(get_sync_service),
    notifications: NotificationService = Depends(get_notification_service),
) -> RedirectResponse:
    """
    OAuth callback endpoint.

    Called by the provider after the user authorizes. The state token
    identifies the user who started the flow; it is consumed here.
    """
    provider_enum = _require_provider(provider)

    validation = validate_oauth_callback(code, state, error)
    if not validation.valid:
        logger.warning(f"[INTEGRATIONS] Rejected {provider} callback: {validation.error}")
        return RedirectResponse(url=get_frontend_redirect_url(False, provider, validation.error))

    user_id = state_manager.get_state_owner(state)
    if not user_id or not state_manager.validate_state(state, user_id, provider_enum.value):
        return RedirectResponse(
            url=get_frontend_redirect_url(False, provider, "Invalid or expired OAuth state")
        )

    try:
        tokens = await exchange_code_for_tokens(provider_enum, code)
    except OAuthError as e:
        logger.warning(f"[INTEGRATIONS] OAuth exchange failed for {provider}: {e}")
        return RedirectResponse(
            url=get_frontend_redirect_url(False, provider, "Failed to connect. Please try again.")
        )

    sync_service.token_manager.store_token(user_id, provider_enum, tokens)
    notifications.clear_provider_notifications(user_id, provider_enum)
    logger.info(f"[INTEGRATIONS] Connected {provider} for user {user_id[:8]}")

    return RedirectResponse(url=get_frontend_redirect_url(True, provider))


@router.post("/integrations/{provider}/disconnect")
async def disconnect_integration(
    provider: str,
    user_id: RateLimitedUserId,
    sync_service: SyncService = Depends(get_sync_service),
    notifications: NotificationService = Depends(get_notification_service),
) -> dict:
    """Revoke tokens (best effort) and purge all provider data."""
    provider_enum = _require_provider(provider)
    await sync_service.disconnect_provider(user_id, provider_enum, notifications)
    return {"success": True, "message": f"Disconnected {provider}"}


# =============================================================================
# Sync / Health
# =============================================================================

@router.post("/integrations/{provider}/sync")
async def sync_integration(
    provider: str,
    user_id: CurrentUserId,
    sync_service: SyncService = Depends(get_sync_service),
) -> SyncResult:
    provider_enum = _require_provider(provider)
    _enforce_rate_limit("sync", user_id)

    if not sync_service.token_manager.is_connected(user_id, provider_enum):
        raise HTTPException(status_code=404, detail=f"{provider} is not connected")

    return await sync_service.sync_provider(user_id, provider_enum)


@router.get("/integrations/{provider}/status")
async def get_integration_status(
    provider: str,
    user_id: RateLimitedUserId,
    sync_service: SyncService = Depends(get_sync_service),
) -> IntegrationResponse:
    provider_enum = _require_provider(provider)
    tokens = sync_service.token_manager
    status = tokens.get_connection_status(user_id, provider_enum)
    return IntegrationResponse(
        provider=provider_enum,
        connected=tokens.is_connected(user_id, provider_enum),
        status=status.value if status else None,
        sync=sync_service.get_sync_status(user_id, provider_enum),
    )


@router.get("/integrations/{provider}/health")
async def get_integration_health(
    provider: str,
    user_id: RateLimitedUserId,
    monitor: HealthMonitor = Depends(get_health_monitor),
) -> IntegrationHealth:
    provider_enum = _require_provider(provider)
    return await monitor.check_integration_health(user_id, provider_enum)
