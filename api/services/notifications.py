"""
Integration Notification Service

Persisted, deduplicated alerts about integration problems, stored in
`integration_notifications` and shown on the integrations dashboard.

Deduplication: while an unread notification with the same
(user, provider, type) created within the last 24 hours exists, creating
another returns the existing one instead of inserting.

Notifications are only mutated to flip `read`, and are deleted when the
provider is reconnected or disconnected.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from integrations.core.tokens import parse_timestamp
from integrations.core.types import (
    PROVIDER_DISPLAY_NAMES,
    IntegrationProvider,
    Notification,
    NotificationInput,
    NotificationSeverity,
    NotificationType,
)

logger = logging.getLogger(__name__)

NOTIFICATIONS_TABLE = "integration_notifications"
DEDUP_WINDOW_HOURS = 24
INTEGRATIONS_URL = "/dashboard/integrations"


def _provider_value(provider) -> str:
    return provider.value if isinstance(provider, IntegrationProvider) else str(provider)


def _display_name(provider) -> str:
    value = _provider_value(provider)
    return PROVIDER_DISPLAY_NAMES.get(value, value.title())


def _to_notification(row: dict) -> Notification:
    return Notification(
        id=str(row["id"]),
        user_id=row["user_id"],
        provider=IntegrationProvider(row["provider"]),
        type=NotificationType(row["type"]),
        severity=NotificationSeverity(row["severity"]),
        title=row["title"],
        message=row["message"],
        action_url=row.get("action_url"),
        action_label=row.get("action_label"),
        read=bool(row.get("read", False)),
        created_at=parse_timestamp(row["created_at"]),
        metadata=row.get("metadata") or {},
    )


class NotificationService:
    """
    Usage:
        service = NotificationService(db_client)
        await service.notify_sync_failures(user_id, IntegrationProvider.SLACK, 3)
    """

    def __init__(self, db_client=None):
        if db_client is None:
            from services.supabase import get_service_client
            db_client = get_service_client()
        self._db = db_client

    # =========================================================================
    # Create
    # =========================================================================

    def _find_recent_unread(self, user_id: str, provider: str, notification_type: str) -> Optional[dict]:
        cutoff = datetime.now(timezone.utc) - timedelta(hours=DEDUP_WINDOW_HOURS)
        result = (
            self._db.table(NOTIFICATIONS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .eq("provider", provider)
            .eq("type", notification_type)
            .eq("read", False)
            .gte("created_at", cutoff.isoformat())
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    async def create_notification(self, notification: NotificationInput) -> Notification:
        """Insert a notification unless an equivalent unread one exists."""
        provider = _provider_value(notification.provider)

        existing = self._find_recent_unread(notification.user_id, provider, notification.type.value)
        if existing:
            logger.debug(f"[NOTIFICATION] Deduplicated {notification.type.value} for {provider}")
            return _to_notification(existing)

        result = self._db.table(NOTIFICATIONS_TABLE).insert({
            "user_id": notification.user_id,
            "provider": provider,
            "type": notification.type.value,
            "severity": notification.severity.value,
            "title": notification.title,
            "message": notification.message,
            "action_url": notification.action_url,
            "action_label": notification.action_label,
            "read": False,
            "metadata": notification.metadata,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }).execute()

        logger.info(f"[NOTIFICATION] Created {notification.type.value} for {provider}")
        return _to_notification(result.data[0])

    async def notify_reauthorization_required(self, user_id: str, provider) -> Notification:
        name = _display_name(provider)
        return await self.create_notification(NotificationInput(
            user_id=user_id,
            provider=IntegrationProvider(_provider_value(provider)),
            type=NotificationType.REAUTH_REQUIRED,
            severity=NotificationSeverity.WARNING,
            title=f"{name} needs to be reconnected",
            message=f"Your {name} connection has expired or was revoked. Reconnect it to keep syncing your activity.",
            action_url=INTEGRATIONS_URL,
            action_label="Reconnect",
        ))

    async def notify_sync_failures(self, user_id: str, provider, failure_count: int) -> Notification:
        name = _display_name(provider)
        return await self.create_notification(NotificationInput(
            user_id=user_id,
            provider=IntegrationProvider(_provider_value(provider)),
            type=NotificationType.SYNC_FAILURES,
            severity=NotificationSeverity.ERROR,
            title=f"{name} sync is failing",
            message=f"The last {failure_count} {name} syncs failed. Your activity data may be out of date.",
            action_url=INTEGRATIONS_URL,
            action_label="View integration",
            metadata={"failure_count": failure_count},
        ))

    async def notify_token_expired(self, user_id: str, provider) -> Notification:
        name = _display_name(provider)
        return await self.create_notification(NotificationInput(
            user_id=user_id,
            provider=IntegrationProvider(_provider_value(provider)),
            type=NotificationType.TOKEN_EXPIRED,
            severity=NotificationSeverity.WARNING,
            title=f"{name} access is expiring",
            message=f"Your {name} access token has expired or is about to. Reconnect if syncing stops.",
            action_url=INTEGRATIONS_URL,
            action_label="Reconnect",
        ))

    # =========================================================================
    # Read / update
    # =========================================================================

    def get_notifications(self, user_id: str, unread_only: bool = False, limit: int = 50) -> list[Notification]:
        query = self._db.table(NOTIFICATIONS_TABLE).select("*").eq("user_id", user_id)
        if unread_only:
            query = query.eq("read", False)
        result = query.order("created_at", desc=True).limit(limit).execute()
        return [_to_notification(row) for row in result.data or []]

    def get_unread_count(self, user_id: str) -> int:
        result = (
            self._db.table(NOTIFICATIONS_TABLE)
            .select("id", count="exact")
            .eq("user_id", user_id)
            .eq("read", False)
            .execute()
        )
        return result.count or 0

    def mark_as_read(self, user_id: str, notification_id: str) -> bool:
        result = (
            self._db.table(NOTIFICATIONS_TABLE)
            .update({"read": True})
            .eq("id", notification_id)
            .eq("user_id", user_id)
            .execute()
        )
        return bool(result.data)

    def mark_all_as_read(self, user_id: str) -> int:
        result = (
            self._db.table(NOTIFICATIONS_TABLE)
            .update({"read": True})
            .eq("user_id", user_id)
            .eq("read", False)
            .execute()
        )
        return len(result.data or [])

    def delete_notification(self, user_id: str, notification_id: str) -> None:
        self._db.table(NOTIFICATIONS_TABLE).delete().eq("id", notification_id).eq("user_id", user_id).execute()

    def clear_provider_notifications(self, user_id: str, provider) -> None:
        """Drop all notifications for a provider (reconnected or disconnected)."""
        (
            self._db.table(NOTIFICATIONS_TABLE)
            .delete()
            .eq("user_id", user_id)
            .eq("provider", _provider_value(provider))
            .execute()
        )
        logger.info(f"[NOTIFICATION] Cleared {_provider_value(provider)} notifications for user {user_id[:8]}")
