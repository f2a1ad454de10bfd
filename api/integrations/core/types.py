"""
Integration type definitions.

Shared types for the integration sync system.
"""

from enum import Enum
from typing import Optional, Any
from pydantic import BaseModel
from datetime import datetime


class IntegrationProvider(str, Enum):
    """Supported integration providers."""
    GITHUB = "github"
    NOTION = "notion"
    SLACK = "slack"
    CALENDAR = "calendar"


PROVIDER_DISPLAY_NAMES: dict[str, str] = {
    IntegrationProvider.GITHUB.value: "GitHub",
    IntegrationProvider.NOTION.value: "Notion",
    IntegrationProvider.SLACK.value: "Slack",
    IntegrationProvider.CALENDAR.value: "Google Calendar",
}


class IntegrationStatus(str, Enum):
    """Status of a user's credential record."""
    ACTIVE = "active"
    REAUTH_REQUIRED = "reauth_required"  # Refresh failed, tokens cleared
    DISCONNECTED = "disconnected"


class SyncLogStatus(str, Enum):
    """Status of a sync log entry. Only SYNCING may transition."""
    SYNCING = "syncing"
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


class ActivityType(str, Enum):
    """Activity record types produced by provider transforms."""
    COMMIT = "commit"
    PULL_REQUEST = "pull_request"
    ISSUE = "issue"
    NOTION_PAGE = "notion_page"
    SLACK_ACTIVITY = "slack_activity"
    CALENDAR_EVENT = "calendar_event"


class OAuthTokens(BaseModel):
    """Plaintext token set. Never persisted or logged as-is."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    metadata: dict[str, Any] = {}


class SyncResult(BaseModel):
    """Result of a single provider sync."""
    provider: IntegrationProvider
    success: bool
    items_synced: int = 0
    error: Optional[str] = None
    duration_ms: int = 0


class SyncStatus(BaseModel):
    """Most recent sync state for a provider."""
    last_sync: Optional[datetime] = None
    status: str = "never_synced"
    last_error: Optional[str] = None
    items_synced: Optional[int] = None


class HealthIssueType(str, Enum):
    CONSECUTIVE_FAILURES = "consecutive_failures"
    TOKEN_EXPIRED = "token_expired"
    REAUTH_REQUIRED = "reauth_required"
    ERROR = "error"


class HealthIssue(BaseModel):
    type: HealthIssueType
    severity: str  # "warning" | "error"
    message: str
    details: dict[str, Any] = {}


class IntegrationHealth(BaseModel):
    """Health snapshot for one provider connection."""
    provider: IntegrationProvider
    healthy: bool
    issues: list[HealthIssue] = []
    last_checked: datetime


class NotificationType(str, Enum):
    REAUTH_REQUIRED = "reauth_required"
    SYNC_FAILURES = "sync_failures"
    TOKEN_EXPIRED = "token_expired"


class NotificationSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class NotificationInput(BaseModel):
    """Fields needed to create an integration notification."""
    user_id: str
    provider: IntegrationProvider
    type: NotificationType
    severity: NotificationSeverity
    title: str
    message: str
    action_url: Optional[str] = None
    action_label: Optional[str] = None
    metadata: dict[str, Any] = {}


class Notification(BaseModel):
    """Persisted integration notification."""
    id: str
    user_id: str
    provider: IntegrationProvider
    type: NotificationType
    severity: NotificationSeverity
    title: str
    message: str
    action_url: Optional[str] = None
    action_label: Optional[str] = None
    read: bool = False
    created_at: datetime
    metadata: dict[str, Any] = {}
