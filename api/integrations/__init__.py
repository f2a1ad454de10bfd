"""
Integration System

Provider integration layer for syncing developer activity.

All providers use direct API clients:
- GitHub: integrations/core/github_client.py (GitHubAPIClient)
- Slack: integrations/core/slack_client.py (SlackAPIClient)
- Notion: integrations/core/notion_client.py (NotionAPIClient)
- Calendar: integrations/core/google_client.py (GoogleCalendarClient)

Modules:
- core/: API clients, token encryption, OAuth, rate limiting, types
- validation.py: Request parameter validation
"""

from .core.tokens import TokenManager
from .core.types import (
    IntegrationProvider,
    IntegrationStatus,
    SyncResult,
    SyncStatus,
)

__all__ = [
    "TokenManager",
    "IntegrationProvider",
    "IntegrationStatus",
    "SyncResult",
    "SyncStatus",
]
