"""
Activity records - unified rows in `activities` built from provider data.

Every record carries an `external_id` that is stable per provider item, and
the table is unique on (user_id, external_id). Writes go through
upsert_activities with conflicts ignored, so re-syncing the same window never
creates duplicates. Daily aggregates (Slack) are the exception: they are
upserted with replace=True so a later sync of the same day overwrites the
earlier, partial counts.

External ids:
  - commit:          <sha>
  - pull_request:    pr-<owner/repo>-<number>
  - issue:           issue-<owner/repo>-<number>
  - notion_page:     <page id>
  - slack_activity:  slack-<slack user id>-<YYYY-MM-DD>  (one aggregate per day)
  - calendar_event:  <event id>
"""

import logging
from datetime import datetime, time, timezone
from typing import Optional

from integrations.core.github_client import GitHubActivity
from integrations.core.google_client import CalendarEvent
from integrations.core.notion_client import NotionPage
from integrations.core.slack_client import SlackActivity
from integrations.core.types import ActivityType, IntegrationProvider

logger = logging.getLogger(__name__)

ACTIVITIES_TABLE = "activities"


def _record(
    user_id: str,
    activity_type: ActivityType,
    source: IntegrationProvider,
    external_id: str,
    title: str,
    created_at: datetime,
    description: Optional[str] = None,
    external_url: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> dict:
    return {
        "user_id": user_id,
        "type": activity_type.value,
        "title": title[:500],
        "description": description,
        "source": source.value,
        "external_id": external_id,
        "external_url": external_url,
        "metadata": metadata or {},
        "created_at": created_at.isoformat(),
    }


# =============================================================================
# Transforms
# =============================================================================

def transform_github_activity(user_id: str, activity: GitHubActivity) -> list[dict]:
    records = []

    for commit in activity.commits:
        lines = commit.message.splitlines() or [""]
        records.append(_record(
            user_id,
            ActivityType.COMMIT,
            IntegrationProvider.GITHUB,
            external_id=commit.sha,
            title=lines[0] or "Commit",
            description="\n".join(lines[1:]).strip() or None,
            external_url=commit.url,
            created_at=commit.authored_at,
            metadata={"repo": commit.repo, "sha": commit.sha[:7]},
        ))

    for pr in activity.pull_requests:
        records.append(_record(
            user_id,
            ActivityType.PULL_REQUEST,
            IntegrationProvider.GITHUB,
            external_id=f"pr-{pr.repo}-{pr.number}",
            title=pr.title,
            external_url=pr.url,
            created_at=pr.created_at,
            metadata={
                "repo": pr.repo,
                "number": pr.number,
                "state": pr.state,
                "merged_at": pr.merged_at.isoformat() if pr.merged_at else None,
            },
        ))

    for issue in activity.issues:
        records.append(_record(
            user_id,
            ActivityType.ISSUE,
            IntegrationProvider.GITHUB,
            external_id=f"issue-{issue.repo}-{issue.number}",
            title=issue.title,
            external_url=issue.url,
            created_at=issue.created_at,
            metadata={
                "repo": issue.repo,
                "number": issue.number,
                "state": issue.state,
                "labels": issue.labels,
            },
        ))

    return records


def transform_notion_pages(user_id: str, pages: list[NotionPage]) -> list[dict]:
    return [
        _record(
            user_id,
            ActivityType.NOTION_PAGE,
            IntegrationProvider.NOTION,
            external_id=page.id,
            title=page.title,
            external_url=page.url,
            created_at=page.last_edited_time,
            metadata={
                "created_time": page.created_time.isoformat() if page.created_time else None,
                "parent_type": page.parent_type,
            },
        )
        for page in pages
    ]


def transform_slack_activity(user_id: str, activities: list[SlackActivity]) -> list[dict]:
    """
    One aggregate record per Slack user per UTC day; silent days produce
    nothing. Each record carries the full day's counts, so a later sync of
    the same day replaces it.
    """
    records = []
    for activity in activities:
        if activity.total_messages == 0 and activity.reactions_given == 0:
            continue

        day = activity.day or datetime.now(timezone.utc).date()
        records.append(_record(
            user_id,
            ActivityType.SLACK_ACTIVITY,
            IntegrationProvider.SLACK,
            external_id=f"slack-{activity.user_id}-{day.isoformat()}",
            title=f"Sent {activity.total_messages} messages across {activity.channels_active} channels",
            created_at=datetime.combine(day, time.min, tzinfo=timezone.utc),
            metadata={
                "day": day.isoformat(),
                "messages_sent": activity.messages_sent,
                "dm_messages": activity.dm_messages,
                "reactions_given": activity.reactions_given,
                "channels_active": activity.channels_active,
                "team": activity.team,
                "channels": [
                    {"id": c.channel_id, "name": c.channel_name, "messages": c.message_count}
                    for c in activity.channels
                ],
            },
        ))
    return records


def transform_calendar_events(user_id: str, events: list[CalendarEvent]) -> list[dict]:
    return [
        _record(
            user_id,
            ActivityType.CALENDAR_EVENT,
            IntegrationProvider.CALENDAR,
            external_id=event.id,
            title=event.summary,
            external_url=event.html_link,
            created_at=event.start,
            metadata={
                "end": event.end.isoformat(),
                "duration_minutes": event.duration_minutes,
                "attendee_count": event.attendee_count,
                "is_organizer": event.is_organizer,
                "location": event.location,
            },
        )
        for event in events
    ]


# =============================================================================
# Persistence
# =============================================================================

def upsert_activities(client, records: list[dict], replace: bool = False) -> int:
    """
    Idempotently persist activity records.

    With replace=False existing (user_id, external_id) rows are left alone;
    with replace=True they are overwritten. Returns the number of rows
    actually written.
    """
    if not records:
        return 0

    result = client.table(ACTIVITIES_TABLE).upsert(
        records,
        on_conflict="user_id,external_id",
        ignore_duplicates=not replace,
    ).execute()
    return len(result.data or [])


def get_activities(
    client,
    user_id: str,
    start: datetime,
    end: datetime,
    source: Optional[str] = None,
) -> list[dict]:
    query = (
        client.table(ACTIVITIES_TABLE)
        .select("*")
        .eq("user_id", user_id)
        .gte("created_at", start.isoformat())
        .lte("created_at", end.isoformat())
    )
    if source:
        query = query.eq("source", source)
    result = query.order("created_at", desc=True).execute()
    return result.data or []


def delete_provider_activities(client, user_id: str, provider) -> None:
    source = provider.value if isinstance(provider, IntegrationProvider) else str(provider)
    client.table(ACTIVITIES_TABLE).delete().eq("user_id", user_id).eq("source", source).execute()
    logger.info(f"[ACTIVITIES] Purged {source} activities for user {user_id[:8]}")
