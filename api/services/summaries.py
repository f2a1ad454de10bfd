"""
Activity summaries.

Aggregates a user's activity records over a date range into an
ActivityContext, then hands it to a Summarizer. Prompt wording is
deliberately thin; the Anthropic summarizer falls back to a rule-based
summary when the model is unavailable or returns something unparseable.
"""

import json
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Protocol

from anthropic import APIError

from integrations.core.tokens import parse_timestamp
from integrations.core.types import ActivityType
from services.activities import get_activities
from services.anthropic import get_anthropic_client

logger = logging.getLogger(__name__)

SUMMARY_MODEL = "claude-3-5-haiku-latest"
WORKDAY_HOURS = 8
_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


@dataclass
class ActivityContext:
    start: datetime
    end: datetime
    counts_by_type: dict[str, int] = field(default_factory=dict)
    counts_by_source: dict[str, int] = field(default_factory=dict)
    top_repositories: list[str] = field(default_factory=list)
    busiest_day: Optional[str] = None
    meeting_minutes: int = 0
    merged_pull_requests: int = 0
    slack_messages: int = 0

    @property
    def total(self) -> int:
        return sum(self.counts_by_type.values())

    @property
    def meeting_hours(self) -> float:
        return self.meeting_minutes / 60

    @property
    def focus_hours(self) -> float:
        days = max(1, (self.end - self.start) // timedelta(days=1))
        return max(0.0, days * WORKDAY_HOURS - self.meeting_hours)

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "total": self.total,
            "counts_by_type": self.counts_by_type,
            "counts_by_source": self.counts_by_source,
            "top_repositories": self.top_repositories,
            "busiest_day": self.busiest_day,
            "meeting_hours": round(self.meeting_hours, 1),
            "focus_hours": round(self.focus_hours, 1),
            "merged_pull_requests": self.merged_pull_requests,
            "slack_messages": self.slack_messages,
        }


@dataclass
class ActivitySummary:
    summary: str
    highlights: list[str]
    insights: list[str]
    recommendations: list[str]
    stats: dict = field(default_factory=dict)


class Summarizer(Protocol):
    async def summarize(self, context: ActivityContext) -> ActivitySummary:
        ...


def build_activity_context(records: list[dict], start: datetime, end: datetime) -> ActivityContext:
    context = ActivityContext(start=start, end=end)
    by_type: Counter = Counter()
    by_source: Counter = Counter()
    by_repo: Counter = Counter()
    by_day: Counter = Counter()

    for record in records:
        activity_type = record.get("type")
        metadata = record.get("metadata") or {}
        by_type[activity_type] += 1
        by_source[record.get("source")] += 1

        created_at = parse_timestamp(record.get("created_at"))
        if created_at:
            by_day[created_at.date().isoformat()] += 1

        if activity_type == ActivityType.COMMIT.value and metadata.get("repo"):
            by_repo[metadata["repo"]] += 1
        elif activity_type == ActivityType.PULL_REQUEST.value and metadata.get("state") == "merged":
            context.merged_pull_requests += 1
        elif activity_type == ActivityType.CALENDAR_EVENT.value:
            context.meeting_minutes += int(metadata.get("duration_minutes") or 0)
        elif activity_type == ActivityType.SLACK_ACTIVITY.value:
            context.slack_messages += int(metadata.get("messages_sent") or 0) + int(metadata.get("dm_messages") or 0)

    context.counts_by_type = dict(by_type)
    context.counts_by_source = dict(by_source)
    context.top_repositories = [repo for repo, _ in by_repo.most_common(3)]
    context.busiest_day = by_day.most_common(1)[0][0] if by_day else None
    return context


def aggregate_activity(client, user_id: str, start: datetime, end: datetime) -> ActivityContext:
    records = get_activities(client, user_id, start, end)
    return build_activity_context(records, start, end)


def fallback_summary(context: ActivityContext) -> ActivitySummary:
    """Rule-based summary used when no model output is available."""
    counts = context.counts_by_type
    commits = counts.get(ActivityType.COMMIT.value, 0)
    pulls = counts.get(ActivityType.PULL_REQUEST.value, 0)
    meetings = counts.get(ActivityType.CALENDAR_EVENT.value, 0)
    pages = counts.get(ActivityType.NOTION_PAGE.value, 0)

    highlights = []
    if commits:
        highlights.append(f"Made {commits} commits across your repositories")
    if context.merged_pull_requests:
        highlights.append(f"Merged {context.merged_pull_requests} pull requests")
    if pages:
        highlights.append(f"Updated {pages} Notion pages")
    if meetings:
        highlights.append(f"Attended {meetings} meetings")

    insights = []
    if context.meeting_hours > 4:
        insights.append(f"High meeting load ({context.meeting_hours:.1f} hours) may be cutting into focus time")
    if context.top_repositories:
        insights.append(f"Most active in: {', '.join(context.top_repositories)}")

    recommendations = []
    if context.focus_hours < 20:
        recommendations.append("Consider blocking more time for focused work")
    if commits and not pulls:
        recommendations.append("Consider opening pull requests for code review")

    return ActivitySummary(
        summary=f"You had {commits} commits, {pulls} pull requests, and {meetings} meetings.",
        highlights=highlights,
        insights=insights,
        recommendations=recommendations,
        stats=context.to_dict(),
    )


class AnthropicSummarizer:
    """Summarizer backed by Claude. Falls back to the rule-based summary."""

    def __init__(self, client=None, model: str = SUMMARY_MODEL):
        self._client = client
        self._model = model

    async def summarize(self, context: ActivityContext) -> ActivitySummary:
        if context.total == 0:
            return fallback_summary(context)

        try:
            client = self._client or get_anthropic_client()
            response = await client.messages.create(
                model=self._model,
                max_tokens=1024,
                system="You summarize developer activity data. Reply with a single JSON object.",
                messages=[{
                    "role": "user",
                    "content": (
                        "Summarize this activity as JSON with keys summary (string), "
                        "highlights, insights, recommendations (lists of strings).\n\n"
                        + json.dumps(context.to_dict())
                    ),
                }],
            )
        except (APIError, ValueError) as e:
            logger.warning(f"[SUMMARY] Model call failed, using fallback: {e}")
            return fallback_summary(context)

        text = "".join(getattr(block, "text", "") for block in response.content)
        match = _JSON_OBJECT.search(text)
        try:
            parsed = json.loads(match.group(0)) if match else None
        except json.JSONDecodeError:
            parsed = None
        if not isinstance(parsed, dict) or not parsed.get("summary"):
            logger.warning("[SUMMARY] Unparseable model output, using fallback")
            return fallback_summary(context)

        def as_list(key: str) -> list[str]:
            value = parsed.get(key)
            return [str(v) for v in value] if isinstance(value, list) else []

        return ActivitySummary(
            summary=str(parsed["summary"]),
            highlights=as_list("highlights"),
            insights=as_list("insights"),
            recommendations=as_list("recommendations"),
            stats=context.to_dict(),
        )


async def generate_summary(
    client,
    user_id: str,
    start: datetime,
    end: datetime,
    summarizer: Optional[Summarizer] = None,
) -> ActivitySummary:
    context = aggregate_activity(client, user_id, start, end)
    summarizer = summarizer or AnthropicSummarizer()
    return await summarizer.summarize(context)
