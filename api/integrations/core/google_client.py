"""
Google Calendar API Client.

Direct REST client for Calendar v3. Only timed (non all-day), non-cancelled
events count as meetings. Access tokens last an hour; refresh happens in the
token manager before a client is built.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from .api_client import ProviderAPIClient
from .errors import IntegrationError, RateLimitError
from .tokens import parse_timestamp

logger = logging.getLogger(__name__)

CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"

_MAX_RESULTS = 250
_MAX_PAGES = 10
_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


@dataclass
class CalendarEvent:
    id: str
    summary: str
    start: datetime
    end: datetime
    attendee_count: int
    is_organizer: bool
    html_link: Optional[str] = None
    location: Optional[str] = None

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


class GoogleCalendarClient(ProviderAPIClient):
    """
    Direct API client for Google Calendar.

    Usage:
        client = GoogleCalendarClient(access_token)
        events = await client.fetch_events(since)
    """

    provider = "calendar"
    base_url = CALENDAR_API_BASE

    def _classify_response(self, response: httpx.Response) -> IntegrationError:
        # Google reports quota exhaustion as 403 with a rate-limit reason
        if response.status_code == 403:
            try:
                errors = (response.json().get("error") or {}).get("errors") or []
            except ValueError:
                errors = []
            if any(e.get("reason") in _RATE_LIMIT_REASONS for e in errors):
                return RateLimitError(self.provider, status_code=403)
        return super()._classify_response(response)

    @staticmethod
    def _parse_event(item: dict) -> Optional[CalendarEvent]:
        if item.get("status") == "cancelled":
            return None
        start = (item.get("start") or {}).get("dateTime")
        end = (item.get("end") or {}).get("dateTime")
        # All-day events only carry `date`
        if not start or not end:
            return None
        return CalendarEvent(
            id=item["id"],
            summary=item.get("summary") or "Untitled Event",
            start=parse_timestamp(start),
            end=parse_timestamp(end),
            attendee_count=len(item.get("attendees") or []),
            is_organizer=bool((item.get("organizer") or {}).get("self", False)),
            html_link=item.get("htmlLink"),
            location=item.get("location"),
        )

    async def fetch_events(
        self,
        since: datetime,
        until: Optional[datetime] = None,
        calendar_id: str = "primary",
    ) -> list[CalendarEvent]:
        """Timed, non-cancelled events starting in [since, until)."""
        until = until or datetime.now(timezone.utc)
        events: list[CalendarEvent] = []
        page_token: Optional[str] = None

        for _ in range(_MAX_PAGES):
            params: dict[str, Any] = {
                "timeMin": since.isoformat(),
                "timeMax": until.isoformat(),
                "singleEvents": "true",
                "orderBy": "startTime",
                "maxResults": _MAX_RESULTS,
            }
            if page_token:
                params["pageToken"] = page_token

            data = await self._get(f"/calendars/{calendar_id}/events", params=params)
            for item in data.get("items", []):
                event = self._parse_event(item)
                if event:
                    events.append(event)

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        return events

    async def fetch_calendars(self) -> list[dict[str, Any]]:
        data = await self._get("/users/me/calendarList")
        return [
            {
                "id": cal.get("id"),
                "summary": cal.get("summary"),
                "primary": cal.get("primary", False),
                "access_role": cal.get("accessRole"),
            }
            for cal in data.get("items", [])
        ]

    async def fetch_meeting_stats(self, since: datetime, until: Optional[datetime] = None) -> dict[str, Any]:
        events = await self.fetch_events(since, until)
        total_minutes = sum(e.duration_minutes for e in events)
        days = max(1, ((until or datetime.now(timezone.utc)) - since) // timedelta(days=1))
        return {
            "total_meetings": len(events),
            "total_minutes": total_minutes,
            "average_duration_minutes": round(total_minutes / len(events)) if events else 0,
            "meetings_organized": sum(1 for e in events if e.is_organizer),
            "meetings_per_day": round(len(events) / days, 1),
        }
