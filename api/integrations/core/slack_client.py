"""
Slack API Client.

Direct Web API client reading activity as the authorizing user (user token,
xoxp-...). Slack answers most API-level failures with HTTP 200 and
`{"ok": false, "error": "..."}`, so every body is inspected and classified
the same way a non-2xx status would be.
"""

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional

import httpx

from .api_client import ProviderAPIClient, is_fatal_for_sync, parse_retry_after
from .errors import IntegrationError, InvalidTokenError, ProviderClientError, RateLimitError

logger = logging.getLogger(__name__)

SLACK_API_BASE = "https://slack.com/api"

# ok:false error codes that mean the token is unusable
_AUTH_ERRORS = {"invalid_auth", "token_revoked", "not_authed", "account_inactive", "token_expired"}

_HISTORY_LIMIT = 1000
_CHANNEL_LIMIT = 200


def message_day(ts) -> Optional[date]:
    """UTC day of a Slack message timestamp ("1712345678.000100")."""
    try:
        return datetime.fromtimestamp(float(ts), tz=timezone.utc).date()
    except (TypeError, ValueError, OverflowError, OSError):
        return None


@dataclass
class SlackChannelActivity:
    channel_id: str
    channel_name: str
    message_count: int


@dataclass
class SlackActivity:
    user_id: str
    team: Optional[str]
    messages_sent: int
    dm_messages: int
    reactions_given: int
    channels: list[SlackChannelActivity] = field(default_factory=list)
    day: Optional[date] = None

    @property
    def channels_active(self) -> int:
        return len(self.channels)

    @property
    def total_messages(self) -> int:
        return self.messages_sent + self.dm_messages


class SlackAPIClient(ProviderAPIClient):
    """
    Direct API client for Slack.

    Usage:
        client = SlackAPIClient(access_token)
        activities = await client.fetch_user_activity(since)
    """

    provider = "slack"
    base_url = SLACK_API_BASE

    def _parse_body(self, response: httpx.Response) -> Any:
        data = super()._parse_body(response) or {}

        if not data.get("ok"):
            error = data.get("error", "unknown")
            if error in _AUTH_ERRORS:
                raise InvalidTokenError(self.provider, f"Slack token rejected: {error}", status_code=response.status_code)
            if error == "ratelimited":
                raise RateLimitError(self.provider, retry_after=parse_retry_after(response), status_code=response.status_code)
            raise ProviderClientError(f"Slack API error: {error}", self.provider)

        return data

    # =========================================================================
    # Workspace
    # =========================================================================

    async def auth_test(self) -> dict[str, Any]:
        return await self._get("/auth.test")

    async def fetch_team_info(self) -> dict[str, Any]:
        data = await self._get("/team.info")
        team = data.get("team") or {}
        return {"id": team.get("id"), "name": team.get("name"), "domain": team.get("domain")}

    async def fetch_channels(self, types: str = "public_channel", member_only: bool = True) -> list[dict[str, Any]]:
        """List channels (conversations.list), following the cursor."""
        channels: list[dict[str, Any]] = []
        cursor: Optional[str] = None

        while True:
            params = {"types": types, "exclude_archived": "true", "limit": _CHANNEL_LIMIT}
            if cursor:
                params["cursor"] = cursor
            data = await self._get("/conversations.list", params=params)

            for ch in data.get("channels", []):
                if not isinstance(ch, dict) or not ch.get("id"):
                    continue
                if member_only and not ch.get("is_member", ch.get("is_im", False)):
                    continue
                channels.append({
                    "id": ch["id"],
                    "name": ch.get("name") or ch.get("name_normalized") or ch["id"],
                    "is_private": ch.get("is_private", False),
                    "is_im": ch.get("is_im", False),
                })

            cursor = (data.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                return channels

    # =========================================================================
    # Activity
    # =========================================================================

    async def _user_message_days(self, channel_id: str, user_id: str, oldest: str) -> Counter:
        """The user's messages in one conversation, counted per UTC day."""
        days: Counter = Counter()
        cursor: Optional[str] = None

        while True:
            params = {"channel": channel_id, "oldest": oldest, "limit": _HISTORY_LIMIT}
            if cursor:
                params["cursor"] = cursor
            data = await self._get("/conversations.history", params=params)

            for msg in data.get("messages", []):
                if msg.get("user") != user_id or msg.get("type") != "message":
                    continue
                day = message_day(msg.get("ts"))
                if day is not None:
                    days[day] += 1

            cursor = (data.get("response_metadata") or {}).get("next_cursor")
            if not data.get("has_more") or not cursor:
                return days

    async def _reaction_days(self, user_id: str, oldest: float) -> Counter:
        data = await self._get("/reactions.list", params={"user": user_id, "limit": 100})
        days: Counter = Counter()
        for item in data.get("items", []):
            message = item.get("message") or {}
            try:
                ts = float(message.get("ts", 0))
            except (TypeError, ValueError):
                continue
            if ts < oldest:
                continue
            given = sum(1 for reaction in message.get("reactions", []) if user_id in reaction.get("users", []))
            if given:
                days[message_day(ts)] += given
        return days

    async def fetch_user_activity(self, since: datetime) -> list[SlackActivity]:
        """
        The user's Slack activity since `since`, one SlackActivity per UTC day
        that has any, oldest first.

        Messages are bucketed by their own `ts`, so a window starting at
        midnight yields complete counts for every day it covers.

        Per-channel failures (not_in_channel, channel_not_found, ...) are
        skipped; token and rate-limit failures abort the whole fetch.
        """
        auth = await self.auth_test()
        user_id = auth.get("user_id")
        oldest_ts = since.timestamp()
        oldest = str(int(oldest_ts))

        channel_days: dict[date, list[SlackChannelActivity]] = defaultdict(list)
        for channel in await self.fetch_channels(types="public_channel,private_channel"):
            try:
                days = await self._user_message_days(channel["id"], user_id, oldest)
            except IntegrationError as e:
                if is_fatal_for_sync(e):
                    raise
                logger.info(f"[SLACK_API] Skipping channel {channel['name']}: {e.message}")
                continue
            for day, count in days.items():
                channel_days[day].append(SlackChannelActivity(channel["id"], channel["name"], count))

        dm_days: Counter = Counter()
        try:
            ims = await self.fetch_channels(types="im", member_only=False)
        except IntegrationError as e:
            if is_fatal_for_sync(e):
                raise
            logger.info(f"[SLACK_API] Skipping DMs: {e.message}")
            ims = []
        for im in ims:
            try:
                dm_days.update(await self._user_message_days(im["id"], user_id, oldest))
            except IntegrationError as e:
                if is_fatal_for_sync(e):
                    raise
                logger.info(f"[SLACK_API] Skipping DM {im['id']}: {e.message}")

        try:
            reaction_days = await self._reaction_days(user_id, oldest_ts)
        except IntegrationError as e:
            if is_fatal_for_sync(e):
                raise
            reaction_days = Counter()

        activity = []
        for day in sorted(set(channel_days) | set(dm_days) | set(reaction_days)):
            channels = channel_days.get(day, [])
            activity.append(SlackActivity(
                user_id=user_id,
                team=auth.get("team"),
                messages_sent=sum(c.message_count for c in channels),
                dm_messages=dm_days[day],
                reactions_given=reaction_days[day],
                channels=channels,
                day=day,
            ))
        return activity
