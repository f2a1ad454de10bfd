"""
Notion API Client.

Direct REST client for api.notion.com with OAuth access tokens. Notion
integration tokens don't expire.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Any

from .api_client import ProviderAPIClient
from .tokens import parse_timestamp

logger = logging.getLogger(__name__)

NOTION_API_BASE = "https://api.notion.com/v1"

# Notion API version - required header
NOTION_VERSION = "2022-06-28"

_PAGE_SIZE = 100
_MAX_PAGES = 10


@dataclass
class NotionPage:
    id: str
    title: str
    url: str
    created_time: Optional[datetime]
    last_edited_time: datetime
    parent_type: Optional[str] = None


def extract_page_title(properties: dict) -> str:
    """Title from the `title` property, then `Name` (databases), else "Untitled"."""
    for key in ("title", "Name"):
        prop = properties.get(key) or {}
        parts = prop.get("title") or []
        text = "".join(p.get("plain_text", "") for p in parts if isinstance(p, dict))
        if text:
            return text

    # Any other property of type title
    for prop in properties.values():
        if isinstance(prop, dict) and prop.get("type") == "title":
            text = "".join(p.get("plain_text", "") for p in prop.get("title") or [])
            if text:
                return text

    return "Untitled"


class NotionAPIClient(ProviderAPIClient):
    """
    Direct API client for Notion.

    Usage:
        client = NotionAPIClient(access_token)
        pages = await client.fetch_recent_pages(since)
    """

    provider = "notion"
    base_url = NOTION_API_BASE

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Notion-Version": NOTION_VERSION,
            "Content-Type": "application/json",
        }

    async def _search(self, object_type: str, start_cursor: Optional[str] = None) -> dict[str, Any]:
        body: dict[str, Any] = {
            "filter": {"value": object_type, "property": "object"},
            "sort": {"direction": "descending", "timestamp": "last_edited_time"},
            "page_size": _PAGE_SIZE,
        }
        if start_cursor:
            body["start_cursor"] = start_cursor
        return await self._post("/search", json=body)

    async def fetch_recent_pages(self, since: datetime) -> list[NotionPage]:
        """
        Pages edited on or after `since`, newest first.

        Search results are sorted by last_edited_time, so paging stops at
        the first page older than `since`.
        """
        pages: list[NotionPage] = []
        cursor: Optional[str] = None

        for _ in range(_MAX_PAGES):
            data = await self._search("page", cursor)

            for item in data.get("results", []):
                edited = parse_timestamp(item.get("last_edited_time"))
                if edited is None:
                    continue
                if edited < since:
                    return pages
                pages.append(NotionPage(
                    id=item["id"],
                    title=extract_page_title(item.get("properties") or {}),
                    url=item.get("url", ""),
                    created_time=parse_timestamp(item.get("created_time")),
                    last_edited_time=edited,
                    parent_type=(item.get("parent") or {}).get("type"),
                ))

            if not data.get("has_more") or not data.get("next_cursor"):
                return pages
            cursor = data["next_cursor"]

        logger.info(f"[NOTION_API] Stopped paging after {_MAX_PAGES} result pages")
        return pages

    async def fetch_databases(self) -> list[dict[str, Any]]:
        data = await self._search("database")
        return [
            {
                "id": db["id"],
                "title": "".join(t.get("plain_text", "") for t in db.get("title") or []) or "Untitled Database",
                "url": db.get("url"),
                "last_edited_time": db.get("last_edited_time"),
            }
            for db in data.get("results", [])
        ]
