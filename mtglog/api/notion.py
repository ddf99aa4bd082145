"""Async HTTP client for the Notion pages API.

WHY: Notion Sync creates one page per destination database for each
finished task. Only POST /v1/pages is needed, so a thin httpx client is
simpler than a full SDK and matches how the other outbound clients work.

HOW: httpx.AsyncClient with Bearer auth and the Notion-Version header.
create_page() posts {parent: {database_id}, properties, children} and
returns the new page id.

RULES:
- Use as: async with NotionClient(api_key) as notion: ... or call aclose()
- Non-2xx responses raise UpstreamError("notion", status, body)
- Rich-text content is chunked to Notion's 2000-character limit
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from mtglog.errors import UpstreamError

logger = logging.getLogger(__name__)

NOTION_BASE_URL = "https://api.notion.com/v1"
RICH_TEXT_LIMIT = 2000


def rich_text(content: str) -> List[Dict[str, Any]]:
    """Split content into Notion rich_text items of at most 2000 characters."""
    if not content:
        return [{"type": "text", "text": {"content": ""}}]
    return [
        {"type": "text", "text": {"content": content[i : i + RICH_TEXT_LIMIT]}}
        for i in range(0, len(content), RICH_TEXT_LIMIT)
    ]


class NotionClient:
    def __init__(
        self,
        api_key: str,
        notion_version: str = "2022-06-28",
        base_url: str = NOTION_BASE_URL,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._http = http or httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Notion-Version": notion_version,
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(60.0, connect=15.0),
        )

    async def __aenter__(self) -> NotionClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def create_page(
        self,
        database_id: str,
        properties: Dict[str, Any],
        children: Optional[List[Dict[str, Any]]] = None,
    ) -> str:
        """Create a page in a database and return its id."""
        body: Dict[str, Any] = {
            "parent": {"database_id": database_id},
            "properties": properties,
        }
        if children:
            body["children"] = children
        try:
            response = await self._http.post("/pages", json=body)
        except httpx.TransportError as exc:
            raise UpstreamError("notion", None, str(exc)) from exc
        if response.status_code >= 300:
            raise UpstreamError("notion", response.status_code, response.text)
        page_id = response.json()["id"]
        logger.info("Created Notion page %s in database %s", page_id, database_id)
        return page_id
