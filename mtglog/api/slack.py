"""Slack Web API access: file lookup and authenticated file download.

WHY: Slack event payloads carry a file id, not a URL the pipeline can
fetch anonymously. files.info resolves the private download URL, and the
download itself needs the bot token as a Bearer header.

HOW: slack_sdk's WebClient is synchronous, so files.info runs in a worker
thread via asyncio.to_thread. Downloads use httpx streaming so a large
video is never held in memory.

RULES:
- The bot token is sent only to Slack hosts, never logged
- SlackApiError and non-2xx downloads become UpstreamError("slack", ...)
- Download responses must be closed by the caller (use the context manager)
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from mtglog.errors import UpstreamError

logger = logging.getLogger(__name__)

_DOWNLOAD_TIMEOUT = httpx.Timeout(600.0, connect=30.0)


class SlackClient:
    """Async facade over the Slack Web API for the intake stage.

    RULES:
    - Use as: async with SlackClient(token) as slack: ...
      or pass an existing httpx.AsyncClient (not closed by this class)
    """

    def __init__(
        self,
        bot_token: str,
        web_client: Optional[WebClient] = None,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._bot_token = bot_token
        self._web = web_client or WebClient(token=bot_token)
        self._http = http
        self._owns_http = http is None

    async def __aenter__(self) -> SlackClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=_DOWNLOAD_TIMEOUT, follow_redirects=True)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        await self.aclose()

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    def _ensure_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=_DOWNLOAD_TIMEOUT, follow_redirects=True)
            self._owns_http = True
        return self._http

    async def files_info(self, file_id: str) -> Dict[str, Any]:
        """Return the Slack file object for file_id."""
        try:
            response = await asyncio.to_thread(self._web.files_info, file=file_id)
        except SlackApiError as exc:
            # Web API errors arrive as HTTP 200 with ok=false
            status = getattr(exc.response, "status_code", None) or 400
            if status < 400:
                status = 400
            error = exc.response.get("error") if exc.response is not None else str(exc)
            raise UpstreamError("slack", status, f"files.info failed: {error}") from exc
        return response["file"]

    async def resolve_download_url(self, file_id: str) -> str:
        """Resolve a file id to its url_private_download."""
        file_info = await self.files_info(file_id)
        url = file_info.get("url_private_download")
        if not url:
            raise UpstreamError(
                "slack", 404, f"File {file_id} has no url_private_download"
            )
        logger.info("Resolved Slack file %s to a download URL", file_id)
        return url

    @asynccontextmanager
    async def stream_download(self, url: str) -> AsyncIterator[httpx.Response]:
        """Open a streaming GET on a private Slack file URL.

        RULES:
        - Raises UpstreamError on non-2xx (body truncated)
        - Transport errors propagate as httpx.TransportError for retrying
        """
        http = self._ensure_http()
        headers = {"Authorization": f"Bearer {self._bot_token}"}
        async with http.stream("GET", url, headers=headers) as response:
            if response.status_code >= 300:
                body = (await response.aread()).decode("utf-8", "replace")
                raise UpstreamError("slack", response.status_code, body)
            yield response
