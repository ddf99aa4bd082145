"""Stage-to-stage HTTP calls authorized with the shared bearer secret.

WHY: Stages hand a task id to the next stage over HTTP. Two flavours are
needed: an awaited call whose outcome matters (dispatch to the worker,
worker to summarize) and a best-effort trigger whose failure must never
fail the caller (intake -> start-task, summarize -> notion-sync).

HOW: StageCaller wraps one httpx.AsyncClient. post() raises UpstreamError
on non-2xx and on transport failures. trigger() posts with a short
timeout, logs any failure and returns whether the call was delivered.

RULES:
- Every request carries "Authorization: Bearer <secret>"
- trigger() never raises for network or HTTP failures
- A trigger that times out waiting for the response still counts as delivered
- Response bodies in errors are truncated by UpstreamError
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from mtglog.errors import UpstreamError

logger = logging.getLogger(__name__)


class StageCaller:
    def __init__(
        self,
        secret: Optional[str],
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
    ) -> None:
        self._secret = secret
        self._http = http or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0))

    async def aclose(self) -> None:
        await self._http.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._secret:
            headers["Authorization"] = f"Bearer {self._secret}"
        return headers

    async def post(
        self,
        url: str,
        payload: Dict[str, Any],
        service: str = "stage",
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """POST JSON and return the response; non-2xx raises UpstreamError."""
        kwargs: Dict[str, Any] = {"json": payload, "headers": self._headers()}
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = await self._http.post(url, **kwargs)
        except httpx.TransportError as exc:
            raise UpstreamError(service, None, f"{type(exc).__name__}: {exc}") from exc
        if response.status_code >= 300:
            raise UpstreamError(service, response.status_code, response.text)
        return response

    async def trigger(
        self,
        url: str,
        payload: Dict[str, Any],
        timeout: float = 2.0,
    ) -> bool:
        """Best-effort POST; failures are logged and reported as False.

        A read timeout means the request was delivered and the next stage is
        still working, so it counts as dispatched.
        """
        try:
            response = await self.post(url, payload, service="handoff", timeout=timeout)
        except UpstreamError as exc:
            if isinstance(exc.__cause__, httpx.ReadTimeout):
                logger.info("Handoff to %s dispatched, not awaited", url)
                return True
            logger.warning("Handoff to %s failed: %s", url, exc)
            return False
        logger.info("Handoff to %s accepted (%d)", url, response.status_code)
        return True
