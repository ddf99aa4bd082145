"""Request helpers shared by the stage app and the worker app.

WHY: Every bearer-protected endpoint must answer 401 for a bad token even
when the body is garbage, and 400 (not 401, not 422) for a bad body with
a good token. FastAPI validates declared body parameters before running
dependencies, so authorization is checked by hand on the raw request and
the body is parsed afterwards.

HOW: require_bearer() checks the header against the configured secret.
parse_body() reads JSON and validates it with a pydantic model.
run_stage() awaits a stage coroutine and turns StageError,
ConfigurationError and UpstreamError into HTTPException.

RULES:
- Missing server secret -> 500, wrong/missing token -> 401
- Invalid JSON or schema mismatch -> 400 with a readable detail
- Configuration problems are logged with the variable name; clients see
  a generic message
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Optional, Type, TypeVar

from fastapi import HTTPException, Request
from pydantic import BaseModel, ValidationError

from mtglog.core.auth import verify_bearer
from mtglog.errors import (
    ConfigurationError,
    InconsistentTaskError,
    StageError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
T = TypeVar("T")


def require_bearer(request: Request, secret: Optional[str]) -> None:
    if not secret:
        logger.error("WEBHOOK_SECRET is not configured; rejecting %s", request.url.path)
        raise HTTPException(status_code=500, detail="Server configuration error")
    if not verify_bearer(request.headers.get("authorization"), secret):
        logger.warning("Unauthorized request to %s", request.url.path)
        raise HTTPException(status_code=401, detail="Unauthorized")


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "body"
        parts.append(f"{location}: {error.get('msg')}")
    return "Invalid request body: " + "; ".join(parts)


def validate_payload(data: Any, model: Type[M]) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=_format_validation_error(exc)) from exc


async def parse_body(request: Request, model: Type[M]) -> M:
    raw = await request.body()
    try:
        data = json.loads(raw or b"null")
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON") from exc
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return validate_payload(data, model)


async def run_stage(awaitable: Awaitable[T]) -> T:
    """Await a stage and translate its failures into HTTP errors."""
    try:
        return await awaitable
    except StageError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        raise HTTPException(status_code=500, detail="Server configuration error") from exc
    except UpstreamError as exc:
        logger.error("Upstream failure: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except InconsistentTaskError as exc:
        logger.error("Refused inconsistent task write: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
