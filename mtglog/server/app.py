"""FastAPI stage application: Slack events, intake and pipeline stages.

WHY: Slack, the transcription worker and the database webhook all drive
the pipeline over HTTP. One app exposes every stage endpoint with the
same authorization rules, error shape and OpenAPI docs.

HOW: create_app() builds a FastAPI app whose lifespan creates a Services
container from the environment (unless one is injected, as tests do).
Handlers authorize first, parse the body second and delegate to the
framework-free stage functions in mtglog.stages. Slack events are
acknowledged immediately and ingested in a BackgroundTasks callback.

RULES:
- Bearer-protected endpoints answer 401 before looking at the body
- The url_verification challenge is echoed before signature checking
- Slack retries (X-Slack-Retry-Num) are acknowledged without re-ingesting
- Error bodies are {"detail": "..."} everywhere
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request, UploadFile

from mtglog import __version__
from mtglog.config import Settings
from mtglog.core.auth import verify_slack_signature
from mtglog.db.store import task_summary
from mtglog.server.deps import parse_body, require_bearer, run_stage, validate_payload
from mtglog.server.models import (
    ErrorResponse,
    HealthResponse,
    IntakeRequest,
    IntakeResponse,
    NotionSyncResponse,
    SlackAck,
    StartTaskResponse,
    SummarizeRequest,
    SummarizeResponse,
    TaskRequest,
    TaskResponse,
    UploadUrlRequest,
    UploadUrlResponse,
)
from mtglog.services import Services
from mtglog.stages import dispatch, intake, notion_sync, summarize, uploads

logger = logging.getLogger(__name__)

_ERRORS = {
    400: {"model": ErrorResponse, "description": "Malformed or unsupported request."},
    401: {"model": ErrorResponse, "description": "Missing or invalid credentials."},
    500: {"model": ErrorResponse, "description": "Internal or configuration error."},
}


def _services(request: Request) -> Services:
    return request.app.state.services


def _source_from(payload: IntakeRequest) -> intake.SourceFile:
    return intake.SourceFile(
        name=payload.original_file_name,
        file_id=payload.file_id,
        mimetype=payload.mimetype,
        filetype=payload.filetype,
        download_url=payload.slack_download_url,
        size=payload.size,
        slack_user_id=payload.slack_user_id,
        slack_channel_id=payload.slack_channel_id,
        slack_team_id=payload.slack_team_id,
        slack_event_ts=payload.slack_event_ts,
    )


def _intake_response(
    services: Services,
    result: intake.IntakeResult,
    background_tasks: BackgroundTasks,
) -> IntakeResponse:
    if result.created:
        background_tasks.add_task(intake.request_start, services, result.task_id)
    return IntakeResponse.model_validate(intake.result_payload(result))


async def _process_event(services: Services, envelope: dict) -> None:
    results = await intake.process_event(services, envelope)
    created, skipped = intake.describe_results(results)
    logger.info("Slack event processed: %d task(s) created, %d skipped", created, skipped)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the stage app; pass services to bypass environment setup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.services is None
        if owned:
            app.state.services = Services.from_settings(Settings.from_env())
        yield
        if owned:
            await app.state.services.aclose()
            app.state.services = None

    app = FastAPI(
        lifespan=lifespan,
        title="mtglog Pipeline API",
        description=(
            "Stage endpoints that move a meeting video from Slack through "
            "storage, transcription and AI summarization into Notion."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.services = services

    # -----------------------------------------------------------------------
    # Slack
    # -----------------------------------------------------------------------

    @app.post(
        "/api/slack/events",
        tags=["Slack"],
        summary="Slack Events API endpoint",
        responses=_ERRORS,
    )
    async def slack_events(request: Request, background_tasks: BackgroundTasks):
        """Verify and acknowledge a Slack event; ingest its files in the background."""
        raw = await request.body()
        try:
            envelope = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON") from exc
        if not isinstance(envelope, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON")

        if envelope.get("type") == "url_verification":
            return {"challenge": envelope.get("challenge")}

        svc = _services(request)
        secret = svc.settings.slack_signing_secret
        if not secret:
            logger.error("SLACK_SIGNING_SECRET is not configured")
            raise HTTPException(status_code=500, detail="Server configuration error")
        valid = verify_slack_signature(
            secret,
            request.headers.get("x-slack-request-timestamp"),
            request.headers.get("x-slack-signature"),
            raw,
        )
        if not valid:
            logger.warning("Rejected Slack event with invalid signature")
            raise HTTPException(status_code=401, detail="Invalid signature")

        retry_num = request.headers.get("x-slack-retry-num")
        if retry_num:
            logger.info("Ignoring Slack retry #%s (%s)", retry_num, request.headers.get("x-slack-retry-reason"))
            return SlackAck()

        background_tasks.add_task(_process_event, svc, envelope)
        return SlackAck()

    @app.post(
        "/api/slack/intake",
        response_model=IntakeResponse,
        response_model_exclude_none=True,
        tags=["Intake"],
        summary="Ingest a Slack-hosted video",
        responses=_ERRORS,
    )
    async def slack_intake(request: Request, background_tasks: BackgroundTasks):
        svc = _services(request)
        require_bearer(request, svc.settings.webhook_secret)
        payload = await parse_body(request, IntakeRequest)
        result = await run_stage(
            intake.ingest_slack_file(
                svc, _source_from(payload), metadata=payload.metadata, text=payload.text
            )
        )
        return _intake_response(svc, result, background_tasks)

    @app.post(
        "/api/slack/intake/upload",
        response_model=IntakeResponse,
        response_model_exclude_none=True,
        tags=["Intake"],
        summary="Ingest a video posted as multipart form data",
        responses=_ERRORS,
    )
    async def upload_intake(request: Request, background_tasks: BackgroundTasks):
        """Multipart variant: a 'file' part plus an optional 'payload_json' part."""
        svc = _services(request)
        require_bearer(request, svc.settings.webhook_secret)
        form = await request.form()
        upload = form.get("file")
        if upload is None or isinstance(upload, str):
            raise HTTPException(status_code=400, detail="Multipart field 'file' is required")
        raw_payload = form.get("payload_json") or "{}"
        try:
            data = json.loads(raw_payload)
        except json.JSONDecodeError as exc:
            raise HTTPException(status_code=400, detail="payload_json is not valid JSON") from exc
        if not isinstance(data, dict):
            raise HTTPException(status_code=400, detail="payload_json must be a JSON object")
        data.setdefault("original_file_name", upload.filename)
        data.setdefault("mimetype", upload.content_type)
        data.setdefault("size", upload.size)
        payload = validate_payload(data, IntakeRequest)

        file: UploadFile = upload
        result = await run_stage(
            intake.ingest_uploaded_file(
                svc,
                _source_from(payload),
                read_chunk=file.read,
                rewind=lambda: file.seek(0),
                metadata=payload.metadata,
                text=payload.text,
            )
        )
        return _intake_response(svc, result, background_tasks)

    # -----------------------------------------------------------------------
    # Pipeline stages
    # -----------------------------------------------------------------------

    @app.post(
        "/api/upload-url",
        response_model=UploadUrlResponse,
        tags=["Intake"],
        summary="Mint a signed upload URL for a .mp4 video",
        responses=_ERRORS,
    )
    async def upload_url(request: Request):
        svc = _services(request)
        require_bearer(request, svc.settings.webhook_secret)
        payload = await parse_body(request, UploadUrlRequest)
        result = await run_stage(
            uploads.create_upload_url(svc, payload.file_name, payload.content_type)
        )
        return UploadUrlResponse.model_validate(result)

    @app.post(
        "/api/start-task",
        response_model=StartTaskResponse,
        tags=["Stages"],
        summary="Dispatch a task to the transcription worker",
        responses={
            **_ERRORS,
            404: {"model": ErrorResponse, "description": "Task not found."},
            409: {"model": ErrorResponse, "description": "Task cannot be dispatched from its status."},
            502: {"model": ErrorResponse, "description": "The worker rejected the request."},
        },
    )
    async def start_task(request: Request):
        svc = _services(request)
        require_bearer(request, svc.settings.webhook_secret)
        payload = await parse_body(request, TaskRequest)
        result = await run_stage(dispatch.start_task(svc, payload.task_id))
        return StartTaskResponse.model_validate(result)

    @app.post(
        "/api/summarize-task",
        response_model=SummarizeResponse,
        tags=["Stages"],
        summary="Summarize a transcript into meeting minutes",
        responses={
            **_ERRORS,
            404: {"model": ErrorResponse, "description": "Task not found."},
            409: {"model": ErrorResponse, "description": "Task cannot be summarized from its status."},
        },
    )
    async def summarize_task(request: Request):
        svc = _services(request)
        require_bearer(request, svc.settings.webhook_secret)
        payload = await parse_body(request, SummarizeRequest)
        transcript = payload.transcript or payload.transcription_text
        result = await run_stage(summarize.summarize_task(svc, payload.task_id, transcript))
        return SummarizeResponse.model_validate(result)

    @app.post(
        "/api/notion-sync",
        response_model=NotionSyncResponse,
        tags=["Stages"],
        summary="Publish a completed task's minutes to Notion",
        responses={**_ERRORS, 404: {"model": ErrorResponse, "description": "Task not found."}},
    )
    async def notion_sync_task(request: Request):
        svc = _services(request)
        require_bearer(request, svc.settings.webhook_secret)
        payload = await parse_body(request, TaskRequest)
        result = await run_stage(notion_sync.sync_task(svc, payload.task_id))
        return NotionSyncResponse.model_validate(result)

    # -----------------------------------------------------------------------
    # Observability
    # -----------------------------------------------------------------------

    @app.get(
        "/api/tasks/{task_id}",
        response_model=TaskResponse,
        tags=["Tasks"],
        summary="Get a task's status",
        responses={**_ERRORS, 404: {"model": ErrorResponse, "description": "Task not found."}},
    )
    async def get_task(task_id: str, request: Request):
        svc = _services(request)
        require_bearer(request, svc.settings.webhook_secret)
        task = svc.tasks.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
        summary = task_summary(task)
        return TaskResponse(
            **summary,
            metadata=task.metadata_fields,
            final_summary=task.final_summary,
        )

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", version=__version__)

    return app


app = create_app()


def run_api(host: str = "0.0.0.0", port: int = 8000) -> None:
    """Run the stage app with uvicorn."""
    import uvicorn

    uvicorn.run(app, host=host, port=port)
