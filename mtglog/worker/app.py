"""FastAPI transcription worker application.

WHY: The worker is deployed separately from the stage app (it needs
ffmpeg and long request timeouts), so it is its own small ASGI app with
a health route and one bearer-protected endpoint.

HOW: create_worker_app() mirrors the stage app: lifespan builds Services
from the environment unless injected; POST /transcribe authorizes, parses
{signedUrl, gcsBucket, gcsDestPath, taskId} and awaits the pipeline.

RULES:
- Wrong or missing bearer token -> 401 before the body is read
- Any missing field -> 400
- Pipeline failures -> 500 with a credential-free message
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from pydantic import Field

from mtglog import __version__
from mtglog.config import Settings
from mtglog.server.deps import parse_body, require_bearer, run_stage
from mtglog.server.models import _Wire
from mtglog.services import Services
from mtglog.worker.pipeline import TranscribeJob, run_transcription

logger = logging.getLogger(__name__)


class TranscribeRequest(_Wire):
    signed_url: str = Field(alias="signedUrl", min_length=1, description="Signed read URL of the video.")
    gcs_bucket: str = Field(alias="gcsBucket", min_length=1, description="Bucket for the extracted audio.")
    gcs_dest_path: str = Field(alias="gcsDestPath", min_length=1, description="Object path for the audio.")
    task_id: str = Field(alias="taskId", min_length=1, description="Pipeline task id.")


class TranscribeResponse(_Wire):
    message: str = Field(description="Human-readable outcome.")
    task_id: str = Field(alias="taskId", description="Transcribed task id.")
    audio_path: str = Field(alias="audioPath", description="bucket/path of the uploaded audio.")
    transcript_length: int = Field(alias="transcriptLength", description="Transcript length in characters.")


def create_worker_app(services: Optional[Services] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.services is None
        if owned:
            settings = Settings.from_env()
            app.state.services = Services.from_settings(
                settings, create_schema=settings.database_configured
            )
        yield
        if owned:
            await app.state.services.aclose()
            app.state.services = None

    app = FastAPI(
        lifespan=lifespan,
        title="mtglog Transcription Worker",
        description="Extracts audio from a meeting video, transcribes it and forwards the transcript.",
        version=__version__,
    )
    app.state.services = services

    @app.get("/", tags=["Health"], summary="Health check")
    async def root():
        return {"status": "ok"}

    @app.post(
        "/transcribe",
        response_model=TranscribeResponse,
        tags=["Worker"],
        summary="Transcribe a stored video and hand the transcript to summarize",
    )
    async def transcribe(request: Request):
        svc: Services = request.app.state.services
        require_bearer(request, svc.settings.webhook_secret)
        payload = await parse_body(request, TranscribeRequest)
        job = TranscribeJob(
            signed_url=payload.signed_url,
            bucket=payload.gcs_bucket,
            dest_path=payload.gcs_dest_path,
            task_id=payload.task_id,
        )
        result = await run_stage(run_transcription(svc, job))
        return TranscribeResponse.model_validate(result)

    return app


app = create_worker_app()


def run_worker(host: str = "0.0.0.0", port: int = 8080) -> None:
    """Run the worker app with uvicorn."""
    import uvicorn

    uvicorn.run(app, host=host, port=port)
