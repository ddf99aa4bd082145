"""Pydantic request/response models for the stage API.

WHY: The stage endpoints need typed schemas for request validation,
response serialization and the OpenAPI docs. Callers (Slack workflows,
the worker, the database webhook) send camelCase keys, so models accept
both the wire alias and the Python field name.

HOW: One model per request and response body. Every field carries a
Field(description=...) for /docs.

RULES:
- All models use Field(description=...) for OpenAPI documentation
- Wire names are camelCase aliases; populate_by_name allows snake_case too
- Intake metadata stays a free-form dict; core.metadata resolves it
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class IntakeRequest(_Wire):
    """A Slack file forwarded for intake.

    RULES:
    - original_file_name is required; file_id or slack_download_url must be set
    - metadata keys may be snake_case or camelCase (companyIssues, ...)
    """

    file_id: Optional[str] = Field(default=None, description="Slack file id (F...).")
    original_file_name: str = Field(description="File name as uploaded to Slack.")
    mimetype: Optional[str] = Field(default=None, description="Slack mimetype, e.g. video/mp4.")
    filetype: Optional[str] = Field(default=None, description="Slack filetype, e.g. mp4.")
    slack_download_url: Optional[str] = Field(
        default=None, description="url_private_download; resolved from file_id when absent."
    )
    slack_user_id: Optional[str] = Field(default=None, description="Uploader's Slack user id.")
    slack_channel_id: Optional[str] = Field(default=None, description="Channel the file was shared in.")
    slack_team_id: Optional[str] = Field(default=None, description="Slack workspace id.")
    slack_event_ts: Optional[str] = Field(default=None, description="Timestamp of the Slack event.")
    size: Optional[int] = Field(default=None, description="File size in bytes, if known.")
    text: Optional[str] = Field(
        default=None, description="Message text; labeled lines are parsed as metadata."
    )
    metadata: Dict[str, Any] = Field(
        default_factory=dict, description="Explicit meeting metadata (wins over text)."
    )


class UploadUrlRequest(_Wire):
    file_name: Optional[str] = Field(default=None, alias="fileName", description="Name of the .mp4 to upload.")
    content_type: Optional[str] = Field(
        default=None, alias="contentType", description="Must be video/mp4."
    )


class TaskRequest(_Wire):
    task_id: str = Field(alias="taskId", min_length=1, description="Pipeline task id.")


class SummarizeRequest(TaskRequest):
    transcript: Optional[str] = Field(
        default=None,
        description="Transcript text; falls back to transcriptionText, then the stored result.",
    )
    transcription_text: Optional[str] = Field(
        default=None, alias="transcriptionText", description="Alternate transcript key."
    )


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class IntakeResponse(_Wire):
    status: str = Field(description="'uploaded' when a task was created, 'skipped' otherwise.")
    file_name: str = Field(alias="fileName", description="Source file name.")
    message: Optional[str] = Field(default=None, description="Human-readable outcome.")
    task_id: Optional[str] = Field(default=None, alias="taskId", description="New task id.")
    storage_path: Optional[str] = Field(default=None, alias="storagePath", description="Stored video path.")
    reason: Optional[str] = Field(default=None, description="Why the file was skipped.")


class UploadUrlResponse(_Wire):
    upload_url: str = Field(alias="uploadUrl", description="Signed URL to PUT the video to.")
    storage_path: str = Field(alias="storagePath", description="Object path the video will have.")


class StartTaskResponse(_Wire):
    message: str = Field(description="Human-readable outcome.")
    task_id: str = Field(alias="taskId", description="Dispatched task id.")
    status: str = Field(description="Task status after dispatch ('processing').")


class SummarizeResponse(_Wire):
    message: str = Field(description="Human-readable outcome.")
    task_id: str = Field(alias="taskId", description="Summarized task id.")
    phase1: Dict[str, Any] = Field(description="Key points: {key_points: [...]}.")
    phase2: Dict[str, Any] = Field(description="Agenda sections: {sections: [...]}.")
    phase3: Dict[str, Any] = Field(description="Per-speaker summaries: {speakers: [...]}.")
    final_summary: str = Field(alias="finalSummary", description="Markdown minutes.")
    notion_triggered: bool = Field(
        alias="notionTriggered", description="Whether the notion-sync handoff was accepted."
    )


class NotionSyncResponse(_Wire):
    message: str = Field(description="Human-readable outcome.")
    task_id: str = Field(alias="taskId", description="Published task id.")
    ids: List[str] = Field(description="Created page ids in all/consultant/company order.")
    page_ids: Dict[str, str] = Field(alias="pageIds", description="Page id per destination kind.")


class TaskResponse(_Wire):
    """Status view of a task for operators and polling clients."""

    id: str = Field(description="Task id.")
    status: str = Field(description="Current task status.")
    original_file_name: str = Field(description="Source file name.")
    storage_path: Optional[str] = Field(default=None, description="Stored video path.")
    error_message: Optional[str] = Field(default=None, description="Last failure detail.")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Meeting metadata.")
    final_summary: Optional[str] = Field(default=None, description="Markdown minutes, once completed.")
    notion_page_ids: Optional[Dict[str, str]] = Field(default=None, description="Published Notion pages.")
    created_at: Optional[str] = Field(default=None, description="ISO 8601 creation time.")
    updated_at: Optional[str] = Field(default=None, description="ISO 8601 last update time.")


class SlackAck(_Wire):
    ok: bool = Field(default=True, description="Event accepted for processing.")


class HealthResponse(_Wire):
    status: str = Field(default="ok", description="Service health status.")
    version: str = Field(description="Package version.")


class ErrorResponse(_Wire):
    detail: str = Field(description="Human-readable error message.")
