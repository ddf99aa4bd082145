"""SQLAlchemy models for tasks, upload logs and the Notion database map.

WHY: Every stage is a separate HTTP call, possibly on a separate host, so
pipeline state must live in the database rather than in process memory.
One row per video (transcription_tasks) is the only writable record;
upload_logs and notion_db_map are side tables.

HOW: Classic declarative models with Column attributes. Phase outputs and
Notion page ids are JSON columns so they round-trip as dicts on both
SQLite and Postgres. Timestamps are timezone-aware UTC datetimes set by
the application.

RULES:
- Task ids are uuid4 hex strings generated at intake
- storage_path and created_at never change after insert
- status holds a TaskStatus value (plain string column)
- notion_db_map is unique on (kind, name)
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

from mtglog.core.metadata import METADATA_FIELDS

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class Task(Base):
    """One meeting video moving through the pipeline.

    Attributes:
        id: Task id threaded through every stage call
        status: Current TaskStatus value
        original_file_name: File name as uploaded to Slack
        slack_*: Source reference for the Slack file and message
        storage_path: Object path of the stored video (videos/...)
        consultant_name .. internal_sharing_items: Meeting metadata
        transcription_result: Full transcript text
        phase1_output .. phase3_output: Validated phase JSON
        final_summary: Consolidated Markdown minutes
        notion_page_ids: {"all", "consultant", "company"} -> page id
        error_message: Detail of the last failure
    """

    __tablename__ = "transcription_tasks"

    id = Column(String(32), primary_key=True, default=new_id)
    status = Column(String(32), nullable=False, index=True)

    original_file_name = Column(String(512), nullable=False)
    slack_file_id = Column(String(64), nullable=True)
    slack_file_url = Column(String(2048), nullable=True)
    slack_user_id = Column(String(64), nullable=True)
    slack_channel_id = Column(String(64), nullable=True)
    slack_team_id = Column(String(64), nullable=True)
    slack_event_ts = Column(String(64), nullable=True)
    storage_path = Column(String(1024), nullable=True)

    consultant_name = Column(String(255), nullable=True)
    company_name = Column(String(255), nullable=True)
    company_type = Column(String(255), nullable=True)
    company_problem = Column(Text, nullable=True)
    company_phase = Column(String(255), nullable=True)
    meeting_date = Column(String(64), nullable=True)
    meeting_count = Column(Integer, nullable=True)
    meeting_type = Column(String(255), nullable=True)
    support_area = Column(String(255), nullable=True)
    internal_sharing_items = Column(Text, nullable=True)

    transcription_result = Column(Text, nullable=True)
    phase1_output = Column(JSON, nullable=True)
    phase2_output = Column(JSON, nullable=True)
    phase3_output = Column(JSON, nullable=True)
    final_summary = Column(Text, nullable=True)
    notion_page_ids = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    @property
    def metadata_fields(self) -> Dict[str, Any]:
        """The meeting metadata columns as a dict (None for unset fields)."""
        return {name: getattr(self, name) for name in METADATA_FIELDS}

    def to_dict(self) -> Dict[str, Any]:
        return {
            column.name: getattr(self, column.name) for column in self.__table__.columns
        }

    def __repr__(self) -> str:
        return f"<Task {self.id} status={self.status}>"


class UploadLog(Base):
    """One physical transfer attempt of a source video into storage."""

    __tablename__ = "upload_logs"

    id = Column(String(32), primary_key=True, default=new_id)
    task_id = Column(String(32), nullable=True, index=True)
    file_name = Column(String(512), nullable=False)
    storage_path = Column(String(1024), nullable=True)
    status = Column(String(32), nullable=False, default="preparing")
    content_type = Column(String(128), nullable=True)
    file_size = Column(BigInteger, nullable=True)
    progress = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    slack_file_id = Column(String(64), nullable=True)
    slack_download_url = Column(String(2048), nullable=True)
    source_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class NotionDbMap(Base):
    """Destination Notion database for a (kind, name) pair.

    kind is "all" (the shared database, name "all"), "consultant" (keyed by
    consultant name) or "company" (keyed by company name).
    """

    __tablename__ = "notion_db_map"
    __table_args__ = (UniqueConstraint("kind", "name", name="uq_notion_db_map_kind_name"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(32), nullable=False)
    name = Column(String(255), nullable=False)
    db_id = Column(String(64), nullable=False)
    page_id = Column(String(64), nullable=True)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
