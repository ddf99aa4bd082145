"""Task, upload-log and Notion-map stores over a SQLAlchemy session factory.

WHY: Stages should not build queries. They need four things from the
task table: create a row, read it, patch non-status fields, and move it to
a new status only if it is currently in an allowed one. The side tables
need an append/patch log and a lookup.

HOW: TaskStore wraps a sessionmaker; each public method opens a short
session, commits and returns detached rows (expire_on_commit=False).
transition() issues UPDATE ... WHERE id = :id AND status IN (<allowed
sources>) so two concurrent deliveries cannot both win a guarded move.
UploadLogStore swallows and logs database errors because upload logs are
observability only.

RULES:
- get_task() returns None for unknown ids (no exceptions)
- transition() raises TaskNotFoundError or InvalidTransitionError
- update_task() never changes status (use transition())
- Writes that would break a status/field invariant raise InconsistentTaskError
- updated_at is bumped on every mutation
- Methods are synchronous and short; async stages call them directly
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from mtglog.core.status import (
    REQUEUE_TARGETS,
    TRANSCRIPT_REQUIRED,
    TaskStatus,
    parse_status,
    sources_for,
)
from mtglog.db.models import NotionDbMap, Task, UploadLog, utcnow
from mtglog.errors import (
    InconsistentTaskError,
    InvalidTransitionError,
    TaskNotFoundError,
    truncate,
)

logger = logging.getLogger(__name__)

_IMMUTABLE_FIELDS = frozenset({"id", "status", "storage_path", "created_at"})


def _check_consistency(
    task_id: str,
    status: TaskStatus,
    transcription_result: Optional[str],
    final_summary: Optional[str],
) -> None:
    if status in TRANSCRIPT_REQUIRED and not transcription_result:
        raise InconsistentTaskError(
            f"Task {task_id}: status '{status.value}' requires a transcription_result"
        )
    if status is TaskStatus.COMPLETED and not final_summary:
        raise InconsistentTaskError(
            f"Task {task_id}: status 'completed' requires a final_summary"
        )


class TaskStore:
    """Persistent store for pipeline tasks.

    WHY: Each stage loads a task by id, mutates a subset of fields and
    releases it; the only coordination between stages is the status column.

    HOW: One short session per call. Reads return detached Task rows.

    RULES:
    - create_task() inserts with status 'uploaded' and a fresh uuid4 id
    - transition() is the only way to change status from stage code
    - requeue() is an operator action that bypasses the transition table
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def create_task(
        self,
        original_file_name: str,
        storage_path: str,
        **fields: Any,
    ) -> Task:
        """Insert a new task in 'uploaded' status."""
        task = Task(
            status=TaskStatus.UPLOADED.value,
            original_file_name=original_file_name,
            storage_path=storage_path,
            **fields,
        )
        with self._session_factory() as session:
            session.add(task)
            session.commit()
        logger.info("Created task %s for %s", task.id, original_file_name)
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._session_factory() as session:
            return session.get(Task, task_id)

    def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        limit: int = 50,
    ) -> List[Task]:
        """Return the newest tasks first, optionally filtered by status."""
        query = select(Task).order_by(Task.created_at.desc()).limit(limit)
        if status is not None:
            query = query.where(Task.status == status.value)
        with self._session_factory() as session:
            return list(session.scalars(query))

    def update_task(self, task_id: str, **fields: Any) -> Optional[Task]:
        """Patch non-status fields of a task; returns None if not found.

        RULES:
        - id, status, storage_path and created_at cannot be patched
        - The patched row must still satisfy the status/field invariants
        """
        forbidden = _IMMUTABLE_FIELDS.intersection(fields)
        if forbidden:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(forbidden))}")
        with self._session_factory() as session:
            task = session.get(Task, task_id)
            if task is None:
                return None
            for name, value in fields.items():
                setattr(task, name, value)
            status = parse_status(task.status)
            if status is not None:
                _check_consistency(
                    task_id, status, task.transcription_result, task.final_summary
                )
            task.updated_at = utcnow()
            session.commit()
            return task

    def transition(
        self,
        task_id: str,
        target: TaskStatus,
        **fields: Any,
    ) -> Task:
        """Move a task to `target` if its current status allows it.

        WHY: Duplicate webhook deliveries and late retries must not rewind a
        task. Guarding the UPDATE with the allowed prior statuses makes the
        check and the write one atomic statement.

        HOW: Reads the row to validate field invariants against the merged
        values, then runs the conditional UPDATE. Zero affected rows means
        another writer moved the task first (or the move was never legal).

        RULES:
        - Raises TaskNotFoundError when the row does not exist
        - Raises InvalidTransitionError when the current status is not an
          allowed source for target
        - Extra keyword fields are written in the same statement
        """
        forbidden = _IMMUTABLE_FIELDS.intersection(fields)
        if forbidden:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(forbidden))}")
        if "error_message" in fields and fields["error_message"] is not None:
            fields["error_message"] = truncate(str(fields["error_message"]))

        with self._session_factory() as session:
            task = session.get(Task, task_id)
            if task is None:
                raise TaskNotFoundError(task_id)

            _check_consistency(
                task_id,
                target,
                fields.get("transcription_result", task.transcription_result),
                fields.get("final_summary", task.final_summary),
            )

            allowed = [status.value for status in sources_for(target)]
            result = session.execute(
                update(Task)
                .where(Task.id == task_id, Task.status.in_(allowed))
                .values(status=target.value, updated_at=utcnow(), **fields)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                session.rollback()
                session.expire_all()
                current = session.get(Task, task_id)
                raise InvalidTransitionError(
                    task_id, current.status if current else None, target.value
                )
            session.commit()
            session.expire_all()
            task = session.get(Task, task_id)

        logger.info("Task %s -> %s", task_id, target.value)
        return task

    def requeue(self, task_id: str) -> Task:
        """Reset a failed task to the status its failed stage starts from.

        RULES:
        - Only failure statuses in REQUEUE_TARGETS can be requeued
        - summarize_failed without a transcript restarts from 'uploaded'
        - error_message is cleared
        """
        with self._session_factory() as session:
            task = session.get(Task, task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            current = parse_status(task.status)
            target = REQUEUE_TARGETS.get(current) if current else None
            if target is None:
                raise InvalidTransitionError(task_id, task.status, "requeue")
            if target is TaskStatus.TRANSCRIBED and not task.transcription_result:
                target = TaskStatus.UPLOADED
            task.status = target.value
            task.error_message = None
            task.updated_at = utcnow()
            session.commit()
        logger.info("Requeued task %s: %s -> %s", task_id, current.value, target.value)
        return task


class UploadLogStore:
    """Best-effort log of upload attempts (upload_logs table).

    RULES:
    - Database errors are logged and never raised to the caller
    - start() returns the new log id, or None if the insert failed
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def start(self, file_name: str, **fields: Any) -> Optional[str]:
        try:
            with self._session_factory() as session:
                log = UploadLog(file_name=file_name, status="preparing", **fields)
                session.add(log)
                session.commit()
                return log.id
        except SQLAlchemyError:
            logger.exception("Failed to create upload log for %s", file_name)
            return None

    def update(self, log_id: Optional[str], **fields: Any) -> None:
        if log_id is None:
            return
        if fields.get("error_message") is not None:
            fields["error_message"] = truncate(str(fields["error_message"]))
        try:
            with self._session_factory() as session:
                log = session.get(UploadLog, log_id)
                if log is None:
                    logger.warning("Upload log %s not found", log_id)
                    return
                for name, value in fields.items():
                    setattr(log, name, value)
                log.updated_at = utcnow()
                session.commit()
        except SQLAlchemyError:
            logger.exception("Failed to update upload log %s", log_id)

    def get(self, log_id: str) -> Optional[UploadLog]:
        with self._session_factory() as session:
            return session.get(UploadLog, log_id)

    def for_task(self, task_id: str) -> List[UploadLog]:
        query = (
            select(UploadLog)
            .where(UploadLog.task_id == task_id)
            .order_by(UploadLog.created_at)
        )
        with self._session_factory() as session:
            return list(session.scalars(query))


class NotionDbMapStore:
    """Lookup (and operator upsert) of destination Notion databases."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def lookup(self, kind: str, name: str) -> Optional[NotionDbMap]:
        query = select(NotionDbMap).where(
            NotionDbMap.kind == kind, NotionDbMap.name == name
        )
        with self._session_factory() as session:
            return session.scalars(query).first()

    def set(
        self,
        kind: str,
        name: str,
        db_id: str,
        page_id: Optional[str] = None,
    ) -> NotionDbMap:
        query = select(NotionDbMap).where(
            NotionDbMap.kind == kind, NotionDbMap.name == name
        )
        with self._session_factory() as session:
            row = session.scalars(query).first()
            if row is None:
                row = NotionDbMap(kind=kind, name=name, db_id=db_id, page_id=page_id)
                session.add(row)
            else:
                row.db_id = db_id
                row.page_id = page_id
                row.updated_at = utcnow()
            session.commit()
            return row

    def list_all(self) -> List[NotionDbMap]:
        query = select(NotionDbMap).order_by(NotionDbMap.kind, NotionDbMap.name)
        with self._session_factory() as session:
            return list(session.scalars(query))


def task_summary(task: Task) -> Dict[str, Any]:
    """Compact dict view of a task for CLI and status responses."""
    return {
        "id": task.id,
        "status": task.status,
        "original_file_name": task.original_file_name,
        "storage_path": task.storage_path,
        "error_message": task.error_message,
        "notion_page_ids": task.notion_page_ids,
        "created_at": task.created_at.isoformat() if task.created_at else None,
        "updated_at": task.updated_at.isoformat() if task.updated_at else None,
    }
