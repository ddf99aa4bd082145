"""Tests for the task status table and the SQLAlchemy-backed stores.

WHY: The status column is the only coordination between stages. These
tests pin the allowed moves, prove that a guarded transition cannot
rewind a task, and check the status/field invariants the store enforces.

HOW: Each test builds a fresh in-memory database through the services
fixture and drives TaskStore / UploadLogStore / NotionDbMapStore directly.

RULES:
- No test depends on another test's rows
- Invalid moves must leave the stored row untouched
"""

from __future__ import annotations

import pytest

from mtglog.core.status import (
    ALLOWED_TRANSITIONS,
    PROTECTED_STATUSES,
    REQUEUE_TARGETS,
    TaskStatus,
    can_transition,
    parse_status,
    sources_for,
)
from mtglog.db.store import task_summary
from mtglog.errors import (
    InconsistentTaskError,
    InvalidTransitionError,
    TaskNotFoundError,
)


def _task(tasks, name: str = "meeting.mp4", **fields):
    return tasks.create_task(name, f"videos/1700000000000_{name}", **fields)


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------


class TestTransitionTable:
    def test_every_status_has_an_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(TaskStatus)

    def test_happy_path_is_allowed(self):
        path = [
            TaskStatus.UPLOADED,
            TaskStatus.PROCESSING,
            TaskStatus.TRANSCRIBED,
            TaskStatus.SUMMARIZING,
            TaskStatus.COMPLETED,
        ]
        for current, target in zip(path, path[1:]):
            assert can_transition(current, target), (current, target)

    def test_completed_only_moves_to_notion_failed(self):
        assert ALLOWED_TRANSITIONS[TaskStatus.COMPLETED] == frozenset({TaskStatus.NOTION_FAILED})

    def test_notion_failed_never_returns_to_completed(self):
        assert not can_transition(TaskStatus.NOTION_FAILED, TaskStatus.COMPLETED)

    def test_protected_statuses_cannot_reach_summarizing(self):
        for status in PROTECTED_STATUSES:
            assert not can_transition(status, TaskStatus.SUMMARIZING)

    def test_sources_for_summarizing(self):
        assert sources_for(TaskStatus.SUMMARIZING) == frozenset(
            {TaskStatus.PROCESSING, TaskStatus.TRANSCRIBED, TaskStatus.SUMMARIZING}
        )

    def test_parse_status(self):
        assert parse_status("completed") is TaskStatus.COMPLETED
        assert parse_status("bogus") is None
        assert parse_status(None) is None

    def test_requeue_targets_only_cover_failures(self):
        assert set(REQUEUE_TARGETS) == {
            TaskStatus.FAILED,
            TaskStatus.TRANSCRIBE_FAILED,
            TaskStatus.SUMMARIZE_FAILED,
            TaskStatus.NOTION_FAILED,
        }


# ---------------------------------------------------------------------------
# TaskStore
# ---------------------------------------------------------------------------


class TestTaskStore:
    def test_create_task_starts_uploaded(self, tasks):
        task = _task(tasks, company_name="Acme")
        assert len(task.id) == 32
        assert task.status == "uploaded"
        stored = tasks.get_task(task.id)
        assert stored.company_name == "Acme"
        assert stored.storage_path == "videos/1700000000000_meeting.mp4"

    def test_get_unknown_task_returns_none(self, tasks):
        assert tasks.get_task("missing") is None

    def test_transition_moves_and_writes_fields(self, tasks):
        task = _task(tasks)
        tasks.transition(task.id, TaskStatus.PROCESSING)
        moved = tasks.transition(
            task.id, TaskStatus.TRANSCRIBED, transcription_result="hello"
        )
        assert moved.status == "transcribed"
        assert moved.transcription_result == "hello"

    def test_repeated_processing_is_allowed(self, tasks):
        task = _task(tasks)
        tasks.transition(task.id, TaskStatus.PROCESSING)
        again = tasks.transition(task.id, TaskStatus.PROCESSING)
        assert again.status == "processing"

    def test_invalid_transition_raises_409_and_keeps_row(self, tasks):
        task = _task(tasks)
        with pytest.raises(InvalidTransitionError) as excinfo:
            tasks.transition(
                task.id, TaskStatus.SUMMARIZING, transcription_result="text"
            )
        assert excinfo.value.status_code == 409
        assert excinfo.value.current == "uploaded"
        stored = tasks.get_task(task.id)
        assert stored.status == "uploaded"
        assert stored.transcription_result is None

    def test_completed_task_cannot_be_resummarized(self, tasks):
        task = _task(tasks)
        tasks.transition(task.id, TaskStatus.PROCESSING)
        tasks.transition(task.id, TaskStatus.SUMMARIZING, transcription_result="t")
        tasks.transition(task.id, TaskStatus.COMPLETED, final_summary="# 議事メモ")
        with pytest.raises(InvalidTransitionError):
            tasks.transition(task.id, TaskStatus.SUMMARIZING)
        assert tasks.get_task(task.id).status == "completed"

    def test_transition_unknown_task(self, tasks):
        with pytest.raises(TaskNotFoundError) as excinfo:
            tasks.transition("missing", TaskStatus.PROCESSING)
        assert excinfo.value.status_code == 404

    def test_transcribed_requires_transcript(self, tasks):
        task = _task(tasks)
        tasks.transition(task.id, TaskStatus.PROCESSING)
        with pytest.raises(InconsistentTaskError):
            tasks.transition(task.id, TaskStatus.TRANSCRIBED)
        assert tasks.get_task(task.id).status == "processing"

    def test_completed_requires_final_summary(self, tasks):
        task = _task(tasks)
        tasks.transition(task.id, TaskStatus.PROCESSING)
        tasks.transition(task.id, TaskStatus.SUMMARIZING, transcription_result="t")
        with pytest.raises(InconsistentTaskError):
            tasks.transition(task.id, TaskStatus.COMPLETED)

    def test_error_message_is_truncated(self, tasks):
        task = _task(tasks)
        tasks.transition(task.id, TaskStatus.PROCESSING)
        failed = tasks.transition(task.id, TaskStatus.FAILED, error_message="x" * 2000)
        assert len(failed.error_message) == 500

    def test_update_task_cannot_touch_status_or_storage_path(self, tasks):
        task = _task(tasks)
        with pytest.raises(ValueError):
            tasks.update_task(task.id, status="completed")
        with pytest.raises(ValueError):
            tasks.update_task(task.id, storage_path="videos/other.mp4")

    def test_update_task_patches_fields(self, tasks):
        task = _task(tasks)
        updated = tasks.update_task(task.id, company_name="Acme", meeting_count=3)
        assert updated.company_name == "Acme"
        assert tasks.get_task(task.id).meeting_count == 3

    def test_update_unknown_task_returns_none(self, tasks):
        assert tasks.update_task("missing", company_name="Acme") is None

    def test_list_tasks_filters_by_status(self, tasks):
        first = _task(tasks, "a.mp4")
        _task(tasks, "b.mp4")
        tasks.transition(first.id, TaskStatus.PROCESSING)
        processing = tasks.list_tasks(status=TaskStatus.PROCESSING)
        assert [t.id for t in processing] == [first.id]
        assert len(tasks.list_tasks()) == 2

    def test_task_summary_shape(self, tasks):
        task = _task(tasks)
        summary = task_summary(tasks.get_task(task.id))
        assert summary["id"] == task.id
        assert summary["status"] == "uploaded"
        assert summary["created_at"]


class TestRequeue:
    def test_failed_dispatch_requeues_to_uploaded(self, tasks):
        task = _task(tasks)
        tasks.transition(task.id, TaskStatus.PROCESSING)
        tasks.transition(task.id, TaskStatus.FAILED, error_message="worker down")
        requeued = tasks.requeue(task.id)
        assert requeued.status == "uploaded"
        assert requeued.error_message is None

    def test_summarize_failed_with_transcript_requeues_to_transcribed(self, tasks):
        task = _task(tasks)
        tasks.transition(task.id, TaskStatus.PROCESSING)
        tasks.transition(task.id, TaskStatus.SUMMARIZING, transcription_result="t")
        tasks.transition(task.id, TaskStatus.SUMMARIZE_FAILED, error_message="llm")
        assert tasks.requeue(task.id).status == "transcribed"

    def test_active_task_cannot_be_requeued(self, tasks):
        task = _task(tasks)
        with pytest.raises(InvalidTransitionError):
            tasks.requeue(task.id)


# ---------------------------------------------------------------------------
# Side tables
# ---------------------------------------------------------------------------


class TestUploadLogStore:
    def test_start_and_update(self, services):
        logs = services.upload_logs
        log_id = logs.start("meeting.mp4", storage_path="videos/1_meeting.mp4")
        assert log_id is not None
        logs.update(log_id, status="uploading", progress=40)
        log = logs.get(log_id)
        assert log.status == "uploading"
        assert log.progress == 40

    def test_update_without_id_is_a_no_op(self, services):
        services.upload_logs.update(None, status="failed")

    def test_for_task(self, services):
        logs = services.upload_logs
        log_id = logs.start("meeting.mp4")
        logs.update(log_id, task_id="abc")
        assert [log.id for log in logs.for_task("abc")] == [log_id]


class TestNotionDbMapStore:
    def test_set_then_lookup(self, services):
        maps = services.notion_maps
        maps.set("company", "Acme", "db-1")
        assert maps.lookup("company", "Acme").db_id == "db-1"
        assert maps.lookup("company", "Other") is None

    def test_set_is_an_upsert(self, services):
        maps = services.notion_maps
        maps.set("consultant", "田中", "db-1")
        maps.set("consultant", "田中", "db-2", page_id="p-2")
        rows = maps.list_all()
        assert len(rows) == 1
        assert rows[0].db_id == "db-2"
        assert rows[0].page_id == "p-2"
