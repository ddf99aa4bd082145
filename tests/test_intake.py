"""Tests for the intake stage (Slack file -> storage -> task row).

WHY: Intake is where a meeting video can be lost: wrong file types,
flaky transfers and partial failures. These tests pin which sources are
accepted, that transient failures are retried and permanent ones are
not, and that every attempt leaves an upload-log trail.

HOW: Stage functions are awaited directly with asyncio.run against the
in-memory services fixture. Slack and storage are fakes from conftest;
failures are scripted per attempt.

RULES:
- Skipped sources never create task rows
- No test sleeps: retry delays are zero in the fixture settings
"""

from __future__ import annotations

import asyncio
import io

import httpx
import pytest
from sqlalchemy import select

from mtglog.db.models import Task, UploadLog
from mtglog.errors import StageError, UploadTooLargeError, UpstreamError
from mtglog.stages import intake
from conftest import SLACK_URL, UPLOAD_URL, VIDEO_BYTES, FakeSlack, make_services, make_settings


def _all(services, model):
    with services.upload_logs._session_factory() as session:
        return list(session.scalars(select(model)))


def _source(**overrides):
    values = dict(
        name="meeting.mp4",
        file_id="F1",
        mimetype="video/mp4",
        filetype="mp4",
        download_url=SLACK_URL,
        slack_user_id="U1",
        slack_channel_id="C1",
    )
    values.update(overrides)
    return intake.SourceFile(**values)


# ---------------------------------------------------------------------------
# Acceptance
# ---------------------------------------------------------------------------


class TestRejectionReason:
    def test_mp4_is_accepted(self):
        assert intake.rejection_reason("Meeting.MP4", "video/mp4", "mp4") is None

    def test_other_extension(self):
        assert "extension" in intake.rejection_reason("meeting.mov", "video/quicktime", "mov")

    def test_mp4_name_with_wrong_mimetype(self):
        assert "content type" in intake.rejection_reason("meeting.mp4", "video/quicktime")

    def test_no_extension(self):
        assert intake.rejection_reason("README") is not None


# ---------------------------------------------------------------------------
# ingest_slack_file
# ---------------------------------------------------------------------------


class TestIngestSlackFile:
    def test_creates_uploaded_task(self, services, storage):
        text = "企業名：株式会社サンプル\nコンサルタント名：田中"
        result = asyncio.run(intake.ingest_slack_file(services, _source(), text=text))

        assert result.created
        assert result.storage_path.startswith("videos/")
        assert result.storage_path.endswith("_meeting.mp4")
        task = services.tasks.get_task(result.task_id)
        assert task.status == "uploaded"
        assert task.company_name == "株式会社サンプル"
        assert task.consultant_name == "田中"
        assert task.slack_user_id == "U1"
        assert task.slack_file_id == "F1"

        assert storage.puts[0]["url"] == UPLOAD_URL
        assert storage.puts[0]["data"] == VIDEO_BYTES
        assert storage.puts[0]["content_type"] == "video/mp4"
        bucket, path = storage.create_signed_upload_url.call_args.args
        assert bucket == "videos"
        assert path == result.storage_path

    def test_upload_log_records_success(self, services):
        result = asyncio.run(intake.ingest_slack_file(services, _source()))
        logs = services.upload_logs.for_task(result.task_id)
        assert len(logs) == 1
        assert logs[0].status == "uploaded"
        assert logs[0].progress == 100
        assert logs[0].file_size == len(VIDEO_BYTES)
        assert logs[0].source_metadata["slack_user_id"] == "U1"

    def test_explicit_metadata_wins(self, services):
        result = asyncio.run(
            intake.ingest_slack_file(
                services,
                _source(),
                metadata={"companyName": "Explicit"},
                text="企業名：From Text",
            )
        )
        assert services.tasks.get_task(result.task_id).company_name == "Explicit"

    def test_non_mp4_is_skipped_without_task(self, services, storage):
        result = asyncio.run(
            intake.ingest_slack_file(
                services, _source(name="notes.pdf", mimetype="application/pdf", filetype="pdf")
            )
        )
        assert result.status == "skipped"
        assert "extension" in result.reason
        assert _all(services, Task) == []
        storage.create_signed_upload_url.assert_not_called()

    def test_skip_does_not_need_slack(self):
        services = make_services()
        result = asyncio.run(intake.ingest_slack_file(services, _source(name="a.mov")))
        assert result.status == "skipped"

    def test_resolves_download_url_from_file_id(self, services, slack):
        result = asyncio.run(intake.ingest_slack_file(services, _source(download_url=None)))
        assert result.created
        slack.resolve_download_url.assert_awaited_once_with("F1")
        assert slack.downloads == [SLACK_URL]

    def test_needs_file_id_or_url(self, services):
        with pytest.raises(StageError) as excinfo:
            asyncio.run(
                intake.ingest_slack_file(services, _source(file_id=None, download_url=None))
            )
        assert excinfo.value.status_code == 400

    def test_transient_transfer_failure_is_retried(self, services, storage, slack):
        storage.put_failures.append(UpstreamError("storage", 503, "unavailable"))
        slack.download_failures.append(httpx.ReadTimeout("slow"))

        result = asyncio.run(intake.ingest_slack_file(services, _source()))

        assert result.created
        assert len(slack.downloads) == 3
        assert len(storage.puts) == 1

    def test_permanent_failure_is_not_retried(self, services, storage, slack):
        storage.put_failures.append(UpstreamError("storage", 403, "signature mismatch"))

        with pytest.raises(UpstreamError):
            asyncio.run(intake.ingest_slack_file(services, _source()))

        assert len(slack.downloads) == 1
        assert _all(services, Task) == []
        logs = _all(services, UploadLog)
        assert [log.status for log in logs] == ["failed"]
        assert "signature mismatch" in logs[0].error_message

    def test_gives_up_after_three_attempts(self, services, storage, slack):
        storage.put_failures.extend(UpstreamError("storage", 500, str(i)) for i in range(3))
        with pytest.raises(UpstreamError):
            asyncio.run(intake.ingest_slack_file(services, _source()))
        assert len(slack.downloads) == 3
        assert _all(services, Task) == []


class TestBufferedUploads:
    def test_buffered_transfer_sends_bytes(self, storage):
        services = make_services(
            make_settings(stream_uploads=False), storage=storage, slack=FakeSlack()
        )
        result = asyncio.run(intake.ingest_slack_file(services, _source()))
        assert result.created
        assert storage.puts[0]["data"] == VIDEO_BYTES
        assert storage.puts[0]["content_length"] == len(VIDEO_BYTES)

    def test_buffer_cap_rejects_large_files(self, storage):
        services = make_services(
            make_settings(stream_uploads=False, max_buffered_upload_bytes=100),
            storage=storage,
            slack=FakeSlack(),
        )
        with pytest.raises(UploadTooLargeError) as excinfo:
            asyncio.run(intake.ingest_slack_file(services, _source()))
        assert excinfo.value.status_code == 400
        assert storage.puts == []
        assert _all(services, Task) == []


# ---------------------------------------------------------------------------
# ingest_uploaded_file
# ---------------------------------------------------------------------------


class TestIngestUploadedFile:
    def test_rewinds_between_attempts(self, services, storage):
        buffer = io.BytesIO(VIDEO_BYTES)
        rewinds = []

        async def read_chunk(size):
            return buffer.read(size)

        async def rewind():
            rewinds.append(True)
            buffer.seek(0)

        storage.put_failures.append(UpstreamError("storage", 502, "bad gateway"))
        result = asyncio.run(
            intake.ingest_uploaded_file(
                services, _source(download_url=None, size=len(VIDEO_BYTES)), read_chunk, rewind
            )
        )
        assert result.created
        assert rewinds == [True]
        assert storage.puts[0]["data"] == VIDEO_BYTES


# ---------------------------------------------------------------------------
# Handoff
# ---------------------------------------------------------------------------


class TestRequestStart:
    def test_triggers_start_task(self, services):
        assert asyncio.run(intake.request_start(services, "abc"))
        url, payload = services.caller.trigger.call_args.args
        assert url == "http://app.test/api/start-task"
        assert payload == {"taskId": "abc"}

    def test_disabled(self):
        services = make_services(make_settings(auto_start=False))
        assert not asyncio.run(intake.request_start(services, "abc"))
        services.caller.trigger.assert_not_called()

    def test_without_app_url(self):
        services = make_services(make_settings(app_url=None))
        assert not asyncio.run(intake.request_start(services, "abc"))


# ---------------------------------------------------------------------------
# Slack events
# ---------------------------------------------------------------------------


def _envelope(event):
    return {"type": "event_callback", "team_id": "T1", "event": event}


MESSAGE_EVENT = {
    "type": "message",
    "subtype": "file_share",
    "user": "U1",
    "channel": "C1",
    "ts": "1700000000.000100",
    "text": "企業名：Acme",
    "files": [
        {
            "id": "F1",
            "name": "meeting.mp4",
            "mimetype": "video/mp4",
            "filetype": "mp4",
            "url_private_download": SLACK_URL,
            "size": len(VIDEO_BYTES),
        },
        {
            "id": "F2",
            "name": "agenda.pdf",
            "mimetype": "application/pdf",
            "filetype": "pdf",
        },
    ],
}


class TestParseEvent:
    def test_message_with_files(self):
        batch = intake.parse_event(_envelope(MESSAGE_EVENT))
        assert [s.name for s in batch.sources] == ["meeting.mp4", "agenda.pdf"]
        assert batch.text == "企業名：Acme"
        first = batch.sources[0]
        assert first.slack_team_id == "T1"
        assert first.slack_channel_id == "C1"
        assert first.slack_event_ts == "1700000000.000100"

    def test_bot_messages_are_ignored(self):
        event = dict(MESSAGE_EVENT, bot_id="B1")
        assert intake.parse_event(_envelope(event)).sources == []

    def test_file_shared_lists_ids(self):
        batch = intake.parse_event(
            _envelope({"type": "file_shared", "file_id": "F9", "user_id": "U1"})
        )
        assert batch.file_ids == ["F9"]

    def test_non_callback_is_empty(self):
        assert intake.parse_event({"type": "app_rate_limited"}).sources == []


class TestProcessEvent:
    def test_ingests_mp4_and_skips_others(self, services):
        results = asyncio.run(intake.process_event(services, _envelope(MESSAGE_EVENT)))
        assert [r.status for r in results] == ["uploaded", "skipped"]
        task = services.tasks.get_task(results[0].task_id)
        assert task.company_name == "Acme"
        assert task.slack_team_id == "T1"
        services.caller.trigger.assert_awaited_once()

    def test_one_failure_does_not_stop_the_rest(self, services, storage):
        event = dict(MESSAGE_EVENT)
        event["files"] = [
            dict(MESSAGE_EVENT["files"][0], id="F1"),
            dict(MESSAGE_EVENT["files"][0], id="F3", name="second.mp4"),
        ]
        storage.put_failures.append(UpstreamError("storage", 400, "bad request"))
        results = asyncio.run(intake.process_event(services, _envelope(event)))
        assert [r.file_name for r in results] == ["second.mp4"]
        assert len(_all(services, Task)) == 1

    def test_file_shared_is_looked_up(self, services, slack):
        envelope = _envelope({"type": "file_shared", "file_id": "F1", "channel_id": "C1"})
        results = asyncio.run(intake.process_event(services, envelope))
        slack.files_info.assert_awaited_once_with("F1")
        assert results[0].created
