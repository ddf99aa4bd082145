"""Shared test fixtures for the mtglog test suite.

WHY: Most test modules need the same wiring: settings with known secrets,
an in-memory database and fake outbound clients (storage, Slack, LLM,
speech, Notion, stage caller) so no test ever leaves the process.

HOW: make_services() builds a Services container over a fresh in-memory
SQLite engine and whichever fakes a test passes in. The fakes record
their calls so tests can assert on what each stage sent out.

RULES:
- Every test gets a fresh database (no shared state between tests)
- Retry delays are zero so retried tests run instantly
- The fake LLM answers by recognizing which prompt it was given
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from mtglog.config import Settings
from mtglog.db.session import init_db, make_engine, make_session_factory
from mtglog.db.store import NotionDbMapStore, TaskStore, UploadLogStore
from mtglog.services import Services

SECRET = "test-webhook-secret"
SIGNING_SECRET = "test-signing-secret"
AUTH = {"Authorization": f"Bearer {SECRET}"}

SLACK_URL = "https://files.slack.test/files-pri/T1-F1/download/meeting.mp4"
UPLOAD_URL = "https://storage.test/upload/sign/videos/x?token=up"
READ_URL = "https://storage.test/object/sign/videos/x?token=read"
VIDEO_BYTES = b"\x00\x00\x00\x18ftypmp42" + b"v" * 4096

PHASE1 = {"key_points": ["予算の見直し", "次回までに見積もり"]}
PHASE2 = {"sections": [{"title": "現状確認", "summary": "売上の推移を確認した"}]}
PHASE3 = {"speakers": [{"name": "田中", "summary": "課題を説明した"}]}
FINAL_SUMMARY = "# 議事メモ\n\n## 要点\n- 予算の見直し"


# ---------------------------------------------------------------------------
# Fake clients
# ---------------------------------------------------------------------------


class FakeResponse:
    """Streaming response stand-in with headers and aiter_bytes()."""

    def __init__(self, content: bytes, status_code: int = 200) -> None:
        self.content = content
        self.status_code = status_code
        self.headers = {"content-length": str(len(content))}

    async def aiter_bytes(self, chunk_size: int = 1024) -> AsyncIterator[bytes]:
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i : i + chunk_size]


class FakeSlack:
    def __init__(self, content: bytes = VIDEO_BYTES, file_info: Optional[Dict[str, Any]] = None) -> None:
        self.content = content
        self.downloads: List[str] = []
        self.download_failures: List[Exception] = []
        self.files_info = AsyncMock(
            return_value=file_info
            or {
                "id": "F1",
                "name": "meeting.mp4",
                "mimetype": "video/mp4",
                "filetype": "mp4",
                "url_private_download": SLACK_URL,
                "size": len(content),
            }
        )
        self.resolve_download_url = AsyncMock(return_value=SLACK_URL)
        self.aclose = AsyncMock()

    @asynccontextmanager
    async def stream_download(self, url: str) -> AsyncIterator[FakeResponse]:
        self.downloads.append(url)
        if self.download_failures:
            raise self.download_failures.pop(0)
        yield FakeResponse(self.content)


class FakeStorage:
    def __init__(self) -> None:
        self.create_signed_upload_url = AsyncMock(return_value=UPLOAD_URL)
        self.create_signed_url = AsyncMock(return_value=READ_URL)
        self.upload_file = AsyncMock()
        self.aclose = AsyncMock()
        self.put_failures: List[Exception] = []
        self.puts: List[Dict[str, Any]] = []

    async def put_stream(self, upload_url, body, content_type, content_length=None):
        if isinstance(body, bytes):
            data = body
        else:
            data = b"".join([chunk async for chunk in body])
        if self.put_failures:
            raise self.put_failures.pop(0)
        self.puts.append(
            {
                "url": upload_url,
                "data": data,
                "content_type": content_type,
                "content_length": content_length,
            }
        )


class FakeLLM:
    """Answers phase and consolidation prompts with canned replies.

    overrides maps "phase1".."phase3" / "final" to a raw reply string or an
    exception instance to raise.
    """

    def __init__(self, overrides: Optional[Dict[str, Any]] = None) -> None:
        self.overrides = overrides or {}
        self.prompts: List[str] = []
        self.aclose = AsyncMock()

    @staticmethod
    def kind_of(prompt: str) -> str:
        if "## フェーズ1" in prompt:
            return "final"
        if '"key_points"' in prompt:
            return "phase1"
        if '"sections"' in prompt:
            return "phase2"
        return "phase3"

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        kind = self.kind_of(prompt)
        if kind in self.overrides:
            reply = self.overrides[kind]
            if isinstance(reply, Exception):
                raise reply
            return reply
        defaults = {
            "phase1": "要点です。\n" + json.dumps(PHASE1, ensure_ascii=False),
            "phase2": "```json\n" + json.dumps(PHASE2, ensure_ascii=False) + "\n```",
            "phase3": json.dumps(PHASE3, ensure_ascii=False),
            "final": FINAL_SUMMARY,
        }
        return defaults[kind]


def make_caller() -> MagicMock:
    caller = MagicMock()
    caller.post = AsyncMock(return_value=MagicMock(status_code=200))
    caller.trigger = AsyncMock(return_value=True)
    caller.aclose = AsyncMock()
    return caller


def make_notion() -> MagicMock:
    notion = MagicMock()
    notion.create_page = AsyncMock(
        side_effect=lambda database_id, properties, children=None: f"page-{database_id}"
    )
    notion.aclose = AsyncMock()
    return notion


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = dict(
        webhook_secret=SECRET,
        slack_signing_secret=SIGNING_SECRET,
        slack_bot_token="xoxb-test",
        database_url="sqlite://",
        database_configured=True,
        app_url="http://app.test",
        transcriber_url="http://worker.test/transcribe",
        summarize_endpoint="http://app.test/api/summarize-task",
        retry_max_attempts=3,
        retry_base_delay=0.0,
    )
    values.update(overrides)
    return Settings(**values)


def make_services(settings: Optional[Settings] = None, **clients: Any) -> Services:
    engine = make_engine("sqlite://")
    init_db(engine)
    factory = make_session_factory(engine)
    return Services(
        settings=settings or make_settings(),
        tasks=TaskStore(factory),
        upload_logs=UploadLogStore(factory),
        notion_maps=NotionDbMapStore(factory),
        caller=clients.pop("caller", None) or make_caller(),
        **clients,
    )


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def slack() -> FakeSlack:
    return FakeSlack()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def notion() -> MagicMock:
    return make_notion()


@pytest.fixture
def services(settings, storage, slack, llm, notion) -> Services:
    """Fully wired services over an in-memory database and fakes."""
    speech = MagicMock()
    speech.transcribe = AsyncMock(return_value="こんにちは。本日の議題は予算です。")
    speech.aclose = AsyncMock()
    return make_services(
        settings,
        storage=storage,
        slack=slack,
        llm=llm,
        speech=speech,
        notion=notion,
    )


@pytest.fixture
def tasks(services) -> TaskStore:
    return services.tasks
