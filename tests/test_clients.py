"""Tests for the outbound clients (stage caller, Notion, Slack, storage).

WHY: The stages only see UpstreamError; these tests make sure each
client turns its service's failures into one, sends the right auth
headers and never needs a real network.

HOW: httpx.MockTransport handlers stand in for the remote services.
supabase and slack_sdk objects are replaced with MagicMocks.
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import MagicMock

import httpx
import pytest
from slack_sdk.errors import SlackApiError

from mtglog.api.notion import NotionClient, rich_text
from mtglog.api.slack import SlackClient
from mtglog.api.stages import StageCaller
from mtglog.api.storage import StorageClient, sanitize_file_name, video_storage_path
from mtglog.errors import UpstreamError


def _mock_http(handler, **kwargs) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), **kwargs)


# ---------------------------------------------------------------------------
# StageCaller
# ---------------------------------------------------------------------------


class TestStageCaller:
    def test_post_sends_bearer_and_json(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"ok": True})

        caller = StageCaller("s3cret", http=_mock_http(handler))
        response = asyncio.run(caller.post("http://worker.test/transcribe", {"taskId": "t1"}))
        assert response.status_code == 200
        assert seen == {"auth": "Bearer s3cret", "body": {"taskId": "t1"}}

    def test_post_raises_on_error_status(self):
        caller = StageCaller("s", http=_mock_http(lambda r: httpx.Response(500, text="boom")))
        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(caller.post("http://worker.test/x", {}, service="transcriber"))
        assert excinfo.value.status_code == 500
        assert excinfo.value.service == "transcriber"
        assert excinfo.value.message == "boom"

    def test_post_wraps_transport_errors(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        caller = StageCaller("s", http=_mock_http(handler))
        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(caller.post("http://worker.test/x", {}))
        assert excinfo.value.status_code is None
        assert excinfo.value.is_transient

    def test_trigger_swallows_failures(self):
        caller = StageCaller("s", http=_mock_http(lambda r: httpx.Response(503)))
        assert asyncio.run(caller.trigger("http://app.test/api/notion-sync", {"taskId": "t"})) is False

    def test_trigger_read_timeout_counts_as_dispatched(self):
        def handler(request):
            raise httpx.ReadTimeout("still running", request=request)

        caller = StageCaller("s", http=_mock_http(handler))
        assert asyncio.run(caller.trigger("http://app.test/api/start-task", {"taskId": "t"})) is True

    def test_trigger_connect_timeout_is_a_failure(self):
        def handler(request):
            raise httpx.ConnectTimeout("unreachable", request=request)

        caller = StageCaller("s", http=_mock_http(handler))
        assert asyncio.run(caller.trigger("http://app.test/api/start-task", {"taskId": "t"})) is False

    def test_trigger_success(self):
        caller = StageCaller("s", http=_mock_http(lambda r: httpx.Response(200)))
        assert asyncio.run(caller.trigger("http://app.test/api/start-task", {"taskId": "t"})) is True


# ---------------------------------------------------------------------------
# Notion
# ---------------------------------------------------------------------------


class TestNotionClient:
    def test_rich_text_chunks_at_2000(self):
        chunks = rich_text("a" * 4500)
        assert [len(c["text"]["content"]) for c in chunks] == [2000, 2000, 500]

    def test_rich_text_empty(self):
        assert rich_text("") == [{"type": "text", "text": {"content": ""}}]

    def test_create_page(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "page-1"})

        http = _mock_http(handler, base_url="https://api.notion.test/v1")
        notion = NotionClient("key", http=http)
        page_id = asyncio.run(notion.create_page("db-1", {"面談日": {"title": []}}, [{"type": "paragraph"}]))
        assert page_id == "page-1"
        assert seen["path"] == "/v1/pages"
        assert seen["body"]["parent"] == {"database_id": "db-1"}
        assert seen["body"]["children"] == [{"type": "paragraph"}]

    def test_create_page_error(self):
        http = _mock_http(
            lambda r: httpx.Response(400, json={"code": "validation_error"}),
            base_url="https://api.notion.test/v1",
        )
        notion = NotionClient("key", http=http)
        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(notion.create_page("db-1", {}))
        assert excinfo.value.status_code == 400
        assert not excinfo.value.is_transient


# ---------------------------------------------------------------------------
# Slack
# ---------------------------------------------------------------------------


class TestSlackClient:
    def test_resolve_download_url(self):
        web = MagicMock()
        web.files_info.return_value = {"file": {"id": "F1", "url_private_download": "https://files/x.mp4"}}
        slack = SlackClient("xoxb", web_client=web)
        assert asyncio.run(slack.resolve_download_url("F1")) == "https://files/x.mp4"
        web.files_info.assert_called_once_with(file="F1")

    def test_missing_download_url(self):
        web = MagicMock()
        web.files_info.return_value = {"file": {"id": "F1"}}
        slack = SlackClient("xoxb", web_client=web)
        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(slack.resolve_download_url("F1"))
        assert excinfo.value.status_code == 404

    def test_files_info_api_error(self):
        web = MagicMock()
        response = MagicMock()
        response.status_code = 200
        response.get.return_value = "file_not_found"
        web.files_info.side_effect = SlackApiError("error", response)
        slack = SlackClient("xoxb", web_client=web)
        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(slack.files_info("F404"))
        assert "file_not_found" in excinfo.value.message

    def test_stream_download_sends_bot_token(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["authorization"]
            return httpx.Response(200, content=b"video-bytes")

        slack = SlackClient("xoxb-token", web_client=MagicMock(), http=_mock_http(handler))

        async def download():
            async with slack.stream_download("https://files.slack.test/x.mp4") as response:
                return b"".join([chunk async for chunk in response.aiter_bytes()])

        assert asyncio.run(download()) == b"video-bytes"
        assert seen["auth"] == "Bearer xoxb-token"

    def test_stream_download_error(self):
        slack = SlackClient(
            "xoxb", web_client=MagicMock(), http=_mock_http(lambda r: httpx.Response(403, text="denied"))
        )

        async def download():
            async with slack.stream_download("https://files.slack.test/x.mp4"):
                pass

        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(download())
        assert excinfo.value.status_code == 403


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class TestStorageHelpers:
    def test_sanitize(self):
        assert sanitize_file_name("会議 2024/03.mp4") == "___2024_03.mp4"
        assert sanitize_file_name("ok-name_1.mp4") == "ok-name_1.mp4"

    def test_video_storage_path(self):
        assert video_storage_path("a b.mp4", now_ms=1700000000000) == "videos/1700000000000_a_b.mp4"


class TestStorageClient:
    def _client(self, bucket):
        supabase = MagicMock()
        supabase.storage.from_.return_value = bucket
        return StorageClient(supabase), supabase

    def test_signed_url_key_variants(self):
        bucket = MagicMock()
        bucket.create_signed_url.return_value = {"signedURL": "https://read"}
        bucket.create_signed_upload_url.return_value = {"signed_url": "https://write"}
        client, supabase = self._client(bucket)

        assert asyncio.run(client.create_signed_url("videos", "videos/a.mp4")) == "https://read"
        assert asyncio.run(client.create_signed_upload_url("videos", "videos/a.mp4")) == "https://write"
        bucket.create_signed_url.assert_called_once_with("videos/a.mp4", 1800)
        supabase.storage.from_.assert_called_with("videos")

    def test_storage_exception_becomes_upstream_error(self):
        bucket = MagicMock()
        bucket.create_signed_url.side_effect = RuntimeError({"statusCode": "404", "message": "Object not found"})
        client, _ = self._client(bucket)
        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(client.create_signed_url("videos", "missing.mp4"))
        assert excinfo.value.status_code == 404

    def test_put_stream(self):
        seen = {}

        def handler(request):
            seen["content"] = request.content
            seen["type"] = request.headers["content-type"]
            return httpx.Response(200)

        client = StorageClient(MagicMock(), http=_mock_http(handler))
        asyncio.run(client.put_stream("https://storage.test/upload", b"data", "video/mp4", 4))
        assert seen == {"content": b"data", "type": "video/mp4"}

    def test_put_stream_error(self):
        client = StorageClient(MagicMock(), http=_mock_http(lambda r: httpx.Response(413, text="too big")))
        with pytest.raises(UpstreamError) as excinfo:
            asyncio.run(client.put_stream("https://storage.test/upload", b"data", "video/mp4"))
        assert excinfo.value.status_code == 413
