"""Outbound service clients: Slack, storage, OpenAI, Notion and the stages.

WHY: Stage logic should read as "resolve, sign, transfer, record" without
HTTP details. Each external service gets one small async client class
that raises UpstreamError on failure.

HOW: httpx.AsyncClient for plain HTTP APIs, slack_sdk for the Slack Web
API, supabase-py for storage, and openai for chat and speech-to-text.

RULES:
- All outbound calls go through these clients (no direct httpx in stages)
- Clients are built once per process and injected into the apps
"""

from mtglog.api.llm import LLMClient
from mtglog.api.notion import NotionClient
from mtglog.api.slack import SlackClient
from mtglog.api.speech import SpeechClient
from mtglog.api.stages import StageCaller
from mtglog.api.storage import StorageClient

__all__ = [
    "LLMClient",
    "NotionClient",
    "SlackClient",
    "SpeechClient",
    "StageCaller",
    "StorageClient",
]
