"""Per-process container for settings, stores and outbound clients.

WHY: Handlers used to reach for module-level client handles built at
import time. Building everything once at startup and passing it in keeps
handlers free of hidden global state and lets tests inject fakes.

HOW: Services.from_settings() creates the engine, the stores and every
client whose settings are present. need() returns a client or raises
ConfigurationError naming the variable that would enable it, so a stage
fails with a clear 500 only when it actually needs the missing piece.

RULES:
- One Services per app instance, stored on app.state.services
- Optional clients stay None until configured
- aclose() closes every client that holds a connection pool
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from mtglog.api.llm import LLMClient
from mtglog.api.notion import NotionClient
from mtglog.api.slack import SlackClient
from mtglog.api.speech import SpeechClient
from mtglog.api.stages import StageCaller
from mtglog.api.storage import StorageClient
from mtglog.config import Settings
from mtglog.db.session import init_db, make_engine, make_session_factory
from mtglog.db.store import NotionDbMapStore, TaskStore, UploadLogStore
from mtglog.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Client attribute -> environment variable that enables it
_CLIENT_ENV = {
    "storage": "SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY",
    "slack": "SLACK_BOT_TOKEN",
    "llm": "OPENAI_API_KEY",
    "speech": "OPENAI_API_KEY",
    "notion": "NOTION_API_KEY",
}


@dataclass
class Services:
    settings: Settings
    tasks: TaskStore
    upload_logs: UploadLogStore
    notion_maps: NotionDbMapStore
    caller: StageCaller
    storage: Optional[StorageClient] = None
    slack: Optional[SlackClient] = None
    llm: Optional[LLMClient] = None
    speech: Optional[SpeechClient] = None
    notion: Optional[NotionClient] = None

    @classmethod
    def from_settings(cls, settings: Settings, create_schema: bool = True) -> Services:
        engine = make_engine(settings.database_url)
        if create_schema:
            init_db(engine)
        session_factory = make_session_factory(engine)

        storage = None
        if settings.supabase_url and settings.supabase_key:
            storage = StorageClient.from_settings(settings.supabase_url, settings.supabase_key)

        llm = speech = None
        if settings.openai_api_key:
            llm = LLMClient(
                settings.openai_api_key,
                model=settings.llm_model,
                base_url=settings.openai_base_url,
            )
            speech = SpeechClient(
                settings.openai_api_key,
                model=settings.speech_model,
                language=settings.speech_language,
                base_url=settings.openai_base_url,
            )

        services = cls(
            settings=settings,
            tasks=TaskStore(session_factory),
            upload_logs=UploadLogStore(session_factory),
            notion_maps=NotionDbMapStore(session_factory),
            caller=StageCaller(settings.webhook_secret),
            storage=storage,
            slack=SlackClient(settings.slack_bot_token) if settings.slack_bot_token else None,
            llm=llm,
            speech=speech,
            notion=(
                NotionClient(settings.notion_api_key, notion_version=settings.notion_version)
                if settings.notion_api_key
                else None
            ),
        )
        logger.info(
            "Services ready (storage=%s, slack=%s, openai=%s, notion=%s)",
            storage is not None,
            services.slack is not None,
            llm is not None,
            services.notion is not None,
        )
        return services

    def need(self, name: str) -> Any:
        """Return a configured client by attribute name or raise ConfigurationError."""
        client = getattr(self, name)
        if client is None:
            raise ConfigurationError(_CLIENT_ENV.get(name, name.upper()))
        return client

    async def aclose(self) -> None:
        for name in ("caller", "storage", "slack", "llm", "speech", "notion"):
            client = getattr(self, name)
            if client is not None:
                await client.aclose()
