"""Configuration constants, runtime settings, and .env loading.

WHY: Every stage needs secrets (webhook secret, Slack tokens, provider
keys) and endpoint URLs for the next stage. Keeping fixed policy (accepted
container, buckets, TTLs, token budget) as plain module constants and the
deploy-specific values in one Settings object makes both easy to find and
to override in tests.

HOW: python-dotenv loads the .env file on import. Fixed policy lives in
module-level constants. Settings.from_env() snapshots the environment into
a frozen dataclass; Settings.require() raises ConfigurationError naming the
missing variable when a code path actually needs it.

RULES:
- Secrets are read from the environment only, never hardcoded
- A missing secret is a ConfigurationError, surfaced as HTTP 500
- Optional integrations stay None until a code path requires them
- All defaults can be overridden via environment variables
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Optional

from dotenv import load_dotenv

from mtglog.errors import ConfigurationError

# Load .env from the project root (where the process is started from)
load_dotenv()

# ---------------------------------------------------------------------------
# Accepted source media
# ---------------------------------------------------------------------------

ACCEPTED_EXTENSION = ".mp4"
ACCEPTED_CONTENT_TYPE = "video/mp4"

# ---------------------------------------------------------------------------
# Storage policy
# ---------------------------------------------------------------------------

VIDEO_PREFIX = "videos"
AUDIO_PREFIX = "audio"
SIGNED_URL_TTL_S = 30 * 60
"""Lifetime of every signed read/write URL the pipeline mints (30 minutes)."""

# ---------------------------------------------------------------------------
# Summarization policy
# ---------------------------------------------------------------------------

MAX_TRANSCRIPT_TOKENS = 15000
CHARS_PER_TOKEN = 4
MAX_KEY_POINTS = 10
SUMMARY_CHAR_LIMIT = 1000

# ---------------------------------------------------------------------------
# Slack request signing
# ---------------------------------------------------------------------------

SLACK_SIGNATURE_VERSION = "v0"
SLACK_MAX_CLOCK_SKEW_S = 5 * 60


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value or default


def _env_bool(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = _env(name)
    return int(value) if value is not None else default


def _env_float(name: str, default: float) -> float:
    value = _env(name)
    return float(value) if value is not None else default


# Settings field -> environment variable, for error messages
_ENV_NAMES = {
    "webhook_secret": "WEBHOOK_SECRET",
    "slack_signing_secret": "SLACK_SIGNING_SECRET",
    "slack_bot_token": "SLACK_BOT_TOKEN",
    "database_url": "DATABASE_URL",
    "supabase_url": "SUPABASE_URL",
    "supabase_key": "SUPABASE_SERVICE_ROLE_KEY",
    "app_url": "APP_URL",
    "transcriber_url": "TRANSCRIBER_URL",
    "summarize_endpoint": "SUMMARIZE_TASK_ENDPOINT",
    "openai_api_key": "OPENAI_API_KEY",
    "notion_api_key": "NOTION_API_KEY",
}


@dataclass(frozen=True)
class Settings:
    """Deploy-specific configuration for one process.

    WHY: Handlers need the same secrets and URLs on every request. Reading
    them once into an immutable object keeps os.environ access out of the
    request path and lets tests build settings explicitly.

    HOW: from_env() reads each variable once; require() returns a value or
    raises ConfigurationError with the variable name.

    RULES:
    - Frozen: settings never change after startup
    - Empty strings are treated as unset
    """

    webhook_secret: Optional[str] = None
    slack_signing_secret: Optional[str] = None
    slack_bot_token: Optional[str] = None
    database_url: str = "sqlite:///mtglog.db"
    database_configured: bool = False
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    video_bucket: str = "videos"
    audio_bucket: str = "transcription-audio"
    app_url: Optional[str] = None
    transcriber_url: Optional[str] = None
    summarize_endpoint: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    llm_model: str = "gpt-4o-mini"
    speech_model: str = "whisper-1"
    speech_language: str = "ja"
    notion_api_key: Optional[str] = None
    notion_version: str = "2022-06-28"
    auto_start: bool = True
    stream_uploads: bool = True
    max_buffered_upload_bytes: int = 512 * 1024 * 1024
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    handoff_timeout: float = 2.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        """Build settings from the process environment (after .env loading)."""
        return cls(
            webhook_secret=_env("WEBHOOK_SECRET"),
            slack_signing_secret=_env("SLACK_SIGNING_SECRET"),
            slack_bot_token=_env("SLACK_BOT_TOKEN"),
            database_url=_env("DATABASE_URL", "sqlite:///mtglog.db"),
            database_configured=_env("DATABASE_URL") is not None,
            supabase_url=_env("SUPABASE_URL"),
            supabase_key=_env("SUPABASE_SERVICE_ROLE_KEY"),
            video_bucket=_env("STORAGE_BUCKET", "videos"),
            audio_bucket=_env("AUDIO_BUCKET", "transcription-audio"),
            app_url=_env("APP_URL"),
            transcriber_url=_env("TRANSCRIBER_URL"),
            summarize_endpoint=_env("SUMMARIZE_TASK_ENDPOINT"),
            openai_api_key=_env("OPENAI_API_KEY"),
            openai_base_url=_env("OPENAI_BASE_URL"),
            llm_model=_env("MTGLOG_LLM_MODEL", "gpt-4o-mini"),
            speech_model=_env("MTGLOG_SPEECH_MODEL", "whisper-1"),
            speech_language=_env("MTGLOG_SPEECH_LANGUAGE", "ja"),
            notion_api_key=_env("NOTION_API_KEY"),
            notion_version=_env("NOTION_VERSION", "2022-06-28"),
            auto_start=_env_bool("MTGLOG_AUTO_START", True),
            stream_uploads=_env_bool("MTGLOG_STREAM_UPLOADS", True),
            max_buffered_upload_bytes=_env_int(
                "MTGLOG_MAX_BUFFERED_UPLOAD_BYTES", 512 * 1024 * 1024
            ),
            retry_max_attempts=_env_int("MTGLOG_RETRY_MAX_ATTEMPTS", 3),
            retry_base_delay=_env_float("MTGLOG_RETRY_BASE_DELAY", 1.0),
            handoff_timeout=_env_float("MTGLOG_HANDOFF_TIMEOUT", 2.0),
            log_level=_env("LOG_LEVEL", "INFO"),
        )

    def require(self, name: str) -> str:
        """Return a configured value or raise ConfigurationError.

        RULES:
        - name must be a Settings field
        - The error names the environment variable, never the value
        """
        if name not in {f.name for f in fields(self)}:
            raise KeyError(name)
        value = getattr(self, name)
        if not value:
            raise ConfigurationError(_ENV_NAMES.get(name, name.upper()))
        return value

    def stage_url(self, path: str) -> str:
        """Absolute URL of a stage endpoint on the stage app (APP_URL + path)."""
        return self.require("app_url").rstrip("/") + path
