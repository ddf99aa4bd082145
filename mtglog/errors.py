"""Exception types shared by the stages, clients and apps.

WHY: Stage functions run inside two different FastAPI apps and the CLI.
They report failures with typed exceptions carrying an HTTP status code,
so the apps can translate them without string matching and the CLI can
print them plainly.

HOW: StageError carries (status_code, detail) like the HTTP error body.
UpstreamError wraps a non-2xx answer (or a transport failure) from an
outbound service and knows whether it is worth retrying.

RULES:
- Stage code raises StageError subclasses, never HTTPException
- UpstreamError.message is already truncated for storage and display
- ConfigurationError names the missing variable, never a secret value
"""

from __future__ import annotations

from typing import Optional


def truncate(text: str, limit: int = 500) -> str:
    """Cut text to at most limit characters, marking the cut."""
    if len(text) <= limit:
        return text
    return text[: max(limit - 3, 0)] + "..."


class ConfigurationError(RuntimeError):
    """Raised when a required setting (secret, URL) is missing.

    RULES:
    - variable is the environment variable name
    - Surfaced as HTTP 500 with a generic message; the name is logged
    """

    def __init__(self, variable: str) -> None:
        self.variable = variable
        super().__init__(f"{variable} is not configured")


class StageError(Exception):
    """A stage failed with a known HTTP status and detail message."""

    status_code = 500

    def __init__(self, detail: str, status_code: Optional[int] = None) -> None:
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail
        super().__init__(detail)


class TaskNotFoundError(StageError):
    status_code = 404

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class InvalidTransitionError(StageError):
    """Raised when a status write is not allowed from the task's current status.

    WHY: Duplicate or late webhook deliveries must not rewind a task that
    has already moved on (e.g. re-summarizing a completed task).

    RULES:
    - Maps to HTTP 409
    - current is None when the row vanished between read and write
    """

    status_code = 409

    def __init__(self, task_id: str, current: Optional[str], target: str) -> None:
        self.task_id = task_id
        self.current = current
        self.target = target
        super().__init__(
            f"Task {task_id} cannot move from '{current}' to '{target}'"
        )


class InconsistentTaskError(ValueError):
    """Raised when a write would leave status and fields out of step.

    RULES:
    - transcription_result is required for transcribed and later states
    - final_summary is required for completed
    """


class UploadTooLargeError(StageError):
    status_code = 400

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(
            f"File too large for buffered upload: {size} bytes (limit {limit})"
        )


class PhaseError(ValueError):
    """Raised when a summarization phase yields no valid JSON object."""

    def __init__(self, phase: str, reason: str) -> None:
        self.phase = phase
        self.reason = reason
        super().__init__(f"{phase}: {reason}")


class UpstreamError(Exception):
    """Raised when an outbound service call fails.

    WHY: Callers need one typed exception for Slack, storage, OpenAI,
    Notion and stage-to-stage failures, with enough information to decide
    on retries and to write a useful error_message.

    HOW: Wraps the service name, the HTTP status code (None for transport
    failures such as timeouts or refused connections) and the response
    body truncated to 500 characters.

    RULES:
    - is_transient is True for transport failures and 5xx responses
    - 4xx responses are permanent and never retried
    """

    def __init__(
        self,
        service: str,
        status_code: Optional[int],
        message: str,
    ) -> None:
        self.service = service
        self.status_code = status_code
        self.message = truncate(message)
        label = status_code if status_code is not None else "transport"
        super().__init__(f"{service} error {label}: {self.message}")

    @property
    def is_transient(self) -> bool:
        return self.status_code is None or self.status_code >= 500
