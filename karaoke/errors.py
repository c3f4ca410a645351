"""Exception hierarchy shared by the gateway, reconciler and orchestrator."""
from __future__ import annotations

from typing import Any, Optional


class KaraokeError(Exception):
    """Base exception for Commit Karaoke errors."""


class InvalidRequestError(KaraokeError):
    """Raised before any network call when input fails validation.

    Never recorded in the call cache.
    """


class GatewayError(KaraokeError):
    """An upstream call failed (network error, non-2xx, bad body).

    Carries enough context to find the matching ``api_calls`` row.
    """

    def __init__(
        self,
        message: str,
        *,
        service: str,
        endpoint: str,
        fingerprint: str = "",
        status_code: Optional[int] = None,
        response_payload: Any = None,
    ) -> None:
        super().__init__(message)
        self.service = service
        self.endpoint = endpoint
        self.fingerprint = fingerprint
        self.status_code = status_code
        self.response_payload = response_payload

    def __str__(self) -> str:
        base = super().__str__()
        status = f" status={self.status_code}" if self.status_code is not None else ""
        short = f" fp={self.fingerprint[:12]}" if self.fingerprint else ""
        return f"[{self.service} {self.endpoint}{status}{short}] {base}"


class StorageError(KaraokeError):
    """Raised when an artifact cannot be downloaded or written to the bucket."""


class PipelineError(KaraokeError):
    """An orchestrator stage failed; ``stage`` names the step."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage


class NoCommitsFoundError(PipelineError):
    """The requested window contains no commits."""

    def __init__(self, repository: str) -> None:
        super().__init__("fetch_commits", f"No commits found in the specified time range for {repository}")
        self.repository = repository


class TaskNotFoundError(KaraokeError):
    """No generation task is known locally for this id."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Unknown generation task: {task_id}")
        self.task_id = task_id


class TaskFailedError(KaraokeError):
    """The upstream service reported the task as failed."""

    def __init__(self, task_id: str, error: Optional[str]) -> None:
        super().__init__(f"Task {task_id} failed: {error or 'unknown error'}")
        self.task_id = task_id
        self.error = error


class TaskTimeoutError(KaraokeError):
    """Polling gave up while the task was still pending or processing."""

    def __init__(self, task_id: str, attempts: int, last_status: str) -> None:
        super().__init__(
            f"Task {task_id} did not complete after {attempts} attempts (last status: {last_status})"
        )
        self.task_id = task_id
        self.attempts = attempts
        self.last_status = last_status
