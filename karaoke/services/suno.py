"""Suno music-generation API client.

Submission endpoints are cached like any other upstream call, so
re-submitting an identical request returns the original task id instead of
starting a second job. Status polls always bypass the cache.

Also home to the two normalizers that turn Suno's poll and webhook bodies
into ``TaskUpdate`` objects for the reconciler.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from karaoke.config import settings
from karaoke.core.task_state import ArtifactRef, TaskKind, TaskStatus, TaskUpdate
from karaoke.errors import GatewayError, InvalidRequestError
from karaoke.services.call_cache import ExternalCallCache
from karaoke.services.gateway import GatewayClient, hours

logger = logging.getLogger(__name__)

MAX_CUSTOM_PROMPT_CHARS = 3000
MAX_SIMPLE_PROMPT_CHARS = 400
MAX_STYLE_CHARS = 200
MAX_TITLE_CHARS = 80

_POLL_STATUS_MAP: dict[str, TaskStatus] = {
    "SUCCESS": TaskStatus.COMPLETED,
    "PENDING": TaskStatus.PENDING,
    "TEXT_SUCCESS": TaskStatus.PROCESSING,
    "FIRST_SUCCESS": TaskStatus.PROCESSING,
}

_FAILURE_MARKERS = ("FAILED", "ERROR", "EXCEPTION")

_CALLBACK_STATUS_MAP: dict[str, TaskStatus] = {
    "complete": TaskStatus.COMPLETED,
    "text": TaskStatus.PROCESSING,
    "first": TaskStatus.PROCESSING,
    "error": TaskStatus.FAILED,
}


def validate_generate_request(
    *,
    prompt: Optional[str],
    callback_url: Optional[str],
    style: Optional[str] = None,
    title: Optional[str] = None,
    custom_mode: bool = True,
    instrumental: bool = False,
) -> None:
    """Reject a music request Suno would refuse, before any network call."""
    if not callback_url:
        raise InvalidRequestError("Missing parameter: callback_url")
    if custom_mode:
        if not style or not title:
            raise InvalidRequestError("Custom mode requires style and title")
        if not instrumental and not prompt:
            raise InvalidRequestError("Custom mode requires a prompt unless instrumental")
        if prompt and len(prompt) > MAX_CUSTOM_PROMPT_CHARS:
            raise InvalidRequestError(f"Prompt exceeds {MAX_CUSTOM_PROMPT_CHARS} characters")
        if len(style) > MAX_STYLE_CHARS:
            raise InvalidRequestError(f"Style exceeds {MAX_STYLE_CHARS} characters")
        if len(title) > MAX_TITLE_CHARS:
            raise InvalidRequestError(f"Title exceeds {MAX_TITLE_CHARS} characters")
    else:
        if not prompt:
            raise InvalidRequestError("Missing parameter: prompt")
        if len(prompt) > MAX_SIMPLE_PROMPT_CHARS:
            raise InvalidRequestError(f"Prompt exceeds {MAX_SIMPLE_PROMPT_CHARS} characters in non-custom mode")


def _extract_task_id(body: Any, endpoint: str) -> str:
    data = body.get("data") if isinstance(body, dict) else None
    task_id = None
    if isinstance(data, dict):
        task_id = data.get("taskId") or data.get("task_id")
    if not task_id:
        raise GatewayError(
            "Response did not include a task id",
            service=SunoClient.service,
            endpoint=endpoint,
            response_payload=body,
        )
    return str(task_id)


def _artifact_from_track(track: dict[str, Any], kind: TaskKind) -> ArtifactRef:
    if kind is TaskKind.LYRICS:
        return ArtifactRef(
            artifact_id=track.get("id"),
            title=track.get("title"),
            text=track.get("text"),
        )
    duration = track.get("duration")
    return ArtifactRef(
        artifact_id=track.get("id"),
        source_url=track.get("audio_url") or track.get("audioUrl") or track.get("source_audio_url"),
        title=track.get("title"),
        duration=float(duration) if isinstance(duration, (int, float)) else None,
        image_url=track.get("image_url") or track.get("imageUrl"),
    )


def _artifacts(tracks: Any, kind: TaskKind) -> list[ArtifactRef]:
    if not isinstance(tracks, list):
        return []
    return [_artifact_from_track(t, kind) for t in tracks if isinstance(t, dict)]


def normalize_poll(task_id: str, body: dict[str, Any], kind: TaskKind, *, source: str = "poll") -> TaskUpdate:
    """Map a ``record-info`` body onto a ``TaskUpdate``."""
    data = body.get("data") or {}
    raw_status = str(data.get("status") or "").upper()

    if raw_status in _POLL_STATUS_MAP:
        status = _POLL_STATUS_MAP[raw_status]
    elif any(marker in raw_status for marker in _FAILURE_MARKERS):
        status = TaskStatus.FAILED
    else:
        logger.warning(f"Unrecognized Suno status {raw_status!r} for task {task_id}, treating as processing")
        status = TaskStatus.PROCESSING

    response = data.get("response") or {}
    if kind is TaskKind.AUDIO:
        artifacts = _artifacts(response.get("sunoData"), kind)
    else:
        artifacts = _artifacts(response.get("data"), kind)

    error = None
    if status is TaskStatus.FAILED:
        error = data.get("errorMessage") or raw_status
    return TaskUpdate(task_id=task_id, status=status, artifacts=artifacts, error=error, source=source)


def is_poll_shaped(payload: dict[str, Any]) -> bool:
    """True for a body laid out like ``record-info`` rather than a webhook."""
    data = payload.get("data")
    if not isinstance(data, dict) or "callbackType" in data:
        return False
    return "status" in data or "response" in data


def normalize_callback(payload: dict[str, Any], kind: TaskKind) -> Optional[TaskUpdate]:
    """Map a webhook body onto a ``TaskUpdate``; ``None`` if it names no task.

    Deliveries may arrive in either the webhook layout (``callbackType``
    plus ``data.data``) or the poll layout (``status`` plus
    ``response``); both normalize to the same update.
    """
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        return None
    task_id = data.get("task_id") or data.get("taskId")
    if not task_id:
        return None

    code = payload.get("code", 200)
    if code != 200:
        return TaskUpdate(
            task_id=str(task_id),
            status=TaskStatus.FAILED,
            error=payload.get("msg") or f"Suno callback code {code}",
            source="callback",
        )

    if is_poll_shaped(payload):
        return normalize_poll(str(task_id), payload, kind, source="callback")

    callback_type = str(data.get("callbackType") or "").lower()
    status = _CALLBACK_STATUS_MAP.get(callback_type)
    if status is None:
        logger.warning(f"Unrecognized Suno callbackType {callback_type!r} for task {task_id}")
        status = TaskStatus.PROCESSING

    error = None
    if status is TaskStatus.FAILED:
        error = payload.get("msg") or data.get("errorMessage") or "Suno reported an error"
    return TaskUpdate(
        task_id=str(task_id),
        status=status,
        artifacts=_artifacts(data.get("data"), kind),
        error=error,
        source="callback",
    )


class SunoClient(GatewayClient):
    """Async client for the Suno API box."""

    service = "suno"

    def __init__(
        self,
        cache: ExternalCallCache,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        super().__init__(
            cache,
            base_url=base_url or settings.suno_base_url,
            timeout=timeout or settings.suno_timeout,
        )
        self.api_key = api_key if api_key is not None else settings.suno_api_key
        self.model = model or settings.suno_model
        self.cache_ttl = hours(settings.suno_cache_hours)

    def default_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def check_payload(self, payload: Any, endpoint: str) -> None:
        if not isinstance(payload, dict):
            return
        code = payload.get("code")
        if code is not None and code != 200:
            raise GatewayError(
                payload.get("msg") or f"Suno returned code {code}",
                service=self.service,
                endpoint=endpoint,
                status_code=code if isinstance(code, int) else None,
                response_payload=payload,
            )

    async def generate_music(
        self,
        *,
        prompt: str,
        callback_url: str,
        style: Optional[str] = None,
        title: Optional[str] = None,
        custom_mode: bool = True,
        instrumental: bool = False,
        model: Optional[str] = None,
    ) -> str:
        """Submit an audio task; returns Suno's task id."""
        validate_generate_request(
            prompt=prompt,
            callback_url=callback_url,
            style=style,
            title=title,
            custom_mode=custom_mode,
            instrumental=instrumental,
        )
        body: dict[str, Any] = {
            "prompt": prompt or "",
            "customMode": custom_mode,
            "instrumental": instrumental,
            "model": model or self.model,
            "callBackUrl": callback_url,
        }
        if custom_mode:
            body["style"] = style
            body["title"] = title

        result = await self.request(
            "POST",
            "/generate",
            json_body=body,
            cache_ttl=self.cache_ttl,
            validate=lambda payload: _extract_task_id(payload, "/generate"),
        )
        task_id = _extract_task_id(result, "/generate")
        logger.info(f"🎵 Suno audio task submitted: {task_id}")
        return task_id

    async def generate_lyrics(self, *, prompt: str, callback_url: str) -> str:
        """Submit a lyrics task; returns Suno's task id."""
        if not prompt:
            raise InvalidRequestError("Missing parameter: prompt")
        if not callback_url:
            raise InvalidRequestError("Missing parameter: callback_url")
        if len(prompt) > MAX_CUSTOM_PROMPT_CHARS:
            raise InvalidRequestError(f"Prompt exceeds {MAX_CUSTOM_PROMPT_CHARS} characters")
        result = await self.request(
            "POST",
            "/lyrics",
            json_body={"prompt": prompt, "callBackUrl": callback_url},
            cache_ttl=self.cache_ttl,
            validate=lambda payload: _extract_task_id(payload, "/lyrics"),
        )
        task_id = _extract_task_id(result, "/lyrics")
        logger.info(f"📝 Suno lyrics task submitted: {task_id}")
        return task_id

    async def get_task_details(self, task_id: str) -> dict[str, Any]:
        if not task_id:
            raise InvalidRequestError("Missing parameter: task_id")
        return await self.request(
            "GET", "/generate/record-info", params={"taskId": task_id}, bypass_cache=True,
        )

    async def get_lyrics_task_details(self, task_id: str) -> dict[str, Any]:
        if not task_id:
            raise InvalidRequestError("Missing parameter: task_id")
        return await self.request(
            "GET", "/lyrics/record-info", params={"taskId": task_id}, bypass_cache=True,
        )

    async def fetch_status(self, task_id: str, kind: TaskKind) -> TaskUpdate:
        """Poll one task and normalize the answer."""
        if kind is TaskKind.LYRICS:
            body = await self.get_lyrics_task_details(task_id)
        else:
            body = await self.get_task_details(task_id)
        return normalize_poll(task_id, body, kind)

    async def get_remaining_credits(self) -> Any:
        result = await self.request("GET", "/generate/credit", bypass_cache=True)
        return result.get("data") if isinstance(result, dict) else result
