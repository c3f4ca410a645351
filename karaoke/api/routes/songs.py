"""
Song generation endpoints.

POST /songs starts the pipeline and returns as soon as the audio task is
submitted. Suno reports progress to the two callback endpoints; clients
can also ask for a task's state, optionally forcing a poll first.
"""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from karaoke.config import DEFAULT_MUSIC_STYLES, settings
from karaoke.core.task_state import TaskKind
from karaoke.errors import (
    GatewayError,
    InvalidRequestError,
    KaraokeError,
    NoCommitsFoundError,
    PipelineError,
    TaskNotFoundError,
)
from karaoke.models.requests import GenerateSongRequest
from karaoke.models.responses import CallbackAck, SongHandleResponse, TaskStatusResponse
from karaoke.services.container import ServiceContainer, get_container

router = APIRouter()
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)


def _http_error(exc: KaraokeError) -> HTTPException:
    if isinstance(exc, InvalidRequestError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (NoCommitsFoundError, TaskNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (PipelineError, GatewayError)):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@router.post("/songs", response_model=SongHandleResponse, response_model_by_alias=True)
@limiter.limit(settings.song_rate_limit)
async def generate_song(
    request: Request,
    body: GenerateSongRequest,
    container: ServiceContainer = Depends(get_container),
) -> SongHandleResponse:
    """Turn a repository's recent commits into a submitted song task."""
    try:
        handle = await container.orchestrator.generate(body.to_song_request())
    except KaraokeError as e:
        logger.warning(f"Song generation for {body.repo_url} failed: {e}")
        raise _http_error(e) from e
    return SongHandleResponse.model_validate(handle)


@router.get("/songs/styles")
async def list_styles() -> dict[str, list[str]]:
    return {"styles": DEFAULT_MUSIC_STYLES}


@router.get("/songs/tasks/{task_id}", response_model=TaskStatusResponse, response_model_by_alias=True)
async def get_task(
    task_id: str,
    refresh: bool = False,
    container: ServiceContainer = Depends(get_container),
) -> TaskStatusResponse:
    """Locally known state of a task; ``refresh=true`` polls Suno first."""
    try:
        if refresh:
            task = await container.reconciler.poll(task_id)
        else:
            task = await container.reconciler.get(task_id)
    except KaraokeError as e:
        raise _http_error(e) from e

    response = TaskStatusResponse.model_validate(task.to_dict())
    song = await container.song_store.get_song_by_task(task_id)
    if song is not None:
        response.song_title = song.title
    return response


async def _ack(container: ServiceContainer, payload: Any, kind: TaskKind) -> CallbackAck:
    if not isinstance(payload, dict):
        logger.warning(f"Ignoring malformed {kind.value} callback body")
        return CallbackAck(status="ignored")
    task = await container.reconciler.handle_callback(payload, kind)
    if task is None:
        return CallbackAck(status="ignored")
    return CallbackAck(status="ok", task_id=task.external_task_id, task_status=task.status.value)


@router.post("/songs/callback", response_model=CallbackAck, response_model_by_alias=True)
async def audio_callback(
    payload: Any = Body(...),
    container: ServiceContainer = Depends(get_container),
) -> CallbackAck:
    """Suno webhook for audio tasks. Unknown or duplicate deliveries are acknowledged."""
    return await _ack(container, payload, TaskKind.AUDIO)


@router.post("/songs/callback/lyrics", response_model=CallbackAck, response_model_by_alias=True)
async def lyrics_callback(
    payload: Any = Body(...),
    container: ServiceContainer = Depends(get_container),
) -> CallbackAck:
    """Suno webhook for lyrics tasks."""
    return await _ack(container, payload, TaskKind.LYRICS)
