"""karaoke: command-line entry point.

Usage::

    karaoke generate https://github.com/octocat/Hello-World --window week --style Synthwave
    karaoke generate https://github.com/octocat/Hello-World --wait
    karaoke status 3f9c1e...

``generate`` runs the same pipeline as ``POST /api/v1/songs``; with
``--wait`` it then polls the audio task until Suno finishes.
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, AsyncIterator, Optional

import typer

from karaoke.core.orchestrator import SongRequest, WindowKind
from karaoke.db import close_db, get_session_factory, init_db
from karaoke.errors import (
    InvalidRequestError,
    KaraokeError,
    NoCommitsFoundError,
    TaskFailedError,
    TaskNotFoundError,
    TaskTimeoutError,
)
from karaoke.services.container import ServiceContainer, build_container

logger = logging.getLogger(__name__)


class ExitCode(enum.IntEnum):
    """Standardised CLI exit codes.

    0 - success
    1 - user error (bad arguments, invalid input)
    2 - nothing to do (no commits, unknown task)
    3 - upstream or internal error
    4 - task failed or timed out
    """

    SUCCESS = 0
    USER_ERROR = 1
    NOT_FOUND = 2
    INTERNAL_ERROR = 3
    TASK_FAILED = 4


cli = typer.Typer(
    name="karaoke",
    help="Commit Karaoke: turn a repository's recent commits into a song.",
    no_args_is_help=True,
)


@asynccontextmanager
async def open_container() -> AsyncIterator[ServiceContainer]:
    """Database + services for one CLI invocation."""
    await init_db()
    container = build_container(get_session_factory())
    try:
        yield container
    finally:
        await container.close()
        await close_db()


def _exit_code_for(exc: Exception) -> ExitCode:
    if isinstance(exc, InvalidRequestError):
        return ExitCode.USER_ERROR
    if isinstance(exc, (NoCommitsFoundError, TaskNotFoundError)):
        return ExitCode.NOT_FOUND
    if isinstance(exc, (TaskFailedError, TaskTimeoutError)):
        return ExitCode.TASK_FAILED
    return ExitCode.INTERNAL_ERROR


def _run(coro_factory, label: str) -> None:
    try:
        asyncio.run(coro_factory())
    except typer.Exit:
        raise
    except KaraokeError as exc:
        typer.echo(f"❌ {label} failed: {exc}")
        raise typer.Exit(code=_exit_code_for(exc))
    except Exception as exc:
        typer.echo(f"❌ {label} failed: {exc}")
        logger.error("❌ %s error: %s", label, exc, exc_info=True)
        raise typer.Exit(code=ExitCode.INTERNAL_ERROR)


@cli.command("generate", help="Generate a song from a repository's commits.")
def generate(
    repo_url: Annotated[str, typer.Argument(help="https://github.com/{owner}/{repo}")],
    window: Annotated[WindowKind, typer.Option("--window", help="Commit window.")] = WindowKind.LAST_ACTIVITY,
    start: Annotated[Optional[datetime], typer.Option("--start", help="Custom window start (ISO date).")] = None,
    end: Annotated[Optional[datetime], typer.Option("--end", help="Custom window end (ISO date).")] = None,
    style: Annotated[str, typer.Option("--style", help="Music style passed to Suno.")] = "Rock",
    instrumental: Annotated[bool, typer.Option("--instrumental", help="Skip lyrics.")] = False,
    wait: Annotated[bool, typer.Option("--wait", help="Poll until the audio task finishes.")] = False,
) -> None:
    request = SongRequest(
        repo_url=repo_url,
        window=window,
        style=style,
        instrumental=instrumental,
        start=start,
        end=end,
    )

    async def _generate() -> None:
        async with open_container() as container:
            handle = await container.orchestrator.generate(request)
            typer.echo(f"🎵 {handle.title}  [{handle.repository}, {handle.commit_count} commits]")
            typer.echo(f"   task: {handle.task_id}")
            for warning in handle.warnings:
                typer.echo(f"   ⚠️ {warning}")
            if not wait:
                return
            task = await container.reconciler.wait_for_completion(handle.task_id)
            for ref in task.result_refs:
                typer.echo(f"   🔊 {ref.title or ref.artifact_id}: {ref.stored_url or ref.source_url}")

    _run(_generate, "karaoke generate")


@cli.command("status", help="Show a generation task's state.")
def status(
    task_id: Annotated[str, typer.Argument(help="Suno task id.")],
    refresh: Annotated[bool, typer.Option("--refresh", help="Poll Suno before reporting.")] = False,
) -> None:
    async def _status() -> None:
        async with open_container() as container:
            if refresh:
                task = await container.reconciler.poll(task_id)
            else:
                task = await container.reconciler.get(task_id)
            typer.echo(json.dumps(task.to_dict(), indent=2))

    _run(_status, "karaoke status")


@cli.command("credits", help="Show remaining Suno credits.")
def credits() -> None:
    async def _credits() -> None:
        async with open_container() as container:
            remaining = await container.suno.get_remaining_credits()
            typer.echo(f"🎫 Suno credits remaining: {remaining}")

    _run(_credits, "karaoke credits")


if __name__ == "__main__":
    cli()
