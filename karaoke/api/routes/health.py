"""Health check endpoints."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from karaoke.config import settings
from karaoke.services.container import ServiceContainer, get_container

router = APIRouter()

_TRACKED_SERVICES = ("github", "suno", "huggingface")


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Basic health check."""
    return {
        "status": "ok",
        "service": settings.app_name,
        "version": settings.app_version,
    }


@router.get("/health/usage")
async def usage(container: ServiceContainer = Depends(get_container)) -> dict[str, Any]:
    """Request counters per upstream service (accounting only)."""
    services = list(_TRACKED_SERVICES) + [container.llm.service]
    snapshots = [await container.cache.tracker.snapshot(name) for name in services]
    return {
        "services": {
            s.service: {
                "limit": s.limit,
                "used": s.used,
                "remaining": s.remaining,
                "resetAt": s.reset_at.isoformat(),
            }
            for s in snapshots
        }
    }
