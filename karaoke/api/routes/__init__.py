"""API route modules."""
from __future__ import annotations

from karaoke.api.routes import health, songs

__all__ = ["health", "songs"]
