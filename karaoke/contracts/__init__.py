"""Typed contracts shared across services."""
from __future__ import annotations

from karaoke.contracts.fingerprint import canonical_request, request_fingerprint

__all__ = ["canonical_request", "request_fingerprint"]
