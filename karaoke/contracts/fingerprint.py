"""Deterministic request fingerprints for the external call cache.

Rules:
  - The fingerprint covers service, HTTP method, endpoint and parameters.
  - Serialization is canonical: sorted keys, no whitespace, json.dumps.
  - Dict key order never matters; list order does.
  - Hash is full SHA-256 hex (64 chars). No MD5, no pickle, no repr().
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any


def _normalize_value(value: Any) -> Any:
    """Recursively normalize a value for canonical serialization."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _normalize_value(dataclasses.asdict(value))
    if isinstance(value, Mapping):
        return {str(k): _normalize_value(v) for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))}
    if isinstance(value, (list, tuple)):
        return [_normalize_value(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (int, float, str, bool, type(None))):
        return value
    return str(value)


def canonical_request(
    service: str,
    method: str,
    endpoint: str,
    params: Any = None,
) -> str:
    """Return the canonical JSON string that a fingerprint is computed over."""
    body = {
        "service": service,
        "method": method.upper(),
        "endpoint": endpoint,
        "params": _normalize_value(params if params is not None else {}),
    }
    return json.dumps(body, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


def request_fingerprint(
    service: str,
    method: str,
    endpoint: str,
    params: Any = None,
) -> str:
    """Compute the cache key for one logical upstream request.

    ``None`` params and ``{}`` are equivalent.
    """
    serialized = canonical_request(service, method, endpoint, params)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()
