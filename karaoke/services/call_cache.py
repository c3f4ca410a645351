"""
External call cache and rate-limit accounting.

Every upstream request goes through ``ExternalCallCache.fetch_or_call``:

    fingerprint ──► lookup ──hit──► stored response (no live call, no counter)
                      │
                     miss
                      ▼
                  live_call() ──ok──► upsert(succeeded) ──► RateLimitTracker.record
                      │
                    error ──► upsert(failed, expires_at=None) ──► GatewayError

Failed rows never satisfy a lookup, so a failed fingerprint is retried on
every call. Bookkeeping failures (store unavailable) are logged and
swallowed: the cache must never break the request it is caching.

Concurrent identical requests inside one process share a single live call
(one ``asyncio.Lock`` per fingerprint).
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from karaoke.core.keyed_lock import KeyedLock
from karaoke.db.models import CachedCallRow, RateLimitCounterRow, as_utc
from karaoke.errors import GatewayError, InvalidRequestError

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_LIMITS: dict[str, int] = {"github": 5000}
DEFAULT_LIMIT = 1000
DEFAULT_WINDOW = timedelta(hours=1)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LiveResponse:
    """What a live upstream call hands back to the cache."""
    payload: Any
    status_code: int = 200
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass
class CachedCall:
    """One recorded upstream attempt, keyed by fingerprint."""
    fingerprint: str
    service: str
    endpoint: str
    method: str
    request_payload: Any = None
    response_payload: Any = None
    status_code: Optional[int] = None
    succeeded: bool = False
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    created_at: datetime = field(default_factory=_utc_now)
    responded_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    def is_hit(self, now: datetime) -> bool:
        """A row satisfies a lookup only if it succeeded and has not expired."""
        if not self.succeeded:
            return False
        return self.expires_at is None or self.expires_at > now


@dataclass
class RateLimitSnapshot:
    """Point-in-time view of a service's request counter."""
    service: str
    limit: int
    used: int
    reset_at: datetime
    active: bool = True

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)


class CallStore(Protocol):
    """Persistence for cached calls and rate-limit counters."""

    async def get_call(self, fingerprint: str) -> Optional[CachedCall]: ...

    async def upsert_call(self, call: CachedCall) -> None: ...

    async def get_counter(self, service: str) -> Optional[RateLimitSnapshot]: ...

    async def save_counter(self, counter: RateLimitSnapshot) -> None: ...


class InMemoryCallStore:
    """Dict-backed store for tests and dry runs."""

    def __init__(self) -> None:
        self.calls: dict[str, CachedCall] = {}
        self.counters: dict[str, RateLimitSnapshot] = {}

    async def get_call(self, fingerprint: str) -> Optional[CachedCall]:
        call = self.calls.get(fingerprint)
        return replace(call) if call is not None else None

    async def upsert_call(self, call: CachedCall) -> None:
        existing = self.calls.get(call.fingerprint)
        if existing is not None:
            call = replace(call, created_at=existing.created_at)
        self.calls[call.fingerprint] = replace(call)

    async def get_counter(self, service: str) -> Optional[RateLimitSnapshot]:
        counter = self.counters.get(service)
        return replace(counter) if counter is not None else None

    async def save_counter(self, counter: RateLimitSnapshot) -> None:
        self.counters[counter.service] = replace(counter)


class SqlCallStore:
    """Async SQLAlchemy store over the ``api_calls`` and ``api_limits`` tables.

    Opens one short session per operation so it can be shared by any number
    of concurrent requests.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_call(self, fingerprint: str) -> Optional[CachedCall]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CachedCallRow).where(CachedCallRow.fingerprint == fingerprint)
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return CachedCall(
                fingerprint=row.fingerprint,
                service=row.service,
                endpoint=row.endpoint,
                method=row.method,
                request_payload=row.request_payload,
                response_payload=row.response_payload,
                status_code=row.status_code,
                succeeded=row.succeeded,
                error_message=row.error_message,
                duration_ms=row.duration_ms,
                created_at=as_utc(row.created_at) or _utc_now(),
                responded_at=as_utc(row.responded_at),
                expires_at=as_utc(row.expires_at),
            )

    async def upsert_call(self, call: CachedCall) -> None:
        try:
            await self._write_call(call)
        except IntegrityError:
            # Another process inserted this fingerprint first; update its row.
            logger.debug(f"Concurrent insert of {call.fingerprint[:12]}, retrying as update")
            await self._write_call(call)

    async def _write_call(self, call: CachedCall) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CachedCallRow).where(CachedCallRow.fingerprint == call.fingerprint)
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = CachedCallRow(fingerprint=call.fingerprint, created_at=call.created_at)
                session.add(row)
            row.service = call.service
            row.endpoint = call.endpoint
            row.method = call.method
            row.request_payload = call.request_payload
            row.response_payload = call.response_payload
            row.status_code = call.status_code
            row.succeeded = call.succeeded
            row.error_message = call.error_message
            row.duration_ms = call.duration_ms
            row.responded_at = call.responded_at
            row.expires_at = call.expires_at
            await session.commit()

    async def get_counter(self, service: str) -> Optional[RateLimitSnapshot]:
        async with self._session_factory() as session:
            row = await session.get(RateLimitCounterRow, service)
            if row is None:
                return None
            return RateLimitSnapshot(
                service=row.service,
                limit=row.limit,
                used=row.used,
                reset_at=as_utc(row.reset_at) or _utc_now(),
                active=row.active,
            )

    async def save_counter(self, counter: RateLimitSnapshot) -> None:
        async with self._session_factory() as session:
            row = await session.get(RateLimitCounterRow, counter.service)
            if row is None:
                row = RateLimitCounterRow(service=counter.service)
                session.add(row)
            row.limit = counter.limit
            row.used = counter.used
            row.reset_at = counter.reset_at
            row.active = counter.active
            await session.commit()


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


class RateLimitTracker:
    """
    Counts successful live calls per service.

    Accounting only: nothing here blocks a request. The counter resets
    lazily, the first time an increment lands at or after ``reset_at``.
    """

    def __init__(
        self,
        store: CallStore,
        *,
        limits: Optional[Mapping[str, int]] = None,
        window: timedelta = DEFAULT_WINDOW,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._limits = dict(DEFAULT_SERVICE_LIMITS if limits is None else limits)
        self._window = window
        self._clock = clock
        self._lock = asyncio.Lock()

    def default_limit(self, service: str) -> int:
        return self._limits.get(service, DEFAULT_LIMIT)

    async def record(
        self,
        service: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> RateLimitSnapshot:
        """Count one successful live call, adopting upstream limit headers when present."""
        now = self._clock()
        async with self._lock:
            counter = await self._store.get_counter(service)
            if counter is None:
                counter = RateLimitSnapshot(
                    service=service,
                    limit=self.default_limit(service),
                    used=1,
                    reset_at=now + self._window,
                )
            elif now >= counter.reset_at:
                counter.used = 1
                counter.reset_at = now + self._window
            else:
                counter.used += 1

            if headers:
                self._apply_headers(counter, headers)

            await self._store.save_counter(counter)

        if counter.used >= counter.limit:
            logger.warning(
                f"⚠️ {service} usage at {counter.used}/{counter.limit} "
                f"(resets {counter.reset_at.isoformat()})"
            )
        return counter

    @staticmethod
    def _apply_headers(counter: RateLimitSnapshot, headers: Mapping[str, str]) -> None:
        limit = _header(headers, "X-RateLimit-Limit")
        reset = _header(headers, "X-RateLimit-Reset")
        if limit is not None:
            try:
                counter.limit = int(limit)
            except ValueError:
                logger.debug(f"Ignoring unparseable X-RateLimit-Limit: {limit!r}")
        if reset is not None:
            try:
                counter.reset_at = datetime.fromtimestamp(int(reset), tz=timezone.utc)
            except (ValueError, OverflowError, OSError):
                logger.debug(f"Ignoring unparseable X-RateLimit-Reset: {reset!r}")

    async def snapshot(self, service: str) -> RateLimitSnapshot:
        """Current counter; a service never called reads as zero used."""
        counter = await self._store.get_counter(service)
        if counter is not None:
            return counter
        return RateLimitSnapshot(
            service=service,
            limit=self.default_limit(service),
            used=0,
            reset_at=self._clock() + self._window,
        )


LiveCall = Callable[[], Awaitable[LiveResponse]]


class ExternalCallCache:
    """Fingerprint-keyed cache in front of every upstream API."""

    def __init__(
        self,
        store: CallStore,
        tracker: Optional[RateLimitTracker] = None,
        *,
        single_flight: bool = True,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.tracker = tracker or RateLimitTracker(store, clock=clock)
        self._single_flight = single_flight
        self._clock = clock
        self._locks = KeyedLock()

    async def fetch_or_call(
        self,
        fingerprint: str,
        live_call: LiveCall,
        *,
        service: str,
        endpoint: str,
        method: str = "GET",
        request_payload: Any = None,
        cache_ttl: Optional[timedelta] = None,
        bypass_cache: bool = False,
        count_usage: bool = True,
    ) -> Any:
        """Return the cached response for ``fingerprint`` or perform ``live_call``.

        ``cache_ttl=None`` stores a non-expiring row. ``bypass_cache`` skips
        the lookup (status polls) but still records the attempt.
        """
        if not self._single_flight:
            return await self._fetch_or_call(
                fingerprint, live_call,
                service=service, endpoint=endpoint, method=method,
                request_payload=request_payload, cache_ttl=cache_ttl,
                bypass_cache=bypass_cache, count_usage=count_usage,
            )

        # The second caller re-reads the cache once the first has recorded.
        async with self._locks.hold(fingerprint):
            return await self._fetch_or_call(
                fingerprint, live_call,
                service=service, endpoint=endpoint, method=method,
                request_payload=request_payload, cache_ttl=cache_ttl,
                bypass_cache=bypass_cache, count_usage=count_usage,
            )

    async def _lookup(self, fingerprint: str) -> Optional[CachedCall]:
        try:
            cached = await self.store.get_call(fingerprint)
        except Exception as e:
            logger.warning(f"Cache lookup failed for {fingerprint[:12]}, treating as miss: {e}")
            return None
        if cached is not None and cached.is_hit(self._clock()):
            return cached
        return None

    async def _record(self, call: CachedCall) -> None:
        try:
            await self.store.upsert_call(call)
        except Exception as e:
            logger.warning(f"Failed to record {call.service} call {call.fingerprint[:12]}: {e}")

    async def _fetch_or_call(
        self,
        fingerprint: str,
        live_call: LiveCall,
        *,
        service: str,
        endpoint: str,
        method: str,
        request_payload: Any,
        cache_ttl: Optional[timedelta],
        bypass_cache: bool,
        count_usage: bool,
    ) -> Any:
        if not bypass_cache:
            cached = await self._lookup(fingerprint)
            if cached is not None:
                logger.debug(f"Cache hit: {service} {method} {endpoint}")
                return cached.response_payload

        started_at = self._clock()
        t0 = time.monotonic()
        try:
            response = await live_call()
        except InvalidRequestError:
            raise
        except Exception as exc:
            duration_ms = int((time.monotonic() - t0) * 1000)
            status_code = exc.status_code if isinstance(exc, GatewayError) else None
            payload = exc.response_payload if isinstance(exc, GatewayError) else None
            message = exc.args[0] if isinstance(exc, GatewayError) and exc.args else str(exc)
            await self._record(CachedCall(
                fingerprint=fingerprint,
                service=service,
                endpoint=endpoint,
                method=method.upper(),
                request_payload=request_payload,
                response_payload=payload,
                status_code=status_code,
                succeeded=False,
                error_message=message or type(exc).__name__,
                duration_ms=duration_ms,
                created_at=started_at,
                responded_at=self._clock(),
                expires_at=None,
            ))
            logger.error(f"❌ {service} {method.upper()} {endpoint} failed: {message or type(exc).__name__}")
            raise GatewayError(
                message or type(exc).__name__,
                service=service,
                endpoint=endpoint,
                fingerprint=fingerprint,
                status_code=status_code,
                response_payload=payload,
            ) from exc

        now = self._clock()
        await self._record(CachedCall(
            fingerprint=fingerprint,
            service=service,
            endpoint=endpoint,
            method=method.upper(),
            request_payload=request_payload,
            response_payload=response.payload,
            status_code=response.status_code,
            succeeded=True,
            duration_ms=int((time.monotonic() - t0) * 1000),
            created_at=started_at,
            responded_at=now,
            expires_at=now + cache_ttl if cache_ttl is not None else None,
        ))

        if count_usage:
            try:
                await self.tracker.record(service, response.headers)
            except Exception as e:
                logger.warning(f"Failed to update {service} usage counter: {e}")

        return response.payload
