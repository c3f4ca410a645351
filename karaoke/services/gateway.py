"""
Base class for cached upstream API clients.

A ``GatewayClient`` owns one long-lived ``httpx.AsyncClient`` and routes
every request through the shared ``ExternalCallCache``. Subclasses set
``service``, supply default headers, and may reject successful-looking
bodies in ``check_payload``. A per-request ``validate`` callable does the
same for one endpoint's shape; both run before the response is recorded,
so an unusable body is stored as a failed call and never served from cache.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Callable, Mapping, Optional

import httpx

from karaoke.contracts.fingerprint import request_fingerprint
from karaoke.errors import GatewayError
from karaoke.services.call_cache import ExternalCallCache, LiveResponse

logger = logging.getLogger(__name__)

_CONNECTION_LIMITS = httpx.Limits(
    max_connections=20,
    max_keepalive_connections=10,
    keepalive_expiry=30.0,
)


def hours(value: Optional[float]) -> Optional[timedelta]:
    """Settings express TTLs in hours; ``None`` or ``<= 0`` means no expiry."""
    if value is None or value <= 0:
        return None
    return timedelta(hours=value)


class GatewayClient:
    """Cached, fingerprinted access to one upstream HTTP API."""

    service: str = "generic"

    def __init__(
        self,
        cache: ExternalCallCache,
        *,
        base_url: str,
        timeout: float = 30.0,
    ) -> None:
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    def default_headers(self) -> dict[str, str]:
        return {}

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    connect=5.0,
                    read=float(self.timeout),
                    write=30.0,
                    pool=5.0,
                ),
                limits=_CONNECTION_LIMITS,
                headers=self.default_headers(),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def url_for(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def check_payload(self, payload: Any, endpoint: str) -> None:
        """Raise ``GatewayError`` for a 2xx body that still signals failure."""

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json_body: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        cache_ttl: Optional[timedelta] = None,
        bypass_cache: bool = False,
        count_usage: bool = True,
        as_text: bool = False,
        variant: Optional[str] = None,
        validate: Optional[Callable[[Any], Any]] = None,
    ) -> Any:
        """Perform one fingerprinted request through the call cache.

        ``variant`` distinguishes requests that share a URL but not a
        representation (e.g. a commit's JSON detail and its raw diff).
        ``validate`` runs on the decoded body inside the live call and
        raises ``GatewayError`` to reject it.
        """
        method = method.upper()
        fingerprint_params: dict[str, Any] = {}
        if params:
            fingerprint_params["query"] = dict(params)
        if json_body is not None:
            fingerprint_params["body"] = json_body
        if variant:
            fingerprint_params["variant"] = variant

        fingerprint = request_fingerprint(self.service, method, path, fingerprint_params)
        url = self.url_for(path)

        async def live_call() -> LiveResponse:
            try:
                response = await self.client.request(
                    method,
                    url,
                    params=dict(params) if params else None,
                    json=json_body,
                    headers=dict(headers) if headers else None,
                )
            except httpx.HTTPError as e:
                raise GatewayError(
                    f"{type(e).__name__}: {e}",
                    service=self.service,
                    endpoint=path,
                ) from e

            if response.status_code >= 400:
                raise GatewayError(
                    f"HTTP {response.status_code}: {response.text[:500]}",
                    service=self.service,
                    endpoint=path,
                    status_code=response.status_code,
                    response_payload=_safe_body(response),
                )

            if as_text:
                payload: Any = response.text
            else:
                try:
                    payload = response.json()
                except ValueError as e:
                    raise GatewayError(
                        f"Invalid JSON body: {e}",
                        service=self.service,
                        endpoint=path,
                        status_code=response.status_code,
                    ) from e
                self.check_payload(payload, path)
            if validate is not None:
                validate(payload)

            return LiveResponse(
                payload=payload,
                status_code=response.status_code,
                headers=dict(response.headers),
            )

        return await self.cache.fetch_or_call(
            fingerprint,
            live_call,
            service=self.service,
            endpoint=path,
            method=method,
            request_payload=fingerprint_params or None,
            cache_ttl=cache_ttl,
            bypass_cache=bypass_cache,
            count_usage=count_usage,
        )


def _safe_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:2000]
