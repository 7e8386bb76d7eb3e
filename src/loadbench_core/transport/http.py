"""
HTTP transport used by iteration functions.

Thin wrapper around one shared `httpx.AsyncClient` per run. Every request is
timed and recorded into the run's built-in HTTP metrics (`http_reqs`,
`http_req_duration`, `http_req_failed`) with the calling scenario's tags plus
`method` and `status`. Transport-level errors (connect, timeout, protocol) are
recorded as failed requests with status 0 and re-raised as TransportFailure,
which the iteration wrapper turns into a failed iteration.
"""

from __future__ import annotations

import json as _json
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

import httpx

from ..benchmarking.metrics.registry import HTTP_REQ_DURATION, HTTP_REQ_FAILED, HTTP_REQS
from ..errors import TransportFailure

if TYPE_CHECKING:  # pragma: no cover
    from ..benchmarking.metrics.registry import ScopedMetrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HttpResponse:
    method: str
    url: str
    status: int
    body: str
    duration_ms: float
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400

    def json(self) -> Any:
        """Decode the body as JSON. Raises ValueError on malformed content."""
        return _json.loads(self.body)


class HttpTransport:
    """Async HTTP client bound to a base URL."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
        max_connections: int = 1000,
        headers: Optional[Mapping[str, str]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        if client is None:
            client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(timeout),
                limits=httpx.Limits(
                    max_connections=max_connections,
                    max_keepalive_connections=max(max_connections // 2, 1),
                ),
                headers=dict(headers or {}),
            )
        self._client = client

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None,
        metrics: Optional["ScopedMetrics"] = None,
        tags: Optional[Mapping[str, Any]] = None,
    ) -> HttpResponse:
        method = method.upper()
        url = self._url(path)
        t0 = time.perf_counter()
        try:
            resp = await self._client.request(
                method, url, json=json, headers=dict(headers or {}), params=params
            )
        except httpx.HTTPError as e:
            duration_ms = (time.perf_counter() - t0) * 1000.0
            self._record(metrics, method, 0, duration_ms, tags)
            logger.debug(f"{method} {url} failed after {duration_ms:.1f}ms: {e!r}")
            raise TransportFailure(
                f"{method} {url} failed: {type(e).__name__}: {e}",
                method=method,
                url=url,
                duration_ms=duration_ms,
            ) from e
        duration_ms = (time.perf_counter() - t0) * 1000.0
        self._record(metrics, method, resp.status_code, duration_ms, tags)
        return HttpResponse(
            method=method,
            url=str(resp.request.url),
            status=resp.status_code,
            body=resp.text,
            duration_ms=duration_ms,
            headers=dict(resp.headers),
        )

    async def get(self, path: str, **kwargs: Any) -> HttpResponse:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> HttpResponse:
        return await self.request("POST", path, **kwargs)

    async def put(self, path: str, **kwargs: Any) -> HttpResponse:
        return await self.request("PUT", path, **kwargs)

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    @staticmethod
    def _record(
        metrics: Optional["ScopedMetrics"],
        method: str,
        status: int,
        duration_ms: float,
        tags: Optional[Mapping[str, Any]],
    ) -> None:
        if metrics is None:
            return
        req_tags: Dict[str, Any] = {"method": method, "status": status}
        if tags:
            req_tags.update(tags)
        metrics.add(HTTP_REQS, 1, req_tags)
        metrics.add(HTTP_REQ_DURATION, duration_ms, req_tags)
        metrics.add(HTTP_REQ_FAILED, status == 0 or status >= 400, req_tags)
