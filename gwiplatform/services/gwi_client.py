from __future__ import annotations

from dataclasses import dataclass
import logging
import time

import httpx

from gwiplatform.core.config import get_settings
from gwiplatform.core.errors import UpstreamUnavailableError


logger = logging.getLogger(__name__)

# Only these response headers are relayed back to portal callers.
_PASSTHROUGH_HEADERS = ("content-type", "cache-control", "etag")


@dataclass(frozen=True)
class UpstreamResponse:
    status_code: int
    content: bytes
    headers: dict[str, str]


class GWIDataClient:
    """Forward GWI portal data requests to the upstream analytics API unchanged."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    def _url(self, path: str) -> str:
        segments = [segment for segment in path.split("/") if segment]
        if any(segment in {".", ".."} for segment in segments):
            raise ValueError("Path traversal is not allowed")
        return f"{self._settings.gwi_api_base_url.rstrip('/')}/{'/'.join(segments)}"

    async def forward(self, path: str, params: list[tuple[str, str]] | None = None) -> UpstreamResponse:
        headers = {"Accept": "application/json"}
        if self._settings.gwi_api_key:
            headers["Authorization"] = f"Bearer {self._settings.gwi_api_key}"
        url = self._url(path)
        start = time.monotonic()
        try:
            response = await self._get_client().get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning(
                "gwi_upstream_unavailable path=%s latency_ms=%.1f",
                path,
                (time.monotonic() - start) * 1000.0,
                exc_info=exc,
            )
            raise UpstreamUnavailableError("Upstream data API is unavailable") from exc
        logger.info(
            "gwi_upstream_call path=%s status=%s latency_ms=%.1f",
            path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
        )
        relayed = {
            name: response.headers[name]
            for name in _PASSTHROUGH_HEADERS
            if name in response.headers
        }
        return UpstreamResponse(
            status_code=response.status_code,
            content=response.content,
            headers=relayed,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


_client: GWIDataClient | None = None


def get_gwi_client() -> GWIDataClient:
    # FastAPI dependency; tests override it with a client on a mock transport.
    global _client
    if _client is None:
        _client = GWIDataClient()
    return _client


async def close_gwi_client() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
