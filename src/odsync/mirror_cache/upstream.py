"""Outbound fetches against the origin mirror."""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional
from urllib.parse import quote

import httpx
import structlog

from .cancellation import CancellationToken
from .errors import UpstreamNotFound, UpstreamTransientError


LOGGER = structlog.get_logger("odsync.mirror_cache.upstream")

_PATH_SAFE = "/:@!$&'()*+,;="


@dataclass
class UpstreamObject:
    """An open origin response whose body has not been consumed yet."""

    url: str
    expected_length: Optional[int]
    response: httpx.Response
    chunk_size: int

    async def chunks(self, token: Optional[CancellationToken] = None) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.response.aiter_bytes(self.chunk_size):
                if token is not None:
                    token.raise_if_cancelled()
                yield chunk
        except httpx.HTTPError as exc:
            raise UpstreamTransientError(f"transfer from {self.url} failed: {exc}") from exc


def expected_length_of(response: httpx.Response) -> Optional[int]:
    """Content-Length is only trusted for positive, identity-encoded bodies."""
    encoding = response.headers.get("content-encoding", "identity").strip().lower()
    if encoding not in ("", "identity"):
        return None
    raw = response.headers.get("content-length")
    if raw is None:
        return None
    try:
        length = int(raw)
    except ValueError:
        return None
    return length if length > 0 else None


class UpstreamFetcher:
    def __init__(self, client: httpx.AsyncClient, base_url: str, chunk_size: int = 1024 * 1024) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._chunk_size = chunk_size

    @property
    def base_url(self) -> str:
        return self._base_url

    def url_for(self, key: str) -> str:
        return f"{self._base_url}/{quote(key.lstrip('/'), safe=_PATH_SAFE)}"

    @asynccontextmanager
    async def fetch(self, key: str, token: Optional[CancellationToken] = None) -> AsyncIterator[UpstreamObject]:
        """Open ``key`` on the origin.

        Raises :class:`UpstreamNotFound` on 404 and
        :class:`UpstreamTransientError` on any other non-200 status or
        transport failure. Nothing is retried here.
        """
        if token is not None:
            token.raise_if_cancelled()
        url = self.url_for(key)
        request = self._client.build_request("GET", url, headers={"Accept-Encoding": "identity"})
        try:
            response = await self._client.send(request, stream=True, follow_redirects=True)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise UpstreamTransientError(f"fetch error for {url}: {exc}") from exc

        try:
            if response.status_code == httpx.codes.NOT_FOUND:
                raise UpstreamNotFound(f"upstream file not found: {url}")
            if response.status_code != httpx.codes.OK:
                raise UpstreamTransientError(f"upstream returned status {response.status_code} for {url}")
            LOGGER.debug("upstream_response", url=url, content_length=response.headers.get("content-length"))
            yield UpstreamObject(
                url=url,
                expected_length=expected_length_of(response),
                response=response,
                chunk_size=self._chunk_size,
            )
        finally:
            await response.aclose()
