"""Fetching the raw bytes behind an image reference."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Protocol
from urllib.parse import unquote, urlsplit

import httpx

from snaplabel.errors import FetchError

if TYPE_CHECKING:
    from snaplabel.config import Settings

logger = logging.getLogger(__name__)


class ByteFetcher(Protocol):
    """Protocol for resolving an image URI to its bytes."""

    async def fetch_bytes(self, uri: str) -> bytes: ...


class HttpByteFetcher:
    """Fetches ``http(s)://`` URIs with httpx and reads ``file://`` URIs from disk."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._max_size = settings.max_file_size
        self._client = client or httpx.AsyncClient(timeout=settings.fetch_timeout, follow_redirects=True)
        self._owns_client = client is None

    async def fetch_bytes(self, uri: str) -> bytes:
        """Return the bytes at ``uri``.

        Raises:
            FetchError: On a malformed URI, an unsupported scheme, a network or
                IO fault, or a body larger than ``max_file_size``.
        """
        try:
            parts = urlsplit(uri)
        except ValueError as exc:
            raise FetchError(f"Malformed URI {uri!r}: {exc}") from exc

        scheme = parts.scheme.lower()
        if scheme in ("http", "https"):
            data = await self._fetch_http(uri)
        elif scheme == "file":
            data = await self._fetch_file(Path(unquote(parts.path)))
        else:
            raise FetchError(f"Unsupported URI scheme: {scheme or '(none)'}")

        logger.debug("Fetched %d bytes from %s", len(data), uri)
        return data

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _fetch_http(self, uri: str) -> bytes:
        body = bytearray()
        try:
            async with self._client.stream("GET", uri) as response:
                response.raise_for_status()
                declared = response.headers.get("content-length")
                if declared is not None and declared.isdigit():
                    self._check_size(uri, int(declared))
                async for chunk in response.aiter_bytes():
                    body.extend(chunk)
                    self._check_size(uri, len(body))
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise FetchError(f"Fetching {uri} failed: {exc}") from exc
        return bytes(body)

    async def _fetch_file(self, path: Path) -> bytes:
        try:
            size = path.stat().st_size
            self._check_size(str(path), size)
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise FetchError(f"Reading {path} failed: {exc}") from exc

    def _check_size(self, source: str, size: int) -> None:
        if size > self._max_size:
            raise FetchError(f"{source} is over the limit of {self._max_size} bytes")
