"""Bounded image retrieval from the URL-addressable media store.

Every fetch carries a timeout and a byte ceiling.  Anything that is not a
successful image response (transport error, timeout, non-2xx status, non-image
content type, oversized payload) is raised as SignalUnavailable so the visual
stage can skip that single image and move on.
"""

from __future__ import annotations

import logging

import httpx

from listingmatch.errors import SignalUnavailable

logger = logging.getLogger(__name__)


class MediaFetcher:
    """Fetch image bytes over HTTP with an explicit timeout and size limit.

    Args:
        timeout_seconds: Total timeout applied to each request.
        max_bytes:       Payloads larger than this are rejected.
        client:          Optional shared httpx.AsyncClient.  When omitted the
                         fetcher owns one and closes it in ``aclose``.
    """

    def __init__(
        self,
        timeout_seconds: float = 10.0,
        max_bytes: int = 10 * 1024 * 1024,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._max_bytes = max_bytes
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout_seconds,
            follow_redirects=True,
        )

    async def fetch(self, url: str) -> bytes:
        """Return the image bytes at *url*.

        Raises:
            SignalUnavailable: On any failure; the message names the cause.
        """
        try:
            async with self._client.stream("GET", url) as response:
                if response.status_code >= 400:
                    raise SignalUnavailable(f"HTTP {response.status_code} for {url}")

                content_type = response.headers.get("content-type", "")
                if not content_type.lower().startswith("image/"):
                    raise SignalUnavailable(f"non-image content type {content_type!r} for {url}")

                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > self._max_bytes:
                    raise SignalUnavailable(f"payload of {declared} bytes exceeds limit for {url}")

                chunks: list[bytes] = []
                received = 0
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received > self._max_bytes:
                        raise SignalUnavailable(f"payload exceeds {self._max_bytes} bytes for {url}")
                    chunks.append(chunk)
        except httpx.TimeoutException as exc:
            raise SignalUnavailable(f"timed out fetching {url}") from exc
        except httpx.HTTPError as exc:
            raise SignalUnavailable(f"failed to fetch {url}: {exc}") from exc

        logger.debug("Fetched %d bytes from %s", received, url)
        return b"".join(chunks)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
