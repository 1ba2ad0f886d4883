"""Visual signal: difference-hash fingerprints compared by Hamming distance.

For each image URL on a record the stage resolves a fingerprint in this order:

  1. the hash store entry for (record id, url);
  2. any stored entry for the same url (hashes are content-addressed by url,
     so it is copied under the new record id instead of re-fetching);
  3. fetch, then decode and hash in a worker thread, then upsert into the store.

Any failure in step 3 skips that one image and is counted in the HashCache.

Hash store writes are upserts.  Identical bytes always yield an identical
fingerprint, so last-write-wins under concurrent scans is correct.

A pair's visual score is the best ``1 - hamming / length`` over the cross
product of both records' fingerprints.  No images, or every fetch failing,
gives 0 ("no evidence"); the aggregator does not renormalize it away.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

from listingmatch.dedup.records import PropertyRecord
from listingmatch.errors import SignalUnavailable
from listingmatch.media.decoder import ImageDecoder
from listingmatch.media.fetcher import MediaFetcher

logger = logging.getLogger(__name__)

DEFAULT_GRID_SIZE = 16


class ImageHashStore(Protocol):
    """Persistence the visual stage needs for its fingerprint cache."""

    async def get_image_hash(self, record_id: str, media_url: str) -> str | None: ...

    async def find_image_hash(self, media_url: str) -> str | None: ...

    async def save_image_hash(self, record_id: str, media_url: str, hash_value: str) -> None: ...


def difference_hash(data: bytes, decoder: ImageDecoder, grid_size: int = DEFAULT_GRID_SIZE) -> str:
    """Row-wise difference hash of encoded image bytes.

    The image is resized to ``grid_size`` x ``grid_size``, converted to
    grayscale, and each pixel is compared with its right-hand neighbour:
    '1' when it is brighter, '0' otherwise.  The result is a string of
    ``grid_size * (grid_size - 1)`` bits (240 for the default 16 grid).

    Raises:
        SignalUnavailable: The decoder could not handle the bytes, or the
            decoder returned a pixel buffer of the wrong size.
    """
    image = decoder.decode(data)
    image = decoder.grayscale(decoder.resize(image, grid_size, grid_size))
    pixels = decoder.raw_pixels(image)
    if len(pixels) != grid_size * grid_size:
        raise SignalUnavailable(
            f"decoder returned {len(pixels)} pixels for a {grid_size}x{grid_size} grid"
        )

    bits: list[str] = []
    for row in range(grid_size):
        offset = row * grid_size
        for col in range(grid_size - 1):
            bits.append("1" if pixels[offset + col] > pixels[offset + col + 1] else "0")
    return "".join(bits)


def hamming_similarity(hash_a: str, hash_b: str) -> float:
    """``1 - hamming / length`` for two equal-length bit strings, else 0."""
    if not hash_a or len(hash_a) != len(hash_b):
        return 0.0
    distance = sum(1 for x, y in zip(hash_a, hash_b) if x != y)
    return 1.0 - distance / len(hash_a)


@dataclass
class HashCache:
    """Per-cycle fingerprint state for one scan or evaluation."""

    by_record: dict[str, list[str]] = field(default_factory=dict)
    by_url: dict[str, str] = field(default_factory=dict)
    failed_urls: set[str] = field(default_factory=set)

    @property
    def failures(self) -> int:
        return len(self.failed_urls)


class VisualScorer:
    """Resolves image fingerprints through the hash store and scores pairs.

    Args:
        fetcher:       MediaFetcher used on a cache miss.
        decoder:       ImageDecoder used for hashing.
        store:         ImageHashStore (normally the DetectionRepository).
        grid_size:     Hash grid edge length; fixed for the whole deployment
                       so stored fingerprints are always comparable.
        max_in_flight: Concurrent fetches allowed at once.
    """

    def __init__(
        self,
        fetcher: MediaFetcher,
        decoder: ImageDecoder,
        store: ImageHashStore,
        grid_size: int = DEFAULT_GRID_SIZE,
        max_in_flight: int = 4,
    ) -> None:
        self._fetcher = fetcher
        self._decoder = decoder
        self._store = store
        self._grid_size = grid_size
        self._max_in_flight = max(1, max_in_flight)

    @property
    def hash_length(self) -> int:
        return self._grid_size * (self._grid_size - 1)

    async def ensure_hashes(self, records: list[PropertyRecord], cache: HashCache) -> HashCache:
        """Resolve fingerprints for every image of every record not yet in *cache*."""
        semaphore = asyncio.Semaphore(self._max_in_flight)
        url_locks: dict[str, asyncio.Lock] = {}

        async def _one(record: PropertyRecord, url: str) -> str | None:
            lock = url_locks.setdefault(url, asyncio.Lock())
            async with lock:
                async with semaphore:
                    return await self._resolve(record.id, url, cache)

        pending = [r for r in records if r.id not in cache.by_record]
        jobs = [
            (record, url)
            for record in pending
            for url in dict.fromkeys(u for u in record.image_urls if u)
        ]
        hashes = await asyncio.gather(*(_one(record, url) for record, url in jobs))

        for record in pending:
            cache.by_record[record.id] = []
        for (record, _url), fingerprint in zip(jobs, hashes):
            if fingerprint:
                cache.by_record[record.id].append(fingerprint)
        return cache

    async def _resolve(self, record_id: str, url: str, cache: HashCache) -> str | None:
        if url in cache.failed_urls:
            return None

        stored = await self._store.get_image_hash(record_id, url)
        if stored and len(stored) == self.hash_length:
            cache.by_url[url] = stored
            return stored

        known = cache.by_url.get(url) or await self._store.find_image_hash(url)
        if known and len(known) == self.hash_length:
            logger.debug("Reusing fingerprint of %s for record %s", url, record_id)
            cache.by_url[url] = known
            await self._store.save_image_hash(record_id, url, known)
            return known

        try:
            data = await self._fetcher.fetch(url)
            fingerprint = await asyncio.to_thread(
                difference_hash, data, self._decoder, self._grid_size
            )
        except SignalUnavailable as exc:
            cache.failed_urls.add(url)
            logger.warning("Skipping image for record %s: %s", record_id, exc.message)
            return None
        except Exception as exc:
            # Decoder backends raise their own error types; one bad image never aborts the batch
            cache.failed_urls.add(url)
            logger.warning("Skipping image for record %s: %s: %s", record_id, type(exc).__name__, exc)
            return None

        cache.by_url[url] = fingerprint
        await self._store.save_image_hash(record_id, url, fingerprint)
        return fingerprint

    def score(self, record_a: PropertyRecord, record_b: PropertyRecord, cache: HashCache) -> float:
        """Best fingerprint similarity across both records' images, 0 with no evidence."""
        hashes_a = cache.by_record.get(record_a.id, [])
        hashes_b = cache.by_record.get(record_b.id, [])
        best = 0.0
        for hash_a in hashes_a:
            for hash_b in hashes_b:
                best = max(best, hamming_similarity(hash_a, hash_b))
                if best == 1.0:
                    return best
        return best
