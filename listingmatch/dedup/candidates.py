"""Candidate pool selection and false-positive filtering.

Incremental evaluation compares one target record against a bounded pool:
the most recent active records, excluding the target itself, records of the
same owner, and every record already marked a false positive with the target.
The bound keeps per-event latency predictable.

A full scan instead walks every unordered pair of the active corpus once;
same-owner and known false-positive pairs are skipped there too.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import Protocol

from listingmatch.dedup.records import PropertyRecord, pair_key

SKIP_SAME_OWNER = "same_owner"
SKIP_FALSE_POSITIVE = "false_positive"


class FalsePositiveFilter:
    """In-memory view of the confirmed not-duplicate pairs.

    Loaded once per scan cycle; membership is order-independent.
    """

    def __init__(self, pairs: Iterable[tuple[str, str]] = ()) -> None:
        self._pairs: set[tuple[str, str]] = {pair_key(a, b) for a, b in pairs}

    def __len__(self) -> int:
        return len(self._pairs)

    def is_false_positive(self, record_id_a: str, record_id_b: str) -> bool:
        return pair_key(record_id_a, record_id_b) in self._pairs


class CandidateSource(Protocol):
    async def candidate_records(self, target: PropertyRecord, limit: int) -> list[PropertyRecord]: ...


class CandidatePoolSelector:
    """Bounds which existing records a target is compared against.

    Args:
        source: Anything exposing ``candidate_records`` (the repository).
        limit:  Maximum incremental pool size.
    """

    def __init__(self, source: CandidateSource, limit: int = 500) -> None:
        self._source = source
        self._limit = limit

    async def incremental_pool(
        self,
        target: PropertyRecord,
        false_positives: FalsePositiveFilter | None = None,
    ) -> list[PropertyRecord]:
        """Up to ``limit`` eligible records, newest first."""
        pool = await self._source.candidate_records(target, self._limit)
        return [
            candidate
            for candidate in pool
            if self.skip_reason(target, candidate, false_positives) is None
        ]

    @staticmethod
    def skip_reason(
        record_a: PropertyRecord,
        record_b: PropertyRecord,
        false_positives: FalsePositiveFilter | None = None,
    ) -> str | None:
        """Why a pair must not be compared, or None when it is eligible."""
        if record_a.id == record_b.id or record_a.owner_id == record_b.owner_id:
            return SKIP_SAME_OWNER
        if false_positives is not None and false_positives.is_false_positive(record_a.id, record_b.id):
            return SKIP_FALSE_POSITIVE
        return None

    @staticmethod
    def all_pairs(records: list[PropertyRecord]) -> Iterator[tuple[PropertyRecord, PropertyRecord]]:
        """Every unordered pair of *records* exactly once."""
        for i, record_a in enumerate(records):
            for record_b in records[i + 1:]:
                yield record_a, record_b
