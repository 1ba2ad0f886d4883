"""Duplicate detection orchestrator.

DuplicateDetectionService sequences the three signal stages, the candidate
pool, the false-positive filter and persistence.  It has two entry points:

  evaluate_record(record)
      Incremental.  Scores one new or updated record against its bounded
      candidate pool and returns the matches ranked by confidence.  Nothing
      is persisted except cached derived data (embeddings, fingerprints).

  trigger_full_scan(actor_id)
      Batch.  Authorized actors only.  Walks every unordered pair of the
      active corpus once, persists a pending DuplicateGroup for each new
      match, and writes one ``full_scan`` audit entry with the run summary.

Every external call (embedding, image fetch) happens in a preparation pass
before any pair is scored, so embedding and hashing cost stays O(n) while
only the cheap comparisons are O(n^2).

Failure policy: a failed signal lowers that pair's score (it contributes 0)
but never aborts the run.  Failures are tallied into the scan log entry.
The scan yields to the event loop between fixed-size chunks of pairs, and
each persisted group is its own transaction, so cancelling a scan leaves
every group already written valid; the log entry for an interrupted scan
carries ``interrupted: true``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from listingmatch.db.repository import DetectionRepository
from listingmatch.dedup.aggregator import build_result, rank
from listingmatch.dedup.candidates import (
    SKIP_FALSE_POSITIVE,
    SKIP_SAME_OWNER,
    CandidatePoolSelector,
    FalsePositiveFilter,
)
from listingmatch.dedup.lexical_stage import lexical_score
from listingmatch.dedup.profile import WeightProfile
from listingmatch.dedup.records import (
    GroupStatus,
    PropertyRecord,
    ScanSummary,
    SignalScores,
    SimilarityResult,
)
from listingmatch.dedup.semantic_stage import EmbeddingCache, SemanticScorer
from listingmatch.dedup.visual_stage import HashCache, VisualScorer
from listingmatch.errors import AuthorizationDenied, PersistenceConflict, RecordNotFound
from listingmatch.security.rbac import ACTION_RESOLVE, ACTION_SCAN, ACTION_STATS, Authorizer

logger = logging.getLogger(__name__)

FULL_SCAN_ACTION = "full_scan"


class DuplicateDetectionService:
    """Entry point for incremental evaluation, full scans and resolution.

    All collaborators are constructed by the hosting process and injected
    (see listingmatch.bootstrap).

    Args:
        repository:  DetectionRepository for listings, caches, groups and log.
        semantic:    SemanticScorer wrapping the embedding provider.
        visual:      VisualScorer wrapping media fetch, decoding and hash cache.
        authorizer:  Authorizer consulted for privileged operations.
        profile:     WeightProfile used identically by both entry points.
        pool_limit:  Maximum incremental candidate pool size.
        chunk_size:  Pairs processed between progress logs / loop yields.
    """

    def __init__(
        self,
        repository: DetectionRepository,
        semantic: SemanticScorer,
        visual: VisualScorer,
        authorizer: Authorizer,
        profile: WeightProfile,
        pool_limit: int = 500,
        chunk_size: int = 1000,
    ) -> None:
        self._repository = repository
        self._semantic = semantic
        self._visual = visual
        self._authorizer = authorizer
        self._profile = profile
        self._selector = CandidatePoolSelector(repository, limit=pool_limit)
        self._chunk_size = max(1, chunk_size)

    @property
    def profile(self) -> WeightProfile:
        return self._profile

    # ------------------------------------------------------------------
    # Pair scoring
    # ------------------------------------------------------------------

    def score_pair(
        self,
        record_a: PropertyRecord,
        record_b: PropertyRecord,
        hashes: HashCache,
    ) -> SimilarityResult:
        """Score one pair from already-prepared embeddings and fingerprints."""
        lexical, fields = lexical_score(record_a, record_b, self._profile)
        scores = SignalScores(
            lexical=lexical,
            semantic=self._semantic.score(record_a, record_b),
            visual=self._visual.score(record_a, record_b, hashes),
            field_scores=fields,
        )
        result = build_result(record_a.id, record_b.id, scores, self._profile)
        logger.debug(
            "Pair %s/%s: lexical=%.3f semantic=%.3f visual=%.3f confidence=%.3f",
            record_a.id,
            record_b.id,
            scores.lexical,
            scores.semantic,
            scores.visual,
            result.confidence,
        )
        return result

    async def _prepare(
        self,
        records: list[PropertyRecord],
    ) -> tuple[EmbeddingCache, HashCache]:
        """Embed and fingerprint *records* once for this cycle.

        Embeddings are attempted before any semantic comparison; newly
        computed vectors are persisted straight away.
        """
        embeddings = await self._semantic.ensure_embeddings(records, EmbeddingCache())
        if embeddings.newly_embedded:
            await self._repository.save_embeddings(embeddings.newly_embedded)
        hashes = await self._visual.ensure_hashes(records, HashCache())
        return embeddings, hashes

    # ------------------------------------------------------------------
    # Incremental evaluation
    # ------------------------------------------------------------------

    async def evaluate_record(self, record: PropertyRecord) -> list[SimilarityResult]:
        """Compare *record* against its candidate pool.

        Returns:
            Every candidate at or above the overall threshold, ranked by
            descending confidence.  Overlapping matches are all returned;
            grouping them is left to the scan and to human review.

        Raises:
            InvalidRecord: *record* is malformed.
        """
        record.validate()
        pool = await self._selector.incremental_pool(record)
        if not pool:
            logger.debug("Record %s has an empty candidate pool", record.id)
            return []

        _, hashes = await self._prepare([record, *pool])
        results = [self.score_pair(record, candidate, hashes) for candidate in pool]
        matches = rank([r for r in results if r.is_match])
        logger.info(
            "Evaluated record %s against %d candidates: %d matches",
            record.id,
            len(pool),
            len(matches),
        )
        return matches

    async def evaluate_record_by_id(self, record_id: str) -> list[SimilarityResult]:
        """Load a stored record and evaluate it.

        Raises:
            RecordNotFound: No such record.
        """
        record = await self._repository.get_record(record_id)
        return await self.evaluate_record(record)

    # ------------------------------------------------------------------
    # Full scan
    # ------------------------------------------------------------------

    async def trigger_full_scan(self, actor_id: str | None) -> ScanSummary:
        """Scan every unordered pair of active records and persist new groups.

        Raises:
            AuthorizationDenied: *actor_id* may not run scans.
        """
        await self._require(actor_id, ACTION_SCAN)

        summary = ScanSummary()
        affected: set[str] = set()
        started = time.monotonic()

        try:
            records = await self._repository.load_active_records()
            summary.records_scanned = len(records)
            logger.info("Full scan started by %s over %d records", actor_id, len(records))

            embeddings, hashes = await self._prepare(records)
            summary.embedding_failures = embeddings.failures
            summary.image_failures = hashes.failures

            false_positives = FalsePositiveFilter(await self._repository.false_positive_pairs())
            total_pairs = len(records) * (len(records) - 1) // 2

            for index, (record_a, record_b) in enumerate(
                CandidatePoolSelector.all_pairs(records), start=1
            ):
                reason = CandidatePoolSelector.skip_reason(record_a, record_b, false_positives)
                if reason == SKIP_SAME_OWNER:
                    summary.skipped_same_owner += 1
                elif reason == SKIP_FALSE_POSITIVE:
                    summary.skipped_false_positive += 1
                else:
                    summary.comparisons_made += 1
                    result = self.score_pair(record_a, record_b, hashes)
                    if result.is_match:
                        summary.duplicates_found += 1
                        await self._persist_group(result, summary, affected)

                if index % self._chunk_size == 0:
                    logger.info(
                        "Full scan progress: %d/%d pairs, %d comparisons, %d groups created",
                        index,
                        total_pairs,
                        summary.comparisons_made,
                        summary.groups_created,
                    )
                    # Checkpoint between chunks: lets cancellation land here
                    await asyncio.sleep(0)
        except asyncio.CancelledError:
            summary.interrupted = True
            logger.warning("Full scan interrupted after %d comparisons", summary.comparisons_made)
            await self._write_scan_log(actor_id, summary, affected, started)
            raise

        await self._write_scan_log(actor_id, summary, affected, started)
        logger.info(
            "Full scan finished: %d records, %d comparisons, %d matches, %d groups created",
            summary.records_scanned,
            summary.comparisons_made,
            summary.duplicates_found,
            summary.groups_created,
        )
        return summary

    async def _persist_group(
        self,
        result: SimilarityResult,
        summary: ScanSummary,
        affected: set[str],
    ) -> None:
        try:
            group_id = await self._repository.create_group_if_absent(result)
        except PersistenceConflict:
            # A concurrent scan created it first
            summary.groups_skipped += 1
            return
        except RecordNotFound as exc:
            summary.records_missing += 1
            logger.warning("Skipping pair %s/%s: %s", result.record_id, result.matched_record_id, exc.message)
            return

        if group_id is None:
            summary.groups_skipped += 1
            return
        summary.groups_created += 1
        affected.update((result.record_id, result.matched_record_id))

    async def _write_scan_log(
        self,
        actor_id: str | None,
        summary: ScanSummary,
        affected: set[str],
        started: float,
    ) -> None:
        details: dict[str, Any] = summary.to_dict()
        details["duration_seconds"] = round(time.monotonic() - started, 3)
        details["thresholds"] = {
            "overall": self._profile.overall_threshold,
            "duplicate": self._profile.duplicate_threshold,
        }
        details["weights"] = {
            "lexical": self._profile.lexical,
            "semantic": self._profile.semantic,
            "visual": self._profile.visual,
        }
        await self._repository.write_log(FULL_SCAN_ACTION, actor_id, sorted(affected), details)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def backfill_embeddings(self, limit: int = 100) -> dict[str, int]:
        """Compute and store vectors for records that have no combined vector yet."""
        records = await self._repository.records_missing_embeddings(limit)
        if not records:
            return {"processed": 0, "embedded": 0, "failed": 0}

        cache = await self._semantic.ensure_embeddings(records, EmbeddingCache())
        embedded = await self._repository.save_embeddings(cache.newly_embedded)
        logger.info("Backfilled embeddings for %d of %d records", embedded, len(records))
        return {
            "processed": len(records),
            "embedded": embedded,
            "failed": len(records) - len(cache.newly_embedded),
        }

    async def invalidate_record(self, record_id: str) -> None:
        """Drop the cached vectors of an updated record so the next cycle re-embeds it."""
        await self._repository.clear_embedding(record_id)
        logger.debug("Invalidated embedding for record %s", record_id)

    # ------------------------------------------------------------------
    # Human resolution
    # ------------------------------------------------------------------

    async def list_pending_groups(self, limit: int = 50) -> list[dict[str, Any]]:
        return await self._repository.list_groups(GroupStatus.PENDING, limit)

    async def list_groups(self, status: GroupStatus, limit: int = 50) -> list[dict[str, Any]]:
        return await self._repository.list_groups(status, limit)

    async def mark_false_positive(
        self,
        actor_id: str | None,
        record_id_a: str,
        record_id_b: str,
        reason: str | None = None,
    ) -> dict[str, Any]:
        """Record a confirmed non-duplicate pair; it is never proposed again."""
        await self._require(actor_id, ACTION_RESOLVE)
        return await self._repository.add_false_positive(record_id_a, record_id_b, actor_id, reason)

    async def dismiss_group(
        self,
        actor_id: str | None,
        group_id: str,
        notes: str | None = None,
    ) -> dict[str, Any]:
        """Reject a proposed group; its member pairs become false positives."""
        await self._require(actor_id, ACTION_RESOLVE)
        return await self._repository.resolve_group(group_id, GroupStatus.DISMISSED, actor_id, notes)

    async def confirm_group(
        self,
        actor_id: str | None,
        group_id: str,
        notes: str | None = None,
    ) -> dict[str, Any]:
        """Accept a proposed group.  Merging the records is left to the caller."""
        await self._require(actor_id, ACTION_RESOLVE)
        return await self._repository.resolve_group(group_id, GroupStatus.CONFIRMED, actor_id, notes)

    async def get_stats(self, actor_id: str | None) -> dict[str, Any]:
        await self._require(actor_id, ACTION_STATS)
        return await self._repository.stats(self._profile.high_confidence_threshold)

    async def _require(self, actor_id: str | None, action: str) -> None:
        if not await self._authorizer.is_authorized(actor_id, action):
            logger.warning("Actor %s denied %s", actor_id, action)
            raise AuthorizationDenied(f"actor {actor_id!r} is not allowed to perform {action}")
