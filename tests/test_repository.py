"""Tests for DetectionRepository against SQLite."""

from datetime import UTC, datetime, timedelta

import pytest

from conftest import make_record
from listingmatch.dedup.aggregator import build_result
from listingmatch.dedup.candidates import CandidatePoolSelector, FalsePositiveFilter
from listingmatch.dedup.records import GroupStatus, SignalScores
from listingmatch.errors import InvalidRecord, PersistenceConflict, RecordNotFound

_BASE_TIME = datetime(2026, 1, 15, 10, 0, tzinfo=UTC)


def _match(profile, a: str, b: str, semantic: float = 1.0):
    return build_result(a, b, SignalScores(1.0, semantic, 0.0, {"title": 1.0}), profile)


async def _seed(repository, *records) -> None:
    for offset, record in enumerate(records):
        if record.created_at is None:
            record.created_at = _BASE_TIME + timedelta(minutes=offset)
        await repository.save_record(record)


class TestListings:
    async def test_save_and_get_round_trip(self, repository) -> None:
        record = make_record("a", image_urls=["https://img/2.png", "https://img/1.png"])
        await repository.save_record(record)

        loaded = await repository.get_record("a")

        assert loaded.title == record.title
        assert loaded.monthly_rent == 1450.0
        assert loaded.image_urls == ["https://img/2.png", "https://img/1.png"]
        assert loaded.embedding is None

    async def test_save_replaces_media(self, repository) -> None:
        await repository.save_record(make_record("a", image_urls=["https://img/old.png"]))
        await repository.save_record(make_record("a", image_urls=["https://img/new.png"]))
        assert (await repository.get_record("a")).image_urls == ["https://img/new.png"]

    async def test_missing_record(self, repository) -> None:
        with pytest.raises(RecordNotFound):
            await repository.get_record("nope")

    async def test_invalid_record_rejected(self, repository) -> None:
        with pytest.raises(InvalidRecord):
            await repository.save_record(make_record("a", monthly_rent=-1.0))

    async def test_embedding_lifecycle(self, repository) -> None:
        record = make_record("a")
        await repository.save_record(record)
        assert [r.id for r in await repository.records_missing_embeddings(10)] == ["a"]

        record.embedding = [0.1, 0.2, 0.3]
        assert await repository.save_embeddings([record]) == 1
        assert (await repository.get_record("a")).embedding == [0.1, 0.2, 0.3]
        assert await repository.records_missing_embeddings(10) == []

        await repository.clear_embedding("a")
        assert (await repository.get_record("a")).embedding is None

    async def test_field_vectors_saved_without_touching_combined(self, repository) -> None:
        await repository.save_record(make_record("a", embedding=[0.1, 0.2]))
        record = await repository.get_record("a")
        record.embedding = None
        record.title_embedding = [1.0, 0.0]
        record.description_embedding = [0.0, 1.0]

        assert await repository.save_embeddings([record]) == 1

        stored = await repository.get_record("a")
        assert stored.embedding == [0.1, 0.2]
        assert stored.title_embedding == [1.0, 0.0]
        assert stored.description_embedding == [0.0, 1.0]

        await repository.clear_embedding("a")
        cleared = await repository.get_record("a")
        assert (cleared.embedding, cleared.title_embedding, cleared.description_embedding) == (None, None, None)

    async def test_clear_embedding_of_missing_record(self, repository) -> None:
        with pytest.raises(RecordNotFound):
            await repository.clear_embedding("nope")


class TestCandidatePool:
    async def test_excludes_self_same_owner_and_false_positives(self, repository) -> None:
        target = make_record("t", owner_id="alice")
        await _seed(
            repository,
            target,
            make_record("same-owner", owner_id="alice"),
            make_record("flagged", owner_id="bob"),
            make_record("eligible", owner_id="carol"),
        )
        await repository.add_false_positive("t", "flagged", "moderator")

        pool = await CandidatePoolSelector(repository).incremental_pool(target)

        assert [r.id for r in pool] == ["eligible"]

    async def test_bounded_newest_first(self, repository) -> None:
        target = make_record("t", owner_id="alice")
        await _seed(repository, *(make_record(f"r{i}", owner_id=f"o{i}") for i in range(5)))

        pool = await CandidatePoolSelector(repository, limit=3).incremental_pool(target)

        assert [r.id for r in pool] == ["r4", "r3", "r2"]

    def test_all_pairs_visits_each_unordered_pair_once(self) -> None:
        records = [make_record(str(i)) for i in range(5)]
        pairs = [(a.id, b.id) for a, b in CandidatePoolSelector.all_pairs(records)]
        assert len(pairs) == 10
        assert len({frozenset(p) for p in pairs}) == 10

    def test_skip_reasons(self) -> None:
        fp = FalsePositiveFilter([("b", "a")])
        a, b, c = make_record("a"), make_record("b"), make_record("c", owner_id="owner-a")
        assert CandidatePoolSelector.skip_reason(a, b, fp) == "false_positive"
        assert CandidatePoolSelector.skip_reason(a, c, fp) == "same_owner"
        assert CandidatePoolSelector.skip_reason(b, c, fp) is None
        assert len(fp) == 1


class TestImageHashes:
    async def test_upsert_and_lookup(self, repository) -> None:
        await repository.save_image_hash("a", "https://img/1.png", "0101")
        await repository.save_image_hash("a", "https://img/1.png", "1111")

        assert await repository.get_image_hash("a", "https://img/1.png") == "1111"
        assert await repository.get_image_hash("b", "https://img/1.png") is None
        assert await repository.find_image_hash("https://img/1.png") == "1111"


class TestGroups:
    async def test_create_once(self, repository, profile) -> None:
        await _seed(repository, make_record("a"), make_record("b"))

        group_id = await repository.create_group_if_absent(_match(profile, "b", "a"))
        again = await repository.create_group_if_absent(_match(profile, "a", "b"))

        assert group_id is not None
        assert again is None
        groups = await repository.list_groups(GroupStatus.PENDING)
        assert len(groups) == 1
        assert [m["record_id"] for m in groups[0]["members"]] == ["a", "b"]
        assert "lexical_score:1.000" in groups[0]["members"][0]["similarity_reasons"]

    async def test_false_positive_pair_is_not_grouped(self, repository, profile) -> None:
        await _seed(repository, make_record("a"), make_record("b"))
        await repository.add_false_positive("a", "b", "moderator", "different flats")
        assert await repository.create_group_if_absent(_match(profile, "a", "b")) is None

    async def test_deleted_listing_is_reported(self, repository, profile) -> None:
        await _seed(repository, make_record("a"))
        with pytest.raises(RecordNotFound):
            await repository.create_group_if_absent(_match(profile, "a", "ghost"))

    async def test_list_orders_by_confidence(self, repository, profile) -> None:
        await _seed(repository, make_record("a"), make_record("b"), make_record("c"))
        await repository.create_group_if_absent(_match(profile, "a", "b", semantic=0.9))
        await repository.create_group_if_absent(_match(profile, "a", "c", semantic=1.0))

        groups = await repository.list_groups(GroupStatus.PENDING)

        assert [g["confidence_score"] for g in groups] == sorted(
            (g["confidence_score"] for g in groups), reverse=True
        )


class TestResolution:
    async def test_dismiss_records_false_positive(self, repository, profile) -> None:
        await _seed(repository, make_record("a"), make_record("b"))
        group_id = await repository.create_group_if_absent(_match(profile, "a", "b"))

        group = await repository.resolve_group(group_id, GroupStatus.DISMISSED, "moderator", "not the same")

        assert group["status"] == "dismissed"
        assert group["reviewed_by"] == "moderator"
        assert await repository.false_positive_pairs() == {("a", "b")}
        logs = await repository.list_logs("dismissed_group")
        assert logs[0]["affected_record_ids"] == ["a", "b"]

    async def test_confirm(self, repository, profile) -> None:
        await _seed(repository, make_record("a"), make_record("b"))
        group_id = await repository.create_group_if_absent(_match(profile, "a", "b"))

        group = await repository.resolve_group(group_id, GroupStatus.CONFIRMED, "moderator")

        assert group["status"] == "confirmed"
        assert await repository.false_positive_pairs() == set()
        # A confirmed group still covers the pair
        assert await repository.create_group_if_absent(_match(profile, "a", "b")) is None

    async def test_resolving_twice_conflicts(self, repository, profile) -> None:
        await _seed(repository, make_record("a"), make_record("b"))
        group_id = await repository.create_group_if_absent(_match(profile, "a", "b"))
        await repository.resolve_group(group_id, GroupStatus.CONFIRMED, "moderator")

        with pytest.raises(PersistenceConflict):
            await repository.resolve_group(group_id, GroupStatus.DISMISSED, "moderator")

    async def test_unknown_group(self, repository) -> None:
        with pytest.raises(RecordNotFound):
            await repository.resolve_group("missing", GroupStatus.CONFIRMED, "moderator")

    async def test_pending_is_not_a_resolution(self, repository) -> None:
        with pytest.raises(InvalidRecord):
            await repository.resolve_group("any", GroupStatus.PENDING, "moderator")

    async def test_false_positive_dismisses_pending_group(self, repository, profile) -> None:
        await _seed(repository, make_record("a"), make_record("b"))
        group_id = await repository.create_group_if_absent(_match(profile, "a", "b"))

        result = await repository.add_false_positive("b", "a", "moderator")
        repeat = await repository.add_false_positive("a", "b", "moderator")

        assert result == {"created": True, "dismissed_group_ids": [group_id]}
        assert repeat == {"created": False, "dismissed_group_ids": []}
        assert await repository.list_groups(GroupStatus.PENDING) == []

    async def test_false_positive_needs_two_records(self, repository) -> None:
        with pytest.raises(InvalidRecord):
            await repository.add_false_positive("a", "a", "moderator")


class TestStats:
    async def test_counts(self, repository, profile) -> None:
        await _seed(repository, make_record("a"), make_record("b"), make_record("c"))
        first = await repository.create_group_if_absent(_match(profile, "a", "b"))
        await repository.create_group_if_absent(_match(profile, "a", "c", semantic=0.5))
        await repository.resolve_group(first, GroupStatus.CONFIRMED, "moderator")
        await repository.write_log("full_scan", "moderator", [], {"records_scanned": 3})

        stats = await repository.stats(high_confidence_threshold=0.7)

        assert stats["total_groups"] == 2
        assert stats["pending_groups"] == 1
        assert stats["confirmed_groups"] == 1
        assert stats["dismissed_groups"] == 0
        assert stats["high_confidence_groups"] == 1
        assert stats["active_records"] == 3
        assert stats["recent_scans"] == 1
        assert stats["last_scan_at"] is not None
