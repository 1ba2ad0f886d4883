"""Data access for listings, fingerprint cache, duplicate groups and audit log.

DetectionRepository wraps a session factory.  Every public method opens its
own session and short transaction, so no transaction ever spans more than one
pair's outcome and an interrupted scan leaves everything already written
valid.

Concurrency notes:
- Image hash writes are upserts; two scans hashing the same URL write the
  same value, so last-write-wins is correct.
- Group creation is guarded by an existence check inside the inserting
  transaction plus the (member_key, status) unique constraint.  Losing the
  race surfaces as PersistenceConflict, which callers treat as "already
  handled".
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from itertools import combinations
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased, selectinload

from listingmatch.db.models import (
    DuplicateDetectionLog,
    DuplicateFalsePositive,
    DuplicateGroup,
    DuplicateGroupMember,
    Listing,
    ListingImageHash,
    ListingMedia,
)
from listingmatch.dedup.records import GroupStatus, PropertyRecord, SimilarityResult, pair_key
from listingmatch.errors import InvalidRecord, PersistenceConflict, RecordNotFound

logger = logging.getLogger(__name__)

# Group statuses that count as "this pair is already proposed or accepted"
_COVERING_STATUSES = (GroupStatus.PENDING.value, GroupStatus.CONFIRMED.value)


def _to_record(listing: Listing) -> PropertyRecord:
    return PropertyRecord(
        id=listing.id,
        owner_id=listing.owner_id,
        title=listing.title or "",
        description=listing.description,
        street_number=listing.street_number,
        street_name=listing.street_name,
        city=listing.city,
        zip_code=listing.zip_code,
        monthly_rent=listing.monthly_rent,
        square_meters=listing.square_meters,
        bedrooms=listing.bedrooms,
        bathrooms=listing.bathrooms,
        image_urls=[m.media_url for m in listing.media],
        created_at=listing.created_at,
        embedding=list(listing.embedding) if listing.embedding else None,
        title_embedding=list(listing.title_embedding) if listing.title_embedding else None,
        description_embedding=(
            list(listing.description_embedding) if listing.description_embedding else None
        ),
    )


def _group_to_dict(group: DuplicateGroup) -> dict[str, Any]:
    return {
        "id": group.id,
        "confidence_score": group.confidence_score,
        "status": group.status,
        "notes": group.notes,
        "reviewed_by": group.reviewed_by,
        "created_at": group.created_at.isoformat() if group.created_at else None,
        "members": [
            {"record_id": m.listing_id, "similarity_reasons": list(m.similarity_reasons or [])}
            for m in sorted(group.members, key=lambda m: m.listing_id)
        ],
    }


class DetectionRepository:
    """Repository for every table the duplicate-detection engine touches.

    Args:
        session_factory: async_sessionmaker built by listingmatch.db.session.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    async def save_record(self, record: PropertyRecord) -> None:
        """Insert or update a listing and replace its media list."""
        record.validate()
        async with self._session_factory() as session:
            async with session.begin():
                listing = await session.get(
                    Listing, record.id, options=[selectinload(Listing.media)]
                )
                if listing is None:
                    listing = Listing(id=record.id)
                    if record.created_at is not None:
                        listing.created_at = record.created_at
                    session.add(listing)
                    listing.media = []

                listing.owner_id = record.owner_id
                listing.title = record.title
                listing.description = record.description
                listing.street_number = record.street_number
                listing.street_name = record.street_name
                listing.city = record.city
                listing.zip_code = record.zip_code
                listing.monthly_rent = record.monthly_rent
                listing.square_meters = record.square_meters
                listing.bedrooms = record.bedrooms
                listing.bathrooms = record.bathrooms
                listing.embedding = record.embedding
                listing.title_embedding = record.title_embedding
                listing.description_embedding = record.description_embedding
                listing.media = [
                    ListingMedia(media_url=url, position=i)
                    for i, url in enumerate(record.image_urls)
                ]

    async def get_record(self, record_id: str) -> PropertyRecord:
        """Return the listing as a PropertyRecord.

        Raises:
            RecordNotFound: No listing with that id exists.
        """
        async with self._session_factory() as session:
            listing = await session.get(Listing, record_id, options=[selectinload(Listing.media)])
        if listing is None:
            raise RecordNotFound(f"record {record_id} not found")
        return _to_record(listing)

    async def load_active_records(self) -> list[PropertyRecord]:
        """All active listings, oldest first."""
        stmt = (
            select(Listing)
            .options(selectinload(Listing.media))
            .where(Listing.is_active.is_(True))
            .order_by(Listing.created_at.asc(), Listing.id.asc())
        )
        async with self._session_factory() as session:
            listings = (await session.execute(stmt)).scalars().all()
        return [_to_record(listing) for listing in listings]

    async def candidate_records(self, target: PropertyRecord, limit: int) -> list[PropertyRecord]:
        """Most recent active listings eligible for comparison against *target*.

        Excludes the target itself, listings of the same owner, and every
        listing already recorded as a false positive with the target.
        """
        partners_b = select(DuplicateFalsePositive.listing_id_b).where(
            DuplicateFalsePositive.listing_id_a == target.id
        )
        partners_a = select(DuplicateFalsePositive.listing_id_a).where(
            DuplicateFalsePositive.listing_id_b == target.id
        )
        stmt = (
            select(Listing)
            .options(selectinload(Listing.media))
            .where(Listing.is_active.is_(True))
            .where(Listing.id != target.id)
            .where(Listing.owner_id != target.owner_id)
            .where(Listing.id.not_in(partners_b))
            .where(Listing.id.not_in(partners_a))
            .order_by(Listing.created_at.desc(), Listing.id.asc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            listings = (await session.execute(stmt)).scalars().all()
        return [_to_record(listing) for listing in listings]

    async def records_missing_embeddings(self, limit: int) -> list[PropertyRecord]:
        stmt = (
            select(Listing)
            .options(selectinload(Listing.media))
            .where(Listing.is_active.is_(True))
            .where(Listing.embedding.is_(None))
            .order_by(Listing.created_at.desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            listings = (await session.execute(stmt)).scalars().all()
        return [_to_record(listing) for listing in listings]

    async def save_embeddings(self, records: list[PropertyRecord]) -> int:
        """Persist the cached vectors of *records*; returns rows updated.

        Only vectors that are present are written, so a record whose combined
        vector was already stored can add its per-field vectors later.
        """
        updated = 0
        async with self._session_factory() as session:
            async with session.begin():
                for record in records:
                    values = {
                        column: list(vector)
                        for column, vector in (
                            ("embedding", record.embedding),
                            ("title_embedding", record.title_embedding),
                            ("description_embedding", record.description_embedding),
                        )
                        if vector
                    }
                    if not values:
                        continue
                    result = await session.execute(
                        update(Listing).where(Listing.id == record.id).values(**values)
                    )
                    updated += result.rowcount or 0
        return updated

    async def clear_embedding(self, record_id: str) -> None:
        """Invalidate the cached vectors of a listing after its content changed."""
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Listing)
                    .where(Listing.id == record_id)
                    .values(embedding=None, title_embedding=None, description_embedding=None)
                )
        if not result.rowcount:
            raise RecordNotFound(f"record {record_id} not found")

    # ------------------------------------------------------------------
    # Image fingerprint cache
    # ------------------------------------------------------------------

    async def get_image_hash(self, record_id: str, media_url: str) -> str | None:
        stmt = select(ListingImageHash.hash_value).where(
            ListingImageHash.listing_id == record_id,
            ListingImageHash.media_url == media_url,
        )
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def find_image_hash(self, media_url: str) -> str | None:
        """Any stored fingerprint for *media_url*, regardless of listing."""
        stmt = (
            select(ListingImageHash.hash_value)
            .where(ListingImageHash.media_url == media_url)
            .order_by(ListingImageHash.created_at.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def save_image_hash(self, record_id: str, media_url: str, hash_value: str) -> None:
        """Upsert the fingerprint for (record_id, media_url)."""
        try:
            await self._upsert_image_hash(record_id, media_url, hash_value)
        except IntegrityError:
            # A concurrent scan inserted the same key first; overwrite it.
            logger.debug("Image hash insert raced for %s, retrying as update", media_url)
            await self._upsert_image_hash(record_id, media_url, hash_value)

    async def _upsert_image_hash(self, record_id: str, media_url: str, hash_value: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                existing = (
                    await session.execute(
                        select(ListingImageHash).where(
                            ListingImageHash.listing_id == record_id,
                            ListingImageHash.media_url == media_url,
                        )
                    )
                ).scalar_one_or_none()
                if existing is None:
                    session.add(
                        ListingImageHash(
                            listing_id=record_id, media_url=media_url, hash_value=hash_value
                        )
                    )
                else:
                    existing.hash_value = hash_value

    # ------------------------------------------------------------------
    # False positives
    # ------------------------------------------------------------------

    async def false_positive_pairs(self) -> set[tuple[str, str]]:
        """Every recorded false-positive pair, as sorted id tuples."""
        stmt = select(DuplicateFalsePositive.listing_id_a, DuplicateFalsePositive.listing_id_b)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return {pair_key(a, b) for a, b in rows}

    async def add_false_positive(
        self,
        record_id_a: str,
        record_id_b: str,
        actor_id: str | None,
        reason: str | None = None,
    ) -> dict[str, Any]:
        """Record a pair as not-duplicate and dismiss any pending group covering it.

        Both writes and the audit entry share one transaction.

        Returns:
            Dict with ``created`` (False when the pair was already recorded)
            and ``dismissed_group_ids``.

        Raises:
            InvalidRecord:       Both ids are the same.
            RecordNotFound:      Either listing does not exist.
            PersistenceConflict: A concurrent writer changed the same rows.
        """
        if record_id_a == record_id_b:
            raise InvalidRecord("a false positive needs two different records")
        a, b = pair_key(record_id_a, record_id_b)

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await self._require_listings(session, a, b)
                    created = await self._insert_false_positive(session, a, b, actor_id, reason)

                    dismissed: list[str] = []
                    for group in await self._covering_groups(session, a, b, (GroupStatus.PENDING.value,)):
                        self._set_status(group, GroupStatus.DISMISSED, actor_id, reason)
                        dismissed.append(group.id)

                    session.add(
                        DuplicateDetectionLog(
                            action_type="mark_false_positive",
                            actor_id=actor_id,
                            affected_listing_ids=[a, b],
                            details={
                                "reason": reason,
                                "created": created,
                                "dismissed_group_ids": dismissed,
                            },
                        )
                    )
        except IntegrityError as exc:
            raise PersistenceConflict(f"concurrent update of pair {a}/{b}") from exc

        logger.info("Marked %s/%s as false positive (dismissed %d groups)", a, b, len(dismissed))
        return {"created": created, "dismissed_group_ids": dismissed}

    async def _insert_false_positive(
        self,
        session: AsyncSession,
        a: str,
        b: str,
        actor_id: str | None,
        reason: str | None,
    ) -> bool:
        exists = (
            await session.execute(
                select(DuplicateFalsePositive.id).where(
                    DuplicateFalsePositive.listing_id_a == a,
                    DuplicateFalsePositive.listing_id_b == b,
                )
            )
        ).scalar_one_or_none()
        if exists is not None:
            return False
        session.add(
            DuplicateFalsePositive(listing_id_a=a, listing_id_b=b, actor_id=actor_id, reason=reason)
        )
        return True

    # ------------------------------------------------------------------
    # Duplicate groups
    # ------------------------------------------------------------------

    async def create_group_if_absent(self, result: SimilarityResult) -> str | None:
        """Persist a pending group for a matched pair unless it is already handled.

        The false-positive check and the covering-group check run in the same
        transaction as the insert.

        Returns:
            The new group id, or None when a false positive or an existing
            pending/confirmed group already covers the pair.

        Raises:
            RecordNotFound:      Either listing was deleted meanwhile.
            PersistenceConflict: A concurrent scan inserted the same group.
        """
        a, b = pair_key(result.record_id, result.matched_record_id)
        reasons = result.similarity_reasons()

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    if await self._is_false_positive(session, a, b):
                        logger.debug("Pair %s/%s is a known false positive", a, b)
                        return None
                    if await self._covering_groups(session, a, b, _COVERING_STATUSES):
                        logger.debug("Pair %s/%s already covered by a group", a, b)
                        return None
                    await self._require_listings(session, a, b)

                    group = DuplicateGroup(
                        member_key=f"{a},{b}",
                        confidence_score=round(result.confidence, 4),
                        status=GroupStatus.PENDING.value,
                        members=[
                            DuplicateGroupMember(listing_id=a, similarity_reasons=reasons),
                            DuplicateGroupMember(listing_id=b, similarity_reasons=reasons),
                        ],
                    )
                    session.add(group)
                    await session.flush()
                    group_id = group.id
        except IntegrityError as exc:
            raise PersistenceConflict(f"group for {a}/{b} already exists") from exc

        logger.info(
            "Created duplicate group %s for %s/%s (confidence=%.2f)",
            group_id,
            a,
            b,
            result.confidence,
        )
        return group_id

    async def list_groups(
        self,
        status: GroupStatus = GroupStatus.PENDING,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Groups in *status*, highest confidence first."""
        stmt = (
            select(DuplicateGroup)
            .options(selectinload(DuplicateGroup.members))
            .where(DuplicateGroup.status == status.value)
            .order_by(DuplicateGroup.confidence_score.desc(), DuplicateGroup.created_at.asc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            groups = (await session.execute(stmt)).scalars().all()
        return [_group_to_dict(g) for g in groups]

    async def resolve_group(
        self,
        group_id: str,
        status: GroupStatus,
        actor_id: str | None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        """Move a pending group to confirmed or dismissed and audit the change.

        Dismissing a group records every member pair as a false positive in
        the same transaction, so the pair is never proposed again.

        Raises:
            InvalidRecord:       *status* is not a resolution status.
            RecordNotFound:      No such group.
            PersistenceConflict: The group was already resolved.
        """
        if status is GroupStatus.PENDING:
            raise InvalidRecord("a group can only be resolved to confirmed or dismissed")

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    group = await session.get(
                        DuplicateGroup, group_id, options=[selectinload(DuplicateGroup.members)]
                    )
                    if group is None:
                        raise RecordNotFound(f"duplicate group {group_id} not found")
                    if group.status != GroupStatus.PENDING.value:
                        raise PersistenceConflict(f"duplicate group {group_id} is already {group.status}")

                    self._set_status(group, status, actor_id, notes)
                    member_ids = sorted(m.listing_id for m in group.members)

                    if status is GroupStatus.DISMISSED:
                        for a, b in combinations(member_ids, 2):
                            await self._insert_false_positive(
                                session, a, b, actor_id, notes or "dismissed duplicate group"
                            )

                    session.add(
                        DuplicateDetectionLog(
                            action_type=f"{status.value}_group",
                            actor_id=actor_id,
                            affected_listing_ids=member_ids,
                            details={
                                "group_id": group_id,
                                "notes": notes,
                                "confidence_score": group.confidence_score,
                            },
                        )
                    )
                    payload = _group_to_dict(group)
        except IntegrityError as exc:
            raise PersistenceConflict(f"concurrent update of group {group_id}") from exc

        logger.info("Duplicate group %s %s by %s", group_id, status.value, actor_id)
        return payload

    @staticmethod
    def _set_status(
        group: DuplicateGroup,
        status: GroupStatus,
        actor_id: str | None,
        notes: str | None,
    ) -> None:
        group.status = status.value
        group.reviewed_by = actor_id
        group.reviewed_at = datetime.now(timezone.utc)
        if notes:
            group.notes = notes

    async def _is_false_positive(self, session: AsyncSession, a: str, b: str) -> bool:
        stmt = select(DuplicateFalsePositive.id).where(
            DuplicateFalsePositive.listing_id_a == a,
            DuplicateFalsePositive.listing_id_b == b,
        )
        return (await session.execute(stmt)).first() is not None

    async def _covering_groups(
        self,
        session: AsyncSession,
        a: str,
        b: str,
        statuses: tuple[str, ...],
    ) -> list[DuplicateGroup]:
        member_a = aliased(DuplicateGroupMember)
        member_b = aliased(DuplicateGroupMember)
        stmt = (
            select(DuplicateGroup)
            .join(member_a, member_a.group_id == DuplicateGroup.id)
            .join(member_b, member_b.group_id == DuplicateGroup.id)
            .where(member_a.listing_id == a, member_b.listing_id == b)
            .where(DuplicateGroup.status.in_(statuses))
        )
        return list((await session.execute(stmt)).scalars().unique().all())

    async def _require_listings(self, session: AsyncSession, *record_ids: str) -> None:
        found = set(
            (await session.execute(select(Listing.id).where(Listing.id.in_(record_ids)))).scalars()
        )
        missing = sorted(set(record_ids) - found)
        if missing:
            raise RecordNotFound(f"records not found: {', '.join(missing)}")

    # ------------------------------------------------------------------
    # Audit log + stats
    # ------------------------------------------------------------------

    async def write_log(
        self,
        action_type: str,
        actor_id: str | None,
        affected_ids: list[str],
        details: dict[str, Any],
    ) -> str:
        async with self._session_factory() as session:
            async with session.begin():
                entry = DuplicateDetectionLog(
                    action_type=action_type,
                    actor_id=actor_id,
                    affected_listing_ids=list(affected_ids),
                    details=details,
                )
                session.add(entry)
                await session.flush()
                return entry.id

    async def list_logs(self, action_type: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        stmt = select(DuplicateDetectionLog).order_by(DuplicateDetectionLog.created_at.desc()).limit(limit)
        if action_type is not None:
            stmt = stmt.where(DuplicateDetectionLog.action_type == action_type)
        async with self._session_factory() as session:
            entries = (await session.execute(stmt)).scalars().all()
        return [
            {
                "id": e.id,
                "action_type": e.action_type,
                "actor_id": e.actor_id,
                "affected_record_ids": list(e.affected_listing_ids or []),
                "details": dict(e.details or {}),
                "created_at": e.created_at.isoformat() if e.created_at else None,
            }
            for e in entries
        ]

    async def stats(self, high_confidence_threshold: float) -> dict[str, Any]:
        """Aggregate counts for the review dashboard."""
        since = datetime.now(timezone.utc) - timedelta(hours=24)
        async with self._session_factory() as session:
            by_status = dict(
                (
                    await session.execute(
                        select(DuplicateGroup.status, func.count()).group_by(DuplicateGroup.status)
                    )
                ).all()
            )
            high_confidence = (
                await session.execute(
                    select(func.count())
                    .select_from(DuplicateGroup)
                    .where(DuplicateGroup.confidence_score >= high_confidence_threshold)
                )
            ).scalar_one()
            false_positives = (
                await session.execute(select(func.count()).select_from(DuplicateFalsePositive))
            ).scalar_one()
            recent_scans = (
                await session.execute(
                    select(func.count())
                    .select_from(DuplicateDetectionLog)
                    .where(DuplicateDetectionLog.action_type == "full_scan")
                    .where(DuplicateDetectionLog.created_at >= since)
                )
            ).scalar_one()
            last_scan = (
                await session.execute(
                    select(func.max(DuplicateDetectionLog.created_at)).where(
                        DuplicateDetectionLog.action_type == "full_scan"
                    )
                )
            ).scalar_one_or_none()
            active_records = (
                await session.execute(
                    select(func.count()).select_from(Listing).where(Listing.is_active.is_(True))
                )
            ).scalar_one()

        return {
            "total_groups": sum(by_status.values()),
            "pending_groups": by_status.get(GroupStatus.PENDING.value, 0),
            "confirmed_groups": by_status.get(GroupStatus.CONFIRMED.value, 0),
            "dismissed_groups": by_status.get(GroupStatus.DISMISSED.value, 0),
            "high_confidence_groups": high_confidence,
            "false_positives": false_positives,
            "active_records": active_records,
            "recent_scans": recent_scans,
            "last_scan_at": last_scan.isoformat() if last_scan else None,
        }
