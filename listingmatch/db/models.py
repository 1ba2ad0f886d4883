"""SQLAlchemy models for listings and duplicate-detection state.

Column types are kept portable (String ids, JSON payloads) so the same models
run on PostgreSQL (asyncpg) in production and SQLite (aiosqlite) in tests.
Embeddings are stored as a JSON float array; cosine similarity is computed in
Python by the semantic stage, not in the database.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Listing(Base):
    """A property listing submitted by an owner."""

    __tablename__ = "listings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    street_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    street_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(String(255), nullable=True)
    zip_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    monthly_rent: Mapped[float | None] = mapped_column(Float, nullable=True)
    square_meters: Mapped[float | None] = mapped_column(Float, nullable=True)
    bedrooms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    bathrooms: Mapped[float | None] = mapped_column(Float, nullable=True)
    embedding: Mapped[list[float] | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    title_embedding: Mapped[list[float] | None] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )
    description_embedding: Mapped[list[float] | None] = mapped_column(
        JSON(none_as_null=True), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    media: Mapped[list["ListingMedia"]] = relationship(
        "ListingMedia",
        back_populates="listing",
        cascade="all, delete-orphan",
        order_by="ListingMedia.position",
    )


class ListingMedia(Base):
    """Ordered image URLs attached to a listing."""

    __tablename__ = "listing_media"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    listing_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("listings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    media_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    listing: Mapped["Listing"] = relationship("Listing", back_populates="media")


class ListingImageHash(Base):
    """Cached perceptual fingerprint for one image of one listing."""

    __tablename__ = "listing_image_hashes"
    __table_args__ = (
        UniqueConstraint("listing_id", "media_url", name="uq_listing_image_hashes_listing_url"),
        Index("ix_listing_image_hashes_media_url", "media_url"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    listing_id: Mapped[str] = mapped_column(String(36), nullable=False)
    media_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    hash_value: Mapped[str] = mapped_column(String(1024), nullable=False)
    hash_type: Mapped[str] = mapped_column(String(20), nullable=False, default="dhash")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class DuplicateGroup(Base):
    """A proposed cluster of listings awaiting (or after) human resolution.

    ``member_key`` is the sorted, comma-joined member id list.  Together with
    ``status`` it is unique, which turns a lost race between two concurrent
    scans into an IntegrityError instead of a second identical group.
    """

    __tablename__ = "duplicate_groups"
    __table_args__ = (
        UniqueConstraint("member_key", "status", name="uq_duplicate_groups_member_key_status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    member_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", index=True
    )  # pending | confirmed | dismissed
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    members: Mapped[list["DuplicateGroupMember"]] = relationship(
        "DuplicateGroupMember",
        back_populates="group",
        cascade="all, delete-orphan",
    )


class DuplicateGroupMember(Base):
    __tablename__ = "duplicate_group_members"
    __table_args__ = (
        UniqueConstraint("group_id", "listing_id", name="uq_duplicate_group_members_group_listing"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    group_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("duplicate_groups.id", ondelete="CASCADE"), nullable=False
    )
    listing_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    similarity_reasons: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    group: Mapped["DuplicateGroup"] = relationship("DuplicateGroup", back_populates="members")


class DuplicateFalsePositive(Base):
    """A listing pair a reviewer confirmed is not a duplicate.

    The pair is stored sorted (``listing_id_a < listing_id_b``) so one
    unique constraint covers both orders.
    """

    __tablename__ = "duplicate_false_positives"
    __table_args__ = (
        UniqueConstraint("listing_id_a", "listing_id_b", name="uq_duplicate_false_positives_pair"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    listing_id_a: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    listing_id_b: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class DuplicateDetectionLog(Base):
    """Append-only audit trail of scans and resolution actions."""

    __tablename__ = "duplicate_detection_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    affected_listing_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )
