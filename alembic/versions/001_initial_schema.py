"""Initial schema: listings, fingerprint cache, duplicate groups, audit log.

Revision ID: 001
Revises:
Create Date: 2026-10-19

Creates:
- listings                  : property listings with cached JSON embeddings (combined, title, description)
- listing_media             : ordered image URLs per listing
- listing_image_hashes      : perceptual fingerprint cache keyed by (listing_id, media_url)
- duplicate_groups          : proposed duplicate clusters and their review status
- duplicate_group_members   : group membership with per-member similarity reasons
- duplicate_false_positives : reviewer-confirmed non-duplicate pairs (stored sorted)
- duplicate_detection_log   : append-only audit trail of scans and review actions

Design notes:
- Embeddings are a JSON float array; cosine similarity runs in the application.
- uq_duplicate_groups_member_key_status turns a concurrent double insert of
  the same group into an IntegrityError.
- uq_duplicate_false_positives_pair covers both pair orders because ids are
  stored sorted.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers used by Alembic
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # 1. listings
    op.create_table(
        "listings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("owner_id", sa.String(255), nullable=False),
        sa.Column("title", sa.Text, nullable=False, server_default=""),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("street_number", sa.String(32), nullable=True),
        sa.Column("street_name", sa.String(255), nullable=True),
        sa.Column("city", sa.String(255), nullable=True),
        sa.Column("zip_code", sa.String(32), nullable=True),
        sa.Column("monthly_rent", sa.Float, nullable=True),
        sa.Column("square_meters", sa.Float, nullable=True),
        sa.Column("bedrooms", sa.Integer, nullable=True),
        sa.Column("bathrooms", sa.Float, nullable=True),
        sa.Column("embedding", sa.JSON, nullable=True),
        sa.Column("title_embedding", sa.JSON, nullable=True),
        sa.Column("description_embedding", sa.JSON, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_listings_owner_id", "listings", ["owner_id"])
    op.create_index("ix_listings_created_at", "listings", ["created_at"])

    # 2. listing_media
    op.create_table(
        "listing_media",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "listing_id",
            sa.String(36),
            sa.ForeignKey("listings.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("media_url", sa.String(2048), nullable=False),
        sa.Column("position", sa.Integer, nullable=False, server_default="0"),
    )
    op.create_index("ix_listing_media_listing_id", "listing_media", ["listing_id"])

    # 3. listing_image_hashes: upsert target for the fingerprint cache
    op.create_table(
        "listing_image_hashes",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("listing_id", sa.String(36), nullable=False),
        sa.Column("media_url", sa.String(2048), nullable=False),
        sa.Column("hash_value", sa.String(1024), nullable=False),
        sa.Column("hash_type", sa.String(20), nullable=False, server_default="dhash"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("listing_id", "media_url", name="uq_listing_image_hashes_listing_url"),
    )
    op.create_index("ix_listing_image_hashes_media_url", "listing_image_hashes", ["media_url"])

    # 4. duplicate_groups
    op.create_table(
        "duplicate_groups",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("member_key", sa.String(1024), nullable=False),
        sa.Column("confidence_score", sa.Float, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("reviewed_by", sa.String(255), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("member_key", "status", name="uq_duplicate_groups_member_key_status"),
    )
    op.create_index("ix_duplicate_groups_status", "duplicate_groups", ["status"])

    # 5. duplicate_group_members
    op.create_table(
        "duplicate_group_members",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "group_id",
            sa.String(36),
            sa.ForeignKey("duplicate_groups.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("listing_id", sa.String(36), nullable=False),
        sa.Column("similarity_reasons", sa.JSON, nullable=False),
        sa.UniqueConstraint(
            "group_id", "listing_id", name="uq_duplicate_group_members_group_listing"
        ),
    )
    op.create_index(
        "ix_duplicate_group_members_listing_id", "duplicate_group_members", ["listing_id"]
    )

    # 6. duplicate_false_positives
    op.create_table(
        "duplicate_false_positives",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("listing_id_a", sa.String(36), nullable=False),
        sa.Column("listing_id_b", sa.String(36), nullable=False),
        sa.Column("actor_id", sa.String(255), nullable=True),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("listing_id_a", "listing_id_b", name="uq_duplicate_false_positives_pair"),
    )
    op.create_index(
        "ix_duplicate_false_positives_listing_id_a", "duplicate_false_positives", ["listing_id_a"]
    )
    op.create_index(
        "ix_duplicate_false_positives_listing_id_b", "duplicate_false_positives", ["listing_id_b"]
    )

    # 7. duplicate_detection_log
    op.create_table(
        "duplicate_detection_log",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("actor_id", sa.String(255), nullable=True),
        sa.Column("affected_listing_ids", sa.JSON, nullable=False),
        sa.Column("details", sa.JSON, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_duplicate_detection_log_action_type", "duplicate_detection_log", ["action_type"]
    )
    op.create_index(
        "ix_duplicate_detection_log_created_at", "duplicate_detection_log", ["created_at"]
    )


def downgrade() -> None:
    op.drop_table("duplicate_detection_log")
    op.drop_table("duplicate_false_positives")
    op.drop_table("duplicate_group_members")
    op.drop_table("duplicate_groups")
    op.drop_table("listing_image_hashes")
    op.drop_table("listing_media")
    op.drop_table("listings")
