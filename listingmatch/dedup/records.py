"""Shared data types for the duplicate-detection engine.

PropertyRecord is the backend-agnostic listing representation every scorer
works on; the repository maps ORM rows to it.  SimilarityResult is the
ephemeral per-pair output and is only persisted (as a DuplicateGroup) when it
clears the overall threshold.
"""

from __future__ import annotations

import datetime
import enum
from dataclasses import dataclass, field
from typing import Any

from listingmatch.errors import InvalidRecord


class Classification(str, enum.Enum):
    """Outcome of a pairwise comparison."""

    UNIQUE = "unique"
    POTENTIAL = "potential"
    DUPLICATE = "duplicate"


class GroupStatus(str, enum.Enum):
    """Lifecycle of a persisted duplicate group."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    DISMISSED = "dismissed"


@dataclass
class PropertyRecord:
    """A listing as seen by the detection engine.

    ``embedding`` is the cached combined-text vector; None means the record
    has not been embedded yet (or an update invalidated the vector).
    ``title_embedding`` and ``description_embedding`` cache the per-field
    vectors the same way and stay None for a blank field.
    """

    id: str
    owner_id: str
    title: str = ""
    description: str | None = None
    street_name: str | None = None
    street_number: str | None = None
    city: str | None = None
    zip_code: str | None = None
    monthly_rent: float | None = None
    square_meters: float | None = None
    bedrooms: int | None = None
    bathrooms: float | None = None
    image_urls: list[str] = field(default_factory=list)
    created_at: datetime.datetime | None = None
    embedding: list[float] | None = None
    title_embedding: list[float] | None = None
    description_embedding: list[float] | None = None

    def validate(self) -> None:
        """Raise InvalidRecord if the record cannot take part in a comparison."""
        if not self.id:
            raise InvalidRecord("record id is required")
        if not self.owner_id:
            raise InvalidRecord(f"record {self.id} has no owner id")
        for name in ("monthly_rent", "square_meters"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise InvalidRecord(f"record {self.id}: {name} must not be negative")


@dataclass
class SignalScores:
    """Per-signal scores for one pair, each in [0, 1]."""

    lexical: float = 0.0
    semantic: float = 0.0
    visual: float = 0.0
    field_scores: dict[str, float] = field(default_factory=dict)


@dataclass
class SimilarityResult:
    """Scored comparison of a target record against one existing record."""

    record_id: str
    matched_record_id: str
    scores: SignalScores
    confidence: float
    classification: Classification
    explanation: list[str] = field(default_factory=list)

    @property
    def is_match(self) -> bool:
        return self.classification is not Classification.UNIQUE

    def similarity_reasons(self) -> list[str]:
        """Explanation tags plus the raw signal scores, as stored on group members."""
        return [
            *self.explanation,
            f"lexical_score:{self.scores.lexical:.3f}",
            f"semantic_score:{self.scores.semantic:.3f}",
            f"visual_score:{self.scores.visual:.3f}",
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "matched_record_id": self.matched_record_id,
            "confidence": round(self.confidence, 4),
            "classification": self.classification.value,
            "explanation": list(self.explanation),
            "scores": {
                "lexical": round(self.scores.lexical, 4),
                "semantic": round(self.scores.semantic, 4),
                "visual": round(self.scores.visual, 4),
            },
        }


@dataclass
class ScanSummary:
    """Outcome of a full-corpus scan, mirrored into the detection log entry."""

    records_scanned: int = 0
    comparisons_made: int = 0
    duplicates_found: int = 0
    groups_created: int = 0
    groups_skipped: int = 0
    skipped_same_owner: int = 0
    skipped_false_positive: int = 0
    records_missing: int = 0
    embedding_failures: int = 0
    image_failures: int = 0
    interrupted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "records_scanned": self.records_scanned,
            "comparisons_made": self.comparisons_made,
            "duplicates_found": self.duplicates_found,
            "groups_created": self.groups_created,
            "groups_skipped": self.groups_skipped,
            "skipped_same_owner": self.skipped_same_owner,
            "skipped_false_positive": self.skipped_false_positive,
            "records_missing": self.records_missing,
            "embedding_failures": self.embedding_failures,
            "image_failures": self.image_failures,
            "interrupted": self.interrupted,
        }


def pair_key(record_id_a: str, record_id_b: str) -> tuple[str, str]:
    """Order-independent key for an unordered record pair."""
    return (record_id_a, record_id_b) if record_id_a <= record_id_b else (record_id_b, record_id_a)
