"""Weight profile shared by the incremental and full-scan entry points.

A single WeightProfile carries every weight and threshold the engine uses.
It is built once from settings (``WeightProfile.from_settings``) and passed
explicitly into the scorers and the aggregator; nothing reads weights from
the environment at compute time.

Missing-signal policy: a signal that could not be computed contributes 0 to
the confidence.  Weights are never renormalized over the available signals,
so a pair with no images or a failed embedding is systematically held below
the thresholds it would otherwise clear.
"""

from __future__ import annotations

import math

from pydantic import BaseModel, Field, model_validator

_SUM_TOLERANCE = 1e-6


class WeightProfile(BaseModel):
    """Signal weights, lexical field weights and classification thresholds."""

    # Signal weights
    lexical: float = Field(default=0.25, ge=0.0, le=1.0)
    semantic: float = Field(default=0.50, ge=0.0, le=1.0)
    visual: float = Field(default=0.25, ge=0.0, le=1.0)

    # Lexical field weights
    title: float = Field(default=0.40, ge=0.0, le=1.0)
    address: float = Field(default=0.30, ge=0.0, le=1.0)
    description: float = Field(default=0.20, ge=0.0, le=1.0)
    rent: float = Field(default=0.05, ge=0.0, le=1.0)
    size: float = Field(default=0.05, ge=0.0, le=1.0)

    # Semantic composition: max(combined, title_share*title + (1-title_share)*description)
    semantic_title_share: float = Field(default=0.60, ge=0.0, le=1.0)

    # Classification
    overall_threshold: float = Field(default=0.70, ge=0.0, le=1.0)
    duplicate_threshold: float = Field(default=0.85, ge=0.0, le=1.0)

    # Explanation tags (review context only, never used to classify)
    title_tag_threshold: float = 0.85
    address_tag_threshold: float = 0.80
    description_tag_threshold: float = 0.85
    numeric_tag_threshold: float = 0.90
    semantic_tag_threshold: float = 0.90
    visual_tag_threshold: float = 0.95
    high_confidence_threshold: float = 0.90

    @model_validator(mode="after")
    def _check_sums(self) -> "WeightProfile":
        signal_sum = self.lexical + self.semantic + self.visual
        if not math.isclose(signal_sum, 1.0, abs_tol=_SUM_TOLERANCE):
            raise ValueError(f"signal weights must sum to 1.0, got {signal_sum:.6f}")
        field_sum = self.title + self.address + self.description + self.rent + self.size
        if not math.isclose(field_sum, 1.0, abs_tol=_SUM_TOLERANCE):
            raise ValueError(f"lexical field weights must sum to 1.0, got {field_sum:.6f}")
        if self.duplicate_threshold < self.overall_threshold:
            raise ValueError("duplicate_threshold must not be below overall_threshold")
        return self

    @property
    def field_weights(self) -> dict[str, float]:
        return {
            "title": self.title,
            "address": self.address,
            "description": self.description,
            "rent": self.rent,
            "size": self.size,
        }

    @classmethod
    def from_settings(cls, settings=None) -> "WeightProfile":
        """Build the profile from application settings (defaults to the global ones)."""
        if settings is None:
            from listingmatch.config import settings  # noqa: PLC0415

        return cls(
            lexical=settings.weight_lexical,
            semantic=settings.weight_semantic,
            visual=settings.weight_visual,
            title=settings.field_weight_title,
            address=settings.field_weight_address,
            description=settings.field_weight_description,
            rent=settings.field_weight_rent,
            size=settings.field_weight_size,
            semantic_title_share=settings.semantic_title_share,
            overall_threshold=settings.overall_threshold,
            duplicate_threshold=settings.duplicate_threshold,
            title_tag_threshold=settings.title_tag_threshold,
            address_tag_threshold=settings.address_tag_threshold,
            description_tag_threshold=settings.description_tag_threshold,
            numeric_tag_threshold=settings.numeric_tag_threshold,
            semantic_tag_threshold=settings.semantic_tag_threshold,
            visual_tag_threshold=settings.visual_tag_threshold,
            high_confidence_threshold=settings.high_confidence_threshold,
        )
