"""Confidence aggregation, classification and explanation tags.

    confidence = w_lex * lexical + w_sem * semantic + w_vis * visual

Classification uses only the confidence:

    confidence >= duplicate_threshold  -> duplicate
    confidence >= overall_threshold    -> potential
    otherwise                          -> unique

The per-field explanation tags ("title:92%", "rent:exact", "media:match", ...)
come from independent sub-thresholds and exist for reviewer context only.
"""

from __future__ import annotations

from listingmatch.dedup.profile import WeightProfile
from listingmatch.dedup.records import Classification, SignalScores, SimilarityResult


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


def confidence(scores: SignalScores, profile: WeightProfile) -> float:
    """Weighted sum of the three signals; a missing signal contributes 0."""
    return _clamp(
        profile.lexical * _clamp(scores.lexical)
        + profile.semantic * _clamp(scores.semantic)
        + profile.visual * _clamp(scores.visual)
    )


def classify(value: float, profile: WeightProfile) -> Classification:
    if value >= profile.duplicate_threshold:
        return Classification.DUPLICATE
    if value >= profile.overall_threshold:
        return Classification.POTENTIAL
    return Classification.UNIQUE


def _percent(score: float) -> str:
    return f"{round(score * 100)}%"


def explanation_tags(scores: SignalScores, profile: WeightProfile) -> list[str]:
    """Human-readable reasons for reviewers, one per signal that cleared its tag threshold."""
    tags: list[str] = []
    fields = scores.field_scores

    for name, threshold in (
        ("title", profile.title_tag_threshold),
        ("address", profile.address_tag_threshold),
        ("description", profile.description_tag_threshold),
    ):
        value = fields.get(name, 0.0)
        if value >= threshold:
            tags.append(f"{name}:{_percent(value)}")

    for name in ("rent", "size"):
        value = fields.get(name, 0.0)
        if value > profile.numeric_tag_threshold:
            tags.append(f"{name}:{'exact' if value >= 1.0 else 'similar'}")

    if scores.semantic >= profile.semantic_tag_threshold:
        tags.append(f"semantic:{_percent(scores.semantic)}")
    if scores.visual >= profile.visual_tag_threshold:
        tags.append("media:match")
    return tags


def build_result(
    record_id: str,
    matched_record_id: str,
    scores: SignalScores,
    profile: WeightProfile,
) -> SimilarityResult:
    """Aggregate *scores* into a classified SimilarityResult."""
    value = confidence(scores, profile)
    return SimilarityResult(
        record_id=record_id,
        matched_record_id=matched_record_id,
        scores=scores,
        confidence=value,
        classification=classify(value, profile),
        explanation=explanation_tags(scores, profile),
    )


def rank(results: list[SimilarityResult]) -> list[SimilarityResult]:
    """Order results by descending confidence; ties broken by matched record id."""
    return sorted(results, key=lambda r: (-r.confidence, r.matched_record_id))
