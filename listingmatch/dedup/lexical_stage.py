"""Lexical signal: string and numeric proximity per listing field.

String fields are compared with rapidfuzz's normalized Indel ratio on the
normalized text, which is symmetric and exactly 1.0 for identical non-empty
strings.  Numeric fields use relative distance to the pair average:

    max(0, 1 - |a - b| / avg(a, b))

Missing values on either side score 0 for that field.  The composite is the
field-weighted sum from the WeightProfile.
"""

from __future__ import annotations

from rapidfuzz import fuzz

from listingmatch.dedup.normalize import address_string, normalize_text
from listingmatch.dedup.profile import WeightProfile
from listingmatch.dedup.records import PropertyRecord


def string_similarity(a: str | None, b: str | None) -> float:
    """Edit-distance ratio in [0, 1] between two normalized strings."""
    norm_a = normalize_text(a)
    norm_b = normalize_text(b)
    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return 1.0
    return fuzz.ratio(norm_a, norm_b) / 100.0


def numeric_similarity(a: float | None, b: float | None) -> float:
    """Relative proximity of two non-negative numbers, 0 if either is missing."""
    if a is None or b is None:
        return 0.0
    if a == b:
        return 1.0
    avg = (a + b) / 2
    if avg <= 0:
        return 0.0
    return max(0.0, 1.0 - abs(a - b) / avg)


def field_scores(record_a: PropertyRecord, record_b: PropertyRecord) -> dict[str, float]:
    """Per-field lexical scores for a pair."""
    return {
        "title": string_similarity(record_a.title, record_b.title),
        "address": string_similarity(address_string(record_a), address_string(record_b)),
        "description": string_similarity(record_a.description, record_b.description),
        "rent": numeric_similarity(record_a.monthly_rent, record_b.monthly_rent),
        "size": numeric_similarity(record_a.square_meters, record_b.square_meters),
    }


def lexical_score(
    record_a: PropertyRecord,
    record_b: PropertyRecord,
    profile: WeightProfile,
) -> tuple[float, dict[str, float]]:
    """Compute the composite lexical score for a pair.

    Returns:
        Tuple of (composite score in [0, 1], per-field score dict).
    """
    scores = field_scores(record_a, record_b)
    weights = profile.field_weights
    composite = sum(weights[name] * score for name, score in scores.items())
    return min(1.0, max(0.0, composite)), scores
