"""Tests for record normalization and the lexical signal."""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from conftest import make_record
from listingmatch.dedup.lexical_stage import (
    field_scores,
    lexical_score,
    numeric_similarity,
    string_similarity,
)
from listingmatch.dedup.normalize import address_string, combined_text, normalize_text


class TestNormalizeText:
    def test_lowercases_and_strips_punctuation(self) -> None:
        assert normalize_text("Sunny, 2-Bedroom FLAT!") == "sunny 2 bedroom flat"

    def test_collapses_whitespace(self) -> None:
        assert normalize_text("  lots \t of\n\nspace  ") == "lots of space"

    @pytest.mark.parametrize("value", [None, "", "   ", "\n\t"])
    def test_blank_input_is_empty(self, value) -> None:
        assert normalize_text(value) == ""

    def test_keeps_unicode_letters(self) -> None:
        assert normalize_text("Schöne Straße") == "schöne straße"


class TestAddressString:
    def test_joins_components_in_order(self) -> None:
        record = make_record("a", street_number="12a", street_name="Linden-Avenue", city="Berlin", zip_code="10117")
        assert address_string(record) == "12a linden avenue berlin 10117"

    def test_skips_missing_components(self) -> None:
        record = make_record("a", street_number=None, zip_code=None)
        assert address_string(record) == "linden avenue berlin"

    def test_combined_text_includes_address(self) -> None:
        record = make_record("a", title="Loft", description=None)
        assert combined_text(record) == "loft 12 linden avenue berlin 10117"


class TestStringSimilarity:
    def test_identical_after_normalization(self) -> None:
        assert string_similarity("Bright Flat!", "bright   flat") == 1.0

    @pytest.mark.parametrize("a,b", [(None, "flat"), ("flat", None), ("", "flat"), ("!!!", "flat")])
    def test_missing_side_scores_zero(self, a, b) -> None:
        assert string_similarity(a, b) == 0.0

    def test_partial_overlap_is_between_bounds(self) -> None:
        score = string_similarity("bright two bedroom flat", "bright three bedroom flat")
        assert 0.5 < score < 1.0

    @given(st.text(max_size=40), st.text(max_size=40))
    @settings(max_examples=50)
    def test_symmetric_and_bounded(self, a: str, b: str) -> None:
        forward = string_similarity(a, b)
        assert forward == string_similarity(b, a)
        assert 0.0 <= forward <= 1.0

    @given(st.text(alphabet="abc", min_size=1, max_size=30), st.data())
    @settings(max_examples=50)
    def test_more_edits_never_score_higher(self, base: str, data) -> None:
        """Overwriting a longer prefix with foreign characters never raises the score."""
        k = data.draw(st.integers(min_value=0, max_value=len(base) - 1))
        fewer = "z" * k + base[k:]
        more = "z" * (k + 1) + base[k + 1:]
        assert string_similarity(base, fewer) >= string_similarity(base, more)
        assert string_similarity(base, fewer) == pytest.approx(1 - k / len(base))


class TestNumericSimilarity:
    def test_equal_values(self) -> None:
        assert numeric_similarity(1450.0, 1450.0) == 1.0

    def test_relative_distance_to_average(self) -> None:
        assert numeric_similarity(1000.0, 1100.0) == pytest.approx(1 - 100 / 1050)

    def test_far_apart_floors_at_zero(self) -> None:
        assert numeric_similarity(10.0, 1000.0) == 0.0

    @pytest.mark.parametrize("a,b", [(None, 5.0), (5.0, None), (None, None)])
    def test_missing_scores_zero(self, a, b) -> None:
        assert numeric_similarity(a, b) == 0.0

    def test_both_zero_counts_as_equal(self) -> None:
        assert numeric_similarity(0.0, 0.0) == 1.0

    @given(
        st.floats(min_value=0, max_value=1e6, allow_nan=False),
        st.floats(min_value=0, max_value=1e6, allow_nan=False),
    )
    @settings(max_examples=50)
    def test_symmetric_and_bounded(self, a: float, b: float) -> None:
        score = numeric_similarity(a, b)
        assert score == pytest.approx(numeric_similarity(b, a))
        assert 0.0 <= score <= 1.0


class TestLexicalScore:
    def test_identical_records_score_one(self, profile) -> None:
        composite, fields = lexical_score(make_record("a"), make_record("b"), profile)
        assert composite == pytest.approx(1.0)
        assert set(fields) == {"title", "address", "description", "rent", "size"}

    def test_missing_description_drops_its_weight(self, profile) -> None:
        composite, fields = lexical_score(make_record("a", description=None), make_record("b"), profile)
        assert fields["description"] == 0.0
        assert composite == pytest.approx(1.0 - profile.description)

    def test_field_scores_are_order_independent(self) -> None:
        a = make_record("a", title="Sunny loft", monthly_rent=1200.0)
        b = make_record("b", title="Sunny attic loft", monthly_rent=1300.0)
        assert field_scores(a, b) == field_scores(b, a)
