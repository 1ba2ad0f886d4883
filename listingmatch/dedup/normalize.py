"""Record normalizer: canonical comparable shapes for raw listing fields.

Every scorer goes through these helpers so that two records are always
compared on the same representation:

  normalize_text   lowercase, punctuation to space, whitespace collapsed
  address_string   street number + street name + city + zip, normalized
  combined_text    title + description + address, the text that is embedded
"""

from __future__ import annotations

import re

from listingmatch.dedup.records import PropertyRecord

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str | None) -> str:
    """Lowercase, replace punctuation with spaces and collapse whitespace.

    Returns "" for None or whitespace-only input.
    """
    if not text:
        return ""
    text = _NON_WORD.sub(" ", text.lower())
    return _WHITESPACE.sub(" ", text).strip()


def address_string(record: PropertyRecord) -> str:
    """Concatenate the address components of *record* into one normalized string."""
    parts = [record.street_number, record.street_name, record.city, record.zip_code]
    return normalize_text(" ".join(p for p in parts if p))


def combined_text(record: PropertyRecord) -> str:
    """Text used for the record-level embedding: title, description and address."""
    parts = [record.title, record.description or "", address_string(record)]
    return normalize_text(" ".join(p for p in parts if p))
