"""ListingMatch: duplicate detection for independently entered property listings.

Scores pairs of listing records across lexical, semantic and visual evidence
and proposes duplicate groups for human review.
"""

__version__ = "0.1.0"
