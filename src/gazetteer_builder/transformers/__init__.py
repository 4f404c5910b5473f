"""
Transformers Module - Name folding, ranking and timezone enrichment

This module provides the per-record transforms used by the ingest pipeline:
- names: Canonical keys, match simplification, phonetic keys
- ranking: Search rank scoring for places
- timezones: Grid-bucketed timezone polygons and the timezone fallback chain

Pipeline Stage: Between feed parsing and classification
Input:  Raw GeoNames records
Output: Keyed, ranked, timezone-annotated places
"""

from .names import (
    canonical_key,
    simplify,
    close_match,
    fix_rearranged_name,
    phonetic_keys,
    plain_ascii_upper,
    strip_diacritics,
)

from .ranking import (
    rank_place,
)

from .timezones import (
    TimezonePolygon,
    TimezoneIndex,
    TimezoneResolver,
    load_timezone_polygons,
    fetch_timezone_shapes,
    get_timezone_index,
)

__all__ = [
    # Names
    "canonical_key",
    "simplify",
    "close_match",
    "fix_rearranged_name",
    "phonetic_keys",
    "plain_ascii_upper",
    "strip_diacritics",
    # Ranking
    "rank_place",
    # Timezones
    "TimezonePolygon",
    "TimezoneIndex",
    "TimezoneResolver",
    "load_timezone_polygons",
    "fetch_timezone_shapes",
    "get_timezone_index",
]
