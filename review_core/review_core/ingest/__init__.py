"""Normalization of upstream review-platform records."""

from review_core.ingest.records import (
    UpstreamReview,
    build_review_name,
    normalize_star_rating,
    parse_review_record,
)

__all__ = [
    "UpstreamReview",
    "build_review_name",
    "normalize_star_rating",
    "parse_review_record",
]
