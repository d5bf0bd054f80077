"""Parse Google Business Profile review payloads into a fixed record shape.

The v4 reviews API is loose about field names and types: the id may arrive
as ``reviewId`` or only as the resource ``name``, the star rating may be an
integer, a digit string or an enum word (``"FOUR"``), and the reviewer may
be an object or a bare string.  Everything downstream of
:func:`parse_review_record` works with :class:`UpstreamReview` only.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_AUTHOR = "Customer"
DEFAULT_PLATFORM = "google"

# Column widths of reviews.author and reviews.external_id.
MAX_AUTHOR_LENGTH = 256
MAX_EXTERNAL_ID_LENGTH = 512

_DIGIT_RE = re.compile(r"\d")

_RATING_WORDS: dict[str, int] = {
    "ONE": 1,
    "TWO": 2,
    "THREE": 3,
    "FOUR": 4,
    "FIVE": 5,
}

# Resource-name prefixes that already identify a review fully.
_QUALIFIED_PREFIXES: tuple[str, ...] = ("locations/", "accounts/")


@dataclass(frozen=True)
class UpstreamReview:
    """A review record as fetched from the platform, after normalization.

    ``rating`` is ``None`` when the upstream value could not be understood;
    the store persists that as 0.
    """

    external_id: str
    author: str
    rating: int | None
    content: str
    published_at: datetime
    platform: str = DEFAULT_PLATFORM
    review_url: str | None = None

    @property
    def stored_rating(self) -> int:
        return self.rating if self.rating is not None else 0


def normalize_star_rating(value: Any) -> int | None:
    """Coerce an upstream star rating into ``1..5`` or ``None``.

    * ``4`` / ``4.0`` → ``4``
    * ``"4 stars"`` → ``4`` (first digit in the string)
    * ``"FOUR"`` → ``4``
    * anything else (including NaN and infinity), or a value outside 1-5
      → ``None``
    """
    rating: int | None = None
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, (int, float)):
        rating = int(value)
    elif isinstance(value, str):
        word = _RATING_WORDS.get(value.strip().upper())
        if word is not None:
            rating = word
        else:
            match = _DIGIT_RE.search(value)
            if match:
                rating = int(match.group(0))
    if rating is None or not 1 <= rating <= 5:
        return None
    return rating


def _parse_timestamp(value: Any) -> datetime | None:
    """Parse an RFC 3339 timestamp such as ``2024-05-01T10:00:00.123Z``."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Python's parser accepts at most microsecond precision.
    text = re.sub(r"(\.\d{6})\d+", r"\1", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable review timestamp: %r", value)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _extract_author(reviewer: Any) -> str:
    name = reviewer.get("displayName") if isinstance(reviewer, dict) else reviewer
    if isinstance(name, str) and name.strip():
        return name.strip()[:MAX_AUTHOR_LENGTH]
    return DEFAULT_AUTHOR


def parse_review_record(raw: Any, now: datetime | None = None) -> UpstreamReview | None:
    """Normalize one upstream review, or return ``None`` if it has no id.

    Parameters
    ----------
    raw:
        One element of the ``reviews`` array returned by the platform.
    now:
        Timestamp used when the record has no usable ``createTime``.
    """
    if not isinstance(raw, dict):
        return None

    external_id = raw.get("reviewId") or raw.get("name")
    if not isinstance(external_id, str) or not external_id:
        logger.warning("Skipping upstream review without reviewId/name")
        return None
    if len(external_id) > MAX_EXTERNAL_ID_LENGTH:
        logger.warning("Skipping upstream review with an oversized id (%d chars)", len(external_id))
        return None

    content = raw.get("comment") or raw.get("text") or ""
    if not isinstance(content, str):
        content = str(content)

    published_at = _parse_timestamp(raw.get("createTime")) or now or datetime.now(UTC)

    review_url = raw.get("reviewUrl") or raw.get("url")

    return UpstreamReview(
        external_id=external_id,
        author=_extract_author(raw.get("reviewer")),
        rating=normalize_star_rating(raw.get("starRating")),
        content=content,
        published_at=published_at,
        platform=DEFAULT_PLATFORM,
        review_url=review_url if isinstance(review_url, str) else None,
    )


def build_review_name(location_external_id: str, review_external_id: str) -> str:
    """Return the resource name the reply endpoint expects for a review.

    Review ids that are already fully qualified resource paths are returned
    unchanged; bare ids are composed under the location.
    """
    if review_external_id.startswith(_QUALIFIED_PREFIXES):
        return review_external_id
    return f"{location_external_id.rstrip('/')}/reviews/{review_external_id}"
