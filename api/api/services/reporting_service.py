"""Organization-scoped review analytics and CSV export."""

from __future__ import annotations

import csv
import io
import logging
import statistics
from datetime import UTC, datetime, timedelta
from typing import Any

from review_core.state.repository import LocationRepository, ReplyRepository, ReviewRepository
from review_core.state.tables import ReviewReplyTable, ReviewTable
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# CSV injection prevention
# ---------------------------------------------------------------------------

_CSV_DANGEROUS_CHARS = frozenset({"=", "+", "-", "@", "\t", "\r"})


def _sanitize_csv_value(value: Any) -> Any:
    """Prevent CSV formula injection by prefixing dangerous values.

    Cells starting with ``=``, ``+``, ``-``, ``@``, ``\\t``, or ``\\r``
    are interpreted as formulas by spreadsheet applications.  Prefixing
    with a single-quote neutralises this while keeping the value readable.
    """
    if isinstance(value, str) and value and value[0] in _CSV_DANGEROUS_CHARS:
        return "'" + value
    return value


_VALID_EXPORT_TYPES = frozenset({"reviews", "replies"})
_RECENT_WINDOW = timedelta(days=7)


def _response_hours(review: ReviewTable, reply: ReviewReplyTable | None) -> float | None:
    if reply is None or reply.posted_at is None:
        return None
    return (reply.posted_at - review.published_at).total_seconds() / 3600


def _first_posted(replies: list[ReviewReplyTable]) -> ReviewReplyTable | None:
    posted = [r for r in replies if r.state == "posted" and r.posted_at is not None]
    return min(posted, key=lambda r: r.posted_at) if posted else None


def _date(value: datetime | None) -> str:
    return value.date().isoformat() if value is not None else ""


class ReportingService:
    """Per-organization KPIs and exports."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def kpis(self, days: int = 30, *, now: datetime | None = None) -> dict[str, Any]:
        """Compute review KPIs for reviews published in the last *days* days.

        Returns
        -------
        dict
            ``total_reviews``, ``avg_rating``, ``response_rate`` (percent),
            ``median_response_hours``, ``rating_distribution``,
            ``recent_count``, ``replied`` and ``unreplied``.
        """
        now = now or datetime.now(UTC)
        since = now - timedelta(days=days)
        reviews = await ReviewRepository(self._session).list_since(self._tenant_id, since)
        replies_by_review = await ReplyRepository(self._session).list_for_reviews([r.id for r in reviews])

        rated = [r.rating for r in reviews if r.rating > 0]
        response_hours: list[float] = []
        replied = 0
        for review in reviews:
            first = _first_posted(replies_by_review.get(review.id, []))
            if first is None:
                continue
            replied += 1
            hours = _response_hours(review, first)
            if hours is not None:
                response_hours.append(hours)

        total = len(reviews)
        return {
            "period_days": days,
            "total_reviews": total,
            "avg_rating": round(sum(rated) / len(rated), 1) if rated else 0.0,
            "response_rate": round(replied / total * 100, 1) if total else 0.0,
            "median_response_hours": round(statistics.median(response_hours), 1) if response_hours else 0.0,
            "rating_distribution": {str(star): sum(1 for r in reviews if r.rating == star) for star in range(1, 6)},
            "recent_count": sum(1 for r in reviews if r.published_at >= now - _RECENT_WINDOW),
            "replied": replied,
            "unreplied": total - replied,
        }

    async def export_csv(self, report_type: str = "reviews") -> tuple[bytes, str, str]:
        """Export reviews or posted replies as CSV.

        Returns
        -------
        tuple
            ``(data_bytes, content_type, filename)``

        Raises
        ------
        ValueError
            If *report_type* is not ``reviews`` or ``replies``.
        """
        if report_type not in _VALID_EXPORT_TYPES:
            raise ValueError(f"Unsupported export type '{report_type}'. Valid: {sorted(_VALID_EXPORT_TYPES)}")

        locations = await LocationRepository(self._session, self._tenant_id).list_active()
        location_names = {loc.id: loc.name for loc in locations}

        if report_type == "reviews":
            header, rows = await self._review_rows(location_names)
        else:
            header, rows = await self._reply_rows(location_names)

        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(header)
        for row in rows:
            writer.writerow([_sanitize_csv_value(cell) for cell in row])

        date_str = datetime.now(UTC).strftime("%Y-%m-%d")
        filename = f"{report_type}-export-{date_str}.csv"
        logger.info("CSV export org=%s type=%s rows=%d", self._tenant_id, report_type, len(rows))
        return output.getvalue().encode("utf-8"), "text/csv", filename

    async def _review_rows(self, location_names: dict[str, str]) -> tuple[list[str], list[list[Any]]]:
        reviews = await ReviewRepository(self._session).list_since(self._tenant_id)
        replies_by_review = await ReplyRepository(self._session).list_for_reviews([r.id for r in reviews])
        header = [
            "review_id",
            "location",
            "platform",
            "author",
            "rating",
            "content",
            "published_at",
            "status",
            "reply_text",
            "replied_at",
            "response_hours",
        ]
        rows: list[list[Any]] = []
        for review in reviews:
            first = _first_posted(replies_by_review.get(review.id, []))
            hours = _response_hours(review, first)
            rows.append(
                [
                    review.id,
                    location_names.get(review.location_id, ""),
                    review.platform,
                    review.author or "Anonymous",
                    review.rating,
                    review.content,
                    _date(review.published_at),
                    "replied" if first is not None else "no_reply",
                    first.posted_text if first is not None else "",
                    _date(first.posted_at) if first is not None else "",
                    f"{hours:.2f}" if hours is not None else "",
                ]
            )
        return header, rows

    async def _reply_rows(self, location_names: dict[str, str]) -> tuple[list[str], list[list[Any]]]:
        posted = await ReplyRepository(self._session).list_posted_for_organization(self._tenant_id)
        header = [
            "reply_id",
            "review_id",
            "location",
            "review_author",
            "review_rating",
            "review_content",
            "reply_text",
            "replied_at",
            "response_hours",
        ]
        rows: list[list[Any]] = []
        for reply, review in posted:
            hours = _response_hours(review, reply)
            rows.append(
                [
                    reply.id,
                    review.id,
                    location_names.get(review.location_id, ""),
                    review.author or "Anonymous",
                    review.rating,
                    review.content,
                    reply.posted_text or "",
                    _date(reply.posted_at),
                    f"{hours:.2f}" if hours is not None else "",
                ]
            )
        return header, rows
