"""Daily review queue: the small, rotating set of emails worth a human glance.

Eligibility is four hard gates (not archived, high or medium signal, dated
within the last 7 days, not reviewed in the last 24 hours). Ranking is
recency alone.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from mailsift.core.exceptions import NotFoundError, ValidationError
from mailsift.models.review_queue import (
    MarkReviewedResponse,
    QueueStats,
    ReviewQueueEntry,
    ReviewQueuePage,
)

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
MAX_LIMIT = 25
WINDOW = timedelta(days=7)
REREVIEW_AFTER = timedelta(hours=24)
ELIGIBLE_SIGNALS = ("high", "medium")
NEEDS_REPLY = ("must_reply", "should_reply")


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_LIMIT
    return max(1, min(int(limit), MAX_LIMIT))


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class ReviewQueueRanker:
    """Selects and ranks the review queue for one user."""

    def __init__(self, store: Any, clock: Callable[[], datetime] = lambda: datetime.now(UTC)) -> None:
        self._store = store
        self._clock = clock

    def _eligible(self, row: dict[str, Any], now: datetime, include_reviewed: bool) -> ReviewQueueEntry | None:
        if row.get("is_archived"):
            return None
        if row.get("signal_strength") not in ELIGIBLE_SIGNALS:
            return None
        try:
            entry = ReviewQueueEntry.model_validate(row)
        except PydanticValidationError:
            logger.warning("REVIEW_QUEUE: skipping malformed row %s", row.get("id"))
            return None
        if _aware(entry.date) < now - WINDOW:
            return None
        if not include_reviewed and entry.reviewed_at is not None:
            if _aware(entry.reviewed_at) >= now - REREVIEW_AFTER:
                return None
        return entry

    async def select_queue(
        self,
        user_id: str,
        limit: int | None = DEFAULT_LIMIT,
        include_reviewed: bool = False,
    ) -> ReviewQueuePage:
        """Eligible emails for ``user_id``, newest first.

        ``stats`` counts the returned page; ``stats.total_in_queue`` counts
        the full eligible set.
        """
        limit = clamp_limit(limit)
        now = self._clock()
        rows, total = await self._store.select_review_candidates(
            user_id=user_id,
            since=now - WINDOW,
            signal_strengths=ELIGIBLE_SIGNALS,
            reviewed_before=None if include_reviewed else now - REREVIEW_AFTER,
            limit=limit,
        )

        entries = [e for e in (self._eligible(row, now, include_reviewed) for row in rows) if e is not None]
        rejected = len(rows) - len(entries)
        if rejected:
            logger.warning("REVIEW_QUEUE: %d rows failed eligibility re-check for user %s", rejected, user_id)

        entries.sort(key=lambda e: _aware(e.date), reverse=True)
        entries = entries[:limit]
        for rank, entry in enumerate(entries, start=1):
            entry.rank = rank

        stats = QueueStats(
            total_in_queue=max(total - rejected, len(entries)),
            returned_count=len(entries),
            high_signal=sum(1 for e in entries if e.signal_strength == "high"),
            medium_signal=sum(1 for e in entries if e.signal_strength == "medium"),
            needs_reply=sum(1 for e in entries if e.reply_worthiness in NEEDS_REPLY),
            unread=sum(1 for e in entries if not e.is_read),
        )
        logger.info(
            "REVIEW_QUEUE: returned %d of %d for user %s",
            stats.returned_count,
            stats.total_in_queue,
            user_id,
        )
        return ReviewQueuePage(items=entries, stats=stats, last_updated=now)

    async def mark_reviewed(self, user_id: str, email_id: str) -> MarkReviewedResponse:
        """Stamp ``reviewed_at = now`` on an email owned by ``user_id``.

        Raises:
            ValidationError: If ``email_id`` is blank.
            NotFoundError: If the user owns no such email.
        """
        if not isinstance(email_id, str) or not email_id.strip():
            raise ValidationError("emailId is required", field="emailId")
        reviewed_at = self._clock()
        if not await self._store.mark_reviewed(user_id, email_id, reviewed_at):
            raise NotFoundError("Email", email_id)
        logger.info("REVIEW_QUEUE: email %s marked reviewed", email_id, extra={"user_id": user_id})
        return MarkReviewedResponse(success=True, email_id=email_id, reviewed_at=reviewed_at)
