"""Review queue API routes.

Provides:
- GET /emails/review-queue: the daily queue for the current user
- PATCH /emails/review-queue: mark one email reviewed
"""

import logging
from typing import Any

from fastapi import APIRouter, Query

from mailsift.api.deps import CurrentUser
from mailsift.db.supabase import EmailStore
from mailsift.models.review_queue import MarkReviewedRequest
from mailsift.services.review_queue import DEFAULT_LIMIT, ReviewQueueRanker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/emails/review-queue", tags=["review-queue"])


def _get_service() -> ReviewQueueRanker:
    """Get review queue ranker instance."""
    return ReviewQueueRanker(EmailStore())


@router.get("")
async def get_review_queue(
    current_user: CurrentUser,
    limit: int = Query(DEFAULT_LIMIT, description="Entries to return, clamped to 1-25"),
    include_reviewed: bool = Query(False, alias="includeReviewed"),
) -> dict[str, Any]:
    """Eligible emails for today's review, newest first."""
    page = await _get_service().select_queue(current_user.id, limit, include_reviewed)
    return page.model_dump(mode="json", by_alias=True)


@router.patch("")
async def mark_reviewed(data: MarkReviewedRequest, current_user: CurrentUser) -> dict[str, Any]:
    """Mark an email reviewed; it leaves the queue for 24 hours."""
    response = await _get_service().mark_reviewed(current_user.id, data.email_id)
    logger.info("Email marked reviewed via API", extra={"user_id": current_user.id, "email_id": data.email_id})
    return response.model_dump(mode="json", by_alias=True)
