"""Scheduled job routes.

Provides:
- POST /jobs/retry-failed-analyses: re-run recent failed analyses for every user

Authenticated by the shared ``JOB_SECRET`` bearer token, never by a user token.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from mailsift.api.deps import verify_job_secret
from mailsift.services.analysis_service import EmailAnalysisService, get_analysis_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[Depends(verify_job_secret)])


class RetryFailedRequest(BaseModel):
    limit: int | None = Field(None, ge=1)


def _get_service() -> EmailAnalysisService:
    return get_analysis_service()


@router.post("/retry-failed-analyses", status_code=status.HTTP_200_OK)
async def retry_failed_analyses(data: RetryFailedRequest | None = None) -> dict[str, Any]:
    """Retry analyses that failed between 24 hours and 7 days ago."""
    summary = await _get_service().retry_failed(data.limit if data else None)
    logger.info("JOB: retry-failed-analyses finished", extra=summary.to_dict())
    return {"success": True, **summary.to_dict()}
