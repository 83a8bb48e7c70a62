"""Email analysis API routes.

Provides:
- POST /emails/analyze: analyze the current user's newest emails
- POST /emails/{email_id}/analyze: analyze one email
- POST /emails/retry-analysis: reset and re-run chosen emails
- POST /emails/rescan: invalidate and re-analyze recent emails

Every route acts only on the current user's emails.
"""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Header, status
from pydantic import BaseModel, Field

from mailsift.api.deps import CurrentUser
from mailsift.services.analysis_service import EmailAnalysisService, get_analysis_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/emails", tags=["emails"])


class AnalyzeRequest(BaseModel):
    max_emails: int | None = Field(None, ge=1, alias="maxEmails", description="Newest emails to analyze")
    batch_size: int | None = Field(None, ge=1, le=20, alias="batchSize", description="Emails in flight at once")
    skip_already_analyzed: bool = Field(True, alias="skipAlreadyAnalyzed")

    model_config = {"populate_by_name": True}


class RetryAnalysisRequest(BaseModel):
    email_ids: list[str] = Field(..., min_length=1, max_length=100, alias="emailIds")

    model_config = {"populate_by_name": True}


class RescanRequest(BaseModel):
    max_emails: int | None = Field(None, ge=1, alias="maxEmails", description="Most recent emails to rescan")

    model_config = {"populate_by_name": True}


def _get_service() -> EmailAnalysisService:
    """Get the analysis service instance."""
    return get_analysis_service()


@router.post("/analyze", status_code=status.HTTP_200_OK)
async def analyze_pending(current_user: CurrentUser, data: AnalyzeRequest | None = None) -> dict[str, Any]:
    """Analyze the user's newest emails, by default only those not yet analyzed."""
    data = data or AnalyzeRequest()
    service = _get_service()
    run = await service.analyze_pending(
        current_user.id,
        data.max_emails,
        batch_size=data.batch_size,
        skip_analyzed=data.skip_already_analyzed,
    )
    logger.info(
        "Emails analyzed via API",
        extra={"user_id": current_user.id, "success": run.success_count, "failed": run.failure_count},
    )
    return {"success": True, "stats": run.to_dict()}


@router.post("/retry-analysis", status_code=status.HTTP_200_OK)
async def retry_analysis(current_user: CurrentUser, data: RetryAnalysisRequest) -> dict[str, Any]:
    """Clear the analysis state of the given emails and analyze them again."""
    result = await _get_service().retry_analysis(current_user.id, data.email_ids)
    logger.info(
        "Retry analysis via API",
        extra={"user_id": current_user.id, "requested": result.requested, "found": result.found},
    )
    return {"success": True, **result.to_dict()}


@router.post("/rescan", status_code=status.HTTP_200_OK)
async def rescan(current_user: CurrentUser, data: RescanRequest | None = None) -> dict[str, Any]:
    """Clear prior analysis for recent emails and analyze them again."""
    service = _get_service()
    result = await service.rescan(current_user.id, data.max_emails if data else None)
    logger.info(
        "Rescan completed via API",
        extra={"user_id": current_user.id, "cleared": result.cleared_count},
    )
    return {"success": True, **result.to_dict()}


@router.post("/{email_id}/analyze", status_code=status.HTTP_200_OK)
async def analyze_email(
    email_id: str,
    current_user: CurrentUser,
    x_force_reanalyze: Annotated[bool, Header()] = False,
) -> dict[str, Any]:
    """Analyze one email. Send ``X-Force-Reanalyze: true`` to redo an analyzed email."""
    result = await _get_service().analyze_email(current_user.id, email_id, force=x_force_reanalyze)
    return {"success": True, **result.to_dict()}
