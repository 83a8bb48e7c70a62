"""Usage API routes: the current user's analysis budget."""

import logging

from fastapi import APIRouter, status

from mailsift.api.deps import CurrentUser
from mailsift.core.cost_ledger import LedgerStatus
from mailsift.services.analysis_service import EmailAnalysisService, get_analysis_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage", tags=["usage"])


def _get_service() -> EmailAnalysisService:
    return get_analysis_service()


@router.get("/budget", response_model=LedgerStatus, status_code=status.HTTP_200_OK)
async def get_budget(current_user: CurrentUser) -> LedgerStatus:
    """Spend, reservations and remaining budget (lightweight, for UI polling)."""
    return await _get_service().budget_status(current_user.id)
