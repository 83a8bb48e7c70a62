"""Models package for Mailsift."""

from mailsift.models.analysis import (
    ANALYZER_VERSION,
    AnalyzerFailure,
    AnalyzerResult,
    AnalyzerSuccess,
    EmailAnalysis,
)
from mailsift.models.batch import BatchOptions, BatchRun, EmailOutcome, OutcomeStatus
from mailsift.models.email import EmailRecord, UserContext
from mailsift.models.review_queue import ReviewQueueEntry, ReviewQueuePage

__all__ = [
    "ANALYZER_VERSION",
    "AnalyzerFailure",
    "AnalyzerResult",
    "AnalyzerSuccess",
    "BatchOptions",
    "BatchRun",
    "EmailAnalysis",
    "EmailOutcome",
    "EmailRecord",
    "OutcomeStatus",
    "ReviewQueueEntry",
    "ReviewQueuePage",
    "UserContext",
]
