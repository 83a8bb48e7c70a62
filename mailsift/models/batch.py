"""Batch run models.

``BatchRun`` is ephemeral: created when a batch starts, mutated only through
``mailsift.services.batch_processor.BatchAccumulator`` and returned to the
caller when the batch ends.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

ProgressCallback = Callable[[int, int], Awaitable[None] | None]
ErrorCallback = Callable[[str, str], Awaitable[None] | None]


class OutcomeStatus(str, Enum):
    """How one email settled within a batch."""

    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED_ANALYZED = "skipped_analyzed"
    SKIPPED_QUOTA = "skipped_quota"
    SKIPPED_CANCELLED = "skipped_cancelled"


@dataclass
class BatchOptions:
    """Knobs for one ``process_batch`` call."""

    batch_size: int | None = None
    per_email_concurrency: int | None = None
    skip_analyzed: bool = True
    on_progress: ProgressCallback | None = None
    on_error: ErrorCallback | None = None
    cancel_event: asyncio.Event | None = None


@dataclass
class EmailOutcome:
    """Result of pushing one email through the pipeline."""

    email_id: str
    status: OutcomeStatus
    category: str | None = None
    action_items: int = 0
    tokens_used: int = 0
    cost_usd: float = 0.0
    processing_time_ms: int = 0
    error_type: str | None = None
    error_message: str | None = None
    failed_analyzers: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS


@dataclass
class BatchError:
    """A failed email, as reported to the caller."""

    email_id: str
    error_type: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"email_id": self.email_id, "error_type": self.error_type, "error": self.message}


@dataclass
class BatchRun:
    """Aggregate statistics for one batch invocation."""

    total_emails: int
    started_at: datetime
    finished_at: datetime | None = None
    success_count: int = 0
    failure_count: int = 0
    skipped_analyzed_count: int = 0
    skipped_quota_count: int = 0
    skipped_cancelled_count: int = 0
    completed: int = 0
    categorized: dict[str, int] = field(default_factory=dict)
    emails_with_actions: int = 0
    action_items_created: int = 0
    total_tokens: int = 0
    estimated_cost_usd: float = 0.0
    total_time_ms: int = 0
    quota_exhausted: bool = False
    cancelled: bool = False
    errors: list[BatchError] = field(default_factory=list)
    outcomes: list[EmailOutcome] = field(default_factory=list)

    @property
    def skipped_count(self) -> int:
        """Emails that were neither analyzed successfully nor failed."""
        return self.skipped_analyzed_count + self.skipped_quota_count + self.skipped_cancelled_count

    @property
    def processed_count(self) -> int:
        return self.success_count + self.failure_count

    @property
    def avg_time_per_email_ms(self) -> float:
        if self.processed_count == 0:
            return 0.0
        return round(self.total_time_ms / self.processed_count, 1)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses and logs."""
        return {
            "total_emails": self.total_emails,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "skipped_count": self.skipped_count,
            "skipped_analyzed_count": self.skipped_analyzed_count,
            "skipped_quota_count": self.skipped_quota_count,
            "skipped_cancelled_count": self.skipped_cancelled_count,
            "categorized": dict(self.categorized),
            "emails_with_actions": self.emails_with_actions,
            "action_items_created": self.action_items_created,
            "total_tokens": self.total_tokens,
            "estimated_cost_usd": round(self.estimated_cost_usd, 6),
            "total_time_ms": self.total_time_ms,
            "avg_time_per_email_ms": self.avg_time_per_email_ms,
            "quota_exhausted": self.quota_exhausted,
            "cancelled": self.cancelled,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "errors": [e.to_dict() for e in self.errors],
        }
