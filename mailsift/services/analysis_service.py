"""Email analysis service: the entry points callers use.

Composes the store, user context, cost ledger, invalidation and batch
processor into the analysis flows. Per-user flows analyze what is pending,
analyze or retry specific emails, and force a clean rescan. One system-wide
job retries recent failures across all users.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from mailsift.analyzers.analyzer_set import AnalyzerSet, build_default_analyzer_set
from mailsift.core.cost_ledger import CostLedger, LedgerStatus
from mailsift.core.exceptions import (
    AnalysisFailedError,
    NotFoundError,
    PersistenceError,
    QuotaExceeded,
    ValidationError,
)
from mailsift.core.usage_logger import UsageLogger
from mailsift.db.supabase import EmailStore
from mailsift.models.batch import BatchOptions, BatchRun, EmailOutcome, OutcomeStatus
from mailsift.services.batch_processor import BatchProcessor
from mailsift.services.email_processor import EmailProcessor
from mailsift.services.invalidation import DerivedCleanupWarning, InvalidationManager
from mailsift.services.user_context import UserContextProvider

logger = logging.getLogger(__name__)

RETRY_COOLDOWN = timedelta(hours=24)
RETRY_MAX_AGE = timedelta(days=7)


def _get_settings() -> Any:
    from mailsift.core.config import get_settings

    return get_settings()


@dataclass
class RescanResult:
    cleared_count: int
    batch: BatchRun
    warnings: list[DerivedCleanupWarning] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cleared_count": self.cleared_count,
            "stats": self.batch.to_dict(),
            "warnings": [{"table": w.table, "message": w.message} for w in self.warnings],
        }


@dataclass
class SingleEmailResult:
    email_id: str
    already_analyzed: bool = False
    outcome: EmailOutcome | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.outcome is None:
            return {"email_id": self.email_id, "already_analyzed": self.already_analyzed}
        return {
            "email_id": self.email_id,
            "already_analyzed": False,
            "category": self.outcome.category,
            "action_items": self.outcome.action_items,
            "failed_analyzers": list(self.outcome.failed_analyzers),
            "tokens_used": self.outcome.tokens_used,
            "processing_time_ms": self.outcome.processing_time_ms,
        }


@dataclass
class RetryAnalysisResult:
    requested: int
    found: int
    batch: BatchRun

    def to_dict(self) -> dict[str, Any]:
        return {"requested": self.requested, "found": self.found, "stats": self.batch.to_dict()}


@dataclass
class RetryFailedSummary:
    found: int = 0
    users: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    user_errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "found": self.found,
            "users": self.users,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "user_errors": dict(self.user_errors),
        }


class EmailAnalysisService:
    """Runs analysis batches for users."""

    def __init__(
        self,
        store: Any = None,
        analyzer_set: AnalyzerSet | None = None,
        usage_logger: UsageLogger | None = None,
        context_provider: UserContextProvider | None = None,
    ) -> None:
        self._store = store or EmailStore()
        analyzer_set = analyzer_set or build_default_analyzer_set()
        if usage_logger is None and isinstance(self._store, EmailStore):
            usage_logger = UsageLogger(self._store.client)
        self._contexts = context_provider or UserContextProvider(self._store)
        self._invalidation = InvalidationManager(self._store)
        self._batch = BatchProcessor(EmailProcessor(analyzer_set, self._store, usage_logger=usage_logger))

    @staticmethod
    def _check_limit(value: int | None, default: int, maximum: int, name: str) -> int:
        if value is None:
            return default
        if not 1 <= value <= maximum:
            raise ValidationError(f"{name} must be between 1 and {maximum}", field=name)
        return value

    async def _run(
        self,
        user_id: str,
        email_ids: list[str],
        skip_analyzed: bool,
        batch_size: int | None = None,
        ledger: CostLedger | None = None,
    ) -> BatchRun:
        emails = await self._store.fetch_by_ids(user_id, email_ids)
        context = await self._contexts.get(user_id)
        ledger = ledger or await CostLedger.load(user_id, self._store)
        return await self._batch.process_batch(
            emails,
            context,
            BatchOptions(batch_size=batch_size, skip_analyzed=skip_analyzed),
            ledger=ledger,
        )

    async def analyze_pending(
        self,
        user_id: str,
        limit: int | None = None,
        batch_size: int | None = None,
        skip_analyzed: bool = True,
    ) -> BatchRun:
        """Analyze the user's newest emails.

        With ``skip_analyzed`` (the default) only emails never analyzed and
        never failed are selected; otherwise the newest emails are re-run.
        """
        s = _get_settings()
        limit = self._check_limit(limit, s.RESCAN_DEFAULT_EMAILS, s.ANALYZE_MAX_EMAILS, "limit")
        email_ids = await self._store.select_email_ids(user_id, limit, unanalyzed_only=skip_analyzed)
        logger.info("BATCH: %d emails selected for user %s", len(email_ids), user_id)
        return await self._run(user_id, email_ids, skip_analyzed=skip_analyzed, batch_size=batch_size)

    async def analyze_email(self, user_id: str, email_id: str, force: bool = False) -> SingleEmailResult:
        """Analyze one of the user's emails.

        An already analyzed email is left alone unless ``force`` is set.

        Raises:
            NotFoundError: The email does not exist or belongs to another user.
            QuotaExceeded: The user's cost cap refused the work.
            AnalysisFailedError: The email could not be analyzed.
        """
        emails = await self._store.fetch_by_ids(user_id, [email_id])
        if not emails:
            raise NotFoundError("Email", email_id)
        if emails[0].analyzed_at is not None and not force:
            return SingleEmailResult(email_id=email_id, already_analyzed=True)

        ledger = await CostLedger.load(user_id, self._store)
        run = await self._run(user_id, [email_id], skip_analyzed=False, ledger=ledger)
        outcome = run.outcomes[0]
        if outcome.status is OutcomeStatus.SKIPPED_QUOTA:
            status = ledger.status()
            if status.monthly_remaining_usd < status.daily_remaining_usd:
                raise QuotaExceeded(user_id, "monthly", status.monthly_limit_usd, status.monthly_spent_usd)
            raise QuotaExceeded(user_id, "daily", status.daily_limit_usd, status.daily_spent_usd)
        if not outcome.ok:
            raise AnalysisFailedError(email_id, outcome.error_message or "unknown error")
        return SingleEmailResult(email_id=email_id, outcome=outcome)

    async def retry_analysis(self, user_id: str, email_ids: list[str]) -> RetryAnalysisResult:
        """Reset and re-run analysis for emails the user owns.

        IDs that do not exist or belong to someone else are ignored.

        Raises:
            ValidationError: If ``email_ids`` is empty, too long or has blank IDs.
            NotFoundError: If none of the IDs belong to the user.
        """
        s = _get_settings()
        requested = list(dict.fromkeys(email_ids))
        if not 1 <= len(requested) <= s.RETRY_ANALYSIS_MAX_EMAILS:
            raise ValidationError(
                f"email_ids must contain between 1 and {s.RETRY_ANALYSIS_MAX_EMAILS} IDs", field="email_ids"
            )
        if any(not isinstance(i, str) or not i.strip() for i in requested):
            raise ValidationError("email_ids must not contain blank IDs", field="email_ids")

        owned = [e.id for e in await self._store.fetch_by_ids(user_id, requested)]
        if not owned:
            raise NotFoundError("Emails", ", ".join(requested[:5]))
        await self._store.update_triage_fields(owned, {"analyzed_at": None, "analysis_error": None})
        logger.info("BATCH: retrying %d of %d requested emails for user %s", len(owned), len(requested), user_id)

        run = await self._run(user_id, owned, skip_analyzed=False)
        return RetryAnalysisResult(requested=len(requested), found=len(owned), batch=run)

    async def rescan(self, user_id: str, max_emails: int | None = None) -> RescanResult:
        """Invalidate and re-analyze the user's most recent emails.

        Raises:
            ValidationError: If ``max_emails`` is out of range.
            PersistenceError: If the emails' analysis fields could not be cleared.
        """
        s = _get_settings()
        max_emails = self._check_limit(max_emails, s.RESCAN_DEFAULT_EMAILS, s.RESCAN_MAX_EMAILS, "max_emails")
        email_ids = await self._store.select_email_ids(user_id, max_emails)

        invalidation = await self._invalidation.invalidate(email_ids)
        if invalidation.primary_clear_error is not None:
            raise PersistenceError(invalidation.primary_clear_error, table="emails")

        run = await self._run(user_id, email_ids, skip_analyzed=False)
        logger.info(
            "BATCH: rescan for user %s cleared %d, analyzed %d",
            user_id,
            invalidation.cleared_count,
            run.success_count,
        )
        return RescanResult(
            cleared_count=invalidation.cleared_count,
            batch=run,
            warnings=invalidation.derived_cleanup_warnings,
        )

    async def retry_failed(self, limit: int | None = None) -> RetryFailedSummary:
        """Re-run emails whose analysis failed between 24 hours and 7 days ago.

        Spans every user, so it is only reachable from the scheduled job route.
        """
        s = _get_settings()
        limit = self._check_limit(limit, s.RETRY_FAILED_MAX_EMAILS, s.RETRY_FAILED_MAX_EMAILS, "limit")
        now = datetime.now(UTC)
        rows = await self._store.select_failed_for_retry(now - RETRY_COOLDOWN, now - RETRY_MAX_AGE, limit)

        by_user: dict[str, list[str]] = {}
        for row in rows:
            by_user.setdefault(row["user_id"], []).append(row["id"])
        summary = RetryFailedSummary(found=len(rows), users=len(by_user))

        for user_id, email_ids in by_user.items():
            try:
                await self._store.update_triage_fields(email_ids, {"analysis_error": None})
                run = await self._run(user_id, email_ids, skip_analyzed=True)
            except PersistenceError as e:
                logger.warning("BATCH: retry for user %s aborted: %s", user_id, e)
                summary.user_errors[user_id] = e.message
                continue
            summary.succeeded += run.success_count
            summary.failed += run.failure_count
            summary.skipped += run.skipped_count

        logger.info("BATCH: retry-failed done", extra=summary.to_dict())
        return summary

    async def budget_status(self, user_id: str) -> LedgerStatus:
        ledger = await CostLedger.load(user_id, self._store)
        return ledger.status()


_service: EmailAnalysisService | None = None


def get_analysis_service() -> EmailAnalysisService:
    global _service
    if _service is None:
        _service = EmailAnalysisService()
    return _service
