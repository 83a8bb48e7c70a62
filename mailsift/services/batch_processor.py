"""Batch orchestration: bounded fan-out of emails through the pipeline.

Every worker reports its ``EmailOutcome`` to one ``BatchAccumulator``; the
accumulator is the only thing that touches the ``BatchRun`` while the batch
is in flight.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any

from mailsift.core.cost_ledger import CostLedger, Permit
from mailsift.core.exceptions import QuotaExceeded, ValidationError
from mailsift.models.batch import (
    BatchError,
    BatchOptions,
    BatchRun,
    EmailOutcome,
    ErrorCallback,
    OutcomeStatus,
    ProgressCallback,
)
from mailsift.models.email import EmailRecord, UserContext
from mailsift.services.email_processor import EmailProcessor

logger = logging.getLogger(__name__)


def _get_settings() -> Any:
    from mailsift.core.config import get_settings

    return get_settings()


async def _call(callback: Callable[..., Any], *args: Any) -> None:
    """Invoke a sync or async callback. Callback errors are logged, never raised."""
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.warning("BATCH: callback %r raised", callback, exc_info=True)


class BatchAccumulator:
    """Serialized owner of a ``BatchRun``.

    Aggregation is commutative (counts and sums), so the final statistics do
    not depend on the order in which emails settle. Errors are reported in
    input order.
    """

    def __init__(
        self,
        run: BatchRun,
        email_ids: Sequence[str],
        on_progress: ProgressCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self._run = run
        self._position = {email_id: i for i, email_id in enumerate(email_ids)}
        self._on_progress = on_progress
        self._on_error = on_error
        self._lock = asyncio.Lock()
        self._started = time.monotonic()

    @property
    def quota_exhausted(self) -> bool:
        return self._run.quota_exhausted

    async def mark_quota_exhausted(self) -> None:
        async with self._lock:
            self._run.quota_exhausted = True

    async def record(self, outcome: EmailOutcome) -> None:
        """Fold one settled email into the run and notify callbacks."""
        async with self._lock:
            run = self._run
            run.outcomes.append(outcome)
            run.total_tokens += outcome.tokens_used
            run.estimated_cost_usd += outcome.cost_usd

            if outcome.status == OutcomeStatus.SUCCESS:
                run.success_count += 1
                if outcome.category:
                    run.categorized[outcome.category] = run.categorized.get(outcome.category, 0) + 1
                if outcome.action_items > 0:
                    run.emails_with_actions += 1
                    run.action_items_created += outcome.action_items
            elif outcome.status == OutcomeStatus.FAILURE:
                run.failure_count += 1
                run.errors.append(
                    BatchError(
                        email_id=outcome.email_id,
                        error_type=outcome.error_type or "Error",
                        message=outcome.error_message or "",
                    )
                )
            elif outcome.status == OutcomeStatus.SKIPPED_ANALYZED:
                run.skipped_analyzed_count += 1
            elif outcome.status == OutcomeStatus.SKIPPED_QUOTA:
                run.skipped_quota_count += 1
            else:
                run.skipped_cancelled_count += 1
                run.cancelled = True

            run.completed += 1
            completed = run.completed

            if outcome.status == OutcomeStatus.FAILURE and self._on_error is not None:
                await _call(self._on_error, outcome.email_id, outcome.error_message or "")
            if self._on_progress is not None:
                await _call(self._on_progress, completed, run.total_emails)

    def finalize(self) -> BatchRun:
        run = self._run
        run.errors.sort(key=lambda e: self._position.get(e.email_id, len(self._position)))
        run.outcomes.sort(key=lambda o: self._position.get(o.email_id, len(self._position)))
        run.total_time_ms = int((time.monotonic() - self._started) * 1000)
        run.finished_at = datetime.now(UTC)
        return run


class BatchProcessor:
    """Dispatches emails through an ``EmailProcessor`` with bounded concurrency."""

    def __init__(self, email_processor: EmailProcessor) -> None:
        self._processor = email_processor

    def _validate(
        self,
        emails: Sequence[EmailRecord],
        context: UserContext,
        batch_size: int,
        per_email_concurrency: int,
        ledger: CostLedger | None,
    ) -> None:
        if batch_size < 1:
            raise ValidationError("batch_size must be >= 1", field="batch_size")
        if per_email_concurrency < 1:
            raise ValidationError("per_email_concurrency must be >= 1", field="per_email_concurrency")
        seen: set[str] = set()
        for email in emails:
            if not email.id or not email.id.strip():
                raise ValidationError("Email ID must be a non-empty string", field="email_id")
            if email.id in seen:
                raise ValidationError(f"Duplicate email ID in batch: {email.id}", field="email_id")
            seen.add(email.id)
            if email.user_id and email.user_id != context.user_id:
                raise ValidationError(
                    f"Email {email.id} does not belong to user {context.user_id}",
                    field="email_id",
                )
        if ledger is not None and ledger.user_id != context.user_id:
            raise ValidationError("Cost ledger belongs to a different user", field="ledger")

    async def process_batch(
        self,
        emails: Sequence[EmailRecord],
        context: UserContext,
        options: BatchOptions | None = None,
        ledger: CostLedger | None = None,
    ) -> BatchRun:
        """Analyze ``emails`` and return the aggregated ``BatchRun``.

        At most ``batch_size`` emails are in flight at once. When ``ledger``
        is given, each email reserves its estimated cost before dispatch; the
        first refusal stops dispatch and the remaining emails settle as
        skipped for quota.

        Raises:
            ValidationError: If options or email IDs are malformed. Raised
                before any work is dispatched.
        """
        options = options or BatchOptions()
        s = _get_settings()
        batch_size = s.BATCH_SIZE if options.batch_size is None else options.batch_size
        per_email = (
            s.BATCH_PER_EMAIL_CONCURRENCY if options.per_email_concurrency is None else options.per_email_concurrency
        )
        self._validate(emails, context, batch_size, per_email, ledger)

        run = BatchRun(total_emails=len(emails), started_at=datetime.now(UTC))
        accumulator = BatchAccumulator(run, [e.id for e in emails], options.on_progress, options.on_error)
        semaphore = asyncio.Semaphore(batch_size)
        cancel_event = options.cancel_event

        logger.info(
            "BATCH: starting %d emails for user %s (batch_size=%d, skip_analyzed=%s)",
            len(emails),
            context.user_id,
            batch_size,
            options.skip_analyzed,
        )

        async def handle(email: EmailRecord) -> None:
            if options.skip_analyzed and email.analyzed_at is not None:
                await accumulator.record(EmailOutcome(email_id=email.id, status=OutcomeStatus.SKIPPED_ANALYZED))
                return

            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    await accumulator.record(EmailOutcome(email_id=email.id, status=OutcomeStatus.SKIPPED_CANCELLED))
                    return
                if accumulator.quota_exhausted:
                    await accumulator.record(EmailOutcome(email_id=email.id, status=OutcomeStatus.SKIPPED_QUOTA))
                    return

                permit: Permit | None = None
                if ledger is not None:
                    try:
                        permit = await ledger.reserve(self._processor.estimate_tokens(email))
                    except QuotaExceeded as e:
                        logger.warning(
                            "BATCH: %s quota exhausted for user %s, halting dispatch",
                            e.period,
                            context.user_id,
                        )
                        await accumulator.mark_quota_exhausted()
                        await accumulator.record(EmailOutcome(email_id=email.id, status=OutcomeStatus.SKIPPED_QUOTA))
                        return

                try:
                    outcome = await self._processor.process(email, context, per_email)
                except Exception as e:
                    logger.exception("BATCH: unexpected error processing email %s", email.id)
                    if ledger is not None and permit is not None:
                        await ledger.release(permit)
                    outcome = EmailOutcome(
                        email_id=email.id,
                        status=OutcomeStatus.FAILURE,
                        error_type=type(e).__name__,
                        error_message=str(e),
                    )
                else:
                    if ledger is not None and permit is not None:
                        await ledger.commit(permit, outcome.tokens_used, outcome.cost_usd)
            await accumulator.record(outcome)

        await asyncio.gather(*(handle(email) for email in emails))
        run = accumulator.finalize()

        logger.info(
            "BATCH: complete for user %s: %d succeeded, %d failed, %d skipped, %d tokens, $%.4f",
            context.user_id,
            run.success_count,
            run.failure_count,
            run.skipped_count,
            run.total_tokens,
            run.estimated_cost_usd,
            extra={"categorized": run.categorized, "quota_exhausted": run.quota_exhausted},
        )
        return run
