"""Single-email pipeline: analyze, aggregate, persist, derive.

All analyzer results for an email are collected before anything is
aggregated or written. An email fails when a required analyzer fails, when
every analyzer fails, or when the primary analysis write fails; derived-row
inserts are best effort.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from datetime import UTC, date, datetime
from typing import Any

from mailsift.analyzers.analyzer_set import AnalyzerSet
from mailsift.core.exceptions import PersistenceError
from mailsift.core.usage_logger import UsageLogger
from mailsift.models.analysis import (
    ActionType,
    AnalyzerFailure,
    AnalyzerSuccess,
    EmailAnalysis,
    EventDetails,
)
from mailsift.models.batch import EmailOutcome, OutcomeStatus
from mailsift.models.email import EmailRecord, UserContext
from mailsift.services.normalizer import ResultNormalizer

logger = logging.getLogger(__name__)

DEFAULT_ACTION_TITLE = "Action Required"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _is_iso_date(value: str | None) -> bool:
    if not value:
        return False
    try:
        date.fromisoformat(value[:10])
    except ValueError:
        return False
    return True


# ---------------------------------------------------------------------------
# Derived rows and triage fields
# ---------------------------------------------------------------------------


def build_action_rows(analysis: EmailAnalysis, email: EmailRecord) -> list[dict[str, Any]]:
    """One ``actions`` row per concrete action item."""
    extraction = analysis.action_extraction
    if extraction is None or not extraction.has_action:
        return []
    rows = []
    for index, item in enumerate(extraction.actions):
        if item.type == ActionType.NONE and not item.title:
            continue
        rows.append(
            {
                "email_id": email.id,
                "user_id": email.user_id,
                "type": item.type.value,
                "title": item.title or DEFAULT_ACTION_TITLE,
                "description": item.description,
                "urgency_score": extraction.urgency_score,
                "due_date": item.deadline if _is_iso_date(item.deadline) else None,
                "estimated_minutes": item.estimated_minutes,
                "priority": item.priority or None,
                "is_primary": index == extraction.primary_action_index,
                "status": "pending",
                "source": "ai",
            }
        )
    return rows


def _event_date_row(event: EventDetails, email: EmailRecord, extracted_by: str) -> dict[str, Any]:
    return {
        "user_id": email.user_id,
        "email_id": email.id,
        "date_type": "event",
        "date": event.event_date[:10],
        "event_time": event.event_time,
        "end_date": event.event_end_date[:10] if _is_iso_date(event.event_end_date) else None,
        "end_time": event.event_end_time,
        "title": event.event_title,
        "description": event.event_summary,
        "confidence": event.confidence,
        "extracted_by": extracted_by,
    }


def build_date_rows(analysis: EmailAnalysis, email: EmailRecord) -> list[dict[str, Any]]:
    """``extracted_dates`` rows for dated items and detected events with a parseable date."""
    rows: list[dict[str, Any]] = []
    if analysis.date_extraction is not None:
        for item in analysis.date_extraction.dates:
            if not _is_iso_date(item.date):
                continue
            rows.append(
                {
                    "user_id": email.user_id,
                    "email_id": email.id,
                    "date_type": item.date_type.value,
                    "date": item.date[:10],
                    "event_time": item.time,
                    "end_date": item.end_date[:10] if _is_iso_date(item.end_date) else None,
                    "end_time": item.end_time,
                    "title": item.title or item.date_type.value.replace("_", " ").capitalize(),
                    "description": item.description,
                    "source_snippet": item.source_snippet,
                    "related_entity": item.related_entity,
                    "is_recurring": item.is_recurring,
                    "recurrence_pattern": item.recurrence_pattern.value if item.recurrence_pattern else None,
                    "confidence": item.confidence,
                    "extracted_by": "date_extractor",
                }
            )
    event = analysis.event_detection
    if event is not None and event.has_event and _is_iso_date(event.event_date):
        rows.append(_event_date_row(event, email, "event_detector"))
    multi = analysis.multi_event_detection
    if multi is not None and multi.has_multiple_events:
        rows.extend(
            _event_date_row(e, email, "multi_event_detector") for e in multi.events if _is_iso_date(e.event_date)
        )
    return rows


def build_triage_fields(analysis: EmailAnalysis, analyzed_at: datetime) -> dict[str, Any]:
    """Email columns written back after a successful analysis."""
    fields: dict[str, Any] = {"analyzed_at": analyzed_at.isoformat(), "analysis_error": None}
    cat = analysis.categorization
    if cat is not None:
        fields.update(
            category=cat.category,
            summary=cat.summary,
            quick_action=cat.quick_action.value if cat.quick_action else None,
            labels=cat.labels,
            signal_strength=cat.signal_strength.value if cat.signal_strength else None,
            reply_worthiness=cat.reply_worthiness.value if cat.reply_worthiness else None,
        )
    if analysis.content_digest is not None and analysis.content_digest.gist:
        fields["gist"] = analysis.content_digest.gist
    client = analysis.client_tagging
    if client is not None and client.client_match and client.client_id:
        fields["client_id"] = client.client_id
    return fields


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------


class EmailProcessor:
    """Runs the analyzer set for one email and persists the outcome."""

    def __init__(
        self,
        analyzer_set: AnalyzerSet,
        store: Any,
        normalizer: ResultNormalizer | None = None,
        usage_logger: UsageLogger | None = None,
        required_analyzers: Iterable[str] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if required_analyzers is None:
            from mailsift.core.config import get_settings

            required_analyzers = get_settings().required_analyzers
        self.analyzer_set = analyzer_set
        self._store = store
        self._normalizer = normalizer or ResultNormalizer()
        self._usage_logger = usage_logger
        required = set(required_analyzers)
        self._required = [name for name in analyzer_set.names if name in required]
        self._clock = clock

    def estimate_tokens(self, email: EmailRecord) -> int:
        return self.analyzer_set.estimate_tokens(email)

    async def process(
        self,
        email: EmailRecord,
        context: UserContext,
        concurrency: int = 4,
    ) -> EmailOutcome:
        """Analyze ``email`` and persist the result. Never raises for analyzer or store failures."""
        start = time.monotonic()
        results = await self.analyzer_set.run_all(email, context, concurrency=concurrency)
        elapsed_ms = int((time.monotonic() - start) * 1000)
        tokens = sum(r.tokens_used for r in results.values())
        cost = sum(r.cost_usd for r in results.values())
        failed = [name for name, r in results.items() if not r.ok]

        await self._log_usage(email, context, results)

        outcome = EmailOutcome(
            email_id=email.id,
            status=OutcomeStatus.SUCCESS,
            tokens_used=tokens,
            cost_usd=cost,
            processing_time_ms=elapsed_ms,
            failed_analyzers=failed,
        )

        blocking = self._blocking_failure(results)
        if blocking is not None:
            outcome.status = OutcomeStatus.FAILURE
            outcome.error_type = blocking.error_type
            outcome.error_message = blocking.error_message
            await self._record_error(email, blocking.error_message)
            return outcome

        analyzed_at = self._clock()
        analysis = EmailAnalysis(
            email_id=email.id,
            user_id=email.user_id,
            tokens_used=tokens,
            processing_time_ms=elapsed_ms,
            analyzed_at=analyzed_at,
            **{
                self.analyzer_set.slot_for(name): r.payload
                for name, r in results.items()
                if isinstance(r, AnalyzerSuccess)
            },
        )

        try:
            await self._store.upsert_analysis(self._normalizer.to_raw_row(analysis))
            outcome.action_items = await self._insert_derived(analysis, email)
            await self._store.update_triage_fields([email.id], build_triage_fields(analysis, analyzed_at))
        except PersistenceError as e:
            logger.error("BATCH: failed to persist analysis for email %s: %s", email.id, e)
            outcome.status = OutcomeStatus.FAILURE
            outcome.error_type = type(e).__name__
            outcome.error_message = e.message
            return outcome

        outcome.category = analysis.categorization.category if analysis.categorization else None
        logger.info(
            "Email analyzed",
            extra={
                "email_id": email.id,
                "category": outcome.category,
                "tokens": tokens,
                "failed_analyzers": failed,
                "action_items": outcome.action_items,
            },
        )
        return outcome

    def _blocking_failure(self, results: dict[str, AnalyzerSuccess | AnalyzerFailure]) -> AnalyzerFailure | None:
        for name in self._required:
            result = results.get(name)
            if isinstance(result, AnalyzerFailure):
                return result
        failures = [r for r in results.values() if isinstance(r, AnalyzerFailure)]
        if failures and len(failures) == len(results):
            return failures[0]
        if not results:
            return AnalyzerFailure(analyzer="", error_type="AnalyzerError", error_message="No analyzers enabled")
        return None

    async def _insert_derived(self, analysis: EmailAnalysis, email: EmailRecord) -> int:
        """Insert action items and extracted dates. Failures are logged, not raised."""
        action_rows = build_action_rows(analysis, email)
        date_rows = build_date_rows(analysis, email)
        inserted_actions = 0
        try:
            inserted_actions = await self._store.insert_action_items(action_rows)
        except PersistenceError:
            logger.warning("Failed to create action items", extra={"email_id": email.id}, exc_info=True)
        try:
            await self._store.insert_extracted_dates(date_rows)
        except PersistenceError:
            logger.warning("Failed to create extracted dates", extra={"email_id": email.id}, exc_info=True)
        return inserted_actions

    async def _record_error(self, email: EmailRecord, message: str) -> None:
        try:
            await self._store.update_triage_fields([email.id], {"analysis_error": message[:500]})
        except PersistenceError:
            logger.warning("Failed to record analysis error", extra={"email_id": email.id}, exc_info=True)

    async def _log_usage(
        self,
        email: EmailRecord,
        context: UserContext,
        results: dict[str, AnalyzerSuccess | AnalyzerFailure],
    ) -> None:
        if self._usage_logger is None:
            return
        await asyncio.gather(
            *(
                self._usage_logger.log(
                    user_id=context.user_id,
                    analyzer_name=name,
                    model=getattr(r, "model", ""),
                    email_id=email.id,
                    input_tokens=getattr(r, "input_tokens", 0),
                    output_tokens=getattr(r, "output_tokens", 0),
                    cost_usd=r.cost_usd,
                    duration_ms=r.processing_time_ms,
                    success=r.ok,
                    error_message=None if r.ok else getattr(r, "error_message", None),
                )
                for name, r in results.items()
            )
        )
