"""Invalidation of prior analysis results ahead of a forced rescan.

Ordering is fixed: the emails' triage fields are cleared first, then each
derived table is purged. Clearing the parent is the step that matters; a
derived-table delete that fails is reported as a warning and the remaining
tables are still attempted.
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from mailsift.core.exceptions import PersistenceError, ValidationError
from mailsift.db.supabase import DERIVED_TABLES

logger = logging.getLogger(__name__)

# Content fields are never touched; only what an analysis pass wrote.
CLEARED_TRIAGE_FIELDS: dict[str, Any] = {
    "category": None,
    "summary": None,
    "quick_action": None,
    "labels": [],
    "analyzed_at": None,
    "analysis_error": None,
}


@dataclass
class DerivedCleanupWarning:
    table: str
    message: str


@dataclass
class InvalidationResult:
    """Outcome of one ``invalidate`` call.

    ``primary_clear_error`` is set when the emails' triage fields could not
    be cleared; in that case no derived rows were touched.
    """

    email_ids: list[str]
    cleared_count: int = 0
    primary_clear_error: str | None = None
    derived_cleanup_warnings: list[DerivedCleanupWarning] = field(default_factory=list)
    deleted_counts: dict[str, int] = field(default_factory=dict)
    invalidated_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.primary_clear_error is None and not self.derived_cleanup_warnings


class InvalidationManager:
    def __init__(
        self,
        store: Any,
        derived_tables: Sequence[str] = DERIVED_TABLES,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._store = store
        self._derived_tables = tuple(derived_tables)
        self._clock = clock

    async def invalidate(self, email_ids: Sequence[str]) -> InvalidationResult:
        """Clear analysis state for ``email_ids`` and purge their derived rows.

        Raises:
            ValidationError: If any ID is not a non-empty string. Nothing is
                written in that case.
        """
        for email_id in email_ids:
            if not isinstance(email_id, str) or not email_id.strip():
                raise ValidationError(f"Invalid email ID: {email_id!r}", field="email_ids")
        ids = list(dict.fromkeys(email_ids))
        result = InvalidationResult(email_ids=ids, invalidated_at=self._clock())
        if not ids:
            return result

        try:
            result.cleared_count = await self._store.update_triage_fields(ids, dict(CLEARED_TRIAGE_FIELDS))
        except PersistenceError as e:
            logger.error("INVALIDATE: failed to clear analysis fields for %d emails: %s", len(ids), e)
            result.primary_clear_error = e.message
            return result

        for table in self._derived_tables:
            try:
                result.deleted_counts[table] = await self._store.delete_where_email_id_in(table, ids)
            except PersistenceError as e:
                logger.warning(
                    "INVALIDATE: failed to delete %s rows for %d emails",
                    table,
                    len(ids),
                    exc_info=True,
                )
                result.derived_cleanup_warnings.append(DerivedCleanupWarning(table=table, message=e.message))

        logger.info(
            "INVALIDATE: cleared %d emails",
            result.cleared_count,
            extra={"deleted": result.deleted_counts, "warnings": len(result.derived_cleanup_warnings)},
        )
        return result
