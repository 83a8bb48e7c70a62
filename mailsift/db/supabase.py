"""Supabase client and the email store used by the analysis pipeline."""

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any, TypeVar, cast

from mailsift.core.exceptions import PersistenceError, ValidationError
from mailsift.core.resilience import CircuitBreaker, CircuitBreakerOpen, supabase_circuit_breaker
from mailsift.models.email import EmailRecord
from supabase import Client, create_client

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Tables whose rows exist only because of an analysis pass.
DERIVED_TABLES: tuple[str, ...] = ("actions", "extracted_dates")

REVIEW_QUEUE_COLUMNS = (
    "id, subject, sender_email, sender_name, date, snippet, gist, category, "
    "signal_strength, reply_worthiness, quick_action, labels, is_read, reviewed_at, summary"
)


def _get_settings() -> Any:
    from mailsift.core.config import get_settings

    return get_settings()


class SupabaseClient:
    """Singleton Supabase client for backend operations."""

    _client: Client | None = None

    @classmethod
    def get_client(cls) -> Client:
        """Get or create the Supabase client singleton.

        Raises:
            PersistenceError: If client initialization fails.
        """
        if cls._client is None:
            s = _get_settings()
            try:
                cls._client = create_client(
                    s.SUPABASE_URL,
                    s.SUPABASE_SERVICE_ROLE_KEY.get_secret_value(),
                )
                logger.info("Supabase client initialized successfully")
            except Exception as e:
                logger.exception("Failed to initialize Supabase client")
                raise PersistenceError(f"Failed to initialize database connection: {e}") from e
        return cls._client

    @classmethod
    def reset_client(cls) -> None:
        """Reset the client singleton (useful for testing)."""
        cls._client = None


class EmailStore:
    """The pipeline's view of the database.

    The supabase-py client is synchronous; every query runs in a worker
    thread so persistence overlaps with in-flight model calls.
    """

    def __init__(
        self,
        client: Client | None = None,
        circuit_breaker: CircuitBreaker = supabase_circuit_breaker,
    ) -> None:
        self._client = client
        self._breaker = circuit_breaker

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = SupabaseClient.get_client()
        return self._client

    async def _run(self, table: str, action: str, query: Callable[[], T]) -> T:
        """Execute a query through the breaker, mapping failures to PersistenceError."""
        try:
            self._breaker.check()
            result = await asyncio.to_thread(query)
        except CircuitBreakerOpen as e:
            raise PersistenceError(f"Database unavailable while trying to {action}", table=table) from e
        except Exception as e:
            self._breaker.record_failure()
            logger.warning("Store operation failed: %s on %s", action, table, exc_info=True)
            raise PersistenceError(f"Failed to {action}: {e}", table=table) from e
        self._breaker.record_success()
        return result

    # -- Emails --------------------------------------------------------------

    async def fetch_by_ids(self, user_id: str, email_ids: Sequence[str]) -> list[EmailRecord]:
        """Full email rows for ``email_ids`` owned by ``user_id``, in the given order."""
        if not email_ids:
            return []
        response = await self._run(
            "emails",
            "fetch emails",
            lambda: self.client.table("emails")
            .select("*")
            .eq("user_id", user_id)
            .in_("id", list(email_ids))
            .execute(),
        )
        by_id = {row["id"]: EmailRecord.model_validate(row) for row in response.data or []}
        return [by_id[email_id] for email_id in email_ids if email_id in by_id]

    async def select_email_ids(
        self,
        user_id: str,
        limit: int,
        unanalyzed_only: bool = False,
    ) -> list[str]:
        """Most recent non-archived email IDs for a user."""

        def query() -> Any:
            q = (
                self.client.table("emails")
                .select("id")
                .eq("user_id", user_id)
                .eq("is_archived", False)
            )
            if unanalyzed_only:
                q = q.is_("analyzed_at", "null").is_("analysis_error", "null")
            return q.order("date", desc=True).limit(limit).execute()

        response = await self._run("emails", "select emails", query)
        return [row["id"] for row in response.data or []]

    async def select_failed_for_retry(
        self,
        cooldown_cutoff: datetime,
        max_age_cutoff: datetime,
        limit: int,
    ) -> list[dict[str, Any]]:
        """Emails whose last analysis failed inside the retry window, oldest first."""
        response = await self._run(
            "emails",
            "select failed emails",
            lambda: self.client.table("emails")
            .select("id, user_id, subject")
            .not_.is_("analysis_error", "null")
            .is_("analyzed_at", "null")
            .lt("updated_at", cooldown_cutoff.isoformat())
            .gt("updated_at", max_age_cutoff.isoformat())
            .order("updated_at")
            .limit(limit)
            .execute(),
        )
        return cast(list[dict[str, Any]], response.data or [])

    async def update_triage_fields(self, email_ids: Sequence[str], fields: dict[str, Any]) -> int:
        """Write triage fields on the given emails. Returns rows updated."""
        if not email_ids:
            return 0
        response = await self._run(
            "emails",
            "update triage fields",
            lambda: self.client.table("emails").update(fields).in_("id", list(email_ids)).execute(),
        )
        return len(response.data or [])

    # -- Analyses and derived rows ------------------------------------------

    async def upsert_analysis(self, row: dict[str, Any]) -> None:
        """Replace the email's analysis row wholesale (keyed by email_id)."""
        await self._run(
            "email_analyses",
            "save analysis",
            lambda: self.client.table("email_analyses").upsert(row, on_conflict="email_id").execute(),
        )

    async def insert_action_items(self, rows: list[dict[str, Any]]) -> int:
        return await self._insert("actions", rows)

    async def insert_extracted_dates(self, rows: list[dict[str, Any]]) -> int:
        return await self._insert("extracted_dates", rows)

    async def _insert(self, table: str, rows: list[dict[str, Any]]) -> int:
        if not rows:
            return 0
        response = await self._run(
            table,
            f"insert {table}",
            lambda: self.client.table(table).insert(rows).execute(),
        )
        return len(response.data or rows)

    async def delete_where_email_id_in(self, table: str, email_ids: Sequence[str]) -> int:
        """Delete derived rows keyed to ``email_ids``. Returns rows deleted.

        Raises:
            ValidationError: If ``table`` is not a derived table.
        """
        if table not in DERIVED_TABLES:
            raise ValidationError(f"Refusing to delete from non-derived table {table!r}", field="table")
        if not email_ids:
            return 0
        response = await self._run(
            table,
            f"delete {table}",
            lambda: self.client.table(table).delete().in_("email_id", list(email_ids)).execute(),
        )
        return len(response.data or [])

    # -- Review queue --------------------------------------------------------

    async def select_review_candidates(
        self,
        user_id: str,
        since: datetime,
        signal_strengths: Sequence[str],
        reviewed_before: datetime | None,
        limit: int,
    ) -> tuple[list[dict[str, Any]], int]:
        """Eligible queue rows, newest first, plus the exact eligible count.

        ``reviewed_before`` of None means reviewed emails are not filtered.
        """

        def query() -> Any:
            q = (
                self.client.table("emails")
                .select(REVIEW_QUEUE_COLUMNS, count="exact")
                .eq("user_id", user_id)
                .eq("is_archived", False)
                .in_("signal_strength", list(signal_strengths))
                .gte("date", since.isoformat())
            )
            if reviewed_before is not None:
                q = q.or_(f"reviewed_at.is.null,reviewed_at.lt.{reviewed_before.isoformat()}")
            return q.order("date", desc=True).limit(limit).execute()

        response = await self._run("emails", "select review queue", query)
        rows = cast(list[dict[str, Any]], response.data or [])
        total = response.count if response.count is not None else len(rows)
        return rows, total

    async def mark_reviewed(self, user_id: str, email_id: str, reviewed_at: datetime) -> bool:
        """Stamp ``reviewed_at`` on one email owned by the user. False if no row matched."""
        response = await self._run(
            "emails",
            "mark email reviewed",
            lambda: self.client.table("emails")
            .update({"reviewed_at": reviewed_at.isoformat()})
            .eq("id", email_id)
            .eq("user_id", user_id)
            .execute(),
        )
        return bool(response.data)

    # -- User context and cost settings -------------------------------------

    async def get_user_context_row(self, user_id: str) -> dict[str, Any] | None:
        response = await self._run(
            "user_context",
            "fetch user context",
            lambda: self.client.table("user_context").select("*").eq("user_id", user_id).limit(1).execute(),
        )
        rows = response.data or []
        return cast(dict[str, Any], rows[0]) if rows else None

    async def get_active_clients(self, user_id: str) -> list[dict[str, Any]]:
        response = await self._run(
            "clients",
            "fetch clients",
            lambda: self.client.table("clients")
            .select("id, name, company, email, priority")
            .eq("user_id", user_id)
            .eq("status", "active")
            .execute(),
        )
        return cast(list[dict[str, Any]], response.data or [])

    async def get_cost_settings(self, user_id: str) -> dict[str, Any]:
        """The user's cost limits; empty when the user has no settings row."""
        response = await self._run(
            "user_settings",
            "fetch cost settings",
            lambda: self.client.table("user_settings")
            .select("daily_cost_limit, monthly_cost_limit, cost_alert_threshold, pause_on_limit_reached")
            .eq("user_id", user_id)
            .limit(1)
            .execute(),
        )
        rows = response.data or []
        return cast(dict[str, Any], rows[0]) if rows else {}

    async def get_spend(self, user_id: str) -> tuple[float, float]:
        """(today, this month) spend recorded in ``api_usage_logs``."""
        daily = await self._run(
            "api_usage_logs",
            "fetch daily spend",
            lambda: self.client.rpc("get_daily_api_cost", {"p_user_id": user_id}).execute(),
        )
        monthly = await self._run(
            "api_usage_logs",
            "fetch monthly spend",
            lambda: self.client.rpc("get_monthly_api_cost", {"p_user_id": user_id}).execute(),
        )
        return float(daily.data or 0), float(monthly.data or 0)
