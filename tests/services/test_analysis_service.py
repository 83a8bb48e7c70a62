"""Tests for EmailAnalysisService flows over the in-memory store."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from mailsift.core.exceptions import (
    AnalysisFailedError,
    ExternalServiceError,
    NotFoundError,
    PersistenceError,
    QuotaExceeded,
    ValidationError,
)
from mailsift.services.analysis_service import EmailAnalysisService
from tests.fakes import (
    ACTION_REPLY,
    CATEGORIZATION_REPLY,
    FakeTransport,
    InMemoryEmailStore,
    make_analyzer_set,
    make_email,
)

ANALYZED = datetime(2026, 10, 18, 10, 0, tzinfo=UTC)


def _service(store: InMemoryEmailStore, transport: FakeTransport | None = None) -> EmailAnalysisService:
    transport = transport or FakeTransport(
        replies={"categorizer": CATEGORIZATION_REPLY, "action_extractor": ACTION_REPLY}
    )
    return EmailAnalysisService(store=store, analyzer_set=make_analyzer_set(transport, ("categorizer", "action_extractor")))


@pytest.fixture
def store() -> InMemoryEmailStore:
    store = InMemoryEmailStore(
        [
            make_email("A", date=datetime(2026, 10, 18, 9, 0, tzinfo=UTC)),
            make_email("B", date=datetime(2026, 10, 17, 9, 0, tzinfo=UTC), analyzed_at=ANALYZED, category="news"),
            make_email("X", user_id="user-2"),
        ]
    )
    store.derived["actions"].append({"email_id": "B", "id": 99, "title": "stale"})
    return store


class TestAnalyzePending:
    @pytest.mark.asyncio
    async def test_only_unanalyzed_emails_run(self, store: InMemoryEmailStore) -> None:
        run = await _service(store).analyze_pending("user-1")

        assert run.total_emails == 1
        assert run.success_count == 1
        assert store.emails["A"]["category"] == "work"
        assert store.emails["B"]["category"] == "news"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, 201])
    async def test_limit_out_of_range(self, store: InMemoryEmailStore, limit: int) -> None:
        with pytest.raises(ValidationError):
            await _service(store).analyze_pending("user-1", limit=limit)

    @pytest.mark.asyncio
    async def test_without_skip_reanalyzes_newest(self, store: InMemoryEmailStore) -> None:
        run = await _service(store).analyze_pending("user-1", skip_analyzed=False, batch_size=1)

        assert run.total_emails == 2
        assert run.success_count == 2
        assert store.emails["B"]["category"] == "work"


class TestAnalyzeEmail:
    @pytest.mark.asyncio
    async def test_analyzes_one_email(self, store: InMemoryEmailStore) -> None:
        result = await _service(store).analyze_email("user-1", "A")

        assert result.already_analyzed is False
        assert result.outcome is not None
        assert result.outcome.category == "work"
        assert store.emails["A"]["analyzed_at"] is not None

    @pytest.mark.asyncio
    async def test_analyzed_email_is_left_alone_unless_forced(self, store: InMemoryEmailStore) -> None:
        transport = FakeTransport(replies={"categorizer": CATEGORIZATION_REPLY})
        service = _service(store, transport)

        result = await service.analyze_email("user-1", "B")
        assert result.already_analyzed is True
        assert transport.calls == []

        forced = await service.analyze_email("user-1", "B", force=True)
        assert forced.outcome is not None
        assert store.emails["B"]["category"] == "work"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("email_id", ["missing", "X"])
    async def test_unknown_or_foreign_email(self, store: InMemoryEmailStore, email_id: str) -> None:
        with pytest.raises(NotFoundError):
            await _service(store).analyze_email("user-1", email_id)

    @pytest.mark.asyncio
    async def test_failed_analysis_raises(self, store: InMemoryEmailStore) -> None:
        transport = FakeTransport(errors={("categorizer", "Subject A"): ExternalServiceError("model_api", "down")})

        with pytest.raises(AnalysisFailedError):
            await _service(store, transport).analyze_email("user-1", "A")

    @pytest.mark.asyncio
    async def test_quota_refusal_raises(self, store: InMemoryEmailStore) -> None:
        store.cost_settings["user-1"] = {"daily_cost_limit": 0.0, "pause_on_limit_reached": True}

        with pytest.raises(QuotaExceeded) as exc_info:
            await _service(store).analyze_email("user-1", "A")

        assert exc_info.value.period == "daily"


class TestRetryAnalysis:
    @pytest.mark.asyncio
    async def test_resets_and_reruns_owned_emails_only(self, store: InMemoryEmailStore) -> None:
        store.emails["A"]["analysis_error"] = "timeout"
        transport = FakeTransport(
            replies={"categorizer": CATEGORIZATION_REPLY, "action_extractor": ACTION_REPLY}
        )

        result = await _service(store, transport).retry_analysis("user-1", ["A", "X", "A"])

        assert result.requested == 2
        assert result.found == 1
        assert result.batch.success_count == 1
        assert store.emails["A"]["analysis_error"] is None
        assert store.emails["X"]["analyzed_at"] is None
        assert all("Subject X" not in prompt for _, prompt in transport.calls)

    @pytest.mark.asyncio
    async def test_no_owned_emails_is_not_found(self, store: InMemoryEmailStore) -> None:
        with pytest.raises(NotFoundError):
            await _service(store).retry_analysis("user-1", ["X"])
        assert store.triage_updates == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("email_ids", [[], [" "], [f"e-{i}" for i in range(101)]])
    async def test_invalid_ids(self, store: InMemoryEmailStore, email_ids: list[str]) -> None:
        with pytest.raises(ValidationError):
            await _service(store).retry_analysis("user-1", email_ids)


class TestRescan:
    @pytest.mark.asyncio
    async def test_rescan_replaces_prior_results(self, store: InMemoryEmailStore) -> None:
        result = await _service(store).rescan("user-1", max_emails=10)

        assert result.cleared_count == 2
        assert result.batch.success_count == 2
        assert result.warnings == []
        assert store.emails["B"]["category"] == "work"
        titles = [r["title"] for r in store.derived_for("actions", "B")]
        assert titles == ["Send Q3 numbers"]
        assert store.derived_for("actions", "X") == []

    @pytest.mark.asyncio
    async def test_rescan_reports_derived_cleanup_warnings(self, store: InMemoryEmailStore) -> None:
        store.fail.add("delete:extracted_dates")

        result = await _service(store).rescan("user-1")

        assert [w.table for w in result.warnings] == ["extracted_dates"]
        assert result.to_dict()["warnings"][0]["table"] == "extracted_dates"
        assert result.batch.success_count == 2

    @pytest.mark.asyncio
    async def test_rescan_aborts_when_primary_clear_fails(self, store: InMemoryEmailStore) -> None:
        transport = FakeTransport(replies={"categorizer": CATEGORIZATION_REPLY})
        store.fail.add("update_triage_fields")

        with pytest.raises(PersistenceError):
            await _service(store, transport).rescan("user-1")

        assert transport.calls == []
        assert len(store.derived_for("actions", "B")) == 1


class TestRetryFailed:
    @pytest.mark.asyncio
    async def test_retries_failures_in_window_per_user(self) -> None:
        now = datetime.now(UTC)
        store = InMemoryEmailStore(
            [
                make_email("F1", analysis_error="timeout"),
                make_email("F2", user_id="user-2", analysis_error="timeout"),
                make_email("recent", analysis_error="timeout"),
                make_email("ancient", analysis_error="timeout"),
            ]
        )
        store.emails["F1"]["updated_at"] = now - timedelta(days=2)
        store.emails["F2"]["updated_at"] = now - timedelta(days=3)
        store.emails["recent"]["updated_at"] = now - timedelta(hours=1)
        store.emails["ancient"]["updated_at"] = now - timedelta(days=10)

        summary = await _service(store).retry_failed()

        assert summary.found == 2
        assert summary.users == 2
        assert summary.succeeded == 2
        assert summary.failed == 0
        assert store.emails["F1"]["analysis_error"] is None
        assert store.emails["F1"]["analyzed_at"] is not None
        assert store.emails["recent"]["analysis_error"] == "timeout"
        assert store.emails["ancient"]["analyzed_at"] is None

    @pytest.mark.asyncio
    async def test_store_failure_recorded_per_user(self) -> None:
        store = InMemoryEmailStore([make_email("F1", analysis_error="timeout")])
        store.emails["F1"]["updated_at"] = datetime.now(UTC) - timedelta(days=2)
        store.fail.add("fetch_by_ids")

        summary = await _service(store).retry_failed()

        assert summary.found == 1
        assert summary.succeeded == 0
        assert set(summary.user_errors) == {"user-1"}
        assert summary.to_dict()["user_errors"]["user-1"]


class TestBudgetStatus:
    @pytest.mark.asyncio
    async def test_reports_spend_against_caps(self, store: InMemoryEmailStore) -> None:
        store.cost_settings["user-1"] = {"daily_cost_limit": 1.0, "monthly_cost_limit": 10.0}
        store.spend["user-1"] = (0.25, 2.0)

        status = await _service(store).budget_status("user-1")

        assert status.daily_spent_usd == 0.25
        assert status.daily_remaining_usd == 0.75
        assert status.monthly_remaining_usd == 8.0
        assert status.exhausted is False
