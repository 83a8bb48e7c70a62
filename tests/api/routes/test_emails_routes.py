"""Tests for email analysis, usage and health API routes."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from mailsift.api.deps import get_current_user
from mailsift.core.config import get_settings
from mailsift.core.cost_ledger import CostLedger
from mailsift.core.exceptions import AnalysisFailedError, NotFoundError, PersistenceError, ValidationError
from mailsift.core.resilience import supabase_circuit_breaker
from mailsift.main import app
from mailsift.models.batch import BatchRun, EmailOutcome, OutcomeStatus
from mailsift.services.analysis_service import (
    EmailAnalysisService,
    RescanResult,
    RetryAnalysisResult,
    RetryFailedSummary,
    SingleEmailResult,
)
from mailsift.services.invalidation import DerivedCleanupWarning
from tests.fakes import CATEGORIZATION_REPLY, FakeTransport, InMemoryEmailStore, make_analyzer_set, make_email


@pytest.fixture
def mock_current_user() -> MagicMock:
    user = MagicMock()
    user.id = "test-user-123"
    return user


@pytest.fixture
def test_client(mock_current_user: MagicMock) -> Iterator[TestClient]:
    async def override_get_current_user() -> MagicMock:
        return mock_current_user

    app.dependency_overrides[get_current_user] = override_get_current_user
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture
def mock_service() -> Iterator[MagicMock]:
    service = MagicMock()
    with (
        patch("mailsift.api.routes.emails._get_service", return_value=service),
        patch("mailsift.api.routes.usage._get_service", return_value=service),
        patch("mailsift.api.routes.jobs._get_service", return_value=service),
    ):
        yield service


@pytest.fixture
def job_secret(monkeypatch: pytest.MonkeyPatch) -> str:
    monkeypatch.setenv("JOB_SECRET", "job-secret")
    get_settings.cache_clear()
    return "job-secret"


def _run(**counts: int) -> BatchRun:
    return BatchRun(total_emails=sum(counts.values()), started_at=datetime(2026, 10, 19, tzinfo=UTC), **counts)


class TestAnalyze:
    def test_analyze_with_options(self, test_client: TestClient, mock_service: MagicMock) -> None:
        mock_service.analyze_pending = AsyncMock(return_value=_run(success_count=3, failure_count=1))

        response = test_client.post(
            "/api/v1/emails/analyze",
            json={"maxEmails": 5, "batchSize": 2, "skipAlreadyAnalyzed": False},
        )

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["success"] is True
        assert body["stats"]["success_count"] == 3
        assert body["stats"]["failure_count"] == 1
        mock_service.analyze_pending.assert_awaited_once_with(
            "test-user-123", 5, batch_size=2, skip_analyzed=False
        )

    def test_analyze_without_body_uses_defaults(self, test_client: TestClient, mock_service: MagicMock) -> None:
        mock_service.analyze_pending = AsyncMock(return_value=_run())

        response = test_client.post("/api/v1/emails/analyze")

        assert response.status_code == status.HTTP_200_OK
        mock_service.analyze_pending.assert_awaited_once_with(
            "test-user-123", None, batch_size=None, skip_analyzed=True
        )

    @pytest.mark.parametrize("body", [{"maxEmails": 0}, {"batchSize": 21}, {"batchSize": 0}])
    def test_out_of_range_options_rejected(
        self, test_client: TestClient, mock_service: MagicMock, body: dict[str, int]
    ) -> None:
        response = test_client.post("/api/v1/emails/analyze", json=body)
        assert response.status_code == status.HTTP_400_BAD_REQUEST


class TestAnalyzeSingleEmail:
    def test_analyzes_email(self, test_client: TestClient, mock_service: MagicMock) -> None:
        mock_service.analyze_email = AsyncMock(
            return_value=SingleEmailResult(
                email_id="e-1",
                outcome=EmailOutcome(email_id="e-1", status=OutcomeStatus.SUCCESS, category="work", tokens_used=100),
            )
        )

        response = test_client.post("/api/v1/emails/e-1/analyze")

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["category"] == "work"
        assert body["already_analyzed"] is False
        mock_service.analyze_email.assert_awaited_once_with("test-user-123", "e-1", force=False)

    def test_force_header(self, test_client: TestClient, mock_service: MagicMock) -> None:
        mock_service.analyze_email = AsyncMock(return_value=SingleEmailResult(email_id="e-1", already_analyzed=True))

        response = test_client.post("/api/v1/emails/e-1/analyze", headers={"X-Force-Reanalyze": "true"})

        assert response.status_code == status.HTTP_200_OK
        mock_service.analyze_email.assert_awaited_once_with("test-user-123", "e-1", force=True)

    def test_unknown_email_is_404(self, test_client: TestClient, mock_service: MagicMock) -> None:
        mock_service.analyze_email = AsyncMock(side_effect=NotFoundError("Email", "e-404"))
        response = test_client.post("/api/v1/emails/e-404/analyze")
        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_failed_analysis_is_500(self, test_client: TestClient, mock_service: MagicMock) -> None:
        mock_service.analyze_email = AsyncMock(side_effect=AnalysisFailedError("e-1", "provider down"))

        response = test_client.post("/api/v1/emails/e-1/analyze")

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json()["code"] == "ANALYSIS_FAILED"


class TestRetryAnalysis:
    def test_retries_given_emails(self, test_client: TestClient, mock_service: MagicMock) -> None:
        mock_service.retry_analysis = AsyncMock(
            return_value=RetryAnalysisResult(requested=2, found=2, batch=_run(success_count=2))
        )

        response = test_client.post("/api/v1/emails/retry-analysis", json={"emailIds": ["e-1", "e-2"]})

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["found"] == 2
        assert body["stats"]["success_count"] == 2
        mock_service.retry_analysis.assert_awaited_once_with("test-user-123", ["e-1", "e-2"])

    @pytest.mark.parametrize("body", [{}, {"emailIds": []}, {"emailIds": [f"e-{i}" for i in range(101)]}])
    def test_invalid_body_is_400(self, test_client: TestClient, mock_service: MagicMock, body: dict) -> None:
        response = test_client.post("/api/v1/emails/retry-analysis", json=body)
        assert response.status_code == status.HTTP_400_BAD_REQUEST


class TestEmailsAreScopedToCaller:
    """Analysis routes only ever touch the authenticated user's emails."""

    @pytest.fixture
    def store(self) -> InMemoryEmailStore:
        store = InMemoryEmailStore([make_email("V1", user_id="victim", analysis_error="timeout")])
        store.emails["V1"]["updated_at"] = datetime.now(UTC) - timedelta(days=2)
        return store

    @pytest.fixture
    def transport(self) -> FakeTransport:
        return FakeTransport(replies={"categorizer": CATEGORIZATION_REPLY})

    @pytest.fixture
    def real_service(self, store: InMemoryEmailStore, transport: FakeTransport) -> Iterator[EmailAnalysisService]:
        service = EmailAnalysisService(store=store, analyzer_set=make_analyzer_set(transport))
        with (
            patch("mailsift.api.routes.emails._get_service", return_value=service),
            patch("mailsift.api.routes.jobs._get_service", return_value=service),
        ):
            yield service

    def test_user_cannot_retry_another_users_email(
        self,
        test_client: TestClient,
        real_service: EmailAnalysisService,
        store: InMemoryEmailStore,
        transport: FakeTransport,
    ) -> None:
        response = test_client.post("/api/v1/emails/retry-analysis", json={"emailIds": ["V1"]})

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert transport.calls == []
        assert store.emails["V1"]["analyzed_at"] is None
        assert store.emails["V1"]["analysis_error"] == "timeout"

    def test_user_cannot_analyze_another_users_email(
        self, test_client: TestClient, real_service: EmailAnalysisService, transport: FakeTransport
    ) -> None:
        response = test_client.post("/api/v1/emails/V1/analyze", headers={"X-Force-Reanalyze": "true"})

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert transport.calls == []

    def test_user_token_cannot_run_retry_job(
        self,
        test_client: TestClient,
        real_service: EmailAnalysisService,
        store: InMemoryEmailStore,
        transport: FakeTransport,
        job_secret: str,
    ) -> None:
        response = test_client.post(
            "/api/v1/jobs/retry-failed-analyses", headers={"Authorization": "Bearer user-token"}
        )

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert transport.calls == []
        assert store.emails["V1"]["analyzed_at"] is None


class TestRetryFailedJob:
    def test_runs_with_job_secret(self, test_client: TestClient, mock_service: MagicMock, job_secret: str) -> None:
        mock_service.retry_failed = AsyncMock(return_value=RetryFailedSummary(found=3, users=2, succeeded=3))

        response = test_client.post(
            "/api/v1/jobs/retry-failed-analyses", headers={"Authorization": f"Bearer {job_secret}"}
        )

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["found"] == 3
        assert body["succeeded"] == 3
        assert body["user_errors"] == {}
        mock_service.retry_failed.assert_awaited_once_with(None)

    def test_missing_secret_is_401(self, test_client: TestClient, mock_service: MagicMock, job_secret: str) -> None:
        mock_service.retry_failed = AsyncMock()

        response = test_client.post("/api/v1/jobs/retry-failed-analyses")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["code"] == "AUTHENTICATION_ERROR"
        mock_service.retry_failed.assert_not_awaited()

    def test_unconfigured_secret_disables_job(self, test_client: TestClient, mock_service: MagicMock) -> None:
        mock_service.retry_failed = AsyncMock()

        response = test_client.post(
            "/api/v1/jobs/retry-failed-analyses", headers={"Authorization": "Bearer anything"}
        )

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        mock_service.retry_failed.assert_not_awaited()


class TestRescan:
    def test_rescan_returns_stats_and_warnings(self, test_client: TestClient, mock_service: MagicMock) -> None:
        mock_service.rescan = AsyncMock(
            return_value=RescanResult(
                cleared_count=2,
                batch=_run(success_count=2),
                warnings=[DerivedCleanupWarning(table="actions", message="timeout")],
            )
        )

        response = test_client.post("/api/v1/emails/rescan", json={"maxEmails": 20})

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["cleared_count"] == 2
        assert body["stats"]["success_count"] == 2
        assert body["warnings"] == [{"table": "actions", "message": "timeout"}]
        mock_service.rescan.assert_awaited_once_with("test-user-123", 20)

    def test_out_of_range_is_400(self, test_client: TestClient, mock_service: MagicMock) -> None:
        mock_service.rescan = AsyncMock(side_effect=ValidationError("max_emails must be between 1 and 100"))

        response = test_client.post("/api/v1/emails/rescan", json={"maxEmails": 500})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_primary_clear_failure_is_500(self, test_client: TestClient, mock_service: MagicMock) -> None:
        mock_service.rescan = AsyncMock(side_effect=PersistenceError("Failed to update triage fields"))

        response = test_client.post("/api/v1/emails/rescan")

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json()["code"] == "PERSISTENCE_ERROR"


class TestUsageAndHealth:
    def test_budget(self, test_client: TestClient, mock_service: MagicMock) -> None:
        ledger = CostLedger("test-user-123", daily_limit_usd=1.0, monthly_limit_usd=10.0, daily_spent_usd=0.4)
        mock_service.budget_status = AsyncMock(return_value=ledger.status())

        response = test_client.get("/api/v1/usage/budget")

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["daily_spent_usd"] == 0.4
        assert body["daily_remaining_usd"] == 0.6
        assert body["exhausted"] is False

    def test_health_reports_breakers(self, test_client: TestClient) -> None:
        response = test_client.get("/api/v1/health")

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["status"] == "healthy"
        assert body["circuit_breakers"] == {"model_api": "closed", "supabase": "closed"}

    def test_health_degraded_when_breaker_open(self, test_client: TestClient) -> None:
        for _ in range(supabase_circuit_breaker.failure_threshold):
            supabase_circuit_breaker.record_failure()

        body = test_client.get("/api/v1/health").json()

        assert body["status"] == "degraded"
        assert body["circuit_breakers"]["supabase"] == "open"

    def test_root_health(self, test_client: TestClient) -> None:
        assert test_client.get("/health").json() == {"status": "healthy"}
