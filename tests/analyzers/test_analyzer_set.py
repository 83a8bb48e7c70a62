"""Tests for AnalyzerSet and BaseAnalyzer."""

from __future__ import annotations

from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from mailsift.analyzers import AnalyzerSet, build_default_analyzer_set
from mailsift.analyzers.triage import Categorizer
from mailsift.core.exceptions import AnalyzerMalformedOutput, AnalyzerTruncatedOutput, ExternalServiceError
from mailsift.core.llm import ModelResponse
from mailsift.models.analysis import AnalyzerFailure, AnalyzerSuccess, Categorization
from mailsift.models.email import ClientRef, UserContext
from tests.fakes import (
    ACTION_REPLY,
    CATEGORIZATION_REPLY,
    FAST_CONFIG,
    FakeTransport,
    make_analyzer_set,
    make_email,
)

ALL_FOUR = ("categorizer", "action_extractor", "client_tagger", "date_extractor")


@pytest.fixture
def context() -> UserContext:
    return UserContext(user_id="user-1", role="Founder", company="Acme")


class TestRunAll:
    @pytest.mark.asyncio
    async def test_every_analyzer_reports_in_set_order(self, context: UserContext) -> None:
        transport = FakeTransport(replies={"categorizer": CATEGORIZATION_REPLY, "action_extractor": ACTION_REPLY})
        analyzer_set = make_analyzer_set(transport, ALL_FOUR)

        results = await analyzer_set.run_all(make_email("A"), context)

        assert list(results) == list(ALL_FOUR)
        assert all(isinstance(r, AnalyzerSuccess) for r in results.values())
        categorization = results["categorizer"].payload
        assert isinstance(categorization, Categorization)
        assert categorization.category == "work"
        assert results["categorizer"].tokens_used == 100

    @pytest.mark.asyncio
    async def test_one_failure_leaves_siblings_untouched(self, context: UserContext) -> None:
        transport = FakeTransport(
            replies={"categorizer": CATEGORIZATION_REPLY},
            errors={("action_extractor", "Subject"): ExternalServiceError("model_api", "down")},
        )
        analyzer_set = make_analyzer_set(transport, ALL_FOUR)

        results = await analyzer_set.run_all(make_email("A"), context)

        failure = results["action_extractor"]
        assert isinstance(failure, AnalyzerFailure)
        assert failure.error_type == "ExternalServiceError"
        assert failure.ok is False
        assert [name for name, r in results.items() if r.ok] == ["categorizer", "client_tagger", "date_extractor"]

    @pytest.mark.asyncio
    async def test_timeout_becomes_tagged_failure(self, context: UserContext) -> None:
        transport = FakeTransport(delays={("categorizer", "Subject A"): 1.0})
        analyzer_set = make_analyzer_set(transport)

        results = await analyzer_set.run_all(make_email("A"), context)

        failure = results["categorizer"]
        assert isinstance(failure, AnalyzerFailure)
        assert failure.error_type == "AnalyzerTimeout"
        assert "timed out" in failure.error_message

    @pytest.mark.asyncio
    async def test_malformed_output_is_a_failure(self, context: UserContext) -> None:
        transport = FakeTransport(errors={("categorizer", "Subject"): AnalyzerMalformedOutput("categorizer")})
        results = await make_analyzer_set(transport).run_all(make_email("A"), context)
        assert results["categorizer"].error_type == "AnalyzerMalformedOutput"

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(self, context: UserContext) -> None:
        transport = FakeTransport(errors={("categorizer", "Subject"): RuntimeError("bug")})
        results = await make_analyzer_set(transport).run_all(make_email("A"), context)
        assert isinstance(results["categorizer"], AnalyzerFailure)
        assert results["categorizer"].error_type == "RuntimeError"

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, context: UserContext) -> None:
        transport = FakeTransport(delays={(name, "Subject"): 0.01 for name in ALL_FOUR})
        analyzer_set = make_analyzer_set(transport, ALL_FOUR)

        await analyzer_set.run_all(make_email("A"), context, concurrency=2)

        assert len(transport.calls) == 4
        assert transport.max_in_flight <= 2


class TestAnalyzerSetShape:
    def test_duplicate_names_rejected(self) -> None:
        transport = FakeTransport()
        first = make_analyzer_set(transport, ("categorizer",))
        second = make_analyzer_set(transport, ("categorizer",))
        with pytest.raises(ValueError, match="Duplicate"):
            AnalyzerSet([*first._analyzers, *second._analyzers])

    def test_slot_for(self) -> None:
        analyzer_set = make_analyzer_set(FakeTransport(), ("categorizer", "date_extractor"))
        assert analyzer_set.slot_for("date_extractor") == "date_extraction"
        with pytest.raises(KeyError):
            analyzer_set.slot_for("horoscope")

    def test_estimate_tokens_sums_analyzers(self) -> None:
        analyzer_set = make_analyzer_set(FakeTransport(), ("categorizer", "action_extractor"))
        email = make_email("A")
        single = make_analyzer_set(FakeTransport(), ("categorizer",)).estimate_tokens(email)
        assert analyzer_set.estimate_tokens(email) > single > 0

    def test_default_set_honours_disabled_analyzers(self) -> None:
        settings = SimpleNamespace(disabled_analyzers={"news_brief", "idea_spark"})
        analyzer_set = build_default_analyzer_set(transport=FakeTransport(), settings=settings)
        assert "news_brief" not in analyzer_set.names
        assert "idea_spark" not in analyzer_set.names
        assert analyzer_set.names[0] == "categorizer"
        assert len(analyzer_set) == 9


class TestPrompt:
    def test_prompt_carries_context_and_email(self) -> None:
        context = UserContext(
            user_id="user-1",
            role="Founder",
            company="Acme",
            priorities=["fundraising"],
            vip_domains=["@example.com"],
            clients=[ClientRef(id="c-1", name="Globex")],
        )
        analyzer = make_analyzer_set(FakeTransport(), ("categorizer",))._analyzers[0]

        prompt = analyzer.build_prompt(make_email("A"), context)

        assert "Founder at Acme" in prompt.user
        assert "Priorities: fundraising" in prompt.user
        assert "Globex (id=c-1)" in prompt.user
        assert "The sender is a VIP contact." in prompt.user
        assert "Subject: Subject A" in prompt.user
        assert prompt.timeout_seconds == 0.05

    def test_html_body_is_stripped_when_no_text(self) -> None:
        analyzer = make_analyzer_set(FakeTransport(), ("categorizer",))._analyzers[0]
        email = make_email("A", body_text=None, body_html="<p>Hello <b>there</b></p>")
        prompt = analyzer.build_prompt(email, UserContext(user_id="user-1"))
        assert "Hello there" in prompt.user
        assert "<b>" not in prompt.user


def _truncated(analyzer: str, input_tokens: int, output_tokens: int, cost_usd: float) -> AnalyzerTruncatedOutput:
    error = AnalyzerTruncatedOutput(analyzer)
    error.input_tokens = input_tokens
    error.output_tokens = output_tokens
    error.cost_usd = cost_usd
    return error


class TestBilledUsage:
    @pytest.mark.asyncio
    async def test_failed_call_keeps_billed_usage(self, context: UserContext) -> None:
        transport = FakeTransport(errors={("categorizer", "Subject"): _truncated("categorizer", 300, 600, 0.0004)})

        result = (await make_analyzer_set(transport).run_all(make_email("A"), context))["categorizer"]

        assert isinstance(result, AnalyzerFailure)
        assert result.input_tokens == 300
        assert result.output_tokens == 600
        assert result.tokens_used == 900
        assert result.cost_usd == pytest.approx(0.0004)

    @pytest.mark.asyncio
    async def test_retried_attempts_are_all_counted(self, context: UserContext) -> None:
        transport = MagicMock()
        transport.invoke = AsyncMock(
            side_effect=[
                _truncated("categorizer", 300, 600, 0.0004),
                ModelResponse(
                    raw_json=dict(CATEGORIZATION_REPLY),
                    input_tokens=60,
                    output_tokens=40,
                    cost_usd=0.00001,
                    model="fake-model",
                ),
            ]
        )
        analyzer = Categorizer(transport, config=replace(FAST_CONFIG, max_retries=1))

        result = await analyzer.analyze(make_email("A"), context)

        assert isinstance(result, AnalyzerSuccess)
        assert transport.invoke.await_count == 2
        assert result.tokens_used == 1000
        assert result.cost_usd == pytest.approx(0.00041)
