"""The ordered set of analyzers run against every email."""

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from mailsift.analyzers.base import BaseAnalyzer
from mailsift.analyzers.content import (
    ContentDigestAnalyzer,
    IdeaSparkAnalyzer,
    InsightExtractor,
    LinkAnalyzer,
    NewsBriefAnalyzer,
)
from mailsift.analyzers.events import DateExtractor, EventDetector, MultiEventDetector
from mailsift.analyzers.triage import ActionExtractor, Categorizer, ClientTagger
from mailsift.core.llm import ModelTransport, get_transport
from mailsift.models.analysis import AnalyzerFailure, AnalyzerSuccess
from mailsift.models.email import EmailRecord, UserContext

logger = logging.getLogger(__name__)

ANALYZER_CLASSES: tuple[type[BaseAnalyzer], ...] = (
    Categorizer,
    ActionExtractor,
    ClientTagger,
    EventDetector,
    MultiEventDetector,
    DateExtractor,
    ContentDigestAnalyzer,
    LinkAnalyzer,
    IdeaSparkAnalyzer,
    InsightExtractor,
    NewsBriefAnalyzer,
)


class AnalyzerSet:
    """Independent analyzers, run concurrently against the same input.

    No analyzer sees another's output; a failure in one slot leaves the
    others untouched.
    """

    def __init__(self, analyzers: Sequence[BaseAnalyzer]) -> None:
        names = [a.name for a in analyzers]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate analyzer names: {names}")
        self._analyzers = list(analyzers)

    @property
    def names(self) -> list[str]:
        return [a.name for a in self._analyzers]

    def slot_for(self, analyzer_name: str) -> str:
        for analyzer in self._analyzers:
            if analyzer.name == analyzer_name:
                return analyzer.slot
        raise KeyError(analyzer_name)

    def __len__(self) -> int:
        return len(self._analyzers)

    def estimate_tokens(self, email: EmailRecord) -> int:
        """Token estimate covering every analyzer call for one email."""
        return sum(a.estimate_tokens(email) for a in self._analyzers)

    async def run_all(
        self,
        email: EmailRecord,
        context: UserContext,
        concurrency: int = 4,
    ) -> dict[str, AnalyzerSuccess | AnalyzerFailure]:
        """Run every analyzer, at most ``concurrency`` at a time.

        Returns one result per analyzer, keyed by name, in set order.
        """
        semaphore = asyncio.Semaphore(max(concurrency, 1))

        async def run_one(analyzer: BaseAnalyzer) -> AnalyzerSuccess | AnalyzerFailure:
            async with semaphore:
                return await analyzer.analyze(email, context)

        settled = await asyncio.gather(*(run_one(a) for a in self._analyzers), return_exceptions=True)

        results: dict[str, AnalyzerSuccess | AnalyzerFailure] = {}
        for analyzer, outcome in zip(self._analyzers, settled, strict=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error(
                    "ANALYZER: %s raised unexpectedly for email %s",
                    analyzer.name,
                    email.id,
                    exc_info=outcome,
                )
                outcome = AnalyzerFailure(
                    analyzer=analyzer.name,
                    error_type=type(outcome).__name__,
                    error_message=str(outcome),
                )
            results[analyzer.name] = outcome
        return results


def build_default_analyzer_set(
    transport: ModelTransport | None = None,
    settings: Any = None,
) -> AnalyzerSet:
    """All enabled analyzers in pipeline order."""
    if settings is None:
        from mailsift.core.config import get_settings

        settings = get_settings()
    transport = transport or get_transport()
    disabled = settings.disabled_analyzers
    analyzers = [cls(transport) for cls in ANALYZER_CLASSES if cls.name not in disabled]
    analyzers = [a for a in analyzers if a.enabled]
    logger.info("Analyzer set built", extra={"analyzers": [a.name for a in analyzers]})
    return AnalyzerSet(analyzers)
