"""Base analyzer: prompt assembly, timeout, retry and result tagging.

Subclasses declare their name, slot, system prompt and task instructions.
Every call returns an ``AnalyzerSuccess`` or an ``AnalyzerFailure``; analyzer
errors never escape ``analyze``.
"""

import asyncio
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any

from mailsift.core.exceptions import AnalyzerError, AnalyzerTimeout, AnalyzerTruncatedOutput, MailsiftException
from mailsift.core.llm import ModelPrompt, ModelResponse, ModelTransport, TransientModelError
from mailsift.core.resilience import RETRYABLE_EXCEPTIONS, CircuitBreakerOpen, retry
from mailsift.models.analysis import AnalyzerFailure, AnalyzerSuccess
from mailsift.models.email import EmailRecord, UserContext
from mailsift.services.normalizer import ResultNormalizer

logger = logging.getLogger(__name__)

RETRYABLE_ANALYZER_ERRORS: tuple[type[BaseException], ...] = (
    AnalyzerTimeout,
    AnalyzerTruncatedOutput,
    TransientModelError,
    *RETRYABLE_EXCEPTIONS,
)

_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")
_CHARS_PER_TOKEN = 3


def _get_settings() -> Any:
    from mailsift.core.config import get_settings

    return get_settings()


@dataclass(frozen=True)
class AnalyzerConfig:
    """Per-analyzer model settings. None means "use the global setting"."""

    enabled: bool = True
    model: str | None = None
    temperature: float = 0.2
    max_tokens: int = 600
    timeout_seconds: float | None = None
    max_retries: int | None = None
    retry_base_delay: float = 1.0


@dataclass
class BilledUsage:
    """Provider usage summed over every attempt of one analyzer call."""

    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    def add(self, input_tokens: int, output_tokens: int, cost_usd: float) -> None:
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.cost_usd += cost_usd

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


def email_body(email: EmailRecord, max_chars: int) -> str:
    """Plain-text body, falling back to stripped HTML then the snippet."""
    body = email.body_text or ""
    if not body.strip() and email.body_html:
        body = _SPACE_RE.sub(" ", _TAG_RE.sub(" ", email.body_html))
    if not body.strip():
        body = email.snippet or ""
    body = body.strip()
    if len(body) > max_chars:
        body = body[:max_chars] + "\n[... truncated]"
    return body


def format_email(email: EmailRecord, max_chars: int) -> str:
    sender = f"{email.sender_name} <{email.sender_email}>" if email.sender_name else email.sender_email
    return "\n".join(
        [
            f"Subject: {email.subject or '(no subject)'}",
            f"From: {sender}",
            f"Date: {email.date.isoformat() if email.date else 'unknown'}",
            "",
            email_body(email, max_chars),
        ]
    )


def format_context(context: UserContext, sender_email: str = "") -> str:
    lines: list[str] = []
    if context.role or context.company:
        lines.append(f"User: {context.role or 'professional'}{' at ' + context.company if context.company else ''}")
    if context.location_metro or context.location_city:
        lines.append(f"Location: {context.location_city or ''} {context.location_metro or ''}".rstrip())
    if context.priorities:
        lines.append("Priorities: " + ", ".join(context.priorities))
    if context.projects:
        lines.append("Projects: " + ", ".join(context.projects))
    if context.interests:
        lines.append("Interests: " + ", ".join(context.interests))
    if context.clients:
        lines.append("Clients: " + "; ".join(f"{c.name} (id={c.id})" for c in context.clients))
    if sender_email and context.is_vip(sender_email):
        lines.append("The sender is a VIP contact.")
    return "\n".join(lines)


class BaseAnalyzer(ABC):
    """One independent content-understanding unit."""

    name: str
    slot: str
    system_prompt: str
    default_config: AnalyzerConfig = AnalyzerConfig()

    def __init__(
        self,
        transport: ModelTransport,
        config: AnalyzerConfig | None = None,
        normalizer: ResultNormalizer | None = None,
    ) -> None:
        s = _get_settings()
        self.config = config or replace(self.default_config)
        self.model = self.config.model or s.ANALYZER_MODEL
        self.timeout_seconds = self.config.timeout_seconds or s.ANALYZER_TIMEOUT_SECONDS
        self.max_body_chars = s.ANALYZER_MAX_BODY_CHARS
        max_retries = s.ANALYZER_MAX_RETRIES if self.config.max_retries is None else self.config.max_retries
        self._transport = transport
        self._normalizer = normalizer or ResultNormalizer()
        self._invoke = retry(
            max_retries=max_retries,
            backoff_factor=s.ANALYZER_RETRY_BACKOFF,
            retry_on=RETRYABLE_ANALYZER_ERRORS,
            base_delay=self.config.retry_base_delay,
        )(self._invoke_once)

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @abstractmethod
    def instructions(self, email: EmailRecord, context: UserContext) -> str:
        """Task-specific instructions, including the JSON fields to return."""

    def build_prompt(self, email: EmailRecord, context: UserContext) -> ModelPrompt:
        parts = [self.instructions(email, context)]
        context_block = format_context(context, email.sender_email)
        if context_block:
            parts.append("About the user:\n" + context_block)
        parts.append("Email:\n" + format_email(email, self.max_body_chars))
        return ModelPrompt(
            system=self.system_prompt,
            user="\n\n".join(parts),
            model=self.model,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            timeout_seconds=self.timeout_seconds,
        )

    def estimate_tokens(self, email: EmailRecord) -> int:
        """Conservative token estimate for one call: prompt plus full completion budget."""
        prompt_chars = len(self.system_prompt) + len(email.subject or "") + 1000
        prompt_chars += min(len(email_body(email, self.max_body_chars)), self.max_body_chars)
        return prompt_chars // _CHARS_PER_TOKEN + self.config.max_tokens

    async def _invoke_once(self, prompt: ModelPrompt, billed: BilledUsage) -> ModelResponse:
        try:
            response = await asyncio.wait_for(
                self._transport.invoke(self.name, prompt), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise AnalyzerTimeout(self.name, self.timeout_seconds) from e
        except AnalyzerError as e:
            billed.add(e.input_tokens, e.output_tokens, e.cost_usd)
            raise
        billed.add(response.input_tokens, response.output_tokens, response.cost_usd)
        return response

    async def analyze(self, email: EmailRecord, context: UserContext) -> AnalyzerSuccess | AnalyzerFailure:
        """Run the analyzer once (with retries) and tag the outcome.

        Token usage and cost cover every attempt the provider billed, including
        truncated or malformed replies that were retried or ended in failure.
        """
        start = time.monotonic()
        billed = BilledUsage()
        try:
            response = await self._invoke(self.build_prompt(email, context), billed)
            payload = self._normalizer.normalize_slot(self.slot, response.raw_json)
        except (MailsiftException, CircuitBreakerOpen) as e:
            elapsed = int((time.monotonic() - start) * 1000)
            logger.warning(
                "ANALYZER: %s failed for email %s: %s",
                self.name,
                email.id,
                e,
                extra={
                    "analyzer": self.name,
                    "email_id": email.id,
                    "error_type": type(e).__name__,
                    "billed_tokens": billed.tokens_used,
                },
            )
            return AnalyzerFailure(
                analyzer=self.name,
                error_type=type(e).__name__,
                error_message=str(e),
                input_tokens=billed.input_tokens,
                output_tokens=billed.output_tokens,
                tokens_used=billed.tokens_used,
                cost_usd=billed.cost_usd,
                processing_time_ms=elapsed,
            )

        return AnalyzerSuccess(
            analyzer=self.name,
            payload=payload,
            model=response.model,
            input_tokens=billed.input_tokens,
            output_tokens=billed.output_tokens,
            tokens_used=billed.tokens_used,
            cost_usd=billed.cost_usd,
            processing_time_ms=int((time.monotonic() - start) * 1000),
        )
