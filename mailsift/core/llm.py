"""Model-call transport for analyzers.

Routes requests through LiteLLM by default so any provider can back the
analyzers. An Anthropic SDK transport is available for deployments that talk
to Claude directly. Both return the parsed JSON object together with token
usage and an estimated cost; neither retries (retries belong to the caller).
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import anthropic
import litellm
from litellm import acompletion

from mailsift.core.exceptions import (
    AnalyzerError,
    AnalyzerMalformedOutput,
    AnalyzerTimeout,
    AnalyzerTruncatedOutput,
    ExternalServiceError,
)
from mailsift.core.resilience import CircuitBreaker, CircuitBreakerOpen, model_api_circuit_breaker

litellm.drop_params = True

logger = logging.getLogger(__name__)


def _get_settings() -> Any:
    """Lazy import so tests can patch settings."""
    from mailsift.core.config import get_settings

    return get_settings()


class TransientModelError(ExternalServiceError):
    """Provider-side failure worth retrying (rate limit, 5xx, connection reset)."""

    def __init__(self, message: str) -> None:
        super().__init__("model_api", message)


# ---------------------------------------------------------------------------
# Request / response
# ---------------------------------------------------------------------------


@dataclass
class ModelPrompt:
    """Everything one analyzer call sends to the model."""

    system: str
    user: str
    model: str
    temperature: float = 0.2
    max_tokens: int = 500
    timeout_seconds: float = 30.0


@dataclass
class ModelResponse:
    """Parsed model output plus usage."""

    raw_json: dict[str, Any]
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    model: str = ""
    latency_ms: int = 0
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


def price_tokens(input_tokens: int, output_tokens: int) -> float:
    """Estimated USD cost from the configured per-million rates."""
    s = _get_settings()
    return (
        input_tokens * s.MODEL_INPUT_COST_PER_M / 1_000_000
        + output_tokens * s.MODEL_OUTPUT_COST_PER_M / 1_000_000
    )


def parse_json_object(analyzer_name: str, text: str) -> dict[str, Any]:
    """Decode a model reply that should be a single JSON object.

    Tolerates markdown code fences around the object.

    Raises:
        AnalyzerMalformedOutput: If the text is not a JSON object.
    """
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = [line for line in cleaned.split("\n") if not line.strip().startswith("```")]
        cleaned = "\n".join(lines).strip()
    try:
        decoded = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise AnalyzerMalformedOutput(analyzer_name, f"Analyzer {analyzer_name} returned invalid JSON: {e.msg}") from e
    if not isinstance(decoded, dict):
        raise AnalyzerMalformedOutput(
            analyzer_name, f"Analyzer {analyzer_name} returned {type(decoded).__name__}, expected object"
        )
    return decoded


def _billed(exc: AnalyzerError, input_tokens: int, output_tokens: int) -> AnalyzerError:
    """Attach the usage of a reply that came back but could not be used."""
    exc.input_tokens = input_tokens
    exc.output_tokens = output_tokens
    exc.cost_usd = price_tokens(input_tokens, output_tokens)
    return exc


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------


class ModelTransport(ABC):
    """``invoke(analyzer_name, prompt) -> ModelResponse``. Opaque latency, may fail."""

    @abstractmethod
    async def invoke(self, analyzer_name: str, prompt: ModelPrompt) -> ModelResponse:
        """Call the model once and return its parsed JSON reply.

        Raises:
            AnalyzerTimeout: The provider timed out.
            AnalyzerMalformedOutput: The reply was not a JSON object.
            AnalyzerTruncatedOutput: The reply hit the token limit.
            TransientModelError: Retryable provider failure.
            ExternalServiceError: Any other provider failure.
            CircuitBreakerOpen: The model API breaker is open.
        """


class LiteLLMTransport(ModelTransport):
    """Transport through ``litellm.acompletion`` with JSON response format."""

    def __init__(
        self,
        api_key: str | None = None,
        circuit_breaker: CircuitBreaker = model_api_circuit_breaker,
    ) -> None:
        self._api_key = api_key
        self._breaker = circuit_breaker

    async def invoke(self, analyzer_name: str, prompt: ModelPrompt) -> ModelResponse:
        start = time.monotonic()
        try:
            response = await self._breaker.call(
                acompletion,
                model=prompt.model,
                messages=[
                    {"role": "system", "content": prompt.system},
                    {"role": "user", "content": prompt.user},
                ],
                temperature=prompt.temperature,
                max_tokens=prompt.max_tokens,
                response_format={"type": "json_object"},
                timeout=prompt.timeout_seconds,
                api_key=self._api_key,
            )
        except CircuitBreakerOpen:
            raise
        except litellm.Timeout as e:
            raise AnalyzerTimeout(analyzer_name, prompt.timeout_seconds) from e
        except (
            litellm.RateLimitError,
            litellm.APIConnectionError,
            litellm.ServiceUnavailableError,
            litellm.InternalServerError,
        ) as e:
            raise TransientModelError(str(e)) from e
        except Exception as e:
            raise ExternalServiceError("model_api", f"{type(e).__name__}: {e}") from e

        latency_ms = int((time.monotonic() - start) * 1000)
        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "prompt_tokens", 0) or 0
        output_tokens = getattr(usage, "completion_tokens", 0) or 0
        if getattr(choice, "finish_reason", None) == "length":
            raise _billed(AnalyzerTruncatedOutput(analyzer_name), input_tokens, output_tokens)
        try:
            raw = parse_json_object(analyzer_name, choice.message.content or "")
        except AnalyzerMalformedOutput as e:
            _billed(e, input_tokens, output_tokens)
            raise

        logger.debug(
            "ANALYZER: %s model reply received",
            analyzer_name,
            extra={"model": prompt.model, "latency_ms": latency_ms, "tokens": input_tokens + output_tokens},
        )
        return ModelResponse(
            raw_json=raw,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=price_tokens(input_tokens, output_tokens),
            model=getattr(response, "model", None) or prompt.model,
            latency_ms=latency_ms,
        )


class AnthropicTransport(ModelTransport):
    """Transport through the Anthropic SDK's Messages API."""

    def __init__(
        self,
        api_key: str | None = None,
        circuit_breaker: CircuitBreaker = model_api_circuit_breaker,
    ) -> None:
        self._client = anthropic.AsyncAnthropic(api_key=api_key)
        self._breaker = circuit_breaker

    async def invoke(self, analyzer_name: str, prompt: ModelPrompt) -> ModelResponse:
        start = time.monotonic()
        try:
            response = await self._breaker.call(
                self._client.messages.create,
                model=prompt.model,
                max_tokens=prompt.max_tokens,
                temperature=prompt.temperature,
                system=prompt.system + "\nRespond with a single JSON object and nothing else.",
                messages=[{"role": "user", "content": prompt.user}],
                timeout=prompt.timeout_seconds,
            )
        except CircuitBreakerOpen:
            raise
        except anthropic.APITimeoutError as e:
            raise AnalyzerTimeout(analyzer_name, prompt.timeout_seconds) from e
        except (anthropic.RateLimitError, anthropic.APIConnectionError, anthropic.InternalServerError) as e:
            raise TransientModelError(str(e)) from e
        except anthropic.APIError as e:
            raise ExternalServiceError("model_api", f"{type(e).__name__}: {e}") from e

        latency_ms = int((time.monotonic() - start) * 1000)
        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "input_tokens", 0) or 0
        output_tokens = getattr(usage, "output_tokens", 0) or 0
        if getattr(response, "stop_reason", None) == "max_tokens":
            raise _billed(AnalyzerTruncatedOutput(analyzer_name), input_tokens, output_tokens)

        text = "".join(
            getattr(block, "text", "") for block in response.content if getattr(block, "type", None) == "text"
        )
        try:
            raw = parse_json_object(analyzer_name, text)
        except AnalyzerMalformedOutput as e:
            _billed(e, input_tokens, output_tokens)
            raise
        return ModelResponse(
            raw_json=raw,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=price_tokens(input_tokens, output_tokens),
            model=prompt.model,
            latency_ms=latency_ms,
        )


_transport: ModelTransport | None = None


def get_transport() -> ModelTransport:
    """Get or create the process-wide transport for the configured provider."""
    global _transport
    if _transport is None:
        s = _get_settings()
        if s.LLM_TRANSPORT == "anthropic":
            _transport = AnthropicTransport(api_key=s.ANTHROPIC_API_KEY.get_secret_value() or None)
        else:
            _transport = LiteLLMTransport(api_key=s.OPENAI_API_KEY.get_secret_value() or None)
        logger.info("Model transport initialized", extra={"transport": s.LLM_TRANSPORT})
    return _transport
