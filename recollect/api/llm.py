"""
Language Model Service — the reasoning collaborator behind every LLM step.

The memory subsystem asks a language model to classify queries, decompose
them, re-rank candidates, write recommendations, grade responses, analyze
finished sessions, and distill strategies. None of those steps may take the
pipeline down: each one has an explicit default, and ``structured_or_default``
is the single place where "try to parse the model's JSON into a typed
response, else return the default" happens.

The service itself is a ``typing.Protocol`` so tests (and other providers) can
stand in for it. ``AnthropicLanguageModel`` is the shipped adapter; it wraps
the Anthropic Messages API with a per-request timeout, retry with backoff, and
token/cost telemetry.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from typing import Any, Literal, Optional, Protocol, TypeVar, runtime_checkable

import anthropic
import structlog
from pydantic import BaseModel, Field

from recollect.config import LLMConfig
from recollect.errors import ConfigurationError, TransientError
from recollect.harness.retry import RetryConfig, is_retryable_error, with_retries

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_JSON_INSTRUCTION = (
    "Respond with a single JSON object only. Do not wrap it in markdown or add "
    "any text before or after it."
)
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class CompletionRequest(BaseModel):
    """A single stateless completion request."""

    messages: list[dict[str, str]]
    temperature: float = 0.3
    max_tokens: int = 1024
    response_format: Literal["text", "json"] = "text"
    system: Optional[str] = None


class Completion(BaseModel):
    content: str
    model: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    cost: float = 0.0


@runtime_checkable
class LanguageModelService(Protocol):
    """Anything that can turn a ``CompletionRequest`` into a ``Completion``."""

    async def complete(self, request: CompletionRequest) -> Completion: ...


def extract_json_object(text: str) -> dict[str, Any]:
    """Pull the first JSON object out of a model reply.

    Models occasionally wrap JSON in code fences or add a sentence around it;
    both are tolerated. Raises ``ValueError`` when no object can be decoded.
    """
    stripped = _FENCE_RE.sub("", (text or "").strip())
    try:
        value = json.loads(stripped)
    except json.JSONDecodeError:
        start = stripped.find("{")
        end = stripped.rfind("}")
        if start < 0 or end <= start:
            raise ValueError("no JSON object in model output") from None
        value = json.loads(stripped[start:end + 1])
    if not isinstance(value, dict):
        raise ValueError(f"expected a JSON object, got {type(value).__name__}")
    return value


async def structured_or_default(
    llm: LanguageModelService,
    step: str,
    request: CompletionRequest,
    schema: type[ModelT],
    default: ModelT,
    timeout: Optional[float] = None,
) -> ModelT:
    """Run one LLM-backed pipeline step with a typed fallback.

    The completion is parsed as JSON and validated against ``schema``. Any
    failure (provider error, timeout, malformed or off-schema output) is logged
    and ``default`` is returned instead. Cancellation is never swallowed.
    """
    request = request.model_copy(update={"response_format": "json"})
    try:
        if timeout is not None:
            completion = await asyncio.wait_for(llm.complete(request), timeout=timeout)
        else:
            completion = await llm.complete(request)
        return schema.model_validate(extract_json_object(completion.content))
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.warning(
            "llm.step_fallback",
            step=step,
            error_type=type(exc).__name__,
            error=str(exc)[:200],
        )
        return default


class AnthropicLanguageModel:
    """
    ``LanguageModelService`` backed by the Anthropic Messages API.

    Holds no conversational state. Each ``complete`` call is one request with
    its own timeout and retry budget; telemetry accumulates across calls.
    """

    def __init__(self, config: LLMConfig, client: Optional[Any] = None):
        if client is None:
            if not config.api_key:
                raise ConfigurationError(
                    "ANTHROPIC_API_KEY is required for the Anthropic language model."
                )
            client = anthropic.AsyncAnthropic(api_key=config.api_key)
        self._client = client
        self._model = config.model
        self._max_tokens = config.max_tokens
        self._timeout = float(config.request_timeout_seconds)
        self._retry = RetryConfig(
            max_retries=config.retry_max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        )
        self._input_cost = config.input_cost_per_mtok / 1_000_000
        self._output_cost = config.output_cost_per_mtok / 1_000_000

        self._total_calls = 0
        self._total_input_tokens = 0
        self._total_output_tokens = 0
        self._total_cost = 0.0

        logger.info("llm.initialized", provider="anthropic", model=self._model)

    async def complete(self, request: CompletionRequest) -> Completion:
        start_time = time.monotonic()

        system = request.system or ""
        if request.response_format == "json":
            system = f"{system}\n\n{_JSON_INSTRUCTION}".strip()

        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": min(request.max_tokens, self._max_tokens) or self._max_tokens,
            "temperature": request.temperature,
            "messages": request.messages,
        }
        if system:
            kwargs["system"] = system

        async def _create() -> Any:
            return await asyncio.wait_for(
                self._client.messages.create(**kwargs),
                timeout=self._timeout,
            )

        try:
            response = await with_retries(_create, config=self._retry)
        except (anthropic.APIConnectionError, anthropic.RateLimitError, asyncio.TimeoutError) as e:
            logger.warning("llm.unavailable", error_type=type(e).__name__, error=str(e)[:200])
            raise TransientError(f"language model unavailable: {e}") from e
        except anthropic.APIStatusError as e:
            logger.error("llm.api_error", error=str(e)[:200], status=e.status_code)
            if is_retryable_error(e):
                raise TransientError(f"language model unavailable: {e}") from e
            raise

        usage = TokenUsage(
            input_tokens=int(getattr(response.usage, "input_tokens", 0) or 0),
            output_tokens=int(getattr(response.usage, "output_tokens", 0) or 0),
        )
        cost = usage.input_tokens * self._input_cost + usage.output_tokens * self._output_cost

        self._total_calls += 1
        self._total_input_tokens += usage.input_tokens
        self._total_output_tokens += usage.output_tokens
        self._total_cost += cost

        logger.debug(
            "llm.completion",
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            elapsed_seconds=round(time.monotonic() - start_time, 2),
        )
        return Completion(
            content=self.extract_text(response),
            model=getattr(response, "model", None) or self._model,
            usage=usage,
            cost=round(cost, 6),
        )

    @staticmethod
    def extract_text(response: Any) -> str:
        """Join all text blocks of a Messages API response."""
        return "\n".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )

    @property
    def telemetry(self) -> dict[str, Any]:
        return {
            "total_calls": self._total_calls,
            "total_input_tokens": self._total_input_tokens,
            "total_output_tokens": self._total_output_tokens,
            "total_cost": round(self._total_cost, 6),
        }
