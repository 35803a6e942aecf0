"""
Retry Logic — Riding Out Provider Hiccups.

Embedding and language-model providers fail transiently: networks drop, rate
limits hit, upstreams return 5xx. The adapters wrap every outbound call in
``with_retries`` so a single blip does not cost a consolidation or a query
its LLM-backed step.

The strategy:
- Exponential backoff: wait times double with each retry
- Jitter: random variation keeps parallel subtasks from retrying in lockstep
- Classification: only retry transient errors (429, 5xx, network, TransientError)
- Retry-After: honoured when the provider sends one
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Callable, Optional, TypeVar

import anthropic
import httpx
import structlog

from recollect.errors import TransientError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_RETRYABLE_STATUS = (429, 500, 502, 503, 504, 529)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        exponential_base: float = 2.0,
        jitter_range: float = 0.25,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter_range = jitter_range


def is_retryable_error(error: Exception) -> bool:
    """
    Determine if an error is transient and worth retrying.

    Retryable:
    - TransientError raised by our own adapters
    - 429 (rate limit) and 5xx from Anthropic or any httpx-backed provider
    - Connection and timeout errors

    NOT retryable:
    - 400/401/403/404 — the request or the credentials are wrong
    - Anything else (bugs, validation failures)
    """
    if isinstance(error, TransientError):
        return True
    if isinstance(error, (anthropic.APIConnectionError, anthropic.RateLimitError)):
        return True
    if isinstance(error, anthropic.APIStatusError):
        return error.status_code in _RETRYABLE_STATUS
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in _RETRYABLE_STATUS
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    return False


def _retry_after(error: Exception) -> Optional[float]:
    response = getattr(error, "response", None)
    if response is None:
        return None
    try:
        value = response.headers.get("retry-after")
    except AttributeError:
        return None
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def compute_delay(
    attempt: int,
    config: RetryConfig,
    retry_after: Optional[float] = None,
) -> float:
    """
    Compute the delay before the next retry attempt.

        delay = min(max_delay, base_delay * (exponential_base ^ attempt))
        delay += random jitter in [-jitter_range * delay, +jitter_range * delay]

    A provider-supplied Retry-After wins, but is capped at max_delay so a
    misbehaving upstream cannot park a query indefinitely.
    """
    if retry_after is not None and retry_after > 0:
        return min(retry_after, config.max_delay)

    delay = config.base_delay * (config.exponential_base ** attempt)
    delay = min(delay, config.max_delay)

    jitter = delay * config.jitter_range * (2 * random.random() - 1)
    return max(0.0, delay + jitter)


async def with_retries(
    func: Callable,
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable] = None,
) -> Any:
    """
    Execute an async callable with retry logic.

    Args:
        func: The async function to execute (no arguments — use a lambda/closure)
        config: Retry configuration (uses defaults if not specified)
        on_retry: Optional callback when a retry occurs (receives attempt, error, delay)

    Raises:
        The last error if it is not retryable or all retries are exhausted
    """
    if config is None:
        config = RetryConfig()

    for attempt in range(config.max_retries + 1):
        try:
            return await func()
        except Exception as e:
            if not is_retryable_error(e):
                raise

            if attempt >= config.max_retries:
                logger.error(
                    "retry.exhausted",
                    error_type=type(e).__name__,
                    error=str(e)[:200],
                    total_attempts=attempt + 1,
                )
                raise

            delay = compute_delay(attempt, config, _retry_after(e))
            logger.warning(
                "retry.attempt",
                error_type=type(e).__name__,
                error=str(e)[:200],
                attempt=attempt + 1,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 2),
            )
            if on_retry:
                on_retry(attempt + 1, e, delay)
            await asyncio.sleep(delay)

    raise RuntimeError("with_retries exited without a result")  # pragma: no cover
