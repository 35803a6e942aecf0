"""
Embedding Service — turning conversations and strategies into vectors.

Every archive operation is keyed by a vector: queries are embedded before a
search, transcripts before an episodic write, and strategy text before a
semantic write or a near-duplicate check. This module defines the
``EmbeddingService`` protocol, the canonical text renderings used for each kind
of input, and ``OpenAIEmbeddingService``, an httpx client for any
OpenAI-compatible ``/embeddings`` endpoint.

Embeddings are deterministic for a given model and input, so the service keeps
an LRU cache in front of the provider. Conversations get re-embedded whenever a
strategy is re-extracted or a query repeats, and the cache makes that free.
"""

from __future__ import annotations

import hashlib
from collections import OrderedDict
from typing import Any, Iterable, Mapping, Optional, Protocol, runtime_checkable

import httpx
import structlog

from recollect.config import EmbeddingConfig
from recollect.errors import ConfigurationError, TransientError, ValidationError
from recollect.harness.retry import RetryConfig, is_retryable_error, with_retries

logger = structlog.get_logger(__name__)


@runtime_checkable
class EmbeddingService(Protocol):
    """Anything that maps text to fixed-dimension vectors."""

    dimension: int

    async def embed(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...


# ---------------------------------------------------------------------------
# Canonical text renderings
# ---------------------------------------------------------------------------

def conversation_text(messages: Iterable[Any]) -> str:
    """Render a transcript as ``role: content`` lines."""
    lines = []
    for message in messages:
        if isinstance(message, Mapping):
            role, content = message.get("role", ""), message.get("content", "")
        else:
            role, content = message.role, message.content
        lines.append(f"{role}: {content}")
    return "\n".join(lines)


def memory_text(title: str, description: str, content: str = "") -> str:
    text = f"Title: {title}\nDescription: {description}"
    if content:
        text += f"\n\n{content}"
    return text


def query_text(query: str, context: Optional[Mapping[str, Any]] = None) -> str:
    """Append non-empty context values to a query, ``|``-separated."""
    if not context:
        return query
    parts = [f"{key}: {value}" for key, value in context.items() if value not in (None, "")]
    if not parts:
        return query
    return f"{query} | " + " | ".join(parts)


class OpenAIEmbeddingService:
    """
    ``EmbeddingService`` over an OpenAI-compatible HTTP endpoint.

    Batches are split to ``batch_size`` and only cache misses are sent to the
    provider. Provider outages surface as ``TransientError`` after retries.
    """

    def __init__(
        self,
        config: EmbeddingConfig,
        client: Optional[httpx.AsyncClient] = None,
        retry: Optional[RetryConfig] = None,
    ):
        if client is None and not config.api_key:
            raise ConfigurationError("OPENAI_API_KEY is required for the embedding service.")
        self.dimension = config.dimension
        self._model = config.model
        self._batch_size = config.batch_size
        self._cache_size = config.cache_size
        self._retry = retry or RetryConfig()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            headers={"Authorization": f"Bearer {config.api_key}"},
            timeout=config.request_timeout_seconds,
        )
        self._cache: OrderedDict[str, list[float]] = OrderedDict()
        self._hits = 0
        self._misses = 0

    def _cache_key(self, text: str) -> str:
        return hashlib.sha256(f"{self._model}\x00{text}".encode("utf-8")).hexdigest()

    def _cache_get(self, key: str) -> Optional[list[float]]:
        vector = self._cache.get(key)
        if vector is not None:
            self._cache.move_to_end(key)
        return vector

    def _cache_put(self, key: str, vector: list[float]) -> None:
        if self._cache_size <= 0:
            return
        self._cache[key] = vector
        self._cache.move_to_end(key)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        results: list[Optional[list[float]]] = [None] * len(texts)
        pending: dict[str, list[int]] = {}
        for index, text in enumerate(texts):
            key = self._cache_key(text)
            cached = self._cache_get(key)
            if cached is not None:
                self._hits += 1
                results[index] = cached
            else:
                self._misses += 1
                pending.setdefault(key, []).append(index)

        keys = list(pending)
        for start in range(0, len(keys), self._batch_size):
            chunk = keys[start:start + self._batch_size]
            vectors = await self._request([texts[pending[key][0]] for key in chunk])
            for key, vector in zip(chunk, vectors):
                self._cache_put(key, vector)
                for index in pending[key]:
                    results[index] = vector

        return [vector for vector in results if vector is not None]

    async def _request(self, inputs: list[str]) -> list[list[float]]:
        async def _post() -> httpx.Response:
            response = await self._client.post(
                "/embeddings",
                json={"model": self._model, "input": inputs, "dimensions": self.dimension},
            )
            response.raise_for_status()
            return response

        try:
            response = await with_retries(_post, config=self._retry)
        except Exception as exc:
            if is_retryable_error(exc):
                raise TransientError(f"embedding provider unavailable: {exc}") from exc
            raise

        data = sorted(response.json().get("data", []), key=lambda item: item.get("index", 0))
        vectors = [[float(x) for x in item["embedding"]] for item in data]
        if len(vectors) != len(inputs):
            raise ValidationError(
                f"embedding provider returned {len(vectors)} vectors for {len(inputs)} inputs"
            )
        for vector in vectors:
            if len(vector) != self.dimension:
                raise ValidationError(
                    f"embedding dimension {len(vector)} does not match configured {self.dimension}"
                )
        logger.debug("embedding.requested", inputs=len(inputs), model=self._model)
        return vectors

    def cache_stats(self) -> dict[str, Any]:
        lookups = self._hits + self._misses
        return {
            "size": len(self._cache),
            "max_size": self._cache_size,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
        }

    def clear_cache(self) -> None:
        self._cache.clear()
        self._hits = 0
        self._misses = 0

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
