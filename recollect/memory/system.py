"""
Memory System — Wiring the Tiers, the Orchestrator, and the Consolidator.

One explicitly constructed container replaces any process-wide singleton.
``MemorySystem.from_config`` reads ``RecollectConfig`` and builds:

    session backend (SQLite or Redis) -> SessionCache
    archive backend (Chroma or in-memory) -> ArchiveStore
    embedding + language model adapters
    MemoryManager -> RetrievalOrchestrator + Consolidator

Tests and embedders can skip ``from_config`` and hand the constructor their
own pieces. ``initialize`` opens the backends and, when configured, starts the
background consolidation loop; ``shutdown`` undoes both in reverse order.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Optional

import structlog

from recollect.api.embedding import EmbeddingService, OpenAIEmbeddingService
from recollect.api.llm import AnthropicLanguageModel, LanguageModelService
from recollect.config import RecollectConfig
from recollect.harness.retry import RetryConfig
from recollect.memory.archive import (
    ArchiveBackend,
    ArchiveStore,
    ChromaArchiveBackend,
    InMemoryArchiveBackend,
)
from recollect.memory.consolidation import Consolidator
from recollect.memory.manager import MemoryManager, MemoryQueryResult
from recollect.memory.models import AgentType, InteractionContext
from recollect.memory.retrieval import (
    AssembledContext,
    RetrievalOrchestrator,
    RetrievalResult,
    RetrievalStrategy,
    fallback_intent,
)
from recollect.memory.session_cache import (
    RedisSessionBackend,
    SessionBackend,
    SessionCache,
    SQLiteSessionBackend,
)

logger = structlog.get_logger(__name__)


def build_session_backend(config: RecollectConfig) -> SessionBackend:
    if config.sessions.backend == "redis":
        return RedisSessionBackend(url=config.sessions.redis_url)
    return SQLiteSessionBackend(config.sessions.db_path)


def build_archive_backend(config: RecollectConfig) -> ArchiveBackend:
    if config.archive.backend == "memory":
        return InMemoryArchiveBackend()
    if config.archive.chroma_host:
        return ChromaArchiveBackend(host=config.archive.chroma_host, port=config.archive.chroma_port)
    return ChromaArchiveBackend(path=str(config.archive.path))


class MemorySystem:
    """Owns every memory component and their lifecycle."""

    def __init__(
        self,
        memory: MemoryManager,
        orchestrator: RetrievalOrchestrator,
        consolidator: Consolidator,
        enabled: bool = True,
        auto_consolidate: bool = False,
        resources: tuple[Any, ...] = (),
    ):
        self._memory = memory
        self._orchestrator = orchestrator
        self._consolidator = consolidator
        self._enabled = enabled
        self._auto_consolidate = auto_consolidate
        # Adapters built by from_config whose clients this system must close.
        self._resources = resources
        self._initialized = False

    @classmethod
    def from_config(
        cls,
        config: Optional[RecollectConfig] = None,
        llm: Optional[LanguageModelService] = None,
        embeddings: Optional[EmbeddingService] = None,
        clock: Callable[[], float] = time.time,
    ) -> "MemorySystem":
        config = config or RecollectConfig()
        owned: list[Any] = []
        if llm is None:
            llm = AnthropicLanguageModel(config.llm)
        if embeddings is None:
            embeddings = OpenAIEmbeddingService(
                config.embedding,
                retry=RetryConfig(
                    max_retries=config.llm.retry_max_retries,
                    base_delay=config.llm.retry_base_delay,
                    max_delay=config.llm.retry_max_delay,
                ),
            )
            owned.append(embeddings)

        sessions = SessionCache(
            build_session_backend(config),
            ttl_seconds=config.sessions.ttl_seconds,
            grace_seconds=config.sessions.grace_seconds,
            claim_lease_seconds=config.sessions.claim_lease_seconds,
            clock=clock,
        )
        archive = ArchiveStore(
            build_archive_backend(config),
            dimension=config.embedding.dimension,
            score_threshold=config.archive.score_threshold,
        )
        memory = MemoryManager(
            sessions,
            archive,
            embeddings,
            semantic_min_confidence=config.archive.semantic_min_confidence,
            clock=clock,
        )
        orchestrator = RetrievalOrchestrator(
            memory,
            llm,
            max_concurrency=config.retrieval.max_concurrent_retrievals,
            max_subtasks=config.retrieval.max_subtasks,
            step_timeout=config.retrieval.llm_step_timeout_seconds,
            max_limit=config.retrieval.max_limit,
        )
        consolidator = Consolidator(
            memory,
            llm,
            interval=config.consolidation.interval_seconds,
            batch_limit=config.consolidation.batch_limit,
            strategy_match_threshold=config.consolidation.strategy_match_threshold,
            retention_days=config.archive.retention_days,
            step_timeout=config.retrieval.llm_step_timeout_seconds,
        )
        return cls(
            memory,
            orchestrator,
            consolidator,
            enabled=config.features.memory_enabled,
            auto_consolidate=config.consolidation.auto_start,
            resources=tuple(owned),
        )

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError("MemorySystem is not initialized. Call initialize() first.")

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def memory(self) -> MemoryManager:
        self._require_initialized()
        return self._memory

    @property
    def orchestrator(self) -> RetrievalOrchestrator:
        self._require_initialized()
        return self._orchestrator

    @property
    def consolidator(self) -> Consolidator:
        self._require_initialized()
        return self._consolidator

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self._memory.initialize()
        self._initialized = True
        if self._auto_consolidate and self._enabled:
            await self._consolidator.start()
        logger.info(
            "memory_system.initialized",
            enabled=self._enabled,
            auto_consolidate=self._auto_consolidate,
        )

    async def shutdown(self) -> None:
        if not self._initialized:
            return
        await self._consolidator.stop()
        await self._memory.close()
        for resource in self._resources:
            await resource.close()
        self._initialized = False
        logger.info("memory_system.shutdown")

    async def __aenter__(self) -> "MemorySystem":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def retrieve(
        self,
        query: str,
        customer_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
        agent_type: Optional[AgentType] = None,
        context: Optional[InteractionContext] = None,
    ) -> RetrievalResult:
        """Assemble memory context for an agent; empty when memory is disabled."""
        self._require_initialized()
        if not self._enabled:
            return RetrievalResult(
                context=AssembledContext(confidence=0.0),
                memories=MemoryQueryResult(),
                intent=fallback_intent(query),
                strategy=RetrievalStrategy(use_episodic=False, use_semantic=False, limit=0),
                subtasks=[],
            )
        return await self._orchestrator.execute(
            query,
            customer_id=customer_id,
            campaign_id=campaign_id,
            agent_type=agent_type,
            context=context,
        )

    async def health_check(self) -> dict[str, Any]:
        self._require_initialized()
        health: dict[str, Any] = dict(await self._memory.health_check())
        health["consolidator"] = self._consolidator.is_running
        health["enabled"] = self._enabled
        return health

    async def stats(self) -> dict[str, Any]:
        self._require_initialized()
        stats = await self._memory.stats()
        stats["retrieval"] = self._orchestrator.performance_stats()
        stats["consolidation"] = await self._consolidator.statistics()
        for resource in self._resources:
            cache_stats = getattr(resource, "cache_stats", None)
            if cache_stats is not None:
                stats["embedding_cache"] = cache_stats()
        return stats
