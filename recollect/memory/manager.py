"""
Memory Manager — The Facade Over Both Tiers.

Agents, the retrieval orchestrator, and the consolidator all go through this
class; nothing else touches the session cache or the archive directly. It owns
the translation between typed records (Session, EpisodicMemory,
SemanticMemory) and what the tiers store, the embedding of every vector, and
the rules that span tiers:

- ``query`` reads the caller's live session plus the nearest episodic and
  semantic memories, deduplicated by id.
- ``consolidate_session`` is one logical transaction: claim the session, write
  its episodic record under an id derived from the session id and creation
  time, then delete the session. A crash after the write leaves a record the
  next attempt will find, so a session is never archived twice.
- Strategy counters change only through ``record_strategy_application``,
  which the archive serializes per strategy.
"""

from __future__ import annotations

import asyncio
import math
import time
from typing import Any, Callable, Iterable, Mapping, Optional

import structlog
from pydantic import BaseModel, Field

from recollect.api.embedding import EmbeddingService, conversation_text, memory_text, query_text
from recollect.errors import NotFoundError, TransientError
from recollect.memory.archive import (
    EPISODIC_COLLECTION,
    SEMANTIC_COLLECTION,
    ArchiveFilter,
    ArchiveStore,
    Condition,
)
from recollect.memory.models import (
    AgentType,
    Applicability,
    Conversation,
    EpisodicMemory,
    InteractionContext,
    Message,
    Outcome,
    SemanticMemory,
    Sentiment,
    Session,
    StrategyCategory,
    episodic_id_for,
)
from recollect.memory.session_cache import SessionCache, SessionClaim

logger = structlog.get_logger(__name__)

_DAY_SECONDS = 86400.0


class QueryFilters(BaseModel):
    customer_risk: Optional[str] = None
    success_only: Optional[bool] = None
    payment_received: Optional[bool] = None
    min_confidence: Optional[float] = None
    category: Optional[StrategyCategory] = None


class MemoryQueryResult(BaseModel):
    current_session: Optional[Session] = None
    episodic_memories: list[EpisodicMemory] = Field(default_factory=list)
    semantic_memories: list[SemanticMemory] = Field(default_factory=list)
    total_results: int = 0
    query_time: float = 0.0


def _messages(items: Iterable[Any]) -> list[Message]:
    result = []
    for item in items:
        if isinstance(item, Message):
            result.append(item)
        else:
            result.append(Message.model_validate(item))
    return result


def _unique(memories: list, seen: set[str]) -> list:
    unique = []
    for memory in memories:
        if memory.id not in seen:
            seen.add(memory.id)
            unique.append(memory)
    return unique


class MemoryManager:
    """Unified read/write access to the session cache and the archive."""

    def __init__(
        self,
        sessions: SessionCache,
        archive: ArchiveStore,
        embeddings: EmbeddingService,
        semantic_min_confidence: float = 0.7,
        clock: Callable[[], float] = time.time,
    ):
        self._sessions = sessions
        self._archive = archive
        self._embeddings = embeddings
        self._semantic_min_confidence = semantic_min_confidence
        self._clock = clock

    @property
    def sessions(self) -> SessionCache:
        return self._sessions

    @property
    def archive(self) -> ArchiveStore:
        return self._archive

    async def initialize(self) -> None:
        await self._sessions.initialize()
        await self._archive.initialize()
        logger.info("memory_manager.initialized")

    async def close(self) -> None:
        await self._sessions.close()
        await self._archive.close()

    # -------------------------------------------------------------------------
    # Query
    # -------------------------------------------------------------------------

    async def query(
        self,
        text: str,
        customer_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
        agent_type: Optional[AgentType] = None,
        limit: int = 5,
        include_episodic: bool = True,
        include_semantic: bool = True,
        filters: Optional[QueryFilters] = None,
        context: Optional[InteractionContext] = None,
    ) -> MemoryQueryResult:
        """Current session plus the nearest memories from both archive collections.

        Semantic results use half the limit (rounded up) and must clear the
        minimum confidence. Archive or embedding outages raise TransientError.
        """
        start = time.monotonic()
        filters = filters or QueryFilters()
        if filters.customer_risk is None and context is not None and context.customer_risk != "unknown":
            filters = filters.model_copy(update={"customer_risk": context.customer_risk})

        current = None
        if customer_id:
            current = await self._current_session(customer_id, agent_type, campaign_id)

        episodic: list[EpisodicMemory] = []
        semantic: list[SemanticMemory] = []
        if limit > 0 and (include_episodic or include_semantic):
            vector = await self._embeddings.embed(
                query_text(text, context.as_query_context() if context else None)
            )
            searches = []
            if include_episodic:
                searches.append(self._search_episodic(vector, customer_id, agent_type, filters, limit))
            if include_semantic:
                searches.append(self._search_semantic(vector, filters, math.ceil(limit / 2), context))
            results = await asyncio.gather(*searches)
            if include_episodic:
                episodic = results[0]
            if include_semantic:
                semantic = results[-1]

        seen: set[str] = set()
        episodic = _unique(episodic, seen)
        semantic = _unique(semantic, seen)

        result = MemoryQueryResult(
            current_session=current,
            episodic_memories=episodic,
            semantic_memories=semantic,
            total_results=len(episodic) + len(semantic),
            query_time=time.monotonic() - start,
        )
        logger.debug(
            "memory_manager.query",
            episodic=len(episodic),
            semantic=len(semantic),
            has_session=current is not None,
            query_time=round(result.query_time, 4),
        )
        return result

    async def _current_session(
        self,
        customer_id: str,
        agent_type: Optional[str],
        campaign_id: Optional[str],
    ) -> Optional[Session]:
        for session_id in await self._sessions.list_by_customer(customer_id):
            try:
                session = await self._sessions.get(session_id)
            except NotFoundError:
                continue
            if agent_type and session.agent_type != agent_type:
                continue
            if campaign_id and session.campaign_id != campaign_id:
                continue
            return session
        return None

    async def _search_episodic(
        self,
        vector: list[float],
        customer_id: Optional[str],
        agent_type: Optional[str],
        filters: QueryFilters,
        limit: int,
    ) -> list[EpisodicMemory]:
        conditions = []
        if customer_id:
            conditions.append(Condition(key="customerId", match=customer_id))
        if agent_type:
            conditions.append(Condition(key="agentType", match=agent_type))
        if filters.customer_risk:
            conditions.append(Condition(key="context.customerRisk", match=filters.customer_risk))
        if filters.success_only:
            conditions.append(Condition(key="outcome.success", match=True))
        if filters.payment_received is not None:
            conditions.append(Condition(key="outcome.paymentReceived", match=filters.payment_received))
        hits = await self._archive.search(
            EPISODIC_COLLECTION, vector, ArchiveFilter(must=conditions), limit
        )
        return [
            EpisodicMemory.from_payload(hit.id, hit.payload, similarity=hit.score) for hit in hits
        ]

    async def _search_semantic(
        self,
        vector: list[float],
        filters: QueryFilters,
        limit: int,
        context: Optional[InteractionContext],
    ) -> list[SemanticMemory]:
        min_confidence = (
            filters.min_confidence
            if filters.min_confidence is not None
            else self._semantic_min_confidence
        )
        conditions = [Condition(key="confidence", gte=min_confidence)]
        if filters.category:
            conditions.append(Condition(key="category", match=filters.category))
        # Over-fetch: applicability is checked after the search.
        hits = await self._archive.search(
            SEMANTIC_COLLECTION, vector, ArchiveFilter(must=conditions), limit * 2
        )
        memories = [
            SemanticMemory.from_payload(hit.id, hit.payload, similarity=hit.score) for hit in hits
        ]
        return [memory for memory in memories if memory.applicable_when.matches(context)][:limit]

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    async def store_session(
        self,
        session_id: str,
        customer_id: str,
        campaign_id: str,
        agent_type: AgentType,
        messages: Iterable[Any] = (),
        context: Optional[InteractionContext] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        current_state: str = "active",
        ttl: Optional[float] = None,
    ) -> Session:
        session = Session(
            session_id=session_id,
            customer_id=customer_id,
            campaign_id=campaign_id,
            agent_type=agent_type,
            conversation_history=_messages(messages),
            current_state=current_state,
            metadata=dict(metadata or {}),
            context=context or InteractionContext(),
            created_at=self._clock(),
        )
        stored = await self._sessions.put(session, ttl)
        logger.info("memory_manager.session_stored", session_id=session_id, agent_type=agent_type)
        return stored

    async def get_session(self, session_id: str) -> Session:
        return await self._sessions.get(session_id)

    async def list_customer_sessions(self, customer_id: str) -> list[Session]:
        sessions = []
        for session_id in await self._sessions.list_by_customer(customer_id):
            try:
                sessions.append(await self._sessions.get(session_id))
            except NotFoundError:
                continue
        return sessions

    async def update_session(self, session_id: str, changes: Mapping[str, Any]) -> Session:
        return await self._sessions.update(session_id, changes)

    async def append_message(self, session_id: str, role: str, content: str) -> Session:
        return await self._sessions.append_message(
            session_id, Message(role=role, content=content, timestamp=self._clock())
        )

    async def delete_session(self, session_id: str) -> None:
        await self._sessions.delete(session_id)

    async def list_expired_sessions(self, limit: int = 100) -> list[Session]:
        return await self._sessions.list_expired(limit)

    async def claim_session(self, session_id: str, expired_only: bool = False) -> SessionClaim:
        return await self._sessions.claim(session_id, expired_only=expired_only)

    async def release_session(self, claim: SessionClaim) -> None:
        await self._sessions.release(claim)

    # -------------------------------------------------------------------------
    # Episodic memory
    # -------------------------------------------------------------------------

    async def find_episodic(self, memory_id: str) -> Optional[EpisodicMemory]:
        record = await self._archive.get_by_id(EPISODIC_COLLECTION, memory_id)
        if record is None:
            return None
        return EpisodicMemory.from_payload(record.id, record.payload, record.vector)

    async def get_episodic(self, memory_id: str) -> EpisodicMemory:
        memory = await self.find_episodic(memory_id)
        if memory is None:
            raise NotFoundError("episodic memory", memory_id)
        return memory

    async def store_interaction(
        self,
        customer_id: str,
        campaign_id: str,
        agent_type: AgentType,
        messages: Iterable[Any],
        *,
        duration: float = 0.0,
        channel: Optional[str] = None,
        outcome: Optional[Outcome] = None,
        context: Optional[InteractionContext] = None,
        tags: Iterable[str] = (),
        sentiment: Sentiment = "neutral",
        memory_id: Optional[str] = None,
        timestamp: Optional[float] = None,
    ) -> EpisodicMemory:
        """Write one episodic record.

        With an explicit ``memory_id`` the write is idempotent: an existing
        record under that id is returned untouched.
        """
        if memory_id is not None:
            existing = await self.find_episodic(memory_id)
            if existing is not None:
                logger.info("memory_manager.interaction_exists", memory_id=memory_id)
                return existing

        transcript = _messages(messages)
        vector = await self._embeddings.embed(conversation_text(transcript))
        fields: dict[str, Any] = {}
        if memory_id is not None:
            fields["id"] = memory_id
        memory = EpisodicMemory(
            **fields,
            timestamp=timestamp if timestamp is not None else self._clock(),
            customer_id=customer_id,
            campaign_id=campaign_id,
            agent_type=agent_type,
            conversation=Conversation(
                messages=transcript, duration=duration, channel=channel or agent_type
            ),
            outcome=outcome or Outcome(),
            context=(context or InteractionContext()).snapshot(),
            embedding=vector,
            tags=list(dict.fromkeys(tags)),
            sentiment=sentiment,
        )
        await self._archive.upsert(EPISODIC_COLLECTION, memory.id, vector, memory.to_payload())
        logger.info(
            "memory_manager.interaction_stored",
            memory_id=memory.id,
            customer_id=customer_id,
            success=memory.outcome.success,
        )
        return memory

    async def list_episodes(
        self,
        customer_risk: Optional[str] = None,
        agent_type: Optional[str] = None,
        since: Optional[float] = None,
        limit: Optional[int] = 1000,
    ) -> list[EpisodicMemory]:
        conditions = []
        if customer_risk:
            conditions.append(Condition(key="context.customerRisk", match=customer_risk))
        if agent_type:
            conditions.append(Condition(key="agentType", match=agent_type))
        if since is not None:
            conditions.append(Condition(key="timestamp", gte=since))
        records = await self._archive.scroll(
            EPISODIC_COLLECTION, ArchiveFilter(must=conditions), limit
        )
        return [EpisodicMemory.from_payload(record.id, record.payload) for record in records]

    async def purge_episodic(self, older_than_days: float) -> int:
        """Retention sweep: delete episodic records older than the cutoff."""
        cutoff = self._clock() - older_than_days * _DAY_SECONDS
        deleted = await self._archive.delete_by_filter(
            EPISODIC_COLLECTION, ArchiveFilter(must=[Condition(key="timestamp", lt=cutoff)])
        )
        logger.info("memory_manager.episodic_purged", deleted=deleted, older_than_days=older_than_days)
        return deleted

    # -------------------------------------------------------------------------
    # Semantic memory
    # -------------------------------------------------------------------------

    async def find_semantic(self, memory_id: str) -> Optional[SemanticMemory]:
        record = await self._archive.get_by_id(SEMANTIC_COLLECTION, memory_id)
        if record is None:
            return None
        return SemanticMemory.from_payload(record.id, record.payload, record.vector)

    async def get_semantic(self, memory_id: str) -> SemanticMemory:
        memory = await self.find_semantic(memory_id)
        if memory is None:
            raise NotFoundError("semantic memory", memory_id)
        return memory

    async def store_strategy(
        self,
        title: str,
        description: str,
        content: str = "",
        *,
        category: StrategyCategory = "strategy",
        derived_from: Iterable[str] = (),
        applicable_when: Optional[Applicability] = None,
        success_count: int = 1,
        times_applied: int = 1,
        confidence: float = 0.7,
    ) -> SemanticMemory:
        # Strategies are embedded by title and description so near-duplicate
        # detection compares like with like.
        vector = await self._embeddings.embed(memory_text(title, description))
        now = self._clock()
        memory = SemanticMemory(
            category=category,
            title=title,
            description=description,
            content=content,
            derived_from=list(derived_from),
            success_count=success_count,
            times_applied=times_applied,
            applicable_when=applicable_when or Applicability(),
            embedding=vector,
            confidence=confidence,
            created_at=now,
            last_updated=now,
        )
        await self._archive.upsert(SEMANTIC_COLLECTION, memory.id, vector, memory.to_payload())
        logger.info("memory_manager.strategy_stored", memory_id=memory.id, title=title)
        return memory

    async def find_similar_strategy(
        self, title: str, description: str, threshold: float = 0.9
    ) -> Optional[SemanticMemory]:
        vector = await self._embeddings.embed(memory_text(title, description))
        hits = await self._archive.search(
            SEMANTIC_COLLECTION, vector, limit=1, score_threshold=threshold
        )
        if not hits:
            return None
        return SemanticMemory.from_payload(hits[0].id, hits[0].payload, similarity=hits[0].score)

    async def record_strategy_application(
        self,
        memory_id: str,
        success: bool,
        derived_from: Optional[Iterable[str]] = None,
    ) -> SemanticMemory:
        """Count one more application of a strategy, serialized per strategy."""
        sources = list(derived_from or [])

        def _apply(payload: dict[str, Any]) -> dict[str, Any]:
            memory = SemanticMemory.from_payload(memory_id, payload)
            return memory.record_application(success, sources, now=self._clock()).to_payload()

        record = await self._archive.update_payload(SEMANTIC_COLLECTION, memory_id, _apply)
        memory = SemanticMemory.from_payload(record.id, record.payload, record.vector)
        logger.info(
            "memory_manager.strategy_applied",
            memory_id=memory_id,
            success=success,
            times_applied=memory.times_applied,
            success_rate=round(memory.success_rate, 3),
        )
        return memory

    async def list_strategies(self, limit: Optional[int] = None) -> list[SemanticMemory]:
        records = await self._archive.scroll(SEMANTIC_COLLECTION, limit=limit)
        return [SemanticMemory.from_payload(record.id, record.payload) for record in records]

    # -------------------------------------------------------------------------
    # Consolidation transaction
    # -------------------------------------------------------------------------

    async def archive_claimed_session(
        self,
        claim: SessionClaim,
        outcome: Outcome,
        sentiment: Sentiment = "neutral",
        tags: Iterable[str] = (),
    ) -> tuple[EpisodicMemory, bool]:
        """Write the episodic record for a claimed session.

        Returns the record and whether this call created it. On failure the
        claim is released so a later sweep can retry.
        """
        session = claim.session
        memory_id = episodic_id_for(session.session_id, session.created_at)
        try:
            existing = await self.find_episodic(memory_id)
            if existing is not None:
                return existing, False
            duration = 0.0
            if len(session.conversation_history) > 1:
                duration = max(
                    0.0,
                    session.conversation_history[-1].timestamp - session.conversation_history[0].timestamp,
                )
            memory = await self.store_interaction(
                session.customer_id,
                session.campaign_id,
                session.agent_type,
                session.conversation_history,
                duration=duration,
                channel=session.agent_type,
                outcome=outcome,
                context=session.context,
                tags=tags,
                sentiment=sentiment,
                memory_id=memory_id,
            )
        except Exception:
            await self._release_quietly(claim)
            raise
        return memory, True

    async def finish_claim(self, claim: SessionClaim) -> None:
        """Delete a claimed session whose episodic record is written.

        A failed delete leaves the claim in place; once its lease lapses the
        next sweep finds the record already written and just deletes.
        """
        session_id = claim.session.session_id
        try:
            await self._sessions.delete(session_id)
        except NotFoundError:
            logger.debug("memory_manager.session_already_gone", session_id=session_id)
        except TransientError as exc:
            logger.warning("memory_manager.session_delete_failed", session_id=session_id, error=str(exc))

    async def _release_quietly(self, claim: SessionClaim) -> None:
        try:
            await self._sessions.release(claim)
        except Exception as exc:
            logger.warning(
                "memory_manager.claim_release_failed",
                session_id=claim.session.session_id,
                error=str(exc),
            )

    async def consolidate_session(self, session_id: str, outcome: Outcome) -> EpisodicMemory:
        """Claim, archive, and delete one session with a known outcome.

        Raises NotFoundError when the session is gone or another consolidator
        holds it; that caller then writes nothing.
        """
        claim = await self.claim_session(session_id)
        memory, _ = await self.archive_claimed_session(
            claim,
            outcome,
            sentiment="positive" if outcome.success else "neutral",
            tags=["successful" if outcome.success else "unsuccessful"],
        )
        await self.finish_claim(claim)
        logger.info("memory_manager.session_consolidated", session_id=session_id, memory_id=memory.id)
        return memory

    # -------------------------------------------------------------------------
    # Health & stats
    # -------------------------------------------------------------------------

    async def stats(self) -> dict[str, Any]:
        return {
            "short_term": {"active_sessions": await self._sessions.count()},
            "long_term": {
                "episodic_memories": await self._archive.count(EPISODIC_COLLECTION),
                "semantic_memories": await self._archive.count(SEMANTIC_COLLECTION),
            },
        }

    async def health_check(self) -> dict[str, bool]:
        short_term = await self._probe("short_term", self._sessions.ping)
        long_term = await self._probe("long_term", self._archive.ping)
        return {"short_term": short_term, "long_term": long_term, "overall": short_term and long_term}

    async def _probe(self, tier: str, ping: Callable[[], Any]) -> bool:
        try:
            return bool(await ping())
        except Exception as exc:
            logger.warning("memory_manager.health_probe_failed", tier=tier, error=str(exc))
            return False
