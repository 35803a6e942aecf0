"""
Retrieval Orchestrator — Agentic RAG Over Both Memory Tiers.

When an agent needs context for its next move, a single vector search is
rarely enough. This orchestrator runs a nine-step pipeline per query:

    1. Intent analysis      LLM classifies simple / complex / multi_step
    2. Task decomposition   complex intents become independent sub-queries
    3. Retrieval planning   limits, tiers, filters, and re-ranking per intent,
                            biased by how well past retrievals worked
    4. Retrieval execution  sub-queries in parallel (bounded), merged and
                            deduplicated by memory id
    5. Re-ranking           LLM reorders candidates when there are too many
    6. Context assembly     human-readable cases, strategies, insights, and
                            LLM recommendations
    7. Confidence scoring   deterministic heuristic in [0, 1]
    8. Quality evaluation   optional grading of a drafted response
    9. Feedback recording   running success metrics per (intent, risk tier)

Availability beats completeness. Every LLM-backed step has an explicit default
(see ``fallback_intent``, ``default_quality``, and the recommendation
constants) and degrades to it instead of raising. The only hard failure is the
archive being unreachable for every sub-query, surfaced as ``TransientError``.

The feedback loop is deliberately small: if a segment's success rate drops
below one half, later queries in that segment widen their limit and stop
insisting on successful-only precedents.
"""

from __future__ import annotations

import asyncio
import json
import math
import time
from typing import Any, Literal, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from recollect.api.llm import CompletionRequest, LanguageModelService, structured_or_default
from recollect.errors import TransientError
from recollect.memory._utils import clamp01
from recollect.memory.manager import MemoryManager, MemoryQueryResult, QueryFilters
from recollect.memory.models import (
    AgentType,
    EpisodicMemory,
    InteractionContext,
    SemanticMemory,
    Session,
)
from recollect.memory.prompts import (
    DECOMPOSE_PROMPT,
    EVALUATION_PROMPT,
    INTENT_PROMPT,
    RECOMMENDATIONS_PROMPT,
    RERANK_PROMPT,
)

logger = structlog.get_logger(__name__)

QueryType = Literal["simple", "complex", "multi_step"]

NO_RESULTS_RECOMMENDATION = "No similar cases or strategies found. Use standard approach."
FALLBACK_RECOMMENDATION = "Use best judgment based on available information."

BASE_LIMITS: dict[str, int] = {"simple": 3, "complex": 7, "multi_step": 10}
STRATEGY_KEYWORDS = ("strategy", "how to")
STRATEGY_MIN_CONFIDENCE = 0.7
LOW_SUCCESS_RATE = 0.5


class _PipelineModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class QueryIntent(_PipelineModel):
    type: QueryType = "simple"
    intent: str = ""
    complexity: float = 0.5
    required_information: list[str] = Field(default_factory=list)

    @field_validator("complexity", mode="before")
    @classmethod
    def _clamp_complexity(cls, value: Any) -> float:
        return clamp01(value)


class RetrievalStrategy(_PipelineModel):
    use_episodic: bool = True
    use_semantic: bool = True
    filters: QueryFilters = Field(default_factory=QueryFilters)
    limit: int = 5
    rerank: bool = False


class AssembledContext(_PipelineModel):
    current_session: Optional[Session] = None
    similar_cases: list[str] = Field(default_factory=list)
    relevant_strategies: list[str] = Field(default_factory=list)
    key_insights: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    confidence: float = 0.5


class QualityAssessment(_PipelineModel):
    accuracy: bool = True
    relevance: bool = True
    completeness: bool = True
    compliance: bool = True
    overall_score: float = 0.7
    issues: list[str] = Field(default_factory=list)
    needs_refinement: bool = False

    @field_validator("overall_score", mode="before")
    @classmethod
    def _clamp_score(cls, value: Any) -> float:
        return clamp01(value, default=0.7)


class PerformanceMetrics(_PipelineModel):
    success_count: int = 0
    total_count: int = 0
    avg_confidence: float = 0.0

    @property
    def success_rate(self) -> float:
        return self.success_count / self.total_count if self.total_count else 0.0


class RetrievalResult(_PipelineModel):
    context: AssembledContext
    memories: MemoryQueryResult
    intent: QueryIntent
    strategy: RetrievalStrategy
    subtasks: list[str]
    execution_time: float = 0.0


class _Subtasks(BaseModel):
    subtasks: list[str] = Field(default_factory=list)


class _Rankings(BaseModel):
    rankings: list[int] = Field(default_factory=list)


class _Recommendations(BaseModel):
    recommendations: list[str] = Field(default_factory=list)


def fallback_intent(query: str) -> QueryIntent:
    return QueryIntent(
        type="simple", intent=query, complexity=0.5, required_information=["relevant_memories"]
    )


def default_quality() -> QualityAssessment:
    return QualityAssessment()


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def calculate_confidence(memories: MemoryQueryResult, intent: QueryIntent) -> float:
    """Heuristic trust in an assembled context.

    0.5 base; +0.2 for five or more merged results (else +0.1 for three or
    more); +0.1 per strategy with success rate above 0.8; +0.1 times the
    fraction of successful episodes; +0.1 for a simple intent; clamped to [0, 1].
    """
    episodic = memories.episodic_memories
    semantic = memories.semantic_memories
    count = len(episodic) + len(semantic)

    confidence = 0.5
    if count >= 5:
        confidence += 0.2
    elif count >= 3:
        confidence += 0.1
    confidence += 0.1 * sum(1 for memory in semantic if memory.success_rate > 0.8)
    if episodic:
        successful = sum(1 for memory in episodic if memory.outcome.success)
        confidence += 0.1 * (successful / len(episodic))
    if intent.type == "simple":
        confidence += 0.1
    return round(max(0.0, min(1.0, confidence)), 6)


def summarize_case(memory: EpisodicMemory) -> str:
    outcome = memory.outcome
    status = "Successfully" if outcome.success else "Unsuccessfully"
    amount = f"${outcome.amount:,.2f}" if outcome.amount else "payment"
    tags = ", ".join(memory.tags) if memory.tags else "none"
    return (
        f"Customer {memory.customer_id} ({memory.context.customer_risk} risk): "
        f"{status} collected {amount} via {memory.agent_type}. "
        f"Sentiment: {memory.sentiment}. Key: {tags}"
    )


def summarize_strategy(memory: SemanticMemory) -> str:
    return (
        f"{memory.title}: {memory.description} "
        f"(Success rate: {memory.success_rate * 100:.0f}%, "
        f"Applied {memory.times_applied} times, "
        f"Confidence: {memory.confidence * 100:.0f}%)"
    )


def derive_key_insights(episodic: list[EpisodicMemory]) -> list[str]:
    insights: list[str] = []
    for memory in episodic:
        if not memory.outcome.success:
            continue
        insight = f"{memory.agent_type} works well for {memory.context.customer_risk} risk customers"
        if insight not in insights:
            insights.append(insight)
    return insights


def _score(memory: EpisodicMemory | SemanticMemory) -> float:
    return memory.similarity if memory.similarity is not None else 0.0


def _merge(results: list[MemoryQueryResult]) -> MemoryQueryResult:
    """Union of subtask results; one entry per memory id, best score kept."""
    episodic: dict[str, EpisodicMemory] = {}
    semantic: dict[str, SemanticMemory] = {}
    current = None
    for result in results:
        if current is None:
            current = result.current_session
        for memory in result.episodic_memories:
            kept = episodic.get(memory.id)
            if kept is None or _score(memory) > _score(kept):
                episodic[memory.id] = memory
        for memory in result.semantic_memories:
            kept = semantic.get(memory.id)
            if kept is None or _score(memory) > _score(kept):
                semantic[memory.id] = memory

    # Ids are unique per collection; a collision across tiers keeps the episode.
    semantic = {key: value for key, value in semantic.items() if key not in episodic}
    ordered_episodic = sorted(episodic.values(), key=_score, reverse=True)
    ordered_semantic = sorted(semantic.values(), key=_score, reverse=True)
    return MemoryQueryResult(
        current_session=current,
        episodic_memories=ordered_episodic,
        semantic_memories=ordered_semantic,
        total_results=len(ordered_episodic) + len(ordered_semantic),
        query_time=max((result.query_time for result in results), default=0.0),
    )


def _trim(
    memories: MemoryQueryResult,
    episodic: list[EpisodicMemory],
    semantic: list[SemanticMemory],
    limit: int,
) -> MemoryQueryResult:
    episodic = episodic[:limit]
    semantic = semantic[:math.ceil(limit / 2)]
    return memories.model_copy(
        update={
            "episodic_memories": episodic,
            "semantic_memories": semantic,
            "total_results": len(episodic) + len(semantic),
        }
    )


class RetrievalOrchestrator:
    """Plans, executes, and scores retrieval for one query at a time."""

    def __init__(
        self,
        memory: MemoryManager,
        llm: LanguageModelService,
        max_concurrency: int = 4,
        max_subtasks: int = 5,
        step_timeout: float = 30.0,
        max_limit: int = 15,
    ):
        self._memory = memory
        self._llm = llm
        self._max_concurrency = max(1, max_concurrency)
        self._max_subtasks = max(1, max_subtasks)
        self._step_timeout = step_timeout
        self._max_limit = max_limit
        self._metrics: dict[tuple[str, str], PerformanceMetrics] = {}

    async def _ask(
        self,
        step: str,
        prompt: str,
        schema: type[Any],
        default: Any,
        temperature: float,
        max_tokens: int = 1024,
    ) -> Any:
        request = CompletionRequest(
            messages=[{"role": "user", "content": prompt}],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return await structured_or_default(
            self._llm, step, request, schema, default, timeout=self._step_timeout
        )

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def execute(
        self,
        query: str,
        customer_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
        agent_type: Optional[AgentType] = None,
        context: Optional[InteractionContext] = None,
    ) -> RetrievalResult:
        start = time.monotonic()
        context = context or InteractionContext()

        intent = await self.analyze_intent(query, context)
        subtasks = await self.decompose(query, intent)
        strategy = self.plan(intent, context)
        memories = await self.retrieve(subtasks, strategy, customer_id, campaign_id, agent_type, context)
        if strategy.rerank and memories.total_results > strategy.limit:
            memories = await self.rerank(query, memories, strategy)
        assembled = await self.assemble(query, memories, intent, agent_type)

        elapsed = time.monotonic() - start
        logger.info(
            "retrieval.completed",
            intent_type=intent.type,
            subtasks=len(subtasks),
            results=memories.total_results,
            confidence=assembled.confidence,
            elapsed_seconds=round(elapsed, 3),
        )
        return RetrievalResult(
            context=assembled,
            memories=memories,
            intent=intent,
            strategy=strategy,
            subtasks=subtasks,
            execution_time=elapsed,
        )

    # -------------------------------------------------------------------------
    # 1-3: understand and plan
    # -------------------------------------------------------------------------

    async def analyze_intent(
        self, query: str, context: Optional[InteractionContext] = None
    ) -> QueryIntent:
        prompt = INTENT_PROMPT.format(
            query=query,
            context=json.dumps(context.as_query_context() if context else {}),
        )
        intent = await self._ask("intent", prompt, QueryIntent, fallback_intent(query), temperature=0.3)
        if not intent.intent.strip():
            intent = intent.model_copy(update={"intent": query})
        return intent

    async def decompose(self, query: str, intent: QueryIntent) -> list[str]:
        if intent.type == "simple":
            return [query]
        prompt = DECOMPOSE_PROMPT.format(
            query=query,
            intent=intent.intent,
            required=", ".join(intent.required_information) or "none",
            max_subtasks=self._max_subtasks,
        )
        response = await self._ask("decompose", prompt, _Subtasks, _Subtasks(), temperature=0.3)
        subtasks: list[str] = []
        for subtask in response.subtasks:
            cleaned = subtask.strip()
            if cleaned and cleaned not in subtasks:
                subtasks.append(cleaned)
        return subtasks[:self._max_subtasks] or [intent.intent or query]

    def plan(self, intent: QueryIntent, context: Optional[InteractionContext] = None) -> RetrievalStrategy:
        risk = context.customer_risk if context else "unknown"
        filters = QueryFilters(customer_risk=risk if risk != "unknown" else None)
        strategy = RetrievalStrategy(
            use_episodic=True,
            use_semantic=intent.type != "simple",
            filters=filters,
            limit=BASE_LIMITS[intent.type],
            rerank=intent.type != "simple",
        )

        text = intent.intent.lower()
        if any(keyword in text for keyword in STRATEGY_KEYWORDS):
            strategy.filters.success_only = True
            strategy.filters.min_confidence = STRATEGY_MIN_CONFIDENCE

        metrics = self._metrics.get((intent.type, risk))
        if metrics is not None and metrics.total_count > 0 and metrics.success_rate < LOW_SUCCESS_RATE:
            strategy.limit = min(strategy.limit * 2, self._max_limit)
            strategy.filters.success_only = None
            logger.info(
                "retrieval.strategy_widened",
                intent_type=intent.type,
                customer_risk=risk,
                success_rate=round(metrics.success_rate, 3),
                limit=strategy.limit,
            )
        return strategy

    # -------------------------------------------------------------------------
    # 4-5: fetch and order
    # -------------------------------------------------------------------------

    async def retrieve(
        self,
        subtasks: list[str],
        strategy: RetrievalStrategy,
        customer_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
        agent_type: Optional[AgentType] = None,
        context: Optional[InteractionContext] = None,
    ) -> MemoryQueryResult:
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _run(subtask: str) -> MemoryQueryResult:
            async with semaphore:
                return await self._memory.query(
                    subtask,
                    customer_id=customer_id,
                    campaign_id=campaign_id,
                    agent_type=agent_type,
                    limit=strategy.limit,
                    include_episodic=strategy.use_episodic,
                    include_semantic=strategy.use_semantic,
                    filters=strategy.filters,
                    context=context,
                )

        results = await asyncio.gather(*(_run(subtask) for subtask in subtasks), return_exceptions=True)

        succeeded = [result for result in results if isinstance(result, MemoryQueryResult)]
        failed = [result for result in results if isinstance(result, BaseException)]
        for error in failed:
            logger.warning(
                "retrieval.subtask_failed",
                error_type=type(error).__name__,
                error=str(error)[:200],
            )
        if not succeeded:
            cause = failed[0] if failed else None
            raise TransientError(
                f"archive unavailable for all {len(subtasks)} retrieval subtasks"
            ) from cause
        return _merge(succeeded)

    async def rerank(
        self, query: str, memories: MemoryQueryResult, strategy: RetrievalStrategy
    ) -> MemoryQueryResult:
        candidates: list[EpisodicMemory | SemanticMemory] = [
            *memories.episodic_memories,
            *memories.semantic_memories,
        ]
        lines = []
        for number, memory in enumerate(candidates, start=1):
            summary = (
                summarize_case(memory) if isinstance(memory, EpisodicMemory) else summarize_strategy(memory)
            )
            lines.append(f"{number}. [{_score(memory):.2f}] {summary}")
        prompt = RERANK_PROMPT.format(query=query, candidates="\n".join(lines))
        response = await self._ask("rerank", prompt, _Rankings, _Rankings(), temperature=0.1)

        chosen: list[int] = []
        for rank in response.rankings:
            index = rank - 1
            if 0 <= index < len(candidates) and index not in chosen:
                chosen.append(index)
        dropped = len(response.rankings) - len(chosen)
        if dropped:
            logger.debug("retrieval.rerank_indices_dropped", dropped=dropped)
        rest = sorted(
            (index for index in range(len(candidates)) if index not in chosen),
            key=lambda index: _score(candidates[index]),
            reverse=True,
        )
        ordered = [candidates[index] for index in chosen + rest]
        return _trim(
            memories,
            [memory for memory in ordered if isinstance(memory, EpisodicMemory)],
            [memory for memory in ordered if isinstance(memory, SemanticMemory)],
            strategy.limit,
        )

    # -------------------------------------------------------------------------
    # 6-7: assemble and score
    # -------------------------------------------------------------------------

    async def assemble(
        self,
        query: str,
        memories: MemoryQueryResult,
        intent: QueryIntent,
        agent_type: Optional[str] = None,
    ) -> AssembledContext:
        similar_cases = [summarize_case(memory) for memory in memories.episodic_memories]
        strategies = [summarize_strategy(memory) for memory in memories.semantic_memories]
        recommendations = await self._recommend(query, similar_cases, strategies, agent_type)
        return AssembledContext(
            current_session=memories.current_session,
            similar_cases=similar_cases,
            relevant_strategies=strategies,
            key_insights=derive_key_insights(memories.episodic_memories),
            recommendations=recommendations,
            confidence=calculate_confidence(memories, intent),
        )

    async def _recommend(
        self,
        query: str,
        similar_cases: list[str],
        strategies: list[str],
        agent_type: Optional[str],
    ) -> list[str]:
        if not similar_cases and not strategies:
            return [NO_RESULTS_RECOMMENDATION]
        prompt = RECOMMENDATIONS_PROMPT.format(
            agent_type=agent_type or "collection",
            query=query,
            cases="\n".join(f"- {case}" for case in similar_cases) or "- none",
            strategies="\n".join(f"- {strategy}" for strategy in strategies) or "- none",
        )
        response = await self._ask(
            "recommendations", prompt, _Recommendations, _Recommendations(), temperature=0.5
        )
        recommendations = [item.strip() for item in response.recommendations if item.strip()]
        return recommendations or [FALLBACK_RECOMMENDATION]

    # -------------------------------------------------------------------------
    # 8-9: evaluate and learn
    # -------------------------------------------------------------------------

    async def evaluate_response(
        self, query: str, response: str, context: AssembledContext
    ) -> QualityAssessment:
        """Grade a drafted response; a neutral pass if grading fails."""
        summary = "\n".join(
            [*context.similar_cases, *context.relevant_strategies, *context.recommendations]
        )
        prompt = EVALUATION_PROMPT.format(query=query, response=response, context=summary or "none")
        return await self._ask(
            "evaluate", prompt, QualityAssessment, default_quality(), temperature=0.2
        )

    def record_feedback(
        self,
        intent: QueryIntent,
        strategy: RetrievalStrategy,
        success: bool,
        confidence: float,
    ) -> PerformanceMetrics:
        risk = strategy.filters.customer_risk or "unknown"
        metrics = self._metrics.setdefault((intent.type, risk), PerformanceMetrics())
        metrics.total_count += 1
        if success:
            metrics.success_count += 1
        metrics.avg_confidence += (clamp01(confidence) - metrics.avg_confidence) / metrics.total_count
        logger.debug(
            "retrieval.feedback_recorded",
            intent_type=intent.type,
            customer_risk=risk,
            success=success,
            success_rate=round(metrics.success_rate, 3),
        )
        return metrics

    def performance_stats(self) -> dict[str, dict[str, Any]]:
        return {
            f"{query_type}_{risk}": {
                "success_count": metrics.success_count,
                "total_count": metrics.total_count,
                "success_rate": round(metrics.success_rate, 4),
                "avg_confidence": round(metrics.avg_confidence, 4),
            }
            for (query_type, risk), metrics in self._metrics.items()
        }
