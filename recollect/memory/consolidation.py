"""
Consolidation — Turning Finished Conversations Into Lasting Memory.

Sessions live in the cache only while an agent is talking to the customer.
Once a session passes its expiry deadline, the consolidator sweeps it into the
archive:

1. Claim the session so no other sweep (and no late update) can touch it
2. Ask the language model what happened: outcome, sentiment, tags
3. Write one episodic record under an id derived from the session id and
   its creation time
4. If the interaction succeeded, distill the tactic behind it into semantic
   memory, merging into a near-duplicate strategy when one exists
5. Delete the session

Step 3 is what makes the sweep safe to repeat. If a previous sweep crashed
after writing, the record is already there; this sweep skips straight to the
delete and no strategy is counted twice.

The sweep runs as a background asyncio task on a fixed interval, and can also
be driven by hand (``run_once`` for a whole batch, ``consolidate`` for one
live session). Every LLM step degrades to a conservative default: an
unanalyzable conversation is archived as unsuccessful and teaches nothing.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from recollect.api.embedding import conversation_text
from recollect.api.llm import CompletionRequest, LanguageModelService, structured_or_default
from recollect.errors import NotFoundError, RecollectError
from recollect.memory.manager import MemoryManager
from recollect.memory.models import (
    Applicability,
    EpisodicMemory,
    Outcome,
    SemanticMemory,
    Sentiment,
    Session,
)
from recollect.memory.prompts import PATTERN_PROMPT, SESSION_ANALYSIS_PROMPT, STRATEGY_PROMPT
from recollect.memory.retrieval import summarize_case
from recollect.memory.session_cache import SessionClaim

logger = structlog.get_logger(__name__)

# Strategies distilled from a single success start at this confidence.
NEW_STRATEGY_CONFIDENCE = 0.7
# Summaries sent to the model for pattern analysis.
_PATTERN_SAMPLE = 50


class _Report(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConsolidationReport(_Report):
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    strategies_created: int = 0
    strategies_merged: int = 0
    episodes_purged: int = 0
    duration: float = 0.0


class SessionAnalysis(BaseModel):
    outcome: Outcome = Field(default_factory=Outcome)
    sentiment: Sentiment = "neutral"
    tags: list[str] = Field(default_factory=list)


class ExtractedStrategy(BaseModel):
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    conditions: list[str] = Field(default_factory=list)
    tactics: list[str] = Field(default_factory=list)

    def render(self) -> str:
        parts = []
        if self.conditions:
            parts.append("Conditions:\n" + "\n".join(f"- {item}" for item in self.conditions))
        if self.tactics:
            parts.append("Tactics:\n" + "\n".join(f"- {item}" for item in self.tactics))
        return "\n\n".join(parts)


class _Patterns(BaseModel):
    patterns: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class PatternAnalysis(_Report):
    total_interactions: int = 0
    success_rate: float = 0.0
    by_agent_type: dict[str, dict[str, float]] = Field(default_factory=dict)
    by_customer_risk: dict[str, dict[str, float]] = Field(default_factory=dict)
    patterns: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    top_strategies: list[SemanticMemory] = Field(default_factory=list)


def fallback_analysis(session: Session) -> SessionAnalysis:
    """What gets archived when the model cannot analyze a transcript."""
    return SessionAnalysis(
        outcome=Outcome(success=False, payment_received=False),
        sentiment="neutral",
        tags=[session.agent_type],
    )


def applicability_for(session: Session) -> Applicability:
    risk = session.context.customer_risk
    return Applicability(customer_risk=[risk] if risk != "unknown" else [])


def _aggregate(episodes: list[EpisodicMemory], key: str) -> dict[str, dict[str, float]]:
    groups: dict[str, dict[str, float]] = {}
    for memory in episodes:
        name = memory.agent_type if key == "agent_type" else memory.context.customer_risk
        group = groups.setdefault(name, {"total": 0, "successful": 0, "success_rate": 0.0})
        group["total"] += 1
        if memory.outcome.success:
            group["successful"] += 1
    for group in groups.values():
        group["success_rate"] = round(group["successful"] / group["total"], 4)
    return groups


class Consolidator:
    """Sweeps expired sessions into episodic and semantic memory."""

    def __init__(
        self,
        memory: MemoryManager,
        llm: LanguageModelService,
        interval: float = 3600.0,
        batch_limit: int = 100,
        strategy_match_threshold: float = 0.9,
        retention_days: float = 0.0,
        step_timeout: float = 30.0,
    ):
        self._memory = memory
        self._llm = llm
        self._interval = interval
        self._batch_limit = batch_limit
        self._strategy_match_threshold = strategy_match_threshold
        self._retention_days = retention_days
        self._step_timeout = step_timeout

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._cycles = 0
        self._totals = ConsolidationReport()
        self._last_report: Optional[ConsolidationReport] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_report(self) -> Optional[ConsolidationReport]:
        return self._last_report

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            logger.warning("consolidator.already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("consolidator.started", interval=self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("consolidator.stopped", cycles=self._cycles)

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._interval)
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("consolidator.cycle_failed", error=str(exc), exc_info=True)

    # -------------------------------------------------------------------------
    # Sweeps
    # -------------------------------------------------------------------------

    async def run_once(self) -> ConsolidationReport:
        """Consolidate one batch of expired sessions."""
        start = time.monotonic()
        report = ConsolidationReport()

        expired = await self._memory.list_expired_sessions(self._batch_limit)
        for session in expired:
            report.processed += 1
            try:
                claim = await self._memory.claim_session(session.session_id, expired_only=True)
            except NotFoundError:
                report.skipped += 1
                logger.debug("consolidator.claim_lost", session_id=session.session_id)
                continue
            try:
                _, strategy_action = await self._process(claim)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                report.failed += 1
                logger.error(
                    "consolidator.session_failed",
                    session_id=session.session_id,
                    error=str(exc),
                    exc_info=True,
                )
                continue
            report.successful += 1
            if strategy_action == "created":
                report.strategies_created += 1
            elif strategy_action == "merged":
                report.strategies_merged += 1

        report.episodes_purged = await self._housekeeping()
        report.duration = time.monotonic() - start
        self._record(report)
        logger.info("consolidator.cycle_completed", **report.model_dump(exclude={"duration"}))
        return report

    async def consolidate(self, session_id: str, outcome: Optional[Outcome] = None) -> EpisodicMemory:
        """Consolidate one live session now; ``outcome`` overrides the analyzed one.

        Raises NotFoundError if the session is gone or already claimed.
        """
        claim = await self._memory.claim_session(session_id)
        memory, _ = await self._process(claim, outcome)
        return memory

    async def _process(
        self, claim: SessionClaim, outcome: Optional[Outcome] = None
    ) -> tuple[EpisodicMemory, Optional[str]]:
        session = claim.session
        analysis = await self.analyze_session(session)
        if outcome is not None:
            analysis = analysis.model_copy(update={"outcome": outcome})

        memory, created = await self._memory.archive_claimed_session(
            claim, analysis.outcome, sentiment=analysis.sentiment, tags=analysis.tags
        )

        # The episodic record is written; from here on the session goes away
        # even if learning the strategy blows up.
        strategy_action = None
        try:
            if created and memory.outcome.success:
                try:
                    strategy_action = await self._learn_strategy(session, memory)
                except RecollectError as exc:
                    logger.warning(
                        "consolidator.strategy_failed",
                        session_id=session.session_id,
                        error=str(exc),
                    )
            elif not created:
                logger.info(
                    "consolidator.already_archived",
                    session_id=session.session_id,
                    episodic_id=memory.id,
                )
        finally:
            await self._memory.finish_claim(claim)
        logger.info(
            "consolidator.session_consolidated",
            session_id=session.session_id,
            episodic_id=memory.id,
            success=memory.outcome.success,
            strategy=strategy_action,
        )
        return memory, strategy_action

    async def _housekeeping(self) -> int:
        purged = 0
        try:
            await self._memory.sessions.purge_stale()
        except RecollectError as exc:
            logger.warning("consolidator.session_prune_failed", error=str(exc))
        if self._retention_days > 0:
            try:
                purged = await self._memory.purge_episodic(self._retention_days)
            except RecollectError as exc:
                logger.warning("consolidator.retention_failed", error=str(exc))
        return purged

    def _record(self, report: ConsolidationReport) -> None:
        self._cycles += 1
        self._last_report = report
        for field in ("processed", "successful", "failed", "skipped",
                      "strategies_created", "strategies_merged", "episodes_purged"):
            setattr(self._totals, field, getattr(self._totals, field) + getattr(report, field))

    # -------------------------------------------------------------------------
    # LLM steps
    # -------------------------------------------------------------------------

    async def _ask(self, step: str, prompt: str, schema: type[Any], default: Any, temperature: float) -> Any:
        request = CompletionRequest(
            messages=[{"role": "user", "content": prompt}],
            temperature=temperature,
        )
        return await structured_or_default(
            self._llm, step, request, schema, default, timeout=self._step_timeout
        )

    async def analyze_session(self, session: Session) -> SessionAnalysis:
        prompt = SESSION_ANALYSIS_PROMPT.format(
            agent_type=session.agent_type,
            customer_risk=session.context.customer_risk,
            transcript=conversation_text(session.conversation_history) or "(empty)",
        )
        analysis = await self._ask(
            "session_analysis", prompt, SessionAnalysis, fallback_analysis(session), temperature=0.3
        )
        if not analysis.tags:
            analysis = analysis.model_copy(update={"tags": [session.agent_type]})
        return analysis

    async def extract_strategy(self, session: Session) -> Optional[ExtractedStrategy]:
        prompt = STRATEGY_PROMPT.format(
            agent_type=session.agent_type,
            customer_risk=session.context.customer_risk,
            transcript=conversation_text(session.conversation_history) or "(empty)",
        )
        return await self._ask("strategy_extraction", prompt, ExtractedStrategy, None, temperature=0.5)

    async def _learn_strategy(self, session: Session, memory: EpisodicMemory) -> Optional[str]:
        extracted = await self.extract_strategy(session)
        if extracted is None:
            return None

        existing = await self._memory.find_similar_strategy(
            extracted.title, extracted.description, threshold=self._strategy_match_threshold
        )
        if existing is not None:
            await self._memory.record_strategy_application(existing.id, True, derived_from=[memory.id])
            return "merged"

        await self._memory.store_strategy(
            extracted.title,
            extracted.description,
            extracted.render(),
            category="strategy",
            derived_from=[memory.id],
            applicable_when=applicability_for(session),
            success_count=1,
            times_applied=1,
            confidence=NEW_STRATEGY_CONFIDENCE,
        )
        return "created"

    # -------------------------------------------------------------------------
    # Analysis
    # -------------------------------------------------------------------------

    async def top_strategies(self, limit: int = 5) -> list[SemanticMemory]:
        strategies = await self._memory.list_strategies()
        strategies.sort(key=lambda memory: memory.success_rate * memory.confidence, reverse=True)
        return strategies[:limit]

    async def analyze_patterns(
        self,
        customer_risk: Optional[str] = None,
        agent_type: Optional[str] = None,
        since: Optional[float] = None,
    ) -> PatternAnalysis:
        episodes = await self._memory.list_episodes(
            customer_risk=customer_risk, agent_type=agent_type, since=since
        )
        top = await self.top_strategies()
        if not episodes:
            return PatternAnalysis(top_strategies=top)

        successful = sum(1 for memory in episodes if memory.outcome.success)
        episodes.sort(key=lambda memory: memory.timestamp, reverse=True)
        summaries = "\n".join(f"- {summarize_case(memory)}" for memory in episodes[:_PATTERN_SAMPLE])
        found = await self._ask(
            "pattern_analysis", PATTERN_PROMPT.format(summaries=summaries), _Patterns, _Patterns(),
            temperature=0.4,
        )
        return PatternAnalysis(
            total_interactions=len(episodes),
            success_rate=round(successful / len(episodes), 4),
            by_agent_type=_aggregate(episodes, "agent_type"),
            by_customer_risk=_aggregate(episodes, "customer_risk"),
            patterns=found.patterns,
            recommendations=found.recommendations,
            top_strategies=top,
        )

    async def statistics(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "cycles": self._cycles,
            "totals": self._totals.model_dump(exclude={"duration"}),
            "last_report": self._last_report.model_dump() if self._last_report else None,
            "top_strategies": [
                {
                    "id": memory.id,
                    "title": memory.title,
                    "success_rate": round(memory.success_rate, 4),
                    "times_applied": memory.times_applied,
                    "confidence": memory.confidence,
                }
                for memory in await self.top_strategies()
            ],
        }
