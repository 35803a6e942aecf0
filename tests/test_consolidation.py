"""Tests for the consolidator: sweeping expired sessions into long-term memory."""

from __future__ import annotations

import asyncio

import pytest

from conftest import T0, transcript
from recollect.errors import NotFoundError, TransientError
from recollect.memory.archive import EPISODIC_COLLECTION, SEMANTIC_COLLECTION
from recollect.memory.consolidation import (
    NEW_STRATEGY_CONFIDENCE,
    Consolidator,
    ExtractedStrategy,
    applicability_for,
    fallback_analysis,
)
from recollect.memory.models import InteractionContext, Outcome, episodic_id_for

SUCCESS_ANALYSIS = {
    "outcome": {"success": True, "paymentReceived": True, "amount": 120.0},
    "sentiment": "positive",
    "tags": ["payment_plan", "cooperative"],
}
FAILURE_ANALYSIS = {
    "outcome": {"success": False, "paymentReceived": False},
    "sentiment": "negative",
    "tags": ["refused"],
}
PLAN_STRATEGY = {
    "title": "Offer a payment plan",
    "description": "Split the balance into weekly installments",
    "conditions": ["customer cites cash flow"],
    "tactics": ["propose three installments", "confirm the first date"],
}


async def _expired_session(manager, clock, session_id="s-1", risk="high", agent="phone"):
    await manager.store_session(
        session_id,
        "cust-1",
        "camp-1",
        agent,
        transcript("We can split this up", "That works for me"),
        context=InteractionContext(customer_risk=risk),
    )
    clock.advance(1801)


# ---------------------------------------------------------------------------
# Sweeps
# ---------------------------------------------------------------------------

class TestRunOnce:
    @pytest.mark.asyncio
    async def test_successful_session_creates_episode_and_strategy(self, consolidator, manager, llm, clock):
        llm.script("session_analysis", SUCCESS_ANALYSIS)
        llm.script("strategy_extraction", PLAN_STRATEGY)
        await _expired_session(manager, clock)

        report = await consolidator.run_once()

        assert (report.processed, report.successful, report.failed, report.skipped) == (1, 1, 0, 0)
        assert report.strategies_created == 1
        episode = await manager.get_episodic(episodic_id_for("s-1", T0))
        assert episode.outcome.amount == 120.0
        assert episode.sentiment == "positive"
        assert episode.tags == ["payment_plan", "cooperative"]
        assert episode.conversation.duration == 60.0

        [strategy] = await manager.list_strategies()
        assert strategy.title == PLAN_STRATEGY["title"]
        assert strategy.times_applied == 1
        assert strategy.success_rate == 1.0
        assert strategy.confidence == NEW_STRATEGY_CONFIDENCE
        assert strategy.derived_from == [episode.id]
        assert strategy.applicable_when.customer_risk == ["high"]
        assert "propose three installments" in strategy.content

        with pytest.raises(NotFoundError):
            await manager.get_session("s-1")
        assert await manager.list_expired_sessions() == []

    @pytest.mark.asyncio
    async def test_unanalyzable_session_is_archived_as_unsuccessful(self, consolidator, manager, llm, clock):
        await _expired_session(manager, clock, agent="sms")

        report = await consolidator.run_once()

        assert report.successful == 1
        episode = await manager.get_episodic(episodic_id_for("s-1", T0))
        assert episode.outcome.success is False
        assert episode.tags == ["sms"]
        assert llm.calls("strategy_extraction") == []
        assert await manager.archive.count(SEMANTIC_COLLECTION) == 0

    @pytest.mark.asyncio
    async def test_failed_outcome_teaches_nothing(self, consolidator, manager, llm, clock):
        llm.script("session_analysis", FAILURE_ANALYSIS)
        llm.script("strategy_extraction", PLAN_STRATEGY)
        await _expired_session(manager, clock)

        report = await consolidator.run_once()

        assert report.strategies_created == 0
        assert llm.calls("strategy_extraction") == []

    @pytest.mark.asyncio
    async def test_live_sessions_are_left_alone(self, consolidator, manager, clock):
        await manager.store_session("s-1", "cust-1", "camp-1", "email")
        clock.advance(60)
        report = await consolidator.run_once()
        assert report.processed == 0
        assert (await manager.get_session("s-1")).session_id == "s-1"

    @pytest.mark.asyncio
    async def test_near_duplicate_strategy_is_merged(self, consolidator, manager, llm, clock):
        existing = await manager.store_strategy(
            PLAN_STRATEGY["title"], PLAN_STRATEGY["description"], success_count=1, times_applied=1
        )
        llm.script("session_analysis", SUCCESS_ANALYSIS)
        llm.script("strategy_extraction", PLAN_STRATEGY)
        await _expired_session(manager, clock)

        report = await consolidator.run_once()

        assert report.strategies_merged == 1
        assert report.strategies_created == 0
        assert await manager.archive.count(SEMANTIC_COLLECTION) == 1
        merged = await manager.get_semantic(existing.id)
        assert merged.times_applied == 2
        assert merged.success_rate == 1.0
        assert episodic_id_for("s-1", T0) in merged.derived_from

    @pytest.mark.asyncio
    async def test_already_archived_session_is_only_deleted(self, consolidator, manager, llm, clock):
        llm.script("session_analysis", SUCCESS_ANALYSIS)
        llm.script("strategy_extraction", PLAN_STRATEGY)
        await manager.store_interaction(
            "cust-1", "camp-1", "phone", transcript("earlier attempt"), memory_id=episodic_id_for("s-1", T0)
        )
        await _expired_session(manager, clock)

        report = await consolidator.run_once()

        assert report.successful == 1
        assert report.strategies_created == 0
        assert llm.calls("strategy_extraction") == []
        assert await manager.archive.count(EPISODIC_COLLECTION) == 1
        with pytest.raises(NotFoundError):
            await manager.get_session("s-1")

    @pytest.mark.asyncio
    async def test_archive_failure_counts_and_keeps_session(self, consolidator, manager, embeddings, clock):
        await _expired_session(manager, clock)
        embeddings.fail_with = TransientError("embedding provider down")

        report = await consolidator.run_once()

        assert report.failed == 1
        assert report.successful == 0
        expired = await manager.list_expired_sessions()
        assert [session.session_id for session in expired] == ["s-1"]

        embeddings.fail_with = None
        retry = await consolidator.run_once()
        assert retry.successful == 1

    @pytest.mark.asyncio
    async def test_strategy_failure_still_archives(self, consolidator, manager, llm, embeddings, clock):
        llm.script("session_analysis", SUCCESS_ANALYSIS)
        llm.script("strategy_extraction", PLAN_STRATEGY)
        await _expired_session(manager, clock)
        embeddings.failing_texts.add(
            f"Title: {PLAN_STRATEGY['title']}\nDescription: {PLAN_STRATEGY['description']}"
        )

        report = await consolidator.run_once()

        assert report.successful == 1
        assert report.strategies_created == 0
        assert await manager.find_episodic(episodic_id_for("s-1", T0)) is not None
        assert await manager.list_expired_sessions() == []

    @pytest.mark.asyncio
    async def test_unexpected_strategy_error_still_deletes_session(
        self, consolidator, manager, llm, clock, monkeypatch
    ):
        llm.script("session_analysis", SUCCESS_ANALYSIS)
        await _expired_session(manager, clock)

        async def _broken(session, memory):
            raise RuntimeError("strategy store exploded")

        monkeypatch.setattr(consolidator, "_learn_strategy", _broken)
        report = await consolidator.run_once()

        assert report.failed == 1
        assert await manager.find_episodic(episodic_id_for("s-1", T0)) is not None
        assert await manager.list_expired_sessions() == []
        with pytest.raises(NotFoundError):
            await manager.get_session("s-1")

    @pytest.mark.asyncio
    async def test_session_refreshed_during_sweep_stays_live(
        self, consolidator, manager, llm, clock, monkeypatch
    ):
        llm.script("session_analysis", FAILURE_ANALYSIS)
        await manager.store_session("s-1", "cust-1", "camp-1", "phone", transcript("first"))
        clock.advance(1)
        await manager.store_session("s-2", "cust-2", "camp-1", "sms", transcript("second"))
        clock.advance(1801)

        complete = llm.complete
        refreshed = []

        async def _complete(request):
            # The agent picks s-2 back up while s-1 is being analyzed.
            if not refreshed:
                refreshed.append(
                    await manager.store_session("s-2", "cust-2", "camp-1", "sms", transcript("back again"))
                )
            return await complete(request)

        monkeypatch.setattr(llm, "complete", _complete)
        report = await consolidator.run_once()

        assert (report.processed, report.successful, report.skipped) == (2, 1, 1)
        live = await manager.get_session("s-2")
        assert live.conversation_history[0].content == "back again"
        assert await manager.archive.count(EPISODIC_COLLECTION) == 1

    @pytest.mark.asyncio
    async def test_batch_limit(self, manager, llm, clock):
        consolidator = Consolidator(manager, llm, batch_limit=2, step_timeout=5.0)
        for index in range(3):
            await manager.store_session(f"s-{index}", "cust-1", "camp-1", "email")
        clock.advance(1801)

        first = await consolidator.run_once()
        second = await consolidator.run_once()

        assert (first.processed, second.processed) == (2, 1)
        assert await manager.archive.count(EPISODIC_COLLECTION) == 3

    @pytest.mark.asyncio
    async def test_retention_purges_old_episodes(self, manager, llm):
        consolidator = Consolidator(manager, llm, retention_days=1, step_timeout=5.0)
        await manager.store_interaction(
            "cust-1", "camp-1", "sms", transcript("old"), timestamp=T0 - 3 * 86400
        )
        await manager.store_interaction("cust-1", "camp-1", "sms", transcript("recent"))

        report = await consolidator.run_once()

        assert report.episodes_purged == 1
        assert await manager.archive.count(EPISODIC_COLLECTION) == 1


class TestConcurrentSweeps:
    """Two consolidators over one store archive each session exactly once."""

    @pytest.mark.asyncio
    async def test_session_is_archived_once(self, manager, llm, clock):
        llm.script("session_analysis", SUCCESS_ANALYSIS)
        llm.script("strategy_extraction", PLAN_STRATEGY)
        first = Consolidator(manager, llm, step_timeout=5.0)
        second = Consolidator(manager, llm, step_timeout=5.0)
        await _expired_session(manager, clock)

        reports = await asyncio.gather(first.run_once(), second.run_once())

        assert sum(report.successful for report in reports) == 1
        assert sum(report.failed for report in reports) == 0
        assert sum(report.strategies_created for report in reports) == 1
        assert await manager.archive.count(EPISODIC_COLLECTION) == 1
        assert await manager.archive.count(SEMANTIC_COLLECTION) == 1
        with pytest.raises(NotFoundError):
            await manager.get_session("s-1")


# ---------------------------------------------------------------------------
# Manual consolidation
# ---------------------------------------------------------------------------

class TestConsolidate:
    @pytest.mark.asyncio
    async def test_outcome_override(self, consolidator, manager, llm):
        llm.script("session_analysis", FAILURE_ANALYSIS)
        await manager.store_session("s-1", "cust-1", "camp-1", "email", transcript("Paid in full"))

        memory = await consolidator.consolidate(
            "s-1", Outcome(success=True, payment_received=True, amount=80.0)
        )

        assert memory.id == episodic_id_for("s-1", T0)
        assert memory.outcome.success is True
        assert memory.sentiment == "negative"
        assert len(llm.calls("strategy_extraction")) == 1
        with pytest.raises(NotFoundError):
            await manager.get_session("s-1")

    @pytest.mark.asyncio
    async def test_missing_session(self, consolidator):
        with pytest.raises(NotFoundError):
            await consolidator.consolidate("ghost")

    @pytest.mark.asyncio
    async def test_claimed_session_is_refused(self, consolidator, manager):
        await manager.store_session("s-1", "cust-1", "camp-1", "email")
        await manager.claim_session("s-1")
        with pytest.raises(NotFoundError):
            await consolidator.consolidate("s-1")


# ---------------------------------------------------------------------------
# LLM steps
# ---------------------------------------------------------------------------

class TestAnalysis:
    @pytest.mark.asyncio
    async def test_empty_tags_default_to_agent_type(self, consolidator, manager, llm):
        llm.script("session_analysis", {"outcome": {"success": True}, "sentiment": "positive", "tags": []})
        session = await manager.store_session("s-1", "cust-1", "camp-1", "phone")
        analysis = await consolidator.analyze_session(session)
        assert analysis.tags == ["phone"]
        assert analysis.outcome.success is True

    @pytest.mark.asyncio
    async def test_invalid_sentiment_falls_back(self, consolidator, manager, llm):
        llm.script("session_analysis", {"outcome": {"success": True}, "sentiment": "ecstatic"})
        session = await manager.store_session("s-1", "cust-1", "camp-1", "email")
        assert await consolidator.analyze_session(session) == fallback_analysis(session)

    @pytest.mark.asyncio
    async def test_strategy_without_title_is_discarded(self, consolidator, manager, llm):
        llm.script("strategy_extraction", {"title": "", "description": "d"})
        session = await manager.store_session("s-1", "cust-1", "camp-1", "email")
        assert await consolidator.extract_strategy(session) is None
        assert llm.calls("strategy_extraction")[0].temperature == 0.5

    def test_render(self):
        strategy = ExtractedStrategy(title="t", description="d", tactics=["ask"])
        assert strategy.render() == "Tactics:\n- ask"
        assert ExtractedStrategy(title="t", description="d").render() == ""

    @pytest.mark.asyncio
    async def test_unknown_risk_applies_everywhere(self, manager):
        session = await manager.store_session("s-1", "cust-1", "camp-1", "email")
        assert applicability_for(session).customer_risk == []


class TestPatterns:
    @pytest.mark.asyncio
    async def test_aggregates_and_llm_patterns(self, consolidator, manager, llm):
        llm.script("pattern_analysis", {"patterns": ["plans work"], "recommendations": ["offer plans early"]})
        for agent, risk, success in (("email", "high", True), ("email", "high", True), ("sms", "low", False)):
            await manager.store_interaction(
                "cust-1", "camp-1", agent, transcript("x"),
                outcome=Outcome(success=success), context=InteractionContext(customer_risk=risk),
            )

        analysis = await consolidator.analyze_patterns()

        assert analysis.total_interactions == 3
        assert analysis.success_rate == pytest.approx(0.6667)
        assert analysis.by_agent_type["email"] == {"total": 2, "successful": 2, "success_rate": 1.0}
        assert analysis.by_customer_risk["low"]["success_rate"] == 0.0
        assert analysis.patterns == ["plans work"]
        assert analysis.recommendations == ["offer plans early"]

    @pytest.mark.asyncio
    async def test_filters(self, consolidator, manager):
        await manager.store_interaction("cust-1", "camp-1", "email", transcript("x"))
        await manager.store_interaction("cust-1", "camp-1", "sms", transcript("y"))
        analysis = await consolidator.analyze_patterns(agent_type="sms")
        assert analysis.total_interactions == 1
        assert list(analysis.by_agent_type) == ["sms"]

    @pytest.mark.asyncio
    async def test_nothing_to_analyze(self, consolidator, llm):
        analysis = await consolidator.analyze_patterns(customer_risk="high")
        assert analysis.total_interactions == 0
        assert llm.calls("pattern_analysis") == []

    @pytest.mark.asyncio
    async def test_top_strategies_ordered_by_rate_times_confidence(self, consolidator, manager):
        weak = await manager.store_strategy("a", "a", success_count=1, times_applied=2, confidence=0.9)
        strong = await manager.store_strategy("b", "b", success_count=1, times_applied=1, confidence=0.7)
        top = await consolidator.top_strategies()
        assert [memory.id for memory in top] == [strong.id, weak.id]
        assert await consolidator.top_strategies(limit=1) == top[:1]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_stop(self, consolidator):
        assert consolidator.is_running is False
        await consolidator.start()
        assert consolidator.is_running is True
        await consolidator.start()
        await consolidator.stop()
        assert consolidator.is_running is False

    @pytest.mark.asyncio
    async def test_loop_sweeps_on_interval(self, manager, llm, clock):
        consolidator = Consolidator(manager, llm, interval=0.01, step_timeout=5.0)
        await _expired_session(manager, clock)
        await consolidator.start()
        try:
            for _ in range(500):
                if consolidator.last_report is not None:
                    break
                await asyncio.sleep(0.01)
        finally:
            await consolidator.stop()
        assert consolidator.last_report is not None
        assert await manager.find_episodic(episodic_id_for("s-1", T0)) is not None

    @pytest.mark.asyncio
    async def test_loop_survives_failed_cycle(self, consolidator, monkeypatch):
        calls = []

        async def _boom():
            calls.append(1)
            raise RuntimeError("store offline")

        monkeypatch.setattr(consolidator, "_interval", 0.0)
        monkeypatch.setattr(consolidator, "run_once", _boom)
        await consolidator.start()
        for _ in range(100):
            if len(calls) >= 2:
                break
            await asyncio.sleep(0.01)
        await consolidator.stop()
        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_statistics(self, consolidator, manager, llm, clock):
        llm.script("session_analysis", SUCCESS_ANALYSIS)
        llm.script("strategy_extraction", PLAN_STRATEGY)
        await _expired_session(manager, clock)
        await consolidator.run_once()
        await consolidator.run_once()

        stats = await consolidator.statistics()

        assert stats["running"] is False
        assert stats["cycles"] == 2
        assert stats["totals"]["successful"] == 1
        assert stats["totals"]["strategies_created"] == 1
        assert stats["last_report"]["processed"] == 0
        assert stats["top_strategies"][0]["title"] == PLAN_STRATEGY["title"]
        assert stats["top_strategies"][0]["times_applied"] == 1
