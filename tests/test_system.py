"""Tests for MemorySystem wiring and lifecycle."""

from __future__ import annotations

import pytest

from conftest import DIM, build_memory_system, transcript
from recollect.config import RecollectConfig
from recollect.errors import ConfigurationError
from recollect.memory.archive import InMemoryArchiveBackend
from recollect.memory.retrieval import NO_RESULTS_RECOMMENDATION
from recollect.memory.session_cache import RedisSessionBackend, SQLiteSessionBackend
from recollect.memory.system import MemorySystem, build_archive_backend, build_session_backend


@pytest.fixture()
def system(llm, embeddings, clock) -> MemorySystem:
    return build_memory_system(llm, embeddings, clock)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_components_require_initialize(self, system):
        with pytest.raises(RuntimeError):
            system.memory
        with pytest.raises(RuntimeError):
            await system.retrieve("q")

    @pytest.mark.asyncio
    async def test_context_manager(self, system):
        async with system as running:
            assert running is system
            health = await system.health_check()
        assert health == {
            "short_term": True,
            "long_term": True,
            "overall": True,
            "consolidator": False,
            "enabled": True,
        }
        with pytest.raises(RuntimeError):
            system.consolidator

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, system):
        await system.initialize()
        await system.initialize()
        await system.shutdown()
        await system.shutdown()

    @pytest.mark.asyncio
    async def test_auto_consolidation_starts_and_stops(self, llm, embeddings, clock):
        system = build_memory_system(llm, embeddings, clock, auto_consolidate=True)
        async with system:
            assert system.consolidator.is_running is True
            consolidator = system.consolidator
        assert consolidator.is_running is False

    @pytest.mark.asyncio
    async def test_disabled_memory_never_starts_consolidation(self, llm, embeddings, clock):
        system = build_memory_system(llm, embeddings, clock, enabled=False, auto_consolidate=True)
        async with system:
            assert system.consolidator.is_running is False


class TestRetrieve:
    @pytest.mark.asyncio
    async def test_delegates_to_orchestrator(self, system):
        async with system:
            result = await system.retrieve("any history?", customer_id="cust-1")
        assert result.intent.type == "simple"
        assert result.context.recommendations == [NO_RESULTS_RECOMMENDATION]

    @pytest.mark.asyncio
    async def test_disabled_memory_returns_empty_context(self, llm, embeddings, clock):
        system = build_memory_system(llm, embeddings, clock, enabled=False)
        async with system:
            await system.memory.store_interaction("cust-1", "camp-1", "sms", transcript("x"))
            result = await system.retrieve("q", customer_id="cust-1")
        assert result.context.confidence == 0.0
        assert result.context.recommendations == []
        assert result.memories.total_results == 0
        assert result.subtasks == []
        assert result.strategy.limit == 0
        assert llm.requests == []


class TestStats:
    @pytest.mark.asyncio
    async def test_stats_sections(self, system):
        async with system:
            await system.memory.store_session("s-1", "cust-1", "camp-1", "phone")
            stats = await system.stats()
        assert stats["short_term"] == {"active_sessions": 1}
        assert stats["long_term"] == {"episodic_memories": 0, "semantic_memories": 0}
        assert stats["retrieval"] == {}
        assert stats["consolidation"]["cycles"] == 0
        assert "embedding_cache" not in stats


class TestFromConfig:
    @pytest.fixture()
    def env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("RECOLLECT_ARCHIVE_BACKEND", "memory")
        monkeypatch.setenv("RECOLLECT_SESSION_BACKEND", "sqlite")
        monkeypatch.setenv("RECOLLECT_SESSION_DB", str(tmp_path / "sessions.db"))
        monkeypatch.setenv("RECOLLECT_EMBEDDING_DIMENSION", str(DIM))
        monkeypatch.setenv("RECOLLECT_AUTO_CONSOLIDATE", "false")
        return tmp_path

    @pytest.mark.asyncio
    async def test_builds_from_environment(self, env, llm, embeddings):
        system = MemorySystem.from_config(llm=llm, embeddings=embeddings)
        async with system:
            health = await system.health_check()
        assert health["overall"] is True
        assert (env / "sessions.db").exists()

    @pytest.mark.asyncio
    async def test_owned_embedding_service_reports_cache(self, env, monkeypatch, llm):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        system = MemorySystem.from_config(llm=llm)
        async with system:
            stats = await system.stats()
        assert stats["embedding_cache"]["size"] == 0

    def test_missing_llm_key(self, env, monkeypatch, embeddings):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "")
        with pytest.raises(ConfigurationError):
            MemorySystem.from_config(embeddings=embeddings)


class TestBackendSelection:
    def test_sqlite_by_default(self, monkeypatch, tmp_path):
        monkeypatch.setenv("RECOLLECT_SESSION_BACKEND", "sqlite")
        monkeypatch.setenv("RECOLLECT_SESSION_DB", str(tmp_path / "s.db"))
        assert isinstance(build_session_backend(RecollectConfig()), SQLiteSessionBackend)

    def test_redis_requires_url(self, monkeypatch):
        monkeypatch.setenv("RECOLLECT_SESSION_BACKEND", "redis")
        monkeypatch.delenv("REDIS_URL", raising=False)
        with pytest.raises(ConfigurationError):
            build_session_backend(RecollectConfig())

    def test_redis_with_url(self, monkeypatch):
        monkeypatch.setenv("RECOLLECT_SESSION_BACKEND", "redis")
        monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
        assert isinstance(build_session_backend(RecollectConfig()), RedisSessionBackend)

    def test_memory_archive(self, monkeypatch):
        monkeypatch.setenv("RECOLLECT_ARCHIVE_BACKEND", "memory")
        assert isinstance(build_archive_backend(RecollectConfig()), InMemoryArchiveBackend)
