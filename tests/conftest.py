"""
Shared fixtures for the recollect test suite.

Provides a controllable clock, a scripted language model, deterministic
embeddings, and fully wired in-memory facades so individual test modules can
focus on behavior rather than setup.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional, Union

import pytest

from recollect.api.embedding import memory_text
from recollect.api.llm import Completion, CompletionRequest, TokenUsage
from recollect.errors import TransientError
from recollect.memory.archive import ArchiveStore, InMemoryArchiveBackend
from recollect.memory.consolidation import Consolidator
from recollect.memory.manager import MemoryManager
from recollect.memory.retrieval import RetrievalOrchestrator
from recollect.memory.session_cache import SessionCache, SQLiteSessionBackend
from recollect.memory.system import MemorySystem

DIM = 8
T0 = 1_700_000_000.0


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------

class FakeClock:
    """Epoch seconds that only move when a test says so."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------

def unit(index: int, dim: int = DIM) -> list[float]:
    vector = [0.0] * dim
    vector[index] = 1.0
    return vector


class FakeEmbeddings:
    """Every text embeds to the same unit vector unless overridden.

    With one shared direction every stored record scores 1.0 against every
    query, so tests control ranking and matching explicitly through
    ``override`` or by upserting archive records with chosen vectors.
    """

    def __init__(self, dimension: int = DIM):
        self.dimension = dimension
        self.overrides: dict[str, list[float]] = {}
        self.calls: list[str] = []
        self.fail_with: Optional[Exception] = None
        self.failing_texts: set[str] = set()
        # When set, every embed waits on it; lets tests hold calls in flight.
        self.gate: Optional[asyncio.Event] = None
        self.in_flight = 0
        self.max_in_flight = 0

    def override(self, text: str, vector: list[float]) -> None:
        self.overrides[text] = vector

    def override_strategy(self, title: str, description: str, vector: list[float]) -> None:
        self.overrides[memory_text(title, description)] = vector

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            if self.fail_with is not None:
                raise self.fail_with
            if text in self.failing_texts:
                raise TransientError(f"embedding failed for {text!r}")
            return list(self.overrides.get(text, unit(0, self.dimension)))
        finally:
            self.in_flight -= 1

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed(text) for text in texts]


# ---------------------------------------------------------------------------
# Language model
# ---------------------------------------------------------------------------

# A phrase unique to each prompt template, used to tell the steps apart.
STEP_MARKERS = {
    "intent": "Classify this request",
    "decompose": "Split this memory request",
    "rerank": "Rank these memories",
    "recommendations": "You advise a",
    "evaluate": "Grade this draft response",
    "session_analysis": "Analyze this finished",
    "strategy_extraction": "Extract the reusable tactic",
    "pattern_analysis": "Review these collection interaction summaries",
}

Reply = Union[str, dict, list, Exception]


class FakeLanguageModel:
    """Scripted ``LanguageModelService``.

    Replies are queued per step; the last reply for a step repeats. A step
    with no script raises, which exercises the step's fallback.
    """

    def __init__(self) -> None:
        self.scripts: dict[str, list[Reply]] = {}
        self.requests: list[tuple[str, CompletionRequest]] = []

    def script(self, step: str, *replies: Reply) -> None:
        assert step in STEP_MARKERS, step
        self.scripts[step] = list(replies)

    def calls(self, step: str) -> list[CompletionRequest]:
        return [request for name, request in self.requests if name == step]

    def _step(self, request: CompletionRequest) -> str:
        prompt = request.messages[-1]["content"]
        for step, marker in STEP_MARKERS.items():
            if marker in prompt:
                return step
        return "unknown"

    async def complete(self, request: CompletionRequest) -> Completion:
        step = self._step(request)
        self.requests.append((step, request))
        replies = self.scripts.get(step)
        if not replies:
            raise RuntimeError(f"no scripted reply for {step}")
        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        if isinstance(reply, Exception):
            raise reply
        content = reply if isinstance(reply, str) else json.dumps(reply)
        return Completion(content=content, model="fake-model", usage=TokenUsage(input_tokens=10, output_tokens=5))


# ---------------------------------------------------------------------------
# Wired components
# ---------------------------------------------------------------------------

@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def embeddings() -> FakeEmbeddings:
    return FakeEmbeddings()


@pytest.fixture()
def llm() -> FakeLanguageModel:
    return FakeLanguageModel()


@pytest.fixture()
def archive_backend() -> InMemoryArchiveBackend:
    return InMemoryArchiveBackend()


@pytest.fixture()
async def manager(clock, embeddings, archive_backend):
    """MemoryManager over in-memory SQLite sessions and an in-memory archive."""
    sessions = SessionCache(
        SQLiteSessionBackend(":memory:"),
        ttl_seconds=1800,
        grace_seconds=86400,
        claim_lease_seconds=300,
        clock=clock,
    )
    archive = ArchiveStore(archive_backend, dimension=DIM, score_threshold=0.7)
    memory = MemoryManager(sessions, archive, embeddings, semantic_min_confidence=0.7, clock=clock)
    await memory.initialize()
    yield memory
    await memory.close()


@pytest.fixture()
def orchestrator(manager, llm) -> RetrievalOrchestrator:
    return RetrievalOrchestrator(manager, llm, max_concurrency=2, max_subtasks=5, step_timeout=5.0)


@pytest.fixture()
def consolidator(manager, llm) -> Consolidator:
    return Consolidator(manager, llm, interval=3600, batch_limit=100, step_timeout=5.0)


def transcript(*lines: str, start: float = T0) -> list[dict[str, Any]]:
    """Alternating agent/customer messages one minute apart."""
    roles = ("agent", "customer")
    return [
        {"role": roles[index % 2], "content": line, "timestamp": start + 60 * index}
        for index, line in enumerate(lines)
    ]


def build_memory_system(
    llm,
    embeddings,
    clock,
    session_db: str = ":memory:",
    archive_backend: Optional[InMemoryArchiveBackend] = None,
    enabled: bool = True,
    auto_consolidate: bool = False,
    interval: float = 3600.0,
) -> MemorySystem:
    """An uninitialized MemorySystem over fakes, wired the way from_config wires it."""
    sessions = SessionCache(SQLiteSessionBackend(session_db), ttl_seconds=1800, clock=clock)
    archive = ArchiveStore(archive_backend or InMemoryArchiveBackend(), dimension=DIM)
    memory = MemoryManager(sessions, archive, embeddings, clock=clock)
    return MemorySystem(
        memory,
        RetrievalOrchestrator(memory, llm, step_timeout=5.0),
        Consolidator(memory, llm, interval=interval, step_timeout=5.0),
        enabled=enabled,
        auto_consolidate=auto_consolidate,
    )
