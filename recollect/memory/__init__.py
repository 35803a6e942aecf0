"""Memory architecture — session cache, archive, and the layers over them."""
from recollect.memory.archive import ArchiveStore, ChromaArchiveBackend, InMemoryArchiveBackend
from recollect.memory.consolidation import ConsolidationReport, Consolidator
from recollect.memory.manager import MemoryManager, MemoryQueryResult, QueryFilters
from recollect.memory.models import (
    EpisodicMemory,
    InteractionContext,
    Message,
    Outcome,
    SemanticMemory,
    Session,
)
from recollect.memory.retrieval import AssembledContext, RetrievalOrchestrator, RetrievalResult
from recollect.memory.session_cache import (
    RedisSessionBackend,
    SessionCache,
    SQLiteSessionBackend,
)
from recollect.memory.system import MemorySystem

__all__ = [
    "ArchiveStore",
    "ChromaArchiveBackend",
    "InMemoryArchiveBackend",
    "SessionCache",
    "SQLiteSessionBackend",
    "RedisSessionBackend",
    "Session",
    "Message",
    "Outcome",
    "InteractionContext",
    "EpisodicMemory",
    "SemanticMemory",
    "MemoryManager",
    "MemoryQueryResult",
    "QueryFilters",
    "RetrievalOrchestrator",
    "RetrievalResult",
    "AssembledContext",
    "Consolidator",
    "ConsolidationReport",
    "MemorySystem",
]
