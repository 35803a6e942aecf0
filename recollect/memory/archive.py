"""
Archive Store — The Long-Term Tier.

Two vector collections hold everything worth remembering after a session ends:
``episodic_memories`` (one frozen record per completed interaction) and
``semantic_memories`` (strategies distilled from them). Both are searched by
cosine similarity with a metadata filter, and both share the same operation
shapes, so the store is collection-scoped rather than record-typed.

Guarantees the store adds on top of any backend:
- Vectors must match the configured dimension (1536 by default); anything
  else is a ``ValidationError`` before the backend is touched.
- The score threshold is applied here, client-side, for every backend:
  results below it are dropped, never merely sorted last.
- Payload updates (strategy counters) are read-then-write against the current
  stored payload, serialized per id within this process.
- Backend failures surface as ``TransientError``.

Filters are conjunctions of conditions on dotted paths into scalar payload
fields, e.g. ``outcome.success`` or ``context.customerRisk``.

Backends: Chroma (persistent, HTTP, or ephemeral client) for deployments, and
a pure-Python in-memory backend for tests and single-process development.
"""

from __future__ import annotations

import asyncio
import json
import math
from typing import Any, Awaitable, Callable, Optional, Protocol

import chromadb
import structlog
from pydantic import BaseModel, Field

from recollect.errors import (
    NotFoundError,
    RecollectError,
    TransientError,
    ValidationError,
)
from recollect.memory._utils import KeyedLock, cosine_similarity

logger = structlog.get_logger(__name__)

EPISODIC_COLLECTION = "episodic_memories"
SEMANTIC_COLLECTION = "semantic_memories"
COLLECTIONS = (EPISODIC_COLLECTION, SEMANTIC_COLLECTION)

_RECORD_KIND = {EPISODIC_COLLECTION: "episodic memory", SEMANTIC_COLLECTION: "semantic memory"}
_MISSING = object()


def _lookup(payload: dict[str, Any], path: str) -> Any:
    value: Any = payload
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


class Condition(BaseModel):
    """One predicate on a payload field. Set exactly one kind of test."""

    key: str
    match: Any = None
    any_of: Optional[list[Any]] = None
    gt: Optional[float] = None
    gte: Optional[float] = None
    lt: Optional[float] = None
    lte: Optional[float] = None

    def test(self, payload: dict[str, Any]) -> bool:
        value = _lookup(payload, self.key)
        if value is _MISSING:
            return False
        if self.match is not None and value != self.match:
            return False
        if self.any_of is not None and value not in self.any_of:
            return False
        bounds = (self.gt, self.gte, self.lt, self.lte)
        if any(bound is not None for bound in bounds):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return False
            if self.gt is not None and not value > self.gt:
                return False
            if self.gte is not None and not value >= self.gte:
                return False
            if self.lt is not None and not value < self.lt:
                return False
            if self.lte is not None and not value <= self.lte:
                return False
        return True


class ArchiveFilter(BaseModel):
    must: list[Condition] = Field(default_factory=list)

    def matches(self, payload: dict[str, Any]) -> bool:
        return all(condition.test(payload) for condition in self.must)

    def __bool__(self) -> bool:
        return bool(self.must)


def where(**equals: Any) -> ArchiveFilter:
    """Shorthand for an all-equal filter; ``__`` in a name becomes a dot."""
    return ArchiveFilter(
        must=[Condition(key=key.replace("__", "."), match=value) for key, value in equals.items()]
    )


class ArchiveRecord(BaseModel):
    id: str
    payload: dict[str, Any]
    vector: list[float] = Field(default_factory=list)
    score: Optional[float] = None


class ArchiveBackend(Protocol):
    async def ensure_collection(self, name: str, dimension: int) -> None: ...

    async def upsert(self, collection: str, records: list[ArchiveRecord]) -> None: ...

    async def query(
        self, collection: str, vector: list[float], flt: ArchiveFilter, limit: int
    ) -> list[ArchiveRecord]: ...

    async def retrieve(self, collection: str, record_id: str) -> Optional[ArchiveRecord]: ...

    async def scroll(
        self, collection: str, flt: ArchiveFilter, limit: Optional[int]
    ) -> list[ArchiveRecord]: ...

    async def delete(self, collection: str, ids: list[str]) -> int: ...

    async def count(self, collection: str, flt: ArchiveFilter) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class InMemoryArchiveBackend:
    """Brute-force cosine search over dicts. Nothing survives the process."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, ArchiveRecord]] = {}

    def _collection(self, name: str) -> dict[str, ArchiveRecord]:
        if name not in self._collections:
            raise RuntimeError(f"collection {name} does not exist")
        return self._collections[name]

    async def ensure_collection(self, name: str, dimension: int) -> None:
        self._collections.setdefault(name, {})

    async def upsert(self, collection: str, records: list[ArchiveRecord]) -> None:
        store = self._collection(collection)
        for record in records:
            store[record.id] = record.model_copy(deep=True, update={"score": None})

    async def query(
        self, collection: str, vector: list[float], flt: ArchiveFilter, limit: int
    ) -> list[ArchiveRecord]:
        scored = [
            record.model_copy(deep=True, update={"score": cosine_similarity(vector, record.vector)})
            for record in self._collection(collection).values()
            if flt.matches(record.payload)
        ]
        scored.sort(key=lambda record: record.score, reverse=True)
        return scored[:limit]

    async def retrieve(self, collection: str, record_id: str) -> Optional[ArchiveRecord]:
        record = self._collection(collection).get(record_id)
        return record.model_copy(deep=True) if record else None

    async def scroll(
        self, collection: str, flt: ArchiveFilter, limit: Optional[int]
    ) -> list[ArchiveRecord]:
        matches = [
            record.model_copy(deep=True)
            for record in self._collection(collection).values()
            if flt.matches(record.payload)
        ]
        return matches if limit is None else matches[:limit]

    async def delete(self, collection: str, ids: list[str]) -> int:
        store = self._collection(collection)
        return sum(1 for record_id in ids if store.pop(record_id, None) is not None)

    async def count(self, collection: str, flt: ArchiveFilter) -> int:
        return sum(1 for record in self._collection(collection).values() if flt.matches(record.payload))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Chroma backend
# ---------------------------------------------------------------------------

def _flatten(payload: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Scalar leaves of a payload as dotted Chroma metadata keys."""
    flat: dict[str, Any] = {}
    for key, value in payload.items():
        path = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten(value, f"{path}."))
        elif isinstance(value, (str, bool, int, float)):
            flat[path] = value
    return flat


def _chroma_where(flt: ArchiveFilter) -> Optional[dict[str, Any]]:
    clauses: list[dict[str, Any]] = []
    for condition in flt.must:
        if condition.match is not None:
            clauses.append({condition.key: {"$eq": condition.match}})
        if condition.any_of is not None:
            clauses.append({condition.key: {"$in": list(condition.any_of)}})
        for op in ("gt", "gte", "lt", "lte"):
            bound = getattr(condition, op)
            if bound is not None:
                clauses.append({condition.key: {f"${op}": bound}})
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def _vector(raw: Any) -> list[float]:
    if raw is None:
        return []
    return [float(x) for x in raw]


class ChromaArchiveBackend:
    """
    Archive collections in ChromaDB (cosine space).

    Payloads are stored whole as the JSON document and flattened into scalar
    metadata for ``where`` pushdown. Results are re-checked against the filter
    client-side so every backend agrees on filter semantics.
    """

    def __init__(
        self,
        client: Any = None,
        path: Optional[str] = None,
        host: Optional[str] = None,
        port: int = 8000,
        collection_prefix: str = "",
    ):
        if client is None:
            if host:
                client = chromadb.HttpClient(host=host, port=port)
            elif path:
                client = chromadb.PersistentClient(path=str(path))
            else:
                client = chromadb.EphemeralClient()
        self._client = client
        self._prefix = collection_prefix
        self._collections: dict[str, Any] = {}

    def _collection(self, name: str) -> Any:
        if name not in self._collections:
            raise RuntimeError(f"collection {name} is not initialized")
        return self._collections[name]

    async def ensure_collection(self, name: str, dimension: int) -> None:
        collection = await asyncio.to_thread(
            self._client.get_or_create_collection,
            name=f"{self._prefix}{name}",
            metadata={"hnsw:space": "cosine", "dimension": dimension},
        )
        self._collections[name] = collection

    def _decode(self, record_id: str, document: Optional[str], vector: Any = None,
                distance: Optional[float] = None) -> ArchiveRecord:
        payload = json.loads(document) if document else {}
        score = None
        if distance is not None and not math.isnan(distance):
            score = 1.0 - float(distance)
        return ArchiveRecord(id=record_id, payload=payload, vector=_vector(vector), score=score)

    async def upsert(self, collection: str, records: list[ArchiveRecord]) -> None:
        if not records:
            return
        target = self._collection(collection)
        await asyncio.to_thread(
            target.upsert,
            ids=[record.id for record in records],
            embeddings=[record.vector for record in records],
            documents=[json.dumps(record.payload) for record in records],
            metadatas=[{"_kind": collection, **_flatten(record.payload)} for record in records],
        )

    async def query(
        self, collection: str, vector: list[float], flt: ArchiveFilter, limit: int
    ) -> list[ArchiveRecord]:
        target = self._collection(collection)
        total = await asyncio.to_thread(target.count)
        n_results = min(limit, total)
        if n_results <= 0:
            return []
        result = await asyncio.to_thread(
            target.query,
            query_embeddings=[vector],
            n_results=n_results,
            where=_chroma_where(flt),
            include=["documents", "distances"],
        )
        ids = result["ids"][0] if result.get("ids") else []
        documents = result["documents"][0] if result.get("documents") else [None] * len(ids)
        distances = result["distances"][0] if result.get("distances") else [None] * len(ids)
        records = [
            self._decode(record_id, document, distance=distance)
            for record_id, document, distance in zip(ids, documents, distances)
        ]
        records = [record for record in records if flt.matches(record.payload)]
        records.sort(key=lambda record: record.score or 0.0, reverse=True)
        return records

    async def retrieve(self, collection: str, record_id: str) -> Optional[ArchiveRecord]:
        result = await asyncio.to_thread(
            self._collection(collection).get,
            ids=[record_id],
            include=["documents", "embeddings"],
        )
        if not result.get("ids"):
            return None
        embeddings = result.get("embeddings")
        vector = embeddings[0] if embeddings is not None and len(embeddings) else None
        return self._decode(result["ids"][0], result["documents"][0], vector)

    async def scroll(
        self, collection: str, flt: ArchiveFilter, limit: Optional[int]
    ) -> list[ArchiveRecord]:
        result = await asyncio.to_thread(
            self._collection(collection).get,
            where=_chroma_where(flt),
            limit=limit,
            include=["documents"],
        )
        records = [
            self._decode(record_id, document)
            for record_id, document in zip(result.get("ids", []), result.get("documents") or [])
        ]
        return [record for record in records if flt.matches(record.payload)]

    async def delete(self, collection: str, ids: list[str]) -> int:
        if not ids:
            return 0
        target = self._collection(collection)
        existing = await asyncio.to_thread(target.get, ids=ids, include=[])
        found = list(existing.get("ids", []))
        if found:
            await asyncio.to_thread(target.delete, ids=found)
        return len(found)

    async def count(self, collection: str, flt: ArchiveFilter) -> int:
        if not flt:
            return int(await asyncio.to_thread(self._collection(collection).count))
        return len(await self.scroll(collection, flt, None))

    async def ping(self) -> bool:
        await asyncio.to_thread(self._client.heartbeat)
        return True

    async def close(self) -> None:
        self._collections.clear()


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class ArchiveStore:
    """Collection-scoped vector store with the guarantees listed above."""

    def __init__(
        self,
        backend: ArchiveBackend,
        dimension: int = 1536,
        score_threshold: float = 0.7,
    ):
        self._backend = backend
        self._dimension = int(dimension)
        self._score_threshold = float(score_threshold)
        self._locks = KeyedLock()

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def score_threshold(self) -> float:
        return self._score_threshold

    async def _call(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except RecollectError:
            raise
        except Exception as exc:
            logger.warning("archive.backend_error", operation=operation, error=str(exc)[:200])
            raise TransientError(f"archive unavailable during {operation}: {exc}") from exc

    def _check_collection(self, collection: str) -> None:
        if collection not in COLLECTIONS:
            raise ValidationError(f"unknown collection: {collection}")

    def _check_vector(self, vector: list[float]) -> None:
        if len(vector) != self._dimension:
            raise ValidationError(
                f"vector dimension {len(vector)} does not match archive dimension {self._dimension}"
            )
        if not all(math.isfinite(x) for x in vector):
            raise ValidationError("vector contains non-finite values")

    async def initialize(self) -> None:
        for collection in COLLECTIONS:
            await self._call("initialize", self._backend.ensure_collection(collection, self._dimension))
        logger.info("archive.initialized", collections=list(COLLECTIONS), dimension=self._dimension)

    async def close(self) -> None:
        await self._backend.close()

    async def ping(self) -> bool:
        return bool(await self._call("ping", self._backend.ping()))

    async def upsert(
        self, collection: str, record_id: str, vector: list[float], payload: dict[str, Any]
    ) -> None:
        self._check_collection(collection)
        self._check_vector(vector)
        record = ArchiveRecord(id=record_id, payload=payload, vector=list(vector))
        await self._call("upsert", self._backend.upsert(collection, [record]))

    async def search(
        self,
        collection: str,
        vector: list[float],
        flt: Optional[ArchiveFilter] = None,
        limit: int = 10,
        score_threshold: Optional[float] = None,
    ) -> list[ArchiveRecord]:
        """Nearest records at or above the score threshold, best first."""
        self._check_collection(collection)
        self._check_vector(vector)
        if limit <= 0:
            return []
        threshold = self._score_threshold if score_threshold is None else score_threshold
        hits = await self._call(
            "search", self._backend.query(collection, vector, flt or ArchiveFilter(), limit)
        )
        return [hit for hit in hits if hit.score is not None and hit.score >= threshold]

    async def get_by_id(self, collection: str, record_id: str) -> Optional[ArchiveRecord]:
        self._check_collection(collection)
        return await self._call("get", self._backend.retrieve(collection, record_id))

    async def scroll(
        self, collection: str, flt: Optional[ArchiveFilter] = None, limit: Optional[int] = 100
    ) -> list[ArchiveRecord]:
        self._check_collection(collection)
        return await self._call("scroll", self._backend.scroll(collection, flt or ArchiveFilter(), limit))

    async def delete_by_filter(self, collection: str, flt: ArchiveFilter) -> int:
        self._check_collection(collection)
        if not flt:
            raise ValidationError("refusing to delete with an empty filter")
        matches = await self.scroll(collection, flt, limit=None)
        deleted = await self._call(
            "delete", self._backend.delete(collection, [record.id for record in matches])
        )
        logger.info("archive.deleted", collection=collection, deleted=deleted)
        return deleted

    async def count(self, collection: str, flt: Optional[ArchiveFilter] = None) -> int:
        self._check_collection(collection)
        return int(await self._call("count", self._backend.count(collection, flt or ArchiveFilter())))

    async def update_payload(
        self,
        collection: str,
        record_id: str,
        mutate: Callable[[dict[str, Any]], dict[str, Any]],
    ) -> ArchiveRecord:
        """Read-modify-write one payload, serialized per record in this process.

        Neither backend offers a conditional write, so the per-id lock is the
        whole guarantee: two processes updating one record can still lose an
        update. ``version`` counts the writes.
        """
        self._check_collection(collection)
        async with self._locks.hold(f"{collection}:{record_id}"):
            current = await self.get_by_id(collection, record_id)
            if current is None:
                raise NotFoundError(_RECORD_KIND[collection], record_id)
            payload = dict(mutate(dict(current.payload)))
            payload["version"] = int(current.payload.get("version", 0)) + 1
            updated = ArchiveRecord(id=record_id, payload=payload, vector=current.vector)
            await self._call("update", self._backend.upsert(collection, [updated]))
            return updated
