"""
Session Cache — The Short-Term Tier.

While a conversation is live its state sits here: the transcript so far, the
customer context, free-form agent metadata. Every write pushes the session's
``expires_at`` deadline out by the TTL (30 minutes by default). A session that
goes quiet past its deadline disappears from ``get`` and becomes visible to the
consolidator through an expiry-ordered index, so the sweep never has to scan
every key.

Concurrency rules:
- Mutations of one session are serialized by a per-session asyncio lock, so
  two turns appending at once cannot lose a message.
- The consolidator *claims* a session before archiving it. A claimed session
  is invisible to ``get``/``update``/``append_message``, which keeps a late
  turn from resurrecting a conversation that is already being archived. Only
  one claimant can win; losers see ``NotFoundError``.

Two backends implement the storage contract: SQLite (default, one file, one
process) and Redis (shared between workers). Both keep expired sessions around
for a grace period so the consolidator can still pick them up.
"""

from __future__ import annotations

import asyncio
import secrets
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Protocol

import redis.asyncio as aioredis
import redis.exceptions
import structlog

from recollect.errors import (
    ConfigurationError,
    ConsistencyError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from recollect.memory._utils import KeyedLock
from recollect.memory.models import Message, Session

logger = structlog.get_logger(__name__)


@dataclass
class SessionClaim:
    """A won claim: the session snapshot plus the token that owns it."""

    session: Session
    token: str


class SessionBackend(Protocol):
    async def initialize(self) -> None: ...

    async def close(self) -> None: ...

    async def ping(self) -> bool: ...

    async def write(self, session: Session, retain_until: float, now: float) -> None: ...

    async def read(self, session_id: str, now: float) -> Optional[Session]: ...

    async def remove(self, session_id: str) -> bool: ...

    async def customer_sessions(self, customer_id: str, now: float) -> list[str]: ...

    async def due(self, now: float, limit: int) -> list[str]: ...

    async def claim(
        self, session_id: str, token: str, lease_until: float, now: float, expired_only: bool = False
    ) -> Optional[Session]: ...

    async def release(self, session_id: str, token: str) -> None: ...

    async def count(self) -> int: ...

    async def purge_stale(self, now: float, grace_seconds: float) -> int: ...


# ---------------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------------

SESSION_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    expires_at REAL NOT NULL,
    retain_until REAL NOT NULL,
    claim_token TEXT,
    claimed_until REAL
);
CREATE INDEX IF NOT EXISTS idx_sessions_expires_at ON sessions(expires_at);
CREATE INDEX IF NOT EXISTS idx_sessions_customer ON sessions(customer_id, expires_at);
"""

_UNCLAIMED = "(claimed_until IS NULL OR claimed_until <= ?)"


class SQLiteSessionBackend:
    """
    Sessions in a single SQLite table.

    sqlite3 is synchronous; every call runs in a worker thread and a lock
    keeps the shared connection to one statement at a time. Claims are a
    conditional UPDATE, so the rowcount decides which claimant won.
    """

    def __init__(self, db_path: Path | str):
        self._db_path = Path(db_path) if str(db_path) != ":memory:" else None
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    async def initialize(self) -> None:
        if self._conn is not None:
            return
        await asyncio.to_thread(self._open)
        logger.info("session_cache.sqlite_initialized", path=str(self._db_path or ":memory:"))

    def _open(self) -> None:
        if self._db_path is not None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(self._db_path)
        else:
            target = ":memory:"
        conn = sqlite3.connect(target, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        if self._db_path is not None:
            conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(SESSION_SCHEMA)
        conn.commit()
        self._conn = conn

    def _require_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("SQLiteSessionBackend is not initialized. Call initialize() first.")
        return self._conn

    async def _run(self, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        conn = self._require_connection()

        def _locked() -> Any:
            with self._lock:
                try:
                    result = fn(conn)
                    conn.commit()
                    return result
                except Exception:
                    conn.rollback()
                    raise

        try:
            return await asyncio.to_thread(_locked)
        except sqlite3.OperationalError as exc:
            raise TransientError(f"session database unavailable: {exc}") from exc

    async def close(self) -> None:
        if self._conn is not None:
            conn, self._conn = self._conn, None
            await asyncio.to_thread(conn.close)

    async def ping(self) -> bool:
        await self._run(lambda conn: conn.execute("SELECT 1").fetchone())
        return True

    async def write(self, session: Session, retain_until: float, now: float) -> None:
        payload = session.model_dump_json(by_alias=True)

        def _write(conn: sqlite3.Connection) -> None:
            cursor = conn.execute(
                "UPDATE sessions SET customer_id = ?, payload = ?, expires_at = ?, "
                "retain_until = ?, claim_token = NULL, claimed_until = NULL "
                f"WHERE session_id = ? AND {_UNCLAIMED}",
                (session.customer_id, payload, session.expires_at, retain_until,
                 session.session_id, now),
            )
            if cursor.rowcount:
                return
            try:
                conn.execute(
                    "INSERT INTO sessions (session_id, customer_id, payload, expires_at, "
                    "retain_until) VALUES (?, ?, ?, ?, ?)",
                    (session.session_id, session.customer_id, payload,
                     session.expires_at, retain_until),
                )
            except sqlite3.IntegrityError:
                raise ConsistencyError(
                    f"session {session.session_id} is being consolidated"
                ) from None

        await self._run(_write)

    async def read(self, session_id: str, now: float) -> Optional[Session]:
        row = await self._run(
            lambda conn: conn.execute(
                f"SELECT payload FROM sessions WHERE session_id = ? AND retain_until > ? "
                f"AND {_UNCLAIMED}",
                (session_id, now, now),
            ).fetchone()
        )
        return Session.model_validate_json(row["payload"]) if row else None

    async def remove(self, session_id: str) -> bool:
        cursor = await self._run(
            lambda conn: conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
        )
        return cursor.rowcount > 0

    async def customer_sessions(self, customer_id: str, now: float) -> list[str]:
        rows = await self._run(
            lambda conn: conn.execute(
                "SELECT session_id FROM sessions WHERE customer_id = ? AND expires_at > ? "
                "ORDER BY expires_at DESC",
                (customer_id, now),
            ).fetchall()
        )
        return [row["session_id"] for row in rows]

    async def due(self, now: float, limit: int) -> list[str]:
        rows = await self._run(
            lambda conn: conn.execute(
                "SELECT session_id FROM sessions WHERE expires_at <= ? AND retain_until > ? "
                f"AND {_UNCLAIMED} ORDER BY expires_at LIMIT ?",
                (now, now, now, limit),
            ).fetchall()
        )
        return [row["session_id"] for row in rows]

    async def claim(
        self, session_id: str, token: str, lease_until: float, now: float, expired_only: bool = False
    ) -> Optional[Session]:
        sql = (
            "UPDATE sessions SET claim_token = ?, claimed_until = ? "
            f"WHERE session_id = ? AND retain_until > ? AND {_UNCLAIMED}"
        )
        params: tuple[Any, ...] = (token, lease_until, session_id, now, now)
        if expired_only:
            sql += " AND expires_at <= ?"
            params += (now,)

        def _claim(conn: sqlite3.Connection) -> Optional[str]:
            cursor = conn.execute(sql, params)
            if cursor.rowcount != 1:
                return None
            row = conn.execute(
                "SELECT payload FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
            return row["payload"] if row else None

        payload = await self._run(_claim)
        return Session.model_validate_json(payload) if payload else None

    async def release(self, session_id: str, token: str) -> None:
        await self._run(
            lambda conn: conn.execute(
                "UPDATE sessions SET claim_token = NULL, claimed_until = NULL "
                "WHERE session_id = ? AND claim_token = ?",
                (session_id, token),
            )
        )

    async def count(self) -> int:
        row = await self._run(lambda conn: conn.execute("SELECT COUNT(*) AS n FROM sessions").fetchone())
        return int(row["n"])

    async def purge_stale(self, now: float, grace_seconds: float) -> int:
        cursor = await self._run(
            lambda conn: conn.execute("DELETE FROM sessions WHERE retain_until <= ?", (now,))
        )
        return cursor.rowcount


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------

_REDIS_UNAVAILABLE = (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError, OSError)


class RedisSessionBackend:
    """
    Sessions in Redis.

    Keys:
        session:{id}:context    JSON session, PX = TTL + grace
        session:{id}:claim      consolidation claim token, SET NX PX lease
        customer:{id}:sessions  set of the customer's session ids
        sessions:expiry         sorted set of session ids scored by expires_at
    """

    EXPIRY_INDEX = "sessions:expiry"

    def __init__(
        self,
        url: Optional[str] = None,
        client: Optional[aioredis.Redis] = None,
        key_prefix: str = "",
    ):
        if client is None:
            if not url:
                raise ConfigurationError("REDIS_URL is required for the redis session backend.")
            client = aioredis.from_url(url, decode_responses=True)
        self._redis = client
        self._prefix = key_prefix
        self._expiry_key = f"{key_prefix}{self.EXPIRY_INDEX}"

    def _session_key(self, session_id: str) -> str:
        return f"{self._prefix}session:{session_id}:context"

    def _claim_key(self, session_id: str) -> str:
        return f"{self._prefix}session:{session_id}:claim"

    def _customer_key(self, customer_id: str) -> str:
        return f"{self._prefix}customer:{customer_id}:sessions"

    async def _guard(self, coro: Any) -> Any:
        try:
            return await coro
        except _REDIS_UNAVAILABLE as exc:
            raise TransientError(f"redis unavailable: {exc}") from exc

    async def initialize(self) -> None:
        await self.ping()
        logger.info("session_cache.redis_initialized")

    async def close(self) -> None:
        await self._redis.aclose()

    async def ping(self) -> bool:
        return bool(await self._guard(self._redis.ping()))

    async def write(self, session: Session, retain_until: float, now: float) -> None:
        px = max(1, int((retain_until - now) * 1000))
        claim_key = self._claim_key(session.session_id)
        customer_key = self._customer_key(session.customer_id)

        async def _write() -> None:
            # WATCH the claim key: a claim taken between the check and EXEC
            # aborts the transaction and the check runs again.
            async with self._redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(claim_key)
                        if await pipe.exists(claim_key):
                            raise ConsistencyError(
                                f"session {session.session_id} is being consolidated"
                            )
                        pipe.multi()
                        pipe.set(self._session_key(session.session_id),
                                 session.model_dump_json(by_alias=True), px=px)
                        pipe.sadd(customer_key, session.session_id)
                        pipe.pexpire(customer_key, px)
                        pipe.zadd(self._expiry_key, {session.session_id: session.expires_at})
                        await pipe.execute()
                        return
                    except redis.exceptions.WatchError:
                        continue

        await self._guard(_write())

    async def read(self, session_id: str, now: float) -> Optional[Session]:
        async def _read() -> tuple[Optional[str], int]:
            async with self._redis.pipeline(transaction=False) as pipe:
                pipe.get(self._session_key(session_id))
                pipe.exists(self._claim_key(session_id))
                raw, claimed = await pipe.execute()
            return raw, claimed

        raw, claimed = await self._guard(_read())
        if raw is None or claimed:
            return None
        return Session.model_validate_json(raw)

    async def remove(self, session_id: str) -> bool:
        async def _remove() -> bool:
            raw = await self._redis.get(self._session_key(session_id))
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.delete(self._session_key(session_id))
                pipe.delete(self._claim_key(session_id))
                pipe.zrem(self._expiry_key, session_id)
                if raw is not None:
                    customer_id = Session.model_validate_json(raw).customer_id
                    pipe.srem(self._customer_key(customer_id), session_id)
                results = await pipe.execute()
            return bool(results[0])

        return await self._guard(_remove())

    async def customer_sessions(self, customer_id: str, now: float) -> list[str]:
        members = await self._guard(self._redis.smembers(self._customer_key(customer_id)))
        return sorted(members)

    async def due(self, now: float, limit: int) -> list[str]:
        async def _due() -> list[str]:
            ids = await self._redis.zrangebyscore(
                self._expiry_key, "-inf", now, start=0, num=limit
            )
            if not ids:
                return []
            async with self._redis.pipeline(transaction=False) as pipe:
                for session_id in ids:
                    pipe.exists(self._session_key(session_id))
                    pipe.exists(self._claim_key(session_id))
                flags = await pipe.execute()
            ready, vanished = [], []
            for index, session_id in enumerate(ids):
                present, claimed = flags[2 * index], flags[2 * index + 1]
                if not present:
                    vanished.append(session_id)
                elif not claimed:
                    ready.append(session_id)
            if vanished:
                await self._redis.zrem(self._expiry_key, *vanished)
            return ready

        return await self._guard(_due())

    async def claim(
        self, session_id: str, token: str, lease_until: float, now: float, expired_only: bool = False
    ) -> Optional[Session]:
        async def _claim() -> Optional[Session]:
            claim_key = self._claim_key(session_id)
            won = await self._redis.set(
                claim_key, token, nx=True, px=max(1, int((lease_until - now) * 1000))
            )
            if not won:
                return None
            # Writes watch the claim key, so nothing lands after this read.
            raw = await self._redis.get(self._session_key(session_id))
            session = Session.model_validate_json(raw) if raw is not None else None
            if session is None or (expired_only and session.expires_at > now):
                await self._redis.delete(claim_key)
                return None
            return session

        return await self._guard(_claim())

    async def release(self, session_id: str, token: str) -> None:
        claim_key = self._claim_key(session_id)
        if await self._guard(self._redis.get(claim_key)) == token:
            await self._guard(self._redis.delete(claim_key))

    async def count(self) -> int:
        return int(await self._guard(self._redis.zcard(self._expiry_key)))

    async def purge_stale(self, now: float, grace_seconds: float) -> int:
        removed = await self._guard(
            self._redis.zremrangebyscore(self._expiry_key, "-inf", now - grace_seconds)
        )
        return int(removed)


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class SessionCache:
    """
    TTL-refreshing session store over a ``SessionBackend``.

    ``clock`` returns epoch seconds; tests pass a controllable one.
    """

    def __init__(
        self,
        backend: SessionBackend,
        ttl_seconds: float = 1800.0,
        grace_seconds: float = 86400.0,
        claim_lease_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self._backend = backend
        self._ttl = float(ttl_seconds)
        self._grace = float(grace_seconds)
        self._lease = float(claim_lease_seconds)
        self._clock = clock
        self._locks = KeyedLock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    async def initialize(self) -> None:
        await self._backend.initialize()

    async def close(self) -> None:
        await self._backend.close()

    async def ping(self) -> bool:
        return await self._backend.ping()

    async def _store(self, session: Session, ttl: Optional[float] = None) -> Session:
        now = self._clock()
        stored = session.model_copy(update={"expires_at": now + (ttl or self._ttl)})
        await self._backend.write(stored, stored.expires_at + self._grace, now)
        return stored

    async def _live(self, session_id: str) -> Session:
        session = await self._backend.read(session_id, self._clock())
        if session is None or session.expires_at <= self._clock():
            raise NotFoundError("session", session_id)
        return session

    async def put(self, session: Session, ttl: Optional[float] = None) -> Session:
        async with self._locks.hold(session.session_id):
            stored = await self._store(session, ttl)
        logger.debug("session_cache.put", session_id=session.session_id, expires_at=stored.expires_at)
        return stored

    async def get(self, session_id: str) -> Session:
        return await self._live(session_id)

    async def update(self, session_id: str, changes: Mapping[str, Any]) -> Session:
        """Apply a partial update (snake_case field names) and refresh the TTL."""
        forbidden = {"session_id", "created_at", "expires_at"} & set(changes)
        if forbidden:
            raise ValidationError(f"cannot update {', '.join(sorted(forbidden))}")
        async with self._locks.hold(session_id):
            current = await self._live(session_id)
            merged = Session.model_validate({**current.model_dump(), **dict(changes)})
            return await self._store(merged)

    async def append_message(self, session_id: str, message: Message) -> Session:
        async with self._locks.hold(session_id):
            current = await self._live(session_id)
            history = [*current.conversation_history, message]
            return await self._store(current.model_copy(update={"conversation_history": history}))

    async def delete(self, session_id: str) -> None:
        async with self._locks.hold(session_id):
            if not await self._backend.remove(session_id):
                raise NotFoundError("session", session_id)
        logger.debug("session_cache.deleted", session_id=session_id)

    async def list_by_customer(self, customer_id: str) -> list[str]:
        ids = await self._backend.customer_sessions(customer_id, self._clock())
        live = []
        for session_id in ids:
            try:
                await self._live(session_id)
            except NotFoundError:
                continue
            live.append(session_id)
        return live

    async def list_expired(self, limit: int = 100) -> list[Session]:
        """Sessions past their deadline, oldest first, excluding claimed ones."""
        now = self._clock()
        expired = []
        for session_id in await self._backend.due(now, limit):
            session = await self._backend.read(session_id, now)
            if session is not None and session.expires_at <= now:
                expired.append(session)
        return expired

    async def claim(
        self,
        session_id: str,
        lease_seconds: Optional[float] = None,
        expired_only: bool = False,
    ) -> SessionClaim:
        """Take exclusive ownership of a session for consolidation.

        With ``expired_only`` the claim also requires the session to still be
        past its deadline, so a session refreshed after a sweep listed it
        stays live.

        Raises ``NotFoundError`` when the session is gone, is live and
        ``expired_only`` is set, or someone else holds the claim.
        """
        token = secrets.token_hex(16)
        async with self._locks.hold(session_id):
            now = self._clock()
            session = await self._backend.claim(
                session_id, token, now + (lease_seconds or self._lease), now, expired_only
            )
        if session is None:
            raise NotFoundError("session", session_id)
        logger.debug("session_cache.claimed", session_id=session_id)
        return SessionClaim(session=session, token=token)

    async def release(self, claim: SessionClaim) -> None:
        await self._backend.release(claim.session.session_id, claim.token)

    async def count(self) -> int:
        return await self._backend.count()

    async def purge_stale(self) -> int:
        removed = await self._backend.purge_stale(self._clock(), self._grace)
        if removed:
            logger.info("session_cache.purged_stale", removed=removed)
        return removed
