"""
Error taxonomy for the memory subsystem.

Every failure that crosses a component boundary is one of these. Adapters wrap
their library-specific exceptions (redis, chromadb, httpx, anthropic) into
``TransientError`` so callers can retry without knowing which backend is
configured, while ``NotFoundError`` is surfaced verbatim for missing ids.
"""

from __future__ import annotations


class RecollectError(Exception):
    """Base class for every error raised by recollect."""


class NotFoundError(RecollectError, KeyError):
    """A session or memory id does not exist (or is no longer live)."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return f"{self.kind} not found: {self.identifier}"


class TransientError(RecollectError):
    """A backend is unreachable or rate-limited. Safe to retry with backoff."""


class ValidationError(RecollectError, ValueError):
    """A request is malformed, e.g. an embedding of the wrong dimension."""


class ConsistencyError(RecollectError):
    """A concurrent update conflict could not be resolved."""


class ConfigurationError(RecollectError):
    """Required settings are missing or contradictory."""
