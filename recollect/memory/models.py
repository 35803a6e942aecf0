"""
Memory Records — The Shapes That Persist.

These Pydantic models are the contract between the tiers and with the outside
world. Field names are snake_case in Python and camelCase on the wire (cache
values, archive payloads), because analytics and audit tooling read the
archive directly and depend on those names.

Session is short-lived and mutable. EpisodicMemory is written once and frozen.
SemanticMemory carries counters whose success rate is always derived from
``success_count / times_applied`` rather than stored independently.
"""

from __future__ import annotations

import time
import uuid
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

AgentType = Literal["email", "phone", "sms"]
Sentiment = Literal["positive", "neutral", "negative"]
StrategyCategory = Literal["strategy", "pattern", "best_practice"]

# Namespace for ids derived from session ids; changing it would break
# idempotent consolidation of already-archived sessions.
_EPISODE_NAMESPACE = uuid.UUID("6f1d2c9e-8a4b-4f7e-9c3d-2b5e8f0a1c47")


def episodic_id_for(session_id: str, created_at: float) -> str:
    """Deterministic episodic memory id for a consolidated session.

    ``created_at`` keeps a reused session id from colliding with the record
    of an earlier conversation under the same id.
    """
    return str(uuid.uuid5(_EPISODE_NAMESPACE, f"session:{session_id}:{created_at!r}"))


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Message(_Record):
    role: str
    content: str
    timestamp: float = Field(default_factory=time.time)


class ContextSnapshot(_Record):
    """What was known about the customer when an interaction happened."""

    customer_risk: str = "unknown"
    payment_history: str = "unknown"
    previous_attempts: int = 0


class InteractionContext(ContextSnapshot):
    """Recognized context fields carried by a session and a query."""

    days_overdue: Optional[int] = None
    payment_amount: Optional[float] = None

    def snapshot(self) -> ContextSnapshot:
        return ContextSnapshot(
            customer_risk=self.customer_risk,
            payment_history=self.payment_history,
            previous_attempts=self.previous_attempts,
        )

    def as_query_context(self) -> dict[str, Any]:
        values = self.model_dump(by_alias=True)
        return {key: value for key, value in values.items() if value not in (None, "unknown")}


class Session(_Record):
    session_id: str
    customer_id: str
    campaign_id: str
    agent_type: AgentType
    conversation_history: list[Message] = Field(default_factory=list)
    current_state: str = "active"
    metadata: dict[str, Any] = Field(default_factory=dict)
    context: InteractionContext = Field(default_factory=InteractionContext)
    created_at: float = Field(default_factory=time.time)
    expires_at: float = 0.0


class Outcome(_Record):
    success: bool = False
    payment_received: bool = False
    amount: Optional[float] = None
    next_action: Optional[str] = None


class Conversation(_Record):
    messages: list[Message] = Field(default_factory=list)
    duration: float = 0.0
    channel: str = ""


class EpisodicMemory(_Record):
    """One completed interaction. Never mutated after it is written."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = Field(default_factory=time.time)
    customer_id: str
    campaign_id: str
    agent_type: AgentType
    conversation: Conversation = Field(default_factory=Conversation)
    outcome: Outcome = Field(default_factory=Outcome)
    context: ContextSnapshot = Field(default_factory=ContextSnapshot)
    embedding: list[float] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    sentiment: Sentiment = "neutral"
    # Search score; set on retrieval, never persisted.
    similarity: Optional[float] = Field(default=None, exclude=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude={"id", "embedding"})

    @classmethod
    def from_payload(
        cls,
        memory_id: str,
        payload: dict[str, Any],
        embedding: Optional[list[float]] = None,
        similarity: Optional[float] = None,
    ) -> "EpisodicMemory":
        return cls.model_validate(
            {**payload, "id": memory_id, "embedding": embedding or [], "similarity": similarity}
        )


class PaymentRange(_Record):
    min: float = 0.0
    max: Optional[float] = None


class Applicability(_Record):
    """When a strategy applies. Empty fields match everything."""

    customer_risk: list[str] = Field(default_factory=list)
    payment_range: Optional[PaymentRange] = None
    # Minimum days overdue before the strategy applies.
    days_overdue: Optional[int] = None
    # Maximum prior attempts for which the strategy still applies.
    previous_attempts: Optional[int] = None

    def matches(self, context: Optional[InteractionContext]) -> bool:
        if context is None:
            return True
        if (
            self.customer_risk
            and context.customer_risk != "unknown"
            and context.customer_risk not in self.customer_risk
        ):
            return False
        if self.payment_range is not None and context.payment_amount is not None:
            low, high = self.payment_range.min, self.payment_range.max
            if context.payment_amount < low or (high is not None and context.payment_amount > high):
                return False
        if self.days_overdue is not None and context.days_overdue is not None:
            if context.days_overdue < self.days_overdue:
                return False
        if self.previous_attempts is not None and context.previous_attempts > self.previous_attempts:
            return False
        return True


class SemanticMemory(_Record):
    """A reusable strategy distilled from one or more episodes."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    category: StrategyCategory = "strategy"
    title: str
    description: str
    content: str = ""
    derived_from: list[str] = Field(default_factory=list)
    success_count: int = 0
    success_rate: float = 0.0
    times_applied: int = 0
    applicable_when: Applicability = Field(default_factory=Applicability)
    embedding: list[float] = Field(default_factory=list)
    confidence: float = 0.7
    created_at: float = Field(default_factory=time.time)
    last_updated: float = Field(default_factory=time.time)
    version: int = 0
    similarity: Optional[float] = Field(default=None, exclude=True)

    @model_validator(mode="before")
    @classmethod
    def _derive_success_count(cls, data: Any) -> Any:
        # Records written before successCount existed only carry the rate.
        if isinstance(data, dict) and "success_count" not in data and "successCount" not in data:
            rate = data.get("success_rate", data.get("successRate"))
            times = data.get("times_applied", data.get("timesApplied", 0)) or 0
            if rate is not None:
                data = {**data, "successCount": round(float(rate) * int(times))}
        return data

    @model_validator(mode="after")
    def _sync_success_rate(self) -> "SemanticMemory":
        self.times_applied = max(0, int(self.times_applied))
        self.success_count = max(0, min(int(self.success_count), self.times_applied))
        self.success_rate = (
            self.success_count / self.times_applied if self.times_applied else 0.0
        )
        self.confidence = max(0.0, min(1.0, float(self.confidence)))
        return self

    def record_application(
        self,
        success: bool,
        derived_from: Optional[list[str]] = None,
        now: Optional[float] = None,
    ) -> "SemanticMemory":
        """Return a copy with one more application counted."""
        sources = list(self.derived_from)
        for memory_id in derived_from or []:
            if memory_id not in sources:
                sources.append(memory_id)
        return SemanticMemory.model_validate(
            {
                **self.model_dump(),
                "times_applied": self.times_applied + 1,
                "success_count": self.success_count + (1 if success else 0),
                "derived_from": sources,
                "last_updated": now if now is not None else time.time(),
            }
        )

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude={"id", "embedding"})

    @classmethod
    def from_payload(
        cls,
        memory_id: str,
        payload: dict[str, Any],
        embedding: Optional[list[float]] = None,
        similarity: Optional[float] = None,
    ) -> "SemanticMemory":
        return cls.model_validate(
            {**payload, "id": memory_id, "embedding": embedding or [], "similarity": similarity}
        )
