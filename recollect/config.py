# recollect/config.py
"""
Configuration for the Recollect memory subsystem.

All configuration flows through this module. Values are loaded from environment
variables (via .env file) and validated with Pydantic. Each component gets its
own settings class; ``RecollectConfig`` composes them so the memory system can
be built from a single object.

Credentials are optional at load time. Adapters that need them raise
``ConfigurationError`` when they are constructed without one, which keeps the
config loadable in tests and in tools (like ``recollect stats``) that never
talk to a model provider.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above recollect/ package),
# so the config works regardless of the user's current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"


def _choice(value: object, allowed: set[str], name: str) -> str:
    mode = str(value).strip().lower()
    if mode not in allowed:
        raise ValueError(f"{name} must be one of: {', '.join(sorted(allowed))}.")
    return mode


class LLMConfig(BaseSettings):
    """Connection settings for the language model service (Anthropic)."""

    api_key: Optional[str] = Field(None, alias="ANTHROPIC_API_KEY")
    model: str = Field("claude-sonnet-4-5-20250929", alias="RECOLLECT_LLM_MODEL")
    max_tokens: int = Field(1024, alias="RECOLLECT_LLM_MAX_TOKENS")
    request_timeout_seconds: float = Field(60.0, alias="RECOLLECT_LLM_TIMEOUT")
    retry_max_retries: int = Field(3, alias="RECOLLECT_RETRY_MAX_RETRIES")
    retry_base_delay: float = Field(0.5, alias="RECOLLECT_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(8.0, alias="RECOLLECT_RETRY_MAX_DELAY")
    # USD per million tokens, used to report a cost figure with each completion.
    input_cost_per_mtok: float = Field(3.0, alias="RECOLLECT_LLM_INPUT_COST")
    output_cost_per_mtok: float = Field(15.0, alias="RECOLLECT_LLM_OUTPUT_COST")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_runtime_limits(self) -> "LLMConfig":
        if isinstance(self.api_key, str):
            self.api_key = self.api_key.strip() or None
        self.max_tokens = max(1, int(self.max_tokens))
        self.request_timeout_seconds = max(1.0, float(self.request_timeout_seconds))
        self.retry_max_retries = max(0, int(self.retry_max_retries))
        self.retry_base_delay = max(0.0, float(self.retry_base_delay))
        self.retry_max_delay = max(self.retry_base_delay, float(self.retry_max_delay))
        return self


class EmbeddingConfig(BaseSettings):
    """Settings for the embedding service (OpenAI-compatible HTTP endpoint)."""

    api_key: Optional[str] = Field(None, alias="OPENAI_API_KEY")
    base_url: str = Field("https://api.openai.com/v1", alias="RECOLLECT_EMBEDDING_BASE_URL")
    model: str = Field("text-embedding-3-small", alias="RECOLLECT_EMBEDDING_MODEL")
    dimension: int = Field(1536, alias="RECOLLECT_EMBEDDING_DIMENSION")
    cache_size: int = Field(1000, alias="RECOLLECT_EMBEDDING_CACHE_SIZE")
    batch_size: int = Field(100, alias="RECOLLECT_EMBEDDING_BATCH_SIZE")
    request_timeout_seconds: float = Field(30.0, alias="RECOLLECT_EMBEDDING_TIMEOUT")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize(self) -> "EmbeddingConfig":
        if isinstance(self.api_key, str):
            self.api_key = self.api_key.strip() or None
        self.base_url = self.base_url.rstrip("/")
        self.dimension = max(1, int(self.dimension))
        self.cache_size = max(0, int(self.cache_size))
        self.batch_size = max(1, int(self.batch_size))
        return self


class SessionCacheConfig(BaseSettings):
    """Short-term tier: where active sessions live and how long."""

    backend: str = Field("sqlite", alias="RECOLLECT_SESSION_BACKEND")
    db_path: Path = Field(Path("./recollect_data/sessions.db"), alias="RECOLLECT_SESSION_DB")
    redis_url: Optional[str] = Field(None, alias="REDIS_URL")
    ttl_seconds: float = Field(1800.0, alias="RECOLLECT_SESSION_TTL")
    # Expired sessions are kept this long for the consolidator before the
    # backend is allowed to forget them.
    grace_seconds: float = Field(86400.0, alias="RECOLLECT_SESSION_GRACE")
    claim_lease_seconds: float = Field(300.0, alias="RECOLLECT_CLAIM_LEASE")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize(self) -> "SessionCacheConfig":
        self.backend = _choice(self.backend, {"sqlite", "redis"}, "RECOLLECT_SESSION_BACKEND")
        self.ttl_seconds = max(1.0, float(self.ttl_seconds))
        self.grace_seconds = max(0.0, float(self.grace_seconds))
        self.claim_lease_seconds = max(1.0, float(self.claim_lease_seconds))
        return self


class ArchiveConfig(BaseSettings):
    """Long-term tier: vector collections for episodic and semantic memory."""

    backend: str = Field("chroma", alias="RECOLLECT_ARCHIVE_BACKEND")
    path: Path = Field(Path("./recollect_data/archive"), alias="RECOLLECT_ARCHIVE_PATH")
    chroma_host: Optional[str] = Field(None, alias="RECOLLECT_CHROMA_HOST")
    chroma_port: int = Field(8000, alias="RECOLLECT_CHROMA_PORT")
    score_threshold: float = Field(0.7, alias="RECOLLECT_SCORE_THRESHOLD")
    semantic_min_confidence: float = Field(0.7, alias="RECOLLECT_SEMANTIC_MIN_CONFIDENCE")
    # 0 disables the age-based episodic purge.
    retention_days: int = Field(0, alias="RECOLLECT_RETENTION_DAYS")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize(self) -> "ArchiveConfig":
        self.backend = _choice(self.backend, {"chroma", "memory"}, "RECOLLECT_ARCHIVE_BACKEND")
        self.score_threshold = max(0.0, min(1.0, float(self.score_threshold)))
        self.semantic_min_confidence = max(0.0, min(1.0, float(self.semantic_min_confidence)))
        self.retention_days = max(0, int(self.retention_days))
        return self


class RetrievalConfig(BaseSettings):
    """Knobs for the agentic retrieval pipeline."""

    max_concurrent_retrievals: int = Field(4, alias="RECOLLECT_MAX_CONCURRENT_RETRIEVALS")
    max_subtasks: int = Field(5, alias="RECOLLECT_MAX_SUBTASKS")
    llm_step_timeout_seconds: float = Field(30.0, alias="RECOLLECT_LLM_STEP_TIMEOUT")
    max_limit: int = Field(15, alias="RECOLLECT_MAX_RETRIEVAL_LIMIT")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize(self) -> "RetrievalConfig":
        self.max_concurrent_retrievals = max(1, int(self.max_concurrent_retrievals))
        self.max_subtasks = max(1, int(self.max_subtasks))
        self.llm_step_timeout_seconds = max(0.1, float(self.llm_step_timeout_seconds))
        self.max_limit = max(1, int(self.max_limit))
        return self


class ConsolidationConfig(BaseSettings):
    """Background migration of expired sessions into the archive."""

    interval_seconds: float = Field(3600.0, alias="RECOLLECT_CONSOLIDATION_INTERVAL")
    batch_limit: int = Field(100, alias="RECOLLECT_CONSOLIDATION_BATCH")
    auto_start: bool = Field(True, alias="RECOLLECT_AUTO_CONSOLIDATE")
    strategy_match_threshold: float = Field(0.9, alias="RECOLLECT_STRATEGY_MATCH_THRESHOLD")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize(self) -> "ConsolidationConfig":
        self.interval_seconds = max(1.0, float(self.interval_seconds))
        self.batch_limit = max(1, int(self.batch_limit))
        self.strategy_match_threshold = max(0.0, min(1.0, float(self.strategy_match_threshold)))
        return self


class FeatureConfig(BaseSettings):
    """Feature flags."""

    memory_enabled: bool = Field(True, alias="RECOLLECT_MEMORY_ENABLED")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}


class RecollectConfig:
    """
    Master configuration that composes all subsystem configs.

    Every component receives its settings from here. Relative paths are
    resolved against the project root so the CLI behaves the same from any
    working directory.
    """

    def __init__(self):
        self.llm = LLMConfig()
        self.embedding = EmbeddingConfig()
        self.sessions = SessionCacheConfig()
        self.archive = ArchiveConfig()
        self.retrieval = RetrievalConfig()
        self.consolidation = ConsolidationConfig()
        self.features = FeatureConfig()
        self._resolve_paths()

    def _resolve_paths(self) -> None:
        def _resolve(p: Path) -> Path:
            if p.is_absolute():
                return p
            return (_PROJECT_ROOT / p).resolve()

        self.sessions.db_path = _resolve(self.sessions.db_path)
        self.archive.path = _resolve(self.archive.path)

    def __repr__(self) -> str:
        return (
            f"RecollectConfig(sessions={self.sessions.backend}, "
            f"archive={self.archive.backend}, "
            f"ttl={self.sessions.ttl_seconds}s, "
            f"consolidation={self.consolidation.interval_seconds}s)"
        )
