"""Layered memory configuration models."""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from loguru import logger
from pydantic import BaseModel, Field, model_validator


class StorageConfig(BaseModel):
    """Storage paths configuration."""

    backend: str = "sqlite"  # "sqlite" or "memory"
    sqlite_db_path: str = "./memory/layered_memory.db"

    @model_validator(mode="after")
    def _validate_paths(self) -> "StorageConfig":
        normalized = os.path.normpath(self.sqlite_db_path)
        parts = normalized.replace("\\", "/").split("/")
        if ".." in parts:
            raise ValueError(
                f"sqlite_db_path must not contain '..' components: "
                f"{self.sqlite_db_path!r}"
            )
        self.sqlite_db_path = normalized
        return self


class EmbeddingConfig(BaseModel):
    """Embedding model configuration."""

    model: str = "sentence-transformers/all-MiniLM-L6-v2"
    dimension: int = Field(default=1536, gt=0)
    batch_size: int = 32
    trust_remote_code: bool = False


class ExtractionConfig(BaseModel):
    """Entity extraction configuration."""

    rule_based_enabled: bool = True
    llm_enabled: bool = True
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_entities: int = Field(default=20, gt=0)
    context_window_chars: int = 50


class ScoringConfig(BaseModel):
    """Importance scoring configuration."""

    failure_score: float = Field(default=0.1, ge=0.0, le=1.0)
    context_lookback: int = 5


class BudgetAllocation(BaseModel):
    """Per-layer token budget fractions of the context window.

    The four layer fractions plus ``buffer`` must not exceed 1.0; the buffer
    is never allocated to a layer.
    """

    recent: float = 0.20
    session: float = 0.40
    user_profile: float = 0.20
    critical: float = 0.15
    buffer: float = 0.05

    @model_validator(mode="after")
    def _validate_total(self) -> "BudgetAllocation":
        total = (
            self.recent + self.session + self.user_profile
            + self.critical + self.buffer
        )
        if total > 1.0 + 1e-9:
            raise ValueError(
                f"Budget allocation must not exceed 1.0, got {total:.2f}"
            )
        return self


class LayerPriorities(BaseModel):
    """Optimizer priority weight of each layer (higher is processed first)."""

    critical: float = 0.9
    session: float = 0.8
    recent: float = 0.7
    user_profile: float = 0.6


class ContextConfig(BaseModel):
    """Context assembly configuration."""

    window_tokens: int = Field(default=30000, gt=0)
    budget_allocation: BudgetAllocation = Field(default_factory=BudgetAllocation)
    priorities: LayerPriorities = Field(default_factory=LayerPriorities)
    deduplicate_lines: bool = True


class RetrievalConfig(BaseModel):
    """Layer retrieval configuration."""

    recent_window: int = 50
    recent_importance_weight: float = 0.7
    recent_recency_weight: float = 0.3
    recency_decay_hours: float = 24.0
    critical_threshold: float = 0.8
    critical_limit: int = 50
    search_limit: int = 20
    semantic_weight: float = 0.6
    entity_weight: float = 0.25
    recency_weight: float = 0.15


class TimeoutConfig(BaseModel):
    """Collaborator call timeouts in seconds."""

    embedding: float = 10.0
    completion: float = 15.0
    search: float = 10.0


class MemoryConfig(BaseModel):
    """Top-level layered memory configuration."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)


_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def load_config(config_path: str | Path) -> MemoryConfig:
    """Load a MemoryConfig from a YAML file.

    ``${VAR}`` references are replaced with environment variables before
    parsing; unknown variables are left untouched.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated MemoryConfig.

    Raises:
        FileNotFoundError: If the configuration file is not found.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    content = path.read_text(encoding="utf-8")

    def replacer(match: re.Match) -> str:
        return os.getenv(match.group(1), match.group(0))

    content = _ENV_PATTERN.sub(replacer, content)

    try:
        data = yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        logger.critical(f"Error parsing YAML file: {e}")
        raise

    # Accept both a bare config and one nested under a "memory" key
    if "memory" in data and isinstance(data["memory"], dict):
        data = data["memory"]

    return MemoryConfig.model_validate(data)
