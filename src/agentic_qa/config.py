"""Configuration models for the agentic QA core."""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class RetrievalConfig(BaseModel):
    """Configures hybrid retrieval, fusion and context packing."""

    top_n: int = Field(default=20, ge=1)
    rrf_k: int = Field(default=60, ge=1)
    rerank_pool: int = Field(default=40, ge=1)
    final_k: int = Field(default=5, ge=1)
    token_budget: int = Field(default=4000, ge=1)
    branch_timeout_seconds: float = Field(default=5.0, gt=0.0)


class ToolConfig(BaseModel):
    """Configures tool dispatch retries, credentials and the circuit breaker."""

    default_timeout_seconds: float = Field(default=30.0, gt=0.0)
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=0.5, ge=0.0)
    backoff_max_seconds: float = Field(default=4.0, ge=0.0)
    token_refresh_margin_seconds: float = Field(default=30.0, ge=0.0)
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_reset_seconds: float = Field(default=30.0, gt=0.0)


class ReasoningConfig(BaseModel):
    """Configures calls to the external reasoning oracle."""

    timeout_seconds: float = Field(default=20.0, gt=0.0)
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=0.5, ge=0.0)
    backoff_max_seconds: float = Field(default=4.0, ge=0.0)


class AgentConfig(BaseModel):
    """Configures the reasoning loop bound and turn deadlines."""

    max_iterations: int = Field(default=5, ge=1)
    turn_deadline_seconds: float = Field(default=60.0, gt=0.0)
    synthesis_grace_seconds: float = Field(default=25.0, gt=0.0)
    summary_max_tokens: int = Field(default=400, ge=16)
    fallback_max_chunks: int = Field(default=3, ge=1)


class StateConfig(BaseModel):
    """Configures session persistence."""

    retention_seconds: float = Field(default=7 * 24 * 3600.0, gt=0.0)
    operation_timeout_seconds: float = Field(default=5.0, gt=0.0)
    sweep_interval_seconds: float = Field(default=3600.0, gt=0.0)


class Settings(BaseModel):
    """Runtime settings, assembled from environment variables."""

    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    tools: ToolConfig = Field(default_factory=ToolConfig)
    reasoning: ReasoningConfig = Field(default_factory=ReasoningConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    state: StateConfig = Field(default_factory=StateConfig)

    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "json"
    state_backend: Literal["memory", "sqlite"] = "memory"
    sqlite_path: str = "./data/sessions.db"
    tool_catalog_path: str | None = None
    corpus_path: str | None = None
    openai_model: str = "gpt-4o-mini"


def _env(name: str) -> str | None:
    value = os.getenv(f"AGENTIC_QA_{name}")
    if value is None or not value.strip():
        return None
    return value.strip()


_SECTIONS: dict[str, type[BaseModel]] = {
    "retrieval": RetrievalConfig,
    "tools": ToolConfig,
    "reasoning": ReasoningConfig,
    "agent": AgentConfig,
    "state": StateConfig,
}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once from `AGENTIC_QA_*` environment variables.

    Top-level fields map to `AGENTIC_QA_<FIELD>`; section fields map to
    `AGENTIC_QA_<SECTION>_<FIELD>`, e.g. `AGENTIC_QA_AGENT_MAX_ITERATIONS`.
    Values are strings and pydantic coerces them to the field types.
    """

    overrides: dict[str, object] = {}
    for field in Settings.model_fields:
        if field in _SECTIONS:
            continue
        value = _env(field.upper())
        if value is not None:
            overrides[field] = value

    for section, model in _SECTIONS.items():
        values: dict[str, str] = {}
        for field in model.model_fields:
            value = _env(f"{section}_{field}".upper())
            if value is not None:
                values[field] = value
        if values:
            overrides[section] = model(**values)

    return Settings(**overrides)
