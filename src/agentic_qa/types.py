"""Shared domain models."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from hashlib import blake2b
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def citation_id(doc_id: str, chunk_index: int) -> str:
    """Stable citation identifier for one evidence chunk."""
    digest = blake2b(f"{doc_id}\x1f{chunk_index}".encode("utf-8"), digest_size=8).hexdigest()
    return f"c-{digest}"


def canonicalize(parameters: dict[str, Any]) -> str:
    return json.dumps(parameters, sort_keys=True, separators=(",", ":"), default=str)


def cache_key(tool_name: str, parameters: dict[str, Any]) -> str:
    """Tool-result cache key; a pure function of (tool name, parameters)."""
    digest = hashlib.sha256(canonicalize(parameters).encode("utf-8")).hexdigest()
    return f"{tool_name}:{digest}"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class Message(BaseModel):
    """One conversation message."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    timestamp: datetime = Field(default_factory=utc_now)
    name: str | None = None
    tool_call_id: str | None = None
    tool_args: dict[str, Any] | None = None


class Citation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    source: str = ""
    snippet: str = ""


class ToolErrorKind(str, Enum):
    VALIDATION = "validation_error"
    UNAUTHORIZED = "unauthorized"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    UNKNOWN_TOOL = "unknown_tool"
    REJECTED = "rejected"
    TOOL_ERROR = "tool_error"


class ToolOk(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["ok"] = "ok"
    result: Any = None
    citations: list[Citation] = Field(default_factory=list)


class ToolErr(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["error"] = "error"
    kind: ToolErrorKind
    message: str = ""


ToolResult = Annotated[Union[ToolOk, ToolErr], Field(discriminator="status")]


class Session(BaseModel):
    """Immutable snapshot of one conversation's persisted state."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    user_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = 0
    messages: tuple[Message, ...] = ()
    summary: str = ""
    memory_refs: frozenset[str] = frozenset()
    tool_cache: dict[str, ToolResult] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def new(cls, session_id: str, user_id: str | None = None) -> "Session":
        return cls(session_id=session_id, user_id=user_id)


@dataclass(slots=True)
class ChunkRecord:
    """Full chunk text and source metadata held by the chunk store."""

    candidate_id: str
    doc_id: str
    chunk_index: int
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class IndexHit:
    candidate_id: str
    score: float


@dataclass(slots=True)
class RetrievalCandidate:
    """A retrieval result carrying per-route ranks and the fused score."""

    candidate_id: str
    doc_id: str
    chunk_index: int
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)
    semantic_rank: int | None = None
    lexical_rank: int | None = None
    fused_score: float = 0.0
    rerank_score: float | None = None

    @property
    def citation_id(self) -> str:
        return citation_id(self.doc_id, self.chunk_index)


@dataclass(slots=True)
class ContextChunk:
    citation_id: str
    doc_id: str
    chunk_index: int
    text: str
    metadata: dict[str, Any]
    tokens: int


@dataclass(slots=True)
class Context:
    """Token-bounded evidence for one reasoning or synthesis call."""

    chunks: list[ContextChunk] = field(default_factory=list)
    total_tokens: int = 0
    token_budget: int = 0
    partial: bool = False
    dropped: list[str] = field(default_factory=list)

    def citation_ids(self) -> list[str]:
        return [chunk.citation_id for chunk in self.chunks]


@dataclass(slots=True)
class Think:
    thought: str = ""
    query: str | None = None


@dataclass(slots=True)
class UseTool:
    name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    call_id: str | None = None


@dataclass(slots=True)
class Respond:
    text: str


Action = Union[Think, UseTool, Respond]


@dataclass(slots=True)
class ToolTrace:
    """Trace record for an executed tool call."""

    name: str
    input_payload: dict[str, Any]
    output_preview: str
    latency_ms: float
    status: str = "ok"
    cached: bool = False
