"""FastAPI entrypoint for query/session/source/trace endpoints."""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from dataclasses import asdict
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from agentic_qa.agent.catalog import load_catalog
from agentic_qa.agent.credentials import StaticTokenIssuer, TokenCache
from agentic_qa.agent.fallback import ExtractiveReasoningClient
from agentic_qa.agent.invoker import ToolInvoker
from agentic_qa.agent.orchestrator import Orchestrator
from agentic_qa.agent.reasoning import LangChainReasoningClient, ReasoningClient, ResilientReasoner
from agentic_qa.agent.registry import ToolRegistry
from agentic_qa.config import get_settings
from agentic_qa.errors import AgentError, SessionUnavailable, TurnDeadlineExceeded
from agentic_qa.obs.logging import setup_logging
from agentic_qa.obs.tracing import TraceStore
from agentic_qa.retrieval.corpus import load_corpus
from agentic_qa.retrieval.embedder import HashingEmbedder
from agentic_qa.retrieval.index import InMemoryHybridIndex
from agentic_qa.retrieval.retriever import HybridRetriever
from agentic_qa.state.store import InMemoryStateStore, SqliteStateStore, StateStore

logger = structlog.get_logger(__name__)


def _create_reasoning_client(model: str) -> ReasoningClient:
    if not os.getenv("OPENAI_API_KEY"):
        return ExtractiveReasoningClient()

    from langchain_openai import ChatOpenAI

    return LangChainReasoningClient(ChatOpenAI(model=model, temperature=0))


class QueryRequest(BaseModel):
    session_id: str = Field(min_length=1)
    question: str = Field(min_length=1)
    user_id: str | None = None
    rerank: bool = False
    stream: bool = True


class SourceSearchRequest(BaseModel):
    query: str = Field(min_length=1)
    top_k: int = Field(default=5, ge=1, le=20)
    rerank: bool = False


_settings = get_settings()
setup_logging(_settings.log_level, _settings.log_format)

_embedder = HashingEmbedder()
_index = InMemoryHybridIndex()
_retriever = HybridRetriever(_index.semantic, _index.lexical, _index.chunks, _embedder, _settings.retrieval)

_registry = ToolRegistry()
if _settings.tool_catalog_path:
    load_catalog(
        _settings.tool_catalog_path,
        _registry,
        default_timeout_seconds=_settings.tools.default_timeout_seconds,
    )

_token_cache = TokenCache(
    StaticTokenIssuer(os.getenv("AGENTIC_QA_TOOL_TOKEN", "local-dev-token")),
    refresh_margin_seconds=_settings.tools.token_refresh_margin_seconds,
)
_invoker = ToolInvoker(_token_cache, config=_settings.tools)

_state_store: StateStore = (
    SqliteStateStore(_settings.sqlite_path, _settings.state)
    if _settings.state_backend == "sqlite"
    else InMemoryStateStore(_settings.state)
)
_reasoning_client = _create_reasoning_client(_settings.openai_model)
_trace_store = TraceStore()
_orchestrator = Orchestrator(
    state_store=_state_store,
    retriever=_retriever,
    registry=_registry,
    invoker=_invoker,
    reasoner=ResilientReasoner(_reasoning_client, _settings.reasoning),
    config=_settings.agent,
    state_config=_settings.state,
    trace_store=_trace_store,
)


async def _sweep_periodically(interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            sessions = await _state_store.sweep_expired()
        except SessionUnavailable as exc:
            logger.warning("session_sweep_failed", error=exc.message)
            continue
        tokens = _token_cache.sweep_expired()
        logger.info("expired_state_swept", sessions=sessions, tokens=tokens)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    if _settings.corpus_path:
        load_corpus(_settings.corpus_path, _index, _embedder)
    sweeper = asyncio.create_task(_sweep_periodically(_settings.state.sweep_interval_seconds))
    try:
        yield
    finally:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        await _invoker.aclose()


app = FastAPI(title="Agentic QA", version="0.1.0", lifespan=_lifespan)


def _error_status(exc: AgentError) -> int:
    if isinstance(exc, SessionUnavailable):
        return 503
    if isinstance(exc, TurnDeadlineExceeded):
        return 504
    return 500


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "reasoner": type(_reasoning_client).__name__,
        "state_backend": _settings.state_backend,
        "indexed_chunks": len(_index),
        "tools": _registry.names(),
    }


async def _ndjson_events(request: QueryRequest) -> AsyncIterator[str]:
    try:
        async for event in _orchestrator.stream_turn(
            request.session_id,
            request.question,
            user_id=request.user_id,
            rerank=request.rerank,
        ):
            yield json.dumps(event, default=str) + "\n"
    except AgentError as exc:
        yield json.dumps({"type": "error", "status": _error_status(exc), "detail": exc.message}) + "\n"


@app.post("/query", response_model=None)
async def query(request: QueryRequest) -> StreamingResponse | dict[str, Any]:
    if request.stream:
        return StreamingResponse(_ndjson_events(request), media_type="application/x-ndjson")
    try:
        result = await _orchestrator.run_turn(
            request.session_id,
            request.question,
            user_id=request.user_id,
            rerank=request.rerank,
        )
    except AgentError as exc:
        raise HTTPException(status_code=_error_status(exc), detail=exc.message) from exc
    payload = asdict(result)
    payload["citations"] = [citation.model_dump() for citation in result.citations]
    return payload


@app.get("/sessions/{session_id}")
async def session_detail(session_id: str) -> dict[str, Any]:
    try:
        session = await _state_store.get(session_id)
    except SessionUnavailable as exc:
        raise HTTPException(status_code=503, detail=exc.message) from exc
    payload = session.model_dump(mode="json", exclude={"tool_cache"})
    payload["cached_tool_results"] = len(session.tool_cache)
    return payload


@app.post("/sources/search")
async def source_search(request: SourceSearchRequest) -> dict[str, Any]:
    candidates, partial = await _retriever.search(request.query, rerank=request.rerank, top_k=request.top_k)
    return {
        "partial": partial,
        "items": [
            {
                "citation_id": item.citation_id,
                "doc_id": item.doc_id,
                "chunk_index": item.chunk_index,
                "fused_score": item.fused_score,
                "semantic_rank": item.semantic_rank,
                "lexical_rank": item.lexical_rank,
                "text": item.text,
                "metadata": item.metadata,
            }
            for item in candidates
        ],
    }


@app.get("/traces")
def traces(limit: int = 20) -> dict[str, Any]:
    return {"items": [asdict(record) for record in _trace_store.list_recent(limit=limit)]}


@app.get("/traces/{trace_id}")
def trace_detail(trace_id: str) -> dict[str, Any]:
    try:
        record = _trace_store.get(trace_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return asdict(record)


@app.get("/metrics")
def metrics() -> dict[str, Any]:
    return _trace_store.summary()
