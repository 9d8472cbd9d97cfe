from collections.abc import Callable
from typing import Any

import httpx
import pytest

from agentic_qa.agent.credentials import StaticTokenIssuer, TokenCache
from agentic_qa.agent.invoker import ToolInvoker
from agentic_qa.agent.orchestrator import Orchestrator
from agentic_qa.agent.reasoning import ResilientReasoner
from agentic_qa.agent.registry import ToolRegistry, ToolSpec
from agentic_qa.agent.schema import build_args_model
from agentic_qa.config import AgentConfig, ReasoningConfig, ToolConfig
from agentic_qa.retrieval.embedder import HashingEmbedder
from agentic_qa.retrieval.index import InMemoryHybridIndex
from agentic_qa.retrieval.retriever import HybridRetriever
from agentic_qa.state.store import InMemoryStateStore
from agentic_qa.types import ChunkRecord

SALES_ENDPOINT = "https://tools.test/sales_report"

SALES_PARAMETERS = {
    "region": {"type": "string", "required": True, "enum": ["AMER", "EMEA", "APAC"]},
    "quarter": {"type": "string", "required": True},
    "limit": {"type": "integer", "default": 10, "minimum": 1, "maximum": 100},
}

CORPUS = [
    ChunkRecord(
        candidate_id="q3-report-0",
        doc_id="q3-report",
        chunk_index=0,
        text="AMER Q3 software sales grew 12 percent year over year, led by SKU-4471 renewals.",
        metadata={"origin": "finance/q3-report.pdf", "timestamp": "2024-10-02"},
    ),
    ChunkRecord(
        candidate_id="q3-report-1",
        doc_id="q3-report",
        chunk_index=1,
        text="EMEA hardware revenue declined slightly in the third quarter.",
        metadata={"origin": "finance/q3-report.pdf", "timestamp": "2024-10-02"},
    ),
    ChunkRecord(
        candidate_id="handbook-0",
        doc_id="handbook",
        chunk_index=0,
        text="Holiday arrangements are documented in the employee handbook.",
        metadata={"origin": "hr/handbook.md", "timestamp": "2023-01-15"},
    ),
]


def sales_spec(timeout_seconds: float = 30.0) -> ToolSpec:
    return ToolSpec(
        name="sales_report",
        description="Fetch live sales figures for a region and quarter.",
        args_schema=build_args_model("sales_report", SALES_PARAMETERS),
        endpoint=SALES_ENDPOINT,
        timeout_seconds=timeout_seconds,
        principal="svc-sales",
    )


def ok_response(result: Any = None) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "result": result if result is not None else {"total": 1250000},
            "citations": [{"id": "sales-db-q3", "source": "sales-db", "snippet": "AMER Q3 total 1.25M"}],
            "error": None,
        },
    )


@pytest.fixture
def corpus_index() -> tuple[InMemoryHybridIndex, HashingEmbedder]:
    embedder = HashingEmbedder()
    index = InMemoryHybridIndex()
    index.upsert(CORPUS, embedder.embed_documents([record.text for record in CORPUS]))
    return index, embedder


@pytest.fixture
def retriever(corpus_index: tuple[InMemoryHybridIndex, HashingEmbedder]) -> HybridRetriever:
    index, embedder = corpus_index
    return HybridRetriever(index.semantic, index.lexical, index.chunks, embedder)


@pytest.fixture
def build_orchestrator(retriever: HybridRetriever) -> Callable[..., tuple[Orchestrator, list[httpx.Request]]]:
    """Factory wiring an orchestrator around a scripted reasoning client.

    Returns the orchestrator and the list of requests that reached the
    tool endpoint.
    """

    def _build(
        client: Any,
        *,
        handler: Callable[[httpx.Request], Any] | None = None,
        store: Any | None = None,
        max_iterations: int = 5,
        tool_timeout: float = 30.0,
        turn_deadline: float = 60.0,
        synthesis_grace: float = 25.0,
    ) -> tuple[Orchestrator, list[httpx.Request]]:
        requests: list[httpx.Request] = []

        async def _record(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if handler is None:
                return ok_response()
            response = handler(request)
            if hasattr(response, "__await__"):
                response = await response
            return response

        registry = ToolRegistry()
        registry.register(sales_spec(tool_timeout))
        invoker = ToolInvoker(
            TokenCache(StaticTokenIssuer("test-token")),
            client=httpx.AsyncClient(transport=httpx.MockTransport(_record)),
            config=ToolConfig(backoff_base_seconds=0.0),
        )
        orchestrator = Orchestrator(
            state_store=store if store is not None else InMemoryStateStore(),
            retriever=retriever,
            registry=registry,
            invoker=invoker,
            reasoner=ResilientReasoner(client, ReasoningConfig(timeout_seconds=2.0, backoff_base_seconds=0.0)),
            config=AgentConfig(
                max_iterations=max_iterations,
                turn_deadline_seconds=turn_deadline,
                synthesis_grace_seconds=synthesis_grace,
            ),
        )
        return orchestrator, requests

    return _build


@pytest.fixture
def make_sales_spec() -> Callable[..., ToolSpec]:
    return sales_spec


@pytest.fixture
def make_ok_response() -> Callable[..., httpx.Response]:
    return ok_response


@pytest.fixture
def corpus() -> list[ChunkRecord]:
    return list(CORPUS)
