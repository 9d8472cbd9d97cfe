"""Hybrid semantic + lexical retriever."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass

import structlog

from agentic_qa.config import RetrievalConfig
from agentic_qa.retrieval.context import assemble_context
from agentic_qa.retrieval.embedder import Embedder
from agentic_qa.retrieval.fusion import KeywordOverlapReranker, Reranker, fuse_candidates
from agentic_qa.retrieval.index import ChunkStore, LexicalIndex, SemanticIndex, tokenize_terms
from agentic_qa.types import Context, IndexHit, RetrievalCandidate

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class _BranchOutcome:
    hits: list[IndexHit]
    failed: bool = False


class HybridRetriever:
    """Runs semantic and lexical search concurrently and fuses them with RRF.

    Each branch is an independent fallible task bounded by
    `branch_timeout_seconds`. A branch that fails or times out contributes
    nothing and flags the result `partial`; fusion proceeds with the other
    branch.
    """

    def __init__(
        self,
        semantic_index: SemanticIndex,
        lexical_index: LexicalIndex,
        chunk_store: ChunkStore,
        embedder: Embedder,
        config: RetrievalConfig | None = None,
        reranker: Reranker | None = None,
    ) -> None:
        self.semantic_index = semantic_index
        self.lexical_index = lexical_index
        self.chunk_store = chunk_store
        self.embedder = embedder
        self.config = config or RetrievalConfig()
        self.reranker = reranker or KeywordOverlapReranker()

    async def retrieve(
        self,
        query: str,
        *,
        rerank: bool = False,
        top_k: int | None = None,
        token_budget: int | None = None,
    ) -> Context:
        """Return a token-bounded context with citations for `query`."""

        candidates, partial = await self.search(query, rerank=rerank, top_k=top_k)
        budget = token_budget or self.config.token_budget
        context = assemble_context(candidates, budget, partial=partial)
        logger.info(
            "context_assembled",
            chunks=len(context.chunks),
            total_tokens=context.total_tokens,
            dropped=len(context.dropped),
            partial=context.partial,
        )
        return context

    async def search(
        self,
        query: str,
        *,
        rerank: bool = False,
        top_k: int | None = None,
    ) -> tuple[list[RetrievalCandidate], bool]:
        """Return the final candidates in fused order and whether a branch was lost."""

        final_k = top_k or self.config.final_k
        semantic, lexical = await asyncio.gather(
            self._run_branch("semantic", self._semantic(query)),
            self._run_branch("lexical", self._lexical(query)),
        )
        partial = semantic.failed or lexical.failed

        ranks: dict[str, dict[str, int]] = {}
        for route, outcome in (("semantic", semantic), ("lexical", lexical)):
            for rank, hit in enumerate(outcome.hits, start=1):
                ranks.setdefault(hit.candidate_id, {}).setdefault(route, rank)
        if not ranks:
            return [], partial

        try:
            records = await asyncio.wait_for(
                self.chunk_store.fetch(list(ranks)),
                timeout=self.config.branch_timeout_seconds,
            )
        except Exception as exc:
            logger.warning("chunk_fetch_failed", error=repr(exc))
            return [], True

        candidates = [
            RetrievalCandidate(
                candidate_id=cid,
                doc_id=record.doc_id,
                chunk_index=record.chunk_index,
                text=record.text,
                metadata=dict(record.metadata),
                semantic_rank=ranks[cid].get("semantic"),
                lexical_rank=ranks[cid].get("lexical"),
            )
            for cid, record in records.items()
        ]
        fused = fuse_candidates(candidates, k=self.config.rrf_k)

        if not rerank:
            return fused[:final_k], partial

        shortlist = fused[: self.config.rerank_pool]
        selected = {item.candidate_id for item in self.reranker.rerank(query, shortlist, final_k)}
        # Re-ranking chooses the final set; packing keeps the fused order.
        return [item for item in shortlist if item.candidate_id in selected], partial

    async def _semantic(self, query: str) -> list[IndexHit]:
        vector = await asyncio.to_thread(self.embedder.embed_query, query)
        return await self.semantic_index.search(vector, self.config.top_n)

    async def _lexical(self, query: str) -> list[IndexHit]:
        return await self.lexical_index.search(tokenize_terms(query), self.config.top_n)

    async def _run_branch(self, route: str, branch: Awaitable[list[IndexHit]]) -> _BranchOutcome:
        try:
            hits = await asyncio.wait_for(branch, timeout=self.config.branch_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("retrieval_branch_timeout", route=route, timeout_s=self.config.branch_timeout_seconds)
            return _BranchOutcome(hits=[], failed=True)
        except Exception as exc:
            logger.warning("retrieval_branch_failed", route=route, error=repr(exc))
            return _BranchOutcome(hits=[], failed=True)
        logger.debug("retrieval_branch_done", route=route, hits=len(hits))
        return _BranchOutcome(hits=hits)
