"""Reciprocal rank fusion and optional re-ranking."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod

from agentic_qa.types import RetrievalCandidate

_WORD = re.compile(r"\w+", flags=re.UNICODE)


def rrf_term(rank: int | None, k: int) -> float:
    """Contribution of one ranked list; a list the candidate is absent from adds nothing."""
    if rank is None:
        return 0.0
    return 1.0 / (k + rank)


def fusion_order_key(candidate: RetrievalCandidate) -> tuple[float, str, int]:
    return (-candidate.fused_score, candidate.doc_id, candidate.chunk_index)


def fuse_candidates(candidates: list[RetrievalCandidate], k: int = 60) -> list[RetrievalCandidate]:
    """Score candidates by RRF over their semantic and lexical ranks.

    Ranks are 1-based. The result is sorted by descending fused score with
    ties broken by document id, then chunk index, so identical inputs always
    produce identical orderings.
    """

    for candidate in candidates:
        candidate.fused_score = rrf_term(candidate.semantic_rank, k) + rrf_term(candidate.lexical_rank, k)
    return sorted(candidates, key=fusion_order_key)


class Reranker(ABC):
    """Pairwise relevance scorer applied to the fused shortlist."""

    @abstractmethod
    def score(self, query: str, texts: list[str]) -> list[float]:
        """Return one relevance score per text, higher is better."""

    def rerank(
        self,
        query: str,
        candidates: list[RetrievalCandidate],
        top_k: int,
    ) -> list[RetrievalCandidate]:
        scores = self.score(query, [candidate.text for candidate in candidates])
        if len(scores) != len(candidates):
            raise ValueError("reranker returned a score count that does not match candidates")
        for candidate, value in zip(candidates, scores, strict=True):
            candidate.rerank_score = value
        ranked = sorted(
            candidates,
            key=lambda item: (-(item.rerank_score or 0.0),) + fusion_order_key(item),
        )
        return ranked[:top_k]


class KeywordOverlapReranker(Reranker):
    """Lightweight scorer: share of query terms present in the chunk."""

    def score(self, query: str, texts: list[str]) -> list[float]:
        query_terms = set(_WORD.findall(query.lower()))
        if not query_terms:
            return [0.0 for _ in texts]
        scores = []
        for text in texts:
            chunk_terms = set(_WORD.findall(text.lower()))
            scores.append(len(query_terms & chunk_terms) / len(query_terms))
        return scores
