"""Retrieval index contracts and an in-memory hybrid implementation."""

from __future__ import annotations

import math
import re
from collections import Counter, defaultdict
from math import sqrt
from typing import Protocol

from agentic_qa.types import ChunkRecord, IndexHit

_WORD = re.compile(r"\w+", flags=re.UNICODE)


def tokenize_terms(text: str) -> list[str]:
    return _WORD.findall(text.lower())


class SemanticIndex(Protocol):
    """Nearest-neighbour search over chunk vectors."""

    async def search(self, vector: list[float], top_n: int) -> list[IndexHit]:
        """Return up to `top_n` hits ranked by similarity."""


class LexicalIndex(Protocol):
    """Keyword search over chunk text."""

    async def search(self, terms: list[str], top_n: int) -> list[IndexHit]:
        """Return up to `top_n` hits ranked by keyword score."""


class ChunkStore(Protocol):
    """Resolves candidate ids to full chunk text and source metadata."""

    async def fetch(self, candidate_ids: list[str]) -> dict[str, ChunkRecord]:
        """Return records for the ids that exist."""


class InMemoryHybridIndex:
    """Deterministic vector + BM25 index used for tests and local prototyping.

    `semantic`, `lexical` and `chunks` expose the three index contracts so
    one object can back a `HybridRetriever`.
    """

    def __init__(self, *, k1: float = 1.5, b: float = 0.75) -> None:
        self.k1 = k1
        self.b = b
        self._records: dict[str, ChunkRecord] = {}
        self._vectors: dict[str, list[float]] = {}
        self._term_freqs: dict[str, Counter[str]] = {}
        self._postings: dict[str, set[str]] = defaultdict(set)
        self._avg_length = 0.0

        self.semantic = _SemanticView(self)
        self.lexical = _LexicalView(self)
        self.chunks = _ChunkView(self)

    def __len__(self) -> int:
        return len(self._records)

    def upsert(self, records: list[ChunkRecord], embeddings: list[list[float]]) -> None:
        if len(records) != len(embeddings):
            raise ValueError("records and embeddings must have the same length")
        for record, embedding in zip(records, embeddings, strict=True):
            previous = self._term_freqs.get(record.candidate_id)
            if previous is not None:
                for term in previous:
                    self._postings[term].discard(record.candidate_id)
            freqs = Counter(tokenize_terms(record.text))
            self._records[record.candidate_id] = record
            self._vectors[record.candidate_id] = embedding
            self._term_freqs[record.candidate_id] = freqs
            for term in freqs:
                self._postings[term].add(record.candidate_id)
        lengths = [sum(freqs.values()) for freqs in self._term_freqs.values()]
        self._avg_length = sum(lengths) / len(lengths) if lengths else 0.0

    def semantic_search(self, vector: list[float], top_n: int) -> list[IndexHit]:
        scored = [
            IndexHit(candidate_id=cid, score=_cosine_similarity(vector, embedding))
            for cid, embedding in self._vectors.items()
        ]
        scored.sort(key=lambda hit: (-hit.score, hit.candidate_id))
        return scored[:top_n]

    def lexical_search(self, terms: list[str], top_n: int) -> list[IndexHit]:
        query_terms = [term.lower() for term in terms if term]
        candidates: set[str] = set()
        for term in query_terms:
            candidates.update(self._postings.get(term, set()))

        scored = [
            IndexHit(candidate_id=cid, score=self._bm25(query_terms, cid))
            for cid in candidates
        ]
        scored = [hit for hit in scored if hit.score > 0.0]
        scored.sort(key=lambda hit: (-hit.score, hit.candidate_id))
        return scored[:top_n]

    def fetch(self, candidate_ids: list[str]) -> dict[str, ChunkRecord]:
        return {cid: self._records[cid] for cid in candidate_ids if cid in self._records}

    def _bm25(self, query_terms: list[str], candidate_id: str) -> float:
        freqs = self._term_freqs[candidate_id]
        length = sum(freqs.values())
        total = len(self._records)
        score = 0.0
        for term in query_terms:
            tf = freqs.get(term, 0)
            if tf == 0:
                continue
            df = len(self._postings[term])
            idf = math.log((total - df + 0.5) / (df + 0.5) + 1)
            denominator = tf + self.k1 * (1 - self.b + self.b * length / max(self._avg_length, 1.0))
            score += idf * tf * (self.k1 + 1) / denominator
        return score


class _SemanticView:
    def __init__(self, index: InMemoryHybridIndex) -> None:
        self._index = index

    async def search(self, vector: list[float], top_n: int) -> list[IndexHit]:
        return self._index.semantic_search(vector, top_n)


class _LexicalView:
    def __init__(self, index: InMemoryHybridIndex) -> None:
        self._index = index

    async def search(self, terms: list[str], top_n: int) -> list[IndexHit]:
        return self._index.lexical_search(terms, top_n)


class _ChunkView:
    def __init__(self, index: InMemoryHybridIndex) -> None:
        self._index = index

    async def fetch(self, candidate_ids: list[str]) -> dict[str, ChunkRecord]:
        return self._index.fetch(candidate_ids)


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)
