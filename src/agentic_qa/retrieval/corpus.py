"""Load pre-chunked, pre-cleaned records into the local hybrid index."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog

from agentic_qa.retrieval.embedder import Embedder
from agentic_qa.retrieval.index import InMemoryHybridIndex
from agentic_qa.types import ChunkRecord

logger = structlog.get_logger(__name__)


def parse_chunk(entry: dict[str, Any]) -> ChunkRecord:
    doc_id = str(entry["doc_id"])
    chunk_index = int(entry.get("chunk_index", 0))
    text = entry["text"]
    if not isinstance(text, str) or not text.strip():
        raise ValueError(f"chunk {doc_id}#{chunk_index} has no text")
    metadata = entry.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValueError(f"chunk {doc_id}#{chunk_index} metadata must be an object")
    return ChunkRecord(
        candidate_id=str(entry.get("candidate_id") or f"{doc_id}-{chunk_index}"),
        doc_id=doc_id,
        chunk_index=chunk_index,
        text=text,
        metadata=dict(metadata),
    )


def load_corpus(path: str | Path, index: InMemoryHybridIndex, embedder: Embedder) -> list[ChunkRecord]:
    """Upsert every chunk in the JSON Lines file at `path` into `index`.

    One object per line with `doc_id`, `text` and optional `chunk_index`,
    `candidate_id` and `metadata`. Blank lines are skipped; a malformed
    line fails the whole load before anything is indexed.
    """

    records: list[ChunkRecord] = []
    with Path(path).open("r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                records.append(parse_chunk(json.loads(line)))
            except (ValueError, KeyError, TypeError) as exc:
                raise ValueError(f"{path}:{line_number}: invalid chunk: {exc}") from exc

    if records:
        index.upsert(records, embedder.embed_documents([record.text for record in records]))
    logger.info("corpus_loaded", path=str(path), chunks=len(records), indexed_chunks=len(index))
    return records
