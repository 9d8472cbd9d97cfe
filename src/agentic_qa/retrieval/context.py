"""Token-budgeted context assembly."""

from __future__ import annotations

from agentic_qa.obs.tracing import estimate_token_count
from agentic_qa.types import Context, ContextChunk, RetrievalCandidate


def assemble_context(
    candidates: list[RetrievalCandidate],
    token_budget: int,
    *,
    partial: bool = False,
) -> Context:
    """Pack candidates in the given order until the token budget is reached.

    A chunk that would overflow the budget is dropped whole, never cut; later
    chunks that still fit are packed.
    """

    context = Context(token_budget=token_budget, partial=partial)
    seen: set[str] = set()
    for candidate in candidates:
        cid = candidate.citation_id
        if cid in seen:
            continue
        seen.add(cid)
        tokens = estimate_token_count(candidate.text)
        if context.total_tokens + tokens > token_budget:
            context.dropped.append(cid)
            continue
        context.chunks.append(
            ContextChunk(
                citation_id=cid,
                doc_id=candidate.doc_id,
                chunk_index=candidate.chunk_index,
                text=candidate.text,
                metadata=dict(candidate.metadata),
                tokens=tokens,
            )
        )
        context.total_tokens += tokens
    return context


def merge_contexts(base: Context, extra: Context) -> Context:
    """Append chunks from `extra` that are new and still fit in `base`'s budget."""

    merged = Context(
        chunks=list(base.chunks),
        total_tokens=base.total_tokens,
        token_budget=base.token_budget,
        partial=base.partial or extra.partial,
        dropped=list(base.dropped),
    )
    known = set(merged.citation_ids())
    for chunk in extra.chunks:
        if chunk.citation_id in known:
            continue
        known.add(chunk.citation_id)
        if merged.total_tokens + chunk.tokens > merged.token_budget:
            merged.dropped.append(chunk.citation_id)
            continue
        merged.chunks.append(chunk)
        merged.total_tokens += chunk.tokens
    return merged
