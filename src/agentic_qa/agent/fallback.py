"""Deterministic reasoning used offline and as the degraded fallback."""

from __future__ import annotations

from collections.abc import Sequence

from agentic_qa.agent.registry import ToolSpec
from agentic_qa.types import Action, Context, Message, Respond

NO_EVIDENCE_ANSWER = "I could not find verifiable evidence in the indexed documents."


def build_extractive_answer(context: Context, *, max_chunks: int = 3, snippet_chars: int = 280) -> str:
    """Answer straight from the top context chunks, one cited line each."""

    if not context.chunks:
        return NO_EVIDENCE_ANSWER
    lines: list[str] = []
    for idx, chunk in enumerate(context.chunks[:max_chunks], start=1):
        snippet = " ".join(chunk.text.split())
        if len(snippet) > snippet_chars:
            snippet = snippet[: snippet_chars - 3] + "..."
        lines.append(f"{idx}. {snippet} [{chunk.citation_id}]")
    return "\n".join(lines)


class ExtractiveReasoningClient:
    """Reasoning client that never calls tools and answers from evidence.

    Keeps the `ReasoningClient` contract so the service runs without an LLM
    (no `OPENAI_API_KEY`) and stays citation-grounded.
    """

    def __init__(self, max_chunks: int = 3) -> None:
        self.max_chunks = max_chunks

    async def call(
        self,
        history: Sequence[Message],
        context: Context,
        tools: Sequence[ToolSpec],
        *,
        final: bool = False,
    ) -> Action:
        del history, tools  # answers from evidence only.
        return Respond(text=build_extractive_answer(context, max_chunks=self.max_chunks))
