"""Adapters to the external reasoning oracle."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any, Protocol

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, ToolMessage
from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder

from agentic_qa.agent.registry import ToolSpec
from agentic_qa.config import ReasoningConfig
from agentic_qa.errors import ReasoningOracleError
from agentic_qa.types import Action, Context, Message, Respond, Role, Think, UseTool

logger = structlog.get_logger(__name__)

SEARCH_TOOL_NAME = "search_knowledge"

_SYSTEM_PROMPT = """
You are a grounded question-answering agent.

Rules:
1) Base every factual statement on the evidence below or on tool results.
2) Cite evidence by its id in square brackets, for example [c-0123456789abcdef].
3) Call `search_knowledge` when the evidence is insufficient, or another tool when
   the question needs live data. Tool errors are reported back to you; decide
   whether to retry, use a different tool, or answer with what you have.
4) If evidence is missing, explicitly say you cannot verify the answer.

{mode}

Evidence:
{evidence}
""".strip()

_REASON_MODE = "Decide the next step: call a tool, or answer the user."
_FINAL_MODE = "Write the final answer now. Do not call tools."

_PROMPT = ChatPromptTemplate.from_messages(
    [
        ("system", _SYSTEM_PROMPT),
        MessagesPlaceholder(variable_name="history"),
    ]
)

_SEARCH_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": SEARCH_TOOL_NAME,
        "description": "Retrieve more evidence from the knowledge index.",
        "parameters": {
            "type": "object",
            "properties": {"query": {"type": "string", "description": "Search query."}},
            "required": ["query"],
        },
    },
}


class ReasoningClient(Protocol):
    """Prompt in, structured action out. Calls must be safe to retry."""

    async def call(
        self,
        history: Sequence[Message],
        context: Context,
        tools: Sequence[ToolSpec],
        *,
        final: bool = False,
    ) -> Action:
        """Return the next action; `final=True` must return `Respond`."""


def render_context(context: Context) -> str:
    if not context.chunks:
        return "(no evidence retrieved)"
    lines = []
    for chunk in context.chunks:
        source = chunk.metadata.get("origin") or chunk.metadata.get("source") or chunk.doc_id
        lines.append(f"[{chunk.citation_id}] (source: {source}) {chunk.text}")
    return "\n".join(lines)


def to_langchain_messages(history: Sequence[Message]) -> list[BaseMessage]:
    messages: list[BaseMessage] = []
    for message in history:
        if message.role == Role.USER:
            messages.append(HumanMessage(content=message.content))
        elif message.role == Role.TOOL:
            messages.append(
                ToolMessage(
                    content=message.content,
                    tool_call_id=message.tool_call_id or "",
                    name=message.name,
                )
            )
        elif message.tool_args is not None and message.name:
            messages.append(
                AIMessage(
                    content=message.content,
                    tool_calls=[
                        {"name": message.name, "args": message.tool_args, "id": message.tool_call_id or ""}
                    ],
                )
            )
        else:
            messages.append(AIMessage(content=message.content))
    return messages


def message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            elif isinstance(item, str):
                parts.append(item)
        return " ".join(parts).strip()
    return str(content or "").strip()


def parse_ai_message(message: Any, *, final: bool = False) -> Action:
    text = message_text(message)
    tool_calls = getattr(message, "tool_calls", None) or []
    if final or not tool_calls:
        return Respond(text=text)

    call = tool_calls[0]
    name = str(call.get("name", ""))
    args = call.get("args") or {}
    if name == SEARCH_TOOL_NAME:
        return Think(thought=text, query=str(args.get("query", "")).strip() or None)
    return UseTool(name=name, parameters=dict(args), call_id=call.get("id"))


class LangChainReasoningClient:
    """Reasoning oracle backed by a LangChain chat model with tool calling."""

    def __init__(self, llm: Any) -> None:
        self.llm = llm

    async def call(
        self,
        history: Sequence[Message],
        context: Context,
        tools: Sequence[ToolSpec],
        *,
        final: bool = False,
    ) -> Action:
        messages = _PROMPT.format_messages(
            mode=_FINAL_MODE if final else _REASON_MODE,
            evidence=render_context(context),
            history=to_langchain_messages(history),
        )
        model = self.llm
        if not final:
            model = self.llm.bind_tools([spec.as_tool_schema() for spec in tools] + [_SEARCH_TOOL])
        response = await model.ainvoke(messages)
        return parse_ai_message(response, final=final)


class ResilientReasoner:
    """Adds a per-call timeout and exponential-backoff retries to a client.

    After `max_attempts` failures it raises `ReasoningOracleError`; the
    orchestrator turns that into a degraded answer.
    """

    def __init__(self, client: ReasoningClient, config: ReasoningConfig | None = None) -> None:
        self.client = client
        self.config = config or ReasoningConfig()

    async def call(
        self,
        history: Sequence[Message],
        context: Context,
        tools: Sequence[ToolSpec],
        *,
        final: bool = False,
        budget_seconds: float | None = None,
    ) -> Action:
        loop = asyncio.get_running_loop()
        deadline = None if budget_seconds is None else loop.time() + budget_seconds
        last_error = "no attempt made"

        for attempt in range(1, self.config.max_attempts + 1):
            timeout = self.config.timeout_seconds
            if deadline is not None:
                timeout = min(timeout, deadline - loop.time())
                if timeout <= 0:
                    break
            try:
                action = await asyncio.wait_for(
                    self.client.call(history, context, tools, final=final),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                last_error = f"timed out after {timeout:.1f}s"
            except Exception as exc:
                last_error = str(exc) or exc.__class__.__name__
            else:
                if final and not isinstance(action, Respond):
                    last_error = f"synthesis returned {type(action).__name__}"
                else:
                    return action

            logger.warning("reasoning_attempt_failed", attempt=attempt, final=final, error=last_error)
            if attempt < self.config.max_attempts:
                delay = min(self.config.backoff_base_seconds * (2 ** (attempt - 1)), self.config.backoff_max_seconds)
                if deadline is not None:
                    delay = min(delay, max(0.0, deadline - loop.time()))
                await asyncio.sleep(delay)

        raise ReasoningOracleError(f"reasoning oracle failed: {last_error}")
