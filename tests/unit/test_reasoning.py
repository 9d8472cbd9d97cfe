import asyncio
from typing import Any

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from agentic_qa.agent.fallback import NO_EVIDENCE_ANSWER, ExtractiveReasoningClient, build_extractive_answer
from agentic_qa.agent.reasoning import (
    SEARCH_TOOL_NAME,
    LangChainReasoningClient,
    ResilientReasoner,
    parse_ai_message,
    to_langchain_messages,
)
from agentic_qa.config import ReasoningConfig
from agentic_qa.errors import ReasoningOracleError
from agentic_qa.retrieval.context import assemble_context
from agentic_qa.types import Context, Message, RetrievalCandidate, Respond, Role, Think, UseTool

FAST = ReasoningConfig(timeout_seconds=1.0, backoff_base_seconds=0.0)


class _FlakyClient:
    def __init__(self, failures: int, action: Any = None) -> None:
        self.failures = failures
        self.action = action or Respond(text="AMER grew 12 percent.")
        self.calls = 0

    async def call(self, history, context, tools, *, final=False):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("oracle unreachable")
        return self.action


class _FakeChatModel:
    def __init__(self, response: AIMessage) -> None:
        self.response = response
        self.bound: list[dict[str, Any]] | None = None
        self.seen: list[Any] = []

    def bind_tools(self, tools: list[dict[str, Any]]) -> "_FakeChatModel":
        self.bound = tools
        return self

    async def ainvoke(self, messages: list[Any]) -> AIMessage:
        self.seen = messages
        return self.response


def _evidence() -> Context:
    return assemble_context(
        [
            RetrievalCandidate(
                candidate_id="q3-report-0",
                doc_id="q3-report",
                chunk_index=0,
                text="AMER Q3 software sales grew 12 percent.",
                metadata={"origin": "finance/q3-report.pdf"},
            )
        ],
        token_budget=4000,
    )


def test_reasoner_gives_up_after_three_failures() -> None:
    client = _FlakyClient(failures=10)

    with pytest.raises(ReasoningOracleError):
        asyncio.run(ResilientReasoner(client, FAST).call([], Context(), []))

    assert client.calls == 3


def test_reasoner_recovers_after_transient_failures() -> None:
    client = _FlakyClient(failures=2)

    action = asyncio.run(ResilientReasoner(client, FAST).call([], Context(), []))

    assert action == Respond(text="AMER grew 12 percent.")
    assert client.calls == 3


def test_final_call_rejects_non_answers() -> None:
    client = _FlakyClient(failures=0, action=UseTool(name="sales_report"))

    with pytest.raises(ReasoningOracleError):
        asyncio.run(ResilientReasoner(client, FAST).call([], Context(), [], final=True))


def test_reasoner_respects_the_turn_budget() -> None:
    class _Hanging:
        calls = 0

        async def call(self, history, context, tools, *, final=False):
            _Hanging.calls += 1
            await asyncio.sleep(5)

    with pytest.raises(ReasoningOracleError):
        asyncio.run(ResilientReasoner(_Hanging(), FAST).call([], Context(), [], budget_seconds=0.05))

    assert _Hanging.calls == 1


def test_parse_ai_message_maps_tool_calls_to_actions() -> None:
    tool = AIMessage(content="", tool_calls=[{"name": "sales_report", "args": {"region": "AMER"}, "id": "call-1"}])
    search = AIMessage(content="need more", tool_calls=[{"name": SEARCH_TOOL_NAME, "args": {"query": "Q3 EMEA"}, "id": "call-2"}])
    answer = AIMessage(content="AMER grew [c-1].")

    assert parse_ai_message(tool) == UseTool(name="sales_report", parameters={"region": "AMER"}, call_id="call-1")
    assert parse_ai_message(search) == Think(thought="need more", query="Q3 EMEA")
    assert parse_ai_message(answer) == Respond(text="AMER grew [c-1].")
    assert parse_ai_message(tool, final=True) == Respond(text="")


def test_history_maps_onto_langchain_messages() -> None:
    history = [
        Message(role=Role.USER, content="What were AMER Q3 sales?"),
        Message(
            role=Role.ASSISTANT,
            content="",
            name="sales_report",
            tool_call_id="call-1",
            tool_args={"region": "AMER", "quarter": "Q3"},
        ),
        Message(role=Role.TOOL, content='{"status":"ok"}', name="sales_report", tool_call_id="call-1"),
        Message(role=Role.ASSISTANT, content="AMER sold 1.25M."),
    ]

    converted = to_langchain_messages(history)

    assert [type(message) for message in converted] == [HumanMessage, AIMessage, ToolMessage, AIMessage]
    assert converted[1].tool_calls[0]["name"] == "sales_report"
    assert converted[2].tool_call_id == "call-1"


def test_langchain_client_binds_tools_and_renders_evidence(make_sales_spec) -> None:
    llm = _FakeChatModel(AIMessage(content="", tool_calls=[{"name": "sales_report", "args": {"region": "AMER"}, "id": "c1"}]))
    client = LangChainReasoningClient(llm)
    history = [Message(role=Role.USER, content="What were AMER Q3 sales?")]

    action = asyncio.run(client.call(history, _evidence(), [make_sales_spec()]))

    assert isinstance(action, UseTool)
    assert [tool["function"]["name"] for tool in llm.bound] == ["sales_report", SEARCH_TOOL_NAME]
    assert isinstance(llm.seen[0], SystemMessage)
    assert "finance/q3-report.pdf" in llm.seen[0].content
    assert isinstance(llm.seen[-1], HumanMessage)


def test_langchain_client_final_call_skips_tools() -> None:
    llm = _FakeChatModel(AIMessage(content="Final answer."))

    action = asyncio.run(LangChainReasoningClient(llm).call([], Context(), [], final=True))

    assert action == Respond(text="Final answer.")
    assert llm.bound is None
    assert "Do not call tools" in llm.seen[0].content


def test_extractive_answer_cites_every_line() -> None:
    context = _evidence()

    answer = build_extractive_answer(context)
    action = asyncio.run(ExtractiveReasoningClient().call([], context, []))

    assert answer.startswith("1. AMER Q3 software sales")
    assert answer.endswith(f"[{context.chunks[0].citation_id}]")
    assert action == Respond(text=answer)
    assert build_extractive_answer(Context()) == NO_EVIDENCE_ANSWER
