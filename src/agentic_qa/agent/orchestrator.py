"""Bounded ReAct orchestrator: reason, call tools, observe, synthesize, persist."""

from __future__ import annotations

import asyncio
import contextlib
import re
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog
from pydantic import ValidationError

from agentic_qa.agent.fallback import build_extractive_answer
from agentic_qa.agent.invoker import ToolInvoker, describe_validation_error
from agentic_qa.agent.reasoning import ResilientReasoner
from agentic_qa.agent.registry import ToolRegistry
from agentic_qa.config import AgentConfig, StateConfig
from agentic_qa.errors import ReasoningOracleError, SessionUnavailable, TurnDeadlineExceeded, UnknownToolError
from agentic_qa.obs.logging import bind_turn_context, clear_turn_context
from agentic_qa.obs.tracing import Timer, TraceStore, TurnTrace, estimate_token_count
from agentic_qa.retrieval.context import merge_contexts
from agentic_qa.retrieval.retriever import HybridRetriever
from agentic_qa.state.store import StateStore, bounded
from agentic_qa.types import (
    Citation,
    Context,
    Message,
    Respond,
    Role,
    Session,
    Think,
    ToolErr,
    ToolErrorKind,
    ToolOk,
    ToolResult,
    UseTool,
)

logger = structlog.get_logger(__name__)

_CITATION_TAG = re.compile(r"\[([^\]]+)\]")
_STREAM_CHUNK_CHARS = 64
_DONE = object()

EventSink = Callable[[dict[str, Any]], None]


class TurnState(str, Enum):
    LOAD_STATE = "load_state"
    REASON = "reason"
    SELECT_TOOL = "select_tool"
    EXECUTE_TOOL = "execute_tool"
    OBSERVE = "observe"
    SYNTHESIZE = "synthesize"
    SAVE_STATE = "save_state"
    DONE = "done"


@dataclass(slots=True)
class TurnResult:
    session_id: str
    trace_id: str
    answer: str
    citations: list[Citation]
    degraded: bool
    degradation_reasons: list[str]
    iterations: int
    states: list[str]
    forced_synthesis: str | None
    session_version: int


@dataclass(slots=True)
class _Turn:
    """Working state of one turn; discarded unless SAVE_STATE commits it."""

    session: Session
    question: str
    trace: TurnTrace
    deadline: float
    emit: EventSink | None
    context: Context = field(default_factory=Context)
    history: list[Message] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)
    cache: dict[str, ToolResult] = field(default_factory=dict)
    evidence: dict[str, Citation] = field(default_factory=dict)
    failed_tools: set[str] = field(default_factory=set)
    degradation: list[str] = field(default_factory=list)
    iterations: int = 0
    draft: str | None = None
    forced: str | None = None
    state: TurnState = TurnState.LOAD_STATE

    def degrade(self, reason: str) -> None:
        if reason not in self.degradation:
            self.degradation.append(reason)
            logger.warning("turn_degraded", reason=reason)

    def record(self, message: Message) -> None:
        self.messages.append(message)
        self.history.append(message)

    def add_context_evidence(self, context: Context) -> None:
        for chunk in context.chunks:
            source = str(chunk.metadata.get("origin") or chunk.metadata.get("source") or chunk.doc_id)
            self.evidence.setdefault(
                chunk.citation_id,
                Citation(id=chunk.citation_id, source=source, snippet=chunk.text[:240]),
            )


class Orchestrator:
    """Drives one conversation turn through an explicit, bounded state machine.

    States: LOAD_STATE -> REASON -> {SELECT_TOOL -> EXECUTE_TOOL -> OBSERVE
    -> REASON} -> SYNTHESIZE -> SAVE_STATE -> DONE.

    Failure routing:
    - reasoning oracle errors are retried by `ResilientReasoner`, then the turn
      degrades to an extractive answer over the last-known-good context;
    - tool errors come back as `ToolErr` observations for the oracle to handle;
    - state store errors abort the turn with `SessionUnavailable`.

    The REASON step runs at most `max_iterations` times and the turn has a soft
    deadline; hitting either forces SYNTHESIZE with the evidence gathered so
    far. A hard ceiling (soft deadline + synthesis grace) bounds everything up
    to SYNTHESIZE; SAVE_STATE is a single atomic commit.
    """

    def __init__(
        self,
        *,
        state_store: StateStore,
        retriever: HybridRetriever,
        registry: ToolRegistry,
        invoker: ToolInvoker,
        reasoner: ResilientReasoner,
        config: AgentConfig | None = None,
        state_config: StateConfig | None = None,
        trace_store: TraceStore | None = None,
    ) -> None:
        self.state_store = state_store
        self.retriever = retriever
        self.registry = registry
        self.invoker = invoker
        self.reasoner = reasoner
        self.config = config or AgentConfig()
        self.state_config = state_config or StateConfig()
        self.trace_store = trace_store or TraceStore()

    async def run_turn(
        self,
        session_id: str,
        question: str,
        *,
        user_id: str | None = None,
        rerank: bool = False,
        emit: EventSink | None = None,
    ) -> TurnResult:
        """Run one full turn and return the cited answer.

        Raises:
            SessionUnavailable: the state store could not be read or written.
            TurnDeadlineExceeded: the hard turn deadline passed before synthesis.
        """

        loop = asyncio.get_running_loop()
        trace = TurnTrace(trace_id=str(uuid.uuid4()), session_id=session_id, question=question)
        bind_turn_context(session_id=session_id, trace_id=trace.trace_id)
        hard_limit = self.config.turn_deadline_seconds + self.config.synthesis_grace_seconds
        turn: _Turn | None = None
        try:
            with Timer() as timer:
                try:
                    turn = await asyncio.wait_for(
                        self._reason_until_answer(
                            session_id,
                            question,
                            user_id=user_id,
                            rerank=rerank,
                            trace=trace,
                            deadline=loop.time() + self.config.turn_deadline_seconds,
                            emit=emit,
                        ),
                        timeout=hard_limit,
                    )
                except asyncio.TimeoutError as exc:
                    trace.failed = "deadline"
                    raise TurnDeadlineExceeded(f"turn exceeded its {hard_limit:.0f}s deadline") from exc
                version = await self._save_state(turn, user_id=user_id)
            trace.latency_ms = timer.elapsed_ms
            return TurnResult(
                session_id=session_id,
                trace_id=trace.trace_id,
                answer=trace.answer,
                citations=[turn.evidence[cid] for cid in trace.citations],
                degraded=bool(turn.degradation),
                degradation_reasons=list(turn.degradation),
                iterations=turn.iterations,
                states=list(trace.states),
                forced_synthesis=turn.forced,
                session_version=version,
            )
        except SessionUnavailable as exc:
            trace.failed = "session_unavailable"
            logger.error("turn_failed", reason="session_unavailable", error=exc.message)
            raise
        except asyncio.CancelledError:
            trace.failed = "cancelled"
            logger.info("turn_cancelled", state=turn.state.value if turn else TurnState.LOAD_STATE.value)
            raise
        finally:
            self.trace_store.add(trace)
            clear_turn_context()

    async def stream_turn(
        self,
        session_id: str,
        question: str,
        *,
        user_id: str | None = None,
        rerank: bool = False,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield status events, then the answer in pieces, then a final event.

        Closing the iterator early (client disconnect) cancels the turn; an
        uncommitted turn leaves no trace in the session.
        """

        queue: asyncio.Queue[Any] = asyncio.Queue()
        task = asyncio.create_task(
            self.run_turn(session_id, question, user_id=user_id, rerank=rerank, emit=queue.put_nowait)
        )
        task.add_done_callback(lambda _: queue.put_nowait(_DONE))
        try:
            while True:
                event = await queue.get()
                if event is _DONE:
                    break
                yield event
            result = task.result()
            for start in range(0, len(result.answer), _STREAM_CHUNK_CHARS):
                yield {"type": "answer", "delta": result.answer[start : start + _STREAM_CHUNK_CHARS]}
            yield {
                "type": "final",
                "session_id": result.session_id,
                "trace_id": result.trace_id,
                "answer": result.answer,
                "citations": [citation.model_dump() for citation in result.citations],
                "degraded": result.degraded,
                "degradation_reasons": result.degradation_reasons,
                "iterations": result.iterations,
            }
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    async def _reason_until_answer(
        self,
        session_id: str,
        question: str,
        *,
        user_id: str | None,
        rerank: bool,
        trace: TurnTrace,
        deadline: float,
        emit: EventSink | None,
    ) -> _Turn:
        loop = asyncio.get_running_loop()

        session = await bounded(
            self.state_store.get(session_id, user_id=user_id),
            self.state_config.operation_timeout_seconds,
            "get",
        )
        turn = _Turn(session=session, question=question, trace=trace, deadline=deadline, emit=emit)
        self._transition(turn, TurnState.LOAD_STATE)
        turn.cache = dict(session.tool_cache)
        turn.history = list(session.messages)
        turn.record(Message(role=Role.USER, content=question))
        turn.context = await self._retrieve(turn, question, rerank)

        while True:
            if turn.iterations >= self.config.max_iterations:
                turn.forced = "iteration_limit"
                break
            remaining = turn.deadline - loop.time()
            if remaining <= 0:
                turn.forced = "deadline"
                turn.degrade("deadline")
                break

            self._transition(turn, TurnState.REASON)
            turn.iterations += 1
            try:
                action = await self.reasoner.call(
                    turn.history,
                    turn.context,
                    self.registry.specs(),
                    budget_seconds=remaining,
                )
            except ReasoningOracleError as exc:
                logger.warning("reasoning_fallback", error=exc.message)
                turn.degrade("oracle_fallback")
                turn.draft = build_extractive_answer(turn.context, max_chunks=self.config.fallback_max_chunks)
                break

            if isinstance(action, Respond):
                turn.draft = action.text
                break
            if isinstance(action, Think):
                await self._think(turn, action, rerank)
                continue
            await self._use_tool(turn, action)

        if turn.forced:
            logger.info("synthesis_forced", reason=turn.forced, iterations=turn.iterations)
        await self._synthesize(turn)
        return turn

    async def _retrieve(self, turn: _Turn, query: str, rerank: bool) -> Context:
        remaining = turn.deadline - asyncio.get_running_loop().time()
        try:
            context = await asyncio.wait_for(self.retriever.retrieve(query, rerank=rerank), timeout=max(remaining, 0.0))
        except asyncio.TimeoutError:
            logger.warning("retrieval_deadline", query=query)
            context = Context(token_budget=self.retriever.config.token_budget, partial=True)
        if context.partial:
            turn.degrade("partial_retrieval")
        turn.add_context_evidence(context)
        return context

    async def _think(self, turn: _Turn, action: Think, rerank: bool) -> None:
        note = action.thought or (f"Searching the knowledge base for: {action.query}" if action.query else "")
        if note:
            turn.record(Message(role=Role.ASSISTANT, content=note))
        if action.query:
            extra = await self._retrieve(turn, action.query, rerank)
            turn.context = merge_contexts(turn.context, extra)

    async def _use_tool(self, turn: _Turn, action: UseTool) -> None:
        self._transition(turn, TurnState.SELECT_TOOL)
        call_id = action.call_id or f"call_{uuid.uuid4().hex[:12]}"
        request = Message(
            role=Role.ASSISTANT,
            content="",
            name=action.name,
            tool_call_id=call_id,
            tool_args=dict(action.parameters),
        )

        result: ToolResult
        try:
            spec = self.registry.get(action.name)
        except UnknownToolError as exc:
            result = ToolErr(kind=ToolErrorKind.UNKNOWN_TOOL, message=exc.message)
        else:
            try:
                spec.validate_parameters(action.parameters)
            except ValidationError as exc:
                result = ToolErr(kind=ToolErrorKind.VALIDATION, message=describe_validation_error(exc))
            else:
                self._transition(turn, TurnState.EXECUTE_TOOL)
                remaining = max(turn.deadline - asyncio.get_running_loop().time(), 0.0)
                result = await self.invoker.invoke(
                    spec,
                    action.parameters,
                    turn.cache,
                    timeout=remaining,
                    observer=turn.trace.tool_traces.append,
                )

        self._transition(turn, TurnState.OBSERVE)
        turn.record(request)
        turn.record(
            Message(
                role=Role.TOOL,
                content=result.model_dump_json(),
                name=action.name,
                tool_call_id=call_id,
            )
        )
        if isinstance(result, ToolOk):
            turn.failed_tools.discard(action.name)
            for citation in result.citations:
                turn.evidence.setdefault(citation.id, citation)
        else:
            turn.failed_tools.add(action.name)

    async def _synthesize(self, turn: _Turn) -> None:
        self._transition(turn, TurnState.SYNTHESIZE)
        answer = turn.draft
        if answer is None:
            loop = asyncio.get_running_loop()
            budget = max(turn.deadline + self.config.synthesis_grace_seconds - loop.time(), 0.0)
            try:
                action = await self.reasoner.call(turn.history, turn.context, [], final=True, budget_seconds=budget)
                answer = action.text if isinstance(action, Respond) else ""
            except ReasoningOracleError as exc:
                logger.warning("synthesis_fallback", error=exc.message)
                turn.degrade("oracle_fallback")
                answer = build_extractive_answer(turn.context, max_chunks=self.config.fallback_max_chunks)

        if turn.failed_tools:
            turn.degrade("tool_error")
        turn.record(Message(role=Role.ASSISTANT, content=answer))

        trace = turn.trace
        trace.answer = answer
        trace.citations = extract_citations(answer, turn.evidence)
        trace.iterations = turn.iterations
        trace.forced_synthesis = turn.forced
        trace.degraded = bool(turn.degradation)
        trace.degradation_reasons = list(turn.degradation)
        trace.input_tokens = estimate_token_count(turn.question) + turn.context.total_tokens
        trace.output_tokens = estimate_token_count(answer)

    async def _save_state(self, turn: _Turn, *, user_id: str | None) -> int:
        self._transition(turn, TurnState.SAVE_STATE)
        new_entries = {key: value for key, value in turn.cache.items() if key not in turn.session.tool_cache}
        new_messages = tuple(turn.messages)
        cited = frozenset(turn.trace.citations)
        question, answer = turn.question, turn.trace.answer
        max_tokens = self.config.summary_max_tokens

        def apply_turn(latest: Session) -> Session:
            return latest.model_copy(
                update={
                    "user_id": latest.user_id or user_id,
                    "messages": latest.messages + new_messages,
                    "summary": roll_summary(latest.summary, question, answer, max_tokens),
                    "memory_refs": latest.memory_refs | cited,
                    "tool_cache": {**latest.tool_cache, **new_entries},
                }
            )

        # The store bounds its own commit.
        result = await self.state_store.commit(turn.session.session_id, apply_turn)
        if not result.ok or result.session is None:
            raise SessionUnavailable(f"commit for session {turn.session.session_id} was rejected")
        logger.info("turn_committed", version=result.session.version, messages=len(new_messages))
        self._transition(turn, TurnState.DONE)
        return result.session.version

    def _transition(self, turn: _Turn, state: TurnState) -> None:
        previous = turn.state
        turn.state = state
        turn.trace.states.append(state.value)
        logger.debug("turn_transition", from_state=previous.value, to_state=state.value, iteration=turn.iterations)
        if turn.emit is not None:
            turn.emit({"type": "status", "state": state.value, "iteration": turn.iterations})


def extract_citations(answer: str, known: dict[str, Citation]) -> list[str]:
    """Ordered, de-duplicated citation tags in `answer` that refer to known evidence."""

    cited: list[str] = []
    for tag in _CITATION_TAG.findall(answer):
        tag = tag.strip()
        if tag in known and tag not in cited:
            cited.append(tag)
    return cited


def roll_summary(previous: str, question: str, answer: str, max_tokens: int) -> str:
    """Append the latest exchange and drop the oldest lines past `max_tokens`."""

    first_line = answer.strip().splitlines()[0] if answer.strip() else ""
    lines = [line for line in previous.splitlines() if line.strip()]
    lines.extend([f"Q: {question.strip()}", f"A: {first_line}"])
    while len(lines) > 1 and estimate_token_count("\n".join(lines)) > max_tokens:
        lines.pop(0)
    summary = "\n".join(lines)
    if estimate_token_count(summary) > max_tokens:
        summary = " ".join(summary.split()[-max_tokens:])
    return summary
