"""Turn tracing and token accounting."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

from agentic_qa.types import ToolTrace

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)


@dataclass(slots=True)
class TurnTrace:
    trace_id: str
    session_id: str
    question: str
    timestamp_utc: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    answer: str = ""
    citations: list[str] = field(default_factory=list)
    states: list[str] = field(default_factory=list)
    tool_traces: list[ToolTrace] = field(default_factory=list)
    iterations: int = 0
    degraded: bool = False
    degradation_reasons: list[str] = field(default_factory=list)
    forced_synthesis: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: float = 0.0
    failed: str | None = None


class TraceStore:
    """In-memory, bounded store of recent turn traces."""

    def __init__(self, max_records: int = 1000) -> None:
        self._records: dict[str, TurnTrace] = {}
        self._max_records = max_records

    def add(self, record: TurnTrace) -> None:
        self._records[record.trace_id] = record
        while len(self._records) > self._max_records:
            self._records.pop(next(iter(self._records)))

    def get(self, trace_id: str) -> TurnTrace:
        record = self._records.get(trace_id)
        if record is None:
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[TurnTrace]:
        return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate turn metrics for the metrics endpoint."""
        records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_turns": 0,
                "failed_turns": 0,
                "degraded_turns": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "avg_iterations": 0.0,
                "total_tool_calls": 0,
                "cached_tool_calls": 0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        tool_traces = [trace for record in records for trace in record.tool_traces]
        return {
            "total_turns": total,
            "failed_turns": sum(1 for record in records if record.failed),
            "degraded_turns": sum(1 for record in records if record.degraded),
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "avg_iterations": sum(record.iterations for record in records) / total,
            "total_tool_calls": len(tool_traces),
            "cached_tool_calls": sum(1 for trace in tool_traces if trace.cached),
        }


class Timer:
    """Simple context timer."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))
