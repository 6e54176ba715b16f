"""Run tracing and aggregate metrics for orchestration runs."""

from __future__ import annotations

import threading
import time
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from helpdesk_agent.types import ToolTrace


@dataclass(slots=True)
class RunRecord:
    trace_id: str
    timestamp_utc: str
    conversation_id: int | None
    state: str
    model_calls: int
    reply: str | None
    tool_traces: list[ToolTrace]
    latency_ms: float


class TraceStore:
    """In-memory trace storage for API-level observability.

    Runs for different conversations may finish concurrently, so every
    access goes through one lock.
    """

    def __init__(self, max_records: int = 1000) -> None:
        self._records: dict[str, RunRecord] = {}
        self._max_records = max_records
        self._lock = threading.Lock()

    def create_record(
        self,
        *,
        conversation_id: int | None,
        state: str,
        model_calls: int,
        reply: str | None,
        tool_traces: list[ToolTrace],
        latency_ms: float,
    ) -> RunRecord:
        record = RunRecord(
            trace_id=str(uuid.uuid4()),
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            conversation_id=conversation_id,
            state=state,
            model_calls=model_calls,
            reply=reply,
            tool_traces=list(tool_traces),
            latency_ms=latency_ms,
        )
        with self._lock:
            self._records[record.trace_id] = record
            while len(self._records) > self._max_records:
                self._records.pop(next(iter(self._records)))
        return record

    def get(self, trace_id: str) -> RunRecord:
        with self._lock:
            record = self._records.get(trace_id)
        if record is None:
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[RunRecord]:
        with self._lock:
            return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, Any]:
        """Aggregate core observability metrics for dashboard display."""
        with self._lock:
            records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_runs": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "total_model_calls": 0,
                "total_tool_calls": 0,
                "tool_errors": 0,
                "states": {},
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        tool_traces = [trace for record in records for trace in record.tool_traces]

        return {
            "total_runs": total,
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "total_model_calls": sum(record.model_calls for record in records),
            "total_tool_calls": len(tool_traces),
            "tool_errors": sum(1 for trace in tool_traces if trace.error),
            "states": dict(Counter(record.state for record in records)),
        }


class Timer:
    """Simple context timer used by the orchestrator."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
