"""Trace, span and event records, the recorder interface and a no-op recorder."""

from __future__ import annotations

import itertools
import threading
import time
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, TypeVar

from hsme.obs_config import ObservabilityConfig

__all__ = [
    "TraceContext",
    "SpanContext",
    "StartTraceArgs",
    "TraceResult",
    "StartSpanArgs",
    "SpanResult",
    "ErrorEvent",
    "SlowOperationEvent",
    "DiagnosticEvent",
    "SlowOperationSummary",
    "ErrorEventSummary",
    "RollupHealthSummary",
    "Recorder",
    "NoopRecorder",
    "next_id",
    "run_span",
]

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TraceContext:
    trace_id: str = ""
    trace_kind: str = ""
    component: str = ""
    operation: str = ""
    request_id: str = ""
    tool_name: str = ""
    task_id: int = 0
    task_type: str = ""
    memory_id: int = 0
    sampled: bool = False
    started_at_utc: datetime | None = None
    parent_trace_id: str = ""


@dataclass
class SpanContext:
    trace_id: str = ""
    span_id: str = ""
    parent_span_id: str = ""
    component: str = ""
    operation: str = ""
    stage_name: str = ""
    started_at_utc: datetime | None = None


@dataclass
class StartTraceArgs:
    trace_kind: str = ""
    component: str = ""
    operation: str = ""
    request_id: str = ""
    tool_name: str = ""
    task_id: int = 0
    task_type: str = ""
    memory_id: int = 0
    parent_trace_id: str = ""
    meta: dict[str, Any] = field(default_factory=dict)
    started_at: datetime | None = None
    sampled: bool | None = None


@dataclass
class TraceResult:
    status: str = ""
    error_code: str = ""
    error_message: str = ""
    meta: dict[str, Any] = field(default_factory=dict)
    ended_at: datetime | None = None


@dataclass
class StartSpanArgs:
    trace_id: str = ""
    parent_span_id: str = ""
    component: str = ""
    operation: str = ""
    stage_name: str = ""
    meta: dict[str, Any] = field(default_factory=dict)
    started_at: datetime | None = None


@dataclass
class SpanResult:
    status: str = ""
    queue_delay: timedelta = timedelta(0)
    rows_read: int = 0
    rows_written: int = 0
    bytes_in: int = 0
    bytes_out: int = 0
    error_code: str = ""
    error_message: str = ""
    meta: dict[str, Any] = field(default_factory=dict)
    ended_at: datetime | None = None


@dataclass
class ErrorEvent:
    trace_id: str = ""
    span_id: str = ""
    component: str = ""
    operation: str = ""
    tool_name: str = ""
    task_id: int = 0
    task_type: str = ""
    memory_id: int = 0
    severity: str = ""
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class SlowOperationEvent:
    trace_id: str = ""
    span_id: str = ""
    component: str = ""
    operation: str = ""
    tool_name: str = ""
    task_id: int = 0
    task_type: str = ""
    memory_id: int = 0
    threshold: timedelta = timedelta(0)
    observed: timedelta = timedelta(0)
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class DiagnosticEvent:
    trace_id: str = ""
    span_id: str = ""
    component: str = ""
    operation: str = ""
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class SlowOperationSummary:
    created_at_utc: str = ""
    component: str = ""
    operation: str = ""
    tool_name: str = ""
    task_type: str = ""
    observed_us: int = 0
    threshold_us: int = 0
    message: str = ""
    trace_id: str = ""


@dataclass
class ErrorEventSummary:
    created_at_utc: str = ""
    component: str = ""
    operation: str = ""
    tool_name: str = ""
    task_type: str = ""
    severity: str = ""
    message: str = ""
    trace_id: str = ""


@dataclass
class RollupHealthSummary:
    bucket_level: str = ""
    bucket_start_utc: str = ""
    component: str = ""
    operation: str = ""
    tool_name: str = ""
    task_type: str = ""
    trace_kind: str = ""
    total_count: int = 0
    error_count: int = 0
    slow_count: int = 0
    p95_us: int = 0


class Recorder(ABC):
    """Sink for traces, spans and events; failures are raised as exceptions."""

    @abstractmethod
    def start_trace(self, args: StartTraceArgs) -> TraceContext: ...

    @abstractmethod
    def finish_trace(self, trace: TraceContext, result: TraceResult) -> None: ...

    @abstractmethod
    def start_span(self, args: StartSpanArgs) -> SpanContext: ...

    @abstractmethod
    def finish_span(self, span: SpanContext, result: SpanResult) -> None: ...

    @abstractmethod
    def record_error(self, event: ErrorEvent) -> None: ...

    @abstractmethod
    def record_slow_operation(self, event: SlowOperationEvent) -> None: ...

    @abstractmethod
    def record_diagnostic(self, event: DiagnosticEvent) -> None: ...

    @abstractmethod
    def flush_rollups(self, now: datetime) -> None: ...

    @abstractmethod
    def run_retention(self, now: datetime) -> None: ...

    @abstractmethod
    def recent_slow_operations(self, limit: int) -> list[SlowOperationSummary]: ...

    @abstractmethod
    def recent_error_events(self, limit: int) -> list[ErrorEventSummary]: ...

    @abstractmethod
    def rollup_health(self, limit: int) -> list[RollupHealthSummary]: ...

    @abstractmethod
    def enabled(self) -> bool: ...

    @abstractmethod
    def config(self) -> ObservabilityConfig: ...


class NoopRecorder(Recorder):
    """Recorder that stores nothing.

    Contexts are built and handed back, but no record is kept: everything
    passed in is only tallied by kind in :attr:`discarded`, and every query
    comes back empty.
    """

    def __init__(self, cfg: ObservabilityConfig | None = None) -> None:
        self._cfg = cfg if cfg is not None else ObservabilityConfig()
        self.discarded: Counter[str] = Counter()

    def _discard(self, kind: str) -> None:
        self.discarded[kind] += 1

    def start_trace(self, args: StartTraceArgs) -> TraceContext:
        return TraceContext(
            trace_kind=args.trace_kind,
            component=args.component,
            operation=args.operation,
            request_id=args.request_id,
            tool_name=args.tool_name,
            task_id=args.task_id,
            task_type=args.task_type,
            memory_id=args.memory_id,
            sampled=False,
            started_at_utc=args.started_at or _utcnow(),
            parent_trace_id=args.parent_trace_id,
        )

    def finish_trace(self, trace: TraceContext, result: TraceResult) -> None:
        self._discard("trace")

    def start_span(self, args: StartSpanArgs) -> SpanContext:
        return SpanContext(
            trace_id=args.trace_id,
            component=args.component,
            operation=args.operation,
            stage_name=args.stage_name,
            started_at_utc=args.started_at or _utcnow(),
        )

    def finish_span(self, span: SpanContext, result: SpanResult) -> None:
        self._discard("span")

    def record_error(self, event: ErrorEvent) -> None:
        self._discard("error")

    def record_slow_operation(self, event: SlowOperationEvent) -> None:
        self._discard("slow_operation")

    def record_diagnostic(self, event: DiagnosticEvent) -> None:
        self._discard("diagnostic")

    def flush_rollups(self, now: datetime) -> None:
        self._discard("flush_rollups")

    def run_retention(self, now: datetime) -> None:
        self._discard("run_retention")

    def recent_slow_operations(self, limit: int) -> list[SlowOperationSummary]:
        self._discard("query")
        return []

    def recent_error_events(self, limit: int) -> list[ErrorEventSummary]:
        self._discard("query")
        return []

    def rollup_health(self, limit: int) -> list[RollupHealthSummary]:
        self._discard("query")
        return []

    def enabled(self) -> bool:
        return False

    def config(self) -> ObservabilityConfig:
        return self._cfg


_sequence = itertools.count(1)
_sequence_lock = threading.Lock()


def next_id(prefix: str) -> str:
    """Return a process-unique identifier: ``<prefix>-<unix ns>-<sequence>``."""
    with _sequence_lock:
        n = next(_sequence)
    return f"{prefix}-{time.time_ns()}-{n}"


def run_span(
    recorder: Recorder | None,
    trace: TraceContext,
    component: str,
    operation: str,
    stage: str,
    meta: dict[str, Any] | None,
    fn: Callable[[], T],
) -> T:
    """Run ``fn`` inside a span, recording an error event if it raises."""
    if recorder is None or not recorder.enabled():
        return fn()
    span = recorder.start_span(
        StartSpanArgs(
            trace_id=trace.trace_id,
            component=component,
            operation=operation,
            stage_name=stage,
            meta=dict(meta or {}),
            started_at=_utcnow(),
        )
    )
    try:
        value = fn()
    except Exception as exc:
        message = str(exc)
        try:
            recorder.record_error(
                ErrorEvent(
                    trace_id=trace.trace_id,
                    span_id=span.span_id,
                    component=component,
                    operation=operation,
                    severity="error",
                    message=message,
                )
            )
            recorder.finish_span(
                span, SpanResult(status="error", error_message=message, ended_at=_utcnow())
            )
        except Exception:
            pass
        raise
    try:
        recorder.finish_span(span, SpanResult(status="ok", ended_at=_utcnow()))
    except Exception:
        pass
    return value