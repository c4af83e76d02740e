"""Background worker: leases queued tasks, embeds chunks and extracts graph data."""

from __future__ import annotations

import logging
import sqlite3
import struct
from contextlib import contextmanager, suppress
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterator, NamedTuple, Protocol

from hsme.chunking import canonicalize_name, canonicalize_type, estimate_tokens, split
from hsme.observability import (
    ErrorEvent,
    Recorder,
    SpanResult,
    StartSpanArgs,
    StartTraceArgs,
    TraceContext,
    TraceResult,
)
from hsme.search import Embedder
from hsme.storage import serialize_float32

__all__ = [
    "AsyncTask",
    "Node",
    "Edge",
    "KnowledgeGraph",
    "GraphExtractor",
    "WorkerError",
    "Worker",
]

_log = logging.getLogger(__name__)

# Anything outside these enums is dropped; small models sometimes echo the
# prompt literal (e.g. "TECH|ERROR|FILE|CMD") as if it were a type.
_ALLOWED_NODE_TYPES = frozenset({"TECH", "ERROR", "FILE", "CMD"})
_ALLOWED_RELATIONS = frozenset({"DEPENDS_ON", "RESOLVES", "CAUSES"})

_MAX_ATTEMPTS = 5
_LEASE_DURATION = timedelta(minutes=5)
_CONTEXT_LENGTH_MARKER = "input length exceeds the context length"

_LEASE_QUERY = f"""
    UPDATE async_tasks
       SET status = 'processing',
           leased_until = ?,
           attempt_count = attempt_count + 1,
           updated_at = ?
     WHERE id = (
        SELECT id FROM async_tasks
         WHERE (status = 'pending' OR (status = 'processing' AND leased_until < ?))
           AND attempt_count < {_MAX_ATTEMPTS}
         ORDER BY created_at, id
         LIMIT 1
     )
    RETURNING id, memory_id, task_type, status, attempt_count, last_error, leased_until
"""


@dataclass
class AsyncTask:
    id: int
    memory_id: int
    task_type: str
    status: str = "pending"
    attempt_count: int = 0
    last_error: str | None = None
    leased_until: datetime | None = None


@dataclass
class Node:
    type: str
    name: str


@dataclass
class Edge:
    source: str
    target: str
    relation: str


@dataclass
class KnowledgeGraph:
    nodes: list[Node] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)


class GraphExtractor(Protocol):
    """Extracts technical entities and relations from text."""

    def extract_entities(self, text: str) -> KnowledgeGraph: ...


class WorkerError(RuntimeError):
    """Raised when a task cannot be leased or executed."""


class _Chunk(NamedTuple):
    id: int
    index: int
    text: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _rfc3339(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_rfc3339(value: object) -> datetime | None:
    if value is None:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


@contextmanager
def _transaction(db: sqlite3.Connection) -> Iterator[None]:
    if not db.in_transaction:
        db.execute("BEGIN IMMEDIATE")
    try:
        yield
    except BaseException:
        db.rollback()
        raise
    else:
        db.commit()


def _is_context_length_error(exc: BaseException) -> bool:
    return _CONTEXT_LENGTH_MARKER in str(exc).lower()


class Worker:
    """Processes ``embed`` and ``graph_extract`` tasks from the queue."""

    def __init__(
        self,
        db: sqlite3.Connection,
        embedder: Embedder | None = None,
        extractor: GraphExtractor | None = None,
        recorder: Recorder | None = None,
    ) -> None:
        self._db = db
        self.embedder = embedder
        self.graph_extractor = extractor
        self.recorder = recorder

    # -- queue -------------------------------------------------------------

    def lease_next_task(self) -> AsyncTask | None:
        """Lease the oldest runnable task for five minutes, or return ``None``.

        Pending tasks and tasks whose lease expired qualify while they have
        fewer than five attempts; leasing increments the attempt count.
        """
        now = _utcnow()
        try:
            with _transaction(self._db):
                rows = self._db.execute(
                    _LEASE_QUERY,
                    (_rfc3339(now + _LEASE_DURATION), _rfc3339(now), _rfc3339(now)),
                ).fetchall()
        except sqlite3.Error as exc:
            raise WorkerError(f"failed to lease task: {exc}") from exc
        if not rows:
            return None
        task_id, memory_id, task_type, status, attempts, last_error, leased_until = rows[0]
        return AsyncTask(
            id=task_id,
            memory_id=memory_id,
            task_type=task_type,
            status=status,
            attempt_count=attempts,
            last_error=last_error,
            leased_until=_parse_rfc3339(leased_until),
        )

    # -- execution ---------------------------------------------------------

    def execute_task(self, task: AsyncTask) -> None:
        """Run ``task`` and mark it completed; raises :class:`WorkerError` on failure."""
        rec = self._active_recorder()
        trace = TraceContext()
        if rec is not None:
            with suppress(Exception):
                trace = rec.start_trace(
                    StartTraceArgs(
                        trace_kind="worker_task",
                        component="worker",
                        operation="execute_task",
                        task_id=task.id,
                        task_type=task.task_type,
                        memory_id=task.memory_id,
                        started_at=_utcnow(),
                    )
                )
        try:
            self._run(task, rec, trace)
        except WorkerError:
            raise
        except Exception as exc:
            if rec is not None:
                self._fail_trace(rec, trace, task, "execute_task", f"panic: {exc}")
            raise

    def _run(self, task: AsyncTask, rec: Recorder | None, trace: TraceContext) -> None:
        started = _utcnow()
        error: str | None = None
        content = ""
        try:
            row = self._db.execute(
                "SELECT raw_content FROM memories WHERE id = ?", (task.memory_id,)
            ).fetchone()
            if row is None:
                error = f"memory {task.memory_id} not found"
            else:
                content = row[0]
        except sqlite3.Error as exc:
            error = str(exc)
        if rec is not None:
            self._record_span(
                rec,
                trace,
                "execute_task",
                "load_memory",
                started,
                SpanResult(
                    status="error" if error else "ok",
                    error_message=error or "",
                    rows_read=1,
                    ended_at=_utcnow(),
                ),
            )
        if error is not None:
            if rec is not None:
                self._fail_trace(rec, trace, task, "load_memory", error)
            raise WorkerError(f"failed to get memory content: {error}")

        if task.task_type == "embed":
            self._embed(task, rec, trace)
        elif task.task_type == "graph_extract":
            self._extract_graph(task, content, rec, trace)

        completion_error: sqlite3.Error | None = None
        try:
            with _transaction(self._db):
                self._db.execute(
                    "UPDATE async_tasks SET status = 'completed', completed_at = ? WHERE id = ?",
                    (_rfc3339(_utcnow()), task.id),
                )
        except sqlite3.Error as exc:
            completion_error = exc
        if rec is not None:
            if completion_error is not None:
                self._fail_trace(rec, trace, task, "complete_task", str(completion_error))
            else:
                with suppress(Exception):
                    rec.finish_trace(trace, TraceResult(status="ok", ended_at=_utcnow()))
        if completion_error is not None:
            raise WorkerError(f"failed to complete task: {completion_error}") from completion_error

    # -- embedding ---------------------------------------------------------

    def _embed(self, task: AsyncTask, rec: Recorder | None, trace: TraceContext) -> None:
        started = _utcnow()
        load_error: sqlite3.Error | None = None
        chunks: list[_Chunk] = []
        try:
            chunks = self._load_chunks(task.memory_id)
        except sqlite3.Error as exc:
            load_error = exc
        if rec is not None:
            self._record_span(
                rec,
                trace,
                "embed",
                "load_chunks",
                started,
                SpanResult(
                    status="error" if load_error else "ok",
                    error_message=str(load_error) if load_error else "",
                    rows_read=len(chunks),
                    ended_at=_utcnow(),
                ),
            )
        if load_error is not None:
            if rec is not None:
                self._fail_trace(rec, trace, task, "load_chunks", str(load_error))
            raise WorkerError(f"failed to get chunks: {load_error}") from load_error

        if self.embedder is None:
            raise WorkerError("no embedder configured")

        embed_started = _utcnow()
        position = 0
        while position < len(chunks):
            chunk = chunks[position]
            try:
                vector = self.embedder.generate_vector(chunk.text)
            except Exception as exc:
                if _is_context_length_error(exc) and self._rechunk(
                    task.memory_id, chunk.id, chunk.index, chunk.text
                ):
                    try:
                        chunks = self._load_chunks(task.memory_id)
                    except sqlite3.Error as reload_exc:
                        raise WorkerError(
                            f"failed to reload rechunked memory: {reload_exc}"
                        ) from reload_exc
                    position = 0
                    continue
                raise WorkerError(f"failed to generate vector: {exc}") from exc

            try:
                blob = serialize_float32(vector)
            except (struct.error, TypeError) as exc:
                raise WorkerError(f"failed to serialize vector: {exc}") from exc

            try:
                with _transaction(self._db):
                    self._db.execute(
                        "INSERT OR REPLACE INTO memory_chunks_vec(chunk_id, embedding) VALUES(?, ?)",
                        (chunk.id, blob),
                    )
            except sqlite3.Error as exc:
                raise WorkerError(f"failed to insert vector: {exc}") from exc
            position += 1

        if rec is not None:
            self._record_span(
                rec,
                trace,
                "embed",
                "embed_and_persist_chunks",
                embed_started,
                SpanResult(
                    status="ok",
                    rows_read=len(chunks),
                    rows_written=len(chunks),
                    ended_at=_utcnow(),
                ),
            )

    def _load_chunks(self, memory_id: int) -> list[_Chunk]:
        rows = self._db.execute(
            "SELECT id, chunk_index, chunk_text FROM memory_chunks WHERE memory_id = ? ORDER BY chunk_index",
            (memory_id,),
        ).fetchall()
        return [_Chunk(*row) for row in rows]

    def _rechunk(self, memory_id: int, chunk_id: int, chunk_index: int, chunk_text: str) -> bool:
        """Split an oversized chunk in place, shifting later chunks; False if it cannot split."""
        sub_chunks = split(chunk_text, "note")
        if len(sub_chunks) <= 1:
            return False
        shift = len(sub_chunks) - 1
        try:
            with _transaction(self._db):
                following = self._db.execute(
                    """
                    SELECT id, chunk_index
                      FROM memory_chunks
                     WHERE memory_id = ? AND chunk_index > ?
                     ORDER BY chunk_index DESC
                    """,
                    (memory_id, chunk_index),
                ).fetchall()
                for following_id, following_index in following:
                    self._db.execute(
                        "UPDATE memory_chunks SET chunk_index = ? WHERE id = ?",
                        (following_index + shift, following_id),
                    )
                head = sub_chunks[0]
                self._db.execute(
                    "UPDATE memory_chunks SET chunk_text = ?, token_estimate = ? WHERE id = ?",
                    (head, estimate_tokens(head), chunk_id),
                )
                self._db.executemany(
                    """
                    INSERT INTO memory_chunks(memory_id, chunk_index, chunk_text, token_estimate)
                    VALUES(?, ?, ?, ?)
                    """,
                    [
                        (memory_id, chunk_index + offset, text, estimate_tokens(text))
                        for offset, text in enumerate(sub_chunks[1:], start=1)
                    ],
                )
        except sqlite3.Error as exc:
            raise WorkerError(f"failed to rechunk oversized chunk: {exc}") from exc
        return True

    # -- graph extraction --------------------------------------------------

    def _extract_graph(
        self, task: AsyncTask, content: str, rec: Recorder | None, trace: TraceContext
    ) -> None:
        started = _utcnow()
        if self.graph_extractor is None:
            raise WorkerError("no graph extractor configured")
        try:
            kg = self.graph_extractor.extract_entities(content)
        except Exception as exc:
            if rec is not None:
                self._record_span(
                    rec,
                    trace,
                    "graph_extract",
                    "extract_graph",
                    started,
                    SpanResult(status="error", error_message=str(exc), ended_at=_utcnow()),
                )
                self._fail_trace(rec, trace, task, "graph_extract", str(exc))
            raise WorkerError(f"failed to extract entities: {exc}") from exc

        # First pass: insert every node so edges can resolve their endpoints.
        node_ids: dict[str, int] = {}
        for node in kg.nodes:
            node_type = canonicalize_type(node.type)
            if node_type not in _ALLOWED_NODE_TYPES:
                continue
            canonical, display = canonicalize_name(node.name)
            if not canonical:
                continue
            node_id = self._upsert_node(node_type, canonical, display)
            node_ids[node.name.strip().lower()] = node_id
            node_ids[canonical] = node_id

        # Second pass: relations, deferring those whose endpoints are unknown.
        for edge in kg.edges:
            relation = canonicalize_type(edge.relation)
            if relation not in _ALLOWED_RELATIONS:
                continue
            source_id = self._resolve_node(node_ids, edge.source)
            target_id = self._resolve_node(node_ids, edge.target)
            if source_id and target_id:
                try:
                    with _transaction(self._db):
                        self._db.execute(
                            """
                            INSERT OR IGNORE INTO kg_edge_evidence(source_node_id, target_node_id, relation_type, memory_id)
                            VALUES(?, ?, ?, ?)
                            """,
                            (source_id, target_id, relation, task.memory_id),
                        )
                except sqlite3.Error as exc:
                    _log.error("failed to store relation: %s", exc)
                continue
            try:
                self._defer_unresolved_edge(edge, relation, task.memory_id)
            except sqlite3.Error as exc:
                _log.error("failed to store pending relation: %s", exc)
            else:
                _log.info(
                    "pending relation: source(%s:%s), target(%s:%s)",
                    edge.source,
                    bool(source_id),
                    edge.target,
                    bool(target_id),
                )

        try:
            self._reconcile_unresolved_edges()
        except sqlite3.Error as exc:
            if rec is not None:
                self._fail_trace(rec, trace, task, "graph_extract", str(exc))
            raise WorkerError(f"failed to reconcile unresolved graph edges: {exc}") from exc

        if rec is not None:
            self._record_span(
                rec,
                trace,
                "graph_extract",
                "extract_and_persist_graph",
                started,
                SpanResult(
                    status="ok",
                    rows_written=len(kg.nodes) + len(kg.edges),
                    ended_at=_utcnow(),
                ),
            )

    def _upsert_node(self, node_type: str, canonical: str, display: str) -> int:
        try:
            with _transaction(self._db):
                rows = self._db.execute(
                    """
                    INSERT INTO kg_nodes(type, canonical_name, display_name)
                    VALUES(?, ?, ?)
                    ON CONFLICT(type, canonical_name)
                    DO UPDATE SET display_name = excluded.display_name
                    RETURNING id
                    """,
                    (node_type, canonical, display),
                ).fetchall()
            return rows[0][0]
        except sqlite3.Error:
            with suppress(sqlite3.Error), _transaction(self._db):
                self._db.execute(
                    "INSERT OR IGNORE INTO kg_nodes(type, canonical_name, display_name) VALUES(?, ?, ?)",
                    (node_type, canonical, display),
                )
            with suppress(sqlite3.Error):
                row = self._db.execute(
                    "SELECT id FROM kg_nodes WHERE type = ? AND canonical_name = ?",
                    (node_type, canonical),
                ).fetchone()
                if row is not None:
                    return row[0]
            return 0

    def _resolve_node(self, node_ids: dict[str, int], name: str) -> int | None:
        key = name.strip().lower()
        if key in node_ids:
            return node_ids[key]
        canonical, _ = canonicalize_name(name)
        try:
            row = self._db.execute(
                "SELECT id FROM kg_nodes WHERE canonical_name = ?", (canonical,)
            ).fetchone()
        except sqlite3.Error:
            return None
        if row is None or row[0] <= 0:
            return None
        return row[0]

    def _defer_unresolved_edge(self, edge: Edge, relation: str, memory_id: int) -> None:
        source_canonical, source_display = canonicalize_name(edge.source)
        target_canonical, target_display = canonicalize_name(edge.target)
        if not source_canonical or not target_canonical:
            return
        with _transaction(self._db):
            self._db.execute(
                """
                INSERT OR IGNORE INTO kg_unresolved_edges(
                    source_name, source_canonical, target_name, target_canonical, relation_type, memory_id
                )
                VALUES(?, ?, ?, ?, ?, ?)
                """,
                (
                    source_display,
                    source_canonical,
                    target_display,
                    target_canonical,
                    relation,
                    memory_id,
                ),
            )

    def _reconcile_unresolved_edges(self) -> None:
        with _transaction(self._db):
            self._db.execute(
                """
                INSERT OR IGNORE INTO kg_edge_evidence(source_node_id, target_node_id, relation_type, memory_id)
                SELECT source.id, target.id, unresolved.relation_type, unresolved.memory_id
                  FROM kg_unresolved_edges unresolved
                  JOIN kg_nodes source ON source.canonical_name = unresolved.source_canonical
                  JOIN kg_nodes target ON target.canonical_name = unresolved.target_canonical
                """
            )
            self._db.execute(
                """
                DELETE FROM kg_unresolved_edges
                 WHERE id IN (
                    SELECT unresolved.id
                      FROM kg_unresolved_edges unresolved
                      JOIN kg_nodes source ON source.canonical_name = unresolved.source_canonical
                      JOIN kg_nodes target ON target.canonical_name = unresolved.target_canonical
                 )
                """
            )

    # -- observability -----------------------------------------------------

    def _active_recorder(self) -> Recorder | None:
        rec = self.recorder
        if rec is not None and rec.enabled():
            return rec
        return None

    @staticmethod
    def _record_span(
        rec: Recorder,
        trace: TraceContext,
        operation: str,
        stage: str,
        started: datetime,
        result: SpanResult,
    ) -> None:
        with suppress(Exception):
            span = rec.start_span(
                StartSpanArgs(
                    trace_id=trace.trace_id,
                    component="worker",
                    operation=operation,
                    stage_name=stage,
                    started_at=started,
                )
            )
            rec.finish_span(span, result)

    @staticmethod
    def _fail_trace(
        rec: Recorder, trace: TraceContext, task: AsyncTask, operation: str, message: str
    ) -> None:
        with suppress(Exception):
            rec.record_error(
                ErrorEvent(
                    trace_id=trace.trace_id,
                    component="worker",
                    operation=operation,
                    task_id=task.id,
                    task_type=task.task_type,
                    memory_id=task.memory_id,
                    severity="error",
                    message=message,
                )
            )
        with suppress(Exception):
            rec.finish_trace(
                trace, TraceResult(status="error", error_message=message, ended_at=_utcnow())
            )