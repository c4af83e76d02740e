"""SQLite storage: connection setup, schema and vector serialisation."""

from __future__ import annotations

import math
import os
import sqlite3
import struct
from typing import Iterable, Iterator, Sequence

__all__ = [
    "EMBEDDING_DIM",
    "StorageError",
    "init_db",
    "serialize_float32",
    "deserialize_float32",
]

EMBEDDING_DIM = 768
"""Fixed dimension of the stored chunk embeddings."""

_MAX_VARIABLES = 32766
_BUSY_TIMEOUT_SECONDS = 5.0


class StorageError(RuntimeError):
    """Raised when the database cannot be opened or prepared."""


# --- schema building blocks -------------------------------------------------

_PK = "id INTEGER PRIMARY KEY AUTOINCREMENT"
_UTC_NOW = "(strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))"

_STATUSES = ("ok", "error", "cancelled", "timeout")
_TRACE_KINDS = ("mcp_request", "worker_task", "maintenance")
_OBS_LEVELS = ("off", "basic", "debug", "trace")
_BUCKETS = ("minute", "hour", "day")
_EVENT_KINDS = ("error", "slow_operation", "state_transition", "diagnostic")
_SEVERITIES = ("debug", "info", "warn", "error")
_SCOPES = ("events", "traces", "spans", "rollups")
_ROLLUP_JOBS = ("raw_to_minute", "minute_to_hour", "hour_to_day", "retention_cleanup")
_JOB_STATUSES = ("idle", "running", "ok", "error")


def _one_of(column: str, values: Sequence[object]) -> str:
    listed = ", ".join(f"'{v}'" if isinstance(v, str) else str(v) for v in values)
    return f"CHECK ({column} IN ({listed}))"


def _local_ts(column: str) -> str:
    return f"{column} DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP"


def _utc_ts(column: str) -> str:
    return f"{column} TEXT NOT NULL DEFAULT {_UTC_NOW}"


def _required(column: str, kind: str = "TEXT") -> str:
    return f"{column} {kind} NOT NULL"


def _counter(column: str) -> str:
    return f"{column} INTEGER NOT NULL DEFAULT 0"


def _fk(column: str, table: str, ref: str = "id", on_delete: str | None = None) -> str:
    clause = f"FOREIGN KEY({column}) REFERENCES {table}({ref})"
    return f"{clause} ON DELETE {on_delete}" if on_delete else clause


_TABLES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("system_config", ("key TEXT PRIMARY KEY", _required("value"))),
    (
        "memories",
        (
            _PK,
            _required("raw_content"),
            _required("content_hash"),
            "source_type TEXT NOT NULL DEFAULT 'manual'",
            "project TEXT",
            _local_ts("created_at"),
            _local_ts("updated_at"),
            "superseded_by INTEGER DEFAULT NULL",
            "status TEXT NOT NULL DEFAULT 'active'",
            _fk("superseded_by", "memories"),
        ),
    ),
    (
        "memory_chunks",
        (
            _PK,
            _required("memory_id", "INTEGER"),
            _required("chunk_index", "INTEGER"),
            _required("chunk_text"),
            "token_estimate INTEGER",
            _local_ts("created_at"),
            "UNIQUE(memory_id, chunk_index)",
            _fk("memory_id", "memories", on_delete="CASCADE"),
        ),
    ),
    # Chunk embeddings: little-endian float32 blobs keyed by chunk id.
    # Nearest-neighbour ordering uses the vec_distance_l2() SQL function.
    (
        "memory_chunks_vec",
        (
            "chunk_id INTEGER PRIMARY KEY",
            f"embedding BLOB NOT NULL CHECK (length(embedding) = {EMBEDDING_DIM * 4})",
        ),
    ),
    (
        "async_tasks",
        (
            _PK,
            _required("memory_id", "INTEGER"),
            _required("task_type"),
            "status TEXT NOT NULL DEFAULT 'pending'",
            _counter("attempt_count"),
            "last_error TEXT DEFAULT NULL",
            "leased_until DATETIME DEFAULT NULL",
            _local_ts("created_at"),
            _local_ts("updated_at"),
            "completed_at DATETIME DEFAULT NULL",
            "UNIQUE(memory_id, task_type)",
            _fk("memory_id", "memories", on_delete="CASCADE"),
        ),
    ),
    (
        "kg_nodes",
        (
            _PK,
            _required("type"),
            _required("canonical_name"),
            _required("display_name"),
            _local_ts("created_at"),
            "UNIQUE(type, canonical_name)",
        ),
    ),
    (
        "kg_edge_evidence",
        (
            _PK,
            _required("source_node_id", "INTEGER"),
            _required("target_node_id", "INTEGER"),
            _required("relation_type"),
            _required("memory_id", "INTEGER"),
            _local_ts("created_at"),
            "UNIQUE(source_node_id, target_node_id, relation_type, memory_id)",
            _fk("source_node_id", "kg_nodes"),
            _fk("target_node_id", "kg_nodes"),
            _fk("memory_id", "memories", on_delete="CASCADE"),
        ),
    ),
    # Edges whose endpoints did not exist yet when extracted; reconciled later.
    (
        "kg_unresolved_edges",
        (
            _PK,
            _required("source_name"),
            _required("source_canonical"),
            _required("target_name"),
            _required("target_canonical"),
            _required("relation_type"),
            _required("memory_id", "INTEGER"),
            _local_ts("created_at"),
            "UNIQUE(source_canonical, target_canonical, relation_type, memory_id)",
            _fk("memory_id", "memories", on_delete="CASCADE"),
        ),
    ),
    (
        "obs_traces",
        (
            _PK,
            "trace_id TEXT NOT NULL UNIQUE",
            f"{_required('trace_kind')} {_one_of('trace_kind', _TRACE_KINDS)}",
            "parent_trace_id TEXT",
            "request_id TEXT",
            "tool_name TEXT",
            "task_id INTEGER",
            "task_type TEXT",
            "memory_id INTEGER",
            _required("component"),
            _required("operation_name"),
            f"{_required('status')} {_one_of('status', _STATUSES)}",
            f"{_required('obs_level')} {_one_of('obs_level', _OBS_LEVELS)}",
            f"{_counter('sampled')} {_one_of('sampled', (0, 1))}",
            _required("started_at_utc"),
            _required("ended_at_utc"),
            f"{_counter('duration_us')} CHECK (duration_us >= 0)",
            "error_code TEXT",
            "error_message TEXT",
            "meta_json TEXT",
            _utc_ts("created_at_utc"),
        ),
    ),
    (
        "obs_spans",
        (
            _PK,
            _required("trace_id"),
            _required("span_id"),
            "parent_span_id TEXT",
            _required("component"),
            _required("operation_name"),
            _required("stage_name"),
            f"{_required('status')} {_one_of('status', _STATUSES)}",
            _required("started_at_utc"),
            _required("ended_at_utc"),
            f"{_counter('duration_us')} CHECK (duration_us >= 0)",
            "queue_delay_us INTEGER",
            "rows_read INTEGER",
            "rows_written INTEGER",
            "bytes_in INTEGER",
            "bytes_out INTEGER",
            "error_code TEXT",
            "error_message TEXT",
            "meta_json TEXT",
            _utc_ts("created_at_utc"),
            "UNIQUE(trace_id, span_id)",
            _fk("trace_id", "obs_traces", "trace_id", on_delete="CASCADE"),
        ),
    ),
    (
        "obs_events",
        (
            _PK,
            "trace_id TEXT",
            "span_id TEXT",
            f"{_required('event_kind')} {_one_of('event_kind', _EVENT_KINDS)}",
            _required("component"),
            _required("operation_name"),
            "tool_name TEXT",
            "task_id INTEGER",
            "task_type TEXT",
            "memory_id INTEGER",
            f"{_required('severity')} {_one_of('severity', _SEVERITIES)}",
            "threshold_us INTEGER",
            "observed_us INTEGER",
            _required("message"),
            "details_json TEXT",
            _utc_ts("created_at_utc"),
            _fk("trace_id", "obs_traces", "trace_id", on_delete="SET NULL"),
        ),
    ),
    (
        "obs_metric_rollups",
        (
            _PK,
            f"{_required('bucket_level')} {_one_of('bucket_level', _BUCKETS)}",
            _required("bucket_start_utc"),
            _required("component"),
            _required("operation_name"),
            "tool_name TEXT",
            "task_type TEXT",
            f"{_required('trace_kind')} {_one_of('trace_kind', _TRACE_KINDS)}",
            *(
                _counter(name)
                for name in (
                    "total_count",
                    "success_count",
                    "error_count",
                    "slow_count",
                    "sampled_count",
                    "duration_total_us",
                    "duration_max_us",
                )
            ),
            *(f"{name} INTEGER" for name in ("p50_us", "p95_us", "p99_us")),
            *(
                _counter(name)
                for name in (
                    "queue_delay_total_us",
                    "bytes_in_total",
                    "bytes_out_total",
                    "rows_read_total",
                    "rows_written_total",
                )
            ),
            "last_source_event_at_utc TEXT",
            _utc_ts("created_at_utc"),
            _utc_ts("updated_at_utc"),
        ),
    ),
    (
        "obs_retention_policies",
        (
            _PK,
            "policy_name TEXT NOT NULL UNIQUE",
            f"{_required('scope_kind')} {_one_of('scope_kind', _SCOPES)}",
            f"bucket_level TEXT {_one_of('bucket_level', _BUCKETS)}",
            f"{_required('keep_days', 'INTEGER')} CHECK (keep_days >= 0)",
            "sample_rate REAL CHECK (sample_rate IS NULL OR "
            "(sample_rate >= 0.0 AND sample_rate <= 1.0))",
            "slow_threshold_us INTEGER",
            f"enabled INTEGER NOT NULL DEFAULT 1 {_one_of('enabled', (0, 1))}",
            _utc_ts("updated_at_utc"),
        ),
    ),
    (
        "obs_rollup_jobs",
        (
            _PK,
            "job_name TEXT NOT NULL UNIQUE",
            f"{_required('source_scope')} {_one_of('source_scope', _ROLLUP_JOBS)}",
            "last_completed_bucket_start_utc TEXT",
            "last_run_started_at_utc TEXT",
            "last_run_finished_at_utc TEXT",
            f"last_status TEXT NOT NULL DEFAULT 'idle' {_one_of('last_status', _JOB_STATUSES)}",
            "last_error TEXT",
            _utc_ts("updated_at_utc"),
        ),
    ),
)

# (name, table, indexed expressions, unique, partial-index condition)
_INDEXES: tuple[tuple[str, str, str, bool, str | None], ...] = (
    ("idx_memories_active_hash", "memories", "content_hash", True, "status = 'active'"),
    ("idx_memories_status", "memories", "status", False, None),
    ("idx_memories_superseded_by", "memories", "superseded_by", False, None),
    ("idx_memories_project", "memories", "project", False, None),
    ("idx_memories_source_type_created", "memories", "source_type, created_at DESC", False, None),
    ("idx_memory_chunks_memory_id", "memory_chunks", "memory_id", False, None),
    ("idx_async_tasks_status_lease", "async_tasks", "status, leased_until", False, None),
    ("idx_kg_nodes_canonical", "kg_nodes", "canonical_name", False, None),
    ("idx_edge_source", "kg_edge_evidence", "source_node_id", False, None),
    ("idx_edge_target", "kg_edge_evidence", "target_node_id", False, None),
    ("idx_edge_memory", "kg_edge_evidence", "memory_id", False, None),
    ("idx_unresolved_edges_source", "kg_unresolved_edges", "source_canonical", False, None),
    ("idx_unresolved_edges_target", "kg_unresolved_edges", "target_canonical", False, None),
    ("idx_unresolved_edges_memory", "kg_unresolved_edges", "memory_id", False, None),
    ("idx_obs_traces_started_at", "obs_traces", "started_at_utc", False, None),
    ("idx_obs_traces_kind_started", "obs_traces", "trace_kind, started_at_utc", False, None),
    ("idx_obs_traces_tool_started", "obs_traces", "tool_name, started_at_utc", False, None),
    ("idx_obs_traces_task_started", "obs_traces", "task_type, started_at_utc", False, None),
    ("idx_obs_traces_status_started", "obs_traces", "status, started_at_utc", False, None),
    ("idx_obs_spans_trace_started", "obs_spans", "trace_id, started_at_utc", False, None),
    (
        "idx_obs_spans_component_stage",
        "obs_spans",
        "component, stage_name, started_at_utc",
        False,
        None,
    ),
    ("idx_obs_spans_duration", "obs_spans", "duration_us, started_at_utc", False, None),
    ("idx_obs_events_created", "obs_events", "created_at_utc", False, None),
    ("idx_obs_events_kind_created", "obs_events", "event_kind, created_at_utc", False, None),
    ("idx_obs_events_component_created", "obs_events", "component, created_at_utc", False, None),
    ("idx_obs_events_tool_created", "obs_events", "tool_name, created_at_utc", False, None),
    ("idx_obs_events_task_created", "obs_events", "task_type, created_at_utc", False, None),
    ("idx_obs_events_trace", "obs_events", "trace_id, created_at_utc", False, None),
    (
        "idx_obs_metric_rollups_dims",
        "obs_metric_rollups",
        "bucket_level, bucket_start_utc, component, operation_name, "
        "ifnull(tool_name, ''), ifnull(task_type, ''), trace_kind",
        True,
        None,
    ),
)

_FTS_ADD = "INSERT INTO memory_chunks_fts(rowid, chunk_text) VALUES (new.id, new.chunk_text)"
_FTS_REMOVE = (
    "INSERT INTO memory_chunks_fts(memory_chunks_fts, rowid, chunk_text) "
    "VALUES ('delete', old.id, old.chunk_text)"
)

# Keep the full-text index in step with every change to memory_chunks.
_FTS_TRIGGERS: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("memory_chunks_ai", "INSERT", (_FTS_ADD,)),
    ("memory_chunks_ad", "DELETE", (_FTS_REMOVE,)),
    ("memory_chunks_au", "UPDATE", (_FTS_REMOVE, _FTS_ADD)),
)

_EVENT_VIEW_COLUMNS = ("created_at_utc", "component", "operation_name", "tool_name", "task_type")
_VIEWS: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    (
        "obs_recent_slow_operations",
        "slow_operation",
        (*_EVENT_VIEW_COLUMNS, "observed_us", "threshold_us", "message", "trace_id"),
    ),
    (
        "obs_error_events",
        "error",
        (*_EVENT_VIEW_COLUMNS, "severity", "message", "details_json", "trace_id"),
    ),
)

# (policy_name, scope_kind, bucket_level, keep_days, sample_rate, slow_threshold_us, enabled)
_DEFAULT_POLICIES = (
    ("raw-traces-default", "traces", None, 7, 0.10, None, 1),
    ("raw-spans-default", "spans", None, 7, 0.10, None, 1),
    ("raw-events-default", "events", None, 14, 1.0, 100000, 1),
    ("minute-rollups-default", "rollups", "minute", 7, None, None, 1),
    ("hour-rollups-default", "rollups", "hour", 30, None, None, 1),
    ("day-rollups-default", "rollups", "day", 365, None, None, 1),
)


def _schema_statements() -> Iterator[str]:
    for name, columns in _TABLES:
        yield f"CREATE TABLE IF NOT EXISTS {name} ({', '.join(columns)})"
        if name == "memory_chunks":
            yield (
                "CREATE VIRTUAL TABLE IF NOT EXISTS memory_chunks_fts USING fts5("
                "chunk_text, content='memory_chunks', content_rowid='id', "
                "tokenize='unicode61 remove_diacritics 2')"
            )
            for trigger, event, actions in _FTS_TRIGGERS:
                body = " ".join(f"{action};" for action in actions)
                yield (
                    f"CREATE TRIGGER IF NOT EXISTS {trigger} AFTER {event} "
                    f"ON memory_chunks BEGIN {body} END"
                )
    for name, table, expressions, unique, where in _INDEXES:
        kind = "UNIQUE INDEX" if unique else "INDEX"
        statement = f"CREATE {kind} IF NOT EXISTS {name} ON {table}({expressions})"
        yield f"{statement} WHERE {where}" if where else statement
    for name, kind, columns in _VIEWS:
        selected = ", ".join(f"e.{column}" for column in columns)
        yield (
            f"CREATE VIEW IF NOT EXISTS {name} AS SELECT {selected} "
            f"FROM obs_events e WHERE e.event_kind = '{kind}'"
        )


_SCHEMA = "".join(f"{statement};\n" for statement in _schema_statements())


def _seed_defaults(conn: sqlite3.Connection) -> None:
    with conn:
        conn.executemany(
            "INSERT OR IGNORE INTO obs_retention_policies(policy_name, scope_kind, "
            "bucket_level, keep_days, sample_rate, slow_threshold_us, enabled) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            _DEFAULT_POLICIES,
        )
        conn.executemany(
            "INSERT OR IGNORE INTO obs_rollup_jobs(job_name, source_scope, last_status) "
            "VALUES (?, ?, 'idle')",
            [(job, job) for job in _ROLLUP_JOBS],
        )


# --- vectors ----------------------------------------------------------------


def serialize_float32(vector: Iterable[float]) -> bytes:
    """Pack floats as a contiguous little-endian float32 blob."""
    values = list(vector)
    return struct.pack(f"<{len(values)}f", *values)


def deserialize_float32(blob: bytes) -> list[float]:
    """Unpack a little-endian float32 blob into a list of floats."""
    data = bytes(blob)
    if len(data) % 4:
        raise ValueError(f"vector blob length {len(data)} is not a multiple of 4")
    return list(struct.unpack(f"<{len(data) // 4}f", data))


def _distance_l2(left: bytes | None, right: bytes | None) -> float | None:
    if left is None or right is None:
        return None
    a: Sequence[float] = deserialize_float32(left)
    b: Sequence[float] = deserialize_float32(right)
    if len(a) != len(b):
        raise ValueError(f"vector dimension mismatch: {len(a)} != {len(b)}")
    return math.sqrt(sum((x - y) ** 2 for x, y in zip(a, b)))


# --- connection -------------------------------------------------------------


def _project_column_exists(conn: sqlite3.Connection) -> bool:
    try:
        row = conn.execute(
            "SELECT count(*) FROM pragma_table_info('memories') WHERE name = 'project'"
        ).fetchone()
        return bool(row and row[0])
    except sqlite3.Error:
        try:
            return any(row[1] == "project" for row in conn.execute("PRAGMA table_info(memories)"))
        except sqlite3.Error:
            return False


def _prepare(conn: sqlite3.Connection) -> None:
    setlimit = getattr(conn, "setlimit", None)
    limit_id = getattr(sqlite3, "SQLITE_LIMIT_VARIABLE_NUMBER", None)
    if setlimit is not None and limit_id is not None:
        setlimit(limit_id, _MAX_VARIABLES)

    conn.create_function("vec_distance_l2", 2, _distance_l2, deterministic=True)

    for pragma in (
        "PRAGMA journal_mode = WAL",
        f"PRAGMA busy_timeout = {int(_BUSY_TIMEOUT_SECONDS * 1000)}",
        "PRAGMA foreign_keys = ON",
    ):
        try:
            conn.execute(pragma)
        except sqlite3.Error as exc:
            raise StorageError(f"failed to set pragma: {exc}") from exc

    if not _project_column_exists(conn):
        try:
            conn.execute("ALTER TABLE memories ADD COLUMN project TEXT")
        except sqlite3.OperationalError:
            pass  # table not created yet; the schema below includes the column

    try:
        conn.executescript(_SCHEMA)
        _seed_defaults(conn)
    except sqlite3.Error as exc:
        raise StorageError(f"failed to apply schema: {exc}") from exc


def init_db(path: str | os.PathLike[str]) -> sqlite3.Connection:
    """Open (creating if needed) the database at ``path`` and apply the schema.

    Transactions begin with ``BEGIN IMMEDIATE`` so concurrent writers
    serialise on the write lock instead of colliding at commit.
    """
    try:
        conn = sqlite3.connect(
            os.fspath(path),
            timeout=_BUSY_TIMEOUT_SECONDS,
            isolation_level="IMMEDIATE",
            check_same_thread=False,
        )
    except sqlite3.Error as exc:
        raise StorageError(f"failed to open database: {exc}") from exc
    try:
        _prepare(conn)
    except BaseException:
        conn.close()
        raise
    return conn