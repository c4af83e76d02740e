"""Storing memory documents: dedup, supersedence, chunking and task queueing."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from hsme.chunking import compute_hash, estimate_tokens, split

__all__ = ["DuplicateContentError", "store_context"]

_TASK_TYPES = ("embed", "graph_extract")


class DuplicateContentError(ValueError):
    """Raised when forced re-ingestion does not supersede the existing copy."""


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")


@contextmanager
def _immediate_transaction(db: sqlite3.Connection) -> Iterator[None]:
    if not db.in_transaction:
        db.execute("BEGIN IMMEDIATE")
    try:
        yield
    except BaseException:
        db.rollback()
        raise
    else:
        db.commit()


def store_context(
    db: sqlite3.Connection,
    content: str,
    source_type: str = "manual",
    project: str = "",
    supersedes_id: int | None = None,
    force_reingest: bool = False,
) -> int:
    """Store ``content`` as a memory and return its id.

    Identical active content is deduplicated and its id returned, unless
    ``force_reingest`` is set; then ``supersedes_id`` must name the existing
    memory, otherwise :class:`DuplicateContentError` is raised.
    """
    content_hash = compute_hash(content)

    # The write lock is taken before the dedup check so concurrent callers
    # storing the same content serialise instead of racing on the index.
    with _immediate_transaction(db):
        row = db.execute(
            "SELECT id FROM memories WHERE content_hash = ? AND status = 'active'",
            (content_hash,),
        ).fetchone()
        if row is not None:
            existing_id = row[0]
            if not force_reingest:
                return existing_id
            if supersedes_id != existing_id:
                raise DuplicateContentError(
                    "DUPLICATE_CONTENT: hash exists and supersedes_memory_id does not match"
                )

        if supersedes_id is not None:
            db.execute(
                "UPDATE memories SET status = 'superseded', updated_at = ? WHERE id = ?",
                (_now(), supersedes_id),
            )

        now = _now()
        cursor = db.execute(
            """
            INSERT INTO memories (raw_content, content_hash, source_type, project, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, 'active', ?, ?)
            """,
            (content, content_hash, source_type, project, now, now),
        )
        memory_id = cursor.lastrowid

        if supersedes_id is not None:
            db.execute(
                "UPDATE memories SET superseded_by = ? WHERE id = ?",
                (memory_id, supersedes_id),
            )

        db.executemany(
            """
            INSERT INTO memory_chunks (memory_id, chunk_index, chunk_text, token_estimate)
            VALUES (?, ?, ?, ?)
            """,
            [
                (memory_id, index, text, estimate_tokens(text))
                for index, text in enumerate(split(content, source_type))
            ],
        )

        db.executemany(
            "INSERT INTO async_tasks (memory_id, task_type, status) VALUES (?, ?, 'pending')",
            [(memory_id, task_type) for task_type in _TASK_TYPES],
        )

    return memory_id