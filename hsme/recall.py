"""Chronological recall of recent session summaries."""

from __future__ import annotations

import sqlite3

from hsme.results import ChunkHighlight, MemorySearchResult

__all__ = ["DEFAULT_RECALL_LIMIT", "MAX_RECALL_LIMIT", "recall_recent_session"]

DEFAULT_RECALL_LIMIT = 5
MAX_RECALL_LIMIT = 50


def recall_recent_session(
    db: sqlite3.Connection, limit: int = DEFAULT_RECALL_LIMIT, project: str = ""
) -> list[MemorySearchResult]:
    """Return the newest active session summaries, newest first.

    ``limit`` defaults to 5 when not positive and is capped at 50. Each result
    carries the full memory text as its single highlight.
    """
    if limit <= 0:
        limit = DEFAULT_RECALL_LIMIT
    limit = min(limit, MAX_RECALL_LIMIT)

    clauses = [
        "source_type = 'session_summary'",
        "status = 'active'",
        "superseded_by IS NULL",
    ]
    params: list[object] = []
    if project:
        clauses.append("project = ?")
        params.append(project)
    params.append(limit)

    rows = db.execute(
        f"""
        SELECT id, raw_content
          FROM memories
         WHERE {' AND '.join(clauses)}
         ORDER BY created_at DESC, id DESC
         LIMIT ?
        """,
        params,
    ).fetchall()

    return [
        MemorySearchResult(
            memory_id=memory_id,
            score=1.0,
            is_superseded=False,
            vector_coverage="none",
            highlights=[ChunkHighlight(chunk_id=memory_id, chunk_index=0, text=raw_content)],
        )
        for memory_id, raw_content in rows
    ]