"""Hybrid memory search: lexical (FTS5), vector, fused and exact-keyword lookups."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Protocol, Sequence, runtime_checkable

from hsme.decay import age_in_days, decay_factor, get_decay_config
from hsme.results import (
    ChunkHighlight,
    ExactMatchResult,
    MemorySearchResult,
    SearchResult,
    rrf,
)
from hsme.storage import serialize_float32

__all__ = [
    "Embedder",
    "fuzzy_search",
    "lexical_search",
    "vector_search",
    "exact_search",
]

_log = logging.getLogger(__name__)

_MAX_HIGHLIGHTS = 3
_SUBSTRING_SCORE = -0.0001
_RECENCY_MARKERS = ("latest", "recent", "last", "most recent", "today", "yesterday")
_STOP_WORDS = frozenset(
    {
        "what", "did", "we", "do", "the", "last", "latest", "recent", "most", "today",
        "yesterday", "about", "changes", "change", "made", "session", "sessions",
        "decision", "decisions", "bugfix", "bugfixes", "fix", "architecture", "note",
        "notes", "to", "in", "for", "and",
    }
)
_TERM_PUNCTUATION = str.maketrans({c: " " for c in "?,:;()"})


@runtime_checkable
class Embedder(Protocol):
    """Turns text into a fixed-size vector."""

    def generate_vector(self, text: str) -> Sequence[float]: ...

    def dimension(self) -> int: ...

    def model_id(self) -> str: ...


def _sanitize_fts(query: str) -> str:
    """Quote every word so FTS5 treats the query as plain terms."""
    return " ".join('"' + word.replace('"', '""') + '"' for word in query.split())


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _has_recency_intent(query: str) -> bool:
    lowered = query.lower()
    return any(marker in lowered for marker in _RECENCY_MARKERS)


def _topic_terms(query: str) -> list[str]:
    cleaned = query.lower().translate(_TERM_PUNCTUATION)
    return [
        word
        for word in cleaned.split()
        if len(word.encode("utf-8")) >= 3 and word not in _STOP_WORDS
    ]


def _inferred_source_types(query: str) -> list[str]:
    q = query.lower()
    if "session" in q:
        return ["session_summary"]
    if "bugfix" in q or " fix" in q or q.endswith("fix"):
        return ["bugfix"]
    if "decision" in q:
        return ["decision"]
    if "architecture" in q or "worker remediation" in q:
        return ["architecture"]
    if "schema" in q:
        return ["architecture", "bugfix", "decision"]
    return []


def _recency_candidates(
    db: sqlite3.Connection, query: str, limit: int, project: str
) -> list[tuple[int, int, int, str, str, float]]:
    """Newest matching memories as ``(memory_id, chunk_id, index, text, status, score)``."""
    if limit <= 0 or not _has_recency_intent(query):
        return []

    clauses = ["m.status = 'active'", "m.superseded_by IS NULL"]
    params: list[Any] = []
    if project:
        clauses.append("m.project = ?")
        params.append(project)
    source_types = _inferred_source_types(query)
    if source_types:
        clauses.append(f"m.source_type IN ({','.join('?' for _ in source_types)})")
        params.extend(source_types)
    for term in _topic_terms(query):
        clauses.append(
            "(lower(m.raw_content) LIKE ? OR lower(m.project) LIKE ? OR lower(m.source_type) LIKE ?)"
        )
        like = f"%{term}%"
        params.extend((like, like, like))
    params.append(limit)

    rows = db.execute(
        f"""
        SELECT m.id, c.id, c.chunk_index, c.chunk_text, m.status
          FROM memories m
          JOIN memory_chunks c ON c.memory_id = m.id
         WHERE {' AND '.join(clauses)}
           AND c.chunk_index = (SELECT MIN(c2.chunk_index) FROM memory_chunks c2 WHERE c2.memory_id = m.id)
         ORDER BY datetime(m.created_at) DESC, m.id DESC
         LIMIT ?
        """,
        params,
    ).fetchall()
    return [
        (memory_id, chunk_id, chunk_index, text, status, 1.0 - position * 0.001)
        for position, (memory_id, chunk_id, chunk_index, text, status) in enumerate(rows)
    ]


def _coverage(db: sqlite3.Connection, memory_ids: list[int]) -> dict[int, str]:
    if not memory_ids:
        return {}
    placeholders = ",".join("?" for _ in memory_ids)
    rows = db.execute(
        f"""
        SELECT c.memory_id, COUNT(c.id) AS total,
               SUM(CASE WHEN v.chunk_id IS NOT NULL THEN 1 ELSE 0 END) AS with_vec
          FROM memory_chunks c
          LEFT JOIN memory_chunks_vec v ON v.chunk_id = c.id
         WHERE c.memory_id IN ({placeholders})
         GROUP BY c.memory_id
        """,
        memory_ids,
    ).fetchall()
    coverage: dict[int, str] = {}
    for memory_id, total, with_vec in rows:
        with_vec = with_vec or 0
        if total > 0 and with_vec == total:
            coverage[memory_id] = "complete"
        elif with_vec > 0:
            coverage[memory_id] = "partial"
        else:
            coverage[memory_id] = "none"
    return coverage


def fuzzy_search(
    db: sqlite3.Connection,
    embedder: Embedder | None,
    query: str,
    limit: int = 10,
    project: str = "",
) -> list[MemorySearchResult]:
    """Fuse lexical and vector hits per memory, best score first, at most ``limit``.

    Embedding or vector failures are logged and the search falls back to
    lexical results only. Superseded memories have their score halved.
    """
    lexical = lexical_search(db, query, limit * 2, project)

    vector_results: list[SearchResult] = []
    vector_available = False
    if embedder is not None:
        try:
            vector = embedder.generate_vector(query)
        except Exception as exc:
            _log.warning("failed to embed search query: %s", exc)
        else:
            try:
                vector_results = vector_search(db, vector, limit * 2, project)
                vector_available = True
            except (sqlite3.Error, ValueError) as exc:
                _log.warning("vector search failed: %s", exc)
                vector_results = []

    fused = rrf(limit * 2, lexical, vector_results)
    if not fused:
        return []

    placeholders = ",".join("?" for _ in fused)
    chunk_by_id = {
        chunk_id: (memory_id, chunk_index, text, status, created_at)
        for chunk_id, memory_id, chunk_index, text, status, created_at in db.execute(
            f"""
            SELECT c.id, c.memory_id, c.chunk_index, c.chunk_text, m.status, m.created_at
              FROM memory_chunks c
              JOIN memories m ON m.id = c.memory_id
             WHERE c.id IN ({placeholders})
            """,
            [chunk.id for chunk in fused],
        )
    }

    scores: dict[int, float] = {}
    highlights: dict[int, list[ChunkHighlight]] = {}
    statuses: dict[int, str] = {}

    decay = get_decay_config()
    apply_decay = decay.enabled and _has_recency_intent(query)
    now = datetime.now(timezone.utc)

    def add_highlight(memory_id: int, highlight: ChunkHighlight) -> None:
        bucket = highlights.setdefault(memory_id, [])
        if len(bucket) < _MAX_HIGHLIGHTS:
            bucket.append(highlight)

    for chunk in fused:
        meta = chunk_by_id.get(chunk.id)
        if meta is None:
            continue
        memory_id, chunk_index, text, status, created_at = meta
        statuses[memory_id] = status
        score = chunk.score
        if apply_decay:
            age = age_in_days(now, _parse_timestamp(created_at))
            score *= decay_factor(age, decay.half_life_days)
        if score > scores.get(memory_id, 0.0):
            scores[memory_id] = score
        add_highlight(memory_id, ChunkHighlight(chunk.id, chunk_index, text))

    if apply_decay:
        for memory_id, chunk_id, chunk_index, text, status, score in _recency_candidates(
            db, query, limit, project
        ):
            statuses[memory_id] = status
            if score > scores.get(memory_id, 0.0):
                scores[memory_id] = score
            add_highlight(memory_id, ChunkHighlight(chunk_id, chunk_index, text))

    coverage_by_memory = _coverage(db, list(scores))

    results: list[MemorySearchResult] = []
    for memory_id, score in scores.items():
        superseded = statuses.get(memory_id) == "superseded"
        coverage = coverage_by_memory.get(memory_id, "none")
        # Stored vectors that could not be used this time only give lexical coverage.
        if coverage == "complete" and not vector_available:
            coverage = "partial"
        results.append(
            MemorySearchResult(
                memory_id=memory_id,
                score=score * 0.5 if superseded else score,
                is_superseded=superseded,
                vector_coverage=coverage,
                highlights=highlights.get(memory_id, []),
            )
        )

    results.sort(key=lambda result: result.score, reverse=True)
    return results[: max(limit, 0)]


def lexical_search(
    db: sqlite3.Connection, query: str, limit: int, project: str = ""
) -> list[SearchResult]:
    """Chunks matching every query word, ordered by FTS5 rank."""
    safe = _sanitize_fts(query)
    if not safe:
        return []
    if project:
        rows = db.execute(
            """
            SELECT f.rowid, f.rank
              FROM memory_chunks_fts f
              JOIN memory_chunks c ON c.id = f.rowid
              JOIN memories m ON m.id = c.memory_id
             WHERE f.chunk_text MATCH ? AND m.project = ?
             ORDER BY f.rank LIMIT ?
            """,
            (safe, project, limit),
        )
    else:
        rows = db.execute(
            "SELECT rowid, rank FROM memory_chunks_fts WHERE chunk_text MATCH ? ORDER BY rank LIMIT ?",
            (safe, limit),
        )
    return [SearchResult(id=chunk_id, score=float(rank)) for chunk_id, rank in rows]


def vector_search(
    db: sqlite3.Connection, vector: Sequence[float], limit: int, project: str = ""
) -> list[SearchResult]:
    """Nearest chunks by L2 distance to ``vector``, nearest first.

    With a project, ``limit * 10`` nearest candidates are taken and those
    outside the project dropped.
    """
    blob = serialize_float32(vector)
    knn = """
        SELECT chunk_id FROM memory_chunks_vec
         ORDER BY vec_distance_l2(embedding, ?), chunk_id
         LIMIT ?
    """
    if not project:
        return [SearchResult(id=row[0]) for row in db.execute(knn, (blob, limit))]

    candidates = [row[0] for row in db.execute(knn, (blob, limit * 10))]
    if not candidates:
        return []
    placeholders = ",".join("?" for _ in candidates)
    in_project = {
        row[0]
        for row in db.execute(
            f"""
            SELECT c.id
              FROM memory_chunks c
              JOIN memories m ON m.id = c.memory_id
             WHERE c.id IN ({placeholders}) AND m.project = ?
            """,
            [*candidates, project],
        )
    }
    return [SearchResult(id=chunk_id) for chunk_id in candidates if chunk_id in in_project]


def exact_search(
    db: sqlite3.Connection, keyword: str, limit: int = 10, project: str = ""
) -> list[ExactMatchResult]:
    """Chunks containing ``keyword``: FTS5 matches first, then substring matches.

    With time decay enabled, both sources are over-fetched and the merged
    list is ordered by decayed score, lowest (best) first.
    """
    keyword = keyword.strip()
    if not keyword:
        return []

    decay = get_decay_config()
    seen: set[int] = set()
    results = _exact_search_fts(db, keyword, limit, seen, project)

    if decay.enabled:
        fallback_limit = limit * 5
    elif len(results) >= limit:
        return results
    else:
        fallback_limit = limit - len(results)

    combined = results + _exact_search_substring(db, keyword, fallback_limit, seen, project)
    if decay.enabled:
        combined.sort(key=lambda result: result.score)
    return combined[: max(limit, 0)]


def _exact_search_fts(
    db: sqlite3.Connection, keyword: str, limit: int, seen: set[int], project: str
) -> list[ExactMatchResult]:
    safe = _sanitize_fts(keyword)
    if not safe or limit <= 0:
        return []
    decay = get_decay_config()
    query_limit = limit * 5 if decay.enabled else limit

    project_clause = " AND m.project = ?" if project else ""
    params: list[Any] = [safe, *([project] if project else []), query_limit]
    rows = db.execute(
        f"""
        SELECT c.memory_id, c.id, c.chunk_index, c.chunk_text, bm25(memory_chunks_fts), m.created_at
          FROM memory_chunks_fts f
          JOIN memory_chunks c ON c.id = f.rowid
          JOIN memories m ON m.id = c.memory_id
         WHERE f.chunk_text MATCH ?{project_clause}
         ORDER BY c.memory_id, c.chunk_index
         LIMIT ?
        """,
        params,
    ).fetchall()

    now = datetime.now(timezone.utc)
    results: list[ExactMatchResult] = []
    for memory_id, chunk_id, chunk_index, text, bm25, created_at in rows:
        seen.add(chunk_id)
        score = float(bm25)
        if decay.enabled:
            score *= decay_factor(age_in_days(now, _parse_timestamp(created_at)), decay.half_life_days)
        results.append(ExactMatchResult(memory_id, chunk_id, chunk_index, text, score))
    return results


def _exact_search_substring(
    db: sqlite3.Connection, keyword: str, limit: int, seen: set[int], project: str
) -> list[ExactMatchResult]:
    if limit <= 0:
        return []
    decay = get_decay_config()
    query_limit = limit * 5 if decay.enabled else limit + len(seen)

    project_clause = " AND m.project = ?" if project else ""
    params: list[Any] = [keyword, *([project] if project else []), query_limit]
    rows = db.execute(
        f"""
        SELECT c.memory_id, c.id, c.chunk_index, c.chunk_text, m.created_at
          FROM memory_chunks c
          JOIN memories m ON m.id = c.memory_id
         WHERE instr(lower(c.chunk_text), lower(?)) > 0{project_clause}
         ORDER BY c.memory_id, c.chunk_index
         LIMIT ?
        """,
        params,
    ).fetchall()

    now = datetime.now(timezone.utc)
    results: list[ExactMatchResult] = []
    for memory_id, chunk_id, chunk_index, text, created_at in rows:
        if chunk_id in seen:
            continue
        seen.add(chunk_id)
        score = _SUBSTRING_SCORE
        if decay.enabled:
            score *= decay_factor(age_in_days(now, _parse_timestamp(created_at)), decay.half_life_days)
        results.append(ExactMatchResult(memory_id, chunk_id, chunk_index, text, score))
        if not decay.enabled and len(results) >= limit:
            break
    return results