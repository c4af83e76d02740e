"""Knowledge-graph lookups: name search and dependency tracing."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import Any

from hsme.chunking import canonicalize_name
from hsme.results import SearchResult

__all__ = ["DependencyEdge", "DependencyTrace", "graph_search", "trace_dependencies"]

_DEFAULT_MAX_DEPTH = 5
_DEFAULT_MAX_NODES = 100

_TRACE_QUERY = """
    WITH RECURSIVE trace(id, depth) AS (
        SELECT id, 0
          FROM kg_nodes
         WHERE canonical_name = ?
            OR display_name LIKE ?
        UNION
        SELECT
            CASE WHEN t.id = e.source_node_id THEN e.target_node_id ELSE e.source_node_id END,
            t.depth + 1
          FROM kg_edge_evidence e
          JOIN trace t ON (t.id = e.source_node_id OR t.id = e.target_node_id)
         WHERE t.depth < ?
           AND (
                (? = 'both') OR
                (? = 'downstream' AND t.id = e.source_node_id) OR
                (? = 'upstream' AND t.id = e.target_node_id)
           )
    )
    SELECT id, MIN(depth) AS min_depth
      FROM trace
     GROUP BY id
     ORDER BY min_depth, id
"""


@dataclass(frozen=True)
class DependencyEdge:
    source_id: int
    target_id: int
    relation_type: str
    memory_id: int


@dataclass
class DependencyTrace:
    """Nodes reachable from an entity, the edges between them, and a truncation flag."""

    entity: str
    nodes: list[dict[str, Any]] = field(default_factory=list)
    edges: list[DependencyEdge] = field(default_factory=list)
    truncated: bool = False


def graph_search(db: sqlite3.Connection, query: str, limit: int) -> list[SearchResult]:
    """Memories that hold evidence for nodes whose canonical name contains ``query``."""
    rows = db.execute(
        """
        SELECT DISTINCT e.memory_id, 1.0
          FROM kg_nodes n
          JOIN kg_edge_evidence e ON n.id = e.source_node_id OR n.id = e.target_node_id
         WHERE n.canonical_name LIKE ?
         LIMIT ?
        """,
        (f"%{query}%", limit),
    ).fetchall()
    return [SearchResult(id=memory_id, score=float(score)) for memory_id, score in rows]


def trace_dependencies(
    db: sqlite3.Connection,
    entity_name: str,
    direction: str = "both",
    max_depth: int = _DEFAULT_MAX_DEPTH,
    max_nodes: int = _DEFAULT_MAX_NODES,
) -> DependencyTrace:
    """Walk the graph from ``entity_name`` in ``direction``.

    ``direction`` is ``both``, ``downstream`` (source to target) or ``upstream``.
    Nodes are ordered by their shortest depth then id; at most ``max_nodes``
    are kept and ``truncated`` reports whether more were reachable.
    """
    if max_depth <= 0:
        max_depth = _DEFAULT_MAX_DEPTH
    if max_nodes <= 0:
        max_nodes = _DEFAULT_MAX_NODES

    search_name, _ = canonicalize_name(entity_name)
    rows = db.execute(
        _TRACE_QUERY,
        (search_name, f"%{entity_name}%", max_depth, direction, direction, direction),
    ).fetchall()

    result = DependencyTrace(entity=entity_name)
    selected = [node_id for node_id, _depth in rows[:max_nodes]]
    result.truncated = len(rows) > max_nodes
    if not selected:
        return result

    for node_id in selected:
        row = db.execute(
            "SELECT type, display_name FROM kg_nodes WHERE id = ?", (node_id,)
        ).fetchone()
        if row is None:
            continue
        node_type, display_name = row
        result.nodes.append({"id": node_id, "type": node_type, "name": display_name})

    reachable = set(selected)
    in_clause = ",".join("?" for _ in selected)
    edge_rows = db.execute(
        f"""
        SELECT source_node_id, target_node_id, relation_type, memory_id
          FROM kg_edge_evidence
         WHERE source_node_id IN ({in_clause})
           AND target_node_id IN ({in_clause})
         ORDER BY source_node_id, target_node_id, relation_type, memory_id
        """,
        [*selected, *selected],
    ).fetchall()

    seen: set[DependencyEdge] = set()
    for source_id, target_id, relation_type, memory_id in edge_rows:
        if source_id not in reachable or target_id not in reachable:
            continue
        edge = DependencyEdge(source_id, target_id, relation_type, memory_id)
        if edge in seen:
            continue
        seen.add(edge)
        result.edges.append(edge)

    return result