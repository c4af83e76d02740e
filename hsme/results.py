"""Search result records and reciprocal rank fusion."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

__all__ = [
    "RRF_K",
    "ChunkHighlight",
    "MemorySearchResult",
    "ExactMatchResult",
    "SearchResult",
    "rrf",
]

RRF_K = 60.0


@dataclass
class ChunkHighlight:
    chunk_id: int
    chunk_index: int
    text: str


@dataclass
class MemorySearchResult:
    memory_id: int
    score: float
    is_superseded: bool = False
    vector_coverage: str = "none"
    highlights: list[ChunkHighlight] = field(default_factory=list)


@dataclass
class ExactMatchResult:
    memory_id: int
    chunk_id: int
    chunk_index: int
    text: str
    score: float = field(default=0.0, repr=False)


@dataclass
class SearchResult:
    id: int
    score: float = 0.0


def rrf(limit: int, *result_sets: Sequence[SearchResult]) -> list[SearchResult]:
    """Fuse ranked lists with reciprocal rank fusion, best first, at most ``limit``.

    Each list contributes ``1 / (60 + rank)`` per id; ties keep first-seen order.
    """
    scores: dict[int, float] = {}
    for result_set in result_sets:
        for rank, result in enumerate(result_set, start=1):
            scores[result.id] = scores.get(result.id, 0.0) + 1.0 / (RRF_K + rank)
    fused = [SearchResult(id=result_id, score=score) for result_id, score in scores.items()]
    fused.sort(key=lambda result: result.score, reverse=True)
    return fused[: max(limit, 0)]