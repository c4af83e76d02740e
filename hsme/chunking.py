"""Content chunking, hashing and name canonicalisation."""

from __future__ import annotations

import hashlib
import unicodedata

__all__ = [
    "MIN_CHUNK_TOKENS",
    "MAX_CHUNK_TOKENS",
    "MAX_CHUNK_CHARS",
    "split",
    "estimate_tokens",
    "compute_hash",
    "canonicalize_name",
    "canonicalize_type",
]

MIN_CHUNK_TOKENS = 400
MAX_CHUNK_TOKENS = 800
MAX_CHUNK_CHARS = 3200

_DELIMITERS = ("\n\n", "\n", " ")


def estimate_tokens(text: str) -> int:
    """Estimate tokens as the number of whitespace-separated words."""
    return len(text.split())


def _size(text: str) -> int:
    return len(text.encode("utf-8"))


def _too_large(text: str) -> bool:
    return estimate_tokens(text) > MAX_CHUNK_TOKENS or _size(text) > MAX_CHUNK_CHARS


def split(content: str, source_type: str = "") -> list[str]:
    """Split content into chunks on blank lines, then lines, then spaces."""
    return _recursive_split(content, _DELIMITERS)


def _recursive_split(text: str, delimiters: tuple[str, ...]) -> list[str]:
    text = text.strip()
    if not text:
        return []
    if not _too_large(text) or not delimiters:
        return [text]

    delimiter, rest = delimiters[0], delimiters[1:]
    parts = text.split(delimiter)
    if len(parts) == 1:
        return _recursive_split(text, rest)

    chunks: list[str] = []
    current: list[str] = []
    current_tokens = 0
    current_chars = 0

    for part in parts:
        part_tokens = estimate_tokens(part)
        part_chars = _size(part)
        joiner_chars = len(delimiter) if current else 0

        over_budget = (
            current_tokens + part_tokens > MAX_CHUNK_TOKENS
            or current_chars + joiner_chars + part_chars > MAX_CHUNK_CHARS
        )
        if over_budget and current:
            chunks.append(delimiter.join(current))
            current = []
            current_tokens = 0
            current_chars = 0
            joiner_chars = 0

        if part_tokens > MAX_CHUNK_TOKENS or part_chars > MAX_CHUNK_CHARS:
            chunks.extend(_recursive_split(part, rest))
        else:
            current.append(part)
            current_tokens += part_tokens + 1
            current_chars += joiner_chars + part_chars

    if current:
        chunks.append(delimiter.join(current))
    return chunks


def compute_hash(content: str) -> str:
    """SHA-256 of the NFC-normalised content as lowercase hex."""
    normalized = unicodedata.normalize("NFC", content)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def canonicalize_name(raw: str) -> tuple[str, str]:
    """Return ``(canonical, display)``: collapsed lowercase and trimmed original."""
    display = raw.strip()
    canonical = " ".join(display.split()).lower()
    return canonical, display


def canonicalize_type(raw: str) -> str:
    """Trim and uppercase a node or relation type."""
    return raw.strip().upper()