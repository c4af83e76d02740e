"""Persisted embedding configuration and its startup validation."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from typing import Iterator, Protocol

__all__ = ["SCHEMA_VERSION", "EmbedderInfo", "EmbeddingConfigMismatch", "validate_embedding_config"]

SCHEMA_VERSION = "1"
_KEYS = ("schema_version", "embedding_model", "embedding_dim")


class EmbedderInfo(Protocol):
    """Metadata of the active embedder that must match the stored baseline."""

    def model_id(self) -> str: ...

    def dimension(self) -> int: ...


class EmbeddingConfigMismatch(RuntimeError):
    """Raised when the active embedder differs from the stored baseline."""

    def __init__(self, key: str, persisted: str, expected: str) -> None:
        self.key = key
        self.persisted = persisted
        self.expected = expected
        super().__init__(
            f'EMBEDDING_DIM_MISMATCH: system_config.{key} = "{persisted}" but the active '
            f'embedder has "{expected}"; reindex or create a new database'
        )


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


def validate_embedding_config(db: sqlite3.Connection, embedder: EmbedderInfo) -> None:
    """Seed the embedding baseline on first start, otherwise check it is unchanged.

    Raises :class:`EmbeddingConfigMismatch` if a stored value differs from the
    active embedder's model or dimension.
    """
    want = {
        "schema_version": SCHEMA_VERSION,
        "embedding_model": embedder.model_id(),
        "embedding_dim": str(embedder.dimension()),
    }
    placeholders = ",".join("?" for _ in _KEYS)
    got = dict(
        db.execute(
            f"SELECT key, value FROM system_config WHERE key IN ({placeholders})", _KEYS
        ).fetchall()
    )

    if not got:
        with _immediate_transaction(db):
            db.executemany(
                "INSERT INTO system_config(key, value) VALUES(?, ?)", list(want.items())
            )
        return

    for key, expected in want.items():
        persisted = got.get(key)
        if persisted is not None and persisted != expected:
            raise EmbeddingConfigMismatch(key, persisted, expected)