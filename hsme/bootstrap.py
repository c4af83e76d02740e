"""Application configuration and startup wiring of database, embedder and extractor."""

from __future__ import annotations

import argparse
import os
import sqlite3
from dataclasses import dataclass
from typing import Any, Mapping, Union

from hsme.decay import DecayConfigError, load_decay_config, set_decay_config
from hsme.ollama import OllamaClient, OllamaEmbedder, OllamaExtractor
from hsme.storage import StorageError, init_db
from hsme.system_config import EmbeddingConfigMismatch, validate_embedding_config

__all__ = [
    "DEFAULT_DB_PATH",
    "AppConfig",
    "BootstrapError",
    "load_from_env",
    "open_db",
    "open_with_embedder",
    "open_with_worker",
]

DEFAULT_DB_PATH = "data/engram.db"
DEFAULT_EMBEDDING_MODEL = "nomic-embed-text"
DEFAULT_EMBEDDING_DIM = 768
DEFAULT_EXTRACTION_MODEL = "phi3.5"

_FLAG_FIELDS = {
    "db": "db_path",
    "ollama-host": "ollama_host",
    "embedding-model": "embedding_model",
    "extraction-model": "extraction_model",
}


class BootstrapError(RuntimeError):
    """Raised when the application cannot be started."""


@dataclass
class AppConfig:
    """Application settings; an empty ``ollama_host`` selects the client default."""

    db_path: str = DEFAULT_DB_PATH
    ollama_host: str = ""
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    embedding_dim: int = DEFAULT_EMBEDDING_DIM
    extraction_model: str = DEFAULT_EXTRACTION_MODEL

    def apply_flag_overrides(
        self, flags: Union[argparse.Namespace, Mapping[str, Any]]
    ) -> None:
        """Overlay non-empty ``db``, ``ollama-host``, ``embedding-model`` and
        ``extraction-model`` values (dashes or underscores)."""
        values = vars(flags) if isinstance(flags, argparse.Namespace) else dict(flags)
        for flag, attribute in _FLAG_FIELDS.items():
            value = values.get(flag, values.get(flag.replace("-", "_")))
            if value:
                setattr(self, attribute, str(value))


def load_from_env() -> AppConfig:
    """Read the configuration from the environment, applying defaults."""
    env = os.environ.get
    return AppConfig(
        db_path=env("SQLITE_DB_PATH") or DEFAULT_DB_PATH,
        ollama_host=env("OLLAMA_HOST") or "",
        embedding_model=env("EMBEDDING_MODEL") or DEFAULT_EMBEDDING_MODEL,
        embedding_dim=DEFAULT_EMBEDDING_DIM,
        extraction_model=env("EXTRACTION_MODEL") or DEFAULT_EXTRACTION_MODEL,
    )


def open_db(config: AppConfig) -> sqlite3.Connection:
    """Open the database and install the time-decay settings from the environment."""
    try:
        db = init_db(config.db_path)
    except (StorageError, sqlite3.Error, OSError) as exc:
        raise BootstrapError(f"bootstrap open db: {exc}") from exc
    try:
        decay = load_decay_config()
    except (DecayConfigError, ValueError) as exc:
        db.close()
        raise BootstrapError(f"bootstrap load decay config: {exc}") from exc
    set_decay_config(decay)
    return db


def _open_with_embedder(
    config: AppConfig,
) -> tuple[sqlite3.Connection, OllamaClient, OllamaEmbedder]:
    db = open_db(config)
    client = OllamaClient(config.ollama_host)
    embedder = OllamaEmbedder(client, config.embedding_model, config.embedding_dim)
    try:
        validate_embedding_config(db, embedder)
    except (EmbeddingConfigMismatch, sqlite3.Error) as exc:
        db.close()
        raise BootstrapError(f"bootstrap validate embedding: {exc}") from exc
    return db, client, embedder


def open_with_embedder(config: AppConfig) -> tuple[sqlite3.Connection, OllamaEmbedder]:
    """Open the database with an embedder checked against the stored baseline."""
    db, _client, embedder = _open_with_embedder(config)
    return db, embedder


def open_with_worker(
    config: AppConfig,
) -> tuple[sqlite3.Connection, OllamaEmbedder, OllamaExtractor]:
    """Open the database with an embedder and a graph extractor sharing one client."""
    db, client, embedder = _open_with_embedder(config)
    return db, embedder, OllamaExtractor(client, config.extraction_model)