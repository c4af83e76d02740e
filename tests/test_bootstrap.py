import argparse
from contextlib import closing

import pytest

from hsme.bootstrap import (
    AppConfig,
    BootstrapError,
    load_from_env,
    open_db,
    open_with_embedder,
    open_with_worker,
)
from hsme.decay import get_decay_config, set_decay_config

_ENV_KEYS = (
    "SQLITE_DB_PATH",
    "OLLAMA_HOST",
    "EMBEDDING_MODEL",
    "EXTRACTION_MODEL",
    "RRF_TIME_DECAY",
    "RRF_HALF_LIFE_DAYS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    saved = get_decay_config()
    yield
    set_decay_config(saved)


def test_load_from_env(monkeypatch):
    monkeypatch.setenv("SQLITE_DB_PATH", "test.db")
    monkeypatch.setenv("OLLAMA_HOST", "http://test:11434")
    monkeypatch.setenv("EMBEDDING_MODEL", "test-model")
    cfg = load_from_env()
    assert cfg.db_path == "test.db"
    assert cfg.ollama_host == "http://test:11434"
    assert cfg.embedding_model == "test-model"
    assert cfg.embedding_dim == 768


def test_load_from_env_defaults():
    cfg = load_from_env()
    assert cfg.db_path == "data/engram.db"
    assert cfg.ollama_host == ""
    assert cfg.embedding_model == "nomic-embed-text"
    assert cfg.extraction_model == "phi3.5"


def test_apply_flag_overrides_namespace():
    cfg = AppConfig()
    flags = argparse.Namespace(db="other.db", ollama_host="", embedding_model=None, extraction_model="m2")
    cfg.apply_flag_overrides(flags)
    assert cfg.db_path == "other.db"
    assert cfg.ollama_host == ""
    assert cfg.embedding_model == "nomic-embed-text"
    assert cfg.extraction_model == "m2"


def test_apply_flag_overrides_mapping():
    cfg = AppConfig()
    cfg.apply_flag_overrides({"ollama-host": "http://h:1", "unrelated": "x"})
    assert cfg.ollama_host == "http://h:1"
    assert cfg.db_path == "data/engram.db"


def test_open_db(tmp_path):
    db = open_db(AppConfig(db_path=str(tmp_path / "test.db")))
    with closing(db):
        assert db.execute("SELECT COUNT(*) FROM memories").fetchone()[0] == 0


def test_open_db_invalid_path(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("x")
    with pytest.raises(BootstrapError):
        open_db(AppConfig(db_path=str(blocker / "sub" / "db.db")))


def test_open_db_installs_decay_config(tmp_path, monkeypatch):
    monkeypatch.setenv("RRF_TIME_DECAY", "on")
    monkeypatch.setenv("RRF_HALF_LIFE_DAYS", "3")
    with closing(open_db(AppConfig(db_path=str(tmp_path / "d.db")))):
        decay = get_decay_config()
        assert decay.enabled is True
        assert decay.half_life_days == 3.0


def test_open_db_rejects_bad_decay(tmp_path, monkeypatch):
    monkeypatch.setenv("RRF_TIME_DECAY", "maybe")
    with pytest.raises(BootstrapError):
        open_db(AppConfig(db_path=str(tmp_path / "d.db")))


def test_open_with_embedder_seeds_baseline(tmp_path):
    db, embedder = open_with_embedder(AppConfig(db_path=str(tmp_path / "e.db")))
    with closing(db):
        assert embedder.model_id() == "nomic-embed-text"
        stored = dict(db.execute("SELECT key, value FROM system_config").fetchall())
        assert stored["embedding_model"] == "nomic-embed-text"
        assert stored["embedding_dim"] == "768"


def test_open_with_embedder_rejects_changed_model(tmp_path):
    path = str(tmp_path / "e.db")
    db, _ = open_with_embedder(AppConfig(db_path=path))
    db.close()
    with pytest.raises(BootstrapError):
        open_with_embedder(AppConfig(db_path=path, embedding_model="other-model"))


def test_open_with_worker(tmp_path):
    cfg = AppConfig(db_path=str(tmp_path / "w.db"), ollama_host="http://h:9/", extraction_model="x1")
    db, embedder, extractor = open_with_worker(cfg)
    with closing(db):
        assert extractor.model == "x1"
        assert extractor.client is embedder.client
        assert embedder.client.base_url == "http://h:9"