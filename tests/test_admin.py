import sqlite3
from contextlib import closing

import pytest

from hsme.admin import AdminError, backup, restore, retry_failed_tasks


def test_retry_failed_tasks(tmp_path):
    with closing(sqlite3.connect(tmp_path / "test_retry.db")) as db:
        db.execute(
            """
            CREATE TABLE async_tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                status TEXT NOT NULL,
                attempt_count INTEGER NOT NULL
            )
            """
        )
        db.execute(
            """
            INSERT INTO async_tasks (status, attempt_count) VALUES
            ('pending', 0), ('failed', 3), ('pending', 5), ('completed', 1)
            """
        )
        db.commit()

        assert retry_failed_tasks(db) == 2
        pending = db.execute(
            "SELECT COUNT(*) FROM async_tasks WHERE status = 'pending' AND attempt_count = 0"
        ).fetchone()[0]
        assert pending == 3


def test_retry_without_table(tmp_path):
    with closing(sqlite3.connect(tmp_path / "empty.db")) as db:
        with pytest.raises(AdminError):
            retry_failed_tasks(db)


def _make_source(path):
    with closing(sqlite3.connect(path)) as db:
        db.executescript("CREATE TABLE data (val TEXT); INSERT INTO data VALUES ('hello');")


def test_backup_and_restore(tmp_path):
    src = tmp_path / "src.db"
    backup_path = tmp_path / "backup.db"
    restore_path = tmp_path / "restore.db"
    _make_source(src)

    backup(src, backup_path)
    assert backup_path.exists()

    restore(restore_path, backup_path)
    with closing(sqlite3.connect(restore_path)) as db:
        assert db.execute("SELECT val FROM data").fetchone()[0] == "hello"
    assert not (tmp_path / "restore.db.tmp").exists()


def test_restore_corrupt(tmp_path):
    corrupt = tmp_path / "corrupt.db"
    corrupt.write_bytes(b"this is not a sqlite database")
    with pytest.raises(AdminError):
        restore(tmp_path / "target.db", corrupt)
    assert not (tmp_path / "target.db").exists()


def test_restore_missing_source(tmp_path):
    with pytest.raises(AdminError):
        restore(tmp_path / "target.db", tmp_path / "missing.db")


def test_restore_removes_sidecars(tmp_path):
    src = tmp_path / "src.db"
    _make_source(src)
    target = tmp_path / "live.db"
    (tmp_path / "live.db-wal").write_bytes(b"stale")
    (tmp_path / "live.db-shm").write_bytes(b"stale")

    restore(target, src)

    assert not (tmp_path / "live.db-wal").exists()
    assert not (tmp_path / "live.db-shm").exists()
    with closing(sqlite3.connect(target)) as db:
        assert db.execute("SELECT COUNT(*) FROM data").fetchone()[0] == 1