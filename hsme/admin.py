"""Administrative operations: online backup, verified restore and task retry."""

from __future__ import annotations

import os
import shutil
import sqlite3
from contextlib import closing, suppress
from pathlib import Path
from typing import Union

__all__ = ["AdminError", "backup", "restore", "retry_failed_tasks"]

StrPath = Union[str, "os.PathLike[str]"]

_RESTORE_TMP_NAME = "restore.db.tmp"


class AdminError(RuntimeError):
    """Raised when an administrative operation fails."""


def backup(src_path: StrPath, dest_path: StrPath) -> None:
    """Copy the database at ``src_path`` to ``dest_path`` using SQLite's online backup."""
    try:
        source = sqlite3.connect(src_path)
    except sqlite3.Error as exc:
        raise AdminError(f"failed to open source database: {exc}") from exc
    with closing(source):
        try:
            destination = sqlite3.connect(dest_path)
        except sqlite3.Error as exc:
            raise AdminError(f"failed to open destination database: {exc}") from exc
        with closing(destination):
            try:
                source.backup(destination)
            except sqlite3.Error as exc:
                raise AdminError(f"failed to step backup: {exc}") from exc


def _check_integrity(src_path: StrPath) -> None:
    uri = Path(src_path).resolve().as_uri() + "?mode=ro"
    try:
        with closing(sqlite3.connect(uri, uri=True)) as source:
            row = source.execute("PRAGMA integrity_check").fetchone()
    except sqlite3.Error as exc:
        raise AdminError(f"integrity check failed: {exc}") from exc
    result = row[0] if row else ""
    if result != "ok":
        raise AdminError(f"backup file is corrupt: {result}")


def restore(db_path: StrPath, src_path: StrPath) -> None:
    """Replace ``db_path`` with the verified backup at ``src_path``.

    The backup is checked, copied beside the target and renamed over it;
    stale ``-wal`` and ``-shm`` sidecars of the target are removed first.
    """
    _check_integrity(src_path)

    target = Path(db_path)
    tmp_path = target.parent / _RESTORE_TMP_NAME
    try:
        shutil.copyfile(src_path, tmp_path)
    except OSError as exc:
        raise AdminError(f"failed to copy backup to temp: {exc}") from exc

    for suffix in ("-wal", "-shm"):
        with suppress(OSError):
            os.remove(f"{target}{suffix}")

    try:
        os.replace(tmp_path, target)
    except OSError as exc:
        with suppress(OSError):
            tmp_path.unlink()
        raise AdminError(f"failed to swap database file: {exc}") from exc


def retry_failed_tasks(db: sqlite3.Connection) -> int:
    """Reset failed or exhausted tasks to pending; return how many were reset."""
    try:
        cursor = db.execute(
            "UPDATE async_tasks SET status = 'pending', attempt_count = 0 "
            "WHERE status = 'failed' OR attempt_count >= 5"
        )
        db.commit()
    except sqlite3.Error as exc:
        raise AdminError(f"failed to retry tasks: {exc}") from exc
    return cursor.rowcount