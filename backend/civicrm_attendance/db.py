from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .config import get_settings


def _ensure_schema(connection: sqlite3.Connection) -> None:
    cursor = connection.cursor()
    cursor.executescript(
        """
        CREATE TABLE IF NOT EXISTS attendance_settings (
            setting_key TEXT PRIMARY KEY,
            setting_value TEXT
        );
        """
    )
    connection.commit()


@contextmanager
def get_connection(readonly: bool = False, db_path: Optional[Path] = None) -> Iterator[sqlite3.Connection]:
    db_path = db_path or get_settings().sqlite_path
    if readonly and db_path.exists():
        uri = f"file:{db_path}?mode=ro"
        connection = sqlite3.connect(uri, uri=True, check_same_thread=False)
    else:
        ensure_parent(db_path)
        connection = sqlite3.connect(db_path, check_same_thread=False)
        _ensure_schema(connection)
    try:
        yield connection
    finally:
        connection.close()


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
