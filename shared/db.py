import sqlite3
from pathlib import Path
from typing import Optional

from shared.config import load_settings

EVENT_LOG_SCHEMA = """
CREATE TABLE IF NOT EXISTS event_log (
    id      INTEGER PRIMARY KEY AUTOINCREMENT,
    ts_utc  TEXT NOT NULL,
    level   TEXT NOT NULL,
    message TEXT NOT NULL
);
"""


def get_db_path() -> Path:
    return load_settings().db_path


def connect(db_path: Optional[Path] = None) -> sqlite3.Connection:
    db_path = Path(db_path) if db_path else get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30)
    conn.row_factory = sqlite3.Row
    conn.executescript(EVENT_LOG_SCHEMA)
    return conn
