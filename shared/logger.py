"""Structured event logger -- prints to console and optionally writes to the event_log table."""

import sys
from datetime import datetime, timezone
from typing import Optional

from shared.config import LOG_LEVELS, load_settings
from shared.db import connect


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _enabled(level: str, threshold: str) -> bool:
    try:
        return LOG_LEVELS.index(level) >= LOG_LEVELS.index(threshold)
    except ValueError:
        return True


def log_event(level: str, source: str, message: str, *, echo: Optional[bool] = None) -> None:
    """
    Log a structured event.

    Args:
        level:   DEBUG, INFO, WARN, ERROR, CRITICAL
        source:  Component name (e.g. "engine", "walk_forward", "monte_carlo")
        message: Human-readable message
        echo:    Print to stdout; defaults to LOG_ECHO
    """
    settings = load_settings()
    level = level.upper()
    if not _enabled(level, settings.log_level):
        return

    ts = _utc_now_iso()
    full_msg = f"[{source}] {message}"

    if settings.log_to_db:
        try:
            conn = connect(settings.db_path)
            conn.execute(
                "INSERT INTO event_log (ts_utc, level, message) VALUES (?, ?, ?)",
                (ts, level, full_msg),
            )
            conn.commit()
            conn.close()
        except Exception as e:
            print(f"[logger] DB write failed: {e}", file=sys.stderr)

    if settings.log_echo if echo is None else echo:
        print(f"[{ts}] {level} {full_msg}")
