import sqlite3

import pytest

from shared.config import load_settings
from shared.logger import log_event


def test_level_threshold(monkeypatch, capsys) -> None:
    monkeypatch.setenv("LOG_ECHO", "1")
    monkeypatch.setenv("LOG_LEVEL", "WARN")
    monkeypatch.setenv("LOG_TO_DB", "0")
    log_event("INFO", "engine", "hidden")
    log_event("warn", "engine", "shown")
    out = capsys.readouterr().out
    assert "hidden" not in out
    assert "WARN [engine] shown" in out


def test_echo_override(monkeypatch, capsys) -> None:
    monkeypatch.setenv("LOG_ECHO", "0")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("LOG_TO_DB", "0")
    log_event("INFO", "cli", "quiet")
    log_event("INFO", "cli", "loud", echo=True)
    out = capsys.readouterr().out
    assert "quiet" not in out
    assert "loud" in out


def test_bad_level_rejected(monkeypatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "VERBOSE")
    with pytest.raises(RuntimeError):
        load_settings()


def test_db_sink(monkeypatch, tmp_path) -> None:
    db = tmp_path / "events.sqlite3"
    monkeypatch.setenv("LOG_ECHO", "0")
    monkeypatch.setenv("LOG_LEVEL", "INFO")
    monkeypatch.setenv("LOG_TO_DB", "1")
    monkeypatch.setenv("DB_PATH", str(db))
    log_event("ERROR", "walk_forward", "window 3 failed")
    conn = sqlite3.connect(str(db))
    rows = conn.execute("SELECT level, message FROM event_log").fetchall()
    conn.close()
    assert rows == [("ERROR", "[walk_forward] window 3 failed")]
