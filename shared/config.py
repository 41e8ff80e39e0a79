# shared/config.py
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


def _project_root() -> Path:
    # shared/ lives one level under repo root
    return Path(__file__).resolve().parents[1]


def _as_bool(v: str, default: bool = False) -> bool:
    if v is None:
        return default
    s = v.strip().lower()
    if s in ("1", "true", "yes", "y", "on"):
        return True
    if s in ("0", "false", "no", "n", "off"):
        return False
    return default


@dataclass(frozen=True)
class Settings:
    # Event log sinks
    log_to_db: bool                  # also persist events to sqlite event_log
    log_echo: bool                   # print events to stdout
    log_level: str                   # minimum level echoed/persisted

    # Files
    db_path: Path


LOG_LEVELS = ("DEBUG", "INFO", "WARN", "ERROR", "CRITICAL")


def load_settings() -> Settings:
    root = _project_root()

    # Load .env from repo root regardless of current working dir
    env_path = root / ".env"
    load_dotenv(dotenv_path=env_path, override=False)

    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    if log_level not in LOG_LEVELS:
        raise RuntimeError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")

    db_path = root / "data" / "backtest_lab.sqlite3"
    db_path_override = os.getenv("DB_PATH", "").strip()
    if db_path_override:
        db_path = Path(db_path_override).expanduser().resolve()

    return Settings(
        log_to_db=_as_bool(os.getenv("LOG_TO_DB", "0"), default=False),
        log_echo=_as_bool(os.getenv("LOG_ECHO", "1"), default=True),
        log_level=log_level,
        db_path=db_path,
    )
