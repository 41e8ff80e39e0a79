"""
Loads OHLCV bars from CSV / DataFrames and converts them to engine Bars.
"""
from pathlib import Path
from typing import List, Optional, Sequence

import pandas as pd

from backtest.types import Bar

REQUIRED_COLUMNS = ["open", "high", "low", "close"]
TIME_COLUMNS = ("time", "ts_utc", "timestamp", "date", "datetime")


def _time_column(df: pd.DataFrame) -> str:
    for c in TIME_COLUMNS:
        if c in df.columns:
            return c
    raise ValueError(f"Bar frame has no time column (expected one of {TIME_COLUMNS})")


def clean_bars_frame(df: pd.DataFrame, time_col: Optional[str] = None) -> pd.DataFrame:
    """
    Normalize a raw OHLCV frame: `time` as int epoch seconds (UTC), numeric
    prices, rows with missing fields dropped, sorted, duplicates keep first.
    """
    if df.empty:
        return pd.DataFrame(columns=["time", "open", "high", "low", "close", "volume"])

    time_col = time_col or _time_column(df)
    out = df.copy()
    missing = [c for c in REQUIRED_COLUMNS if c not in out.columns]
    if missing:
        raise ValueError(f"Bar frame missing columns: {missing}")

    raw_ts = out[time_col]
    if pd.api.types.is_numeric_dtype(raw_ts):
        ts = pd.to_numeric(raw_ts, errors="coerce")
        # Millisecond epochs
        if ts.dropna().abs().gt(1e11).any():
            ts = ts / 1000.0
    else:
        parsed = pd.to_datetime(raw_ts, utc=True, errors="coerce")
        ts = (parsed - pd.Timestamp("1970-01-01", tz="UTC")) / pd.Timedelta(seconds=1)
    out["time"] = ts

    for c in REQUIRED_COLUMNS:
        out[c] = pd.to_numeric(out[c], errors="coerce")
    if "volume" in out.columns:
        out["volume"] = pd.to_numeric(out["volume"], errors="coerce").fillna(0.0)
    else:
        out["volume"] = 0.0

    out = out.dropna(subset=["time", *REQUIRED_COLUMNS])
    out = out.sort_values("time", kind="mergesort").drop_duplicates(subset=["time"], keep="first")
    out["time"] = out["time"].astype("int64")
    return out[["time", "open", "high", "low", "close", "volume"]].reset_index(drop=True)


def bars_from_frame(df: pd.DataFrame, time_col: Optional[str] = None) -> List[Bar]:
    clean = clean_bars_frame(df, time_col)
    return [
        Bar(time=int(t), open=float(o), high=float(h), low=float(l), close=float(c), volume=float(v))
        for t, o, h, l, c, v in clean.itertuples(index=False, name=None)
    ]


def bars_to_frame(bars: Sequence[Bar]) -> pd.DataFrame:
    return pd.DataFrame(
        [(b.time, b.open, b.high, b.low, b.close, b.volume) for b in bars],
        columns=["time", "open", "high", "low", "close", "volume"],
    )


def load_bars_csv(path, time_col: Optional[str] = None) -> List[Bar]:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Bar file not found: {p}")
    df = pd.read_csv(p)
    df.columns = [str(c).strip().lower() for c in df.columns]
    bars = bars_from_frame(df, time_col)
    if not bars:
        raise RuntimeError(f"No usable bars in {p}")
    return bars
