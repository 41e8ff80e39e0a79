"""
Canonical ordering over the three time encodings bars and signals may carry.

Every encoding is reduced to float epoch seconds (UTC) so that comparisons and
index lookups never branch on the input shape at the call site.
"""
import math
from typing import Dict, Sequence

import pandas as pd

from backtest.types import Bar, BusinessDay, TimeValue


def _parse_string(value: str) -> float:
    s = value.strip()
    if not s:
        raise ValueError("Empty time string")
    try:
        num = float(s)
    except ValueError:
        num = None
    if num is not None:
        if not math.isfinite(num):
            raise ValueError(f"Non-finite time value: {value!r}")
        return num
    ts = pd.to_datetime(s, utc=True, errors="coerce")
    if pd.isna(ts):
        raise ValueError(f"Unparseable time value: {value!r}")
    return float(pd.Timestamp(ts).timestamp())


def to_epoch(value: TimeValue) -> float:
    """Convert a time value to epoch seconds."""
    if isinstance(value, BusinessDay):
        ts = pd.Timestamp(year=value.year, month=value.month, day=value.day, tz="UTC")
        return float(ts.timestamp())
    if isinstance(value, bool):
        raise ValueError(f"Unsupported time value: {value!r}")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValueError(f"Non-finite time value: {value!r}")
        return float(value)
    if isinstance(value, str):
        return _parse_string(value)
    if isinstance(value, pd.Timestamp):
        ts = value if value.tzinfo is not None else value.tz_localize("UTC")
        return float(ts.timestamp())
    raise ValueError(f"Unsupported time value: {value!r}")


def time_key(value: TimeValue) -> float:
    """Canonical lookup key: equal instants share a key whatever their encoding."""
    return to_epoch(value)


def compare_time(a: TimeValue, b: TimeValue) -> int:
    ka = to_epoch(a)
    kb = to_epoch(b)
    if ka < kb:
        return -1
    if ka > kb:
        return 1
    return 0


def build_time_index(bars: Sequence[Bar]) -> Dict[float, int]:
    index: Dict[float, int] = {}
    for i, bar in enumerate(bars):
        k = time_key(bar.time)
        if k not in index:
            index[k] = i
    return index


def format_time(value: TimeValue) -> str:
    """Human-readable rendering for reports."""
    if isinstance(value, BusinessDay):
        return value.key()
    if isinstance(value, str):
        return value
    try:
        return pd.Timestamp(to_epoch(value), unit="s", tz="UTC").isoformat()
    except ValueError:
        return str(value)
