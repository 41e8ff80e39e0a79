"""
Technical indicators used by the signal preparer and position simulator.

All series are numpy float arrays aligned to the input bars, with NaN where
the indicator has not warmed up yet. Smoothing follows Wilder (RSI, ATR, ADX)
and SMA-seeded EMA.
"""
import hashlib
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Hashable, Optional, Sequence, Tuple

import numpy as np

from backtest.types import Bar


@dataclass(frozen=True)
class PriceSeries:
    """Column view of a bar sequence plus a stable handle used for caching."""
    handle: str
    open: np.ndarray
    high: np.ndarray
    low: np.ndarray
    close: np.ndarray
    volume: np.ndarray

    def __len__(self) -> int:
        return len(self.close)

    @classmethod
    def from_bars(cls, bars: Sequence[Bar], handle: Optional[str] = None) -> "PriceSeries":
        o = np.array([b.open for b in bars], dtype=float)
        h = np.array([b.high for b in bars], dtype=float)
        l = np.array([b.low for b in bars], dtype=float)
        c = np.array([b.close for b in bars], dtype=float)
        v = np.array([b.volume for b in bars], dtype=float)
        if handle is None:
            digest = hashlib.sha1()
            for arr in (o, h, l, c, v):
                digest.update(arr.tobytes())
            handle = f"{len(c)}:{digest.hexdigest()}"
        return cls(handle=handle, open=o, high=h, low=l, close=c, volume=v)


def sma(values: np.ndarray, period: int) -> np.ndarray:
    values = np.asarray(values, dtype=float)
    n = len(values)
    out = np.full(n, np.nan)
    if period < 1 or n < period:
        return out
    csum = np.cumsum(np.insert(values, 0, 0.0))
    out[period - 1:] = (csum[period:] - csum[:-period]) / period
    return out


def ema(values: np.ndarray, period: int) -> np.ndarray:
    values = np.asarray(values, dtype=float)
    n = len(values)
    out = np.full(n, np.nan)
    if period < 1 or n < period:
        return out
    k = 2.0 / (period + 1)
    prev = float(np.mean(values[:period]))
    out[period - 1] = prev
    for i in range(period, n):
        prev = (values[i] - prev) * k + prev
        out[i] = prev
    return out


def rsi(values: np.ndarray, period: int) -> np.ndarray:
    values = np.asarray(values, dtype=float)
    n = len(values)
    out = np.full(n, np.nan)
    if period < 1 or n < period + 1:
        return out

    change = np.diff(values)
    gains = np.where(change > 0, change, 0.0)
    losses = np.where(change < 0, -change, 0.0)

    avg_gain = float(np.mean(gains[:period]))
    avg_loss = float(np.mean(losses[:period]))
    out[period] = 100.0 if avg_loss == 0 else 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)

    for i in range(period + 1, n):
        avg_gain = (avg_gain * (period - 1) + gains[i - 1]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i - 1]) / period
        out[i] = 100.0 if avg_loss == 0 else 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)
    return out


def true_range(high: np.ndarray, low: np.ndarray, close: np.ndarray) -> np.ndarray:
    n = len(close)
    tr = np.empty(n)
    if n == 0:
        return tr
    tr[0] = high[0] - low[0]
    if n > 1:
        prev_close = close[:-1]
        tr[1:] = np.maximum.reduce([
            high[1:] - low[1:],
            np.abs(high[1:] - prev_close),
            np.abs(low[1:] - prev_close),
        ])
    return tr


def atr(high: np.ndarray, low: np.ndarray, close: np.ndarray, period: int = 14) -> np.ndarray:
    """Average True Range with Wilder smoothing, seeded by the mean of the first `period` TRs."""
    n = len(close)
    out = np.full(n, np.nan)
    if period < 1 or n < period:
        return out
    tr = true_range(np.asarray(high, float), np.asarray(low, float), np.asarray(close, float))
    prev = float(np.mean(tr[:period]))
    out[period - 1] = prev
    for i in range(period, n):
        prev = (prev * (period - 1) + tr[i]) / period
        out[i] = prev
    return out


def adx(high: np.ndarray, low: np.ndarray, close: np.ndarray, period: int = 14) -> np.ndarray:
    """Average Directional Index; first value at index 2*period - 1."""
    high = np.asarray(high, dtype=float)
    low = np.asarray(low, dtype=float)
    close = np.asarray(close, dtype=float)
    n = len(close)
    out = np.full(n, np.nan)
    if period < 1 or n < period * 2:
        return out

    up = np.zeros(n)
    down = np.zeros(n)
    up[1:] = high[1:] - high[:-1]
    down[1:] = low[:-1] - low[1:]
    plus_dm = np.where((up > down) & (up > 0), up, 0.0)
    minus_dm = np.where((down > up) & (down > 0), down, 0.0)
    tr = true_range(high, low, close)
    tr[0] = 0.0

    tr_s = float(np.sum(tr[1:period + 1]))
    plus_s = float(np.sum(plus_dm[1:period + 1]))
    minus_s = float(np.sum(minus_dm[1:period + 1]))

    dx = np.zeros(n)
    for i in range(period, n):
        if i > period:
            tr_s = tr_s - tr_s / period + tr[i]
            plus_s = plus_s - plus_s / period + plus_dm[i]
            minus_s = minus_s - minus_s / period + minus_dm[i]
        plus_di = 0.0 if tr_s == 0 else 100.0 * plus_s / tr_s
        minus_di = 0.0 if tr_s == 0 else 100.0 * minus_s / tr_s
        di_sum = plus_di + minus_di
        dx[i] = 0.0 if di_sum == 0 else 100.0 * abs(plus_di - minus_di) / di_sum

    prev = float(np.mean(dx[period:period * 2]))
    out[period * 2 - 1] = prev
    for i in range(period * 2, n):
        prev = (prev * (period - 1) + dx[i]) / period
        out[i] = prev
    return out


class IndicatorCache:
    """
    Small LRU cache of indicator series keyed by (dataset handle, name, params).

    Optimizer and Monte Carlo loops re-run the simulator many times over the
    same bars; the regime/risk indicators only depend on the bars and the
    settings, so they are computed once per dataset.
    """

    def __init__(self, max_entries: int = 256):
        self.max_entries = max_entries
        self._store: "OrderedDict[Tuple[Hashable, ...], np.ndarray]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: Tuple[Hashable, ...], compute: Callable[[], np.ndarray]) -> np.ndarray:
        if key in self._store:
            self._store.move_to_end(key)
            self.hits += 1
            return self._store[key]
        self.misses += 1
        value = compute()
        value.setflags(write=False)
        self._store[key] = value
        if len(self._store) > self.max_entries:
            self._store.popitem(last=False)
        return value

    def clear(self) -> None:
        self._store.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._store)

    # Convenience accessors
    def sma(self, series: PriceSeries, field: str, period: int) -> np.ndarray:
        return self.get((series.handle, "sma", field, period), lambda: sma(getattr(series, field), period))

    def ema(self, series: PriceSeries, field: str, period: int) -> np.ndarray:
        return self.get((series.handle, "ema", field, period), lambda: ema(getattr(series, field), period))

    def rsi(self, series: PriceSeries, period: int) -> np.ndarray:
        return self.get((series.handle, "rsi", period), lambda: rsi(series.close, period))

    def atr(self, series: PriceSeries, period: int) -> np.ndarray:
        return self.get((series.handle, "atr", period), lambda: atr(series.high, series.low, series.close, period))

    def adx(self, series: PriceSeries, period: int) -> np.ndarray:
        return self.get((series.handle, "adx", period), lambda: adx(series.high, series.low, series.close, period))


default_cache = IndicatorCache()
