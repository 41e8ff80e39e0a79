"""
Signal preparation.

Turns raw strategy signals into scheduled execution events: resolves each
signal to a bar, applies the execution-model shift, runs entry confirmation
and regime filters at the execution bar, and resolves the fill price.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from backtest.config import BacktestSettings
from backtest.indicators import IndicatorCache, PriceSeries, default_cache
from backtest.timeutil import build_time_index, time_key
from backtest.types import LONG, SHORT, Bar, Signal, SignalType, TimeValue
from shared.logger import log_event


ENTRY = "entry"
EXIT = "exit"

# Trade filter defaults when the filter is enabled without its own period/threshold.
TREND_FILTER_DEFAULT_EMA = 50
ADX_FILTER_DEFAULT_MIN = 20.0


@dataclass(frozen=True)
class ScheduledEvent:
    index: int              # execution bar
    time: TimeValue         # execution bar time
    kind: str               # "entry" | "exit"
    direction: int          # +1 long book, -1 short book
    price: float            # fill price before slippage
    reason: str
    order: int              # emission order of the source signal
    signal_index: int


@dataclass(frozen=True)
class FilterIndicators:
    atr: np.ndarray
    ema_trend: Optional[np.ndarray]
    adx: Optional[np.ndarray]
    rsi: Optional[np.ndarray]
    volume_sma: Optional[np.ndarray]


def _trend_period(settings: BacktestSettings) -> int:
    if settings.trend_ema_period > 0:
        return settings.trend_ema_period
    if settings.trade_filter_mode == "trend":
        return TREND_FILTER_DEFAULT_EMA
    return 0


def compute_filter_indicators(series: PriceSeries,
                              settings: BacktestSettings,
                              cache: Optional[IndicatorCache] = None) -> FilterIndicators:
    cache = cache or default_cache
    mode = settings.trade_filter_mode
    trend_period = _trend_period(settings)
    want_adx = settings.adx_min > 0 or settings.adx_max > 0 or mode == "adx"
    return FilterIndicators(
        atr=cache.atr(series, settings.atr_period),
        ema_trend=cache.ema(series, "close", trend_period) if trend_period > 0 else None,
        adx=cache.adx(series, settings.adx_period) if want_adx else None,
        rsi=cache.rsi(series, settings.rsi_period) if mode == "rsi" else None,
        volume_sma=cache.sma(series, "volume", settings.volume_sma_period) if mode == "volume" else None,
    )


def _value(arr: Optional[np.ndarray], i: int) -> Optional[float]:
    if arr is None or i < 0 or i >= len(arr):
        return None
    v = float(arr[i])
    return None if np.isnan(v) else v


def passes_trade_filter(series: PriceSeries, i: int, settings: BacktestSettings,
                        ind: FilterIndicators, direction: int) -> bool:
    mode = settings.trade_filter_mode
    if mode == "none":
        return True

    if mode == "close":
        if i <= 0:
            return False
        start = max(0, i - settings.confirm_lookback)
        if direction == SHORT:
            return bool(series.close[i] < np.min(series.low[start:i]))
        return bool(series.close[i] > np.max(series.high[start:i]))

    if mode == "volume":
        vol_sma = _value(ind.volume_sma, i)
        if vol_sma is None:
            return False
        return bool(series.volume[i] >= vol_sma * settings.volume_multiplier)

    if mode == "rsi":
        r = _value(ind.rsi, i)
        if r is None:
            return False
        return r <= settings.rsi_bearish if direction == SHORT else r >= settings.rsi_bullish

    if mode == "trend":
        e = _value(ind.ema_trend, i)
        prev = _value(ind.ema_trend, i - max(1, settings.confirm_lookback))
        if e is None or prev is None:
            return False
        if direction == SHORT:
            return bool(series.close[i] < e and e < prev)
        return bool(series.close[i] > e and e > prev)

    if mode == "adx":
        a = _value(ind.adx, i)
        if a is None:
            return False
        return a >= (settings.adx_min if settings.adx_min > 0 else ADX_FILTER_DEFAULT_MIN)

    return True


def passes_regime_filters(series: PriceSeries, i: int, settings: BacktestSettings,
                          ind: FilterIndicators, direction: int) -> bool:
    close = float(series.close[i])

    if settings.trend_ema_period > 0:
        e = _value(ind.ema_trend, i)
        if e is None:
            return False
        if direction == SHORT and close >= e:
            return False
        if direction == LONG and close <= e:
            return False
        if settings.trend_ema_slope_bars > 0:
            prev = _value(ind.ema_trend, i - settings.trend_ema_slope_bars)
            if prev is None:
                return False
            if (direction == SHORT and e >= prev) or (direction == LONG and e <= prev):
                return False

    if settings.atr_percent_min > 0 or settings.atr_percent_max > 0:
        a = _value(ind.atr, i)
        if a is None or close == 0:
            return False
        atr_pct = a / close * 100.0
        if settings.atr_percent_min > 0 and atr_pct < settings.atr_percent_min:
            return False
        if settings.atr_percent_max > 0 and atr_pct > settings.atr_percent_max:
            return False

    if settings.adx_min > 0 or settings.adx_max > 0:
        a = _value(ind.adx, i)
        if a is None:
            return False
        if settings.adx_min > 0 and a < settings.adx_min:
            return False
        if settings.adx_max > 0 and a > settings.adx_max:
            return False

    return True


def execution_shift(settings: BacktestSettings) -> int:
    return 0 if settings.execution_model == "signal_close" else 1


def fill_price(bars: Sequence[Bar], signal: Signal, signal_index: int,
               exec_index: int, settings: BacktestSettings) -> float:
    if settings.execution_model == "signal_close" and exec_index == signal_index:
        return float(signal.price)
    bar = bars[exec_index]
    if settings.execution_model == "next_open":
        return float(bar.open)
    return float(bar.close)


def resolve_signal_index(signal: Signal, time_index: Dict[float, int], n_bars: int) -> Optional[int]:
    """Explicit bar index wins over time lookup; None when unresolvable."""
    if signal.bar_index is not None:
        try:
            idx = int(signal.bar_index)
        except (TypeError, ValueError):
            return None
    else:
        try:
            idx = time_index.get(time_key(signal.time))
        except ValueError:
            return None
        if idx is None:
            return None
    if idx < 0 or idx >= n_bars:
        return None
    return idx


def book_directions(settings: BacktestSettings) -> Tuple[int, ...]:
    if settings.trade_direction == "both":
        return (LONG, SHORT)
    if settings.trade_direction == "short":
        return (SHORT,)
    return (LONG,)


def prepare_signals(bars: Sequence[Bar],
                    signals: Sequence[Signal],
                    settings: BacktestSettings,
                    series: Optional[PriceSeries] = None,
                    indicators: Optional[FilterIndicators] = None,
                    cache: Optional[IndicatorCache] = None) -> List[ScheduledEvent]:
    """
    Resolve raw signals into execution events for every book the trade
    direction requires, sorted by (time, emission order).

    A buy is an entry for the long book and an exit for the short book; a sell
    is the reverse. Entries failing a confirmation or regime filter are
    dropped; exits always pass.
    """
    n = len(bars)
    if n == 0 or not signals:
        return []

    series = series or PriceSeries.from_bars(bars)
    indicators = indicators or compute_filter_indicators(series, settings, cache)
    time_index = build_time_index(bars)
    shift = execution_shift(settings)
    books = book_directions(settings)

    events: List[ScheduledEvent] = []
    for order, signal in enumerate(signals):
        sig_type = str(signal.type).lower()
        if sig_type not in (SignalType.BUY, SignalType.SELL):
            continue
        sig_idx = resolve_signal_index(signal, time_index, n)
        if sig_idx is None:
            continue

        for direction in books:
            entry_type = SignalType.BUY if direction == LONG else SignalType.SELL
            exec_idx = sig_idx + shift
            if sig_type == entry_type:
                if settings.trade_filter_mode == "close":
                    exec_idx = max(exec_idx, sig_idx + 1)
                if exec_idx >= n:
                    continue
                if not passes_trade_filter(series, exec_idx, settings, indicators, direction):
                    continue
                if not passes_regime_filters(series, exec_idx, settings, indicators, direction):
                    continue
                kind = ENTRY
            else:
                if exec_idx >= n:
                    continue
                kind = EXIT

            events.append(ScheduledEvent(
                index=exec_idx,
                time=bars[exec_idx].time,
                kind=kind,
                direction=direction,
                price=fill_price(bars, signal, sig_idx, exec_idx, settings),
                reason=signal.reason,
                order=order,
                signal_index=sig_idx,
            ))

    events.sort(key=lambda e: (time_key(e.time), e.order))
    return events


# ──────────────────────────────────────────────
# Confirmation strategies
# ──────────────────────────────────────────────

def build_confirmation_states(bars: Sequence[Bar], confirmations) -> List[np.ndarray]:
    """
    Per-bar direction state for each confirming strategy.

    `confirmations` is a sequence of (strategy, params) pairs. A state holds
    +1 from a buy onwards, -1 from a sell onwards, 0 before the first signal.
    A strategy that raises is skipped.
    """
    n = len(bars)
    if n == 0:
        return []
    time_index = build_time_index(bars)
    states: List[np.ndarray] = []

    for strategy, params in confirmations:
        try:
            sigs = strategy.execute(bars, params if params is not None else dict(strategy.default_params))
        except Exception as exc:  # noqa: BLE001
            log_event("WARN", "signals", f"confirmation strategy {getattr(strategy, 'name', strategy)} failed: {exc}")
            continue

        marks = []
        for order, s in enumerate(sigs):
            idx = resolve_signal_index(s, time_index, n)
            if idx is None:
                continue
            marks.append((idx, order, 1 if str(s.type).lower() == SignalType.BUY else -1))
        marks.sort()

        state = np.zeros(n, dtype=np.int8)
        current = 0
        cursor = 0
        for i in range(n):
            while cursor < len(marks) and marks[cursor][0] == i:
                current = marks[cursor][2]
                cursor += 1
            state[i] = current
        states.append(state)

    return states


def filter_signals_with_confirmations(bars: Sequence[Bar],
                                      signals: Sequence[Signal],
                                      states: Sequence[np.ndarray],
                                      trade_filter_mode: str,
                                      trade_direction: str) -> List[Signal]:
    """Keep an entry signal only if every confirmation state agrees with its direction."""
    if not states or not signals:
        return list(signals)

    n = len(bars)
    time_index = build_time_index(bars)
    both = trade_direction == "both"
    entry_type = SignalType.SELL if trade_direction == "short" else SignalType.BUY
    offset = 1 if trade_filter_mode == "close" else 0

    kept: List[Signal] = []
    for s in signals:
        sig_type = str(s.type).lower()
        if not both and sig_type != entry_type:
            kept.append(s)
            continue
        idx = resolve_signal_index(s, time_index, n)
        if idx is None:
            kept.append(s)
            continue
        entry_idx = idx + offset
        if entry_idx >= n:
            continue
        required = 1 if sig_type == SignalType.BUY else -1
        if all(int(st[entry_idx]) == required for st in states):
            kept.append(s)
    return kept
