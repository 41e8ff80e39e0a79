"""
Core backtest engine (bar-based).

Replays bars, turns scheduled signal events into positions, manages exits
(stop-loss, take-profit, partial take-profit, time stop, break-even, ATR
trailing stop), tracks mark-to-market equity and hands trades/equity to a
statistics sink.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np

from backtest.config import (
    BacktestSettings,
    CapitalSettings,
    StatsConfig,
    normalize_capital,
    normalize_settings,
)
from backtest.indicators import IndicatorCache, PriceSeries
from backtest.metrics import BacktestResult, RunningStats, TradeLedger
from backtest.signals import (
    ENTRY,
    EXIT,
    FilterIndicators,
    ScheduledEvent,
    book_directions,
    compute_filter_indicators,
    prepare_signals,
)
from backtest.types import LONG, Bar, ExitReason, Signal, SignalType, TimeValue, direction_name


# ──────────────────────────────────────────────
# Strategy interface
# ──────────────────────────────────────────────

class Strategy(ABC):
    """Signal generator: a pure function of bars and parameters."""

    name: str = "base"
    default_params: Dict[str, Any] = {}
    # Names tunable by walk-forward; None means every numeric default.
    walk_forward_params: Optional[List[str]] = None

    @abstractmethod
    def execute(self, bars: Sequence[Bar], params: Mapping[str, Any]) -> List[Signal]:
        ...


# ──────────────────────────────────────────────
# Position state
# ──────────────────────────────────────────────

class Flat:
    """No open position."""

    def __repr__(self) -> str:
        return "FLAT"


FLAT = Flat()


@dataclass
class OpenPosition:
    direction: int                  # +1 long, -1 short
    entry_time: TimeValue
    entry_index: int
    entry_price: float
    size: float
    entry_commission_per_share: float
    risk_per_share: float
    stop_price: Optional[float]
    target_price: Optional[float]
    partial_target_price: Optional[float]
    extreme_price: float
    partial_taken: bool = False
    break_even_applied: bool = False
    bars_held: int = 0


PositionState = Union[Flat, OpenPosition]


class _Book:
    """One direction's capital and position. 'both' runs a long and a short book."""

    def __init__(self, direction: int, capital: float, events: List[ScheduledEvent]):
        self.direction = direction
        self.capital = capital
        self.state: PositionState = FLAT
        self.events = events
        self.cursor = 0

    @property
    def position(self) -> Optional[OpenPosition]:
        return self.state if isinstance(self.state, OpenPosition) else None

    def mark(self, close: float) -> float:
        pos = self.position
        if pos is None:
            return self.capital
        return self.capital + (close - pos.entry_price) * pos.size * pos.direction


def apply_slippage(price: float, side: str, rate: float) -> float:
    """Move a fill against the trader: buys fill higher, sells lower."""
    if rate <= 0:
        return price
    return price * (1 + rate) if side == SignalType.BUY else price * (1 - rate)


def _entry_side(direction: int) -> str:
    return SignalType.BUY if direction == LONG else SignalType.SELL


def _exit_side(direction: int) -> str:
    return SignalType.SELL if direction == LONG else SignalType.BUY


class PositionSimulator:
    """
    Per-bar state machine over one or two books.

    Each bar runs, in order: bars-held increment, stop-loss, take-profit,
    partial take-profit, time stop, break-even + trailing stop + extreme
    tracker, then the events scheduled on that bar. Every exit check only
    runs while the book is still open.
    """

    def __init__(self,
                 bars: Sequence[Bar],
                 signals: Sequence[Signal],
                 capital: CapitalSettings,
                 settings: BacktestSettings,
                 stats_cfg: Optional[StatsConfig] = None,
                 series: Optional[PriceSeries] = None,
                 cache: Optional[IndicatorCache] = None):
        self.bars = bars
        self.signals = signals
        self.capital = capital
        self.settings = settings
        self.stats_cfg = stats_cfg
        self.series = series
        self.cache = cache
        self.commission_rate = capital.commission_rate
        self.slippage_rate = settings.slippage_rate

    # ── sizing / entries ──────────────────────

    def _allocation(self, book: _Book) -> float:
        cap = self.capital
        if cap.sizing_mode == "fixed" and cap.fixed_trade_amount > 0:
            return cap.fixed_trade_amount
        return book.capital * (cap.position_size / 100.0)

    def _open(self, book: _Book, event: ScheduledEvent, atr_value: Optional[float]) -> None:
        cfg = self.settings
        if cfg.requires_atr_for_entry and atr_value is None:
            return

        allocated = self._allocation(book)
        if not math.isfinite(allocated) or allocated <= 0:
            return

        d = book.direction
        trade_value = allocated / (1 + self.commission_rate)
        entry_commission = trade_value * self.commission_rate
        entry = apply_slippage(event.price, _entry_side(d), self.slippage_rate)
        if not math.isfinite(entry) or entry <= 0 or not math.isfinite(trade_value) or trade_value <= 0:
            return
        shares = trade_value / entry
        if not math.isfinite(shares) or shares <= 0:
            return

        stop = None
        target = None
        if atr_value is not None:
            if cfg.stop_loss_atr > 0:
                stop = entry - d * cfg.stop_loss_atr * atr_value
            elif cfg.trailing_atr > 0:
                stop = entry - d * cfg.trailing_atr * atr_value
            if cfg.take_profit_atr > 0:
                target = entry + d * cfg.take_profit_atr * atr_value

        risk = 0.0
        if cfg.risk_mode == "percentage":
            if cfg.stop_loss_enabled and cfg.stop_loss_percent > 0:
                risk = entry * cfg.stop_loss_percent / 100.0
        elif atr_value is not None and cfg.stop_loss_atr > 0:
            risk = cfg.stop_loss_atr * atr_value

        partial_target = None
        if risk > 0 and cfg.partial_take_profit_at_r > 0:
            partial_target = entry + d * risk * cfg.partial_take_profit_at_r

        if cfg.risk_mode == "percentage":
            if cfg.stop_loss_enabled and cfg.stop_loss_percent > 0:
                stop = entry * (1 - d * cfg.stop_loss_percent / 100.0)
            if cfg.take_profit_enabled and cfg.take_profit_percent > 0:
                target = entry * (1 + d * cfg.take_profit_percent / 100.0)

        book.state = OpenPosition(
            direction=d,
            entry_time=event.time,
            entry_index=event.index,
            entry_price=entry,
            size=shares,
            entry_commission_per_share=entry_commission / shares,
            risk_per_share=risk,
            stop_price=stop,
            target_price=target,
            partial_target_price=partial_target,
            extreme_price=entry,
        )
        book.capital -= entry_commission

    # ── exits ─────────────────────────────────

    def _exit(self, book: _Book, pos: OpenPosition, raw_price: float, size: float,
              time: TimeValue, reason: str, sink) -> None:
        price = apply_slippage(raw_price, _exit_side(pos.direction), self.slippage_rate)
        size = min(size, pos.size)
        exit_value = size * price
        entry_value = size * pos.entry_price
        commission = exit_value * self.commission_rate
        entry_commission = pos.entry_commission_per_share * size

        raw_pnl = (exit_value - entry_value) * pos.direction
        pnl = raw_pnl - entry_commission - commission
        pnl_percent = raw_pnl / entry_value * 100.0 if entry_value > 0 else 0.0

        sink.record_trade(
            direction_name(pos.direction), pos.entry_time, pos.entry_price,
            time, price, size, pnl, pnl_percent, entry_commission + commission, reason,
        )

        book.capital += raw_pnl - commission
        pos.size -= size
        if pos.size <= 0:
            book.state = FLAT

    def _manage_open(self, book: _Book, pos: OpenPosition, bar: Bar,
                     atr_value: Optional[float], sink) -> None:
        cfg = self.settings
        d = pos.direction
        is_long = d == LONG

        if pos.stop_price is not None:
            hit = bar.low <= pos.stop_price if is_long else bar.high >= pos.stop_price
            if hit:
                self._exit(book, pos, pos.stop_price, pos.size, bar.time, ExitReason.STOP_LOSS, sink)
                return

        if pos.target_price is not None:
            hit = bar.high >= pos.target_price if is_long else bar.low <= pos.target_price
            if hit:
                self._exit(book, pos, pos.target_price, pos.size, bar.time, ExitReason.TAKE_PROFIT, sink)
                return

        if (not pos.partial_taken and pos.partial_target_price is not None
                and cfg.partial_take_profit_percent > 0):
            hit = bar.high >= pos.partial_target_price if is_long else bar.low <= pos.partial_target_price
            if hit:
                part = pos.size * cfg.partial_take_profit_percent / 100.0
                self._exit(book, pos, pos.partial_target_price, part, bar.time, ExitReason.PARTIAL, sink)
                pos.partial_taken = True
                if book.position is None:
                    return

        if cfg.time_stop_bars > 0 and pos.bars_held >= cfg.time_stop_bars and not pos.partial_taken:
            losing = bar.close <= pos.entry_price if is_long else bar.close >= pos.entry_price
            if losing:
                self._exit(book, pos, bar.close, pos.size, bar.time, ExitReason.TIME_STOP, sink)
                return

        if atr_value is not None:
            if cfg.break_even_at_r > 0 and not pos.break_even_applied and pos.risk_per_share > 0:
                trigger = pos.entry_price + d * pos.risk_per_share * cfg.break_even_at_r
                reached = bar.high >= trigger if is_long else bar.low <= trigger
                if reached:
                    if pos.stop_price is None:
                        pos.stop_price = pos.entry_price
                    elif is_long:
                        pos.stop_price = max(pos.stop_price, pos.entry_price)
                    else:
                        pos.stop_price = min(pos.stop_price, pos.entry_price)
                    pos.break_even_applied = True

            if cfg.trailing_atr > 0:
                trail = pos.extreme_price - d * atr_value * cfg.trailing_atr
                if pos.stop_price is None or (trail > pos.stop_price if is_long else trail < pos.stop_price):
                    pos.stop_price = trail

        pos.extreme_price = max(pos.extreme_price, bar.high) if is_long else min(pos.extreme_price, bar.low)

    def _process_events(self, book: _Book, i: int, bar: Bar, atr_value: Optional[float], sink) -> None:
        events = book.events
        while book.cursor < len(events) and events[book.cursor].index < i:
            book.cursor += 1
        while book.cursor < len(events) and events[book.cursor].index == i:
            event = events[book.cursor]
            book.cursor += 1
            pos = book.position
            if event.kind == ENTRY:
                if pos is None:
                    self._open(book, event, atr_value)
            elif event.kind == EXIT and pos is not None:
                if not self.settings.allow_same_bar_exit and pos.entry_index == i:
                    continue
                self._exit(book, pos, event.price, pos.size, bar.time, ExitReason.SIGNAL, sink)

    # ── main loop ─────────────────────────────

    def run(self, sink) -> BacktestResult:
        initial = self.capital.initial_capital
        bars = self.bars
        n = len(bars)
        if n == 0:
            return sink.finalize(initial, initial, self.stats_cfg)

        series = self.series or PriceSeries.from_bars(bars)
        indicators: FilterIndicators = compute_filter_indicators(series, self.settings, self.cache)
        events = prepare_signals(bars, self.signals, self.settings, series=series, indicators=indicators)
        books = [
            _Book(d, initial, [e for e in events if e.direction == d])
            for d in book_directions(self.settings)
        ]
        offset = (len(books) - 1) * initial
        atr_arr = indicators.atr

        for i, bar in enumerate(bars):
            a = float(atr_arr[i]) if i < len(atr_arr) else math.nan
            atr_value = None if np.isnan(a) else a

            for book in books:
                pos = book.position
                if pos is not None:
                    pos.bars_held += 1
                    self._manage_open(book, pos, bar, atr_value, sink)
                self._process_events(book, i, bar, atr_value, sink)

            if i == n - 1:
                for book in books:
                    pos = book.position
                    if pos is not None:
                        self._exit(book, pos, bar.close, pos.size, bar.time, ExitReason.END_OF_DATA, sink)
                equity = sum(b.capital for b in books) - offset
            else:
                equity = sum(b.mark(bar.close) for b in books) - offset
            sink.record_equity(bar.time, equity)

        final_capital = sum(b.capital for b in books) - offset
        return sink.finalize(initial, final_capital, self.stats_cfg)


def _resolve_inputs(capital, settings):
    return normalize_capital(capital), normalize_settings(settings)


def run_backtest(bars: Sequence[Bar],
                 signals: Sequence[Signal],
                 capital: Union[CapitalSettings, Mapping[str, Any], None] = None,
                 settings: Union[BacktestSettings, Mapping[str, Any], None] = None,
                 stats_cfg: Optional[StatsConfig] = None,
                 series: Optional[PriceSeries] = None,
                 cache: Optional[IndicatorCache] = None) -> BacktestResult:
    """Full backtest: result carries every trade and one equity point per bar."""
    cap, cfg = _resolve_inputs(capital, settings)
    sim = PositionSimulator(bars, signals, cap, cfg, stats_cfg, series, cache)
    return sim.run(TradeLedger())


def run_backtest_compact(bars: Sequence[Bar],
                         signals: Sequence[Signal],
                         capital: Union[CapitalSettings, Mapping[str, Any], None] = None,
                         settings: Union[BacktestSettings, Mapping[str, Any], None] = None,
                         stats_cfg: Optional[StatsConfig] = None,
                         series: Optional[PriceSeries] = None,
                         cache: Optional[IndicatorCache] = None) -> BacktestResult:
    """Same scalars as run_backtest without materializing trades or the equity curve."""
    cap, cfg = _resolve_inputs(capital, settings)
    sim = PositionSimulator(bars, signals, cap, cfg, stats_cfg, series, cache)
    return sim.run(RunningStats(cap.initial_capital))
