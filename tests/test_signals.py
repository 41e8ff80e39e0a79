from typing import List

import numpy as np

from backtest.config import BacktestSettings
from backtest.engine import Strategy
from backtest.signals import (
    ENTRY,
    EXIT,
    build_confirmation_states,
    filter_signals_with_confirmations,
    prepare_signals,
)
from backtest.types import LONG, SHORT, Bar, Signal, SignalType


def _bars(closes, spread=1.0):
    return [
        Bar(time=1_000 + i * 60, open=c - 0.5, high=c + spread, low=c - spread, close=c, volume=10.0)
        for i, c in enumerate(closes)
    ]


def _sig(bars, i, side, **kw):
    return Signal(time=bars[i].time, type=side, price=bars[i].close, **kw)


class _FixedSignals(Strategy):
    name = "fixed"
    default_params = {}

    def __init__(self, marks):
        self.marks = marks

    def execute(self, bars, params) -> List[Signal]:
        return [_sig(bars, i, side) for i, side in self.marks]


class _Broken(Strategy):
    name = "broken"

    def execute(self, bars, params):
        raise RuntimeError("boom")


def test_signal_close_uses_signal_price() -> None:
    bars = _bars([100.0] * 10)
    sig = Signal(time=bars[3].time, type=SignalType.BUY, price=101.25)
    events = prepare_signals(bars, [sig], BacktestSettings())
    assert len(events) == 1
    assert events[0].index == 3
    assert events[0].kind == ENTRY
    assert events[0].price == 101.25


def test_next_open_shift_and_last_bar_drop() -> None:
    bars = _bars(np.arange(100.0, 110.0))
    settings = BacktestSettings(execution_model="next_open")
    events = prepare_signals(bars, [_sig(bars, 2, SignalType.BUY), _sig(bars, 9, SignalType.BUY)], settings)
    assert [e.index for e in events] == [3]
    assert events[0].price == bars[3].open


def test_unresolvable_and_unknown_signals_are_dropped() -> None:
    bars = _bars([100.0] * 5)
    signals = [
        Signal(time=999_999, type=SignalType.BUY, price=1.0),
        Signal(time=bars[1].time, type="hold", price=1.0),
        Signal(time=bars[2].time, type="BUY", price=1.0),
    ]
    events = prepare_signals(bars, signals, BacktestSettings())
    assert [e.index for e in events] == [2]


def test_explicit_bar_index_wins() -> None:
    bars = _bars([100.0] * 5)
    sig = Signal(time=bars[0].time, type=SignalType.BUY, price=1.0, bar_index=4)
    assert prepare_signals(bars, [sig], BacktestSettings())[0].index == 4


def test_close_confirmation_filter() -> None:
    rising = _bars(np.arange(100.0, 120.0, 2.0))
    settings = BacktestSettings(trade_filter_mode="close")
    events = prepare_signals(rising, [_sig(rising, 3, SignalType.BUY)], settings)
    assert [e.index for e in events] == [4]

    flat = _bars([100.0] * 10)
    assert prepare_signals(flat, [_sig(flat, 3, SignalType.BUY)], settings) == []


def test_exits_bypass_filters() -> None:
    flat = _bars([100.0] * 10)
    settings = BacktestSettings(trade_filter_mode="close")
    events = prepare_signals(flat, [_sig(flat, 3, SignalType.SELL)], settings)
    assert [(e.index, e.kind) for e in events] == [(3, EXIT)]


def test_trend_regime_blocks_counter_trend_entries() -> None:
    falling = _bars(np.linspace(150.0, 100.0, 40))
    settings = BacktestSettings(trend_ema_period=10)
    assert prepare_signals(falling, [_sig(falling, 30, SignalType.BUY)], settings) == []

    short_settings = BacktestSettings(trend_ema_period=10, trade_direction="short")
    events = prepare_signals(falling, [_sig(falling, 30, SignalType.SELL)], short_settings)
    assert [(e.direction, e.kind) for e in events] == [(SHORT, ENTRY)]


def test_both_direction_routes_each_signal_to_both_books() -> None:
    bars = _bars([100.0] * 10)
    settings = BacktestSettings(trade_direction="both")
    events = prepare_signals(bars, [_sig(bars, 2, SignalType.BUY)], settings)
    assert {(e.direction, e.kind) for e in events} == {(LONG, ENTRY), (SHORT, EXIT)}


def test_events_sorted_by_time_then_emission_order() -> None:
    bars = _bars([100.0] * 10)
    signals = [_sig(bars, 5, SignalType.SELL), _sig(bars, 2, SignalType.BUY), _sig(bars, 5, SignalType.BUY)]
    events = prepare_signals(bars, signals, BacktestSettings())
    assert [(e.index, e.order) for e in events] == [(2, 1), (5, 0), (5, 2)]


def test_confirmation_states_and_filter() -> None:
    bars = _bars([100.0] * 12)
    confirm = _FixedSignals([(3, SignalType.BUY), (7, SignalType.SELL)])
    states = build_confirmation_states(bars, [(confirm, None), (_Broken(), {})])
    assert len(states) == 1
    assert states[0].tolist() == [0, 0, 0, 1, 1, 1, 1, -1, -1, -1, -1, -1]

    signals = [_sig(bars, 5, SignalType.BUY), _sig(bars, 8, SignalType.BUY), _sig(bars, 9, SignalType.SELL)]
    kept = filter_signals_with_confirmations(bars, signals, states, "none", "long")
    assert [s.time for s in kept] == [bars[5].time, bars[9].time]

    both = filter_signals_with_confirmations(bars, signals, states, "none", "both")
    assert [s.time for s in both] == [bars[5].time, bars[9].time]

    shifted = filter_signals_with_confirmations(bars, [_sig(bars, 6, SignalType.BUY)], states, "close", "long")
    assert shifted == []


def test_volume_confirmation_filter() -> None:
    bars = [
        Bar(time=1_000 + i * 60, open=100.0, high=101.0, low=99.0, close=100.0, volume=30.0 if i == 25 else 10.0)
        for i in range(40)
    ]
    settings = BacktestSettings(trade_filter_mode="volume", volume_sma_period=5, volume_multiplier=1.5)
    signals = [_sig(bars, 2, SignalType.BUY), _sig(bars, 20, SignalType.BUY), _sig(bars, 25, SignalType.BUY)]
    # sma at 25 is (4 * 10 + 30) / 5 = 14, and 30 >= 21; bar 2 is still warming up
    assert [e.index for e in prepare_signals(bars, signals, settings)] == [25]


def test_rsi_confirmation_filter() -> None:
    rising = _bars(np.arange(100.0, 140.0))
    falling = _bars(np.arange(140.0, 100.0, -1.0))
    long_rsi = BacktestSettings(trade_filter_mode="rsi")
    short_rsi = BacktestSettings(trade_filter_mode="rsi", trade_direction="short")

    assert [e.index for e in prepare_signals(rising, [_sig(rising, 20, SignalType.BUY)], long_rsi)] == [20]
    assert prepare_signals(rising, [_sig(rising, 5, SignalType.BUY)], long_rsi) == []
    assert prepare_signals(falling, [_sig(falling, 20, SignalType.BUY)], long_rsi) == []

    assert [e.index for e in prepare_signals(falling, [_sig(falling, 20, SignalType.SELL)], short_rsi)] == [20]
    assert prepare_signals(rising, [_sig(rising, 20, SignalType.SELL)], short_rsi) == []
