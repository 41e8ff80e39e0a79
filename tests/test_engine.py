import numpy as np
import pytest

from backtest.config import BacktestSettings, CapitalSettings
from backtest.engine import run_backtest, run_backtest_compact
from backtest.indicators import atr
from backtest.strategy_registry import SMACrossoverStrategy
from backtest.types import Bar, ExitReason, Signal, SignalType

T0 = 1_700_000_000


def _flat_bars(n=300, price=100.0, spread=2.5):
    return [
        Bar(time=T0 + i * 3600, open=price, high=price + spread, low=price - spread, close=price, volume=1.0)
        for i in range(n)
    ]


def _with_bar(bars, i, **fields):
    b = bars[i]
    values = {"time": b.time, "open": b.open, "high": b.high, "low": b.low, "close": b.close, "volume": b.volume}
    values.update(fields)
    out = list(bars)
    out[i] = Bar(**values)
    return out


def _sig(bars, i, side, price):
    return Signal(time=bars[i].time, type=side, price=price)


def _random_walk(n=600, seed=7):
    rng = np.random.default_rng(seed)
    closes = 100 * np.exp(np.cumsum(rng.normal(0, 0.01, n)))
    bars = []
    for i, c in enumerate(closes):
        o = closes[i - 1] if i else c
        hi = max(o, c) * (1 + abs(rng.normal(0, 0.003)))
        lo = min(o, c) * (1 - abs(rng.normal(0, 0.003)))
        bars.append(Bar(time=T0 + i * 3600, open=float(o), high=float(hi), low=float(lo), close=float(c), volume=1000.0))
    return bars


NO_COSTS = CapitalSettings(initial_capital=10_000.0, position_size=100.0, commission_percent=0.0)


def test_zero_signals_flat_result() -> None:
    bars = _flat_bars(50)
    r = run_backtest(bars, [])
    assert r.total_trades == 0
    assert r.net_profit == 0.0
    assert r.sharpe_ratio == 0.0
    assert r.profit_factor == 0.0
    assert len(r.equity_curve) == 50
    assert all(p.value == 10_000.0 for p in r.equity_curve)


def test_end_to_end_single_winning_trade() -> None:
    bars = _flat_bars(300)
    signals = [_sig(bars, 10, SignalType.BUY, 100.0), _sig(bars, 50, SignalType.SELL, 120.0)]
    r = run_backtest(bars, signals, {"initial_capital": 10_000, "position_size": 100, "commission_percent": 0.1})

    trade_value = 10_000.0 / 1.001
    expected = trade_value * (0.2 - 0.001 - 0.0012)
    assert r.total_trades == 1
    assert r.winning_trades == 1
    assert r.net_profit == pytest.approx(expected)
    assert r.trades[0].pnl == pytest.approx(expected)
    assert r.trades[0].fees == pytest.approx(trade_value * 0.001 + trade_value * 1.2 * 0.001)
    assert r.equity_curve[-1].value == pytest.approx(10_000.0 + expected)
    assert 0.0 <= r.max_drawdown_percent <= 100.0


def test_open_position_closed_at_last_bar() -> None:
    bars = [
        Bar(time=T0 + i * 60, open=100.0 + i, high=101.0 + i, low=99.0 + i, close=100.0 + i)
        for i in range(30)
    ]
    r = run_backtest(bars, [_sig(bars, 5, SignalType.BUY, 105.0)], NO_COSTS)
    assert r.total_trades == 1
    t = r.trades[0]
    assert t.exit_reason == ExitReason.END_OF_DATA
    assert t.exit_price == pytest.approx(bars[-1].close)
    assert t.exit_time == bars[-1].time
    assert r.equity_curve[-1].value == pytest.approx(10_000.0 + t.pnl)


def test_atr_stop_loss_exit() -> None:
    bars = _with_bar(_flat_bars(60), 25, low=89.0)
    settings = BacktestSettings(stop_loss_atr=2.0)
    r = run_backtest(bars, [_sig(bars, 20, SignalType.BUY, 100.0)], NO_COSTS, settings)
    assert r.total_trades == 1
    t = r.trades[0]
    assert t.exit_reason == ExitReason.STOP_LOSS
    assert t.exit_price == pytest.approx(90.0)
    assert t.exit_time == bars[25].time


def test_stop_exit_is_slipped() -> None:
    bars = _with_bar(_flat_bars(60), 25, low=89.0)
    settings = BacktestSettings(stop_loss_atr=2.0, slippage_bps=10.0)
    r = run_backtest(bars, [_sig(bars, 20, SignalType.BUY, 100.0)], NO_COSTS, settings)
    t = r.trades[0]
    assert t.entry_price == pytest.approx(100.0 * 1.001)
    assert t.exit_price == pytest.approx((100.0 * 1.001 - 10.0) * 0.999)


def test_entry_skipped_without_atr_warmup() -> None:
    bars = _flat_bars(60)
    settings = BacktestSettings(stop_loss_atr=2.0)
    r = run_backtest(bars, [_sig(bars, 5, SignalType.BUY, 100.0)], NO_COSTS, settings)
    assert r.total_trades == 0


def test_take_profit_exit() -> None:
    bars = _with_bar(_flat_bars(60), 25, high=111.0)
    settings = BacktestSettings(take_profit_atr=2.0)
    r = run_backtest(bars, [_sig(bars, 20, SignalType.BUY, 100.0)], NO_COSTS, settings)
    t = r.trades[0]
    assert t.exit_reason == ExitReason.TAKE_PROFIT
    assert t.exit_price == pytest.approx(110.0)


def test_partial_take_profit_then_end_of_data() -> None:
    bars = _with_bar(_flat_bars(60), 25, high=111.0)
    settings = BacktestSettings(stop_loss_atr=2.0, partial_take_profit_at_r=1.0, partial_take_profit_percent=50.0)
    r = run_backtest(bars, [_sig(bars, 20, SignalType.BUY, 100.0)], NO_COSTS, settings)
    assert [t.exit_reason for t in r.trades] == [ExitReason.PARTIAL, ExitReason.END_OF_DATA]
    assert r.trades[0].exit_price == pytest.approx(110.0)
    assert r.trades[0].size == pytest.approx(r.trades[1].size)


def test_time_stop_exits_losing_position() -> None:
    bars = _flat_bars(40)
    settings = BacktestSettings(time_stop_bars=5)
    r = run_backtest(bars, [_sig(bars, 10, SignalType.BUY, 100.0)], NO_COSTS, settings)
    t = r.trades[0]
    assert t.exit_reason == ExitReason.TIME_STOP
    assert t.exit_time == bars[15].time


def test_same_bar_exit_flag() -> None:
    bars = _flat_bars(40)
    signals = [_sig(bars, 10, SignalType.BUY, 100.0), _sig(bars, 10, SignalType.SELL, 100.0)]

    allowed = run_backtest(bars, signals, NO_COSTS, BacktestSettings(allow_same_bar_exit=True))
    assert allowed.trades[0].exit_reason == ExitReason.SIGNAL
    assert allowed.trades[0].exit_time == bars[10].time

    blocked = run_backtest(bars, signals, NO_COSTS, BacktestSettings(allow_same_bar_exit=False))
    assert blocked.trades[0].exit_reason == ExitReason.END_OF_DATA


def test_next_open_execution() -> None:
    bars = [
        Bar(time=T0 + i * 60, open=99.5 + i, high=101.0 + i, low=99.0 + i, close=100.0 + i)
        for i in range(30)
    ]
    r = run_backtest(bars, [_sig(bars, 5, SignalType.BUY, 105.0)], NO_COSTS,
                     BacktestSettings(execution_model="next_open"))
    assert r.trades[0].entry_price == pytest.approx(bars[6].open)
    assert r.trades[0].entry_time == bars[6].time


def test_short_direction_profits_on_decline() -> None:
    bars = _flat_bars(80)
    signals = [_sig(bars, 10, SignalType.SELL, 100.0), _sig(bars, 50, SignalType.BUY, 80.0)]
    r = run_backtest(bars, signals, NO_COSTS, BacktestSettings(trade_direction="short"))
    assert r.total_trades == 1
    assert r.trades[0].direction == "short"
    assert r.net_profit == pytest.approx(10_000.0 * 0.2)


def test_both_directions_run_two_books() -> None:
    bars = _flat_bars(80)
    signals = [_sig(bars, 10, SignalType.BUY, 100.0), _sig(bars, 50, SignalType.SELL, 120.0)]
    r = run_backtest(bars, signals, NO_COSTS, BacktestSettings(trade_direction="both"))
    assert r.total_trades == 2
    assert sorted(t.direction for t in r.trades) == ["long", "short"]
    assert r.net_profit == pytest.approx(sum(t.pnl for t in r.trades))
    assert r.equity_curve[0].value == pytest.approx(10_000.0)


def test_fixed_sizing() -> None:
    bars = _flat_bars(80)
    signals = [_sig(bars, 10, SignalType.BUY, 100.0), _sig(bars, 50, SignalType.SELL, 110.0)]
    cap = CapitalSettings(commission_percent=0.0, sizing_mode="fixed", fixed_trade_amount=1_000.0)
    r = run_backtest(bars, signals, cap)
    assert r.trades[0].size == pytest.approx(10.0)
    assert r.net_profit == pytest.approx(100.0)


def test_compact_matches_full_and_is_deterministic() -> None:
    bars = _random_walk()
    signals = SMACrossoverStrategy().execute(bars, {"fast_period": 5, "slow_period": 20})
    assert signals
    settings = BacktestSettings(stop_loss_atr=2.0, trailing_atr=3.0, break_even_at_r=1.0,
                                trade_direction="both", slippage_bps=2.0)
    capital = {"commission_percent": 0.05}

    full = run_backtest(bars, signals, capital, settings)
    again = run_backtest(bars, signals, capital, settings)
    compact = run_backtest_compact(bars, signals, capital, settings)

    assert full.as_dict() == again.as_dict()
    assert full.total_trades > 0
    for key, value in full.as_dict().items():
        assert getattr(compact, key) == pytest.approx(value), key
    assert 0.0 <= full.max_drawdown_percent <= 100.0


def test_short_drawdown_percent_capped_when_equity_goes_negative() -> None:
    bars = _flat_bars(11) + [
        Bar(time=T0 + i * 3600, open=c, high=c + 2.5, low=c - 2.5, close=c, volume=1.0)
        for i, c in zip(range(11, 31), np.linspace(110.0, 300.0, 20))
    ]
    signals = [_sig(bars, 10, SignalType.SELL, 100.0)]
    settings = BacktestSettings(trade_direction="short")

    full = run_backtest(bars, signals, NO_COSTS, settings)
    compact = run_backtest_compact(bars, signals, NO_COSTS, settings)
    assert full.final_equity == pytest.approx(-10_000.0)
    assert full.max_drawdown == pytest.approx(20_000.0)
    assert full.max_drawdown_percent == 100.0
    assert compact.max_drawdown_percent == 100.0
    assert compact.max_drawdown == pytest.approx(full.max_drawdown)


def test_break_even_moves_stop_to_entry() -> None:
    bars = _with_bar(_flat_bars(60), 25, high=111.0)
    signals = [_sig(bars, 20, SignalType.BUY, 100.0)]

    r = run_backtest(bars, signals, NO_COSTS, BacktestSettings(stop_loss_atr=2.0, break_even_at_r=1.0))
    t = r.trades[0]
    assert t.exit_reason == ExitReason.STOP_LOSS
    assert t.exit_price == pytest.approx(100.0)
    assert t.exit_time == bars[26].time
    assert t.pnl == pytest.approx(0.0)

    not_reached = run_backtest(bars, signals, NO_COSTS, BacktestSettings(stop_loss_atr=2.0, break_even_at_r=1.5))
    assert not_reached.trades[0].exit_reason == ExitReason.END_OF_DATA


def test_trailing_stop_follows_extreme_price() -> None:
    bars = _with_bar(_flat_bars(60), 25, high=120.0)
    r = run_backtest(bars, [_sig(bars, 20, SignalType.BUY, 100.0)], NO_COSTS, BacktestSettings(trailing_atr=2.0))
    atr_arr = atr(np.array([b.high for b in bars]), np.array([b.low for b in bars]),
                  np.array([b.close for b in bars]), 14)
    t = r.trades[0]
    assert t.exit_reason == ExitReason.STOP_LOSS
    assert t.exit_time == bars[27].time
    assert t.exit_price == pytest.approx(120.0 - 2.0 * atr_arr[26])


def test_trailing_stop_never_loosens() -> None:
    # bar 25 widens ATR, which would pull a recomputed trail below the 92.5 stop
    bars = _with_bar(_flat_bars(60), 25, low=93.0)
    bars = _with_bar(bars, 26, low=92.0)
    r = run_backtest(bars, [_sig(bars, 20, SignalType.BUY, 100.0)], NO_COSTS, BacktestSettings(trailing_atr=2.0))
    t = r.trades[0]
    assert t.exit_reason == ExitReason.STOP_LOSS
    assert t.exit_time == bars[26].time
    assert t.exit_price == pytest.approx(92.5)


def test_percentage_risk_mode_stop_and_target() -> None:
    pct = dict(risk_mode="percentage", stop_loss_enabled=True, stop_loss_percent=5.0,
               take_profit_enabled=True, take_profit_percent=10.0)
    signals_at = 20

    stopped = _with_bar(_flat_bars(60), 25, low=94.0)
    r = run_backtest(stopped, [_sig(stopped, signals_at, SignalType.BUY, 100.0)], NO_COSTS, BacktestSettings(**pct))
    assert r.trades[0].exit_reason == ExitReason.STOP_LOSS
    assert r.trades[0].exit_price == pytest.approx(95.0)

    target = _with_bar(_flat_bars(60), 25, high=111.0)
    r = run_backtest(target, [_sig(target, signals_at, SignalType.BUY, 100.0)], NO_COSTS, BacktestSettings(**pct))
    assert r.trades[0].exit_reason == ExitReason.TAKE_PROFIT
    assert r.trades[0].exit_price == pytest.approx(110.0)


def test_percentage_risk_sets_partial_target_from_risk_per_share() -> None:
    bars = _with_bar(_flat_bars(60), 25, high=106.0)
    settings = BacktestSettings(risk_mode="percentage", stop_loss_enabled=True, stop_loss_percent=5.0,
                                partial_take_profit_at_r=1.0, partial_take_profit_percent=50.0)
    r = run_backtest(bars, [_sig(bars, 20, SignalType.BUY, 100.0)], NO_COSTS, settings)
    assert [t.exit_reason for t in r.trades] == [ExitReason.PARTIAL, ExitReason.END_OF_DATA]
    assert r.trades[0].exit_price == pytest.approx(105.0)
