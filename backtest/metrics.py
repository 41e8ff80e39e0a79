"""
Performance statistics for backtest results.

Two aggregators consume the same trade/equity stream emitted by the
simulator:
- TradeLedger keeps every Trade and EquityPoint and computes the summary in
  one batch pass (full variant);
- RunningStats keeps only running sums, a Welford mean/variance of trade
  returns and an online running-peak drawdown (compact variant).
Both produce the same scalars within floating tolerance.
"""

import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from backtest.config import StatsConfig
from backtest.timeutil import format_time
from backtest.types import EquityPoint, Trade, TimeValue


@dataclass
class BacktestResult:
    net_profit: float = 0.0
    net_profit_percent: float = 0.0
    win_rate: float = 0.0               # percent, 0..100
    expectancy: float = 0.0
    avg_trade: float = 0.0
    profit_factor: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_percent: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    sharpe_ratio: float = 0.0
    trades: List[Trade] = field(default_factory=list)
    equity_curve: List[EquityPoint] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if k not in ("trades", "equity_curve")}

    @property
    def final_equity(self) -> Optional[float]:
        return self.equity_curve[-1].value if self.equity_curve else None

    def summary(self) -> str:
        lines = [
            "=== Backtest Results ===",
            f"  Net Profit:     ${self.net_profit:,.2f} ({self.net_profit_percent:.2f}%)",
            f"  Sharpe:         {self.sharpe_ratio:.2f}",
            f"  Max Drawdown:   ${self.max_drawdown:,.2f} ({self.max_drawdown_percent:.2f}%)",
            "",
            f"  Trades:         {self.total_trades} ({self.winning_trades}W / {self.losing_trades}L)",
            f"  Win Rate:       {self.win_rate:.1f}%",
            f"  Avg Win:        ${self.avg_win:.2f}",
            f"  Avg Loss:       ${self.avg_loss:.2f}",
            f"  Avg Trade:      ${self.avg_trade:.2f}",
            f"  Profit Factor:  {self.profit_factor:.2f}",
            f"  Expectancy:     ${self.expectancy:.2f}",
        ]
        if self.trades:
            lines.append("")
            for t in self.trades[:20]:
                lines.append(
                    f"  #{t.id:<4} {t.direction:5s} {format_time(t.entry_time)} -> {format_time(t.exit_time)} "
                    f"pnl=${t.pnl:>+.2f} ({t.pnl_percent:+.2f}%) {t.exit_reason}"
                )
            if len(self.trades) > 20:
                lines.append(f"  ... {len(self.trades) - 20} more")
        return "\n".join(lines)


# ──────────────────────────────────────────────
# Building blocks
# ──────────────────────────────────────────────

def _safe_div(a: float, b: float, default: float = 0.0) -> float:
    return a / b if b != 0 else default


def sharpe_from_moments(mean: float, std: float, count: int, cfg: Optional[StatsConfig] = None) -> float:
    cfg = cfg or StatsConfig()
    if not math.isfinite(mean) or not math.isfinite(std):
        return 0.0
    if count < max(2, cfg.min_trades):
        return 0.0
    if std <= cfg.min_std or std <= 0:
        return 0.0
    raw = mean / std
    if not math.isfinite(raw):
        return 0.0
    if cfg.max_abs_sharpe is not None:
        raw = max(-cfg.max_abs_sharpe, min(cfg.max_abs_sharpe, raw))
    return float(raw)


def sharpe_ratio(returns: Sequence[float], cfg: Optional[StatsConfig] = None) -> float:
    """Per-trade Sharpe: mean / sample stddev of percent returns."""
    arr = np.asarray(list(returns), dtype=float)
    arr = arr[np.isfinite(arr)]
    if len(arr) < 2:
        return 0.0
    return sharpe_from_moments(float(np.mean(arr)), float(np.std(arr, ddof=1)), len(arr), cfg)


def max_drawdown(values: Sequence[float], initial_capital: float) -> Tuple[float, float]:
    """
    Largest peak-to-trough decline (absolute, percent of that peak).

    The running peak starts at initial capital; the percent is the one at the
    point of the largest absolute drawdown, capped at 100.
    """
    eq = np.asarray(list(values), dtype=float)
    if len(eq) == 0:
        return 0.0, 0.0
    peak = np.maximum.accumulate(np.concatenate(([initial_capital], eq)))[1:]
    dd = peak - eq
    idx = int(np.argmax(dd))
    worst = float(dd[idx])
    if worst <= 0:
        return 0.0, 0.0
    pct = min(100.0, worst / peak[idx] * 100.0) if peak[idx] > 0 else 0.0
    return worst, float(pct)


def _finish(result: BacktestResult, initial_capital: float, final_capital: float,
            total: int, wins: int, gross_profit: float, gross_loss: float) -> BacktestResult:
    losses = total - wins
    net = final_capital - initial_capital
    result.net_profit = net
    result.net_profit_percent = _safe_div(net, initial_capital) * 100.0 if initial_capital > 0 else 0.0
    result.total_trades = total
    result.winning_trades = wins
    result.losing_trades = losses
    result.avg_win = _safe_div(gross_profit, wins)
    result.avg_loss = _safe_div(gross_loss, losses)
    win_rate = _safe_div(wins, total)
    loss_rate = _safe_div(losses, total)
    result.win_rate = win_rate * 100.0
    result.expectancy = win_rate * result.avg_win - loss_rate * result.avg_loss
    result.avg_trade = _safe_div(net, total)
    if gross_loss > 0:
        result.profit_factor = gross_profit / gross_loss
    else:
        result.profit_factor = float("inf") if gross_profit > 0 else 0.0
    return result


def compute_backtest_stats(trades: List[Trade],
                           equity_curve: List[EquityPoint],
                           initial_capital: float,
                           final_capital: float,
                           stats_cfg: Optional[StatsConfig] = None,
                           drawdown: Optional[Tuple[float, float]] = None) -> BacktestResult:
    """
    Aggregate a full trade list and equity curve into a BacktestResult.

    Args:
        trades: Completed (possibly partial) exits, in close order
        equity_curve: One mark-to-market point per bar
        initial_capital: Starting capital of the run
        final_capital: Capital after all exits
        drawdown: Precomputed (abs, pct); computed from the curve when None
    """
    pnls = np.array([t.pnl for t in trades], dtype=float)
    wins = pnls[pnls > 0]
    losses = pnls[pnls <= 0]

    if drawdown is None:
        drawdown = max_drawdown([p.value for p in equity_curve], initial_capital)

    result = BacktestResult(trades=list(trades), equity_curve=list(equity_curve))
    result.max_drawdown, result.max_drawdown_percent = drawdown
    result.sharpe_ratio = sharpe_ratio([t.pnl_percent for t in trades], stats_cfg)
    return _finish(
        result, initial_capital, final_capital,
        total=len(pnls),
        wins=len(wins),
        gross_profit=float(np.sum(wins)) if len(wins) else 0.0,
        gross_loss=abs(float(np.sum(losses))) if len(losses) else 0.0,
    )


# ──────────────────────────────────────────────
# Simulator sinks
# ──────────────────────────────────────────────

class TradeLedger:
    """Full sink: materializes trades and the equity curve."""

    def __init__(self):
        self.trades: List[Trade] = []
        self.equity: List[EquityPoint] = []

    def record_trade(self, direction: str, entry_time: TimeValue, entry_price: float,
                     exit_time: TimeValue, exit_price: float, size: float,
                     pnl: float, pnl_percent: float, fees: float, exit_reason: str) -> None:
        self.trades.append(Trade(
            id=len(self.trades) + 1,
            direction=direction,
            entry_time=entry_time,
            entry_price=entry_price,
            exit_time=exit_time,
            exit_price=exit_price,
            size=size,
            pnl=pnl,
            pnl_percent=pnl_percent,
            fees=fees,
            exit_reason=exit_reason,
        ))

    def record_equity(self, time: TimeValue, value: float) -> None:
        self.equity.append(EquityPoint(time=time, value=value))

    def finalize(self, initial_capital: float, final_capital: float,
                 stats_cfg: Optional[StatsConfig] = None) -> BacktestResult:
        return compute_backtest_stats(self.trades, self.equity, initial_capital, final_capital, stats_cfg)


class RunningStats:
    """Compact sink: O(1) memory regardless of trade or bar count."""

    def __init__(self, initial_capital: float):
        self.initial_capital = initial_capital
        self.total = 0
        self.wins = 0
        self.gross_profit = 0.0
        self.gross_loss = 0.0
        # Welford over finite pnl_percent values
        self.n_returns = 0
        self.mean_return = 0.0
        self.m2 = 0.0
        # Online drawdown
        self.peak = initial_capital
        self.max_dd = 0.0
        self.max_dd_pct = 0.0

    def record_trade(self, direction: str, entry_time: TimeValue, entry_price: float,
                     exit_time: TimeValue, exit_price: float, size: float,
                     pnl: float, pnl_percent: float, fees: float, exit_reason: str) -> None:
        self.total += 1
        if pnl > 0:
            self.wins += 1
            self.gross_profit += pnl
        else:
            self.gross_loss += -pnl
        if math.isfinite(pnl_percent):
            self.n_returns += 1
            delta = pnl_percent - self.mean_return
            self.mean_return += delta / self.n_returns
            self.m2 += delta * (pnl_percent - self.mean_return)

    def record_equity(self, time: TimeValue, value: float) -> None:
        if value > self.peak:
            self.peak = value
        dd = self.peak - value
        if dd > self.max_dd:
            self.max_dd = dd
            self.max_dd_pct = min(100.0, dd / self.peak * 100.0) if self.peak > 0 else 0.0

    @property
    def std_return(self) -> float:
        return math.sqrt(self.m2 / (self.n_returns - 1)) if self.n_returns > 1 else 0.0

    def finalize(self, initial_capital: float, final_capital: float,
                 stats_cfg: Optional[StatsConfig] = None) -> BacktestResult:
        result = BacktestResult()
        result.max_drawdown = self.max_dd
        result.max_drawdown_percent = self.max_dd_pct
        result.sharpe_ratio = sharpe_from_moments(self.mean_return, self.std_return, self.n_returns, stats_cfg)
        return _finish(result, initial_capital, final_capital,
                       self.total, self.wins, self.gross_profit, self.gross_loss)
