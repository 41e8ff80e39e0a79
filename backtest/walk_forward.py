"""
Walk-forward analysis.

Splits bars into rolling optimization/test windows, grid-searches strategy
parameters on each optimization window, evaluates the selected parameters on
the following test window, and reports how well in-sample performance
carries over out-of-sample.

Out-of-sample capital compounds window to window (paper-live simulation);
in-sample runs always start from the initial capital.
"""

import itertools
import math
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np

from backtest.config import (
    BacktestSettings,
    CapitalSettings,
    OptimizerConfig,
    StatsConfig,
    normalize_capital,
    normalize_settings,
)
from backtest.engine import PositionSimulator, Strategy
from backtest.indicators import PriceSeries
from backtest.metrics import (
    BacktestResult,
    RunningStats,
    TradeLedger,
    compute_backtest_stats,
    max_drawdown,
)
from backtest.timeutil import time_key
from backtest.types import Bar, EquityPoint, Signal
from shared.logger import log_event


# phase, current, total. "combo" counts scored combinations; other phases count windows.
ProgressFn = Callable[[str, int, int], None]


# ──────────────────────────────────────────────
# Parameter ranges and grid
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class ParameterRange:
    name: str
    min: float
    max: float
    step: float

    def validate(self) -> None:
        for label, v in (("min", self.min), ("max", self.max), ("step", self.step)):
            if not isinstance(v, (int, float)) or not math.isfinite(v):
                raise ValueError(f"Parameter range '{self.name}': {label} must be finite, got {v!r}")
        if self.step <= 0:
            raise ValueError(f"Parameter range '{self.name}': step must be > 0, got {self.step}")
        if self.min >= self.max:
            raise ValueError(f"Parameter range '{self.name}': min ({self.min}) must be < max ({self.max})")

    def values(self) -> List[float]:
        out = []
        v = self.min
        while v <= self.max + 1e-9:
            out.append(round(v, 3))
            v += self.step
        return out

    @property
    def size(self) -> int:
        return int(math.floor((self.max - self.min) / self.step + 1e-9)) + 1

    def snap(self, value: float) -> float:
        """Round to the step grid anchored at min, clamped to the range."""
        k = math.floor((value - self.min) / self.step + 0.5)
        return round(min(self.max, max(self.min, self.min + k * self.step)), 3)

    @property
    def midpoint(self) -> float:
        return self.snap((self.min + self.max) / 2)


def validate_ranges(ranges: Sequence[ParameterRange]) -> None:
    seen = set()
    for r in ranges:
        r.validate()
        if r.name in seen:
            raise ValueError(f"Duplicate parameter range: {r.name}")
        seen.add(r.name)


def estimate_grid_size(ranges: Sequence[ParameterRange]) -> int:
    total = 1
    for r in ranges:
        total *= r.size
    return total


def generate_parameter_grid(ranges: Sequence[ParameterRange],
                            max_combinations: int = 20_000,
                            seed: Optional[int] = None) -> List[Dict[str, float]]:
    """
    Full cartesian product of the ranges, or a deduplicated random sample of
    `max_combinations` candidates (starting with the midpoint candidate) when
    the product would be larger.
    """
    if not ranges:
        return [{}]

    names = [r.name for r in ranges]
    values = [r.values() for r in ranges]
    total = estimate_grid_size(ranges)

    if total <= max_combinations:
        return [dict(zip(names, combo)) for combo in itertools.product(*values)]

    rng = np.random.default_rng(seed)
    midpoint = tuple(r.midpoint for r in ranges)
    seen = {midpoint}
    grid = [dict(zip(names, midpoint))]
    attempts = 0
    max_attempts = max_combinations * 20
    while len(grid) < max_combinations and attempts < max_attempts:
        attempts += 1
        combo = tuple(vals[int(rng.integers(len(vals)))] for vals in values)
        if combo in seen:
            continue
        seen.add(combo)
        grid.append(dict(zip(names, combo)))
    return grid


# ──────────────────────────────────────────────
# Scoring / selection
# ──────────────────────────────────────────────

def optimization_score(result: BacktestResult, min_trades: int) -> float:
    if result.total_trades < min_trades:
        return float("-inf")
    sharpe = result.sharpe_ratio if math.isfinite(result.sharpe_ratio) else 0.0
    sharpe = max(-2.0, min(2.0, sharpe))
    pf = min(result.profit_factor, 5.0) if math.isfinite(result.profit_factor) else 0.0
    win_rate = result.win_rate / 100.0
    dd_penalty = max(0.0, 1.0 - result.max_drawdown_percent / 50.0)
    return sharpe * 0.40 + pf * 0.25 + win_rate * 0.20 + dd_penalty * 0.15


@dataclass
class OptimizationCandidate:
    params: Dict[str, Any]
    result: BacktestResult
    score: float


def average_parameters(top: Sequence[OptimizationCandidate],
                       ranges: Sequence[ParameterRange]) -> Dict[str, float]:
    """Score-weighted average of the top candidates, snapped to each range's step."""
    if not ranges:
        return {}
    if not top:
        return {r.name: r.midpoint for r in ranges}
    if len(top) == 1:
        return {r.name: top[0].params.get(r.name, r.midpoint) for r in ranges}

    total = sum(max(0.0, c.score) for c in top)
    if total <= 0:
        return {r.name: top[0].params.get(r.name, r.midpoint) for r in ranges}

    out = {}
    for r in ranges:
        weighted = sum(float(c.params.get(r.name, 0.0)) * max(0.0, c.score) / total for c in top)
        out[r.name] = r.snap(weighted)
    return out


# ──────────────────────────────────────────────
# Window backtests
# ──────────────────────────────────────────────

def _signals_in_window(signals: Sequence[Signal], bars: Sequence[Bar],
                       offset: int, buffer_len: int) -> List[Signal]:
    start_key = time_key(bars[offset].time)
    end_key = time_key(bars[buffer_len - 1].time)
    kept = []
    for s in signals:
        if s.bar_index is not None:
            if offset <= int(s.bar_index) < buffer_len:
                kept.append(s)
            continue
        try:
            k = time_key(s.time)
        except ValueError:
            continue
        if start_key <= k <= end_key:
            kept.append(s)
    return kept


class WindowRunner:
    """
    Runs a strategy on bars[start:end] with a warm-up buffer of `lookback`
    bars prepended for signal generation.

    Only signals inside the window are executed; trades entered before the
    window start and equity points before it are clipped away.
    """

    def __init__(self, bars: Sequence[Bar], strategy: Strategy, settings: BacktestSettings,
                 capital: CapitalSettings, stats_cfg: Optional[StatsConfig] = None,
                 lookback: int = 250):
        self.bars = bars
        self.strategy = strategy
        self.settings = settings
        self.capital = capital
        self.stats_cfg = stats_cfg
        self.lookback = max(0, int(lookback))
        self._series: Dict[tuple, PriceSeries] = {}

    def _buffer(self, start: int, end: int):
        buffered_start = max(0, start - self.lookback)
        buf = self.bars[buffered_start:end]
        key = (buffered_start, end)
        if key not in self._series:
            self._series = {key: PriceSeries.from_bars(buf)}
        return buffered_start, buf, self._series[key]

    def _simulate(self, start: int, end: int, params: Mapping[str, Any],
                  initial_capital: float, sink_factory):
        buffered_start, buf, series = self._buffer(start, end)
        offset = start - buffered_start
        signals = self.strategy.execute(buf, dict(params))
        window_signals = _signals_in_window(signals, buf, offset, len(buf))
        cap = replace(self.capital, initial_capital=initial_capital)
        sim = PositionSimulator(buf, window_signals, cap, self.settings, self.stats_cfg, series=series)
        return offset, sim.run(sink_factory(cap))

    def run_compact(self, start: int, end: int, params: Mapping[str, Any],
                    initial_capital: float) -> BacktestResult:
        """
        Scalar-only window run for the optimizer.

        Signals before the window are dropped, so the buffer holds a flat
        equity line at initial capital and no trades; the scalars equal the
        clipped full run.
        """
        _, result = self._simulate(start, end, params, initial_capital,
                                   lambda cap: RunningStats(cap.initial_capital))
        return result

    def run(self, start: int, end: int, params: Mapping[str, Any],
            initial_capital: float) -> BacktestResult:
        offset, full = self._simulate(start, end, params, initial_capital, lambda cap: TradeLedger())
        window_start_key = time_key(self.bars[start].time)
        trades = [t for t in full.trades if time_key(t.entry_time) >= window_start_key]
        equity = full.equity_curve[offset:]
        final_capital = equity[-1].value if equity else initial_capital
        dd = max_drawdown([p.value for p in equity], initial_capital)
        return compute_backtest_stats(trades, equity, initial_capital, final_capital, self.stats_cfg, dd)

    def run_or_empty(self, start: int, end: int, params: Mapping[str, Any],
                     initial_capital: float) -> BacktestResult:
        try:
            return self.run(start, end, params, initial_capital)
        except Exception as exc:  # noqa: BLE001
            log_event("ERROR", "walk_forward", f"window run {start}:{end} failed: {exc}")
            equity = [EquityPoint(time=b.time, value=initial_capital) for b in self.bars[start:end]]
            return BacktestResult(equity_curve=equity)


def optimize_window(runner: WindowRunner,
                    start: int,
                    end: int,
                    grid: Sequence[Mapping[str, Any]],
                    base_params: Mapping[str, Any],
                    cfg: OptimizerConfig,
                    progress: Optional[ProgressFn] = None) -> List[OptimizationCandidate]:
    """Batched grid search; returns the top-N candidates by score, best first."""
    top: List[OptimizationCandidate] = []
    total = len(grid)
    processed = 0
    failures = 0
    batch_no = 0
    last_top = float("-inf")
    stable = 0
    batch_size = max(1, cfg.batch_size)

    for batch_start in range(0, total, batch_size):
        batch_no += 1
        for overrides in grid[batch_start:batch_start + batch_size]:
            params = {**base_params, **overrides}
            processed += 1
            try:
                result = runner.run_compact(start, end, params, runner.capital.initial_capital)
            except Exception:  # noqa: BLE001
                failures += 1
                continue
            score = optimization_score(result, cfg.min_trades)
            if math.isfinite(score):
                top.append(OptimizationCandidate(params=params, result=result, score=score))

        if len(top) > cfg.top_n * 3:
            top.sort(key=lambda c: c.score, reverse=True)
            del top[cfg.top_n * 2:]

        if progress and batch_no % max(1, cfg.progress_every_batches) == 0:
            progress("combo", processed, total)

        if processed >= cfg.early_stop_min_evaluated and len(top) >= cfg.top_n:
            top.sort(key=lambda c: c.score, reverse=True)
            current = top[0].score
            if abs(current - last_top) < cfg.early_stop_tolerance:
                stable += 1
                if stable >= cfg.early_stop_patience and processed > total * cfg.early_stop_min_fraction:
                    break
            else:
                stable = 0
            last_top = current

    if failures:
        log_event("WARN", "walk_forward",
                  f"{failures}/{processed} candidates raised in window {start}:{end} and were skipped")

    top.sort(key=lambda c: c.score, reverse=True)
    return top[:cfg.top_n]


# ──────────────────────────────────────────────
# Results
# ──────────────────────────────────────────────

@dataclass
class WalkForwardWindow:
    index: int
    optimization_start: int
    optimization_end: int
    test_start: int
    test_end: int
    optimized_params: Dict[str, Any]
    in_sample_result: BacktestResult
    out_of_sample_result: BacktestResult
    sharpe_degradation: float
    profit_degradation_percent: float


@dataclass
class WalkForwardResult:
    windows: List[WalkForwardWindow]
    combined_oos: BacktestResult
    avg_in_sample_sharpe: float
    avg_out_of_sample_sharpe: float
    walk_forward_efficiency: float
    robustness_score: int
    parameter_stability: float
    total_windows: int
    elapsed_seconds: float = 0.0
    parameter_ranges: List[ParameterRange] = field(default_factory=list)

    def verdict(self) -> str:
        s = self.robustness_score
        if s >= 80:
            return "EXCELLENT: strong robustness, low overfitting risk"
        if s >= 60:
            return "GOOD: reasonably robust, monitor for degradation"
        if s >= 40:
            return "MODERATE: some overfitting, consider constraining parameters"
        if s >= 20:
            return "POOR: significant overfitting, unlikely to hold forward"
        return "CRITICAL: severe overfitting, curve-fitted"

    def summary(self) -> str:
        c = self.combined_oos
        lines = [
            "=== Walk-Forward Analysis ===",
            f"  Windows:            {self.total_windows}",
            f"  Elapsed:            {self.elapsed_seconds:.2f}s",
            f"  Avg IS Sharpe:      {self.avg_in_sample_sharpe:.3f}",
            f"  Avg OOS Sharpe:     {self.avg_out_of_sample_sharpe:.3f}",
            f"  WF Efficiency:      {self.walk_forward_efficiency:.1%}",
            "",
            f"  OOS Net Profit:     ${c.net_profit:,.2f} ({c.net_profit_percent:.1f}%)",
            f"  OOS Win Rate:       {c.win_rate:.1f}%",
            f"  OOS Profit Factor:  {c.profit_factor:.2f}",
            f"  OOS Max Drawdown:   {c.max_drawdown_percent:.1f}%",
            f"  OOS Trades:         {c.total_trades}",
            "",
            f"  Robustness:         {self.robustness_score}/100",
            f"  Param Stability:    {self.parameter_stability:.1f}%",
            f"  Verdict:            {self.verdict()}",
            "",
        ]
        for w in self.windows:
            status = "PASS" if w.out_of_sample_result.net_profit >= 0 else "FAIL"
            lines.append(
                f"  [{w.index + 1}] {status} | "
                f"IS={w.in_sample_result.net_profit_percent:.1f}% "
                f"OOS={w.out_of_sample_result.net_profit_percent:.1f}% "
                f"deg={w.profit_degradation_percent:.0f}% "
                f"trades={w.out_of_sample_result.total_trades} params={w.optimized_params}"
            )
        return "\n".join(lines)


def profit_degradation_percent(is_result: BacktestResult, oos_result: BacktestResult) -> float:
    if is_result.net_profit_percent == 0:
        return 0.0
    return ((is_result.net_profit_percent - oos_result.net_profit_percent)
            / abs(is_result.net_profit_percent) * 100.0)


def parameter_stability(windows: Sequence[WalkForwardWindow], ranges: Sequence[ParameterRange]) -> float:
    if len(windows) < 2 or not ranges:
        return 100.0
    total = 0.0
    for r in ranges:
        values = np.array([float(w.optimized_params.get(r.name, 0.0)) for w in windows])
        span = r.max - r.min
        total += float(np.std(values)) / span if span > 0 else 0.0
    avg = total / len(ranges)
    return max(0.0, min(100.0, (1.0 - avg * 2.0) * 100.0))


def walk_forward_efficiency(avg_is: float, avg_oos: float, min_meaningful: float = 0.05) -> float:
    if not math.isfinite(avg_is) or not math.isfinite(avg_oos):
        return 0.0
    if avg_is > min_meaningful:
        return max(0.0, min(2.0, avg_oos / avg_is))
    if avg_oos > 0:
        return 0.5
    return 0.0


def robustness_score(efficiency: float,
                     stability: float,
                     windows: Sequence[WalkForwardWindow],
                     combined_trades: int,
                     min_total_oos_trades: int) -> int:
    eff_part = min(max(efficiency, 0.0), 1.0) * 40.0
    stab_part = stability / 100.0 * 25.0

    positive = sum(1 for w in windows if w.out_of_sample_result.net_profit > 0)
    win_part = (positive / len(windows) if windows else 0.0) * 20.0

    degs = np.array([w.profit_degradation_percent for w in windows], dtype=float)
    degs = degs[np.isfinite(degs)]
    consistency = max(0.0, 15.0 - float(np.std(degs)) / 10.0) if len(degs) else 0.0

    raw = eff_part + stab_part + win_part + consistency
    sufficiency = min(1.0, combined_trades / min_total_oos_trades) if min_total_oos_trades > 0 else 1.0
    return int(round(max(0.0, min(100.0, raw * sufficiency))))


def combine_oos_results(windows: Sequence[WalkForwardWindow], initial_capital: float,
                        stats_cfg: Optional[StatsConfig] = None) -> BacktestResult:
    """Stitch every window's out-of-sample trades and equity into one result."""
    trades = []
    equity: List[EquityPoint] = []
    for w in windows:
        for t in w.out_of_sample_result.trades:
            trades.append(replace(t, id=len(trades) + 1))
        equity.extend(w.out_of_sample_result.equity_curve)
    final_capital = equity[-1].value if equity else initial_capital
    dd = max_drawdown([p.value for p in equity], initial_capital)
    return compute_backtest_stats(trades, equity, initial_capital, final_capital, stats_cfg, dd)


def _aggregate(windows: List[WalkForwardWindow], ranges: Sequence[ParameterRange],
               initial_capital: float, cfg: OptimizerConfig, stats_cfg: Optional[StatsConfig],
               stability: Optional[float], started: float) -> WalkForwardResult:
    combined = combine_oos_results(windows, initial_capital, stats_cfg)

    qualified = [w for w in windows if w.out_of_sample_result.total_trades >= cfg.min_oos_trades_per_window]
    basis = qualified or windows
    avg_is = float(np.mean([w.in_sample_result.sharpe_ratio for w in basis]))
    avg_oos = float(np.mean([w.out_of_sample_result.sharpe_ratio for w in basis]))

    eff = walk_forward_efficiency(avg_is, avg_oos, cfg.min_meaningful_is_sharpe)
    stab = parameter_stability(windows, ranges) if stability is None else stability
    score = robustness_score(eff, stab, windows, combined.total_trades, cfg.min_total_oos_trades)

    return WalkForwardResult(
        windows=windows,
        combined_oos=combined,
        avg_in_sample_sharpe=avg_is,
        avg_out_of_sample_sharpe=avg_oos,
        walk_forward_efficiency=eff,
        robustness_score=score,
        parameter_stability=stab,
        total_windows=len(windows),
        elapsed_seconds=time.perf_counter() - started,
        parameter_ranges=list(ranges),
    )


def _make_window(index: int, opt_start: int, opt_end: int, test_start: int, test_end: int,
                 params: Dict[str, Any], is_result: BacktestResult,
                 oos_result: BacktestResult) -> WalkForwardWindow:
    return WalkForwardWindow(
        index=index,
        optimization_start=opt_start,
        optimization_end=opt_end,
        test_start=test_start,
        test_end=test_end,
        optimized_params=params,
        in_sample_result=is_result,
        out_of_sample_result=oos_result,
        sharpe_degradation=is_result.sharpe_ratio - oos_result.sharpe_ratio,
        profit_degradation_percent=profit_degradation_percent(is_result, oos_result),
    )


# ──────────────────────────────────────────────
# Entry points
# ──────────────────────────────────────────────

def run_walk_forward(bars: Sequence[Bar],
                     strategy: Strategy,
                     parameter_ranges: Sequence[ParameterRange],
                     optimization_window: int,
                     test_window: int,
                     step_size: Optional[int] = None,
                     capital=None,
                     settings=None,
                     optimizer_cfg: Optional[OptimizerConfig] = None,
                     stats_cfg: Optional[StatsConfig] = None,
                     base_params: Optional[Mapping[str, Any]] = None,
                     progress: Optional[ProgressFn] = None) -> WalkForwardResult:
    """
    Rolling walk-forward optimization.

    Args:
        bars: Full bar history
        strategy: Signal generator; its default_params are the base for every candidate
        parameter_ranges: Tunable ranges; empty means run the defaults in every window
        optimization_window / test_window / step_size: Window sizes in bars
        capital / settings: CapitalSettings / BacktestSettings or raw mappings
        progress: Optional callback(phase, current, total)
    """
    started = time.perf_counter()
    cfg = optimizer_cfg or OptimizerConfig()
    cap = normalize_capital(capital)
    bt_settings = normalize_settings(settings)
    ranges = list(parameter_ranges)
    validate_ranges(ranges)

    step = step_size if step_size is not None else test_window
    if optimization_window <= 0 or test_window <= 0 or step <= 0:
        raise ValueError("optimization_window, test_window and step_size must be positive")

    n = len(bars)
    window_size = optimization_window + test_window
    if n < window_size:
        raise ValueError(f"Insufficient data: need {window_size} bars minimum, have {n}")

    starts = list(range(0, n - window_size + 1, step))
    if not starts:
        raise RuntimeError("No walk-forward windows could be created")

    grid = generate_parameter_grid(ranges, cfg.max_combinations, cfg.seed)
    base = dict(strategy.default_params if base_params is None else base_params)
    runner = WindowRunner(bars, strategy, bt_settings, cap, stats_cfg, cfg.lookback_bars)

    log_event("INFO", "walk_forward",
              f"start strategy={getattr(strategy, 'name', type(strategy).__name__)} bars={n} "
              f"windows={len(starts)} grid={len(grid)}")

    windows: List[WalkForwardWindow] = []
    running_capital = cap.initial_capital
    total_windows = len(starts)

    for idx, start in enumerate(starts):
        opt_start, opt_end = start, start + optimization_window
        test_start, test_end = opt_end, min(opt_end + test_window, n)

        if progress:
            progress("optimize", idx, total_windows)
        top = optimize_window(runner, opt_start, opt_end, grid, base, cfg, progress) if ranges else []
        params = {**base, **average_parameters(top, ranges)}

        is_result = runner.run_or_empty(opt_start, opt_end, params, cap.initial_capital)
        if progress:
            progress("test", idx, total_windows)
        oos_result = runner.run_or_empty(test_start, test_end, params, running_capital)
        if oos_result.equity_curve:
            running_capital = oos_result.equity_curve[-1].value

        windows.append(_make_window(idx, opt_start, opt_end, test_start, test_end,
                                    params, is_result, oos_result))
        if progress:
            progress("window", idx + 1, total_windows)

    result = _aggregate(windows, ranges, cap.initial_capital, cfg, stats_cfg, None, started)
    if progress:
        progress("complete", total_windows, total_windows)
    log_event("INFO", "walk_forward",
              f"done windows={result.total_windows} robustness={result.robustness_score} "
              f"oos_net={result.combined_oos.net_profit:.2f} elapsed={result.elapsed_seconds:.2f}s")
    return result


def run_fixed_param_walk_forward(bars: Sequence[Bar],
                                 strategy: Strategy,
                                 test_window: int,
                                 step_size: Optional[int] = None,
                                 params: Optional[Mapping[str, Any]] = None,
                                 capital=None,
                                 settings=None,
                                 optimizer_cfg: Optional[OptimizerConfig] = None,
                                 stats_cfg: Optional[StatsConfig] = None,
                                 progress: Optional[ProgressFn] = None) -> WalkForwardResult:
    """
    Time-consistency check for one fixed configuration.

    Each test window is halved into a pseudo in-sample and out-of-sample
    part; parameter stability is 100 by construction.
    """
    started = time.perf_counter()
    cfg = optimizer_cfg or OptimizerConfig()
    cap = normalize_capital(capital)
    bt_settings = normalize_settings(settings)
    step = step_size if step_size is not None else test_window
    if test_window < 2 or step <= 0:
        raise ValueError("test_window must be >= 2 and step_size positive")

    n = len(bars)
    if n < test_window * 2:
        raise ValueError(f"Insufficient data: need at least {test_window * 2} bars, have {n}")

    fixed = dict(strategy.default_params if params is None else params)
    runner = WindowRunner(bars, strategy, bt_settings, cap, stats_cfg, cfg.lookback_bars)
    starts = list(range(0, n - test_window + 1, step))
    if not starts:
        raise RuntimeError(f"No walk-forward windows could be created (bars={n}, window={test_window})")

    windows: List[WalkForwardWindow] = []
    running_capital = cap.initial_capital
    for idx, start in enumerate(starts):
        end = min(start + test_window, n)
        mid = start + (end - start) // 2
        is_result = runner.run_or_empty(start, mid, fixed, cap.initial_capital)
        oos_result = runner.run_or_empty(mid, end, fixed, running_capital)
        if oos_result.equity_curve:
            running_capital = oos_result.equity_curve[-1].value
        windows.append(_make_window(idx, start, mid, mid, end, fixed, is_result, oos_result))
        if progress and (idx + 1) % 10 == 0:
            progress("window", idx + 1, len(starts))

    result = _aggregate(windows, [], cap.initial_capital, cfg, stats_cfg, 100.0, started)
    if progress:
        progress("complete", len(starts), len(starts))
    log_event("INFO", "walk_forward",
              f"fixed-param done windows={result.total_windows} robustness={result.robustness_score}")
    return result


# ──────────────────────────────────────────────
# Range / window helpers
# ──────────────────────────────────────────────

def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)


def _tunable_defaults(strategy: Strategy) -> Dict[str, float]:
    defaults = dict(strategy.default_params)
    allowed = strategy.walk_forward_params
    out = {}
    for name, value in defaults.items():
        if allowed is not None and name not in allowed:
            continue
        if _is_number(value):
            out[name] = value
    return out


def quick_parameter_ranges(defaults: Mapping[str, float],
                           target_iterations: int = 200) -> List[ParameterRange]:
    """Ranges around each default, sized so the grid stays near `target_iterations`."""
    k = max(1, len(defaults))
    steps = max(2, int(math.floor(target_iterations ** (1.0 / k))))
    ranges = []
    for name, v in defaults.items():
        v = float(v)
        if not v.is_integer() and v < 1:
            lo = max(0.1, v * 0.5)
            hi = min(1.0, v * 1.5)
            step = max(0.05, (hi - lo) / steps)
        else:
            lo = float(max(1, math.floor(v * 0.5)))
            hi = float(math.ceil(v * 2))
            step = max(1.0, (hi - lo) / steps)
        if lo >= hi:
            continue
        ranges.append(ParameterRange(name=name, min=lo, max=hi, step=step))
    return ranges


def build_parameter_ranges(defaults: Mapping[str, Any],
                           whitelist: Optional[Sequence[str]] = None) -> List[ParameterRange]:
    """
    Default optimization ranges for a strategy's parameters.

    Toggles (`use*` names or booleans) sweep {0, 1}; small decimals sweep
    about +/-50% in thirds; integers sweep roughly 0.5x..1.5x in quarters.
    """
    ranges = []
    for name, value in defaults.items():
        if whitelist is not None and name not in whitelist:
            continue
        if isinstance(value, bool) or (name.startswith("use") and value in (0, 1)):
            ranges.append(ParameterRange(name=name, min=0, max=1, step=1))
            continue
        if not _is_number(value):
            continue
        v = float(value)
        if not v.is_integer() and v < 2:
            lo = round(max(0.1, v * 0.5), 3)
            hi = round(max(lo + 0.1, v * 1.5), 3)
            step = round(max(0.05, (hi - lo) / 3), 3)
        else:
            lo = float(max(1, math.floor(v * 0.5)))
            hi = float(max(lo + 1, math.ceil(v * 1.5)))
            step = float(max(1, math.floor((hi - lo) / 4)))
        ranges.append(ParameterRange(name=name, min=lo, max=hi, step=step))
    return ranges


def estimate_window_count(total_bars: int, optimization_window: int,
                          test_window: int, step_size: int) -> int:
    if step_size <= 0 or total_bars < optimization_window + test_window:
        return 0
    return (total_bars - optimization_window - test_window) // step_size + 1


@dataclass(frozen=True)
class WindowSuggestion:
    optimization_window: int
    test_window: int
    step_size: int
    estimated_windows: int
    expected_oos_trades_per_window: float
    min_trades: int
    min_oos_trades_per_window: int
    min_total_oos_trades: int


def suggest_windows(total_bars: int, total_trades: int) -> WindowSuggestion:
    """Window sizes that give roughly 8 out-of-sample trades per window, 8..60 windows."""
    min_windows, max_windows = 8, 60
    trades_per_bar = total_trades / max(1, total_bars)
    min_test = max(20, total_bars // max_windows)
    max_test = max(min_test, total_bars // min_windows)

    test = math.ceil(8 / trades_per_bar) if trades_per_bar > 0 else max_test
    test = max(min_test, min(max_test, test))
    opt = min(total_bars - test, max(test * 2, test * 3))
    opt = max(opt, test)
    step = test
    est = estimate_window_count(total_bars, opt, test, step)

    if est > max_windows:
        scale = math.ceil(est / max_windows)
        test = min(max_test, test * scale)
        step = test
        opt = min(total_bars - test, max(test * 2, opt * scale))
        est = estimate_window_count(total_bars, opt, test, step)

    if est < 3 and total_bars >= 3:
        test = max(min_test, total_bars // 5)
        step = test
        opt = min(total_bars - test, max(test * 2, total_bars // 2))
        est = estimate_window_count(total_bars, opt, test, step)

    expected = trades_per_bar * test
    min_oos = max(1, int(expected * 0.5))
    min_total = max(20, min(total_trades, int(min_oos * max(5, est * 0.5))))
    return WindowSuggestion(
        optimization_window=int(opt),
        test_window=int(test),
        step_size=int(step),
        estimated_windows=int(est),
        expected_oos_trades_per_window=expected,
        min_trades=max(1, min_oos),
        min_oos_trades_per_window=min_oos,
        min_total_oos_trades=min_total,
    )


def quick_walk_forward(bars: Sequence[Bar],
                       strategy: Strategy,
                       capital=None,
                       settings=None,
                       optimizer_cfg: Optional[OptimizerConfig] = None,
                       progress: Optional[ProgressFn] = None) -> WalkForwardResult:
    """Walk-forward with windows and ranges derived from the data length and the strategy defaults."""
    total = len(bars)
    window_size = total // 5
    test = max(20, int(window_size * 0.30))
    opt = max(50, window_size - test)
    ranges = quick_parameter_ranges(_tunable_defaults(strategy))
    cfg = replace(optimizer_cfg or OptimizerConfig(), top_n=3, min_trades=3)
    return run_walk_forward(
        bars, strategy, ranges,
        optimization_window=opt,
        test_window=test,
        step_size=test,
        capital=capital,
        settings=settings,
        optimizer_cfg=cfg,
        progress=progress,
    )
