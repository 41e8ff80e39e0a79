"""
Monte Carlo robustness lab.

1. Trade bootstrap: resample realized trades with replacement and perturb
   each pnl with random slippage and a spread cost.
2. Block bootstrap: resample contiguous blocks of bars, re-run the strategy
   with random signal latency and slippage through the full engine.

The outcome distributions feed a probabilistic/deflated Sharpe, a 0-100
robustness score and a 0-100 fragility index (lower is better).
"""

import math
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, List, Mapping, Optional, Sequence

import numpy as np

from backtest.config import MonteCarloConfig, StatsConfig, normalize_capital, normalize_settings
from backtest.engine import Strategy, run_backtest
from backtest.metrics import BacktestResult, max_drawdown, sharpe_ratio
from backtest.timeutil import build_time_index, time_key
from backtest.types import Bar, Signal, SignalType, Trade
from shared.logger import log_event


DEFAULT_BLOCK_SIZE = 20

MCProgressFn = Callable[[int, int], None]


@dataclass
class SimulationResult:
    net_profit: float = 0.0
    net_profit_percent: float = 0.0
    max_drawdown_percent: float = 0.0
    sharpe_ratio: float = 0.0
    profit_factor: float = 0.0
    win_rate: float = 0.0
    total_trades: int = 0


@dataclass
class MonteCarloResult:
    original: BacktestResult
    simulations: List[SimulationResult] = field(default_factory=list)
    total_simulations: int = 0

    probability_of_profit: float = 0.0
    probability_beat_original: float = 0.0

    net_profit_p5: float = 0.0
    net_profit_p25: float = 0.0
    net_profit_p50: float = 0.0
    net_profit_p75: float = 0.0
    net_profit_p95: float = 0.0
    net_profit_mean: float = 0.0
    net_profit_std: float = 0.0

    max_dd_p5: float = 0.0
    max_dd_p50: float = 0.0
    max_dd_p95: float = 0.0
    max_dd_mean: float = 0.0

    sharpe_p5: float = 0.0
    sharpe_p50: float = 0.0
    sharpe_p95: float = 0.0
    sharpe_mean: float = 0.0

    probabilistic_sharpe: float = 0.0
    deflated_sharpe: float = 0.0
    tail_ratio: float = 0.0

    robustness_score: int = 0
    fragility_index: int = 0
    elapsed_seconds: float = 0.0

    def verdict(self) -> str:
        r, f = self.robustness_score, self.fragility_index
        if r >= 80 and f <= 20:
            return "EXCELLENT: highly robust, low noise sensitivity"
        if r >= 60 and f <= 40:
            return "GOOD: reasonably robust, some noise sensitivity"
        if r >= 40 and f <= 60:
            return "MODERATE: mixed robustness, consider parameter constraints"
        if r >= 20:
            return "POOR: fragile, high sensitivity to market noise"
        return "CRITICAL: extremely fragile, likely curve-fitted"

    def summary(self) -> str:
        return "\n".join([
            f"=== Monte Carlo Robustness ({self.total_simulations} simulations, {self.elapsed_seconds:.2f}s) ===",
            f"  P(Profit):        {self.probability_of_profit:.1f}%",
            f"  P(Beat Original): {self.probability_beat_original:.1f}%",
            f"  Prob. Sharpe:     {self.probabilistic_sharpe:.1f}%",
            f"  Deflated Sharpe:  {self.deflated_sharpe:.3f}",
            f"  Tail Ratio:       {self.tail_ratio:.2f}",
            "",
            f"  Net Profit:  p5=${self.net_profit_p5:,.2f}  p25=${self.net_profit_p25:,.2f}  "
            f"p50=${self.net_profit_p50:,.2f}  p75=${self.net_profit_p75:,.2f}  p95=${self.net_profit_p95:,.2f}",
            f"               mean=${self.net_profit_mean:,.2f}  std=${self.net_profit_std:,.2f}",
            f"  Max DD:      p5={self.max_dd_p5:.1f}%  p50={self.max_dd_p50:.1f}%  p95={self.max_dd_p95:.1f}%",
            f"  Sharpe:      p5={self.sharpe_p5:.2f}  p50={self.sharpe_p50:.2f}  p95={self.sharpe_p95:.2f}",
            "",
            f"  Robustness:  {self.robustness_score}/100",
            f"  Fragility:   {self.fragility_index}/100",
            f"  Verdict:     {self.verdict()}",
        ])


# ──────────────────────────────────────────────
# Statistics helpers
# ──────────────────────────────────────────────

def percentile(values: Sequence[float], p: float) -> float:
    """Nearest-rank-below percentile: sorted[floor(n * p)], clamped to the last element."""
    if len(values) == 0:
        return 0.0
    arr = np.sort(np.asarray(values, dtype=float))
    idx = min(int(math.floor(len(arr) * p)), len(arr) - 1)
    return float(arr[idx])


def _mean(values: Sequence[float]) -> float:
    return float(np.mean(values)) if len(values) else 0.0


def _std(values: Sequence[float]) -> float:
    return float(np.std(values, ddof=1)) if len(values) > 1 else 0.0


def erf(x: float) -> float:
    """Abramowitz-Stegun 7.1.26 approximation (|error| < 1.5e-7)."""
    a1, a2, a3, a4, a5 = 0.254829592, -0.284496736, 1.421413741, -1.453152027, 1.061405429
    p = 0.3275911
    sign = 1.0 if x >= 0 else -1.0
    x = abs(x)
    t = 1.0 / (1.0 + p * x)
    y = 1.0 - (((((a5 * t + a4) * t) + a3) * t + a2) * t + a1) * t * math.exp(-x * x)
    return sign * y


def normal_cdf(z: float) -> float:
    return 0.5 * (1.0 + erf(z / math.sqrt(2.0)))


def probabilistic_sharpe(observed: float, samples: Sequence[float], num_trades: int) -> float:
    if num_trades < 2 or len(samples) < 2:
        return 0.0
    std = _std(samples)
    if std <= 0:
        return 100.0 if observed > 0 else 0.0
    return normal_cdf(observed / std) * 100.0


def deflated_sharpe(observed: float, num_trials: int, num_trades: int) -> float:
    if num_trades < 2 or num_trials < 1:
        return 0.0
    expected_max = math.sqrt(2.0 * math.log(max(1, num_trials)))
    return observed - expected_max / math.sqrt(num_trades)


def robustness_score(r: MonteCarloResult) -> int:
    score = min(30.0, r.probability_of_profit * 0.3)
    score += min(25.0, r.probabilistic_sharpe * 0.25)
    score += max(0.0, 20.0 - (r.max_dd_p95 - r.max_dd_p5) * 0.4)

    spread = r.net_profit_p95 - r.net_profit_p5
    rel = abs(spread / r.original.net_profit) if r.original.net_profit != 0 else 1.0
    score += max(0.0, 15.0 - rel * 10.0)

    if r.net_profit_p50 > 0:
        score += 10.0
    elif r.net_profit_p50 > r.net_profit_p5:
        score += 5.0
    return int(round(max(0.0, min(100.0, score))))


def fragility_index(r: MonteCarloResult) -> int:
    cov = abs(r.net_profit_std / r.net_profit_mean) if r.net_profit_mean != 0 else 1.0
    threshold = r.original.net_profit * -0.2
    losses = sum(1 for s in r.simulations if s.net_profit < threshold)
    loss_ratio = losses / r.total_simulations if r.total_simulations else 0.0
    dd_tail = r.max_dd_p95 / 100.0
    raw = cov * 30.0 + loss_ratio * 40.0 + dd_tail * 30.0
    if not math.isfinite(raw):
        return 100
    return int(round(max(0.0, min(100.0, raw))))


# ──────────────────────────────────────────────
# Single draws
# ──────────────────────────────────────────────

def simulation_stats(pnls: np.ndarray, pnl_percents: np.ndarray, initial_capital: float,
                     stats_cfg: Optional[StatsConfig] = None) -> SimulationResult:
    if len(pnls) == 0:
        return SimulationResult()
    wins = pnls[pnls > 0]
    losses = pnls[pnls <= 0]
    gross_profit = float(np.sum(wins))
    gross_loss = abs(float(np.sum(losses)))
    net = gross_profit - gross_loss

    _, dd_pct = max_drawdown(initial_capital + np.cumsum(pnls), initial_capital)

    if gross_loss > 0:
        pf = gross_profit / gross_loss
    else:
        pf = float("inf") if gross_profit > 0 else 0.0

    return SimulationResult(
        net_profit=net,
        net_profit_percent=net / initial_capital * 100.0 if initial_capital > 0 else 0.0,
        max_drawdown_percent=dd_pct,
        sharpe_ratio=sharpe_ratio(pnl_percents, stats_cfg),
        profit_factor=pf,
        win_rate=len(wins) / len(pnls) * 100.0,
        total_trades=len(pnls),
    )


def simulate_trade_bootstrap(trades: Sequence[Trade], initial_capital: float,
                             cfg: MonteCarloConfig, rng: np.random.Generator,
                             stats_cfg: Optional[StatsConfig] = None) -> SimulationResult:
    """One draw: resample trades, apply +/-slippage to pnl and a spread cost on entry notional."""
    n = len(trades)
    if n == 0:
        return SimulationResult()
    pnl = np.array([t.pnl for t in trades], dtype=float)
    entry = np.array([t.entry_price for t in trades], dtype=float)
    size = np.array([t.size for t in trades], dtype=float)

    idx = rng.integers(0, n, size=n)
    u = rng.random(n)
    slip = 1.0 + (u - 0.5) * 2.0 * (cfg.slippage_bps / 10_000.0)
    spread_cost = entry[idx] * size[idx] * (cfg.spread_bps / 10_000.0)
    adjusted = pnl[idx] * slip - spread_cost

    notional = size[idx] * entry[idx]
    with np.errstate(divide="ignore", invalid="ignore"):
        pct = np.where(notional > 0, adjusted / notional * 100.0, 0.0)
    return simulation_stats(adjusted, pct, initial_capital, stats_cfg)


def block_bootstrap_indices(n: int, block_size: int, rng: np.random.Generator) -> np.ndarray:
    """Indices of `n` bars built from contiguous blocks with random starts, wrapping at the end."""
    block_size = max(1, block_size)
    out = []
    while len(out) < n:
        start = int(rng.integers(0, n))
        out.extend((start + k) % n for k in range(min(block_size, n - len(out))))
    return np.asarray(out, dtype=int)


def _resample_bars(bars: Sequence[Bar], block_size: int, rng: np.random.Generator) -> List[Bar]:
    idx = block_bootstrap_indices(len(bars), block_size, rng)
    return [replace(bars[j], time=bars[i].time) for i, j in enumerate(idx)]


def _shock_signals(signals: Sequence[Signal], bars: Sequence[Bar],
                   cfg: MonteCarloConfig, rng: np.random.Generator) -> List[Signal]:
    n = len(bars)
    time_index = build_time_index(bars)
    # one latency shift per draw, shared by every signal
    delay = int(rng.integers(0, cfg.latency_bars + 1)) if cfg.latency_bars > 0 else 0
    shocked = []
    for s in signals:
        if s.bar_index is not None:
            idx = int(s.bar_index)
        else:
            try:
                idx = time_index.get(time_key(s.time))
            except ValueError:
                idx = None
        if idx is None or idx < 0 or idx >= n:
            continue
        new_idx = min(idx + delay, n - 1)
        slip = s.price * rng.random() * cfg.slippage_bps / 10_000.0
        direction = 1.0 if str(s.type).lower() == SignalType.BUY else -1.0
        shocked.append(replace(s, time=bars[new_idx].time, bar_index=new_idx, price=s.price + direction * slip))
    return shocked


def simulate_block_bootstrap(bars: Sequence[Bar], strategy: Strategy, params: Mapping[str, Any],
                             capital, settings, cfg: MonteCarloConfig, rng: np.random.Generator,
                             stats_cfg: Optional[StatsConfig] = None) -> SimulationResult:
    """One draw: block-resampled bars, re-executed strategy, shocked signals, full engine run."""
    block = cfg.block_size if cfg.block_size > 0 else DEFAULT_BLOCK_SIZE
    resampled = _resample_bars(bars, block, rng)
    signals = strategy.execute(resampled, dict(params))
    shocked = _shock_signals(signals, resampled, cfg, rng)
    res = run_backtest(resampled, shocked, capital, settings, stats_cfg)
    return SimulationResult(
        net_profit=res.net_profit,
        net_profit_percent=res.net_profit_percent,
        max_drawdown_percent=res.max_drawdown_percent,
        sharpe_ratio=res.sharpe_ratio,
        profit_factor=res.profit_factor,
        win_rate=res.win_rate,
        total_trades=res.total_trades,
    )


# ──────────────────────────────────────────────
# Entry points
# ──────────────────────────────────────────────

def _aggregate(original: BacktestResult, sims: List[SimulationResult], cfg: MonteCarloConfig) -> MonteCarloResult:
    result = MonteCarloResult(original=original, simulations=sims, total_simulations=len(sims))
    if not sims:
        return result

    net = [s.net_profit for s in sims]
    dds = [s.max_drawdown_percent for s in sims]
    sharpes = [s.sharpe_ratio for s in sims]

    result.probability_of_profit = sum(1 for v in net if v > 0) / len(sims) * 100.0
    result.probability_beat_original = sum(1 for v in net if v >= original.net_profit) / len(sims) * 100.0

    result.net_profit_p5 = percentile(net, 0.05)
    result.net_profit_p25 = percentile(net, 0.25)
    result.net_profit_p50 = percentile(net, 0.50)
    result.net_profit_p75 = percentile(net, 0.75)
    result.net_profit_p95 = percentile(net, 0.95)
    result.net_profit_mean = _mean(net)
    result.net_profit_std = _std(net)

    result.max_dd_p5 = percentile(dds, 0.05)
    result.max_dd_p50 = percentile(dds, 0.50)
    result.max_dd_p95 = percentile(dds, 0.95)
    result.max_dd_mean = _mean(dds)

    result.sharpe_p5 = percentile(sharpes, 0.05)
    result.sharpe_p50 = percentile(sharpes, 0.50)
    result.sharpe_p95 = percentile(sharpes, 0.95)
    result.sharpe_mean = _mean(sharpes)

    result.probabilistic_sharpe = probabilistic_sharpe(original.sharpe_ratio, sharpes, original.total_trades)
    result.deflated_sharpe = deflated_sharpe(original.sharpe_ratio, cfg.simulations, original.total_trades)
    result.tail_ratio = abs(result.net_profit_p5 / result.net_profit_p50) if result.net_profit_p50 != 0 else 0.0

    result.robustness_score = robustness_score(result)
    result.fragility_index = fragility_index(result)
    return result


def run_monte_carlo(bars: Sequence[Bar],
                    strategy: Optional[Strategy],
                    params: Optional[Mapping[str, Any]],
                    original: BacktestResult,
                    capital=None,
                    settings=None,
                    cfg: Optional[MonteCarloConfig] = None,
                    stats_cfg: Optional[StatsConfig] = None,
                    progress: Optional[MCProgressFn] = None) -> MonteCarloResult:
    """
    Run the robustness lab against an original backtest result.

    block_size == 0 bootstraps the original trades; block_size > 0 block
    resamples the bars and needs `strategy`.
    """
    started = time.perf_counter()
    cfg = cfg or MonteCarloConfig()
    cap = normalize_capital(capital)
    bt_settings = normalize_settings(settings)
    block_mode = cfg.block_size > 0

    if block_mode and strategy is None:
        raise ValueError("Block bootstrap needs a strategy to re-execute")

    if original.total_trades < cfg.min_trades:
        log_event("WARN", "monte_carlo",
                  f"skipped: {original.total_trades} trades < min_trades={cfg.min_trades}")
        result = MonteCarloResult(original=original)
        result.elapsed_seconds = time.perf_counter() - started
        return result

    rng = np.random.default_rng(cfg.seed)
    run_params = dict(params) if params is not None else dict(strategy.default_params) if strategy else {}
    total = max(0, int(cfg.simulations))
    batch = max(1, cfg.batch_size)
    sims: List[SimulationResult] = []
    failures = 0

    log_event("INFO", "monte_carlo",
              f"start mode={'block' if block_mode else 'trade'} simulations={total} "
              f"trades={original.total_trades}")

    for batch_start in range(0, total, batch):
        for _ in range(batch_start, min(batch_start + batch, total)):
            if block_mode:
                try:
                    sims.append(simulate_block_bootstrap(bars, strategy, run_params, cap, bt_settings,
                                                         cfg, rng, stats_cfg))
                except Exception as exc:  # noqa: BLE001
                    failures += 1
                    log_event("WARN", "monte_carlo", f"block draw failed: {exc}")
            else:
                sims.append(simulate_trade_bootstrap(original.trades, cap.initial_capital, cfg, rng, stats_cfg))
        if progress:
            progress(len(sims), total)

    result = _aggregate(original, sims, cfg)
    result.elapsed_seconds = time.perf_counter() - started
    log_event("INFO", "monte_carlo",
              f"done simulations={result.total_simulations} failed={failures} "
              f"robustness={result.robustness_score} fragility={result.fragility_index}")
    return result


def quick_monte_carlo(bars: Sequence[Bar],
                      strategy: Optional[Strategy],
                      params: Optional[Mapping[str, Any]],
                      original: BacktestResult,
                      capital=None,
                      settings=None,
                      seed: Optional[int] = None,
                      progress: Optional[MCProgressFn] = None) -> MonteCarloResult:
    """250 trade-level draws with default shocks."""
    cfg = MonteCarloConfig(simulations=250, block_size=0, slippage_bps=5.0, spread_bps=2.0,
                           latency_bars=0, min_trades=3, seed=seed)
    return run_monte_carlo(bars, strategy, params, original, capital, settings, cfg, progress=progress)
