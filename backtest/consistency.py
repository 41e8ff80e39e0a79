"""
Sanity check for backtest results produced by an alternate engine.

An alternate (e.g. vectorized) engine's result is used only when its
reported scalars agree with the counts they were derived from; otherwise the
primary engine's result wins.
"""
import math
from typing import Optional

from backtest.config import ConsistencyTolerances
from backtest.metrics import BacktestResult
from shared.logger import log_event


def inconsistencies(result: BacktestResult, tol: Optional[ConsistencyTolerances] = None) -> list:
    tol = tol or ConsistencyTolerances()
    problems = []
    total = result.total_trades

    if total != result.winning_trades + result.losing_trades:
        problems.append(
            f"total_trades={total} != winning({result.winning_trades}) + losing({result.losing_trades})"
        )

    if total > 0:
        derived_wr = result.winning_trades / total * 100.0
        if abs(derived_wr - result.win_rate) > tol.win_rate_tolerance:
            problems.append(f"win_rate={result.win_rate:.4f} vs derived {derived_wr:.4f}")

        derived_avg = result.net_profit / total
        allowed = max(tol.avg_trade_floor, tol.avg_trade_rel_tolerance * abs(derived_avg))
        if abs(derived_avg - result.avg_trade) > allowed:
            problems.append(f"avg_trade={result.avg_trade:.4f} vs derived {derived_avg:.4f}")

    if not math.isfinite(result.sharpe_ratio) or abs(result.sharpe_ratio) > tol.max_abs_sharpe:
        problems.append(f"sharpe_ratio={result.sharpe_ratio} outside +/-{tol.max_abs_sharpe}")

    return problems


def is_result_consistent(result: BacktestResult, tol: Optional[ConsistencyTolerances] = None) -> bool:
    return not inconsistencies(result, tol)


def select_result(primary: BacktestResult,
                  alternate: Optional[BacktestResult],
                  tol: Optional[ConsistencyTolerances] = None) -> BacktestResult:
    """Alternate result when present and consistent, primary otherwise."""
    if alternate is None:
        return primary
    problems = inconsistencies(alternate, tol)
    if problems:
        log_event("WARN", "consistency", "alternate result rejected: " + "; ".join(problems))
        return primary
    return alternate
