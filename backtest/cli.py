"""
Command line entry point.

    python -m backtest.cli run          --data bars.csv --strategy sma_crossover
    python -m backtest.cli walk-forward --data bars.csv --strategy sma_crossover --config wf.yml
    python -m backtest.cli monte-carlo  --data bars.csv --strategy rsi_reversal --simulations 1000

The YAML config may hold `settings`, `capital`, `params`, `walk_forward`
(optimization_window, test_window, step_size, ranges, optimizer) and
`monte_carlo` sections.
"""
import argparse
from dataclasses import replace
from typing import Any, Dict, List

from backtest.config import (
    load_backtest_settings,
    load_capital_settings,
    monte_carlo_config_from,
    normalize_capital,
    normalize_settings,
    optimizer_config_from,
    read_yaml_config,
)
from backtest.data_pipeline import load_bars_csv
from backtest.engine import run_backtest
from backtest.monte_carlo import quick_monte_carlo, run_monte_carlo
from backtest.strategy_registry import available_strategies, get_strategy
from backtest.walk_forward import (
    ParameterRange,
    build_parameter_ranges,
    quick_walk_forward,
    run_fixed_param_walk_forward,
    run_walk_forward,
    suggest_windows,
)
from shared.logger import log_event


def _section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = cfg.get(name) or {}
    if not isinstance(value, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")
    return value


def _parse_ranges(raw: Any) -> List[ParameterRange]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError("walk_forward.ranges must be a list of {name, min, max, step}")
    out = []
    for r in raw:
        try:
            out.append(ParameterRange(name=str(r["name"]), min=float(r["min"]),
                                      max=float(r["max"]), step=float(r["step"])))
        except (KeyError, TypeError) as exc:
            raise ValueError(f"Invalid parameter range entry {r!r}: {exc}") from exc
    return out


def _progress(phase: str, current: int, total: int) -> None:
    log_event("INFO", "cli", f"{phase} {current}/{total}")


def _load(args):
    cfg = read_yaml_config(args.config) if args.config else {}
    settings_raw = _section(cfg, "settings")
    capital_raw = _section(cfg, "capital")
    settings = normalize_settings(settings_raw) if settings_raw else load_backtest_settings()
    capital = normalize_capital(capital_raw) if capital_raw else load_capital_settings()
    strategy = get_strategy(args.strategy)
    params = {**strategy.default_params, **_section(cfg, "params")}
    bars = load_bars_csv(args.data)
    log_event("INFO", "cli", f"loaded {len(bars)} bars from {args.data}; strategy={strategy.name}")
    return cfg, settings, capital, strategy, params, bars


def cmd_run(args) -> None:
    _, settings, capital, strategy, params, bars = _load(args)
    signals = strategy.execute(bars, params)
    result = run_backtest(bars, signals, capital, settings)
    print(result.summary())


def cmd_walk_forward(args) -> None:
    cfg, settings, capital, strategy, params, bars = _load(args)
    wf = _section(cfg, "walk_forward")
    optimizer = optimizer_config_from(_section(wf, "optimizer"))
    if args.seed is not None:
        optimizer = replace(optimizer, seed=args.seed)

    if args.quick:
        result = quick_walk_forward(bars, strategy, capital, settings, optimizer, progress=_progress)
        print(result.summary())
        return

    opt_window = wf.get("optimization_window")
    test_window = wf.get("test_window")
    step = wf.get("step_size")
    if opt_window is None or test_window is None:
        baseline = run_backtest(bars, strategy.execute(bars, params), capital, settings)
        hint = suggest_windows(len(bars), baseline.total_trades)
        log_event("INFO", "cli", f"suggested windows: {hint}")
        opt_window = opt_window or hint.optimization_window
        test_window = test_window or hint.test_window
        step = step or hint.step_size
        optimizer = replace(
            optimizer,
            min_trades=hint.min_trades,
            min_oos_trades_per_window=hint.min_oos_trades_per_window,
            min_total_oos_trades=hint.min_total_oos_trades,
        )

    if args.fixed:
        result = run_fixed_param_walk_forward(
            bars, strategy, int(test_window), int(step) if step else None, params,
            capital, settings, optimizer, progress=_progress,
        )
        print(result.summary())
        return

    ranges = _parse_ranges(wf.get("ranges"))
    if not ranges and "ranges" not in wf:
        ranges = build_parameter_ranges(
            {k: v for k, v in params.items()
             if strategy.walk_forward_params is None or k in strategy.walk_forward_params}
        )

    result = run_walk_forward(
        bars, strategy, ranges,
        optimization_window=int(opt_window),
        test_window=int(test_window),
        step_size=int(step) if step else None,
        capital=capital,
        settings=settings,
        optimizer_cfg=optimizer,
        base_params=params,
        progress=_progress,
    )
    print(result.summary())


def cmd_monte_carlo(args) -> None:
    cfg, settings, capital, strategy, params, bars = _load(args)
    original = run_backtest(bars, strategy.execute(bars, params), capital, settings)
    print(original.summary())
    print()

    if args.quick:
        result = quick_monte_carlo(bars, strategy, params, original, capital, settings, seed=args.seed)
    else:
        mc = monte_carlo_config_from(_section(cfg, "monte_carlo"))
        overrides = {}
        if args.simulations is not None:
            overrides["simulations"] = args.simulations
        if args.block_size is not None:
            overrides["block_size"] = args.block_size
        if args.seed is not None:
            overrides["seed"] = args.seed
        mc = replace(mc, **overrides)
        result = run_monte_carlo(bars, strategy, params, original, capital, settings, mc,
                                 progress=lambda done, total: _progress("simulate", done, total))
    print(result.summary())


def main() -> None:
    parser = argparse.ArgumentParser(description="Backtest robustness lab")
    sub = parser.add_subparsers(dest="cmd", required=True)

    def common(p):
        p.add_argument("--data", required=True, help="CSV with time/open/high/low/close[/volume]")
        p.add_argument("--strategy", default="sma_crossover", choices=available_strategies())
        p.add_argument("--config", default=None, help="YAML config file")
        p.add_argument("--seed", type=int, default=None)

    p_run = sub.add_parser("run", help="Single backtest")
    common(p_run)

    p_wf = sub.add_parser("walk-forward", help="Walk-forward optimization")
    common(p_wf)
    p_wf.add_argument("--quick", action="store_true", help="Derive windows and ranges automatically")
    p_wf.add_argument("--fixed", action="store_true", help="Fixed-parameter time-consistency check")

    p_mc = sub.add_parser("monte-carlo", help="Monte Carlo robustness lab")
    common(p_mc)
    p_mc.add_argument("--quick", action="store_true", help="250 trade-level draws")
    p_mc.add_argument("--simulations", type=int, default=None)
    p_mc.add_argument("--block-size", type=int, default=None, help="0 = trade bootstrap")

    args = parser.parse_args()

    if args.cmd == "run":
        cmd_run(args)
        return
    if args.cmd == "walk-forward":
        cmd_walk_forward(args)
        return
    if args.cmd == "monte-carlo":
        cmd_monte_carlo(args)
        return


if __name__ == "__main__":
    main()
