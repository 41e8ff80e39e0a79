"""
Backtest configuration: normalized execution/risk settings, capital settings
and the tunable policy knobs of the optimizer, Monte Carlo lab and result
validation.

Raw settings arrive as loosely-typed mappings (YAML files, env vars, strategy
presets) and are normalized exactly once into frozen dataclasses before any
simulation runs.
"""
from dataclasses import dataclass, fields
import math
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml


EXECUTION_MODELS = ("signal_close", "next_open", "next_close")
TRADE_FILTER_MODES = ("none", "close", "volume", "rsi", "trend", "adx")
RISK_MODES = ("simple", "advanced", "percentage")
TRADE_DIRECTIONS = ("long", "short", "both")
SIZING_MODES = ("percent", "fixed")


def _get_env(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None:
        return default
    v = v.strip()
    return v if v else default


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p[:1].upper() + p[1:] for p in rest)


def _pick(raw: Mapping[str, Any], name: str, aliases=()) -> Any:
    for key in (name, _camel(name), *aliases):
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _num(value: Any, fallback: float) -> float:
    if value is None or isinstance(value, bool):
        return fallback
    try:
        f = float(value)
    except (TypeError, ValueError):
        return fallback
    return f if math.isfinite(f) else fallback


def _flag(value: Any, fallback: bool) -> bool:
    if value is None:
        return fallback
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in ("1", "true", "yes", "y", "on"):
        return True
    if s in ("0", "false", "no", "n", "off"):
        return False
    return fallback


def _choice(value: Any, allowed: tuple, fallback: str) -> str:
    if value is None:
        return fallback
    s = str(value).strip().lower()
    return s if s in allowed else fallback


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


@dataclass(frozen=True)
class BacktestSettings:
    # ATR risk management
    atr_period: int = 14
    stop_loss_atr: float = 0.0
    take_profit_atr: float = 0.0
    trailing_atr: float = 0.0
    partial_take_profit_at_r: float = 0.0
    partial_take_profit_percent: float = 0.0   # % of remaining size, 0..100
    break_even_at_r: float = 0.0
    time_stop_bars: int = 0

    # Percentage risk mode
    risk_mode: str = "simple"                  # simple | advanced | percentage
    stop_loss_percent: float = 0.0
    take_profit_percent: float = 0.0
    stop_loss_enabled: bool = False
    take_profit_enabled: bool = False

    # Regime filters (0 disables)
    trend_ema_period: int = 0
    trend_ema_slope_bars: int = 0
    atr_percent_min: float = 0.0
    atr_percent_max: float = 0.0
    adx_period: int = 14
    adx_min: float = 0.0
    adx_max: float = 0.0

    # Entry confirmation
    trade_filter_mode: str = "none"            # none | close | volume | rsi | trend | adx
    confirm_lookback: int = 1
    volume_sma_period: int = 20
    volume_multiplier: float = 1.0
    rsi_period: int = 14
    rsi_bullish: float = 55.0
    rsi_bearish: float = 45.0

    # Execution
    trade_direction: str = "long"              # long | short | both
    execution_model: str = "signal_close"      # signal_close | next_open | next_close
    allow_same_bar_exit: bool = True
    slippage_bps: float = 0.0

    @property
    def requires_atr_for_entry(self) -> bool:
        return (
            self.stop_loss_atr > 0
            or self.take_profit_atr > 0
            or self.trailing_atr > 0
            or self.partial_take_profit_at_r > 0
            or self.break_even_at_r > 0
        )

    @property
    def slippage_rate(self) -> float:
        return self.slippage_bps / 10_000.0

    def as_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def normalize_settings(raw: Optional[Mapping[str, Any]] = None) -> BacktestSettings:
    """
    Build a fully-populated BacktestSettings from a raw mapping.

    Keys may be snake_case or camelCase. Missing, non-numeric or non-finite
    values fall back to defaults; negative magnitudes are floored at zero.
    """
    if isinstance(raw, BacktestSettings):
        return raw
    raw = raw or {}

    def pos(name: str, default: float) -> float:
        return max(0.0, _num(_pick(raw, name), default))

    filter_raw = _pick(raw, "trade_filter_mode", aliases=("entry_confirmation", "entryConfirmation"))

    return BacktestSettings(
        atr_period=int(max(1.0, _num(_pick(raw, "atr_period"), 14))),
        stop_loss_atr=pos("stop_loss_atr", 0.0),
        take_profit_atr=pos("take_profit_atr", 0.0),
        trailing_atr=pos("trailing_atr", 0.0),
        partial_take_profit_at_r=pos("partial_take_profit_at_r", 0.0),
        partial_take_profit_percent=_clamp(pos("partial_take_profit_percent", 0.0), 0.0, 100.0),
        break_even_at_r=pos("break_even_at_r", 0.0),
        time_stop_bars=int(pos("time_stop_bars", 0)),
        risk_mode=_choice(_pick(raw, "risk_mode"), RISK_MODES, "simple"),
        stop_loss_percent=pos("stop_loss_percent", 0.0),
        take_profit_percent=pos("take_profit_percent", 0.0),
        stop_loss_enabled=_flag(_pick(raw, "stop_loss_enabled"), False),
        take_profit_enabled=_flag(_pick(raw, "take_profit_enabled"), False),
        trend_ema_period=int(pos("trend_ema_period", 0)),
        trend_ema_slope_bars=int(pos("trend_ema_slope_bars", 0)),
        atr_percent_min=pos("atr_percent_min", 0.0),
        atr_percent_max=pos("atr_percent_max", 0.0),
        adx_period=int(pos("adx_period", 14)),
        adx_min=pos("adx_min", 0.0),
        adx_max=pos("adx_max", 0.0),
        trade_filter_mode=_choice(filter_raw, TRADE_FILTER_MODES, "none"),
        confirm_lookback=int(max(1.0, _num(_pick(raw, "confirm_lookback"), 1))),
        volume_sma_period=int(max(1.0, _num(_pick(raw, "volume_sma_period"), 20))),
        volume_multiplier=pos("volume_multiplier", 1.0),
        rsi_period=int(max(1.0, _num(_pick(raw, "rsi_period"), 14))),
        rsi_bullish=_clamp(_num(_pick(raw, "rsi_bullish"), 55.0), 0.0, 100.0),
        rsi_bearish=_clamp(_num(_pick(raw, "rsi_bearish"), 45.0), 0.0, 100.0),
        trade_direction=_choice(_pick(raw, "trade_direction"), TRADE_DIRECTIONS, "long"),
        execution_model=_choice(_pick(raw, "execution_model"), EXECUTION_MODELS, "signal_close"),
        allow_same_bar_exit=_flag(_pick(raw, "allow_same_bar_exit"), True),
        slippage_bps=pos("slippage_bps", 0.0),
    )


@dataclass(frozen=True)
class CapitalSettings:
    initial_capital: float = 10_000.0
    position_size: float = 100.0               # % of current capital per entry
    commission_percent: float = 0.1            # per leg, % of notional
    sizing_mode: str = "percent"               # percent | fixed
    fixed_trade_amount: float = 0.0

    @property
    def commission_rate(self) -> float:
        return self.commission_percent / 100.0


def normalize_capital(raw: Optional[Mapping[str, Any]] = None) -> CapitalSettings:
    if isinstance(raw, CapitalSettings):
        return raw
    raw = raw or {}
    initial = _num(_pick(raw, "initial_capital"), 10_000.0)
    if initial <= 0:
        raise ValueError(f"initial_capital must be positive, got {initial}")
    return CapitalSettings(
        initial_capital=initial,
        position_size=max(0.0, _num(_pick(raw, "position_size"), 100.0)),
        commission_percent=max(0.0, _num(_pick(raw, "commission_percent", aliases=("commission",)), 0.1)),
        sizing_mode=_choice(_pick(raw, "sizing_mode", aliases=("mode",)), SIZING_MODES, "percent"),
        fixed_trade_amount=max(0.0, _num(_pick(raw, "fixed_trade_amount"), 0.0)),
    )


@dataclass(frozen=True)
class StatsConfig:
    min_trades: int = 2                        # fewer returns => Sharpe 0
    min_std: float = 0.0                       # stddev at or below => Sharpe 0
    max_abs_sharpe: Optional[float] = None     # optional symmetric clamp


@dataclass(frozen=True)
class OptimizerConfig:
    lookback_bars: int = 250
    top_n: int = 3
    min_trades: int = 5
    batch_size: int = 200
    progress_every_batches: int = 3
    max_combinations: int = 20_000
    early_stop_min_evaluated: int = 500
    early_stop_tolerance: float = 0.001
    early_stop_patience: int = 5
    early_stop_min_fraction: float = 0.30
    min_oos_trades_per_window: int = 1
    min_total_oos_trades: int = 50
    min_meaningful_is_sharpe: float = 0.05
    seed: Optional[int] = None


@dataclass(frozen=True)
class MonteCarloConfig:
    simulations: int = 500
    block_size: int = 0                        # 0 => trade-level bootstrap
    slippage_bps: float = 5.0
    spread_bps: float = 2.0
    latency_bars: int = 0
    min_trades: int = 5
    batch_size: int = 25
    seed: Optional[int] = None


@dataclass(frozen=True)
class ConsistencyTolerances:
    win_rate_tolerance: float = 1.0            # percentage points
    avg_trade_floor: float = 0.01
    avg_trade_rel_tolerance: float = 0.15
    max_abs_sharpe: float = 8.0


def load_backtest_settings() -> BacktestSettings:
    return normalize_settings({
        "atr_period": _get_env("BACKTEST_ATR_PERIOD", "14"),
        "stop_loss_atr": _get_env("BACKTEST_STOP_LOSS_ATR", "0"),
        "take_profit_atr": _get_env("BACKTEST_TAKE_PROFIT_ATR", "0"),
        "trailing_atr": _get_env("BACKTEST_TRAILING_ATR", "0"),
        "risk_mode": _get_env("BACKTEST_RISK_MODE", "simple"),
        "trade_filter_mode": _get_env("BACKTEST_TRADE_FILTER", "none"),
        "trade_direction": _get_env("BACKTEST_TRADE_DIRECTION", "long"),
        "execution_model": _get_env("BACKTEST_EXECUTION_MODEL", "signal_close"),
        "allow_same_bar_exit": _get_env("BACKTEST_ALLOW_SAME_BAR_EXIT", "1"),
        "slippage_bps": _get_env("BACKTEST_SLIPPAGE_BPS", "0"),
    })


def load_capital_settings() -> CapitalSettings:
    return normalize_capital({
        "initial_capital": _get_env("BACKTEST_INITIAL_CAPITAL", "10000"),
        "position_size": _get_env("BACKTEST_POSITION_SIZE", "100"),
        "commission_percent": _get_env("BACKTEST_COMMISSION_PERCENT", "0.1"),
        "sizing_mode": _get_env("BACKTEST_SIZING_MODE", "percent"),
        "fixed_trade_amount": _get_env("BACKTEST_FIXED_TRADE_AMOUNT", "0"),
    })


def read_yaml_config(path) -> Dict[str, Any]:
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"YAML root must be mapping: {path}")
    return data


def _dataclass_from_mapping(cls, raw: Optional[Mapping[str, Any]]):
    if not raw:
        return cls()
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {', '.join(unknown)}")
    return cls(**dict(raw))


def optimizer_config_from(raw: Optional[Mapping[str, Any]]) -> OptimizerConfig:
    return _dataclass_from_mapping(OptimizerConfig, raw)


def monte_carlo_config_from(raw: Optional[Mapping[str, Any]]) -> MonteCarloConfig:
    return _dataclass_from_mapping(MonteCarloConfig, raw)
