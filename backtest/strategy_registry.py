"""
Strategy registry and the sample strategies used by the CLI and tests.
"""
from typing import Any, Callable, Dict, List, Mapping, Sequence

import numpy as np

from backtest.engine import Strategy
from backtest.indicators import rsi, sma
from backtest.types import Bar, Signal, SignalType


def _closes(bars: Sequence[Bar]) -> np.ndarray:
    return np.array([b.close for b in bars], dtype=float)


def _signal(bars: Sequence[Bar], i: int, side: str, reason: str) -> Signal:
    return Signal(time=bars[i].time, type=side, price=float(bars[i].close), reason=reason, bar_index=i)


class SMACrossoverStrategy(Strategy):
    """Buy when the fast SMA crosses above the slow SMA, sell on the cross below."""

    name = "sma_crossover"
    default_params = {"fast_period": 10, "slow_period": 30}
    walk_forward_params = ["fast_period", "slow_period"]

    def execute(self, bars: Sequence[Bar], params: Mapping[str, Any]) -> List[Signal]:
        fast_n = int(params.get("fast_period", self.default_params["fast_period"]))
        slow_n = int(params.get("slow_period", self.default_params["slow_period"]))
        if fast_n < 1 or slow_n < 1 or fast_n >= slow_n:
            return []
        close = _closes(bars)
        fast = sma(close, fast_n)
        slow = sma(close, slow_n)
        out = []
        for i in range(1, len(bars)):
            if np.isnan(slow[i - 1]):
                continue
            prev = fast[i - 1] - slow[i - 1]
            cur = fast[i] - slow[i]
            if prev <= 0 < cur:
                out.append(_signal(bars, i, SignalType.BUY, "sma_cross_up"))
            elif prev >= 0 > cur:
                out.append(_signal(bars, i, SignalType.SELL, "sma_cross_down"))
        return out


class RSIReversalStrategy(Strategy):
    """Buy when RSI leaves the oversold zone, sell when it leaves overbought."""

    name = "rsi_reversal"
    default_params = {"rsi_period": 14, "oversold": 30, "overbought": 70}
    walk_forward_params = ["rsi_period", "oversold", "overbought"]

    def execute(self, bars: Sequence[Bar], params: Mapping[str, Any]) -> List[Signal]:
        period = int(params.get("rsi_period", self.default_params["rsi_period"]))
        oversold = float(params.get("oversold", self.default_params["oversold"]))
        overbought = float(params.get("overbought", self.default_params["overbought"]))
        if period < 2 or oversold >= overbought:
            return []
        r = rsi(_closes(bars), period)
        out = []
        for i in range(1, len(bars)):
            if np.isnan(r[i - 1]) or np.isnan(r[i]):
                continue
            if r[i - 1] <= oversold < r[i]:
                out.append(_signal(bars, i, SignalType.BUY, "rsi_exit_oversold"))
            elif r[i - 1] >= overbought > r[i]:
                out.append(_signal(bars, i, SignalType.SELL, "rsi_exit_overbought"))
        return out


REGISTRY: Dict[str, Callable[[], Strategy]] = {
    "sma_crossover": SMACrossoverStrategy,
    "rsi_reversal": RSIReversalStrategy,
}


def register_strategy(key: str, factory: Callable[[], Strategy]) -> None:
    REGISTRY[key.lower().strip()] = factory


def get_strategy(name: str) -> Strategy:
    key = name.lower().strip()
    if key not in REGISTRY:
        raise ValueError(f"Unknown strategy: {name} (available: {', '.join(available_strategies())})")
    return REGISTRY[key]()


def available_strategies() -> List[str]:
    return sorted(REGISTRY.keys())
