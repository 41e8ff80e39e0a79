"""
Shared datatypes for the backtest engine, optimizer and Monte Carlo lab.
"""
from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class BusinessDay:
    year: int
    month: int
    day: int

    def key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}-{self.day:02d}"


# Epoch seconds, date/ISO string, or a calendar day.
TimeValue = Union[int, float, str, BusinessDay]


class SignalType:
    BUY = "buy"
    SELL = "sell"


class ExitReason:
    SIGNAL = "signal"
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    PARTIAL = "partial"
    TIME_STOP = "time_stop"
    END_OF_DATA = "end_of_data"


LONG = 1
SHORT = -1


def direction_name(direction: int) -> str:
    return "long" if direction == LONG else "short"


@dataclass(frozen=True)
class Bar:
    time: TimeValue
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(frozen=True)
class Signal:
    time: TimeValue
    type: str           # "buy" or "sell"
    price: float
    reason: str = ""
    bar_index: Optional[int] = None


@dataclass(frozen=True)
class Trade:
    id: int
    direction: str      # "long" or "short"
    entry_time: TimeValue
    entry_price: float
    exit_time: TimeValue
    exit_price: float
    size: float
    pnl: float
    pnl_percent: float
    fees: float
    exit_reason: str = ExitReason.SIGNAL


@dataclass(frozen=True)
class EquityPoint:
    time: TimeValue
    value: float
