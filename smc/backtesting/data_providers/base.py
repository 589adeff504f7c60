"""
Candle Model and Candle Source Protocol

Defines the immutable Candle record consumed by the engine and the
interface a broker adapter implements to supply historical candles.
The engine itself never fetches data; it only requires chronologically
sorted sequences with unique timestamps.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Protocol, Sequence


@dataclass(frozen=True)
class Candle:
    """
    One OHLCV candle.

    Times are timezone-aware UTC; session windows and the daily
    drawdown tracker are evaluated on UTC clock time.
    """
    time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    @property
    def range(self) -> float:
        return self.high - self.low

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        return self.close < self.open

    @property
    def upper_wick(self) -> float:
        return self.high - max(self.open, self.close)

    @property
    def lower_wick(self) -> float:
        return min(self.open, self.close) - self.low

    @property
    def typical_price(self) -> float:
        return (self.high + self.low + self.close) / 3

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'time': self.time.isoformat(),
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Candle':
        """Build from a dict with an ISO-8601 (or datetime) `time` field."""
        return cls(
            time=parse_time(data['time']),
            open=float(data['open']),
            high=float(data['high']),
            low=float(data['low']),
            close=float(data['close']),
            volume=float(data.get('volume') or data.get('tickVolume') or 0.0),
        )


def parse_time(value: Any) -> datetime:
    """Parse an ISO timestamp (trailing 'Z' allowed) into aware UTC."""
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def sort_and_dedupe(candles: Iterable[Candle]) -> List[Candle]:
    """Sort by time and keep the first candle for each timestamp."""
    unique: List[Candle] = []
    last_time = None
    for candle in sorted(candles, key=lambda c: c.time):
        if candle.time != last_time:
            unique.append(candle)
            last_time = candle.time
    return unique


def validate_series(candles: Sequence[Candle], label: str = 'candles') -> None:
    """
    Fail fast on out-of-order or duplicate timestamps.

    Raises:
        ValueError: if timestamps are not strictly increasing
    """
    for prev, cur in zip(candles, candles[1:]):
        if cur.time <= prev.time:
            raise ValueError(
                f"{label} not strictly increasing: {prev.time.isoformat()} "
                f"followed by {cur.time.isoformat()}")


class CandleSource(Protocol):
    """
    Protocol for a historical candle feed (e.g. a broker API adapter).

    Implementations own their own rate limiting and pagination.
    """

    def fetch(
        self,
        symbol: str,
        timeframe: str,
        start: datetime,
        end: datetime,
    ) -> List[Candle]:
        """
        Fetch candles for a symbol/timeframe over a date range.

        Args:
            symbol: Broker symbol (e.g., 'XAUUSD.s')
            timeframe: Timeframe code (M1, M5, M15, M30, H1, H4, D1)
            start: Range start (inclusive)
            end: Range end (inclusive)

        Returns:
            Candles in any order; callers sort and de-duplicate
        """
        ...
