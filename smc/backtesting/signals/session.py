"""
Session State - Running Aggregates for Session-aware Strategies

Advanced once per LTF candle (never per signal evaluation):
- Asian range (00:00-06:59 UTC)
- London / New York opening ranges (first 15 minutes of 07:00 / 12:00 UTC)
- Session TVWAP, reset at each UTC date
- Bollinger bandwidth history over the visible MTF closes
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional, Sequence

from smc.backtesting.data_providers.base import Candle
from smc.backtesting.signals.indicators import bollinger_bands

BBW_HISTORY_LIMIT = 100
BBW_MIN_MTF_CANDLES = 30


@dataclass
class AsianRange:
    day: Optional[date] = None
    high: float = float('-inf')
    low: float = float('inf')

    @property
    def valid(self) -> bool:
        return self.high > self.low


@dataclass
class OpeningRange:
    """First 15 minutes after a session's open hour."""
    open_hour: int
    day: Optional[date] = None
    high: float = 0.0
    low: float = float('inf')
    done: bool = False

    def update(self, ts: datetime, candle: Candle) -> None:
        if self.day != ts.date():
            self.day = ts.date()
            self.high = 0.0
            self.low = float('inf')
            self.done = False

        if ts.hour == self.open_hour and ts.minute < 15:
            self.high = max(self.high, candle.high)
            self.low = min(self.low, candle.low)
        elif ts.hour == self.open_hour and not self.done:
            self.done = True

    def tradeable_at(self, ts: datetime) -> bool:
        """Breakout window: from range completion up to open_hour + 2h (inclusive of :00)."""
        end_hour = self.open_hour + 2
        return self.done and ts.hour >= self.open_hour and (
            ts.hour < end_hour or (ts.hour == end_hour and ts.minute == 0)
        )


@dataclass
class SessionVWAP:
    day: Optional[date] = None
    cum_pv: float = 0.0
    cum_volume: float = 0.0

    @property
    def value(self) -> Optional[float]:
        if self.cum_volume <= 0:
            return None
        return self.cum_pv / self.cum_volume


@dataclass
class SessionTracker:
    """Per-run session state owned by the replay loop."""
    asian: AsianRange = field(default_factory=AsianRange)
    london: OpeningRange = field(default_factory=lambda: OpeningRange(open_hour=7))
    new_york: OpeningRange = field(default_factory=lambda: OpeningRange(open_hour=12))
    vwap: SessionVWAP = field(default_factory=SessionVWAP)
    bbw_history: List[float] = field(default_factory=list)

    def reset(self) -> None:
        self.asian = AsianRange()
        self.london = OpeningRange(open_hour=7)
        self.new_york = OpeningRange(open_hour=12)
        self.vwap = SessionVWAP()
        self.bbw_history = []

    def update(self, candle: Candle, mtf: Sequence[Candle] = ()) -> None:
        ts = candle.time
        day = ts.date()

        if self.asian.day != day:
            self.asian = AsianRange(day=day)
        if ts.hour < 7:
            self.asian.high = max(self.asian.high, candle.high)
            self.asian.low = min(self.asian.low, candle.low)

        self.london.update(ts, candle)
        self.new_york.update(ts, candle)

        if self.vwap.day != day:
            self.vwap = SessionVWAP(day=day)
        weight = candle.volume or 1.0
        self.vwap.cum_pv += candle.typical_price * weight
        self.vwap.cum_volume += weight

        if len(mtf) >= BBW_MIN_MTF_CANDLES:
            bands = bollinger_bands([c.close for c in mtf], 20, 2.0)
            if bands is not None:
                self.bbw_history.append(bands.bandwidth)
                if len(self.bbw_history) > BBW_HISTORY_LIMIT:
                    del self.bbw_history[:-BBW_HISTORY_LIMIT]

    def active_opening_range(self, ts: datetime) -> Optional[OpeningRange]:
        """London range during its window, else New York during its window."""
        if self.london.tradeable_at(ts):
            return self.london
        if self.new_york.tradeable_at(ts):
            return self.new_york
        return None
