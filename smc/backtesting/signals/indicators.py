"""
Indicators - Pure Functions over Candle Windows

Stateless building blocks shared by the structure detector, the signal
generators and the filter pipeline:
- ATR (14-period true range average), SMA, population std (numpy)
- Swing point detection (strict dominance over a symmetric lookback)
- EMA / EMA trend, HTF bias
- Bollinger bands and percentile ranking
- Greedy price clustering (equal highs/lows)
- OTE retracement zone

None of these functions mutate their inputs.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from smc.backtesting.config import Bias
from smc.backtesting.data_providers.base import Candle


class SwingKind(str, Enum):
    HIGH = "HIGH"
    LOW = "LOW"


class SwingPivot(NamedTuple):
    """A detected local extremum (index is relative to the scanned window)."""
    kind: SwingKind
    price: float
    time: datetime
    index: int


def calculate_atr(candles: Sequence[Candle], period: int = 14) -> float:
    """
    Average true range over the last `period` candles.

    Returns 0.0 when fewer than period + 1 candles are available; callers
    treat a zero ATR as "insufficient data".
    """
    if len(candles) < period + 1:
        return 0.0

    window = candles[-(period + 1):]
    high = np.array([c.high for c in window[1:]])
    low = np.array([c.low for c in window[1:]])
    prev_close = np.array([c.close for c in window[:-1]])

    true_range = np.maximum.reduce([
        high - low,
        np.abs(high - prev_close),
        np.abs(low - prev_close),
    ])
    return float(true_range.mean())


def find_swing_points(candles: Sequence[Candle], lookback: int = 3) -> List[SwingPivot]:
    """
    Local highs and lows that strictly dominate `lookback` candles on each side.

    Returns:
        Pivots sorted by time
    """
    pivots: List[SwingPivot] = []
    for i in range(lookback, len(candles) - lookback):
        candle = candles[i]
        neighbours = [candles[j] for j in range(i - lookback, i + lookback + 1) if j != i]

        if all(n.high < candle.high for n in neighbours):
            pivots.append(SwingPivot(SwingKind.HIGH, candle.high, candle.time, i))
        if all(n.low > candle.low for n in neighbours):
            pivots.append(SwingPivot(SwingKind.LOW, candle.low, candle.time, i))

    pivots.sort(key=lambda p: p.time)
    return pivots


def split_swings(pivots: Sequence[SwingPivot]) -> Tuple[List[float], List[float]]:
    """Separate pivot prices into (highs, lows), preserving order."""
    highs = [p.price for p in pivots if p.kind is SwingKind.HIGH]
    lows = [p.price for p in pivots if p.kind is SwingKind.LOW]
    return highs, lows


def determine_htf_bias(candles: Sequence[Candle]) -> Bias:
    """
    Structural bias from higher-timeframe swings.

    Higher high + higher low over the last four pivots is bullish, lower
    high + lower low bearish. Without a clean sequence, a net move of more
    than 0.5% across the window decides.
    """
    if len(candles) < 10:
        return Bias.NEUTRAL

    pivots = find_swing_points(candles, 3)
    if len(pivots) < 4:
        return Bias.NEUTRAL

    highs, lows = split_swings(pivots[-4:])
    if len(highs) >= 2 and len(lows) >= 2:
        higher_high = highs[-1] > highs[-2]
        higher_low = lows[-1] > lows[-2]
        lower_high = highs[-1] < highs[-2]
        lower_low = lows[-1] < lows[-2]
        if higher_high and higher_low:
            return Bias.BULLISH
        if lower_high and lower_low:
            return Bias.BEARISH

    first, last = candles[0].close, candles[-1].close
    change = (last - first) / first if first else 0.0
    if change > 0.005:
        return Bias.BULLISH
    if change < -0.005:
        return Bias.BEARISH
    return Bias.NEUTRAL


def calculate_ema(values: Sequence[float], period: int) -> float:
    """
    Exponential moving average of the full series, seeded with the SMA of
    the first `period` values. Short series return the last value.
    """
    if not values:
        return 0.0
    if len(values) < period:
        return values[-1]

    k = 2 / (period + 1)
    ema = simple_moving_average(values[:period], period)
    for value in values[period:]:
        ema = value * k + ema * (1 - k)
    return ema


def ema_trend(
    candles: Sequence[Candle],
    period: int = 50,
    strictness: str = 'relaxed',
    min_distance: float = 0.001,
) -> Bias:
    """
    Trend read from price against an EMA of closes.

    Modes:
        relaxed  - close above/below the EMA
        strict   - close on the EMA's side and the EMA sloping that way
        distance - strict, and at least `min_distance` (fraction) from the EMA
    """
    if len(candles) < period + 5:
        return Bias.NEUTRAL

    closes = [c.close for c in candles]
    k = 2 / (period + 1)
    ema = simple_moving_average(closes[:period], period)
    prev_ema = ema
    for close in closes[period:]:
        prev_ema = ema
        ema = close * k + ema * (1 - k)

    price = closes[-1]
    above = price > ema
    below = price < ema

    if strictness == 'strict':
        if above and ema > prev_ema:
            return Bias.BULLISH
        if below and ema < prev_ema:
            return Bias.BEARISH
        return Bias.NEUTRAL

    if strictness == 'distance':
        far_enough = ema > 0 and abs(price - ema) / ema >= min_distance
        if above and ema > prev_ema and far_enough:
            return Bias.BULLISH
        if below and ema < prev_ema and far_enough:
            return Bias.BEARISH
        return Bias.NEUTRAL

    if above:
        return Bias.BULLISH
    if below:
        return Bias.BEARISH
    return Bias.NEUTRAL


def mean(values: Sequence[float]) -> float:
    return float(np.mean(values)) if len(values) else 0.0


def simple_moving_average(values: Sequence[float], period: int) -> float:
    """Mean of the last `period` values; 0.0 when fewer are available."""
    if period <= 0 or len(values) < period:
        return 0.0
    return float(np.mean(values[-period:]))


def population_std(values: Sequence[float], center: Optional[float] = None) -> float:
    """Population standard deviation, optionally around a supplied center."""
    if not len(values):
        return 0.0
    arr = np.asarray(values, dtype=float)
    if center is None:
        return float(np.std(arr, ddof=0))
    return float(np.sqrt(np.mean((arr - center) ** 2)))


class BollingerBands(NamedTuple):
    upper: float
    middle: float
    lower: float

    @property
    def bandwidth(self) -> float:
        return self.upper - self.lower


def bollinger_bands(
    closes: Sequence[float],
    period: int = 20,
    num_std: float = 2.0,
) -> Optional[BollingerBands]:
    """Bands over the last `period` closes; None when too short."""
    if len(closes) < period:
        return None
    window = np.asarray(closes[-period:], dtype=float)
    middle = float(window.mean())
    std = float(window.std(ddof=0))
    return BollingerBands(middle + num_std * std, middle, middle - num_std * std)


def percentile(values: Sequence[float], pct: float) -> float:
    """Nearest-rank style percentile: sorted[min(floor(n * pct / 100), n - 1)]."""
    if not len(values):
        return 0.0
    ordered = np.sort(np.asarray(values, dtype=float))
    idx = min(int(len(ordered) * pct // 100), len(ordered) - 1)
    return float(ordered[idx])


@dataclass
class PriceCluster:
    """Prices that sit within a tolerance of their running average."""
    average: float
    members: List[int] = field(default_factory=list)  # indices into the input

    @property
    def count(self) -> int:
        return len(self.members)


def find_price_clusters(prices: Sequence[float], tolerance: float) -> List[PriceCluster]:
    """
    Greedy clustering: each unassigned price opens a cluster that absorbs
    later prices within `tolerance` of the cluster's running average.
    """
    used = [False] * len(prices)
    clusters: List[PriceCluster] = []

    for i, seed in enumerate(prices):
        if used[i]:
            continue
        used[i] = True
        cluster = PriceCluster(average=seed, members=[i])
        total = seed
        for j in range(i + 1, len(prices)):
            if used[j]:
                continue
            if abs(prices[j] - cluster.average) <= tolerance:
                used[j] = True
                cluster.members.append(j)
                total += prices[j]
                cluster.average = total / len(cluster.members)
        clusters.append(cluster)

    return clusters


def in_ote_zone(price: float, candles: Sequence[Candle], bias: Bias) -> bool:
    """
    Whether price sits in the 61.8-78.6% retracement of the window's range.

    Bullish measures the retracement down from the high, otherwise up
    from the low.
    """
    if not candles:
        return False
    swing_high = max(c.high for c in candles)
    swing_low = min(c.low for c in candles)
    span = swing_high - swing_low
    if span == 0:
        return False

    if bias is Bias.BULLISH:
        fib_618 = swing_high - span * 0.618
        fib_786 = swing_high - span * 0.786
        return fib_786 <= price <= fib_618

    fib_618 = swing_low + span * 0.618
    fib_786 = swing_low + span * 0.786
    return fib_618 <= price <= fib_786
