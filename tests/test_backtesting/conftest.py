"""
Shared fixtures for SMC backtesting tests.

Provides candle factories (single candles, flat / trending / oscillating
series) and a deterministic config for replay tests.
"""

import math
import random
from datetime import datetime, timedelta, timezone

import pytest

from smc.backtesting.config import EngineConfig
from smc.backtesting.data_providers.base import Candle
from smc.backtesting.exits.exit_evaluator import NoSlippage

BASE_TIME = datetime(2024, 1, 10, 10, 0, tzinfo=timezone.utc)


def _candle(open_, high, low, close, time=None, volume=100.0):
    return Candle(
        time=time or BASE_TIME,
        open=float(open_),
        high=float(high),
        low=float(low),
        close=float(close),
        volume=float(volume),
    )


def _flat_series(count, end, step, price=2000.0):
    """Identical small bullish candles ending at `end` (no structure)."""
    start = end - step * (count - 1)
    return [
        _candle(price, price + 1, price - 1, price + 0.5, start + step * i)
        for i in range(count)
    ]


def _trend_series(count, end, step, start_price=1900.0, increment=5.0):
    """Steadily rising closes ending at `end`."""
    start = end - step * (count - 1)
    candles = []
    price = start_price
    for i in range(count):
        close = price + increment
        candles.append(_candle(price, close + 1, price - 1, close, start + step * i))
        price = close
    return candles


# Two higher highs and two higher lows with lookback 3
ZIGZAG_LEVELS = [
    1900, 1905, 1910, 1915, 1920, 1915, 1910, 1905, 1912, 1919,
    1926, 1933, 1926, 1919, 1912, 1920, 1928, 1936, 1944, 1952,
]


def _zigzag_series(end, step, mirror=False):
    """Twenty candles swinging higher (lower when mirrored) ending at `end`."""
    start = end - step * (len(ZIGZAG_LEVELS) - 1)
    candles = []
    for i, level in enumerate(ZIGZAG_LEVELS):
        if mirror:
            level = 2 * ZIGZAG_LEVELS[0] - level
        candles.append(_candle(level - 1, level + 2, level - 2, level + 1, start + step * i))
    return candles


def _wave_series(count, start, step, base=2000.0, amplitude=20.0, period=40, seed=3):
    """Sine wave with seeded noise, starting at `start`."""
    rng = random.Random(seed)
    candles = []
    prev_close = base
    for i in range(count):
        close = base + amplitude * math.sin(2 * math.pi * i / period) + rng.uniform(-2, 2)
        high = max(prev_close, close) + rng.uniform(0.2, 2.0)
        low = min(prev_close, close) - rng.uniform(0.2, 2.0)
        candles.append(_candle(prev_close, high, low, close, start + step * i,
                               volume=rng.uniform(50, 300)))
        prev_close = close
    return candles


@pytest.fixture
def make_candle():
    """Factory: make_candle(open, high, low, close, time=None, volume=100)."""
    return _candle


@pytest.fixture
def flat_series():
    """Factory: flat_series(count, end, step, price=2000)."""
    return _flat_series


@pytest.fixture
def trend_series():
    """Factory: trend_series(count, end, step, start_price=1900, increment=5)."""
    return _trend_series


@pytest.fixture
def zigzag_series():
    """Factory: zigzag_series(end, step, mirror=False)."""
    return _zigzag_series


@pytest.fixture
def wave_series():
    """Factory: wave_series(count, start, step, base=2000, amplitude=20, period=40)."""
    return _wave_series


@pytest.fixture
def config():
    """Default gold config with a fixed seed."""
    return EngineConfig(seed=7)


@pytest.fixture
def no_slippage():
    return NoSlippage()


@pytest.fixture
def mtf_scenario():
    """
    Candle windows for a bullish, structure-free market at BASE_TIME.

    HTF: 20 H4 candles making higher highs and higher lows (bullish)
    MTF: 30 flat H1 candles (ATR 2, no blocks, gaps or swings)
    """
    htf = _zigzag_series(BASE_TIME - timedelta(hours=4), timedelta(hours=4))
    mtf = _flat_series(30, BASE_TIME - timedelta(hours=1), timedelta(hours=1))
    return htf, mtf


@pytest.fixture
def wave_market():
    """HTF/MTF/LTF oscillating series covering the same two days."""
    start = BASE_TIME - timedelta(days=3)
    htf = _wave_series(20, start, timedelta(hours=4), period=12, seed=1)
    mtf = _wave_series(80, start, timedelta(hours=1), period=24, seed=2)
    ltf = _wave_series(600, start + timedelta(hours=30), timedelta(minutes=5), period=60, seed=3)
    return htf, mtf, ltf


@pytest.fixture
def ob_market():
    """
    One bullish order block that is retested and runs to target.

    HTF: bullish zigzag ending 12h before BASE_TIME
    MTF: 20 flat H1 candles, a bearish block candle (2000.5 -> 1995,
         range 1994-2001), displacement to 2023, retrace to 2001
    LTF: 100 warm-up M5 candles, a close at 2000 inside the block on
         BASE_TIME, a gap-up candle through 2016, then flat at 2015
    """
    h1 = timedelta(hours=1)
    m5 = timedelta(minutes=5)
    htf = _zigzag_series(BASE_TIME - timedelta(hours=12), timedelta(hours=4))

    mtf_end = BASE_TIME - timedelta(hours=9)
    mtf = _flat_series(20, mtf_end - h1 * 6, h1)
    for offset, ohlc in zip(range(5, -1, -1), [
        (2000.5, 2001, 1994, 1995),
        (1995, 2010, 1995, 2009),
        (2009, 2023, 2008, 2022),
        (2022, 2022.5, 2012, 2012.5),
        (2012.5, 2013, 2004, 2004.5),
        (2004.5, 2005, 2000, 2001),
    ]):
        mtf.append(_candle(*ohlc, time=mtf_end - h1 * offset))

    ltf = _flat_series(100, BASE_TIME - m5, m5)
    ltf.append(_candle(2000.5, 2001, 1999.5, 2000, BASE_TIME))
    ltf.append(_candle(2001, 2016, 2001, 2015.5, BASE_TIME + m5))
    ltf.extend(_flat_series(18, BASE_TIME + m5 * 19, m5, price=2015.0))
    return htf, mtf, ltf
