"""
File-based Candle Cache and Cached Provider

Stores fetched candle series as JSON under a cache directory so repeated
backtests over the same window skip the broker round trip.

1. CandleCache          - read/write/clear JSON cache files
2. CachedCandleProvider - cache-first wrapper around a CandleSource
3. load_candles_csv     - load a series from a CSV export (pandas)

A cache file is treated as stale when it holds fewer than half the
candles expected for the date range (weekends and holidays account for
the rest), so partially fetched ranges are re-fetched.

Usage:
    cache = CandleCache('.cache/candles')
    provider = CachedCandleProvider(source, cache)
    candles = provider.get_candles('XAUUSD.s', 'M5', start, end)
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

import pandas as pd

from smc.backtesting.data_providers.base import (
    Candle,
    CandleSource,
    parse_time,
    sort_and_dedupe,
)

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = Path('.cache') / 'candles'

# Expected candles per calendar day, used for the completeness check
CANDLES_PER_DAY: Dict[str, int] = {
    'M1': 1440,
    'M5': 288,
    'M15': 96,
    'M30': 48,
    'H1': 24,
    'H4': 6,
    'D1': 1,
}

COMPLETENESS_THRESHOLD = 0.5


def expected_min_candles(timeframe: str, start: datetime, end: datetime) -> float:
    """Minimum candle count for a cached range to count as complete."""
    days = (end - start).total_seconds() / 86400
    return days * CANDLES_PER_DAY.get(timeframe, 24) * COMPLETENESS_THRESHOLD


class CandleCache:
    """
    JSON file cache keyed by symbol, timeframe and date range.

    File name: {symbol}_{timeframe}_{YYYY-MM-DD}_{YYYY-MM-DD}.json
    """

    def __init__(self, cache_dir: Union[str, Path] = DEFAULT_CACHE_DIR):
        self.cache_dir = Path(cache_dir)

    @staticmethod
    def cache_key(symbol: str, timeframe: str, start: datetime, end: datetime) -> str:
        return f"{symbol}_{timeframe}_{start:%Y-%m-%d}_{end:%Y-%m-%d}.json"

    def path_for(self, symbol: str, timeframe: str, start: datetime, end: datetime) -> Path:
        return self.cache_dir / self.cache_key(symbol, timeframe, start, end)

    def load(
        self,
        symbol: str,
        timeframe: str,
        start: datetime,
        end: datetime,
        check_complete: bool = True,
    ) -> Optional[List[Candle]]:
        """
        Load a cached series.

        Returns:
            Candles, or None when missing, unreadable or incomplete
        """
        path = self.path_for(symbol, timeframe, start, end)
        if not path.exists():
            return None

        try:
            with open(path) as f:
                data = json.load(f)
            candles = [Candle.from_dict(row) for row in data]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Unreadable cache file %s: %s", path.name, e)
            return None

        if check_complete:
            expected = expected_min_candles(timeframe, start, end)
            if len(candles) < expected:
                logger.info(
                    "[Cache] %s: %d candles, expected ~%d+. Re-fetching",
                    timeframe, len(candles), round(expected),
                )
                return None

        return candles

    def save(
        self,
        candles: List[Candle],
        symbol: str,
        timeframe: str,
        start: datetime,
        end: datetime,
    ) -> Optional[Path]:
        """Write a series to the cache. Returns the file path, or None on I/O error."""
        path = self.path_for(symbol, timeframe, start, end)
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            with open(path, 'w') as f:
                json.dump([c.to_dict() for c in candles], f)
        except OSError as e:
            logger.warning("Could not save cache %s: %s", path.name, e)
            return None
        return path

    def clear(self) -> int:
        """Delete all cached JSON files. Returns the number removed."""
        if not self.cache_dir.exists():
            return 0
        removed = 0
        for path in self.cache_dir.glob('*.json'):
            path.unlink()
            removed += 1
        logger.info("Cleared %d cached files", removed)
        return removed


class CachedCandleProvider:
    """
    Cache-first candle provider.

    Falls back to the wrapped CandleSource on a cache miss, normalizes
    the result (sorted, unique timestamps) and writes it back. With no
    source configured, only cached data is served.
    """

    def __init__(
        self,
        source: Optional[CandleSource] = None,
        cache: Optional[CandleCache] = None,
    ):
        self._source = source
        self._cache = cache or CandleCache()

    def get_candles(
        self,
        symbol: str,
        timeframe: str,
        start: datetime,
        end: datetime,
    ) -> List[Candle]:
        cached = self._cache.load(symbol, timeframe, start, end)
        if cached:
            logger.info("[Cache] %s: %d candles from cache", timeframe, len(cached))
            return cached

        if self._source is None:
            # Serve an incomplete cache rather than nothing
            partial = self._cache.load(symbol, timeframe, start, end, check_complete=False)
            if partial:
                logger.warning("[Cache] %s: serving incomplete cache (%d candles)",
                               timeframe, len(partial))
                return partial
            logger.warning("No cached %s %s data and no candle source configured",
                           symbol, timeframe)
            return []

        fetched = self._source.fetch(symbol, timeframe, start, end)
        candles = sort_and_dedupe(c for c in fetched if start <= c.time <= end)
        logger.info("[API] %s: %d candles fetched", timeframe, len(candles))

        if candles:
            self._cache.save(candles, symbol, timeframe, start, end)
        return candles

    def get_timeframes(
        self,
        symbol: str,
        timeframes: List[str],
        start: datetime,
        end: datetime,
    ) -> Dict[str, List[Candle]]:
        """Fetch several timeframes for one symbol (each only once)."""
        return {
            tf: self.get_candles(symbol, tf, start, end)
            for tf in dict.fromkeys(timeframes)
        }


def load_candles_csv(path: Union[str, Path]) -> List[Candle]:
    """
    Load candles from a CSV with columns time, open, high, low, close[, volume].

    Column names are matched case-insensitively; rows are sorted and
    de-duplicated on time.
    """
    df = pd.read_csv(path)
    df.columns = [str(c).strip().lower() for c in df.columns]
    if 'volume' not in df.columns:
        df['volume'] = 0.0
    df['volume'] = df['volume'].fillna(0.0)

    candles = [
        Candle(
            time=parse_time(row.time),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for row in df.itertuples(index=False)
    ]
    return sort_and_dedupe(candles)
