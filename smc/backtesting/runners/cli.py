"""
CLI Entry Point for the SMC Backtest Engine

Runs a single strategy, every preset variation, or every timeframe
preset over cached (or CSV) candles for one or more symbols.

Usage:
    python -m smc.backtesting.runners.cli --symbol XAUUSD.s --strategy FVG
    python -m smc.backtesting.runners.cli --symbols XAUUSD.s,BTCUSD --compare-all --top 20
    python -m smc.backtesting.runners.cli -s BTCUSD --compare-timeframes
    python -m smc.backtesting.runners.cli -s XAUUSD.s --csv-dir data/ --tf m5 --seed 7

Candles are read from the candle cache (.cache/candles, or
SMC_CANDLE_CACHE_DIR from the environment / .env) or, with --csv-dir,
from {symbol}_{timeframe}.csv files. Nothing is fetched from a broker.
"""

import argparse
import json
import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Sequence

from dotenv import load_dotenv

from smc.backtesting.analytics.results_formatter import (
    MetricsAggregator,
    ResultsFormatter,
    RunResult,
)
from smc.backtesting.config import SYMBOL_INFO, EngineConfig, StrategyVariant
from smc.backtesting.data_providers.base import Candle
from smc.backtesting.data_providers.candle_cache import (
    DEFAULT_CACHE_DIR,
    CachedCandleProvider,
    CandleCache,
    load_candles_csv,
)
from smc.backtesting.engine import BatchRunner
from smc.backtesting.presets import (
    TimeframePreset,
    get_timeframe_preset,
    load_timeframe_presets,
    load_variations,
)

logger = logging.getLogger(__name__)

DEFAULT_SYMBOLS = list(SYMBOL_INFO)
DEFAULT_LOOKBACK_DAYS = 7
CACHE_DIR_ENV = 'SMC_CANDLE_CACHE_DIR'


def parse_args(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description='SMC Multi-Timeframe Backtest',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='Strategies: ' + ', '.join(v.value for v in StrategyVariant),
    )

    # Data selection
    parser.add_argument('--symbol', '-s',
                        help='Single symbol (overrides --symbols)')
    parser.add_argument('--symbols', default=','.join(DEFAULT_SYMBOLS),
                        help='Comma-separated symbols (default: %(default)s)')
    parser.add_argument('--start', default=None,
                        help='Start date YYYY-MM-DD (default: 7 days ago)')
    parser.add_argument('--end', default=None,
                        help='End date YYYY-MM-DD, inclusive (default: today)')
    parser.add_argument('--timeframe', '--tf', default='standard',
                        help='Timeframe preset (default: standard)')

    # Strategy & risk
    parser.add_argument('--strategy', default=StrategyVariant.ORDER_BLOCK.value,
                        help='Strategy for single runs (default: ORDER_BLOCK)')
    parser.add_argument('--balance', '-b', type=float, default=1000.0,
                        help='Initial balance (default: 1000)')
    parser.add_argument('--risk', '-r', type=float, default=2.0,
                        help='Risk %% per trade (default: 2)')
    parser.add_argument('--seed', type=int, default=None,
                        help='Random seed for spread and slippage')

    # Modes
    parser.add_argument('--compare-all', '-c', action='store_true',
                        help='Compare all strategy variations')
    parser.add_argument('--compare-timeframes', '-t', action='store_true',
                        help='Compare all timeframe presets')
    parser.add_argument('--top', type=int, default=0,
                        help='Limit to the first N variations (0 = all)')
    parser.add_argument('--presets', type=str, default=None,
                        help='Variations JSON file (default: packaged presets)')
    parser.add_argument('--workers', type=int, default=1,
                        help='Parallel runs (default: 1)')

    # Candle data
    parser.add_argument('--cache-dir', type=str, default=None,
                        help=f'Candle cache directory (default: ${CACHE_DIR_ENV} or {DEFAULT_CACHE_DIR})')
    parser.add_argument('--csv-dir', type=str, default=None,
                        help='Directory of {symbol}_{timeframe}.csv candle files')
    parser.add_argument('--clear-cache', action='store_true',
                        help='Delete cached candle files before running')

    # Output
    parser.add_argument('--output', '-o', type=str, default=None,
                        help='Write results JSON to this path')
    parser.add_argument('--csv', type=str, default=None,
                        help='Write trades CSV to this path')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Verbose logging')
    parser.add_argument('--debug', '-d', action='store_true',
                        help='Log filtered candidates')

    # Config file
    parser.add_argument('--config', type=str,
                        help='JSON file of config keys applied to every run')

    return parser.parse_args(argv)


def build_config(args) -> EngineConfig:
    """Account-level base config from CLI arguments."""
    return EngineConfig(
        initial_balance=args.balance,
        risk_percent=args.risk,
        debug_filters=args.debug,
        seed=args.seed,
    )


def load_overrides(args) -> Dict:
    """Config keys from --config (empty when not given)."""
    if not args.config:
        return {}
    config_path = Path(args.config)
    if not config_path.exists():
        logger.error("Config file not found: %s", config_path)
        sys.exit(1)
    with open(config_path) as f:
        data = json.load(f)
    if not isinstance(data, dict):
        logger.error("Config file must hold a JSON object: %s", config_path)
        sys.exit(1)
    return data


def resolve_symbols(args) -> List[str]:
    if args.symbol:
        return [args.symbol]
    return [s.strip() for s in args.symbols.split(',') if s.strip()]


def resolve_dates(args):
    """
    UTC start/end datetimes; defaults to the last 7 days.

    Both dates are inclusive: start is 00:00 on the start date, end is
    23:59:59 on the end date.
    """
    today = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    end_day = _parse_date(args.end) if args.end else today
    end = end_day.replace(hour=23, minute=59, second=59)
    start = _parse_date(args.start) if args.start else end_day - timedelta(days=DEFAULT_LOOKBACK_DAYS)
    return start, end


def _parse_date(value: str) -> datetime:
    return datetime.strptime(value, '%Y-%m-%d').replace(tzinfo=timezone.utc)


def cache_dir(args) -> Path:
    return Path(args.cache_dir or os.environ.get(CACHE_DIR_ENV) or DEFAULT_CACHE_DIR)


def load_candles(
    args,
    symbol: str,
    timeframes: Sequence[str],
    start: datetime,
    end: datetime,
) -> Dict[str, List[Candle]]:
    """Candles per timeframe from --csv-dir or the candle cache."""
    if args.csv_dir:
        candles = {}
        for tf in dict.fromkeys(timeframes):
            path = Path(args.csv_dir) / f"{symbol}_{tf}.csv"
            if not path.exists():
                logger.warning("Missing CSV: %s", path)
                candles[tf] = []
                continue
            candles[tf] = [c for c in load_candles_csv(path) if start <= c.time <= end]
        return candles

    provider = CachedCandleProvider(cache=CandleCache(cache_dir(args)))
    return provider.get_timeframes(symbol, list(timeframes), start, end)


def write_outputs(args, results: List[RunResult]) -> None:
    if args.output:
        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, 'w') as f:
            json.dump([r.to_dict() for r in results], f, indent=2)
        print(f"\nResults written to: {output_path}")

    if args.csv:
        trades = [t for r in results for t in r.trades]
        if not trades:
            logger.info("No trades to export")
            return
        df = MetricsAggregator.trades_dataframe(trades)
        df.insert(0, 'symbol', [r.symbol for r in results for _ in r.trades])
        df.insert(1, 'run', [r.name for r in results for _ in r.trades])
        csv_path = Path(args.csv)
        csv_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(csv_path, index=False)
        print(f"Trades exported to: {csv_path}")


def main(argv=None):
    """Main entry point."""
    load_dotenv()
    args = parse_args(argv)

    # Setup logging
    level = logging.DEBUG if (args.verbose or args.debug) else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%H:%M:%S',
    )

    base = build_config(args)
    overrides = load_overrides(args)

    # Validate
    issues = EngineConfig.from_dict(overrides, base=base).validate()
    if issues:
        for issue in issues:
            logger.error("Config error: %s", issue)
        sys.exit(1)

    if args.clear_cache:
        CandleCache(cache_dir(args)).clear()

    symbols = resolve_symbols(args)
    start, end = resolve_dates(args)
    period = f"{start:%Y-%m-%d} to {end:%Y-%m-%d} ({(end - start).days} days)"

    timeframe_presets = load_timeframe_presets()
    if args.compare_timeframes:
        presets: Dict[str, TimeframePreset] = timeframe_presets
    else:
        preset = get_timeframe_preset(args.timeframe, timeframe_presets)
        presets = {preset.key: preset}

    needed = [tf for p in presets.values() for tf in p.timeframes]
    runner = BatchRunner(base, overrides=overrides, max_workers=args.workers)
    all_results: List[RunResult] = []

    for symbol in symbols:
        print(f"\n{'-' * 60}\n  {symbol}\n{'-' * 60}")
        candles = {symbol: load_candles(args, symbol, needed, start, end)}
        summary = ', '.join(f"{tf}={len(c)}" for tf, c in candles[symbol].items())
        print(f"  Data: {summary} candles")

        if args.compare_timeframes:
            results = runner.compare_timeframes(candles, presets)
            print(ResultsFormatter.comparison_table(results, period))
        elif args.compare_all:
            variations = load_variations(args.presets)
            results = runner.run_variations(candles, variations, preset, top_n=args.top)
            print(ResultsFormatter.comparison_table(results, period))
        else:
            results = runner.run_single(candles, args.strategy, preset)
            for r in results:
                print(f"  Timeframe: {preset.name}")
                print(f"  Period:    {period}")
                print(r.metrics.summary())

        all_results.extend(results)

    if len(symbols) > 1 and all_results:
        print(ResultsFormatter.combined_summary(all_results, period))

    write_outputs(args, all_results)
    return all_results


if __name__ == '__main__':
    main()
