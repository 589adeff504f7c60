"""
Backtest Engine - Top-level Orchestrator

Coordinates one or many replay runs:
1. Validate the configuration (issues are logged as warnings)
2. Replay the LTF series through a fresh BarSimulator / RunState
3. Aggregate closed trades and counters into BacktestMetrics

BatchRunner fans a set of (symbol, variation) or (symbol, timeframe
preset) pairs out over separate engines, each with its own seeded random
source, optionally on a thread pool.

Usage:
    from smc.backtesting.engine import BacktestEngine, run
    from smc.backtesting.config import EngineConfig

    metrics = run(htf, mtf, ltf, EngineConfig(strategy='FVG', seed=7))

    engine = BacktestEngine(config)
    metrics = engine.run(htf, mtf, ltf)
    print(metrics.summary())
"""

import logging
import random
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from smc.backtesting.analytics.results_formatter import (
    BacktestMetrics,
    MetricsAggregator,
    RunResult,
)
from smc.backtesting.config import EngineConfig
from smc.backtesting.data_providers.base import Candle
from smc.backtesting.exits.exit_evaluator import SlippageModel
from smc.backtesting.presets import TimeframePreset, Variation
from smc.backtesting.simulation.bar_simulator import WARMUP_CANDLES, BarSimulator, RunState
from smc.backtesting.simulation.position_tracker import ClosedTrade

logger = logging.getLogger(__name__)

# Preset-file keys applied under every variation (the file omits them)
VARIATION_DEFAULTS: Dict[str, Any] = {'atrMult': 1.0}

# Fixed order-block setup used when comparing timeframe presets
TIMEFRAME_COMPARISON_PROFILE: Dict[str, Any] = {
    'strategy': 'ORDER_BLOCK',
    'requireOTE': False,
    'fixedRR': 2,
    'minOBScore': 70,
    'minFVGSize': 1.0,
    'useKillZones': False,
    'maxDailyDD': 8,
    'atrMult': 1.0,
    'requireConfirmation': True,
    'confirmationType': 'engulf',
}

# Single-strategy CLI run: 70+ blocks, 8% daily cap, breakeven at 1R + 5 pips
SINGLE_RUN_PROFILE: Dict[str, Any] = {
    'fixedRR': 2,
    'minOBScore': 70,
    'minFVGSize': 1.0,
    'maxDailyDD': 8,
    'atrMult': 1.0,
    'enableBreakeven': True,
    'breakevenTriggerR': 1.0,
    'beBufferPips': 5,
}


class BacktestEngine:
    """
    Single-configuration backtest.

    A new RunState is created on every run() call, so one engine can be
    re-run; trades and state reflect the latest run.
    """

    def __init__(
        self,
        config: EngineConfig,
        slippage: Optional[SlippageModel] = None,
        rng: Optional[random.Random] = None,
    ):
        self._config = config
        self._slippage = slippage
        self._rng = rng
        self._state: Optional[RunState] = None

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def state(self) -> Optional[RunState]:
        return self._state

    @property
    def trades(self) -> List[ClosedTrade]:
        return list(self._state.trades) if self._state else []

    def run(
        self,
        htf: Sequence[Candle],
        mtf: Sequence[Candle],
        ltf: Sequence[Candle],
    ) -> BacktestMetrics:
        """
        Replay the candles and compute metrics.

        Args:
            htf: Higher-timeframe candles
            mtf: Medium-timeframe candles
            ltf: Lower-timeframe candles

        Returns:
            BacktestMetrics (zero trades when there is too little data)
        """
        issues = self._config.validate()
        if issues:
            for issue in issues:
                logger.warning("Config issue: %s", issue)

        # A fresh random source per run keeps repeated runs identical under a seed
        rng = self._rng or random.Random(self._config.seed)
        sim = BarSimulator(self._config, slippage=self._slippage, rng=rng)
        self._state = sim.run(htf, mtf, ltf)

        return MetricsAggregator.compute(
            self._state.trades,
            self._state.counters.to_dict(),
            self._config.initial_balance,
            self._state.max_drawdown,
        )


def run(
    htf: Sequence[Candle],
    mtf: Sequence[Candle],
    ltf: Sequence[Candle],
    config: EngineConfig,
    slippage: Optional[SlippageModel] = None,
    rng: Optional[random.Random] = None,
) -> BacktestMetrics:
    """Run one backtest and return its metrics."""
    return BacktestEngine(config, slippage=slippage, rng=rng).run(htf, mtf, ltf)


# Candles of one symbol keyed by timeframe code ('H4', 'M5', ...)
TimeframeCandles = Mapping[str, Sequence[Candle]]


class BatchRunner:
    """
    Runs many configurations over pre-loaded candles.

    Every run gets its own EngineConfig, engine and random source
    (seeded from base_config.seed), so runs are independent and can
    execute concurrently.

    Usage:
        runner = BatchRunner(EngineConfig(initial_balance=1000, seed=1), max_workers=4)
        results = runner.run_variations({'XAUUSD.s': candles}, variations, preset, top_n=20)
        print(ResultsFormatter.comparison_table(results))
    """

    def __init__(
        self,
        base_config: Optional[EngineConfig] = None,
        overrides: Optional[Mapping[str, Any]] = None,
        max_workers: int = 1,
    ):
        """
        Args:
            base_config: Account-level settings (balance, risk, seed)
            overrides: Keys applied last to every run (e.g. a --config file)
            max_workers: Thread pool size; 1 runs sequentially
        """
        self._base = base_config or EngineConfig()
        self._overrides = dict(overrides or {})
        self._max_workers = max(1, max_workers)

    def build_config(self, symbol: str, params: Mapping[str, Any]) -> EngineConfig:
        """Base config for the symbol, then params, then the run overrides."""
        config = EngineConfig.from_dict(params, base=self._base.with_overrides(symbol=symbol))
        if self._overrides:
            config = EngineConfig.from_dict(self._overrides, base=config)
        return config

    # ── Batch entry points ──────────────────────────────────────────

    def run_variations(
        self,
        candles: Mapping[str, TimeframeCandles],
        variations: Sequence[Variation],
        preset: TimeframePreset,
        top_n: int = 0,
    ) -> List[RunResult]:
        """
        Run every variation (or the first top_n) for every symbol.

        Args:
            candles: Per-symbol candles keyed by timeframe
            variations: Strategy parameter sets
            preset: Timeframe triplet to replay
            top_n: Limit to the first N variations (0 = all)

        Returns:
            One RunResult per completed (symbol, variation), in input order
        """
        active = list(variations[:top_n]) if top_n > 0 else list(variations)
        logger.info("Testing %d variations%s", len(active),
                    f" (limited from {len(variations)})" if top_n > 0 else "")

        jobs = []
        for symbol, by_tf in candles.items():
            series = self._series(symbol, by_tf, preset)
            if series is None:
                continue
            for v in active:
                params = dict(VARIATION_DEFAULTS)
                params.update(v.params)
                jobs.append((v.name, symbol, preset.key, self.build_config(symbol, params), series))
        return self._execute(jobs)

    def compare_timeframes(
        self,
        candles: Mapping[str, TimeframeCandles],
        presets: Mapping[str, TimeframePreset],
    ) -> List[RunResult]:
        """Run the fixed order-block profile on every timeframe preset."""
        jobs = []
        for symbol, by_tf in candles.items():
            for key, preset in presets.items():
                series = self._series(symbol, by_tf, preset)
                if series is None:
                    continue
                config = self.build_config(symbol, TIMEFRAME_COMPARISON_PROFILE)
                jobs.append((preset.name, symbol, key, config, series))
        return self._execute(jobs)

    def run_single(
        self,
        candles: Mapping[str, TimeframeCandles],
        strategy: str,
        preset: TimeframePreset,
    ) -> List[RunResult]:
        """Run one strategy with the single-run profile for every symbol."""
        params = dict(SINGLE_RUN_PROFILE)
        params['strategy'] = strategy
        jobs = []
        for symbol, by_tf in candles.items():
            series = self._series(symbol, by_tf, preset)
            if series is None:
                continue
            jobs.append((symbol, symbol, preset.key, self.build_config(symbol, params), series))
        return self._execute(jobs)

    # ── Internals ───────────────────────────────────────────────────

    @staticmethod
    def _series(
        symbol: str,
        by_tf: TimeframeCandles,
        preset: TimeframePreset,
    ) -> Optional[Tuple[Sequence[Candle], Sequence[Candle], Sequence[Candle]]]:
        ltf = by_tf.get(preset.ltf, [])
        if len(ltf) < WARMUP_CANDLES:
            logger.info("[%s] %s: skipping, insufficient LTF data (%d candles)",
                        symbol, preset.name, len(ltf))
            return None
        return by_tf.get(preset.htf, []), by_tf.get(preset.mtf, []), ltf

    def _execute(self, jobs: List[Tuple]) -> List[RunResult]:
        if not jobs:
            return []
        results: Dict[int, RunResult] = {}
        if self._max_workers == 1 or len(jobs) == 1:
            for i, job in enumerate(jobs):
                try:
                    results[i] = self._run_job(*job)
                except Exception as e:
                    logger.warning("Run %r on %s failed: %s", job[0], job[1], e)
        else:
            workers = min(self._max_workers, len(jobs))
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = {executor.submit(self._run_job, *job): i for i, job in enumerate(jobs)}
                for future in as_completed(futures):
                    i = futures[future]
                    try:
                        results[i] = future.result()
                    except Exception as e:
                        logger.warning("Run %r on %s failed: %s", jobs[i][0], jobs[i][1], e)
        return [results[i] for i in sorted(results)]

    @staticmethod
    def _run_job(
        name: str,
        symbol: str,
        timeframe: str,
        config: EngineConfig,
        series: Tuple[Sequence[Candle], Sequence[Candle], Sequence[Candle]],
    ) -> RunResult:
        engine = BacktestEngine(config, rng=random.Random(config.seed))
        metrics = engine.run(*series)
        logger.info("%-44s %4d trades | %3.0f%% | PF %.2f | $%.0f",
                    name[:43], metrics.total_trades, metrics.win_rate,
                    metrics.profit_factor, metrics.total_pnl)
        return RunResult(name=name, symbol=symbol, metrics=metrics,
                         timeframe=timeframe, trades=engine.trades)
