"""
SMC Backtesting - Multi-Timeframe Smart Money Concepts Replay Engine

Replays lower-timeframe candles against the higher/medium timeframe
candles visible at each moment, detects market structure (order blocks,
fair value gaps, swings, breaks of structure), dispatches one of 17
strategy generators and manages a single position with partials,
breakeven, trailing, time and opposing-signal exits.

Module Structure:
    config          - EngineConfig, strategy/direction/bias enums, symbol table
    engine          - BacktestEngine, run(), BatchRunner
    presets         - Strategy variations and timeframe presets (JSON)
    data_providers  - Candle model, CandleSource protocol, candle cache
    simulation      - Bar simulator, position tracker, capital simulator
    signals         - Indicators, structure arenas, sessions, generators, filters
    exits           - Stop/target resolution, tiered take-profit, trailing stops
    analytics       - Metrics aggregation and comparison tables
    runners         - CLI entry point
"""

__version__ = '0.1.0'
