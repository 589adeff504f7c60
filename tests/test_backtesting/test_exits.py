"""
Tests for exit resolution and stop management.

Covers:
- Intra-candle price path shapes
- Stop / target resolution and same-candle walks with slippage
- Tiered take-profit fills and stop ratchet
- Breakeven and ATR trailing stops
- Time and opposing order block exits
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from smc.backtesting.config import Bias, Direction, EngineConfig
from smc.backtesting.exits.exit_evaluator import (
    ExitResolver,
    NoSlippage,
    RandomSlippage,
    simulate_price_path,
)
from smc.backtesting.exits.partial_exit import TieredExitEvaluator
from smc.backtesting.exits.trailing_stop import TrailingStopEvaluator
from smc.backtesting.signals.structure import EntityState, MarketStructure, OrderBlock
from smc.backtesting.simulation.position_tracker import ExitReason, Position, TierLevels

T0 = datetime(2024, 1, 10, 10, 0, tzinfo=timezone.utc)
CONTRACT = 100


def _position(direction=Direction.BUY, entry=100.0, stop=90.0, target=120.0, lots=1.0,
              tiers=None, entry_index=0):
    return Position(direction, entry, stop, target, lots, T0, entry_index, tiers=tiers)


def _tiered():
    return _position(tiers=TierLevels(110.0, 120.0, 130.0), target=130.0)


class TestPricePath:
    def test_bullish_with_dominant_lower_wick(self, make_candle):
        path = simulate_price_path(make_candle(100, 110, 90, 105))
        assert path == [100, 95, 90, 95, 100, 107.5, 110, 107.5, 105]

    def test_bullish_otherwise(self, make_candle):
        path = simulate_price_path(make_candle(100, 110, 98, 105))
        assert path == [100, 98, 99, 100, 107.5, 110, 105]

    def test_bearish_with_dominant_upper_wick(self, make_candle):
        path = simulate_price_path(make_candle(105, 115, 98, 100))
        assert path == [105, 110, 115, 110, 105, 99, 98, 99, 100]

    def test_doji(self, make_candle):
        assert simulate_price_path(make_candle(100, 103, 99, 100)) == [100, 103, 99, 100]
        assert simulate_price_path(make_candle(100, 101, 97, 100)) == [100, 97, 101, 100]


class TestExitResolver:
    def test_no_breach(self, config, make_candle):
        result = ExitResolver(config, NoSlippage()).check_exit(
            _position(), make_candle(100, 105, 95, 102))
        assert not result.should_exit

    def test_target_only(self, config, make_candle):
        result = ExitResolver(config, NoSlippage()).check_exit(
            _position(), make_candle(110, 121, 109, 119))
        assert result.reason is ExitReason.TAKE_PROFIT
        assert result.price == 120.0

    def test_sell_stop_only(self, config, make_candle):
        pos = _position(Direction.SELL, entry=100.0, stop=110.0, target=80.0)
        result = ExitResolver(config, NoSlippage()).check_exit(pos, make_candle(105, 111, 104, 109))
        assert result.reason is ExitReason.STOP_LOSS
        assert result.price == 110.0

    def test_both_in_range_walks_path(self, config, make_candle):
        pos = _position(stop=95.0, target=108.0)
        result = ExitResolver(config, NoSlippage()).check_exit(pos, make_candle(100, 110, 90, 105))
        assert result.reason is ExitReason.STOP_LOSS
        assert result.price == 95.0

    def test_target_first_on_path(self, config, make_candle):
        # Bearish, upper wick dominant: 100, 105, 110, ... reaches the target first
        pos = _position(stop=96.0, target=104.0)
        result = ExitResolver(config, NoSlippage()).check_exit(pos, make_candle(100, 110, 95, 99))
        assert result.reason is ExitReason.TAKE_PROFIT
        assert result.price == 104.0

    def test_same_candle_stop_takes_slippage(self, config, make_candle):
        rng = Mock()
        rng.random.return_value = 0.5
        resolver = ExitResolver(config, RandomSlippage(rng))
        pos = _position(stop=95.0, target=108.0)

        result = resolver.check_exit(pos, make_candle(100, 110, 90, 105))

        # 0.5 x pip 0.1 x 2 pips
        assert result.price == pytest.approx(94.9)


class TestTieredExits:
    def test_tp1_then_stop_after_tp1(self, config, make_candle):
        pos = _tiered()
        tiered = TieredExitEvaluator(config)

        first = tiered.check(pos, make_candle(100, 115, 99, 114))
        assert not first.should_exit
        assert pos.tp1_hit
        assert pos.partial_pnl == pytest.approx(500.0)
        assert pos.lot_size == pytest.approx(0.5)
        assert pos.stop_loss == pytest.approx(100.2)
        assert pos.moved_to_breakeven

        second = tiered.check(pos, make_candle(110, 111, 100, 101))
        assert second.should_exit
        assert second.price == pytest.approx(100.2)

        trade = pos.close(second.price, T0, second.reason, CONTRACT)
        assert trade.reason is ExitReason.SL_AFTER_TP1
        assert trade.remaining_pnl == pytest.approx(10.0)
        assert trade.pnl == pytest.approx(510.0)
        assert trade.original_stop_loss == 90.0

    def test_all_tiers_in_one_candle(self, config, make_candle):
        pos = _tiered()
        result = ExitResolver(config, NoSlippage()).check_exit(
            pos, make_candle(100, 131, 99.5, 130.5))

        assert result.reason is ExitReason.TP3
        assert result.price == 130.0
        trade = pos.close(result.price, T0, result.reason, CONTRACT)
        assert trade.reason is ExitReason.TP3
        assert trade.partial_pnl == pytest.approx(1100.0)
        assert trade.pnl == pytest.approx(1700.0)

    def test_stop_before_any_tier(self, config, make_candle):
        pos = _tiered()
        result = TieredExitEvaluator(config).check(pos, make_candle(95, 96, 89, 90))
        trade = pos.close(result.price, T0, result.reason, CONTRACT)
        assert trade.reason is ExitReason.STOP_LOSS
        assert trade.pnl == pytest.approx(-1000.0)

    def test_stop_not_moved_when_disabled(self, make_candle):
        config = EngineConfig(move_sl_on_tp1=False)
        pos = _tiered()
        TieredExitEvaluator(config).check(pos, make_candle(100, 115, 99, 114))
        assert pos.tp1_hit
        assert pos.stop_loss == 90.0


class TestBreakeven:
    def test_moves_once(self, make_candle):
        stops = TrailingStopEvaluator(EngineConfig(enable_breakeven=True))
        pos = _position()

        assert not stops.check_breakeven(pos, make_candle(100, 109, 99, 105))
        assert stops.check_breakeven(pos, make_candle(100, 110, 99, 105))
        assert pos.stop_loss == pytest.approx(100.2)
        assert pos.moved_to_breakeven
        assert not stops.check_breakeven(pos, make_candle(100, 115, 99, 105))

    def test_disabled(self, config, make_candle):
        pos = _position()
        assert not TrailingStopEvaluator(config).check_breakeven(pos, make_candle(100, 130, 99, 125))
        assert pos.stop_loss == 90.0


class TestTrailingStop:
    def test_trails_behind_high_and_never_loosens(self, make_candle, flat_series):
        stops = TrailingStopEvaluator(EngineConfig(enable_trailing_stop=True))
        mtf = flat_series(21, T0, timedelta(hours=1))
        pos = _position()

        assert stops.check_trailing(pos, make_candle(105, 112, 104, 111), mtf)
        assert pos.stop_loss == pytest.approx(108.0)
        assert pos.trailing_active

        assert not stops.check_trailing(pos, make_candle(110, 111, 109, 110), mtf)
        assert pos.stop_loss == pytest.approx(108.0)

    def test_needs_activation(self, make_candle, flat_series):
        stops = TrailingStopEvaluator(EngineConfig(enable_trailing_stop=True))
        mtf = flat_series(21, T0, timedelta(hours=1))
        pos = _position()
        assert not stops.check_trailing(pos, make_candle(100, 105, 99, 104), mtf)


class TestTimeExit:
    def test_closes_after_max_hold(self):
        resolver = ExitResolver(EngineConfig(enable_time_exit=True), NoSlippage())
        pos = _position(entry_index=10)
        assert not resolver.check_time_exit(pos, 69).should_exit
        result = resolver.check_time_exit(pos, 70)
        assert result.should_exit
        assert result.reason is ExitReason.TIME_EXIT

    def test_disabled(self, config):
        assert not ExitResolver(config, NoSlippage()).check_time_exit(_position(), 500).should_exit


class TestOpposingExit:
    @pytest.fixture
    def structure(self):
        structure = MarketStructure()
        structure.order_blocks.add(OrderBlock(Bias.BEARISH, 2010.0, 2005.0, T0, 80))
        return structure

    def _resolver(self, **overrides):
        return ExitResolver(EngineConfig(enable_opposing_exit=True, **overrides), NoSlippage())

    def test_strong_candle_into_opposing_block(self, structure, make_candle):
        pos = _position(entry=2000.0, stop=1990.0, target=2030.0)
        result = self._resolver().check_opposing_exit(
            pos, make_candle(2009, 2009.5, 2005.5, 2006), structure)

        assert result.reason is ExitReason.OPPOSING
        assert result.price == 2006.0
        assert structure.order_blocks.active() == []
        assert structure.order_blocks.get(0).state is EntityState.USED

    def test_weak_candle_keeps_block(self, structure, make_candle):
        pos = _position(entry=2000.0, stop=1990.0, target=2030.0)
        result = self._resolver().check_opposing_exit(
            pos, make_candle(2006.5, 2009.5, 2005.5, 2006), structure)
        assert not result.should_exit
        assert len(structure.order_blocks.active()) == 1

    def test_score_threshold(self, structure, make_candle):
        pos = _position(entry=2000.0, stop=1990.0, target=2030.0)
        result = self._resolver(min_opposing_score=85).check_opposing_exit(
            pos, make_candle(2009, 2009.5, 2005.5, 2006), structure)
        assert not result.should_exit
