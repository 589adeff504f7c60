"""
Tests for the entry filter predicates.
"""

from datetime import datetime, timedelta, timezone

import pytest

from smc.backtesting.config import Bias, Direction, EngineConfig, StrategyVariant
from smc.backtesting.signals.filters import (
    candidate_filter_failure,
    confluence_score,
    has_equal_highs_lows,
    has_inducement,
    has_strong_fvg,
    in_cooldown,
    in_kill_zone,
    is_confirmed,
    session_allows_entry,
    trend_agrees,
)
from smc.backtesting.signals.indicators import SwingKind
from smc.backtesting.signals.structure import (
    EntityState,
    FairValueGap,
    MarketStructure,
    OrderBlock,
    StructureBreak,
    SwingPoint,
)

DAY = datetime(2024, 1, 10, tzinfo=timezone.utc)


def _at(hour, minute=0):
    return DAY + timedelta(hours=hour, minutes=minute)


def _swing(structure, kind, price, state=EntityState.ACTIVE):
    swing = structure.swings.add(SwingPoint(kind, price, DAY, 0))
    if state is not EntityState.ACTIVE:
        structure.swings.consume(swing, state)
    return swing


class TestSessionGates:
    @pytest.mark.parametrize('hour,minute,expected', [
        (7, 0, True),
        (9, 59, True),
        (10, 0, False),
        (12, 30, True),
        (19, 59, True),
        (20, 0, False),
        (3, 0, False),
    ])
    def test_kill_zones(self, hour, minute, expected):
        assert in_kill_zone(_at(hour, minute)) is expected

    @pytest.mark.parametrize('hour,minute,expected', [
        (8, 0, True),
        (8, 4, True),
        (8, 5, False),
        (14, 34, True),
        (14, 35, False),
        (23, 2, True),
    ])
    def test_cooldowns(self, hour, minute, expected):
        assert in_cooldown(_at(hour, minute)) is expected

    def test_gate_disabled(self):
        assert session_allows_entry(_at(3), EngineConfig())

    def test_gate_enabled(self):
        config = EngineConfig(use_kill_zones=True)
        assert session_allows_entry(_at(9), config)
        assert not session_allows_entry(_at(8, 2), config)
        assert not session_allows_entry(_at(11), config)


class TestTrendGate:
    def test_disabled_or_neutral_passes(self, trend_series):
        mtf = trend_series(70, _at(10), timedelta(hours=1))
        assert trend_agrees(mtf, Bias.BEARISH, EngineConfig())
        assert trend_agrees(mtf, Bias.NEUTRAL, EngineConfig(require_trend=True))

    def test_trend_must_match_bias(self, trend_series):
        mtf = trend_series(70, _at(10), timedelta(hours=1))
        config = EngineConfig(require_trend=True)
        assert trend_agrees(mtf, Bias.BULLISH, config)
        assert not trend_agrees(mtf, Bias.BEARISH, config)


class TestConfluence:
    def test_empty_market_scores_zero(self):
        assert confluence_score(MarketStructure(), Bias.NEUTRAL, [], [], 2.0) == 0

    def test_components_add_up(self, make_candle, trend_series):
        structure = MarketStructure()
        structure.order_blocks.add(OrderBlock(Bias.BULLISH, 2001.0, 1998.0, DAY, 80))
        structure.fvgs.add(FairValueGap(Bias.BULLISH, 2002.0, 2001.0, DAY, 1.0))
        _swing(structure, SwingKind.LOW, 2000.0)
        structure.last_bos = StructureBreak(Bias.BULLISH, 1999.0, DAY)

        ltf = [make_candle(2000, 2001, 1999, 2000.5, _at(10, i * 5)) for i in range(9)]
        ltf.append(make_candle(2000, 2001, 1999, 2000.5, _at(10, 45), volume=1000))

        assert confluence_score(structure, Bias.BULLISH, [], ltf, 2.0) == 80

        mtf = trend_series(30, _at(9), timedelta(hours=1))
        assert confluence_score(structure, Bias.BULLISH, mtf, ltf, 2.0) == 90

    @pytest.mark.parametrize('state', [EntityState.SWEPT, EntityState.USED])
    def test_consumed_swing_adds_nothing(self, make_candle, state):
        structure = MarketStructure()
        _swing(structure, SwingKind.LOW, 2000.0, state)
        ltf = [make_candle(2000, 2001, 1999, 2000.5, _at(10, i * 5)) for i in range(10)]
        assert confluence_score(structure, Bias.BULLISH, [], ltf, 2.0) == 20

        _swing(structure, SwingKind.LOW, 2000.2)
        assert confluence_score(structure, Bias.BULLISH, [], ltf, 2.0) == 30

    def test_volume_spike_counts_without_bias(self, make_candle):
        ltf = [make_candle(2000, 2001, 1999, 2000.5, _at(10, i * 5)) for i in range(9)]
        ltf.append(make_candle(2000, 2001, 1999, 2000.5, _at(10, 45), volume=1000))
        assert confluence_score(MarketStructure(), Bias.NEUTRAL, [], ltf, 2.0) == 10


class TestConfirmation:
    def test_engulf(self, make_candle):
        prev = make_candle(2001, 2001.2, 1999.9, 2000)
        assert is_confirmed(make_candle(1999.8, 2001.6, 1999.7, 2001.5), prev,
                            Direction.BUY, 'engulf')
        assert not is_confirmed(make_candle(2000.2, 2001.6, 2000.1, 2001.5), prev,
                                Direction.BUY, 'engulf')

    def test_close_and_strong(self, make_candle):
        prev = make_candle(2000, 2001, 1999, 2000)
        candle = make_candle(2000, 2000.6, 1999.6, 2000.35)
        assert is_confirmed(candle, prev, Direction.BUY, 'close')
        assert not is_confirmed(candle, prev, Direction.BUY, 'strong')
        assert not is_confirmed(candle, prev, Direction.SELL, 'close')


class TestCandidateFilters:
    def test_strong_fvg(self):
        structure = MarketStructure()
        structure.fvgs.add(FairValueGap(Bias.BULLISH, 2002.0, 1998.0, DAY, 4.0))
        assert has_strong_fvg(structure, Direction.BUY, 2000.5, 2.0, 1.5)
        assert not has_strong_fvg(structure, Direction.BUY, 2000.5, 2.0, 2.5)
        assert not has_strong_fvg(structure, Direction.SELL, 2000.5, 2.0, 1.5)

    def test_inducement_needs_swept_swing(self):
        structure = MarketStructure()
        _swing(structure, SwingKind.LOW, 1999.0)
        assert not has_inducement(structure, 2000.0, 2.0)
        _swing(structure, SwingKind.HIGH, 2001.0, EntityState.SWEPT)
        assert has_inducement(structure, 2000.0, 2.0)

    def test_equal_lows(self):
        structure = MarketStructure()
        _swing(structure, SwingKind.LOW, 1999.0)
        assert not has_equal_highs_lows(structure, 2000.0, 2.0, 0.002)
        _swing(structure, SwingKind.LOW, 1999.5, EntityState.SWEPT)
        assert has_equal_highs_lows(structure, 2000.0, 2.0, 0.002)

    def test_first_failure_is_reported(self, make_candle):
        config = EngineConfig(require_inducement=True, require_ote=True)
        ltf = [make_candle(2000, 2010, 1990, 2005)]
        failure = candidate_filter_failure(config, MarketStructure(), Direction.BUY, 2005.0,
                                           2.0, ltf, Bias.BULLISH)
        assert failure == 'inducement'

    def test_strong_fvg_only_for_listed_strategies(self, make_candle):
        ltf = [make_candle(2000, 2010, 1990, 2005)]
        args = (MarketStructure(), Direction.BUY, 2005.0, 2.0, ltf, Bias.BULLISH)

        fvg_config = EngineConfig(strategy=StrategyVariant.FVG, require_strong_fvg=True)
        assert candidate_filter_failure(fvg_config, *args) is None

        ob_config = EngineConfig(require_strong_fvg=True)
        assert candidate_filter_failure(ob_config, *args) == 'strong_fvg'

    def test_ote(self, make_candle):
        ltf = [make_candle(2000, 2010, 1990, 2005)]
        config = EngineConfig(require_ote=True)
        # Bullish OTE of 1990-2010 is 1994.28 - 1997.64
        assert candidate_filter_failure(config, MarketStructure(), Direction.BUY, 2005.0,
                                        2.0, ltf, Bias.BULLISH) == 'ote'
        assert candidate_filter_failure(config, MarketStructure(), Direction.BUY, 1996.0,
                                        2.0, ltf, Bias.BULLISH) is None
