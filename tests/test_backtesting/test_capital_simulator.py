"""
Tests for balance tracking, sizing, spread sampling and the daily lock.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from smc.backtesting.config import EngineConfig
from smc.backtesting.simulation.capital_simulator import CapitalSimulator

DAY = datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc)


def _rng(value):
    rng = Mock()
    rng.random.return_value = value
    return rng


class TestSizing:
    def test_lot_size_rounds_to_hundredths(self, config):
        capital = CapitalSimulator(config)
        # 2% of 1000 over 6.0 x contract 100
        assert capital.lot_size(6.0) == 0.03
        assert capital.lot_size(0.0) == 0.0

    def test_stop_pips(self, config):
        assert CapitalSimulator(config).stop_pips(6.0) == pytest.approx(60.0)

    @pytest.mark.parametrize('draw,expected', [(0.0, 0.2), (0.5, 0.25), (0.99, 0.2990)])
    def test_spread_range(self, config, draw, expected):
        assert CapitalSimulator(config, _rng(draw)).sample_spread() == pytest.approx(expected)

    def test_seeded_spread_is_reproducible(self):
        config = EngineConfig(seed=11)
        first = [CapitalSimulator(config).sample_spread() for _ in range(3)]
        second = [CapitalSimulator(config).sample_spread() for _ in range(3)]
        assert first == second


class TestBalance:
    def test_peak_and_max_drawdown(self, config):
        capital = CapitalSimulator(config)
        capital.apply_pnl(100.0)
        capital.apply_pnl(-220.0)
        capital.apply_pnl(50.0)
        assert capital.balance == pytest.approx(930.0)
        assert capital.peak_equity == pytest.approx(1100.0)
        assert capital.max_drawdown == pytest.approx(20.0)


class TestDailyLock:
    def test_locks_at_limit_for_rest_of_day(self, config):
        capital = CapitalSimulator(config)
        assert capital.can_trade(DAY)

        capital.apply_pnl(-150.0)
        assert not capital.can_trade(DAY + timedelta(hours=1))

        # Recovery the same day does not unlock
        capital.apply_pnl(100.0)
        assert not capital.can_trade(DAY + timedelta(hours=2))

    def test_new_day_resets(self, config):
        capital = CapitalSimulator(config)
        capital.can_trade(DAY)
        capital.apply_pnl(-150.0)
        assert not capital.can_trade(DAY)

        assert capital.can_trade(DAY + timedelta(days=1))
        assert capital.daily.start_balance == pytest.approx(850.0)

    def test_below_limit_keeps_trading(self, config):
        capital = CapitalSimulator(config)
        capital.can_trade(DAY)
        capital.apply_pnl(-140.0)
        assert capital.can_trade(DAY + timedelta(hours=1))


class TestDynamicRR:
    def test_fixed_when_disabled(self, config):
        capital = CapitalSimulator(config)
        capital.record_atr(2.0)
        assert capital.atr_history == []
        assert capital.intended_rr(2.0) == config.fixed_rr

    def test_needs_more_than_twenty_samples(self):
        capital = CapitalSimulator(EngineConfig(enable_dynamic_rr=True, fixed_rr=3.0))
        for _ in range(20):
            capital.record_atr(2.0)
        assert capital.intended_rr(0.5) == 3.0

    def test_scales_with_median_atr_and_clamps(self):
        capital = CapitalSimulator(EngineConfig(enable_dynamic_rr=True))
        for _ in range(21):
            capital.record_atr(2.0)
        assert capital.intended_rr(2.0) == pytest.approx(2.0)
        assert capital.intended_rr(0.5) == pytest.approx(4.0)
        assert capital.intended_rr(8.0) == pytest.approx(1.5)
        assert capital.intended_rr(0.02) == pytest.approx(5.0)

    def test_configured_reference(self):
        capital = CapitalSimulator(EngineConfig(enable_dynamic_rr=True, dynamic_rr_atr_ref=4.0))
        for _ in range(21):
            capital.record_atr(2.0)
        assert capital.intended_rr(4.0) == pytest.approx(2.0)
