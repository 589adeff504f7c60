"""
Tests for EngineConfig and the shared enumerations.

Covers:
- Defaults and immutability
- from_dict() with camelCase preset keys, falsy / malformed fallbacks
- Unknown strategy fallback
- validate() issue reporting
- Symbol metadata lookup
"""

import dataclasses

import pytest

from smc.backtesting.config import (
    Bias,
    Direction,
    EngineConfig,
    StrategyVariant,
    get_symbol_info,
)


class TestDefaults:
    def test_reference_defaults(self):
        config = EngineConfig()
        assert config.strategy is StrategyVariant.ORDER_BLOCK
        assert config.symbol == 'XAUUSD.s'
        assert config.initial_balance == 1000.0
        assert config.risk_percent == 2.0
        assert config.fixed_rr == 2.0
        assert config.min_ob_score == 65
        assert config.confirmation_type == 'close'

    def test_frozen(self):
        config = EngineConfig()
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.fixed_rr = 3.0

    def test_with_overrides_returns_copy(self):
        config = EngineConfig()
        changed = config.with_overrides(fixed_rr=3.0)
        assert changed.fixed_rr == 3.0
        assert config.fixed_rr == 2.0

    def test_string_strategy_is_coerced(self):
        assert EngineConfig(strategy='fvg').strategy is StrategyVariant.FVG

    def test_lookbacks(self):
        assert EngineConfig().ltf_lookback == 50
        assert EngineConfig(strategy=StrategyVariant.M1_TREND).ltf_lookback == 60
        assert EngineConfig().mtf_lookback == 30
        assert EngineConfig(require_trend=True, ema_trend_period=50).mtf_lookback == 60


class TestFromDict:
    def test_camel_case_keys(self):
        config = EngineConfig.from_dict({
            'strategy': 'LIQUIDITY_SWEEP',
            'fixedRR': 3,
            'minOBScore': 70,
            'useKillZones': True,
            'maxDailyDD': 8,
            'enableTieredTP': True,
            'tp1RR': 1.5,
            'trendStrictness': 'strict',
        })
        assert config.strategy is StrategyVariant.LIQUIDITY_SWEEP
        assert config.fixed_rr == 3.0
        assert config.min_ob_score == 70
        assert isinstance(config.min_ob_score, int)
        assert config.use_kill_zones is True
        assert config.max_daily_dd == 8.0
        assert config.enable_tiered_tp is True
        assert config.tp1_rr == 1.5
        assert config.trend_strictness == 'strict'

    def test_snake_case_keys(self):
        config = EngineConfig.from_dict({'risk_percent': 1.0, 'enable_breakeven': True})
        assert config.risk_percent == 1.0
        assert config.enable_breakeven is True

    def test_falsy_numbers_fall_back_to_defaults(self):
        config = EngineConfig.from_dict({'fixedRR': 0, 'minOBScore': None, 'maxCandleHold': ''})
        assert config.fixed_rr == 2.0
        assert config.min_ob_score == 65
        assert config.max_candle_hold == 60

    def test_malformed_values_fall_back(self):
        config = EngineConfig.from_dict({'fixedRR': 'abc', 'risk': [1, 2]})
        assert config.fixed_rr == 2.0
        assert config.risk_percent == 2.0

    def test_false_boolean_is_kept(self):
        base = EngineConfig(use_kill_zones=True)
        config = EngineConfig.from_dict({'useKillZones': False}, base=base)
        assert config.use_kill_zones is False

    def test_string_booleans(self):
        config = EngineConfig.from_dict({'requireOTE': 'true', 'requireTrend': 'no'})
        assert config.require_ote is True
        assert config.require_trend is False

    def test_base_supplies_missing_keys(self):
        base = EngineConfig(initial_balance=5000.0, seed=3)
        config = EngineConfig.from_dict({'fixedRR': 2.5}, base=base)
        assert config.initial_balance == 5000.0
        assert config.seed == 3

    def test_unknown_keys_ignored(self):
        config = EngineConfig.from_dict({'name': 'preset', 'notAField': 1})
        assert config == EngineConfig()

    def test_unknown_strategy_falls_back(self):
        config = EngineConfig.from_dict({'strategy': 'MOON_SHOT'})
        assert config.strategy is StrategyVariant.ORDER_BLOCK

    def test_to_dict_roundtrip(self):
        config = EngineConfig(strategy=StrategyVariant.CHOCH, fixed_rr=3.0)
        data = config.to_dict()
        assert data['strategy'] == 'CHOCH'
        assert EngineConfig.from_dict(data) == config


class TestValidate:
    def test_default_is_valid(self):
        assert EngineConfig().validate() == []

    def test_tier_percentages_over_100(self):
        config = EngineConfig(enable_tiered_tp=True, tp1_percent=60, tp2_percent=30,
                              tp3_percent=20)
        issues = config.validate()
        assert any('sum to 110' in issue for issue in issues)

    def test_tier_targets_must_be_ordered(self):
        config = EngineConfig(enable_tiered_tp=True, tp1_rr=2.0, tp2_rr=1.5, tp3_rr=3.0)
        assert any('ordered' in issue for issue in config.validate())

    def test_unreachable_ob_score_is_reported(self):
        assert EngineConfig(min_ob_score=101).validate()

    def test_bad_confirmation_type(self):
        assert EngineConfig(confirmation_type='wick').validate()


class TestEnums:
    def test_direction_sign(self):
        assert Direction.BUY.sign == 1
        assert Direction.SELL.sign == -1

    def test_bias_direction(self):
        assert Bias.BULLISH.direction is Direction.BUY
        assert Bias.BEARISH.direction is Direction.SELL
        assert Bias.NEUTRAL.direction is None

    def test_session_strategies_ignore_bias(self):
        assert StrategyVariant.VWAP_REVERT.uses_session_state
        assert StrategyVariant.VWAP_REVERT.ignores_htf_bias
        assert StrategyVariant.M1_TREND.ignores_htf_bias
        assert not StrategyVariant.M1_TREND.uses_session_state
        assert not StrategyVariant.ORDER_BLOCK.ignores_htf_bias

    def test_seventeen_variants(self):
        assert len(StrategyVariant) == 17


class TestSymbolInfo:
    def test_known_symbol(self):
        info = get_symbol_info('BTCUSD')
        assert info.pip_size == 1
        assert info.min_sl_pips == 100

    def test_unknown_symbol_uses_gold(self):
        assert get_symbol_info('EURUSD') == get_symbol_info('XAUUSD.s')
