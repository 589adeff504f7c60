"""
Engine Configuration - Immutable Parameter Set for One Backtest Run

Provides the EngineConfig dataclass that captures every tunable of the
multi-timeframe replay loop, plus the shared enumerations (strategy
variant, trade direction, structural bias) and per-symbol broker metadata.

EngineConfig is frozen: a run reads it, never mutates it. Preset files use
camelCase keys, so from_dict() accepts both camelCase and snake_case and
falls back to the documented default for any missing or malformed value.

Usage:
    config = EngineConfig.from_dict({'strategy': 'FVG', 'fixedRR': 3})
    issues = config.validate()
"""

import dataclasses
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)


class StrategyVariant(str, Enum):
    """The closed set of signal generators the engine can dispatch to."""
    ORDER_BLOCK = "ORDER_BLOCK"
    FVG = "FVG"
    LIQUIDITY_SWEEP = "LIQUIDITY_SWEEP"
    BOS = "BOS"
    OB_FVG = "OB_FVG"
    M1_TREND = "M1_TREND"
    FBO_CLASSIC = "FBO_CLASSIC"
    FBO_SWEEP = "FBO_SWEEP"
    FBO_STRUCTURE = "FBO_STRUCTURE"
    CHOCH = "CHOCH"
    VOL_CLIMAX = "VOL_CLIMAX"
    SESSION_OPEN = "SESSION_OPEN"
    VWAP_REVERT = "VWAP_REVERT"
    VOL_SQUEEZE = "VOL_SQUEEZE"
    ABSORB = "ABSORB"
    RANGE_FADE = "RANGE_FADE"
    MOM_DIVERGE = "MOM_DIVERGE"

    @property
    def uses_session_state(self) -> bool:
        """Whether the session tracker must be advanced every LTF candle."""
        return self in SESSION_STRATEGIES

    @property
    def ignores_htf_bias(self) -> bool:
        """Whether a NEUTRAL higher-timeframe bias still allows evaluation."""
        return self is StrategyVariant.M1_TREND or self in SESSION_STRATEGIES


SESSION_STRATEGIES = frozenset({
    StrategyVariant.VOL_CLIMAX,
    StrategyVariant.SESSION_OPEN,
    StrategyVariant.VWAP_REVERT,
    StrategyVariant.VOL_SQUEEZE,
    StrategyVariant.ABSORB,
    StrategyVariant.RANGE_FADE,
    StrategyVariant.MOM_DIVERGE,
})


class Direction(str, Enum):
    """Trade direction."""
    BUY = "BUY"
    SELL = "SELL"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.BUY else -1


class Bias(str, Enum):
    """Directional read of a candle window (also the polarity of OBs/FVGs)."""
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    NEUTRAL = "NEUTRAL"

    @property
    def direction(self) -> Optional[Direction]:
        if self is Bias.BULLISH:
            return Direction.BUY
        if self is Bias.BEARISH:
            return Direction.SELL
        return None


@dataclass(frozen=True)
class SymbolInfo:
    """Broker contract metadata for one instrument."""
    pip_size: float
    contract_size: float
    min_volume: float
    min_sl_pips: float
    typical_spread: float


SYMBOL_INFO: Dict[str, SymbolInfo] = {
    'XAUUSD.s': SymbolInfo(pip_size=0.1, contract_size=100, min_volume=0.01,
                           min_sl_pips=15, typical_spread=0.25),
    'XAGUSD.s': SymbolInfo(pip_size=0.01, contract_size=5000, min_volume=0.01,
                           min_sl_pips=10, typical_spread=0.025),
    'BTCUSD': SymbolInfo(pip_size=1, contract_size=1, min_volume=0.01,
                         min_sl_pips=100, typical_spread=15),
    'ETHUSD': SymbolInfo(pip_size=1, contract_size=1, min_volume=0.01,
                         min_sl_pips=20, typical_spread=2),
}

DEFAULT_SYMBOL = 'XAUUSD.s'


def get_symbol_info(symbol: str) -> SymbolInfo:
    """Metadata for a symbol; unknown symbols use the gold contract."""
    return SYMBOL_INFO.get(symbol, SYMBOL_INFO[DEFAULT_SYMBOL])


CONFIRMATION_TYPES = ('close', 'engulf', 'strong')
TREND_STRICTNESS = ('relaxed', 'strict', 'distance')

# Keys used by preset files that do not map mechanically to field names
_CAMEL_ALIASES: Dict[str, str] = {
    'initialBalance': 'initial_balance',
    'risk': 'risk_percent',
    'fixedRR': 'fixed_rr',
    'maxDailyDD': 'max_daily_dd',
    'minOBScore': 'min_ob_score',
    'minFVGSize': 'min_fvg_size',
    'atrMult': 'atr_multiplier',
    'useKillZones': 'use_kill_zones',
    'requireOTE': 'require_ote',
    'requireConfirmation': 'require_confirmation',
    'confirmationType': 'confirmation_type',
    'requireTrend': 'require_trend',
    'emaTrendPeriod': 'ema_trend_period',
    'trendStrictness': 'trend_strictness',
    'trendMinDistance': 'trend_min_distance',
    'enableBreakeven': 'enable_breakeven',
    'breakevenTriggerR': 'breakeven_trigger_r',
    'beBufferPips': 'be_buffer_pips',
    'enableOpposingExit': 'enable_opposing_exit',
    'minOpposingScore': 'min_opposing_score',
    'enableTieredTP': 'enable_tiered_tp',
    'tp1RR': 'tp1_rr',
    'tp1Percent': 'tp1_percent',
    'tp2RR': 'tp2_rr',
    'tp2Percent': 'tp2_percent',
    'tp3RR': 'tp3_rr',
    'tp3Percent': 'tp3_percent',
    'moveSlOnTP1': 'move_sl_on_tp1',
    'moveSlOnTP2': 'move_sl_on_tp2',
    'enableTrailingStop': 'enable_trailing_stop',
    'trailingATRMult': 'trailing_atr_mult',
    'trailingActivationR': 'trailing_activation_r',
    'enableTimeExit': 'enable_time_exit',
    'maxCandleHold': 'max_candle_hold',
    'enableDynamicRR': 'enable_dynamic_rr',
    'dynamicRRBase': 'dynamic_rr_base',
    'dynamicRRATRRef': 'dynamic_rr_atr_ref',
    'minConfluenceScore': 'min_confluence_score',
    'requireStrongFVG': 'require_strong_fvg',
    'minFVGStrength': 'min_fvg_strength',
    'requireInducement': 'require_inducement',
    'requireEqualHL': 'require_equal_hl',
    'equalHLTolerance': 'equal_hl_tolerance',
    'debugFilters': 'debug_filters',
}

_TRUE_STRINGS = ('1', 'true', 'yes', 'on')


@dataclass(frozen=True)
class EngineConfig:
    """
    Master configuration for one replay run.

    Immutable for the lifetime of the run. Defaults reproduce the
    reference single-run behaviour (order blocks, fixed 2R, no optional
    filters or exit management).
    """

    # ── Strategy ────────────────────────────────────────────────────
    strategy: StrategyVariant = StrategyVariant.ORDER_BLOCK
    symbol: str = DEFAULT_SYMBOL

    # ── Account & Risk ──────────────────────────────────────────────
    initial_balance: float = 1000.0
    risk_percent: float = 2.0
    fixed_rr: float = 2.0
    max_daily_dd: float = 15.0         # % of day's starting balance

    # ── Structure Detection ─────────────────────────────────────────
    min_ob_score: int = 65
    min_fvg_size: float = 1.0          # x ATR
    atr_multiplier: float = 1.5        # OB displacement, x ATR

    # ── Entry Filters ───────────────────────────────────────────────
    use_kill_zones: bool = False
    require_ote: bool = False
    require_confirmation: bool = False
    confirmation_type: str = 'close'   # 'close' | 'engulf' | 'strong'

    # EMA trend alignment on MTF
    require_trend: bool = False
    ema_trend_period: int = 50
    trend_strictness: str = 'relaxed'  # 'relaxed' | 'strict' | 'distance'
    trend_min_distance: float = 0.001

    # Confluence and structure requirements
    min_confluence_score: int = 0      # 0 disables the gate
    require_strong_fvg: bool = False
    min_fvg_strength: float = 1.5      # x ATR
    require_inducement: bool = False
    require_equal_hl: bool = False
    equal_hl_tolerance: float = 0.002  # fraction of price

    # ── Breakeven ───────────────────────────────────────────────────
    enable_breakeven: bool = False
    breakeven_trigger_r: float = 1.0
    be_buffer_pips: float = 2.0

    # ── Opposing Signal Exit ────────────────────────────────────────
    enable_opposing_exit: bool = False
    min_opposing_score: int = 75

    # ── Tiered Take-Profit ──────────────────────────────────────────
    enable_tiered_tp: bool = False
    tp1_rr: float = 1.0
    tp1_percent: float = 50.0
    tp2_rr: float = 2.0
    tp2_percent: float = 30.0
    tp3_rr: float = 3.0
    tp3_percent: float = 20.0
    move_sl_on_tp1: bool = True
    move_sl_on_tp2: bool = False

    # ── Trailing Stop ───────────────────────────────────────────────
    enable_trailing_stop: bool = False
    trailing_atr_mult: float = 2.0
    trailing_activation_r: float = 1.0

    # ── Time Exit ───────────────────────────────────────────────────
    enable_time_exit: bool = False
    max_candle_hold: int = 60          # LTF candles

    # ── Dynamic R:R ─────────────────────────────────────────────────
    enable_dynamic_rr: bool = False
    dynamic_rr_base: float = 2.0
    dynamic_rr_atr_ref: float = 0.0    # 0 = median of observed ATRs

    # ── Diagnostics & Reproducibility ───────────────────────────────
    debug_filters: bool = False
    seed: Optional[int] = None

    def __post_init__(self):
        if not isinstance(self.strategy, StrategyVariant):
            object.__setattr__(self, 'strategy', _coerce_strategy(self.strategy))

    # ── Derived values ──────────────────────────────────────────────

    @property
    def symbol_info(self) -> SymbolInfo:
        return get_symbol_info(self.symbol)

    @property
    def ltf_lookback(self) -> int:
        """LTF window length handed to generators."""
        return 60 if self.strategy is StrategyVariant.M1_TREND else 50

    @property
    def mtf_lookback(self) -> int:
        """MTF window length; the trend filter needs room for its EMA."""
        if self.require_trend:
            return max(30, self.ema_trend_period + 10)
        return 30

    def validate(self) -> List[str]:
        """
        Check parameter consistency.

        Returns:
            List of human-readable issues (empty when valid)
        """
        issues = []
        if self.initial_balance <= 0:
            issues.append(f"initial_balance must be positive, got {self.initial_balance}")
        if not 0 < self.risk_percent <= 100:
            issues.append(f"risk_percent must be in (0, 100], got {self.risk_percent}")
        if self.fixed_rr <= 0:
            issues.append(f"fixed_rr must be positive, got {self.fixed_rr}")
        if self.max_daily_dd <= 0:
            issues.append(f"max_daily_dd must be positive, got {self.max_daily_dd}")
        if not 0 <= self.min_ob_score <= 100:
            issues.append(f"min_ob_score {self.min_ob_score} outside 0-100 (no block can qualify)")
        if self.confirmation_type not in CONFIRMATION_TYPES:
            issues.append(f"confirmation_type must be one of {CONFIRMATION_TYPES}")
        if self.trend_strictness not in TREND_STRICTNESS:
            issues.append(f"trend_strictness must be one of {TREND_STRICTNESS}")
        if self.enable_tiered_tp:
            total = self.tp1_percent + self.tp2_percent + self.tp3_percent
            if total > 100:
                issues.append(f"Tier percentages sum to {total}%, must not exceed 100%")
            if self.tp1_percent >= 100:
                issues.append("tp1_percent must leave a remainder for TP2/TP3")
            if not self.tp1_rr < self.tp2_rr < self.tp3_rr:
                issues.append(
                    f"Tier targets must be ordered tp1 < tp2 < tp3 "
                    f"(got {self.tp1_rr}, {self.tp2_rr}, {self.tp3_rr})")
        if self.max_candle_hold < 1:
            issues.append(f"max_candle_hold must be >= 1, got {self.max_candle_hold}")
        return issues

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a flat snake_case dictionary."""
        data = dataclasses.asdict(self)
        data['strategy'] = self.strategy.value
        return data

    def with_overrides(self, **overrides) -> 'EngineConfig':
        """Copy with selected fields replaced."""
        return dataclasses.replace(self, **overrides)

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        base: Optional['EngineConfig'] = None,
    ) -> 'EngineConfig':
        """
        Build a config from a preset record.

        Accepts camelCase preset keys and snake_case field names. Missing,
        None, zero or unparseable values keep the default (or the value on
        `base`), so a partial record never fails construction.

        Args:
            data: Flat mapping of option name to value
            base: Config supplying values for keys absent from `data`

        Returns:
            EngineConfig
        """
        base = base or cls()
        fields = {f.name: f for f in dataclasses.fields(cls)}
        values: Dict[str, Any] = {}

        for key, raw in data.items():
            name = _CAMEL_ALIASES.get(key, key)
            if name not in fields:
                logger.debug("Ignoring unknown config key: %s", key)
                continue
            default = getattr(base, name)
            values[name] = _coerce(name, raw, default)

        return dataclasses.replace(base, **values)


def _coerce_strategy(raw: Any) -> StrategyVariant:
    try:
        return StrategyVariant(str(raw).upper())
    except ValueError:
        logger.warning("Unknown strategy %r, using ORDER_BLOCK", raw)
        return StrategyVariant.ORDER_BLOCK


def _coerce(name: str, raw: Any, default: Any) -> Any:
    """Convert a raw preset value to the type of its default."""
    if name == 'strategy':
        return _coerce_strategy(raw) if raw else default
    if name == 'seed':
        try:
            return int(raw) if raw is not None else default
        except (TypeError, ValueError):
            return default

    if isinstance(default, bool):
        if raw is None:
            return default
        if isinstance(raw, str):
            return raw.strip().lower() in _TRUE_STRINGS
        return bool(raw)

    if isinstance(default, (int, float)):
        if raw is None or isinstance(raw, bool):
            return default
        try:
            value = float(raw)
        except (TypeError, ValueError):
            logger.debug("Malformed value for %s: %r", name, raw)
            return default
        if value == 0 or math.isnan(value):
            return default
        return int(value) if isinstance(default, int) else value

    if isinstance(default, str):
        if not raw:
            return default
        value = str(raw)
        if name == 'confirmation_type' and value not in CONFIRMATION_TYPES:
            return default
        if name == 'trend_strictness' and value not in TREND_STRICTNESS:
            return default
        return value

    return raw
