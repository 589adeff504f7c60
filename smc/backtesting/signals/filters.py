"""
Entry Filters - Gates Applied Around Signal Generation

Pure predicates over the current candle, the visible windows and the
structure state. The replay loop applies them in a fixed order:

1. Session gates        - kill zones and post-open cooldowns
2. Trend gate           - MTF EMA trend must agree with the HTF bias
3. Confluence score     - 0-100 structural confluence, minimum threshold
4. Confirmation         - close / engulf / strong candle for pending signals
5. Candidate filters    - strong FVG, inducement, equal highs/lows, OTE

Each returns a boolean (or score); none mutate state.
"""

from datetime import datetime
from typing import Optional, Sequence

from smc.backtesting.config import Bias, Direction, EngineConfig, StrategyVariant
from smc.backtesting.data_providers.base import Candle
from smc.backtesting.signals.indicators import (
    SwingKind,
    calculate_ema,
    ema_trend,
    find_price_clusters,
    in_ote_zone,
    mean,
)
from smc.backtesting.signals.structure import MarketStructure

# (start_hour, end_hour) UTC, end exclusive
KILL_ZONES = {
    'LONDON': (7, 10),
    'NY_AM': (12, 15),
    'NY_PM': (18, 20),
}

# (hour, minute) UTC; no entries for 5 minutes from each
COOLDOWNS = {
    'ASIA_OPEN': (23, 0),
    'LONDON_OPEN': (8, 0),
    'NY_OPEN': (14, 30),
}
COOLDOWN_MINUTES = 5

PENDING_SIGNAL_MAX_AGE_HOURS = 4

STRONG_FVG_STRATEGIES = frozenset({
    StrategyVariant.ORDER_BLOCK,
    StrategyVariant.FBO_CLASSIC,
    StrategyVariant.FBO_STRUCTURE,
})


# ── Session gates ───────────────────────────────────────────────────


def in_kill_zone(ts: datetime) -> bool:
    return any(start <= ts.hour < end for start, end in KILL_ZONES.values())


def in_cooldown(ts: datetime) -> bool:
    for hour, minute in COOLDOWNS.values():
        if ts.hour == hour and minute <= ts.minute < minute + COOLDOWN_MINUTES:
            return True
    return False


def session_allows_entry(ts: datetime, config: EngineConfig) -> bool:
    if not config.use_kill_zones:
        return True
    return in_kill_zone(ts) and not in_cooldown(ts)


# ── Trend gate ──────────────────────────────────────────────────────


def trend_agrees(mtf: Sequence[Candle], bias: Bias, config: EngineConfig) -> bool:
    """EMA trend on the MTF window must equal a non-neutral HTF bias."""
    if not config.require_trend or bias is Bias.NEUTRAL:
        return True
    trend = ema_trend(mtf, config.ema_trend_period, config.trend_strictness,
                      config.trend_min_distance)
    return trend is bias


# ── Confluence ──────────────────────────────────────────────────────


def confluence_score(
    structure: MarketStructure,
    bias: Bias,
    mtf: Sequence[Candle],
    ltf: Sequence[Candle],
    atr: float,
) -> int:
    """
    Additive confluence score, capped at 100.

    +20 directional bias, +15 active OB of the bias, +15 active FVG of the
    bias, +10 active swing of matching polarity within 1.5 ATR, +10 confirmed BOS
    of the bias, +10 MTF close on the bias side of EMA20, +10 LTF volume
    spike (> 1.5x the 10-candle average).
    """
    score = 0
    if bias is not Bias.NEUTRAL:
        score += 20
        if any(ob.kind is bias for ob in structure.order_blocks.active()):
            score += 15
        if any(g.kind is bias for g in structure.fvgs.active()):
            score += 15

        price = ltf[-1].close if ltf else 0.0
        swing_kind = SwingKind.LOW if bias is Bias.BULLISH else SwingKind.HIGH
        if any(sp.kind is swing_kind and abs(sp.price - price) < atr * 1.5
               for sp in structure.swings.active()):
            score += 10

        bos = structure.last_bos
        if bos is not None and bos.confirmed and bos.kind is bias:
            score += 10

        if len(mtf) >= 20:
            ema20 = calculate_ema([c.close for c in mtf], 20)
            last_close = mtf[-1].close
            if (bias is Bias.BULLISH and last_close > ema20) or (
                    bias is Bias.BEARISH and last_close < ema20):
                score += 10

    if len(ltf) >= 10:
        avg_volume = mean([c.volume for c in ltf[-10:]])
        if ltf[-1].volume > avg_volume * 1.5:
            score += 10

    return min(score, 100)


# ── Confirmation ────────────────────────────────────────────────────


def is_confirmed(
    candle: Candle,
    prev: Candle,
    direction: Direction,
    confirmation_type: str = 'close',
) -> bool:
    """
    Whether the candle confirms a pending signal.

    Types:
        engulf - body engulfs the previous body in the signal direction
        strong - signal-coloured candle with body > 50% of range
        close  - signal-coloured candle with body > 30% of range
    """
    buy = direction is Direction.BUY
    coloured = candle.is_bullish if buy else candle.is_bearish

    if confirmation_type == 'engulf':
        prev_top = max(prev.open, prev.close)
        prev_bottom = min(prev.open, prev.close)
        if not (coloured and candle.body > prev.body):
            return False
        if buy:
            return candle.close > prev_top and candle.open < prev_bottom
        return candle.close < prev_bottom and candle.open > prev_top

    ratio = 0.5 if confirmation_type == 'strong' else 0.3
    return coloured and candle.body > candle.range * ratio


# ── Candidate filters ───────────────────────────────────────────────


def has_strong_fvg(
    structure: MarketStructure,
    direction: Direction,
    price: float,
    atr: float,
    min_strength: float,
) -> bool:
    """Active gap of the trade's polarity, >= min_strength ATR, centred within 1 ATR."""
    kind = Bias.BULLISH if direction is Direction.BUY else Bias.BEARISH
    return any(
        g.kind is kind and g.size >= min_strength * atr and abs(g.midpoint - price) < atr
        for g in structure.fvgs.active()
    )


def has_inducement(structure: MarketStructure, price: float, atr: float) -> bool:
    """A swept swing within 1.5 ATR of price."""
    return structure.swings.any(lambda sp: sp.swept and abs(sp.price - price) < atr * 1.5)


def has_equal_highs_lows(
    structure: MarketStructure,
    price: float,
    atr: float,
    tolerance_pct: float,
) -> bool:
    """Two or more swings (swept included) clustering within tolerance, near price."""
    tolerance = price * tolerance_pct
    for kind in (SwingKind.LOW, SwingKind.HIGH):
        nearby = [sp.price for sp in structure.swings
                  if sp.kind is kind and abs(sp.price - price) < atr * 2]
        if any(c.count >= 2 for c in find_price_clusters(nearby, tolerance)):
            return True
    return False


def candidate_filter_failure(
    config: EngineConfig,
    structure: MarketStructure,
    direction: Direction,
    price: float,
    atr: float,
    ltf: Sequence[Candle],
    bias: Bias,
) -> Optional[str]:
    """
    Run the post-generation filters in order.

    Returns:
        Name of the first failing filter, or None if the candidate passes
    """
    if config.require_strong_fvg and config.strategy in STRONG_FVG_STRATEGIES:
        if not has_strong_fvg(structure, direction, price, atr, config.min_fvg_strength):
            return 'strong_fvg'
    if config.require_inducement and not has_inducement(structure, price, atr):
        return 'inducement'
    if config.require_equal_hl and not has_equal_highs_lows(
            structure, price, atr, config.equal_hl_tolerance):
        return 'equal_hl'
    if config.require_ote and not in_ote_zone(price, ltf, bias):
        return 'ote'
    return None
