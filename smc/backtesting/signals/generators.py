"""
Signal Generators - One Entry Model per Strategy Variant

Each StrategyVariant maps to exactly one generator class exposing
generate(context) -> Optional[Candidate]. The replay loop looks the
generator up in GENERATORS and never branches on the variant itself.

Generators may consume structure (mark an order block USED, a gap
FILLED, swing liquidity SWEPT) when they emit a candidate; that
consumption sticks even if a later filter discards the candidate.

Candidate take-profits are fixed-RR projections from the raw entry, except:
- VWAP_REVERT targets the session VWAP (signal requires >= 1R to it)
- RANGE_FADE targets the opposite Asian-range edge when that is >= 1.5R
The executed take-profit is re-derived by the position manager.

Usage:
    generator = GENERATORS[config.strategy]
    candidate = generator.generate(context)
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

from smc.backtesting.config import Bias, Direction, EngineConfig, StrategyVariant
from smc.backtesting.data_providers.base import Candle
from smc.backtesting.signals.indicators import (
    SwingKind,
    bollinger_bands,
    calculate_ema,
    find_price_clusters,
    find_swing_points,
    mean,
    percentile,
    population_std,
    simple_moving_average,
    split_swings,
)
from smc.backtesting.signals.session import SessionTracker
from smc.backtesting.signals.structure import (
    EntityState,
    MarketStructure,
    find_valid_order_block,
    first_active_fvg,
    is_price_at_ob,
)

logger = logging.getLogger(__name__)


@dataclass
class SignalContext:
    """Everything a generator may read for one LTF candle."""
    price: float
    candle: Candle
    ltf: Sequence[Candle]
    mtf: Sequence[Candle]
    htf: Sequence[Candle]
    bias: Bias
    atr: float
    config: EngineConfig
    structure: MarketStructure
    session: SessionTracker

    @property
    def prev(self) -> Optional[Candle]:
        return self.ltf[-2] if len(self.ltf) >= 2 else None


@dataclass
class Candidate:
    """A proposed entry before filters, spread and sizing."""
    direction: Direction
    entry: float
    stop_loss: float
    take_profit: float
    strategy: StrategyVariant
    source_id: Optional[int] = None

    @property
    def risk(self) -> float:
        return abs(self.entry - self.stop_loss)

    @property
    def reward_ratio(self) -> float:
        if self.risk == 0:
            return 0.0
        return abs(self.take_profit - self.entry) / self.risk


class SignalGenerator(Protocol):
    """Protocol implemented by every strategy variant."""

    variant: StrategyVariant

    def generate(self, context: SignalContext) -> Optional[Candidate]:
        """
        Evaluate the current candle.

        Args:
            context: Market state for the current LTF candle

        Returns:
            Candidate, or None when the setup is absent
        """
        ...


def _rr_candidate(
    context: SignalContext,
    variant: StrategyVariant,
    direction: Direction,
    stop_loss: float,
    source_id: Optional[int] = None,
) -> Optional[Candidate]:
    """Candidate at the current price with a fixed-RR target; None if risk <= 0."""
    entry = context.price
    risk = (entry - stop_loss) * direction.sign
    if risk <= 0:
        return None
    take_profit = entry + direction.sign * risk * context.config.fixed_rr
    return Candidate(direction, entry, stop_loss, take_profit, variant, source_id)


def _bias_kind(bias: Bias) -> Bias:
    return Bias.BULLISH if bias is Bias.BULLISH else Bias.BEARISH


# ── Structure-driven variants ───────────────────────────────────────


class OrderBlockGenerator:
    """Touch of a scored order block aligned with the HTF bias."""

    variant = StrategyVariant.ORDER_BLOCK

    def generate(self, context: SignalContext) -> Optional[Candidate]:
        ob = find_valid_order_block(
            context.structure, context.price, context.bias, context.config.min_ob_score)
        if ob is None or not is_price_at_ob(context.price, ob):
            return None
        if not self._entry_quality(ob.score, ob.kind, context.candle):
            return None

        if context.bias is Bias.BULLISH:
            direction, stop = Direction.BUY, ob.low - ob.range * 0.2
        else:
            direction, stop = Direction.SELL, ob.high + ob.range * 0.2

        candidate = _rr_candidate(context, self.variant, direction, stop, ob.id)
        if candidate is not None:
            context.structure.order_blocks.consume(ob, EntityState.USED)
        return candidate

    @staticmethod
    def _entry_quality(score: int, kind: Bias, candle: Candle) -> bool:
        """High-score blocks pass on touch; weaker ones need a rejection."""
        if score >= 60:
            return True
        if kind is Bias.BULLISH:
            return candle.lower_wick > candle.body * 0.3 or candle.is_bullish
        return candle.upper_wick > candle.body * 0.3 or candle.is_bearish


class FVGGenerator:
    """Rejection from inside an unfilled fair value gap."""

    variant = StrategyVariant.FVG

    def generate(self, context: SignalContext) -> Optional[Candidate]:
        kind = _bias_kind(context.bias)
        price, candle, atr = context.price, context.candle, context.atr

        fvg = next(
            (g for g in context.structure.fvgs.active()
             if g.kind is kind and g.bottom <= price <= g.top),
            None,
        )
        if fvg is None:
            return None

        if kind is Bias.BULLISH:
            if not (candle.lower_wick > candle.body * 0.5 and candle.is_bullish):
                return None
            candidate = _rr_candidate(context, self.variant, Direction.BUY,
                                      fvg.bottom - atr * 0.5, fvg.id)
        else:
            if not (candle.upper_wick > candle.body * 0.5 and candle.is_bearish):
                return None
            candidate = _rr_candidate(context, self.variant, Direction.SELL,
                                      fvg.top + atr * 0.5, fvg.id)

        if candidate is not None:
            context.structure.fvgs.consume(fvg, EntityState.FILLED)
        return candidate


class LiquiditySweepGenerator:
    """Previous candle wicks through a swing and closes back; current candle confirms."""

    variant = StrategyVariant.LIQUIDITY_SWEEP

    def generate(self, context: SignalContext) -> Optional[Candidate]:
        prev = context.prev
        if prev is None:
            return None
        candle, atr = context.candle, context.atr
        strong_body = candle.body > atr * 0.3

        for sp in context.structure.swings.active():
            if context.bias is Bias.BULLISH and sp.kind is SwingKind.LOW:
                if prev.low < sp.price < prev.close:
                    if not (candle.is_bullish and strong_body):
                        return None
                    candidate = _rr_candidate(context, self.variant, Direction.BUY,
                                              sp.price - atr * 0.5, sp.id)
                    if candidate is not None:
                        context.structure.swings.consume(sp, EntityState.SWEPT)
                    return candidate

            if context.bias is Bias.BEARISH and sp.kind is SwingKind.HIGH:
                if prev.high > sp.price > prev.close:
                    if not (candle.is_bearish and strong_body):
                        return None
                    candidate = _rr_candidate(context, self.variant, Direction.SELL,
                                              sp.price + atr * 0.5, sp.id)
                    if candidate is not None:
                        context.structure.swings.consume(sp, EntityState.SWEPT)
                    return candidate
        return None


class BOSGenerator:
    """Pullback to a freshly broken structure level."""

    variant = StrategyVariant.BOS

    def generate(self, context: SignalContext) -> Optional[Candidate]:
        bos = context.structure.last_bos
        if bos is None or not bos.confirmed or bos.kind is not context.bias:
            return None

        price, candle, atr = context.price, context.candle, context.atr
        strong_body = candle.body > atr * 0.2

        if bos.kind is Bias.BULLISH:
            if not bos.level - atr <= price <= bos.level + atr * 0.5:
                return None
            if not (candle.is_bullish and strong_body):
                return None
            candidate = _rr_candidate(context, self.variant, Direction.BUY, bos.level - atr)
        else:
            if not bos.level - atr * 0.5 <= price <= bos.level + atr:
                return None
            if not (candle.is_bearish and strong_body):
                return None
            candidate = _rr_candidate(context, self.variant, Direction.SELL, bos.level + atr)

        if candidate is not None:
            bos.confirmed = False
        return candidate


class OBFVGGenerator:
    """Order block overlapping an unfilled gap of the same polarity."""

    variant = StrategyVariant.OB_FVG

    def generate(self, context: SignalContext) -> Optional[Candidate]:
        structure = context.structure
        ob = find_valid_order_block(
            structure, context.price, context.bias, context.config.min_ob_score)
        if ob is None:
            return None

        kind = _bias_kind(context.bias)
        fvg = next(
            (g for g in structure.fvgs.active()
             if g.kind is kind and ob.high >= g.bottom and ob.low <= g.top),
            None,
        )
        if fvg is None or not is_price_at_ob(context.price, ob):
            return None

        if context.bias is Bias.BULLISH:
            stop = max(ob.low, fvg.bottom) - context.atr * 0.3
            candidate = _rr_candidate(context, self.variant, Direction.BUY, stop, ob.id)
        else:
            stop = min(ob.high, fvg.top) + context.atr * 0.3
            candidate = _rr_candidate(context, self.variant, Direction.SELL, stop, ob.id)

        if candidate is not None:
            structure.order_blocks.consume(ob, EntityState.USED)
            structure.fvgs.consume(fvg, EntityState.FILLED)
        return candidate


# ── LTF trend ───────────────────────────────────────────────────────


class M1TrendGenerator:
    """
    EMA 9/21/50 trend-following on the LTF alone.

    Trend is aligned EMAs (or a fresh 9/21 cross) with price on the right
    side of EMA50; entry on a pullback to EMA9 followed by a momentum candle.
    Ignores the HTF bias.
    """

    variant = StrategyVariant.M1_TREND

    def generate(self, context: SignalContext) -> Optional[Candidate]:
        ltf = context.ltf
        if len(ltf) < 55:
            return None

        closes = [c.close for c in ltf]
        ema9 = calculate_ema(closes, 9)
        ema21 = calculate_ema(closes, 21)
        ema50 = calculate_ema(closes, 50)
        prev_ema9 = calculate_ema(closes[:-1], 9)
        prev_ema21 = calculate_ema(closes[:-1], 21)

        price, candle, prev = context.price, context.candle, ltf[-2]
        bullish_cross = prev_ema9 <= prev_ema21 and ema9 > ema21
        bearish_cross = prev_ema9 >= prev_ema21 and ema9 < ema21
        tolerance = price * 0.0005
        lookback = ltf[-10:]

        if (ema9 > ema21 > ema50 or bullish_cross) and price > ema50:
            pullback = abs(price - ema9) < tolerance or (
                candle.low <= ema9 * 1.001 and price > ema9)
            was_pullback = prev.is_bearish or prev.low <= ema9 * 1.002
            if not pullback and not was_pullback:
                return None
            if not (candle.is_bullish and candle.close > ema9):
                return None
            swing_low = min(c.low for c in lookback)
            if swing_low >= price:
                return None
            stop = swing_low - (price - swing_low) * 0.1
            return _rr_candidate(context, self.variant, Direction.BUY, stop)

        if (ema9 < ema21 < ema50 or bearish_cross) and price < ema50:
            pullback = abs(price - ema9) < tolerance or (
                candle.high >= ema9 * 0.999 and price < ema9)
            was_pullback = prev.is_bullish or prev.high >= ema9 * 0.998
            if not pullback and not was_pullback:
                return None
            if not (candle.is_bearish and candle.close < ema9):
                return None
            swing_high = max(c.high for c in lookback)
            if swing_high <= price:
                return None
            stop = swing_high + (swing_high - price) * 0.1
            return _rr_candidate(context, self.variant, Direction.SELL, stop)

        return None


# ── Failed breakouts ────────────────────────────────────────────────


class FBOClassicGenerator:
    """False break of a swing support/resistance that closes back inside."""

    variant = StrategyVariant.FBO_CLASSIC

    def generate(self, context: SignalContext) -> Optional[Candidate]:
        if len(context.ltf) < 5:
            return None
        recent = context.ltf[-5:]
        active = context.structure.swings.active()
        supports = [s.price for s in active if s.kind is SwingKind.LOW][-5:]
        resistances = [s.price for s in active if s.kind is SwingKind.HIGH][-5:]

        if context.bias in (Bias.BULLISH, Bias.NEUTRAL):
            for level in supports:
                for breakdown, reversal in zip(recent, recent[1:]):
                    if (breakdown.low < level and reversal.close > level
                            and breakdown.close > level * 0.995):
                        stop = breakdown.low - breakdown.range * 0.5
                        candidate = _rr_candidate(context, self.variant, Direction.BUY, stop)
                        if candidate is not None:
                            return candidate

        if context.bias in (Bias.BEARISH, Bias.NEUTRAL):
            for level in resistances:
                for breakout, reversal in zip(recent, recent[1:]):
                    if (breakout.high > level and reversal.close < level
                            and breakout.close < level * 1.005):
                        stop = breakout.high + breakout.range * 0.5
                        candidate = _rr_candidate(context, self.variant, Direction.SELL, stop)
                        if candidate is not None:
                            return candidate
        return None


class FBOSweepGenerator:
    """Wick through a cluster of equal highs/lows with a rejection tail."""

    variant = StrategyVariant.FBO_SWEEP

    def generate(self, context: SignalContext) -> Optional[Candidate]:
        if len(context.ltf) < 5:
            return None
        recent = context.ltf[-5:]
        tolerance = context.price * context.config.equal_hl_tolerance
        arena = context.structure.swings
        atr = context.atr

        if context.bias in (Bias.BULLISH, Bias.NEUTRAL):
            lows = [s for s in arena.active() if s.kind is SwingKind.LOW]
            for cluster in find_price_clusters([s.price for s in lows], tolerance):
                if cluster.count < 2:
                    continue
                level = cluster.average
                for sweep, reversal in zip(recent, recent[1:]):
                    if not (sweep.low < level and reversal.close > level):
                        continue
                    if sweep.lower_wick < sweep.body * 1.5 and sweep.body > 0:
                        continue
                    candidate = _rr_candidate(context, self.variant, Direction.BUY,
                                              sweep.low - atr * 0.3)
                    if candidate is None:
                        continue
                    for idx in cluster.members:
                        arena.consume(lows[idx], EntityState.SWEPT)
                    return candidate

        if context.bias in (Bias.BEARISH, Bias.NEUTRAL):
            highs = [s for s in arena.active() if s.kind is SwingKind.HIGH]
            for cluster in find_price_clusters([s.price for s in highs], tolerance):
                if cluster.count < 2:
                    continue
                level = cluster.average
                for sweep, reversal in zip(recent, recent[1:]):
                    if not (sweep.high > level and reversal.close < level):
                        continue
                    if sweep.upper_wick < sweep.body * 1.5 and sweep.body > 0:
                        continue
                    candidate = _rr_candidate(context, self.variant, Direction.SELL,
                                              sweep.high + atr * 0.3)
                    if candidate is None:
                        continue
                    for idx in cluster.members:
                        arena.consume(highs[idx], EntityState.SWEPT)
                    return candidate
        return None


class FBOStructureGenerator:
    """Failed break of the previous LTF swing (price reclaims the level)."""

    variant = StrategyVariant.FBO_STRUCTURE

    def generate(self, context: SignalContext) -> Optional[Candidate]:
        ltf = context.ltf
        if len(ltf) < 10:
            return None

        highs, lows = split_swings(find_swing_points(ltf[-20:], 2))
        highs, lows = highs[-3:], lows[-3:]
        if len(highs) < 2 or len(lows) < 2:
            return None

        last10 = ltf[-10:]
        close, atr = context.candle.close, context.atr

        if context.bias in (Bias.BULLISH, Bias.NEUTRAL):
            level = lows[-2]
            broken = [c.low for c in last10 if c.low < level]
            if broken and close > level:
                candidate = _rr_candidate(context, self.variant, Direction.BUY,
                                          min(broken) - atr * 0.3)
                if candidate is not None:
                    return candidate

        if context.bias in (Bias.BEARISH, Bias.NEUTRAL):
            level = highs[-2]
            broken = [c.high for c in last10 if c.high > level]
            if broken and close < level:
                return _rr_candidate(context, self.variant, Direction.SELL,
                                     max(broken) + atr * 0.3)
        return None


class CHoCHGenerator:
    """Change of character: break of the last counter swing, entry in its 78.6% retrace."""

    variant = StrategyVariant.CHOCH

    def generate(self, context: SignalContext) -> Optional[Candidate]:
        ltf = context.ltf
        if len(ltf) < 20:
            return None

        highs, lows = split_swings(find_swing_points(ltf[-30:], 3))
        if len(highs) < 3 or len(lows) < 3:
            return None
        highs, lows = highs[-3:], lows[-3:]
        price, close, atr = context.price, context.candle.close, context.atr

        # Downtrend (lower low) broken by a close above the last lower high
        last_low, prev_low = lows[-1], lows[-2]
        lower_high = highs[-1]
        if last_low < prev_low and close > lower_high:
            fib_786 = lower_high - (lower_high - last_low) * 0.786
            if fib_786 <= price <= lower_high * 1.005:
                candidate = _rr_candidate(context, self.variant, Direction.BUY,
                                          last_low - atr * 0.3)
                if candidate is not None:
                    return candidate

        last_high, prev_high = highs[-1], highs[-2]
        higher_low = lows[-1]
        if last_high > prev_high and close < higher_low:
            fib_786 = higher_low + (last_high - higher_low) * 0.786
            if higher_low * 0.995 <= price <= fib_786:
                return _rr_candidate(context, self.variant, Direction.SELL,
                                     last_high + atr * 0.3)
        return None


# ── Session / volume variants ───────────────────────────────────────


def volume_sma(candles: Sequence[Candle], period: int = 20) -> float:
    """Mean volume of the last `period` candles; 0 when too short."""
    return simple_moving_average([c.volume for c in candles[-period:]], period)


class VolClimaxGenerator:
    """Volume climax (>= 3x SMA20) with a >= 60% rejection wick after a 3-candle run."""

    variant = StrategyVariant.VOL_CLIMAX

    def generate(self, context: SignalContext) -> Optional[Candidate]:
        ltf = context.ltf
        if len(ltf) < 25:
            return None
        recent = ltf[-25:]
        candle, atr = context.candle, context.atr

        sma = volume_sma(recent, 20)
        if sma <= 0 or candle.volume < sma * 3:
            return None
        if candle.range == 0:
            return None
        if max(candle.upper_wick, candle.lower_wick) < candle.range * 0.6:
            return None

        run = [c.close for c in recent[-4:-1]]
        falling = run[0] > run[1] > run[2]
        rising = run[0] < run[1] < run[2]

        if falling and candle.lower_wick >= candle.range * 0.6:
            return _rr_candidate(context, self.variant, Direction.BUY, candle.low - atr * 0.3)
        if rising and candle.upper_wick >= candle.range * 0.6:
            return _rr_candidate(context, self.variant, Direction.SELL, candle.high + atr * 0.3)
        return None


class SessionOpenGenerator:
    """Breakout of the London or New York 15-minute opening range."""

    variant = StrategyVariant.SESSION_OPEN

    def generate(self, context: SignalContext) -> Optional[Candidate]:
        opening = context.session.active_opening_range(context.candle.time)
        if opening is None or not opening.high > opening.low:
            return None

        atr = context.atr
        size = opening.high - opening.low
        if not atr * 0.5 <= size <= atr * 2:
            return None

        candle = context.candle
        if candle.range == 0 or candle.body < candle.range * 0.4:
            return None

        if candle.close > opening.high and candle.is_bullish:
            return _rr_candidate(context, self.variant, Direction.BUY, opening.low - atr * 0.2)
        if candle.close < opening.low and candle.is_bearish:
            return _rr_candidate(context, self.variant, Direction.SELL, opening.high + atr * 0.2)
        return None


class VWAPRevertGenerator:
    """Fade a >= 2 sigma stretch from the session VWAP back to the VWAP."""

    variant = StrategyVariant.VWAP_REVERT

    def generate(self, context: SignalContext) -> Optional[Candidate]:
        vwap = context.session.vwap.value
        ts = context.candle.time
        if vwap is None or (ts.hour == 0 and ts.minute < 30):
            return None
        if len(context.ltf) < 20:
            return None

        std = population_std([c.typical_price for c in context.ltf[-20:]])
        if std == 0:
            return None

        price, candle, atr = context.price, context.candle, context.atr
        z = (price - vwap) / std
        if abs(z) < 2:
            return None
        if candle.range == 0 or candle.body < candle.range * 0.3:
            return None

        last5 = context.ltf[-5:]
        if z < -2 and candle.is_bullish:
            stop = min(c.low for c in last5) - atr * 0.5
            risk = price - stop
            if risk > 0 and (vwap - price) / risk >= 1:
                return Candidate(Direction.BUY, price, stop, vwap, self.variant)
        if z > 2 and candle.is_bearish:
            stop = max(c.high for c in last5) + atr * 0.5
            risk = stop - price
            if risk > 0 and (price - vwap) / risk >= 1:
                return Candidate(Direction.SELL, price, stop, vwap, self.variant)
        return None


class VolSqueezeGenerator:
    """MTF Bollinger squeeze (bandwidth <= 20th percentile) released by a band close."""

    variant = StrategyVariant.VOL_SQUEEZE

    def generate(self, context: SignalContext) -> Optional[Candidate]:
        if len(context.mtf) < 30:
            return None
        bands = bollinger_bands([c.close for c in context.mtf], 20, 2.0)
        if bands is None:
            return None

        history = context.session.bbw_history
        if len(history) < 20:
            return None
        if bands.bandwidth > percentile(history, 20):
            return None

        candle, atr = context.candle, context.atr
        if candle.range == 0:
            return None

        if candle.close > bands.upper and context.bias in (Bias.BULLISH, Bias.NEUTRAL):
            return _rr_candidate(context, self.variant, Direction.BUY, bands.lower - atr * 0.2)
        if candle.close < bands.lower and context.bias in (Bias.BEARISH, Bias.NEUTRAL):
            return _rr_candidate(context, self.variant, Direction.SELL, bands.upper + atr * 0.2)
        return None


@dataclass
class AbsorptionZone:
    kind: str            # 'SUPPORT' | 'RESISTANCE'
    price: float
    touches: int
    avg_volume: float


def detect_absorption_zone(candles: Sequence[Candle], atr: float) -> Optional[AbsorptionZone]:
    """
    Level tested three or more times within 0.3 ATR on non-rising volume.

    Volume may rise at most 10% from one touch to the next. Support is
    checked before resistance; the first qualifying base wins.
    """
    if len(candles) < 10:
        return None
    recent = candles[-20:]
    tolerance = atr * 0.3

    for kind, prices in (('SUPPORT', [c.low for c in recent]),
                         ('RESISTANCE', [c.high for c in recent])):
        for i in range(len(recent) - 3):
            base = prices[i]
            touches = [j for j in range(i + 1, len(recent)) if abs(prices[j] - base) < tolerance]
            if len(touches) < 2:
                continue
            volumes = [recent[i].volume] + [recent[j].volume for j in touches]
            if all(cur <= prev * 1.1 for prev, cur in zip(volumes, volumes[1:])):
                return AbsorptionZone(kind, base, len(volumes), mean(volumes))
    return None


class AbsorbGenerator:
    """Rejection from an absorption zone on a volume pickup."""

    variant = StrategyVariant.ABSORB

    def generate(self, context: SignalContext) -> Optional[Candidate]:
        if len(context.ltf) < 20:
            return None
        atr = context.atr
        zone = detect_absorption_zone(context.ltf, atr)
        if zone is None:
            return None

        candle = context.candle
        if candle.volume < zone.avg_volume * 1.2:
            return None
        if candle.range == 0 or candle.body < candle.range * 0.3:
            return None

        if zone.kind == 'SUPPORT' and abs(candle.low - zone.price) < atr * 0.3 and candle.is_bullish:
            return _rr_candidate(context, self.variant, Direction.BUY, zone.price - atr * 0.3)
        if (zone.kind == 'RESISTANCE' and abs(candle.high - zone.price) < atr * 0.3
                and candle.is_bearish):
            return _rr_candidate(context, self.variant, Direction.SELL, zone.price + atr * 0.3)
        return None


class RangeFadeGenerator:
    """Fade a London-hour poke through a tight Asian range."""

    variant = StrategyVariant.RANGE_FADE

    def generate(self, context: SignalContext) -> Optional[Candidate]:
        asian = context.session.asian
        candle, atr = context.candle, context.atr
        if not asian.valid or candle.time.hour != 7:
            return None

        width = asian.high - asian.low
        if width == 0 or width >= atr * 1.5:
            return None
        if candle.range == 0:
            return None

        price, rr = context.price, context.config.fixed_rr
        if candle.low < asian.low < candle.close and candle.is_bullish:
            stop = candle.low - atr * 0.2
            risk = price - stop
            if risk <= 0:
                return None
            target = asian.high if (asian.high - price) / risk >= 1.5 else price + risk * rr
            return Candidate(Direction.BUY, price, stop, target, self.variant)

        if candle.high > asian.high > candle.close and candle.is_bearish:
            stop = candle.high + atr * 0.2
            risk = stop - price
            if risk <= 0:
                return None
            target = asian.low if (price - asian.low) / risk >= 1.5 else price - risk * rr
            return Candidate(Direction.SELL, price, stop, target, self.variant)
        return None


@dataclass
class VolumeDivergence:
    kind: Bias
    first: float    # earlier swing price
    second: float   # later swing price


def _swing_volume(candles: Sequence[Candle], idx: int) -> float:
    return sum(c.volume for c in candles[max(0, idx - 2):idx + 3])


def detect_volume_divergence(
    candles: Sequence[Candle],
    swing_lookback: int = 3,
) -> Optional[VolumeDivergence]:
    """
    New swing extreme made on at least 20% less volume than the previous one.

    Volume is summed over the five candles centred on the first candle
    touching each swing price. Bearish (higher high) is checked first.
    """
    if len(candles) < swing_lookback * 3:
        return None
    highs, lows = split_swings(find_swing_points(candles, swing_lookback))

    def first_index(values: List[float], target: float) -> int:
        return next(i for i, v in enumerate(values) if v == target)

    if len(highs) >= 2 and highs[-1] > highs[-2]:
        prices = [c.high for c in candles]
        prev_vol = _swing_volume(candles, first_index(prices, highs[-2]))
        last_vol = _swing_volume(candles, first_index(prices, highs[-1]))
        if last_vol < prev_vol * 0.8:
            return VolumeDivergence(Bias.BEARISH, highs[-2], highs[-1])

    if len(lows) >= 2 and lows[-1] < lows[-2]:
        prices = [c.low for c in candles]
        prev_vol = _swing_volume(candles, first_index(prices, lows[-2]))
        last_vol = _swing_volume(candles, first_index(prices, lows[-1]))
        if last_vol < prev_vol * 0.8:
            return VolumeDivergence(Bias.BULLISH, lows[-2], lows[-1])
    return None


class MomDivergeGenerator:
    """MTF price/volume divergence entered on an LTF reversal candle."""

    variant = StrategyVariant.MOM_DIVERGE

    def generate(self, context: SignalContext) -> Optional[Candidate]:
        if len(context.mtf) < 15:
            return None
        divergence = detect_volume_divergence(context.mtf, 3)
        if divergence is None:
            return None

        candle, atr = context.candle, context.atr
        if candle.range == 0 or candle.body < candle.range * 0.3:
            return None

        if divergence.kind is Bias.BULLISH and candle.is_bullish:
            return _rr_candidate(context, self.variant, Direction.BUY,
                                 divergence.second - atr * 0.3)
        if divergence.kind is Bias.BEARISH and candle.is_bearish:
            return _rr_candidate(context, self.variant, Direction.SELL,
                                 divergence.second + atr * 0.3)
        return None


GENERATORS: Dict[StrategyVariant, SignalGenerator] = {
    StrategyVariant.ORDER_BLOCK: OrderBlockGenerator(),
    StrategyVariant.FVG: FVGGenerator(),
    StrategyVariant.LIQUIDITY_SWEEP: LiquiditySweepGenerator(),
    StrategyVariant.BOS: BOSGenerator(),
    StrategyVariant.OB_FVG: OBFVGGenerator(),
    StrategyVariant.M1_TREND: M1TrendGenerator(),
    StrategyVariant.FBO_CLASSIC: FBOClassicGenerator(),
    StrategyVariant.FBO_SWEEP: FBOSweepGenerator(),
    StrategyVariant.FBO_STRUCTURE: FBOStructureGenerator(),
    StrategyVariant.CHOCH: CHoCHGenerator(),
    StrategyVariant.VOL_CLIMAX: VolClimaxGenerator(),
    StrategyVariant.SESSION_OPEN: SessionOpenGenerator(),
    StrategyVariant.VWAP_REVERT: VWAPRevertGenerator(),
    StrategyVariant.VOL_SQUEEZE: VolSqueezeGenerator(),
    StrategyVariant.ABSORB: AbsorbGenerator(),
    StrategyVariant.RANGE_FADE: RangeFadeGenerator(),
    StrategyVariant.MOM_DIVERGE: MomDivergeGenerator(),
}


def get_generator(variant: StrategyVariant) -> SignalGenerator:
    return GENERATORS[variant]
