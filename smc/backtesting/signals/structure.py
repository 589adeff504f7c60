"""
Structure Detector - Order Blocks, Fair Value Gaps, Swings, Breaks

Maintains the market-structure collections the signal generators read:

1. Order blocks  - last opposing candle before a displacement >= atr_multiplier x ATR
2. Fair value gaps - 3-candle imbalances >= min_fvg_size x ATR
3. Swing points  - liquidity pools (lookback 3)
4. Structure break - single live BOS slot

Each collection is a StructureArena: entities carry an id and a tagged
state. Consuming an entity (entry, fill, sweep) flips its state; it stays
in the arena as a tombstone so a rescan of the same window cannot seed it
again. A single collect() pass per MTF update drops entities past their
age window. Queries only ever see ACTIVE entities.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Generic, Iterator, List, Optional, Sequence, TypeVar

from smc.backtesting.config import Bias, EngineConfig
from smc.backtesting.data_providers.base import Candle
from smc.backtesting.signals.indicators import (
    SwingKind,
    calculate_atr,
    find_swing_points,
)

logger = logging.getLogger(__name__)

OB_MAX_AGE = timedelta(hours=50)
FVG_MAX_AGE = timedelta(hours=48)
SWING_MAX_AGE = timedelta(hours=72)


class EntityState(str, Enum):
    """Lifecycle of a structure entity."""
    ACTIVE = "ACTIVE"
    USED = "USED"            # order block consumed by an entry or opposing exit
    MITIGATED = "MITIGATED"  # order block invalidated by price
    FILLED = "FILLED"        # fair value gap consumed
    SWEPT = "SWEPT"          # swing liquidity taken


@dataclass
class OrderBlock:
    kind: Bias
    high: float
    low: float
    time: datetime
    score: int
    state: EntityState = EntityState.ACTIVE
    id: int = -1

    @property
    def range(self) -> float:
        return self.high - self.low

    @property
    def is_active(self) -> bool:
        return self.state is EntityState.ACTIVE


@dataclass
class FairValueGap:
    kind: Bias
    top: float
    bottom: float
    time: datetime
    size: float
    state: EntityState = EntityState.ACTIVE
    id: int = -1

    @property
    def midpoint(self) -> float:
        return (self.top + self.bottom) / 2

    @property
    def is_active(self) -> bool:
        return self.state is EntityState.ACTIVE


@dataclass
class SwingPoint:
    kind: SwingKind
    price: float
    time: datetime
    index: int
    state: EntityState = EntityState.ACTIVE
    id: int = -1

    @property
    def is_active(self) -> bool:
        return self.state is EntityState.ACTIVE

    @property
    def swept(self) -> bool:
        return self.state is EntityState.SWEPT


@dataclass
class StructureBreak:
    kind: Bias
    level: float
    time: datetime
    confirmed: bool = True


T = TypeVar('T', OrderBlock, FairValueGap, SwingPoint)


class StructureArena(Generic[T]):
    """
    Insertion-ordered store of structure entities with tagged state.

    Usage:
        arena = StructureArena(OB_MAX_AGE)
        ob = arena.add(OrderBlock(...))
        arena.consume(ob, EntityState.USED)
        arena.collect(now)
    """

    def __init__(self, max_age: timedelta):
        self.max_age = max_age
        self._items: List[T] = []
        self._next_id = 0

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self._items)

    def add(self, entity: T) -> T:
        entity.id = self._next_id
        self._next_id += 1
        self._items.append(entity)
        return entity

    def get(self, entity_id: int) -> Optional[T]:
        for entity in self._items:
            if entity.id == entity_id:
                return entity
        return None

    def active(self) -> List[T]:
        return [e for e in self._items if e.state is EntityState.ACTIVE]

    def any(self, predicate: Callable[[T], bool]) -> bool:
        """Match over all entities, tombstones included (used for dedup)."""
        return any(predicate(e) for e in self._items)

    def consume(self, entity: T, state: EntityState) -> None:
        if state is EntityState.ACTIVE:
            raise ValueError("consume() needs a terminal state")
        entity.state = state

    def collect(self, now: datetime) -> int:
        """Drop entities at or beyond the age window. Returns count removed."""
        before = len(self._items)
        self._items = [e for e in self._items if now - e.time < self.max_age]
        return before - len(self._items)

    def clear(self) -> None:
        self._items = []
        self._next_id = 0


@dataclass
class MarketStructure:
    """Per-run mutable structure state."""
    order_blocks: StructureArena = field(default_factory=lambda: StructureArena(OB_MAX_AGE))
    fvgs: StructureArena = field(default_factory=lambda: StructureArena(FVG_MAX_AGE))
    swings: StructureArena = field(default_factory=lambda: StructureArena(SWING_MAX_AGE))
    last_bos: Optional[StructureBreak] = None
    last_mtf_time: Optional[datetime] = None

    def reset(self) -> None:
        self.order_blocks.clear()
        self.fvgs.clear()
        self.swings.clear()
        self.last_bos = None
        self.last_mtf_time = None


# ── Update pass (once per new MTF candle) ──────────────────────────


def refresh_structure(
    structure: MarketStructure,
    mtf: Sequence[Candle],
    now: datetime,
    atr: float,
    config: EngineConfig,
) -> bool:
    """
    Garbage-collect aged entities and rescan the MTF window.

    Runs only when the newest visible MTF candle changed since the last
    pass. Returns True if a pass ran.
    """
    if not mtf or mtf[-1].time == structure.last_mtf_time:
        return False
    structure.last_mtf_time = mtf[-1].time

    removed = (
        structure.order_blocks.collect(now)
        + structure.fvgs.collect(now)
        + structure.swings.collect(now)
    )
    if removed:
        logger.debug("Structure GC removed %d aged entities", removed)

    update_order_blocks(structure, mtf, config)
    update_fvgs(structure, mtf, atr, config)
    update_swing_points(structure, mtf)
    return True


def score_order_block(
    candle: Candle,
    preceding: Sequence[Candle],
    kind: Bias,
    atr: float,
) -> int:
    """
    Quality score (0-100) of an order-block candle.

    50 base, +15 strong body (> 60% of range), +10 freshness, +15 when a
    prior swing of matching polarity sits within 0.5 ATR, +10 displacement.
    """
    score = 50
    if candle.body > candle.range * 0.6:
        score += 15

    score += 10

    pivots = find_swing_points(preceding[-10:])
    for pivot in pivots:
        if kind is Bias.BULLISH and pivot.kind is SwingKind.LOW:
            if abs(pivot.price - candle.low) < atr * 0.5:
                score += 15
                break
        if kind is Bias.BEARISH and pivot.kind is SwingKind.HIGH:
            if abs(pivot.price - candle.high) < atr * 0.5:
                score += 15
                break

    score += 10
    return min(score, 100)


def update_order_blocks(
    structure: MarketStructure,
    candles: Sequence[Candle],
    config: EngineConfig,
) -> None:
    if len(candles) < 10:
        return
    atr = calculate_atr(candles)
    if atr == 0:
        return

    arena = structure.order_blocks
    threshold = atr * config.atr_multiplier

    for i in range(3, len(candles) - 2):
        candle = candles[i]
        nxt, after = candles[i + 1], candles[i + 2]

        # Bearish candle before an up-move seeds a bullish block
        if candle.is_bearish:
            move_up = max(nxt.high, after.high) - candle.low
            if move_up >= threshold:
                score = score_order_block(candle, candles[:i + 1], Bias.BULLISH, atr)
                if score >= config.min_ob_score and not arena.any(
                    lambda ob: ob.kind is Bias.BULLISH and abs(ob.low - candle.low) < atr * 0.5
                ):
                    arena.add(OrderBlock(Bias.BULLISH, candle.high, candle.low, candle.time, score))

        if candle.is_bullish:
            move_down = candle.high - min(nxt.low, after.low)
            if move_down >= threshold:
                score = score_order_block(candle, candles[:i + 1], Bias.BEARISH, atr)
                if score >= config.min_ob_score and not arena.any(
                    lambda ob: ob.kind is Bias.BEARISH and abs(ob.high - candle.high) < atr * 0.5
                ):
                    arena.add(OrderBlock(Bias.BEARISH, candle.high, candle.low, candle.time, score))


def update_fvgs(
    structure: MarketStructure,
    candles: Sequence[Candle],
    atr: float,
    config: EngineConfig,
) -> None:
    if len(candles) < 5:
        return

    arena = structure.fvgs
    min_gap = atr * config.min_fvg_size

    for i in range(2, len(candles)):
        c1, c2, c3 = candles[i - 2], candles[i - 1], candles[i]

        if c3.low > c1.high:
            gap = c3.low - c1.high
            if gap >= min_gap and not arena.any(
                lambda g: g.kind is Bias.BULLISH and abs(g.top - c3.low) < atr * 0.3
            ):
                arena.add(FairValueGap(Bias.BULLISH, c3.low, c1.high, c2.time, gap))

        if c3.high < c1.low:
            gap = c1.low - c3.high
            if gap >= min_gap and not arena.any(
                lambda g: g.kind is Bias.BEARISH and abs(g.bottom - c3.high) < atr * 0.3
            ):
                arena.add(FairValueGap(Bias.BEARISH, c1.low, c3.high, c2.time, gap))


def update_swing_points(structure: MarketStructure, candles: Sequence[Candle]) -> None:
    if len(candles) < 10:
        return

    arena = structure.swings
    tolerance = candles[0].range * 0.5
    for pivot in find_swing_points(candles, 3):
        if not arena.any(lambda sp: sp.kind is pivot.kind and abs(sp.price - pivot.price) < tolerance):
            arena.add(SwingPoint(pivot.kind, pivot.price, pivot.time, pivot.index))


def check_bos(structure: MarketStructure, candles: Sequence[Candle], bias: Bias) -> None:
    """Record a break of the latest minor swing in the direction of bias."""
    if len(candles) < 5:
        return
    pivots = find_swing_points(candles[-15:], 2)
    if len(pivots) < 2:
        return

    last = candles[-1]
    current = structure.last_bos
    highs = [p for p in pivots if p.kind is SwingKind.HIGH]
    lows = [p for p in pivots if p.kind is SwingKind.LOW]

    if bias is Bias.BULLISH and highs:
        level = highs[-1].price
        if last.close > level and (current is None or current.kind is not Bias.BULLISH):
            structure.last_bos = StructureBreak(Bias.BULLISH, level, last.time)

    if bias is Bias.BEARISH and lows:
        level = lows[-1].price
        if last.close < level and (current is None or current.kind is not Bias.BEARISH):
            structure.last_bos = StructureBreak(Bias.BEARISH, level, last.time)


# ── Queries ─────────────────────────────────────────────────────────


def find_valid_order_block(
    structure: MarketStructure,
    price: float,
    bias: Bias,
    min_score: int,
) -> Optional[OrderBlock]:
    """First active block of the bias polarity within one block-width of price."""
    kind = Bias.BULLISH if bias is Bias.BULLISH else Bias.BEARISH
    for ob in structure.order_blocks.active():
        if ob.kind is not kind or ob.score < min_score:
            continue
        if ob.low - ob.range <= price <= ob.high + ob.range:
            return ob
    return None


def is_price_at_ob(price: float, ob: OrderBlock) -> bool:
    """Price inside the block, widened by half its range on each side."""
    tolerance = ob.range * 0.5
    return ob.low - tolerance <= price <= ob.high + tolerance


def first_active_fvg(structure: MarketStructure, kind: Bias) -> Optional[FairValueGap]:
    for fvg in structure.fvgs.active():
        if fvg.kind is kind:
            return fvg
    return None
