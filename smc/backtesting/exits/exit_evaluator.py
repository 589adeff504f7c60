"""
Exit Resolver - Stop / Target Resolution Within One Candle

Resolves whether an open position exits on the current candle, using a
simulated intra-candle price path when the candle's range covers both
the stop and the target.

Resolution:
1. Neither level breached      - no exit
2. Only one breached           - exact fill at that level
3. Both breached               - walk the price path, first crossing wins;
                                 a stop fill here takes unfavourable slippage
4. Tiered positions            - delegated to TieredExitEvaluator

Optional exits checked by the simulator before stop/target:
- Time exit      - close after max_candle_hold LTF candles
- Opposing exit  - close on a strong candle into an opposing order block

Price path (wick-dominance heuristic):
- Bullish, lower wick > upper:  O, midL, L, midL, O, midH, H, midH, C
- Bullish otherwise:            O, L, midL, O, midH, H, C
- Bearish, upper wick > lower:  O, midH, H, midH, O, midL, L, midL, C
- Bearish otherwise:            O, H, midH, O, midL, L, C
- Doji:                         O, H, L, C if upper wick > lower, else O, L, H, C
where midH = (max(O, C) + H) / 2 and midL = (min(O, C) + L) / 2.

Randomness (stop slippage) is injected through the SlippageModel
protocol so runs are reproducible under a seed.
"""

import logging
import random
from typing import List, Optional, Protocol

from smc.backtesting.config import Bias, EngineConfig
from smc.backtesting.data_providers.base import Candle
from smc.backtesting.exits.partial_exit import TieredExitEvaluator
from smc.backtesting.signals.structure import EntityState, MarketStructure, is_price_at_ob
from smc.backtesting.simulation.position_tracker import ExitReason, Position

logger = logging.getLogger(__name__)


class ExitEvalResult:
    """Result of exit evaluation for one candle."""

    __slots__ = ('should_exit', 'reason', 'price', 'details')

    def __init__(
        self,
        should_exit: bool = False,
        reason: Optional[ExitReason] = None,
        price: float = 0.0,
        details: str = "",
    ):
        self.should_exit = should_exit
        self.reason = reason
        self.price = price
        self.details = details


def simulate_price_path(candle: Candle) -> List[float]:
    """Plausible chronological price sequence through one candle."""
    o, h, l, c = candle.open, candle.high, candle.low, candle.close
    upper_wick = candle.upper_wick
    lower_wick = candle.lower_wick
    mid_high = (max(o, c) + h) / 2
    mid_low = (min(o, c) + l) / 2

    if candle.is_bullish:
        if lower_wick > upper_wick:
            return [o, mid_low, l, mid_low, o, mid_high, h, mid_high, c]
        return [o, l, mid_low, o, mid_high, h, c]

    if candle.is_bearish:
        if upper_wick > lower_wick:
            return [o, mid_high, h, mid_high, o, mid_low, l, mid_low, c]
        return [o, h, mid_high, o, mid_low, l, c]

    if upper_wick > lower_wick:
        return [o, h, l, c]
    return [o, l, h, c]


class SlippageModel(Protocol):
    """Protocol for stop-fill slippage."""

    def stop_slippage(self, pip_size: float) -> float:
        """
        Adverse slippage for a triggered stop.

        Args:
            pip_size: Instrument pip size

        Returns:
            Non-negative price distance against the position
        """
        ...


class RandomSlippage:
    """Uniform slippage in [0, max_pips) pips from a seeded random source."""

    def __init__(self, rng: Optional[random.Random] = None, max_pips: float = 2.0):
        self._rng = rng or random.Random()
        self._max_pips = max_pips

    def stop_slippage(self, pip_size: float) -> float:
        return self._rng.random() * pip_size * self._max_pips


class NoSlippage:
    """Deterministic zero slippage (tests, idealised fills)."""

    def stop_slippage(self, pip_size: float) -> float:
        return 0.0


class ExitResolver:
    """
    Stop/target exit check for the open position.

    Usage:
        resolver = ExitResolver(config, slippage=NoSlippage())
        result = resolver.check_exit(position, candle)
        if result.should_exit:
            trade = position.close(result.price, candle.time, result.reason, contract)
    """

    def __init__(self, config: EngineConfig, slippage: Optional[SlippageModel] = None):
        self._config = config
        self._pip_size = config.symbol_info.pip_size
        self._slippage = slippage or RandomSlippage()
        self._tiered = TieredExitEvaluator(config)

    def check_exit(self, pos: Position, candle: Candle) -> ExitEvalResult:
        """
        Evaluate stop and target against one candle.

        Args:
            pos: The open position (tiered state may be updated in place)
            candle: Current LTF candle

        Returns:
            ExitEvalResult with should_exit=True and the fill price on exit
        """
        if pos.tiers is not None:
            return self._tiered.check(pos, candle)

        if pos.is_buy:
            stop_hit = candle.low <= pos.stop_loss
            target_hit = candle.high >= pos.take_profit
        else:
            stop_hit = candle.high >= pos.stop_loss
            target_hit = candle.low <= pos.take_profit

        if not stop_hit and not target_hit:
            return ExitEvalResult(should_exit=False)

        if stop_hit and not target_hit:
            return ExitEvalResult(True, ExitReason.STOP_LOSS, pos.stop_loss,
                                  f"Stop {pos.stop_loss:.5g} hit")
        if target_hit and not stop_hit:
            return ExitEvalResult(True, ExitReason.TAKE_PROFIT, pos.take_profit,
                                  f"Target {pos.take_profit:.5g} hit")

        # ── Both in range: walk the path ────────────────────────────
        for price in simulate_price_path(candle):
            if pos.stop_crossed(price):
                slip = self._slippage.stop_slippage(self._pip_size)
                fill = pos.stop_loss - slip if pos.is_buy else pos.stop_loss + slip
                return ExitEvalResult(True, ExitReason.STOP_LOSS, fill,
                                      "Stop hit first (same-candle resolution)")
            if pos.level_reached(price, pos.take_profit):
                return ExitEvalResult(True, ExitReason.TAKE_PROFIT, pos.take_profit,
                                      "Target hit first (same-candle resolution)")

        logger.debug("Price path crossed neither level; defaulting to stop")
        return ExitEvalResult(True, ExitReason.STOP_LOSS, pos.stop_loss,
                              "Same-candle fallback")

    def check_time_exit(self, pos: Position, candle_index: int) -> ExitEvalResult:
        """Close at the candle close after max_candle_hold LTF candles."""
        if not self._config.enable_time_exit:
            return ExitEvalResult(should_exit=False)
        held = candle_index - pos.entry_index
        if held < self._config.max_candle_hold:
            return ExitEvalResult(should_exit=False)
        return ExitEvalResult(True, ExitReason.TIME_EXIT, 0.0,
                              f"Held {held} candles >= max {self._config.max_candle_hold}")

    def check_opposing_exit(
        self,
        pos: Position,
        candle: Candle,
        structure: MarketStructure,
    ) -> ExitEvalResult:
        """
        Exit at the close on a strong candle into an opposing order block.

        The block must be active, of the opposite polarity, score at least
        min_opposing_score and contain the close (half-range tolerance).
        The block is consumed when it triggers an exit.
        """
        if not self._config.enable_opposing_exit:
            return ExitEvalResult(should_exit=False)

        opposing = Bias.BEARISH if pos.is_buy else Bias.BULLISH
        ob = next(
            (b for b in structure.order_blocks.active()
             if b.kind is opposing and b.score >= self._config.min_opposing_score),
            None,
        )
        if ob is None or not is_price_at_ob(candle.close, ob):
            return ExitEvalResult(should_exit=False)

        against = candle.is_bearish if pos.is_buy else candle.is_bullish
        if not (against and candle.body > candle.range * 0.5):
            return ExitEvalResult(should_exit=False)

        structure.order_blocks.consume(ob, EntityState.USED)
        return ExitEvalResult(True, ExitReason.OPPOSING, candle.close,
                              f"Opposing {opposing.value} OB (score {ob.score})")
