"""
Stop Managers - Breakeven and ATR Trailing

Two one-way stop adjustments applied to the open position before the
exit check on every candle:

1. Breakeven
   - Trigger: candle's best excursion >= breakeven_trigger_r (in R)
   - Action: stop to entry +/- be_buffer_pips, once per position

2. ATR trailing
   - Activation: best excursion >= trailing_activation_r
   - Trail: trailing_atr_mult x ATR (last 20 MTF candles) behind the
     candle's extreme

R is measured against the original stop. Both go through
Position.tighten_stop(), so neither can loosen the stop.
"""

import logging
from typing import Sequence

from smc.backtesting.config import EngineConfig
from smc.backtesting.data_providers.base import Candle
from smc.backtesting.signals.indicators import calculate_atr
from smc.backtesting.simulation.position_tracker import Position

logger = logging.getLogger(__name__)

TRAILING_ATR_WINDOW = 20


class TrailingStopEvaluator:
    """
    Breakeven and ATR trailing stop updates.

    Usage:
        stops = TrailingStopEvaluator(config)
        moved_be = stops.check_breakeven(position, candle)
        trailed = stops.check_trailing(position, candle, recent_mtf)
    """

    def __init__(self, config: EngineConfig):
        self._config = config
        self._buffer = config.be_buffer_pips * config.symbol_info.pip_size

    def check_breakeven(self, pos: Position, candle: Candle) -> bool:
        """
        Move the stop to breakeven once the trigger is reached.

        Returns:
            True if the stop moved
        """
        if not self._config.enable_breakeven or pos.moved_to_breakeven:
            return False
        if pos.favourable_r(candle) < self._config.breakeven_trigger_r:
            return False

        if pos.tighten_stop(pos.entry + pos.direction.sign * self._buffer):
            pos.moved_to_breakeven = True
            logger.debug("Breakeven: stop moved to %.5g", pos.stop_loss)
            return True
        return False

    def check_trailing(self, pos: Position, candle: Candle, mtf: Sequence[Candle]) -> bool:
        """
        Trail the stop behind the candle extreme once activated.

        Args:
            pos: Open position
            candle: Current LTF candle
            mtf: Visible MTF candles (ATR uses the last 20)

        Returns:
            True if the stop moved
        """
        if not self._config.enable_trailing_stop:
            return False
        atr = calculate_atr(mtf[-TRAILING_ATR_WINDOW:])
        if atr == 0:
            return False
        if pos.favourable_r(candle) < self._config.trailing_activation_r:
            return False

        distance = atr * self._config.trailing_atr_mult
        if pos.is_buy:
            new_stop = candle.high - distance
        else:
            new_stop = candle.low + distance

        if pos.tighten_stop(new_stop):
            pos.trailing_active = True
            return True
        return False
