"""
Tiered Take-Profit Evaluator

Walks the simulated intra-candle price path for positions opened with
tier levels:

- Stop crossed           -> full close at the stop (no slippage)
- TP1 reached            -> close tp1_percent of the ORIGINAL size;
                            optionally ratchet the stop to entry +/- buffer
- TP2 reached (after 1)  -> close tp2_percent of the ORIGINAL size;
                            optionally ratchet the stop to TP1
- TP3 reached (after 2)  -> close the remainder, reason TP3

Several tiers can fill within one candle. Partial P&L accumulates on the
position; the remaining size closes through Position.close().
"""

import logging
from typing import TYPE_CHECKING

from smc.backtesting.config import EngineConfig
from smc.backtesting.data_providers.base import Candle
from smc.backtesting.simulation.position_tracker import ExitReason, Position

if TYPE_CHECKING:
    from smc.backtesting.exits.exit_evaluator import ExitEvalResult

logger = logging.getLogger(__name__)


class TieredExitEvaluator:
    """
    Applies TP1/TP2/TP3 partial closes to a tiered position.

    Usage:
        tiered = TieredExitEvaluator(config)
        result = tiered.check(position, candle)
    """

    def __init__(self, config: EngineConfig):
        self._config = config
        info = config.symbol_info
        self._contract_size = info.contract_size
        self._buffer = config.be_buffer_pips * info.pip_size

    def check(self, pos: Position, candle: Candle) -> 'ExitEvalResult':
        """
        Walk the candle's price path against stop and tiers.

        Returns:
            ExitEvalResult; should_exit is True on a stop or TP3 fill
        """
        from smc.backtesting.exits.exit_evaluator import ExitEvalResult, simulate_price_path

        tiers = pos.tiers
        if tiers is None:
            return ExitEvalResult(should_exit=False)

        for price in simulate_price_path(candle):
            if pos.stop_crossed(price):
                return ExitEvalResult(True, ExitReason.STOP_LOSS, pos.stop_loss,
                                      "Stop hit on tiered position")

            # ── TP1 ─────────────────────────────────────────────────
            if not pos.tp1_hit:
                if pos.level_reached(price, tiers.tp1):
                    self._fill_tier(pos, tiers.tp1, self._config.tp1_percent)
                    pos.tp1_hit = True
                    if self._config.move_sl_on_tp1:
                        pos.tighten_stop(pos.entry + pos.direction.sign * self._buffer)
                        pos.moved_to_breakeven = True
                continue

            # ── TP2 ─────────────────────────────────────────────────
            if not pos.tp2_hit:
                if pos.level_reached(price, tiers.tp2):
                    self._fill_tier(pos, tiers.tp2, self._config.tp2_percent)
                    pos.tp2_hit = True
                    if self._config.move_sl_on_tp2:
                        pos.tighten_stop(tiers.tp1)
                continue

            # ── TP3 ─────────────────────────────────────────────────
            if pos.level_reached(price, tiers.tp3):
                pos.tp3_hit = True
                return ExitEvalResult(True, ExitReason.TP3, tiers.tp3, "Final tier filled")

        return ExitEvalResult(should_exit=False)

    def _fill_tier(self, pos: Position, level: float, percent: float) -> None:
        lots = pos.original_lot_size * percent / 100
        pnl = pos.pnl_at(level, lots, self._contract_size)
        pos.partial_pnl += pnl
        pos.lot_size = max(pos.lot_size - lots, 0.0)
        logger.debug("Tier fill at %.5g: %.4f lots, pnl %.2f", level, lots, pnl)
