"""
Position - Open Trade State and Closed Trade Record

Pure data containers used by the replay loop, the exit resolver and the
stop managers. A run holds at most one Position at a time; closing it
produces an immutable ClosedTrade.

Stop moves (breakeven, trailing, tier ratchets) all go through
Position.tighten_stop(), which only ever moves the stop in the trade's
favour. original_stop_loss is fixed at entry and defines 1R.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from smc.backtesting.config import Direction, StrategyVariant
from smc.backtesting.data_providers.base import Candle


class ExitReason(str, Enum):
    """Reason for position exit."""
    STOP_LOSS = "SL"
    TAKE_PROFIT = "TP"
    TP3 = "TP3"
    SL_AFTER_TP1 = "SL_AFTER_TP1"
    SL_AFTER_TP2 = "SL_AFTER_TP2"
    TIME_EXIT = "TIME"
    OPPOSING = "OPPOSING"
    END_OF_DATA = "END"


@dataclass(frozen=True)
class TierLevels:
    """Tiered take-profit prices, projected from the filled entry."""
    tp1: float
    tp2: float
    tp3: float


@dataclass
class Position:
    """
    The single open position of a run.

    Lot sizes are in broker lots; P&L is price delta x lots x contract size.
    """

    # ── Entry ───────────────────────────────────────────────────────
    direction: Direction
    entry: float                     # spread-adjusted fill
    stop_loss: float
    take_profit: float
    lot_size: float
    entry_time: datetime
    entry_index: int                 # LTF index of the entry candle
    strategy: StrategyVariant = StrategyVariant.ORDER_BLOCK
    source_id: Optional[int] = None  # structure entity behind the signal

    # Set from stop_loss / lot_size at construction when left at 0
    original_stop_loss: float = 0.0
    original_lot_size: float = 0.0

    # ── Tiered Take-Profit ──────────────────────────────────────────
    tiers: Optional[TierLevels] = None
    tp1_hit: bool = False
    tp2_hit: bool = False
    tp3_hit: bool = False
    partial_pnl: float = 0.0

    # ── Stop Management ─────────────────────────────────────────────
    moved_to_breakeven: bool = False
    trailing_active: bool = False

    def __post_init__(self):
        if self.original_stop_loss == 0.0:
            self.original_stop_loss = self.stop_loss
        if self.original_lot_size == 0.0:
            self.original_lot_size = self.lot_size

    @property
    def is_buy(self) -> bool:
        return self.direction is Direction.BUY

    @property
    def risk_distance(self) -> float:
        """1R in price terms, measured from the original stop."""
        return abs(self.entry - self.original_stop_loss)

    def favourable_r(self, candle: Candle) -> float:
        """Best excursion of the candle in R multiples (0 when risk is 0)."""
        if self.risk_distance == 0:
            return 0.0
        if self.is_buy:
            return (candle.high - self.entry) / self.risk_distance
        return (self.entry - candle.low) / self.risk_distance

    def tighten_stop(self, new_stop: float) -> bool:
        """
        Move the stop only if it reduces risk.

        Returns:
            True if the stop moved
        """
        if self.is_buy and new_stop > self.stop_loss:
            self.stop_loss = new_stop
            return True
        if not self.is_buy and new_stop < self.stop_loss:
            self.stop_loss = new_stop
            return True
        return False

    def stop_crossed(self, price: float) -> bool:
        return price <= self.stop_loss if self.is_buy else price >= self.stop_loss

    def level_reached(self, price: float, level: float) -> bool:
        """Whether a price has reached a profit-side level."""
        return price >= level if self.is_buy else price <= level

    def pnl_at(self, price: float, lots: float, contract_size: float) -> float:
        return self.direction.sign * (price - self.entry) * lots * contract_size

    def close(
        self,
        exit_price: float,
        exit_time: datetime,
        reason: ExitReason,
        contract_size: float,
    ) -> 'ClosedTrade':
        """
        Close the remaining size and build the trade record.

        Tiered positions report TP3 once the final tier filled, and
        SL_AFTER_TP2 / SL_AFTER_TP1 for stop-outs after partial fills.
        """
        remaining_pnl = self.pnl_at(exit_price, self.lot_size, contract_size)
        total = remaining_pnl + self.partial_pnl

        final_reason = reason
        if self.tiers is not None:
            if self.tp3_hit:
                final_reason = ExitReason.TP3
            elif self.tp2_hit and reason is ExitReason.STOP_LOSS:
                final_reason = ExitReason.SL_AFTER_TP2
            elif self.tp1_hit and reason is ExitReason.STOP_LOSS:
                final_reason = ExitReason.SL_AFTER_TP1

        return ClosedTrade(
            direction=self.direction,
            strategy=self.strategy,
            entry=self.entry,
            exit_price=exit_price,
            stop_loss=self.stop_loss,
            original_stop_loss=self.original_stop_loss,
            take_profit=self.take_profit,
            lot_size=self.original_lot_size,
            entry_time=self.entry_time,
            exit_time=exit_time,
            pnl=total,
            partial_pnl=self.partial_pnl,
            remaining_pnl=remaining_pnl,
            reason=final_reason,
            moved_to_breakeven=self.moved_to_breakeven,
            tp1_hit=self.tp1_hit,
            tp2_hit=self.tp2_hit,
            tp3_hit=self.tp3_hit,
        )


@dataclass(frozen=True)
class ClosedTrade:
    """Immutable record of a completed trade."""
    direction: Direction
    strategy: StrategyVariant
    entry: float
    exit_price: float
    stop_loss: float
    original_stop_loss: float
    take_profit: float
    lot_size: float
    entry_time: datetime
    exit_time: datetime
    pnl: float
    partial_pnl: float
    remaining_pnl: float
    reason: ExitReason
    moved_to_breakeven: bool = False
    tp1_hit: bool = False
    tp2_hit: bool = False
    tp3_hit: bool = False

    @property
    def is_winner(self) -> bool:
        return self.pnl > 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            'direction': self.direction.value,
            'strategy': self.strategy.value,
            'entry': self.entry,
            'exit': self.exit_price,
            'stop_loss': self.stop_loss,
            'original_stop_loss': self.original_stop_loss,
            'take_profit': self.take_profit,
            'lot_size': self.lot_size,
            'entry_time': self.entry_time.isoformat(),
            'exit_time': self.exit_time.isoformat(),
            'pnl': self.pnl,
            'partial_pnl': self.partial_pnl,
            'remaining_pnl': self.remaining_pnl,
            'is_winner': self.is_winner,
            'reason': self.reason.value,
            'moved_to_breakeven': self.moved_to_breakeven,
            'tp1_hit': self.tp1_hit,
            'tp2_hit': self.tp2_hit,
            'tp3_hit': self.tp3_hit,
        }
