"""
Capital Simulator - Balance, Sizing, Spread and Daily Drawdown Lock

Account-side state of one replay run:
- Balance, peak equity and maximum drawdown (% of peak)
- Risk-based lot sizing, rounded to 0.01 lots
- Randomised spread around the symbol's typical spread
- Dynamic R:R from the observed ATR distribution
- Daily drawdown tracker: resets at each UTC date, locks new entries
  once the day's loss reaches max_daily_dd percent of the day's start

Randomness comes from an injected random.Random so a seeded run is
reproducible.
"""

import logging
import math
import random
from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional

from smc.backtesting.config import EngineConfig

logger = logging.getLogger(__name__)

ATR_HISTORY_LIMIT = 500
DYNAMIC_RR_MIN_SAMPLES = 20
DYNAMIC_RR_FLOOR = 1.5
DYNAMIC_RR_CEILING = 5.0


@dataclass
class DailyTracker:
    """Loss tracker for one UTC trading date."""
    day: date
    start_balance: float
    locked: bool = False

    def drawdown_pct(self, balance: float) -> float:
        if self.start_balance <= 0:
            return 0.0
        return (self.start_balance - balance) / self.start_balance * 100


class CapitalSimulator:
    """
    Account state for a single run.

    Usage:
        capital = CapitalSimulator(config, rng)
        if capital.can_trade(candle.time):
            spread = capital.sample_spread()
            lots = capital.lot_size(stop_distance)
        capital.apply_pnl(trade.pnl)
    """

    def __init__(self, config: EngineConfig, rng: Optional[random.Random] = None):
        self._config = config
        self._info = config.symbol_info
        self._rng = rng or random.Random(config.seed)
        self.balance = config.initial_balance
        self.peak_equity = config.initial_balance
        self.max_drawdown = 0.0
        self.daily: Optional[DailyTracker] = None
        self.atr_history: List[float] = []

    # ── Balance ─────────────────────────────────────────────────────

    def apply_pnl(self, pnl: float) -> None:
        """Book a closed trade's P&L and update peak / max drawdown."""
        self.balance += pnl
        if self.balance > self.peak_equity:
            self.peak_equity = self.balance
        if self.peak_equity > 0:
            dd = (self.peak_equity - self.balance) / self.peak_equity * 100
            if dd > self.max_drawdown:
                self.max_drawdown = dd

    # ── Daily drawdown lock ─────────────────────────────────────────

    def can_trade(self, ts: datetime) -> bool:
        """
        Daily drawdown gate for new entries.

        Opens a fresh tracker at each UTC date change. Once the loss
        reaches max_daily_dd the day stays locked.
        """
        today = ts.date()
        if self.daily is None or self.daily.day != today:
            self.daily = DailyTracker(today, self.balance)
        if self.daily.locked:
            return False
        if self.daily.drawdown_pct(self.balance) >= self._config.max_daily_dd:
            self.daily.locked = True
            logger.debug("Daily drawdown lock on %s at balance %.2f", today, self.balance)
            return False
        return True

    # ── Entry pricing & sizing ──────────────────────────────────────

    def sample_spread(self) -> float:
        """Typical spread scaled by a uniform factor in [0.8, 1.2)."""
        return self._info.typical_spread * (0.8 + self._rng.random() * 0.4)

    def lot_size(self, stop_distance: float) -> float:
        """Lots risking risk_percent of the balance over stop_distance (0.01 steps)."""
        if stop_distance <= 0:
            return 0.0
        risk_amount = self.balance * self._config.risk_percent / 100
        return round(risk_amount / (stop_distance * self._info.contract_size), 2)

    def stop_pips(self, stop_distance: float) -> float:
        return stop_distance / self._info.pip_size

    # ── Dynamic R:R ─────────────────────────────────────────────────

    def record_atr(self, atr: float) -> None:
        if not self._config.enable_dynamic_rr:
            return
        self.atr_history.append(atr)
        if len(self.atr_history) > ATR_HISTORY_LIMIT:
            del self.atr_history[:-ATR_HISTORY_LIMIT]

    def intended_rr(self, atr: float) -> float:
        """
        R multiple for the take-profit.

        Fixed RR unless dynamic RR is enabled with more than 20 ATR
        samples: base x sqrt(reference / atr), clamped to [1.5, 5.0].
        The reference is the configured value or the median sample.
        """
        config = self._config
        if not config.enable_dynamic_rr or len(self.atr_history) <= DYNAMIC_RR_MIN_SAMPLES:
            return config.fixed_rr
        if atr <= 0:
            return config.fixed_rr

        if config.dynamic_rr_atr_ref > 0:
            reference = config.dynamic_rr_atr_ref
        else:
            ordered = sorted(self.atr_history)
            reference = ordered[len(ordered) // 2]

        rr = config.dynamic_rr_base * math.sqrt(reference / atr)
        return max(DYNAMIC_RR_FLOOR, min(DYNAMIC_RR_CEILING, rr))
