"""
Bar Simulator - Multi-timeframe Replay Loop

Replays LTF candles chronologically against the HTF/MTF candles visible
at each LTF timestamp (time <= now). Per LTF candle:

1. Session state advance (session-aware strategies only)
2. Open position management: breakeven, trailing stop, time exit,
   opposing-signal exit, stop/target exit; then on to the next candle
3. Entry gates: daily drawdown lock, kill zones / cooldowns, HTF bias,
   EMA trend, ATR > 0
4. Structure refresh (once per new MTF candle) and BOS check
5. Confluence gate
6. Pending confirmation resolution
7. Generator dispatch, candidate filters, confirmation deferral
8. Entry: spread, minimum stop distance, lot sizing, take-profit

All mutable run data lives in a RunState created per run; the
EngineConfig is never mutated. The first 100 LTF candles are warm-up.
"""

import logging
import random
from bisect import bisect_right
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from smc.backtesting.config import Bias, EngineConfig
from smc.backtesting.data_providers.base import Candle, validate_series
from smc.backtesting.exits.exit_evaluator import ExitResolver, RandomSlippage, SlippageModel
from smc.backtesting.exits.trailing_stop import TrailingStopEvaluator
from smc.backtesting.signals import filters
from smc.backtesting.signals.generators import GENERATORS, Candidate, SignalContext
from smc.backtesting.signals.indicators import calculate_atr, determine_htf_bias
from smc.backtesting.signals.session import SessionTracker
from smc.backtesting.signals.structure import MarketStructure, check_bos, refresh_structure
from smc.backtesting.simulation.capital_simulator import CapitalSimulator
from smc.backtesting.simulation.position_tracker import (
    ClosedTrade,
    ExitReason,
    Position,
    TierLevels,
)

logger = logging.getLogger(__name__)

WARMUP_CANDLES = 100
HTF_LOOKBACK = 20
SESSION_MTF_LOOKBACK = 30
TRAILING_MTF_LOOKBACK = 20


@dataclass
class RunCounters:
    """Event counters reported alongside trade-derived metrics."""
    breakeven_moves: int = 0
    opposing_exits: int = 0
    trailing_moves: int = 0
    time_exits: int = 0
    confluence_rejections: int = 0
    tp1_hits: int = 0
    tp2_hits: int = 0
    tp3_hits: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class PendingSignal:
    """Candidate waiting for a confirmation candle."""
    candidate: Candidate
    time: datetime


@dataclass
class RunState:
    """Mutable state of one replay run."""
    capital: CapitalSimulator
    structure: MarketStructure = field(default_factory=MarketStructure)
    session: SessionTracker = field(default_factory=SessionTracker)
    position: Optional[Position] = None
    pending: Optional[PendingSignal] = None
    trades: List[ClosedTrade] = field(default_factory=list)
    counters: RunCounters = field(default_factory=RunCounters)

    @property
    def balance(self) -> float:
        return self.capital.balance

    @property
    def max_drawdown(self) -> float:
        return self.capital.max_drawdown


class CandleWindow:
    """Timestamp index over a sorted series for 'visible at time t' slices."""

    def __init__(self, candles: Sequence[Candle]):
        self.candles = candles
        self._times = [c.time for c in candles]

    def visible(self, now: datetime, count: int) -> Sequence[Candle]:
        """Last `count` candles with time <= now."""
        end = bisect_right(self._times, now)
        return self.candles[max(0, end - count):end]


class BarSimulator:
    """
    Candle-by-candle replay for one configuration.

    Usage:
        sim = BarSimulator(config, slippage=NoSlippage(), rng=random.Random(7))
        state = sim.run(htf, mtf, ltf)
        trades = state.trades
    """

    def __init__(
        self,
        config: EngineConfig,
        slippage: Optional[SlippageModel] = None,
        rng: Optional[random.Random] = None,
    ):
        self._config = config
        self._rng = rng or random.Random(config.seed)
        self._resolver = ExitResolver(config, slippage or RandomSlippage(self._rng))
        self._stops = TrailingStopEvaluator(config)
        self._generator = GENERATORS[config.strategy]

    def new_state(self) -> RunState:
        return RunState(capital=CapitalSimulator(self._config, self._rng))

    def run(
        self,
        htf: Sequence[Candle],
        mtf: Sequence[Candle],
        ltf: Sequence[Candle],
    ) -> RunState:
        """
        Replay the LTF series.

        Args:
            htf: Higher-timeframe candles (bias)
            mtf: Medium-timeframe candles (structure, ATR)
            ltf: Lower-timeframe candles (entries, exits)

        Returns:
            Final RunState (trades, counters, balance)

        Raises:
            ValueError: if any series is not strictly time-ordered
        """
        validate_series(htf, 'HTF candles')
        validate_series(mtf, 'MTF candles')
        validate_series(ltf, 'LTF candles')

        state = self.new_state()
        if len(ltf) < WARMUP_CANDLES:
            logger.info("Only %d LTF candles (need %d); no trades", len(ltf), WARMUP_CANDLES)
            return state

        htf_window = CandleWindow(htf)
        mtf_window = CandleWindow(mtf)

        logger.info("Replaying %s on %s: %d LTF candles",
                    self._config.strategy.value, self._config.symbol, len(ltf))

        for i in range(WARMUP_CANDLES, len(ltf)):
            self.step(state, i, ltf, mtf_window, htf_window)

        self._close_remaining(state, ltf)
        logger.info("Replay complete: %d trades, balance %.2f",
                    len(state.trades), state.balance)
        return state

    # ── Per-candle step ─────────────────────────────────────────────

    def step(
        self,
        state: RunState,
        i: int,
        ltf: Sequence[Candle],
        mtf: CandleWindow,
        htf: CandleWindow,
    ) -> None:
        config = self._config
        candle = ltf[i]
        now = candle.time

        if config.strategy.uses_session_state:
            state.session.update(candle, mtf.visible(now, SESSION_MTF_LOOKBACK))

        if state.position is not None:
            self._manage_position(state, i, candle, mtf)
            return

        if not state.capital.can_trade(now):
            return
        if not filters.session_allows_entry(now, config):
            return

        recent_ltf = ltf[max(0, i - config.ltf_lookback):i + 1]
        recent_mtf = mtf.visible(now, config.mtf_lookback)
        recent_htf = htf.visible(now, HTF_LOOKBACK)
        bias = determine_htf_bias(recent_htf)

        if bias is Bias.NEUTRAL and not config.strategy.ignores_htf_bias:
            return
        if not filters.trend_agrees(recent_mtf, bias, config):
            self._reject('trend', now)
            return

        atr = calculate_atr(recent_mtf)
        if atr == 0:
            return
        state.capital.record_atr(atr)

        refresh_structure(state.structure, recent_mtf, now, atr, config)
        check_bos(state.structure, recent_mtf, bias)

        if config.min_confluence_score > 0:
            score = filters.confluence_score(state.structure, bias, recent_mtf, recent_ltf, atr)
            if score < config.min_confluence_score:
                state.counters.confluence_rejections += 1
                self._reject('confluence %d < %d' % (score, config.min_confluence_score), now)
                return

        prev = recent_ltf[-2] if len(recent_ltf) >= 2 else None
        if state.pending is not None and prev is not None:
            if self._resolve_pending(state, i, candle, prev, atr):
                return

        context = SignalContext(
            price=candle.close,
            candle=candle,
            ltf=recent_ltf,
            mtf=recent_mtf,
            htf=recent_htf,
            bias=bias,
            atr=atr,
            config=config,
            structure=state.structure,
            session=state.session,
        )
        candidate = self._generator.generate(context)
        if candidate is None:
            return

        failure = filters.candidate_filter_failure(
            config, state.structure, candidate.direction, candle.close, atr, recent_ltf, bias)
        if failure:
            self._reject(failure, now)
            return

        if config.require_confirmation:
            state.pending = PendingSignal(candidate, now)
            return

        self._open_position(state, candidate, candidate.entry, i, candle, atr, dynamic_rr=True)

    def _resolve_pending(
        self,
        state: RunState,
        i: int,
        candle: Candle,
        prev: Candle,
        atr: float,
    ) -> bool:
        """
        Expire or fill the pending signal.

        Returns:
            True when confirmation consumed this candle
        """
        pending = state.pending
        max_age = timedelta(hours=filters.PENDING_SIGNAL_MAX_AGE_HOURS)
        if candle.time - pending.time > max_age:
            state.pending = None
            return False
        if not filters.is_confirmed(candle, prev, pending.candidate.direction,
                                    self._config.confirmation_type):
            return False

        state.pending = None
        self._open_position(state, pending.candidate, candle.close, i, candle, atr,
                            dynamic_rr=False)
        return True

    # ── Entry ───────────────────────────────────────────────────────

    def _open_position(
        self,
        state: RunState,
        candidate: Candidate,
        price: float,
        i: int,
        candle: Candle,
        atr: float,
        dynamic_rr: bool,
    ) -> bool:
        """Fill a candidate at price +/- half spread; False if sizing rejects it."""
        config = self._config
        info = config.symbol_info
        capital = state.capital
        sign = candidate.direction.sign

        spread = capital.sample_spread()
        entry = price + sign * spread / 2
        stop_distance = abs(entry - candidate.stop_loss)

        pips = capital.stop_pips(stop_distance)
        if pips < info.min_sl_pips:
            self._reject('min stop %.1f < %s pips' % (pips, info.min_sl_pips), candle.time)
            return False

        lots = capital.lot_size(stop_distance)
        if lots < info.min_volume:
            self._reject('stop too wide: lot %.3f < %s' % (lots, info.min_volume), candle.time)
            return False

        rr = capital.intended_rr(atr) if dynamic_rr else config.fixed_rr
        tiers = None
        if config.enable_tiered_tp:
            tiers = TierLevels(
                tp1=entry + sign * stop_distance * config.tp1_rr,
                tp2=entry + sign * stop_distance * config.tp2_rr,
                tp3=entry + sign * stop_distance * config.tp3_rr,
            )

        state.position = Position(
            direction=candidate.direction,
            entry=entry,
            stop_loss=candidate.stop_loss,
            take_profit=entry + sign * stop_distance * rr,
            lot_size=lots,
            entry_time=candle.time,
            entry_index=i,
            strategy=candidate.strategy,
            source_id=candidate.source_id,
            tiers=tiers,
        )
        logger.debug("Opened %s @ %.5g SL %.5g TP %.5g (%.2f lots)",
                     candidate.direction.value, entry, candidate.stop_loss,
                     state.position.take_profit, lots)
        return True

    # ── Open position management ────────────────────────────────────

    def _manage_position(
        self,
        state: RunState,
        i: int,
        candle: Candle,
        mtf: CandleWindow,
    ) -> None:
        pos = state.position
        counters = state.counters

        if self._stops.check_breakeven(pos, candle):
            counters.breakeven_moves += 1
        if self._config.enable_trailing_stop:
            if self._stops.check_trailing(pos, candle, mtf.visible(candle.time, TRAILING_MTF_LOOKBACK)):
                counters.trailing_moves += 1

        result = self._resolver.check_time_exit(pos, i)
        if result.should_exit:
            self._close_position(state, candle.close, candle.time, ExitReason.TIME_EXIT)
            counters.time_exits += 1
            return

        result = self._resolver.check_opposing_exit(pos, candle, state.structure)
        if result.should_exit:
            self._close_position(state, result.price, candle.time, result.reason)
            counters.opposing_exits += 1
            return

        tiers_before = (pos.tp1_hit, pos.tp2_hit, pos.tp3_hit)
        result = self._resolver.check_exit(pos, candle)
        counters.tp1_hits += int(pos.tp1_hit and not tiers_before[0])
        counters.tp2_hits += int(pos.tp2_hit and not tiers_before[1])
        counters.tp3_hits += int(pos.tp3_hit and not tiers_before[2])

        if result.should_exit:
            self._close_position(state, result.price, candle.time, result.reason)

    def _close_position(
        self,
        state: RunState,
        price: float,
        ts: datetime,
        reason: ExitReason,
    ) -> ClosedTrade:
        trade = state.position.close(price, ts, reason, self._config.symbol_info.contract_size)
        state.capital.apply_pnl(trade.pnl)
        state.trades.append(trade)
        state.position = None
        logger.debug("Closed %s @ %.5g: %s, PnL %.2f",
                     trade.direction.value, price, trade.reason.value, trade.pnl)
        return trade

    def _close_remaining(self, state: RunState, ltf: Sequence[Candle]) -> None:
        """Force-close an open position at the last LTF close."""
        if state.position is None or not ltf:
            return
        last = ltf[-1]
        self._close_position(state, last.close, last.time, ExitReason.END_OF_DATA)

    def _reject(self, reason: str, ts: datetime) -> None:
        if self._config.debug_filters:
            logger.debug("[FILTER] %s at %s", reason, ts.isoformat())
