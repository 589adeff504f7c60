"""
Results Formatter - Run Metrics, Trade Frames and Comparison Tables

Produces the reported numbers of a replay run and the text output of the
batch runner:
- BacktestMetrics: trade counts, win rate, profit factor, drawdown, P&L
  and the exit-management counters (breakeven, opposing, tiers, trailing)
- MetricsAggregator: derives BacktestMetrics from closed trades; pure, so
  computing twice over the same trades gives the same result
- ResultsFormatter: comparison table sorted by P&L with the winning
  strategy block, and a combined summary across symbols

Usage:
    metrics = MetricsAggregator.compute(state.trades, state.counters,
                                        config.initial_balance, state.max_drawdown)
    print(metrics.summary())
    print(ResultsFormatter.comparison_table(results))
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from smc.backtesting.simulation.position_tracker import ClosedTrade, ExitReason

logger = logging.getLogger(__name__)

NAME_COLUMN_WIDTH = 44


@dataclass
class BacktestMetrics:
    """
    Reported outcome of one run.

    win_rate, max_drawdown and total_pnl_percent are percentages.
    profit_factor is 0 both when nothing was lost and nothing was won,
    and when nothing was lost but something was won (unbounded).
    """

    # ── Trade counts ────────────────────────────────────────────────
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0

    # ── P&L ─────────────────────────────────────────────────────────
    profit_factor: float = 0.0
    max_drawdown: float = 0.0
    total_pnl: float = 0.0
    total_pnl_percent: float = 0.0
    final_balance: float = 0.0
    sharpe_ratio: float = 0.0

    # ── Exit management ─────────────────────────────────────────────
    be_moved_count: int = 0
    be_hits: int = 0
    opposing_exits: int = 0
    time_exits: int = 0
    trailing_stop_count: int = 0
    confluence_filter_count: int = 0
    sl_exits: int = 0
    tp_exits: int = 0

    # ── Tiered take-profit ──────────────────────────────────────────
    tp1_hits: int = 0
    tp2_hits: int = 0
    tp3_hits: int = 0
    tp1_exits: int = 0
    tp2_exits: int = 0
    tp3_exits: int = 0
    sl_after_tp1: int = 0
    sl_after_tp2: int = 0

    by_exit_reason: Dict[str, int] = field(default_factory=dict)

    def summary(self) -> str:
        """Human-readable summary string."""
        lines = [
            "=" * 60,
            "BACKTEST RESULTS",
            "=" * 60,
            f"Total Trades:  {self.total_trades}",
            f"Win Rate:      {self.win_rate:.1f}%",
            f"Profit Factor: {self.profit_factor:.2f}",
            f"Total P&L:     ${self.total_pnl:,.2f} ({self.total_pnl_percent:.1f}%)",
            f"Final Balance: ${self.final_balance:,.2f}",
            f"Max Drawdown:  {self.max_drawdown:.1f}%",
            f"Sharpe Ratio:  {self.sharpe_ratio:.2f}",
        ]

        if self.by_exit_reason:
            lines.append("")
            lines.append("Exit Reason Distribution:")
            for reason, count in sorted(self.by_exit_reason.items(), key=lambda x: -x[1]):
                pct = count / self.total_trades * 100 if self.total_trades > 0 else 0
                lines.append(f"  {reason:20s} {count:4d} ({pct:5.1f}%)")

        if self.be_moved_count or self.trailing_stop_count:
            lines.append("")
            lines.append(f"Breakeven moves: {self.be_moved_count} (hits {self.be_hits})")
            lines.append(f"Trailing moves:  {self.trailing_stop_count}")

        if self.tp1_hits:
            lines.append("")
            lines.append(
                f"Tiered TP: TP1={self.tp1_hits} | TP2={self.tp2_hits} | "
                f"TP3={self.tp3_hits} | SL after TP1={self.sl_after_tp1}"
            )

        lines.append("=" * 60)
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)


@dataclass
class RunResult:
    """Metrics of one named run inside a batch."""
    name: str
    symbol: str
    metrics: BacktestMetrics
    timeframe: Optional[str] = None
    trades: List[ClosedTrade] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = {'name': self.name, 'symbol': self.symbol, 'timeframe': self.timeframe}
        data.update(self.metrics.to_dict())
        return data


class MetricsAggregator:
    """Derives BacktestMetrics from closed trades and run counters."""

    @staticmethod
    def compute(
        trades: Sequence[ClosedTrade],
        counters: Optional[Mapping[str, int]] = None,
        initial_balance: float = 1000.0,
        max_drawdown: float = 0.0,
    ) -> BacktestMetrics:
        """
        Compute run metrics.

        Args:
            trades: Closed trades in exit order
            counters: Event counters (RunCounters.to_dict())
            initial_balance: Starting balance of the run
            max_drawdown: Peak-to-trough drawdown in percent

        Returns:
            BacktestMetrics
        """
        counters = counters or {}
        pnls = [t.pnl for t in trades]
        total_pnl = sum(pnls)

        winners = [p for p in pnls if p > 0]
        losers = [p for p in pnls if p <= 0]
        gross_profit = sum(winners)
        gross_loss = abs(sum(losers))
        # Unbounded (no losses) reports as 0
        profit_factor = gross_profit / gross_loss if gross_loss > 0 else 0.0

        by_reason: Dict[str, int] = {}
        for t in trades:
            by_reason[t.reason.value] = by_reason.get(t.reason.value, 0) + 1

        def reason_count(reason: ExitReason) -> int:
            return by_reason.get(reason.value, 0)

        return BacktestMetrics(
            total_trades=len(trades),
            winning_trades=len(winners),
            losing_trades=len(losers),
            win_rate=len(winners) / len(trades) * 100 if trades else 0.0,
            profit_factor=profit_factor,
            max_drawdown=max_drawdown,
            total_pnl=total_pnl,
            total_pnl_percent=total_pnl / initial_balance * 100 if initial_balance else 0.0,
            final_balance=initial_balance + total_pnl,
            sharpe_ratio=MetricsAggregator.sharpe_ratio(pnls),
            be_moved_count=counters.get('breakeven_moves', 0),
            be_hits=sum(1 for t in trades
                        if t.moved_to_breakeven and t.reason is ExitReason.STOP_LOSS),
            opposing_exits=reason_count(ExitReason.OPPOSING),
            time_exits=reason_count(ExitReason.TIME_EXIT),
            trailing_stop_count=counters.get('trailing_moves', 0),
            confluence_filter_count=counters.get('confluence_rejections', 0),
            sl_exits=reason_count(ExitReason.STOP_LOSS),
            tp_exits=reason_count(ExitReason.TAKE_PROFIT),
            tp1_hits=counters.get('tp1_hits', 0),
            tp2_hits=counters.get('tp2_hits', 0),
            tp3_hits=counters.get('tp3_hits', 0),
            tp1_exits=sum(1 for t in trades if t.tp1_hit),
            tp2_exits=sum(1 for t in trades if t.tp2_hit),
            tp3_exits=sum(1 for t in trades if t.tp3_hit),
            sl_after_tp1=reason_count(ExitReason.SL_AFTER_TP1),
            sl_after_tp2=reason_count(ExitReason.SL_AFTER_TP2),
            by_exit_reason=by_reason,
        )

    @staticmethod
    def sharpe_ratio(pnls: Sequence[float]) -> float:
        """Per-trade Sharpe scaled by sqrt(trade count); 0 below two trades."""
        if len(pnls) < 2:
            return 0.0
        values = np.asarray(pnls, dtype=float)
        std = values.std(ddof=1)
        if std == 0:
            return 0.0
        return float(values.mean() / std * np.sqrt(len(values)))

    @staticmethod
    def trades_dataframe(trades: Sequence[ClosedTrade]) -> pd.DataFrame:
        """One row per closed trade."""
        return pd.DataFrame([t.to_dict() for t in trades])

    @staticmethod
    def equity_curve(trades: Sequence[ClosedTrade], initial_balance: float) -> pd.Series:
        """Balance after each trade, indexed by exit time."""
        if not trades:
            return pd.Series(dtype=float)
        pnl = pd.Series([t.pnl for t in trades], index=[t.exit_time for t in trades])
        return initial_balance + pnl.cumsum()

    @staticmethod
    def drawdown_pct(equity: pd.Series) -> pd.Series:
        """Drawdown from the running peak, in percent."""
        if equity.empty:
            return equity
        running_max = equity.cummax()
        return (running_max - equity) / running_max * 100


class ResultsFormatter:
    """Text output for batch comparisons."""

    @staticmethod
    def comparison_table(
        results: Sequence[RunResult],
        period: Optional[str] = None,
    ) -> str:
        """
        Table of runs sorted by total P&L (best first).

        Breakeven, opposing-exit and tier columns appear only when some
        run reports them. A winning-strategy block follows the table.
        """
        ordered = sorted(results, key=lambda r: r.metrics.total_pnl, reverse=True)
        has_be = any(r.metrics.be_moved_count > 0 or r.metrics.be_hits > 0 for r in ordered)
        has_opposing = any(r.metrics.opposing_exits > 0 for r in ordered)
        has_tiers = any(r.metrics.tp1_hits > 0 or r.metrics.tp2_hits > 0
                        or r.metrics.tp3_hits > 0 for r in ordered)

        if has_tiers:
            width = 160
        elif has_be or has_opposing:
            width = 130
        else:
            width = 100

        header = (
            'Strategy'.ljust(NAME_COLUMN_WIDTH)
            + 'Trades'.rjust(8) + 'Win%'.rjust(8) + 'PF'.rjust(8)
            + 'PnL $'.rjust(12) + 'MaxDD%'.rjust(10) + 'Final $'.rjust(12)
        )
        if has_be:
            header += 'BE Mvd'.rjust(8) + 'BE Hit'.rjust(8)
        if has_opposing:
            header += 'OppEx'.rjust(8)
        if has_tiers:
            header += 'TP1'.rjust(6) + 'TP2'.rjust(6) + 'TP3'.rjust(6) + 'SL@TP1'.rjust(8)

        lines = ["=" * width, "BACKTEST COMPARISON RESULTS"]
        if period:
            lines.append(f"Period: {period}")
        lines += ["=" * width, header, "-" * width]

        for r in ordered:
            m = r.metrics
            row = (
                r.name[:NAME_COLUMN_WIDTH - 1].ljust(NAME_COLUMN_WIDTH)
                + str(m.total_trades).rjust(8)
                + f"{m.win_rate:.1f}".rjust(8)
                + f"{m.profit_factor:.2f}".rjust(8)
                + f"{m.total_pnl:.0f}".rjust(12)
                + f"{m.max_drawdown:.1f}".rjust(10)
                + f"{m.final_balance:.0f}".rjust(12)
            )
            if has_be:
                row += str(m.be_moved_count).rjust(8) + str(m.be_hits).rjust(8)
            if has_opposing:
                row += str(m.opposing_exits).rjust(8)
            if has_tiers:
                row += (str(m.tp1_hits).rjust(6) + str(m.tp2_hits).rjust(6)
                        + str(m.tp3_hits).rjust(6) + str(m.sl_after_tp1).rjust(8))
            lines.append(row)

        lines.append("=" * width)

        if ordered:
            winner = ordered[0]
            m = winner.metrics
            lines += [
                "",
                "*" * 60,
                f'  WINNING STRATEGY: "{winner.name}"',
                f"  Win Rate: {m.win_rate:.1f}% | PF: {m.profit_factor:.2f} | PnL: ${m.total_pnl:.2f}",
            ]
            if m.be_moved_count > 0:
                lines.append(f"  BE Moved: {m.be_moved_count} trades | BE Hits: {m.be_hits}")
            if m.opposing_exits > 0:
                lines.append(f"  Opposing Exits: {m.opposing_exits}")
            if m.tp1_hits > 0:
                lines.append(
                    f"  Tiered TP: TP1={m.tp1_hits} | TP2={m.tp2_hits} | "
                    f"TP3={m.tp3_hits} | SL after TP1={m.sl_after_tp1}"
                )
            lines.append("*" * 60)

        return "\n".join(lines)

    @staticmethod
    def combined_summary(results: Sequence[RunResult], period: Optional[str] = None) -> str:
        """Totals across all runs (typically several symbols)."""
        total_trades = sum(r.metrics.total_trades for r in results)
        total_wins = sum(r.metrics.winning_trades for r in results)
        total_pnl = sum(r.metrics.total_pnl for r in results)
        win_rate = total_wins / total_trades * 100 if total_trades > 0 else 0.0

        lines = ["=" * 60, "  COMBINED SUMMARY"]
        if period:
            lines.append(f"  Period: {period}")
        lines += [
            "=" * 60,
            f"  Total Trades:  {total_trades}",
            f"  Overall Win%:  {win_rate:.1f}%",
            f"  Total PnL:     ${total_pnl:.2f}",
            "=" * 60,
        ]
        return "\n".join(lines)

    @staticmethod
    def results_dataframe(results: Sequence[RunResult]) -> pd.DataFrame:
        """One row per run with every metric as a column."""
        rows = [r.to_dict() for r in results]
        for row in rows:
            row.pop('by_exit_reason', None)
        return pd.DataFrame(rows)
