"""rugsim.backtest.summary

Batch-level numbers from per-run summaries.

Per-run numbers come from the ledger and are not touched here. This module only
aggregates them across sessions: totals, averages, and a pooled win rate.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from rugsim.core.events import BacktestSummaryPayload
from rugsim.core.types import PerformanceSummary


@dataclass(frozen=True, slots=True)
class BatchAggregate:
    strategy_id: str
    games: int
    total_pnl: float
    average_pnl_per_game: float
    total_invested: float
    total_returned: float
    trades_executed: int
    winning_trades: int
    win_rate: float  # percent, pooled over all executed trades
    average_pnl_per_trade: float
    average_holding_time_seconds: float  # mean of per-game averages, games with trades only
    pnl_stdev: float
    best_game_pnl: float
    worst_game_pnl: float


def aggregate(strategy_id: str, summaries: Sequence[PerformanceSummary]) -> BatchAggregate:
    rows = [s for s in summaries if s.strategy_id == strategy_id]
    if not rows:
        return BatchAggregate(
            strategy_id=strategy_id,
            games=0,
            total_pnl=0.0,
            average_pnl_per_game=0.0,
            total_invested=0.0,
            total_returned=0.0,
            trades_executed=0,
            winning_trades=0,
            win_rate=0.0,
            average_pnl_per_trade=0.0,
            average_holding_time_seconds=0.0,
            pnl_stdev=0.0,
            best_game_pnl=0.0,
            worst_game_pnl=0.0,
        )

    pnl = np.array([s.realized_pnl for s in rows], dtype=np.float64)
    trades = int(sum(s.trades_executed for s in rows))
    wins = int(sum(s.winning_trades for s in rows))
    holds = np.array([s.average_holding_time_seconds for s in rows if s.trades_executed > 0], dtype=np.float64)

    total_pnl = float(np.sum(pnl))
    return BatchAggregate(
        strategy_id=strategy_id,
        games=len(rows),
        total_pnl=total_pnl,
        average_pnl_per_game=float(np.mean(pnl)),
        total_invested=float(sum(s.total_invested for s in rows)),
        total_returned=float(sum(s.total_returned for s in rows)),
        trades_executed=trades,
        winning_trades=wins,
        win_rate=(wins / trades) * 100.0 if trades > 0 else 0.0,
        average_pnl_per_trade=total_pnl / trades if trades > 0 else 0.0,
        average_holding_time_seconds=float(np.mean(holds)) if holds.size else 0.0,
        pnl_stdev=float(np.std(pnl, ddof=1)) if pnl.size > 1 else 0.0,
        best_game_pnl=float(np.max(pnl)),
        worst_game_pnl=float(np.min(pnl)),
    )


def to_payload(summary: PerformanceSummary) -> BacktestSummaryPayload:
    return BacktestSummaryPayload(
        strategy_id=summary.strategy_id,
        game_id=summary.game_id,
        trades_executed=summary.trades_executed,
        win_rate=summary.win_rate,
        realized_pnl=summary.realized_pnl,
        total_invested=summary.total_invested,
        total_returned=summary.total_returned,
        average_holding_time_seconds=summary.average_holding_time_seconds,
        average_pnl_per_trade=summary.average_pnl_per_trade,
        trade_count=summary.trade_count,
    )
