from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from rugsim.backtest.batch import BatchDriver
from rugsim.backtest.history import HistoryStore, InMemorySessionSource, save_session
from rugsim.backtest.replay import StrategySpec
from rugsim.backtest.summary import aggregate
from rugsim.core.config import Config
from rugsim.core.database import Database
from rugsim.core.events import DISCRETE_PHASE_CHANGE, DiscreteEvent, EventType, PricePoint
from rugsim.core.types import Currency, PerformanceSummary
from tests._sessions import START_MS, make_session


def _summary(game_id: str, pnl: float, trades: int, wins: int, hold: float) -> PerformanceSummary:
    return PerformanceSummary(
        strategy_id="s",
        game_id=game_id,
        currency=Currency.PRIMARY,
        trades_executed=trades,
        winning_trades=wins,
        losing_trades=trades - wins,
        breakeven_trades=0,
        win_rate=(wins / trades) * 100.0 if trades else 0.0,
        realized_pnl=pnl,
        total_invested=1.0,
        total_returned=1.0 + pnl,
        final_balance=0.0,
        average_pnl_per_trade=pnl / trades if trades else 0.0,
        average_holding_time_seconds=hold,
        trade_count=trades * 2,
    )


def test_aggregate_pools_trades() -> None:
    agg = aggregate(
        "s",
        [
            _summary("g1", 0.3, 3, 3, 2.0),
            _summary("g2", -0.1, 1, 0, 4.0),
            _summary("g3", -0.05, 0, 0, 0.0),
        ],
    )
    assert agg.games == 3
    assert agg.total_pnl == pytest.approx(0.15)
    assert agg.average_pnl_per_game == pytest.approx(0.05)
    assert agg.trades_executed == 4
    assert agg.win_rate == pytest.approx(75.0)
    assert agg.average_pnl_per_trade == pytest.approx(0.15 / 4)
    # games without trades do not drag the hold time down
    assert agg.average_holding_time_seconds == pytest.approx(3.0)
    assert agg.best_game_pnl == pytest.approx(0.3)
    assert agg.worst_game_pnl == pytest.approx(-0.1)
    assert agg.total_invested == pytest.approx(3.0)


def test_aggregate_of_nothing_is_zero() -> None:
    agg = aggregate("s", [])
    assert agg.games == 0
    assert agg.win_rate == 0.0
    assert agg.pnl_stdev == 0.0


def test_batch_pages_sessions_and_skips_failures() -> None:
    sessions = [make_session(f"g{i}", start=START_MS + i * 60_000) for i in range(4)]
    broken = make_session("broken", start=START_MS + 10 * 60_000)
    broken.prices.clear()
    source = InMemorySessionSource([*sessions, broken])

    driver = BatchDriver(source)
    report = asyncio.run(driver.run([StrategySpec("ft")], limit=3, offset=0))

    assert [r.game_id for r in report.results] == ["broken", "g3", "g2"]
    assert [r.game_id for r in report.skipped] == ["broken"]
    assert len(report.completed) == 2
    agg = report.aggregates["ft"]
    assert agg.games == 2
    assert agg.trades_executed == 4


def test_malformed_session_fails_alone() -> None:
    good = make_session("good")
    bad = make_session("bad", start=START_MS + 60_000)
    bad.events.append(
        DiscreteEvent(
            event_type=DISCRETE_PHASE_CHANGE,
            tick=5,
            timestamp=bad.prices[5].timestamp,
            data={"currentPhase": "active", "tickCount": None},
        )
    )
    report = asyncio.run(BatchDriver(InMemorySessionSource([good, bad])).run([StrategySpec("ft")], limit=2))

    assert [r.game_id for r in report.completed] == ["good"]
    assert [r.game_id for r in report.skipped] == ["bad"]
    assert "unreadable" in report.skipped[0].reason
    assert report.aggregates["ft"].games == 1


class _FlakySource(InMemorySessionSource):
    def get_price_history(self, game_id: str) -> list[PricePoint]:
        if game_id == "flaky":
            raise RuntimeError("storage went away")
        return super().get_price_history(game_id)


def test_crashed_run_is_reported_as_skipped() -> None:
    source = _FlakySource([make_session("good"), make_session("flaky", start=START_MS + 60_000)])
    report = asyncio.run(BatchDriver(source).run([StrategySpec("ft")], limit=2))

    assert [r.game_id for r in report.completed] == ["good"]
    assert [r.game_id for r in report.skipped] == ["flaky"]
    assert "RuntimeError" in report.skipped[0].reason


def test_batch_concurrency_matches_sequential() -> None:
    source = InMemorySessionSource(
        [make_session(f"g{i}", start=START_MS + i, price_fn=lambda t, k=i: 1.0 + 0.01 * (k + 1) * t) for i in range(5)]
    )
    specs = [StrategySpec("ft")]

    seq = asyncio.run(BatchDriver(source, max_concurrent_runs=1).run(specs, limit=5))
    par = asyncio.run(BatchDriver(source, max_concurrent_runs=4).run(specs, limit=5))

    assert [r.summaries for r in seq.results] == [r.summaries for r in par.results]
    assert seq.aggregates == par.aggregates


def test_batch_persists_summaries(test_config: Config, temp_dir: Path) -> None:
    db = Database(temp_dir / "history.db")
    for i in range(3):
        save_session(db, make_session(f"g{i}", start=START_MS + i * 60_000))

    driver = BatchDriver.from_config(test_config, HistoryStore(db), db=db)
    specs = [StrategySpec("fixed_tick", params=test_config.strategies["fixed_tick"].params)]
    report = asyncio.run(driver.run(specs, limit=10))

    assert len(report.completed) == 3
    events = db.get_events(event_type=EventType.BACKTEST_SUMMARY_V1)
    assert {e.payload["game_id"] for e in events} == {"g0", "g1", "g2"}
    assert db.conn.execute("SELECT COUNT(*) FROM strategy_performance").fetchone()[0] == 3

    # replaying the same sessions writes the same summaries; the journal does not grow
    asyncio.run(driver.run(specs, game_ids=["g1"]))
    assert len(db.get_events(event_type=EventType.BACKTEST_SUMMARY_V1)) == 3
    assert db.conn.execute("SELECT COUNT(*) FROM strategy_performance").fetchone()[0] == 3
    asyncio.run(driver.run(specs, limit=10))
    assert db.conn.execute("SELECT COUNT(*) FROM strategy_performance").fetchone()[0] == 3
    assert db.verify_hash_chain()
    db.close()


def test_balanced_preset_bounds_the_backtest(test_config: Config) -> None:
    source = InMemorySessionSource([make_session("g1")])
    driver = BatchDriver.from_config(test_config, source)
    report = asyncio.run(
        driver.run([StrategySpec("fixed_tick", params={"tick_buy_amount": 0.06, "presale_buy_amount": 0.01})], limit=1)
    )
    ft = report.results[0]
    # 0.06 is above the strategy's 0.05 cap on every tick buy
    assert ft.stats["fixed_tick"].trades_rejected_by_risk == 2
    s = ft.summary_for("fixed_tick")
    assert s is not None
    assert s.total_invested == pytest.approx(0.01)
