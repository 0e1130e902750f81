from __future__ import annotations

from pathlib import Path

import pytest

from rugsim.core.database import Database
from rugsim.core.events import EventType, compute_dedupe_key
from rugsim.core.exceptions import DedupeConflictError


def test_database_creates_schema(temp_dir: Path) -> None:
    db = Database(temp_dir / "history.db")
    tables = {r[0] for r in db.conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()}
    for t in ("events", "event_dedup", "games", "price_updates", "game_events", "trades", "strategy_performance"):
        assert t in tables
    db.close()


def test_in_memory_database() -> None:
    db = Database(Path(":memory:"))
    db.append_event(event_type=EventType.RISK_EXPOSURE_SNAPSHOT_V1, payload={"strategies": {}})
    assert len(db.get_events()) == 1
    db.close()


def test_hash_chain_links_events(temp_dir: Path) -> None:
    db = Database(temp_dir / "history.db")
    e1 = db.append_event(event_type=EventType.TRADE_SETTLEMENT_V1, payload={"n": 1}, source="t")
    e2 = db.append_event(event_type=EventType.TRADE_SETTLEMENT_V1, payload={"n": 2}, source="t")

    assert e1.prev_hash is None
    assert e2.prev_hash == e1.hash
    assert db.verify_hash_chain()
    db.close()


def test_tampering_breaks_the_chain(temp_dir: Path) -> None:
    db = Database(temp_dir / "history.db")
    db.append_event(event_type=EventType.TRADE_SETTLEMENT_V1, payload={"n": 1})
    e2 = db.append_event(event_type=EventType.TRADE_SETTLEMENT_V1, payload={"n": 2})
    with db.conn:
        db.conn.execute("UPDATE events SET payload = ? WHERE id = ?", ('{"n":3}', e2.id))
    assert not db.verify_hash_chain()
    db.close()


def test_chain_continues_after_reopen(temp_dir: Path) -> None:
    path = temp_dir / "history.db"
    db = Database(path)
    first = db.append_event(event_type=EventType.TRADE_SETTLEMENT_V1, payload={"n": 1})
    db.close()

    db = Database(path)
    second = db.append_event(event_type=EventType.TRADE_SETTLEMENT_V1, payload={"n": 2})
    assert second.prev_hash == first.hash
    assert db.verify_hash_chain()
    db.close()


def test_dedupe_is_idempotent_for_same_payload(temp_dir: Path) -> None:
    db = Database(temp_dir / "history.db")
    payload = {"strategy_id": "s1", "game_id": "g1"}
    key = compute_dedupe_key(EventType.BACKTEST_SUMMARY_V1, payload)

    a = db.append_event(event_type=EventType.BACKTEST_SUMMARY_V1, payload=payload, dedupe_key=key)
    b = db.append_event(event_type=EventType.BACKTEST_SUMMARY_V1, payload=dict(payload), dedupe_key=key)
    assert a.id == b.id
    assert len(db.get_events(event_type=EventType.BACKTEST_SUMMARY_V1)) == 1

    with pytest.raises(DedupeConflictError):
        db.append_event(event_type=EventType.BACKTEST_SUMMARY_V1, payload={"other": True}, dedupe_key=key)
    db.close()


def test_latest_event_filters_by_source(temp_dir: Path) -> None:
    db = Database(temp_dir / "history.db")
    db.append_event(event_type=EventType.RISK_EXPOSURE_SNAPSHOT_V1, payload={"v": 1}, source="a")
    db.append_event(event_type=EventType.RISK_EXPOSURE_SNAPSHOT_V1, payload={"v": 2}, source="b")

    latest_a = db.latest_event(EventType.RISK_EXPOSURE_SNAPSHOT_V1, source="a")
    assert latest_a is not None
    assert latest_a.payload == {"v": 1}
    latest = db.latest_event(EventType.RISK_EXPOSURE_SNAPSHOT_V1)
    assert latest is not None
    assert latest.payload == {"v": 2}
    db.close()


def test_record_game_upserts(temp_dir: Path) -> None:
    db = Database(temp_dir / "history.db")
    db.record_game(game_id="g1", start_time=100)
    db.record_game(game_id="g1", start_time=100, end_time=200, rug_price=0.01, tick_count=8, is_rugged=True)

    rows = db.conn.execute("SELECT * FROM games").fetchall()
    assert len(rows) == 1
    assert rows[0]["is_rugged"] == 1
    assert rows[0]["tick_count"] == 8
    db.close()


def test_record_trade_and_performance(temp_dir: Path) -> None:
    db = Database(temp_dir / "history.db")
    db.record_trade(
        game_id="g1",
        player_id="p1",
        kind="buy",
        currency="SOL",
        quantity=1.0,
        price=1.2,
        currency_amount=1.2,
        timestamp=100,
        tick=3,
    )
    db.record_performance(
        {
            "strategy_id": "s1",
            "game_id": "g1",
            "trades_executed": 2,
            "win_rate": 50.0,
            "realized_pnl": 0.1,
            "total_invested": 1.0,
            "total_returned": 1.1,
            "average_holding_time_seconds": 3.5,
        }
    )
    assert db.conn.execute("SELECT COUNT(*) FROM trades").fetchone()[0] == 1
    row = db.conn.execute("SELECT * FROM strategy_performance").fetchone()
    assert row["realized_pnl"] == pytest.approx(0.1)
    db.close()


def test_record_performance_upserts_per_strategy_and_game(temp_dir: Path) -> None:
    db = Database(temp_dir / "history.db")
    summary = {
        "strategy_id": "s1",
        "game_id": "g1",
        "trades_executed": 2,
        "win_rate": 50.0,
        "realized_pnl": 0.1,
        "total_invested": 1.0,
        "total_returned": 1.1,
        "average_holding_time_seconds": 3.5,
    }
    db.record_performance(summary)
    db.record_performance({**summary, "realized_pnl": 0.2, "total_returned": 1.2})
    db.record_performance({**summary, "game_id": "g2"})

    rows = db.conn.execute(
        "SELECT game_id, realized_pnl FROM strategy_performance ORDER BY game_id"
    ).fetchall()
    assert [(r["game_id"], r["realized_pnl"]) for r in rows] == [("g1", pytest.approx(0.2)), ("g2", pytest.approx(0.1))]
    db.close()
