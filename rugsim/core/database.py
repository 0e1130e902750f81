"""rugsim.core.database

One SQLite file, two jobs:
- the session record: games, their price ticks and discrete events, observed
  trades, per-run performance rows;
- the journal: append-only events with a hash chain. Settlements, limit
  breaches and exposure snapshots go here.

Replay reads the first. The gatekeeper restores itself from the second.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from rugsim.core.events import EventType, canonical_json, payload_hash
from rugsim.core.exceptions import DedupeConflictError, EventStoreError
from rugsim.core.models import JournalEvent, compute_event_hash
from rugsim.core.time import parse_dt, utc_now

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT DEFAULT (datetime('now'))
);

-- ============================================================
-- Journal (hash chain, append-only)
-- ============================================================
CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    ts TEXT NOT NULL,
    source TEXT,
    dedupe_key TEXT,
    payload TEXT NOT NULL,
    prev_hash TEXT,
    hash TEXT NOT NULL UNIQUE,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_events_type ON events(type);
CREATE INDEX IF NOT EXISTS idx_events_dedupe ON events(dedupe_key);

CREATE TABLE IF NOT EXISTS event_dedup (
    dedupe_key TEXT PRIMARY KEY,
    event_id TEXT NOT NULL,
    payload_hash TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now'))
);

-- ============================================================
-- Session record
-- ============================================================
CREATE TABLE IF NOT EXISTS games (
    game_id TEXT PRIMARY KEY,
    start_time INTEGER NOT NULL,
    end_time INTEGER,
    peak_multiplier REAL,
    rug_price REAL,
    tick_count INTEGER DEFAULT 0,
    is_rugged INTEGER DEFAULT 0,
    metadata TEXT
);

CREATE INDEX IF NOT EXISTS idx_games_start ON games(start_time);

CREATE TABLE IF NOT EXISTS price_updates (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    game_id TEXT NOT NULL REFERENCES games(game_id),
    tick INTEGER NOT NULL,
    price REAL NOT NULL,
    timestamp INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_price_updates_game ON price_updates(game_id, tick);

CREATE TABLE IF NOT EXISTS game_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    game_id TEXT NOT NULL REFERENCES games(game_id),
    event_type TEXT NOT NULL,
    tick INTEGER,
    timestamp INTEGER NOT NULL,
    data TEXT
);

CREATE INDEX IF NOT EXISTS idx_game_events_game ON game_events(game_id, timestamp);

CREATE TABLE IF NOT EXISTS trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    game_id TEXT NOT NULL,
    player_id TEXT NOT NULL,
    type TEXT NOT NULL CHECK(type IN ('buy', 'sell')),
    currency TEXT,
    quantity REAL NOT NULL,
    price REAL NOT NULL,
    currency_amount REAL NOT NULL,
    tick INTEGER,
    timestamp INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_trades_game ON trades(game_id);

CREATE TABLE IF NOT EXISTS strategy_performance (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    strategy_id TEXT NOT NULL,
    game_id TEXT NOT NULL,
    trades_executed INTEGER NOT NULL,
    win_rate REAL NOT NULL,
    realized_pnl REAL NOT NULL,
    total_invested REAL NOT NULL,
    total_returned REAL NOT NULL,
    average_holding_time_seconds REAL NOT NULL,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_strategy_performance_strategy ON strategy_performance(strategy_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_strategy_performance_game
    ON strategy_performance(strategy_id, game_id);
"""


def _dt_to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat()


@dataclass
class Database:
    """SQLite session record plus hash-chained journal."""

    db_path: Path

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_schema()
        self._last_hash = self._get_last_hash()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        with self.conn:
            self.conn.executescript(SCHEMA)
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=NORMAL")

    def _get_last_hash(self) -> str | None:
        row = self.conn.execute("SELECT hash FROM events ORDER BY rowid DESC LIMIT 1").fetchone()
        return None if row is None else str(row[0])

    # -----------------
    # Journal
    # -----------------

    def append_event(
        self,
        *,
        event_type: EventType,
        payload: dict[str, Any],
        event_id: str | None = None,
        source: str | None = None,
        dedupe_key: str | None = None,
        ts: datetime | None = None,
    ) -> JournalEvent:
        """Append a single event.

        Dedup semantics:
        - If dedupe_key is new: insert.
        - If dedupe_key exists with same payload hash: idempotent (return existing event).
        - If dedupe_key exists with different payload hash: conflict.
        """

        with self._lock:
            now = ts or utc_now()
            if now.tzinfo is None:
                now = now.replace(tzinfo=UTC)
            now = now.astimezone(UTC)

            payload_canon = json.loads(canonical_json(payload))
            p_hash = payload_hash(payload_canon)

            if dedupe_key is not None:
                row = self.conn.execute(
                    "SELECT event_id, payload_hash FROM event_dedup WHERE dedupe_key = ?",
                    (dedupe_key,),
                ).fetchone()
                if row is not None:
                    if str(row[1]) != p_hash:
                        raise DedupeConflictError(f"dedupe_key conflict for {dedupe_key}: payload changed")
                    existing = self.conn.execute("SELECT * FROM events WHERE id = ?", (str(row[0]),)).fetchone()
                    if existing is None:
                        raise EventStoreError("dedup index points to missing event")
                    return self._row_to_event(existing)

            eid = event_id or str(uuid.uuid4())
            prev = self._last_hash
            h = compute_event_hash(
                prev_hash=prev,
                event_id=eid,
                event_type=event_type,
                ts=now,
                payload=payload_canon,
                source=source,
                dedupe_key=dedupe_key,
            )

            try:
                with self.conn:
                    self.conn.execute(
                        """
                        INSERT INTO events (id, type, ts, source, dedupe_key, payload, prev_hash, hash)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            eid,
                            str(event_type),
                            _dt_to_iso(now),
                            source,
                            dedupe_key,
                            canonical_json(payload_canon),
                            prev,
                            h,
                        ),
                    )
                    if dedupe_key is not None:
                        self.conn.execute(
                            "INSERT INTO event_dedup (dedupe_key, event_id, payload_hash) VALUES (?, ?, ?)",
                            (dedupe_key, eid, p_hash),
                        )
            except sqlite3.IntegrityError as e:
                raise EventStoreError(str(e)) from e

            self._last_hash = h
            return JournalEvent(
                id=eid,
                type=event_type,
                ts=now,
                source=source,
                dedupe_key=dedupe_key,
                payload=payload_canon,
                prev_hash=prev,
                hash=h,
            )

    def append_events_batch(
        self,
        events: Iterable[tuple[EventType, dict[str, Any], str | None]],
        *,
        source: str | None = None,
    ) -> list[JournalEvent]:
        """Input tuples: (event_type, payload, dedupe_key)."""

        out: list[JournalEvent] = []
        with self._lock:
            for et, payload, dedupe_key in events:
                out.append(self.append_event(event_type=et, payload=payload, dedupe_key=dedupe_key, source=source))
        return out

    def get_events(
        self,
        *,
        event_type: EventType | None = None,
        source: str | None = None,
        limit: int = 100,
    ) -> list[JournalEvent]:
        """Newest first."""

        q = "SELECT * FROM events WHERE 1=1"
        params: list[Any] = []
        if event_type is not None:
            q += " AND type = ?"
            params.append(str(event_type))
        if source is not None:
            q += " AND source = ?"
            params.append(source)
        q += " ORDER BY rowid DESC LIMIT ?"
        params.append(limit)

        rows = self.conn.execute(q, tuple(params)).fetchall()
        return [self._row_to_event(r) for r in rows]

    def latest_event(self, event_type: EventType, *, source: str | None = None) -> JournalEvent | None:
        events = self.get_events(event_type=event_type, source=source, limit=1)
        return events[0] if events else None

    def verify_hash_chain(self) -> bool:
        rows = self.conn.execute("SELECT * FROM events ORDER BY rowid ASC").fetchall()
        prev: str | None = None
        for row in rows:
            ev = self._row_to_event(row)
            if ev.prev_hash != prev:
                return False
            expected = compute_event_hash(
                prev_hash=prev,
                event_id=ev.id,
                event_type=ev.type,
                ts=ev.ts,
                payload=ev.payload,
                source=ev.source,
                dedupe_key=ev.dedupe_key,
            )
            if expected != ev.hash:
                return False
            prev = ev.hash
        return True

    def _row_to_event(self, row: sqlite3.Row) -> JournalEvent:
        return JournalEvent(
            id=str(row["id"]),
            type=EventType(str(row["type"])),
            ts=parse_dt(str(row["ts"])),
            source=row["source"],
            dedupe_key=row["dedupe_key"],
            payload=json.loads(row["payload"]),
            prev_hash=row["prev_hash"],
            hash=str(row["hash"]),
        )

    # -----------------
    # Session record (writers)
    # -----------------

    def record_game(
        self,
        *,
        game_id: str,
        start_time: int,
        end_time: int | None = None,
        peak_multiplier: float | None = None,
        rug_price: float | None = None,
        tick_count: int = 0,
        is_rugged: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO games (game_id, start_time, end_time, peak_multiplier, rug_price, tick_count, is_rugged, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(game_id) DO UPDATE SET
                    end_time = excluded.end_time,
                    peak_multiplier = excluded.peak_multiplier,
                    rug_price = excluded.rug_price,
                    tick_count = excluded.tick_count,
                    is_rugged = excluded.is_rugged,
                    metadata = excluded.metadata
                """,
                (
                    game_id,
                    int(start_time),
                    None if end_time is None else int(end_time),
                    None if peak_multiplier is None else float(peak_multiplier),
                    None if rug_price is None else float(rug_price),
                    int(tick_count),
                    1 if is_rugged else 0,
                    canonical_json(metadata or {}),
                ),
            )

    def record_prices(self, game_id: str, points: Iterable[tuple[int, float, int]]) -> int:
        """Bulk insert (tick, price, timestamp) rows."""

        rows = [(game_id, int(t), float(p), int(ts)) for t, p, ts in points]
        with self._lock, self.conn:
            self.conn.executemany(
                "INSERT INTO price_updates (game_id, tick, price, timestamp) VALUES (?, ?, ?, ?)",
                rows,
            )
        return len(rows)

    def record_game_event(
        self,
        *,
        game_id: str,
        event_type: str,
        timestamp: int,
        tick: int | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                "INSERT INTO game_events (game_id, event_type, tick, timestamp, data) VALUES (?, ?, ?, ?, ?)",
                (game_id, event_type, tick, int(timestamp), canonical_json(data or {})),
            )

    def record_trade(
        self,
        *,
        game_id: str,
        player_id: str,
        kind: str,
        currency: str,
        quantity: float,
        price: float,
        currency_amount: float,
        timestamp: int,
        tick: int | None = None,
    ) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO trades (game_id, player_id, type, currency, quantity, price, currency_amount, tick, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    game_id,
                    player_id,
                    kind,
                    currency,
                    float(quantity),
                    float(price),
                    float(currency_amount),
                    tick,
                    int(timestamp),
                ),
            )

    def record_performance(self, summary: dict[str, Any]) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO strategy_performance (
                    strategy_id, game_id, trades_executed, win_rate, realized_pnl,
                    total_invested, total_returned, average_holding_time_seconds
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(strategy_id, game_id) DO UPDATE SET
                    trades_executed = excluded.trades_executed,
                    win_rate = excluded.win_rate,
                    realized_pnl = excluded.realized_pnl,
                    total_invested = excluded.total_invested,
                    total_returned = excluded.total_returned,
                    average_holding_time_seconds = excluded.average_holding_time_seconds
                """,
                (
                    summary["strategy_id"],
                    summary["game_id"],
                    int(summary["trades_executed"]),
                    float(summary["win_rate"]),
                    float(summary["realized_pnl"]),
                    float(summary["total_invested"]),
                    float(summary["total_returned"]),
                    float(summary["average_holding_time_seconds"]),
                ),
            )
