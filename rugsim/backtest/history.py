"""rugsim.backtest.history

Where recorded sessions come from.

The replay orchestrator only needs four questions answered:
which sessions exist, what one looked like at the end, its price ticks, and its
discrete events. ``HistoryStore`` answers them from SQLite;
``InMemorySessionSource`` answers them from whatever a test hands it.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from pydantic import ValidationError

from rugsim.core.database import Database
from rugsim.core.events import DiscreteEvent, PricePoint, SessionDetails
from rugsim.core.exceptions import SessionLoadError


@runtime_checkable
class SessionSource(Protocol):
    def get_session_summaries(self, limit: int, offset: int = 0) -> list[SessionDetails]: ...

    def get_session_details(self, game_id: str) -> SessionDetails | None: ...

    def get_price_history(self, game_id: str) -> list[PricePoint]: ...

    def get_discrete_events(self, game_id: str) -> list[DiscreteEvent]: ...


def _details_from_row(row: sqlite3.Row) -> SessionDetails:
    meta = row["metadata"]
    return SessionDetails(
        game_id=str(row["game_id"]),
        start_time=int(row["start_time"]),
        end_time=None if row["end_time"] is None else int(row["end_time"]),
        peak_multiplier=row["peak_multiplier"],
        rug_price=float(row["rug_price"] or 0.0),
        tick_count=int(row["tick_count"] or 0),
        is_rugged=bool(row["is_rugged"]),
        metadata=json.loads(meta) if meta else {},
    )


class HistoryStore:
    """Session-history queries over the shared database."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def get_session_summaries(self, limit: int, offset: int = 0) -> list[SessionDetails]:
        """Rugged sessions, newest first."""

        rows = self.db.conn.execute(
            "SELECT * FROM games WHERE is_rugged = 1 ORDER BY start_time DESC, game_id ASC LIMIT ? OFFSET ?",
            (int(limit), int(offset)),
        ).fetchall()
        return [_details_from_row(r) for r in rows]

    def get_session_details(self, game_id: str) -> SessionDetails | None:
        row = self.db.conn.execute("SELECT * FROM games WHERE game_id = ?", (game_id,)).fetchone()
        if row is None:
            return None
        try:
            return _details_from_row(row)
        except (ValidationError, ValueError) as e:
            raise SessionLoadError(f"session {game_id} has an unreadable record: {e}") from e

    def get_price_history(self, game_id: str) -> list[PricePoint]:
        rows = self.db.conn.execute(
            "SELECT tick, price, timestamp FROM price_updates WHERE game_id = ? ORDER BY tick ASC, id ASC",
            (game_id,),
        ).fetchall()
        return [PricePoint(tick=int(r["tick"]), price=float(r["price"]), timestamp=int(r["timestamp"])) for r in rows]

    def get_discrete_events(self, game_id: str) -> list[DiscreteEvent]:
        rows = self.db.conn.execute(
            "SELECT event_type, tick, timestamp, data FROM game_events WHERE game_id = ? ORDER BY timestamp ASC, id ASC",
            (game_id,),
        ).fetchall()
        out: list[DiscreteEvent] = []
        for r in rows:
            try:
                out.append(
                    DiscreteEvent(
                        event_type=str(r["event_type"]),
                        tick=r["tick"],
                        timestamp=int(r["timestamp"]),
                        data=r["data"],
                    )
                )
            except (ValidationError, ValueError) as e:
                raise SessionLoadError(f"session {game_id} has an unreadable event: {e}") from e
        return out


@dataclass
class RecordedSession:
    details: SessionDetails
    prices: list[PricePoint] = field(default_factory=list)
    events: list[DiscreteEvent] = field(default_factory=list)


class InMemorySessionSource:
    def __init__(self, sessions: list[RecordedSession] | None = None) -> None:
        self._sessions: dict[str, RecordedSession] = {}
        for s in sessions or []:
            self.add(s)

    def add(self, session: RecordedSession) -> None:
        self._sessions[session.details.game_id] = session

    def get_session_summaries(self, limit: int, offset: int = 0) -> list[SessionDetails]:
        rugged = [s.details for s in self._sessions.values() if s.details.is_rugged]
        rugged.sort(key=lambda d: (-d.start_time, d.game_id))
        return rugged[int(offset) : int(offset) + int(limit)]

    def get_session_details(self, game_id: str) -> SessionDetails | None:
        s = self._sessions.get(game_id)
        return None if s is None else s.details

    def get_price_history(self, game_id: str) -> list[PricePoint]:
        s = self._sessions.get(game_id)
        return [] if s is None else sorted(s.prices, key=lambda p: p.tick)

    def get_discrete_events(self, game_id: str) -> list[DiscreteEvent]:
        s = self._sessions.get(game_id)
        return [] if s is None else sorted(s.events, key=lambda e: e.timestamp)


def save_session(db: Database, session: RecordedSession) -> None:
    """Write a recorded session into the database (fixtures, imports)."""

    d = session.details
    db.record_game(
        game_id=d.game_id,
        start_time=d.start_time,
        end_time=d.end_time,
        peak_multiplier=d.peak_multiplier,
        rug_price=d.rug_price,
        tick_count=d.tick_count,
        is_rugged=d.is_rugged,
        metadata=d.metadata,
    )
    db.record_prices(d.game_id, [(p.tick, p.price, p.timestamp) for p in session.prices])
    for ev in session.events:
        db.record_game_event(
            game_id=d.game_id,
            event_type=ev.event_type,
            timestamp=ev.timestamp,
            tick=ev.tick,
            data=dict(ev.data),
        )


def session_from_dict(raw: dict[str, Any]) -> RecordedSession:
    """Build a session from a plain mapping (``details``, ``prices``, ``events``)."""

    try:
        return RecordedSession(
            details=SessionDetails.model_validate(raw["details"]),
            prices=[PricePoint.model_validate(p) for p in raw.get("prices", [])],
            events=[DiscreteEvent.model_validate(e) for e in raw.get("events", [])],
        )
    except (KeyError, ValidationError) as e:
        raise SessionLoadError(f"invalid session document: {e}") from e
