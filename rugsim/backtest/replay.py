"""rugsim.backtest.replay

Replay orchestrator.

One run replays one recorded session through a fresh context:

    LOADING → INITIALIZING → REPLAYING → SETTLING → COMPLETE
         ↘            ↘            ↘           ↘
                          FAILED

Price ticks and discrete events are merged into a single timeline ordered by
timestamp. At equal timestamps price ticks go first, then discrete events, each
in recorded order. For every entry the synthetic snapshot is updated, control
is yielded once, and only then do strategy hooks see the entry.

The summary comes from the run's ledger. It is never recomputed anywhere else.
A cancelled run reports nothing but the fact that it was cancelled.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any, Final

from rugsim.backtest.history import SessionSource
from rugsim.context import SessionContext
from rugsim.core.config import SimulatorConfig
from rugsim.core.events import (
    DISCRETE_NEW_CANDLE,
    DISCRETE_PHASE_CHANGE,
    DISCRETE_RUGGED,
    DiscreteEvent,
    PricePoint,
    SessionDetails,
)
from rugsim.core.exceptions import ReplayCancelled, SessionLoadError
from rugsim.core.types import (
    CandleClosed,
    GamePhase,
    GameRugged,
    GameSnapshot,
    NewGame,
    PerformanceSummary,
    PhaseChanged,
    PriceTick,
    RiskLimits,
    StrategyLimits,
)
from rugsim.strategies.base import Strategy, StrategyStats
from rugsim.strategies.registry import get_strategy

logger = logging.getLogger(__name__)


class ReplayState(StrEnum):
    LOADING = "loading"
    INITIALIZING = "initializing"
    REPLAYING = "replaying"
    SETTLING = "settling"
    COMPLETE = "complete"
    FAILED = "failed"


ALLOWED_TRANSITIONS: Final[dict[ReplayState, set[ReplayState]]] = {
    ReplayState.LOADING: {ReplayState.INITIALIZING, ReplayState.FAILED},
    ReplayState.INITIALIZING: {ReplayState.REPLAYING, ReplayState.FAILED},
    ReplayState.REPLAYING: {ReplayState.SETTLING, ReplayState.FAILED},
    ReplayState.SETTLING: {ReplayState.COMPLETE, ReplayState.FAILED},
    ReplayState.COMPLETE: set(),
    ReplayState.FAILED: set(),
}


@dataclass(frozen=True, slots=True)
class StrategySpec:
    strategy_id: str
    kind: str = "fixed_tick"
    params: Mapping[str, Any] = field(default_factory=dict)
    limits: StrategyLimits | None = None


@dataclass(frozen=True, slots=True)
class ReplayResult:
    game_id: str
    state: ReplayState
    summaries: tuple[PerformanceSummary, ...] = ()
    stats: Mapping[str, StrategyStats] = field(default_factory=dict)
    reason: str = ""
    events_replayed: int = 0
    handler_errors: int = 0

    @property
    def ok(self) -> bool:
        return self.state == ReplayState.COMPLETE

    def summary_for(self, strategy_id: str) -> PerformanceSummary | None:
        for s in self.summaries:
            if s.strategy_id == strategy_id:
                return s
        return None


class CancelToken:
    """Checked at every yield point of a run."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass(frozen=True, slots=True)
class TimelineEntry:
    timestamp: int
    rank: int  # 0 = price tick, 1 = discrete event
    seq: int
    price: PricePoint | None = None
    event: DiscreteEvent | None = None


def merge_timeline(prices: Sequence[PricePoint], events: Sequence[DiscreteEvent]) -> list[TimelineEntry]:
    entries = [TimelineEntry(timestamp=p.timestamp, rank=0, seq=i, price=p) for i, p in enumerate(prices)]
    entries += [TimelineEntry(timestamp=e.timestamp, rank=1, seq=i, event=e) for i, e in enumerate(events)]
    entries.sort(key=lambda t: (t.timestamp, t.rank, t.seq))
    return entries


# Numeric fields read from recorded event payloads, per event type: (key, cast, null allowed).
_NUMERIC_EVENT_FIELDS: Final[dict[str, tuple[tuple[str, type, bool], ...]]] = {
    DISCRETE_PHASE_CHANGE: (("tickCount", int, False),),
    DISCRETE_NEW_CANDLE: (("index", int, False),),
    # a null rug price falls back to the session details
    DISCRETE_RUGGED: (("finalPrice", float, True), ("rug_price", float, True)),
}


def check_event(ev: DiscreteEvent) -> None:
    """Raise ``SessionLoadError`` if a field the replay reads from ``ev`` is not a number."""

    for key, cast, nullable in _NUMERIC_EVENT_FIELDS.get(ev.event_type, ()):
        if key not in ev.data:
            continue
        value = ev.data[key]
        if value is None and nullable:
            continue
        try:
            if value is None or isinstance(value, bool):
                raise TypeError(f"{type(value).__name__} is not a number")
            cast(value)
        except (TypeError, ValueError) as e:
            raise SessionLoadError(
                f"session event {ev.event_type} at {ev.timestamp} has unreadable {key}: {value!r}"
            ) from e


class ReplayRun:
    """One session, one set of strategies, one isolated context."""

    def __init__(
        self,
        source: SessionSource,
        game_id: str,
        strategies: Sequence[StrategySpec],
        *,
        limits: RiskLimits | None = None,
        simulator_config: SimulatorConfig | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        self.source = source
        self.game_id = game_id
        self.specs = list(strategies)
        self.limits = limits or RiskLimits()
        self.simulator_config = simulator_config
        self.cancel = cancel or CancelToken()
        self.state = ReplayState.LOADING
        self.history: list[ReplayState] = [ReplayState.LOADING]
        self.ctx: SessionContext | None = None
        self.details: SessionDetails | None = None
        self._strategies: list[Strategy] = []

    def _transition(self, new_state: ReplayState) -> None:
        if new_state not in ALLOWED_TRANSITIONS.get(self.state, set()):
            raise ValueError(f"Invalid replay transition {self.state} -> {new_state}")
        self.state = new_state
        self.history.append(new_state)

    def _fail(self, reason: str, *, replayed: int = 0) -> ReplayResult:
        self._transition(ReplayState.FAILED)
        logger.warning("replay_failed", extra={"game_id": self.game_id, "reason": reason})
        self._shutdown()
        return ReplayResult(
            game_id=self.game_id,
            state=ReplayState.FAILED,
            reason=reason,
            events_replayed=replayed,
            handler_errors=self.ctx.bus.handler_errors if self.ctx is not None else 0,
        )

    def _shutdown(self) -> None:
        for s in self._strategies:
            s.shutdown()
        self._strategies = []

    # -----------------
    # Phases
    # -----------------

    def _load(self) -> tuple[SessionDetails, list[PricePoint], list[DiscreteEvent]]:
        details = self.source.get_session_details(self.game_id)
        if details is None:
            raise SessionLoadError(f"session {self.game_id} not found")
        prices = list(self.source.get_price_history(self.game_id))
        if not prices:
            raise SessionLoadError(f"session {self.game_id} has no price history")
        events = list(self.source.get_discrete_events(self.game_id))
        for ev in events:
            check_event(ev)
        return details, prices, events

    def _initialize(self) -> SessionContext:
        ctx = SessionContext.build(
            limits=self.limits,
            simulator_config=self.simulator_config,
            name=f"replay:{self.game_id}",
        )
        self.ctx = ctx
        for spec in self.specs:
            ctx.gatekeeper.register_strategy(spec.strategy_id, spec.limits)
            cls = get_strategy(spec.kind)
            strategy = cls(spec.strategy_id, dict(spec.params), ctx)
            strategy.initialize()
            strategy.start()
            self._strategies.append(strategy)
        return ctx

    def _apply(self, ctx: SessionContext, entry: TimelineEntry) -> tuple[Any, float | None]:
        """Advance the snapshot for one entry. Returns (message to publish, rug price if terminal)."""

        snap = ctx.snapshot
        if entry.price is not None:
            p = entry.price
            ctx.state = replace(snap, price=p.price, tick=p.tick, timestamp=p.timestamp)
            return PriceTick(snapshot=ctx.state), None

        ev = entry.event
        if ev is None:
            raise ValueError(f"timeline entry at {entry.timestamp} carries neither a price nor an event")
        data = ev.data
        if ev.event_type == DISCRETE_PHASE_CHANGE:
            phase = GamePhase.parse(data.get("currentPhase", data.get("phase")))
            tick = data.get("tickCount", ev.tick if ev.tick is not None else snap.tick)
            ctx.state = replace(snap, phase=phase, tick=int(tick), timestamp=ev.timestamp)
            return PhaseChanged(snapshot=ctx.state, previous_phase=snap.phase), None
        if ev.event_type == DISCRETE_NEW_CANDLE:
            index = int(data.get("index", snap.tick))
            ctx.state = replace(snap, tick=index, timestamp=ev.timestamp)
            return CandleClosed(snapshot=ctx.state, index=index, candle=dict(data)), None
        if ev.event_type == DISCRETE_RUGGED:
            final = data.get("finalPrice", data.get("rug_price"))
            ctx.state = replace(snap, timestamp=ev.timestamp)
            return None, float(self.details.rug_price if final is None else final)

        logger.debug("replay_event_ignored", extra={"game_id": self.game_id, "event_type": ev.event_type})
        ctx.state = replace(snap, timestamp=ev.timestamp)
        return None, None

    async def run(self) -> ReplayResult:
        try:
            details, prices, events = self._load()
        except SessionLoadError as e:
            return self._fail(str(e))
        self.details = details

        self._transition(ReplayState.INITIALIZING)
        try:
            ctx = self._initialize()
        except (KeyError, ValueError) as e:
            return self._fail(f"strategy setup failed: {e}")

        self._transition(ReplayState.REPLAYING)
        timeline = merge_timeline(prices, events)
        ctx.state = GameSnapshot(
            game_id=details.game_id,
            tick=prices[0].tick,
            price=prices[0].price,
            phase=GamePhase.PRESALE,
            timestamp=details.start_time,
            allow_presale_buys=bool(details.metadata.get("allow_presale_buys", True)),
        )
        ctx.bus.publish(NewGame(game_id=details.game_id, timestamp=details.start_time, snapshot=ctx.state), category="game_lifecycle")

        replayed = 0
        rug_price: float | None = None
        try:
            for entry in timeline:
                message, rug_price = self._apply(ctx, entry)
                await asyncio.sleep(0)
                if self.cancel.cancelled:
                    raise ReplayCancelled(f"replay of {self.game_id} cancelled after {replayed} events")
                replayed += 1
                if message is not None:
                    ctx.bus.publish(message, category="game_data")
                if rug_price is not None:
                    break
        except ReplayCancelled as e:
            logger.info("replay_cancelled", extra={"game_id": self.game_id, "events_replayed": replayed})
            return self._fail(str(e), replayed=replayed)
        except (TypeError, ValueError) as e:
            return self._fail(f"unreadable session entry: {e}", replayed=replayed)
        except asyncio.CancelledError:
            self._fail("task cancelled", replayed=replayed)
            raise

        self._transition(ReplayState.SETTLING)
        final_price = float(details.rug_price if rug_price is None else rug_price)
        end_ts = details.end_time if details.end_time is not None else ctx.snapshot.timestamp
        ctx.state = replace(
            ctx.snapshot,
            price=final_price,
            tick=int(details.tick_count or ctx.snapshot.tick),
            phase=GamePhase.SETTLEMENT,
            timestamp=int(end_ts),
        )
        ctx.bus.publish(
            GameRugged(
                game_id=details.game_id,
                final_price=final_price,
                peak_price=details.peak_multiplier,
                tick=ctx.state.tick,
                timestamp=ctx.state.timestamp,
                snapshot=ctx.state,
            ),
            category="game_lifecycle",
        )
        ctx.dispatcher.settle_session(details.game_id, final_price, ctx.state.timestamp)

        summaries = tuple(ctx.ledger.performance(details.game_id, spec.strategy_id) for spec in self.specs)
        stats = {s.strategy_id: s.stats for s in self._strategies}
        self._shutdown()
        self._transition(ReplayState.COMPLETE)

        logger.info(
            "replay_complete",
            extra={
                "game_id": details.game_id,
                "events_replayed": replayed,
                "strategies": len(summaries),
                "handler_errors": ctx.bus.handler_errors,
            },
        )
        return ReplayResult(
            game_id=details.game_id,
            state=ReplayState.COMPLETE,
            summaries=summaries,
            stats=stats,
            events_replayed=replayed,
            handler_errors=ctx.bus.handler_errors,
        )


async def replay_session(
    source: SessionSource,
    game_id: str,
    strategies: Sequence[StrategySpec],
    *,
    limits: RiskLimits | None = None,
    simulator_config: SimulatorConfig | None = None,
    cancel: CancelToken | None = None,
) -> ReplayResult:
    run = ReplayRun(
        source,
        game_id,
        strategies,
        limits=limits,
        simulator_config=simulator_config,
        cancel=cancel,
    )
    return await run.run()
