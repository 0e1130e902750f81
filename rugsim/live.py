"""rugsim.live

The long-lived context the live process trades through.

One ``SessionContext`` for the whole process: exposure is restored from the
journal on start, every settlement and limit breach is written down, and the
counters are saved again whenever a game settles and on shutdown.

The feed bridge hands us validated ``GameStateUpdate`` and ``ObservedTrade``
records. Everything it sees is also captured into the history tables so the
same game can be replayed later.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from rugsim.backtest.replay import StrategySpec
from rugsim.context import SessionContext
from rugsim.core.config import Config
from rugsim.core.database import Database
from rugsim.core.events import (
    DISCRETE_PHASE_CHANGE,
    DISCRETE_RUGGED,
    EventType,
    GameStateUpdate,
    LimitBreachPayload,
    ObservedTrade,
)
from rugsim.core.types import (
    GamePhase,
    GameRugged,
    GameSnapshot,
    LimitBreach,
    Liquidation,
    NewGame,
    ObservedTradeApplied,
    PhaseChanged,
    PriceTick,
)
from rugsim.strategies.base import Strategy
from rugsim.strategies.registry import get_strategy

logger = logging.getLogger(__name__)

SOURCE = "live"


def specs_from_config(config: Config) -> list[StrategySpec]:
    """Enabled strategies from config, in declaration order."""

    return [
        StrategySpec(strategy_id=sid, kind=sc.kind, params=dict(sc.params))
        for sid, sc in config.strategies.items()
        if sc.enabled
    ]


class LiveContext:
    def __init__(self, config: Config, db: Database, *, strategies: list[StrategySpec] | None = None) -> None:
        self.config = config
        self.db = db
        self.specs = specs_from_config(config) if strategies is None else list(strategies)
        self.ctx = SessionContext.build(
            limits=config.risk.resolve_limits(),
            simulator_config=config.simulator,
            name="live",
            db=db,
            journal=db,
        )
        self.ctx.bus.subscribe(LimitBreach, self._journal_breach, category="risk")
        self.strategies: list[Strategy] = []
        self._peak: float | None = None
        self._game_start: int | None = None
        self._settled: set[str] = set()
        self.running = False

    # -----------------
    # Lifecycle
    # -----------------

    def start(self) -> None:
        if self.running:
            return
        for spec in self.specs:
            self.ctx.gatekeeper.register_strategy(spec.strategy_id, spec.limits)
            strategy = get_strategy(spec.kind)(spec.strategy_id, dict(spec.params), self.ctx)
            strategy.initialize()
            strategy.start()
            self.strategies.append(strategy)
        self.running = True
        logger.info(
            "live_started",
            extra={
                "strategies": [s.strategy_id for s in self.strategies],
                "total_capital_at_risk": self.ctx.gatekeeper.total_capital_at_risk,
            },
        )

    def shutdown(self) -> None:
        for s in self.strategies:
            s.shutdown()
        self.strategies = []
        self.ctx.gatekeeper.save_state()
        self.running = False
        logger.info("live_stopped")

    # -----------------
    # Feed
    # -----------------

    def ingest_game_state(self, raw: GameStateUpdate | Mapping[str, Any]) -> GameSnapshot | None:
        """Advance the current snapshot. Invalid updates are logged and ignored."""

        try:
            update = raw if isinstance(raw, GameStateUpdate) else GameStateUpdate.model_validate(raw)
        except ValidationError as e:
            logger.warning("game_state_invalid", extra={"error": str(e)})
            return None

        prev = self.ctx.state
        if update.game_id in self._settled:
            logger.debug("game_state_after_settlement", extra={"game_id": update.game_id, "tick": update.tick})
            return prev
        if prev is None or prev.game_id != update.game_id:
            return self._new_game(update, prev)

        snap = GameSnapshot(
            game_id=update.game_id,
            tick=update.tick,
            price=update.price,
            phase=prev.phase if update.phase == GamePhase.UNKNOWN else update.phase,
            timestamp=update.timestamp,
            allow_presale_buys=prev.allow_presale_buys,
        )
        self.ctx.state = snap
        self._track_peak(update.price)

        moved = snap.tick != prev.tick or snap.price != prev.price
        if moved:
            self.db.record_prices(snap.game_id, [(snap.tick, snap.price, snap.timestamp)])

        if snap.phase != prev.phase:
            self.db.record_game_event(
                game_id=snap.game_id,
                event_type=DISCRETE_PHASE_CHANGE,
                timestamp=snap.timestamp,
                tick=snap.tick,
                data={"currentPhase": str(snap.phase), "tickCount": snap.tick},
            )
            self.ctx.bus.publish(PhaseChanged(snapshot=snap, previous_phase=prev.phase), category="game_data")
            if snap.phase == GamePhase.SETTLEMENT:
                self.settle(snap.game_id, snap.price, snap.timestamp)
            return snap

        if moved:
            self.ctx.bus.publish(PriceTick(snapshot=snap), category="game_data")
        return snap

    def ingest_trade(self, raw: ObservedTrade | Mapping[str, Any]) -> ObservedTradeApplied | None:
        """Track another participant's trade. Our own fills come through the simulator."""

        try:
            trade = raw if isinstance(raw, ObservedTrade) else ObservedTrade.model_validate(raw)
        except ValidationError as e:
            logger.warning("observed_trade_invalid", extra={"error": str(e)})
            return None

        self.db.record_trade(
            game_id=trade.game_id,
            player_id=trade.player_id,
            kind=str(trade.type),
            currency=trade.currency,
            quantity=trade.quantity,
            price=trade.price,
            currency_amount=trade.currency_amount,
            timestamp=trade.timestamp,
            tick=trade.tick,
        )
        applied = self.ctx.ledger.apply_observed_trade(trade)
        if applied is not None:
            self.ctx.bus.publish(applied, category="trade")
        return applied

    def settle(self, game_id: str, final_price: float, timestamp: int) -> list[Liquidation]:
        """Terminal rug for ``game_id``. A second call for the same game does nothing."""

        if game_id in self._settled:
            return []
        self._settled.add(game_id)

        snap = self.ctx.state
        tick = snap.tick if snap is not None and snap.game_id == game_id else 0
        if snap is not None and snap.game_id == game_id:
            self.ctx.state = GameSnapshot(
                game_id=game_id,
                tick=tick,
                price=float(final_price),
                phase=GamePhase.SETTLEMENT,
                timestamp=int(timestamp),
                allow_presale_buys=snap.allow_presale_buys,
            )
            self.ctx.bus.publish(
                GameRugged(
                    game_id=game_id,
                    final_price=float(final_price),
                    peak_price=self._peak,
                    tick=tick,
                    timestamp=int(timestamp),
                    snapshot=self.ctx.state,
                ),
                category="game_lifecycle",
            )

        liquidations = self.ctx.dispatcher.settle_session(game_id, final_price, timestamp)

        self.db.record_game_event(
            game_id=game_id,
            event_type=DISCRETE_RUGGED,
            timestamp=int(timestamp),
            tick=tick,
            data={"finalPrice": float(final_price)},
        )
        self.db.record_game(
            game_id=game_id,
            start_time=self._game_start if self._game_start is not None else int(timestamp),
            end_time=int(timestamp),
            peak_multiplier=self._peak,
            rug_price=float(final_price),
            tick_count=tick,
            is_rugged=True,
        )
        self.ctx.gatekeeper.save_state()
        return liquidations

    # -----------------
    # Internals
    # -----------------

    def _new_game(self, update: GameStateUpdate, prev: GameSnapshot | None) -> GameSnapshot:
        if prev is not None and prev.game_id not in self._settled:
            # The feed moved on without a rug; close the old game at its last price.
            logger.warning("game_abandoned", extra={"game_id": prev.game_id, "last_price": prev.price})
            self.settle(prev.game_id, prev.price, update.timestamp)
        if prev is not None:
            self.ctx.ledger.drop_game(prev.game_id)
            # only the game being replaced can still send late updates
            self._settled = {prev.game_id}

        phase = GamePhase.PRESALE if update.phase == GamePhase.UNKNOWN else update.phase
        snap = GameSnapshot(
            game_id=update.game_id,
            tick=update.tick,
            price=update.price,
            phase=phase,
            timestamp=update.timestamp,
            allow_presale_buys=self.config.simulator.allow_presale_buys,
        )
        self.ctx.state = snap
        self._peak = update.price
        self._game_start = update.timestamp

        self.db.record_game(game_id=snap.game_id, start_time=snap.timestamp, is_rugged=False)
        self.db.record_prices(snap.game_id, [(snap.tick, snap.price, snap.timestamp)])
        logger.info("game_started", extra={"game_id": snap.game_id, "phase": str(phase)})
        self.ctx.bus.publish(NewGame(game_id=snap.game_id, timestamp=snap.timestamp, snapshot=snap), category="game_lifecycle")
        return snap

    def _track_peak(self, price: float) -> None:
        if self._peak is None or price > self._peak:
            self._peak = price

    def _journal_breach(self, breach: LimitBreach) -> None:
        payload = LimitBreachPayload(
            strategy_id=breach.strategy_id,
            limit=breach.limit,
            reason=breach.reason,
            game_id=breach.intent.game_id,
            tick=breach.tick,
            phase=str(breach.phase),
            amount=breach.intent.amount_or_quantity,
            capital_at_risk=breach.exposure.capital_at_risk,
            open_trades_count=breach.exposure.open_trades_count,
            total_capital_at_risk=breach.exposure.total_capital_at_risk,
            total_open_trades=breach.exposure.total_open_trades,
        )
        self.db.append_event(
            event_type=EventType.RISK_LIMIT_BREACH_V1,
            payload=payload.model_dump(mode="json"),
            source=SOURCE,
        )
