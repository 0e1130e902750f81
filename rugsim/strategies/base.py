"""rugsim.strategies.base

Strategies decide. They never settle anything themselves.

Lifecycle: ``initialize`` (register limits, subscribe hooks) → ``start`` →
``stop`` → ``shutdown`` (unsubscribe). Hooks only fire while started.

Trading protocol, identical live and in replay:
- build an intent from the current snapshot
- ask the gatekeeper
- hand approved intents to the simulator
"""

from __future__ import annotations

import logging
from abc import ABC
from dataclasses import dataclass
from typing import Any

from rugsim.context import SessionContext
from rugsim.core.bus import Subscription
from rugsim.core.types import (
    CandleClosed,
    Currency,
    GameRugged,
    NewGame,
    PhaseChanged,
    PriceTick,
    Rejected,
    TradeIntent,
    TradeKind,
)
from rugsim.execution.simulator import SimulationResult

TradeOutcome = SimulationResult | Rejected


@dataclass(slots=True)
class StrategyStats:
    trades_attempted: int = 0
    trades_executed: int = 0
    trades_rejected_by_risk: int = 0
    trades_rejected_by_simulator: int = 0


class Strategy(ABC):
    """Template-method base class.

    Subclasses override whichever ``on_*`` hooks they need and call the
    ``execute_*`` helpers from them.
    """

    name: str = "base"

    def __init__(
        self,
        strategy_id: str,
        params: dict[str, Any] | None,
        ctx: SessionContext,
        *,
        currency: Currency = Currency.PRIMARY,
    ) -> None:
        self.strategy_id = strategy_id
        self.params: dict[str, Any] = dict(params or {})
        self.ctx = ctx
        self.currency = currency
        self.stats = StrategyStats()
        self.running = False
        self.logger = logging.getLogger(f"rugsim.strategies.{self.name}")
        self._subs: list[Subscription] = []

    # -----------------
    # Lifecycle
    # -----------------

    def initialize(self) -> None:
        if not self.ctx.gatekeeper.is_registered(self.strategy_id):
            self.ctx.gatekeeper.register_strategy(self.strategy_id)
        if self.strategy_id not in self.ctx.strategy_ids:
            self.ctx.strategy_ids.append(self.strategy_id)

        bus = self.ctx.bus
        self._subs = [
            bus.subscribe(NewGame, self._guard(self.on_new_game)),
            bus.subscribe(PhaseChanged, self._guard(self.on_phase_change)),
            bus.subscribe(PriceTick, self._guard(self.on_price_update)),
            bus.subscribe(CandleClosed, self._guard(self.on_new_candle)),
            bus.subscribe(GameRugged, self._guard(self.on_game_rugged)),
        ]

    def start(self) -> None:
        self.running = True

    def stop(self) -> None:
        self.running = False

    def shutdown(self) -> None:
        self.stop()
        for sub in self._subs:
            self.ctx.bus.unsubscribe(sub)
        self._subs = []

    def _guard(self, hook):
        def _call(message: Any) -> None:
            if self.running:
                hook(message)

        return _call

    # -----------------
    # Hooks
    # -----------------

    def on_new_game(self, msg: NewGame) -> None:
        pass

    def on_phase_change(self, msg: PhaseChanged) -> None:
        pass

    def on_price_update(self, msg: PriceTick) -> None:
        pass

    def on_new_candle(self, msg: CandleClosed) -> None:
        pass

    def on_game_rugged(self, msg: GameRugged) -> None:
        pass

    # -----------------
    # Trading
    # -----------------

    def balance(self) -> float:
        snap = self.ctx.snapshot
        return self.ctx.ledger.balance(snap.game_id, self.strategy_id, self.currency)

    def _gate(self, kind: TradeKind, amount: float) -> Rejected | None:
        snap = self.ctx.snapshot
        self.stats.trades_attempted += 1
        intent = TradeIntent(
            strategy_id=self.strategy_id,
            kind=kind,
            currency=self.currency,
            amount_or_quantity=float(amount),
            game_id=snap.game_id,
            tick=snap.tick,
        )
        decision = self.ctx.gatekeeper.check_trade(self.strategy_id, intent, snap.tick, phase=snap.phase)
        if isinstance(decision, Rejected):
            self.stats.trades_rejected_by_risk += 1
            return decision
        return None

    def _count(self, result: SimulationResult) -> SimulationResult:
        if result.ok:
            self.stats.trades_executed += 1
        else:
            self.stats.trades_rejected_by_simulator += 1
        return result

    def execute_buy(self, amount: float) -> TradeOutcome:
        rejected = self._gate(TradeKind.BUY, amount)
        if rejected is not None:
            return rejected
        return self._count(self.ctx.simulator.simulate_buy(self.strategy_id, self.currency, amount, self.ctx.snapshot))

    def execute_sell(self, quantity: float) -> TradeOutcome:
        rejected = self._gate(TradeKind.SELL, quantity)
        if rejected is not None:
            return rejected
        return self._count(
            self.ctx.simulator.simulate_sell_by_quantity(self.strategy_id, self.currency, quantity, self.ctx.snapshot)
        )

    def execute_sell_percentage(self, percent: float) -> TradeOutcome:
        snap = self.ctx.snapshot
        quantity = self.ctx.ledger.balance(snap.game_id, self.strategy_id, self.currency) * float(percent) / 100.0
        rejected = self._gate(TradeKind.SELL, quantity)
        if rejected is not None:
            return rejected
        return self._count(
            self.ctx.simulator.simulate_sell_by_percentage(self.strategy_id, self.currency, percent, snap)
        )
