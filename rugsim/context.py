"""rugsim.context

A session context owns one of everything: bus, ledger, gatekeeper, dispatcher,
simulator, and the current game snapshot.

The live process holds exactly one, for its whole life. Every replay run builds
its own and throws it away. Nothing mutable is shared between two contexts.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from rugsim.core.bus import EventBus
from rugsim.core.config import SimulatorConfig
from rugsim.core.database import Database
from rugsim.core.types import GameSnapshot, RiskLimits
from rugsim.execution.dispatch import SettlementDispatcher
from rugsim.execution.gatekeeper import RiskGatekeeper
from rugsim.execution.ledger import PositionLedger
from rugsim.execution.simulator import TradeSimulator


@dataclass
class SessionContext:
    name: str
    bus: EventBus
    ledger: PositionLedger
    gatekeeper: RiskGatekeeper
    dispatcher: SettlementDispatcher
    simulator: TradeSimulator
    state: GameSnapshot | None = None
    strategy_ids: list[str] = field(default_factory=list)

    @classmethod
    def build(
        cls,
        *,
        limits: RiskLimits,
        simulator_config: SimulatorConfig | None = None,
        name: str = "session",
        db: Database | None = None,
        journal: Database | None = None,
    ) -> SessionContext:
        """Wire a fresh context.

        ``db`` lets the gatekeeper restore and save exposure (live only).
        ``journal`` records every settlement as it is dispatched.
        """

        bus = EventBus(name=name)
        ledger = PositionLedger(name=name)
        gatekeeper = RiskGatekeeper(limits, bus=bus, db=db)
        dispatcher = SettlementDispatcher(ledger, gatekeeper, bus, journal=journal)
        simulator = TradeSimulator(dispatcher, config=simulator_config)
        return cls(
            name=name,
            bus=bus,
            ledger=ledger,
            gatekeeper=gatekeeper,
            dispatcher=dispatcher,
            simulator=simulator,
        )

    @property
    def snapshot(self) -> GameSnapshot:
        if self.state is None:
            raise RuntimeError(f"context {self.name} has no game snapshot yet")
        return self.state
