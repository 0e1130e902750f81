"""rugsim.execution.dispatch

Settlement fan-out.

Order is fixed: ledger, then gatekeeper, then everyone else. The gatekeeper
needs the ledger's cost basis for a sell, so it cannot go first, and no
subscriber ever sees a settlement the books have not absorbed yet.
"""

from __future__ import annotations

import logging

from rugsim.core.bus import EventBus
from rugsim.core.database import Database
from rugsim.core.events import EventType, SettlementPayload
from rugsim.core.types import Liquidation, SettlementApplied, SettlementEvent
from rugsim.execution.gatekeeper import RiskGatekeeper
from rugsim.execution.ledger import PositionLedger

logger = logging.getLogger(__name__)


class SettlementDispatcher:
    def __init__(
        self,
        ledger: PositionLedger,
        gatekeeper: RiskGatekeeper,
        bus: EventBus,
        *,
        journal: Database | None = None,
    ) -> None:
        self.ledger = ledger
        self.gatekeeper = gatekeeper
        self.bus = bus
        self.journal = journal
        self.dispatched = 0

    def dispatch(self, settlement: SettlementEvent) -> SettlementApplied:
        update = self.ledger.on_settlement(settlement)
        exposure = self.gatekeeper.on_settlement(settlement.strategy_id, settlement, update)
        applied = SettlementApplied(settlement=settlement, update=update, exposure=exposure)
        self.dispatched += 1

        if self.journal is not None:
            payload = SettlementPayload(
                strategy_id=settlement.strategy_id,
                game_id=settlement.game_id,
                kind=settlement.kind,
                currency=str(settlement.currency),
                quantity=update.quantity,
                currency_amount=settlement.currency_amount,
                price=settlement.price,
                fee_rate=settlement.fee_rate,
                tick=settlement.tick,
                timestamp=settlement.timestamp,
                cost_basis=update.cost_basis,
                realized_pnl_delta=update.realized_pnl_delta,
                resulting_balance=update.resulting_balance,
            )
            self.journal.append_event(
                event_type=EventType.TRADE_SETTLEMENT_V1,
                payload=payload.model_dump(mode="json"),
                source="execution.dispatch",
            )

        self.bus.publish(applied, category="trade")
        return applied

    def settle_session(self, game_id: str, final_price: float, timestamp: int | None = None) -> list[Liquidation]:
        """Terminal rug: liquidate every position of the game, release strategy exposure."""

        liquidations = self.ledger.liquidate_all(game_id, final_price, timestamp)
        for liq in liquidations:
            if self.gatekeeper.is_registered(liq.owner):
                self.gatekeeper.on_liquidation(liq.owner, liq)
        logger.info(
            "session_settled",
            extra={
                "game_id": game_id,
                "final_price": float(final_price),
                "positions": len(liquidations),
                "liquidated": sum(1 for liq in liquidations if liq.quantity > 0.0),
            },
        )
        return liquidations
