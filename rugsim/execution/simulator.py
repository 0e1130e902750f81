"""rugsim.execution.simulator

Trade simulator.

Turns an approved intent and the current price into a fee-adjusted
settlement. Fills are immediate at the snapshot price; the fee comes off the
token side for buys and off the proceeds for sells:

    buy:  quantity = amount * (1 - fee) / price
    sell: proceeds = quantity * price * (1 - fee)

Bad inputs (no price, wrong phase, not enough tokens) are rejections, not
exceptions. Every success produces exactly one settlement, dispatched through
the same path live and in replay.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from rugsim import TOKEN_EPSILON
from rugsim.core.config import SimulatorConfig
from rugsim.core.types import (
    Currency,
    GamePhase,
    GameSnapshot,
    SettlementApplied,
    SettlementEvent,
    TradeKind,
    TradeRejected,
)
from rugsim.execution.dispatch import SettlementDispatcher

logger = logging.getLogger(__name__)

SPENDABLE_CURRENCIES: frozenset[Currency] = frozenset({Currency.PRIMARY})


@dataclass(frozen=True, slots=True)
class SimulationResult:
    ok: bool
    settlement: SettlementEvent | None = None
    applied: SettlementApplied | None = None
    reason: str = ""
    shortfall: float = 0.0
    available: float | None = None


class TradeSimulator:
    def __init__(self, dispatcher: SettlementDispatcher, *, config: SimulatorConfig | None = None) -> None:
        self.dispatcher = dispatcher
        self.cfg = config or SimulatorConfig()

    def _fee(self, fee_rate: float | None) -> float:
        return float(self.cfg.fee_rate if fee_rate is None else fee_rate)

    def _reject(
        self,
        strategy_id: str,
        snapshot: GameSnapshot,
        kind: TradeKind,
        reason: str,
        *,
        shortfall: float = 0.0,
        available: float | None = None,
    ) -> SimulationResult:
        logger.info(
            "trade_rejected",
            extra={"strategy_id": strategy_id, "game_id": snapshot.game_id, "kind": str(kind), "reason": reason},
        )
        self.dispatcher.bus.publish(
            TradeRejected(
                strategy_id=strategy_id,
                game_id=snapshot.game_id,
                kind=kind,
                reason=reason,
                shortfall=shortfall,
            ),
            category="trade",
        )
        return SimulationResult(ok=False, reason=reason, shortfall=shortfall, available=available)

    def _settle(self, settlement: SettlementEvent) -> SimulationResult:
        applied = self.dispatcher.dispatch(settlement)
        return SimulationResult(ok=True, settlement=settlement, applied=applied)

    def simulate_buy(
        self,
        strategy_id: str,
        currency: Currency,
        amount_to_spend: float,
        snapshot: GameSnapshot,
        *,
        fee_rate: float | None = None,
    ) -> SimulationResult:
        amount = float(amount_to_spend)
        price = float(snapshot.price)
        fee = self._fee(fee_rate)

        if currency not in SPENDABLE_CURRENCIES:
            return self._reject(strategy_id, snapshot, TradeKind.BUY, f"currency {currency} is not spendable")
        if math.isnan(amount) or amount <= 0.0:
            return self._reject(strategy_id, snapshot, TradeKind.BUY, f"buy amount must be > 0, got {amount}")

        presale_ok = snapshot.phase == GamePhase.PRESALE and self.cfg.allow_presale_buys and snapshot.allow_presale_buys
        if snapshot.phase != GamePhase.ACTIVE and not presale_ok:
            return self._reject(strategy_id, snapshot, TradeKind.BUY, f"phase {snapshot.phase} does not allow entry")
        if not price > 0.0:
            return self._reject(strategy_id, snapshot, TradeKind.BUY, f"invalid price {price}")

        quantity = amount * (1.0 - fee) / price
        if quantity <= 0.0:
            return self._reject(strategy_id, snapshot, TradeKind.BUY, f"resulting quantity {quantity} <= 0")

        return self._settle(
            SettlementEvent(
                strategy_id=strategy_id,
                game_id=snapshot.game_id,
                kind=TradeKind.BUY,
                currency=currency,
                quantity=quantity,
                currency_amount=amount,
                price=price,
                fee_rate=fee,
                timestamp=snapshot.timestamp,
                tick=snapshot.tick,
            )
        )

    def simulate_sell_by_quantity(
        self,
        strategy_id: str,
        currency: Currency,
        quantity: float,
        snapshot: GameSnapshot,
        *,
        fee_rate: float | None = None,
    ) -> SimulationResult:
        qty = float(quantity)
        price = float(snapshot.price)
        fee = self._fee(fee_rate)

        if math.isnan(qty) or qty <= 0.0:
            return self._reject(strategy_id, snapshot, TradeKind.SELL, f"sell quantity must be > 0, got {qty}")
        if snapshot.phase != GamePhase.ACTIVE:
            return self._reject(strategy_id, snapshot, TradeKind.SELL, f"phase {snapshot.phase} does not allow exit")
        if not price > 0.0:
            return self._reject(strategy_id, snapshot, TradeKind.SELL, f"invalid price {price}")

        balance = self.dispatcher.ledger.balance(snapshot.game_id, strategy_id, currency)
        if qty > balance + TOKEN_EPSILON:
            return self._reject(
                strategy_id,
                snapshot,
                TradeKind.SELL,
                f"insufficient balance: requested {qty}, available {balance}",
                shortfall=qty - balance,
                available=balance,
            )
        qty = min(qty, balance)

        return self._settle(
            SettlementEvent(
                strategy_id=strategy_id,
                game_id=snapshot.game_id,
                kind=TradeKind.SELL,
                currency=currency,
                quantity=qty,
                currency_amount=qty * price * (1.0 - fee),
                price=price,
                fee_rate=fee,
                timestamp=snapshot.timestamp,
                tick=snapshot.tick,
            )
        )

    def simulate_sell_by_percentage(
        self,
        strategy_id: str,
        currency: Currency,
        percent: float,
        snapshot: GameSnapshot,
        *,
        fee_rate: float | None = None,
    ) -> SimulationResult:
        pct = float(percent)
        if math.isnan(pct) or not 0.0 < pct <= 100.0:
            return self._reject(strategy_id, snapshot, TradeKind.SELL, f"percent must be in (0, 100], got {pct}")

        balance = self.dispatcher.ledger.balance(snapshot.game_id, strategy_id, currency)
        if balance <= 0.0:
            return self._reject(strategy_id, snapshot, TradeKind.SELL, "no balance to sell", available=balance)

        return self.simulate_sell_by_quantity(
            strategy_id,
            currency,
            balance * pct / 100.0,
            snapshot,
            fee_rate=fee_rate,
        )
