"""rugsim.execution.ledger

Position ledger. FIFO lots, realized P&L, trade-by-trade.

This is the one module whose bugs corrupt reported money. It does exactly four
things to a position: add a lot, consume lots oldest-first, book the proceeds,
and liquidate whatever is left when the game rugs. Everything else (win rates,
holding times, summaries) is read off those four.

Positions are keyed by ``(game_id, owner, currency)``. Owners are strategy ids
for simulated trades and player ids for trades observed on the feed.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field

from rugsim import PRICE_EPSILON, TOKEN_EPSILON
from rugsim.core.events import ObservedTrade
from rugsim.core.exceptions import LedgerError
from rugsim.core.types import (
    Currency,
    CurrencyPosition,
    LedgerUpdate,
    Liquidation,
    Lot,
    ObservedTradeApplied,
    PerformanceSummary,
    SellMatch,
    SettlementEvent,
    TradeKind,
    TradeRecord,
)

logger = logging.getLogger(__name__)

QUARANTINE_LIMIT = 1000


# -----------------
# Position operations
# -----------------


def apply_buy(
    position: CurrencyPosition,
    quantity: float,
    total_cost: float,
    timestamp: int,
    *,
    price: float | None = None,
    tick: int | None = None,
) -> Lot:
    """Open a new lot at ``total_cost / quantity`` per token."""

    q = float(quantity)
    cost = float(total_cost)
    if q <= 0.0:
        raise LedgerError(f"buy quantity must be > 0, got {q}")
    if cost < 0.0:
        raise LedgerError(f"buy cost must be >= 0, got {cost}")

    lot = Lot(quantity=q, unit_cost=cost / q, total_cost=cost, entry_timestamp=int(timestamp))
    position.lots.append(lot)
    position.balance += q
    position.total_invested += cost
    position.trades.append(
        TradeRecord(
            kind=TradeKind.BUY,
            quantity=q,
            price=float(price) if price is not None else cost / q,
            currency_amount=cost,
            timestamp=int(timestamp),
            tick=tick,
        )
    )
    return lot


def apply_sell(position: CurrencyPosition, quantity_to_sell: float, timestamp: int) -> SellMatch:
    """Consume open lots oldest-first.

    Fully consumed lots are removed and counted in ``lots_closed``; a partially
    consumed lot shrinks in place. If the lots run out first, the unmatched
    remainder is reported as ``shortfall``. Nothing is invented to cover it.
    """

    target = float(quantity_to_sell)
    remaining = target
    cost_basis = 0.0
    matched = 0.0
    lots_closed = 0
    held_weighted = 0.0

    while position.lots and remaining > TOKEN_EPSILON:
        lot = position.lots[0]
        taken = min(lot.quantity, remaining)
        cost_basis += taken * lot.unit_cost
        matched += taken
        remaining -= taken
        held_weighted += taken * (int(timestamp) - lot.entry_timestamp)

        left = lot.quantity - taken
        if left <= TOKEN_EPSILON:
            position.lots.popleft()
            lots_closed += 1
        else:
            lot.quantity = left
            lot.total_cost = left * lot.unit_cost

    position.balance -= matched
    if not position.lots:
        # Balance is the sum of open lots; drop the float residue.
        position.balance = 0.0
    elif position.balance < 0.0:
        logger.warning(
            "ledger_balance_clamped",
            extra={"owner": position.owner, "currency": str(position.currency), "balance": position.balance},
        )
        position.balance = 0.0

    shortfall = remaining if remaining > TOKEN_EPSILON else 0.0
    if shortfall > 0.0:
        logger.warning(
            "fifo_shortfall",
            extra={
                "owner": position.owner,
                "currency": str(position.currency),
                "requested": target,
                "matched": matched,
                "shortfall": shortfall,
            },
        )

    return SellMatch(
        cost_basis=cost_basis,
        quantity_matched=matched,
        lots_closed=lots_closed,
        weighted_holding_time_ms=(held_weighted / matched) if matched > 0.0 else 0.0,
        shortfall=shortfall,
    )


def settle_sell_proceeds(
    position: CurrencyPosition,
    quantity_matched: float,
    cost_basis: float,
    proceeds: float,
    timestamp: int,
    *,
    holding_time_ms: float = 0.0,
    price: float | None = None,
    tick: int | None = None,
) -> float:
    """Book proceeds against the matched cost basis. Returns the realized P&L of this sell."""

    q = float(quantity_matched)
    if q <= TOKEN_EPSILON:
        return 0.0

    pnl = float(proceeds) - float(cost_basis)
    position.total_returned += float(proceeds)
    position.realized_pnl += pnl

    position.executed_count += 1
    if pnl > PRICE_EPSILON:
        position.winning_count += 1
    elif pnl < -PRICE_EPSILON:
        position.losing_count += 1
    else:
        position.breakeven_count += 1

    position.holding_time_weighted_ms += float(holding_time_ms) * q
    position.holding_quantity += q

    position.trades.append(
        TradeRecord(
            kind=TradeKind.SELL,
            quantity=q,
            price=float(price) if price is not None else float(proceeds) / q,
            currency_amount=float(proceeds),
            timestamp=int(timestamp),
            tick=tick,
            cost_basis=float(cost_basis),
            pnl=pnl,
        )
    )
    return pnl


def liquidate_at_session_end(position: CurrencyPosition, final_price: float, timestamp: int | None = None) -> Liquidation:
    """Value whatever is left at the rug price and close the book.

    Calling this twice is harmless: the second call finds a zero balance.
    """

    qty = position.balance
    if qty <= 0.0:
        return Liquidation(
            owner=position.owner,
            currency=position.currency,
            quantity=0.0,
            final_price=float(final_price),
            proceeds=0.0,
            released_cost_basis=0.0,
            lots_closed=0,
        )

    proceeds = qty * float(final_price)
    released = sum(lot.total_cost for lot in position.lots)
    closed = len(position.lots)

    position.total_returned += proceeds
    position.realized_pnl = position.total_returned - position.total_invested
    position.balance = 0.0
    position.lots.clear()
    position.liquidated = True

    logger.info(
        "position_liquidated",
        extra={
            "owner": position.owner,
            "currency": str(position.currency),
            "quantity": qty,
            "final_price": float(final_price),
            "proceeds": proceeds,
            "realized_pnl": position.realized_pnl,
            "timestamp": timestamp,
        },
    )
    return Liquidation(
        owner=position.owner,
        currency=position.currency,
        quantity=qty,
        final_price=float(final_price),
        proceeds=proceeds,
        released_cost_basis=released,
        lots_closed=closed,
    )


def performance_summary(position: CurrencyPosition, *, game_id: str) -> PerformanceSummary:
    executed = position.executed_count
    return PerformanceSummary(
        strategy_id=position.owner,
        game_id=game_id,
        currency=position.currency,
        trades_executed=executed,
        winning_trades=position.winning_count,
        losing_trades=position.losing_count,
        breakeven_trades=position.breakeven_count,
        win_rate=(position.winning_count / executed) * 100.0 if executed > 0 else 0.0,
        realized_pnl=position.realized_pnl,
        total_invested=position.total_invested,
        total_returned=position.total_returned,
        final_balance=position.balance,
        average_pnl_per_trade=position.realized_pnl / executed if executed > 0 else 0.0,
        average_holding_time_seconds=(position.holding_time_weighted_ms / position.holding_quantity) / 1000.0
        if position.holding_quantity > 0.0
        else 0.0,
        trade_count=len(position.trades),
    )


# -----------------
# Ledger
# -----------------


PositionKey = tuple[str, str, Currency]


@dataclass
class PositionLedger:
    """All positions for one context. Live holds one; every replay run builds its own."""

    name: str = "ledger"
    positions: dict[PositionKey, CurrencyPosition] = field(default_factory=dict)
    quarantined: deque[ObservedTrade] = field(default_factory=lambda: deque(maxlen=QUARANTINE_LIMIT))

    def position(self, game_id: str, owner: str, currency: Currency = Currency.PRIMARY) -> CurrencyPosition:
        key = (game_id, owner, currency)
        pos = self.positions.get(key)
        if pos is None:
            pos = CurrencyPosition(owner=owner, currency=currency)
            self.positions[key] = pos
        return pos

    def get(self, game_id: str, owner: str, currency: Currency = Currency.PRIMARY) -> CurrencyPosition | None:
        return self.positions.get((game_id, owner, currency))

    def balance(self, game_id: str, owner: str, currency: Currency = Currency.PRIMARY) -> float:
        pos = self.get(game_id, owner, currency)
        return 0.0 if pos is None else pos.balance

    def owners(self, game_id: str) -> list[str]:
        return sorted({owner for (gid, owner, _c) in self.positions if gid == game_id})

    def on_settlement(self, settlement: SettlementEvent) -> LedgerUpdate:
        pos = self.position(settlement.game_id, settlement.strategy_id, settlement.currency)

        if settlement.kind == TradeKind.BUY:
            apply_buy(
                pos,
                settlement.quantity,
                settlement.currency_amount,
                settlement.timestamp,
                price=settlement.price,
                tick=settlement.tick,
            )
            return LedgerUpdate(
                strategy_id=settlement.strategy_id,
                kind=TradeKind.BUY,
                currency=settlement.currency,
                quantity=settlement.quantity,
                cost_basis=settlement.currency_amount,
                lots_closed=0,
                realized_pnl_delta=0.0,
                resulting_balance=pos.balance,
            )

        match = apply_sell(pos, settlement.quantity, settlement.timestamp)
        proceeds = self._matched_proceeds(settlement.currency_amount, settlement.quantity, match)
        pnl = settle_sell_proceeds(
            pos,
            match.quantity_matched,
            match.cost_basis,
            proceeds,
            settlement.timestamp,
            holding_time_ms=match.weighted_holding_time_ms,
            price=settlement.price,
            tick=settlement.tick,
        )
        return LedgerUpdate(
            strategy_id=settlement.strategy_id,
            kind=TradeKind.SELL,
            currency=settlement.currency,
            quantity=match.quantity_matched,
            cost_basis=match.cost_basis,
            lots_closed=match.lots_closed,
            realized_pnl_delta=pnl,
            resulting_balance=pos.balance,
            shortfall=match.shortfall,
        )

    def apply_observed_trade(self, trade: ObservedTrade) -> ObservedTradeApplied | None:
        """Track a trade seen on the feed. Unknown currencies are quarantined, not dropped."""

        currency = Currency.parse(trade.currency)
        if currency is None:
            self.quarantined.append(trade)
            logger.warning(
                "observed_trade_quarantined",
                extra={"game_id": trade.game_id, "player_id": trade.player_id, "currency": trade.currency},
            )
            return None
        if trade.quantity <= TOKEN_EPSILON:
            logger.warning(
                "observed_trade_empty",
                extra={"game_id": trade.game_id, "player_id": trade.player_id},
            )
            return None

        pos = self.position(trade.game_id, trade.player_id, currency)
        pnl = 0.0
        if trade.type == TradeKind.BUY:
            apply_buy(pos, trade.quantity, trade.currency_amount, trade.timestamp, price=trade.price, tick=trade.tick)
            qty = trade.quantity
        else:
            match = apply_sell(pos, trade.quantity, trade.timestamp)
            proceeds = self._matched_proceeds(trade.currency_amount, trade.quantity, match)
            pnl = settle_sell_proceeds(
                pos,
                match.quantity_matched,
                match.cost_basis,
                proceeds,
                trade.timestamp,
                holding_time_ms=match.weighted_holding_time_ms,
                price=trade.price,
                tick=trade.tick,
            )
            qty = match.quantity_matched

        return ObservedTradeApplied(
            game_id=trade.game_id,
            player_id=trade.player_id,
            kind=trade.type,
            currency=currency,
            quantity=qty,
            realized_pnl_delta=pnl,
            resulting_balance=pos.balance,
        )

    def liquidate_all(self, game_id: str, final_price: float, timestamp: int | None = None) -> list[Liquidation]:
        """Terminal settlement for every position of ``game_id``. Idempotent."""

        out: list[Liquidation] = []
        for (gid, _owner, _currency), pos in sorted(self.positions.items(), key=lambda kv: (kv[0][1], kv[0][2])):
            if gid != game_id:
                continue
            out.append(liquidate_at_session_end(pos, final_price, timestamp))
        return out

    def performance(self, game_id: str, owner: str, currency: Currency = Currency.PRIMARY) -> PerformanceSummary:
        return performance_summary(self.position(game_id, owner, currency), game_id=game_id)

    def drop_game(self, game_id: str) -> int:
        """Forget a finished game and its quarantined trades. Returns the number of positions removed."""

        keys = [k for k in self.positions if k[0] == game_id]
        for k in keys:
            del self.positions[k]
        kept = [t for t in self.quarantined if t.game_id != game_id]
        if len(kept) != len(self.quarantined):
            self.quarantined = deque(kept, maxlen=self.quarantined.maxlen)
        return len(keys)

    @staticmethod
    def _matched_proceeds(proceeds: float, requested: float, match: SellMatch) -> float:
        # On a shortfall only the matched share of the proceeds has a cost basis to book against.
        if match.shortfall <= 0.0 or requested <= 0.0:
            return float(proceeds)
        return float(proceeds) * (match.quantity_matched / float(requested))
