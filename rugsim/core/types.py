"""rugsim.core.types

Lightweight dataclasses for hot-path objects.

Pydantic models own IO boundaries; dataclasses keep the replay loop lean.
Everything that travels on the bus is frozen. Positions and lots are not:
they are the ledger's private working state.
"""

from __future__ import annotations

import math
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class Currency(StrEnum):
    PRIMARY = "primary"
    BONUS = "bonus"

    @classmethod
    def parse(cls, value: Any) -> Currency | None:
        """Map a wire currency label onto a ledger currency. Unknown labels return None."""

        if isinstance(value, Currency):
            return value
        key = str(value or "").strip().upper()
        return _CURRENCY_ALIASES.get(key)


_CURRENCY_ALIASES: dict[str, Currency] = {
    "PRIMARY": Currency.PRIMARY,
    "SOL": Currency.PRIMARY,
    "BONUS": Currency.BONUS,
    "FREE": Currency.BONUS,
}


class TradeKind(StrEnum):
    BUY = "buy"
    SELL = "sell"


class GamePhase(StrEnum):
    PRESALE = "presale"
    ACTIVE = "active"
    SETTLEMENT = "settlement"
    COOLDOWN = "cooldown"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> GamePhase:
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


# -----------------
# Ledger state
# -----------------


@dataclass(slots=True)
class Lot:
    quantity: float
    unit_cost: float
    total_cost: float
    entry_timestamp: int


@dataclass(frozen=True, slots=True)
class TradeRecord:
    kind: TradeKind
    quantity: float
    price: float
    currency_amount: float
    timestamp: int
    tick: int | None = None
    cost_basis: float | None = None
    pnl: float | None = None


@dataclass(slots=True)
class CurrencyPosition:
    owner: str
    currency: Currency
    balance: float = 0.0
    total_invested: float = 0.0
    total_returned: float = 0.0
    realized_pnl: float = 0.0
    lots: deque[Lot] = field(default_factory=deque)
    trades: list[TradeRecord] = field(default_factory=list)
    executed_count: int = 0
    winning_count: int = 0
    losing_count: int = 0
    breakeven_count: int = 0
    holding_time_weighted_ms: float = 0.0  # sum(qty * held_ms)
    holding_quantity: float = 0.0
    liquidated: bool = False

    @property
    def open_lots(self) -> int:
        return len(self.lots)


@dataclass(frozen=True, slots=True)
class SellMatch:
    cost_basis: float
    quantity_matched: float
    lots_closed: int
    weighted_holding_time_ms: float
    shortfall: float = 0.0


@dataclass(frozen=True, slots=True)
class Liquidation:
    owner: str
    currency: Currency
    quantity: float
    final_price: float
    proceeds: float
    released_cost_basis: float
    lots_closed: int


@dataclass(frozen=True, slots=True)
class LedgerUpdate:
    """What the ledger did with one settlement. The gatekeeper consumes this."""

    strategy_id: str
    kind: TradeKind
    currency: Currency
    quantity: float
    cost_basis: float
    lots_closed: int
    realized_pnl_delta: float
    resulting_balance: float
    shortfall: float = 0.0


@dataclass(frozen=True, slots=True)
class PerformanceSummary:
    strategy_id: str
    game_id: str
    currency: Currency
    trades_executed: int
    winning_trades: int
    losing_trades: int
    breakeven_trades: int
    win_rate: float  # percent
    realized_pnl: float
    total_invested: float
    total_returned: float
    final_balance: float
    average_pnl_per_trade: float
    average_holding_time_seconds: float
    trade_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy_id": self.strategy_id,
            "game_id": self.game_id,
            "currency": str(self.currency),
            "trades_executed": self.trades_executed,
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "breakeven_trades": self.breakeven_trades,
            "win_rate": self.win_rate,
            "realized_pnl": self.realized_pnl,
            "total_invested": self.total_invested,
            "total_returned": self.total_returned,
            "final_balance": self.final_balance,
            "average_pnl_per_trade": self.average_pnl_per_trade,
            "average_holding_time_seconds": self.average_holding_time_seconds,
            "trade_count": self.trade_count,
        }


# -----------------
# Risk
# -----------------


@dataclass(frozen=True, slots=True)
class PresaleOverride:
    max_tick: int
    max_buy_amount: float


@dataclass(frozen=True, slots=True)
class StrategyLimits:
    max_buy_amount: float = math.inf
    max_open_trades: float = math.inf
    max_strategy_exposure: float = math.inf
    min_safe_tick: int = 0
    presale: PresaleOverride | None = None


@dataclass(frozen=True, slots=True)
class GlobalLimits:
    max_buy_amount: float = math.inf
    max_total_exposure: float = math.inf
    max_concurrent_trades: float = math.inf


@dataclass(frozen=True, slots=True)
class RiskLimits:
    global_limits: GlobalLimits = field(default_factory=GlobalLimits)
    strategies: Mapping[str, StrategyLimits] = field(default_factory=dict)

    def for_strategy(self, strategy_id: str) -> StrategyLimits | None:
        return self.strategies.get(strategy_id)


@dataclass(slots=True)
class ExposureState:
    capital_at_risk: float = 0.0
    open_trades_count: int = 0


@dataclass(frozen=True, slots=True)
class ExposureSnapshot:
    strategy_id: str
    capital_at_risk: float
    open_trades_count: int
    total_capital_at_risk: float
    total_open_trades: int


# -----------------
# Trade flow
# -----------------


@dataclass(frozen=True, slots=True)
class TradeIntent:
    strategy_id: str
    kind: TradeKind
    currency: Currency
    amount_or_quantity: float  # currency amount for buys, token quantity for sells
    game_id: str
    tick: int


@dataclass(frozen=True, slots=True)
class Approved:
    intent: TradeIntent

    @property
    def approved(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Rejected:
    intent: TradeIntent
    limit: str
    reason: str

    @property
    def approved(self) -> bool:
        return False


GateDecision = Approved | Rejected


@dataclass(frozen=True, slots=True)
class GameSnapshot:
    """Synthetic or live view of the game at one instant."""

    game_id: str
    tick: int
    price: float
    phase: GamePhase
    timestamp: int
    allow_presale_buys: bool = True


# -----------------
# Bus messages
# -----------------


@dataclass(frozen=True, slots=True)
class SettlementEvent:
    strategy_id: str
    game_id: str
    kind: TradeKind
    currency: Currency
    quantity: float
    currency_amount: float  # spent on buys, net proceeds on sells
    price: float
    fee_rate: float
    timestamp: int
    tick: int


@dataclass(frozen=True, slots=True)
class SettlementApplied:
    """Settlement plus what the ledger and gatekeeper made of it. Read-only for consumers."""

    settlement: SettlementEvent
    update: LedgerUpdate
    exposure: ExposureSnapshot


@dataclass(frozen=True, slots=True)
class LimitBreach:
    strategy_id: str
    limit: str
    reason: str
    intent: TradeIntent
    tick: int
    phase: GamePhase
    exposure: ExposureSnapshot


@dataclass(frozen=True, slots=True)
class TradeRejected:
    """Simulator-level rejection (price, phase, balance). Not a risk breach."""

    strategy_id: str
    game_id: str
    kind: TradeKind
    reason: str
    shortfall: float = 0.0


@dataclass(frozen=True, slots=True)
class NewGame:
    game_id: str
    timestamp: int
    snapshot: GameSnapshot


@dataclass(frozen=True, slots=True)
class PriceTick:
    snapshot: GameSnapshot


@dataclass(frozen=True, slots=True)
class PhaseChanged:
    snapshot: GameSnapshot
    previous_phase: GamePhase


@dataclass(frozen=True, slots=True)
class CandleClosed:
    snapshot: GameSnapshot
    index: int
    candle: Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class GameRugged:
    game_id: str
    final_price: float
    peak_price: float | None
    tick: int
    timestamp: int
    snapshot: GameSnapshot


@dataclass(frozen=True, slots=True)
class ObservedTradeApplied:
    game_id: str
    player_id: str
    kind: TradeKind
    currency: Currency
    quantity: float
    realized_pnl_delta: float
    resulting_balance: float
