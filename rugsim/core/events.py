"""rugsim.core.events

The event contract is the primitive.

Two kinds of records live here:
- boundary models: what the ingestion layer hands us, validated before it
  touches a ledger;
- journal payloads: what we write down, typed by ``EventType``.
"""

from __future__ import annotations

import hashlib
import json
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from rugsim.core.types import GamePhase, TradeKind


class EventType(StrEnum):
    """Canonical journal event registry.

    Naming: ``{category}.{domain}.{version}``.
    """

    # Trades
    TRADE_SETTLEMENT_V1 = "trade.settlement.v1"

    # Risk
    RISK_LIMIT_BREACH_V1 = "risk.limit_breach.v1"
    RISK_EXPOSURE_SNAPSHOT_V1 = "risk.exposure_snapshot.v1"

    # Backtest
    BACKTEST_SUMMARY_V1 = "backtest.summary.v1"


# Wire names used by the recorded game_events table.
DISCRETE_PHASE_CHANGE = "game:phaseChange"
DISCRETE_NEW_CANDLE = "game:newCandle"
DISCRETE_RUGGED = "game:rugged"


# -----------------
# Boundary models
# -----------------


class GameStateUpdate(BaseModel):
    """Structured game-state event from the ingestion layer."""

    game_id: str = Field(min_length=1)
    tick: int = Field(ge=0)
    price: float
    phase: GamePhase = GamePhase.UNKNOWN
    timestamp: int

    model_config = {"frozen": True}

    @field_validator("phase", mode="before")
    @classmethod
    def _phase(cls, v: Any) -> GamePhase:
        return GamePhase.parse(v)


class ObservedTrade(BaseModel):
    """A trade by any participant, as seen on the feed.

    ``currency`` stays a raw label here; the ledger decides whether it knows it.
    """

    game_id: str = Field(min_length=1)
    player_id: str = Field(min_length=1)
    type: TradeKind
    quantity: float = Field(ge=0.0)
    price: float = Field(ge=0.0)
    currency_amount: float = Field(ge=0.0)
    currency: str = "SOL"
    tick: int = Field(default=0, ge=0)
    timestamp: int

    model_config = {"frozen": True}

    @field_validator("type", mode="before")
    @classmethod
    def _kind(cls, v: Any) -> str:
        return str(v).strip().lower()


class SessionDetails(BaseModel):
    game_id: str
    start_time: int
    end_time: int | None = None
    peak_multiplier: float | None = None
    rug_price: float = 0.0
    tick_count: int = 0
    is_rugged: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)


class PricePoint(BaseModel):
    tick: int
    price: float
    timestamp: int

    model_config = {"frozen": True}


class DiscreteEvent(BaseModel):
    event_type: str
    tick: int | None = None
    timestamp: int
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @field_validator("data", mode="before")
    @classmethod
    def _decode(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, (str, bytes)):
            return json.loads(v) if v else {}
        return v


# -----------------
# Journal payloads
# -----------------


class SettlementPayload(BaseModel):
    strategy_id: str
    game_id: str
    kind: TradeKind
    currency: str
    quantity: float
    currency_amount: float
    price: float
    fee_rate: float
    tick: int
    timestamp: int
    cost_basis: float
    realized_pnl_delta: float
    resulting_balance: float


class LimitBreachPayload(BaseModel):
    strategy_id: str
    limit: str
    reason: str
    game_id: str
    tick: int
    phase: str
    amount: float
    capital_at_risk: float
    open_trades_count: int
    total_capital_at_risk: float
    total_open_trades: int


class ExposureEntry(BaseModel):
    capital_at_risk: float = 0.0
    open_trades_count: int = 0


class ExposureSnapshotPayload(BaseModel):
    strategies: dict[str, ExposureEntry] = Field(default_factory=dict)
    total_capital_at_risk: float = 0.0
    total_open_trades: int = 0


class BacktestSummaryPayload(BaseModel):
    strategy_id: str
    game_id: str
    trades_executed: int
    win_rate: float
    realized_pnl: float
    total_invested: float
    total_returned: float
    average_holding_time_seconds: float
    average_pnl_per_trade: float = 0.0
    trade_count: int = 0


_EVENT_PAYLOAD_MODELS: dict[EventType, type[BaseModel]] = {
    EventType.TRADE_SETTLEMENT_V1: SettlementPayload,
    EventType.RISK_LIMIT_BREACH_V1: LimitBreachPayload,
    EventType.RISK_EXPOSURE_SNAPSHOT_V1: ExposureSnapshotPayload,
    EventType.BACKTEST_SUMMARY_V1: BacktestSummaryPayload,
}


def payload_model_for(event_type: EventType) -> type[BaseModel]:
    return _EVENT_PAYLOAD_MODELS[event_type]


def validate_payload(event_type: EventType, payload: dict[str, Any]) -> BaseModel:
    return payload_model_for(event_type).model_validate(payload)


def canonical_json(data: Any) -> str:
    """Canonical JSON serialization used for hashing and dedupe."""

    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def payload_hash(payload: BaseModel | dict[str, Any]) -> str:
    """SHA-256 hash of canonical payload JSON."""

    obj = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else payload
    return hashlib.sha256(canonical_json(obj).encode("utf-8")).hexdigest()


def compute_dedupe_key(event_type: EventType, payload: BaseModel | dict[str, Any]) -> str:
    """Dedup key format: ``{event_type}:{sha256(canonical_payload)}``."""

    return f"{event_type}:{payload_hash(payload)}"
