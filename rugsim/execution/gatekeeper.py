"""rugsim.execution.gatekeeper

Risk gatekeeper. Every buy asks first.

Checks run in a fixed order and stop at the first failure, cheapest and most
specific first, so a rejection always names the same limit for the same state:

    presaleMaxBuyAmount
    maxBuyAmount, maxOpenTrades, maxStrategyExposure, minSafeTick
    globalMaxBuyAmount, maxTotalExposure, maxConcurrentTrades

Sells are always approved. They only ever reduce exposure.

Exposure counters move only on settlement, and only after the ledger has
processed the same settlement (the dispatcher guarantees the order). They
never go below zero.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from dataclasses import dataclass

from pydantic import ValidationError

from rugsim import PRICE_EPSILON
from rugsim.core.bus import EventBus
from rugsim.core.database import Database
from rugsim.core.events import EventType, ExposureEntry, ExposureSnapshotPayload
from rugsim.core.exceptions import EventStoreError
from rugsim.core.models import JournalEvent
from rugsim.core.types import (
    Approved,
    ExposureSnapshot,
    ExposureState,
    GamePhase,
    GateDecision,
    LedgerUpdate,
    LimitBreach,
    Liquidation,
    Rejected,
    RiskLimits,
    SettlementEvent,
    StrategyLimits,
    TradeIntent,
    TradeKind,
)

logger = logging.getLogger(__name__)

SOURCE = "execution.gatekeeper"


@dataclass(frozen=True, slots=True)
class LimitViolation:
    limit: str
    reason: str


class RiskGatekeeper:
    """Per-strategy and global limits plus live exposure counters."""

    def __init__(
        self,
        limits: RiskLimits,
        *,
        bus: EventBus | None = None,
        db: Database | None = None,
        source: str = SOURCE,
    ) -> None:
        self.limits = limits
        self.bus = bus
        self.db = db
        self.source = source
        self._strategy_limits: dict[str, StrategyLimits] = dict(limits.strategies)
        self._exposure: dict[str, ExposureState] = {sid: ExposureState() for sid in self._strategy_limits}
        self._total = ExposureState()
        if self.db is not None:
            self.restore_state()

    # -----------------
    # Registration
    # -----------------

    def register_strategy(self, strategy_id: str, limits: StrategyLimits | None = None) -> StrategyLimits:
        """Register a strategy. Without explicit limits, the session limits apply, else unbounded."""

        resolved = limits or self.limits.for_strategy(strategy_id)
        if resolved is None:
            logger.warning("risk_limits_unbounded", extra={"strategy_id": strategy_id, "fields": ["all"]})
            resolved = StrategyLimits()
        self._strategy_limits[strategy_id] = resolved
        self._exposure.setdefault(strategy_id, ExposureState())
        return resolved

    def is_registered(self, strategy_id: str) -> bool:
        return strategy_id in self._strategy_limits

    def limits_for(self, strategy_id: str) -> StrategyLimits | None:
        return self._strategy_limits.get(strategy_id)

    # -----------------
    # Exposure views
    # -----------------

    def exposure(self, strategy_id: str) -> ExposureState:
        state = self._exposure.get(strategy_id, ExposureState())
        return ExposureState(capital_at_risk=state.capital_at_risk, open_trades_count=state.open_trades_count)

    @property
    def total_capital_at_risk(self) -> float:
        return self._total.capital_at_risk

    @property
    def total_open_trades(self) -> int:
        return self._total.open_trades_count

    def snapshot(self, strategy_id: str) -> ExposureSnapshot:
        state = self._exposure.get(strategy_id, ExposureState())
        return ExposureSnapshot(
            strategy_id=strategy_id,
            capital_at_risk=state.capital_at_risk,
            open_trades_count=state.open_trades_count,
            total_capital_at_risk=self._total.capital_at_risk,
            total_open_trades=self._total.open_trades_count,
        )

    # -----------------
    # Gate
    # -----------------

    def check_trade(
        self,
        strategy_id: str,
        intent: TradeIntent,
        current_tick: int,
        *,
        phase: GamePhase = GamePhase.UNKNOWN,
    ) -> GateDecision:
        limits = self._strategy_limits.get(strategy_id)
        if limits is None:
            return self._reject(
                intent,
                LimitViolation("unregisteredStrategy", f"strategy {strategy_id} has no registered risk limits"),
                current_tick,
                phase,
            )

        if intent.kind == TradeKind.SELL:
            logger.debug("risk_sell_approved", extra={"strategy_id": strategy_id, "quantity": intent.amount_or_quantity})
            return Approved(intent=intent)

        amount = float(intent.amount_or_quantity)
        if math.isnan(amount) or amount <= 0.0:
            return self._reject(
                intent,
                LimitViolation("invalidAmount", f"buy amount must be > 0, got {amount}"),
                current_tick,
                phase,
            )

        violation = self._first_violation(strategy_id, limits, amount, int(current_tick))
        if violation is not None:
            return self._reject(intent, violation, current_tick, phase)
        return Approved(intent=intent)

    def _first_violation(
        self, strategy_id: str, limits: StrategyLimits, amount: float, tick: int
    ) -> LimitViolation | None:
        state = self._exposure[strategy_id]
        g = self.limits.global_limits

        presale = limits.presale
        if presale is not None and tick <= presale.max_tick and amount > presale.max_buy_amount + PRICE_EPSILON:
            return LimitViolation(
                "presaleMaxBuyAmount",
                f"amount {amount} exceeds presale cap {presale.max_buy_amount} (tick {tick} <= {presale.max_tick})",
            )

        if amount > limits.max_buy_amount + PRICE_EPSILON:
            return LimitViolation("maxBuyAmount", f"amount {amount} exceeds max buy {limits.max_buy_amount}")
        if state.open_trades_count >= limits.max_open_trades:
            return LimitViolation(
                "maxOpenTrades",
                f"open trades {state.open_trades_count} at limit {limits.max_open_trades:g}",
            )
        if state.capital_at_risk + amount > limits.max_strategy_exposure + PRICE_EPSILON:
            return LimitViolation(
                "maxStrategyExposure",
                f"exposure {state.capital_at_risk + amount} would exceed {limits.max_strategy_exposure}",
            )
        if tick < limits.min_safe_tick:
            return LimitViolation("minSafeTick", f"tick {tick} below min safe tick {limits.min_safe_tick}")

        if amount > g.max_buy_amount + PRICE_EPSILON:
            return LimitViolation("globalMaxBuyAmount", f"amount {amount} exceeds global max buy {g.max_buy_amount}")
        if self._total.capital_at_risk + amount > g.max_total_exposure + PRICE_EPSILON:
            return LimitViolation(
                "maxTotalExposure",
                f"total exposure {self._total.capital_at_risk + amount} would exceed {g.max_total_exposure}",
            )
        if self._total.open_trades_count >= g.max_concurrent_trades:
            return LimitViolation(
                "maxConcurrentTrades",
                f"concurrent trades {self._total.open_trades_count} at limit {g.max_concurrent_trades:g}",
            )
        return None

    def _reject(self, intent: TradeIntent, v: LimitViolation, tick: int, phase: GamePhase) -> Rejected:
        snap = self.snapshot(intent.strategy_id)
        logger.info(
            "risk_limit_reached",
            extra={
                "strategy_id": intent.strategy_id,
                "limit": v.limit,
                "reason": v.reason,
                "game_id": intent.game_id,
                "tick": int(tick),
                "phase": str(phase),
                "capital_at_risk": snap.capital_at_risk,
                "total_capital_at_risk": snap.total_capital_at_risk,
            },
        )
        if self.bus is not None:
            self.bus.publish(
                LimitBreach(
                    strategy_id=intent.strategy_id,
                    limit=v.limit,
                    reason=v.reason,
                    intent=intent,
                    tick=int(tick),
                    phase=phase,
                    exposure=snap,
                ),
                category="risk",
            )
        return Rejected(intent=intent, limit=v.limit, reason=v.reason)

    # -----------------
    # Counters
    # -----------------

    def on_settlement(self, strategy_id: str, settlement: SettlementEvent, update: LedgerUpdate) -> ExposureSnapshot:
        """Move counters for a settlement the ledger has already applied."""

        if settlement.kind == TradeKind.BUY:
            self._adjust(strategy_id, float(settlement.currency_amount), 1)
        else:
            self._adjust(strategy_id, -float(update.cost_basis), -int(update.lots_closed))
        return self.snapshot(strategy_id)

    def on_liquidation(self, strategy_id: str, liquidation: Liquidation) -> ExposureSnapshot:
        """Release exposure for lots closed by terminal settlement."""

        if liquidation.quantity > 0.0:
            self._adjust(strategy_id, -float(liquidation.released_cost_basis), -int(liquidation.lots_closed))
        return self.snapshot(strategy_id)

    def _adjust(self, strategy_id: str, capital_delta: float, open_delta: int) -> None:
        state = self._exposure.get(strategy_id)
        if state is None:
            logger.warning("risk_settlement_unregistered", extra={"strategy_id": strategy_id})
            state = self._exposure.setdefault(strategy_id, ExposureState())

        self._apply(state, capital_delta, open_delta, scope=strategy_id)
        self._apply(self._total, capital_delta, open_delta, scope="total")

    @staticmethod
    def _apply(state: ExposureState, capital_delta: float, open_delta: int, *, scope: str) -> None:
        capital = state.capital_at_risk + capital_delta
        opened = state.open_trades_count + open_delta
        if capital < 0.0:
            if capital < -PRICE_EPSILON:
                logger.warning("exposure_clamped", extra={"scope": scope, "field": "capital_at_risk", "value": capital})
            capital = 0.0
        if opened < 0:
            logger.warning("exposure_clamped", extra={"scope": scope, "field": "open_trades_count", "value": opened})
            opened = 0
        state.capital_at_risk = capital
        state.open_trades_count = opened

    def reset(self) -> None:
        for state in self._exposure.values():
            state.capital_at_risk = 0.0
            state.open_trades_count = 0
        self._total = ExposureState()

    # -----------------
    # Persistence
    # -----------------

    def to_payload(self) -> ExposureSnapshotPayload:
        return ExposureSnapshotPayload(
            strategies={
                sid: ExposureEntry(capital_at_risk=s.capital_at_risk, open_trades_count=s.open_trades_count)
                for sid, s in sorted(self._exposure.items())
            },
            total_capital_at_risk=self._total.capital_at_risk,
            total_open_trades=self._total.open_trades_count,
        )

    def save_state(self) -> JournalEvent | None:
        """Write the current counters to the journal."""

        if self.db is None:
            return None
        payload = self.to_payload().model_dump(mode="json")
        ev = self.db.append_event(
            event_type=EventType.RISK_EXPOSURE_SNAPSHOT_V1,
            payload=payload,
            source=self.source,
        )
        logger.info(
            "exposure_saved",
            extra={"total_capital_at_risk": self._total.capital_at_risk, "total_open_trades": self._total.open_trades_count},
        )
        return ev

    def restore_state(self) -> bool:
        """Restore counters from the latest persisted snapshot.

        Without this a restart forgets every open lot's exposure and the limits
        stop meaning anything. On failure the counters stay at zero and we say so.
        """

        if self.db is None:
            return False
        try:
            ev = self.db.latest_event(EventType.RISK_EXPOSURE_SNAPSHOT_V1, source=self.source)
            if ev is None:
                return False
            snap = ExposureSnapshotPayload.model_validate(ev.payload)
        except (EventStoreError, ValidationError, sqlite3.Error, ValueError) as e:
            logger.warning("exposure_restore_failed", extra={"error": str(e)})
            return False

        for sid, entry in snap.strategies.items():
            state = self._exposure.setdefault(sid, ExposureState())
            state.capital_at_risk = max(0.0, float(entry.capital_at_risk))
            state.open_trades_count = max(0, int(entry.open_trades_count))
        self._total = ExposureState(
            capital_at_risk=sum(s.capital_at_risk for s in self._exposure.values()),
            open_trades_count=sum(s.open_trades_count for s in self._exposure.values()),
        )
        logger.info(
            "exposure_restored",
            extra={"strategies": len(snap.strategies), "total_capital_at_risk": self._total.capital_at_risk},
        )
        return True
