from __future__ import annotations

import math
from pathlib import Path

import pytest

from rugsim.core.bus import EventBus
from rugsim.core.database import Database
from rugsim.core.events import EventType
from rugsim.core.types import (
    Approved,
    Currency,
    GamePhase,
    GlobalLimits,
    LedgerUpdate,
    LimitBreach,
    Liquidation,
    PresaleOverride,
    Rejected,
    RiskLimits,
    SettlementEvent,
    StrategyLimits,
    TradeIntent,
    TradeKind,
)
from rugsim.execution.gatekeeper import RiskGatekeeper


def _intent(amount: float, *, kind: TradeKind = TradeKind.BUY, sid: str = "s1", tick: int = 10) -> TradeIntent:
    return TradeIntent(
        strategy_id=sid,
        kind=kind,
        currency=Currency.PRIMARY,
        amount_or_quantity=amount,
        game_id="g1",
        tick=tick,
    )


def _buy(gk: RiskGatekeeper, sid: str, amount: float) -> None:
    settlement = SettlementEvent(
        strategy_id=sid,
        game_id="g1",
        kind=TradeKind.BUY,
        currency=Currency.PRIMARY,
        quantity=amount,
        currency_amount=amount,
        price=1.0,
        fee_rate=0.0,
        timestamp=0,
        tick=10,
    )
    update = LedgerUpdate(
        strategy_id=sid,
        kind=TradeKind.BUY,
        currency=Currency.PRIMARY,
        quantity=amount,
        cost_basis=amount,
        lots_closed=0,
        realized_pnl_delta=0.0,
        resulting_balance=amount,
    )
    gk.on_settlement(sid, settlement, update)


def _gk(strategy: StrategyLimits | None = None, glob: GlobalLimits | None = None, **kw) -> RiskGatekeeper:
    limits = RiskLimits(global_limits=glob or GlobalLimits(), strategies={"s1": strategy or StrategyLimits()})
    return RiskGatekeeper(limits, **kw)


def test_unregistered_strategy_is_rejected() -> None:
    gk = RiskGatekeeper(RiskLimits())
    decision = gk.check_trade("ghost", _intent(0.1, sid="ghost"), 10)
    assert isinstance(decision, Rejected)
    assert decision.limit == "unregisteredStrategy"


def test_register_without_limits_is_unbounded() -> None:
    gk = RiskGatekeeper(RiskLimits())
    limits = gk.register_strategy("s9")
    assert math.isinf(limits.max_buy_amount)
    assert gk.check_trade("s9", _intent(1e6, sid="s9"), 0).approved


def test_sells_are_always_approved() -> None:
    gk = _gk(StrategyLimits(max_buy_amount=0.0, max_open_trades=0))
    decision = gk.check_trade("s1", _intent(5.0, kind=TradeKind.SELL), 0)
    assert isinstance(decision, Approved)


@pytest.mark.parametrize("amount", [0.0, -1.0, float("nan")])
def test_non_positive_buy_is_invalid(amount: float) -> None:
    decision = _gk().check_trade("s1", _intent(amount), 10)
    assert isinstance(decision, Rejected)
    assert decision.limit == "invalidAmount"


def test_max_buy_rejection_leaves_counters_unchanged() -> None:
    gk = _gk(StrategyLimits(max_buy_amount=0.5))
    _buy(gk, "s1", 0.2)
    before = gk.snapshot("s1")

    decision = gk.check_trade("s1", _intent(0.6), 10)
    assert isinstance(decision, Rejected)
    assert decision.limit == "maxBuyAmount"
    assert gk.snapshot("s1") == before


def test_limit_comparison_tolerates_float_noise() -> None:
    gk = _gk(StrategyLimits(max_buy_amount=0.3, max_strategy_exposure=0.3))
    assert gk.check_trade("s1", _intent(0.1 + 0.2), 10).approved


def test_check_order_presale_first() -> None:
    # Violates presale, max buy and global max buy at once; the presale cap is reported.
    gk = _gk(
        StrategyLimits(max_buy_amount=0.05, presale=PresaleOverride(max_tick=0, max_buy_amount=0.01)),
        GlobalLimits(max_buy_amount=0.02),
    )
    decision = gk.check_trade("s1", _intent(0.5, tick=0), 0, phase=GamePhase.PRESALE)
    assert isinstance(decision, Rejected)
    assert decision.limit == "presaleMaxBuyAmount"


def test_presale_cap_applies_only_up_to_max_tick() -> None:
    gk = _gk(StrategyLimits(presale=PresaleOverride(max_tick=2, max_buy_amount=0.01)))
    assert not gk.check_trade("s1", _intent(0.05), 2).approved
    assert gk.check_trade("s1", _intent(0.05), 3).approved


@pytest.mark.parametrize(
    "strategy,glob,prior,amount,tick,expected",
    [
        (StrategyLimits(max_open_trades=1), GlobalLimits(), 0.1, 0.1, 10, "maxOpenTrades"),
        (StrategyLimits(max_strategy_exposure=0.25), GlobalLimits(), 0.2, 0.1, 10, "maxStrategyExposure"),
        (StrategyLimits(min_safe_tick=5), GlobalLimits(), 0.0, 0.1, 4, "minSafeTick"),
        (StrategyLimits(), GlobalLimits(max_buy_amount=0.05), 0.0, 0.1, 10, "globalMaxBuyAmount"),
        (StrategyLimits(), GlobalLimits(max_total_exposure=0.25), 0.2, 0.1, 10, "maxTotalExposure"),
        (StrategyLimits(), GlobalLimits(max_concurrent_trades=1), 0.1, 0.1, 10, "maxConcurrentTrades"),
    ],
)
def test_each_limit_reports_its_name(
    strategy: StrategyLimits, glob: GlobalLimits, prior: float, amount: float, tick: int, expected: str
) -> None:
    gk = _gk(strategy, glob)
    if prior > 0:
        _buy(gk, "s1", prior)
    decision = gk.check_trade("s1", _intent(amount, tick=tick), tick)
    assert isinstance(decision, Rejected)
    assert decision.limit == expected


def test_rejection_is_monotonic_in_amount() -> None:
    gk = _gk(StrategyLimits(max_buy_amount=0.5, max_strategy_exposure=0.8), GlobalLimits(max_total_exposure=0.9))
    _buy(gk, "s1", 0.2)
    rejected_at = None
    for i in range(1, 200):
        amount = i * 0.01
        ok = gk.check_trade("s1", _intent(amount), 10).approved
        if rejected_at is None and not ok:
            rejected_at = amount
        if rejected_at is not None:
            assert not ok
    assert rejected_at == pytest.approx(0.51)


def test_global_totals_span_strategies() -> None:
    limits = RiskLimits(
        global_limits=GlobalLimits(max_total_exposure=0.3),
        strategies={"a": StrategyLimits(), "b": StrategyLimits()},
    )
    gk = RiskGatekeeper(limits)
    _buy(gk, "a", 0.2)
    decision = gk.check_trade("b", _intent(0.2, sid="b"), 10)
    assert isinstance(decision, Rejected)
    assert decision.limit == "maxTotalExposure"
    assert gk.total_capital_at_risk == pytest.approx(0.2)
    assert gk.total_open_trades == 1


def test_sell_releases_cost_basis_and_closed_lots() -> None:
    gk = _gk()
    _buy(gk, "s1", 1.0)
    sell = SettlementEvent(
        strategy_id="s1",
        game_id="g1",
        kind=TradeKind.SELL,
        currency=Currency.PRIMARY,
        quantity=0.2,
        currency_amount=0.594,
        price=3.0,
        fee_rate=0.01,
        timestamp=0,
        tick=11,
    )
    update = LedgerUpdate(
        strategy_id="s1",
        kind=TradeKind.SELL,
        currency=Currency.PRIMARY,
        quantity=0.2,
        cost_basis=0.40404,
        lots_closed=0,
        realized_pnl_delta=0.18996,
        resulting_balance=0.295,
    )
    snap = gk.on_settlement("s1", sell, update)
    assert snap.capital_at_risk == pytest.approx(0.59596)
    assert snap.open_trades_count == 1


def test_counters_clamp_at_zero() -> None:
    gk = _gk()
    _buy(gk, "s1", 0.1)
    liq = Liquidation(
        owner="s1",
        currency=Currency.PRIMARY,
        quantity=1.0,
        final_price=0.0,
        proceeds=0.0,
        released_cost_basis=5.0,
        lots_closed=3,
    )
    snap = gk.on_liquidation("s1", liq)
    assert snap.capital_at_risk == 0.0
    assert snap.open_trades_count == 0
    assert snap.total_capital_at_risk == 0.0


def test_rejection_publishes_limit_breach() -> None:
    bus = EventBus()
    seen: list[LimitBreach] = []
    bus.subscribe(LimitBreach, seen.append, category="risk")
    gk = _gk(StrategyLimits(max_buy_amount=0.01), bus=bus)

    gk.check_trade("s1", _intent(0.5), 10, phase=GamePhase.ACTIVE)
    assert len(seen) == 1
    assert seen[0].limit == "maxBuyAmount"
    assert seen[0].phase == GamePhase.ACTIVE


def test_exposure_survives_restart(tmp_path: Path) -> None:
    db = Database(tmp_path / "risk.db")
    gk = _gk(db=db)
    _buy(gk, "s1", 0.3)
    _buy(gk, "s1", 0.2)
    gk.save_state()

    restored = _gk(db=db)
    assert restored.exposure("s1").capital_at_risk == pytest.approx(0.5)
    assert restored.exposure("s1").open_trades_count == 2
    assert restored.total_capital_at_risk == pytest.approx(0.5)
    assert db.latest_event(EventType.RISK_EXPOSURE_SNAPSHOT_V1) is not None
    db.close()


def test_restore_without_snapshot_starts_at_zero(tmp_path: Path) -> None:
    db = Database(tmp_path / "risk.db")
    gk = _gk(db=db)
    assert gk.restore_state() is False
    assert gk.total_capital_at_risk == 0.0
    db.close()
