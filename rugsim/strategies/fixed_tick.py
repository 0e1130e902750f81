"""rugsim.strategies.fixed_tick

The baseline. Not clever on purpose.

- buys once in presale, if the game allows it
- buys ``tick_buy_amount`` whenever ``tick % buy_tick_modulus == buy_tick_offset``
- otherwise sells ``sell_percentage`` whenever ``tick % sell_tick_modulus == sell_tick_offset``

Ticks are processed once each, in the active phase only.
"""

from __future__ import annotations

from typing import Any

from rugsim.context import SessionContext
from rugsim.core.types import Currency, GamePhase, NewGame, PhaseChanged, PriceTick
from rugsim.strategies.base import Strategy
from rugsim.strategies.registry import register

DEFAULTS: dict[str, Any] = {
    "presale_buy_amount": 0.01,
    "tick_buy_amount": 0.01,
    "buy_tick_modulus": 20,
    "buy_tick_offset": 10,
    "sell_tick_modulus": 20,
    "sell_tick_offset": 0,
    "sell_percentage": 100.0,
}


def validate_params(params: dict[str, Any]) -> list[str]:
    """Return a list of problems. Empty means usable."""

    errors: list[str] = []

    def _num(name: str, minimum: float, *, integer: bool = False, maximum: float = float("inf")) -> None:
        v = params.get(name)
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            errors.append(f"{name} must be a number, got {v!r}")
            return
        if integer and int(v) != v:
            errors.append(f"{name} must be an integer, got {v}")
        if v < minimum:
            errors.append(f"{name} must be >= {minimum}, got {v}")
        if v > maximum:
            errors.append(f"{name} must be <= {maximum}, got {v}")

    _num("presale_buy_amount", 1e-8)
    _num("tick_buy_amount", 1e-8)
    _num("buy_tick_modulus", 1, integer=True)
    _num("buy_tick_offset", 0, integer=True)
    _num("sell_tick_modulus", 1, integer=True)
    _num("sell_tick_offset", 0, integer=True)
    _num("sell_percentage", 1e-8, maximum=100)
    return errors


@register("fixed_tick")
class FixedTickTrader(Strategy):
    def __init__(
        self,
        strategy_id: str,
        params: dict[str, Any] | None,
        ctx: SessionContext,
        *,
        currency: Currency = Currency.PRIMARY,
    ) -> None:
        super().__init__(strategy_id, {**DEFAULTS, **(params or {})}, ctx, currency=currency)
        errors = validate_params(self.params)
        if errors:
            raise ValueError(f"invalid fixed_tick params for {strategy_id}: {'; '.join(errors)}")
        self.presale_bought: set[str] = set()
        self.last_tick: dict[str, int] = {}

    def _try_presale(self) -> None:
        snap = self.ctx.snapshot
        if snap.game_id in self.presale_bought:
            return
        if snap.phase != GamePhase.PRESALE or not snap.allow_presale_buys:
            return
        outcome = self.execute_buy(float(self.params["presale_buy_amount"]))
        if getattr(outcome, "ok", False):
            self.presale_bought.add(snap.game_id)

    def on_new_game(self, msg: NewGame) -> None:
        # one game at a time; state for earlier games is never read again
        self.presale_bought &= {msg.game_id}
        self.last_tick = {msg.game_id: -1}
        self._try_presale()

    def on_phase_change(self, msg: PhaseChanged) -> None:
        self._try_presale()

    def on_price_update(self, msg: PriceTick) -> None:
        snap = msg.snapshot
        if snap.phase != GamePhase.ACTIVE:
            return
        last = self.last_tick.get(snap.game_id, -1)
        if snap.tick <= last:
            return
        self.last_tick[snap.game_id] = snap.tick
        if snap.tick <= 0:
            return

        p = self.params
        if snap.tick % int(p["buy_tick_modulus"]) == int(p["buy_tick_offset"]):
            self.execute_buy(float(p["tick_buy_amount"]))
        elif snap.tick % int(p["sell_tick_modulus"]) == int(p["sell_tick_offset"]):
            if self.balance() > 0.0:
                self.execute_sell_percentage(float(p["sell_percentage"]))
