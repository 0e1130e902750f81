"""rugsim.execution

Execution layer: intent in, settlement out, books updated.

- ``ledger``: FIFO lots and realized P&L
- ``gatekeeper``: limits and exposure counters
- ``simulator``: fee-adjusted fills at the current price
- ``dispatch``: ledger first, gatekeeper second, bus last
"""

from __future__ import annotations

from rugsim.execution.dispatch import SettlementDispatcher
from rugsim.execution.gatekeeper import LimitViolation, RiskGatekeeper
from rugsim.execution.ledger import (
    PositionLedger,
    apply_buy,
    apply_sell,
    liquidate_at_session_end,
    performance_summary,
    settle_sell_proceeds,
)
from rugsim.execution.simulator import SimulationResult, TradeSimulator

__all__ = [
    "LimitViolation",
    "PositionLedger",
    "RiskGatekeeper",
    "SettlementDispatcher",
    "SimulationResult",
    "TradeSimulator",
    "apply_buy",
    "apply_sell",
    "liquidate_at_session_end",
    "performance_summary",
    "settle_sell_proceeds",
]
