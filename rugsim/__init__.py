"""rugsim: trading simulation and risk accounting for the multiplier game.

Every buy is a lot. Every lot is eventually sold, or rugged.

The same ledger, gatekeeper and simulator run live and in replay. If the two
paths ever disagree, the backtest is fiction.
"""

from __future__ import annotations

__all__ = [
    "__version__",
    "TOKEN_EPSILON",
    "PRICE_EPSILON",
]

__version__ = "0.1.0"

# Token-scale tolerance: FIFO matching stops once the remainder is below this.
TOKEN_EPSILON = 1e-9

# Price-scale tolerance: win/loss/breakeven classification.
PRICE_EPSILON = 1e-8
