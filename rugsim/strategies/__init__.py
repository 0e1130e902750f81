"""rugsim.strategies

Strategy base class, registry, and the reference fixed-tick trader.
"""

from rugsim.strategies.base import Strategy, StrategyStats
from rugsim.strategies.registry import discover, get_strategy, list_strategies, register

__all__ = ["Strategy", "StrategyStats", "discover", "get_strategy", "list_strategies", "register"]
