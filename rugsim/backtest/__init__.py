"""rugsim.backtest

Replays recorded sessions through the same execution path the live process uses.
"""

from __future__ import annotations

from rugsim.backtest.batch import BatchDriver, BatchReport
from rugsim.backtest.history import (
    HistoryStore,
    InMemorySessionSource,
    RecordedSession,
    SessionSource,
    save_session,
    session_from_dict,
)
from rugsim.backtest.replay import (
    CancelToken,
    ReplayResult,
    ReplayRun,
    ReplayState,
    StrategySpec,
    merge_timeline,
    replay_session,
)
from rugsim.backtest.summary import BatchAggregate, aggregate

__all__ = [
    "BatchAggregate",
    "BatchDriver",
    "BatchReport",
    "CancelToken",
    "HistoryStore",
    "InMemorySessionSource",
    "RecordedSession",
    "ReplayResult",
    "ReplayRun",
    "ReplayState",
    "SessionSource",
    "StrategySpec",
    "aggregate",
    "merge_timeline",
    "replay_session",
    "save_session",
    "session_from_dict",
]
