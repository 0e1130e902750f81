"""rugsim.backtest.batch

Batch driver: many sessions, same strategies.

Sessions are paged from the source, replayed (optionally several at a time,
each in its own context), and aggregated. A session that fails to load is
skipped and reported; the batch carries on.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from rugsim.backtest.history import SessionSource
from rugsim.backtest.replay import CancelToken, ReplayResult, ReplayState, StrategySpec, replay_session
from rugsim.backtest.summary import BatchAggregate, aggregate, to_payload
from rugsim.core.config import Config, SimulatorConfig
from rugsim.core.database import Database
from rugsim.core.events import EventType, compute_dedupe_key
from rugsim.core.types import PerformanceSummary, RiskLimits

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BatchReport:
    results: tuple[ReplayResult, ...]
    aggregates: dict[str, BatchAggregate] = field(default_factory=dict)

    @property
    def completed(self) -> list[ReplayResult]:
        return [r for r in self.results if r.ok]

    @property
    def skipped(self) -> list[ReplayResult]:
        return [r for r in self.results if not r.ok]

    @property
    def summaries(self) -> list[PerformanceSummary]:
        return [s for r in self.completed for s in r.summaries]


def _as_result(game_id: str, outcome: ReplayResult | BaseException) -> ReplayResult:
    """A run that raised instead of failing cleanly is reported as skipped, not fatal to the batch."""

    if isinstance(outcome, ReplayResult):
        return outcome
    if not isinstance(outcome, Exception):
        raise outcome
    logger.error(
        "batch_run_crashed",
        extra={"game_id": game_id, "error": f"{type(outcome).__name__}: {outcome}"},
        exc_info=outcome,
    )
    return ReplayResult(
        game_id=game_id,
        state=ReplayState.FAILED,
        reason=f"run crashed: {type(outcome).__name__}: {outcome}",
    )


class BatchDriver:
    def __init__(
        self,
        source: SessionSource,
        *,
        limits: RiskLimits | None = None,
        simulator_config: SimulatorConfig | None = None,
        max_concurrent_runs: int = 1,
        db: Database | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        self.source = source
        self.limits = limits or RiskLimits()
        self.simulator_config = simulator_config
        self.max_concurrent_runs = max(1, int(max_concurrent_runs))
        self.db = db
        self.cancel = cancel or CancelToken()

    @classmethod
    def from_config(cls, config: Config, source: SessionSource, *, db: Database | None = None) -> BatchDriver:
        return cls(
            source,
            limits=config.risk.resolve_limits(),
            simulator_config=config.simulator,
            max_concurrent_runs=config.replay.max_concurrent_runs,
            db=db,
        )

    def session_ids(self, limit: int, offset: int = 0) -> list[str]:
        return [d.game_id for d in self.source.get_session_summaries(limit, offset)]

    async def run(
        self,
        strategies: Sequence[StrategySpec],
        *,
        game_ids: Sequence[str] | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> BatchReport:
        ids = list(game_ids) if game_ids is not None else self.session_ids(limit, offset)
        gate = asyncio.Semaphore(self.max_concurrent_runs)

        async def _one(game_id: str) -> ReplayResult:
            async with gate:
                return await replay_session(
                    self.source,
                    game_id,
                    strategies,
                    limits=self.limits,
                    simulator_config=self.simulator_config,
                    cancel=self.cancel,
                )

        outcomes = await asyncio.gather(*(_one(gid) for gid in ids), return_exceptions=True)
        results = tuple(_as_result(gid, out) for gid, out in zip(ids, outcomes, strict=True))

        for r in results:
            if not r.ok:
                logger.warning("batch_session_skipped", extra={"game_id": r.game_id, "reason": r.reason})
                continue
            self._persist(r)

        report = BatchReport(results=results)
        summaries = report.summaries
        aggregates = {spec.strategy_id: aggregate(spec.strategy_id, summaries) for spec in strategies}
        logger.info(
            "batch_complete",
            extra={
                "sessions": len(results),
                "completed": len(report.completed),
                "skipped": len(report.skipped),
            },
        )
        return BatchReport(results=results, aggregates=aggregates)

    def _persist(self, result: ReplayResult) -> None:
        if self.db is None:
            return
        for s in result.summaries:
            payload = to_payload(s).model_dump(mode="json")
            self.db.append_event(
                event_type=EventType.BACKTEST_SUMMARY_V1,
                payload=payload,
                source="backtest.batch",
                dedupe_key=compute_dedupe_key(EventType.BACKTEST_SUMMARY_V1, payload),
            )
            self.db.record_performance(s.to_dict())
