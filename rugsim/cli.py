"""rugsim.cli

Command line interface entry point for rugsim.

Design constraints:
- argparse-based.
- Lazy imports: do not import numpy or the replay stack at parse time.

Nothing here trades. It replays, lists, imports and reports.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

EPILOG = "Every game ends in a rug. Size accordingly."


@dataclass(frozen=True)
class CliContext:
    repo_root: Path


def _repo_root_from_cwd() -> Path:
    return Path.cwd()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rugsim",
        description="Rug-game trading simulation, risk gating and session replay.",
        epilog=EPILOG,
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit.",
    )

    sub = parser.add_subparsers(dest="command")

    p_bt = sub.add_parser("backtest", help="Replay recorded sessions through the configured strategies")
    p_bt.add_argument("--game-id", action="append", default=None, help="Replay this session (repeatable).")
    p_bt.add_argument("--limit", type=int, default=None, help="Number of most recent rugged sessions to replay.")
    p_bt.add_argument("--offset", type=int, default=None, help="Skip this many sessions first.")
    p_bt.add_argument(
        "--strategy",
        action="append",
        default=None,
        help="Strategy id from config to run (repeatable). Defaults to every enabled strategy.",
    )
    p_bt.add_argument(
        "--preset",
        choices=["conservative", "balanced", "degen"],
        default=None,
        help="Risk preset to apply instead of the configured one.",
    )
    p_bt.add_argument("--json", action="store_true", help="Print machine-readable output.")

    p_sessions = sub.add_parser("sessions", help="List recorded rugged sessions, newest first")
    p_sessions.add_argument("--limit", type=int, default=20)
    p_sessions.add_argument("--offset", type=int, default=0)
    p_sessions.add_argument("--json", action="store_true")

    p_import = sub.add_parser("import-session", help="Load recorded sessions from JSON files into the history db")
    p_import.add_argument("paths", nargs="+", type=Path)

    sub.add_parser("status", help="Print configuration and database status")

    return parser


def _print_version() -> None:
    from rugsim import __version__

    print(f"rugsim v{__version__}")


def _load_config(repo_root: Path, preset: str | None = None) -> Any:
    from rugsim.core.config import Config

    if preset is not None:
        return Config.from_preset(preset, repo_root=repo_root)  # type: ignore[arg-type]
    cfg_user = repo_root / "config" / "user.yaml"
    return Config.from_yaml(cfg_user) if cfg_user.exists() else Config.from_repo_defaults(repo_root)


def _db_path(repo_root: Path, config: Any) -> Path:
    path = Path(config.history_db_path)
    return path if path.is_absolute() else repo_root / path


def _cmd_backtest(ctx: CliContext, args: argparse.Namespace) -> int:
    import asyncio

    from rugsim.backtest.batch import BatchDriver
    from rugsim.backtest.history import HistoryStore
    from rugsim.core.database import Database
    from rugsim.core.exceptions import ConfigError
    from rugsim.core.log import configure_logging
    from rugsim.live import specs_from_config

    try:
        config = _load_config(ctx.repo_root, args.preset)
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    configure_logging(config.logging)

    specs = specs_from_config(config)
    if args.strategy:
        wanted = set(args.strategy)
        unknown = wanted - set(config.strategies)
        if unknown:
            print(f"error: unknown strategy id(s): {', '.join(sorted(unknown))}", file=sys.stderr)
            return 2
        specs = [s for s in specs if s.strategy_id in wanted]
    if not specs:
        print("error: no enabled strategies to run", file=sys.stderr)
        return 2

    db_path = _db_path(ctx.repo_root, config)
    if not db_path.exists():
        print(f"error: history db not found: {db_path}", file=sys.stderr)
        return 2

    db = Database(db_path)
    try:
        driver = BatchDriver.from_config(config, HistoryStore(db), db=db)
        report = asyncio.run(
            driver.run(
                specs,
                game_ids=args.game_id,
                limit=config.replay.batch_limit if args.limit is None else args.limit,
                offset=config.replay.batch_offset if args.offset is None else args.offset,
            )
        )
    finally:
        db.close()

    if args.json:
        doc = {
            "sessions": len(report.results),
            "completed": [r.game_id for r in report.completed],
            "skipped": {r.game_id: r.reason for r in report.skipped},
            "summaries": [s.to_dict() for s in report.summaries],
            "aggregates": {sid: asdict(a) for sid, a in report.aggregates.items()},
        }
        print(json.dumps(doc, indent=2, sort_keys=True))
        return 0 if report.completed or not report.results else 1

    print(f"rugsim backtest: {len(report.completed)}/{len(report.results)} sessions replayed")
    for r in report.skipped:
        print(f"- skipped {r.game_id}: {r.reason}")
    for sid, a in report.aggregates.items():
        print(f"\n{sid}")
        print(f"- games: {a.games}")
        print(f"- trades: {a.trades_executed} (win rate {a.win_rate:.1f}%)")
        print(f"- total pnl: {a.total_pnl:.6f}")
        print(f"- avg pnl/game: {a.average_pnl_per_game:.6f}")
        print(f"- avg pnl/trade: {a.average_pnl_per_trade:.6f}")
        print(f"- invested/returned: {a.total_invested:.6f} / {a.total_returned:.6f}")
        print(f"- avg hold: {a.average_holding_time_seconds:.2f}s")
    return 0 if report.completed or not report.results else 1


def _cmd_sessions(ctx: CliContext, args: argparse.Namespace) -> int:
    from rugsim.backtest.history import HistoryStore
    from rugsim.core.database import Database
    from rugsim.core.time import ms_to_dt

    config = _load_config(ctx.repo_root)
    db_path = _db_path(ctx.repo_root, config)
    if not db_path.exists():
        print(f"error: history db not found: {db_path}", file=sys.stderr)
        return 2

    db = Database(db_path)
    try:
        rows = HistoryStore(db).get_session_summaries(args.limit, args.offset)
    finally:
        db.close()

    if args.json:
        print(json.dumps([r.model_dump(mode="json") for r in rows], indent=2, sort_keys=True))
        return 0

    if not rows:
        print("no rugged sessions recorded")
        return 0
    for r in rows:
        peak = "-" if r.peak_multiplier is None else f"{r.peak_multiplier:.4f}"
        print(f"{r.game_id}  start={ms_to_dt(r.start_time).isoformat()}  ticks={r.tick_count}  peak={peak}  rug={r.rug_price:.6f}")
    return 0


def _cmd_import_session(ctx: CliContext, args: argparse.Namespace) -> int:
    from rugsim.backtest.history import save_session, session_from_dict
    from rugsim.core.database import Database
    from rugsim.core.exceptions import SessionLoadError

    config = _load_config(ctx.repo_root)
    db_path = _db_path(ctx.repo_root, config)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    db = Database(db_path)
    failed = 0
    try:
        for path in args.paths:
            try:
                raw = json.loads(Path(path).read_text(encoding="utf-8"))
                docs = raw if isinstance(raw, list) else [raw]
                for doc in docs:
                    session = session_from_dict(doc)
                    save_session(db, session)
                    print(f"imported {session.details.game_id} ({len(session.prices)} ticks, {len(session.events)} events)")
            except (OSError, json.JSONDecodeError, SessionLoadError) as e:
                failed += 1
                print(f"error: {path}: {e}", file=sys.stderr)
    finally:
        db.close()
    return 1 if failed else 0


def _cmd_status(ctx: CliContext, args: argparse.Namespace) -> int:
    from rugsim.core.config import Config
    from rugsim.core.database import Database
    from rugsim.core.events import EventType, ExposureSnapshotPayload, validate_payload
    from rugsim.core.exceptions import ConfigError

    repo_root = ctx.repo_root

    cfg_user = repo_root / "config" / "user.yaml"
    cfg = cfg_user if cfg_user.exists() else repo_root / "config" / "default.yaml"

    config = None
    try:
        config = Config.from_yaml(cfg)
        config_status = str(cfg)
    except ConfigError as e:
        config_status = f"{cfg} (error: {e})"

    print("rugsim status")
    print(f"- config: {config_status}")
    if config is None:
        print("- system health: degraded")
        return 1

    print(f"- preset: {config.preset}")
    print(f"- strategies: {', '.join(s for s, c in config.strategies.items() if c.enabled) or '(none enabled)'}")

    db_path = _db_path(repo_root, config)
    if not db_path.exists():
        print(f"- db: {db_path} (missing)")
        print("- system health: degraded")
        return 0

    db = Database(db_path)
    try:
        games = db.conn.execute("SELECT COUNT(*) FROM games WHERE is_rugged = 1").fetchone()[0]
        chain_ok = db.verify_hash_chain()
        saved = db.latest_event(EventType.RISK_EXPOSURE_SNAPSHOT_V1)
    finally:
        db.close()
    print(f"- db: {db_path} (present)")
    print(f"- rugged sessions: {games}")
    if saved is not None:
        exposure = validate_payload(saved.type, saved.payload)
        if isinstance(exposure, ExposureSnapshotPayload):
            print(
                f"- saved exposure: {exposure.total_capital_at_risk:.6f} over {exposure.total_open_trades} open trades"
            )
    print(f"- journal chain: {'ok' if chain_ok else 'BROKEN'}")
    print(f"- system health: {'ok' if chain_ok else 'degraded'}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        _print_version()
        return 0

    if not args.command:
        parser.print_help()
        return 2

    ctx = CliContext(repo_root=_repo_root_from_cwd())

    dispatch: dict[str, Callable[[CliContext, argparse.Namespace], int]] = {
        "backtest": _cmd_backtest,
        "sessions": _cmd_sessions,
        "import-session": _cmd_import_session,
        "status": _cmd_status,
    }

    fn = dispatch.get(str(args.command))
    if fn is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 2

    return int(fn(ctx, args))


if __name__ == "__main__":
    raise SystemExit(main())
