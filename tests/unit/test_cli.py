from __future__ import annotations

import json
import shutil
from pathlib import Path

import pytest

from rugsim.backtest.history import save_session
from rugsim.cli import build_parser, main
from rugsim.core.database import Database
from rugsim.core.events import EventType, ExposureSnapshotPayload
from tests._sessions import START_MS, make_session


def _scaffold_repo(tmp_path: Path) -> Path:
    """Create a minimal repo root layout expected by the CLI."""

    repo_root = tmp_path
    src_root = Path(__file__).resolve().parents[2]

    (repo_root / "config").mkdir(parents=True, exist_ok=True)
    shutil.copy2(src_root / "config" / "default.yaml", repo_root / "config" / "default.yaml")
    shutil.copytree(src_root / "config" / "presets", repo_root / "config" / "presets")

    (repo_root / "data").mkdir(parents=True, exist_ok=True)
    db = Database(repo_root / "data" / "history.db")
    for i in range(3):
        save_session(db, make_session(f"g{i}", start=START_MS + i * 60_000))
    db.close()

    return repo_root


def test_cli_help_includes_subcommands(capsys: pytest.CaptureFixture[str]) -> None:
    rc = main([])
    assert rc == 2
    out = capsys.readouterr().out
    for cmd in ("backtest", "sessions", "import-session", "status"):
        assert cmd in out


def test_cli_version_flag(capsys: pytest.CaptureFixture[str]) -> None:
    rc = main(["--version"])
    assert rc == 0
    assert capsys.readouterr().out.strip().startswith("rugsim v")


def test_cli_unknown_command_errors() -> None:
    parser = build_parser()
    with pytest.raises(SystemExit):
        parser.parse_args(["nope"])


def test_cli_sessions_lists_newest_first(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    repo = _scaffold_repo(tmp_path)
    monkeypatch.chdir(repo)

    assert main(["sessions", "--json", "--limit", "2"]) == 0
    rows = json.loads(capsys.readouterr().out)
    assert [r["game_id"] for r in rows] == ["g2", "g1"]


def test_cli_backtest_single_game(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    repo = _scaffold_repo(tmp_path)
    monkeypatch.chdir(repo)

    assert main(["backtest", "--game-id", "g1", "--json"]) == 0
    doc = json.loads(capsys.readouterr().out)
    assert doc["completed"] == ["g1"]
    assert doc["aggregates"]["fixed_tick"]["games"] == 1

    db = Database(repo / "data" / "history.db")
    assert len(db.get_events(event_type=EventType.BACKTEST_SUMMARY_V1)) == 1
    assert db.conn.execute("SELECT COUNT(*) FROM strategy_performance").fetchone()[0] == 1
    db.close()


def test_cli_backtest_pages_and_reports_skips(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    repo = _scaffold_repo(tmp_path)
    monkeypatch.chdir(repo)

    assert main(["backtest", "--limit", "2", "--offset", "1", "--json"]) == 0
    doc = json.loads(capsys.readouterr().out)
    assert sorted(doc["completed"]) == ["g0", "g1"]

    assert main(["backtest", "--game-id", "g1", "--game-id", "missing", "--json"]) == 0
    doc = json.loads(capsys.readouterr().out)
    assert doc["completed"] == ["g1"]
    assert "missing" in doc["skipped"]


def test_cli_backtest_unknown_strategy(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    repo = _scaffold_repo(tmp_path)
    monkeypatch.chdir(repo)
    assert main(["backtest", "--strategy", "nope"]) == 2
    assert "unknown strategy" in capsys.readouterr().err


def test_cli_import_session(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    repo = _scaffold_repo(tmp_path)
    monkeypatch.chdir(repo)

    s = make_session("imported", ticks=4, start=START_MS + 3_600_000)
    doc = {
        "details": s.details.model_dump(mode="json"),
        "prices": [p.model_dump(mode="json") for p in s.prices],
        "events": [e.model_dump(mode="json") for e in s.events],
    }
    path = tmp_path / "session.json"
    path.write_text(json.dumps(doc), encoding="utf-8")

    assert main(["import-session", str(path)]) == 0
    assert "imported imported" in capsys.readouterr().out

    assert main(["sessions", "--json", "--limit", "1"]) == 0
    assert json.loads(capsys.readouterr().out)[0]["game_id"] == "imported"


def test_cli_import_session_bad_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    repo = _scaffold_repo(tmp_path)
    monkeypatch.chdir(repo)
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    assert main(["import-session", str(bad)]) == 1
    assert "error" in capsys.readouterr().err


def test_cli_status(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    repo = _scaffold_repo(tmp_path)
    monkeypatch.chdir(repo)
    assert main(["status"]) == 0
    out = capsys.readouterr().out
    assert "rugged sessions: 3" in out
    assert "journal chain: ok" in out


def test_cli_status_reports_saved_exposure(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    repo = _scaffold_repo(tmp_path)
    db = Database(repo / "data" / "history.db")
    db.append_event(
        event_type=EventType.RISK_EXPOSURE_SNAPSHOT_V1,
        payload=ExposureSnapshotPayload(total_capital_at_risk=0.02, total_open_trades=2).model_dump(mode="json"),
    )
    db.close()
    monkeypatch.chdir(repo)

    assert main(["status"]) == 0
    assert "saved exposure: 0.020000 over 2 open trades" in capsys.readouterr().out
