from __future__ import annotations

import logging
import math
from pathlib import Path

import pytest
from pydantic import ValidationError

from rugsim.core.config import Config, RiskConfig, SimulatorConfig
from rugsim.core.exceptions import ConfigError

REPO_ROOT = Path(__file__).resolve().parents[2]


def test_repo_defaults_load(test_config: Config) -> None:
    assert test_config.preset == "balanced"
    assert test_config.simulator.fee_rate == pytest.approx(0.01)
    assert "fixed_tick" in test_config.strategies
    limits = test_config.risk.resolve_limits()
    fixed = limits.for_strategy("fixed_tick")
    assert fixed is not None
    assert fixed.max_buy_amount == pytest.approx(0.05)
    assert fixed.presale is not None
    assert fixed.presale.max_buy_amount == pytest.approx(0.02)
    assert limits.global_limits.max_total_exposure == pytest.approx(1.0)


@pytest.mark.parametrize("preset", ["conservative", "balanced", "degen"])
def test_presets_resolve(preset: str) -> None:
    cfg = Config.from_preset(preset, repo_root=REPO_ROOT)  # type: ignore[arg-type]
    assert cfg.preset == preset
    limits = cfg.risk.resolve_limits()
    assert not math.isinf(limits.global_limits.max_buy_amount)


def test_conservative_is_tighter_than_degen() -> None:
    c = Config.from_preset("conservative", repo_root=REPO_ROOT).risk.resolve_limits()
    d = Config.from_preset("degen", repo_root=REPO_ROOT).risk.resolve_limits()
    assert c.global_limits.max_total_exposure < d.global_limits.max_total_exposure


def test_default_file_wins_over_preset(tmp_path: Path) -> None:
    (tmp_path / "presets").mkdir()
    (tmp_path / "presets" / "balanced.yaml").write_text("risk:\n  global_limits:\n    max_buy_amount: 0.1\n")
    cfg_path = tmp_path / "default.yaml"
    cfg_path.write_text("preset: balanced\nrisk:\n  global_limits:\n    max_buy_amount: 0.3\n")

    cfg = Config.from_yaml(cfg_path)
    assert cfg.risk.resolve_limits().global_limits.max_buy_amount == pytest.approx(0.3)


def test_missing_file_raises_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        Config.from_yaml(tmp_path / "nope.yaml")


def test_non_mapping_root_raises(tmp_path: Path) -> None:
    p = tmp_path / "default.yaml"
    p.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError):
        Config.from_yaml(p)


def test_invalid_limits_become_unbounded_with_warning(caplog: pytest.LogCaptureFixture) -> None:
    raw = {
        "global_limits": {"max_buy_amount": "lots", "max_total_exposure": -1, "max_concurrent_trades": None},
        "strategies": {
            "s1": {"max_buy_amount": True, "max_open_trades": 3, "presale": {"max_tick": 5}},
            "s2": "not a mapping",
        },
    }
    with caplog.at_level(logging.WARNING, logger="rugsim.core.config"):
        limits = RiskConfig.model_validate(raw).resolve_limits()

    assert math.isinf(limits.global_limits.max_buy_amount)
    assert math.isinf(limits.global_limits.max_total_exposure)
    assert math.isinf(limits.global_limits.max_concurrent_trades)

    s1 = limits.for_strategy("s1")
    assert s1 is not None
    assert math.isinf(s1.max_buy_amount)
    assert s1.max_open_trades == 3
    assert s1.presale is None

    s2 = limits.for_strategy("s2")
    assert s2 is not None
    assert math.isinf(s2.max_strategy_exposure)

    messages = {r.getMessage() for r in caplog.records}
    assert "risk_limit_invalid" in messages
    assert "risk_limits_unbounded" in messages
    assert "risk_presale_incomplete" in messages


def test_zero_buy_cap_and_fractional_counts_are_invalid(caplog: pytest.LogCaptureFixture) -> None:
    raw = {
        "global_limits": {"max_buy_amount": 0, "max_concurrent_trades": 2.5},
        "strategies": {
            "s1": {
                "max_buy_amount": 0,
                "max_open_trades": 1.5,
                "max_strategy_exposure": 0,
                "min_safe_tick": 2.7,
                "presale": {"max_tick": 0.5, "max_buy_amount": 0},
            },
        },
    }
    with caplog.at_level(logging.WARNING, logger="rugsim.core.config"):
        limits = RiskConfig.model_validate(raw).resolve_limits()

    assert math.isinf(limits.global_limits.max_buy_amount)
    assert math.isinf(limits.global_limits.max_concurrent_trades)
    s1 = limits.for_strategy("s1")
    assert s1 is not None
    assert math.isinf(s1.max_buy_amount)
    assert math.isinf(s1.max_open_trades)
    assert s1.min_safe_tick == 0
    # a zero exposure cap is a deliberate freeze, not a typo
    assert s1.max_strategy_exposure == 0.0
    assert s1.presale is None
    invalid = [r for r in caplog.records if r.getMessage() == "risk_limit_invalid"]
    assert {r.field for r in invalid} >= {"max_buy_amount", "max_open_trades", "min_safe_tick", "presale.max_tick"}


def test_whole_number_counts_are_kept() -> None:
    raw = {
        "strategies": {
            "s1": {"max_open_trades": "4", "min_safe_tick": 3.0, "presale": {"max_tick": 2, "max_buy_amount": 0}},
        },
    }
    s1 = RiskConfig.model_validate(raw).resolve_limits().for_strategy("s1")
    assert s1 is not None
    assert s1.max_open_trades == 4
    assert s1.min_safe_tick == 3
    assert s1.presale is not None
    assert s1.presale.max_buy_amount == 0.0


def test_resolved_limits_are_read_only() -> None:
    limits = RiskConfig.model_validate({"strategies": {"s1": {"max_buy_amount": 1}}}).resolve_limits()
    with pytest.raises(TypeError):
        limits.strategies["s2"] = limits.strategies["s1"]  # type: ignore[index]


def test_fee_rate_must_be_a_fraction() -> None:
    with pytest.raises(ValidationError):
        SimulatorConfig(fee_rate=1.5)


def test_env_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RUGSIM_SIMULATOR__FEE_RATE", "0.02")
    monkeypatch.setenv("RUGSIM_LOGGING__LEVEL", "DEBUG")
    cfg = Config()
    assert cfg.simulator.fee_rate == pytest.approx(0.02)
    assert cfg.logging.level == "DEBUG"
