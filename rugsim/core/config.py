"""rugsim.core.config

Three config surfaces only:
1) `config/default.yaml` + `config/presets/*.yaml`
2) Environment variables (``RUGSIM_`` prefix, ``__`` for nesting)
3) Per-strategy blocks inside the YAML

Risk limits are the one place where bad input does not stop the process.
A missing or invalid limit becomes unbounded and says so, loudly. A running but
loosely bounded bot beats a dead one.
"""

from __future__ import annotations

import logging
import math
from pathlib import Path
from types import MappingProxyType
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from rugsim.core.exceptions import ConfigError
from rugsim.core.types import GlobalLimits, PresaleOverride, RiskLimits, StrategyLimits

logger = logging.getLogger(__name__)


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = dict(base)
    for k, v in overlay.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _lenient_limit(v: Any, field_name: str, *, positive: bool = False, integer: bool = False) -> float | None:
    """Coerce a limit value. Anything unusable becomes None (unbounded) with a warning.

    ``positive`` rejects zero as well as negatives; ``integer`` rejects fractions.
    """

    if v is None:
        return None
    if isinstance(v, bool):
        logger.warning("risk_limit_invalid", extra={"field": field_name, "value": v})
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        logger.warning("risk_limit_invalid", extra={"field": field_name, "value": str(v)})
        return None
    if math.isnan(f) or f < 0 or (positive and f == 0) or (integer and not f.is_integer()):
        logger.warning("risk_limit_invalid", extra={"field": field_name, "value": f})
        return None
    return f


# Fields that only make sense as whole counts or ticks.
_INTEGER_LIMITS = frozenset({"max_open_trades", "min_safe_tick", "max_concurrent_trades", "max_tick"})
# A zero cap on a buy size would block every buy; treat it as a typo.
_POSITIVE_LIMITS = frozenset({"max_buy_amount"})


def _limit_rule(v: Any, prefix: str, name: str) -> float | None:
    return _lenient_limit(
        v,
        f"{prefix}{name}",
        positive=name in _POSITIVE_LIMITS,
        integer=name in _INTEGER_LIMITS,
    )


class PresaleLimitsConfig(BaseModel):
    max_tick: float | None = None
    max_buy_amount: float | None = None

    @field_validator("max_tick", "max_buy_amount", mode="before")
    @classmethod
    def _lenient(cls, v: Any, info) -> float | None:
        return _lenient_limit(v, f"presale.{info.field_name}", integer=info.field_name == "max_tick")


class StrategyLimitsConfig(BaseModel):
    max_buy_amount: float | None = None
    max_open_trades: float | None = None
    max_strategy_exposure: float | None = None
    min_safe_tick: float | None = None
    presale: PresaleLimitsConfig | None = None

    @field_validator("max_buy_amount", "max_open_trades", "max_strategy_exposure", "min_safe_tick", mode="before")
    @classmethod
    def _lenient(cls, v: Any, info) -> float | None:
        return _limit_rule(v, "", str(info.field_name))

    @field_validator("presale", mode="before")
    @classmethod
    def _presale_shape(cls, v: Any) -> Any:
        if v is None or isinstance(v, dict):
            return v
        logger.warning("risk_presale_invalid", extra={"value": str(v)})
        return None

    def resolve(self, strategy_id: str) -> StrategyLimits:
        unbounded = [
            name
            for name in ("max_buy_amount", "max_open_trades", "max_strategy_exposure")
            if getattr(self, name) is None
        ]
        if unbounded:
            logger.warning(
                "risk_limits_unbounded",
                extra={"strategy_id": strategy_id, "fields": unbounded},
            )

        presale: PresaleOverride | None = None
        if self.presale is not None:
            if self.presale.max_tick is None or self.presale.max_buy_amount is None:
                logger.warning("risk_presale_incomplete", extra={"strategy_id": strategy_id})
            else:
                presale = PresaleOverride(
                    max_tick=int(self.presale.max_tick),
                    max_buy_amount=float(self.presale.max_buy_amount),
                )

        return StrategyLimits(
            max_buy_amount=math.inf if self.max_buy_amount is None else float(self.max_buy_amount),
            max_open_trades=math.inf if self.max_open_trades is None else float(self.max_open_trades),
            max_strategy_exposure=math.inf
            if self.max_strategy_exposure is None
            else float(self.max_strategy_exposure),
            min_safe_tick=0 if self.min_safe_tick is None else int(self.min_safe_tick),
            presale=presale,
        )


class GlobalLimitsConfig(BaseModel):
    max_buy_amount: float | None = None
    max_total_exposure: float | None = None
    max_concurrent_trades: float | None = None

    @field_validator("max_buy_amount", "max_total_exposure", "max_concurrent_trades", mode="before")
    @classmethod
    def _lenient(cls, v: Any, info) -> float | None:
        return _limit_rule(v, "global.", str(info.field_name))

    def resolve(self) -> GlobalLimits:
        unbounded = [name for name in type(self).model_fields if getattr(self, name) is None]
        if unbounded:
            logger.warning("risk_global_limits_unbounded", extra={"fields": unbounded})
        return GlobalLimits(
            max_buy_amount=math.inf if self.max_buy_amount is None else float(self.max_buy_amount),
            max_total_exposure=math.inf
            if self.max_total_exposure is None
            else float(self.max_total_exposure),
            max_concurrent_trades=math.inf
            if self.max_concurrent_trades is None
            else float(self.max_concurrent_trades),
        )


class RiskConfig(BaseModel):
    global_limits: GlobalLimitsConfig = Field(default_factory=GlobalLimitsConfig)
    strategies: dict[str, StrategyLimitsConfig] = Field(default_factory=dict)

    @field_validator("global_limits", mode="before")
    @classmethod
    def _global_shape(cls, v: Any) -> Any:
        if v is None:
            return {}
        if not isinstance(v, dict):
            logger.warning("risk_global_limits_invalid", extra={"value": str(v)})
            return {}
        return v

    @field_validator("strategies", mode="before")
    @classmethod
    def _strategies_shape(cls, v: Any) -> Any:
        if v is None:
            return {}
        if not isinstance(v, dict):
            logger.warning("risk_strategies_invalid", extra={"value": str(v)})
            return {}
        out: dict[str, Any] = {}
        for sid, block in v.items():
            if block is None or isinstance(block, dict):
                out[str(sid)] = block or {}
            else:
                logger.warning("risk_strategy_limits_invalid", extra={"strategy_id": str(sid)})
                out[str(sid)] = {}
        return out

    def resolve_limits(self) -> RiskLimits:
        """Freeze the configured limits for one session. Never mutated afterwards."""

        strategies = {sid: block.resolve(sid) for sid, block in self.strategies.items()}
        return RiskLimits(
            global_limits=self.global_limits.resolve(),
            strategies=MappingProxyType(strategies),
        )


class SimulatorConfig(BaseModel):
    fee_rate: float = 0.01
    allow_presale_buys: bool = True

    @field_validator("fee_rate")
    @classmethod
    def fee_rate_in_range(cls, v: float) -> float:
        if not 0.0 <= v < 1.0:
            raise ValueError("fee_rate must be in [0, 1)")
        return v


class ReplayConfig(BaseModel):
    batch_limit: int = 50
    batch_offset: int = 0
    max_concurrent_runs: int = 1

    @field_validator("batch_limit", "max_concurrent_runs")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v


class StrategyConfig(BaseModel):
    """Per-strategy parameters. Unknown keys are kept for the strategy to read."""

    kind: str = "fixed_tick"
    enabled: bool = True
    params: dict[str, Any] = Field(default_factory=dict)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_output: bool = False


class Config(BaseSettings):
    """Root configuration. Single source of truth."""

    # Paths
    data_dir: Path = Path("data")
    config_dir: Path = Path("config")
    history_db: str = "history.db"

    # Preset selection
    preset: Literal["conservative", "balanced", "degen", "custom"] = "balanced"

    # Component configs
    risk: RiskConfig = Field(default_factory=RiskConfig)
    simulator: SimulatorConfig = Field(default_factory=SimulatorConfig)
    replay: ReplayConfig = Field(default_factory=ReplayConfig)
    strategies: dict[str, StrategyConfig] = Field(default_factory=dict)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"env_prefix": "RUGSIM_", "env_nested_delimiter": "__"}

    @property
    def history_db_path(self) -> Path:
        return Path(self.data_dir) / self.history_db

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")

        try:
            raw = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Config file is not valid YAML: {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"Config root must be a mapping: {path}")

        preset_name = raw.get("preset", "balanced")
        preset_path = path.parent / "presets" / f"{preset_name}.yaml"
        if preset_path.exists():
            preset_data = yaml.safe_load(preset_path.read_text()) or {}
            raw = _deep_merge(preset_data, raw)

        return cls(**raw)

    @classmethod
    def from_repo_defaults(cls, repo_root: Path | None = None) -> Config:
        root = repo_root or Path.cwd()
        return cls.from_yaml(root / "config" / "default.yaml")

    @classmethod
    def from_preset(
        cls,
        preset: Literal["conservative", "balanced", "degen"],
        *,
        repo_root: Path | None = None,
    ) -> Config:
        root = repo_root or Path.cwd()
        default_path = root / "config" / "default.yaml"
        raw = yaml.safe_load(default_path.read_text()) or {}
        raw["preset"] = preset
        # Same preset chain as from_yaml, without a temp file.
        preset_path = default_path.parent / "presets" / f"{preset}.yaml"
        preset_data = yaml.safe_load(preset_path.read_text()) or {}
        raw = _deep_merge(preset_data, raw)
        return cls(**raw)
