"""
Configuration loading and validation for the stratsim application.

This module uses standard library dataclasses for configuration objects and
explicit, pure validation functions. Strategy descriptions are loaded
separately (see `stratsim.strategy`); the configuration only covers how a
run fetches data, simulates and reports.
"""

import yaml
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Type, cast

__all__ = ["load_config", "Config", "EngineConfig"]

_OUTPUT_FORMATS = {"json", "markdown", "csv"}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


# §1. Nested Configuration Dataclasses
# --------------------------------------------------------------------------------------


@dataclass(frozen=True)
class RunConfig:
    name: str
    output_dir: Path


@dataclass(frozen=True)
class DataConfig:
    source: str
    interval: Literal["1d", "1wk", "1mo"]
    snapshot_dir: Path
    refresh: bool
    batch_size: int = 3
    batch_delay: float = 0.5
    max_jitter: float = 0.5
    placeholder_days: int = 30
    placeholder_price: float = 100.0


@dataclass(frozen=True)
class UniverseConfig:
    default_categories: List[str]
    count: int
    default_symbols: List[str]


@dataclass(frozen=True)
class EngineConfig:
    """Simulation settings. The defaults reproduce the reference behaviour."""
    initial_cash: float = 10000.0
    history_window: int = 30
    week_lookback: int = 5
    month_lookback: int = 20
    consistency_tolerance: float = 0.01


@dataclass(frozen=True)
class ReportingConfig:
    output_formats: List[Literal["json", "markdown", "csv"]]


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


# §2. Top-Level Configuration
# --------------------------------------------------------------------------------------


@dataclass(frozen=True)
class Config:
    """The root configuration object, composing all nested sections."""
    run: RunConfig
    data: DataConfig
    universe: UniverseConfig
    reporting: ReportingConfig
    engine: EngineConfig = field(default_factory=EngineConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# §3. Validation and Loading
# --------------------------------------------------------------------------------------


def _from_dict(data_class: Type[Any], data: Any) -> Any:
    """Recursively creates nested dataclasses from a dictionary."""
    if isinstance(data, dict) and hasattr(data_class, "__dataclass_fields__"):
        field_types = {f.name: f.type for f in data_class.__dataclass_fields__.values()}

        kwargs = {}
        for k, v in data.items():
            field_type = field_types.get(k)
            # Unknown keys are passed through so the dataclass constructor
            # raises a TypeError, which the caller reports.
            kwargs[k] = _from_dict(field_type, v) if field_type else v
        return data_class(**kwargs)

    if isinstance(data, str) and data_class is Path:
        return Path(data)
    if isinstance(data, int) and not isinstance(data, bool) and data_class is float:
        return float(data)
    return data


def _validate_config(cfg: Dict[str, Any]) -> None:
    """
    Performs simple, explicit validation checks on the raw config dictionary.
    Fail fast on any logical inconsistencies.
    """
    if not isinstance(cfg, dict):
        raise ValueError("Configuration must be a YAML object.")

    for section in ("run", "data", "universe", "reporting"):
        if not isinstance(cfg.get(section), dict):
            raise ValueError(f"Missing required configuration section: '{section}'")

    engine = cfg.get("engine") or {}
    if engine.get("initial_cash", 1) <= 0:
        raise ValueError("engine.initial_cash must be positive.")
    for key in ("history_window", "week_lookback", "month_lookback"):
        if engine.get(key, 1) < 1:
            raise ValueError(f"engine.{key} must be at least 1.")
    if engine.get("consistency_tolerance", 0) < 0:
        raise ValueError("engine.consistency_tolerance must not be negative.")

    data = cfg["data"]
    if data.get("source") != "yfinance":
        raise ValueError(f"Unsupported data.source: {data.get('source')}")
    if data.get("batch_size", 1) < 1:
        raise ValueError("data.batch_size must be at least 1.")
    for key in ("batch_delay", "max_jitter"):
        if data.get(key, 0) < 0:
            raise ValueError(f"data.{key} must not be negative.")
    if data.get("placeholder_days", 1) < 1 or data.get("placeholder_price", 1) <= 0:
        raise ValueError("data.placeholder_days and data.placeholder_price must be positive.")

    if cfg["universe"].get("count", 1) < 1:
        raise ValueError("universe.count must be at least 1.")

    unknown_formats = set(cfg["reporting"].get("output_formats") or []) - _OUTPUT_FORMATS
    if unknown_formats:
        raise ValueError(f"Unknown reporting.output_formats: {sorted(unknown_formats)}")

    level = str((cfg.get("logging") or {}).get("level", "INFO")).upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"Unknown logging.level: {level}")


# impure
def load_config(config_path: Path) -> Config:
    """
    Loads and validates a YAML configuration file into a Config object.
    #impure: Reads from the filesystem.
    """
    if not config_path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML syntax in {config_path}: {e}") from e

    _validate_config(raw_config)

    try:
        # The validation above gives us confidence that the structure is correct.
        return cast(Config, _from_dict(Config, raw_config))
    except (TypeError, KeyError) as e:
        raise ValueError(f"Configuration validation failed: missing or invalid key. Details: {e}") from e
