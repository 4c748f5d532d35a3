"""Tests for configuration loading and validation."""
import copy
from pathlib import Path
from typing import Any, Dict, cast

import pytest
import yaml

from stratsim.config import Config, EngineConfig, _from_dict, load_config

# A complete and valid dictionary that can be used to construct a Config object.
FULL_CONFIG_DICT: Dict[str, Any] = {
    "run": {"name": "test_run", "output_dir": "test_output"},
    "data": {
        "source": "yfinance", "interval": "1d", "snapshot_dir": "test_snapshots", "refresh": False,
        "batch_size": 2, "batch_delay": 0, "max_jitter": 0,
    },
    "universe": {"default_categories": ["blue_chip"], "count": 2, "default_symbols": ["AAPL", "MSFT"]},
    "engine": {"initial_cash": 5000, "history_window": 40},
    "reporting": {"output_formats": ["json"]},
    "logging": {"level": "debug"},
}


def write_config(path: Path, config_dict: Dict[str, Any]) -> Path:
    with open(path, "w", encoding="utf-8") as f:
        yaml.dump(config_dict, f)
    return path


@pytest.fixture
def temp_config_file(tmp_path: Path) -> Path:
    """Pytest fixture to create a temporary, valid config file."""
    config_dict = copy.deepcopy(FULL_CONFIG_DICT)
    config_dict["data"]["snapshot_dir"] = str(tmp_path)
    return write_config(tmp_path / "config.yaml", config_dict)


def test_load_valid_config(temp_config_file: Path) -> None:
    """Test loading a valid configuration file returns a Config object."""
    config = load_config(temp_config_file)
    assert isinstance(config, Config)
    assert config.run.name == "test_run"
    assert config.run.output_dir == Path("test_output")
    assert config.data.snapshot_dir == temp_config_file.parent
    assert config.universe.default_symbols == ["AAPL", "MSFT"]


def test_load_example_config_file() -> None:
    """Test that the main example config file is valid."""
    config = load_config(Path("config/example.yaml"))
    assert isinstance(config, Config)
    assert config.engine == EngineConfig()


def test_missing_config_file() -> None:
    """Test error handling for missing config file."""
    with pytest.raises(FileNotFoundError):
        load_config(Path("nonexistent.yaml"))


def test_invalid_yaml_syntax(tmp_path: Path) -> None:
    """Test error handling for invalid YAML syntax."""
    config_path = tmp_path / "invalid.yaml"
    config_path.write_text("run: { name: test")
    with pytest.raises(ValueError, match="Invalid YAML syntax"):
        load_config(config_path)


def test_engine_values_are_floats_and_defaults_fill_in(temp_config_file: Path) -> None:
    engine = load_config(temp_config_file).engine
    assert engine.initial_cash == 5000.0
    assert isinstance(engine.initial_cash, float)
    assert engine.history_window == 40
    assert engine.week_lookback == 5
    assert engine.month_lookback == 20


def test_from_dict_converts_paths_and_leaves_strings() -> None:
    config = cast(Config, _from_dict(Config, copy.deepcopy(FULL_CONFIG_DICT)))
    assert config.data.snapshot_dir == Path("test_snapshots")
    assert config.run.name == "test_run"
    assert config.universe.default_categories == ["blue_chip"]


def test_optional_sections_default() -> None:
    config_dict = copy.deepcopy(FULL_CONFIG_DICT)
    del config_dict["engine"]
    del config_dict["logging"]
    config = cast(Config, _from_dict(Config, config_dict))
    assert config.engine == EngineConfig()
    assert config.logging.level == "INFO"


@pytest.mark.parametrize(
    "section, key, value, message",
    [
        ("engine", "initial_cash", 0, "engine.initial_cash must be positive"),
        ("engine", "history_window", 0, "engine.history_window must be at least 1"),
        ("engine", "consistency_tolerance", -1, "must not be negative"),
        ("data", "source", "csv", "Unsupported data.source"),
        ("data", "batch_size", 0, "data.batch_size must be at least 1"),
        ("data", "batch_delay", -0.5, "data.batch_delay must not be negative"),
        ("data", "placeholder_price", 0, "must be positive"),
        ("universe", "count", 0, "universe.count must be at least 1"),
        ("reporting", "output_formats", ["json", "html"], "Unknown reporting.output_formats"),
        ("logging", "level", "chatty", "Unknown logging.level"),
    ],
)
def test_validation_errors(tmp_path: Path, section: str, key: str, value: Any, message: str) -> None:
    invalid_config = copy.deepcopy(FULL_CONFIG_DICT)
    invalid_config[section][key] = value
    config_path = write_config(tmp_path / "invalid.yaml", invalid_config)

    with pytest.raises(ValueError, match=message):
        load_config(config_path)


def test_missing_section_fails(tmp_path: Path) -> None:
    invalid_config = copy.deepcopy(FULL_CONFIG_DICT)
    del invalid_config["universe"]
    config_path = write_config(tmp_path / "invalid.yaml", invalid_config)

    with pytest.raises(ValueError, match="Missing required configuration section: 'universe'"):
        load_config(config_path)


def test_unknown_key_fails(tmp_path: Path) -> None:
    invalid_config = copy.deepcopy(FULL_CONFIG_DICT)
    invalid_config["run"]["seed"] = 42
    config_path = write_config(tmp_path / "invalid.yaml", invalid_config)

    with pytest.raises(ValueError, match="missing or invalid key"):
        load_config(config_path)
