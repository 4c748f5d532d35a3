"""
Tests for CLI interface.
"""
import copy
import json
from datetime import date
from pathlib import Path

import yaml
from typer.testing import CliRunner

from cli import app
from stratsim.pipeline import PipelineError
from stratsim.types import BacktestResult, Metrics

# Default CliRunner mixes stderr and stdout into the .output attribute,
# which is what we want for testing console output.
runner = CliRunner()


# Using a full, valid config dictionary to prevent KeyErrors during tests.
FULL_CONFIG_DICT = {
    "run": {"name": "test_cli_run", "output_dir": ""},
    "data": {"source": "yfinance", "interval": "1d", "snapshot_dir": "", "refresh": False},
    "universe": {"default_categories": ["tech"], "count": 1, "default_symbols": ["AAPL"]},
    "reporting": {"output_formats": ["json"]},
    "logging": {"level": "WARNING"},
}

STRATEGY = {
    "actions": [{"type": "buy", "condition": {"type": "simple", "value": -5}}],
    "universe": {"categories": ["energy"], "count": 1},
    "timeRange": {"start": 2021, "end": 2022},
}


def create_temp_config(tmp_path: Path, **universe) -> Path:
    """Creates a temporary, valid YAML config file for testing."""
    config_path = tmp_path / "test_config.yaml"
    config_dict = copy.deepcopy(FULL_CONFIG_DICT)
    config_dict["data"]["snapshot_dir"] = str(tmp_path)
    config_dict["run"]["output_dir"] = str(tmp_path)
    config_dict["universe"].update(universe)
    config_path.write_text(yaml.dump(config_dict))
    return config_path


def create_temp_strategy(tmp_path: Path) -> Path:
    strategy_path = tmp_path / "strategy.json"
    strategy_path.write_text(json.dumps(STRATEGY))
    return strategy_path


def test_cli_help() -> None:
    """Test CLI --help flag."""
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "Backtest trading strategies" in result.output


def test_cli_run_with_missing_config_file(tmp_path: Path) -> None:
    """Test that `run` exits if the config file does not exist."""
    result = runner.invoke(
        app, ["run", "--config", "nonexistent.yaml", "--strategy", str(create_temp_strategy(tmp_path))]
    )
    assert result.exit_code == 2
    assert "does not exist" in result.output


def test_cli_run_command_runs(mocker, tmp_path: Path) -> None:
    """Tests that the `run` command hands the loaded strategy to the pipeline."""
    m_run = mocker.patch(
        "cli.run_pipeline",
        return_value=BacktestResult(metrics=Metrics(total_return=1.5, max_drawdown=0.5, sharpe_ratio=2.0)),
    )
    config_path = create_temp_config(tmp_path)
    strategy_path = create_temp_strategy(tmp_path)

    result = runner.invoke(app, ["run", "--config", str(config_path), "--strategy", str(strategy_path)])

    assert result.exit_code == 0, f"CLI exited with error: {result.output}"
    assert "Total return: 1.50%" in result.output
    assert "Run command finished" in result.output
    config, strategy, _ = m_run.call_args.args
    assert config.run.name == "test_cli_run"
    assert strategy.universe.categories == ["energy"]


def test_cli_run_pipeline_error_exits(mocker, tmp_path: Path) -> None:
    mocker.patch("cli.run_pipeline", side_effect=PipelineError("No market data loaded."))
    config_path = create_temp_config(tmp_path)
    strategy_path = create_temp_strategy(tmp_path)

    result = runner.invoke(app, ["run", "--config", str(config_path), "--strategy", str(strategy_path)])

    assert result.exit_code == 1
    assert "No market data loaded" in result.output


def test_cli_run_invalid_strategy_exits(tmp_path: Path) -> None:
    config_path = create_temp_config(tmp_path)
    strategy_path = tmp_path / "empty.json"
    strategy_path.write_text('{"actions": []}')

    result = runner.invoke(app, ["run", "--config", str(config_path), "--strategy", str(strategy_path)])

    assert result.exit_code == 1
    assert "Strategy Error" in result.output


def test_cli_refresh_command_for_strategy(mocker, tmp_path: Path) -> None:
    """Tests refresh-data for the universe and years of a strategy."""
    m_fetch = mocker.patch("cli.fetch_and_snapshot", return_value=[])
    m_discover = mocker.patch("cli.discover_symbols")
    config_path = create_temp_config(tmp_path)
    strategy_path = create_temp_strategy(tmp_path)

    result = runner.invoke(app, ["refresh-data", "--config", str(config_path), "--strategy", str(strategy_path)])

    assert result.exit_code == 0, f"CLI exited with error: {result.output}"
    m_discover.assert_not_called()
    m_fetch.assert_called_once_with(["XOM"], date(2021, 1, 1), date(2022, 12, 31), mocker.ANY)


def test_cli_refresh_command_existing_symbols(mocker, tmp_path: Path) -> None:
    """Tests refresh-data when symbols are discovered in the snapshot dir."""
    m_fetch = mocker.patch("cli.fetch_and_snapshot", return_value=["EXISTING"])
    m_discover = mocker.patch("cli.discover_symbols", return_value=["EXISTING"])
    config_path = create_temp_config(tmp_path)

    result = runner.invoke(app, ["refresh-data", "--config", str(config_path)])

    assert result.exit_code == 0, f"CLI exited with error: {result.output}"
    assert "Found 1 existing symbols" in result.output
    assert "Failed to fetch data for 1 symbols" in result.output
    m_discover.assert_called_once()
    m_fetch.assert_called_once_with(["EXISTING"], date(2010, 1, 1), mocker.ANY, mocker.ANY)


def test_cli_refresh_command_bootstrap_from_config(mocker, tmp_path: Path) -> None:
    """Tests refresh-data when no snapshots exist and it uses the config list."""
    m_fetch = mocker.patch("cli.fetch_and_snapshot", return_value=[])
    mocker.patch("cli.discover_symbols", return_value=[])
    config_path = create_temp_config(tmp_path)

    result = runner.invoke(app, ["refresh-data", "--config", str(config_path)])

    assert result.exit_code == 0, f"CLI exited with error: {result.output}"
    assert "No existing snapshots found" in result.output
    m_fetch.assert_called_once_with(["AAPL"], mocker.ANY, mocker.ANY, mocker.ANY)


def test_cli_refresh_command_no_symbols_anywhere(mocker, tmp_path: Path) -> None:
    m_fetch = mocker.patch("cli.fetch_and_snapshot", return_value=[])
    mocker.patch("cli.discover_symbols", return_value=[])
    config_path = create_temp_config(tmp_path, default_symbols=[])

    result = runner.invoke(app, ["refresh-data", "--config", str(config_path)])

    assert result.exit_code == 0
    assert "No symbols to refresh" in result.output
    m_fetch.assert_not_called()
