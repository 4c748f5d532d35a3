"""
CLI entry point for the stratsim application.
"""
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from stratsim.config import Config, load_config
from stratsim.data import discover_symbols, fetch_and_snapshot, strategy_date_range
from stratsim.pipeline import PipelineError, run_pipeline, select_symbols
from stratsim.strategy import Strategy, TimeRange, load_strategy

# Console is created once and passed down. Log to stderr to separate from
# potential data output to stdout.
app = typer.Typer(pretty_exceptions_show_locals=False, help="Backtest trading strategies on daily price data.")
console = Console(stderr=True)


def _setup_logging(config: Config) -> None:
    logging.basicConfig(
        level=config.logging.level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _load_config_or_exit(config_path: Path) -> Config:
    """Helper to load config and exit on failure."""
    try:
        config = load_config(config_path)
    except (ValueError, FileNotFoundError) as e:
        console.print(f"[bold red]Configuration Error:[/bold red] {e}")
        raise typer.Exit(code=1)
    _setup_logging(config)
    return config


def _load_strategy_or_exit(strategy_path: Path) -> Strategy:
    """Helper to load a strategy and exit on failure."""
    try:
        return load_strategy(strategy_path)
    except (ValueError, FileNotFoundError) as e:
        console.print(f"[bold red]Strategy Error:[/bold red] {e}")
        raise typer.Exit(code=1)


@app.command()
def run(
    config_path: Path = typer.Option(
        ..., "--config", "-c", help="Path to the YAML configuration file.", exists=True
    ),
    strategy_path: Path = typer.Option(
        ..., "--strategy", "-s", help="Path to the JSON or YAML strategy file.", exists=True
    ),
):
    """Execute the backtest pipeline for a strategy."""
    config = _load_config_or_exit(config_path)
    strategy = _load_strategy_or_exit(strategy_path)

    try:
        result = run_pipeline(config, strategy, console)
    except PipelineError as e:
        console.print(f"[bold red]Pipeline Error:[/bold red] {e}")
        raise typer.Exit(code=1)

    metrics = result.metrics
    console.print(
        f"Total return: {metrics.total_return:.2f}% | "
        f"Max drawdown: {metrics.max_drawdown:.2f}% | "
        f"Sharpe: {metrics.sharpe_ratio:.2f}"
    )
    console.print("[bold green]Run command finished.[/bold green]")


@app.command(name="refresh-data")
def refresh_data(
    config_path: Path = typer.Option(
        ..., "--config", "-c", help="Path to the YAML configuration file.", exists=True
    ),
    strategy_path: Optional[Path] = typer.Option(
        None, "--strategy", "-s", help="Refresh the universe and date range of this strategy.", exists=True
    ),
):
    """
    Refresh data snapshots from the source (e.g., yfinance).
    """
    config = _load_config_or_exit(config_path)
    console.print("Starting data refresh...")

    if strategy_path is not None:
        strategy = _load_strategy_or_exit(strategy_path)
        symbols_to_refresh = select_symbols(strategy, config)
        time_range = strategy.time_range
    else:
        time_range = TimeRange()
        symbols_to_refresh = discover_symbols(config)
        if symbols_to_refresh:
            console.print(f"Found {len(symbols_to_refresh)} existing symbols. Refreshing them.")
        else:
            symbols_to_refresh = list(config.universe.default_symbols)
            if not symbols_to_refresh:
                console.print("[yellow]Warning: No symbols to refresh.[/yellow]")
                console.print("No snapshots found and 'universe.default_symbols' is empty.")
                raise typer.Exit()
            console.print("No existing snapshots found. Performing initial download for symbols in config.")

    start, end = strategy_date_range(time_range)
    failed_symbols = fetch_and_snapshot(symbols_to_refresh, start, end, config)

    if failed_symbols:
        console.print(f"[bold yellow]Warning:[/bold yellow] Failed to fetch data for {len(failed_symbols)} symbols:")
        for symbol in sorted(failed_symbols):
            console.print(f" - {symbol}")

    console.print("[bold green]Data refresh completed.[/bold green]")


if __name__ == "__main__":
    app()
