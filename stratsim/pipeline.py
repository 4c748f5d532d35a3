"""
The backtesting pipeline.

This module provides a single, unified entry point for running a strategy
end to end: universe resolution, data loading, simulation and reporting.
"""
import logging
from pathlib import Path
from typing import List

from rich.console import Console

from stratsim.config import Config
from stratsim.data import load_market_data, resolve_universe, strategy_date_range
from stratsim.engine import run_backtest
from stratsim.reporting import generate_all_reports
from stratsim.strategy import Strategy, Universe
from stratsim.types import BacktestResult

__all__ = ["run_pipeline", "select_symbols", "PipelineError"]

log = logging.getLogger(__name__)


class PipelineError(Exception):
    """Custom exception for pipeline failures."""


def select_symbols(strategy: Strategy, config: Config) -> List[str]:
    """
    Symbols for a strategy. A strategy without its own universe uses the
    configured default categories.
    """
    universe = strategy.universe
    if "universe" not in strategy.model_fields_set:
        universe = Universe(
            categories=list(config.universe.default_categories), count=config.universe.count
        )
    return resolve_universe(universe, config.universe.default_symbols)


# impure
def run_pipeline(config: Config, strategy: Strategy, console: Console) -> BacktestResult:
    """
    Execute the full backtest pipeline from data loading to report generation.
    """
    # Step 1: Setup - Universe and Data Loading
    console.rule("[bold]1. Setting up Run[/bold]")
    symbols = select_symbols(strategy, config)
    if not symbols:
        raise PipelineError("Universe is empty. Check the strategy universe or config `universe` settings.")
    console.print(f"Universe: {', '.join(symbols)}")

    start, end = strategy_date_range(strategy.time_range)
    console.print(f"Date range: {start} to {end}")
    market_data = load_market_data(symbols, start, end, config, console)
    if not market_data:
        raise PipelineError("No market data loaded. Check the symbols and date range.")

    # Step 2: Simulation
    console.rule("[bold]2. Executing Backtest[/bold]")
    result = run_backtest(strategy, market_data, config.engine)
    if result.error:
        raise PipelineError(f"Backtest failed: {result.error}")
    console.print(f"Backtest complete: {len(result.transactions)} transactions.")
    if not result.metrics.values_consistent:
        console.print("[yellow]Warning: final value does not reconcile with the ledger.[/yellow]")

    # Step 3: Reporting
    console.rule("[bold]3. Generating Reports[/bold]")
    run_dir = Path(config.run.output_dir)
    run_dir.mkdir(parents=True, exist_ok=True)
    console.print(f"Run artifacts will be saved to: [cyan]{run_dir}[/cyan]")
    generate_all_reports(config, result, run_dir, console)
    log.info(f"Run '{config.run.name}' finished with {len(result.transactions)} transactions")
    return result
