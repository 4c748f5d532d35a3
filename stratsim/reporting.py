"""
Generating output reports from a backtest result.
"""
import json
from pathlib import Path
from typing import Dict, List

import numpy as np
import pandas as pd
from rich.console import Console

from stratsim.config import Config
from stratsim.types import BacktestResult

__all__ = ["generate_all_reports", "transactions_frame", "build_summary"]


def _to_json_serializable(data):
    """Recursively converts non-serializable types in a dictionary."""
    if isinstance(data, dict):
        return {k: _to_json_serializable(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_to_json_serializable(i) for i in data]
    if isinstance(data, (Path, pd.Timestamp, pd.Timedelta)):
        return str(data)
    if data is None or (isinstance(data, float) and np.isnan(data)):
        return None
    if isinstance(data, np.integer):
        return int(data)
    if isinstance(data, np.floating):
        return float(data)
    if isinstance(data, np.bool_):
        return bool(data)
    if hasattr(data, "isoformat"):
        return data.isoformat()
    return data


def transactions_frame(result: BacktestResult) -> pd.DataFrame:
    """One row per ledger entry, in execution order."""
    return pd.DataFrame([tx.model_dump() for tx in result.transactions])


def _open_positions(result: BacktestResult) -> List[Dict[str, float]]:
    return [
        {
            "symbol": symbol,
            "quantity": quantity,
            "cost_basis": result.position_cost.get(symbol, 0.0),
            "avg_cost": result.position_avg_cost.get(symbol, 0.0),
        }
        for symbol, quantity in result.positions.items()
        if quantity != 0
    ]


def build_summary(result: BacktestResult, config: Config) -> dict:
    """Summary metrics and final portfolio state as plain JSON-ready data."""
    final_value = result.value_history[-1].value if result.value_history else config.engine.initial_cash
    counts = pd.Series([tx.type for tx in result.transactions], dtype=object).value_counts()
    return _to_json_serializable({
        "run_name": config.run.name,
        "initial_cash": config.engine.initial_cash,
        "final_value": final_value,
        "final_cash": result.cash,
        "metrics": result.metrics.model_dump(),
        "transaction_counts": {k: int(v) for k, v in counts.items()},
        "day_trades": sum(1 for tx in result.transactions if tx.is_eod_exit),
        "open_positions": _open_positions(result),
    })


# impure
def _generate_transactions_csv(result: BacktestResult, output_dir: Path) -> None:
    """Generates CSV files with the transaction ledger and the value history."""
    if result.transactions:
        transactions_frame(result).to_csv(output_dir / "transactions.csv", index=False)
    history = pd.DataFrame([p.model_dump() for p in result.value_history])
    history.to_csv(output_dir / "value_history.csv", index=False)


# impure
def _generate_summary_json(result: BacktestResult, config: Config, output_dir: Path) -> None:
    """Generates a JSON file with summary metrics."""
    with (output_dir / "summary.json").open("w") as f:
        json.dump(build_summary(result, config), f, indent=2)


# impure
def _generate_summary_markdown(result: BacktestResult, config: Config, output_dir: Path) -> None:
    """Generates a Markdown file with a human-readable summary."""
    summary = build_summary(result, config)
    metrics = summary["metrics"]

    md = f"# Backtest Summary: {config.run.name}\n\n"
    md += f"Period: {metrics['start_date']} to {metrics['end_date']}\n\n"
    md += "## Key Metrics\n\n"
    md += f"- **Final Value**: {summary['final_value']:.2f}\n"
    md += f"- **Total Return [%]**: {metrics['total_return']:.2f}\n"
    md += f"- **Max Drawdown [%]**: {metrics['max_drawdown']:.2f}\n"
    md += f"- **Sharpe Ratio**: {metrics['sharpe_ratio']:.2f}\n"
    md += f"- **Total Transactions**: {len(result.transactions)}\n"
    md += f"- **Day Trades**: {summary['day_trades']}\n"
    if not metrics["values_consistent"]:
        md += "\n> Final value does not reconcile with cash plus last traded prices.\n"

    if summary["open_positions"]:
        md += "\n## Open Positions\n\n"
        md += "| Symbol | Quantity | Avg Cost |\n|---|---|---|\n"
        for pos in summary["open_positions"]:
            md += f"| {pos['symbol']} | {pos['quantity']:.4f} | {pos['avg_cost']:.2f} |\n"

    (output_dir / "summary.md").write_text(md)


# impure
def generate_all_reports(
    config: Config,
    result: BacktestResult,
    run_dir: Path,
    console: Console,
) -> None:
    """
    Orchestrates the generation of all output reports.
    #impure: Writes to the filesystem.
    """
    if result.error:
        console.print(f"[bold red]Error: {result.error}. Cannot generate reports.[/bold red]")
        return

    formats = config.reporting.output_formats

    if "csv" in formats:
        console.print("Generating transaction ledger CSV...")
        _generate_transactions_csv(result, run_dir)

    if "json" in formats:
        console.print("Generating summary JSON...")
        _generate_summary_json(result, config, run_dir)

    if "markdown" in formats:
        console.print("Generating summary Markdown...")
        _generate_summary_markdown(result, config, run_dir)

    console.print("All reports generated.")
