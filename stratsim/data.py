"""
Universe resolution, market data fetching, and snapshot management.
"""
import logging
import random
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq
import yfinance as yf
from rich.console import Console

from stratsim.bars import prepare_bars
from stratsim.config import Config, DataConfig
from stratsim.strategy import TimeRange, Universe

__all__ = [
    "CATEGORY_TABLE",
    "DEFAULT_SYMBOLS",
    "resolve_universe",
    "strategy_date_range",
    "placeholder_bars",
    "fetch_price_history",
    "fetch_and_snapshot",
    "load_snapshots",
    "discover_symbols",
    "load_market_data",
]

log = logging.getLogger(__name__)


# §1. Universe
# --------------------------------------------------------------------------------------

CATEGORY_TABLE: Dict[str, List[str]] = {
    "blue_chip": ["AAPL", "MSFT", "GOOG", "AMZN", "META", "BRK-B", "JNJ", "WMT", "PG", "JPM", "V", "UNH", "HD", "DIS", "KO"],
    "penny_stock": ["SNDL", "CTRM", "XSPA", "EXPR", "NBEV", "CIDM", "SRNE", "FCEL", "SIRI", "TXMD", "NAKD", "SOLO", "GNUS", "IDEX", "PLUG"],
    "tech": ["AAPL", "MSFT", "GOOG", "AMZN", "META", "TSLA", "NVDA", "ADBE", "CRM", "INTC", "AMD", "NFLX", "ORCL", "CSCO", "PYPL"],
    "finance": ["JPM", "BAC", "WFC", "C", "GS", "MS", "AXP", "V", "MA", "BLK", "SCHW", "PNC", "TFC", "USB", "COF"],
    "banking": ["JPM", "BAC", "WFC", "C", "GS", "USB", "PNC", "TFC", "FITB", "KEY", "RF", "CFG", "HBAN", "MTB", "ZION"],
    "healthcare": ["JNJ", "UNH", "PFE", "MRK", "ABT", "TMO", "ABBV", "DHR", "LLY", "BMY", "AMGN", "CVS", "MDT", "ISRG", "GILD"],
    "pharma": ["JNJ", "PFE", "MRK", "ABBV", "LLY", "BMY", "AMGN", "GILD", "BIIB", "VRTX", "REGN", "ALXN", "JAZZ", "INCY", "NBIX"],
    "energy": ["XOM", "CVX", "COP", "EOG", "SLB", "PSX", "VLO", "MPC", "KMI", "OXY", "DVN", "WMB", "HAL", "BKR", "PXD"],
    "oil": ["XOM", "CVX", "COP", "EOG", "OXY", "PXD", "DVN", "MRO", "APA", "HES", "FANG", "CLR", "MUR", "EQT", "AR"],
    "retail": ["WMT", "AMZN", "HD", "TGT", "COST", "LOW", "TJX", "BBY", "DG", "DLTR", "KR", "ROST", "EBAY", "ULTA", "GPS"],
    "consumer": ["WMT", "PG", "KO", "PEP", "COST", "MCD", "NKE", "SBUX", "TGT", "HD", "YUM", "DPZ", "EL", "CL", "CLX"],
    "ecommerce": ["AMZN", "EBAY", "ETSY", "SHOP", "W", "CHWY", "FTCH", "OSTK", "WISH", "POSH", "JD", "BABA", "BZUN", "CPNG", "MELI"],
    "etf": ["SPY", "QQQ", "IWM", "DIA", "VTI", "GLD", "SLV", "EEM", "XLF", "XLE", "XLK", "XLV", "XLI", "VGT", "ARKK"],
    "index": ["SPY", "QQQ", "IWM", "DIA", "VTI", "VOO", "VXX", "TQQQ", "SQQQ", "UVXY", "VIXY", "SVXY", "SPXL", "SPXS", "VXXB"],
    "crypto": ["COIN", "RIOT", "MARA", "MSTR", "SI", "BTBT", "HUT", "BITF", "ARBK", "CLSK", "MOGO", "NCTY", "EBON", "SOS", "CIFR"],
    "volatile": ["GME", "AMC", "BBBY", "BB", "TSLA", "PLTR", "WISH", "CLOV", "TLRY", "BYND", "NIO", "SPCE", "PLUG", "FUBO", "RIDE"],
    "meme": ["GME", "AMC", "BBBY", "BB", "NOK", "KOSS", "EXPR", "NAKD", "SNDL", "CLOV", "WISH", "WKHS", "CLNE", "UWMC", "PLTR"],
    "dividend": ["VZ", "T", "KO", "PEP", "PG", "JNJ", "XOM", "CVX", "MO", "PM", "MMM", "IBM", "ABBV", "O", "MCD"],
    "travel": ["MAR", "HLT", "H", "CCL", "NCLH", "RCL", "DAL", "UAL", "LUV", "AAL", "JBLU", "ALK", "BKNG", "EXPE", "TRIP"],
    "airline": ["DAL", "UAL", "LUV", "AAL", "JBLU", "ALK", "SAVE", "HA", "SKYW", "MESA", "CPA", "VLRS", "ZNH", "CEA", "GOL"],
    "realestate": ["AMT", "PLD", "CCI", "PSA", "EQIX", "O", "DLR", "AVB", "WELL", "SPG", "EQR", "INVH", "ARE", "ESS", "MAA"],
    "industrial": ["HON", "UNP", "UPS", "BA", "CAT", "DE", "GE", "LMT", "RTX", "MMM", "EMR", "CSX", "ETN", "ITW", "FDX"],
    "ev": ["TSLA", "RIVN", "LCID", "NIO", "XPEV", "LI", "F", "GM", "GOEV", "FSR", "NKLA", "RIDE", "WKHS", "HYLN", "BLNK"],
    "semiconductor": ["NVDA", "INTC", "AMD", "TSM", "AVGO", "QCOM", "TXN", "MU", "AMAT", "KLAC", "LRCX", "ADI", "MRVL", "SWKS", "MCHP"],
    "cloud": ["MSFT", "AMZN", "GOOG", "CRM", "ORCL", "IBM", "NET", "FSLY", "DDOG", "ESTC", "ZS", "CRWD", "OKTA", "SNOW", "TWLO"],
    "saas": ["CRM", "WDAY", "NOW", "TEAM", "ZM", "DOCU", "OKTA", "CRWD", "ZS", "DDOG", "NET", "SHOP", "SNOW", "BILL", "HUBS"],
}

_CATEGORY_ALIASES = {
    "technology": "tech",
    "financial": "finance",
    "health": "healthcare",
    "etfs": "etf",
    "indices": "index",
    "bitcoin": "crypto",
    "reddit": "meme",
    "income": "dividend",
    "reit": "realestate",
    "manufacturing": "industrial",
    "electric": "ev",
    "chip": "semiconductor",
}

DEFAULT_SYMBOLS = ["AAPL", "MSFT", "GOOG", "AMZN", "META", "TSLA", "NVDA", "JPM", "V", "JNJ"]

# Upper-case words that look like tickers but come from prose.
_COMMON_WORDS = {"IF", "FOR", "AND", "OR", "THE", "BY", "BUY", "SELL"}


def _category_symbols(name: str) -> Optional[List[str]]:
    key = name.strip().lower().replace(" ", "_")
    key = _CATEGORY_ALIASES.get(key, key)
    return CATEGORY_TABLE.get(key)


def _looks_like_ticker(token: str) -> bool:
    return 2 <= len(token) <= 5 and token == token.upper() and token not in _COMMON_WORDS


def resolve_universe(universe: Universe, default_symbols: Optional[List[str]] = None) -> List[str]:
    """
    Turns a strategy universe into a de-duplicated symbol list.

    Category names contribute the first `count` symbols of their table entry;
    short upper-case tokens are taken as explicit tickers. If nothing
    resolves, the first `count` default symbols are used.
    """
    symbols: List[str] = []
    for category in universe.categories:
        members = _category_symbols(category)
        if members:
            symbols.extend(members[: universe.count])

    symbols.extend(c for c in universe.categories if _looks_like_ticker(c))

    if not symbols:
        fallback = default_symbols or DEFAULT_SYMBOLS
        log.info(f"No known categories in {universe.categories}; using default symbols")
        symbols = list(fallback[: universe.count])

    return list(dict.fromkeys(symbols))


def strategy_date_range(time_range: TimeRange) -> Tuple[date, date]:
    """January 1st of the start year to December 31st of the end year."""
    return date(time_range.start, 1, 1), date(time_range.end, 12, 31)


# §2. Fetching
# --------------------------------------------------------------------------------------


def placeholder_bars(end: date, days: int = 30, price: float = 100.0) -> pd.DataFrame:
    """A flat daily series standing in for a symbol that could not be fetched."""
    index = pd.date_range(end=pd.Timestamp(end) - pd.Timedelta(days=1), periods=days, freq="D", name="date")
    df = pd.DataFrame(
        {"Open": price, "High": price, "Low": price, "Close": price, "Volume": 0.0}, index=index
    )
    df.attrs["placeholder"] = True
    return df


def _fetch_symbol(symbol: str, start: date, end: date, interval: str, max_jitter: float) -> pd.DataFrame:
    """#impure: Sleeps, then calls the yfinance API."""
    time.sleep(random.uniform(0, max_jitter))
    # yfinance treats `end` as exclusive.
    return yf.Ticker(symbol).history(
        start=start,
        end=end + timedelta(days=1),
        interval=interval,
        auto_adjust=True,
        prepost=False,
        actions=False,
    )


# impure
def fetch_price_history(
    symbols: List[str], start: date, end: date, data_config: DataConfig
) -> Dict[str, pd.DataFrame]:
    """
    Fetches prepared daily bars for each symbol from yfinance.

    Symbols are fetched in batches of `batch_size`, concurrently within a
    batch, with a random pre-request jitter and a pause between batches.
    A symbol whose request raises gets a flat placeholder series; a symbol
    for which the API returns no rows is left out.
    #impure: Accesses the network.
    """
    fetched: Dict[str, pd.DataFrame] = {}
    batch_size = data_config.batch_size

    for offset in range(0, len(symbols), batch_size):
        batch = symbols[offset : offset + batch_size]
        with ThreadPoolExecutor(max_workers=len(batch)) as executor:
            futures = {
                executor.submit(
                    _fetch_symbol, sym, start, end, data_config.interval, data_config.max_jitter
                ): sym
                for sym in batch
            }
            for future in as_completed(futures):
                sym = futures[future]
                try:
                    data = future.result()
                except Exception as e:
                    log.warning(f"Failed to fetch {sym}: {e}. Using a flat placeholder series.")
                    fetched[sym] = placeholder_bars(
                        end, data_config.placeholder_days, data_config.placeholder_price
                    )
                    continue

                if data.empty:
                    log.warning(f"No data returned for {sym}. Skipping.")
                    continue
                fetched[sym] = prepare_bars(data)
                log.debug(f"Fetched {len(fetched[sym])} bars for {sym}")

        if offset + batch_size < len(symbols):
            time.sleep(data_config.batch_delay)

    return {sym: fetched[sym] for sym in symbols if sym in fetched}


# §3. Snapshots
# --------------------------------------------------------------------------------------


def _get_run_metadata(config: Config, start: date, end: date) -> Dict[str, str]:
    """Generates metadata for the data snapshot."""
    try:
        git_hash = subprocess.check_output(
            ["git", "rev-parse", "--short", "HEAD"], stderr=subprocess.DEVNULL
        ).strip().decode()
    except (subprocess.CalledProcessError, FileNotFoundError):
        git_hash = "unknown"
    return {
        "fetch_utc": datetime.now(timezone.utc).isoformat(),
        "yfinance_version": yf.__version__,
        "git_hash": git_hash,
        "run_name": config.run.name,
        "start_date": start.isoformat(),
        "end_date": end.isoformat(),
    }


def _get_snapshot_dir(config: Config) -> Path:
    """Constructs the snapshot directory path from config."""
    return config.data.snapshot_dir / f"{config.data.source}_{config.data.interval}"


def _write_snapshot(path: Path, df: pd.DataFrame, metadata: Dict[str, str]) -> None:
    table = pa.Table.from_pandas(df)
    table = table.replace_schema_metadata({
        **(table.schema.metadata or {}),
        **{k.encode(): str(v).encode() for k, v in metadata.items()},
    })
    pq.write_table(table, path)


def _snapshot_covers(path: Path, start: date, end: date) -> bool:
    """Whether a snapshot was fetched for a range containing [start, end]."""
    metadata = pq.read_schema(path).metadata or {}
    try:
        snap_start = date.fromisoformat(metadata[b"start_date"].decode())
        snap_end = date.fromisoformat(metadata[b"end_date"].decode())
    except (KeyError, ValueError):
        return False
    return snap_start <= start and end <= snap_end


def discover_symbols(config: Config) -> List[str]:
    """Discovers all available symbols by scanning the snapshot directory."""
    snapshot_dir = _get_snapshot_dir(config)
    if not snapshot_dir.exists():
        return []
    return sorted([p.stem for p in snapshot_dir.glob("*.parquet")])


# impure
def _fetch_into_snapshots(
    symbols: List[str], start: date, end: date, config: Config
) -> Dict[str, pd.DataFrame]:
    """
    Fetches symbols and snapshots every real series.
    Returns the fetched frames; placeholders are returned but never written,
    symbols with an empty response are absent.
    #impure: Accesses network and filesystem.
    """
    snapshot_dir = _get_snapshot_dir(config)
    snapshot_dir.mkdir(parents=True, exist_ok=True)

    fetched = fetch_price_history(symbols, start, end, config.data)
    metadata = _get_run_metadata(config, start, end)

    for symbol, df in fetched.items():
        if df.attrs.get("placeholder"):
            continue
        _write_snapshot(snapshot_dir / f"{symbol}.parquet", df, metadata)
        log.debug(f"Saved snapshot for {symbol}")
    return fetched


# impure
def fetch_and_snapshot(symbols: List[str], start: date, end: date, config: Config) -> List[str]:
    """
    Fetch data from yfinance and save to parquet snapshots.
    Returns a list of symbols that failed to download.
    #impure: Accesses network and filesystem.
    """
    fetched = _fetch_into_snapshots(symbols, start, end, config)
    failed_symbols = [
        s for s in symbols if s not in fetched or fetched[s].attrs.get("placeholder")
    ]
    if failed_symbols:
        log.warning(f"Failed to fetch data for {len(failed_symbols)} symbols: {failed_symbols}")
    return failed_symbols


# impure
def load_snapshots(symbols: List[str], config: Config) -> Dict[str, pd.DataFrame]:
    """
    Load existing data snapshots for a list of symbols.
    #impure: Reads from the filesystem.
    """
    snapshot_dir = _get_snapshot_dir(config)
    if not snapshot_dir.exists():
        raise FileNotFoundError(f"Snapshot directory not found: {snapshot_dir}")

    loaded_data = {}
    for symbol in symbols:
        parquet_path = snapshot_dir / f"{symbol}.parquet"
        if not parquet_path.is_file():
            raise FileNotFoundError(f"Missing snapshot for symbol: {symbol} at {parquet_path}")

        df = pd.read_parquet(parquet_path)
        required_cols = {"Open", "High", "Low", "Close", "Volume"}
        if not required_cols.issubset(df.columns):
            raise ValueError(f"Data for {symbol} is missing required columns.")

        loaded_data[symbol] = prepare_bars(df)

    return loaded_data


# impure
def load_market_data(
    symbols: List[str], start: date, end: date, config: Config, console: Console
) -> Dict[str, pd.DataFrame]:
    """
    Returns bars for each symbol over [start, end], in `symbols` order.

    Snapshots covering the range are reused unless `data.refresh` is set;
    everything else is fetched and snapshotted first. Symbols whose request
    raised are simulated on a placeholder series. Symbols for which the API
    returned no rows are left out.
    #impure: Accesses network and filesystem.
    """
    snapshot_dir = _get_snapshot_dir(config)

    def is_cached(symbol: str) -> bool:
        path = snapshot_dir / f"{symbol}.parquet"
        return path.is_file() and _snapshot_covers(path, start, end)

    to_fetch = list(symbols) if config.data.refresh else [s for s in symbols if not is_cached(s)]
    fetched: Dict[str, pd.DataFrame] = {}
    if to_fetch:
        console.print(f"Fetching {len(to_fetch)} symbols from {config.data.source}...")
        fetched = _fetch_into_snapshots(to_fetch, start, end, config)

    placeholders = {s for s, df in fetched.items() if df.attrs.get("placeholder")}
    missing = {s for s in to_fetch if s not in fetched}
    available = [s for s in symbols if s not in placeholders and s not in missing]
    cached = load_snapshots(available, config) if available else {}

    market: Dict[str, pd.DataFrame] = {}
    for symbol in symbols:
        if symbol in missing:
            log.warning(f"No data received for {symbol}. Leaving it out of the run.")
            continue
        if symbol in placeholders:
            console.print(f"[yellow]Using placeholder data for {symbol}.[/yellow]")
            market[symbol] = fetched[symbol]
            continue
        df = cached[symbol].loc[pd.Timestamp(start) : pd.Timestamp(end)]
        if df.empty:
            log.warning(f"No bars for {symbol} between {start} and {end}")
            continue
        market[symbol] = df

    console.print(f"Loaded market data for {len(market)} of {len(symbols)} symbols.")
    return market
