"""CSV bar files as a finder data source.

Files are named ``{symbol}_{interval}.csv`` and hold the columns
``time, open, high, low, close`` and optionally ``volume``. Times may be
unix seconds, unix milliseconds or ISO timestamps.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import pandas as pd

from strategy_finder.types import Bar

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("time", "open", "high", "low", "close")

# Epoch values above this are milliseconds
_MILLISECONDS_THRESHOLD = 10**11


class CsvDataError(Exception):
    """A bar file is missing or malformed."""

    pass


def _time_to_seconds(column: pd.Series) -> pd.Series:
    if pd.api.types.is_numeric_dtype(column):
        seconds = column.astype("float64")
        return seconds.where(seconds < _MILLISECONDS_THRESHOLD, seconds / 1000)
    parsed = pd.to_datetime(column, utc=True)
    return (parsed - pd.Timestamp(0, tz="UTC")).dt.total_seconds()


def frame_to_bars(df: pd.DataFrame) -> list[Bar]:
    """Convert an OHLCV frame to bars sorted by time, duplicates dropped.

    Raises:
        CsvDataError: If a required column is missing.
    """
    columns = {c.lower().strip(): c for c in df.columns}
    missing = [c for c in REQUIRED_COLUMNS if c not in columns]
    if missing:
        raise CsvDataError(f"Missing columns: {', '.join(missing)}")

    frame = pd.DataFrame(
        {name: df[columns[name]] for name in (*REQUIRED_COLUMNS, "volume") if name in columns}
    )
    if "volume" not in frame:
        frame["volume"] = 0.0
    frame["time"] = _time_to_seconds(frame["time"])
    frame = frame.dropna(subset=list(REQUIRED_COLUMNS))
    frame = frame.drop_duplicates(subset="time", keep="last").sort_values("time")

    return [
        Bar(
            time=float(row.time),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for row in frame.itertuples(index=False)
    ]


class CsvDataSource:
    """Reads bars from ``{directory}/{symbol}_{interval}.csv``.

    Args:
        directory: Folder holding the CSV files.
    """

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)

    def path_for(self, symbol: str, interval: str) -> Path:
        return self.directory / f"{symbol}_{interval}.csv"

    def load(self, symbol: str, interval: str) -> list[Bar]:
        """Read a bar file synchronously.

        Raises:
            FileNotFoundError: If the file does not exist.
            CsvDataError: If the file cannot be parsed.
        """
        path = self.path_for(symbol, interval)
        if not path.exists():
            raise FileNotFoundError(f"Bar file not found: {path}")
        try:
            df = pd.read_csv(path)
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
            raise CsvDataError(f"Cannot parse {path}: {e}") from e
        bars = frame_to_bars(df)
        logger.info("Loaded %d bars from %s", len(bars), path)
        return bars

    async def fetch_data(self, symbol: str, interval: str) -> list[Bar]:
        return await asyncio.to_thread(self.load, symbol, interval)


__all__ = ["CsvDataError", "CsvDataSource", "frame_to_bars"]
