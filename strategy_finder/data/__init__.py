"""Bar data sources."""

from strategy_finder.data.csv_source import CsvDataError, CsvDataSource, frame_to_bars

__all__ = ["CsvDataError", "CsvDataSource", "frame_to_bars"]
