"""Query finder run event logs with DuckDB."""

from __future__ import annotations

import re
from pathlib import Path
from typing import TYPE_CHECKING

import duckdb

from strategy_finder.logging.writer import DEFAULT_EVENTS_DIR

if TYPE_CHECKING:
    import pandas as pd

    from strategy_finder.logging.events import EventType

_SAFE_RUN_ID = re.compile(r"^[a-zA-Z0-9_\-]+$")


def _log_path(run_id: str, base_path: Path | str | None) -> Path:
    if not _SAFE_RUN_ID.match(run_id):
        msg = f"Invalid run_id: must be alphanumeric/hyphens/underscores, got '{run_id}'"
        raise ValueError(msg)
    path = Path(base_path if base_path is not None else DEFAULT_EVENTS_DIR) / f"{run_id}.jsonl"
    if not path.exists():
        msg = f"Event log not found: {path}"
        raise FileNotFoundError(msg)
    return path


def query_events_df(
    run_id: str,
    event_type: EventType | None = None,
    base_path: Path | str | None = None,
) -> pd.DataFrame:
    """Events of a run as a DataFrame ordered by timestamp.

    Args:
        run_id: Finder run identifier.
        event_type: Optional filter for one event type.
        base_path: Directory containing event logs.

    Raises:
        ValueError: If run_id contains unsafe characters.
        FileNotFoundError: If the log file doesn't exist.
    """
    log_path = _log_path(run_id, base_path)
    conn = duckdb.connect()
    try:
        if event_type is not None:
            result = conn.execute(
                "SELECT * FROM read_json_auto(?) WHERE event = ? ORDER BY ts",
                [str(log_path), event_type.value],
            )
        else:
            result = conn.execute("SELECT * FROM read_json_auto(?) ORDER BY ts", [str(log_path)])
        return result.fetchdf()
    finally:
        conn.close()


def query_events(
    run_id: str,
    event_type: EventType | None = None,
    base_path: Path | str | None = None,
) -> list[dict[str, object]]:
    """Events of a run as dicts. See query_events_df."""
    df = query_events_df(run_id, event_type, base_path)
    records: list[dict[str, object]] = df.to_dict(orient="records")  # type: ignore[assignment]
    return records


def count_events_by_type(run_id: str, base_path: Path | str | None = None) -> dict[str, int]:
    """Number of events per event type for a run."""
    log_path = _log_path(run_id, base_path)
    conn = duckdb.connect()
    try:
        rows = conn.execute(
            "SELECT event, COUNT(*) FROM read_json_auto(?) GROUP BY event ORDER BY event",
            [str(log_path)],
        ).fetchall()
    finally:
        conn.close()
    return {str(event): int(count) for event, count in rows}


def list_runs(base_path: Path | str | None = None) -> list[str]:
    """Run ids that have an event log."""
    base = Path(base_path if base_path is not None else DEFAULT_EVENTS_DIR)
    if not base.exists():
        return []
    return sorted(p.stem for p in base.glob("*.jsonl"))


__all__ = [
    "count_events_by_type",
    "list_runs",
    "query_events",
    "query_events_df",
]
