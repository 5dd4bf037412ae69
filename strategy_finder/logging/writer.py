"""JSONL writer for finder run events."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import IO, TYPE_CHECKING

from strategy_finder.logging.events import create_event

if TYPE_CHECKING:
    from types import TracebackType

    from strategy_finder.logging.events import Event, EventType

DEFAULT_EVENTS_DIR = "logs/finder"


class EventWriter:
    """Thread-safe, append-only JSONL event writer.

    Writes events to ``{base_path}/{run_id}.jsonl``.

    Example:
        with EventWriter(run_id="abc123") as writer:
            writer.emit(EventType.RUN_STARTED, "", symbol="BTCUSDT")

    Attributes:
        run_id: Finder run identifier.
        base_path: Directory for event logs.
    """

    def __init__(self, run_id: str, base_path: Path | str = DEFAULT_EVENTS_DIR) -> None:
        self.run_id = run_id
        self.base_path = Path(base_path)
        self._lock = threading.Lock()
        self._file: IO[str] | None = None
        self._closed = False

        self.base_path.mkdir(parents=True, exist_ok=True)

    @property
    def file_path(self) -> Path:
        """Path to the JSONL file for this run."""
        return self.base_path / f"{self.run_id}.jsonl"

    def _ensure_open(self) -> None:
        if self._file is None:
            # Line buffered so each event reaches disk on its newline
            self._file = open(self.file_path, "a", encoding="utf-8", buffering=1)  # noqa: SIM115

    def write(self, event: Event) -> None:
        """Append one event.

        Raises:
            RuntimeError: If the writer has been closed.
        """
        if self._closed:
            msg = "EventWriter has been closed"
            raise RuntimeError(msg)

        with self._lock:
            self._ensure_open()
            assert self._file is not None  # for type checker
            self._file.write(json.dumps(event.to_dict(), separators=(",", ":")) + "\n")

    def emit(self, event_type: EventType, strategy_name: str = "", **data: object) -> None:
        """Build a typed event for this run and append it."""
        self.write(create_event(event_type, self.run_id, strategy_name, data))

    def flush(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.flush()

    def close(self) -> None:
        """Close the file handle. Safe to call multiple times."""
        with self._lock:
            self._closed = True
            if self._file is not None:
                self._file.close()
                self._file = None

    def __enter__(self) -> EventWriter:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


__all__ = ["DEFAULT_EVENTS_DIR", "EventWriter"]
