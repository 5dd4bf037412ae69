"""Event types and dataclasses for structured finder run logging.

Each finder run can emit a JSONL trail: run start and completion, every
completed batch, skipped jobs, offload fallbacks and skipped timeframes.
All events serialize to flat JSON for querying.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Self

logger = logging.getLogger(__name__)

# Schema version for event log format. Bump when event structure changes.
LOGGING_SCHEMA_VERSION: int = 1


class EventType(StrEnum):
    """Finder run event types."""

    RUN_STARTED = "RUN_STARTED"
    BATCH_COMPLETED = "BATCH_COMPLETED"
    JOB_FAILED = "JOB_FAILED"
    OFFLOAD_FALLBACK = "OFFLOAD_FALLBACK"
    TIMEFRAME_SKIPPED = "TIMEFRAME_SKIPPED"
    RUN_COMPLETED = "RUN_COMPLETED"


@dataclass
class Event:
    """Base event for structured logging.

    Attributes:
        timestamp: When the event occurred (UTC).
        event_type: Type of event.
        run_id: Finder run identifier.
        strategy_name: Strategy key the event refers to ('' for run-level events).
        data: Event-specific payload.
    """

    timestamp: datetime
    event_type: EventType
    run_id: str
    strategy_name: str
    data: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Convert event to dictionary for JSON serialization.

        Returns:
            Dict with ts (ISO string), event, run_id, strategy and data.
        """
        return {
            "ts": self.timestamp.isoformat(),
            "event": self.event_type.value,
            "run_id": self.run_id,
            "strategy": self.strategy_name,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, d: dict[str, object]) -> Self:
        """Create Event from a dictionary produced by to_dict.

        Missing or invalid timestamps default to now; an unknown event type
        is rejected.

        Raises:
            ValueError: If the event type is missing or unknown.
        """
        timestamp_raw = d.get("ts")
        if isinstance(timestamp_raw, str):
            timestamp = datetime.fromisoformat(timestamp_raw)
        elif isinstance(timestamp_raw, datetime):
            timestamp = timestamp_raw
        else:
            logger.warning("Event.from_dict: missing or invalid 'ts' field, defaulting to now()")
            timestamp = datetime.now(UTC)

        event_type_raw = d.get("event")
        if event_type_raw is None:
            msg = "Event.from_dict: missing 'event' field"
            raise ValueError(msg)
        event_type = EventType(str(event_type_raw))

        data_raw = d.get("data")
        data: dict[str, object] = dict(data_raw) if isinstance(data_raw, dict) else {}

        return cls(
            timestamp=timestamp,
            event_type=event_type,
            run_id=str(d.get("run_id", "")),
            strategy_name=str(d.get("strategy", "")),
            data=data,
        )


@dataclass
class RunStartedEvent(Event):
    """Run accepted and about to search.

    Attributes:
        symbol: Instrument symbol.
        interval: Primary interval.
        bar_count: Bars in the primary dataset.
        strategies: Strategy keys in the run.
        mode: Exploration mode.
    """

    symbol: str = ""
    interval: str = ""
    bar_count: int = 0
    strategies: list[str] = field(default_factory=list)
    mode: str = ""

    def __post_init__(self) -> None:
        """Populate data dict from typed fields."""
        self.event_type = EventType.RUN_STARTED
        self.data = {
            "symbol": self.symbol,
            "interval": self.interval,
            "bar_count": self.bar_count,
            "strategies": list(self.strategies),
            "mode": self.mode,
        }


@dataclass
class BatchCompletedEvent(Event):
    """One batch of jobs processed.

    Attributes:
        batch: 1-based batch number within the run.
        jobs: Jobs in the batch.
        results: Results produced (before filtering).
        offload_mode: Execution mode of the batch.
    """

    batch: int = 0
    jobs: int = 0
    results: int = 0
    offload_mode: str = "local"

    def __post_init__(self) -> None:
        """Populate data dict from typed fields."""
        self.event_type = EventType.BATCH_COMPLETED
        self.data = {
            "batch": self.batch,
            "jobs": self.jobs,
            "results": self.results,
            "offload_mode": self.offload_mode,
        }


@dataclass
class JobFailedEvent(Event):
    """A job was skipped after an exception.

    Attributes:
        job_id: Job identifier.
        stage: Failing step: signals, backtest, confirmations or timeframe:<interval>.
        error: Exception message.
    """

    job_id: int = 0
    stage: str = ""
    error: str = ""

    def __post_init__(self) -> None:
        """Populate data dict from typed fields."""
        self.event_type = EventType.JOB_FAILED
        self.data = {"job_id": self.job_id, "stage": self.stage, "error": self.error}


@dataclass
class OffloadFallbackEvent(Event):
    """Remote execution fell back to the local backtester.

    Attributes:
        reason: Fallback reason (remote_error, empty_response, ...).
        runs: Runs executed locally as a result.
    """

    reason: str = ""
    runs: int = 0

    def __post_init__(self) -> None:
        """Populate data dict from typed fields."""
        self.event_type = EventType.OFFLOAD_FALLBACK
        self.data = {"reason": self.reason, "runs": self.runs}


@dataclass
class TimeframeSkippedEvent(Event):
    """A requested timeframe had no usable data.

    Attributes:
        interval: Skipped interval.
    """

    interval: str = ""

    def __post_init__(self) -> None:
        """Populate data dict from typed fields."""
        self.event_type = EventType.TIMEFRAME_SKIPPED
        self.data = {"interval": self.interval}


@dataclass
class RunCompletedEvent(Event):
    """Run finished.

    Attributes:
        total_runs: Parameter sets evaluated.
        matched: Results that passed filtering.
        endpoint_adjusted: Results changed by endpoint correction.
        shown: Results returned.
        status: Final status line.
    """

    total_runs: int = 0
    matched: int = 0
    endpoint_adjusted: int = 0
    shown: int = 0
    status: str = ""

    def __post_init__(self) -> None:
        """Populate data dict from typed fields."""
        self.event_type = EventType.RUN_COMPLETED
        self.data = {
            "total_runs": self.total_runs,
            "matched": self.matched,
            "endpoint_adjusted": self.endpoint_adjusted,
            "shown": self.shown,
            "status": self.status,
        }


_EVENT_TYPE_TO_CLASS: dict[EventType, type[Event]] = {
    EventType.RUN_STARTED: RunStartedEvent,
    EventType.BATCH_COMPLETED: BatchCompletedEvent,
    EventType.JOB_FAILED: JobFailedEvent,
    EventType.OFFLOAD_FALLBACK: OffloadFallbackEvent,
    EventType.TIMEFRAME_SKIPPED: TimeframeSkippedEvent,
    EventType.RUN_COMPLETED: RunCompletedEvent,
}

_EVENT_SUBCLASS_FIELDS: dict[EventType, tuple[str, ...]] = {
    EventType.RUN_STARTED: ("symbol", "interval", "bar_count", "strategies", "mode"),
    EventType.BATCH_COMPLETED: ("batch", "jobs", "results", "offload_mode"),
    EventType.JOB_FAILED: ("job_id", "stage", "error"),
    EventType.OFFLOAD_FALLBACK: ("reason", "runs"),
    EventType.TIMEFRAME_SKIPPED: ("interval",),
    EventType.RUN_COMPLETED: ("total_runs", "matched", "endpoint_adjusted", "shown", "status"),
}


def create_event(
    event_type: EventType,
    run_id: str,
    strategy_name: str,
    data: dict[str, object],
    timestamp: datetime | None = None,
) -> Event:
    """Factory function to create typed events.

    Args:
        event_type: Type of event to create.
        run_id: Finder run identifier.
        strategy_name: Strategy key, or '' for run-level events.
        data: Event-specific data; unknown keys are ignored.
        timestamp: Event timestamp (defaults to now).

    Returns:
        Typed Event subclass instance with populated fields.
    """
    if timestamp is None:
        timestamp = datetime.now(UTC)

    cls = _EVENT_TYPE_TO_CLASS[event_type]
    subclass_kwargs = {
        name: data[name] for name in _EVENT_SUBCLASS_FIELDS[event_type] if name in data
    }
    return cls(
        timestamp=timestamp,
        event_type=event_type,
        run_id=run_id,
        strategy_name=strategy_name,
        **subclass_kwargs,  # type: ignore[arg-type]
    )


__all__ = [
    "LOGGING_SCHEMA_VERSION",
    "BatchCompletedEvent",
    "Event",
    "EventType",
    "JobFailedEvent",
    "OffloadFallbackEvent",
    "RunCompletedEvent",
    "RunStartedEvent",
    "TimeframeSkippedEvent",
    "create_event",
]
