"""Structured event logging for finder runs.

Usage:
    from strategy_finder.logging import EventType, EventWriter

    with EventWriter(run_id="abc123", base_path="logs/finder") as writer:
        writer.emit(EventType.RUN_STARTED, symbol="BTCUSDT", interval="1h")

Querying:
    from strategy_finder.logging import count_events_by_type, query_events_df

    df = query_events_df("abc123", base_path="logs/finder")
"""

from strategy_finder.logging.events import (
    BatchCompletedEvent,
    Event,
    EventType,
    JobFailedEvent,
    OffloadFallbackEvent,
    RunCompletedEvent,
    RunStartedEvent,
    TimeframeSkippedEvent,
    create_event,
)
from strategy_finder.logging.query import (
    count_events_by_type,
    list_runs,
    query_events,
    query_events_df,
)
from strategy_finder.logging.writer import EventWriter

__all__ = [
    # Event types
    "EventType",
    "Event",
    "RunStartedEvent",
    "BatchCompletedEvent",
    "JobFailedEvent",
    "OffloadFallbackEvent",
    "TimeframeSkippedEvent",
    "RunCompletedEvent",
    "create_event",
    # Writer
    "EventWriter",
    # Query
    "query_events",
    "query_events_df",
    "count_events_by_type",
    "list_runs",
]
