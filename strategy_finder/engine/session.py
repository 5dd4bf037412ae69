"""Single-run guard for the finder engine.

An engine instance executes at most one run at a time. A second request
while a run is active is rejected rather than queued.
"""

from __future__ import annotations

import logging
import uuid
from enum import StrEnum

logger = logging.getLogger(__name__)


class RunState(StrEnum):
    """Lifecycle of a finder run."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETING = "completing"


class FinderBusyError(Exception):
    """A run was requested while another one is active."""

    pass


class RunSession:
    """Tracks the active run of an engine.

    Use as an async context manager around a run:

        async with session.start() as run_id:
            ...

    Attributes:
        state: Current lifecycle state.
        run_id: Identifier of the active run, or None when idle.
    """

    def __init__(self) -> None:
        self.state = RunState.IDLE
        self.run_id: str | None = None

    @property
    def busy(self) -> bool:
        return self.state is not RunState.IDLE

    def start(self, run_id: str | None = None) -> _ActiveRun:
        """Claim the session for a new run.

        Raises:
            FinderBusyError: If a run is already active.
        """
        if self.busy:
            msg = f"Finder is already running (run {self.run_id}, state {self.state})"
            raise FinderBusyError(msg)
        self.state = RunState.RUNNING
        self.run_id = run_id or uuid.uuid4().hex[:12]
        logger.debug("Run %s started", self.run_id)
        return _ActiveRun(self)

    def mark_completing(self) -> None:
        if self.state is RunState.RUNNING:
            self.state = RunState.COMPLETING

    def release(self) -> None:
        logger.debug("Run %s released", self.run_id)
        self.state = RunState.IDLE
        self.run_id = None


class _ActiveRun:
    """Releases the session when the run exits, successfully or not."""

    def __init__(self, session: RunSession) -> None:
        self._session = session

    async def __aenter__(self) -> str:
        assert self._session.run_id is not None
        return self._session.run_id

    async def __aexit__(self, *exc_info: object) -> None:
        self._session.release()


__all__ = ["FinderBusyError", "RunSession", "RunState"]
