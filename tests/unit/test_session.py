"""Tests for the single-run session guard."""

from __future__ import annotations

import pytest


class TestRunSession:
    """Tests for RunSession."""

    @pytest.mark.asyncio
    async def test_lifecycle(self) -> None:
        """A run moves idle -> running -> completing -> idle."""
        from strategy_finder.engine import RunSession, RunState

        session = RunSession()
        assert session.busy is False

        async with session.start("run-1") as run_id:
            assert run_id == "run-1"
            assert session.state is RunState.RUNNING
            session.mark_completing()
            assert session.state is RunState.COMPLETING
            assert session.busy is True

        assert session.state is RunState.IDLE
        assert session.run_id is None

    def test_second_start_rejected(self) -> None:
        """Starting while busy raises immediately."""
        from strategy_finder.engine import FinderBusyError, RunSession

        session = RunSession()
        session.start("run-1")

        with pytest.raises(FinderBusyError, match="run-1"):
            session.start("run-2")
        assert session.run_id == "run-1"

    @pytest.mark.asyncio
    async def test_released_on_error(self) -> None:
        """Exceptions inside the run still release the session."""
        from strategy_finder.engine import RunSession

        session = RunSession()

        with pytest.raises(ValueError):
            async with session.start():
                raise ValueError("boom")

        assert session.busy is False

    def test_generated_run_id(self) -> None:
        """Without an explicit id a short hex id is generated."""
        from strategy_finder.engine import RunSession

        session = RunSession()
        session.start()

        assert session.run_id is not None
        assert len(session.run_id) == 12
        int(session.run_id, 16)

    def test_mark_completing_when_idle(self) -> None:
        """mark_completing is a no-op outside a run."""
        from strategy_finder.engine import RunSession, RunState

        session = RunSession()
        session.mark_completing()

        assert session.state is RunState.IDLE
