import asyncio
from unittest.mock import Mock

import pytest

from cargo_dispatch.matching.sweeper import TimeoutSweeper

EMPTY_SWEEP = {"offers_expired": 0, "bookings_expired": 0, "offers_sent": 0}


@pytest.fixture
def mock_coordinator():
    coordinator = Mock()
    coordinator.process_timeouts.return_value = EMPTY_SWEEP
    return coordinator


@pytest.mark.unit
class TestTimeoutSweeper:
    @pytest.mark.asyncio
    async def test_sweep_once(self, mock_coordinator):
        sweeper = TimeoutSweeper(mock_coordinator, interval_seconds=0.01)

        assert await sweeper.sweep_once() == EMPTY_SWEEP
        mock_coordinator.process_timeouts.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_start_and_stop(self, mock_coordinator):
        sweeper = TimeoutSweeper(mock_coordinator, interval_seconds=0.01)

        sweeper.start()
        assert sweeper.is_running
        await asyncio.sleep(0.05)
        await sweeper.stop()

        assert not sweeper.is_running
        assert mock_coordinator.process_timeouts.call_count >= 1

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_task(self, mock_coordinator):
        sweeper = TimeoutSweeper(mock_coordinator, interval_seconds=0.01)

        sweeper.start()
        task = sweeper._task
        sweeper.start()

        assert sweeper._task is task
        await sweeper.stop()

    @pytest.mark.asyncio
    async def test_failed_sweep_does_not_stop_loop(self, mock_coordinator):
        mock_coordinator.process_timeouts.side_effect = [RuntimeError("database gone")] + [
            EMPTY_SWEEP
        ] * 100
        sweeper = TimeoutSweeper(mock_coordinator, interval_seconds=0.01)

        sweeper.start()
        await asyncio.sleep(0.1)
        await sweeper.stop()

        assert mock_coordinator.process_timeouts.call_count >= 2

    @pytest.mark.asyncio
    async def test_stop_without_start(self, mock_coordinator):
        await TimeoutSweeper(mock_coordinator).stop()
