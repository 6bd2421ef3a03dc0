"""
Process entry point tests.
"""
import asyncio
from unittest.mock import MagicMock, patch

import pytest

from faultline.main import init_sentry, wait_for_stop


def _pending_event_waits():
    return [
        task for task in asyncio.all_tasks()
        if not task.done() and task.get_coro().__qualname__ == "Event.wait"
    ]


class TestInitSentry:
    """Sentry is optional and never blocks startup."""

    def test_skipped_without_dsn(self):
        with patch("sentry_sdk.init") as mock_init:
            init_sentry(MagicMock(sentry_dsn=""))
        mock_init.assert_not_called()

    def test_initialized_with_dsn(self):
        settings = MagicMock(sentry_dsn="https://key@sentry.example.com/1", app_env="production")

        with patch("sentry_sdk.init") as mock_init:
            init_sentry(settings)

        mock_init.assert_called_once()
        assert mock_init.call_args.kwargs["environment"] == "production"

    def test_init_failure_swallowed(self):
        with patch("sentry_sdk.init", side_effect=RuntimeError("bad dsn")):
            init_sentry(MagicMock(sentry_dsn="https://bad", app_env="production"))


class TestWaitForStop:
    """Shutdown wait leaves no task behind."""

    async def test_worker_exit_cancels_stop_wait(self):
        worker_task = asyncio.create_task(asyncio.sleep(0))

        await wait_for_stop(worker_task, asyncio.Event())

        assert worker_task.done()
        assert _pending_event_waits() == []

    async def test_stop_signal_leaves_worker_running(self):
        worker_task = asyncio.create_task(asyncio.sleep(60))
        stop_event = asyncio.Event()
        stop_event.set()

        await wait_for_stop(worker_task, stop_event)

        assert not worker_task.done()
        assert _pending_event_waits() == []
        worker_task.cancel()
        await asyncio.gather(worker_task, return_exceptions=True)

    async def test_worker_crash_reraised(self):
        async def crash():
            raise RuntimeError("worker died")

        with pytest.raises(RuntimeError, match="worker died"):
            await wait_for_stop(asyncio.create_task(crash()), asyncio.Event())

        assert _pending_event_waits() == []
