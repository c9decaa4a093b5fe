"""Tests for cancellation-proof cleanup helpers."""

import asyncio

import pytest

from chaos_monkey.aio import detached, wait_or_stop


class TestDetached:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def cleanup():
            return "done"

        assert await detached(cleanup()) == "done"

    @pytest.mark.asyncio
    async def test_survives_caller_cancellation(self):
        finished = asyncio.Event()

        async def cleanup():
            await asyncio.sleep(0.05)
            finished.set()

        task = asyncio.ensure_future(detached(cleanup()))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert finished.is_set()

    @pytest.mark.asyncio
    async def test_bounded_by_timeout(self):
        with pytest.raises(asyncio.TimeoutError):
            await detached(asyncio.sleep(5), timeout=0.01)

    @pytest.mark.asyncio
    async def test_error_propagates(self):
        async def cleanup():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await detached(cleanup())


class TestWaitOrStop:
    @pytest.mark.asyncio
    async def test_timeout_elapses(self):
        assert await wait_or_stop(asyncio.Event(), 0.01) is False
        assert await wait_or_stop(None, 0.01) is False

    @pytest.mark.asyncio
    async def test_stop_fires_first(self):
        stop = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, stop.set)
        assert await wait_or_stop(stop, 5) is True
