import asyncio
import logging

logger = logging.getLogger(__name__)


async def detached(coro, timeout=None):
    """Run a cleanup coroutine that the caller's cancellation cannot abort.

    The coroutine runs as its own task bounded only by ``timeout``. If the
    awaiting task is cancelled meanwhile, the cleanup is still awaited to the
    end and CancelledError is re-raised afterwards.
    """
    task = asyncio.ensure_future(asyncio.wait_for(coro, timeout))
    interrupted = False
    while not task.done():
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            interrupted = True
    if interrupted:
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"cleanup failed during cancellation: {task.exception()}")
        raise asyncio.CancelledError()
    return task.result()


async def wait_or_stop(stop, timeout) -> bool:
    """Sleep for ``timeout`` seconds or until ``stop`` is set.

    Returns True when the stop event fired first.
    """
    if stop is None:
        await asyncio.sleep(timeout)
        return False
    if stop.is_set():
        return True
    try:
        await asyncio.wait_for(stop.wait(), timeout)
    except asyncio.TimeoutError:
        return False
    return True
