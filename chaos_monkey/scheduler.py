"""
Recurring driver: resolve targets and run one apply/revert cycle per tick.
"""

import asyncio
import logging
from typing import Optional

from chaos_monkey.aio import wait_or_stop
from chaos_monkey.config import validate_duration
from chaos_monkey.errors import ChaosError, SchedulerError, ValidationError
from chaos_monkey.orchestrator import OrchestrationResult, Orchestrator
from chaos_monkey.selection import resolve_targets

logger = logging.getLogger(__name__)


class Scheduler:
    def __init__(
        self,
        executor,
        policy,
        disruption,
        interval=0,
        dry_run=False,
        skip_error=False,
        per_target=False,
    ):
        if interval < 0:
            raise ValidationError("interval must be non-negative")
        validate_duration(disruption.duration, interval)
        self.executor = executor
        self.policy = policy
        self.disruption = disruption
        self.interval = interval
        self.skip_error = skip_error
        self.orchestrator = Orchestrator(executor, dry_run=dry_run, per_target=per_target)
        self.ticks = 0

    async def tick(self, stop: Optional[asyncio.Event] = None) -> OrchestrationResult:
        """Re-resolve targets (the fleet may have changed) and run one cycle."""
        targets = await resolve_targets(self.executor, self.policy)
        if not targets:
            return OrchestrationResult()
        return await self.orchestrator.run(self.disruption, targets, stop)

    async def run(self, stop: Optional[asyncio.Event] = None) -> Optional[OrchestrationResult]:
        loop = asyncio.get_running_loop()
        started = loop.time()
        result = None
        while stop is None or not stop.is_set():
            self.ticks += 1
            logger.debug(f"chaos tick {self.ticks}")
            try:
                result = await self.tick(stop)
                error = result.error
            except ChaosError as err:
                result, error = None, err
            if error is not None:
                if not self.skip_error:
                    raise SchedulerError(f"error running chaos command: {error}") from error
                logger.warning(f"skipping error: {error}")

            if not self.interval:
                break
            # fixed cadence: ticks that were missed while a cycle ran are dropped
            elapsed = loop.time() - started
            next_tick = (int(elapsed // self.interval) + 1) * self.interval
            if await wait_or_stop(stop, next_tick - elapsed):
                break
            logger.debug("next chaos execution (tick) ...")
        return result
