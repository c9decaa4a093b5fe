"""
Apply a disruption to a set of containers and guarantee its reversal.

Each target goes through idle -> applying -> applied -> reverting ->
reverted, or ends in failed. Only targets that reached applied are reverted.
Applies and reverts run as detached tasks: cancelling ``run()`` while
applying lets in-flight applies finish, skips the remaining duration,
reverts and only then re-raises CancelledError.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from chaos_monkey.aio import detached, wait_or_stop
from chaos_monkey.container import Container
from chaos_monkey.errors import ExecutionError

logger = logging.getLogger(__name__)

MIN_REVERT_TIMEOUT = 30.0


class TargetState(str, Enum):
    IDLE = "idle"
    APPLYING = "applying"
    APPLIED = "applied"
    REVERTING = "reverting"
    REVERTED = "reverted"
    FAILED = "failed"


@dataclass
class TargetOutcome:
    container: Container
    state: TargetState = TargetState.IDLE
    applied: bool = False
    apply_error: Optional[Exception] = None
    revert_error: Optional[Exception] = None
    handle: Any = field(default=None, repr=False)

    @property
    def ok(self):
        return self.apply_error is None and self.revert_error is None


@dataclass
class OrchestrationResult:
    outcomes: List[TargetOutcome] = field(default_factory=list)

    @property
    def ok(self):
        return all(o.ok for o in self.outcomes)

    @property
    def error(self) -> Optional[Exception]:
        """First apply error, else the last revert error."""
        for outcome in self.outcomes:
            if outcome.apply_error is not None:
                return outcome.apply_error
        revert_errors = [o.revert_error for o in self.outcomes if o.revert_error is not None]
        return revert_errors[-1] if revert_errors else None

    @property
    def applied(self):
        return [o.container for o in self.outcomes if o.applied]


class Orchestrator:
    def __init__(self, executor, dry_run=False, per_target=False, revert_timeout=None):
        self.executor = executor
        self.dry_run = dry_run
        self.per_target = per_target
        self.revert_timeout = revert_timeout

    def _revert_timeout(self, disruption):
        if self.revert_timeout is not None:
            return self.revert_timeout
        return max(disruption.duration or 0.0, MIN_REVERT_TIMEOUT)

    async def run(self, disruption, containers, stop: Optional[asyncio.Event] = None) -> OrchestrationResult:
        outcomes = [TargetOutcome(c) for c in containers]
        result = OrchestrationResult(outcomes)
        if not outcomes:
            return result
        logger.info(
            f"{'dry-run: ' if self.dry_run else ''}applying {disruption.describe()} to "
            f"{len(outcomes)} container(s): {', '.join(str(o.container) for o in outcomes)}"
        )
        if self.per_target:
            await asyncio.gather(*(self._cycle(disruption, [o], stop) for o in outcomes))
        else:
            await self._cycle(disruption, outcomes, stop)
        return result

    async def _cycle(self, disruption, outcomes, stop):
        cancelled = False
        try:
            await detached(asyncio.gather(*(self._apply(disruption, o) for o in outcomes)))
        except asyncio.CancelledError:
            cancelled = True

        if not disruption.one_shot:
            if not cancelled and any(o.applied for o in outcomes):
                try:
                    if await wait_or_stop(stop, disruption.duration):
                        logger.info("stop requested, reverting early")
                except asyncio.CancelledError:
                    logger.info("cancelled, reverting early")
                    cancelled = True
            try:
                await detached(asyncio.gather(*(self._revert(disruption, o) for o in outcomes if o.applied)))
            except asyncio.CancelledError:
                cancelled = True

        if cancelled:
            raise asyncio.CancelledError()

    async def _apply(self, disruption, outcome):
        outcome.state = TargetState.APPLYING
        try:
            outcome.handle = await disruption.apply(self.executor, outcome.container, dry_run=self.dry_run)
        except Exception as err:
            outcome.state = TargetState.FAILED
            outcome.apply_error = err
            logger.error(f"failed to apply {disruption.describe()} to {outcome.container}: {err}")
            return
        outcome.applied = True
        outcome.state = TargetState.APPLIED
        logger.debug(f"applied {disruption.describe()} to {outcome.container}")

    async def _revert(self, disruption, outcome):
        outcome.state = TargetState.REVERTING
        timeout = self._revert_timeout(disruption)
        try:
            await asyncio.wait_for(
                disruption.revert(self.executor, outcome.container, outcome.handle, dry_run=self.dry_run),
                timeout,
            )
        except asyncio.TimeoutError:
            outcome.revert_error = ExecutionError(
                f"revert of {disruption.describe()} on {outcome.container} timed out after {timeout}s",
                container=outcome.container,
            )
        except Exception as err:
            outcome.revert_error = err
        if outcome.revert_error is not None:
            outcome.state = TargetState.FAILED
            logger.warning(f"failed to revert {disruption.describe()} on {outcome.container}: {outcome.revert_error}")
            return
        outcome.state = TargetState.REVERTED
        logger.info(f"{'dry-run: ' if self.dry_run else ''}reverted {disruption.describe()} on {outcome.container}")
