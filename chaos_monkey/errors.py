"""Exception hierarchy shared by the resolver, executors and scheduler."""

from typing import Optional, Sequence


class ChaosError(Exception):
    """Base class for every error raised by chaos-monkey."""


class SelectionError(ChaosError):
    """Target selection failed (bad pattern, conflicting filters, engine unreachable)."""


class ValidationError(ChaosError):
    """Disruption or schedule parameters are invalid."""


class ExecutionError(ChaosError):
    """An operation against a single container failed."""

    def __init__(
        self,
        message: str,
        container=None,
        command: Optional[Sequence[str]] = None,
        index: Optional[int] = None,
        exit_code: Optional[int] = None,
        output: str = "",
    ):
        super().__init__(message)
        self.container = container
        self.command = list(command) if command else None
        self.index = index
        self.exit_code = exit_code
        self.output = output


class SchedulerError(ChaosError):
    """A scheduled tick failed and errors are not being skipped."""
