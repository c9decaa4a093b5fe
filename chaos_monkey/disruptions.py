"""
Disruption kinds.

Every disruption is validated when it is constructed and exposes the same
two coroutines: ``apply`` injects the fault into one container and returns a
handle, ``revert`` undoes it given that handle. One-shot kinds (kill, rm,
restart, exec) have ``duration = None`` and nothing to revert.
"""

import contextlib
import logging
import shlex
import signal as signals
from dataclasses import dataclass, field
from typing import Optional, Tuple

from chaos_monkey.commands import parse_cidrs, parse_ports, validate_interface
from chaos_monkey.commands import iptables, netem
from chaos_monkey.errors import ExecutionError, ValidationError
from chaos_monkey.runtime.base import DEFAULT_STOP_TIMEOUT

logger = logging.getLogger(__name__)

DEFAULT_INTERFACE = "eth0"
DEFAULT_STRESS_IMAGE = "ghcr.io/alexei-led/stress-ng:latest"
DEFAULT_STRESSORS = "--cpu 4"
DEFAULT_EXEC_COMMAND = "kill 1"


def _check_duration(duration):
    if duration is None or duration <= 0:
        raise ValidationError("duration must be positive")


def parse_signal(value) -> str:
    """Normalize 'kill', 'SIGKILL' or '9' to a signal name known to the kernel."""
    text = str(value or "").strip().upper()
    if not text:
        raise ValidationError("undefined signal")
    if text.isdigit():
        try:
            return signals.Signals(int(text)).name
        except ValueError as err:
            raise ValidationError(f"unexpected signal: {value}") from err
    if not text.startswith("SIG"):
        text = f"SIG{text}"
    if text not in signals.Signals.__members__:
        raise ValidationError(f"unexpected signal: {value}")
    return text


class Disruption:
    kind = "disruption"
    duration = None

    @property
    def one_shot(self):
        return self.duration is None

    async def apply(self, executor, container, dry_run=False):
        raise NotImplementedError

    async def revert(self, executor, container, handle, dry_run=False):
        pass

    def describe(self):
        return self.kind


@dataclass(frozen=True)
class NetemDisruption(Disruption):
    """tc/netem qdisc on one interface, optionally scoped by IP and port filters."""

    args: Tuple[str, ...]
    duration: float
    interface: str = DEFAULT_INTERFACE
    ips: Tuple[str, ...] = ()
    sports: Tuple[str, ...] = ()
    dports: Tuple[str, ...] = ()
    image: str = ""
    pull: bool = False
    kind = "netem"

    def __post_init__(self):
        _check_duration(self.duration)
        validate_interface(self.interface)
        if not self.args:
            raise ValidationError("empty netem arguments")
        object.__setattr__(self, "args", tuple(self.args))
        object.__setattr__(self, "ips", tuple(parse_cidrs(self.ips)))
        object.__setattr__(self, "sports", tuple(parse_ports(self.sports)))
        object.__setattr__(self, "dports", tuple(parse_ports(self.dports)))

    @classmethod
    def delay(cls, time, jitter=0, correlation=0.0, distribution="", **kwargs):
        return cls(args=tuple(netem.delay_args(time, jitter, correlation, distribution)), **kwargs)

    @classmethod
    def loss(cls, percent, correlation=0.0, **kwargs):
        return cls(args=tuple(netem.loss_args(percent, correlation)), **kwargs)

    @classmethod
    def loss_state(cls, p13, p31=100.0, p32=0.0, p23=100.0, p14=0.0, **kwargs):
        return cls(args=tuple(netem.loss_state_args(p13, p31, p32, p23, p14)), **kwargs)

    @classmethod
    def loss_gemodel(cls, pg, pb=100.0, one_h=100.0, one_k=0.0, **kwargs):
        return cls(args=tuple(netem.loss_gemodel_args(pg, pb, one_h, one_k)), **kwargs)

    @classmethod
    def duplicate(cls, percent, correlation=0.0, **kwargs):
        return cls(args=tuple(netem.duplicate_args(percent, correlation)), **kwargs)

    @classmethod
    def corrupt(cls, percent, correlation=0.0, **kwargs):
        return cls(args=tuple(netem.corrupt_args(percent, correlation)), **kwargs)

    @classmethod
    def rate(cls, rate, packet_overhead=0, cell_size=0, cell_overhead=0, **kwargs):
        return cls(args=tuple(netem.rate_args(rate, packet_overhead, cell_size, cell_overhead)), **kwargs)

    @property
    def filtered(self):
        return netem.has_filters(self.ips, self.sports, self.dports)

    @property
    def commands(self):
        return netem.build_netem_commands(self.interface, self.args, self.ips, self.sports, self.dports)

    @property
    def stop_commands(self):
        return netem.build_stop_netem_commands(self.interface, self.filtered)

    async def apply(self, executor, container, dry_run=False):
        await executor.run_network_commands(
            container, "tc", self.commands, image=self.image, pull=self.pull, dry_run=dry_run
        )

    async def revert(self, executor, container, handle, dry_run=False):
        await executor.run_network_commands(
            container, "tc", self.stop_commands, image=self.image, pull=self.pull, dry_run=dry_run
        )

    def describe(self):
        return f"netem {' '.join(self.args)} on {self.interface}"


@dataclass(frozen=True)
class PacketLossDisruption(Disruption):
    """Incoming packet drop with the iptables statistic match."""

    duration: float
    mode: str = iptables.MODE_RANDOM
    probability: float = 0.0
    every: int = 0
    packet: int = 0
    interface: str = DEFAULT_INTERFACE
    protocol: str = "any"
    src_ips: Tuple[str, ...] = ()
    dst_ips: Tuple[str, ...] = ()
    sports: Tuple[str, ...] = ()
    dports: Tuple[str, ...] = ()
    image: str = ""
    pull: bool = False
    kind = "iptables"

    def __post_init__(self):
        _check_duration(self.duration)
        validate_interface(self.interface)
        iptables.validate_loss(self.mode, self.probability, self.every, self.packet)
        iptables.rule_prefix(self.interface, self.protocol)
        object.__setattr__(self, "src_ips", tuple(parse_cidrs(self.src_ips)))
        object.__setattr__(self, "dst_ips", tuple(parse_cidrs(self.dst_ips)))
        object.__setattr__(self, "sports", tuple(parse_ports(self.sports)))
        object.__setattr__(self, "dports", tuple(parse_ports(self.dports)))

    @property
    def commands(self):
        return iptables.build_iptables_commands(
            iptables.rule_prefix(self.interface, self.protocol),
            iptables.statistic_suffix(self.mode, self.probability, self.every, self.packet),
            self.src_ips,
            self.dst_ips,
            self.sports,
            self.dports,
        )

    @property
    def stop_commands(self):
        return iptables.delete_commands(self.commands)

    async def apply(self, executor, container, dry_run=False):
        await executor.run_network_commands(
            container, "iptables", self.commands, image=self.image, pull=self.pull, dry_run=dry_run
        )

    async def revert(self, executor, container, handle, dry_run=False):
        await executor.run_network_commands(
            container, "iptables", self.stop_commands, image=self.image, pull=self.pull, dry_run=dry_run
        )

    def describe(self):
        if self.mode == iptables.MODE_RANDOM:
            return f"iptables loss random p={self.probability:.2f} on {self.interface}"
        return f"iptables loss nth every={self.every} packet={self.packet} on {self.interface}"


@dataclass(frozen=True)
class StressDisruption(Disruption):
    """stress-ng run inside the target's cgroup for the duration."""

    duration: float
    stressors: str = DEFAULT_STRESSORS
    image: str = DEFAULT_STRESS_IMAGE
    pull: bool = True
    inject_cgroup: bool = False
    kind = "stress"

    def __post_init__(self):
        _check_duration(self.duration)
        if not self.image:
            raise ValidationError("undefined stress-ng image")
        try:
            shlex.split(self.stressors)
        except ValueError as err:
            raise ValidationError(f"invalid stressors {self.stressors!r}: {err}") from err

    @property
    def command(self):
        command = ["stress-ng", *shlex.split(self.stressors)]
        if "--timeout" not in command and "-t" not in command:
            command += ["--timeout", f"{max(int(self.duration), 1)}s"]
        return command

    async def apply(self, executor, container, dry_run=False):
        stack = contextlib.AsyncExitStack()
        helper = await stack.enter_async_context(
            executor.cgroup_helper(
                container, self.image, self.pull, self.command, dry_run=dry_run, inject=self.inject_cgroup
            )
        )
        return stack, helper

    async def revert(self, executor, container, handle, dry_run=False):
        stack, helper = handle
        exit_code = None
        try:
            exit_code = await helper.poll()
        finally:
            await stack.aclose()
        if exit_code:
            raise ExecutionError(
                f"stress-ng exited with code {exit_code} in {container}: {helper.output.strip()}",
                container=container,
                command=self.command,
                exit_code=exit_code,
                output=helper.output,
            )
        if exit_code == 0:
            logger.debug(f"stress-ng completed in {container}: {helper.output.strip()}")

    def describe(self):
        return f"stress {self.stressors}"


@dataclass(frozen=True)
class PauseDisruption(Disruption):
    duration: float
    kind = "pause"

    def __post_init__(self):
        _check_duration(self.duration)

    async def apply(self, executor, container, dry_run=False):
        await executor.pause(container, dry_run=dry_run)

    async def revert(self, executor, container, handle, dry_run=False):
        await executor.unpause(container, dry_run=dry_run)


@dataclass(frozen=True)
class StopDisruption(Disruption):
    """Stop a container; with ``restart`` it is started again after the duration."""

    timeout: int = DEFAULT_STOP_TIMEOUT
    restart: bool = False
    duration: Optional[float] = None
    kind = "stop"

    def __post_init__(self):
        if self.timeout < 0:
            raise ValidationError("stop timeout must be non-negative")
        if self.restart:
            _check_duration(self.duration)
        else:
            object.__setattr__(self, "duration", None)

    async def apply(self, executor, container, dry_run=False):
        await executor.stop(container, timeout=self.timeout, dry_run=dry_run)

    async def revert(self, executor, container, handle, dry_run=False):
        if self.restart:
            await executor.start(container, dry_run=dry_run)


@dataclass(frozen=True)
class KillAction(Disruption):
    signal: str = "SIGKILL"
    kind = "kill"

    def __post_init__(self):
        object.__setattr__(self, "signal", parse_signal(self.signal))

    async def apply(self, executor, container, dry_run=False):
        await executor.kill(container, signal=self.signal, dry_run=dry_run)

    def describe(self):
        return f"kill {self.signal}"


@dataclass(frozen=True)
class RemoveAction(Disruption):
    force: bool = True
    links: bool = False
    volumes: bool = True
    kind = "rm"

    async def apply(self, executor, container, dry_run=False):
        await executor.remove(container, force=self.force, links=self.links, volumes=self.volumes, dry_run=dry_run)


@dataclass(frozen=True)
class RestartAction(Disruption):
    timeout: int = DEFAULT_STOP_TIMEOUT
    kind = "restart"

    def __post_init__(self):
        if self.timeout < 0:
            raise ValidationError("restart timeout must be non-negative")

    async def apply(self, executor, container, dry_run=False):
        await executor.restart(container, timeout=self.timeout, dry_run=dry_run)


@dataclass(frozen=True)
class ExecAction(Disruption):
    command: str = DEFAULT_EXEC_COMMAND
    args: Tuple[str, ...] = field(default_factory=tuple)
    kind = "exec"

    def __post_init__(self):
        if not (self.command or "").strip():
            object.__setattr__(self, "command", DEFAULT_EXEC_COMMAND)
        try:
            shlex.split(self.command)
        except ValueError as err:
            raise ValidationError(f"invalid exec command {self.command!r}: {err}") from err
        object.__setattr__(self, "args", tuple(self.args or ()))

    @property
    def argv(self):
        return [*shlex.split(self.command), *self.args]

    async def apply(self, executor, container, dry_run=False):
        command, *args = self.argv
        await executor.exec_in_container(container, command, args, dry_run=dry_run)

    def describe(self):
        return f"exec {' '.join(self.argv)}"
