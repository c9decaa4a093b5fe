"""
Command line entry point.

Usage:
  chaos-monkey --interval 30s netem --duration 10s delay --time 200 re2:^api
  chaos-monkey --runtime containerd --random kill --signal SIGTERM web worker
  chaos-monkey --dry-run iptables --duration 20s loss --probability 0.2 db
"""

import argparse
import asyncio
import logging
import signal

from chaos_monkey import __version__
from chaos_monkey.commands import split_list
from chaos_monkey.config import RUNTIMES, Settings, parse_duration, parse_interval
from chaos_monkey.disruptions import (
    DEFAULT_EXEC_COMMAND,
    DEFAULT_STRESS_IMAGE,
    DEFAULT_STRESSORS,
    ExecAction,
    KillAction,
    NetemDisruption,
    PacketLossDisruption,
    PauseDisruption,
    RemoveAction,
    RestartAction,
    StopDisruption,
    StressDisruption,
)
from chaos_monkey.errors import ChaosError, ValidationError
from chaos_monkey.logs import setup_logging
from chaos_monkey.runtime import new_executor
from chaos_monkey.runtime.base import DEFAULT_STOP_TIMEOUT
from chaos_monkey.scheduler import Scheduler
from chaos_monkey.selection import SelectionPolicy, names_or_pattern

logger = logging.getLogger("chaos_monkey")


def _targets(p):
    p.add_argument("targets", nargs="*", help="container names, or a single re2:PATTERN; all containers when empty")
    p.add_argument("--limit", type=int, default=0, help="limit number of target containers (0 = no limit)")


def _netem_parser(sub):
    p = sub.add_parser("netem", help="emulate network properties with tc/netem")
    p.add_argument("--duration", "-d", required=True, help="emulation duration, e.g. 30s, 1m")
    p.add_argument("--interface", "-i", default="eth0", help="network interface to apply delay on")
    p.add_argument("--target", "-t", action="append", default=[], help="target IP filter (repeatable, CIDR allowed)")
    p.add_argument("--sport", action="append", default=[], help="source port filter (comma separated)")
    p.add_argument("--dport", action="append", default=[], help="destination port filter (comma separated)")
    p.add_argument("--tc-image", default="", help="run tc from this image in a helper container")
    p.add_argument("--pull-image", action="store_true", help="pull the helper image before use")
    kinds = p.add_subparsers(dest="netem_command", required=True)

    k = kinds.add_parser("delay", help="delay egress traffic")
    k.add_argument("--time", type=int, default=100, help="delay time in milliseconds")
    k.add_argument("--jitter", type=int, default=10, help="random delay variation in milliseconds")
    k.add_argument("--correlation", type=float, default=20.0, help="delay correlation in percent")
    k.add_argument("--distribution", default="", help="delay distribution: uniform, normal, pareto, paretonormal")
    _targets(k)

    for name, helptext in (
        ("loss", "drop a percentage of packets"),
        ("duplicate", "duplicate a percentage of packets"),
        ("corrupt", "corrupt a percentage of packets"),
    ):
        k = kinds.add_parser(name, help=helptext)
        k.add_argument("--percent", type=float, default=0.0, help="packet percentage")
        k.add_argument("--correlation", type=float, default=0.0, help="correlation in percent")
        _targets(k)

    k = kinds.add_parser("loss-state", help="4-state Markov packet loss model")
    k.add_argument("--p13", type=float, default=0.0)
    k.add_argument("--p31", type=float, default=100.0)
    k.add_argument("--p32", type=float, default=0.0)
    k.add_argument("--p23", type=float, default=100.0)
    k.add_argument("--p14", type=float, default=0.0)
    _targets(k)

    k = kinds.add_parser("loss-gemodel", help="Gilbert-Elliot packet loss model")
    k.add_argument("--pg", type=float, default=0.0, help="transition probability into the bad state")
    k.add_argument("--pb", type=float, default=100.0, help="transition probability into the good state")
    k.add_argument("--one-h", type=float, default=100.0, help="loss probability in the bad state")
    k.add_argument("--one-k", type=float, default=0.0, help="loss probability in the good state")
    _targets(k)

    k = kinds.add_parser("rate", help="limit egress bandwidth")
    k.add_argument("--rate", default="100kbit", help="rate, e.g. 100kbit, 1mbit")
    k.add_argument("--packetoverhead", type=int, default=0)
    k.add_argument("--cellsize", type=int, default=0)
    k.add_argument("--celloverhead", type=int, default=0)
    _targets(k)


def _iptables_parser(sub):
    p = sub.add_parser("iptables", help="drop incoming packets with iptables")
    p.add_argument("--duration", "-d", required=True, help="emulation duration, e.g. 30s, 1m")
    p.add_argument("--interface", "-i", default="eth0")
    p.add_argument("--protocol", "-p", default="any", help="any, tcp, udp or icmp")
    p.add_argument("--source", "-s", action="append", default=[], help="source IP filter (repeatable)")
    p.add_argument("--destination", action="append", default=[], help="destination IP filter (repeatable)")
    p.add_argument("--src-port", action="append", default=[], help="source port filter (comma separated)")
    p.add_argument("--dst-port", action="append", default=[], help="destination port filter (comma separated)")
    p.add_argument("--iptables-image", default="", help="run iptables from this image in a helper container")
    p.add_argument("--pull-image", action="store_true")
    kinds = p.add_subparsers(dest="iptables_command", required=True)
    k = kinds.add_parser("loss", help="drop packets randomly or every nth packet")
    k.add_argument("--mode", default="random", help="random or nth")
    k.add_argument("--probability", type=float, default=0.0, help="drop probability for random mode")
    k.add_argument("--every", type=int, default=0, help="drop every nth packet in nth mode")
    k.add_argument("--packet", type=int, default=0, help="start counter for nth mode")
    _targets(k)


def build_parser():
    p = argparse.ArgumentParser(prog="chaos-monkey", description="Inject faults into running containers.")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("--runtime", choices=RUNTIMES, default=None, help="container runtime (env CHAOS_RUNTIME)")
    p.add_argument("--host", default=None, help="docker daemon socket (env DOCKER_HOST)")
    p.add_argument("--containerd-address", default=None, help="containerd socket (env CONTAINERD_ADDRESS)")
    p.add_argument("--containerd-namespace", default=None, help="containerd namespace (env CONTAINERD_NAMESPACE)")
    p.add_argument("--interval", default="", help="recurrent interval, e.g. 30s; run once when empty")
    p.add_argument("--random", "-r", action="store_true", help="pick one random container among the targets")
    p.add_argument("--label", "-l", action="append", default=[], help="label filter key=value (repeatable)")
    p.add_argument("--dry-run", action="store_true", help="log actions without touching containers")
    p.add_argument("--skip-error", action="store_true", help="keep going when a tick fails")
    p.add_argument("--per-target", action="store_true", help="run an independent duration clock per container")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR (env LOG_LEVEL)")
    sub = p.add_subparsers(dest="command", required=True)

    _netem_parser(sub)
    _iptables_parser(sub)

    s = sub.add_parser("stress", help="run stress-ng inside the target cgroup")
    s.add_argument("--duration", "-d", required=True)
    s.add_argument("--stressors", default=DEFAULT_STRESSORS, help="stress-ng stressors, e.g. '--cpu 4 --vm 1'")
    s.add_argument("--stress-image", default=DEFAULT_STRESS_IMAGE)
    s.add_argument(
        "--inject-cgroup",
        action="store_true",
        help="let cg-inject in the stress image join the target cgroup (image must ship cg-inject)",
    )
    s.add_argument("--pull-image", action=argparse.BooleanOptionalAction, default=True)
    _targets(s)

    s = sub.add_parser("pause", help="pause all processes for the duration")
    s.add_argument("--duration", "-d", required=True)
    _targets(s)

    s = sub.add_parser("stop", help="stop containers")
    s.add_argument("--time", "-t", type=int, default=DEFAULT_STOP_TIMEOUT, help="seconds before SIGKILL")
    s.add_argument("--restart", "-r", action="store_true", help="start the containers again after the duration")
    s.add_argument("--duration", "-d", default="10s", help="stopped time before restart")
    _targets(s)

    s = sub.add_parser("kill", help="send a signal to containers")
    s.add_argument("--signal", "-s", default="SIGKILL")
    _targets(s)

    s = sub.add_parser("rm", help="remove containers")
    s.add_argument("--force", "-f", action=argparse.BooleanOptionalAction, default=True)
    s.add_argument("--links", action="store_true")
    s.add_argument("--volumes", "-v", action=argparse.BooleanOptionalAction, default=True)
    _targets(s)

    s = sub.add_parser("restart", help="restart containers")
    s.add_argument("--timeout", "-t", type=int, default=DEFAULT_STOP_TIMEOUT)
    _targets(s)

    s = sub.add_parser("exec", help="run a command inside containers")
    s.add_argument("--command", "-s", dest="command_line", default=DEFAULT_EXEC_COMMAND)
    s.add_argument("--args", "-a", action="append", default=[])
    _targets(s)
    return p


def _netem_disruption(args):
    common = dict(
        duration=parse_duration(args.duration),
        interface=args.interface,
        ips=split_list(args.target),
        sports=split_list(args.sport),
        dports=split_list(args.dport),
        image=args.tc_image,
        pull=args.pull_image,
    )
    kind = args.netem_command
    if kind == "delay":
        return NetemDisruption.delay(args.time, args.jitter, args.correlation, args.distribution, **common)
    if kind == "loss":
        return NetemDisruption.loss(args.percent, args.correlation, **common)
    if kind == "duplicate":
        return NetemDisruption.duplicate(args.percent, args.correlation, **common)
    if kind == "corrupt":
        return NetemDisruption.corrupt(args.percent, args.correlation, **common)
    if kind == "loss-state":
        return NetemDisruption.loss_state(args.p13, args.p31, args.p32, args.p23, args.p14, **common)
    if kind == "loss-gemodel":
        return NetemDisruption.loss_gemodel(args.pg, args.pb, args.one_h, args.one_k, **common)
    if kind == "rate":
        return NetemDisruption.rate(args.rate, args.packetoverhead, args.cellsize, args.celloverhead, **common)
    raise ValidationError(f"unknown netem command {kind!r}")


def build_disruption(args):
    command = args.command
    if command == "netem":
        return _netem_disruption(args)
    if command == "iptables":
        return PacketLossDisruption(
            duration=parse_duration(args.duration),
            mode=args.mode,
            probability=args.probability,
            every=args.every,
            packet=args.packet,
            interface=args.interface,
            protocol=args.protocol,
            src_ips=split_list(args.source),
            dst_ips=split_list(args.destination),
            sports=split_list(args.src_port),
            dports=split_list(args.dst_port),
            image=args.iptables_image,
            pull=args.pull_image,
        )
    if command == "stress":
        return StressDisruption(
            duration=parse_duration(args.duration),
            stressors=args.stressors,
            image=args.stress_image,
            pull=args.pull_image,
            inject_cgroup=args.inject_cgroup,
        )
    if command == "pause":
        return PauseDisruption(duration=parse_duration(args.duration))
    if command == "stop":
        duration = parse_duration(args.duration) if args.restart else None
        return StopDisruption(timeout=args.time, restart=args.restart, duration=duration)
    if command == "kill":
        return KillAction(signal=args.signal)
    if command == "rm":
        return RemoveAction(force=args.force, links=args.links, volumes=args.volumes)
    if command == "restart":
        return RestartAction(timeout=args.timeout)
    if command == "exec":
        return ExecAction(command=args.command_line, args=tuple(args.args))
    raise ValidationError(f"unknown command {command!r}")


def build_settings(args):
    settings = Settings.from_env()
    if args.runtime:
        settings.runtime = args.runtime
    if args.host:
        settings.docker_host = args.host
    if args.containerd_address:
        settings.containerd_address = args.containerd_address
    if args.containerd_namespace:
        settings.containerd_namespace = args.containerd_namespace
    if args.log_level:
        settings.log_level = args.log_level
    settings.dry_run = settings.dry_run or args.dry_run
    return settings


async def run(settings, policy, disruption, interval, skip_error=False, per_target=False):
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            logger.debug(f"cannot install handler for {sig.name} on this platform")

    executor = new_executor(settings)
    try:
        scheduler = Scheduler(
            executor,
            policy,
            disruption,
            interval=interval,
            dry_run=settings.dry_run,
            skip_error=skip_error,
            per_target=per_target,
        )
        await scheduler.run(stop)
    finally:
        await executor.close()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
    if stop.is_set():
        logger.info("stopped by signal")


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = build_settings(args)
    try:
        settings.validate()
    except ChaosError as err:
        setup_logging()
        logger.error(f"{err}")
        return 1
    setup_logging(settings.log_level)
    try:
        names, pattern = names_or_pattern(args.targets)
        policy = SelectionPolicy(
            names=names, pattern=pattern, labels=tuple(args.label), limit=args.limit, random=args.random
        )
        disruption = build_disruption(args)
        interval = parse_interval(args.interval)
        logger.info(f"{disruption.describe()} on {settings.runtime}, interval {interval or 'once'}")
        asyncio.run(run(settings, policy, disruption, interval, args.skip_error, args.per_target))
    except ChaosError as err:
        logger.error(f"{err}")
        return 1
    return 0
