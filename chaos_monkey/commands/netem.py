"""
tc/netem argument construction.

Without filters netem is attached as the root qdisc. With IP or port filters
a prio tree is built instead so that only matching traffic reaches netem:

          1:   root qdisc (prio)
         / | \\
       1:1 1:2 1:3     classes
        |   |   |
       10: 20: 30:     qdiscs
       sfq sfq netem
"""

import re
from typing import List, Sequence

from chaos_monkey.errors import ValidationError

DELAY_DISTRIBUTIONS = ("", "uniform", "normal", "pareto", "paretonormal")
RATE_RE = re.compile(r"[0-9]+[gmk]?bit")


def _pct(value):
    return f"{float(value):.2f}"


def _check_percent(name, value):
    if value is None or not 0.0 <= float(value) <= 100.0:
        raise ValidationError(f"invalid {name}: must be between 0.0 and 100.0")


def delay_args(time, jitter=0, correlation=0.0, distribution="") -> List[str]:
    if time <= 0:
        raise ValidationError("non-positive delay time")
    if jitter < 0 or jitter > time:
        raise ValidationError("invalid delay jitter: must be non-negative and smaller than delay time")
    _check_percent("delay correlation", correlation)
    if distribution not in DELAY_DISTRIBUTIONS:
        raise ValidationError(
            "invalid delay distribution: must be one of {uniform | normal | pareto | paretonormal}"
        )
    args = ["delay", f"{int(time)}ms"]
    if jitter > 0:
        args.append(f"{int(jitter)}ms")
    if correlation > 0:
        args.append(_pct(correlation))
    if distribution:
        args += ["distribution", distribution]
    return args


def _percent_args(kind, percent, correlation):
    _check_percent(f"{kind} percent", percent)
    _check_percent(f"{kind} correlation", correlation)
    args = [kind, _pct(percent)]
    if correlation > 0:
        args.append(_pct(correlation))
    return args


def loss_args(percent, correlation=0.0) -> List[str]:
    return _percent_args("loss", percent, correlation)


def duplicate_args(percent, correlation=0.0) -> List[str]:
    return _percent_args("duplicate", percent, correlation)


def corrupt_args(percent, correlation=0.0) -> List[str]:
    return _percent_args("corrupt", percent, correlation)


def loss_state_args(p13, p31=100.0, p32=0.0, p23=100.0, p14=0.0) -> List[str]:
    """4-state Markov loss model."""
    for name, value in (("p13", p13), ("p31", p31), ("p32", p32), ("p23", p23), ("p14", p14)):
        _check_percent(f"{name} percentage", value)
    return ["loss", "state"] + [_pct(v) for v in (p13, p31, p32, p23, p14)]


def loss_gemodel_args(pg, pb=100.0, one_h=100.0, one_k=0.0) -> List[str]:
    """Gilbert-Elliot loss model."""
    for name, value in (
        ("pg (Good State) transition probability", pg),
        ("pb (Bad State) transition probability", pb),
        ("loss probability (1-h)", one_h),
        ("loss probability (1-k)", one_k),
    ):
        _check_percent(name, value)
    return ["loss", "gemodel"] + [_pct(v) for v in (pg, pb, one_h, one_k)]


def rate_args(rate, packet_overhead=0, cell_size=0, cell_overhead=0) -> List[str]:
    if not rate:
        raise ValidationError("undefined rate limit")
    if not RATE_RE.fullmatch(rate):
        raise ValidationError(f"invalid rate: must match '{RATE_RE.pattern}'")
    if cell_size < 0:
        raise ValidationError("invalid cell size: must be a non-negative integer")
    args = ["rate", rate]
    if packet_overhead != 0:
        args.append(str(packet_overhead))
    if cell_size > 0:
        args.append(str(cell_size))
    if cell_overhead != 0:
        args.append(str(cell_overhead))
    return args


def has_filters(ips: Sequence[str] = (), sports: Sequence[str] = (), dports: Sequence[str] = ()) -> bool:
    return bool(ips or sports or dports)


def build_netem_commands(iface, netem_args, ips=(), sports=(), dports=()) -> List[List[str]]:
    if not has_filters(ips, sports, dports):
        return [["qdisc", "add", "dev", iface, "root", "netem", *netem_args]]

    commands = [
        # prio instantly creates classes 1:1, 1:2 and 1:3
        ["qdisc", "add", "dev", iface, "root", "handle", "1:", "prio"],
        ["qdisc", "add", "dev", iface, "parent", "1:1", "handle", "10:", "sfq"],
        ["qdisc", "add", "dev", iface, "parent", "1:2", "handle", "20:", "sfq"],
        ["qdisc", "add", "dev", iface, "parent", "1:3", "handle", "30:", "netem", *netem_args],
    ]
    filter_prefix = ["filter", "add", "dev", iface, "protocol", "ip", "parent", "1:0", "prio", "1", "u32"]
    for ip in ips:
        commands.append(filter_prefix + ["match", "ip", "dst", ip, "flowid", "1:3"])
    for sport in sports:
        commands.append(filter_prefix + ["match", "ip", "sport", sport, "0xffff", "flowid", "1:3"])
    for dport in dports:
        commands.append(filter_prefix + ["match", "ip", "dport", dport, "0xffff", "flowid", "1:3"])
    return commands


def build_stop_netem_commands(iface, filtered=False) -> List[List[str]]:
    if not filtered:
        return [["qdisc", "del", "dev", iface, "root", "netem"]]
    # child qdiscs and u32 filters are removed together with the root
    return [["qdisc", "del", "dev", iface, "root", "handle", "1:", "prio"]]
