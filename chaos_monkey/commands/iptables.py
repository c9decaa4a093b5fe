"""iptables packet-loss rules built on the statistic match."""

from typing import List, Sequence

from chaos_monkey.errors import ValidationError

MODE_RANDOM = "random"
MODE_NTH = "nth"
PROTOCOLS = ("any", "tcp", "udp", "icmp")


def validate_loss(mode, probability=0.0, every=0, packet=0):
    if mode == MODE_RANDOM:
        if probability is None or not 0.0 <= probability <= 1.0:
            raise ValidationError("invalid loss probability: must be between 0.0 and 1.0")
    elif mode == MODE_NTH:
        if every is None or every <= 0:
            raise ValidationError("invalid loss every: must be > 0")
        if packet is None or packet < 0 or packet > every - 1:
            raise ValidationError("invalid loss packet: must be 0 <= packet <= every-1")
    else:
        raise ValidationError("invalid loss mode: must be either random or nth")


def statistic_suffix(mode, probability=0.0, every=0, packet=0) -> List[str]:
    suffix = ["-m", "statistic", "--mode", mode]
    if mode == MODE_RANDOM:
        suffix += ["--probability", f"{probability:.2f}"]
    else:
        suffix += ["--every", str(every), "--packet", str(packet)]
    return suffix + ["-j", "DROP"]


def rule_prefix(iface, protocol="any") -> List[str]:
    if protocol not in PROTOCOLS:
        raise ValidationError(f"invalid protocol {protocol!r}: must be one of {', '.join(PROTOCOLS)}")
    prefix = ["INPUT", "-i", iface]
    if protocol != "any":
        prefix += ["-p", protocol]
    return prefix


def build_iptables_commands(
    prefix: Sequence[str],
    suffix: Sequence[str],
    src_ips: Sequence[str] = (),
    dst_ips: Sequence[str] = (),
    sports: Sequence[str] = (),
    dports: Sequence[str] = (),
    action="-I",
) -> List[List[str]]:
    """One rule per filter value; losses apply independently per address or port."""
    head = [action, *prefix]
    commands = []
    for ip in src_ips:
        commands.append(head + ["-s", ip] + list(suffix))
    for ip in dst_ips:
        commands.append(head + ["-d", ip] + list(suffix))
    for sport in sports:
        commands.append(head + ["--sport", sport] + list(suffix))
    for dport in dports:
        commands.append(head + ["--dport", dport] + list(suffix))
    if not commands:
        commands.append(head + list(suffix))
    return commands


def delete_commands(commands: Sequence[Sequence[str]]) -> List[List[str]]:
    """iptables deletes by exact rule content, so revert replays the rules with -D."""
    reverted = []
    for command in commands:
        command = list(command)
        if command and command[0] in ("-I", "-A"):
            command[0] = "-D"
        reverted.append(command)
    return reverted
