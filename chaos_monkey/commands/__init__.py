"""Argument vectors for the kernel tooling run inside target containers."""

import ipaddress
import re
from typing import List, Sequence

from chaos_monkey.errors import ValidationError

INTERFACE_RE = re.compile(r"[a-zA-Z][a-zA-Z0-9_-]*")


def validate_interface(iface):
    if not iface or not INTERFACE_RE.fullmatch(iface):
        raise ValidationError(f"bad network interface name {iface!r}: must match '{INTERFACE_RE.pattern}'")
    return iface


def parse_cidrs(values: Sequence[str]) -> List[str]:
    """Normalize addresses to CIDR notation: 10.0.0.1 -> 10.0.0.1/32."""
    cidrs = []
    for value in values or ():
        try:
            cidrs.append(str(ipaddress.ip_network(value.strip(), strict=False)))
        except ValueError as err:
            raise ValidationError(f"bad target: {value!r} is not a valid IP") from err
    return cidrs


def parse_ports(values: Sequence) -> List[str]:
    ports = []
    for value in values or ():
        text = str(value).strip()
        if not text.isdigit() or not 0 <= int(text) <= 65535:
            raise ValidationError(f"bad port {value!r}: must be an integer between 0 and 65535")
        ports.append(str(int(text)))
    return ports


def split_list(value) -> List[str]:
    """Comma separated flag values, as in ``--sport 80,443``."""
    if not value:
        return []
    if isinstance(value, str):
        value = [value]
    items = []
    for chunk in value:
        items.extend(part.strip() for part in chunk.split(",") if part.strip())
    return items
