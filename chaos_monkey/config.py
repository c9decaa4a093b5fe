"""
Runtime settings and duration parsing.

Settings come from the environment first; the command line overrides them.
"""

import os
import re
from dataclasses import dataclass
from typing import Optional

from chaos_monkey.errors import ValidationError

DEFAULT_CONTAINERD_ADDRESS = "/run/containerd/containerd.sock"
DEFAULT_CONTAINERD_NAMESPACE = "k8s.io"
RUNTIMES = ("docker", "containerd")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def _env_flag(name, default=False):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    runtime: str = "docker"
    docker_host: Optional[str] = None
    containerd_address: str = DEFAULT_CONTAINERD_ADDRESS
    containerd_namespace: str = DEFAULT_CONTAINERD_NAMESPACE
    ctr_path: str = "ctr"
    log_level: str = "INFO"
    dry_run: bool = False

    @classmethod
    def from_env(cls):
        return cls(
            runtime=os.getenv("CHAOS_RUNTIME", "docker"),
            docker_host=os.getenv("DOCKER_HOST"),
            containerd_address=os.getenv("CONTAINERD_ADDRESS", DEFAULT_CONTAINERD_ADDRESS),
            containerd_namespace=os.getenv("CONTAINERD_NAMESPACE", DEFAULT_CONTAINERD_NAMESPACE),
            ctr_path=os.getenv("CTR_PATH", "ctr"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            dry_run=_env_flag("DRY_RUN"),
        )

    def validate(self):
        if self.runtime not in RUNTIMES:
            raise ValidationError(
                f"unknown container runtime {self.runtime!r}: must be one of {', '.join(RUNTIMES)}"
            )
        level = str(self.log_level).strip().upper()
        if level not in LOG_LEVELS:
            raise ValidationError(
                f"unknown log level {self.log_level!r}: must be one of {', '.join(LOG_LEVELS)}"
            )
        self.log_level = level
        return self


def parse_duration(value) -> float:
    """Parse '1m30s', '500ms', '2h' (or a bare number of seconds) into seconds."""
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValidationError(f"negative duration: {value}")
        return float(value)
    text = (value or "").strip()
    if not text:
        raise ValidationError("undefined duration")
    if text == "0":
        return 0.0
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if seconds < 0:
            raise ValidationError(f"negative duration: {value}")
        return seconds

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ValidationError(f"invalid duration {value!r}: use e.g. 500ms, 10s, 1m30s")
    return total


def parse_interval(value) -> float:
    """An empty interval means run once."""
    if value in (None, ""):
        return 0.0
    return parse_duration(value)


def validate_duration(duration, interval):
    if duration is None:
        return
    if duration <= 0:
        raise ValidationError("duration must be positive")
    if interval and duration >= interval:
        raise ValidationError("duration must be shorter than interval")
