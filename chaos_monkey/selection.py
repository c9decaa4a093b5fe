"""
Target resolution: which containers a disruption is applied to.
"""

import logging
import random
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from chaos_monkey.container import Container
from chaos_monkey.errors import ChaosError, SelectionError

logger = logging.getLogger(__name__)

RE2_PREFIX = "re2:"


def split_labels(raw: Sequence[str]) -> Tuple[str, ...]:
    """Accept both ``--label a=1 --label b=2`` and ``--label a=1,b=2``."""
    labels = []
    for item in raw or ():
        for part in item.split(","):
            part = part.strip()
            if part:
                labels.append(part)
    return tuple(labels)


def names_or_pattern(args: Sequence[str]):
    """Several arguments are names; a single ``re2:`` argument is a pattern."""
    args = list(args or [])
    if len(args) == 1 and args[0].startswith(RE2_PREFIX):
        return (), args[0][len(RE2_PREFIX):]
    return tuple(args), ""


@dataclass(frozen=True)
class SelectionPolicy:
    names: Tuple[str, ...] = ()
    pattern: str = ""
    labels: Tuple[str, ...] = ()
    limit: int = 0
    random: bool = False
    include_stopped: bool = False
    _regex: Optional["re.Pattern"] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "names", tuple(self.names or ()))
        object.__setattr__(self, "labels", split_labels(self.labels))
        if self.names and self.pattern:
            raise SelectionError("container names and a name pattern are mutually exclusive")
        if self.limit < 0:
            raise SelectionError(f"invalid limit {self.limit}: must be >= 0")
        if self.pattern:
            try:
                object.__setattr__(self, "_regex", re.compile(self.pattern))
            except re.error as err:
                raise SelectionError(f"invalid name pattern {self.pattern!r}: {err}") from err

    def matches(self, container: Container) -> bool:
        if container.is_self() or container.is_skipped():
            return False
        if self.names:
            wanted = {name.lstrip("/") for name in self.names}
            return container.short_name in wanted or container.id in self.names
        if self._regex is not None:
            return bool(self._regex.search(container.name) or self._regex.search(container.short_name))
        return True


async def resolve_targets(executor, policy: SelectionPolicy) -> List[Container]:
    """List containers and narrow them down according to ``policy``."""
    logger.debug(
        f"listing containers: names={list(policy.names)} pattern={policy.pattern!r} "
        f"labels={list(policy.labels)} limit={policy.limit} random={policy.random}"
    )
    try:
        listed = await executor.list_containers(labels=policy.labels, all=policy.include_stopped)
    except ChaosError as err:
        raise SelectionError(f"failed to list containers: {err}") from err

    targets = [c for c in listed if policy.matches(c)]
    if not targets:
        logger.warning(
            f"no containers matching names={list(policy.names)} pattern={policy.pattern!r} "
            f"labels={list(policy.labels)}"
        )
        return []

    if policy.random:
        target = random.choice(targets)
        logger.debug(f"selected random container {target}")
        return [target]
    if policy.limit and len(targets) > policy.limit:
        targets = random.sample(targets, policy.limit)
    return targets
