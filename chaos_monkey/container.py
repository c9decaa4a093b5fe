"""
Engine-neutral snapshot of a container.

Docker and containerd describe containers differently; both are normalized
into the same frozen Container value, which is re-listed on every tick and
never mutated.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping

SELF_LABEL = "io.chaos-monkey"
SKIP_LABEL = "io.chaos-monkey.skip"
SIGNAL_LABEL = "io.chaos-monkey.stop-signal"


class State(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    EXITED = "exited"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value):
        value = (value or "").lower()
        if value in ("running", "restarting"):
            return cls.RUNNING
        if value in ("paused", "pausing"):
            return cls.PAUSED
        if value in ("exited", "stopped", "dead", "created"):
            return cls.EXITED
        return cls.UNKNOWN


@dataclass(frozen=True)
class Container:
    id: str
    name: str
    image: str = ""
    state: State = State.UNKNOWN
    labels: Mapping[str, str] = field(default_factory=dict)
    networks: Mapping[str, List[str]] = field(default_factory=dict)

    @property
    def short_name(self):
        """Name without the leading '/' Docker's inspect API adds."""
        return self.name.lstrip("/")

    @property
    def image_name(self):
        if self.image and ":" not in self.image.rsplit("/", 1)[-1] and "@" not in self.image:
            return f"{self.image}:latest"
        return self.image

    def is_self(self):
        return self.labels.get(SELF_LABEL) == "true"

    def is_skipped(self):
        return self.labels.get(SKIP_LABEL) == "true"

    @property
    def stop_signal(self):
        return self.labels.get(SIGNAL_LABEL, "")

    def links(self):
        names = []
        for links in self.networks.values():
            for link in links or []:
                names.append(link.split(":")[0])
        return names

    def __str__(self):
        return f"{self.short_name} ({self.id[:12]})"

    @classmethod
    def from_docker(cls, attrs):
        """Build from a docker inspect document (``container.attrs``)."""
        config = attrs.get("Config") or {}
        state = attrs.get("State") or {}
        if isinstance(state, dict):
            status = state.get("Status")
            if not status:
                status = "paused" if state.get("Paused") else "running" if state.get("Running") else "exited"
        else:
            status = state
        networks: Dict[str, List[str]] = {}
        settings = attrs.get("NetworkSettings") or {}
        for net_name, net in (settings.get("Networks") or {}).items():
            networks[net_name] = list((net or {}).get("Links") or [])
        return cls(
            id=attrs.get("Id") or attrs.get("ID", ""),
            name=attrs.get("Name", ""),
            image=config.get("Image") or attrs.get("Image", ""),
            state=State.parse(status),
            labels=dict(config.get("Labels") or {}),
            networks=networks,
        )

    @classmethod
    def from_containerd(cls, info, task_status=None):
        """Build from ``ctr containers info`` JSON plus the task status from ``ctr tasks ls``."""
        labels = dict(info.get("Labels") or {})
        container_id = info.get("ID", "")
        return cls(
            id=container_id,
            name=containerd_name(container_id, labels),
            image=info.get("Image", ""),
            state=State.parse(task_status) if task_status else State.EXITED,
            labels=labels,
            networks={},
        )


def containerd_name(container_id, labels):
    """Best human-readable name from well-known labels, else the container id."""
    name = labels.get("io.kubernetes.container.name")
    if name:
        pod = labels.get("io.kubernetes.pod.name")
        namespace = labels.get("io.kubernetes.pod.namespace")
        if pod and namespace:
            return f"{namespace}/{pod}/{name}"
        if pod:
            return f"{pod}/{name}"
        return name
    return labels.get("nerdctl/name") or labels.get("com.docker.compose.service") or container_id
