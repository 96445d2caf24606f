from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock

from .models import ClusterTarget


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class ClusterStatus:
    cluster: str
    # pool name -> creates/deletes still needed after the last pass
    out_of_spec: dict[str, int] = field(default_factory=dict)
    load_balancer_ip: str | None = None
    last_error: str | None = None
    updated_at: str = field(default_factory=utc_now)

    @property
    def converged(self) -> bool:
        return self.last_error is None and not any(self.out_of_spec.values())


class RuntimeState:
    """In-memory registry of desired clusters and the outcome of the last pass."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.targets: dict[str, ClusterTarget] = {}  # cluster name -> desired state
        self.statuses: dict[str, ClusterStatus] = {}

    def set_target(self, target: ClusterTarget) -> None:
        with self.lock:
            self.targets[target.cluster.name] = target

    def remove_target(self, name: str) -> ClusterTarget | None:
        with self.lock:
            self.statuses.pop(name, None)
            return self.targets.pop(name, None)

    def get_target(self, name: str) -> ClusterTarget | None:
        with self.lock:
            return self.targets.get(name)

    def list_targets(self) -> list[ClusterTarget]:
        with self.lock:
            return [self.targets[k] for k in sorted(self.targets)]

    def set_status(self, st: ClusterStatus) -> None:
        with self.lock:
            st.updated_at = utc_now()
            self.statuses[st.cluster] = st

    def get_status(self, name: str) -> ClusterStatus | None:
        with self.lock:
            return self.statuses.get(name)
