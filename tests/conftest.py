from __future__ import annotations

import dataclasses
import itertools
from dataclasses import dataclass, field

import pytest

from dpr import db
from dpr.docker_ops import (
    CLUSTER_LABEL,
    CONTROL_PLANE_ROLE,
    EXTERNAL_LOAD_BALANCER_ROLE,
    MACHINE_POOL_LABEL,
    ROLE_LABEL,
    WORKER_ROLE,
    Machine,
)
from dpr.errors import DriverError
from dpr.images import parse_version, resolve_image
from dpr.models import IPFamily, Mount


@dataclass
class FakeContainer:
    machine: Machine
    ipv4: str = ""
    ipv6: str = ""
    files: dict[str, bytes] = field(default_factory=dict)
    signals: list[str] = field(default_factory=list)
    mounts: list[Mount] = field(default_factory=list)


class FakeDriver:
    """In-memory ContainerDriver that records every call."""

    def __init__(self) -> None:
        self.containers: dict[str, FakeContainer] = {}
        self.calls: list[tuple[str, str]] = []
        # (operation, container name or "*") -> exception to raise
        self.fail_on: dict[tuple[str, str], Exception] = {}
        self.corrupt_reads = False
        self._ids = itertools.count(1)

    def add(self, name: str, image: str, labels: dict[str, str], ipv4: str | None = None, ipv6: str | None = None) -> Machine:
        n = next(self._ids)
        machine = Machine(id=f"id-{n}", name=name, image=image, labels=dict(labels))
        self.containers[name] = FakeContainer(
            machine=machine,
            ipv4=f"172.18.0.{n + 1}" if ipv4 is None else ipv4,
            ipv6=f"fc00:f853:ccd:e793::{n + 1}" if ipv6 is None else ipv6,
        )
        return machine

    def add_worker(self, name: str, image: str, cluster: str = "c1", pool: str = "dmp") -> Machine:
        return self.add(name, image, {CLUSTER_LABEL: cluster, ROLE_LABEL: WORKER_ROLE, MACHINE_POOL_LABEL: pool})

    def add_control_plane(self, name: str, cluster: str = "c1", **kwargs) -> Machine:
        return self.add(name, "kindest/node:v1.29.2", {CLUSTER_LABEL: cluster, ROLE_LABEL: CONTROL_PLANE_ROLE}, **kwargs)

    def _check(self, op: str, name: str) -> None:
        self.calls.append((op, name))
        exc = self.fail_on.get((op, name)) or self.fail_on.get((op, "*"))
        if exc is not None:
            raise exc

    def count(self, op: str) -> int:
        return sum(1 for o, _ in self.calls if o == op)

    def names(self, role: str = WORKER_ROLE) -> list[str]:
        return sorted(n for n, c in self.containers.items() if c.machine.role == role)

    def create_machine(self, cluster_name, name, custom_image, role, version, labels, extra_mounts) -> Machine:
        self._check("create_machine", name)
        if name in self.containers:
            raise DriverError(f"container {name} already exists")
        image = resolve_image(parse_version(version), custom_image)
        all_labels = {**labels, CLUSTER_LABEL: cluster_name, ROLE_LABEL: role}
        machine = self.add(name, image, all_labels)
        self.containers[name].mounts = list(extra_mounts)
        return machine

    def create_load_balancer(self, cluster_name, name, image, listen_address, port, ip_family: IPFamily) -> Machine:
        self._check("create_load_balancer", name)
        self.last_listen_address = listen_address
        return self.add(name, image, {CLUSTER_LABEL: cluster_name, ROLE_LABEL: EXTERNAL_LOAD_BALANCER_ROLE})

    def delete(self, machine: Machine) -> None:
        self._check("delete", machine.name)
        self.containers.pop(machine.name, None)

    def list_containers(self, labels: dict[str, str]) -> list[Machine]:
        self._check("list", "*")
        return [
            c.machine
            for _, c in sorted(self.containers.items())
            if all(c.machine.labels.get(k) == v for k, v in labels.items())
        ]

    def ip(self, machine: Machine) -> tuple[str, str]:
        self._check("ip", machine.name)
        c = self.containers[machine.name]
        return c.ipv4, c.ipv6

    def write_file(self, machine: Machine, path: str, data: bytes) -> None:
        self._check("write_file", machine.name)
        self.containers[machine.name].files[path] = data

    def read_file(self, machine: Machine, path: str) -> bytes:
        self._check("read_file", machine.name)
        data = self.containers[machine.name].files[path]
        if self.corrupt_reads:
            return data[: len(data) // 2]
        return data

    def kill(self, machine: Machine, signal: str) -> None:
        self._check("kill", machine.name)
        self.containers[machine.name].signals.append(signal)


@pytest.fixture()
def driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture()
def tmp_db(tmp_path, monkeypatch):
    """Point the sqlite store at an isolated file."""
    monkeypatch.setattr(db, "settings", dataclasses.replace(db.settings, db_path=str(tmp_path / "dpr.db")))
    db.init_db()
    return tmp_path / "dpr.db"
