from __future__ import annotations

import io
import os
import re
import tarfile
from dataclasses import dataclass, field
from typing import Any, Protocol

import docker
from docker.errors import DockerException, NotFound

from .errors import DriverError
from .images import parse_version, resolve_image
from .models import IPFamily, Mount
from .settings import settings


CLUSTER_LABEL = "io.x-k8s.kind.cluster"
ROLE_LABEL = "io.x-k8s.kind.role"
MACHINE_POOL_LABEL = "docker.cluster.x-k8s.io/machine-pool"
FAILURE_DOMAIN_LABEL = "x-k8s.io/failure-domain"

CONTROL_PLANE_ROLE = "control-plane"
WORKER_ROLE = "worker"
EXTERNAL_LOAD_BALANCER_ROLE = "external-load-balancer"

API_SERVER_PORT = 6443

MACHINE_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.\-]{0,127}$")


def validate_machine_name(name: str) -> None:
    if not MACHINE_NAME_RE.match(name):
        raise ValueError(f"Invalid container name {name!r}. Use letters/numbers and -._ (max 128 chars).")


def failure_domain_label(failure_domain: str) -> dict[str, str]:
    return {FAILURE_DOMAIN_LABEL: failure_domain}


@dataclass(frozen=True)
class Machine:
    """Handle on one live container."""

    id: str
    name: str
    image: str
    labels: dict[str, str] = field(default_factory=dict, hash=False, compare=False)

    @property
    def role(self) -> str:
        return self.labels.get(ROLE_LABEL, "")

    @property
    def is_control_plane(self) -> bool:
        return self.role == CONTROL_PLANE_ROLE

    def __str__(self) -> str:
        return self.name


class ContainerDriver(Protocol):
    """Blocking container operations consumed by the node pool and load balancer."""

    def create_machine(
        self,
        cluster_name: str,
        name: str,
        custom_image: str,
        role: str,
        version: str,
        labels: dict[str, str],
        extra_mounts: list[Mount],
    ) -> Machine: ...

    def create_load_balancer(
        self,
        cluster_name: str,
        name: str,
        image: str,
        listen_address: str,
        port: int,
        ip_family: IPFamily,
    ) -> Machine: ...

    def delete(self, machine: Machine) -> None: ...

    def list_containers(self, labels: dict[str, str]) -> list[Machine]: ...

    def ip(self, machine: Machine) -> tuple[str, str]: ...

    def write_file(self, machine: Machine, path: str, data: bytes) -> None: ...

    def read_file(self, machine: Machine, path: str) -> bytes: ...

    def kill(self, machine: Machine, signal: str) -> None: ...


def _to_machine(container: Any) -> Machine:
    config = container.attrs.get("Config") or {}
    return Machine(
        id=container.id,
        name=container.name,
        image=config.get("Image", ""),
        labels=dict(container.labels or {}),
    )


class DockerDriver:
    """ContainerDriver backed by the Docker Engine API.

    Containers are labeled with the cluster name and node role so they can be
    re-discovered on every pass; nothing is cached between calls.
    """

    def __init__(self, client: docker.DockerClient | None = None, network: str | None = None):
        self._client = client
        self.network = network or settings.docker_network

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise DriverError(f"Docker is not available: {e}") from e
        return self._client

    def ensure_network(self) -> None:
        try:
            self.client.networks.get(self.network)
        except NotFound:
            self.client.networks.create(self.network, driver="bridge", enable_ipv6=True)
        except DockerException as e:
            raise DriverError(f"failed to inspect docker network {self.network}: {e}") from e

    def _get(self, machine: Machine) -> Any:
        try:
            return self.client.containers.get(machine.id)
        except DockerException as e:
            raise DriverError(f"failed to get container {machine.name}: {e}") from e

    def create_machine(
        self,
        cluster_name: str,
        name: str,
        custom_image: str,
        role: str,
        version: str,
        labels: dict[str, str],
        extra_mounts: list[Mount],
    ) -> Machine:
        """Create and start a privileged node container for the cluster."""
        validate_machine_name(name)
        image = resolve_image(parse_version(version), custom_image)

        all_labels = dict(labels)
        all_labels[CLUSTER_LABEL] = cluster_name
        all_labels[ROLE_LABEL] = role

        volumes: dict[str, dict[str, str]] = {"/lib/modules": {"bind": "/lib/modules", "mode": "ro"}}
        for m in extra_mounts:
            volumes[m.host_path] = {"bind": m.container_path, "mode": "ro" if m.read_only else "rw"}

        try:
            self.ensure_network()
            container = self.client.containers.run(
                image,
                detach=True,
                name=name,
                hostname=name,
                labels=all_labels,
                network=self.network,
                privileged=True,
                security_opt=["seccomp=unconfined", "apparmor=unconfined"],
                tmpfs={"/tmp": "", "/run": ""},
                volumes=volumes,
                # Machines are replaced by the node pool; keep Docker restarts off.
                restart_policy={"Name": "no"},
            )
        except DockerException as e:
            raise DriverError(f"failed to create container {name} from image {image}: {e}") from e
        container.reload()
        return _to_machine(container)

    def create_load_balancer(
        self,
        cluster_name: str,
        name: str,
        image: str,
        listen_address: str,
        port: int,
        ip_family: IPFamily,
    ) -> Machine:
        """Create the HAProxy container; port 0 lets Docker pick a host port."""
        validate_machine_name(name)
        labels = {CLUSTER_LABEL: cluster_name, ROLE_LABEL: EXTERNAL_LOAD_BALANCER_ROLE}
        sysctls: dict[str, str] = {}
        if ip_family in (IPFamily.IPV6, IPFamily.DUAL_STACK):
            sysctls["net.ipv6.conf.all.disable_ipv6"] = "0"
        try:
            self.ensure_network()
            container = self.client.containers.run(
                image,
                detach=True,
                name=name,
                hostname=name,
                labels=labels,
                network=self.network,
                ports={f"{API_SERVER_PORT}/tcp": (listen_address, port or None)},
                sysctls=sysctls or None,
                restart_policy={"Name": "no"},
            )
        except DockerException as e:
            raise DriverError(f"failed to create load balancer container {name}: {e}") from e
        container.reload()
        return _to_machine(container)

    def delete(self, machine: Machine) -> None:
        try:
            container = self.client.containers.get(machine.id)
            container.remove(force=True, v=settings.remove_volumes)
        except NotFound:
            return
        except DockerException as e:
            raise DriverError(f"failed to delete container {machine.name}: {e}") from e

    def list_containers(self, labels: dict[str, str]) -> list[Machine]:
        filters: dict[str, Any] = {"label": [f"{k}={v}" for k, v in sorted(labels.items())]}
        try:
            containers = self.client.containers.list(all=True, filters=filters)
        except DockerException as e:
            raise DriverError(f"failed to list containers with labels {labels}: {e}") from e
        return [_to_machine(c) for c in containers]

    def ip(self, machine: Machine) -> tuple[str, str]:
        container = self._get(machine)
        try:
            container.reload()
        except DockerException as e:
            raise DriverError(f"failed to inspect container {machine.name}: {e}") from e
        networks = (container.attrs.get("NetworkSettings") or {}).get("Networks") or {}
        net = networks.get(self.network)
        if net is None and networks:
            net = next(iter(networks.values()))
        if not net:
            return "", ""
        return net.get("IPAddress", "") or "", net.get("GlobalIPv6Address", "") or ""

    def write_file(self, machine: Machine, path: str, data: bytes) -> None:
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w") as tar:
            info = tarfile.TarInfo(name=os.path.basename(path))
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))

        container = self._get(machine)
        try:
            ok = container.put_archive(os.path.dirname(path) or "/", buf.getvalue())
        except DockerException as e:
            raise DriverError(f"failed to write {path} in container {machine.name}: {e}") from e
        if not ok:
            raise DriverError(f"failed to write {path} in container {machine.name}")

    def read_file(self, machine: Machine, path: str) -> bytes:
        container = self._get(machine)
        try:
            bits, _ = container.get_archive(path)
            raw = b"".join(bits)
        except DockerException as e:
            raise DriverError(f"failed to read {path} from container {machine.name}: {e}") from e

        with tarfile.open(fileobj=io.BytesIO(raw), mode="r") as tar:
            member = tar.next()
            if member is None:
                raise DriverError(f"empty archive reading {path} from container {machine.name}")
            fh = tar.extractfile(member)
            if fh is None:
                raise DriverError(f"{path} in container {machine.name} is not a regular file")
            return fh.read()

    def kill(self, machine: Machine, signal: str) -> None:
        container = self._get(machine)
        try:
            container.kill(signal=signal)
        except DockerException as e:
            raise DriverError(f"failed to send {signal} to container {machine.name}: {e}") from e
