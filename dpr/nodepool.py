"""Node pool: a set of like worker containers owned by one machine pool.

The node pool converges the live containers toward the machine pool spec
(replica count and image) using a recreate-only strategy: out-of-date machines
are deleted and new ones created, nothing is ever upgraded in place. The only
state carried between passes is the list of NodePoolMachineStatus records,
which the caller persists and hands back.
"""

from __future__ import annotations

import logging
import random
import string
from dataclasses import dataclass, replace
from typing import Iterable, Union

from .docker_ops import (
    CLUSTER_LABEL,
    MACHINE_POOL_LABEL,
    WORKER_ROLE,
    ContainerDriver,
    Machine,
    failure_domain_label,
    validate_machine_name,
)
from .errors import ConfigurationError, DriverError
from .images import parse_version, resolve_image
from .models import Cluster, DockerMachinePool, MachinePool
from .settings import settings

logger = logging.getLogger(__name__)

NAME_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
NAME_SUFFIX_LENGTH = 6


@dataclass
class NodePoolMachineStatus:
    name: str
    prioritize_delete: bool = False


@dataclass(frozen=True)
class LiveMachine:
    """A container seen in the driver with no status yet.

    refresh() pairs every listed container with a status right away, so pools
    only hold this case when built by hand.
    """

    machine: Machine
    status = None

    @property
    def name(self) -> str:
        return self.machine.name


@dataclass(frozen=True)
class StatusOnlyMachine:
    """A persisted status with no live container behind it."""

    status: NodePoolMachineStatus
    machine = None

    @property
    def name(self) -> str:
        return self.status.name


@dataclass(frozen=True)
class TrackedMachine:
    machine: Machine
    status: NodePoolMachineStatus

    @property
    def name(self) -> str:
        return self.status.name


NodePoolMachine = Union[LiveMachine, StatusOnlyMachine, TrackedMachine]


def deletion_order_key(entry: NodePoolMachine) -> tuple[bool, str]:
    """Machines prioritized for deletion first, then by name."""
    prioritize = entry.status.prioritize_delete if entry.status is not None else False
    return (not prioritize, entry.name)


def random_suffix(rng: random.Random, length: int = NAME_SUFFIX_LENGTH) -> str:
    return "".join(rng.choice(NAME_SUFFIX_ALPHABET) for _ in range(length))


class NodePool:
    """Manages (adds, deletes, replaces) the machines of one docker machine pool.

    Not safe for concurrent use; one reconcile pass owns an instance.
    """

    def __init__(
        self,
        driver: ContainerDriver,
        cluster: Cluster,
        machine_pool: MachinePool,
        docker_machine_pool: DockerMachinePool,
        statuses: Iterable[NodePoolMachineStatus] = (),
        rng: random.Random | None = None,
    ):
        self.driver = driver
        self.cluster = cluster
        self.machine_pool = machine_pool
        self.docker_machine_pool = docker_machine_pool
        self.rng = rng or random.SystemRandom()
        self.label_filters = {MACHINE_POOL_LABEL: docker_machine_pool.name}
        self.machines: list[NodePoolMachine] = [StatusOnlyMachine(status=replace(s)) for s in statuses]
        self._sort()

    @classmethod
    def load(
        cls,
        driver: ContainerDriver,
        cluster: Cluster,
        machine_pool: MachinePool,
        docker_machine_pool: DockerMachinePool,
        statuses: Iterable[NodePoolMachineStatus] = (),
        rng: random.Random | None = None,
    ) -> "NodePool":
        """Seed the pool from carried-over statuses and discover live machines."""
        np = cls(driver, cluster, machine_pool, docker_machine_pool, statuses, rng=rng)
        logger.debug("node pool %s seeded with statuses %s", np.name, np.current_statuses())
        np.refresh()
        return np

    @property
    def name(self) -> str:
        return self.docker_machine_pool.name

    def _sort(self) -> None:
        self.machines.sort(key=deletion_order_key)

    def current_statuses(self) -> list[NodePoolMachineStatus]:
        """Statuses in deletion order, for the caller to persist."""
        return [
            replace(m.status) if m.status is not None else NodePoolMachineStatus(name=m.name)
            for m in self.machines
        ]

    def expected_image(self) -> str:
        """The image every machine should run; a bad version is a ConfigurationError."""
        version = parse_version(self.machine_pool.version)
        return resolve_image(version, self.docker_machine_pool.custom_image)

    def live_machines(self) -> list[Machine]:
        return [m.machine for m in self.machines if m.machine is not None]

    def machines_matching_spec(self) -> list[Machine]:
        expected = self.expected_image()
        return [m for m in self.live_machines() if m.image == expected]

    def machines_out_of_spec(self) -> int:
        """How many creates/deletes are still needed to converge.

        Counts live machines with the wrong image, matching machines beyond the
        desired replicas, and matching machines still missing.
        """
        desired = self.machine_pool.replicas
        live = self.live_machines()
        matching = len(self.machines_matching_spec())
        mismatched = len(live) - matching
        return mismatched + abs(desired - matching)

    def reconcile_machines(self) -> None:
        """Delete excess or outdated machines, then create missing ones.

        One pass deletes at most the machines beyond the desired count plus the
        outdated ones seen while walking; the caller re-invokes until converged.
        """
        desired = self.machine_pool.replicas
        expected = self.expected_image()

        # Keep the machines at the back of the deletion order so excess is taken
        # from the front, where prioritized machines sort.
        doomed: list[NodePoolMachine] = []
        kept = 0
        for entry in reversed(self.machines):
            if entry.machine is None:
                continue
            if kept >= desired or entry.machine.image != expected:
                doomed.append(entry)
            else:
                kept += 1
        doomed.reverse()

        for entry in doomed:
            logger.info("deleting machine %s from node pool %s (image %s)", entry.name, self.name, entry.machine.image)
            try:
                self.driver.delete(entry.machine)
            except DriverError as e:
                raise DriverError(f"failed to delete machine {entry.name}: {e}") from e
            self.machines.remove(entry)
            self._sort()
        if doomed:
            self.refresh()

        matching = len(self.machines_matching_spec())
        logger.info("node pool %s has %d/%d matching machines", self.name, matching, desired)
        missing = desired - matching
        for _ in range(missing):
            self._add_machine()
        if missing > 0:
            self.refresh()

    def delete(self) -> None:
        """Delete every live machine; the pool should not be used afterwards."""
        for entry in list(self.machines):
            if entry.machine is None:
                continue
            try:
                self.driver.delete(entry.machine)
            except DriverError as e:
                raise DriverError(f"failed to delete machine {entry.name}: {e}") from e
            self.machines.remove(entry)

    def _add_machine(self) -> None:
        name = f"{settings.worker_name_prefix}-{random_suffix(self.rng)}"
        try:
            validate_machine_name(name)
        except ValueError as e:
            raise ConfigurationError(f"invalid worker name prefix {settings.worker_name_prefix!r}: {e}") from e

        labels = dict(self.label_filters)
        failure_domains = self.machine_pool.failure_domains
        if failure_domains:
            # Placement hint only; every container runs on the same host.
            labels.update(failure_domain_label(self.rng.choice(failure_domains)))

        logger.info("creating machine %s in node pool %s", name, self.name)
        try:
            self.driver.create_machine(
                self.cluster.name,
                name,
                self.docker_machine_pool.custom_image,
                WORKER_ROLE,
                self.machine_pool.version,
                labels,
                list(self.docker_machine_pool.extra_mounts),
            )
        except DriverError as e:
            raise DriverError(f"failed to create docker machine with name {name}: {e}") from e

    def refresh(self) -> None:
        """Re-list the pool's containers and merge them with the known statuses."""
        known = {m.name: m.status for m in self.machines if m.status is not None}

        filters = {CLUSTER_LABEL: self.cluster.name, **self.label_filters}
        try:
            live = self.driver.list_containers(filters)
        except DriverError as e:
            raise DriverError(f"failed to refresh node pool {self.name}: {e}") from e

        entries: list[NodePoolMachine] = []
        seen: set[str] = set()
        for machine in live:
            # Never adopt a control plane machine that happens to carry the pool label.
            if machine.is_control_plane or machine.name in seen:
                continue
            seen.add(machine.name)
            status = known.get(machine.name) or NodePoolMachineStatus(name=machine.name)
            entries.append(TrackedMachine(machine=machine, status=status))

        for name, status in known.items():
            if name not in seen:
                entries.append(StatusOnlyMachine(status=status))

        self.machines = entries
        self._sort()
        logger.debug("node pool %s refreshed: %s", self.name, [m.name for m in self.machines])
