from __future__ import annotations

import logging
from typing import Mapping

from . import haproxy
from .docker_ops import (
    API_SERVER_PORT,
    CLUSTER_LABEL,
    CONTROL_PLANE_ROLE,
    EXTERNAL_LOAD_BALANCER_ROLE,
    ROLE_LABEL,
    ContainerDriver,
    Machine,
)
from .errors import ConfigurationError, ConsistencyError, DriverError, MissingContainerError
from .models import Cluster, IPFamily

logger = logging.getLogger(__name__)

DEFAULT_WEIGHT = 100
RELOAD_SIGNAL = "SIGHUP"


def _find_container(driver: ContainerDriver, labels: dict[str, str]) -> Machine | None:
    containers = driver.list_containers(labels)
    if len(containers) > 1:
        names = ", ".join(sorted(c.name for c in containers))
        raise ConsistencyError(f"expected at most one container with labels {labels}, found: {names}")
    return containers[0] if containers else None


class LoadBalancer:
    """Manages the HAProxy container fronting a cluster's control plane nodes."""

    def __init__(
        self,
        driver: ContainerDriver,
        name: str,
        image: str,
        container: Machine | None,
        ip_family: IPFamily,
        frontend_port: int = API_SERVER_PORT,
        backend_port: int = API_SERVER_PORT,
    ):
        self.driver = driver
        self.name = name
        self.image = image
        self.container = container
        self.ip_family = ip_family
        self.frontend_port = frontend_port
        self.backend_port = backend_port

    @classmethod
    def discover(
        cls,
        driver: ContainerDriver,
        cluster: Cluster,
        image_repository: str = "",
        image_tag: str = "",
        frontend_port: str | int | None = "0",
    ) -> "LoadBalancer":
        """Build a helper for the cluster's load balancer, attaching to an existing container if any.

        A stopped container is still adopted; it simply has no IP address.
        """
        if not cluster.name:
            raise ConfigurationError("create load balancer: cluster name is empty")

        try:
            ip_family = cluster.ip_family()
        except ConfigurationError as e:
            raise ConfigurationError(f"create load balancer: {e}") from e

        labels = {CLUSTER_LABEL: cluster.name, ROLE_LABEL: EXTERNAL_LOAD_BALANCER_ROLE}
        try:
            container = _find_container(driver, labels)
        except DriverError as e:
            raise DriverError(f"failed to look up load balancer for cluster {cluster.name}: {e}") from e

        return cls(
            driver,
            name=cluster.name,
            image=haproxy.image_reference(image_repository, image_tag),
            container=container,
            ip_family=ip_family,
            frontend_port=_frontend_port(frontend_port),
            backend_port=API_SERVER_PORT,
        )

    @property
    def container_name(self) -> str:
        return f"{self.name}-lb"

    @property
    def ipv6(self) -> bool:
        return self.ip_family == IPFamily.IPV6

    def _pick_address(self, ipv4: str, ipv6: str) -> str:
        return ipv6 if self.ipv6 else ipv4

    def create(self) -> None:
        """Create the load balancer container if it does not exist yet."""
        if self.container is not None:
            return

        listen_address = "::" if self.ipv6 else "0.0.0.0"
        logger.info("creating load balancer container %s (ip family %s)", self.container_name, self.ip_family.value)
        try:
            self.container = self.driver.create_load_balancer(
                self.name,
                self.container_name,
                self.image,
                listen_address,
                0,
                self.ip_family,
            )
        except DriverError as e:
            raise DriverError(f"failed to create load balancer {self.container_name}: {e}") from e

    def backend_servers(self, weights: Mapping[str, int]) -> dict[str, haproxy.BackendServer]:
        """Address and weight for every control plane node of the cluster."""
        labels = {CLUSTER_LABEL: self.name, ROLE_LABEL: CONTROL_PLANE_ROLE}
        try:
            nodes = self.driver.list_containers(labels)
        except DriverError as e:
            raise DriverError(f"failed to list control plane nodes for {self.name}: {e}") from e

        servers: dict[str, haproxy.BackendServer] = {}
        for node in nodes:
            try:
                ipv4, ipv6 = self.driver.ip(node)
            except DriverError as e:
                raise DriverError(f"failed to get IP for container {node.name}: {e}") from e
            servers[node.name] = haproxy.BackendServer(
                address=self._pick_address(ipv4, ipv6),
                weight=weights.get(node.name, DEFAULT_WEIGHT),
            )
        return servers

    def update_configuration(self, weights: Mapping[str, int] | None = None, config_template: str | None = None) -> None:
        """Point the load balancer at the current control plane nodes and reload it.

        The rendered file is read back and compared before HAProxy gets SIGHUP,
        so a config that did not land intact is never reloaded.
        """
        if self.container is None:
            raise MissingContainerError("unable to configure load balancer: load balancer container does not exist")

        data = haproxy.ConfigData(
            frontend_port=str(self.frontend_port),
            backend_port=str(self.backend_port),
            backend_servers=self.backend_servers(weights or {}),
            ipv6=self.ipv6,
        )
        rendered = haproxy.render(data, config_template or haproxy.DEFAULT_TEMPLATE).encode()

        logger.info("updating load balancer configuration for %s", self.container_name)
        try:
            self.driver.write_file(self.container, haproxy.CONFIG_PATH, rendered)
            written = self.driver.read_file(self.container, haproxy.CONFIG_PATH)
        except DriverError as e:
            raise DriverError(f"failed to update configuration of {self.container_name}: {e}") from e
        if written != rendered:
            raise ConsistencyError("read load balancer configuration does not match written file")

        try:
            self.driver.kill(self.container, RELOAD_SIGNAL)
        except DriverError as e:
            raise DriverError(f"failed to reload load balancer {self.container_name}: {e}") from e

    def ip(self) -> str:
        """Address of the load balancer for the cluster IP family."""
        if self.container is None:
            raise MissingContainerError(f"load balancer container {self.container_name} does not exist")
        try:
            ipv4, ipv6 = self.driver.ip(self.container)
        except DriverError as e:
            raise DriverError(f"failed to get IP for load balancer {self.container_name}: {e}") from e
        address = self._pick_address(ipv4, ipv6)
        if not address:
            # A stopped container keeps its name but has no address.
            raise ConsistencyError(
                f"load balancer IP cannot be empty: container {self.container_name} does not have an associated IP address"
            )
        return address

    def delete(self) -> None:
        if self.container is None:
            return
        logger.info("deleting load balancer container %s", self.container_name)
        try:
            self.driver.delete(self.container)
        except DriverError as e:
            raise DriverError(f"failed to delete load balancer {self.container_name}: {e}") from e
        self.container = None


def _frontend_port(port: str | int | None) -> int:
    if port in (None, "", "0", 0):
        return API_SERVER_PORT
    try:
        value = int(port)  # type: ignore[arg-type]
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"invalid load balancer port {port!r}") from e
    if not 0 < value < 65536:
        raise ConfigurationError(f"invalid load balancer port {port!r}")
    return value
