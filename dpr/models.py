"""Desired-state snapshots consumed (read-only) by the node pool and load balancer."""

from __future__ import annotations

import ipaddress
from enum import Enum

from pydantic import BaseModel, Field

from .errors import ConfigurationError


class IPFamily(str, Enum):
    IPV4 = "IPv4"
    IPV6 = "IPv6"
    DUAL_STACK = "DualStack"


def _ip_family_for_cidrs(cidrs: list[str]) -> IPFamily:
    if len(cidrs) > 2:
        raise ValueError("too many CIDRs specified")
    found_v4 = False
    found_v6 = False
    for cidr in cidrs:
        try:
            net = ipaddress.ip_network(cidr, strict=False)
        except ValueError as e:
            raise ValueError(f"could not parse CIDR {cidr!r}: {e}") from e
        if net.version == 6:
            found_v6 = True
        else:
            found_v4 = True
    if found_v4 and found_v6:
        return IPFamily.DUAL_STACK
    if found_v6:
        return IPFamily.IPV6
    return IPFamily.IPV4


class Cluster(BaseModel):
    name: str = Field("", description="Cluster name; used as the container label value")
    pod_cidrs: list[str] = Field(default_factory=list)
    service_cidrs: list[str] = Field(default_factory=list)

    def ip_family(self) -> IPFamily:
        """Derive the cluster IP family from its pod and service CIDR blocks.

        No CIDRs at all means IPv4. Pods and services must agree unless the
        pods are dual-stack.
        """
        if not self.pod_cidrs and not self.service_cidrs:
            return IPFamily.IPV4

        try:
            pods = _ip_family_for_cidrs(self.pod_cidrs) if self.pod_cidrs else None
        except ValueError as e:
            raise ConfigurationError(f"cluster {self.name}: pods: {e}") from e
        try:
            services = _ip_family_for_cidrs(self.service_cidrs) if self.service_cidrs else None
        except ValueError as e:
            raise ConfigurationError(f"cluster {self.name}: services: {e}") from e

        if services is None:
            return pods  # type: ignore[return-value]
        if pods is None:
            return services
        if pods == IPFamily.DUAL_STACK:
            return pods
        if pods != services:
            raise ConfigurationError(f"cluster {self.name}: pods and services IP family mismatch")
        return pods


class Mount(BaseModel):
    container_path: str
    host_path: str
    read_only: bool = False


class MachinePool(BaseModel):
    name: str
    replicas: int = Field(1, ge=0, description="Desired number of worker machines")
    version: str = Field(..., description="Kubernetes version, e.g. v1.29.2")
    failure_domains: list[str] = Field(default_factory=list)


class DockerMachinePool(BaseModel):
    name: str
    custom_image: str = Field("", description="Overrides the image resolved from the version")
    extra_mounts: list[Mount] = Field(default_factory=list)


class LoadBalancerSpec(BaseModel):
    image_repository: str = ""
    image_tag: str = ""
    frontend_port: str = Field("0", description="Host port for the API endpoint; 0 picks the default")
    weights: dict[str, int] = Field(default_factory=dict, description="Backend weight per control-plane node")
    config_template: str | None = Field(None, description="Full HAProxy template override")


class NodePoolTarget(BaseModel):
    machine_pool: MachinePool
    docker_machine_pool: DockerMachinePool


class ClusterTarget(BaseModel):
    """Everything the reconciler needs to converge one cluster."""

    cluster: Cluster
    load_balancer: LoadBalancerSpec = Field(default_factory=LoadBalancerSpec)
    node_pools: list[NodePoolTarget] = Field(default_factory=list)
