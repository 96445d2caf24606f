from __future__ import annotations

from pydantic import BaseModel, Field


class PrioritizeDeleteRequest(BaseModel):
    prioritize_delete: bool = Field(True, description="Delete this machine first on the next scale down or upgrade")


class MachineStatusOut(BaseModel):
    name: str
    prioritize_delete: bool


class ClusterStatusOut(BaseModel):
    cluster: str
    node_pools: list[str]
    converged: bool | None = Field(None, description="None until the first pass has run")
    out_of_spec: dict[str, int] = Field(default_factory=dict)
    load_balancer_ip: str | None = None
    last_error: str | None = None
    updated_at: str | None = None
