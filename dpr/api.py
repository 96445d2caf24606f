from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Response, status

from . import db
from .api_models import ClusterStatusOut, MachineStatusOut, PrioritizeDeleteRequest
from .docker_ops import ContainerDriver, validate_machine_name
from .errors import ConfigurationError, DprError, DriverError
from .models import ClusterTarget
from .reconciler import Reconciler
from .runtime import RuntimeState


def _cluster_out(runtime: RuntimeState, target: ClusterTarget) -> ClusterStatusOut:
    out = ClusterStatusOut(
        cluster=target.cluster.name,
        node_pools=[p.docker_machine_pool.name for p in target.node_pools],
    )
    st = runtime.get_status(target.cluster.name)
    if st is not None:
        out.converged = st.converged
        out.out_of_spec = dict(st.out_of_spec)
        out.load_balancer_ip = st.load_balancer_ip
        out.last_error = st.last_error
        out.updated_at = st.updated_at
    return out


def create_app(driver: ContainerDriver, runtime: RuntimeState | None = None, start_reconciler: bool = True) -> FastAPI:
    runtime = runtime or RuntimeState()
    reconciler = Reconciler(runtime, driver)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db.init_db()
        if start_reconciler:
            reconciler.start()
        yield
        reconciler.stop()

    app = FastAPI(title="Docker Pool Reconciler", lifespan=lifespan)
    app.state.runtime = runtime
    app.state.reconciler = reconciler

    def _target_or_404(name: str) -> ClusterTarget:
        target = runtime.get_target(name)
        if target is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"unknown cluster {name}")
        return target

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/clusters", response_model=list[ClusterStatusOut])
    def list_clusters() -> list[ClusterStatusOut]:
        return [_cluster_out(runtime, t) for t in runtime.list_targets()]

    @app.post("/clusters", response_model=ClusterStatusOut, status_code=status.HTTP_201_CREATED)
    def register_cluster(target: ClusterTarget) -> ClusterStatusOut:
        if not target.cluster.name:
            raise HTTPException(status_code=422, detail="cluster name is empty")
        try:
            target.cluster.ip_family()
        except ConfigurationError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e
        runtime.set_target(target)
        db.log_event("INFO", "Cluster registered", cluster=target.cluster.name)
        return _cluster_out(runtime, target)

    @app.get("/clusters/{name}", response_model=ClusterStatusOut)
    def get_cluster(name: str) -> ClusterStatusOut:
        return _cluster_out(runtime, _target_or_404(name))

    @app.delete("/clusters/{name}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
    def delete_cluster(name: str) -> Response:
        target = _target_or_404(name)
        try:
            reconciler.delete_cluster(target)
        except DriverError as e:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
        except DprError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/clusters/{name}/pools/{pool}/machines", response_model=list[MachineStatusOut])
    def list_machines(name: str, pool: str) -> list[MachineStatusOut]:
        return [
            MachineStatusOut(name=s.name, prioritize_delete=s.prioritize_delete)
            for s in db.load_statuses(name, pool)
        ]

    @app.put("/clusters/{name}/pools/{pool}/machines/{machine}", response_model=MachineStatusOut)
    def prioritize_delete(name: str, pool: str, machine: str, req: PrioritizeDeleteRequest) -> MachineStatusOut:
        try:
            validate_machine_name(machine)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e
        s = db.set_prioritize_delete(name, pool, machine, req.prioritize_delete)
        db.log_event(
            "INFO",
            f"Machine {machine} prioritize_delete={req.prioritize_delete}",
            cluster=name,
            pool=pool,
        )
        return MachineStatusOut(name=s.name, prioritize_delete=s.prioritize_delete)

    @app.get("/events")
    def events(limit: int = 100) -> list[dict]:
        return db.latest_events(max(1, min(1000, limit)))

    return app
