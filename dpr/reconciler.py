from __future__ import annotations

import logging
import random
from threading import Event, Lock, Thread

from . import db
from .docker_ops import ContainerDriver
from .errors import ConsistencyError
from .loadbalancer import LoadBalancer
from .models import ClusterTarget
from .nodepool import NodePool
from .runtime import ClusterStatus, RuntimeState
from .settings import settings

logger = logging.getLogger(__name__)


class Reconciler:
    """Continuously reconciles every registered cluster with its containers.

    Clusters are handled one after another on a single thread, so a NodePool or
    LoadBalancer is never used by two passes at once. Failures are journaled and
    retried on the next pass.
    """

    def __init__(self, runtime: RuntimeState, driver: ContainerDriver, rng: random.Random | None = None):
        self.runtime = runtime
        self.driver = driver
        self.rng = rng
        self._stop = Event()
        # Serializes passes with API-triggered deletes.
        self._pass_lock = Lock()
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def _loop(self) -> None:
        db.log_event("INFO", "Reconciler started")
        while not self._stop.is_set():
            converged = True
            try:
                converged = self.tick()
            except Exception as e:
                db.log_event("ERROR", f"Reconciler tick failed: {type(e).__name__}: {e}")
            interval = settings.poll_interval_s if converged else settings.requeue_interval_s
            self._stop.wait(max(1, interval))

    def tick(self) -> bool:
        """Run one pass over all clusters; True when every cluster is converged."""
        converged = True
        for target in self.runtime.list_targets():
            name = target.cluster.name
            with self._pass_lock:
                if self.runtime.get_target(name) is None:
                    # Unregistered while this pass was running.
                    continue
                try:
                    st = self.reconcile_cluster(target)
                except Exception as e:
                    logger.exception("reconcile of cluster %s failed", name)
                    db.log_event("ERROR", f"Reconcile failed: {type(e).__name__}: {e}", cluster=name)
                    st = ClusterStatus(cluster=name, last_error=f"{type(e).__name__}: {e}")
                self.runtime.set_status(st)
            converged = converged and st.converged
        return converged

    def reconcile_cluster(self, target: ClusterTarget) -> ClusterStatus:
        cluster = target.cluster
        lb_spec = target.load_balancer
        st = ClusterStatus(cluster=cluster.name)

        lb = LoadBalancer.discover(
            self.driver,
            cluster,
            image_repository=lb_spec.image_repository,
            image_tag=lb_spec.image_tag,
            frontend_port=lb_spec.frontend_port,
        )
        if lb.container is None:
            lb.create()
            db.log_event("INFO", f"Created load balancer {lb.container_name}", cluster=cluster.name)

        for pool_target in target.node_pools:
            pool_name = pool_target.docker_machine_pool.name
            np = NodePool.load(
                self.driver,
                cluster,
                pool_target.machine_pool,
                pool_target.docker_machine_pool,
                db.load_statuses(cluster.name, pool_name),
                rng=self.rng,
            )
            before = np.machines_out_of_spec()
            try:
                np.reconcile_machines()
            finally:
                db.save_statuses(cluster.name, pool_name, np.current_statuses())
            remaining = np.machines_out_of_spec()
            st.out_of_spec[pool_name] = remaining
            if before and not remaining:
                db.log_event("INFO", "Node pool converged", cluster=cluster.name, pool=pool_name)
            elif remaining:
                db.log_event("INFO", f"{remaining} machine changes pending", cluster=cluster.name, pool=pool_name)

        lb.update_configuration(lb_spec.weights, lb_spec.config_template)

        try:
            st.load_balancer_ip = lb.ip()
        except ConsistencyError as e:
            db.log_event("WARN", str(e), cluster=cluster.name)
        return st

    def delete_cluster(self, target: ClusterTarget) -> None:
        """Delete every node pool machine and the load balancer of a cluster, then unregister it.

        On failure the cluster stays registered so the delete can be retried.
        """
        with self._pass_lock:
            try:
                self._delete_cluster(target)
            except Exception as e:
                db.log_event("ERROR", f"Delete failed: {type(e).__name__}: {e}", cluster=target.cluster.name)
                raise
            self.runtime.remove_target(target.cluster.name)

    def _delete_cluster(self, target: ClusterTarget) -> None:
        cluster = target.cluster
        for pool_target in target.node_pools:
            pool_name = pool_target.docker_machine_pool.name
            np = NodePool.load(
                self.driver,
                cluster,
                pool_target.machine_pool,
                pool_target.docker_machine_pool,
                db.load_statuses(cluster.name, pool_name),
                rng=self.rng,
            )
            np.delete()
            db.delete_statuses(cluster.name, pool_name)

        lb = LoadBalancer.discover(self.driver, cluster, frontend_port=target.load_balancer.frontend_port)
        lb.delete()
        db.log_event("INFO", "Cluster deleted", cluster=cluster.name)
