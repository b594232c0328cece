from __future__ import annotations

from typing import Any

from .api_models import UPGRADE_PHASE, Cluster, CONFIG_UPDATE_IN_PLACE
from .db import log_event
from .failover import FailoverController
from .labels import component_labels, member_name
from .placement import PlacementError
from .runtime import RequeueError
from .scaler import ScaleController
from .settings import settings
from .status_sync import StoreStatusSync
from .store_labels import LabelPropagator
from .synth import (
    desired_config_map,
    desired_node_port_services,
    desired_peer_service,
    desired_stateful_set,
    find_config_map_volume,
)
from .upgrader import UpgradeController
from .upsert import create_stateful_set, template_equal, update_stateful_set, upsert_config_map, upsert_service


class MemberManager:
    """Converges the storage members of one cluster per call to ``sync``.

    ``sync`` mutates only the status of the cluster object it is handed;
    persisting that status is up to the caller.
    """

    def __init__(
        self,
        state: Any,
        control: Any,
        status_sync: StoreStatusSync,
        labels: LabelPropagator,
        upgrader: UpgradeController,
        scaler: ScaleController,
        failover: FailoverController,
        auto_failover: bool | None = None,
    ):
        self.state = state
        self.control = control
        self.status_sync = status_sync
        self.labels = labels
        self.upgrader = upgrader
        self.scaler = scaler
        self.failover = failover
        self.auto_failover = settings.auto_failover if auto_failover is None else auto_failover

    def sync(self, cluster: Cluster) -> None:
        if not cluster.placement_available():
            raise RequeueError(f"cluster {cluster.key}: waiting for the placement service to become available")

        observed = self.state.get_stateful_set(cluster.namespace, member_name(cluster.name))
        self._sync_status(cluster, observed)

        if cluster.spec.paused:
            log_event("DEBUG", "Cluster is paused, skipping member sync", cluster=cluster.name, namespace=cluster.namespace)
            return

        pending = self._sync_stateful_set(cluster, observed)
        self._sync_services(cluster)
        if pending:
            raise RequeueError(f"cluster {cluster.key}: waiting for a store to drain before scaling in")

    def _sync_status(self, cluster: Cluster, observed: dict[str, Any] | None) -> None:
        if observed is None:
            return
        status = self.status_sync.mirror(cluster, observed)
        try:
            status = self.status_sync.sync_stores(cluster, status)
        except PlacementError as e:
            status.synced = False
            cluster.status.tikv = status
            log_event("WARN", f"Store status sync failed: {e}", cluster=cluster.name, namespace=cluster.namespace)
            raise
        cluster.status.tikv = status

    def _sync_config_map(self, cluster: Cluster, observed: dict[str, Any] | None) -> dict[str, Any]:
        name = None
        if observed is not None and cluster.config_update_strategy() == CONFIG_UPDATE_IN_PLACE:
            pod_spec = ((observed.get("spec") or {}).get("template") or {}).get("spec") or {}
            name = find_config_map_volume(pod_spec, member_name(cluster.name))
        return upsert_config_map(self.state, self.control, cluster, desired_config_map(cluster, name=name))

    def _sync_stateful_set(self, cluster: Cluster, observed: dict[str, Any] | None) -> bool:
        cm = self._sync_config_map(cluster, observed)

        # recovered capacity must shape this cycle's desired replicas
        if cluster.status.tikv.failure_stores:
            cluster.status.tikv.failure_stores = self.failover.recover(cluster)

        desired = desired_stateful_set(cluster, config_map_name=cm["metadata"]["name"])
        if observed is None:
            create_stateful_set(self.control, cluster, desired)
            cluster.status.tikv.stateful_set = {}
            return False

        self.labels.propagate(cluster)

        if not template_equal(desired, observed) or cluster.upgrading():
            cluster.status.tikv.phase = UPGRADE_PHASE
            self.upgrader.upgrade(cluster, observed, desired)

        pending = self.scaler.scale(cluster, observed, desired)

        if self.auto_failover and (cluster.spec.tikv.max_failover_count or 0) > 0:
            if cluster.all_pods_started() and not cluster.all_stores_ready():
                cluster.status.tikv.failure_stores = self.failover.failover(cluster)

        update_stateful_set(self.control, cluster, desired, observed)
        return pending

    def _sync_services(self, cluster: Cluster) -> None:
        upsert_service(self.state, self.control, cluster, desired_peer_service(cluster))
        if not cluster.spec.tikv.listeners_config.external_listeners:
            return
        pods = [
            p
            for p in self.state.list_pods(cluster.namespace, component_labels(cluster.name))
            if (p.get("status") or {}).get("phase") == "Running"
        ]
        for svc in desired_node_port_services(cluster, pods):
            upsert_service(self.state, self.control, cluster, svc)
