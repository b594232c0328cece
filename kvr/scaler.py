from __future__ import annotations

from typing import Any

from .api_models import STATE_OFFLINE, Cluster
from .db import log_event
from .labels import pod_name
from .placement import PlacementControl, PlacementError
from .synth import partition_of, replicas_of, set_partition, set_replicas


class ScaleError(Exception):
    pass


def pod_ready(pod: dict[str, Any]) -> bool:
    for cond in (pod.get("status") or {}).get("conditions") or []:
        if cond.get("type") == "Ready":
            return cond.get("status") == "True"
    return False


class ScaleController:
    """Moves the workload one ordinal per cycle toward the desired replica count.

    Scale-in asks the placement service to remove the store first; the
    replica count only drops once that store has left the active listing.
    """

    def __init__(self, state: Any, placement: PlacementControl):
        self.state = state
        self.placement = placement

    def scale(self, cluster: Cluster, observed: dict[str, Any], desired: dict[str, Any]) -> bool:
        """Adjust ``desired`` in place. Returns True while a drain is pending."""
        target = replicas_of(desired)
        current = replicas_of(observed)
        set_replicas(desired, current)

        pending = False
        if target > current:
            self._scale_out(cluster, desired, current)
        elif target < current:
            pending = self._scale_in(cluster, desired, current)

        replicas = replicas_of(desired)
        if not cluster.upgrading():
            set_partition(desired, replicas)
        else:
            partition = partition_of(desired)
            if partition is not None and partition > replicas:
                set_partition(desired, replicas)
        return pending

    def _scale_out(self, cluster: Cluster, desired: dict[str, Any], current: int) -> None:
        if cluster.upgrading():
            return
        name = pod_name(cluster.name, current)
        if any(r.pod_name == name for r in cluster.status.tikv.failure_stores.values()):
            log_event("INFO", f"Scale out to {name} waits for its failure record to clear", cluster=cluster.name, namespace=cluster.namespace)
            return
        set_replicas(desired, current + 1)
        log_event("INFO", f"Scaling out to {current + 1} replicas ({name})", cluster=cluster.name, namespace=cluster.namespace)

    def _scale_in(self, cluster: Cluster, desired: dict[str, Any], current: int) -> bool:
        ns = cluster.namespace
        ordinal = current - 1
        name = pod_name(cluster.name, ordinal)
        if cluster.upgrading():
            return False

        tikv = cluster.status.tikv
        store = next((s for s in tikv.stores.values() if s.pod_name == name), None)
        if store is not None:
            if store.state != STATE_OFFLINE:
                try:
                    self.placement.client_for(cluster).delete_store(int(store.id))
                    log_event("INFO", f"Requested removal of store {store.id} ({name})", cluster=cluster.name, namespace=ns)
                except PlacementError as e:
                    log_event("WARN", f"Removal of store {store.id} ({name}) failed: {e}", cluster=cluster.name, namespace=ns)
            return True

        if any(s.pod_name == name for s in tikv.tombstone_stores.values()):
            set_replicas(desired, ordinal)
            log_event("INFO", f"Scaling in to {ordinal} replicas, store of {name} is tombstone", cluster=cluster.name, namespace=ns)
            return False

        pod = self.state.get_pod(ns, name)
        if pod is None or not pod_ready(pod):
            # never registered with the placement service
            set_replicas(desired, ordinal)
            log_event("INFO", f"Scaling in to {ordinal} replicas, {name} has no store", cluster=cluster.name, namespace=ns)
            return False
        raise ScaleError(f"cluster {cluster.key}: pod {name} is ready but has no store in the placement service")
