from __future__ import annotations

from typing import Any, Protocol

from .api_models import STATE_UP, Cluster
from .db import log_event
from .labels import REVISION_LABEL_KEY, component_labels, pod_name
from .runtime import RequeueError
from .synth import partition_of, replicas_of, set_partition
from .upsert import template_equal


class UpgradeDetector(Protocol):
    def upgrading(self, cluster: Cluster, stateful_set: dict[str, Any]) -> bool:
        ...


def stateful_set_upgrading(stateful_set: dict[str, Any]) -> bool:
    status = stateful_set.get("status") or {}
    if status.get("currentRevision") != status.get("updateRevision"):
        return True
    generation = (stateful_set.get("metadata") or {}).get("generation") or 0
    observed = status.get("observedGeneration") or 0
    return generation > observed and replicas_of(stateful_set) == int(status.get("replicas") or 0)


class RevisionUpgradeDetector:
    """Upgrading while the workload or any of its pods lags the update revision."""

    def __init__(self, state: Any):
        self.state = state

    def upgrading(self, cluster: Cluster, stateful_set: dict[str, Any]) -> bool:
        if stateful_set_upgrading(stateful_set):
            return True
        update_revision = (stateful_set.get("status") or {}).get("updateRevision")
        for pod in self.state.list_pods(cluster.namespace, component_labels(cluster.name)):
            revision = ((pod.get("metadata") or {}).get("labels") or {}).get(REVISION_LABEL_KEY)
            if revision is None:
                return False
            if revision != update_revision:
                return True
        return False


class UpgradeController:
    """Walks the rolling-update partition down one ordinal at a time.

    The partition lives on the workload object, so a restarted controller
    resumes from whatever was last committed there. It only ever moves
    down, and only after the previously updated store is back Up.
    """

    def __init__(self, state: Any):
        self.state = state

    def upgrade(self, cluster: Cluster, observed: dict[str, Any], desired: dict[str, Any]) -> None:
        ns = cluster.namespace
        tikv = cluster.status.tikv
        if not tikv.synced:
            raise RuntimeError(f"cluster {cluster.key}: store status is not synced, cannot upgrade")

        if not template_equal(desired, observed):
            # new template goes out first with nothing selected for update
            return
        mirror = tikv.stateful_set or {}
        update_revision = mirror.get("updateRevision")
        if update_revision == mirror.get("currentRevision"):
            return

        strategy = (observed.get("spec") or {}).get("updateStrategy") or {}
        current = partition_of(observed)
        if strategy.get("type") == "OnDelete" or current is None:
            desired["spec"]["updateStrategy"] = strategy
            log_event("WARN", f"StatefulSet {observed['metadata']['name']} update strategy was modified manually", cluster=cluster.name, namespace=ns)
            return

        set_partition(desired, current)
        for ordinal in reversed(range(replicas_of(observed))):
            name = pod_name(cluster.name, ordinal)
            store = next((s for s in tikv.stores.values() if s.pod_name == name), None)
            if store is None:
                set_partition(desired, min(ordinal, current))
                continue

            pod = self.state.get_pod(ns, name)
            if pod is None:
                raise RequeueError(f"cluster {cluster.key}: upgrade waits for pod {name}")
            revision = ((pod.get("metadata") or {}).get("labels") or {}).get(REVISION_LABEL_KEY)
            if revision is None:
                raise RequeueError(f"cluster {cluster.key}: pod {name} has no label {REVISION_LABEL_KEY}")

            if revision == update_revision:
                if (pod.get("status") or {}).get("phase") != "Running":
                    raise RequeueError(f"cluster {cluster.key}: upgraded pod {name} is not running")
                if store.state != STATE_UP:
                    raise RequeueError(f"cluster {cluster.key}: upgraded store {store.id} on {name} is {store.state}")
                continue

            if ordinal >= current:
                # already released by the partition; the workload controller is still rolling it
                raise RequeueError(f"cluster {cluster.key}: pod {name} is still being updated")
            set_partition(desired, ordinal)
            log_event("INFO", f"Upgrading pod {name}, partition {current} -> {ordinal}", cluster=cluster.name, namespace=ns)
            return
