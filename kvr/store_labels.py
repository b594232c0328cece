from __future__ import annotations

from typing import Any

from kubernetes.client.rest import ApiException

from .api_models import Cluster
from .db import log_event
from .labels import HOSTNAME_LABEL_KEY, parse_store_address
from .placement import PlacementControl, PlacementError

# Placement label keys cannot carry a slash, so "host" stands in for the hostname label.
HOST_LOCATION_KEY = "host"


def node_topology_labels(node: dict[str, Any], keys: list[str]) -> dict[str, str]:
    """Node labels restricted to ``keys``."""
    have = (node.get("metadata") or {}).get("labels") or {}
    out: dict[str, str] = {}
    for key in keys:
        if key in have:
            out[key] = have[key]
        elif key == HOST_LOCATION_KEY and HOSTNAME_LABEL_KEY in have:
            out[key] = have[HOSTNAME_LABEL_KEY]
    return out


def labels_equal(store_labels: dict[str, str], node_labels: dict[str, str]) -> bool:
    """Compare only the keys the node side resolves; extra store labels are ignored."""
    if any(k not in store_labels for k in node_labels):
        return False
    return all(store_labels[k] == v for k, v in node_labels.items())


class LabelPropagator:
    """Pushes node topology labels to the stores that run on them.

    Best effort: a failure for one store is journaled and that store skipped.
    """

    def __init__(self, state: Any, placement: PlacementControl):
        self.state = state
        self.placement = placement

    def propagate(self, cluster: Cluster) -> int:
        ns = cluster.namespace
        client = self.placement.client_for(cluster)
        try:
            keys = client.get_location_labels()
            if not keys:
                return 0
            stores = client.get_stores()
        except PlacementError as e:
            log_event("WARN", f"Skipping store labels: {e}", cluster=cluster.name, namespace=ns)
            return 0

        pushed = 0
        for store in stores:
            addr = parse_store_address(store.address)
            if addr is None or not addr.owned_by(cluster.name, ns):
                continue

            try:
                pod = self.state.get_pod(ns, addr.pod_name)
                node_name = ((pod or {}).get("spec") or {}).get("nodeName")
                node = self.state.get_node(node_name) if node_name else None
            except ApiException as e:
                log_event("WARN", f"Cannot resolve node of store {store.id}: {e.status} {e.reason}", cluster=cluster.name, namespace=ns)
                continue
            if not node_name:
                log_event("WARN", f"Pod {addr.pod_name} is not scheduled, skipping labels of store {store.id}", cluster=cluster.name, namespace=ns)
                continue
            want = node_topology_labels(node or {}, keys)
            if not want:
                log_event("DEBUG", f"Node {node_name} has no topology labels, skipping store {store.id}", cluster=cluster.name, namespace=ns)
                continue
            if labels_equal(store.labels, want):
                continue

            try:
                client.set_store_labels(store.id, want)
            except PlacementError as e:
                log_event("WARN", f"Failed to set labels of store {store.id}: {e}", cluster=cluster.name, namespace=ns)
                continue
            pushed += 1
            log_event("INFO", f"Set labels {want} on store {store.id} ({addr.pod_name})", cluster=cluster.name, namespace=ns)
        return pushed
