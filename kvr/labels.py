from __future__ import annotations

from dataclasses import dataclass


NAME_LABEL_KEY = "app.kubernetes.io/name"
MANAGED_BY_LABEL_KEY = "app.kubernetes.io/managed-by"
INSTANCE_LABEL_KEY = "app.kubernetes.io/instance"
COMPONENT_LABEL_KEY = "app.kubernetes.io/component"

POD_NAME_LABEL_KEY = "statefulset.kubernetes.io/pod-name"
REVISION_LABEL_KEY = "controller-revision-hash"
HOSTNAME_LABEL_KEY = "kubernetes.io/hostname"

LAST_APPLIED_ANNOTATION = "tikv.org/last-applied-configuration"
SYSCTL_INIT_ANNOTATION = "tikv.org/sysctl-init"

CLUSTER_NAME = "tikv-cluster"
MANAGED_BY = "kvr"
COMPONENT = "tikv"


def component_labels(instance: str) -> dict[str, str]:
    return {
        NAME_LABEL_KEY: CLUSTER_NAME,
        MANAGED_BY_LABEL_KEY: MANAGED_BY,
        INSTANCE_LABEL_KEY: instance,
        COMPONENT_LABEL_KEY: COMPONENT,
    }


def selector_string(labels: dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def member_name(cluster: str) -> str:
    return f"{cluster}-{COMPONENT}"


def peer_service_name(cluster: str) -> str:
    return f"{cluster}-{COMPONENT}-peer"


def pod_name(cluster: str, ordinal: int) -> str:
    return f"{member_name(cluster)}-{ordinal}"


def pod_ordinal(name: str) -> int | None:
    _, _, tail = name.rpartition("-")
    return int(tail) if tail.isdigit() else None


@dataclass(frozen=True)
class StoreAddress:
    """Structured form of a store's advertise address.

    ``<cluster>-<kind>-<ordinal>.<service>.<namespace>.svc[.<domain>]:<port>``
    """

    pod_name: str
    cluster: str
    kind: str
    ordinal: int
    service: str
    namespace: str
    port: int
    host: str

    def owned_by(self, cluster: str, namespace: str) -> bool:
        return (
            self.cluster == cluster
            and self.namespace == namespace
            and self.kind == COMPONENT
            and self.service == peer_service_name(cluster)
        )


def parse_store_address(address: str) -> StoreAddress | None:
    """Parse an advertise address; None when it is not in the per-pod DNS form."""
    host, sep, port_raw = address.rpartition(":")
    if not sep or not port_raw.isdigit():
        return None
    parts = host.split(".")
    if len(parts) < 4 or parts[3] != "svc" or not all(parts):
        return None
    pod, service, namespace = parts[0], parts[1], parts[2]

    head, _, ordinal_raw = pod.rpartition("-")
    if not head or not ordinal_raw.isdigit():
        return None
    cluster, _, kind = head.rpartition("-")
    if not cluster or not kind:
        return None

    return StoreAddress(
        pod_name=pod,
        cluster=cluster,
        kind=kind,
        ordinal=int(ordinal_raw),
        service=service,
        namespace=namespace,
        port=int(port_raw),
        host=host,
    )
