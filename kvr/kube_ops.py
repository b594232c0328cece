from __future__ import annotations

from typing import Any, Callable

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .api_models import Cluster
from .db import log_event
from .labels import selector_string
from .settings import settings


def load_kube_config(in_cluster: bool | None = None) -> None:
    if settings.in_cluster if in_cluster is None else in_cluster:
        config.load_incluster_config()
    else:
        config.load_kube_config()


def _read(fn: Callable[..., Any], *args: Any) -> Any:
    """Call a read API; a 404 means the object is absent."""
    try:
        return fn(*args)
    except ApiException as e:
        if e.status == 404:
            return None
        raise


class KubeState:
    """Read access to live platform objects, returned as plain API dicts."""

    def __init__(self, api_client: client.ApiClient | None = None):
        self.api_client = api_client or client.ApiClient()
        self.core = client.CoreV1Api(self.api_client)
        self.apps = client.AppsV1Api(self.api_client)

    def _dict(self, obj: Any) -> dict[str, Any] | None:
        if obj is None:
            return None
        return self.api_client.sanitize_for_serialization(obj)

    def get_stateful_set(self, namespace: str, name: str) -> dict[str, Any] | None:
        return self._dict(_read(self.apps.read_namespaced_stateful_set, name, namespace))

    def get_service(self, namespace: str, name: str) -> dict[str, Any] | None:
        return self._dict(_read(self.core.read_namespaced_service, name, namespace))

    def get_config_map(self, namespace: str, name: str) -> dict[str, Any] | None:
        return self._dict(_read(self.core.read_namespaced_config_map, name, namespace))

    def get_pod(self, namespace: str, name: str) -> dict[str, Any] | None:
        return self._dict(_read(self.core.read_namespaced_pod, name, namespace))

    def list_pods(self, namespace: str, labels: dict[str, str]) -> list[dict[str, Any]]:
        resp = self.core.list_namespaced_pod(namespace, label_selector=selector_string(labels))
        return [self._dict(p) for p in resp.items]

    def get_node(self, name: str) -> dict[str, Any] | None:
        return self._dict(_read(self.core.read_node, name))


class KubeControl:
    """Writes to the live API for owned objects and the cluster status."""

    def __init__(self, api_client: client.ApiClient | None = None):
        self.api_client = api_client or client.ApiClient()
        self.core = client.CoreV1Api(self.api_client)
        self.apps = client.AppsV1Api(self.api_client)
        self.custom = client.CustomObjectsApi(self.api_client)

    def _journal(self, verb: str, kind: str, body: dict[str, Any], cluster: Cluster) -> None:
        name = body.get("metadata", {}).get("name")
        log_event("INFO", f"{verb} {kind} {name}", cluster=cluster.name, namespace=cluster.namespace)

    def create_stateful_set(self, cluster: Cluster, body: dict[str, Any]) -> None:
        self.apps.create_namespaced_stateful_set(cluster.namespace, body)
        self._journal("Created", "StatefulSet", body, cluster)

    def update_stateful_set(self, cluster: Cluster, body: dict[str, Any]) -> None:
        self.apps.replace_namespaced_stateful_set(body["metadata"]["name"], cluster.namespace, body)
        self._journal("Updated", "StatefulSet", body, cluster)

    def create_service(self, cluster: Cluster, body: dict[str, Any]) -> None:
        self.core.create_namespaced_service(cluster.namespace, body)
        self._journal("Created", "Service", body, cluster)

    def update_service(self, cluster: Cluster, body: dict[str, Any]) -> None:
        self.core.replace_namespaced_service(body["metadata"]["name"], cluster.namespace, body)
        self._journal("Updated", "Service", body, cluster)

    def create_config_map(self, cluster: Cluster, body: dict[str, Any]) -> None:
        self.core.create_namespaced_config_map(cluster.namespace, body)
        self._journal("Created", "ConfigMap", body, cluster)

    def update_config_map(self, cluster: Cluster, body: dict[str, Any]) -> None:
        self.core.replace_namespaced_config_map(body["metadata"]["name"], cluster.namespace, body)
        self._journal("Updated", "ConfigMap", body, cluster)

    # cluster objects

    def list_clusters(self, namespace: str = "") -> list[dict[str, Any]]:
        if namespace:
            resp = self.custom.list_namespaced_custom_object(
                settings.crd_group, settings.crd_version, namespace, settings.crd_plural
            )
        else:
            resp = self.custom.list_cluster_custom_object(settings.crd_group, settings.crd_version, settings.crd_plural)
        return list(resp.get("items") or [])

    def get_cluster(self, namespace: str, name: str) -> dict[str, Any] | None:
        return _read(
            self.custom.get_namespaced_custom_object,
            settings.crd_group,
            settings.crd_version,
            namespace,
            settings.crd_plural,
            name,
        )

    def update_cluster_status(self, namespace: str, name: str, body: dict[str, Any]) -> None:
        self.custom.replace_namespaced_custom_object_status(
            settings.crd_group, settings.crd_version, namespace, settings.crd_plural, name, body
        )
