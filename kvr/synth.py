from __future__ import annotations

import hashlib
import json
from copy import deepcopy
from typing import Any

import tomli_w
from kubernetes.utils import parse_quantity

from .api_models import CONFIG_UPDATE_ROLLING, NODE_PORT, Cluster, ResourceRequirement
from .db import log_event
from .labels import (
    POD_NAME_LABEL_KEY,
    SYSCTL_INIT_ANNOTATION,
    component_labels,
    member_name,
    peer_service_name,
    pod_ordinal,
)


SERVER_PORT = 20160
STATUS_PORT = 20180
PLACEMENT_PORT = 2379

DATA_DIR = "/var/lib/tikv"
CONFIG_DIR = "/etc/tikv"
SCRIPT_DIR = "/usr/local/bin"
PODINFO_DIR = "/etc/podinfo"
TLS_DIR = "/var/lib/tikv-tls"

CONFIG_KEY = "config-file"
SCRIPT_KEY = "startup-script"
CONFIG_FILE = "tikv.toml"
SCRIPT_FILE = "tikv_start_script.sh"

GIB = 1 << 30
MIB = 1 << 20


class SynthesisError(ValueError):
    pass


START_SCRIPT = """#!/bin/sh

set -uo pipefail

ANNOTATIONS="{podinfo}/annotations"

if [[ ! -f "${{ANNOTATIONS}}" ]]
then
    echo "${{ANNOTATIONS}} does't exist, exiting."
    exit 1
fi
source ${{ANNOTATIONS}} 2>/dev/null

runmode=${{runmode:-normal}}
if [[ X${{runmode}} == Xdebug ]]
then
    echo "entering debug mode."
    tail -f /dev/null
fi

# Use HOSTNAME if POD_NAME is unset for backward compatibility.
POD_NAME=${{POD_NAME:-$HOSTNAME}}
ARGS="--pd={scheme}://${{CLUSTER_NAME}}-pd:{pd_port} \\
--advertise-addr=${{POD_NAME}}.${{HEADLESS_SERVICE_NAME}}.${{NAMESPACE}}.svc:{server_port} \\
--addr=0.0.0.0:{server_port} \\
--status-addr=0.0.0.0:{status_port} \\
--data-dir={data_dir} \\
--capacity=${{CAPACITY}} \\
--config={config_dir}/{config_file}
"

if [ ! -z "${{STORE_LABELS:-}}" ]; then
  LABELS=" --labels ${{STORE_LABELS}} "
  ARGS="${{ARGS}}${{LABELS}}"
fi

echo "starting tikv-server ..."
echo "/tikv-server ${{ARGS}}"
exec /tikv-server ${{ARGS}}
"""


def render_start_script(cluster: Cluster) -> str:
    return START_SCRIPT.format(
        podinfo=PODINFO_DIR,
        scheme=cluster.scheme(),
        pd_port=PLACEMENT_PORT,
        server_port=SERVER_PORT,
        status_port=STATUS_PORT,
        data_dir=DATA_DIR,
        config_dir=CONFIG_DIR,
        config_file=CONFIG_FILE,
    )


def _quantity(value: str, what: str, cluster: Cluster) -> str:
    try:
        parse_quantity(value)
    except ValueError as e:
        raise SynthesisError(f"cannot parse {what} {value!r} for cluster {cluster.key}: {e}") from e
    return value


def capacity(cluster: Cluster) -> str:
    """Capacity argument derived from limits.storage; "0" means unlimited."""
    limits = cluster.spec.tikv.limits
    if limits is None or not limits.storage:
        return "0"
    try:
        q = parse_quantity(limits.storage)
    except ValueError:
        log_event("ERROR", f"cannot parse storage limit {limits.storage!r}", cluster=cluster.name, namespace=cluster.namespace)
        return "0"
    if q != q.to_integral_value():
        log_event("ERROR", f"storage limit {limits.storage!r} is not a whole number of bytes", cluster=cluster.name, namespace=cluster.namespace)
        return "0"
    i = int(q)
    if i % GIB == 0:
        return f"{i // GIB}GB"
    return f"{i // MIB}MB"


def container_resources(cluster: Cluster) -> dict[str, Any]:
    """cpu/memory requests and limits; storage belongs to the volume claim."""
    out: dict[str, Any] = {}
    for key, req in (("requests", cluster.spec.tikv.requests), ("limits", cluster.spec.tikv.limits)):
        if req is None:
            continue
        part = {}
        if req.cpu:
            part["cpu"] = _quantity(req.cpu, f"{key}.cpu", cluster)
        if req.memory:
            part["memory"] = _quantity(req.memory, f"{key}.memory", cluster)
        if part:
            out[key] = part
    return out


def storage_request(cluster: Cluster) -> str:
    req: ResourceRequirement | None = cluster.spec.tikv.requests
    if req is None or not req.storage:
        raise SynthesisError(f"storage request is required for cluster {cluster.key}")
    return _quantity(req.storage, "requests.storage", cluster)


def config_map_digest(data: dict[str, str]) -> str:
    raw = json.dumps(data, sort_keys=True, separators=(",", ":")).encode()
    return hashlib.sha256(raw).hexdigest()[:7]


def desired_config_map(cluster: Cluster, name: str | None = None) -> dict[str, Any]:
    """Rendered configuration and startup script.

    ``name`` pins the object name (the one already mounted, under InPlace);
    otherwise RollingUpdate gets a content-addressed name.
    """
    try:
        config_text = tomli_w.dumps(cluster.spec.tikv.config or {})
    except (TypeError, ValueError) as e:
        raise SynthesisError(f"cannot render config for cluster {cluster.key}: {e}") from e

    data = {CONFIG_KEY: config_text, SCRIPT_KEY: render_start_script(cluster)}
    cm_name = name
    if cm_name is None:
        cm_name = member_name(cluster.name)
        if cluster.config_update_strategy() == CONFIG_UPDATE_ROLLING:
            cm_name = f"{cm_name}-{config_map_digest(data)}"

    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {
            "name": cm_name,
            "namespace": cluster.namespace,
            "labels": component_labels(cluster.name),
            "ownerReferences": [cluster.owner_ref()],
        },
        "data": data,
    }


def find_config_map_volume(pod_spec: dict[str, Any], prefix: str) -> str | None:
    for vol in pod_spec.get("volumes") or []:
        cm = vol.get("configMap") or {}
        name = cm.get("name") or ""
        if name.startswith(prefix):
            return name
    return None


def desired_peer_service(cluster: Cluster) -> dict[str, Any]:
    labels = component_labels(cluster.name)
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": peer_service_name(cluster.name),
            "namespace": cluster.namespace,
            "labels": labels,
            "ownerReferences": [cluster.owner_ref()],
        },
        "spec": {
            "clusterIP": "None",
            "ports": [{"name": "peer", "port": SERVER_PORT, "targetPort": SERVER_PORT, "protocol": "TCP"}],
            "selector": labels,
            "publishNotReadyAddresses": True,
        },
    }


def desired_node_port_services(cluster: Cluster, pods: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """One NodePort service per running pod and external listener."""
    listeners = [l for l in cluster.spec.tikv.listeners_config.external_listeners if l.type == NODE_PORT]
    if not listeners:
        return []

    by_ordinal: dict[int, dict[str, Any]] = {}
    for pod in pods:
        ordinal = pod_ordinal(pod.get("metadata", {}).get("name", ""))
        if ordinal is not None:
            by_ordinal[ordinal] = pod

    base_labels = component_labels(cluster.name)
    out: list[dict[str, Any]] = []
    for listener in listeners:
        for ordinal in sorted(by_ordinal):
            pod = by_ordinal[ordinal]
            pod_name = pod["metadata"]["name"]
            selector = {**base_labels, POD_NAME_LABEL_KEY: pod_name}
            port: dict[str, Any] = {
                "name": listener.name,
                "port": listener.container_port,
                "targetPort": SERVER_PORT,
                "protocol": "TCP",
            }
            if listener.external_starting_port > 0:
                port["nodePort"] = listener.external_starting_port + ordinal
            spec: dict[str, Any] = {"type": NODE_PORT, "selector": selector, "ports": [port]}
            host_ip = (pod.get("status") or {}).get("hostIP")
            if host_ip:
                spec["externalIPs"] = [host_ip]
            out.append(
                {
                    "apiVersion": "v1",
                    "kind": "Service",
                    "metadata": {
                        "name": f"{member_name(cluster.name)}-{ordinal}-{listener.name}",
                        "namespace": cluster.namespace,
                        "labels": dict(selector),
                        "ownerReferences": [cluster.owner_ref()],
                    },
                    "spec": spec,
                }
            )
    return out


def _append_env(base: list[dict[str, Any]], extra: list[dict[str, Any]]) -> list[dict[str, Any]]:
    seen = {e["name"] for e in base}
    return base + [deepcopy(e) for e in extra if e.get("name") not in seen]


def desired_stateful_set(cluster: Cluster, config_map_name: str | None = None) -> dict[str, Any]:
    ns, name = cluster.namespace, cluster.name
    spec = cluster.spec.tikv
    set_name = member_name(name)
    cm_name = config_map_name or set_name
    headless = peer_service_name(name)
    labels = component_labels(name)
    replicas = cluster.desired_replicas()

    mounts: list[dict[str, Any]] = [
        {"name": "annotations", "readOnly": True, "mountPath": PODINFO_DIR},
        {"name": "tikv", "mountPath": DATA_DIR},
        {"name": "config", "readOnly": True, "mountPath": CONFIG_DIR},
        {"name": "startup-script", "readOnly": True, "mountPath": SCRIPT_DIR},
    ]
    volumes: list[dict[str, Any]] = [
        {
            "name": "annotations",
            "downwardAPI": {"items": [{"path": "annotations", "fieldRef": {"fieldPath": "metadata.annotations"}}]},
        },
        {
            "name": "config",
            "configMap": {"name": cm_name, "items": [{"key": CONFIG_KEY, "path": CONFIG_FILE}]},
        },
        {
            "name": "startup-script",
            "configMap": {"name": cm_name, "items": [{"key": SCRIPT_KEY, "path": SCRIPT_FILE}]},
        },
    ]
    if cluster.tls_enabled():
        mounts.append({"name": "tikv-tls", "readOnly": True, "mountPath": TLS_DIR})
        volumes.append({"name": "tikv-tls", "secret": {"secretName": f"{set_name}-cluster-secret"}})

    annotations = cluster.annotations()
    security_context = deepcopy(spec.pod_security_context) if spec.pod_security_context else None
    init_containers: list[dict[str, Any]] = []
    sysctls = (security_context or {}).get("sysctls") or []
    if annotations.get(SYSCTL_INIT_ANNOTATION) == "true" and sysctls:
        command = "sysctl -w" + "".join(f" {s['name']}={s['value']}" for s in sysctls)
        init_containers.append(
            {
                "name": "init",
                "image": cluster.spec.helper_image,
                "command": ["sh", "-c", command],
                "securityContext": {"privileged": True},
            }
        )
        # The init container applies them; the kubelet may not allow unsafe sysctls.
        security_context["sysctls"] = []

    env: list[dict[str, Any]] = [
        {"name": "NAMESPACE", "valueFrom": {"fieldRef": {"fieldPath": "metadata.namespace"}}},
        {"name": "CLUSTER_NAME", "value": name},
        {"name": "HEADLESS_SERVICE_NAME", "value": headless},
        {"name": "CAPACITY", "value": capacity(cluster)},
        {"name": "TZ", "value": cluster.spec.timezone},
    ]

    pod_spec: dict[str, Any] = {
        "schedulerName": cluster.scheduler_name(),
        "nodeSelector": cluster.node_selector(),
        "hostNetwork": cluster.host_network(),
        "restartPolicy": "Always",
        "tolerations": deepcopy(cluster.tolerations()),
    }
    affinity = cluster.affinity()
    if affinity is not None:
        pod_spec["affinity"] = deepcopy(affinity)
    if cluster.priority_class_name():
        pod_spec["priorityClassName"] = cluster.priority_class_name()
    if cluster.host_network():
        pod_spec["dnsPolicy"] = "ClusterFirstWithHostNet"
        env.append({"name": "POD_NAME", "valueFrom": {"fieldRef": {"fieldPath": "metadata.name"}}})
    if security_context is not None:
        pod_spec["securityContext"] = security_context
    if spec.service_account:
        pod_spec["serviceAccountName"] = spec.service_account

    container: dict[str, Any] = {
        "name": "tikv",
        "image": spec.image,
        "imagePullPolicy": cluster.image_pull_policy(),
        "command": ["/bin/sh", f"{SCRIPT_DIR}/{SCRIPT_FILE}"],
        "securityContext": {"privileged": spec.privileged},
        "ports": [{"name": "server", "containerPort": SERVER_PORT, "protocol": "TCP"}],
        "volumeMounts": mounts,
        "resources": container_resources(cluster),
        "env": _append_env(env, spec.env),
    }
    pod_spec["volumes"] = volumes
    pod_spec["initContainers"] = init_containers
    pod_spec["containers"] = [container]

    claim: dict[str, Any] = {
        "metadata": {"name": "tikv"},
        "spec": {
            "accessModes": ["ReadWriteOnce"],
            "resources": {"requests": {"storage": storage_request(cluster)}},
        },
    }
    if spec.storage_class_name:
        claim["spec"]["storageClassName"] = spec.storage_class_name

    pod_annotations = {
        "prometheus.io/scrape": "true",
        "prometheus.io/path": "/metrics",
        "prometheus.io/port": str(STATUS_PORT),
        **annotations,
    }

    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": {
            "name": set_name,
            "namespace": ns,
            "labels": dict(labels),
            "annotations": {},
            "ownerReferences": [cluster.owner_ref()],
        },
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": dict(labels)},
            "template": {
                "metadata": {"labels": dict(labels), "annotations": pod_annotations},
                "spec": pod_spec,
            },
            "volumeClaimTemplates": [claim],
            "serviceName": headless,
            "podManagementPolicy": "Parallel",
            "updateStrategy": {"type": "RollingUpdate", "rollingUpdate": {"partition": replicas}},
        },
    }


def replicas_of(stateful_set: dict[str, Any]) -> int:
    return int((stateful_set.get("spec") or {}).get("replicas") or 0)


def partition_of(stateful_set: dict[str, Any]) -> int | None:
    strategy = (stateful_set.get("spec") or {}).get("updateStrategy") or {}
    rolling = strategy.get("rollingUpdate")
    if not rolling:
        return None
    return int(rolling.get("partition") or 0)


def set_partition(stateful_set: dict[str, Any], partition: int) -> None:
    stateful_set["spec"]["updateStrategy"] = {"type": "RollingUpdate", "rollingUpdate": {"partition": partition}}


def set_replicas(stateful_set: dict[str, Any], replicas: int) -> None:
    stateful_set["spec"]["replicas"] = replicas
