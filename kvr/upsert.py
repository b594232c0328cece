from __future__ import annotations

import json
from copy import deepcopy
from typing import Any

from .api_models import Cluster
from .labels import LAST_APPLIED_ANNOTATION


def _canonical(value: Any) -> Any:
    # Round-trip through JSON so tuples/ints/strings compare like the stored annotation.
    return json.loads(json.dumps(value, sort_keys=True))


def _applied_payload(obj: dict[str, Any]) -> dict[str, Any]:
    # Config objects carry no spec; their data is what gets applied.
    if "spec" not in obj:
        return obj.get("data") or {}
    return obj.get("spec") or {}


def set_last_applied(obj: dict[str, Any]) -> None:
    """Record the object's spec (or a config object's data) as the last applied configuration."""
    meta = obj.setdefault("metadata", {})
    annotations = meta.get("annotations") or {}
    annotations[LAST_APPLIED_ANNOTATION] = json.dumps(_applied_payload(obj), sort_keys=True, separators=(",", ":"))
    meta["annotations"] = annotations


def last_applied(obj: dict[str, Any]) -> dict[str, Any] | None:
    raw = ((obj.get("metadata") or {}).get("annotations") or {}).get(LAST_APPLIED_ANNOTATION)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


def _annotations_subset(desired: dict[str, Any], observed: dict[str, Any]) -> bool:
    want = {k: v for k, v in ((desired.get("metadata") or {}).get("annotations") or {}).items() if k != LAST_APPLIED_ANNOTATION}
    have = (observed.get("metadata") or {}).get("annotations") or {}
    return all(have.get(k) == v for k, v in want.items())


def template_equal(desired: dict[str, Any], observed: dict[str, Any]) -> bool:
    """Pod template equality against the last applied spec, replicas ignored."""
    applied = last_applied(observed)
    if applied is None:
        return False
    return _canonical((applied.get("template") or {}).get("spec")) == _canonical(desired["spec"]["template"]["spec"])


def stateful_set_equal(desired: dict[str, Any], observed: dict[str, Any]) -> bool:
    if not _annotations_subset(desired, observed):
        return False
    applied = last_applied(observed)
    if applied is None:
        return False
    want = _canonical(desired["spec"])
    return all(applied.get(k) == want.get(k) for k in ("replicas", "template", "updateStrategy"))


def service_equal(desired: dict[str, Any], observed: dict[str, Any]) -> bool:
    applied = last_applied(observed)
    if applied is None:
        return False
    return applied == _canonical(desired["spec"])


def config_map_equal(desired: dict[str, Any], observed: dict[str, Any]) -> bool:
    if (observed.get("data") or {}) != desired.get("data", {}):
        return False
    if last_applied(observed) != _canonical(desired.get("data", {})):
        return False
    have = (observed.get("metadata") or {}).get("labels") or {}
    want = desired["metadata"].get("labels") or {}
    return all(have.get(k) == v for k, v in want.items())


def _is_orphan(obj: dict[str, Any]) -> bool:
    refs = (obj.get("metadata") or {}).get("ownerReferences") or []
    return not any(r.get("controller") for r in refs)


def merge_service(desired: dict[str, Any], observed: dict[str, Any]) -> dict[str, Any]:
    """Desired spec onto the observed object, keeping server-assigned fields."""
    svc = deepcopy(observed)
    old_spec = observed.get("spec") or {}
    spec = deepcopy(desired["spec"])
    for field in ("clusterIP", "clusterIPs", "healthCheckNodePort", "ipFamilies", "ipFamilyPolicy"):
        if field in old_spec:
            spec[field] = deepcopy(old_spec[field])
    old_ports = {(p.get("name"), p.get("port")): p for p in old_spec.get("ports") or []}
    for port in spec.get("ports") or []:
        old = old_ports.get((port.get("name"), port.get("port")))
        if old and not port.get("nodePort") and old.get("nodePort"):
            port["nodePort"] = old["nodePort"]
    svc["spec"] = spec
    svc.setdefault("metadata", {})["labels"] = {**(svc["metadata"].get("labels") or {}), **desired["metadata"].get("labels", {})}
    if _is_orphan(observed):
        svc["metadata"]["ownerReferences"] = deepcopy(desired["metadata"].get("ownerReferences") or [])
    svc["metadata"]["annotations"] = dict(svc["metadata"].get("annotations") or {})
    # last applied reflects what we asked for, not the merged server fields
    svc["metadata"]["annotations"][LAST_APPLIED_ANNOTATION] = json.dumps(desired["spec"], sort_keys=True, separators=(",", ":"))
    return svc


def upsert_service(state: Any, control: Any, cluster: Cluster, desired: dict[str, Any]) -> None:
    observed = state.get_service(cluster.namespace, desired["metadata"]["name"])
    if observed is None:
        body = deepcopy(desired)
        set_last_applied(body)
        control.create_service(cluster, body)
        return
    if service_equal(desired, observed) and not _is_orphan(observed):
        return
    control.update_service(cluster, merge_service(desired, observed))


def upsert_config_map(state: Any, control: Any, cluster: Cluster, desired: dict[str, Any]) -> dict[str, Any]:
    observed = state.get_config_map(cluster.namespace, desired["metadata"]["name"])
    if observed is None:
        body = deepcopy(desired)
        set_last_applied(body)
        control.create_config_map(cluster, body)
        return body
    if config_map_equal(desired, observed) and not _is_orphan(observed):
        return observed
    cm = deepcopy(observed)
    cm["data"] = deepcopy(desired["data"])
    meta = cm.setdefault("metadata", {})
    meta["labels"] = {**(meta.get("labels") or {}), **desired["metadata"].get("labels", {})}
    if _is_orphan(observed):
        meta["ownerReferences"] = deepcopy(desired["metadata"].get("ownerReferences") or [])
    set_last_applied(cm)
    control.update_config_map(cluster, cm)
    return cm


def create_stateful_set(control: Any, cluster: Cluster, desired: dict[str, Any]) -> None:
    body = deepcopy(desired)
    set_last_applied(body)
    control.create_stateful_set(cluster, body)


def update_stateful_set(control: Any, cluster: Cluster, desired: dict[str, Any], observed: dict[str, Any]) -> bool:
    """Apply desired spec fields onto the observed object when they differ.

    Returns True when an update was submitted.
    """
    orphan = _is_orphan(observed)
    if stateful_set_equal(desired, observed) and not orphan:
        return False

    sts = deepcopy(observed)
    for field in ("replicas", "template", "updateStrategy"):
        sts["spec"][field] = deepcopy(desired["spec"][field])
    meta = sts.setdefault("metadata", {})
    annotations = dict(meta.get("annotations") or {})
    annotations.update(desired["metadata"].get("annotations") or {})
    meta["annotations"] = annotations
    if orphan:
        meta["ownerReferences"] = deepcopy(desired["metadata"].get("ownerReferences") or [])
        meta["labels"] = deepcopy(desired["metadata"].get("labels") or {})
    set_last_applied(sts)
    control.update_stateful_set(cluster, sts)
    return True
