from __future__ import annotations

import dataclasses
from copy import deepcopy
from datetime import datetime, timedelta, timezone

import pytest

from kvr import db
from kvr.api_models import STATE_OFFLINE, STATE_TOMBSTONE, STATE_UP, Cluster
from kvr.failover import FailoverController
from kvr.labels import REVISION_LABEL_KEY, component_labels
from kvr.member_manager import MemberManager
from kvr.placement import PlacementError, StoreInfo
from kvr.scaler import ScaleController
from kvr.settings import Settings
from kvr.status_sync import StoreStatusSync
from kvr.store_labels import LabelPropagator
from kvr.upgrader import UpgradeController


NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def journal(tmp_path, monkeypatch):
    """Each test journals into its own sqlite file."""
    test_settings = Settings(db_path=str(tmp_path / "events.db"), debug_events=True)
    monkeypatch.setattr(db, "settings", test_settings)
    db.init_db()
    return test_settings


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeKube:
    """In-memory platform: both the observed-state reader and the writer."""

    def __init__(self):
        self.stateful_sets: dict[tuple[str, str], dict] = {}
        self.services: dict[tuple[str, str], dict] = {}
        self.config_maps: dict[tuple[str, str], dict] = {}
        self.pods: dict[tuple[str, str], dict] = {}
        self.nodes: dict[str, dict] = {}
        self.clusters: dict[tuple[str, str], dict] = {}
        self.writes: list[tuple[str, str, str]] = []

    # reader

    def get_stateful_set(self, namespace, name):
        return deepcopy(self.stateful_sets.get((namespace, name)))

    def get_service(self, namespace, name):
        return deepcopy(self.services.get((namespace, name)))

    def get_config_map(self, namespace, name):
        return deepcopy(self.config_maps.get((namespace, name)))

    def get_pod(self, namespace, name):
        return deepcopy(self.pods.get((namespace, name)))

    def list_pods(self, namespace, labels):
        out = []
        for (ns, _), pod in sorted(self.pods.items()):
            have = pod["metadata"].get("labels") or {}
            if ns == namespace and all(have.get(k) == v for k, v in labels.items()):
                out.append(deepcopy(pod))
        return out

    def get_node(self, name):
        return deepcopy(self.nodes.get(name))

    # writer

    def _put(self, store, verb, kind, cluster, body):
        name = body["metadata"]["name"]
        store[(cluster.namespace, name)] = deepcopy(body)
        self.writes.append((verb, kind, name))

    def create_stateful_set(self, cluster, body):
        self._put(self.stateful_sets, "create", "StatefulSet", cluster, body)

    def update_stateful_set(self, cluster, body):
        self._put(self.stateful_sets, "update", "StatefulSet", cluster, body)

    def create_service(self, cluster, body):
        self._put(self.services, "create", "Service", cluster, body)

    def update_service(self, cluster, body):
        self._put(self.services, "update", "Service", cluster, body)

    def create_config_map(self, cluster, body):
        self._put(self.config_maps, "create", "ConfigMap", cluster, body)

    def update_config_map(self, cluster, body):
        self._put(self.config_maps, "update", "ConfigMap", cluster, body)

    def list_clusters(self, namespace=""):
        return [deepcopy(c) for (ns, _), c in sorted(self.clusters.items()) if not namespace or ns == namespace]

    def get_cluster(self, namespace, name):
        return deepcopy(self.clusters.get((namespace, name)))

    def update_cluster_status(self, namespace, name, body):
        self.clusters[(namespace, name)] = deepcopy(body)
        self.writes.append(("update", "ClusterStatus", name))

    # helpers

    def add_pod(self, cluster, ordinal, phase="Running", ready=True, node="node-1", revision=None, host_ip=None, namespace="default"):
        name = f"{cluster}-tikv-{ordinal}"
        labels = {**component_labels(cluster), "statefulset.kubernetes.io/pod-name": name}
        if revision is not None:
            labels[REVISION_LABEL_KEY] = revision
        status = {"phase": phase, "conditions": [{"type": "Ready", "status": "True" if ready else "False"}]}
        if host_ip:
            status["hostIP"] = host_ip
        self.pods[(namespace, name)] = {
            "metadata": {"name": name, "namespace": namespace, "labels": labels},
            "spec": {"nodeName": node},
            "status": status,
        }
        return self.pods[(namespace, name)]

    def add_node(self, name, labels):
        self.nodes[name] = {"metadata": {"name": name, "labels": dict(labels)}}

    def stateful_set(self, cluster="basic", namespace="default"):
        return self.stateful_sets[(namespace, f"{cluster}-tikv")]


def store_address(cluster="basic", ordinal=0, namespace="default"):
    return f"{cluster}-tikv-{ordinal}.{cluster}-tikv-peer.{namespace}.svc:20160"


class FakePlacement:
    """Placement service double; hands itself out as the per-cluster client."""

    def __init__(self):
        self.stores: dict[int, StoreInfo] = {}
        self.tombstones: dict[int, StoreInfo] = {}
        self.location_labels: list[str] = []
        self.deleted: list[int] = []
        self.label_pushes: list[tuple[int, dict]] = []
        self.fail = False
        self.fail_label_push: set[int] = set()

    def client_for(self, cluster):
        return self

    def add_store(self, store_id, ordinal, state=STATE_UP, cluster="basic", namespace="default", heartbeat=NOW, labels=None, address=None):
        self.stores[store_id] = StoreInfo(
            id=store_id,
            address=address or store_address(cluster, ordinal, namespace),
            state=state,
            labels=dict(labels or {}),
            leader_count=1,
            last_heartbeat=heartbeat,
        )

    def set_state(self, store_id, state):
        self.stores[store_id] = dataclasses.replace(self.stores[store_id], state=state)

    def retire(self, store_id):
        self.tombstones[store_id] = dataclasses.replace(self.stores.pop(store_id), state=STATE_TOMBSTONE)

    def _check(self):
        if self.fail:
            raise PlacementError("GET http://basic-pd.default:2379/pd/api/v1/stores: ConnectError")

    def get_stores(self):
        self._check()
        return list(self.stores.values())

    def get_tombstone_stores(self):
        self._check()
        return list(self.tombstones.values())

    def get_location_labels(self):
        self._check()
        return list(self.location_labels)

    def set_store_labels(self, store_id, labels):
        if store_id in self.fail_label_push:
            raise PlacementError(f"POST /pd/api/v1/store/{store_id}/label: HTTP 500")
        self.label_pushes.append((store_id, dict(labels)))
        self.stores[store_id] = dataclasses.replace(self.stores[store_id], labels={**self.stores[store_id].labels, **labels})
        return True

    def delete_store(self, store_id):
        self._check()
        self.deleted.append(store_id)
        if store_id in self.stores:
            self.set_state(store_id, STATE_OFFLINE)


class FakeUpgradeDetector:
    def __init__(self, result=False):
        self.result = result

    def upgrading(self, cluster, stateful_set):
        return self.result


def cluster_object(name="basic", namespace="default", replicas=3, pd_replicas=1, paused=False, **tikv):
    spec_tikv = {"replicas": replicas, "image": "tikv/tikv:v4.0.0", "requests": {"storage": "10Gi"}}
    spec_tikv.update(tikv)
    return {
        "apiVersion": "tikv.org/v1alpha1",
        "kind": "TikvCluster",
        "metadata": {"name": name, "namespace": namespace, "uid": "0b7c-uid", "generation": 1},
        "spec": {"tikv": spec_tikv, "pd": {"replicas": pd_replicas}, "paused": paused},
        "status": {
            "pd": {
                "members": {f"{name}-pd-{i}": {"name": f"{name}-pd-{i}", "health": True} for i in range(pd_replicas)},
                "statefulSet": {"readyReplicas": pd_replicas},
            }
        },
    }


@pytest.fixture
def make_cluster():
    def _make(**kwargs) -> Cluster:
        return Cluster.model_validate(cluster_object(**kwargs))

    return _make


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def kube():
    return FakeKube()


@pytest.fixture
def placement():
    return FakePlacement()


@pytest.fixture
def detector():
    return FakeUpgradeDetector()


@pytest.fixture
def manager(kube, placement, detector, clock):
    return MemberManager(
        kube,
        kube,
        StoreStatusSync(placement, detector, clock),
        LabelPropagator(kube, placement),
        UpgradeController(kube),
        ScaleController(kube, placement),
        FailoverController(kube, period_s=300, clock=clock),
        auto_failover=True,
    )
