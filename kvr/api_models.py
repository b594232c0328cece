from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# Store states reported by the placement service.
STATE_UP = "Up"
STATE_DOWN = "Down"
STATE_OFFLINE = "Offline"
STATE_TOMBSTONE = "Tombstone"

NORMAL_PHASE = "Normal"
UPGRADE_PHASE = "Upgrade"

CONFIG_UPDATE_IN_PLACE = "InPlace"
CONFIG_UPDATE_ROLLING = "RollingUpdate"

NODE_PORT = "NodePort"


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ResourceRequirement(_Model):
    cpu: str | None = None
    memory: str | None = None
    storage: str | None = None


class ExternalListener(_Model):
    name: str = Field(..., description="Listener name, part of the per-pod service name")
    container_port: int = Field(..., ge=1, le=65535)
    external_starting_port: int = Field(0, ge=0, le=65535, description="Node port of ordinal 0; 0 lets the platform assign")
    type: str = Field(NODE_PORT, description="Access method, only NodePort is served")


class ListenersConfig(_Model):
    external_listeners: list[ExternalListener] = Field(default_factory=list)


class StoreSpec(_Model):
    replicas: int = Field(..., ge=0)
    image: str = Field(..., description="Storage server image (name:tag)")
    image_pull_policy: str | None = None
    host_network: bool | None = None
    affinity: dict[str, Any] | None = None
    priority_class_name: str | None = None
    scheduler_name: str | None = None
    node_selector: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    tolerations: list[dict[str, Any]] = Field(default_factory=list)
    pod_security_context: dict[str, Any] | None = None
    config_update_strategy: str | None = None
    env: list[dict[str, Any]] = Field(default_factory=list)

    requests: ResourceRequirement | None = None
    limits: ResourceRequirement | None = None
    config: dict[str, Any] | None = None
    max_failover_count: int | None = Field(3, ge=0, description="Failure budget for automatic failover")
    storage_class_name: str | None = None
    service_account: str | None = None
    privileged: bool = False
    listeners_config: ListenersConfig = Field(default_factory=ListenersConfig)


class PlacementSpec(_Model):
    replicas: int = Field(1, ge=0)


class TLSCluster(_Model):
    enabled: bool = False


class ClusterSpec(_Model):
    tikv: StoreSpec
    pd: PlacementSpec = Field(default_factory=PlacementSpec)
    paused: bool = False
    timezone: str = "UTC"
    tls_cluster: TLSCluster | None = None
    helper_image: str = "busybox:1.26.2"

    # Cluster-level defaults, overridable per component.
    image_pull_policy: str = "IfNotPresent"
    host_network: bool | None = None
    affinity: dict[str, Any] | None = None
    priority_class_name: str | None = None
    scheduler_name: str = "default-scheduler"
    node_selector: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    tolerations: list[dict[str, Any]] = Field(default_factory=list)
    config_update_strategy: str = CONFIG_UPDATE_IN_PLACE


class StoreStatus(_Model):
    id: str
    pod_name: str
    ip: str = ""
    leader_count: int = 0
    state: str
    last_heartbeat_time: datetime | None = None
    last_transition_time: datetime | None = None


class FailureRecord(_Model):
    store_id: str
    pod_name: str
    host: str = ""
    created_at: datetime


class StoreSetStatus(_Model):
    synced: bool = False
    phase: str = NORMAL_PHASE
    stateful_set: dict[str, Any] | None = None
    stores: dict[str, StoreStatus] = Field(default_factory=dict)
    tombstone_stores: dict[str, StoreStatus] = Field(default_factory=dict)
    failure_stores: dict[str, FailureRecord] = Field(default_factory=dict)
    image: str = ""


class PlacementMember(_Model):
    name: str = ""
    health: bool = False


class PlacementStatus(_Model):
    members: dict[str, PlacementMember] = Field(default_factory=dict)
    stateful_set: dict[str, Any] | None = None


class ClusterStatus(_Model):
    tikv: StoreSetStatus = Field(default_factory=StoreSetStatus)
    pd: PlacementStatus = Field(default_factory=PlacementStatus)


class ObjectMeta(_Model):
    name: str
    namespace: str = "default"
    uid: str = ""
    resource_version: str | None = None
    generation: int | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)


class Cluster(_Model):
    """A cluster object as read from the platform.

    Component-level settings take precedence over the cluster-level ones
    through the accessor methods below.
    """

    api_version: str = "tikv.org/v1alpha1"
    kind: str = "TikvCluster"
    metadata: ObjectMeta
    spec: ClusterSpec
    status: ClusterStatus = Field(default_factory=ClusterStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def owner_ref(self) -> dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.metadata.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    # component accessors

    def image_pull_policy(self) -> str:
        return self.spec.tikv.image_pull_policy or self.spec.image_pull_policy

    def host_network(self) -> bool:
        for value in (self.spec.tikv.host_network, self.spec.host_network):
            if value is not None:
                return value
        return False

    def affinity(self) -> dict[str, Any] | None:
        return self.spec.tikv.affinity if self.spec.tikv.affinity is not None else self.spec.affinity

    def priority_class_name(self) -> str | None:
        return self.spec.tikv.priority_class_name or self.spec.priority_class_name

    def scheduler_name(self) -> str:
        return self.spec.tikv.scheduler_name or self.spec.scheduler_name

    def node_selector(self) -> dict[str, str]:
        return {**self.spec.node_selector, **self.spec.tikv.node_selector}

    def annotations(self) -> dict[str, str]:
        return {**self.spec.annotations, **self.spec.tikv.annotations}

    def tolerations(self) -> list[dict[str, Any]]:
        return self.spec.tikv.tolerations or self.spec.tolerations

    def config_update_strategy(self) -> str:
        # Objects created before the field existed carry an empty value.
        return self.spec.tikv.config_update_strategy or self.spec.config_update_strategy or CONFIG_UPDATE_IN_PLACE

    def tls_enabled(self) -> bool:
        return bool(self.spec.tls_cluster and self.spec.tls_cluster.enabled)

    def scheme(self) -> str:
        return "https" if self.tls_enabled() else "http"

    # replica accounting

    def desired_replicas(self) -> int:
        """Declared replicas plus one spare ordinal per failure record."""
        return self.spec.tikv.replicas + len(self.status.tikv.failure_stores)

    def actual_replicas(self) -> int:
        mirror = self.status.tikv.stateful_set or {}
        return int(mirror.get("replicas") or 0)

    def all_pods_started(self) -> bool:
        return self.desired_replicas() == self.actual_replicas()

    def all_stores_ready(self) -> bool:
        stores = self.status.tikv.stores
        if self.desired_replicas() != len(stores):
            return False
        return all(s.state == STATE_UP for s in stores.values())

    def upgrading(self) -> bool:
        return self.status.tikv.phase == UPGRADE_PHASE

    def placement_available(self) -> bool:
        quorum = self.spec.pd.replicas // 2 + 1
        members = self.status.pd.members
        if len(members) < quorum:
            return False
        if sum(1 for m in members.values() if m.health) < quorum:
            return False
        mirror = self.status.pd.stateful_set or {}
        return int(mirror.get("readyReplicas") or 0) >= quorum

    def store_status_dump(self) -> dict[str, Any]:
        return self.status.tikv.model_dump(mode="json", by_alias=True)
