from __future__ import annotations

from copy import deepcopy
from datetime import datetime, timezone
from typing import Any, Callable

from .api_models import NORMAL_PHASE, UPGRADE_PHASE, Cluster, StoreSetStatus, StoreStatus
from .labels import parse_store_address
from .placement import PlacementControl, StoreInfo
from .upgrader import UpgradeDetector


def utc_clock() -> datetime:
    return datetime.now(timezone.utc)


def running_image(stateful_set: dict[str, Any], container: str = "tikv") -> str:
    spec = ((stateful_set.get("spec") or {}).get("template") or {}).get("spec") or {}
    for c in spec.get("containers") or []:
        if c.get("name") == container:
            return c.get("image") or ""
    return ""


class StoreStatusSync:
    """Builds the store-set status from the workload object and the placement service.

    Nothing here writes anywhere; both steps return a new status value that
    the caller merges into the cluster copy it owns for the cycle.
    """

    def __init__(self, placement: PlacementControl, detector: UpgradeDetector, clock: Callable[[], datetime] = utc_clock):
        self.placement = placement
        self.detector = detector
        self.clock = clock

    def mirror(self, cluster: Cluster, stateful_set: dict[str, Any]) -> StoreSetStatus:
        """Copy of the current status with the workload mirror, phase and image refreshed."""
        status = cluster.status.tikv.model_copy(deep=True)
        status.stateful_set = deepcopy(stateful_set.get("status") or {})
        status.phase = UPGRADE_PHASE if self.detector.upgrading(cluster, stateful_set) else NORMAL_PHASE
        image = running_image(stateful_set)
        if image:
            status.image = image
        return status

    def sync_stores(self, cluster: Cluster, status: StoreSetStatus) -> StoreSetStatus:
        """Merge the active and tombstoned store listings into ``status``.

        PlacementError propagates; the caller decides what becomes of ``synced``.
        """
        client = self.placement.client_for(cluster)
        active = client.get_stores()
        retired = client.get_tombstone_stores()

        previous = cluster.status.tikv
        now = self.clock()
        out = status.model_copy(deep=True)

        stores: dict[str, StoreStatus] = {}
        for info in active:
            rec = self._owned_status(cluster, info)
            if rec is None:
                continue
            old = previous.stores.get(rec.id)
            if rec.last_heartbeat_time is None and old is not None:
                rec.last_heartbeat_time = old.last_heartbeat_time
            rec.last_transition_time = old.last_transition_time if old is not None and old.state == rec.state else now
            stores[rec.id] = rec

        tombstones: dict[str, StoreStatus] = {}
        for info in retired:
            rec = self._owned_status(cluster, info)
            if rec is None:
                continue
            old = previous.tombstone_stores.get(rec.id) or previous.stores.get(rec.id)
            if rec.last_heartbeat_time is None and old is not None:
                rec.last_heartbeat_time = old.last_heartbeat_time
            rec.last_transition_time = old.last_transition_time if old is not None and old.state == rec.state else now
            tombstones[rec.id] = rec

        out.stores = stores
        out.tombstone_stores = tombstones
        out.synced = True
        return out

    def _owned_status(self, cluster: Cluster, info: StoreInfo) -> StoreStatus | None:
        addr = parse_store_address(info.address)
        # stores joined from outside are left alone
        if addr is None or not addr.owned_by(cluster.name, cluster.namespace):
            return None
        return StoreStatus(
            id=str(info.id),
            pod_name=addr.pod_name,
            ip=addr.host,
            leader_count=info.leader_count,
            state=info.state,
            last_heartbeat_time=info.last_heartbeat,
        )
