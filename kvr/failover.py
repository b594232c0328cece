from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable

from .api_models import STATE_DOWN, STATE_UP, Cluster, FailureRecord
from .db import log_event
from .labels import pod_ordinal
from .settings import settings
from .status_sync import utc_clock


class FailoverController:
    """Records stores that stay Down past the grace period and clears them once healthy again.

    Both paths return a new failure-record mapping; the cluster is not modified.
    """

    def __init__(self, state: Any, period_s: float | None = None, clock: Callable[[], datetime] = utc_clock):
        self.state = state
        self.period = timedelta(seconds=settings.failover_period_s if period_s is None else period_s)
        self.clock = clock

    def _pod_desired(self, cluster: Cluster, name: str) -> bool:
        ordinal = pod_ordinal(name)
        return ordinal is not None and ordinal < cluster.desired_replicas()

    def _host(self, cluster: Cluster, name: str) -> str:
        pod = self.state.get_pod(cluster.namespace, name)
        return ((pod or {}).get("spec") or {}).get("nodeName") or ""

    def failover(self, cluster: Cluster) -> dict[str, FailureRecord]:
        records = {k: v.model_copy() for k, v in cluster.status.tikv.failure_stores.items()}
        budget = cluster.spec.tikv.max_failover_count or 0
        if budget <= 0:
            return records

        now = self.clock()
        for store_id in sorted(cluster.status.tikv.stores, key=lambda s: (len(s), s)):
            store = cluster.status.tikv.stores[store_id]
            if store.last_transition_time is None or store.state != STATE_DOWN:
                continue
            # a store of a pod outside the desired range is about to go away, not fail over
            if not self._pod_desired(cluster, store.pod_name):
                continue
            if now <= store.last_transition_time + self.period:
                continue
            if any(r.pod_name == store.pod_name for r in records.values()):
                continue
            if len(records) >= budget:
                log_event(
                    "WARN",
                    f"Failover budget of {budget} exhausted, store {store_id} ({store.pod_name}) stays Down",
                    cluster=cluster.name,
                    namespace=cluster.namespace,
                )
                break
            records[store_id] = FailureRecord(
                store_id=store_id,
                pod_name=store.pod_name,
                host=self._host(cluster, store.pod_name),
                created_at=now,
            )
            log_event("WARN", f"Store {store_id} ({store.pod_name}) is Down, recorded failure", cluster=cluster.name, namespace=cluster.namespace)
        return records

    def recover(self, cluster: Cluster) -> dict[str, FailureRecord]:
        stores = cluster.status.tikv.stores
        records: dict[str, FailureRecord] = {}
        for store_id, rec in cluster.status.tikv.failure_stores.items():
            same = stores.get(store_id)
            if same is not None and same.state == STATE_UP:
                recovered = True
            else:
                # a replacement store joined from the same pod
                recovered = any(s.pod_name == rec.pod_name and s.id != store_id and s.state == STATE_UP for s in stores.values())
            if recovered:
                log_event("INFO", f"Store {store_id} ({rec.pod_name}) recovered, cleared failure", cluster=cluster.name, namespace=cluster.namespace)
                continue
            records[store_id] = rec.model_copy()
        return records
