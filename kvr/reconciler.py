from __future__ import annotations

from copy import deepcopy
from threading import Event, Thread
from typing import Any

from . import db
from .api_models import Cluster
from .failover import FailoverController
from .kube_ops import KubeControl, KubeState, load_kube_config
from .member_manager import MemberManager
from .placement import PlacementControl
from .runtime import RequeueError, RuntimeState, WorkQueue
from .scaler import ScaleController
from .settings import settings
from .status_sync import StoreStatusSync
from .store_labels import LabelPropagator
from .upgrader import RevisionUpgradeDetector, UpgradeController


def split_key(key: str) -> tuple[str, str]:
    namespace, _, name = key.partition("/")
    return namespace, name


class Controller:
    """Keeps every cluster object converged.

    A resync thread enqueues all cluster keys periodically and a fixed
    pool of workers processes them; the queue never hands one key to two
    workers at once.
    """

    def __init__(
        self,
        control: Any,
        manager: MemberManager,
        runtime: RuntimeState,
        queue: WorkQueue | None = None,
        workers: int | None = None,
        namespace: str | None = None,
        resync_interval_s: float | None = None,
        requeue_delay_s: float | None = None,
        placement: PlacementControl | None = None,
    ):
        self.control = control
        self.manager = manager
        self.runtime = runtime
        self.placement = placement
        self.queue = queue if queue is not None else WorkQueue(settings.backoff_base_s, settings.backoff_max_s)
        self.workers = max(1, int(settings.workers if workers is None else workers))
        self.namespace = settings.namespace if namespace is None else namespace
        self.resync_interval_s = settings.resync_interval_s if resync_interval_s is None else resync_interval_s
        self.requeue_delay_s = settings.requeue_delay_s if requeue_delay_s is None else requeue_delay_s
        self._stop = Event()
        self._threads: list[Thread] = []

    def start(self) -> None:
        if any(t.is_alive() for t in self._threads):
            return
        self._stop.clear()
        self._threads = [Thread(target=self._resync_loop, name="kvr-resync", daemon=True)]
        self._threads += [Thread(target=self._worker, name=f"kvr-worker-{i}", daemon=True) for i in range(self.workers)]
        for t in self._threads:
            t.start()

    def stop(self) -> None:
        self._stop.set()
        self.queue.shut_down()

    def enqueue(self, key: str) -> None:
        self.queue.add(key)

    def resync(self) -> int:
        items = self.control.list_clusters(self.namespace)
        for item in items:
            meta = item.get("metadata") or {}
            self.queue.add(f"{meta.get('namespace', 'default')}/{meta.get('name')}")
        return len(items)

    def _resync_loop(self) -> None:
        db.log_event("INFO", f"Controller started with {self.workers} workers")
        while not self._stop.is_set():
            try:
                self.resync()
            except Exception as e:
                db.log_event("ERROR", f"Cluster listing failed: {type(e).__name__}: {e}")
            self._stop.wait(max(1, self.resync_interval_s))

    def _worker(self) -> None:
        while True:
            key = self.queue.get()
            if key is None:
                return
            try:
                self.process(key)
            finally:
                self.queue.done(key)

    def process(self, key: str) -> str:
        """Run one sync for ``key`` and requeue it according to the outcome."""
        namespace, name = split_key(key)
        try:
            self.sync_key(key)
        except RequeueError as e:
            self.queue.forget(key)
            self.queue.add_after(key, self.requeue_delay_s)
            db.log_event("INFO", f"Requeued in {self.requeue_delay_s:g}s: {e}", cluster=name, namespace=namespace)
            self.runtime.record(key, "requeue", str(e))
            return "requeue"
        except Exception as e:
            delay = self.queue.add_rate_limited(key)
            db.log_event("ERROR", f"Sync failed, retry in {delay:g}s: {type(e).__name__}: {e}", cluster=name, namespace=namespace)
            self.runtime.record(key, "error", f"{type(e).__name__}: {e}", requeues=self.queue.num_requeues(key))
            return "error"
        self.queue.forget(key)
        self.runtime.record(key, "ok")
        return "ok"

    def sync_key(self, key: str) -> None:
        namespace, name = split_key(key)
        raw = self.control.get_cluster(namespace, name)
        if raw is None:
            db.log_event("DEBUG", "Cluster object is gone", cluster=name, namespace=namespace)
            if self.placement is not None:
                self.placement.evict(namespace, name)
            return
        cluster = Cluster.model_validate(raw)
        work = cluster.model_copy(deep=True)
        try:
            self.manager.sync(work)
        finally:
            self.persist_status(raw, cluster, work)

    def persist_status(self, raw: dict[str, Any], before: Cluster, after: Cluster) -> bool:
        """Write the store-set status once, and only when it changed."""
        status = after.store_status_dump()
        if status == before.store_status_dump():
            return False
        body = deepcopy(raw)
        body["status"] = {**(body.get("status") or {}), "tikv": status}
        self.control.update_cluster_status(after.namespace, after.name, body)
        return True


def build_controller(runtime: RuntimeState) -> Controller:
    load_kube_config()
    state = KubeState()
    control = KubeControl(state.api_client)
    placement = PlacementControl()
    manager = MemberManager(
        state,
        control,
        StoreStatusSync(placement, RevisionUpgradeDetector(state)),
        LabelPropagator(state, placement),
        UpgradeController(state),
        ScaleController(state, placement),
        FailoverController(state),
    )
    return Controller(control, manager, runtime, placement=placement)
