from datetime import timedelta

import pytest
from conftest import NOW

from kvr.api_models import STATE_DOWN, STATE_UP, FailureRecord, StoreStatus
from kvr.failover import FailoverController


def _store(store_id, ordinal, state, since):
    return StoreStatus(
        id=str(store_id),
        pod_name=f"basic-tikv-{ordinal}",
        state=state,
        last_heartbeat_time=since,
        last_transition_time=since,
    )


@pytest.fixture
def failover(kube, clock):
    return FailoverController(kube, period_s=300, clock=clock)


def test_down_past_deadline_creates_one_record(make_cluster, kube, failover):
    kube.add_pod("basic", 2, node="node-9")
    cluster = make_cluster()
    cluster.status.tikv.stores = {
        "1": _store(1, 0, STATE_UP, NOW - timedelta(hours=1)),
        "3": _store(3, 2, STATE_DOWN, NOW - timedelta(seconds=301)),
    }

    records = failover.failover(cluster)
    assert list(records) == ["3"]
    assert records["3"].pod_name == "basic-tikv-2"
    assert records["3"].host == "node-9"
    assert records["3"].created_at == NOW
    # the cluster itself is not modified
    assert cluster.status.tikv.failure_stores == {}

    cluster.status.tikv.failure_stores = records
    assert failover.failover(cluster) == records


def test_grace_period_not_yet_elapsed(make_cluster, failover):
    cluster = make_cluster()
    cluster.status.tikv.stores = {"3": _store(3, 2, STATE_DOWN, NOW - timedelta(seconds=299))}
    assert failover.failover(cluster) == {}


def test_budget_exhausted(make_cluster, failover):
    cluster = make_cluster(replicas=3, maxFailoverCount=1)
    cluster.status.tikv.stores = {
        "2": _store(2, 1, STATE_DOWN, NOW - timedelta(hours=1)),
        "3": _store(3, 2, STATE_DOWN, NOW - timedelta(hours=1)),
    }
    records = failover.failover(cluster)
    assert list(records) == ["2"]


def test_budget_zero_disables(make_cluster, failover):
    cluster = make_cluster(maxFailoverCount=0)
    cluster.status.tikv.stores = {"3": _store(3, 2, STATE_DOWN, NOW - timedelta(hours=1))}
    assert failover.failover(cluster) == {}


def test_pod_outside_desired_range_is_ignored(make_cluster, failover):
    cluster = make_cluster(replicas=2)
    cluster.status.tikv.stores = {"3": _store(3, 2, STATE_DOWN, NOW - timedelta(hours=1))}
    assert failover.failover(cluster) == {}


def test_recover_clears_exactly_the_matching_record(make_cluster, failover):
    cluster = make_cluster()
    cluster.status.tikv.failure_stores = {
        "3": FailureRecord(store_id="3", pod_name="basic-tikv-2", created_at=NOW),
        "5": FailureRecord(store_id="5", pod_name="basic-tikv-1", created_at=NOW),
    }
    cluster.status.tikv.stores = {
        "3": _store(3, 2, STATE_UP, NOW),
        "5": _store(5, 1, STATE_DOWN, NOW),
    }
    assert list(failover.recover(cluster)) == ["5"]


def test_recover_by_replacement_store_on_same_pod(make_cluster, failover):
    cluster = make_cluster()
    cluster.status.tikv.failure_stores = {"3": FailureRecord(store_id="3", pod_name="basic-tikv-2", created_at=NOW)}
    cluster.status.tikv.stores = {"8": _store(8, 2, STATE_UP, NOW)}
    assert failover.recover(cluster) == {}
