import threading

from kvr.runtime import RuntimeState, WorkQueue


class _Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_duplicate_adds_are_collapsed():
    q = WorkQueue()
    q.add("default/a")
    q.add("default/a")
    q.add("default/b")
    assert len(q) == 2
    assert q.get(timeout_s=0) == "default/a"
    assert q.get(timeout_s=0) == "default/b"
    assert q.get(timeout_s=0) is None


def test_key_in_flight_is_not_handed_out_twice():
    q = WorkQueue()
    q.add("default/a")
    key = q.get(timeout_s=0)
    q.add("default/a")
    assert q.get(timeout_s=0) is None

    q.done(key)
    assert q.get(timeout_s=0) == "default/a"


def test_add_after_waits_for_due_time():
    clock = _Clock()
    q = WorkQueue(clock=clock)
    q.add_after("default/a", 5)
    assert q.get(timeout_s=0) is None

    # an earlier due time wins, a later one is ignored
    q.add_after("default/a", 2)
    q.add_after("default/a", 30)
    clock.now += 2
    assert q.get(timeout_s=0) == "default/a"


def test_rate_limited_backoff_grows_and_is_capped():
    q = WorkQueue(base_delay_s=0.5, max_delay_s=3, clock=_Clock())
    delays = [q.add_rate_limited("default/a") for _ in range(5)]
    assert delays == [0.5, 1.0, 2.0, 3, 3]
    assert q.num_requeues("default/a") == 5
    q.forget("default/a")
    assert q.num_requeues("default/a") == 0


def test_shut_down_releases_blocked_getters():
    q = WorkQueue()
    got = []
    t = threading.Thread(target=lambda: got.append(q.get()))
    t.start()
    q.shut_down()
    t.join(timeout=2)
    assert not t.is_alive()
    assert got == [None]


def test_runtime_state_records_last_outcome():
    rt = RuntimeState()
    rt.record("default/b", "ok")
    rt.record("default/a", "error", "boom", requeues=2)
    rt.record("default/a", "requeue", "waiting")
    assert [r.key for r in rt.list_records()] == ["default/a", "default/b"]
    assert rt.get("default/a").result == "requeue"
    assert rt.get("default/c") is None
