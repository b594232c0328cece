import importlib.util
import os

from fastapi.testclient import TestClient

from kvr import db
from kvr.runtime import RuntimeState


def _import_main_module(project_root):
    """Import main.py as a module without requiring it to be installed as a package."""
    main_path = os.path.join(project_root, "main.py")
    spec = importlib.util.spec_from_file_location("kvr_admin_main", main_path)
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)  # type: ignore[attr-defined]
    return mod


class _FakeController:
    def __init__(self, runtime):
        self.runtime = runtime
        self.started = False
        self.stopped = False
        self.queued = []

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def enqueue(self, key):
        self.queued.append(key)


def _main():
    return _import_main_module(os.path.dirname(os.path.dirname(__file__)))


def test_healthz_events_and_clusters_without_controller():
    main = _main()
    runtime = RuntimeState()
    runtime.record("default/basic", "requeue", "waiting for the placement service")
    app = main.create_app(runtime=runtime, start_controller=False)

    with TestClient(app) as client:
        r = client.get("/healthz")
        assert r.status_code == 200
        assert r.json() == {"status": "ok", "controller": False}

        db.log_event("INFO", "Created StatefulSet basic-tikv", cluster="basic", namespace="default")
        db.log_event("INFO", "unrelated", cluster="other", namespace="default")
        r = client.get("/events", params={"limit": 10, "cluster": "basic"})
        assert [e["message"] for e in r.json()] == ["Created StatefulSet basic-tikv"]

        r = client.get("/clusters")
        assert r.json()[0]["key"] == "default/basic"
        assert r.json()[0]["result"] == "requeue"

        assert client.get("/clusters/default/basic").status_code == 200
        assert client.get("/clusters/default/missing").status_code == 404
        assert client.post("/clusters/default/basic/sync").status_code == 503


def test_startup_builds_and_starts_controller():
    main = _main()
    made = []

    def factory(runtime):
        made.append(_FakeController(runtime))
        return made[-1]

    app = main.create_app(controller_factory=factory, start_controller=True)
    with TestClient(app) as client:
        assert made and made[0].started
        assert client.get("/healthz").json()["controller"] is True

        r = client.post("/clusters/default/basic/sync")
        assert r.status_code == 202
        assert made[0].queued == ["default/basic"]
    assert made[0].stopped


def test_events_limit_is_validated():
    main = _main()
    with TestClient(main.create_app(start_controller=False)) as client:
        assert client.get("/events", params={"limit": 0}).status_code == 422
