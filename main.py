from __future__ import annotations

from dataclasses import asdict
from typing import Callable

from fastapi import FastAPI, HTTPException, Query

from kvr import db
from kvr.reconciler import Controller, build_controller
from kvr.runtime import RuntimeState
from kvr.settings import settings


def create_app(
    runtime: RuntimeState | None = None,
    controller_factory: Callable[[RuntimeState], Controller] | None = None,
    start_controller: bool | None = None,
) -> FastAPI:
    runtime = runtime if runtime is not None else RuntimeState()
    factory = controller_factory or build_controller
    start = settings.start_controller if start_controller is None else start_controller

    app = FastAPI(title="KV Member Reconciler")
    app.state.runtime = runtime
    app.state.controller = None

    @app.on_event("startup")
    def startup() -> None:
        db.init_db()
        if not start:
            return
        controller = factory(runtime)
        controller.start()
        app.state.controller = controller

    @app.on_event("shutdown")
    def shutdown() -> None:
        if app.state.controller is not None:
            app.state.controller.stop()

    @app.get("/healthz")
    def healthz():
        return {"status": "ok", "controller": app.state.controller is not None}

    @app.get("/events")
    def events(limit: int = Query(100, ge=1, le=1000), cluster: str | None = None):
        return db.latest_events(limit=limit, cluster=cluster)

    @app.get("/clusters")
    def clusters():
        return [asdict(r) for r in runtime.list_records()]

    @app.get("/clusters/{namespace}/{name}")
    def cluster(namespace: str, name: str):
        rec = runtime.get(f"{namespace}/{name}")
        if rec is None:
            raise HTTPException(status_code=404, detail="Cluster has not been synced")
        return asdict(rec)

    @app.post("/clusters/{namespace}/{name}/sync", status_code=202)
    def sync(namespace: str, name: str):
        controller = app.state.controller
        if controller is None:
            raise HTTPException(status_code=503, detail="Controller is not running")
        key = f"{namespace}/{name}"
        controller.enqueue(key)
        db.log_event("INFO", "Sync requested through the admin API", cluster=name, namespace=namespace)
        return {"queued": key}

    return app


app = create_app()
