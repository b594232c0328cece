from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("KVR_DB_PATH", "kvr.db")
    namespace: str = os.getenv("KVR_NAMESPACE", "")
    workers: int = _env_int("KVR_WORKERS", 5)
    resync_interval_s: int = _env_int("KVR_RESYNC_INTERVAL_S", 30)
    in_cluster: bool = _env_bool("KVR_IN_CLUSTER", False)
    start_controller: bool = _env_bool("KVR_START_CONTROLLER", True)
    debug_events: bool = _env_bool("KVR_DEBUG_EVENTS", False)

    # Requeue policy
    requeue_delay_s: float = _env_float("KVR_REQUEUE_DELAY_S", 5.0)
    backoff_base_s: float = _env_float("KVR_BACKOFF_BASE_S", 0.5)
    backoff_max_s: float = _env_float("KVR_BACKOFF_MAX_S", 300.0)

    # Failover
    auto_failover: bool = _env_bool("KVR_AUTO_FAILOVER", True)
    failover_period_s: int = _env_int("KVR_FAILOVER_PERIOD_S", 300)

    # Placement service
    placement_timeout_s: float = _env_float("KVR_PLACEMENT_TIMEOUT_S", 5.0)
    placement_url: str = os.getenv("KVR_PLACEMENT_URL", "{scheme}://{cluster}-pd.{namespace}:2379")

    # Cluster custom resource
    crd_group: str = os.getenv("KVR_CRD_GROUP", "tikv.org")
    crd_version: str = os.getenv("KVR_CRD_VERSION", "v1alpha1")
    crd_plural: str = os.getenv("KVR_CRD_PLURAL", "tikvclusters")


settings = Settings()
