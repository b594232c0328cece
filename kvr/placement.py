from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any

import httpx

from .api_models import STATE_TOMBSTONE, Cluster
from .settings import settings


STORES_PATH = "/pd/api/v1/stores"
STORE_PATH = "/pd/api/v1/store"
CONFIG_PATH = "/pd/api/v1/config"

# Numeric state filter understood by the stores listing.
TOMBSTONE_STATE_FILTER = 2

_FRACTION_RE = re.compile(r"\.(\d{6})\d+")

# Lower bounds of numeric epochs per unit, checked from the finest unit down.
_EPOCH_SCALES = ((1e17, 1e9), (1e14, 1e6), (1e11, 1e3))


class PlacementError(Exception):
    pass


@dataclass(frozen=True)
class StoreInfo:
    id: int
    address: str
    state: str
    labels: dict[str, str] = field(default_factory=dict)
    leader_count: int = 0
    last_heartbeat: datetime | None = None


def _epoch_seconds(raw: float) -> float:
    for bound, divisor in _EPOCH_SCALES:
        if abs(raw) >= bound:
            return raw / divisor
    return raw


def parse_heartbeat(raw: Any) -> datetime | None:
    """Parse a heartbeat timestamp; zero or missing values become None."""
    if raw in (None, "", 0):
        return None
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(_epoch_seconds(raw), tz=timezone.utc)
    text = _FRACTION_RE.sub(r".\1", str(raw).strip()).replace("Z", "+00:00")
    try:
        ts = datetime.fromisoformat(text)
    except ValueError:
        return None
    if ts.year <= 1:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _store_from_payload(item: dict[str, Any]) -> StoreInfo | None:
    store = item.get("store")
    status = item.get("status")
    if not store or status is None:
        return None
    labels = {lb.get("key", ""): lb.get("value", "") for lb in store.get("labels") or []}
    return StoreInfo(
        id=int(store.get("id", 0)),
        address=store.get("address", ""),
        state=store.get("state_name", ""),
        labels=labels,
        leader_count=int(status.get("leader_count") or 0),
        last_heartbeat=parse_heartbeat(status.get("last_heartbeat_ts")),
    )


class PlacementClient:
    """Blocking client for the placement service's HTTP API.

    Every call is bounded by ``timeout_s``; transport failures and non-2xx
    replies surface as PlacementError.
    """

    def __init__(self, base_url: str, timeout_s: float | None = None, transport: httpx.BaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout_s if timeout_s is not None else settings.placement_timeout_s,
            follow_redirects=False,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise PlacementError(f"{method} {self.base_url}{path}: {type(e).__name__}: {e}") from e
        if resp.status_code >= 300:
            raise PlacementError(f"{method} {self.base_url}{path}: HTTP {resp.status_code}: {resp.text.strip()}")
        return resp

    def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        resp = self._request(method, path, **kwargs)
        try:
            return resp.json()
        except ValueError as e:
            raise PlacementError(f"{method} {self.base_url}{path}: invalid JSON") from e

    def _stores(self, params: dict[str, Any] | None = None) -> list[StoreInfo]:
        data = self._json("GET", STORES_PATH, params=params)
        out: list[StoreInfo] = []
        for item in (data or {}).get("stores") or []:
            info = _store_from_payload(item)
            if info is not None:
                out.append(info)
        return out

    def get_stores(self) -> list[StoreInfo]:
        """Active stores: Up, Down and Offline."""
        return self._stores()

    def get_tombstone_stores(self) -> list[StoreInfo]:
        return self._stores({"state": TOMBSTONE_STATE_FILTER})

    def get_store(self, store_id: int) -> StoreInfo | None:
        data = self._json("GET", f"{STORE_PATH}/{store_id}")
        return _store_from_payload(data or {})

    def get_location_labels(self) -> list[str]:
        """Ordered topology label keys from the replication configuration."""
        data = self._json("GET", CONFIG_PATH) or {}
        raw = (data.get("replication") or {}).get("location-labels")
        if not raw:
            return []
        if isinstance(raw, str):
            return [k.strip() for k in raw.split(",") if k.strip()]
        return [str(k) for k in raw]

    def set_store_labels(self, store_id: int, labels: dict[str, str]) -> bool:
        self._request("POST", f"{STORE_PATH}/{store_id}/label", json=labels)
        return True

    def delete_store(self, store_id: int) -> None:
        """Ask the placement service to drain and retire a store."""
        store = self.get_store(store_id)
        if store is not None and store.state == STATE_TOMBSTONE:
            return
        self._request("DELETE", f"{STORE_PATH}/{store_id}")


class PlacementControl:
    """Hands out one cached client per (namespace, cluster, scheme)."""

    def __init__(self, url_template: str | None = None, timeout_s: float | None = None, transport: httpx.BaseTransport | None = None):
        self.url_template = url_template or settings.placement_url
        self.timeout_s = timeout_s
        self.transport = transport
        self._lock = Lock()
        self._clients: dict[tuple[str, str, str], PlacementClient] = {}

    def client_for(self, cluster: Cluster) -> PlacementClient:
        key = (cluster.namespace, cluster.name, cluster.scheme())
        with self._lock:
            cli = self._clients.get(key)
            if cli is None:
                url = self.url_template.format(scheme=key[2], cluster=key[1], namespace=key[0])
                cli = PlacementClient(url, timeout_s=self.timeout_s, transport=self.transport)
                self._clients[key] = cli
            return cli

    def evict(self, namespace: str, name: str) -> int:
        """Close and drop every cached client of a cluster."""
        with self._lock:
            keys = [k for k in self._clients if k[0] == namespace and k[1] == name]
            clients = [self._clients.pop(k) for k in keys]
        for cli in clients:
            cli.close()
        return len(clients)
