from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="KV Member Reconciler CLI")
    p.add_argument("--api", default="http://localhost:8000", help="Admin API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("health", help="Controller liveness")

    s_ev = sub.add_parser("events", help="Show journaled events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--cluster", default=None)

    s_cl = sub.add_parser("clusters", help="Last sync outcome per cluster")
    s_cl.add_argument("key", nargs="?", help="namespace/name of one cluster")

    s_sync = sub.add_parser("sync", help="Queue a cluster for an immediate sync")
    s_sync.add_argument("key", help="namespace/name")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "health":
        r = requests.get(f"{base}/healthz", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.cluster:
            params["cluster"] = args.cluster
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    if args.cmd == "clusters":
        url = f"{base}/clusters/{args.key}" if args.key else f"{base}/clusters"
        r = requests.get(url, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "sync":
        r = requests.post(f"{base}/clusters/{args.key}/sync", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
