from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _load_json(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _spec_from_args(args: argparse.Namespace, parser: argparse.ArgumentParser) -> dict:
    if args.file:
        spec = _load_json(args.file)
        if not isinstance(spec, dict) or not spec.get("name"):
            parser.error(f"{args.file}: spec must be a JSON object with a 'name'")
        return spec
    missing = [f"--{k}" for k in ("workload", "version", "image") if not getattr(args, k)]
    if missing:
        parser.error(f"{', '.join(missing)} required unless --file is given")
    spec = {
        "name": args.workload,
        "version": args.version,
        "image": args.image,
        "min_replicas": args.min_replicas,
        "max_replicas": args.max_replicas,
        "internal_port": args.internal_port,
        "health_path": args.health_path,
        "metrics": [{"name": n, "target": float(t)} for n, t in (args.metric or [])],
        "rollout": {
            "surge_budget": args.surge,
            "unavailability_budget": args.unavailable,
        },
    }
    if args.batch_size:
        spec["rollout"]["batch_size"] = args.batch_size
    return spec


def _add_spec_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--file", help="JSON workload spec; overrides the flags below")
    p.add_argument("--workload")
    p.add_argument("--version")
    p.add_argument("--image")
    p.add_argument("--min-replicas", type=int, default=1)
    p.add_argument("--max-replicas", type=int, default=10)
    p.add_argument("--internal-port", type=int, default=8080)
    p.add_argument("--health-path", default="/health")
    p.add_argument(
        "--metric",
        nargs=2,
        action="append",
        metavar=("NAME", "TARGET"),
        help="Metric target, e.g. --metric cpu 50",
    )
    p.add_argument("--surge", type=int, default=1)
    p.add_argument("--unavailable", type=int, default=1)
    p.add_argument("--batch-size", type=int)


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Declarative Scaling Controller CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("workloads", help="List workloads with status")

    s_status = sub.add_parser("status", help="Show one workload's status")
    s_status.add_argument("workload")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--workload")

    s_reg = sub.add_parser("register", help="Register a workload")
    _add_spec_args(s_reg)
    s_reg.add_argument("--rules", help="JSON file with a list of extra isolation rules")

    s_sub = sub.add_parser("submit", help="Submit a new version (starts a rollout)")
    _add_spec_args(s_sub)

    s_abort = sub.add_parser("abort", help="Abort the active rollout at the next batch boundary")
    s_abort.add_argument("workload")
    s_abort.add_argument("--reason", default="operator request")

    s_rec = sub.add_parser("reconcile", help="Run one reconciliation cycle now")
    s_rec.add_argument("workload")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "workloads":
        _print(requests.get(f"{base}/workloads", timeout=10).json())
        return 0

    if args.cmd == "status":
        r = requests.get(f"{base}/workloads/{args.workload}/status", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.workload:
            params["workload"] = args.workload
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    if args.cmd == "register":
        payload = {"spec": _spec_from_args(args, s_reg), "isolation_rules": _load_json(args.rules) if args.rules else []}
        r = requests.post(f"{base}/workloads", json=payload, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "submit":
        spec = _spec_from_args(args, s_sub)
        r = requests.post(f"{base}/workloads/{spec['name']}/versions", json=spec, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "abort":
        r = requests.post(f"{base}/workloads/{args.workload}/rollout/abort", json={"reason": args.reason}, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "reconcile":
        r = requests.post(f"{base}/workloads/{args.workload}/reconcile", timeout=60)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
