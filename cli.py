from __future__ import annotations

import argparse
import json
import sys

import requests

from ess.handler import build_aws_controller
from ess.settings import configure_logging, load_settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="ECS StatefulSet Controller CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--user", default=None, help="API user (for reconcile)")
    p.add_argument("--password", default=None, help="API password (for reconcile)")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("status", help="Show controller status and the last cycle")

    s_ev = sub.add_parser("events", help="Show journal events")
    s_ev.add_argument("--limit", type=int, default=20)

    sub.add_parser("reconcile", help="Ask the API to run one cycle now")
    sub.add_parser("run-once", help="Run one cycle in this process against AWS")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "status":
        _print(requests.get(f"{base}/status", timeout=10).json())
        return 0

    if args.cmd == "events":
        _print(requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10).json())
        return 0

    if args.cmd == "reconcile":
        auth = (args.user, args.password) if args.user and args.password else None
        # A cycle may wait on snapshots and task startup.
        r = requests.post(f"{base}/reconcile", auth=auth, timeout=600)
        _print(r.json())
        return 0 if r.ok and r.json().get("outcome") != "failed" else 1

    if args.cmd == "run-once":
        settings = load_settings()
        configure_logging(settings)
        report = build_aws_controller(settings).run_cycle()
        _print(report.to_dict())
        return 1 if report.outcome == "failed" else 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
