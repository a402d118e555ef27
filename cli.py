from __future__ import annotations

import argparse
import json
import secrets
import sys

import requests

from dbo.alerts import notify_run_failure
from dbo.graph import ConfigError
from dbo.invoker import DockerInvoker, make_invoker
from dbo.manifest import build_graph, load_manifest
from dbo.scheduler import Scheduler, policy_for
from dbo.settings import StackConfig, settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _parse_vars(items: list[str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ConfigError(f"--var expects KEY=VALUE, got '{item}'")
        out[key] = value
    return out


def _run(args: argparse.Namespace) -> int:
    try:
        config = StackConfig.from_env().with_overrides(_parse_vars(args.var))
        manifest = load_manifest(args.manifest, config)
        graph = build_graph(manifest)
    except ConfigError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return 2

    run_id = secrets.token_hex(6)
    invoker = make_invoker(args.invoker, run_id)
    policy = policy_for(args.timeout or manifest.timeout_s, manifest.grace_period_s)
    try:
        report = Scheduler(graph, invoker, policy=policy, run_id=run_id).run()
    finally:
        if isinstance(invoker, DockerInvoker) and not args.keep:
            invoker.cleanup()

    if args.report_file:
        with open(args.report_file, "w", encoding="utf-8") as fh:
            fh.write(report.to_json())
    print(report.to_json())
    notify_run_failure(report)
    return report.exit_code


def _validate(args: argparse.Namespace) -> int:
    try:
        config = StackConfig.from_env().with_overrides(_parse_vars(args.var))
        graph = build_graph(load_manifest(args.manifest, config))
    except ConfigError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return 2
    _print(
        {
            "name": graph.name,
            "order": graph.topological_order(),
            "edges": [
                {"from": e.source, "to": e.target, "condition": e.condition.value}
                for nid in graph.nodes
                for e in graph.incoming.get(nid, [])
            ],
        }
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Dependency Bring-up Orchestrator CLI")
    p.add_argument("--api", default=settings.api_url, help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_run = sub.add_parser("run", help="Bring up a stack locally and wait for the outcome")
    s_run.add_argument("manifest")
    s_run.add_argument("--var", action="append", default=[], metavar="KEY=VALUE", help="Stack variable (repeatable)")
    s_run.add_argument("--timeout", type=float, default=None, help="Run deadline in seconds")
    s_run.add_argument("--invoker", choices=["docker", "process"], default="docker")
    s_run.add_argument("--report-file", default=None, help="Also write the RunReport JSON here")
    s_run.add_argument("--keep", action="store_true", help="Do not remove the run's containers afterwards")

    s_val = sub.add_parser("validate", help="Check a manifest and print the launch order")
    s_val.add_argument("manifest")
    s_val.add_argument("--var", action="append", default=[], metavar="KEY=VALUE")

    sub.add_parser("runs", help="List runs (via API)")

    s_rep = sub.add_parser("report", help="Show a run report (via API)")
    s_rep.add_argument("run_id")

    s_ev = sub.add_parser("events", help="Show events (via API)")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--run-id", default=None)

    args = p.parse_args(argv)

    if args.cmd == "run":
        return _run(args)

    if args.cmd == "validate":
        return _validate(args)

    base = args.api.rstrip("/")

    if args.cmd == "runs":
        _print(requests.get(f"{base}/runs", timeout=10).json())
        return 0

    if args.cmd == "report":
        r = requests.get(f"{base}/runs/{args.run_id}", timeout=10)
        _print(r.json())
        if not r.ok:
            return 1
        return int(r.json().get("exit_code", 1))

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.run_id:
            params["run_id"] = args.run_id
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
