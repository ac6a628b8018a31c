"""CLI entry points for nodelab."""

from __future__ import annotations

import argparse
import json
from typing import List, Optional

from nodelab.config import parse_env
from nodelab.exceptions import ManagerError
from nodelab.models import Instance, InstanceKind, InstanceView, RunResult, WipeAllResult
from nodelab.orchestrator import LabOrchestrator
from nodelab.utils import log


def _emit(payload) -> None:
    print(json.dumps(payload, indent=2), flush=True)


def print_instances(views: List[InstanceView]) -> None:
    if not views:
        log("INFO", "No instances registered")
        return
    max_name = max(len(view.name) for view in views)
    for view in views:
        ports = ", ".join(f"{key}={value}" for key, value in view.ports.to_dict().items() if value is not None)
        line = f"  {view.name:<{max_name}}  {view.kind.value:<6}  {view.status.value:<7}  {view.address:<15}"
        if ports:
            line += f"  {ports}"
        if view.console_url:
            line += f"  {view.console_url}"
        print(line, flush=True)


def print_instance(instance: Instance) -> None:
    print(f"  {instance.name} ({instance.kind.value}) {instance.address} -> {instance.overlay_path}", flush=True)


def print_run_result(result: RunResult) -> None:
    ports = ", ".join(f"{key}={value}" for key, value in result.ports.to_dict().items() if value is not None)
    print(f"  {result.name}: {ports}", flush=True)
    if result.console_url:
        print(f"  Console: {result.console_url}", flush=True)


def print_wipe_all(result: WipeAllResult) -> None:
    for name in result.wiped:
        print(f"  wiped    {name}", flush=True)
    for name, error in result.failed.items():
        print(f"  failed   {name}: {error}", flush=True)
    for name in result.skipped:
        print(f"  skipped  {name}", flush=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nodelab", description="Disposable QEMU nodes and routers with Guacamole consoles")
    parser.add_argument("--json", action="store_true", help="Print machine-readable output")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List instances with live status and console URL")
    sub.add_parser("create", help="Create a new node")
    sub.add_parser("create-router", help="Create the router")
    for command, help_text in (
        ("run", "Start an instance and register its console"),
        ("stop", "Stop an instance"),
        ("wipe", "Stop an instance and reset its disk"),
    ):
        cmd = sub.add_parser(command, help=help_text)
        cmd.add_argument("name")
    wipe_all = sub.add_parser("wipe-all", help="Stop and wipe every instance")
    wipe_all.add_argument(
        "--halt-on-failure",
        action="store_true",
        help="Stop at the first failing instance instead of attempting all",
    )
    reconcile = sub.add_parser("reconcile", help="Refresh stored status from the process table")
    reconcile.add_argument(
        "--kill-orphans",
        action="store_true",
        help="Terminate leftover hypervisor processes first",
    )
    return parser


def _report_unexpected(exc: Exception) -> None:
    log("ERROR", f"Unexpected error: {exc}")
    log("ERROR", "This is likely a bug. Please report it together with the traceback below")
    import traceback

    traceback.print_exc()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        cfg = parse_env()
        orchestrator = LabOrchestrator(cfg)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        _report_unexpected(exc)
        return 1

    try:
        if args.command == "list":
            views = orchestrator.list_instances()
            if args.json:
                _emit([view.to_dict() for view in views])
            else:
                print_instances(views)
        elif args.command in {"create", "create-router"}:
            kind = InstanceKind.ROUTER if args.command == "create-router" else InstanceKind.NODE
            instance = orchestrator.create(kind)
            if args.json:
                _emit(instance.to_record())
            else:
                print_instance(instance)
        elif args.command == "run":
            result = orchestrator.run(args.name)
            if args.json:
                _emit(result.to_dict())
            else:
                print_run_result(result)
            if result.gateway_error:
                log("WARN", f"Console gateway: {result.gateway_error}")
        elif args.command == "stop":
            orchestrator.stop(args.name)
            if args.json:
                _emit({"name": args.name, "status": "stopped"})
        elif args.command == "wipe":
            instance = orchestrator.wipe(args.name)
            if args.json:
                _emit(instance.to_record())
        elif args.command == "wipe-all":
            result = orchestrator.wipe_all(halt_on_failure=args.halt_on_failure)
            if args.json:
                _emit(result.to_dict())
            else:
                print_wipe_all(result)
            return 0 if result.ok else 1
        elif args.command == "reconcile":
            views = orchestrator.reconcile(kill_orphans=args.kill_orphans)
            if args.json:
                _emit([view.to_dict() for view in views])
            else:
                print_instances(views)
        return 0
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        _report_unexpected(exc)
        return 1
    finally:
        orchestrator.gateway.close()
