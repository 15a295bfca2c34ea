from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any

from sentinel.config import DEFAULT_SETTINGS_PATH, resolve_settings, setup_logging
from sentinel.errors import InvalidGraph, InvalidSettings, ScanInProgress, ScheduleNotFound, SentinelError
from sentinel.models import ExecutionRecord, ScanSchedule, ScanStatus, WorkflowGraph, utc_now_iso
from sentinel.retention import apply_retention
from sentinel.scoring import recommendations
from sentinel.service import SentinelService
from sentinel.sources import load_workflow_file
from sentinel.storage import write_json_file

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INVALID = 2
EXIT_BUSY = 3
EXIT_SCAN_FAILED = 4


def _emit(payload: Any, args: argparse.Namespace) -> None:
    if args.json_output:
        write_json_file(args.json_output, payload)
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def cmd_scan(service: SentinelService, args: argparse.Namespace) -> int:
    entry = service.run_scan(args.tenant, args.scope)
    _emit(entry.to_dict(), args)
    return EXIT_OK if entry.status is ScanStatus.SUCCESS else EXIT_SCAN_FAILED


def cmd_analyze(service: SentinelService, args: argparse.Namespace) -> int:
    if args.file:
        graph = WorkflowGraph.from_dict(load_workflow_file(Path(args.file)))
        health = service.analyze_workflow(graph)
        payload = health.to_dict()
        payload["recommendations"] = recommendations(health.findings, graph)
    else:
        payload = service.get_health_score(args.tenant, args.workflow).to_dict()
        payload["recommendations"] = service.get_recommendations(args.tenant, args.workflow)
    _emit(payload, args)
    return EXIT_OK


def cmd_metrics(service: SentinelService, args: argparse.Namespace) -> int:
    metrics = service.get_failure_metrics(args.tenant, args.workflow, args.window_hours)
    window_hours = int((metrics.window_end - metrics.window_start).total_seconds() // 3600)
    failures = service.get_recent_failures(args.tenant, args.workflow, window_hours)
    payload = metrics.to_dict()
    payload["recent_failures"] = [record.to_dict() for record in failures]
    _emit(payload, args)
    return EXIT_OK


def cmd_history(service: SentinelService, args: argparse.Namespace) -> int:
    _emit({"history": [entry.to_dict() for entry in service.get_scan_history(args.tenant, args.limit)]}, args)
    return EXIT_OK


def cmd_ingest(service: SentinelService, args: argparse.Namespace) -> int:
    data = load_workflow_file(Path(args.file))
    items = data.get("executions", []) if isinstance(data, dict) else data
    decisions = []
    for item in items:
        record = ExecutionRecord.from_dict({**item, "tenant_id": args.tenant})
        decisions.append(service.record_execution(args.tenant, record).to_dict())
    service.scheduler.wait_idle()
    _emit({"ingested": len(decisions), "decisions": decisions}, args)
    return EXIT_OK


def cmd_test_alert(service: SentinelService, args: argparse.Namespace) -> int:
    results = asyncio.run(service.send_test_alert(args.tenant))
    _emit({"results": [result.to_dict() for result in results]}, args)
    return EXIT_OK if results and all(result.success for result in results) else EXIT_SCAN_FAILED


def cmd_schedule(service: SentinelService, args: argparse.Namespace) -> int:
    if args.action == "set":
        schedule = ScanSchedule(
            tenant_id=args.tenant,
            enabled=not args.disabled,
            frequency=args.frequency,
            preferred_time=args.time,
            timezone=args.timezone,
            scan_scope=args.scope or "active",
            day_of_week=args.day_of_week,
        )
        payload = service.upsert_scan_schedule(args.tenant, schedule).to_dict()
    elif args.action == "show":
        payload = service.get_scan_schedule(args.tenant).to_dict()
        payload["state"] = service.get_schedule_state(args.tenant).value
    elif args.action == "delete":
        service.delete_scan_schedule(args.tenant)
        payload = {"deleted": True, "tenant_id": args.tenant}
    else:
        entry = service.run_schedule_now(args.tenant)
        payload = entry.to_dict()
    _emit(payload, args)
    return EXIT_OK


def cmd_run_scheduler(service: SentinelService, args: argparse.Namespace) -> int:
    if args.once:
        submitted = service.scheduler.tick()
        service.scheduler.wait_idle()
        _emit({"submitted": submitted, "generated_at": utc_now_iso()}, args)
        return EXIT_OK

    stop_event = threading.Event()

    def _stop(signum, _frame) -> None:
        LOGGER.info("Received signal %s, stopping scheduler", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    service.scheduler.run_forever(stop_event)
    return EXIT_OK


def cmd_retention(service: SentinelService, args: argparse.Namespace) -> int:
    _emit(apply_retention(service.settings, dry_run=args.dry_run), args)
    return EXIT_OK


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Workflow health analyzer and execution monitor")
    parser.add_argument("--settings", default=os.getenv("SENTINEL_SETTINGS", DEFAULT_SETTINGS_PATH), help="Path to settings YAML")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"), help="Logging level")
    parser.add_argument("--json-output", help="Optional path for the JSON output")
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Scan every workflow of a tenant now")
    scan.add_argument("--tenant", required=True)
    scan.add_argument("--scope", choices=["all", "active"])
    scan.set_defaults(handler=cmd_scan)

    analyze = sub.add_parser("analyze", help="Score a single workflow")
    analyze.add_argument("--file", help="Workflow export (JSON or YAML)")
    analyze.add_argument("--tenant")
    analyze.add_argument("--workflow")
    analyze.set_defaults(handler=cmd_analyze)

    metrics = sub.add_parser("metrics", help="Failure metrics of a workflow")
    metrics.add_argument("--tenant", required=True)
    metrics.add_argument("--workflow", required=True)
    metrics.add_argument("--window-hours", type=int)
    metrics.set_defaults(handler=cmd_metrics)

    history = sub.add_parser("history", help="Recent scans of a tenant")
    history.add_argument("--tenant", required=True)
    history.add_argument("--limit", type=int, default=20)
    history.set_defaults(handler=cmd_history)

    ingest = sub.add_parser("ingest", help="Append execution outcomes from a JSON/YAML file")
    ingest.add_argument("--tenant", required=True)
    ingest.add_argument("--file", required=True)
    ingest.set_defaults(handler=cmd_ingest)

    test_alert = sub.add_parser("test-alert", help="Send a test alert on the tenant's channels")
    test_alert.add_argument("--tenant", required=True)
    test_alert.set_defaults(handler=cmd_test_alert)

    schedule = sub.add_parser("schedule", help="Manage the tenant's scan schedule")
    schedule.add_argument("action", choices=["set", "show", "delete", "run"])
    schedule.add_argument("--tenant", required=True)
    schedule.add_argument("--frequency", choices=["daily", "weekly"], default="daily")
    schedule.add_argument("--time", default="02:00", help="Local time HH:MM")
    schedule.add_argument("--timezone", default="America/Chicago")
    schedule.add_argument("--scope", choices=["all", "active"])
    schedule.add_argument("--day-of-week", type=int, default=6, help="0 = Monday, 6 = Sunday")
    schedule.add_argument("--disabled", action="store_true")
    schedule.set_defaults(handler=cmd_schedule)

    run_scheduler = sub.add_parser("run-scheduler", help="Run due scans on a fixed tick")
    run_scheduler.add_argument("--once", action="store_true", help="Run a single tick and wait for its scans")
    run_scheduler.set_defaults(handler=cmd_run_scheduler)

    retention = sub.add_parser("retention", help="Prune old execution records and health snapshots")
    retention.add_argument("--dry-run", action="store_true")
    retention.set_defaults(handler=cmd_retention)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)
    settings = resolve_settings(args.settings)

    if args.command == "analyze" and not args.file and not (args.tenant and args.workflow):
        LOGGER.error("Invalid arguments: analyze needs --file or both --tenant and --workflow")
        return EXIT_INVALID

    service = SentinelService(settings)
    try:
        return args.handler(service, args)
    except ScanInProgress as exc:
        LOGGER.error("%s", exc)
        return EXIT_BUSY
    except (InvalidGraph, InvalidSettings, ScheduleNotFound, ValueError) as exc:
        LOGGER.error("Invalid request: %s", exc)
        return EXIT_INVALID
    except SentinelError as exc:
        LOGGER.error("%s", exc)
        return EXIT_SCAN_FAILED
    finally:
        service.close()


if __name__ == "__main__":
    sys.exit(main())
