"""Command line entry point for stackaudit."""

from __future__ import annotations

import argparse
import logging
import sys
import time

from stackaudit.alerts import FAMILY_KEYS, FAMILY_NAMES, HEARTBEAT
from stackaudit.app import StackAudit
from stackaudit.bigquery_client import BigQueryError
from stackaudit.google_credentials import CredentialsFileInvalidError
from stackaudit.jobs import JobAlreadyRunningError, JobHandleRepository, JobSubmissionError
from stackaudit.logging_config import configure_logging
from stackaudit.settings import SETTINGS_PATH, load_settings
from stackaudit.sheet_ops import UpdateStatus
from stackaudit.sheets_client import SheetsClientError
from stackaudit.storage import StorageError
from stackaudit.sync_state import format_timestamp

logger = logging.getLogger(__name__)

OPERATIONAL_ERRORS = (
    BigQueryError,
    CredentialsFileInvalidError,
    JobSubmissionError,
    SheetsClientError,
    StorageError,
    ValueError,
)


def command_status(app: StackAudit, args: argparse.Namespace) -> int:
    states = app.states.get_all_sync_states(args.service)
    if not states:
        print("No sync state recorded.")
    for service, resources in sorted(states.items()):
        for resource_type, state in sorted(resources.items()):
            stamp = format_timestamp(state.last_sync_timestamp) if state.last_sync_timestamp else "never"
            print(
                f"{service}/{resource_type}: {state.last_sync_status.value} "
                f"| {state.last_sync_count} records | {state.sync_mode.value} | {stamp}"
            )

    handles = JobHandleRepository(app.store)
    for name in FAMILY_NAMES:
        handle = handles.load(FAMILY_KEYS[name])
        if handle is not None:
            print(f"Pending {name} job: {handle.job_id} ({handle.project_id})")
    for callback in app.scheduler.list_scheduled_callbacks():
        print(f"Trigger {callback.function_name} due {format_timestamp(callback.due_at)}")
    return 0


def command_clear_state(app: StackAudit, args: argparse.Namespace) -> int:
    if not app.states.clear_sync_state(args.service, args.resource):
        print("Error: sync state could not be cleared.", file=sys.stderr)
        return 1
    target = f"{args.service}/{args.resource}" if args.resource else args.service
    print(f"Cleared sync state for {target}. The next audit runs in FULL mode.")
    return 0


def command_submit(app: StackAudit, args: argparse.Namespace) -> int:
    try:
        handle = app.alerts.submit(args.family, replace=args.replace)
    except JobAlreadyRunningError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        print("Use --replace to cancel it, or reset-job to forget it.", file=sys.stderr)
        return 1
    print(f"Submitted {args.family} job {handle.job_id}. Run 'stackaudit run-triggers' to collect results.")
    return 0


def command_check(app: StackAudit, args: argparse.Namespace) -> int:
    outcome = app.alerts.check(args.family)
    print(f"{args.family}: {outcome.value}")
    return 1 if outcome.value == "FAILED" else 0


def command_reset_job(app: StackAudit, args: argparse.Namespace) -> int:
    had_job = app.alerts.reset(args.family)
    print(f"Reset {args.family}." if had_job else f"No pending {args.family} job; triggers cleared.")
    return 0


def command_run_triggers(app: StackAudit, args: argparse.Namespace) -> int:
    if not args.watch:
        fired = app.run_triggers()
        print(f"Ran {fired} due trigger(s).")
        return 0

    runner = app.trigger_runner(interval_seconds=args.interval)
    runner.start()
    print("Watching triggers. Press Ctrl+C to stop.")
    try:
        while runner.running:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        runner.stop()
    return 0


def command_audit_bigquery(app: StackAudit, args: argparse.Namespace) -> int:
    report = app.audit_bigquery(full=args.full)
    for result in report.results:
        line = f"{result.resource_type}: {result.status.value} ({result.mode.value}, {result.records} records)"
        if result.error:
            line += f" - {result.error}"
        print(line)
    print(f"Overall: {report.status.value}")
    return 0 if report.status.value == "SUCCESS" else 1


def command_estimate_cost(app: StackAudit, args: argparse.Namespace) -> int:
    estimate = app.alerts.estimate_cost(args.family)
    print(f"{args.family}: {estimate.describe()}")
    return 0


def command_update_metadata(app: StackAudit, args: argparse.Namespace) -> int:
    result = app.update_metadata()
    if result.status is UpdateStatus.ERROR:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1
    print(f"Wrote {result.records_written} rows to {result.sheet_name}.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Audit a marketing stack into Google Sheets")
    parser.add_argument("--settings", default=SETTINGS_PATH, help="Path to settings.json")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")
    parser.add_argument("--sheet-log", action="store_true", help="Also append log records to the LOGS sheet")
    subparsers = parser.add_subparsers(dest="command", required=True)

    status_parser = subparsers.add_parser("status", help="Show sync states, pending jobs and triggers")
    status_parser.add_argument("service", nargs="?", help="Only show this service")
    status_parser.set_defaults(func=command_status)

    clear_parser = subparsers.add_parser("clear-state", help="Forget sync state to force a FULL audit")
    clear_parser.add_argument("service")
    clear_parser.add_argument("resource", nargs="?")
    clear_parser.set_defaults(func=command_clear_state)

    submit_parser = subparsers.add_parser("submit", help="Submit a BigQuery analysis job")
    submit_parser.add_argument("family", choices=FAMILY_NAMES)
    submit_parser.add_argument("--replace", action="store_true", help="Cancel and replace a pending job")
    submit_parser.set_defaults(func=command_submit)

    check_parser = subparsers.add_parser("check", help="Poll a pending job once")
    check_parser.add_argument("family", choices=FAMILY_NAMES)
    check_parser.set_defaults(func=command_check)

    reset_parser = subparsers.add_parser("reset-job", help="Clear a stuck job and its triggers")
    reset_parser.add_argument("family", choices=FAMILY_NAMES)
    reset_parser.set_defaults(func=command_reset_job)

    triggers_parser = subparsers.add_parser("run-triggers", help="Run due job status checks")
    triggers_parser.add_argument("--watch", action="store_true", help="Keep running until interrupted")
    triggers_parser.add_argument("--interval", type=float, default=5.0, help="Seconds between polls with --watch")
    triggers_parser.set_defaults(func=command_run_triggers)

    audit_parser = subparsers.add_parser("audit-bigquery", help="Audit BigQuery datasets and GA4 tables")
    audit_parser.add_argument("--full", action="store_true", help="Ignore watermarks and rewrite the sheets")
    audit_parser.set_defaults(func=command_audit_bigquery)

    cost_parser = subparsers.add_parser("estimate-cost", help="Dry-run a job and estimate its cost")
    cost_parser.add_argument("family", nargs="?", default=HEARTBEAT, choices=FAMILY_NAMES)
    cost_parser.set_defaults(func=command_estimate_cost)

    metadata_parser = subparsers.add_parser("update-metadata", help="Rewrite the _AUDIT_METADATA sheet")
    metadata_parser.set_defaults(func=command_update_metadata)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = load_settings(args.settings)
    level = logging.DEBUG if args.verbose else getattr(logging, settings.log_level, logging.INFO)
    configure_logging(level)

    app = StackAudit(settings)
    sheet_log = None
    try:
        if args.sheet_log:
            sheet_log = app.attach_sheet_logging()
        return args.func(app, args)
    except OPERATIONAL_ERRORS as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        if sheet_log is not None:
            logging.getLogger().removeHandler(sheet_log)
            sheet_log.close()


if __name__ == "__main__":
    sys.exit(main())
