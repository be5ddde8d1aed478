"""
Command line interface for ILM.

Usage:
    ilm init
    ilm refresh --owner DWH --table SALES_FACT
    ilm evaluate
    ilm execute --max-actions 50 --simulate
    ilm boundaries --min-date 2013-01-01 --max-date 2025-12-31 --template FACT_TABLE_STANDARD_TIERED
    ilm job execute --scheduled
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import date

from loguru import logger

from ilm.utils.config import get_config


def _date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD") from None


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_init(args) -> int:
    from ilm.data.schema import create_tables
    from ilm.lifecycle.templates import TemplateStore

    create_tables(args.db)
    TemplateStore(args.db)
    print(f"Schema ready: {args.db or get_config().db_path}")
    return 0


def cmd_refresh(args) -> int:
    from ilm.lifecycle.tracker import PartitionTracker

    tracker = PartitionTracker(args.db)
    if args.owner and args.table:
        results = [tracker.refresh(args.owner, args.table)]
    else:
        results = tracker.refresh_all()
    for result in results:
        print(
            f"{result.owner}.{result.object_name}: {result.partitions_tracked} tracked, "
            f"{result.partitions_failed} failed"
        )
    return 0 if all(r.success for r in results) else 1


def cmd_evaluate(args) -> int:
    from ilm.lifecycle.evaluation import EvaluationEngine

    engine = EvaluationEngine(args.db)
    if args.policy_id is not None:
        result = engine.evaluate(args.policy_id)
        _print_json(result.to_dict())
        return 0 if result.success else 1
    summary = engine.evaluate_all()
    print(
        f"Evaluated {summary.policies_evaluated} policies: {summary.total_eligible} eligible, "
        f"{summary.policies_failed} failed"
    )
    for error in summary.errors:
        print(f"  ERROR {error}")
    return 0 if summary.success else 1


def cmd_execute(args) -> int:
    from ilm.lifecycle.execution import ExecutionEngine, ExecutionScope

    scope = None
    if args.owner or args.table or args.policy_id is not None:
        scope = ExecutionScope(table_owner=args.owner, table_name=args.table, policy_id=args.policy_id)
    report = ExecutionEngine(args.db).execute(
        max_actions=args.max_actions,
        simulate=args.simulate,
        scope=scope,
        scheduled=args.scheduled,
    )
    if report.stopped_reason:
        print(f"Run {report.run_id} stopped: {report.stopped_reason}")
    if args.simulate:
        print(f"Run {report.run_id} (simulated): {len(report.planned)} planned actions")
        for action in report.planned:
            _print_json(action.to_dict())
    else:
        print(f"Run {report.run_id}: {report.succeeded} succeeded, {report.failed} failed")
        for error in report.errors:
            print(f"  ERROR {error}")
    return 0 if report.success else 1


def cmd_consolidate(args) -> int:
    from ilm.lifecycle.merge import PartitionMerger

    result = PartitionMerger(args.db).consolidate(args.owner, args.table)
    print(
        f"{args.owner}.{args.table}: {result.merged} merged, {result.skipped} skipped, "
        f"{result.failed} failed"
    )
    return 0 if result.success else 1


def cmd_boundaries(args) -> int:
    from ilm.lifecycle.boundaries import Interval, build_boundaries
    from ilm.lifecycle.templates import TemplateStore

    tier_config = None
    if args.template:
        tier_config = TemplateStore(args.db).tier_config_from_template(args.template)
        if tier_config is None:
            print(f"Template {args.template} has no tier_config, using {args.interval} partitions")
    boundaries = build_boundaries(
        args.min_date,
        args.max_date,
        tier_config=tier_config,
        interval=Interval(args.interval),
        as_of=args.as_of,
        include_maxvalue=args.maxvalue,
    )
    for b in boundaries:
        upper = b.upper_bound.isoformat() if b.upper_bound else "MAXVALUE"
        print(f"{b.name:<14} < {upper:<10}  {b.interval.value:<9} {b.tier or '-':<6} {b.location or '-':<9} {b.codec or '-'}")
    print(f"{len(boundaries)} partitions")
    return 0


def cmd_apply_template(args) -> int:
    from ilm.lifecycle.templates import TemplateStore

    result = TemplateStore(args.db).apply_template(args.name, args.owner, args.table)
    _print_json(result.to_dict())
    return 0 if result.success else 1


def cmd_report(args) -> int:
    from ilm.lifecycle import reports

    sections = {
        "Lifecycle status": reports.lifecycle_status(args.db),
        f"Executions (last {args.days} days)": reports.execution_stats(args.days, db_path=args.db),
        "Space savings": reports.space_savings(args.db),
        "Policies": reports.policy_summary(args.db),
        "Upcoming actions": reports.upcoming_actions(args.db),
        "Merges": reports.merge_stats(args.db),
    }
    for title, df in sections.items():
        print(f"\n== {title} ==")
        print("(none)" if df.empty else df.to_string(index=False))
    return 0


def cmd_cleanup_logs(args) -> int:
    from ilm.lifecycle.audit import AuditLog
    from ilm.lifecycle.settings import load_config

    retention = args.retention_days or load_config(args.db).log_retention_days
    result = AuditLog(args.db).cleanup(retention, dry_run=args.dry_run)
    _print_json(result.to_dict())
    return 0


def cmd_stop(args) -> int:
    from ilm.lifecycle.settings import ConfigStore

    ConfigStore(args.db).set_emergency_stop(True)
    print("Emergency stop set: no actions will run until 'ilm resume'")
    return 0


def cmd_resume(args) -> int:
    from ilm.lifecycle.settings import ConfigStore

    ConfigStore(args.db).set_emergency_stop(False)
    print("Emergency stop cleared")
    return 0


def cmd_job(args) -> int:
    from ilm.lifecycle.jobs import run_job

    run = run_job(args.name, db_path=args.db, scheduled=args.scheduled)
    _print_json(run.to_dict())
    return 0 if run.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ilm",
        description="ILM - information lifecycle management for partitioned objects",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--db", default=None, help="DuckDB path (default: ILM_DB_PATH)")
    parser.add_argument("--quiet", "-q", action="store_true", help="Suppress output except errors")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("init", help="Create the schema and seed templates")
    p.set_defaults(func=cmd_init)

    p = sub.add_parser("refresh", help="Refresh partition access tracking")
    p.add_argument("--owner")
    p.add_argument("--table")
    p.set_defaults(func=cmd_refresh)

    p = sub.add_parser("evaluate", help="Evaluate policies into the queue")
    p.add_argument("--policy-id", type=int)
    p.set_defaults(func=cmd_evaluate)

    p = sub.add_parser("execute", help="Execute queued actions")
    p.add_argument("--max-actions", type=int)
    p.add_argument("--simulate", action="store_true", help="Plan only, change nothing")
    p.add_argument("--owner")
    p.add_argument("--table")
    p.add_argument("--policy-id", type=int)
    p.add_argument("--scheduled", action="store_true", help="Honour the execution window")
    p.set_defaults(func=cmd_execute)

    p = sub.add_parser("consolidate", help="Merge fine partitions in coarse tiers")
    p.add_argument("--owner", required=True)
    p.add_argument("--table", required=True)
    p.set_defaults(func=cmd_consolidate)

    p = sub.add_parser("boundaries", help="Print partition boundaries for a date range")
    p.add_argument("--min-date", type=_date, required=True)
    p.add_argument("--max-date", type=_date, required=True)
    p.add_argument("--template", help="Tiered template supplying the tier layout")
    p.add_argument(
        "--interval",
        default="MONTHLY",
        choices=["DAILY", "WEEKLY", "MONTHLY", "QUARTERLY", "YEARLY"],
    )
    p.add_argument("--as-of", type=_date, help="Reference date for tier ages (default: today)")
    p.add_argument("--maxvalue", action="store_true", help="Append a MAXVALUE partition")
    p.set_defaults(func=cmd_boundaries)

    p = sub.add_parser("apply-template", help="Create a template's policies for an object")
    p.add_argument("name")
    p.add_argument("--owner", required=True)
    p.add_argument("--table", required=True)
    p.set_defaults(func=cmd_apply_template)

    p = sub.add_parser("report", help="Print lifecycle rollups")
    p.add_argument("--days", type=int, default=30)
    p.set_defaults(func=cmd_report)

    p = sub.add_parser("cleanup-logs", help="Delete audit rows past retention")
    p.add_argument("--retention-days", type=int, help="Override LOG_RETENTION_DAYS")
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=cmd_cleanup_logs)

    p = sub.add_parser("stop", help="Set the emergency stop")
    p.set_defaults(func=cmd_stop)

    p = sub.add_parser("resume", help="Clear the emergency stop")
    p.set_defaults(func=cmd_resume)

    p = sub.add_parser("job", help="Run a named job and record its outcome")
    p.add_argument("name", choices=["refresh", "evaluate", "execute", "consolidate", "cleanup_logs"])
    p.add_argument("--scheduled", action="store_true")
    p.set_defaults(func=cmd_job)

    return parser


def main(argv: list[str] | None = None) -> int:
    """
    CLI entry point.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.quiet:
        logger.remove()
        logger.add(sys.stderr, level="ERROR")
    elif args.verbose:
        logger.remove()
        logger.add(sys.stderr, level="DEBUG")
    else:
        logger.remove()
        logger.add(sys.stderr, level=get_config().log_level)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        return args.func(args)
    except Exception as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
