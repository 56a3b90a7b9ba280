#!/usr/bin/env python3
"""Statecraft command line interface.

Usage:
    statecraft snapshot create|list|show [...]
    statecraft diff [from] [to] [--from REF --to REF]
    statecraft deploy|rollback <ref> [--dry-run] [--yes] [--strict]
                                     [--include-secrets] [--schedule WHEN | --approve ID]
    statecraft deployments list|get|status|approve|retry|reschedule|cancel|delete [...]
    statecraft pull [dir] | push [source] | validate [source] [--strict]
    statecraft watch [source] [--interval N] [--once]
    statecraft audit [--limit N]

Environment variables:
    STATECRAFT_CONFIG     Settings file (default: ./statecraft.yaml)
    STATECRAFT_HOME       Base directory (default: ./.stateset)
    STATECRAFT_BACKEND    local | http
    STATECRAFT_LOG_LEVEL  Console log level (default: INFO)
"""
import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import asdict
from typing import Any, Optional

from .backends import create_backend
from .bundle.canonical import compute_checksum
from .config.settings import Settings
from .engine.diff import summarize_diff
from .engine.orchestrator import DeploymentOrchestrator
from .engine.schema import (
    Deployment,
    DeploymentMode,
    DeploymentStatus,
    PromotionOptions,
    PromotionOutcome,
)
from .engine.watch import StateSetWatcher, WatchEvent
from .errors import StateSetError
from .utils.audit_log import AUDIT_FILE, get_recent_operations, setup_audit_logging
from .utils.formatting import format_bytes, format_table
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


# === OUTPUT ===

def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _deployment_rows(deployments: list[Deployment]) -> list[list[str]]:
    return [
        [
            d.id,
            d.mode.value,
            d.status.value,
            d.source,
            d.scheduled_for.isoformat() if d.scheduled_for else "-",
            d.updated_at.isoformat(),
        ]
        for d in deployments
    ]


def _print_outcome(outcome: PromotionOutcome) -> None:
    print(f"{outcome.label} preview: {outcome.preview.format_counts()}")
    if outcome.preview.skipped:
        print(f"Preview skipped: {outcome.preview.skipped}")
    for failure in outcome.preview.failures[:3]:
        print(f"Preview failure [{failure.entity}]: {failure.reason}")

    if outcome.result is not None:
        print(f"{outcome.label} complete: {outcome.result.format_counts()}")
        if outcome.result.skipped:
            print(f"Skipped: {outcome.result.skipped}")
        if outcome.result.failures:
            print("Failures:")
            for failure in outcome.result.failures[:5]:
                print(f"  - {failure.entity}[{failure.index}] {failure.reason}")
    elif outcome.dry_run:
        print("Dry-run complete.")
    elif outcome.needs_confirmation:
        print("Use --yes to apply this change.")

    if outcome.deployment_id:
        print(f"Deployment: {outcome.deployment_id}")


def _emit_outcome(args: argparse.Namespace, outcome: PromotionOutcome) -> None:
    if args.json:
        _print_json(outcome.to_dict())
    else:
        _print_outcome(outcome)


def parse_diff_refs(
    positionals: list[str],
    from_ref: Optional[str] = None,
    to_ref: Optional[str] = None,
) -> tuple[str, str]:
    """Work out the two sides of a diff; defaults compare latest against live."""
    from_ref = (from_ref or "").strip() or None
    to_ref = (to_ref or "").strip() or None
    if from_ref and to_ref:
        return from_ref, to_ref
    if not from_ref and not to_ref:
        if len(positionals) >= 2:
            return positionals[0], positionals[1]
        if len(positionals) == 1:
            return "latest", positionals[0]
        return "latest", "current"
    return from_ref or "latest", to_ref or "current"


# === COMMANDS ===

async def cmd_snapshot(args, orch: DeploymentOrchestrator, settings: Settings) -> int:
    if args.action == "list":
        snapshots = orch.list_snapshots(args.target)
        if args.json:
            _print_json({"count": len(snapshots), "snapshots": [s.to_dict() for s in snapshots]})
            return EXIT_OK
        if not snapshots:
            print("No snapshots available." if not args.target
                  else f'No snapshots matching "{args.target}".')
            return EXIT_OK
        print(format_table(
            ["snapshot", "size", "modified"],
            [[s.id, format_bytes(s.size), s.modified_iso] for s in snapshots],
        ))
        return EXIT_OK

    if args.action == "create":
        info, bundle = await orch.create_snapshot(
            label=args.target, out=args.out, include_secrets=args.include_secrets
        )
        if args.json:
            _print_json({
                "action": "create",
                "path": str(info.path),
                "snapshot": info.file,
                "counts": bundle.counts(),
            })
        else:
            print(f"Snapshot created: {info.path}")
        return EXIT_OK

    # show
    path, bundle = orch.show_snapshot(args.target)
    if args.json:
        _print_json(bundle.to_dict())
        return EXIT_OK
    print(f"Snapshot: {path.name}")
    print(f"Org: {bundle.org_id}  Version: {bundle.version}  Exported: {bundle.exported_at}")
    print(f"Checksum: {compute_checksum(bundle.to_dict())}")
    print(format_table(["collection", "count"], list(bundle.counts().items())))
    return EXIT_OK


async def cmd_diff(args, orch: DeploymentOrchestrator, settings: Settings) -> int:
    from_ref, to_ref = parse_diff_refs(args.refs, args.from_ref, args.to_ref)
    summary = await orch.diff(from_ref, to_ref, include_secrets=args.include_secrets)
    if args.json:
        _print_json(summary.to_dict())
    else:
        print(summarize_diff(summary))
    return EXIT_OK


def _flag(value: Optional[bool]) -> Optional[bool]:
    # store_true flags default to None so "not given" stays distinguishable
    return True if value else None


async def cmd_promote(args, orch: DeploymentOrchestrator, settings: Settings) -> int:
    mode = DeploymentMode(args.command)
    label = "Deploy" if mode == DeploymentMode.DEPLOY else "Rollback"

    if args.schedule and args.approve:
        print(f"{label} cannot use both --schedule and --approve at once.", file=sys.stderr)
        return EXIT_ERROR

    if args.approve:
        outcome = await orch.approve(
            args.approve,
            mode=mode,
            source=args.ref,
            dry_run=_flag(args.dry_run),
            strict=_flag(args.strict),
            include_secrets=_flag(args.include_secrets),
            yes=_flag(args.yes),
        )
        _emit_outcome(args, outcome)
        return EXIT_OK

    if not args.ref:
        print(f"Usage: {args.command} <snapshot-ref> [--dry-run] [--yes]", file=sys.stderr)
        return EXIT_ERROR

    options = PromotionOptions(
        dry_run=bool(args.dry_run),
        yes=bool(args.yes),
        strict=bool(args.strict),
        include_secrets=bool(args.include_secrets),
    )

    if args.schedule:
        deployment = orch.schedule(mode, args.ref, args.schedule, options)
        if args.json:
            _print_json(deployment.to_dict())
        else:
            print(
                f"{label} scheduled with id {deployment.id} for "
                f"{deployment.scheduled_for.isoformat()} from {deployment.source}"
            )
        return EXIT_OK

    outcome = await orch.promote(mode, args.ref, options)
    _emit_outcome(args, outcome)
    return EXIT_OK


async def cmd_deployments(args, orch: DeploymentOrchestrator, settings: Settings) -> int:
    action = args.action

    if action == "list":
        page = orch.list_deployments(
            reference=args.target,
            mode=DeploymentMode(args.mode) if args.mode else None,
            status=DeploymentStatus(args.status) if args.status else None,
            limit=args.limit,
            offset=args.offset,
        )
        if args.json:
            _print_json({**page, "deployments": [d.to_dict() for d in page["deployments"]]})
            return EXIT_OK
        if not page["total"]:
            print("No deployments found.")
        elif not page["deployments"]:
            print(f"No deployments found for --offset {page['offset']}. "
                  f"Total matches: {page['total']}.")
        else:
            print(format_table(
                ["id", "mode", "status", "source", "scheduledFor", "updatedAt"],
                _deployment_rows(page["deployments"]),
            ))
        return EXIT_OK

    if action == "status":
        summary = orch.status_summary()
        _print_json(summary)
        return EXIT_OK

    if not args.target:
        print(f"Usage: deployments {action} <deployment-id>", file=sys.stderr)
        return EXIT_ERROR

    if action == "get":
        deployment = orch.get_deployment(args.target)
        _print_json(deployment.to_dict())
        return EXIT_OK

    if action in ("approve", "retry"):
        source = args.source or args.extra
        if action == "approve":
            outcome = await orch.approve(
                args.target,
                source=source,
                dry_run=_flag(args.dry_run),
                strict=_flag(args.strict),
                include_secrets=_flag(args.include_secrets),
                yes=_flag(args.yes),
            )
        else:
            outcome = await orch.retry(
                args.target,
                source=source,
                dry_run=_flag(args.dry_run),
                strict=_flag(args.strict),
                include_secrets=_flag(args.include_secrets),
            )
        _emit_outcome(args, outcome)
        return EXIT_OK

    if action == "reschedule":
        when = args.schedule or args.extra
        if not when:
            print("Usage: deployments reschedule <deployment-id> <datetime>", file=sys.stderr)
            return EXIT_ERROR
        deployment = orch.reschedule(args.target, when)
        if args.json:
            _print_json(deployment.to_dict())
        else:
            print(f"Deployment {deployment.id} rescheduled for "
                  f"{deployment.scheduled_for.isoformat()}.")
        return EXIT_OK

    if action == "cancel":
        deployment = orch.cancel(args.target)
        if args.json:
            _print_json(deployment.to_dict())
        else:
            print(f"Deployment {deployment.id} cancelled.")
        return EXIT_OK

    # delete
    removed = orch.delete(args.target)
    if args.json:
        _print_json({"removed": removed.to_dict()})
    else:
        print(f"Deployment {removed.id} deleted.")
    return EXIT_OK


async def cmd_pull(args, orch: DeploymentOrchestrator, settings: Settings) -> int:
    report = await orch.pull(args.dir, include_secrets=args.include_secrets)
    if args.json:
        _print_json(report)
        return EXIT_OK
    counts = report["counts"]
    print(f"Pulled config from organization to {report['path']}")
    print("Wrote: " + ", ".join(f"{v} {k}" for k, v in counts.items()))
    print(f"Files: {', '.join(report['files'])}")
    return EXIT_OK


async def cmd_push(args, orch: DeploymentOrchestrator, settings: Settings) -> int:
    options = PromotionOptions(
        dry_run=args.dry_run,
        yes=args.yes,
        strict=args.strict,
        include_secrets=args.include_secrets,
    )
    outcome = await orch.push(args.source, options)
    _emit_outcome(args, outcome)
    return EXIT_OK


async def cmd_validate(args, orch: DeploymentOrchestrator, settings: Settings) -> int:
    try:
        report = orch.validate(args.source, strict=args.strict)
    except StateSetError as e:
        for issue in getattr(e, "issues", []):
            print(f"Warning: {issue}", file=sys.stderr)
        raise

    if args.json:
        _print_json(report)
        return EXIT_OK
    for warning in report["warnings"]:
        print(f"Warning: {warning}")
    if not report["warnings"]:
        print(f"Validation passed for {report['source']}.")
    print(format_table(["resource", "count"], list(report["counts"].items())))
    return EXIT_OK


async def cmd_watch(args, orch: DeploymentOrchestrator, settings: Settings) -> int:
    source = args.source or str(settings.stateset_dir)
    interval = args.interval if args.interval is not None else settings.watch_interval
    options = PromotionOptions(
        dry_run=args.dry_run,
        yes=True,
        strict=args.strict,
        include_secrets=args.include_secrets,
    )

    def on_event(event: WatchEvent) -> None:
        if args.json:
            _print_json(event.to_dict())
        elif event.event == "watch.change":
            print(f"Detected change in {event.source} at {event.timestamp}")

    async def push() -> None:
        outcome = await orch.push(source, options)
        if not args.json:
            _print_outcome(outcome)

    watcher = StateSetWatcher(
        source, push, interval=interval, once=args.once, on_event=on_event
    )

    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, watcher.stop)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            pass  # Windows / non-main thread: fall back to KeyboardInterrupt
    try:
        stats = await watcher.run()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)

    if not args.json:
        print(f"Watch finished: {stats.changes} change(s), {stats.pushes} push(es), "
              f"{stats.failures} failure(s)")
    return EXIT_OK


async def cmd_audit(args, orch: DeploymentOrchestrator, settings: Settings) -> int:
    records = get_recent_operations(
        log_file=settings.audit_dir / AUDIT_FILE,
        target=args.target,
        operation=args.operation,
        limit=args.limit,
    )
    if args.json:
        _print_json({"count": len(records), "records": [asdict(r) for r in records]})
        return EXIT_OK
    if not records:
        print("No audit records.")
        return EXIT_OK
    print(format_table(
        ["timestamp", "operation", "target", "dry_run", "success", "error"],
        [[r.timestamp, r.operation, r.target, r.dry_run, r.success, r.error or ""]
         for r in records],
    ))
    return EXIT_OK


COMMANDS = {
    "snapshot": cmd_snapshot,
    "diff": cmd_diff,
    "deploy": cmd_promote,
    "rollback": cmd_promote,
    "deployments": cmd_deployments,
    "pull": cmd_pull,
    "push": cmd_push,
    "validate": cmd_validate,
    "watch": cmd_watch,
    "audit": cmd_audit,
}


# === PARSER ===

def _add_promotion_flags(parser: argparse.ArgumentParser, tristate: bool = False) -> None:
    default = None if tristate else False
    parser.add_argument("--dry-run", action="store_true", default=default,
                        help="Preview only; never apply")
    parser.add_argument("--yes", action="store_true", default=default,
                        help="Apply after a successful preview")
    parser.add_argument("--strict", action="store_true", default=default,
                        help="Fail when any entity fails to import")
    parser.add_argument("--include-secrets", action="store_true", default=default,
                        help="Do not redact secrets in exports")


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError("expected a positive integer")
    return number


def _non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError("expected a non-negative integer")
    return number


def _positive_float(value: str) -> float:
    number = float(value)
    if number <= 0:
        raise argparse.ArgumentTypeError("expected a positive number")
    return number


def build_parser() -> argparse.ArgumentParser:
    # Shared flags are accepted before or after the subcommand
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--json", action="store_true", default=argparse.SUPPRESS,
                        help="Print machine-readable JSON")
    common.add_argument("-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
                        help="Enable debug logging")

    parser = argparse.ArgumentParser(
        prog="statecraft",
        description="Snapshot, diff and promote organization state",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    statecraft snapshot create before-release
    statecraft diff latest current
    statecraft deploy snapshot-before-release --dry-run
    statecraft deploy latest --schedule +2h
    statecraft deploy --approve deploy-1a2b3c4d
    statecraft watch .stateset --interval 10
""",
    )
    parser.add_argument("--json", action="store_true", default=False,
                        help="Print machine-readable JSON")
    parser.add_argument("-v", "--verbose", action="store_true", default=False,
                        help="Enable debug logging")
    parser.add_argument("--config", help="Settings file (default: ./statecraft.yaml)")

    sub = parser.add_subparsers(dest="command", required=True)

    snap = sub.add_parser("snapshot", parents=[common], help="Create, list or show snapshots")
    snap.add_argument("action", nargs="?", default="list", choices=["create", "list", "show"])
    snap.add_argument("target", nargs="?", help="Label (create), filter (list) or reference (show)")
    snap.add_argument("--out", help="Output file or directory for create")
    snap.add_argument("--include-secrets", action="store_true", default=False)

    diff = sub.add_parser("diff", parents=[common], help="Compare two snapshots")
    diff.add_argument("refs", nargs="*", help="[from] [to]; aliases: latest, current")
    diff.add_argument("--from", dest="from_ref")
    diff.add_argument("--to", dest="to_ref")
    diff.add_argument("--include-secrets", action="store_true", default=False)

    for mode in ("deploy", "rollback"):
        promote = sub.add_parser(mode, parents=[common], help=f"{mode.title()} a snapshot")
        promote.add_argument("ref", nargs="?", help="Snapshot reference or alias")
        _add_promotion_flags(promote, tristate=True)
        promote.add_argument("--schedule", metavar="WHEN",
                             help="now, +2h, -30m or an ISO-8601 time")
        promote.add_argument("--approve", metavar="ID", help="Approve and run a deployment")

    deps = sub.add_parser("deployments", parents=[common], help="Manage deployments")
    deps.add_argument(
        "action", nargs="?", default="list",
        choices=["list", "get", "status", "approve", "retry", "reschedule", "cancel", "delete"],
    )
    deps.add_argument("target", nargs="?", help="Deployment id or reference")
    deps.add_argument("extra", nargs="?", help="Source (approve/retry) or time (reschedule)")
    deps.add_argument("--mode", choices=[m.value for m in DeploymentMode])
    deps.add_argument("--status", choices=[s.value for s in DeploymentStatus])
    deps.add_argument("--limit", type=_positive_int, default=50)
    deps.add_argument("--offset", type=_non_negative_int, default=0)
    deps.add_argument("--from", dest="source", help="Source override for approve/retry")
    deps.add_argument("--schedule", help="New time for reschedule")
    _add_promotion_flags(deps, tristate=True)

    pull = sub.add_parser("pull", parents=[common], help="Export live state to a directory")
    pull.add_argument("dir", nargs="?")
    pull.add_argument("--include-secrets", action="store_true", default=False)

    push = sub.add_parser("push", parents=[common], help="Import a state-set directory or file")
    push.add_argument("source", nargs="?")
    _add_promotion_flags(push)

    validate = sub.add_parser("validate", parents=[common], help="Check a state-set source")
    validate.add_argument("source", nargs="?")
    validate.add_argument("--strict", action="store_true", default=False)

    watch = sub.add_parser("watch", parents=[common], help="Push a directory whenever it changes")
    watch.add_argument("source", nargs="?")
    watch.add_argument("--interval", type=_positive_float, help="Seconds between polls")
    watch.add_argument("--once", action="store_true", default=False)
    watch.add_argument("--dry-run", action="store_true", default=False)
    watch.add_argument("--strict", action="store_true", default=False)
    watch.add_argument("--include-secrets", action="store_true", default=False)

    audit = sub.add_parser("audit", parents=[common], help="Show recent audit records")
    audit.add_argument("--limit", type=_positive_int, default=20)
    audit.add_argument("--operation")
    audit.add_argument("--target")

    return parser


async def run(args: argparse.Namespace, settings: Settings) -> int:
    """Build the backend and orchestrator, then dispatch one command."""
    backend = create_backend(settings)
    async with backend:
        orch = DeploymentOrchestrator.from_settings(settings, backend)
        return await COMMANDS[args.command](args, orch, settings)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the statecraft CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(logging.DEBUG if args.verbose else None)

    try:
        settings = Settings.load(args.config)
        setup_audit_logging(settings.audit_dir)
        return asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED
    except StateSetError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
