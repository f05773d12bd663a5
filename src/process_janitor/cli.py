"""process-janitor command line interface."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from . import __version__
from .cleanup.executor import CleanupExecutor, ScanResult, SweepMode, SweepResult
from .cleanup.render import (
    render_candidates,
    render_report,
    render_scan,
    render_summary,
    time_ago,
)
from .config import ConfigError, JanitorSettings, load_settings
from .heartbeat import HeartbeatEmitter
from .lifecycle import SessionLifecycle
from .locking import Busy, LockManager
from .storage.models import SessionStatus, utcnow
from .storage.registry import DuplicateId, SessionRegistry

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for janitor commands."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def load_cli_settings(args: argparse.Namespace) -> JanitorSettings:
    overrides: dict[str, Any] = {}
    if getattr(args, "log_level", None):
        overrides["log_level"] = args.log_level
    try:
        settings = load_settings(config_file=getattr(args, "config", None), **overrides)
    except (ConfigError, ValidationError) as exc:
        print(f"Configuration error: {exc}")
        raise SystemExit(1)
    configure_logging(settings.log_level)
    return settings


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _session_id(args: argparse.Namespace, settings: JanitorSettings) -> str:
    session_id = getattr(args, "session_id", None) or settings.current_session_id
    if not session_id:
        print("No session id given and JANITOR_SESSION_ID is not set")
        raise SystemExit(1)
    return session_id


def cmd_register(args: argparse.Namespace) -> None:
    settings = load_cli_settings(args)
    lifecycle = SessionLifecycle(settings)
    try:
        record = lifecycle.register(
            args.session_id,
            pid=args.pid or os.getppid(),
            working_dir=args.working_dir,
            export=False,
        )
    except DuplicateId as exc:
        print(str(exc))
        raise SystemExit(1)
    except ValidationError as exc:
        print(f"Invalid session: {exc}")
        raise SystemExit(1)
    except Busy as exc:
        print(f"Registry busy: {exc}")
        raise SystemExit(2)

    if args.json:
        _print_json(record.to_document())
    else:
        print(record.id)
    if lifecycle.last_cleanup is not None and lifecycle.last_cleanup.exit_code:
        logger.warning(
            "Start-up cleanup reported problems",
            extra={"exit_code": lifecycle.last_cleanup.exit_code},
        )


def cmd_unregister(args: argparse.Namespace) -> None:
    settings = load_cli_settings(args)
    session_id = _session_id(args, settings)
    lifecycle = SessionLifecycle(settings)
    try:
        record = lifecycle.unregister(session_id, status=SessionStatus(args.status))
    except Busy as exc:
        print(f"Registry busy: {exc}")
        raise SystemExit(2)
    if record is None:
        print(f"Session {session_id} not found or already finished")
        return
    print(f"Session {session_id} marked {record.status.value}")


async def _run_emitter(emitter: HeartbeatEmitter) -> str | None:
    await emitter.start()
    try:
        return await emitter.wait()
    finally:
        await emitter.stop()


def cmd_heartbeat(args: argparse.Namespace) -> None:
    settings = load_cli_settings(args)
    session_id = _session_id(args, settings)
    emitter = HeartbeatEmitter(
        SessionRegistry(settings),
        session_id,
        interval_s=args.interval,
        owner_pid=args.owner_pid or os.getppid(),
    )
    if args.once:
        if not asyncio.run(emitter.beat()):
            print(f"Heartbeat refused for {session_id}: {emitter.exit_reason}")
            raise SystemExit(1)
        if emitter.failures:
            print(f"Heartbeat write failed for {session_id}")
            raise SystemExit(2)
        return
    try:
        reason = asyncio.run(_run_emitter(emitter))
    except KeyboardInterrupt:
        reason = "interrupted"
    print(f"Heartbeat for {session_id} ended: {reason}")


def _scan(settings: JanitorSettings) -> ScanResult:
    return CleanupExecutor(settings).scan()


def cmd_scan(args: argparse.Namespace) -> None:
    settings = load_cli_settings(args)
    scan = _scan(settings)
    if args.json:
        _print_json(scan.to_dict())
    else:
        print(render_scan(scan), end="")


def cmd_report(args: argparse.Namespace) -> None:
    settings = load_cli_settings(args)
    scan = _scan(settings)
    if args.json:
        _print_json(scan.to_dict())
    else:
        print(render_report(scan), end="")


def prompt_confirmation(scan: ScanResult) -> bool:
    print(render_candidates(scan, dry_run=False), end="")
    try:
        response = input("Proceed with cleanup? [y/N] ")
    except EOFError:
        return False
    return response.strip().lower() in {"y", "yes"}


def _emit_sweep(args: argparse.Namespace, result: SweepResult, *, candidates_shown: bool) -> None:
    if args.json:
        _print_json(result.to_dict())
        return
    quiet = getattr(args, "quiet", False)
    if quiet and result.exit_code == 0:
        return
    scan = result.scan
    if scan is not None and not scan.orphaned:
        print("No orphaned sessions found")
        return
    if scan is not None and not candidates_shown:
        print(render_candidates(scan, dry_run=result.dry_run), end="")
    print(render_summary(result), end="")


def _sweep(args: argparse.Namespace, mode: SweepMode) -> None:
    settings = load_cli_settings(args)
    executor = CleanupExecutor(settings)
    dry_run = getattr(args, "dry_run", None)
    shown = {"candidates": False}

    def confirm(scan: ScanResult) -> bool:
        shown["candidates"] = True
        if args.json:
            return bool(args.yes)
        return bool(args.yes) or prompt_confirmation(scan)

    result = executor.sweep(mode, dry_run=dry_run, confirm=confirm)
    _emit_sweep(args, result, candidates_shown=shown["candidates"] and not args.json and not args.yes)
    if result.exit_code:
        raise SystemExit(result.exit_code)


def cmd_run(args: argparse.Namespace) -> None:
    _sweep(args, SweepMode.RUN)


def cmd_auto(args: argparse.Namespace) -> None:
    args.yes = True
    _sweep(args, SweepMode.AUTO)


def cmd_prune(args: argparse.Namespace) -> None:
    settings = load_cli_settings(args)
    executor = CleanupExecutor(settings)
    try:
        pruned = executor.prune(dry_run=args.dry_run)
    except Busy as exc:
        print(f"Prune skipped: {exc}")
        raise SystemExit(2)
    dry = args.dry_run or settings.mutation_disabled
    if args.json:
        _print_json({"dry_run": dry, "sessions": pruned})
        return
    verb = "Would remove" if dry else "Removed"
    print(f"{verb} {len(pruned)} finished session record(s)")
    for session_id in pruned:
        print(f"  • {session_id}")


def cmd_status(args: argparse.Namespace) -> None:
    settings = load_cli_settings(args)
    scan = _scan(settings)
    locks = LockManager(settings.locks_dir).list_locks()
    status_counts: dict[str, int] = {}
    for entry in scan.entries:
        status_counts[entry.status] = status_counts.get(entry.status, 0) + 1

    payload = {
        "version": __version__,
        "home": str(settings.home),
        "sessions_dir": str(settings.sessions_dir),
        "current_session_id": settings.current_session_id,
        "cleanup_mode": settings.cleanup_mode,
        "dry_run_default": settings.dry_run_default,
        "auto_cleanup_on_start": settings.auto_cleanup_on_start,
        "mutation_disabled": settings.mutation_disabled,
        "sessions_total": len(scan.entries),
        "status_counts": status_counts,
        "orphaned": len(scan.orphaned),
        "indeterminate": len(scan.indeterminate),
        "locks": [
            {
                "resource": info.resource,
                "held": info.held,
                "holder_pid": info.holder_pid,
                "stale": info.stale,
            }
            for info in locks
        ],
    }
    if args.json:
        _print_json(payload)
        return

    print(f"process-janitor {__version__}")
    print(f"Home: {settings.home}")
    print(f"Cleanup mode: {settings.cleanup_mode} (dry-run default: {settings.dry_run_default})")
    if settings.mutation_disabled:
        print("Mutation disabled by JANITOR_DISABLE_MUTATION")
    current = scan.current()
    if current is not None and current.record is not None:
        heartbeat = time_ago(current.record.last_heartbeat, utcnow())
        print(f"Current session: {current.session_id} (last heartbeat {heartbeat})")
    print(f"Tracked sessions: {len(scan.entries)}")
    for status, count in sorted(status_counts.items()):
        print(f"  {status}: {count}")
    print(f"Orphaned: {len(scan.orphaned)}  Indeterminate: {len(scan.indeterminate)}")
    held = [info for info in locks if info.held]
    for info in held:
        marker = " (stale)" if info.stale else ""
        print(f"Lock {info.resource} held by pid {info.holder_pid}{marker}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="process-janitor",
        description="Track worker sessions and clean up the ones left behind",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, help="YAML configuration file")
    parser.add_argument(
        "--log-level",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Override JANITOR_LOG_LEVEL",
    )
    sub = parser.add_subparsers(dest="cmd")

    p_register = sub.add_parser("register", help="Register a new session")
    p_register.add_argument("--session-id", help="Use this id instead of a generated one")
    p_register.add_argument("--pid", type=int, help="Owning process (default: the caller)")
    p_register.add_argument("--working-dir", help="Directory the session works in")
    p_register.add_argument("--json", action="store_true", help="Output the stored record")
    p_register.set_defaults(func=cmd_register)

    p_unregister = sub.add_parser("unregister", help="Mark a session finished")
    p_unregister.add_argument("session_id", nargs="?", help="Defaults to JANITOR_SESSION_ID")
    p_unregister.add_argument(
        "--status",
        choices=[SessionStatus.COMPLETED.value, SessionStatus.STOPPED.value],
        default=SessionStatus.COMPLETED.value,
    )
    p_unregister.set_defaults(func=cmd_unregister)

    p_heartbeat = sub.add_parser("heartbeat", help="Refresh a session heartbeat while its owner lives")
    p_heartbeat.add_argument("--session-id", help="Defaults to JANITOR_SESSION_ID")
    p_heartbeat.add_argument("--owner-pid", type=int, help="Process to watch (default: the caller)")
    p_heartbeat.add_argument("--interval", type=float, help="Seconds between heartbeats")
    p_heartbeat.add_argument("--once", action="store_true", help="Write a single heartbeat and exit")
    p_heartbeat.set_defaults(func=cmd_heartbeat)

    p_scan = sub.add_parser("scan", help="Classify sessions without changing anything")
    p_scan.add_argument("--json", action="store_true", help="Output JSON")
    p_scan.set_defaults(func=cmd_scan)

    p_report = sub.add_parser("report", help="Detailed per-session report")
    p_report.add_argument("--json", action="store_true", help="Output JSON")
    p_report.set_defaults(func=cmd_report)

    p_run = sub.add_parser("run", help="Clean up orphaned sessions after confirmation")
    run_mode = p_run.add_mutually_exclusive_group()
    run_mode.add_argument(
        "--execute", dest="dry_run", action="store_false", default=None, help="Perform the cleanup"
    )
    run_mode.add_argument(
        "--dry-run", dest="dry_run", action="store_true", default=None, help="Only show what would be cleaned"
    )
    p_run.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    p_run.add_argument("--json", action="store_true", help="Output JSON")
    p_run.set_defaults(func=cmd_run)

    p_auto = sub.add_parser("auto", help="Clean up orphaned sessions without prompting")
    p_auto.add_argument(
        "--dry-run", action="store_true", default=None, help="Only show what would be cleaned"
    )
    p_auto.add_argument("--quiet", action="store_true", help="Print nothing unless something failed")
    p_auto.add_argument("--json", action="store_true", help="Output JSON")
    p_auto.set_defaults(func=cmd_auto)

    p_status = sub.add_parser("status", help="Show configuration, session counts and locks")
    p_status.add_argument("--json", action="store_true", help="Output JSON")
    p_status.set_defaults(func=cmd_status)

    p_prune = sub.add_parser("prune", help="Remove finished sessions past the retention period")
    p_prune.add_argument("--dry-run", action="store_true", help="Only list what would be removed")
    p_prune.add_argument("--json", action="store_true", help="Output JSON")
    p_prune.set_defaults(func=cmd_prune)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
