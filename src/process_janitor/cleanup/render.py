"""Human-readable rendering of scans and sweeps."""

from __future__ import annotations

from datetime import datetime

from ..storage.models import format_timestamp
from .executor import OutcomeKind, ScanEntry, ScanResult, SweepResult

BANNER_WIDTH = 62
SECTION_WIDTH = 59


def time_ago(moment: datetime, now: datetime) -> str:
    seconds = int((now - moment).total_seconds())
    if seconds < 0:
        return "in the future"
    if seconds < 60:
        return f"{seconds} seconds ago"
    if seconds < 3600:
        return f"{seconds // 60} minutes ago"
    if seconds < 86400:
        return f"{seconds // 3600} hours ago"
    return f"{seconds // 86400} days ago"


def banner(title: str) -> list[str]:
    return [
        "╔" + "═" * BANNER_WIDTH + "╗",
        "║" + title.center(BANNER_WIDTH) + "║",
        "╚" + "═" * BANNER_WIDTH + "╝",
    ]


def _section_open(title: str) -> str:
    head = f"┌─ {title} "
    return head + "─" * max(SECTION_WIDTH - len(head), 1) + "┐"


def _section_close() -> str:
    return "└" + "─" * (SECTION_WIDTH - 1) + "┘"


def rule() -> str:
    return "═" * SECTION_WIDTH


def _entry_lines(index: int, entry: ScanEntry, now: datetime, *, detailed: bool) -> list[str]:
    lines = [f"│ [{index}] Session: {entry.session_id}"]
    record = entry.record
    if record is None:
        lines.append(f"│     Status: UNKNOWN ({entry.error or 'unreadable record'})")
        lines.append("│")
        return lines

    lines.append(f"│     PID: {record.pid}")
    lines.append(
        f"│     Started: {format_timestamp(record.start_time)} ({time_ago(record.start_time, now)})"
    )
    if detailed:
        lines.append(
            f"│     Last Heartbeat: {format_timestamp(record.last_heartbeat)}"
            f" ({time_ago(record.last_heartbeat, now)})"
        )
        lines.append(f"│     Host: {record.hostname}")
    lines.append(f"│     Working Dir: {record.working_dir}")
    if entry.classification is not None:
        lines.append(f"│     Verdict: {entry.classification.verdict.value.upper()}")
        lines.append(f"│     Reason: {entry.classification.reason}")
        if detailed and entry.classification.detail:
            lines.append(f"│     Detail: {entry.classification.detail}")
    else:
        lines.append(f"│     Status: {record.status.value.upper()}")
    lines.append("│")
    return lines


def _section(title: str, entries: list[ScanEntry], now: datetime, *, detailed: bool) -> list[str]:
    if not entries:
        return []
    lines = [_section_open(title)]
    for index, entry in enumerate(entries, start=1):
        lines.extend(_entry_lines(index, entry, now, detailed=detailed))
    lines.append(_section_close())
    lines.append("")
    return lines


def render_scan(scan: ScanResult) -> str:
    """Compact listing of orphaned and undecidable sessions."""

    now = scan.scanned_at
    lines = [""]
    lines.extend(banner("PROCESS JANITOR SCAN"))
    lines.append("")
    lines.append(f"Active Sessions:        {len(scan.active)}")
    lines.append(f"Orphaned Sessions:      {len(scan.orphaned)}")
    lines.append(f"Indeterminate Sessions: {len(scan.indeterminate)}")
    lines.append(f"Unknown Records:        {len(scan.unknown)}")
    lines.append(f"Total Tracked:          {len(scan.entries)}")
    lines.append("")
    lines.extend(_section("ORPHANED SESSIONS", scan.orphaned, now, detailed=False))
    lines.extend(_section("INDETERMINATE SESSIONS", scan.indeterminate, now, detailed=False))
    lines.extend(_section("UNKNOWN RECORDS", scan.unknown, now, detailed=False))
    if scan.orphaned:
        lines.append("Run 'process-janitor run' to clean up orphaned sessions")
    else:
        lines.append("No orphaned sessions found")
    return "\n".join(lines) + "\n"


def render_report(scan: ScanResult) -> str:
    """Detailed per-record report, current session first."""

    now = scan.scanned_at
    current = scan.current()
    others = [entry for entry in scan.entries if entry is not current]
    lines = [""]
    lines.extend(banner("PROCESS CLEANUP REPORT"))
    lines.append("")
    lines.append(f"Active Sessions:   {len(scan.active)}")
    lines.append(f"Orphaned Sessions: {len(scan.orphaned)}")
    lines.append(f"Finished Sessions: {len(scan.terminal)}")
    lines.append(f"Total Tracked:     {len(scan.entries)}")
    lines.append("")

    if scan.current_session_id:
        lines.append(_section_open("CURRENT SESSION"))
        lines.append(f"│ Session ID: {scan.current_session_id}")
        if current is None or current.record is None:
            lines.append("│ Status: Not yet registered")
        else:
            record = current.record
            lines.append(f"│ PID: {record.pid}")
            lines.append(
                f"│ Started: {format_timestamp(record.start_time)} ({time_ago(record.start_time, now)})"
            )
            lines.append(f"│ Last Heartbeat: {time_ago(record.last_heartbeat, now)}")
            lines.append(f"│ Working Dir: {record.working_dir}")
            lines.append(f"│ Status: {record.status.value.upper()}")
        lines.append(_section_close())
        lines.append("")

    def pick(group: list[ScanEntry]) -> list[ScanEntry]:
        return [entry for entry in others if entry in group]

    lines.extend(_section("ORPHANED SESSIONS", pick(scan.orphaned), now, detailed=True))
    lines.extend(_section("INDETERMINATE SESSIONS", pick(scan.indeterminate), now, detailed=True))
    lines.extend(_section("OTHER ACTIVE SESSIONS", pick(scan.active), now, detailed=True))
    lines.extend(_section("FINISHED SESSIONS", pick(scan.terminal), now, detailed=False))
    lines.extend(_section("UNKNOWN RECORDS", pick(scan.unknown), now, detailed=False))
    return "\n".join(lines) + "\n"


def render_candidates(scan: ScanResult, *, dry_run: bool) -> str:
    """Listing shown before a sweep acts, mirroring what confirmation covers."""

    lines = [""]
    lines.extend(banner("PROCESS CLEANUP - ORPHANED SESSIONS"))
    lines.append("")
    lines.append(f"Found {len(scan.orphaned)} orphaned session(s):")
    lines.append("")
    for entry in scan.orphaned:
        record = entry.record
        lines.append(f"  • Session: {entry.session_id}")
        if record is not None:
            lines.append(f"    PID: {record.pid}")
            lines.append(f"    Started: {format_timestamp(record.start_time)}")
            lines.append(f"    Working Dir: {record.working_dir}")
        lines.append("")
    if dry_run:
        lines.append(rule())
        lines.append("DRY-RUN MODE: No changes will be made")
        lines.append("Use --execute to perform cleanup")
        lines.append(rule())
        lines.append("")
    return "\n".join(lines) + "\n"


def render_summary(result: SweepResult) -> str:
    """Final summary of a mutating sweep: counts plus one line per non-clean outcome."""

    lines = ["", rule()]
    if result.blocked:
        lines.append("CLEANUP SKIPPED")
        lines.append(f"  Another sweep holds the cleanup lock: {result.blocked_reason}")
    elif result.cancelled:
        lines.append("CLEANUP CANCELLED")
        lines.append("  No changes were made")
    elif result.dry_run:
        lines.append("DRY-RUN COMPLETE")
        lines.append(f"  Would cleanup: {result.count(OutcomeKind.WOULD_CLEAN)} session(s)")
    else:
        lines.append("CLEANUP COMPLETE")
        lines.append(f"  Cleaned up: {result.count(OutcomeKind.CLEANED)} session(s)")
        lines.append(f"  Skipped: {result.count(OutcomeKind.SKIPPED)} session(s)")
        lines.append(f"  Failed: {result.count(OutcomeKind.FAILED)} session(s)")
        for outcome in result.outcomes:
            if outcome.kind in (OutcomeKind.SKIPPED, OutcomeKind.FAILED):
                lines.append(f"    - {outcome.session_id}: {outcome.kind.value} ({outcome.reason})")
    lines.append(rule())
    return "\n".join(lines) + "\n"


__all__ = [
    "banner",
    "render_candidates",
    "render_report",
    "render_scan",
    "render_summary",
    "time_ago",
]
