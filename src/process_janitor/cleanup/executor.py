"""Scan the registry and reclaim orphaned sessions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from ..classifier import (
    Classification,
    ClassificationIndeterminate,
    Verdict,
    classify,
    require_decisive,
)
from ..config import JanitorSettings
from ..locking import Busy, LockError, LockManager
from ..process.probe import ProcessProbe, TerminationFailed, TerminationResult
from ..storage.models import TERMINAL_TIMESTAMP_FIELDS, SessionRecord, SessionStatus, as_utc, utcnow
from ..storage.registry import IntegrityViolation, NotFound, SessionRegistry
from .oplog import OperationLog

logger = logging.getLogger(__name__)

SWEEP_LOCK = "cleanup-sweep"
UNKNOWN_STATUS = "unknown"


class SweepMode(str, Enum):
    SCAN = "scan"
    REPORT = "report"
    RUN = "run"
    AUTO = "auto"

    @property
    def mutating(self) -> bool:
        return self in (SweepMode.RUN, SweepMode.AUTO)


class OutcomeKind(str, Enum):
    CLEANED = "cleaned"
    SKIPPED = "skipped"
    FAILED = "failed"
    WOULD_CLEAN = "would_clean"


@dataclass(slots=True)
class ScanEntry:
    """One registry entry as seen by a scan."""

    session_id: str
    status: str
    record: SessionRecord | None = None
    classification: Classification | None = None
    error: str | None = None

    @property
    def verdict(self) -> str:
        if self.classification is not None:
            return self.classification.verdict.value
        return self.status

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "session_id": self.session_id,
            "status": self.status,
            "verdict": self.verdict,
        }
        if self.classification is not None:
            payload["reason"] = self.classification.reason
            payload["detail"] = self.classification.detail
        if self.record is not None:
            payload["pid"] = self.record.pid
            document = self.record.to_document()
            payload["start_time"] = document["start_time"]
            payload["last_heartbeat"] = document["last_heartbeat"]
            payload["hostname"] = self.record.hostname
            payload["working_dir"] = self.record.working_dir
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class ScanResult:
    scanned_at: datetime
    hostname: str | None
    current_session_id: str | None
    entries: list[ScanEntry] = field(default_factory=list)

    def _by_verdict(self, verdict: Verdict) -> list[ScanEntry]:
        return [
            entry
            for entry in self.entries
            if entry.classification is not None and entry.classification.verdict is verdict
        ]

    @property
    def orphaned(self) -> list[ScanEntry]:
        return self._by_verdict(Verdict.ORPHANED)

    @property
    def active(self) -> list[ScanEntry]:
        return self._by_verdict(Verdict.ACTIVE)

    @property
    def indeterminate(self) -> list[ScanEntry]:
        return self._by_verdict(Verdict.INDETERMINATE)

    @property
    def terminal(self) -> list[ScanEntry]:
        return [
            entry
            for entry in self.entries
            if entry.classification is None and entry.status != UNKNOWN_STATUS
        ]

    @property
    def unknown(self) -> list[ScanEntry]:
        return [entry for entry in self.entries if entry.status == UNKNOWN_STATUS]

    def current(self) -> ScanEntry | None:
        for entry in self.entries:
            if entry.session_id == self.current_session_id:
                return entry
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanned_at": self.scanned_at.isoformat(),
            "hostname": self.hostname,
            "current_session_id": self.current_session_id,
            "counts": {
                "total": len(self.entries),
                "active": len(self.active),
                "orphaned": len(self.orphaned),
                "indeterminate": len(self.indeterminate),
                "terminal": len(self.terminal),
                "unknown": len(self.unknown),
            },
            "sessions": [entry.to_dict() for entry in self.entries],
        }


@dataclass(slots=True)
class CleanupOutcome:
    session_id: str
    kind: OutcomeKind
    reason: str
    terminated: list[int] = field(default_factory=list)
    reclaimed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "outcome": self.kind.value,
            "reason": self.reason,
            "terminated": list(self.terminated),
            "reclaimed": self.reclaimed,
        }


@dataclass(slots=True)
class SweepResult:
    mode: SweepMode
    dry_run: bool
    scan: ScanResult | None = None
    outcomes: list[CleanupOutcome] = field(default_factory=list)
    blocked: bool = False
    blocked_reason: str | None = None
    cancelled: bool = False

    def count(self, kind: OutcomeKind) -> int:
        return sum(1 for outcome in self.outcomes if outcome.kind is kind)

    @property
    def failed(self) -> list[CleanupOutcome]:
        return [outcome for outcome in self.outcomes if outcome.kind is OutcomeKind.FAILED]

    @property
    def exit_code(self) -> int:
        if self.blocked:
            return 2
        if self.failed:
            return 1
        return 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "dry_run": self.dry_run,
            "blocked": self.blocked,
            "blocked_reason": self.blocked_reason,
            "cancelled": self.cancelled,
            "summary": {kind.value: self.count(kind) for kind in OutcomeKind},
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
            "exit_code": self.exit_code,
        }


class CleanupExecutor:
    """Drive scan, confirm, terminate and reclaim over the session registry.

    Mutating sweeps hold the global ``cleanup-sweep`` lock, and each record is
    re-read and re-classified under its own lock before anything is touched.
    """

    def __init__(
        self,
        settings: JanitorSettings,
        *,
        registry: SessionRegistry | None = None,
        probe: ProcessProbe | None = None,
        oplog: OperationLog | None = None,
        clock: Callable[[], datetime] | None = None,
        self_session_id: str | None = None,
    ) -> None:
        self._settings = settings
        self._clock = clock or utcnow
        self._registry = registry or SessionRegistry(settings, clock=self._clock)
        self._probe = probe or ProcessProbe()
        self._oplog = oplog or OperationLog(settings.cleanup_log, clock=self._clock)
        self._self_session_id = self_session_id or settings.current_session_id

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def locks(self) -> LockManager:
        return self._registry.locks

    @property
    def oplog(self) -> OperationLog:
        return self._oplog

    def resolve_dry_run(self, mode: SweepMode, requested: bool | None = None) -> bool:
        """The environment safety valve wins over everything, then the caller, then config."""

        if self._settings.mutation_disabled:
            return True
        if not mode.mutating:
            return True
        if requested is not None:
            return requested
        if mode is SweepMode.RUN:
            return self._settings.dry_run_default
        return False

    def classify_record(self, record: SessionRecord, now: datetime | None = None) -> Classification:
        observed = self._probe.observe(record)
        return classify(
            record,
            observed,
            now or self._clock(),
            self._settings,
            self_session_id=self._self_session_id,
        )

    def scan(self) -> ScanResult:
        """Classify every record without changing anything."""

        now = self._clock()
        result = ScanResult(
            scanned_at=now,
            hostname=self._probe.hostname,
            current_session_id=self._self_session_id,
        )
        for session_id in self._registry.ids():
            try:
                record = self._registry.get(session_id)
            except NotFound:
                continue
            except (IntegrityViolation, OSError) as exc:
                result.entries.append(
                    ScanEntry(session_id=session_id, status=UNKNOWN_STATUS, error=str(exc))
                )
                continue

            entry = ScanEntry(session_id=session_id, status=record.status.value, record=record)
            if record.status is SessionStatus.ACTIVE:
                entry.classification = self.classify_record(record, now)
            result.entries.append(entry)
        return result

    def sweep(
        self,
        mode: SweepMode,
        *,
        dry_run: bool | None = None,
        confirm: Callable[[ScanResult], bool] | None = None,
    ) -> SweepResult:
        """Run one sweep in ``mode``.

        ``run`` mode mutates only if ``confirm`` approves the scan. A sweep that
        cannot take the global lock is reported as blocked.
        """

        effective_dry_run = self.resolve_dry_run(mode, dry_run)
        if not mode.mutating:
            return SweepResult(mode=mode, dry_run=True, scan=self.scan())

        if effective_dry_run:
            return self._sweep_locked(mode, True, confirm)

        try:
            token = self.locks.acquire(SWEEP_LOCK, timeout=self._settings.lock_timeout_seconds)
        except Busy as exc:
            logger.info("Another cleanup sweep is running", extra={"holder_pid": exc.holder_pid})
            self._oplog.record(
                "sweep", outcome="blocked", reason=str(exc), mode=mode.value
            )
            return SweepResult(mode=mode, dry_run=False, blocked=True, blocked_reason=str(exc))
        try:
            return self._sweep_locked(mode, False, confirm)
        finally:
            self.locks.release(token)

    def _sweep_locked(
        self,
        mode: SweepMode,
        dry_run: bool,
        confirm: Callable[[ScanResult], bool] | None,
    ) -> SweepResult:
        scan = self.scan()
        result = SweepResult(mode=mode, dry_run=dry_run, scan=scan)
        for entry in scan.entries:
            self._oplog.record(
                "classify",
                session_id=entry.session_id,
                outcome=entry.verdict,
                reason=entry.classification.reason if entry.classification else (entry.error or ""),
                mode=mode.value,
            )

        candidates = scan.orphaned
        if not candidates:
            logger.info("No orphaned sessions found", extra={"mode": mode.value})
            return result

        if dry_run:
            for entry in candidates:
                self._finish(
                    result,
                    CleanupOutcome(
                        session_id=entry.session_id,
                        kind=OutcomeKind.WOULD_CLEAN,
                        reason=entry.classification.reason if entry.classification else "",
                    ),
                )
            return result

        if mode is SweepMode.RUN and (confirm is None or not confirm(scan)):
            logger.info("Cleanup cancelled by operator", extra={"candidates": len(candidates)})
            self._oplog.record("sweep", outcome="cancelled", mode=mode.value)
            result.cancelled = True
            return result

        for entry in candidates:
            self._finish(result, self.clean_session(entry.session_id))
        logger.info(
            "Cleanup sweep finished",
            extra={
                "mode": mode.value,
                "cleaned": result.count(OutcomeKind.CLEANED),
                "skipped": result.count(OutcomeKind.SKIPPED),
                "failed": result.count(OutcomeKind.FAILED),
            },
        )
        return result

    def _finish(self, result: SweepResult, outcome: CleanupOutcome) -> None:
        result.outcomes.append(outcome)
        self._oplog.record(
            "cleanup",
            session_id=outcome.session_id,
            outcome=outcome.kind.value,
            reason=outcome.reason,
            terminated=outcome.terminated or None,
            reclaimed=outcome.reclaimed or None,
            mode=result.mode.value,
        )

    def clean_session(self, session_id: str) -> CleanupOutcome:
        """Re-validate and clean one record under its lock. Never raises for record-local failures."""

        resource = self._registry.lock_resource(session_id)
        try:
            token = self.locks.acquire(resource, timeout=self._settings.lock_timeout_seconds)
        except Busy as exc:
            logger.info("Session is locked elsewhere; skipping", extra={"session_id": session_id})
            return CleanupOutcome(session_id, OutcomeKind.SKIPPED, f"record busy: {exc}")
        except OSError as exc:
            logger.error("Failed to lock session", extra={"session_id": session_id, "error": str(exc)})
            return CleanupOutcome(session_id, OutcomeKind.FAILED, f"lock unavailable: {exc}")
        try:
            return self._clean_locked(session_id)
        finally:
            self.locks.release(token)

    def _clean_locked(self, session_id: str) -> CleanupOutcome:
        try:
            record = self._registry.get(session_id)
        except NotFound:
            return CleanupOutcome(session_id, OutcomeKind.SKIPPED, "record no longer exists")
        except IntegrityViolation as exc:
            logger.error("Corrupt session record", extra={"session_id": session_id, "reason": exc.reason})
            return CleanupOutcome(session_id, OutcomeKind.FAILED, f"integrity violation: {exc.reason}")
        except OSError as exc:
            logger.error("Unreadable session record", extra={"session_id": session_id, "error": str(exc)})
            return CleanupOutcome(session_id, OutcomeKind.FAILED, f"unreadable record: {exc}")

        if record.status is not SessionStatus.ACTIVE:
            return CleanupOutcome(
                session_id, OutcomeKind.SKIPPED, f"already {record.status.value}"
            )

        classification = self.classify_record(record)
        try:
            require_decisive(classification)
        except ClassificationIndeterminate as exc:
            return CleanupOutcome(
                session_id, OutcomeKind.SKIPPED, f"indeterminate: {exc.classification.reason}"
            )
        if not classification.orphaned:
            return CleanupOutcome(
                session_id, OutcomeKind.SKIPPED, f"no longer orphaned: {classification.reason}"
            )

        terminated: list[int] = []
        for pid in self._probe.find_session_processes(record):
            try:
                result = self._probe.terminate(
                    pid,
                    grace=self._settings.termination_grace_seconds,
                    kill_wait=self._settings.kill_wait_seconds,
                )
            except TerminationFailed as exc:
                logger.error(
                    "Failed to terminate session process",
                    extra={"session_id": session_id, "pid": pid, "reason": exc.reason},
                )
                return CleanupOutcome(
                    session_id, OutcomeKind.FAILED, str(exc), terminated=terminated
                )
            if result is not TerminationResult.ALREADY_GONE:
                terminated.append(pid)

        try:
            removed = self._registry.reclaim_resources(session_id)
            self._registry.update(
                session_id,
                status=SessionStatus.ORPHANED,
                metadata={**record.metadata, "cleanup_reason": classification.reason},
            )
        except (IntegrityViolation, NotFound, LockError, OSError) as exc:
            logger.error(
                "Failed to reclaim session", extra={"session_id": session_id, "error": str(exc)}
            )
            return CleanupOutcome(session_id, OutcomeKind.FAILED, str(exc), terminated=terminated)

        logger.info(
            "Cleaned orphaned session",
            extra={"session_id": session_id, "terminated": terminated, "reclaimed": len(removed)},
        )
        return CleanupOutcome(
            session_id,
            OutcomeKind.CLEANED,
            classification.reason,
            terminated=terminated,
            reclaimed=len(removed),
        )

    def prune(self, *, dry_run: bool | None = None) -> list[str]:
        """Delete terminal records older than the retention period. Returns the affected ids."""

        dry = self._settings.mutation_disabled or bool(dry_run)
        cutoff = as_utc(self._clock()) - self._settings.terminal_retention
        expired = [record for record in self._registry.list() if _finished_before(record, cutoff)]
        if dry or not expired:
            return [record.id for record in expired]

        pruned: list[str] = []
        with self.locks.hold(SWEEP_LOCK, timeout=self._settings.lock_timeout_seconds):
            for record in expired:
                try:
                    self._registry.remove(record.id)
                except NotFound:
                    continue
                pruned.append(record.id)
                self._oplog.record("prune", session_id=record.id, outcome="removed", reason=record.status.value)
        return pruned


def _finished_before(record: SessionRecord, cutoff: datetime) -> bool:
    if not record.status.terminal:
        return False
    finished = getattr(record, TERMINAL_TIMESTAMP_FIELDS[record.status]) or record.last_heartbeat
    return finished < cutoff


__all__ = [
    "CleanupExecutor",
    "CleanupOutcome",
    "OutcomeKind",
    "SWEEP_LOCK",
    "ScanEntry",
    "ScanResult",
    "SweepMode",
    "SweepResult",
]
