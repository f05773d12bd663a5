"""Liveness probing and signal escalation built on psutil."""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING

import psutil

from .utils import SESSION_ENV_VAR

if TYPE_CHECKING:
    from ..storage.models import SessionRecord

logger = logging.getLogger(__name__)

# A process created later than this after the session started cannot be the
# session's owner: the pid was recycled.
PID_REUSE_TOLERANCE = timedelta(seconds=2)


class TerminationFailed(RuntimeError):
    """Raised when a process could not be signalled or refused to exit."""

    def __init__(self, pid: int, reason: str) -> None:
        self.pid = pid
        self.reason = reason
        super().__init__(f"Failed to terminate process {pid}: {reason}")


class TerminationResult(str, Enum):
    ALREADY_GONE = "already_gone"
    TERMINATED = "terminated"
    KILLED = "killed"


@dataclass(slots=True, frozen=True)
class ObservedState:
    """Snapshot of the OS facts the classifier needs about one session.

    ``None`` means the probe could not find out.
    """

    hostname: str | None
    owner_alive: bool | None
    parent_holds_session: bool | None
    pid_reused: bool = False
    owner_is_self: bool = False


def pid_alive(pid: int) -> bool:
    """Return True if a non-zombie process currently holds ``pid``."""

    if pid <= 0:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def _created_at(proc: psutil.Process) -> datetime:
    return datetime.fromtimestamp(proc.create_time(), tz=timezone.utc)


class ProcessProbe:
    """Inspect and signal processes on this host."""

    def __init__(self, *, hostname: str | None = None, self_pid: int | None = None) -> None:
        self._hostname = hostname
        self._self_pid = self_pid or os.getpid()

    @property
    def hostname(self) -> str | None:
        if self._hostname is None:
            try:
                self._hostname = socket.gethostname()
            except OSError:
                return None
        return self._hostname

    @property
    def self_pid(self) -> int:
        return self._self_pid

    def pid_alive(self, pid: int) -> bool:
        return pid_alive(pid)

    def parent_of(self, pid: int) -> int | None:
        try:
            return psutil.Process(pid).ppid()
        except psutil.Error:
            return None

    def created_at(self, pid: int) -> datetime | None:
        try:
            return _created_at(psutil.Process(pid))
        except psutil.Error:
            return None

    def observe(self, record: SessionRecord) -> ObservedState:
        owner_alive, reused = self._owner_state(record)
        return ObservedState(
            hostname=self.hostname,
            owner_alive=owner_alive,
            parent_holds_session=self._parent_state(record),
            pid_reused=reused,
            owner_is_self=record.pid == self._self_pid,
        )

    def _owner_state(self, record: SessionRecord) -> tuple[bool | None, bool]:
        try:
            proc = psutil.Process(record.pid)
            if proc.status() == psutil.STATUS_ZOMBIE:
                return False, False
            created = _created_at(proc)
        except psutil.NoSuchProcess:
            return False, False
        except psutil.Error as exc:
            logger.debug("Owner liveness inconclusive", extra={"pid": record.pid, "error": str(exc)})
            return None, False
        if created > record.start_time + PID_REUSE_TOLERANCE:
            return False, True
        return True, False

    def _parent_state(self, record: SessionRecord) -> bool | None:
        """Does the registered parent still hold the session?

        With a recorded ``parent_start_time`` the parent holds the session while
        a process with that pid and creation time is alive. Older records fall
        back to the parent carrying the session tag in its environment.
        """

        if not record.ppid or record.ppid <= 1:
            return False
        try:
            parent = psutil.Process(record.ppid)
            if parent.status() == psutil.STATUS_ZOMBIE:
                return False
            created = _created_at(parent)
        except psutil.NoSuchProcess:
            return False
        except psutil.Error as exc:
            logger.debug("Parent state inconclusive", extra={"ppid": record.ppid, "error": str(exc)})
            return None

        if record.parent_start_time is not None:
            return abs(created - record.parent_start_time) <= PID_REUSE_TOLERANCE
        if created > record.start_time + PID_REUSE_TOLERANCE:
            return False
        try:
            environ = parent.environ()
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            logger.debug("Parent environment unreadable", extra={"ppid": record.ppid})
            return False
        except psutil.Error as exc:
            logger.debug("Parent state inconclusive", extra={"ppid": record.ppid, "error": str(exc)})
            return None
        return environ.get(SESSION_ENV_VAR) == record.id

    def find_session_processes(self, record: SessionRecord) -> list[int]:
        """Return pids still working for ``record``: its owner and tagged descendants."""

        pids: list[int] = []
        owner_alive, _ = self._owner_state(record)
        if owner_alive and record.pid != self._self_pid:
            pids.append(record.pid)

        for proc in psutil.process_iter():
            if proc.pid in (self._self_pid, record.pid, record.ppid):
                continue
            try:
                if _created_at(proc) < record.start_time - PID_REUSE_TOLERANCE:
                    continue
                if proc.environ().get(SESSION_ENV_VAR) != record.id:
                    continue
            except psutil.Error:
                continue
            pids.append(proc.pid)
        return pids

    def terminate(self, pid: int, *, grace: float = 5.0, kill_wait: float = 1.0) -> TerminationResult:
        """Send SIGTERM, wait ``grace`` seconds, then SIGKILL if the process is still there."""

        if pid == self._self_pid:
            raise TerminationFailed(pid, "refusing to signal the running process")
        try:
            proc = psutil.Process(pid)
            proc.terminate()
        except psutil.NoSuchProcess:
            return TerminationResult.ALREADY_GONE
        except psutil.AccessDenied as exc:
            raise TerminationFailed(pid, "permission denied") from exc

        try:
            proc.wait(timeout=grace)
            logger.info("Process terminated gracefully", extra={"pid": pid})
            return TerminationResult.TERMINATED
        except psutil.TimeoutExpired:
            logger.warning("Process ignored SIGTERM; escalating to SIGKILL", extra={"pid": pid})

        try:
            proc.kill()
        except psutil.NoSuchProcess:
            return TerminationResult.TERMINATED
        except psutil.AccessDenied as exc:
            raise TerminationFailed(pid, "permission denied on SIGKILL") from exc

        try:
            proc.wait(timeout=kill_wait)
        except psutil.TimeoutExpired as exc:
            raise TerminationFailed(pid, "process survived SIGKILL") from exc
        logger.info("Process terminated forcefully", extra={"pid": pid})
        return TerminationResult.KILLED


@dataclass
class FakeProcessProbe(ProcessProbe):
    """Test double that answers from in-memory tables instead of the OS."""

    host: str = "test-host"
    alive: dict[int, bool | None] = field(default_factory=dict)
    parents: dict[int, bool | None] = field(default_factory=dict)
    session_processes: dict[str, list[int]] = field(default_factory=dict)
    refuse: set[int] = field(default_factory=set)
    fake_self_pid: int = 1_000_000
    terminated: list[int] = field(default_factory=list)
    lineage: dict[int, int] = field(default_factory=dict)
    start_times: dict[int, datetime] = field(default_factory=dict)

    def __post_init__(self) -> None:
        ProcessProbe.__init__(self, hostname=self.host, self_pid=self.fake_self_pid)

    def pid_alive(self, pid: int) -> bool:  # type: ignore[override]
        return bool(self.alive.get(pid, False))

    def parent_of(self, pid: int) -> int | None:  # type: ignore[override]
        return self.lineage.get(pid)

    def created_at(self, pid: int) -> datetime | None:  # type: ignore[override]
        return self.start_times.get(pid)

    def observe(self, record: SessionRecord) -> ObservedState:  # type: ignore[override]
        return ObservedState(
            hostname=self.host,
            owner_alive=self.alive.get(record.pid, False),
            parent_holds_session=self.parents.get(record.ppid or 0, False),
            owner_is_self=record.pid == self.fake_self_pid,
        )

    def find_session_processes(self, record: SessionRecord) -> list[int]:  # type: ignore[override]
        pids = list(self.session_processes.get(record.id, []))
        if self.alive.get(record.pid):
            pids.insert(0, record.pid)
        return [pid for pid in pids if self.alive.get(pid, True)]

    def terminate(self, pid: int, *, grace: float = 5.0, kill_wait: float = 1.0) -> TerminationResult:  # type: ignore[override]
        if pid in self.refuse:
            raise TerminationFailed(pid, "permission denied")
        if not self.alive.get(pid, True):
            return TerminationResult.ALREADY_GONE
        self.terminated.append(pid)
        self.alive[pid] = False
        return TerminationResult.TERMINATED


__all__ = [
    "FakeProcessProbe",
    "ObservedState",
    "PID_REUSE_TOLERANCE",
    "ProcessProbe",
    "TerminationFailed",
    "TerminationResult",
    "pid_alive",
]
