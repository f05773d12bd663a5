"""Host-local mutual exclusion across independent janitor processes.

Each protected resource maps to ``<locks_dir>/<resource>.lock``. Ownership is an
exclusive ``fcntl.flock`` on that file; the file body records the holder pid and
acquisition time so a lock left behind by a dead holder (for example one whose
descriptor leaked into a surviving child) can be recognised and reclaimed.

Reclamation unlinks the lock file while holding a short-lived guard lock and
only if the path still refers to the inode that was found stale. Acquirers
re-check the inode and write their holder body under the same guard, so a
descriptor locked on an unlinked file never counts as ownership.
"""

from __future__ import annotations

import errno
import fcntl
import json
import logging
import os
import re
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Callable, Iterator

from .process.probe import pid_alive

logger = logging.getLogger(__name__)

_RESOURCE_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


class LockError(RuntimeError):
    """Base class for lock manager errors."""


class Busy(LockError):
    """Raised when a resource stays locked by a live holder past the acquisition timeout."""

    def __init__(self, resource: str, holder_pid: int | None = None) -> None:
        self.resource = resource
        self.holder_pid = holder_pid
        holder = f" (held by pid {holder_pid})" if holder_pid else ""
        super().__init__(f"Lock '{resource}' is busy{holder}")


class StaleLock(LockError):
    """Raised when a lock is held on behalf of a dead process and reclamation is disabled."""

    def __init__(self, resource: str, holder_pid: int) -> None:
        self.resource = resource
        self.holder_pid = holder_pid
        super().__init__(f"Lock '{resource}' is stale (holder pid {holder_pid} is gone)")


@dataclass(slots=True)
class LockToken:
    """Proof of ownership returned by :meth:`LockManager.acquire`."""

    resource: str
    path: Path
    pid: int
    acquired_at: datetime
    released: bool = False
    _handle: IO[str] | None = field(default=None, repr=False)
    _depth: int = field(default=1, repr=False)
    _owner_thread: int = field(default=0, repr=False)


@dataclass(slots=True)
class LockInfo:
    resource: str
    holder_pid: int | None
    acquired_at: str | None
    held: bool
    stale: bool


class LockManager:
    """Acquire and release named host-local locks."""

    def __init__(
        self,
        locks_dir: Path,
        *,
        timeout: float = 10.0,
        poll_interval: float = 0.1,
        is_alive: Callable[[int], bool] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._locks_dir = Path(locks_dir)
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._is_alive = is_alive or pid_alive
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._held: dict[tuple[str, int], LockToken] = {}
        self._mutex = threading.Lock()

    @property
    def locks_dir(self) -> Path:
        return self._locks_dir

    def path_for(self, resource: str) -> Path:
        if not _RESOURCE_PATTERN.match(resource):
            raise ValueError(f"Invalid lock resource name: {resource!r}")
        return self._locks_dir / f"{resource}.lock"

    def acquire(
        self,
        resource: str,
        *,
        timeout: float | None = None,
        reclaim_stale: bool = True,
    ) -> LockToken:
        """Acquire ``resource``, retrying until ``timeout`` seconds elapse.

        Re-entrant per thread: a thread that already holds ``resource`` gets the
        same token back and must release it once per acquisition.
        """

        key = (resource, threading.get_ident())
        with self._mutex:
            existing = self._held.get(key)
            if existing is not None:
                existing._depth += 1
                return existing

        path = self.path_for(resource)
        self._locks_dir.mkdir(parents=True, exist_ok=True)
        wait = self._timeout if timeout is None else timeout
        deadline = time.monotonic() + wait
        holder_pid: int | None = None

        while True:
            token, holder_pid, reclaimed = self._try_acquire(resource, path, reclaim_stale)
            if token is not None:
                with self._mutex:
                    self._held[key] = token
                return token
            if reclaimed:
                continue
            if time.monotonic() >= deadline:
                raise Busy(resource, holder_pid)
            time.sleep(self._poll_interval)

    def release(self, token: LockToken) -> None:
        """Release ``token``. Safe to call more than once."""

        with self._mutex:
            if token.released:
                return
            token._depth -= 1
            if token._depth > 0:
                return
            token.released = True
            self._held.pop((token.resource, token._owner_thread), None)

        handle = token._handle
        token._handle = None
        if handle is None:
            return
        try:
            try:
                if os.stat(token.path).st_ino == os.fstat(handle.fileno()).st_ino:
                    token.path.unlink()
            except FileNotFoundError:
                pass
            fcntl.flock(handle, fcntl.LOCK_UN)
        finally:
            handle.close()
        logger.debug("Released lock", extra={"resource": token.resource})

    @contextmanager
    def hold(self, resource: str, *, timeout: float | None = None) -> Iterator[LockToken]:
        """Hold ``resource`` for the duration of the block, releasing it on every exit path."""

        token = self.acquire(resource, timeout=timeout)
        try:
            yield token
        finally:
            self.release(token)

    def is_stale(self, resource: str) -> bool:
        return self.inspect(resource).stale

    def inspect(self, resource: str) -> LockInfo:
        """Describe the current state of ``resource`` without taking it."""

        path = self.path_for(resource)
        try:
            handle = open(path, "r", encoding="utf-8")
        except FileNotFoundError:
            return LockInfo(resource=resource, holder_pid=None, acquired_at=None, held=False, stale=False)

        with handle:
            holder = self._read_holder(handle)
            held = False
            try:
                fcntl.flock(handle, fcntl.LOCK_SH | fcntl.LOCK_NB)
            except OSError as exc:
                if exc.errno not in (errno.EAGAIN, errno.EWOULDBLOCK, errno.EACCES):
                    raise
                held = True
            else:
                fcntl.flock(handle, fcntl.LOCK_UN)

        pid = holder.get("pid") if holder else None
        stale = held and pid is not None and not self._is_alive(pid)
        return LockInfo(
            resource=resource,
            holder_pid=pid,
            acquired_at=holder.get("acquired_at") if holder else None,
            held=held,
            stale=stale,
        )

    def list_locks(self) -> list[LockInfo]:
        if not self._locks_dir.is_dir():
            return []
        infos: list[LockInfo] = []
        for path in sorted(self._locks_dir.glob("*.lock")):
            try:
                infos.append(self.inspect(path.stem))
            except ValueError:
                continue
        return infos

    def _try_acquire(
        self, resource: str, path: Path, reclaim_stale: bool
    ) -> tuple[LockToken | None, int | None, bool]:
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
        handle = os.fdopen(fd, "r+", encoding="utf-8")
        try:
            fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            if exc.errno not in (errno.EAGAIN, errno.EWOULDBLOCK, errno.EACCES):
                handle.close()
                raise
            holder = self._read_holder(handle)
            inode = os.fstat(handle.fileno()).st_ino
            handle.close()
            pid = holder.get("pid") if holder else None
            if pid is not None and not self._is_alive(pid):
                if not reclaim_stale:
                    raise StaleLock(resource, pid) from None
                return None, pid, self._reclaim(resource, path, inode, pid)
            return None, pid, False

        acquired_at = self._clock()
        # The inode check and the holder write share the reclaim guard, so a
        # reclaimer either sees this live holder or unlinks before the check.
        with self._reclaim_guard(path):
            try:
                current_inode = os.stat(path).st_ino
            except FileNotFoundError:
                current_inode = None
            if current_inode != os.fstat(handle.fileno()).st_ino:
                # Locked a file that was unlinked underneath us; start over.
                fcntl.flock(handle, fcntl.LOCK_UN)
                handle.close()
                return None, None, True

            previous = self._read_holder(handle)
            if previous and previous.get("pid") not in (None, os.getpid()):
                logger.debug(
                    "Lock file left behind by a previous holder",
                    extra={"resource": resource, "previous_pid": previous.get("pid")},
                )

            handle.seek(0)
            handle.truncate()
            handle.write(json.dumps({"pid": os.getpid(), "acquired_at": acquired_at.isoformat()}))
            handle.flush()
            os.fsync(handle.fileno())

        token = LockToken(
            resource=resource,
            path=path,
            pid=os.getpid(),
            acquired_at=acquired_at,
            _handle=handle,
            _owner_thread=threading.get_ident(),
        )
        logger.debug("Acquired lock", extra={"resource": resource})
        return token, None, False

    def _reclaim(self, resource: str, path: Path, inode: int, pid: int) -> bool:
        """Unlink a stale lock file. Returns True when the caller should retry at once."""

        with self._reclaim_guard(path):
            try:
                if os.stat(path).st_ino != inode:
                    return True
                with open(path, "r", encoding="utf-8") as current:
                    holder = self._read_holder(current)
            except FileNotFoundError:
                return True
            if not holder or holder.get("pid") != pid or self._is_alive(pid):
                return False
            path.unlink()
            logger.warning(
                "Reclaimed stale lock",
                extra={"resource": resource, "holder_pid": pid},
            )
            return True

    @staticmethod
    @contextmanager
    def _reclaim_guard(path: Path) -> Iterator[None]:
        guard_path = path.with_name(f"{path.name}.reclaim")
        with open(guard_path, "a+", encoding="utf-8") as guard:
            fcntl.flock(guard, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(guard, fcntl.LOCK_UN)

    @staticmethod
    def _read_holder(handle: IO[str]) -> dict | None:
        try:
            handle.seek(0)
            raw = handle.read()
        except OSError:
            return None
        if not raw.strip():
            return None
        try:
            holder = json.loads(raw)
        except ValueError:
            return None
        if not isinstance(holder, dict):
            return None
        pid = holder.get("pid")
        if not isinstance(pid, int) or pid <= 0:
            holder["pid"] = None
        return holder


__all__ = ["Busy", "LockError", "LockInfo", "LockManager", "LockToken", "StaleLock"]
