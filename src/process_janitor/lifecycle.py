"""Register, heartbeat and unregister the session of the running process."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Callable

from .cleanup.executor import CleanupExecutor, SweepMode, SweepResult
from .config import JanitorSettings
from .heartbeat import HeartbeatEmitter
from .locking import LockError
from .process.probe import ProcessProbe
from .process.utils import export_session_id
from .storage.models import SessionRecord, SessionStatus, utcnow
from .storage.registry import IntegrityViolation, NotFound, RegistryError, SessionRegistry

logger = logging.getLogger(__name__)


class SessionLifecycle:
    """Glue between a worker process and the registry it reports to."""

    def __init__(
        self,
        settings: JanitorSettings,
        *,
        registry: SessionRegistry | None = None,
        probe: ProcessProbe | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._clock = clock or utcnow
        self._registry = registry or SessionRegistry(settings, clock=self._clock)
        self._probe = probe or ProcessProbe()
        self.last_cleanup: SweepResult | None = None

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def register(
        self,
        session_id: str | None = None,
        *,
        pid: int | None = None,
        working_dir: str | None = None,
        metadata: dict[str, Any] | None = None,
        export: bool = True,
    ) -> SessionRecord:
        """Create the record for a new session and optionally run the start-up sweep."""

        record = SessionRecord.for_current_process(
            session_id,
            pid=pid,
            now=self._clock(),
            working_dir=working_dir,
            metadata=metadata,
        )
        updates: dict[str, Any] = {}
        hostname = self._probe.hostname
        if hostname:
            updates["hostname"] = hostname
        ppid = record.ppid
        if ppid is None:
            ppid = updates["ppid"] = self._probe.parent_of(record.pid)
        if ppid and ppid > 1:
            updates["parent_start_time"] = self._probe.created_at(ppid)
        if updates:
            record = record.model_copy(update=updates)
        self._registry.register(record)
        if export:
            export_session_id(record.id)

        if self._settings.auto_cleanup_on_start:
            self.last_cleanup = self._startup_sweep(record.id)
        return record

    def _startup_sweep(self, session_id: str) -> SweepResult | None:
        mode = SweepMode.AUTO if self._settings.cleanup_mode == "auto" else SweepMode.SCAN
        executor = CleanupExecutor(
            self._settings,
            registry=self._registry,
            probe=self._probe,
            clock=self._clock,
            self_session_id=session_id,
        )
        try:
            result = executor.sweep(mode)
        except (LockError, RegistryError, OSError) as exc:
            logger.warning(
                "Start-up cleanup failed",
                extra={"session_id": session_id, "error": str(exc)},
            )
            return None
        if result.scan is not None and result.scan.orphaned:
            logger.info(
                "Start-up cleanup found orphaned sessions",
                extra={"orphaned": len(result.scan.orphaned), "mode": mode.value},
            )
        return result

    def unregister(
        self, session_id: str, *, status: SessionStatus = SessionStatus.COMPLETED
    ) -> SessionRecord | None:
        """Mark the session finished. Returns None when the record is gone or already final."""

        if not status.terminal:
            raise ValueError("unregister requires a terminal status")
        try:
            record = self._registry.update(session_id, status=status)
        except NotFound:
            logger.info("Session already removed", extra={"session_id": session_id})
            return None
        except IntegrityViolation as exc:
            logger.warning(
                "Session could not be finalized",
                extra={"session_id": session_id, "reason": exc.reason},
            )
            return None
        logger.info(
            "Unregistered session",
            extra={"session_id": session_id, "status": status.value},
        )
        return record

    @asynccontextmanager
    async def session(
        self,
        session_id: str | None = None,
        *,
        interval_s: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AsyncIterator[SessionRecord]:
        """Track the enclosed block as a session with a running heartbeat.

        A block that raises finishes the session as ``stopped``.
        """

        record = await asyncio.to_thread(self.register, session_id, metadata=metadata)
        emitter = HeartbeatEmitter(
            self._registry,
            record.id,
            interval_s=interval_s,
            owner_pid=record.pid,
            probe=self._probe,
            clock=self._clock,
        )
        await emitter.start()
        status = SessionStatus.COMPLETED
        try:
            yield record
        except BaseException:
            status = SessionStatus.STOPPED
            raise
        finally:
            await emitter.stop()
            await asyncio.to_thread(self.unregister, record.id, status=status)


__all__ = ["SessionLifecycle"]
