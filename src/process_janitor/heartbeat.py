"""Periodic liveness refresh for an active session."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime
from typing import Callable

from .locking import LockError
from .process.probe import ProcessProbe
from .storage.models import utcnow
from .storage.registry import IntegrityViolation, NotFound, SessionRegistry

logger = logging.getLogger(__name__)

EXIT_STOPPED = "stopped"
EXIT_OWNER_GONE = "owner_exited"
EXIT_RECORD_GONE = "record_missing"
EXIT_NOT_ACTIVE = "record_not_active"


class HeartbeatEmitter:
    """Background task that touches a session record while its owner lives.

    A failed write is logged and retried on the next tick; it never propagates
    to the owner. The task ends when the owner exits, when :meth:`stop` is
    called, or when the record is gone or no longer active.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        session_id: str,
        *,
        interval_s: float | None = None,
        owner_pid: int | None = None,
        probe: ProcessProbe | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._session_id = session_id
        self._interval = (
            interval_s if interval_s is not None else registry.settings.heartbeat_interval_seconds
        )
        self._owner_pid = owner_pid or os.getpid()
        self._probe = probe or ProcessProbe()
        self._clock = clock or utcnow
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self.ticks = 0
        self.failures = 0
        self.exit_reason: str | None = None

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self.exit_reason = None
        self._stop_event = stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(stop_event), name=f"heartbeat-{self._session_id}")
        logger.info(
            "Heartbeat started",
            extra={"session_id": self._session_id, "interval_s": self._interval},
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        await self._task
        self._task = None

    async def wait(self) -> str | None:
        """Block until the task ends on its own and return why it ended."""

        if self._task is not None:
            await self._task
        return self.exit_reason

    async def beat(self) -> bool:
        """Write one heartbeat. Returns False when the emitter should stop."""

        try:
            await asyncio.to_thread(self._registry.touch, self._session_id, self._clock())
        except NotFound:
            logger.info("Session record is gone; heartbeat stopping", extra={"session_id": self._session_id})
            self.exit_reason = EXIT_RECORD_GONE
            return False
        except IntegrityViolation as exc:
            logger.info(
                "Session no longer accepts heartbeats; stopping",
                extra={"session_id": self._session_id, "reason": exc.reason},
            )
            self.exit_reason = EXIT_NOT_ACTIVE
            return False
        except (LockError, OSError) as exc:
            self.failures += 1
            logger.warning(
                "Heartbeat write failed; retrying on next tick",
                extra={"session_id": self._session_id, "error": str(exc)},
            )
            return True
        self.ticks += 1
        return True

    async def _run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            if not self._probe.pid_alive(self._owner_pid):
                logger.info(
                    "Session owner exited; heartbeat stopping",
                    extra={"session_id": self._session_id, "pid": self._owner_pid},
                )
                self.exit_reason = EXIT_OWNER_GONE
                return
            if not await self.beat():
                return
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
        self.exit_reason = EXIT_STOPPED
        logger.info("Heartbeat stopped", extra={"session_id": self._session_id})


__all__ = [
    "EXIT_NOT_ACTIVE",
    "EXIT_OWNER_GONE",
    "EXIT_RECORD_GONE",
    "EXIT_STOPPED",
    "HeartbeatEmitter",
]
