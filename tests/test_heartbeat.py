from __future__ import annotations

import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from pathlib import Path

from process_janitor.config import JanitorSettings
from process_janitor.heartbeat import (
    EXIT_NOT_ACTIVE,
    EXIT_OWNER_GONE,
    EXIT_RECORD_GONE,
    EXIT_STOPPED,
    HeartbeatEmitter,
)
from process_janitor.locking import Busy
from process_janitor.process import FakeProcessProbe
from process_janitor.storage import SessionRecord, SessionRegistry, SessionStatus

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
OWNER = 4242


def _registry(tmp_path: Path) -> SessionRegistry:
    return SessionRegistry(JanitorSettings(home=tmp_path, lock_timeout_seconds=0.5))


def _register(registry: SessionRegistry, session_id: str = "sess-1") -> None:
    registry.register(
        SessionRecord(
            id=session_id,
            pid=OWNER,
            start_time=NOW,
            last_heartbeat=NOW,
            hostname="test-host",
            working_dir="/work",
        )
    )


def _ticking_clock():
    seconds = itertools.count(1)
    return lambda: NOW + timedelta(seconds=next(seconds))


def test_emitter_refreshes_heartbeat_until_stopped(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    _register(registry)
    emitter = HeartbeatEmitter(
        registry,
        "sess-1",
        interval_s=0.01,
        owner_pid=OWNER,
        probe=FakeProcessProbe(alive={OWNER: True}),
        clock=_ticking_clock(),
    )

    async def scenario() -> None:
        await emitter.start()
        assert emitter.running
        await asyncio.sleep(0.2)
        await emitter.stop()

    asyncio.run(scenario())

    assert emitter.ticks >= 2
    assert emitter.exit_reason == EXIT_STOPPED
    assert not emitter.running
    assert registry.get("sess-1").last_heartbeat > NOW


def test_emitter_ends_when_owner_exits(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    _register(registry)
    probe = FakeProcessProbe(alive={OWNER: True})
    emitter = HeartbeatEmitter(
        registry, "sess-1", interval_s=0.01, owner_pid=OWNER, probe=probe, clock=_ticking_clock()
    )

    async def scenario() -> str | None:
        await emitter.start()
        await asyncio.sleep(0.05)
        probe.alive[OWNER] = False
        return await asyncio.wait_for(emitter.wait(), timeout=2)

    assert asyncio.run(scenario()) == EXIT_OWNER_GONE
    assert emitter.ticks >= 1


def test_emitter_ends_when_record_is_finished(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    _register(registry)
    registry.update("sess-1", status=SessionStatus.COMPLETED)
    emitter = HeartbeatEmitter(
        registry,
        "sess-1",
        interval_s=0.01,
        owner_pid=OWNER,
        probe=FakeProcessProbe(alive={OWNER: True}),
    )

    async def scenario() -> str | None:
        await emitter.start()
        return await asyncio.wait_for(emitter.wait(), timeout=2)

    assert asyncio.run(scenario()) == EXIT_NOT_ACTIVE
    assert emitter.ticks == 0


def test_emitter_ends_when_record_is_missing(tmp_path: Path) -> None:
    emitter = HeartbeatEmitter(
        _registry(tmp_path),
        "ghost",
        interval_s=0.01,
        owner_pid=OWNER,
        probe=FakeProcessProbe(alive={OWNER: True}),
    )

    async def scenario() -> str | None:
        await emitter.start()
        return await asyncio.wait_for(emitter.wait(), timeout=2)

    assert asyncio.run(scenario()) == EXIT_RECORD_GONE


def test_failed_writes_are_retried_on_next_tick() -> None:
    class FlakyRegistry:
        def __init__(self) -> None:
            self.calls = 0

        def touch(self, session_id: str, now: datetime) -> None:
            self.calls += 1
            if self.calls == 1:
                raise OSError("disk full")
            if self.calls == 2:
                raise Busy("session-sess-1", holder_pid=1)

    registry = FlakyRegistry()
    emitter = HeartbeatEmitter(
        registry,  # type: ignore[arg-type]
        "sess-1",
        interval_s=0.01,
        owner_pid=OWNER,
        probe=FakeProcessProbe(alive={OWNER: True}),
    )

    async def scenario() -> None:
        await emitter.start()
        for _ in range(200):
            if registry.calls >= 4:
                break
            await asyncio.sleep(0.01)
        await emitter.stop()

    asyncio.run(scenario())

    assert emitter.failures == 2
    assert emitter.ticks >= 2
    assert emitter.exit_reason == EXIT_STOPPED


def test_emitter_can_be_restarted_after_stop(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    _register(registry)
    emitter = HeartbeatEmitter(
        registry,
        "sess-1",
        interval_s=0.01,
        owner_pid=OWNER,
        probe=FakeProcessProbe(alive={OWNER: True}),
        clock=_ticking_clock(),
    )

    async def scenario() -> int:
        await emitter.start()
        await asyncio.sleep(0.05)
        await emitter.stop()
        first_run = emitter.ticks
        await emitter.start()
        assert emitter.running
        await asyncio.sleep(0.05)
        await emitter.stop()
        return first_run

    first_run = asyncio.run(scenario())

    assert first_run >= 1
    assert emitter.ticks > first_run
    assert emitter.exit_reason == EXIT_STOPPED
