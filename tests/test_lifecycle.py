from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from process_janitor.config import JanitorSettings
from process_janitor.lifecycle import SessionLifecycle
from process_janitor.process import SESSION_ENV_VAR, FakeProcessProbe
from process_janitor.storage import SessionRecord, SessionRegistry, SessionStatus

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def _lifecycle(tmp_path: Path, probe: FakeProcessProbe, **overrides) -> SessionLifecycle:
    settings = JanitorSettings(home=tmp_path, lock_timeout_seconds=0.3, **overrides)
    return SessionLifecycle(settings, probe=probe, clock=lambda: NOW)


def _add_orphan(registry: SessionRegistry, session_id: str) -> None:
    registry.register(
        SessionRecord(
            id=session_id,
            pid=4242,
            start_time=NOW - timedelta(hours=1),
            last_heartbeat=NOW - timedelta(minutes=30),
            hostname="test-host",
            working_dir="/work",
        )
    )


def test_register_records_and_exports_session(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv(SESSION_ENV_VAR, "placeholder")
    probe = FakeProcessProbe(lineage={4321: 77}, start_times={77: NOW - timedelta(hours=2)})
    lifecycle = _lifecycle(tmp_path, probe)

    record = lifecycle.register("worker-1", pid=4321, working_dir="/srv/job")

    stored = lifecycle.registry.get("worker-1")
    assert stored == record
    assert stored.hostname == "test-host"
    assert stored.ppid == 77
    assert stored.parent_start_time == NOW - timedelta(hours=2)
    assert stored.working_dir == "/srv/job"
    assert os.environ[SESSION_ENV_VAR] == "worker-1"
    assert lifecycle.last_cleanup is None


def test_startup_cleanup_in_auto_mode_reclaims_orphans(tmp_path: Path) -> None:
    lifecycle = _lifecycle(
        tmp_path, FakeProcessProbe(), auto_cleanup_on_start=True, cleanup_mode="auto"
    )
    _add_orphan(lifecycle.registry, "crashed")

    lifecycle.register("worker-1", pid=4321, export=False)

    assert lifecycle.last_cleanup is not None
    assert lifecycle.last_cleanup.exit_code == 0
    assert lifecycle.registry.get("crashed").status is SessionStatus.ORPHANED
    assert lifecycle.registry.get("worker-1").status is SessionStatus.ACTIVE


def test_startup_cleanup_in_interactive_mode_only_scans(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path, FakeProcessProbe(), auto_cleanup_on_start=True)
    _add_orphan(lifecycle.registry, "crashed")

    lifecycle.register("worker-1", pid=4321, export=False)

    assert lifecycle.last_cleanup is not None
    assert lifecycle.last_cleanup.scan is not None
    assert [entry.session_id for entry in lifecycle.last_cleanup.scan.orphaned] == ["crashed"]
    assert lifecycle.registry.get("crashed").status is SessionStatus.ACTIVE


def test_unregister_marks_terminal_and_tolerates_missing(tmp_path: Path) -> None:
    lifecycle = _lifecycle(tmp_path, FakeProcessProbe())
    lifecycle.register("worker-1", pid=4321, export=False)

    finished = lifecycle.unregister("worker-1", status=SessionStatus.STOPPED)

    assert finished is not None
    assert finished.stop_time == NOW
    assert lifecycle.unregister("worker-1") is None
    assert lifecycle.unregister("ghost") is None
    with pytest.raises(ValueError):
        lifecycle.unregister("worker-1", status=SessionStatus.ACTIVE)


def test_session_context_runs_heartbeat_and_finishes(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv(SESSION_ENV_VAR, "placeholder")
    probe = FakeProcessProbe(alive={os.getpid(): True})
    lifecycle = SessionLifecycle(JanitorSettings(home=tmp_path), probe=probe)

    async def scenario() -> str:
        async with lifecycle.session("worker-1", interval_s=0.01) as record:
            await asyncio.sleep(0.05)
            return record.id

    assert asyncio.run(scenario()) == "worker-1"
    stored = lifecycle.registry.get("worker-1")
    assert stored.status is SessionStatus.COMPLETED
    assert stored.last_heartbeat > stored.start_time


def test_session_context_marks_failures_stopped(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv(SESSION_ENV_VAR, "placeholder")
    probe = FakeProcessProbe(alive={os.getpid(): True})
    lifecycle = SessionLifecycle(JanitorSettings(home=tmp_path), probe=probe)

    async def scenario() -> None:
        async with lifecycle.session("worker-1", interval_s=0.01):
            raise RuntimeError("worker crashed")

    with pytest.raises(RuntimeError):
        asyncio.run(scenario())
    assert lifecycle.registry.get("worker-1").status is SessionStatus.STOPPED
