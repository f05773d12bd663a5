from __future__ import annotations

import fcntl
import json
import os
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from process_janitor.locking import Busy, LockManager, StaleLock

DEAD_PID = 999_999_991


def _hold_externally(path: Path, pid: int):
    """Simulate another process holding ``path`` on behalf of ``pid``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    handle = open(path, "w", encoding="utf-8")
    handle.write(json.dumps({"pid": pid, "acquired_at": "2025-01-01T00:00:00+00:00"}))
    handle.flush()
    fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
    return handle


def _alive_except_dead(pid: int) -> bool:
    return pid != DEAD_PID


def test_acquire_writes_holder_and_release_removes_file(tmp_path: Path) -> None:
    manager = LockManager(tmp_path, timeout=0.1)

    token = manager.acquire("cleanup-sweep")

    holder = json.loads(token.path.read_text(encoding="utf-8"))
    assert holder["pid"] == os.getpid()
    assert manager.inspect("cleanup-sweep").held

    manager.release(token)
    manager.release(token)
    assert token.released
    assert not token.path.exists()


def test_live_holder_yields_busy(tmp_path: Path) -> None:
    handle = _hold_externally(tmp_path / "session-abc.lock", os.getpid())
    try:
        manager = LockManager(tmp_path, timeout=0.1, poll_interval=0.02)
        with pytest.raises(Busy) as excinfo:
            manager.acquire("session-abc")
        assert excinfo.value.holder_pid == os.getpid()
    finally:
        handle.close()


def test_dead_holder_is_reclaimed(tmp_path: Path) -> None:
    handle = _hold_externally(tmp_path / "cleanup-sweep.lock", DEAD_PID)
    try:
        manager = LockManager(tmp_path, timeout=0, is_alive=_alive_except_dead)
        assert manager.is_stale("cleanup-sweep")

        token = manager.acquire("cleanup-sweep")

        holder = json.loads(token.path.read_text(encoding="utf-8"))
        assert holder["pid"] == os.getpid()
        manager.release(token)
    finally:
        handle.close()


def test_reclaim_during_holder_write_leaves_a_single_owner(tmp_path: Path) -> None:
    (tmp_path / "cleanup-sweep.lock").write_text(json.dumps({"pid": DEAD_PID}), encoding="utf-8")
    second = LockManager(tmp_path, timeout=0, is_alive=_alive_except_dead)
    tokens = []

    def clock() -> datetime:
        # Runs after ``first`` holds the flock but before it records itself.
        if not tokens:
            tokens.append(second.acquire("cleanup-sweep"))
        return datetime.now(timezone.utc)

    first = LockManager(
        tmp_path, timeout=0.2, poll_interval=0.02, is_alive=_alive_except_dead, clock=clock
    )

    with pytest.raises(Busy):
        first.acquire("cleanup-sweep")

    assert len(tokens) == 1
    holder = json.loads(tokens[0].path.read_text(encoding="utf-8"))
    assert holder["pid"] == os.getpid()
    second.release(tokens[0])

    with first.hold("cleanup-sweep") as token:
        assert not token.released


def test_dead_holder_raises_stale_lock_when_reclaim_disabled(tmp_path: Path) -> None:
    handle = _hold_externally(tmp_path / "cleanup-sweep.lock", DEAD_PID)
    try:
        manager = LockManager(tmp_path, timeout=0, is_alive=_alive_except_dead)
        with pytest.raises(StaleLock) as excinfo:
            manager.acquire("cleanup-sweep", reclaim_stale=False)
        assert excinfo.value.holder_pid == DEAD_PID
    finally:
        handle.close()


def test_lock_file_without_holder_is_free(tmp_path: Path) -> None:
    (tmp_path / "session-abc.lock").write_text(json.dumps({"pid": DEAD_PID}), encoding="utf-8")
    manager = LockManager(tmp_path, timeout=0, is_alive=_alive_except_dead)

    info = manager.inspect("session-abc")
    assert not info.held
    assert not info.stale

    with manager.hold("session-abc") as token:
        assert token.pid == os.getpid()


def test_second_manager_is_busy_until_release(tmp_path: Path) -> None:
    first = LockManager(tmp_path, timeout=0.1)
    second = LockManager(tmp_path, timeout=0.1, poll_interval=0.02)

    token = first.acquire("session-abc")
    with pytest.raises(Busy):
        second.acquire("session-abc")

    first.release(token)
    with second.hold("session-abc"):
        pass


def test_hold_releases_on_error(tmp_path: Path) -> None:
    manager = LockManager(tmp_path, timeout=0.1)

    with pytest.raises(RuntimeError):
        with manager.hold("session-abc") as token:
            raise RuntimeError("boom")

    assert token.released
    with manager.hold("session-abc"):
        pass


def test_acquire_is_reentrant_per_thread(tmp_path: Path) -> None:
    manager = LockManager(tmp_path, timeout=0.1, poll_interval=0.02)
    outcome: dict[str, object] = {}

    with manager.hold("session-abc") as outer:
        with manager.hold("session-abc") as inner:
            assert inner is outer

        def contend() -> None:
            try:
                manager.acquire("session-abc")
            except Busy as exc:
                outcome["error"] = exc

        worker = threading.Thread(target=contend)
        worker.start()
        worker.join()
        assert not outer.released

    assert isinstance(outcome["error"], Busy)
    assert outer.released


def test_rejects_unsafe_resource_names(tmp_path: Path) -> None:
    manager = LockManager(tmp_path)
    with pytest.raises(ValueError):
        manager.acquire("../etc/passwd")


def test_list_locks_reports_stale_entries(tmp_path: Path) -> None:
    handle = _hold_externally(tmp_path / "session-dead.lock", DEAD_PID)
    try:
        manager = LockManager(tmp_path, is_alive=_alive_except_dead)
        infos = manager.list_locks()
    finally:
        handle.close()

    assert [(info.resource, info.held, info.stale) for info in infos] == [
        ("session-dead", True, True)
    ]
