from __future__ import annotations

import json
import os
import socket
from datetime import timedelta
from pathlib import Path

import pytest

from process_janitor import cli
from process_janitor.cleanup import SWEEP_LOCK
from process_janitor.config import JanitorSettings
from process_janitor.locking import LockManager
from process_janitor.storage import SessionRecord, SessionRegistry, SessionStatus
from process_janitor.storage.models import utcnow

DEAD_PID = 999_999_991


@pytest.fixture()
def home(monkeypatch, tmp_path: Path) -> Path:
    monkeypatch.setenv("JANITOR_HOME", str(tmp_path))
    monkeypatch.setenv("JANITOR_LOCK_TIMEOUT", "0.2")
    monkeypatch.setenv("JANITOR_LOG_LEVEL", "WARNING")
    for name in ("JANITOR_SESSION_ID", "JANITOR_DISABLE_MUTATION", "JANITOR_CONFIG_FILE"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


def _registry(home: Path) -> SessionRegistry:
    return SessionRegistry(JanitorSettings(home=home))


def _add_orphan(home: Path, session_id: str = "crashed") -> None:
    now = utcnow()
    _registry(home).register(
        SessionRecord(
            id=session_id,
            pid=DEAD_PID,
            ppid=1,
            start_time=now - timedelta(hours=1),
            last_heartbeat=now - timedelta(minutes=30),
            hostname=socket.gethostname(),
            working_dir="/work",
        )
    )


def test_register_and_unregister_round_trip(home: Path, capsys) -> None:
    cli.main(["register", "--session-id", "cli-1", "--pid", str(os.getpid())])
    assert capsys.readouterr().out.strip() == "cli-1"
    assert _registry(home).get("cli-1").status is SessionStatus.ACTIVE

    cli.main(["unregister", "cli-1", "--status", "stopped"])
    assert "Session cli-1 marked stopped" in capsys.readouterr().out
    assert _registry(home).get("cli-1").status is SessionStatus.STOPPED

    cli.main(["unregister", "cli-1"])
    assert "not found or already finished" in capsys.readouterr().out


def test_register_rejects_duplicate_id(home: Path, capsys) -> None:
    cli.main(["register", "--session-id", "cli-1", "--pid", str(os.getpid())])
    capsys.readouterr()

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["register", "--session-id", "cli-1", "--pid", str(os.getpid())])

    assert excinfo.value.code == 1


def test_heartbeat_once_refreshes_and_refuses_finished(home: Path, capsys) -> None:
    cli.main(["register", "--session-id", "cli-1", "--pid", str(os.getpid())])
    before = _registry(home).get("cli-1").last_heartbeat

    cli.main(["heartbeat", "--session-id", "cli-1", "--once"])
    assert _registry(home).get("cli-1").last_heartbeat >= before

    cli.main(["unregister", "cli-1"])
    capsys.readouterr()
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["heartbeat", "--session-id", "cli-1", "--once"])

    assert excinfo.value.code == 1
    assert "Heartbeat refused for cli-1: record_not_active" in capsys.readouterr().out


def test_scan_json_lists_orphans_without_writing(home: Path, capsys) -> None:
    _add_orphan(home)

    cli.main(["scan", "--json"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["counts"]["orphaned"] == 1
    assert payload["sessions"][0]["reason"] == "owner_gone"
    assert not JanitorSettings(home=home).cleanup_log.exists()
    assert _registry(home).get("crashed").status is SessionStatus.ACTIVE


def test_report_shows_current_session(home: Path, monkeypatch, capsys) -> None:
    monkeypatch.setenv("JANITOR_SESSION_ID", "cli-1")
    cli.main(["register", "--session-id", "cli-1", "--pid", str(os.getpid())])
    capsys.readouterr()

    cli.main(["report"])

    out = capsys.readouterr().out
    assert "CURRENT SESSION" in out
    assert "Session ID: cli-1" in out


def test_run_defaults_to_dry_run(home: Path, capsys) -> None:
    _add_orphan(home)

    cli.main(["run"])

    out = capsys.readouterr().out
    assert "DRY-RUN COMPLETE" in out
    assert _registry(home).get("crashed").status is SessionStatus.ACTIVE


def test_run_execute_asks_before_cleaning(home: Path, monkeypatch, capsys) -> None:
    _add_orphan(home)
    monkeypatch.setattr("builtins.input", lambda prompt="": "y")

    cli.main(["run", "--execute"])

    out = capsys.readouterr().out
    assert "Found 1 orphaned session(s)" in out
    assert "CLEANUP COMPLETE" in out
    assert _registry(home).get("crashed").status is SessionStatus.ORPHANED


def test_run_execute_declined_changes_nothing(home: Path, monkeypatch, capsys) -> None:
    _add_orphan(home)
    monkeypatch.setattr("builtins.input", lambda prompt="": "n")

    cli.main(["run", "--execute"])

    assert "CLEANUP CANCELLED" in capsys.readouterr().out
    assert _registry(home).get("crashed").status is SessionStatus.ACTIVE


def test_auto_cleans_without_prompting(home: Path, monkeypatch, capsys) -> None:
    _add_orphan(home)

    def refuse_prompt(prompt: str = "") -> str:
        raise AssertionError("auto mode must not prompt")

    monkeypatch.setattr("builtins.input", refuse_prompt)

    cli.main(["auto", "--json"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["summary"]["cleaned"] == 1
    assert payload["exit_code"] == 0
    assert _registry(home).get("crashed").status is SessionStatus.ORPHANED


def test_auto_respects_mutation_valve(home: Path, monkeypatch, capsys) -> None:
    _add_orphan(home)
    monkeypatch.setenv("JANITOR_DISABLE_MUTATION", "1")

    cli.main(["auto", "--json"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["dry_run"] is True
    assert payload["summary"]["would_clean"] == 1
    assert _registry(home).get("crashed").status is SessionStatus.ACTIVE


def test_auto_exits_2_when_another_sweep_holds_the_lock(home: Path, capsys) -> None:
    _add_orphan(home)
    other = LockManager(JanitorSettings(home=home).locks_dir, timeout=0.1)

    with other.hold(SWEEP_LOCK):
        with pytest.raises(SystemExit) as excinfo:
            cli.main(["auto"])

    assert excinfo.value.code == 2
    assert "CLEANUP SKIPPED" in capsys.readouterr().out
    assert _registry(home).get("crashed").status is SessionStatus.ACTIVE


def test_auto_quiet_prints_nothing_on_success(home: Path, capsys) -> None:
    _add_orphan(home)

    cli.main(["auto", "--quiet"])

    assert capsys.readouterr().out == ""


def test_status_json_reports_counts(home: Path, capsys) -> None:
    _add_orphan(home)
    cli.main(["register", "--session-id", "cli-1", "--pid", str(os.getpid())])
    capsys.readouterr()

    cli.main(["status", "--json"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["home"] == str(home)
    assert payload["sessions_total"] == 2
    assert payload["status_counts"] == {"active": 2}
    assert payload["orphaned"] == 1
    assert payload["mutation_disabled"] is False


def test_prune_removes_expired_finished_records(home: Path, capsys) -> None:
    registry = _registry(home)
    _add_orphan(home, "finished")
    registry.update("finished", status=SessionStatus.COMPLETED, end_time=utcnow() - timedelta(days=30))

    cli.main(["prune", "--dry-run"])
    assert "Would remove 1 finished session record(s)" in capsys.readouterr().out
    assert registry.exists("finished")

    cli.main(["prune", "--json"])
    payload = json.loads(capsys.readouterr().out)
    assert payload == {"dry_run": False, "sessions": ["finished"]}
    assert not registry.exists("finished")


def test_invalid_config_file_exits_with_message(home: Path, capsys) -> None:
    config = home / "bad.yaml"
    config.write_text("cleanup_mode: sometimes\n", encoding="utf-8")

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--config", str(config), "scan"])

    assert excinfo.value.code == 1
    assert "Configuration error" in capsys.readouterr().out
