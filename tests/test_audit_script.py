from __future__ import annotations

import argparse
import importlib.util
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from process_janitor.cleanup import OperationLog
from process_janitor.config import JanitorSettings
from process_janitor.storage import SessionRecord, SessionRegistry, SessionStatus

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def _load_module():
    module_path = Path(__file__).resolve().parents[1] / "scripts" / "janitor_audit.py"
    spec = importlib.util.spec_from_file_location("janitor_audit_test_module", module_path)
    assert spec and spec.loader
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture()
def settings(monkeypatch, tmp_path: Path) -> JanitorSettings:
    monkeypatch.setenv("JANITOR_HOME", str(tmp_path))
    monkeypatch.delenv("JANITOR_CONFIG_FILE", raising=False)
    return JanitorSettings(home=tmp_path)


def _populate(settings: JanitorSettings) -> None:
    ticks = iter(NOW + timedelta(seconds=offset) for offset in range(100))
    registry = SessionRegistry(settings, clock=lambda: next(ticks))
    for session_id in ("sess-a", "sess-b"):
        registry.register(
            SessionRecord(
                id=session_id,
                pid=4242,
                start_time=NOW,
                last_heartbeat=NOW,
                hostname="test-host",
                working_dir="/work",
            )
        )
    registry.update("sess-a", status=SessionStatus.COMPLETED)

    oplog = OperationLog(settings.cleanup_log, clock=lambda: NOW)
    oplog.record("cleanup", session_id="sess-b", outcome="cleaned", reason="owner_gone")


def _args(**overrides) -> argparse.Namespace:
    values = {
        "source": "registry",
        "session_id": None,
        "event": None,
        "format": "json",
        "output": None,
        "limit": None,
    }
    values.update(overrides)
    return argparse.Namespace(**values)


def test_forward_registry_entries_as_json(settings: JanitorSettings, capsys) -> None:
    module = _load_module()
    _populate(settings)

    exit_code = module.forward_entries(_args(session_id="sess-a"))

    assert exit_code == 0
    data = json.loads(capsys.readouterr().out)
    assert [entry["event"] for entry in data] == ["registered", "completed"]
    assert data[-1]["status"] == "completed"


def test_forward_cleanup_entries_as_text_file(settings: JanitorSettings, tmp_path: Path) -> None:
    module = _load_module()
    _populate(settings)
    output = tmp_path / "cleanup.txt"

    exit_code = module.forward_entries(
        _args(source="cleanup", format="text", output=str(output), event="cleanup")
    )

    assert exit_code == 0
    text = output.read_text(encoding="utf-8")
    assert "event=cleanup | session=sess-b | outcome=cleaned | reason=owner_gone" in text


def test_limit_keeps_latest_entries(settings: JanitorSettings, capsys) -> None:
    module = _load_module()
    _populate(settings)

    module.main(["--limit", "1"])

    data = json.loads(capsys.readouterr().out)
    assert len(data) == 1
    assert data[0]["event"] == "completed"


def test_missing_log_yields_empty_payload(settings: JanitorSettings, capsys) -> None:
    module = _load_module()

    assert module.forward_entries(_args(source="cleanup")) == 0
    assert json.loads(capsys.readouterr().out) == []
