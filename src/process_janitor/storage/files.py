"""Filesystem persistence for session documents and append-only logs."""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Protocol

from .models import SESSION_ID_PATTERN

METADATA_FILENAME = "metadata.json"


class RecordStore(Protocol):
    """Protocol for the key/value document store behind the session registry."""

    def read(self, session_id: str) -> Any | None:
        ...

    def write(self, session_id: str, document: dict[str, Any]) -> None:
        ...

    def exists(self, session_id: str) -> bool:
        ...

    def delete(self, session_id: str) -> bool:
        ...

    def ids(self) -> list[str]:
        ...

    def resource_dir(self, session_id: str) -> Path:
        ...

    def reclaim(self, session_id: str) -> list[Path]:
        ...


def atomic_write_json(path: Path, document: Any) -> None:
    """Write ``document`` so readers see either the old file or the complete new one."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(document, handle, indent=2, sort_keys=True)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def append_jsonl(path: Path, entry: dict[str, Any]) -> None:
    """Append one JSON line. A single ``O_APPEND`` write keeps lines whole."""

    path.parent.mkdir(parents=True, exist_ok=True)
    line = (json.dumps(entry, sort_keys=True, default=str) + "\n").encode("utf-8")
    fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
    try:
        os.write(fd, line)
    finally:
        os.close(fd)


def read_jsonl(path: Path) -> list[dict[str, Any]]:
    """Return the well-formed object lines of ``path``; missing files read as empty."""

    entries: list[dict[str, Any]] = []
    try:
        handle = open(path, encoding="utf-8")
    except FileNotFoundError:
        return entries
    with handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except ValueError:
                continue
            if isinstance(entry, dict):
                entries.append(entry)
    return entries


class FileRecordStore:
    """One directory per session holding ``metadata.json`` plus session resources."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def resource_dir(self, session_id: str) -> Path:
        return self._root / session_id

    def _metadata_path(self, session_id: str) -> Path:
        return self.resource_dir(session_id) / METADATA_FILENAME

    def read(self, session_id: str) -> Any | None:
        try:
            raw = self._metadata_path(session_id).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return json.loads(raw)

    def write(self, session_id: str, document: dict[str, Any]) -> None:
        session_dir = self.resource_dir(session_id)
        session_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(session_dir, 0o700)
        atomic_write_json(self._metadata_path(session_id), document)

    def exists(self, session_id: str) -> bool:
        return self._metadata_path(session_id).is_file()

    def delete(self, session_id: str) -> bool:
        session_dir = self.resource_dir(session_id)
        if not session_dir.exists():
            return False
        shutil.rmtree(session_dir)
        return True

    def ids(self) -> list[str]:
        if not self._root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self._root.iterdir()
            if entry.is_dir()
            and SESSION_ID_PATTERN.match(entry.name)
            and (entry / METADATA_FILENAME).is_file()
        )

    def reclaim(self, session_id: str) -> list[Path]:
        """Remove everything the session left in its directory except the record itself.

        Idempotent: entries that are already gone are skipped.
        """

        session_dir = self.resource_dir(session_id)
        removed: list[Path] = []
        if not session_dir.is_dir():
            return removed
        for entry in sorted(session_dir.iterdir()):
            if entry.name == METADATA_FILENAME:
                continue
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            except FileNotFoundError:
                continue
            removed.append(entry)
        return removed


__all__ = [
    "FileRecordStore",
    "METADATA_FILENAME",
    "RecordStore",
    "append_jsonl",
    "atomic_write_json",
    "read_jsonl",
]
