"""Durable, file-backed registry of tracked sessions."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from pydantic import ValidationError

from ..config import JanitorSettings
from ..locking import LockManager
from .files import FileRecordStore, RecordStore, append_jsonl
from .models import (
    TERMINAL_TIMESTAMP_FIELDS,
    SessionRecord,
    SessionStatus,
    as_utc,
    format_timestamp,
    utcnow,
    validate_session_id,
)

logger = logging.getLogger(__name__)


class RegistryError(RuntimeError):
    """Base class for session registry errors."""


class NotFound(RegistryError):
    """Raised when no record exists for a session id."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' not found")


class IntegrityViolation(RegistryError):
    """Raised when a stored record is corrupt or a change would break a record invariant."""

    def __init__(self, session_id: str, reason: str) -> None:
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Session '{session_id}': {reason}")


class DuplicateId(IntegrityViolation):
    def __init__(self, session_id: str) -> None:
        super().__init__(session_id, "a session with this id is already registered")


class SessionRegistry:
    """Create, read, update and enumerate session records.

    Every read-modify-write cycle holds the ``session-<id>`` lock, so writes to a
    single record are serialized across processes. Each successful write is
    appended to the registry audit log.
    """

    def __init__(
        self,
        settings: JanitorSettings,
        *,
        store: RecordStore | None = None,
        locks: LockManager | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._store = store or FileRecordStore(settings.sessions_dir)
        self._locks = locks or LockManager(
            settings.locks_dir, timeout=settings.lock_timeout_seconds
        )
        self._clock = clock or utcnow

    @property
    def settings(self) -> JanitorSettings:
        return self._settings

    @property
    def locks(self) -> LockManager:
        return self._locks

    @property
    def audit_log(self) -> Path:
        return self._settings.registry_log

    @staticmethod
    def lock_resource(session_id: str) -> str:
        return f"session-{session_id}"

    def register(self, record: SessionRecord) -> str:
        with self._locks.hold(self.lock_resource(record.id)):
            if self._store.exists(record.id):
                raise DuplicateId(record.id)
            self._store.write(record.id, record.to_document())
            self._audit("registered", record.id, record)
        logger.info("Registered session", extra={"session_id": record.id, "pid": record.pid})
        return record.id

    def get(self, session_id: str) -> SessionRecord:
        key = self._key(session_id)
        try:
            document = self._store.read(key)
        except ValueError as exc:
            raise IntegrityViolation(key, f"unreadable document: {exc}") from exc
        if document is None:
            raise NotFound(key)
        return self._parse(key, document)

    def exists(self, session_id: str) -> bool:
        try:
            return self._store.exists(self._key(session_id))
        except NotFound:
            return False

    def ids(self) -> list[str]:
        return self._store.ids()

    def list(self) -> list[SessionRecord]:
        """Return every readable record, oldest first. Corrupt records are skipped."""

        records: list[SessionRecord] = []
        for session_id in self._store.ids():
            try:
                records.append(self.get(session_id))
            except NotFound:
                continue
            except IntegrityViolation as exc:
                logger.warning(
                    "Skipping unreadable session record",
                    extra={"session_id": session_id, "reason": exc.reason},
                )
        records.sort(key=lambda record: (record.start_time, record.id))
        return records

    def update(self, session_id: str, **fields: Any) -> SessionRecord:
        """Apply ``fields`` to an existing record and return the stored result.

        Raises ``NotFound`` for a missing record (never creates one) and
        ``IntegrityViolation`` for a change that breaks a record invariant.
        """

        key = self._key(session_id)
        unknown = sorted(set(fields) - set(SessionRecord.model_fields))
        if unknown:
            raise ValueError(f"Unknown session fields: {', '.join(unknown)}")
        if "id" in fields and fields["id"] != key:
            raise IntegrityViolation(key, "session id is immutable")

        with self._locks.hold(self.lock_resource(key)):
            current = self.get(key)
            changes = dict(fields)
            event = "updated"

            if "status" in changes:
                target = self._transition(current, changes["status"])
                changes["status"] = target
                if target is not current.status:
                    event = target.value
                    stamp_field = TERMINAL_TIMESTAMP_FIELDS[target]
                    if changes.get(stamp_field) is None:
                        changes[stamp_field] = self._clock()

            if changes.get("last_heartbeat") is not None:
                heartbeat = as_utc(changes["last_heartbeat"])
                if heartbeat < current.last_heartbeat:
                    raise IntegrityViolation(key, "last_heartbeat may not move backwards")
                changes["last_heartbeat"] = heartbeat

            updated = self._rebuild(current, changes)
            self._store.write(key, updated.to_document())
            self._audit(event, key, updated, fields=sorted(fields))
        return updated

    def touch(self, session_id: str, now: datetime | None = None) -> SessionRecord:
        """Refresh ``last_heartbeat`` of an active record. Never moves it backwards."""

        key = self._key(session_id)
        with self._locks.hold(self.lock_resource(key)):
            current = self.get(key)
            if current.status is not SessionStatus.ACTIVE:
                raise IntegrityViolation(
                    key, f"session is {current.status.value}; heartbeat refused"
                )
            stamp = max(as_utc(now or self._clock()), current.last_heartbeat)
            updated = self._rebuild(current, {"last_heartbeat": stamp})
            self._store.write(key, updated.to_document())
            self._audit("heartbeat", key, updated)
        return updated

    def remove(self, session_id: str) -> None:
        """Physically delete a record and its session directory."""

        key = self._key(session_id)
        with self._locks.hold(self.lock_resource(key)):
            if not self._store.exists(key):
                raise NotFound(key)
            try:
                record: SessionRecord | None = self.get(key)
            except IntegrityViolation:
                record = None
            self._store.delete(key)
            self._audit("removed", key, record)
        logger.info("Removed session record", extra={"session_id": key})

    def session_dir(self, session_id: str) -> Path:
        return self._store.resource_dir(self._key(session_id))

    def reclaim_resources(self, session_id: str) -> list[Path]:
        """Delete the files a session left behind, keeping its record."""

        key = self._key(session_id)
        with self._locks.hold(self.lock_resource(key)):
            removed = self._store.reclaim(key)
            if removed:
                self._audit("reclaimed", key, None, removed=len(removed))
        return removed

    def _key(self, session_id: str) -> str:
        try:
            return validate_session_id(session_id)
        except ValueError as exc:
            raise NotFound(str(session_id)) from exc

    def _parse(self, session_id: str, document: Any) -> SessionRecord:
        if not isinstance(document, dict):
            raise IntegrityViolation(session_id, "document is not a JSON object")
        try:
            record = SessionRecord.model_validate(document)
        except ValidationError as exc:
            raise IntegrityViolation(
                session_id, f"invalid document ({exc.error_count()} errors)"
            ) from exc
        if record.id != session_id:
            raise IntegrityViolation(session_id, f"document carries foreign id '{record.id}'")
        return record

    def _transition(self, current: SessionRecord, value: Any) -> SessionStatus:
        try:
            target = SessionStatus(value)
        except ValueError as exc:
            raise IntegrityViolation(current.id, f"unknown status {value!r}") from exc
        if current.status.terminal and target is not current.status:
            raise IntegrityViolation(
                current.id,
                f"status may not change from {current.status.value} to {target.value}",
            )
        return target

    def _rebuild(self, current: SessionRecord, changes: dict[str, Any]) -> SessionRecord:
        document: dict[str, Any] = {**current.to_document(), **changes}
        try:
            return SessionRecord.model_validate(document)
        except ValidationError as exc:
            raise IntegrityViolation(
                current.id, f"update rejected ({exc.errors()[0]['msg']})"
            ) from exc

    def _audit(
        self,
        event: str,
        session_id: str,
        record: SessionRecord | None,
        **extra: Any,
    ) -> None:
        entry: dict[str, Any] = {
            "event": event,
            "session_id": session_id,
            "timestamp": format_timestamp(self._clock()),
        }
        if record is not None:
            entry.update(
                {
                    "pid": record.pid,
                    "status": record.status.value,
                    "hostname": record.hostname,
                    "working_dir": record.working_dir,
                }
            )
        entry.update(extra)
        try:
            append_jsonl(self.audit_log, entry)
        except OSError as exc:
            logger.warning(
                "Failed to append registry audit entry",
                extra={"session_id": session_id, "audit_event": event, "error": str(exc)},
            )


__all__ = [
    "DuplicateId",
    "IntegrityViolation",
    "NotFound",
    "RegistryError",
    "SessionRegistry",
]
