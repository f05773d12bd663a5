"""Data models for tracked sessions."""

from __future__ import annotations

import os
import re
import socket
import sys
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9-]{1,64}$")


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    STOPPED = "stopped"
    ORPHANED = "orphaned"

    @property
    def terminal(self) -> bool:
        return self is not SessionStatus.ACTIVE


# Terminal status -> timestamp field stamped when the record enters it.
TERMINAL_TIMESTAMP_FIELDS: dict[SessionStatus, str] = {
    SessionStatus.COMPLETED: "end_time",
    SessionStatus.STOPPED: "stop_time",
    SessionStatus.ORPHANED: "cleaned_at",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    return str(uuid.uuid4())


def validate_session_id(value: str) -> str:
    """Return ``value`` stripped, or raise ``ValueError`` if it is not a usable session id."""

    normalized = (value or "").strip()
    if not SESSION_ID_PATTERN.match(normalized):
        raise ValueError(
            "Session id must be 1-64 characters of letters, digits and dashes"
        )
    return normalized


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class SessionRecord(BaseModel):
    """One tracked worker session as persisted in the registry."""

    id: str = Field(..., description="Opaque, immutable session identifier.")
    pid: int = Field(..., gt=0, description="Process believed to own the session.")
    start_time: datetime = Field(..., description="UTC creation timestamp.")
    last_heartbeat: datetime = Field(..., description="UTC timestamp of the latest heartbeat.")
    hostname: str = Field(..., description="Machine the session was created on.")
    working_dir: str = Field(..., description="Directory the session was created in.")
    status: SessionStatus = Field(default=SessionStatus.ACTIVE)
    ppid: int | None = Field(default=None, ge=0, description="Parent of the owner at registration.")
    parent_start_time: datetime | None = Field(
        default=None, description="Creation time of the parent, recorded to confirm its lineage later."
    )
    platform: str | None = Field(default=None)
    end_time: datetime | None = Field(default=None)
    stop_time: datetime | None = Field(default=None)
    cleaned_at: datetime | None = Field(default=None)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        return validate_session_id(value)

    @field_validator(
        "start_time", "last_heartbeat", "parent_start_time", "end_time", "stop_time", "cleaned_at"
    )
    @classmethod
    def _normalize_timestamp(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return as_utc(value)

    @model_validator(mode="after")
    def _check_heartbeat_order(self) -> "SessionRecord":
        if self.last_heartbeat < self.start_time:
            raise ValueError("last_heartbeat must not precede start_time")
        return self

    @field_serializer(
        "start_time", "last_heartbeat", "parent_start_time", "end_time", "stop_time", "cleaned_at"
    )
    def _serialize_timestamp(self, value: datetime | None) -> str | None:
        if value is None:
            return None
        return format_timestamp(value)

    @classmethod
    def for_current_process(
        cls,
        session_id: str | None = None,
        *,
        pid: int | None = None,
        now: datetime | None = None,
        working_dir: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "SessionRecord":
        """Describe a session owned by ``pid`` (default: this process) starting ``now``."""

        timestamp = now or utcnow()
        owner = pid or os.getpid()
        return cls(
            id=session_id or new_session_id(),
            pid=owner,
            ppid=os.getppid() if owner == os.getpid() else None,
            start_time=timestamp,
            last_heartbeat=timestamp,
            hostname=socket.gethostname(),
            working_dir=working_dir or os.getcwd(),
            platform=sys.platform,
            metadata=metadata or {},
        )

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    def age(self, now: datetime) -> timedelta:
        return as_utc(now) - self.start_time

    def heartbeat_age(self, now: datetime) -> timedelta:
        return as_utc(now) - self.last_heartbeat


__all__ = [
    "SESSION_ID_PATTERN",
    "SessionRecord",
    "SessionStatus",
    "TERMINAL_TIMESTAMP_FIELDS",
    "as_utc",
    "format_timestamp",
    "new_session_id",
    "utcnow",
    "validate_session_id",
]
