"""Decide whether a session record is orphaned.

``classify`` is a pure function of the record, a snapshot of OS state, the
current time and the settings. A record is orphaned only when every check
passes, evaluated cheapest first:

1. it is not the session running the classifier (absolute veto);
2. its owning process is dead;
3. its heartbeat is stale;
4. it is older than the minimum session age;
5. it was created on this host;
6. no live parent process still holds the session.

A check that cannot be evaluated yields ``indeterminate``, which is never
acted upon.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from .config import JanitorSettings
from .process.probe import ObservedState
from .storage.models import SessionRecord, SessionStatus, as_utc

REASON_SELF = "self_session"
REASON_NOT_ACTIVE = "not_active"
REASON_PROCESS_ALIVE = "process_alive"
REASON_LIVENESS_UNKNOWN = "liveness_inconclusive"
REASON_HEARTBEAT_FRESH = "heartbeat_fresh"
REASON_TOO_YOUNG = "within_min_age"
REASON_HOSTNAME_UNKNOWN = "hostname_unknown"
REASON_FOREIGN_HOST = "foreign_host"
REASON_PARENT_ALIVE = "parent_holds_session"
REASON_PARENT_UNKNOWN = "parent_inconclusive"
REASON_ORPHANED = "owner_gone"
REASON_PID_REUSED = "pid_reused"


class Verdict(str, Enum):
    ACTIVE = "active"
    ORPHANED = "orphaned"
    INDETERMINATE = "indeterminate"


@dataclass(slots=True, frozen=True)
class Classification:
    session_id: str
    verdict: Verdict
    reason: str
    detail: str = ""

    @property
    def orphaned(self) -> bool:
        return self.verdict is Verdict.ORPHANED

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "verdict": self.verdict.value,
            "reason": self.reason,
            "detail": self.detail,
        }


class ClassificationIndeterminate(RuntimeError):
    """Raised when a decision is required but the evidence is insufficient."""

    def __init__(self, classification: Classification) -> None:
        self.classification = classification
        super().__init__(
            f"Session '{classification.session_id}' is indeterminate: {classification.reason}"
        )


def require_decisive(classification: Classification) -> Classification:
    """Return ``classification`` unless it is indeterminate."""

    if classification.verdict is Verdict.INDETERMINATE:
        raise ClassificationIndeterminate(classification)
    return classification


def _minutes(seconds: float) -> str:
    return f"{seconds / 60:.1f}m"


def classify(
    record: SessionRecord,
    observed: ObservedState,
    now: datetime,
    settings: JanitorSettings,
    *,
    self_session_id: str | None = None,
) -> Classification:
    session_id = record.id

    def verdict(kind: Verdict, reason: str, detail: str = "") -> Classification:
        return Classification(session_id=session_id, verdict=kind, reason=reason, detail=detail)

    own_id = self_session_id or settings.current_session_id
    if (own_id and session_id == own_id) or observed.owner_is_self:
        return verdict(Verdict.ACTIVE, REASON_SELF, "record belongs to the running session")

    if record.status is not SessionStatus.ACTIVE:
        return verdict(Verdict.INDETERMINATE, REASON_NOT_ACTIVE, f"status is {record.status.value}")

    if observed.owner_alive is None:
        return verdict(
            Verdict.INDETERMINATE, REASON_LIVENESS_UNKNOWN, f"could not probe pid {record.pid}"
        )
    if observed.owner_alive:
        return verdict(Verdict.ACTIVE, REASON_PROCESS_ALIVE, f"pid {record.pid} is running")

    now = as_utc(now)
    heartbeat_age = record.heartbeat_age(now)
    if heartbeat_age <= settings.stale_heartbeat_threshold:
        return verdict(
            Verdict.ACTIVE,
            REASON_HEARTBEAT_FRESH,
            f"last heartbeat {_minutes(heartbeat_age.total_seconds())} ago",
        )

    age = record.age(now)
    if age <= settings.min_session_age:
        return verdict(
            Verdict.ACTIVE,
            REASON_TOO_YOUNG,
            f"session age {_minutes(age.total_seconds())} within grace period",
        )

    if not observed.hostname:
        return verdict(Verdict.INDETERMINATE, REASON_HOSTNAME_UNKNOWN, "local hostname unavailable")
    if record.hostname != observed.hostname:
        return verdict(
            Verdict.ACTIVE, REASON_FOREIGN_HOST, f"created on {record.hostname}"
        )

    if observed.parent_holds_session is None:
        return verdict(
            Verdict.INDETERMINATE,
            REASON_PARENT_UNKNOWN,
            f"could not inspect parent pid {record.ppid}",
        )
    if observed.parent_holds_session:
        return verdict(
            Verdict.ACTIVE, REASON_PARENT_ALIVE, f"parent pid {record.ppid} still holds the session"
        )

    if observed.pid_reused:
        return verdict(
            Verdict.ORPHANED, REASON_PID_REUSED, f"pid {record.pid} now belongs to another process"
        )
    return verdict(
        Verdict.ORPHANED,
        REASON_ORPHANED,
        f"pid {record.pid} gone, heartbeat {_minutes(heartbeat_age.total_seconds())} old",
    )


__all__ = [
    "Classification",
    "ClassificationIndeterminate",
    "Verdict",
    "classify",
    "require_decisive",
]
