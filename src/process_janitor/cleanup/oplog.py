"""JSON-lines log of cleanup classifications and actions."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from ..storage.files import append_jsonl, read_jsonl
from ..storage.models import format_timestamp, utcnow

logger = logging.getLogger(__name__)


class OperationLog:
    """Append one line per classification or action outcome."""

    def __init__(self, path: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self._path = Path(path)
        self._clock = clock or utcnow

    @property
    def path(self) -> Path:
        return self._path

    def record(
        self,
        action: str,
        *,
        session_id: str | None = None,
        outcome: str,
        reason: str = "",
        **extra: Any,
    ) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "timestamp": format_timestamp(self._clock()),
            "action": action,
            "session_id": session_id,
            "outcome": outcome,
            "reason": reason,
        }
        entry.update({key: value for key, value in extra.items() if value is not None})
        try:
            append_jsonl(self._path, entry)
        except OSError as exc:
            logger.warning(
                "Failed to append to operation log",
                extra={"path": str(self._path), "error": str(exc)},
            )
        return entry

    def entries(self, *, session_id: str | None = None, action: str | None = None) -> list[dict[str, Any]]:
        entries = read_jsonl(self._path)
        if session_id is not None:
            entries = [entry for entry in entries if entry.get("session_id") == session_id]
        if action is not None:
            entries = [entry for entry in entries if entry.get("action") == action]
        return entries


__all__ = ["OperationLog"]
