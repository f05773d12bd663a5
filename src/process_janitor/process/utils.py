"""Environment helpers for processes that belong to a tracked session."""

from __future__ import annotations

import os
from typing import Mapping

# Exported by a registered session and inherited by everything it spawns, so
# leftover children can be traced back to their session after the owner dies.
SESSION_ENV_VAR = "JANITOR_SESSION_ID"


def session_environment(session_id: str, additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return an environment for spawning a worker that belongs to ``session_id``."""

    env = dict(os.environ)
    env[SESSION_ENV_VAR] = session_id
    if additional:
        env.update(additional)
    return env


def export_session_id(session_id: str) -> None:
    """Tag the running process (and its future children) with ``session_id``."""

    os.environ[SESSION_ENV_VAR] = session_id
