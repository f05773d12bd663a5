"""Operating-system process inspection and termination."""

from .probe import (
    FakeProcessProbe,
    ObservedState,
    ProcessProbe,
    TerminationFailed,
    TerminationResult,
    pid_alive,
)
from .utils import SESSION_ENV_VAR, export_session_id, session_environment

__all__ = [
    "FakeProcessProbe",
    "ObservedState",
    "ProcessProbe",
    "SESSION_ENV_VAR",
    "TerminationFailed",
    "TerminationResult",
    "export_session_id",
    "pid_alive",
    "session_environment",
]
