"""Cleanup sweeps over the session registry."""

from .executor import (
    SWEEP_LOCK,
    CleanupExecutor,
    CleanupOutcome,
    OutcomeKind,
    ScanEntry,
    ScanResult,
    SweepMode,
    SweepResult,
)
from .oplog import OperationLog

__all__ = [
    "CleanupExecutor",
    "CleanupOutcome",
    "OperationLog",
    "OutcomeKind",
    "SWEEP_LOCK",
    "ScanEntry",
    "ScanResult",
    "SweepMode",
    "SweepResult",
]
