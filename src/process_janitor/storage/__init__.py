"""Session persistence: record model, file store and registry."""

from .files import FileRecordStore, RecordStore
from .models import SessionRecord, SessionStatus
from .registry import DuplicateId, IntegrityViolation, NotFound, RegistryError, SessionRegistry

__all__ = [
    "DuplicateId",
    "FileRecordStore",
    "IntegrityViolation",
    "NotFound",
    "RecordStore",
    "RegistryError",
    "SessionRecord",
    "SessionRegistry",
    "SessionStatus",
]
