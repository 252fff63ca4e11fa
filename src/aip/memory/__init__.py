"""Persistence layer for implementation records."""

from .schema import (
    ImplementationRecord,
    ImplementationRequest,
    ImplementationStatus,
    InvalidTransitionError,
    LogLevel,
    ProjectContext,
)
from .store import ImplementationStore

__all__ = [
    "ImplementationRecord",
    "ImplementationRequest",
    "ImplementationStatus",
    "ImplementationStore",
    "InvalidTransitionError",
    "LogLevel",
    "ProjectContext",
]
