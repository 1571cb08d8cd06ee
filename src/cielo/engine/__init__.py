from cielo.engine.clock import Clock, ManualClock, SystemClock
from cielo.engine.errors import (
    AuditSinkFailure,
    CoordinationError,
    InvalidState,
    InvalidTransition,
    NotFound,
    ScopeConflict,
)
from cielo.engine.ids import CountingIdGenerator, DefaultIdGenerator, IdGenerator
from cielo.engine.scope import file_matches_scope, glob_match, scopes_overlap

__all__ = [
    "AuditSinkFailure",
    "Clock",
    "CoordinationError",
    "CountingIdGenerator",
    "DefaultIdGenerator",
    "IdGenerator",
    "InvalidState",
    "InvalidTransition",
    "ManualClock",
    "NotFound",
    "ScopeConflict",
    "SystemClock",
    "file_matches_scope",
    "glob_match",
    "scopes_overlap",
]
