"""
Live-reload support: module sessions and stable wrappers.
"""

from .session import KEY_SEPARATOR, ModuleSessions, Session, SessionScope
from .stable import (
    KIND_CALLABLE,
    KIND_STREAM,
    KIND_SUBJECT,
    KIND_VALUE,
    StableCallable,
    StableStream,
    StableSubject,
    wrapper_kind,
)

__all__ = [
    "KEY_SEPARATOR",
    "KIND_CALLABLE",
    "KIND_STREAM",
    "KIND_SUBJECT",
    "KIND_VALUE",
    "ModuleSessions",
    "Session",
    "SessionScope",
    "StableCallable",
    "StableStream",
    "StableSubject",
    "wrapper_kind",
]
