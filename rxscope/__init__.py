"""
RxScope - Instrumentation Core for Debugging reactivex Pipelines

Records how streams are created, composed, subscribed and torn down, and keeps
references stable across live code reloads.

    import rxscope
    from rxscope.rx import install

    install()
    context = rxscope.get_context()
    context.subscribe(print)   # every TrackingEvent, in order
"""

from .config import DEFAULT_CONFIG, TrackingConfig
from .errors import Diagnostic, DiagnosticCode, RxScopeError, SessionError
from .events import EventEmitter, TrackingEvent
from .hooks import TrackingHooks, is_stream
from .ids import IdAllocator, parse_id
from .records import (
    ArgumentBinding,
    ArgumentInvocation,
    CompositionRecord,
    EmissionRecord,
    ErrorRecord,
    ModuleSessionRecord,
    RelationshipRecord,
    SourceLocation,
    StableWrapperRecord,
    StreamRecord,
    SubscriptionRecord,
    TransformApplication,
    TransformFactoryRecord,
)
from .tracker import Tracker, TrackingContext, get_context, reset_context


def start_session(module_id: str):
    """Begin a module session on the process-wide context."""
    return get_context().sessions.start(module_id)


__all__ = [
    # Context
    "TrackingContext",
    "Tracker",
    "TrackingHooks",
    "get_context",
    "reset_context",
    "start_session",
    "is_stream",
    # Config and errors
    "DEFAULT_CONFIG",
    "TrackingConfig",
    "Diagnostic",
    "DiagnosticCode",
    "RxScopeError",
    "SessionError",
    # Events and IDs
    "EventEmitter",
    "TrackingEvent",
    "IdAllocator",
    "parse_id",
    # Records
    "ArgumentBinding",
    "ArgumentInvocation",
    "CompositionRecord",
    "EmissionRecord",
    "ErrorRecord",
    "ModuleSessionRecord",
    "RelationshipRecord",
    "SourceLocation",
    "StableWrapperRecord",
    "StreamRecord",
    "SubscriptionRecord",
    "TransformApplication",
    "TransformFactoryRecord",
]
