"""
RxScope Errors and Diagnostics
==============================

Instrumentation must never change what the application observes, so almost
nothing in rxscope raises. Problems are reported as ``Diagnostic`` records:
logged at WARNING and published on the event channel with kind
``"diagnostic"``. Faults in rxscope's own bookkeeping are caught by
``guarded`` and logged at ERROR.

The exceptions defined here are reserved for misuse of the module-session
bracket API by generated glue code.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)


class DiagnosticCode:
    """Diagnostic codes published on the event channel."""

    STACK_UNDERFLOW = "stack-underflow"
    STACK_LEAK = "stack-leak"
    DUPLICATE_KEY = "duplicate-key"
    WRAPPER_SHAPE_CHANGED = "wrapper-shape-changed"
    WRAPPER_ORPHANED = "wrapper-orphaned"


@dataclass(frozen=True)
class Diagnostic:
    """A recoverable instrumentation problem."""

    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class RxScopeError(Exception):
    """Base class for rxscope exceptions."""

    pass


class SessionError(RxScopeError):
    """A module session was used after it ended."""

    pass


def guarded(action: Callable[..., Any], *args: Any) -> Any:
    """
    Run a piece of tracking bookkeeping, logging instead of raising.

    Only wrap rxscope's own record keeping with this, never user callbacks:
    their exceptions belong to the application.

    Returns:
        The action's result, or None if it failed
    """
    try:
        return action(*args)
    except Exception as e:
        name = getattr(action, "__name__", type(action).__name__)
        logger.error(f"Tracking failed in {name}: {e!r}")
        return None
