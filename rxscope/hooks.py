"""
RxScope Hook Interfaces - What the Library Adapter Calls
========================================================

The tracking core never patches anything itself. A thin adapter for the host
reactive library (``rxscope.rx``) intercepts construction, composition and
subscription, and calls these four hooks. Any object with matching methods
can stand in for the Tracker, e.g. a recording fake in tests.

Hook contracts:
    on_construct: called synchronously right after a stream is built.
    on_compose: called instead of "apply N transforms to a stream"; must
        call ``compose`` exactly once with the (possibly wrapped) transforms
        and return its result.
    on_subscribe: called instead of "begin consuming"; must call
        ``subscribe`` exactly once with the (possibly wrapped) callbacks.
        Returns the subscription ID (None when untracked) and the handle.
    on_unsubscribe: called exactly once per tracked handle, however many
        times the handle is disposed.
"""

from typing import (
    Any,
    Callable,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

Transform = Callable[[Any], Any]
Compose = Callable[[Sequence[Transform]], Any]
Subscribe = Callable[
    [Callable[[Any], None], Callable[[Exception], None], Callable[[], None]], Any
]


@runtime_checkable
class TrackingHooks(Protocol):
    """Interface implemented by the Tracker and consumed by library adapters."""

    def is_tracking(self) -> bool:
        """False while tracking is disabled or suspended."""
        ...

    def on_construct(self, stream: Any, stream_type: Optional[str] = None) -> Any:
        ...

    def on_compose(
        self, source: Any, transforms: Sequence[Transform], compose: Compose
    ) -> Any:
        ...

    def on_subscribe(
        self,
        stream: Any,
        on_next: Callable[[Any], None],
        on_error: Callable[[Exception], None],
        on_completed: Callable[[], None],
        subscribe: Subscribe,
    ) -> Tuple[Optional[str], Any]:
        ...

    def on_unsubscribe(self, subscription_id: str) -> None:
        ...


# ============================================================================
# STREAM TYPES
# ============================================================================

_stream_types: Tuple[type, ...] = ()


def register_stream_type(cls: type) -> None:
    """Declare ``cls`` a stream type. Called by library adapters on install."""
    global _stream_types
    if cls not in _stream_types:
        _stream_types = _stream_types + (cls,)


def unregister_stream_type(cls: type) -> None:
    global _stream_types
    _stream_types = tuple(t for t in _stream_types if t is not cls)


def is_stream(obj: Any) -> bool:
    """True if ``obj`` is an instance of a registered stream type."""
    return bool(_stream_types) and isinstance(obj, _stream_types)
