"""
RxScope reactivex Adapter - Construction, Composition and Subscription Hooks
============================================================================

``install()`` replaces three methods of ``reactivex.Observable`` so every
stream reports to the current tracker:

- ``__init__``: calls ``on_construct`` once the stream is built. Subjects
  report their class name as ``stream_type``.
- ``pipe``: hands the transforms to ``on_compose``.
- ``subscribe``: normalizes the observer the way reactivex does, hands the
  callbacks to ``on_subscribe`` and returns a TrackedDisposable that fires
  ``on_unsubscribe`` exactly once.

The tracker is looked up on every call, so replacing the tracking context
(``reset_context()``) takes effect immediately. ``uninstall()`` restores the
original methods.

A fault in the tracker's own bookkeeping is logged and the call falls back to
the plain host method. Exceptions from user transforms and callbacks pass
through unchanged.
"""

import logging
import threading
from typing import Any, Callable, Dict, Optional

from reactivex import Observable, abc
from reactivex.internal.basic import default_error, noop
from reactivex.subject import Subject

from ..errors import guarded
from ..hooks import register_stream_type, unregister_stream_type
from ..tracker import get_context

logger = logging.getLogger(__name__)

_originals: Dict[str, Any] = {}


class TrackedDisposable(abc.DisposableBase):
    """Subscription handle that reports teardown once, then disposes."""

    def __init__(self, handle: abc.DisposableBase, on_dispose: Callable[[], None]):
        self._handle = handle
        self._on_dispose: Optional[Callable[[], None]] = on_dispose
        self._lock = threading.Lock()
        self.is_disposed = False

    def dispose(self) -> None:
        with self._lock:
            on_dispose, self._on_dispose = self._on_dispose, None
            self.is_disposed = True
        if on_dispose is not None:
            on_dispose()
            self._handle.dispose()


def _tracked_init(self: Observable, *args: Any, **kwargs: Any) -> None:
    _originals["__init__"](self, *args, **kwargs)
    tracker = get_context().tracker
    if not tracker.is_tracking():
        return
    stream_type = type(self).__name__ if isinstance(self, Subject) else None
    try:
        tracker.on_construct(self, stream_type)
    except Exception as e:
        logger.error(f"Failed to record construction of {type(self).__name__}: {e!r}")


class _HostCall:
    """
    The original host method as handed to a hook, remembering how far it got.

    A hook that raises before calling it, or after it returned, failed in
    its own bookkeeping. A hook that raises while it runs is passing on an
    exception from user code.
    """

    def __init__(self, call: Callable[..., Any]):
        self._call = call
        self.started = False
        self.finished = False
        self.result: Any = None

    def __call__(self, *args: Any) -> Any:
        self.started = True
        self.result = self._call(*args)
        self.finished = True
        return self.result

    @property
    def raised(self) -> bool:
        return self.started and not self.finished


def _tracked_pipe(self: Observable, *operators: Callable[[Any], Any]) -> Any:
    pipe = _originals["pipe"]
    if not operators:
        return pipe(self)
    host = _HostCall(lambda transforms: pipe(self, *transforms))
    try:
        return get_context().tracker.on_compose(self, operators, host)
    except Exception as e:
        if host.raised:
            raise
        logger.error(f"Failed to record composition on {type(self).__name__}: {e!r}")
    if host.finished:
        return host.result
    return pipe(self, *operators)


def _tracked_subscribe(
    self: Observable,
    on_next: Any = None,
    on_error: Optional[Callable[[Exception], None]] = None,
    on_completed: Optional[Callable[[], None]] = None,
    *,
    scheduler: Optional[abc.SchedulerBase] = None,
) -> abc.DisposableBase:
    subscribe = _originals["subscribe"]
    tracker = get_context().tracker
    if not tracker.is_tracking():
        return subscribe(self, on_next, on_error, on_completed, scheduler=scheduler)

    if isinstance(on_next, abc.ObserverBase) or (
        hasattr(on_next, "on_next") and callable(getattr(on_next, "on_next"))
    ):
        observer = on_next
        on_next = observer.on_next
        on_error = observer.on_error
        on_completed = observer.on_completed

    on_next = on_next or noop
    on_error = on_error or default_error
    on_completed = on_completed or noop
    host = _HostCall(lambda n, e, c: subscribe(self, n, e, c, scheduler=scheduler))
    try:
        subscription_id, handle = tracker.on_subscribe(
            self, on_next, on_error, on_completed, host
        )
    except Exception as e:
        if host.raised:
            raise
        logger.error(f"Failed to record subscription to {type(self).__name__}: {e!r}")
        if host.finished:
            return host.result
        return subscribe(self, on_next, on_error, on_completed, scheduler=scheduler)
    if subscription_id is None:
        return handle
    return TrackedDisposable(
        handle, lambda: guarded(tracker.on_unsubscribe, subscription_id)
    )


def install() -> None:
    """Patch ``reactivex.Observable``. Calling it twice is harmless."""
    if _originals:
        return
    _originals["__init__"] = Observable.__init__
    _originals["pipe"] = Observable.pipe
    _originals["subscribe"] = Observable.subscribe
    Observable.__init__ = _tracked_init
    Observable.pipe = _tracked_pipe
    Observable.subscribe = _tracked_subscribe
    register_stream_type(Observable)
    logger.debug("Installed reactivex tracking hooks")


def uninstall() -> None:
    """Restore the original ``reactivex.Observable`` methods."""
    if not _originals:
        return
    Observable.__init__ = _originals.pop("__init__")
    Observable.pipe = _originals.pop("pipe")
    Observable.subscribe = _originals.pop("subscribe")
    unregister_stream_type(Observable)
    logger.debug("Removed reactivex tracking hooks")


def is_installed() -> bool:
    return bool(_originals)
