"""
RxScope Stable Wrappers - References That Survive a Reload
==========================================================

Re-running a module's top level builds brand-new streams, but application
code keeps references obtained during the previous run. A stable wrapper is
the object handed out instead of the fresh stream: it holds a swappable
target and forwards everything to whatever the target is *now*.

Wrapper kinds:
    - StableStream: subscribe, compose and connect follow the current target.
      Live subscribers are moved to the new target when it is swapped.
    - StableSubject: a StableStream that is also an observer; ``on_next``,
      ``on_error`` and ``on_completed`` forward to the current target.
    - StableCallable: calls go to the current target function.

Reading state:
    ``StableSubject.value`` always reads the current target. A wrapper never
    holds a captured copy of a value, so there is nothing stale to prefer.

A subscriber attaching after a swap subscribes to the new target only and
never sees data the old target buffered.
"""

import logging
import threading
from typing import Any, Callable, List, Optional, Set

from reactivex import Observable, abc
from reactivex.disposable import Disposable

logger = logging.getLogger(__name__)

# Wrapper kinds stored on StableWrapperRecord.wrapper_kind
KIND_STREAM = "stream"
KIND_SUBJECT = "subject"
KIND_CALLABLE = "callable"
KIND_VALUE = "value"


def wrapper_kind(target: Any) -> str:
    """Which wrapper class fits ``target``."""
    if isinstance(target, Observable):
        if isinstance(target, abc.ObserverBase):
            return KIND_SUBJECT
        return KIND_STREAM
    if callable(target) and not isinstance(target, type):
        return KIND_CALLABLE
    return KIND_VALUE


class _Link:
    """One downstream observer attached to a StableStream."""

    def __init__(self, observer: abc.ObserverBase, scheduler: Optional[abc.SchedulerBase]):
        self.observer = observer
        self.scheduler = scheduler
        self._inner: Optional[abc.DisposableBase] = None
        self._lock = threading.RLock()
        self._closed = False

    def attach(self, target: Observable) -> None:
        """Drop the current inner subscription and subscribe to ``target``."""
        with self._lock:
            if self._closed:
                return
            self._detach()
            self._inner = target.subscribe(
                self.observer.on_next,
                self.observer.on_error,
                self.observer.on_completed,
                scheduler=self.scheduler,
            )

    def _detach(self) -> None:
        inner, self._inner = self._inner, None
        if inner is not None:
            inner.dispose()

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._detach()


class StableStream(Observable):
    """
    A stream whose subscriptions follow a swappable target.

    Usage:
        stable = StableStream("counter", reactivex.of(1, 2))
        stable.subscribe(print)          # subscribes to the first target
        stable.retarget(reactivex.of(3)) # live subscriber moves over
    """

    def __init__(self, key: str, target: Observable):
        super().__init__()
        self.key = key
        self.version = 0
        self.orphaned = False
        self._target = target
        self._links: Set[_Link] = set()
        self._connection: Optional[abc.DisposableBase] = None
        self._guard = threading.RLock()

    @property
    def target(self) -> Observable:
        return self._target

    def _subscribe_core(
        self,
        observer: abc.ObserverBase,
        scheduler: Optional[abc.SchedulerBase] = None,
    ) -> abc.DisposableBase:
        if self.orphaned:
            observer.on_completed()
            return Disposable()
        link = _Link(observer, scheduler)
        with self._guard:
            self._links.add(link)
            target = self._target
        link.attach(target)
        return Disposable(lambda: self._unlink(link))

    def _unlink(self, link: _Link) -> None:
        with self._guard:
            self._links.discard(link)
        link.close()

    @property
    def subscriber_count(self) -> int:
        return len(self._links)

    def retarget(self, target: Observable) -> None:
        """
        Make ``target`` the current target.

        The multicast connection of the previous target is stopped and every
        live subscriber is moved to the new target.
        """
        with self._guard:
            self._target = target
            self.version += 1
            connection, self._connection = self._connection, None
            links: List[_Link] = list(self._links)
        if connection is not None:
            connection.dispose()
        for link in links:
            link.attach(target)

    def connect(self, scheduler: Optional[abc.SchedulerBase] = None) -> Optional[abc.DisposableBase]:
        """Start the current target's multicast connection."""
        connection = self._target.connect(scheduler=scheduler)
        with self._guard:
            self._connection = connection
        return connection

    def disconnect(self) -> None:
        with self._guard:
            connection, self._connection = self._connection, None
        if connection is not None:
            connection.dispose()

    def orphan(self) -> None:
        """Complete every subscriber and stop the multicast connection."""
        with self._guard:
            self.orphaned = True
            links = list(self._links)
            self._links.clear()
        self.disconnect()
        for link in links:
            link.close()
            link.observer.on_completed()

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return getattr(self._target, name)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.key!r}, version={self.version})"


class StableSubject(StableStream, abc.ObserverBase):
    """A StableStream that forwards notifications to its current target."""

    def on_next(self, value: Any) -> None:
        self._target.on_next(value)

    def on_error(self, error: Exception) -> None:
        self._target.on_error(error)

    def on_completed(self) -> None:
        self._target.on_completed()

    @property
    def value(self) -> Any:
        """The current target's value, read at call time."""
        return self._target.value


class StableCallable:
    """A function handle whose calls go to the current target."""

    def __init__(self, key: str, target: Callable[..., Any]):
        self.key = key
        self.version = 0
        self.orphaned = False
        self._target = target

    @property
    def target(self) -> Callable[..., Any]:
        return self._target

    @property
    def __name__(self) -> str:
        return getattr(self._target, "__name__", self.key)

    def retarget(self, target: Callable[..., Any]) -> None:
        self._target = target
        self.version += 1

    def orphan(self) -> None:
        self.orphaned = True

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self._target(*args, **kwargs)

    def __repr__(self) -> str:
        return f"StableCallable({self.key!r}, version={self.version})"


def make_wrapper(kind: str, key: str, target: Any) -> Any:
    if kind == KIND_SUBJECT:
        return StableSubject(key, target)
    if kind == KIND_STREAM:
        return StableStream(key, target)
    if kind == KIND_CALLABLE:
        return StableCallable(key, target)
    raise ValueError(f"No wrapper for kind {kind!r}")
