"""
RxScope Event Emitter - One Ordered Channel for Every Mutation
==============================================================

Every record the Entity Store creates or updates is published here as a
``TrackingEvent(kind, id, data)``. Storage and UI collaborators subscribe to
this single channel and see events in exact call order.

Re-entrancy:
    A listener may do something that is itself tracked (building a stream,
    subscribing to one). Such writes are queued and delivered after the
    current listener returns, never from inside it, the same way the reactive
    propagation loop refuses to re-enter itself. Listeners also run inside
    the ``guard`` context (the tracking context passes its ``suspended()``),
    so listener work does not generate fresh events in the first place.

Deferral:
    With a ``schedule`` callable, draining moves to a later turn of the host
    event loop, e.g. ``EventEmitter(schedule=loop.call_soon)``.
"""

import logging
from collections import deque
from contextlib import nullcontext
from typing import (
    Any,
    Callable,
    ContextManager,
    Deque,
    List,
    NamedTuple,
    Optional,
)

logger = logging.getLogger(__name__)

# Actions appended to the record kind, e.g. "obs.create"
CREATE = "create"
UPDATE = "update"
ARCHIVE = "archive"
EVICT = "evict"
DIAGNOSTIC = "diagnostic"


class TrackingEvent(NamedTuple):
    """A record creation or update: ``kind`` is ``"<record kind>.<action>"``."""

    kind: str
    id: str
    data: Any


Listener = Callable[[TrackingEvent], None]


def event_kind(record_kind: str, action: str) -> str:
    return f"{record_kind}.{action}"


class EventEmitter:
    """
    Ordered publish/subscribe channel.

    Usage:
        emitter = EventEmitter()
        unsubscribe = emitter.subscribe(print)
        emitter.publish("obs.create", "obs#0", record)
        unsubscribe()
    """

    def __init__(
        self,
        history_size: int = 10000,
        schedule: Optional[Callable[[Callable[[], None]], Any]] = None,
        guard: Optional[Callable[[], ContextManager[Any]]] = None,
    ):
        """
        Args:
            history_size: Published events kept for late readers
            schedule: Defers draining to a later turn when given
            guard: Context manager factory wrapped around each listener call
        """
        self._listeners: List[Listener] = []
        self._queue: Deque[TrackingEvent] = deque()
        self._history: Deque[TrackingEvent] = deque(maxlen=history_size)
        self._schedule = schedule
        self._guard = guard or nullcontext
        self._draining = False
        self._drain_scheduled = False

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register ``listener`` for every future event.

        Returns:
            A function that removes the listener; calling it twice is harmless
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, kind: str, entity_id: str, data: Any = None) -> TrackingEvent:
        """Queue an event and deliver it unless a delivery is already running."""
        event = TrackingEvent(kind, entity_id, data)
        self._history.append(event)
        self._queue.append(event)
        if self._schedule is not None:
            if not self._drain_scheduled:
                self._drain_scheduled = True
                self._schedule(self._scheduled_drain)
        else:
            self.drain()
        return event

    def drain(self) -> None:
        """Deliver queued events in order. Re-entrant calls return immediately."""
        if self._draining:
            return
        self._draining = True
        try:
            while self._queue:
                event = self._queue.popleft()
                for listener in list(self._listeners):
                    self._deliver(listener, event)
        finally:
            self._draining = False

    def _scheduled_drain(self) -> None:
        self._drain_scheduled = False
        self.drain()

    def _deliver(self, listener: Listener, event: TrackingEvent) -> None:
        try:
            with self._guard():
                listener(event)
        except Exception as e:
            logger.error(f"Tracking event listener failed on {event.kind}: {e!r}")

    @property
    def history(self) -> List[TrackingEvent]:
        """Most recent published events, oldest first."""
        return list(self._history)

    @property
    def history_size(self) -> Optional[int]:
        return self._history.maxlen

    def resize_history(self, size: int) -> None:
        self._history = deque(self._history, maxlen=size)

    @property
    def pending(self) -> int:
        return len(self._queue)

    def clear_history(self) -> None:
        self._history.clear()

    def reset(self) -> None:
        """Drop listeners, queued events and history. Test-only."""
        self._listeners.clear()
        self._queue.clear()
        self._history.clear()
        self._draining = False
        self._drain_scheduled = False
