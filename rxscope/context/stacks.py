"""
RxScope Context Stacks - Why Does This Stream Exist?
====================================================

Three independent LIFO stacks record "what operation is in progress" so that a
stream built right now can discover why it exists:

- composition: pushed around a "compose N transforms onto a stream" call.
- transform: pushed around a user callback that belongs to a stream-producing
  transform (a ``switch_map`` projection, a ``catch`` handler, ...).
- subscription: pushed around the synchronous extent of a subscribe call, and
  around the delivery of a notification to a tracked observer.

The disambiguation rule:

    If the transform stack is non-empty when a stream is constructed, the
    stream is subscribe-time (dynamic) and inherits the transform name,
    instance ID and triggering IDs of the top frame. Otherwise it is
    pipe-time (static) and none of those fields are set.

Every push goes through ``frame()``, a context manager that pops in a
``finally`` block. A callback that raises still leaves the stack balanced;
otherwise every stream built afterwards would be mis-attributed.

Stacks are thread-local, so notifications delivered on scheduler threads
never see another thread's frames.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import (
    Callable,
    Generic,
    Iterator,
    List,
    Optional,
    Tuple,
    TypeVar,
)

from ..errors import Diagnostic, DiagnosticCode

logger = logging.getLogger(__name__)

F = TypeVar("F")

DiagnosticSink = Callable[[Diagnostic], None]


# ============================================================================
# FRAMES
# ============================================================================


@dataclass(frozen=True)
class CompositionFrame:
    """A compose call in progress."""

    group_id: str
    source_id: Optional[str]
    transforms: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TransformFrame:
    """A stream-producing transform callback in progress."""

    name: str
    instance_id: str
    subscription_id: Optional[str] = None
    stream_id: Optional[str] = None
    event: str = "next"


@dataclass(frozen=True)
class SubscriptionFrame:
    """A subscribe call (or a delivery to a tracked observer) in progress."""

    subscription_id: str
    stream_id: str
    parent_id: Optional[str] = None
    depth: int = 0
    event: Optional[str] = None


# ============================================================================
# STACK
# ============================================================================


class ContextStack(Generic[F]):
    """
    A thread-local LIFO stack of frames.

    ``push``/``pop`` are available for callers that cannot use ``frame()``,
    but every pair inside rxscope goes through ``frame()``.
    """

    def __init__(self, name: str, report: Optional[DiagnosticSink] = None):
        self.name = name
        self._report = report
        self._local = threading.local()

    @property
    def _items(self) -> List[F]:
        items = getattr(self._local, "items", None)
        if items is None:
            items = self._local.items = []
        return items

    def push(self, frame: F) -> F:
        self._items.append(frame)
        return frame

    def pop(self) -> Optional[F]:
        """Pop the top frame. An extra pop is reported and returns None."""
        items = self._items
        if not items:
            self._diagnose(
                DiagnosticCode.STACK_UNDERFLOW,
                f"pop on empty {self.name} stack",
            )
            return None
        return items.pop()

    def peek(self) -> Optional[F]:
        items = self._items
        return items[-1] if items else None

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __iter__(self) -> Iterator[F]:
        return iter(list(self._items))

    @contextmanager
    def frame(self, frame: F) -> Iterator[F]:
        """
        Push ``frame`` for the duration of the block.

        The frame is removed even if the block raises. If frames pushed
        inside the block were never popped, they are dropped together with
        this one and reported as a leak.
        """
        items = self._items
        depth = len(items)
        items.append(frame)
        try:
            yield frame
        finally:
            self._release(frame, depth)

    def truncate(self, depth: int) -> int:
        """
        Drop every frame above ``depth``.

        Returns:
            Number of frames dropped
        """
        items = self._items
        dropped = len(items) - depth
        if dropped <= 0:
            return 0
        del items[depth:]
        return dropped

    def clear(self) -> None:
        self._items.clear()

    def _release(self, frame: F, depth: int) -> None:
        items = self._items
        if len(items) == depth + 1 and items[-1] is frame:
            items.pop()
            return
        if len(items) > depth and items[depth] is frame:
            leaked = len(items) - depth - 1
            del items[depth:]
            self._diagnose(
                DiagnosticCode.STACK_LEAK,
                f"{leaked} frame(s) left on {self.name} stack",
                leaked=leaked,
            )
            return
        # Our frame is gone already: someone popped past it.
        self._diagnose(
            DiagnosticCode.STACK_UNDERFLOW,
            f"{self.name} frame was popped by someone else",
        )

    def _diagnose(self, code: str, message: str, **details) -> None:
        details["stack"] = self.name
        if self._report is not None:
            self._report(Diagnostic(code, message, details))
        else:
            logger.warning("%s: %s", code, message)


# ============================================================================
# TRIO
# ============================================================================


@dataclass(frozen=True)
class Attribution:
    """
    The context a newly built stream inherits from the stacks.

    ``created_by_transform`` is set only for subscribe-time streams.
    """

    group_id: Optional[str] = None
    created_by_transform: Optional[str] = None
    transform_instance_id: Optional[str] = None
    triggered_by_subscription: Optional[str] = None
    triggered_by_stream: Optional[str] = None
    triggered_by_event: Optional[str] = None
    is_internal: bool = False

    @property
    def is_dynamic(self) -> bool:
        return self.created_by_transform is not None


@dataclass(frozen=True)
class StackDepths:
    composition: int = 0
    transform: int = 0
    subscription: int = 0


class ContextStacks:
    """The composition, transform and subscription stacks together."""

    def __init__(self, report: Optional[DiagnosticSink] = None):
        self.composition: ContextStack[CompositionFrame] = ContextStack(
            "composition", report
        )
        self.transform: ContextStack[TransformFrame] = ContextStack(
            "transform", report
        )
        self.subscription: ContextStack[SubscriptionFrame] = ContextStack(
            "subscription", report
        )

    def attribute(self) -> Attribution:
        """
        Apply the disambiguation rule to the current stacks.

        A non-empty transform stack makes the stream dynamic and copies the
        top frame. Everything else is pipe time; a stream built during a
        subscribe call is only flagged as internal.
        """
        composition = self.composition.peek()
        group_id = composition.group_id if composition else None
        top = self.transform.peek()
        if top is not None:
            return Attribution(
                group_id=group_id,
                created_by_transform=top.name,
                transform_instance_id=top.instance_id,
                triggered_by_subscription=top.subscription_id,
                triggered_by_stream=top.stream_id,
                triggered_by_event=top.event,
                is_internal=True,
            )
        return Attribution(group_id=group_id, is_internal=bool(self.subscription))

    def attribute_late(self) -> Attribution:
        """
        Context for a stream first seen after construction.

        Used for lazy registration, which always happens at subscribe time:
        without a transform frame the active subscription is the best
        available trigger.
        """
        attribution = self.attribute()
        if attribution.is_dynamic:
            return attribution
        subscription = self.subscription.peek()
        if subscription is None:
            return attribution
        return Attribution(
            group_id=attribution.group_id,
            triggered_by_subscription=subscription.subscription_id,
            triggered_by_stream=subscription.stream_id,
            triggered_by_event=subscription.event,
            is_internal=True,
        )

    def depths(self) -> StackDepths:
        return StackDepths(
            composition=len(self.composition),
            transform=len(self.transform),
            subscription=len(self.subscription),
        )

    def restore(self, depths: StackDepths) -> int:
        """
        Truncate every stack back to ``depths``.

        Returns:
            Total number of frames dropped
        """
        return (
            self.composition.truncate(depths.composition)
            + self.transform.truncate(depths.transform)
            + self.subscription.truncate(depths.subscription)
        )

    def clear(self) -> None:
        self.composition.clear()
        self.transform.clear()
        self.subscription.clear()
