"""
RxScope Tracker - Hook Implementation and the Tracking Context
==============================================================

``Tracker`` implements the four hooks library adapters call. It turns them
into records:

- on_construct: a StreamRecord, attributed through the context stacks.
- on_compose: a CompositionRecord, one TransformApplication per transform,
  and the result stream amended with parent, operator chain and path.
- on_subscribe: a SubscriptionRecord linked to the enclosing subscription.
  The observer's callbacks are wrapped to record emissions, errors and
  completion, and to push a subscription frame while each notification is
  delivered.
- on_unsubscribe: the subscription moves to the archive.

``TrackingContext`` owns every collaborator (allocator, stacks, registry,
indexer, emitter, module sessions) and the runtime switches. One context is
shared process-wide through ``get_context()``; tests replace it with
``reset_context()``.

Paths:
    Composing ``k`` transforms onto a stream whose path is ``p`` gives the
    result the path ``f"{p}.{k}"``, or ``str(k)`` when ``p`` is empty.
"""

import logging
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import replace
from typing import (
    Any,
    Callable,
    Deque,
    Dict,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
)

import reactivex
from reactivex import abc

from .arguments import ArgumentCrawler
from .config import DEFAULT_CONFIG, TrackingConfig
from .context.stacks import CompositionFrame, ContextStacks, SubscriptionFrame
from .errors import Diagnostic, guarded
from .events import DIAGNOSTIC, EventEmitter, Listener, TrackingEvent
from .hmr.session import ModuleSessions
from .hooks import Compose, Subscribe, Transform, is_stream
from .ids import IdAllocator, id_index
from .records import (
    APPLICATION,
    ARGUMENT,
    COMPOSITION,
    EMISSION,
    EVENT_COMPLETE,
    EVENT_ERROR,
    EVENT_NEXT,
    INVOCATION,
    STREAM,
    SUBSCRIPTION,
    ArgumentBinding,
    ArgumentInvocation,
    CompositionRecord,
    EmissionRecord,
    RelationshipRecord,
    StreamRecord,
    SubscriptionRecord,
    TransformApplication,
    now,
)
from .registry import EntityRegistry
from .relationships import RelationshipIndexer
from .util.location import caller_location

logger = logging.getLogger(__name__)

# Attributes set on operator functions by tracked operator factories
FACTORY_ATTR = "_rxscope_factory_id"
NAME_ATTR = "_rxscope_name"


def transform_name(transform: Any) -> str:
    """Display name of a transform function."""
    name = getattr(transform, NAME_ATTR, None)
    if name:
        return name
    name = getattr(transform, "__name__", None) or type(transform).__name__
    return name.strip("_") or name


def derive_path(parent_path: str, count: int) -> str:
    return f"{parent_path}.{count}" if parent_path else str(count)


# ============================================================================
# DELIVERY
# ============================================================================


class _Delivery:
    """Wrapped observer callbacks of one tracked subscription."""

    def __init__(
        self,
        context: "TrackingContext",
        frame: SubscriptionFrame,
        on_next: Callable[[Any], None],
        on_error: Callable[[Exception], None],
        on_completed: Callable[[], None],
    ):
        self._context = context
        self._next_frame = replace(frame, event=EVENT_NEXT)
        self._error_frame = replace(frame, event=EVENT_ERROR)
        self._complete_frame = replace(frame, event=EVENT_COMPLETE)
        self._on_next = on_next
        self._on_error = on_error
        self._on_completed = on_completed

    @property
    def subscription_id(self) -> str:
        return self._next_frame.subscription_id

    @property
    def stream_id(self) -> str:
        return self._next_frame.stream_id

    def on_next(self, value: Any) -> None:
        context = self._context
        registry = context.registry
        if context.config.track_emissions and context.is_tracking():
            guarded(registry.record_emission, self.subscription_id, self.stream_id, value)
        with context.stacks.subscription.frame(self._next_frame):
            self._on_next(value)

    def on_error(self, error: Exception) -> None:
        context = self._context
        registry = context.registry
        if context.config.track_errors and context.is_tracking():
            guarded(registry.record_error, self.subscription_id, self.stream_id, error)
        try:
            with context.stacks.subscription.frame(self._error_frame):
                self._on_error(error)
        finally:
            guarded(registry.archive_subscription, self.subscription_id)

    def on_completed(self) -> None:
        context = self._context
        registry = context.registry
        if context.config.track_completions and context.is_tracking():
            guarded(registry.mark_completed, self.subscription_id)
        try:
            with context.stacks.subscription.frame(self._complete_frame):
                self._on_completed()
        finally:
            guarded(registry.archive_subscription, self.subscription_id)


# ============================================================================
# TRACKER
# ============================================================================


class Tracker:
    """The TrackingHooks implementation backed by a TrackingContext."""

    def __init__(self, context: "TrackingContext"):
        self._context = context

    def is_tracking(self) -> bool:
        return self._context.is_tracking()

    def is_stream(self, obj: Any) -> bool:
        return is_stream(obj)

    def on_construct(
        self, stream: Any, stream_type: Optional[str] = None
    ) -> Optional[StreamRecord]:
        context = self._context
        if not context.is_tracking():
            return None
        location = caller_location(2) if context.config.capture_locations else None
        return context.registry.create_stream(stream, stream_type, location)

    def on_compose(
        self, source: Any, transforms: Sequence[Transform], compose: Compose
    ) -> Any:
        context = self._context
        if not context.is_tracking() or not transforms:
            return compose(transforms)
        registry = context.registry
        source_record = registry.ensure_registered(source)
        names = [transform_name(t) for t in transforms]
        composition = registry.add(
            CompositionRecord(
                id=context.ids.next(COMPOSITION),
                source_id=source_record.id,
                transforms=names,
            )
        )
        frame = CompositionFrame(composition.id, source_record.id, tuple(names))
        wrapped = [
            self._application(composition.id, index, name, transform)
            for index, (name, transform) in enumerate(zip(names, transforms))
        ]
        with context.stacks.composition.frame(frame):
            result = compose(wrapped)

        if result is not source and self.is_stream(result):
            result_record = registry.ensure_registered(result)
            self._amend(result_record, source_record, composition.id, names)
            composition.result_id = result_record.id
        composition.ended_at = now()
        registry.update(composition)
        return result

    def _application(
        self, composition_id: str, index: int, name: str, transform: Transform
    ) -> Transform:
        context = self._context

        def record(upstream: Any, target: Any) -> None:
            registry = context.registry
            source = registry.get(upstream)
            result = registry.get(target)
            if result is None and self.is_stream(target):
                result = registry.ensure_registered(target)
            registry.add(
                TransformApplication(
                    id=context.ids.next(APPLICATION),
                    composition_id=composition_id,
                    index=index,
                    name=name,
                    source_id=source.id if source is not None else None,
                    target_id=result.id if result is not None else None,
                    factory_id=getattr(transform, FACTORY_ATTR, None),
                )
            )

        def apply(upstream: Any) -> Any:
            target = transform(upstream)
            if context.is_tracking():
                guarded(record, upstream, target)
            return target

        return apply

    def _amend(
        self,
        record: StreamRecord,
        source: StreamRecord,
        composition_id: str,
        names: List[str],
    ) -> None:
        if id_index(source.id) > id_index(record.id):
            logger.debug(
                "Not amending %s: source %s was allocated later", record.id, source.id
            )
            return
        record.parent_id = source.id
        record.operators = list(names)
        record.path = derive_path(source.path, len(names))
        record.group_id = composition_id
        self._context.registry.update(record)

    def on_subscribe(
        self,
        stream: Any,
        on_next: Callable[[Any], None],
        on_error: Callable[[Exception], None],
        on_completed: Callable[[], None],
        subscribe: Subscribe,
    ) -> Tuple[Optional[str], Any]:
        context = self._context
        if not context.is_tracking():
            return None, subscribe(on_next, on_error, on_completed)
        registry = context.registry
        stream_record = registry.ensure_registered(stream)
        parent = context.stacks.subscription.peek()
        parent_id = None
        if parent is not None and registry.is_active(parent.subscription_id):
            parent_id = parent.subscription_id
        record = SubscriptionRecord(
            id=context.ids.next(SUBSCRIPTION),
            stream_id=stream_record.id,
            parent_id=parent_id,
            depth=parent.depth + 1 if parent_id is not None else 0,
            triggered_by_stream=parent.stream_id if parent is not None else None,
            module_id=registry.current_module(),
        )
        registry.register_subscription(record)

        frame = SubscriptionFrame(record.id, stream_record.id, parent_id, record.depth)
        delivery = _Delivery(context, frame, on_next, on_error, on_completed)
        try:
            with context.stacks.subscription.frame(frame):
                handle = subscribe(
                    delivery.on_next, delivery.on_error, delivery.on_completed
                )
        except Exception:
            guarded(registry.archive_subscription, record.id)
            raise
        return record.id, handle

    def on_unsubscribe(self, subscription_id: str) -> None:
        self._context.registry.archive_subscription(subscription_id)


# ============================================================================
# CONTEXT
# ============================================================================


class TrackingContext:
    """
    Everything tracking needs, in one explicit value.

    Usage:
        context = get_context()
        with context.suspended():
            ...  # nothing in here is recorded
        context.by_id("obs", "obs#0")
    """

    def __init__(self, config: Optional[TrackingConfig] = None):
        self.config = config or DEFAULT_CONFIG
        self._local = threading.local()
        self.diagnostics: Deque[Diagnostic] = deque(maxlen=self.config.max_diagnostics)

        self.ids = IdAllocator()
        self.stacks = ContextStacks(report=self.report)
        self.emitter = EventEmitter(
            history_size=self.config.max_event_history, guard=self.suspended
        )
        self.registry = EntityRegistry(self.ids, self.stacks, self.emitter, self.config)
        self.relationships = RelationshipIndexer(self.ids, self.registry)
        self.arguments = ArgumentCrawler(
            self.ids, self.registry, self.stacks, is_tracking=self.is_tracking
        )
        self.tracker = Tracker(self)
        self.sessions = ModuleSessions(self)
        self.registry.current_module = self.sessions.current_module_id
        self._cleanup: Optional[abc.DisposableBase] = None

    # ------------------------------------------------------------------
    # Switches
    # ------------------------------------------------------------------

    def is_tracking(self) -> bool:
        return self.config.enabled and not getattr(self._local, "suspended", 0)

    @contextmanager
    def suspended(self) -> Iterator[None]:
        """Stop recording on this thread for the duration of the block."""
        self._local.suspended = getattr(self._local, "suspended", 0) + 1
        try:
            yield
        finally:
            self._local.suspended -= 1

    def enable(self) -> None:
        self.update_config(enabled=True)

    def disable(self) -> None:
        self.update_config(enabled=False)

    def update_config(self, **changes: Any) -> TrackingConfig:
        """Apply config changes. Unknown names raise TypeError."""
        self._apply(self.config.with_changes(**changes))
        return self.config

    def reset_config(self) -> TrackingConfig:
        self._apply(DEFAULT_CONFIG)
        return self.config

    def _apply(self, config: TrackingConfig) -> None:
        self.config = config
        self.registry.configure(config)
        if self.diagnostics.maxlen != config.max_diagnostics:
            self.diagnostics = deque(self.diagnostics, maxlen=config.max_diagnostics)
        if self.emitter.history_size != config.max_event_history:
            self.emitter.resize_history(config.max_event_history)

    # ------------------------------------------------------------------
    # Diagnostics and events
    # ------------------------------------------------------------------

    def report(self, diagnostic: Diagnostic) -> None:
        """Log a diagnostic, keep it, and publish it."""
        logger.warning("%s: %s", diagnostic.code, diagnostic.message)
        self.diagnostics.append(diagnostic)
        self.emitter.publish(DIAGNOSTIC, diagnostic.code, diagnostic)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Listen to every published TrackingEvent."""
        return self.emitter.subscribe(listener)

    @property
    def event_history(self) -> List[TrackingEvent]:
        return self.emitter.history

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def by_id(self, kind: str, entity_id: str) -> Optional[Any]:
        return self.registry.by_id(kind, entity_id)

    def active_subscriptions_for(self, stream_id: str) -> List[SubscriptionRecord]:
        return self.registry.active_for(stream_id)

    def relationships_using(self, stream_id: str) -> List[RelationshipRecord]:
        return self.relationships.relationships_using(stream_id)

    def stream_for(self, stream_id: str) -> Optional[Any]:
        return self.registry.stream_for(stream_id)

    def children_of(self, subscription_id: str) -> List[SubscriptionRecord]:
        return self.registry.children_of(subscription_id)

    def wrapper_for(self, module_id: str, key: str) -> Optional[Any]:
        return self.sessions.wrapper_for(module_id, key)

    def root_streams(self) -> List[StreamRecord]:
        """Streams not derived by a transform or returned by a function argument."""
        registry = self.registry
        return [r for r in registry.records(STREAM) if not registry.is_derived(r.id)]

    def compositions_for(self, stream_id: str) -> List[CompositionRecord]:
        return self.registry.linked(COMPOSITION, stream_id)

    def applications_in(self, composition_id: str) -> List[TransformApplication]:
        applications = self.registry.linked(APPLICATION, composition_id)
        return sorted(applications, key=lambda application: application.index)

    def bindings_for(self, factory_id: str) -> List[ArgumentBinding]:
        return self.registry.linked(ARGUMENT, factory_id)

    def top_level_subscriptions(self) -> List[SubscriptionRecord]:
        """Active and archived subscriptions without a parent, oldest first."""
        roots = [s for s in self.registry.records(SUBSCRIPTION) if s.parent_id is None]
        return sorted(roots, key=lambda subscription: id_index(subscription.id))

    def emissions_for(self, subscription_id: str) -> List[EmissionRecord]:
        subscription = self.registry.subscription(subscription_id)
        if subscription is None:
            return []
        found = (self.registry.by_id(EMISSION, e) for e in subscription.emission_ids)
        return [emission for emission in found if emission is not None]

    def dynamic_streams(
        self, binding_id: str, subscription_id: Optional[str] = None
    ) -> List[StreamRecord]:
        """
        Streams returned by calls of a function argument.

        Args:
            binding_id: The function argument's ArgumentBinding ID
            subscription_id: Only calls made while delivering to this
                subscription
        """
        streams = []
        for invocation in self.registry.linked(INVOCATION, binding_id):
            if invocation.stream_id is None:
                continue
            if subscription_id and invocation.subscription_id != subscription_id:
                continue
            record = self.registry.by_id(STREAM, invocation.stream_id)
            if record is not None:
                streams.append(record)
        return streams

    def invocation_for_stream(self, stream_id: str) -> Optional[ArgumentInvocation]:
        """The function-argument call that returned ``stream_id``, if any."""
        return self.registry.invocation_for(stream_id)

    def stats(self) -> Dict[str, int]:
        stats = self.registry.stats()
        stats["diagnostics"] = len(self.diagnostics)
        return stats

    # ------------------------------------------------------------------
    # Archive maintenance
    # ------------------------------------------------------------------

    def cleanup_archive(self) -> List[str]:
        return self.registry.cleanup_archive()

    def start_auto_cleanup(
        self, scheduler: Optional[abc.SchedulerBase] = None
    ) -> None:
        """Run ``cleanup_archive`` every ``cleanup_interval`` seconds."""
        self.stop_auto_cleanup()
        with self.suspended():
            self._cleanup = reactivex.interval(
                self.config.cleanup_interval, scheduler=scheduler
            ).subscribe(lambda _: self._scheduled_cleanup())

    def _scheduled_cleanup(self) -> None:
        with self.suspended():
            evicted = self.cleanup_archive()
        if evicted:
            logger.debug("Evicted %d archived subscriptions", len(evicted))

    def stop_auto_cleanup(self) -> None:
        cleanup, self._cleanup = self._cleanup, None
        if cleanup is not None:
            cleanup.dispose()

    def close(self) -> None:
        """Stop background work. The records stay readable."""
        self.stop_auto_cleanup()


# ============================================================================
# PROCESS-WIDE CONTEXT
# ============================================================================

_context: Optional[TrackingContext] = None


def get_context() -> TrackingContext:
    """
    Get or create the process-wide tracking context.

    Lazy singleton: created on first access, configured from ``RXSCOPE_*``
    environment variables. Tests start over with ``reset_context()``.
    """
    global _context
    if _context is None:
        _context = TrackingContext(TrackingConfig.from_env())
    return _context


def reset_context(config: Optional[TrackingConfig] = None) -> TrackingContext:
    """
    Replace the process-wide context with a fresh one. Test-only.

    Args:
        config: Config for the new context (defaults to ``DEFAULT_CONFIG``)
    """
    global _context
    if _context is not None:
        _context.close()
    _context = TrackingContext(config)
    return _context
