"""
RxScope Entity Registry - Memory-Safe Store of Tracked Entities
===============================================================

Maps live stream objects to their StreamRecord without keeping them alive, and
keeps every record reachable by ID after the object is gone.

Layout:
    - Arena: one dense list per record kind, indexed by the numeric part of
      the ID (``"obs#7"`` lives in slot 7 of the ``obs`` table). Emissions and
      errors are evicted with their subscription, so they live in sparse
      tables that shrink again.
    - Identity side table: ``id(obj) -> (weakref, record id)``. The weakref
      callback removes the entry when the object is collected, so a recycled
      ``id()`` never resolves to a dead object's record.
    - Subscriptions: active ones in insertion order; torn-down ones move to a
      ``cachetools.TLRUCache`` archive that expires each record a fixed age
      after it was archived, and bounded by count when ``cleanup_archive()``
      runs.
    - Links: reverse indices from an owner to the records that point at it
      (compositions of a stream, applications of a composition, bindings of
      a factory, invocations of a binding).

No operation raises. Lookups that miss return None (or an empty list).

Every mutation is published on the event channel in call order.

Thread Safety:
    Mutations are serialized with an RLock. Scheduler threads of the host
    library may deliver notifications concurrently with the main thread.
"""

import logging
import sys
import threading
import time
import weakref
from collections import OrderedDict, defaultdict
from typing import (
    Any,
    Callable,
    DefaultDict,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Tuple,
)

from cachetools import TLRUCache

from .config import DEFAULT_CONFIG, TrackingConfig
from .context.stacks import Attribution, ContextStacks
from .events import ARCHIVE, CREATE, EVICT, UPDATE, EventEmitter, event_kind
from .ids import IdAllocator, parse_id
from .records import (
    APPLICATION,
    ARGUMENT,
    COMPOSITION,
    EMISSION,
    ERROR,
    INVOCATION,
    STREAM,
    SUBSCRIPTION,
    ArgumentInvocation,
    EmissionRecord,
    ErrorRecord,
    SourceLocation,
    StreamRecord,
    SubscriptionRecord,
)

logger = logging.getLogger(__name__)

# Kinds removed together with their subscription
EVICTABLE_KINDS = (EMISSION, ERROR)

# kind -> field naming the owner a record is listed under
LINK_FIELDS = {
    COMPOSITION: "source_id",
    APPLICATION: "composition_id",
    ARGUMENT: "owner_id",
    INVOCATION: "binding_id",
}


# ============================================================================
# ARENA
# ============================================================================


class RecordArena:
    """
    Dense per-kind tables indexed by allocated ID number.

    IDs are allocated monotonically from zero, so the tables stay compact; a
    slot is None when the record was evicted or never stored. Kinds listed
    as ``sparse`` are kept in dicts keyed by index instead, so removing them
    frees their slot.
    """

    def __init__(self, sparse: Iterable[str] = ()):
        self._tables: Dict[str, List[Any]] = {}
        self._sparse: Dict[str, Dict[int, Any]] = {kind: {} for kind in sparse}

    def put(self, record: Any) -> None:
        parsed = parse_id(record.id)
        if parsed is None:
            raise ValueError(f"Not an allocated id: {record.id!r}")
        kind, index = parsed
        sparse = self._sparse.get(kind)
        if sparse is not None:
            sparse[index] = record
            return
        table = self._tables.setdefault(kind, [])
        if index >= len(table):
            table.extend([None] * (index + 1 - len(table)))
        table[index] = record

    def get(self, entity_id: str) -> Optional[Any]:
        parsed = parse_id(entity_id)
        if parsed is None:
            return None
        kind, index = parsed
        sparse = self._sparse.get(kind)
        if sparse is not None:
            return sparse.get(index)
        table = self._tables.get(kind)
        if table is None or index >= len(table):
            return None
        return table[index]

    def remove(self, entity_id: str) -> None:
        parsed = parse_id(entity_id)
        if parsed is None:
            return
        kind, index = parsed
        sparse = self._sparse.get(kind)
        if sparse is not None:
            sparse.pop(index, None)
            return
        table = self._tables.get(kind)
        if table is not None and index < len(table):
            table[index] = None

    def records(self, kind: str) -> Iterator[Any]:
        sparse = self._sparse.get(kind)
        if sparse is not None:
            return (sparse[index] for index in sorted(sparse))
        return (record for record in self._tables.get(kind, ()) if record is not None)

    def count(self, kind: str) -> int:
        return sum(1 for _ in self.records(kind))

    def slots(self, kind: str) -> int:
        """Storage held for ``kind``, including empty slots."""
        sparse = self._sparse.get(kind)
        if sparse is not None:
            return len(sparse)
        return len(self._tables.get(kind, ()))

    def clear(self) -> None:
        self._tables.clear()
        for sparse in self._sparse.values():
            sparse.clear()


# ============================================================================
# REGISTRY
# ============================================================================


class EntityRegistry:
    """
    The Entity Store.

    Usage:
        registry = EntityRegistry(IdAllocator(), ContextStacks(), EventEmitter())
        record = registry.create_stream(stream)
        registry.get(stream) is record       # True
        registry.by_id("obs", record.id)     # record, even after stream dies
    """

    def __init__(
        self,
        ids: IdAllocator,
        stacks: ContextStacks,
        emitter: EventEmitter,
        config: TrackingConfig = DEFAULT_CONFIG,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ids = ids
        self._stacks = stacks
        self._emitter = emitter
        self._config = config
        self._clock = clock
        self._lock = threading.RLock()

        self._arena = RecordArena(sparse=EVICTABLE_KINDS)
        self._identity: Dict[int, Tuple[Any, str]] = {}
        self._live: Dict[str, Any] = {}
        self._links: DefaultDict[Tuple[str, str], Dict[str, None]] = defaultdict(dict)
        # stream id -> invocation that returned it, first one wins
        self._invoked: Dict[str, str] = {}
        self._applied: Dict[str, None] = {}

        self._active: "OrderedDict[str, SubscriptionRecord]" = OrderedDict()
        # id -> (archive clock reading, emission and error ids), survives expiry
        self._archive_order: "OrderedDict[str, Tuple[float, List[str]]]" = (
            OrderedDict()
        )
        self._archive = self._new_archive()

        # Set by the tracking context to stamp records with the running module
        self.current_module: Callable[[], Optional[str]] = lambda: None

    def _new_archive(self) -> TLRUCache:
        return TLRUCache(maxsize=sys.maxsize, ttu=self._expires_at, timer=self._clock)

    def _expires_at(self, key: str, record: SubscriptionRecord, now: float) -> float:
        archived_at = self._archive_order[key][0] if key in self._archive_order else now
        return archived_at + self._config.max_archive_age

    def configure(self, config: TrackingConfig) -> None:
        """
        Apply a new config.

        A changed age cap rebuilds the archive. Records keep the time they
        were archived, so the new cap is measured from then.
        """
        with self._lock:
            age_changed = config.max_archive_age != self._config.max_archive_age
            self._config = config
            if age_changed:
                old = [(key, self._archive.get(key)) for key in self._archive_order]
                self._archive = self._new_archive()
                for key, record in old:
                    if record is not None:
                        self._archive[key] = record

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    def register(self, obj: Any, record: StreamRecord) -> StreamRecord:
        """
        Associate ``obj`` with ``record``.

        Idempotent on first sight: if ``obj`` is already registered its
        existing record is returned and ``record`` is discarded.
        """
        with self._lock:
            existing = self.get(obj)
            if existing is not None:
                return existing
            self._bind(obj, record.id)
            self._arena.put(record)
        self._publish(STREAM, CREATE, record)
        return record

    def get(self, obj: Any) -> Optional[StreamRecord]:
        """Record for a live object, or None if it was never registered."""
        entry = self._identity.get(id(obj))
        if entry is None:
            return None
        ref, record_id = entry
        target = ref() if isinstance(ref, weakref.ref) else ref
        if target is not obj:
            return None
        return self._arena.get(record_id)

    def create_stream(
        self,
        obj: Any,
        stream_type: Optional[str] = None,
        location: Optional[SourceLocation] = None,
    ) -> StreamRecord:
        """
        Build and register a record for a freshly constructed stream.

        The record inherits whatever the context stacks say right now; see
        ``ContextStacks.attribute`` for the pipe-time/subscribe-time rule.
        """
        existing = self.get(obj)
        if existing is not None:
            return existing
        record = self._new_stream_record(
            self._stacks.attribute(), stream_type, location
        )
        return self.register(obj, record)

    def ensure_registered(
        self, obj: Any, stream_type: Optional[str] = None
    ) -> StreamRecord:
        """
        Record for ``obj``, creating one lazily if construction was missed.

        Lazy registration happens at subscribe or compose time, so the
        captured context is the context of this later call. The record is
        flagged ``lazily_registered`` and carries fewer fields than one made
        by the construction hook.
        """
        existing = self.get(obj)
        if existing is not None:
            return existing
        record = self._new_stream_record(self._stacks.attribute_late(), stream_type)
        record.lazily_registered = True
        logger.debug("Lazily registered %s as %s", type(obj).__name__, record.id)
        return self.register(obj, record)

    def _new_stream_record(
        self,
        attribution: Attribution,
        stream_type: Optional[str],
        location: Optional[SourceLocation] = None,
    ) -> StreamRecord:
        return StreamRecord(
            id=self._ids.next(STREAM),
            location=location,
            stream_type=stream_type,
            group_id=attribution.group_id,
            module_id=self.current_module(),
            is_internal=attribution.is_internal,
            created_by_transform=attribution.created_by_transform,
            transform_instance_id=attribution.transform_instance_id,
            triggered_by_subscription=attribution.triggered_by_subscription,
            triggered_by_stream=attribution.triggered_by_stream,
            triggered_by_event=attribution.triggered_by_event,
        )

    def stream_for(self, stream_id: str) -> Optional[Any]:
        """The live object behind ``stream_id``, or None once collected."""
        ref = self._live.get(stream_id)
        if ref is None:
            return None
        return ref() if isinstance(ref, weakref.ref) else ref

    def _bind(self, obj: Any, record_id: str) -> None:
        key = id(obj)
        try:
            ref: Any = weakref.ref(obj, self._collector(key, record_id))
        except TypeError:
            # No weakref support: pinned for the rest of the process.
            logger.debug("%s is not weak-referenceable", type(obj).__name__)
            ref = obj
        self._identity[key] = (ref, record_id)
        self._live[record_id] = ref

    def _collector(self, key: int, record_id: str) -> Callable[[Any], None]:
        def collected(ref: Any) -> None:
            entry = self._identity.get(key)
            if entry is not None and entry[0] is ref:
                del self._identity[key]
            if self._live.get(record_id) is ref:
                del self._live[record_id]

        return collected

    # ------------------------------------------------------------------
    # Generic records
    # ------------------------------------------------------------------

    def add(self, record: Any) -> Any:
        """Store a record of any kind and publish its creation."""
        kind = self._kind_of(record.id)
        with self._lock:
            self._arena.put(record)
            self._link(kind, record)
        self._publish(kind, CREATE, record)
        return record

    def _link(self, kind: str, record: Any) -> None:
        field_name = LINK_FIELDS.get(kind)
        if field_name is None:
            return
        owner_id = getattr(record, field_name)
        if owner_id is not None:
            self._links[(kind, owner_id)][record.id] = None
        if kind == APPLICATION and record.target_id is not None:
            self._applied[record.target_id] = None
        elif kind == INVOCATION and record.stream_id is not None:
            self._invoked.setdefault(record.stream_id, record.id)

    def linked(self, kind: str, owner_id: str) -> List[Any]:
        """
        Records of ``kind`` listed under ``owner_id``, oldest first.

        Compositions are listed under their source stream, applications
        under their composition, bindings under their factory and
        invocations under their binding.
        """
        with self._lock:
            record_ids = list(self._links.get((kind, owner_id), ()))
        found = (self._arena.get(record_id) for record_id in record_ids)
        return [record for record in found if record is not None]

    def invocation_for(self, stream_id: str) -> Optional[ArgumentInvocation]:
        """The function-argument call that returned ``stream_id``, if any."""
        invocation_id = self._invoked.get(stream_id)
        return self._arena.get(invocation_id) if invocation_id else None

    def is_derived(self, stream_id: str) -> bool:
        """True for transform outputs and streams returned by function arguments."""
        return stream_id in self._applied or stream_id in self._invoked

    def update(self, record: Any) -> Any:
        """Publish that ``record`` changed in place."""
        self._publish(self._kind_of(record.id), UPDATE, record)
        return record

    def by_id(self, kind: str, entity_id: str) -> Optional[Any]:
        """
        Historical lookup by ID.

        Args:
            kind: Record kind (``"obs"``, ``"sub"``, ``"rel"``, ...)
            entity_id: The ID to look up

        Returns:
            The record, or None for unknown, evicted or mismatched IDs
        """
        parsed = parse_id(entity_id)
        if parsed is None or parsed[0] != kind:
            return None
        if kind == SUBSCRIPTION:
            return self.subscription(entity_id)
        return self._arena.get(entity_id)

    def records(self, kind: str) -> List[Any]:
        """Every stored record of ``kind`` in allocation order."""
        if kind == SUBSCRIPTION:
            return self.active_subscriptions() + self.archived_subscriptions()
        return list(self._arena.records(kind))

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def register_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """Add an active subscription and link it under its parent."""
        with self._lock:
            self._active[record.id] = record
            parent = self._active.get(record.parent_id) if record.parent_id else None
            if parent is not None:
                parent.child_ids.append(record.id)
        self._publish(SUBSCRIPTION, CREATE, record)
        if parent is not None:
            self._publish(SUBSCRIPTION, UPDATE, parent)
        return record

    def archive_subscription(self, subscription_id: str) -> bool:
        """
        Move an active subscription to the archive.

        Idempotent: archiving an unknown or already archived ID is a no-op.

        Returns:
            True if the subscription was active
        """
        with self._lock:
            record = self._active.pop(subscription_id, None)
            if record is None:
                return False
            record.closed_at = time.time()
            self._archive_order[subscription_id] = (
                self._clock(),
                record.emission_ids + record.error_ids,
            )
            self._archive[subscription_id] = record
        self._publish(SUBSCRIPTION, ARCHIVE, record)
        return True

    def subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        record = self._active.get(subscription_id)
        if record is not None:
            return record
        return self._archive.get(subscription_id)

    def is_active(self, subscription_id: str) -> bool:
        return subscription_id in self._active

    def active_for(self, stream_id: str) -> List[SubscriptionRecord]:
        """Active subscriptions to ``stream_id`` in subscription order."""
        return [r for r in list(self._active.values()) if r.stream_id == stream_id]

    def children_of(self, subscription_id: str) -> List[SubscriptionRecord]:
        record = self.subscription(subscription_id)
        if record is None:
            return []
        children = (self.subscription(child) for child in record.child_ids)
        return [child for child in children if child is not None]

    def active_subscriptions(self) -> List[SubscriptionRecord]:
        return list(self._active.values())

    def archived_subscriptions(self) -> List[SubscriptionRecord]:
        """Archived subscriptions that have not been evicted, oldest first."""
        with self._lock:
            archived = [self._archive.get(key) for key in self._archive_order]
        return [record for record in archived if record is not None]

    @property
    def archived_count(self) -> int:
        return len(self.archived_subscriptions())

    def cleanup_archive(self) -> List[str]:
        """
        Evict archived subscriptions by age, then by count, oldest first.

        Emission and error records of evicted subscriptions go with them.

        Returns:
            IDs of the evicted subscriptions
        """
        cap = self._config.max_archived_subscriptions
        with self._lock:
            self._archive.expire()
            evicted = [key for key in self._archive_order if key not in self._archive]
            excess = len(self._archive_order) - len(evicted) - cap
            if excess > 0:
                remaining = [key for key in self._archive_order if key in self._archive]
                evicted.extend(remaining[:excess])
            for key in evicted:
                _archived_at, entity_ids = self._archive_order.pop(key)
                try:
                    del self._archive[key]
                except KeyError:
                    pass
                for entity_id in entity_ids:
                    self._arena.remove(entity_id)
        for key in evicted:
            self._emitter.publish(event_kind(SUBSCRIPTION, EVICT), key, None)
        return evicted

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def record_emission(
        self, subscription_id: str, stream_id: str, value: Any
    ) -> Optional[EmissionRecord]:
        """Record an ``on_next`` for an active subscription, within the cap."""
        cap = self._config.max_emissions_per_subscription
        with self._lock:
            subscription = self._active.get(subscription_id)
            if subscription is None:
                return None
            index = subscription.emission_count
            subscription.emission_count += 1
            if cap and len(subscription.emission_ids) >= cap:
                return None
            emission = EmissionRecord(
                id=self._ids.next(EMISSION),
                subscription_id=subscription_id,
                stream_id=stream_id,
                value=value,
                index=index,
            )
            subscription.emission_ids.append(emission.id)
            self._arena.put(emission)
        self._publish(EMISSION, CREATE, emission)
        return emission

    def record_error(
        self, subscription_id: str, stream_id: str, error: BaseException
    ) -> Optional[ErrorRecord]:
        with self._lock:
            subscription = self._active.get(subscription_id)
            if subscription is None:
                return None
            record = ErrorRecord(
                id=self._ids.next(ERROR),
                subscription_id=subscription_id,
                stream_id=stream_id,
                error=error,
            )
            subscription.error_ids.append(record.id)
            self._arena.put(record)
        self._publish(ERROR, CREATE, record)
        return record

    def mark_completed(self, subscription_id: str) -> None:
        with self._lock:
            subscription = self._active.get(subscription_id)
            if subscription is None:
                return
            subscription.completed_at = time.time()
        self._publish(SUBSCRIPTION, UPDATE, subscription)

    # ------------------------------------------------------------------

    def _kind_of(self, entity_id: str) -> str:
        parsed = parse_id(entity_id)
        return parsed[0] if parsed else "unknown"

    def _publish(self, kind: str, action: str, record: Any) -> None:
        self._emitter.publish(event_kind(kind, action), record.id, record)

    def stats(self) -> Dict[str, int]:
        return {
            "streams": self._arena.count(STREAM),
            "live_streams": len(self._live),
            "active_subscriptions": len(self._active),
            "archived_subscriptions": self.archived_count,
        }

    def reset(self) -> None:
        """Drop every record. Test-only."""
        with self._lock:
            self._arena.clear()
            self._identity.clear()
            self._live.clear()
            self._links.clear()
            self._invoked.clear()
            self._applied.clear()
            self._active.clear()
            self._archive_order.clear()
            self._archive = self._new_archive()
