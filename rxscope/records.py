"""
RxScope Records - Data Model for Tracked Entities
=================================================

Plain dataclasses describing everything the debugger can show. Records never
hold strong references to the live objects they describe: the Entity Store
keeps a weak side table for that, so a record outlives its stream and keeps
serving historical metadata by ID.

Three "times" shape the stream record:

1. PIPE TIME - the stream was built while composing the program. None of the
   dynamic-origin fields are set.
2. SUBSCRIBE TIME - the stream was built inside a running transform callback
   (e.g. a ``switch_map`` projection). ``created_by_transform``,
   ``transform_instance_id`` and the ``triggered_by_*`` fields name the frame
   that was on top of the transform-execution stack.
3. ARGUMENT TIME - the stream was passed to a combinator. That fact lives in
   a separate RelationshipRecord and does not depend on when the stream was
   built.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# Record kinds. They double as the prefix of every allocated ID.
STREAM = "obs"
SUBSCRIPTION = "sub"
COMPOSITION = "pipe"
APPLICATION = "apply"
FACTORY = "fn"
TRANSFORM_INSTANCE = "op"
ARGUMENT = "arg"
INVOCATION = "call"
RELATIONSHIP = "rel"
EMISSION = "emit"
ERROR = "err"
WRAPPER = "wrap"
SESSION = "session"

# Lifecycle events that can trigger a transform callback.
EVENT_NEXT = "next"
EVENT_ERROR = "error"
EVENT_COMPLETE = "complete"
EVENT_SUBSCRIBE = "subscribe"


def now() -> float:
    """Wall-clock timestamp used on every record."""
    return time.time()


@dataclass(frozen=True)
class SourceLocation:
    """Where in user code an entity was created."""

    filename: str
    lineno: int
    function: str


@dataclass
class StreamRecord:
    """
    Metadata for one stream object.

    Created when the construction hook fires and amended by the composition
    hook with ``parent_id``, ``operators``, ``path`` and ``group_id``.
    """

    id: str
    created_at: float = field(default_factory=now)
    location: Optional[SourceLocation] = None
    stream_type: Optional[str] = None
    parent_id: Optional[str] = None
    operators: List[str] = field(default_factory=list)
    path: str = ""
    group_id: Optional[str] = None
    module_id: Optional[str] = None
    is_internal: bool = False
    lazily_registered: bool = False
    # Dynamic origin, only set for subscribe-time streams
    created_by_transform: Optional[str] = None
    transform_instance_id: Optional[str] = None
    triggered_by_subscription: Optional[str] = None
    triggered_by_stream: Optional[str] = None
    triggered_by_event: Optional[str] = None

    @property
    def is_dynamic(self) -> bool:
        """True when the stream was built at subscribe time."""
        return self.created_by_transform is not None


@dataclass
class SubscriptionRecord:
    """
    One subscription, active until torn down and then archived.

    Once archived only ``closed_at`` may still change.
    """

    id: str
    stream_id: str
    subscribed_at: float = field(default_factory=now)
    closed_at: Optional[float] = None
    completed_at: Optional[float] = None
    parent_id: Optional[str] = None
    child_ids: List[str] = field(default_factory=list)
    depth: int = 0
    triggered_by_stream: Optional[str] = None
    module_id: Optional[str] = None
    emission_ids: List[str] = field(default_factory=list)
    error_ids: List[str] = field(default_factory=list)
    emission_count: int = 0

    @property
    def is_closed(self) -> bool:
        return self.closed_at is not None


@dataclass
class CompositionRecord:
    """One "compose N transforms onto a stream" call."""

    id: str
    source_id: Optional[str]
    transforms: List[str] = field(default_factory=list)
    result_id: Optional[str] = None
    started_at: float = field(default_factory=now)
    ended_at: Optional[float] = None


@dataclass
class TransformApplication:
    """A single transform applied at ``index`` within a composition."""

    id: str
    composition_id: str
    index: int
    name: str
    source_id: Optional[str] = None
    target_id: Optional[str] = None
    factory_id: Optional[str] = None
    created_at: float = field(default_factory=now)


@dataclass
class TransformFactoryRecord:
    """A call to an operator factory such as ``map(fn)``."""

    id: str
    name: str
    instance_id: str
    argument_ids: List[str] = field(default_factory=list)
    created_at: float = field(default_factory=now)


@dataclass
class ArgumentBinding:
    """
    One position inside the arguments of a factory call.

    Exactly one of ``stream_id``, ``function_name`` (with ``is_function``) or
    ``value`` describes what sits at ``path``.
    """

    id: str
    owner_id: str
    path: str
    stream_id: Optional[str] = None
    is_function: bool = False
    function_name: Optional[str] = None
    value: Any = None
    created_at: float = field(default_factory=now)


@dataclass
class ArgumentInvocation:
    """A call of a function argument, e.g. a projection returning a stream."""

    id: str
    binding_id: str
    stream_id: Optional[str] = None
    subscription_id: Optional[str] = None
    input_values: List[Any] = field(default_factory=list)
    created_at: float = field(default_factory=now)


@dataclass(frozen=True)
class RelationshipRecord:
    """Streams passed as arguments to a combinator call. Immutable."""

    id: str
    operator_name: str
    instance_id: str
    result_id: Optional[str]
    arguments: Dict[str, str]
    created_at: float = field(default_factory=now)


@dataclass
class EmissionRecord:
    id: str
    subscription_id: str
    stream_id: str
    value: Any
    index: int
    timestamp: float = field(default_factory=now)


@dataclass
class ErrorRecord:
    id: str
    subscription_id: str
    stream_id: str
    error: BaseException
    timestamp: float = field(default_factory=now)


@dataclass
class StableWrapperRecord:
    """
    A stable indirection handle bound to a structural key.

    ``target_id`` is reassigned on every session that reuses ``key``; the
    previous targets are kept in ``prev_target_ids``.
    """

    id: str
    key: str
    module_id: str
    wrapper_kind: str
    target_id: Optional[str] = None
    wrapper_stream_id: Optional[str] = None
    version: int = 0
    prev_target_ids: List[str] = field(default_factory=list)
    last_change_structural: Optional[bool] = None
    orphaned: bool = False
    created_at: float = field(default_factory=now)
    updated_at: Optional[float] = None


@dataclass
class ModuleSessionRecord:
    """One bracketed execution pass over a module's top level."""

    id: str
    module_id: str
    version: int
    keys: List[str] = field(default_factory=list)
    orphaned_keys: List[str] = field(default_factory=list)
    duplicate_keys: List[str] = field(default_factory=list)
    aborted: bool = False
    started_at: float = field(default_factory=now)
    ended_at: Optional[float] = None
