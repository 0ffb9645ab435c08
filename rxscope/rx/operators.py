"""
RxScope Tracked Operators - Factories, Higher-Order Transforms, Combinators
===========================================================================

Drop-in replacements for reactivex operators that report more than the
construction/compose/subscribe hooks can see on their own:

Operator factories (``track_operator``):
    Each call records a TransformFactoryRecord and ArgumentBindings for its
    arguments. The returned operator carries the factory ID, so the
    TransformApplication recorded at compose time links back to it.

Higher-order transforms:
    ``switch_map``, ``flat_map``, ``concat_map`` and ``expand`` run their
    projection inside a transform frame (event ``"next"``), ``catch`` runs its
    handler with event ``"error"`` and ``defer`` its factory with event
    ``"subscribe"``. Streams built inside those callbacks are attributed as
    subscribe-time streams of that operator instance.

Combinators (``track_combinator``):
    ``combine_latest``, ``merge``, ``zip``, ``concat``, ``fork_join`` and
    ``amb`` record a RelationshipRecord naming the streams they were given.
    ``with_latest_from`` records one when the operator is applied.

Usage:
    from rxscope.rx import operators as rxs

    source.pipe(rxs.switch_map(lambda x: reactivex.of(x, x)))
"""

import functools
from typing import Any, Callable, Optional

import reactivex
from reactivex import Observable
from reactivex import operators as ops

from ..context.stacks import TransformFrame
from ..errors import guarded
from ..records import (
    EVENT_ERROR,
    EVENT_NEXT,
    EVENT_SUBSCRIBE,
    FACTORY,
    TRANSFORM_INSTANCE,
    TransformFactoryRecord,
)
from ..tracker import FACTORY_ATTR, NAME_ATTR, get_context


# ============================================================================
# TRANSFORM CALLBACKS
# ============================================================================


def transform_callback(
    name: str, event: str = EVENT_NEXT, instance_id: Optional[str] = None
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Decorator running a callback inside a transform frame.

    Use it for custom operators whose callback returns a new stream:

        @transform_callback("retry_with", event="error")
        def recover(error, source):
            return reactivex.of(fallback)

    Args:
        name: Operator name recorded as ``created_by_transform``
        event: Lifecycle event that invokes the callback
        instance_id: Operator instance ID; allocated when omitted
    """

    def decorate(fn: Callable[..., Any]) -> Callable[..., Any]:
        instance = instance_id or get_context().ids.next(TRANSFORM_INSTANCE)

        @functools.wraps(fn)
        def run(*args: Any, **kwargs: Any) -> Any:
            context = get_context()
            if not context.is_tracking():
                return fn(*args, **kwargs)
            trigger = context.stacks.subscription.peek()
            frame = TransformFrame(
                name=name,
                instance_id=instance,
                subscription_id=trigger.subscription_id if trigger else None,
                stream_id=trigger.stream_id if trigger else None,
                event=event,
            )
            with context.stacks.transform.frame(frame):
                return fn(*args, **kwargs)

        return run

    return decorate


# ============================================================================
# OPERATOR FACTORIES
# ============================================================================


def track_operator(
    factory: Callable[..., Callable[[Any], Any]],
    name: Optional[str] = None,
    event: Optional[str] = None,
    relate: bool = False,
) -> Callable[..., Callable[[Any], Any]]:
    """
    Wrap an operator factory such as ``ops.map``.

    Args:
        factory: The reactivex operator factory
        name: Operator name (defaults to the factory's ``__name__``)
        event: When set, callable arguments run inside a transform frame
            for this lifecycle event
        relate: Record a RelationshipRecord for stream arguments when the
            operator is applied
    """
    op_name = name or factory.__name__

    def describe(context: Any, args: Any, kwargs: Any) -> Any:
        record = TransformFactoryRecord(
            id=context.ids.next(FACTORY),
            name=op_name,
            instance_id=context.ids.next(TRANSFORM_INSTANCE),
        )
        wrap = (
            transform_callback(op_name, event, record.instance_id)
            if event is not None
            else None
        )
        args, kwargs, bindings = context.arguments.crawl(record.id, args, kwargs, wrap)
        record.argument_ids = [binding.id for binding in bindings]
        context.registry.add(record)
        return record, args, kwargs

    @functools.wraps(factory)
    def tracked(*args: Any, **kwargs: Any) -> Callable[[Any], Any]:
        context = get_context()
        if not context.is_tracking():
            return factory(*args, **kwargs)
        described = guarded(describe, context, args, kwargs)
        if described is None:
            return factory(*args, **kwargs)
        record, args, kwargs = described
        operator = factory(*args, **kwargs)

        def apply(source: Any) -> Any:
            result = operator(source)
            if relate:
                guarded(
                    get_context().relationships.record,
                    op_name,
                    result,
                    (source,) + tuple(args),
                    kwargs,
                    record.instance_id,
                )
            return result

        setattr(apply, FACTORY_ATTR, record.id)
        setattr(apply, NAME_ATTR, op_name)
        return apply

    return tracked


def _switch_map(project: Callable[[Any], Observable]) -> Callable[[Observable], Observable]:
    def switch_map(source: Observable) -> Observable:
        return source.pipe(ops.map(project), ops.switch_latest())

    return switch_map


def _concat_map(project: Callable[[Any], Observable]) -> Callable[[Observable], Observable]:
    def concat_map(source: Observable) -> Observable:
        return source.pipe(ops.map(project), ops.merge(max_concurrent=1))

    return concat_map


# Plain transforms
map = track_operator(ops.map, "map")
filter = track_operator(ops.filter, "filter")
scan = track_operator(ops.scan, "scan")
reduce = track_operator(ops.reduce, "reduce")
take = track_operator(ops.take, "take")
skip = track_operator(ops.skip, "skip")
start_with = track_operator(ops.start_with, "start_with")
distinct_until_changed = track_operator(
    ops.distinct_until_changed, "distinct_until_changed"
)
debounce = track_operator(ops.debounce, "debounce")
delay = track_operator(ops.delay, "delay")
buffer_with_count = track_operator(ops.buffer_with_count, "buffer_with_count")
share = track_operator(ops.share, "share")
replay = track_operator(ops.replay, "replay")
publish = track_operator(ops.publish, "publish")
ref_count = track_operator(ops.ref_count, "ref_count")
take_until = track_operator(ops.take_until, "take_until", relate=True)
with_latest_from = track_operator(ops.with_latest_from, "with_latest_from", relate=True)

# Higher-order transforms
switch_map = track_operator(_switch_map, "switch_map", event=EVENT_NEXT)
flat_map = track_operator(ops.flat_map, "flat_map", event=EVENT_NEXT)
concat_map = track_operator(_concat_map, "concat_map", event=EVENT_NEXT)
expand = track_operator(ops.expand, "expand", event=EVENT_NEXT)
catch = track_operator(ops.catch, "catch", event=EVENT_ERROR)


# ============================================================================
# CREATION FUNCTIONS AND COMBINATORS
# ============================================================================


def defer(factory: Callable[[Any], Observable]) -> Observable:
    """``reactivex.defer`` whose factory runs inside a transform frame."""
    context = get_context()
    if not context.is_tracking():
        return reactivex.defer(factory)
    return reactivex.defer(transform_callback("defer", EVENT_SUBSCRIBE)(factory))


def track_combinator(
    combinator: Callable[..., Observable], name: Optional[str] = None
) -> Callable[..., Observable]:
    """
    Wrap a function combining streams so its stream arguments are recorded.

    Streams are found at positional indices, list/tuple element indices,
    dict keys and keyword names.
    """
    op_name = name or combinator.__name__

    @functools.wraps(combinator)
    def tracked(*args: Any, **kwargs: Any) -> Observable:
        result = combinator(*args, **kwargs)
        context = get_context()
        if context.is_tracking():
            guarded(context.relationships.record, op_name, result, args, kwargs)
        return result

    return tracked


combine_latest = track_combinator(reactivex.combine_latest, "combine_latest")
merge = track_combinator(reactivex.merge, "merge")
zip = track_combinator(reactivex.zip, "zip")
concat = track_combinator(reactivex.concat, "concat")
fork_join = track_combinator(reactivex.fork_join, "fork_join")
amb = track_combinator(reactivex.amb, "amb")
