"""Unit tests for tracked operators, higher-order transforms and combinators."""

import pytest
import reactivex
from reactivex.subject import Subject

from rxscope.rx import track_combinator, transform_callback
from rxscope.rx import operators as rxs


def factory_named(context, name):
    (record,) = [r for r in context.registry.records("fn") if r.name == name]
    return record


@pytest.mark.unit
@pytest.mark.operators
def test_switch_map_projection_builds_dynamic_streams(context):
    registry = context.registry
    source = Subject()
    inners = []

    def project(value):
        inner = reactivex.of(value, value)
        inners.append(inner)
        return inner

    seen = []
    source.pipe(rxs.switch_map(project)).subscribe(seen.append)
    source.on_next(1)

    factory = factory_named(context, "switch_map")
    record = registry.get(inners[0])
    assert seen == [1, 1]
    assert record.is_dynamic
    assert record.created_by_transform == "switch_map"
    assert record.transform_instance_id == factory.instance_id
    assert record.triggered_by_event == "next"
    assert record.triggered_by_stream == registry.get(source).id
    assert registry.by_id("sub", record.triggered_by_subscription) is not None


@pytest.mark.unit
@pytest.mark.operators
def test_projection_calls_are_recorded_as_invocations(context):
    registry = context.registry
    source = Subject()
    inners = []

    def project(value):
        inners.append(reactivex.of(value))
        return inners[-1]

    source.pipe(rxs.flat_map(project)).subscribe(lambda _: None)
    source.on_next("a")

    factory = factory_named(context, "flat_map")
    (binding_id,) = factory.argument_ids
    binding = registry.by_id("arg", binding_id)
    (invocation,) = [i for i in registry.records("call") if i.binding_id == binding_id]
    assert binding.function_name == "project"
    assert invocation.input_values == ["a"]
    assert invocation.stream_id == registry.get(inners[0]).id
    assert invocation.subscription_id is not None


@pytest.mark.unit
@pytest.mark.operators
def test_catch_handler_streams_are_triggered_by_error(context):
    registry = context.registry
    failing = reactivex.throw(ValueError("bad"))
    fallbacks = []

    def recover(error, source):
        fallbacks.append(reactivex.of("fallback"))
        return fallbacks[-1]

    seen = []
    failing.pipe(rxs.catch(recover)).subscribe(seen.append)

    record = registry.get(fallbacks[0])
    assert seen == ["fallback"]
    assert record.created_by_transform == "catch"
    assert record.triggered_by_event == "error"
    assert record.triggered_by_stream == registry.get(failing).id


@pytest.mark.unit
@pytest.mark.operators
def test_defer_factory_runs_inside_subscribe_frame(context):
    registry = context.registry
    built = []

    def factory(scheduler):
        built.append(reactivex.of(1))
        return built[-1]

    deferred = rxs.defer(factory)
    deferred.subscribe(lambda _: None)

    record = registry.get(built[0])
    (subscription,) = [
        s
        for s in registry.records("sub")
        if s.stream_id == registry.get(deferred).id
    ]
    assert record.created_by_transform == "defer"
    assert record.triggered_by_event == "subscribe"
    assert record.triggered_by_subscription == subscription.id


@pytest.mark.unit
@pytest.mark.operators
@pytest.mark.stacks
@pytest.mark.edge_case
@pytest.mark.parametrize("trigger", ["switch_map", "catch"])
def test_throwing_callback_releases_transform_frame(context, trigger):
    error = RuntimeError("projection failed")

    def fail(*args):
        raise error

    if trigger == "switch_map":
        source = Subject()
        stream = source.pipe(rxs.switch_map(fail))
    else:
        source = None
        stream = reactivex.throw(ValueError("upstream")).pipe(rxs.catch(fail))
    errors = []
    stream.subscribe(on_error=errors.append)
    if source is not None:
        source.on_next(1)

    later = reactivex.of(2)

    assert errors == [error]
    assert len(context.stacks.transform) == 0
    assert not context.registry.get(later).is_dynamic


@pytest.mark.unit
@pytest.mark.operators
@pytest.mark.stacks
def test_plain_map_projection_streams_are_not_dynamic(context):
    """Only transform frames make a stream dynamic"""
    source = Subject()
    inners = []
    source.pipe(rxs.map(lambda x: inners.append(reactivex.of(x)))).subscribe(
        lambda _: None
    )

    source.on_next(1)

    record = context.registry.get(inners[0])
    assert not record.is_dynamic
    assert record.is_internal


@pytest.mark.unit
@pytest.mark.operators
def test_transform_callback_decorator(context):
    @transform_callback("retry_with", event="error")
    def recover(error):
        return reactivex.of(0)

    record = context.registry.get(recover(ValueError()))

    assert record.created_by_transform == "retry_with"
    assert record.triggered_by_event == "error"
    assert record.triggered_by_subscription is None
    assert recover.__name__ == "recover"


@pytest.mark.unit
@pytest.mark.operators
def test_factory_records_bind_their_arguments(context):
    registry = context.registry
    stop = Subject()

    rxs.take_until(stop)
    rxs.buffer_with_count(3, 2)

    take_until = factory_named(context, "take_until")
    (stream_binding,) = [registry.by_id("arg", a) for a in take_until.argument_ids]
    buffer = factory_named(context, "buffer_with_count")
    values = [registry.by_id("arg", a).value for a in buffer.argument_ids]
    assert stream_binding.stream_id == registry.get(stop).id
    assert values == [3, 2]


@pytest.mark.unit
@pytest.mark.relationships
@pytest.mark.parametrize("combinator", [rxs.combine_latest, rxs.merge, rxs.zip])
def test_combinators_record_positional_relationships(context, combinator):
    registry = context.registry
    a, b = Subject(), Subject()

    result = combinator(a, b)

    (relationship,) = context.relationships_using(registry.get(a).id)
    assert relationship.arguments == {
        "0": registry.get(a).id,
        "1": registry.get(b).id,
    }
    assert relationship.result_id == registry.get(result).id
    assert context.relationships_using(registry.get(b).id) == [relationship]


@pytest.mark.unit
@pytest.mark.relationships
def test_with_latest_from_relates_source_and_other(context):
    registry = context.registry
    source, other = Subject(), Subject()

    result = source.pipe(rxs.with_latest_from(other))

    (relationship,) = context.relationships_using(registry.get(other).id)
    factory = factory_named(context, "with_latest_from")
    assert relationship.arguments == {
        "0": registry.get(source).id,
        "1": registry.get(other).id,
    }
    assert relationship.instance_id == factory.instance_id
    assert relationship.result_id == registry.get(result).id


@pytest.mark.unit
@pytest.mark.relationships
def test_custom_combinator_with_keyed_streams(context):
    registry = context.registry
    left, right, fallback = Subject(), Subject(), Subject()
    pick = track_combinator(lambda streams, fallback=None: streams["left"], "pick")

    pick({"left": left, "right": right}, fallback=fallback)

    (relationship,) = context.relationships_using(registry.get(fallback).id)
    assert relationship.operator_name == "pick"
    assert relationship.arguments == {
        "left": registry.get(left).id,
        "right": registry.get(right).id,
        "fallback": registry.get(fallback).id,
    }


@pytest.mark.unit
@pytest.mark.operators
def test_operators_pass_through_while_disabled(context):
    context.disable()
    source = Subject()
    seen = []

    source.pipe(rxs.switch_map(lambda x: reactivex.of(x))).subscribe(seen.append)
    source.on_next(5)

    assert seen == [5]
    assert context.registry.records("fn") == []
