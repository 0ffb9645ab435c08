"""Integration tests for module sessions and the wrapper table."""

import pytest
import reactivex
from reactivex.subject import Subject

from rxscope import SessionError, start_session
from rxscope.context import TransformFrame
from rxscope.errors import DiagnosticCode
from rxscope.hmr import KIND_VALUE, StableCallable, StableStream, StableSubject
from rxscope.rx import operators as rxs


def codes(context):
    return [d.code for d in context.diagnostics]


@pytest.mark.integration
@pytest.mark.hmr
def test_first_session_wraps_streams_and_registers_them(context):
    with start_session("m") as session:
        source = session("source", Subject)
        doubled = session("doubled", lambda: source.pipe(rxs.map(lambda x: x * 2)))

    assert isinstance(source, StableSubject)
    assert isinstance(doubled, StableStream)
    record = context.sessions.record_for("m", "source")
    assert record.wrapper_kind == "subject"
    assert context.by_id("obs", record.wrapper_stream_id).stream_type == "StableSubject"
    assert context.by_id("obs", record.target_id).stream_type == "Subject"
    assert context.wrapper_for("m", "doubled") is doubled
    assert session.ended


@pytest.mark.integration
@pytest.mark.hmr
def test_unbound_keys_are_orphaned_at_end(context):
    with start_session("m") as session:
        session("kept", Subject)
        dropped = session("dropped", Subject)
    done = []
    dropped.subscribe(on_completed=lambda: done.append(True))

    with start_session("m") as session:
        session("kept", Subject)

    assert done == [True]
    assert dropped.orphaned
    assert context.wrapper_for("m", "dropped") is None
    assert session.record.orphaned_keys == ["dropped"]
    assert session.record.keys == ["kept"]
    assert DiagnosticCode.WRAPPER_ORPHANED in codes(context)


@pytest.mark.integration
@pytest.mark.hmr
def test_duplicate_key_is_reported_and_last_write_wins(context):
    first, second = Subject(), Subject()
    session = start_session("m")

    a = session("state", lambda: first)
    b = session("state", lambda: second)
    record = session.end()

    assert a is b
    assert b.target is second
    assert record.duplicate_keys == ["state"]
    assert DiagnosticCode.DUPLICATE_KEY in codes(context)


@pytest.mark.integration
@pytest.mark.hmr
def test_shape_change_replaces_the_wrapper(context):
    with start_session("m") as session:
        old = session("thing", Subject)

    with start_session("m") as session:
        new = session("thing", lambda: len)

    assert isinstance(new, StableCallable)
    assert old.orphaned
    assert DiagnosticCode.WRAPPER_SHAPE_CHANGED in codes(context)


@pytest.mark.integration
@pytest.mark.hmr
@pytest.mark.edge_case
def test_failing_factory_keeps_previous_target(context):
    first = Subject()
    with start_session("m") as session:
        wrapper = session("state", lambda: first)

    def broken():
        raise RuntimeError("syntax error in module")

    session = start_session("m")
    with pytest.raises(RuntimeError):
        session("state", broken)
    session.end()

    assert wrapper.target is first
    assert not wrapper.orphaned
    assert context.wrapper_for("m", "state") is wrapper


@pytest.mark.integration
@pytest.mark.hmr
def test_ended_session_rejects_further_use():
    session = start_session("m")
    session.end()

    with pytest.raises(SessionError):
        session.end()
    with pytest.raises(SessionError):
        session("late", Subject)


@pytest.mark.integration
@pytest.mark.hmr
def test_scoped_keys_are_qualified(context):
    with start_session("m") as session:
        panel = session.scope("panel")
        count = panel("count", Subject)
        nested = panel.scope("footer")("total", Subject)

    assert context.wrapper_for("m", "panel:count") is count
    assert context.wrapper_for("m", "panel:footer:total") is nested


@pytest.mark.integration
@pytest.mark.hmr
@pytest.mark.subscription
def test_owned_subscriptions_are_replaced_and_disposed(context):
    source = Subject()
    seen = []

    with start_session("m") as session:
        session.sub("log", lambda: source.subscribe(lambda v: seen.append(("v1", v))))
    with start_session("m") as session:
        session.sub("log", lambda: source.subscribe(lambda v: seen.append(("v2", v))))
    source.on_next(1)

    with start_session("m"):
        pass
    source.on_next(2)

    assert seen == [("v2", 1)]
    assert not source.observers


@pytest.mark.integration
@pytest.mark.hmr
def test_plain_values_are_returned_unwrapped_and_versioned(context):
    with start_session("m") as session:
        limit = session("limit", lambda: 5)
    with start_session("m") as session:
        limit = session("limit", lambda: 6)

    record = context.sessions.record_for("m", "limit")
    assert limit == 6
    assert record.wrapper_kind == KIND_VALUE
    assert record.version == 1


@pytest.mark.integration
@pytest.mark.hmr
def test_held_callable_runs_reloaded_code(context):
    with start_session("m") as session:
        fmt = session("fmt", lambda: (lambda x: f"v1:{x}"))
    with start_session("m") as session:
        session("fmt", lambda: (lambda x: f"v2:{x}"))

    assert fmt(1) == "v2:1"


@pytest.mark.integration
@pytest.mark.hmr
@pytest.mark.stacks
def test_frames_left_open_are_dropped_at_end(context):
    session = start_session("m")
    context.stacks.transform.push(TransformFrame("leaky", "op#0"))

    session.end()

    assert len(context.stacks.transform) == 0
    assert DiagnosticCode.STACK_LEAK in codes(context)


@pytest.mark.integration
@pytest.mark.hmr
def test_records_are_stamped_with_running_module(context):
    with start_session("app.view") as session:
        stream = reactivex.of(1)
        stream.subscribe(lambda _: None)
        assert context.sessions.current_module_id() == "app.view"

    (subscription,) = context.registry.records("sub")
    assert context.registry.get(stream).module_id == "app.view"
    assert subscription.module_id == "app.view"
    assert context.sessions.current() is None


@pytest.mark.integration
@pytest.mark.hmr
def test_forget_orphans_wrappers_and_disposes_subscriptions(context):
    source = Subject()
    with start_session("m") as session:
        wrapper = session("state", Subject)
        session.sub("log", lambda: source.subscribe(lambda _: None))

    context.sessions.forget("m")

    assert wrapper.orphaned
    assert not source.observers
    assert context.sessions.version_of("m") == 0


@pytest.mark.integration
@pytest.mark.hmr
@pytest.mark.edge_case
def test_module_body_error_keeps_held_references_working(context):
    with start_session("app") as session:
        source = session("source", Subject)
        shared = session("shared", lambda: source.pipe(rxs.map(lambda x: x)))
    held, done = [], []
    shared.subscribe(held.append, on_completed=lambda: done.append(True))
    source.on_next(1)

    with pytest.raises(RuntimeError):
        with start_session("app") as session:
            session("source", Subject)
            context.stacks.transform.push(TransformFrame("leaky", "op#0"))
            raise RuntimeError("module body failed")

    assert session.record.aborted
    assert session.record.keys == ["source"]
    assert done == []
    assert not shared.orphaned
    assert context.wrapper_for("app", "shared") is shared
    assert DiagnosticCode.WRAPPER_ORPHANED not in codes(context)
    assert len(context.stacks.transform) == 0
    assert context.sessions.current() is None

    with start_session("app") as session:
        fresh = session("source", Subject)
        session("shared", lambda: fresh.pipe(rxs.map(lambda x: x)))
    source.on_next(2)

    assert fresh is source
    assert held == [1, 2]
    assert done == []


@pytest.mark.integration
@pytest.mark.hmr
@pytest.mark.edge_case
def test_module_body_error_keeps_owned_subscriptions(context):
    source = Subject()
    seen = []
    with start_session("m") as session:
        session.sub("log", lambda: source.subscribe(seen.append))

    with pytest.raises(RuntimeError):
        with start_session("m"):
            raise RuntimeError("module body failed")
    source.on_next(1)

    assert seen == [1]


@pytest.mark.integration
@pytest.mark.hmr
@pytest.mark.parametrize("count, structural", [(1, False), (2, True)])
def test_changed_factory_arguments_are_structural(context, count, structural):
    source = Subject()
    with start_session("m") as session:
        session("first", lambda: source.pipe(rxs.take(1)))
    with start_session("m") as session:
        session("first", lambda: source.pipe(rxs.take(count)))

    record = context.sessions.record_for("m", "first")
    assert record.last_change_structural is structural
