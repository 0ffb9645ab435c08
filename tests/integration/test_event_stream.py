"""Integration tests for the ordered event channel."""

import pytest
import reactivex

from rxscope.rx import operators as rxs


@pytest.mark.integration
@pytest.mark.events
def test_pipeline_events_arrive_in_call_order(context, events):
    source = reactivex.of(1)
    result = source.pipe(rxs.map(lambda x: x))
    result.subscribe(lambda _: None)

    kinds = [e.kind for e in events]
    result_id = context.registry.get(result).id

    assert kinds[0] == "obs.create"
    assert kinds.index("fn.create") < kinds.index("pipe.create")
    assert kinds.index("pipe.create") < kinds.index("apply.create")
    assert ("obs.update", result_id) in [(e.kind, e.id) for e in events]
    assert kinds.index("sub.create") < kinds.index("emit.create")
    assert kinds[-1] == "sub.archive"


@pytest.mark.integration
@pytest.mark.events
def test_listener_work_is_not_recorded(context):
    built = []

    def listener(event):
        if event.kind == "obs.create" and not built:
            built.append(reactivex.of("from listener"))

    context.subscribe(listener)
    reactivex.of(1)

    assert len(built) == 1
    assert context.registry.get(built[0]) is None
    assert context.stats()["streams"] == 1


@pytest.mark.integration
@pytest.mark.events
def test_history_replays_recent_events(context):
    reactivex.of(1)

    assert [e.kind for e in context.event_history] == ["obs.create"]


@pytest.mark.integration
@pytest.mark.events
def test_unsubscribed_listener_sees_nothing_more(context):
    seen = []
    unsubscribe = context.subscribe(seen.append)
    reactivex.of(1)

    unsubscribe()
    reactivex.of(2)

    assert [e.kind for e in seen] == ["obs.create"]
