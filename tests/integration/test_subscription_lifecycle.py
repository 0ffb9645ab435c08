"""Integration tests for subscription trees from subscribe to archive."""

import pytest
import reactivex
from reactivex.subject import Subject

from rxscope.rx import operators as rxs


@pytest.mark.integration
@pytest.mark.subscription
def test_operator_chain_builds_a_subscription_tree(context):
    registry = context.registry
    source = Subject()
    result = source.pipe(rxs.map(lambda x: x + 1), rxs.filter(lambda x: x % 2 == 0))

    handle = result.subscribe(lambda _: None)

    subscriptions = registry.active_subscriptions()
    by_stream = {s.stream_id: s for s in subscriptions}
    root = by_stream[registry.get(result).id]
    leaf = by_stream[registry.get(source).id]
    assert len(subscriptions) == 3
    assert root.parent_id is None
    assert leaf.depth == 2
    assert registry.children_of(root.id)[0].child_ids == [leaf.id]

    handle.dispose()

    assert registry.active_subscriptions() == []
    assert all(s.is_closed for s in subscriptions)


@pytest.mark.integration
@pytest.mark.subscription
@pytest.mark.operators
def test_switched_inner_subscriptions_are_archived(context):
    registry = context.registry
    source = Subject()
    inners = []

    def project(value):
        inners.append(Subject())
        return inners[-1]

    seen = []
    handle = source.pipe(rxs.switch_map(project)).subscribe(seen.append)
    source.on_next(1)
    first_inner = registry.active_for(registry.get(inners[0]).id)
    source.on_next(2)
    inners[1].on_next("b")

    assert len(first_inner) == 1
    assert not registry.is_active(first_inner[0].id)
    assert registry.active_for(registry.get(inners[1]).id)
    assert seen == ["b"]

    handle.dispose()

    assert registry.active_subscriptions() == []


@pytest.mark.integration
@pytest.mark.subscription
def test_completed_subscription_ignores_later_dispose(context, events):
    handle = reactivex.of(1, 2, 3).subscribe(lambda _: None)

    handle.dispose()

    (record,) = context.registry.archived_subscriptions()
    assert record.emission_count == 3
    assert [e.id for e in events if e.kind == "sub.archive"] == [record.id]


@pytest.mark.integration
@pytest.mark.subscription
def test_emission_cap_keeps_counting(context):
    context.update_config(max_emissions_per_subscription=2)
    subject = Subject()
    subject.subscribe(lambda _: None)

    for value in range(5):
        subject.on_next(value)

    (record,) = context.registry.active_subscriptions()
    assert record.emission_count == 5
    assert len(record.emission_ids) == 2


@pytest.mark.integration
@pytest.mark.subscription
def test_emission_tracking_can_be_switched_off(context):
    context.update_config(track_emissions=False)
    subject = Subject()
    subject.subscribe(lambda _: None)

    subject.on_next(1)

    (record,) = context.registry.active_subscriptions()
    assert record.emission_ids == []
