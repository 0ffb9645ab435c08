"""Integration tests for archive eviction."""

import time

import pytest
from reactivex.subject import Subject


def archive(count):
    subject = Subject()
    for _ in range(count):
        subject.subscribe(lambda _: None).dispose()


@pytest.mark.integration
@pytest.mark.registry
def test_cleanup_keeps_the_newest_thousand(context):
    archive(1100)
    assert context.registry.archived_count == 1100

    evicted = context.cleanup_archive()

    assert len(evicted) == 100
    assert context.registry.archived_count == 1000
    assert context.by_id("sub", "sub#0") is None
    assert context.by_id("sub", "sub#1099") is not None


@pytest.mark.integration
@pytest.mark.registry
def test_evicted_ids_are_never_reused(context):
    context.update_config(max_archived_subscriptions=1)
    archive(3)
    context.cleanup_archive()

    archive(1)

    assert [s.id for s in context.registry.archived_subscriptions()] == [
        "sub#2",
        "sub#3",
    ]


@pytest.mark.integration
@pytest.mark.registry
def test_eviction_is_published(context, events):
    context.update_config(max_archived_subscriptions=0)
    archive(2)

    context.cleanup_archive()

    assert [e.id for e in events if e.kind == "sub.evict"] == ["sub#0", "sub#1"]


@pytest.mark.integration
@pytest.mark.registry
def test_auto_cleanup_runs_on_interval(context):
    context.update_config(cleanup_interval=0.05, max_archived_subscriptions=2)
    archive(5)

    context.start_auto_cleanup()
    deadline = time.monotonic() + 5.0
    while context.registry.archived_count > 2 and time.monotonic() < deadline:
        time.sleep(0.02)
    context.stop_auto_cleanup()

    assert context.registry.archived_count == 2
    assert context.by_id("sub", "sub#4") is not None
