"""Unit tests for operator argument bindings."""

import pytest

from rxscope.arguments import ArgumentCrawler
from rxscope.context import ContextStacks, SubscriptionFrame
from rxscope.events import EventEmitter
from rxscope.ids import IdAllocator
from rxscope.registry import EntityRegistry
from tests.utils import Thing


@pytest.fixture
def stacks():
    return ContextStacks()


@pytest.fixture
def store(stacks):
    ids = IdAllocator()
    registry = EntityRegistry(ids, stacks, EventEmitter())
    return registry, ArgumentCrawler(ids, registry, stacks)


def by_path(bindings):
    return {binding.path: binding for binding in bindings}


@pytest.mark.unit
def test_bindings_follow_argument_paths(store):
    registry, crawler = store
    stream = Thing("stream")
    registry.create_stream(stream)

    def project(value):
        return value

    _, _, bindings = crawler.crawl(
        "fn#0", (stream, [1, project], {"delay": 0.5}, "label"), {}
    )
    paths = by_path(bindings)

    assert list(paths) == ["0", "1.0", "1.1", "2.delay", "3"]
    assert paths["0"].stream_id == "obs#0"
    assert paths["1.0"].value == 1
    assert paths["1.1"].is_function and paths["1.1"].function_name == "project"
    assert paths["2.delay"].value == 0.5
    assert paths["3"].value == "label"
    assert all(binding.owner_id == "fn#0" for binding in bindings)


@pytest.mark.unit
def test_keyword_arguments_use_their_names_and_skip_none(store):
    _, crawler = store

    _, kwargs, bindings = crawler.crawl("fn#0", (), {"scheduler": None, "count": 3})

    assert [binding.path for binding in bindings] == ["count"]
    assert kwargs == {"scheduler": None, "count": 3}


@pytest.mark.unit
def test_callables_are_replaced_with_recorders(store, stacks):
    registry, crawler = store
    produced = Thing("inner")
    registry.create_stream(produced)

    def project(value):
        return produced

    (wrapped,), _, (binding,) = crawler.crawl("fn#0", (project,), {})

    with stacks.subscription.frame(SubscriptionFrame("sub#4", "obs#9")):
        assert wrapped(7) is produced

    (invocation,) = registry.records("call")
    assert wrapped.__name__ == "project"
    assert invocation.binding_id == binding.id
    assert invocation.stream_id == "obs#0"
    assert invocation.subscription_id == "sub#4"
    assert invocation.input_values == [7]


@pytest.mark.unit
def test_wrap_callback_runs_inside_recorder(store):
    _, crawler = store
    calls = []

    def wrap(fn):
        def wrapped(*args):
            calls.append(args)
            return fn(*args)

        return wrapped

    (recorded,), _, _ = crawler.crawl("fn#0", (lambda x: x * 2,), {}, wrap)

    assert recorded(3) == 6
    assert calls == [(3,)]


@pytest.mark.unit
@pytest.mark.edge_case
def test_classes_are_bound_but_not_wrapped(store):
    _, crawler = store

    (arg,), _, (binding,) = crawler.crawl("fn#0", (Thing,), {})

    assert arg is Thing
    assert binding.function_name == "Thing"


@pytest.mark.unit
@pytest.mark.edge_case
def test_nesting_deeper_than_limit_is_not_walked(stacks):
    ids = IdAllocator()
    registry = EntityRegistry(ids, stacks, EventEmitter())
    crawler = ArgumentCrawler(ids, registry, stacks, max_depth=2)

    _, _, bindings = crawler.crawl("fn#0", ([1, [2, [3]]],), {})

    assert [binding.path for binding in bindings] == ["0.0", "0.1.0"]


@pytest.mark.unit
def test_invocations_are_skipped_while_not_tracking(stacks):
    ids = IdAllocator()
    registry = EntityRegistry(ids, stacks, EventEmitter())
    crawler = ArgumentCrawler(ids, registry, stacks, is_tracking=lambda: False)

    (recorded,), _, _ = crawler.crawl("fn#0", (lambda: 1,), {})
    recorded()

    assert registry.records("call") == []
