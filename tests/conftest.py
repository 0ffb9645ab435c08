"""
Shared pytest fixtures and configuration for rxscope tests.
"""

import pytest

from rxscope import reset_context
from rxscope.context import ContextStacks
from rxscope.events import EventEmitter
from rxscope.ids import IdAllocator
from rxscope.registry import EntityRegistry
from rxscope.rx import install, uninstall


@pytest.fixture(autouse=True)
def context():
    """Fresh tracking context with the reactivex hooks installed for every test."""
    context = reset_context()
    install()
    yield context
    uninstall()
    context.close()


@pytest.fixture
def registry():
    """An Entity Store detached from the process-wide context."""
    return EntityRegistry(IdAllocator(), ContextStacks(), EventEmitter())


@pytest.fixture
def events(context):
    """Every event published on the process-wide context, in order."""
    seen = []
    context.subscribe(seen.append)
    return seen
