"""
Test utilities for rxscope.

Shared stand-ins and memory helpers for unit and integration tests.
"""

from .memory_utils import count_instances, track_and_release


class Thing:
    """A weak-referenceable stand-in for a stream object."""

    def __init__(self, name: str = ""):
        self.name = name

    def __repr__(self):
        return f"Thing({self.name!r})"


__all__ = [
    "Thing",
    "count_instances",
    "track_and_release",
]
