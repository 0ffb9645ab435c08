"""
RxScope Identifier Allocator - Monotonic Per-Kind IDs
=====================================================

Every tracked entity gets a string ID of the form ``"{kind}#{n}"`` where ``n``
counts from zero independently for each kind. IDs are handed out in exact call
order, so comparing the numeric part of two IDs of the same kind tells which
entity was allocated first.

Usage:
    ids = IdAllocator()
    ids.next("obs")   # "obs#0"
    ids.next("obs")   # "obs#1"
    ids.next("sub")   # "sub#0"
"""

import itertools
from collections import defaultdict
from typing import DefaultDict, Iterator, Optional, Tuple

SEPARATOR = "#"


class IdAllocator:
    """Monotonic counters keyed by entity kind."""

    def __init__(self):
        self._counters: DefaultDict[str, Iterator[int]] = defaultdict(itertools.count)

    def next(self, kind: str) -> str:
        """
        Allocate the next ID for ``kind``.

        Args:
            kind: Entity kind prefix, e.g. ``"obs"`` or ``"sub"``

        Returns:
            A new ID such as ``"obs#3"``
        """
        return f"{kind}{SEPARATOR}{next(self._counters[kind])}"

    def reset(self) -> None:
        """Forget every counter. Test-only: previously issued IDs get reused."""
        self._counters.clear()


def parse_id(entity_id: str) -> Optional[Tuple[str, int]]:
    """
    Split an ID into ``(kind, n)``.

    Returns None for strings that were not produced by an IdAllocator.
    """
    kind, sep, number = entity_id.rpartition(SEPARATOR)
    if not sep or not kind or not number.isdigit():
        return None
    return kind, int(number)


def id_index(entity_id: str) -> int:
    """Numeric part of an ID, or -1 when it cannot be parsed."""
    parsed = parse_id(entity_id)
    return parsed[1] if parsed else -1
