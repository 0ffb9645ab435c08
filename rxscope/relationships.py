"""
RxScope Relationship Indexer - Argument-Time Links Between Streams
==================================================================

When a combinator such as ``combine_latest`` or ``merge`` receives tracked
streams as arguments, the indexer records one RelationshipRecord for the call
and maintains a reverse index so "what depends on X" is a dictionary lookup.

Argument paths:
    - positional stream argument      ``merge(a, b)``               -> "0", "1"
    - element of a list/tuple arg     ``combine([a, b])``           -> "0", "1"
    - value of a mapping argument     ``combine({"x": a, "y": b})`` -> "x", "y"
    - keyword argument                ``combine(left=a, right=b)``  -> "left", "right"

A value counts as a stream only if the Entity Store knows it. Nothing is
inferred from the shape of arbitrary objects.
"""

from collections import defaultdict
from typing import (
    Any,
    DefaultDict,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
)

from .ids import IdAllocator, id_index
from .records import RELATIONSHIP, TRANSFORM_INSTANCE, RelationshipRecord
from .registry import EntityRegistry


class RelationshipIndexer:
    """Records combinator-argument relationships with a reverse index."""

    def __init__(self, ids: IdAllocator, registry: EntityRegistry):
        self._ids = ids
        self._registry = registry
        # stream id -> relationship ids, insertion ordered
        self._used_in: DefaultDict[str, Dict[str, None]] = defaultdict(dict)

    def scan(
        self, args: Sequence[Any], kwargs: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, str]:
        """
        Find tracked streams among combinator arguments.

        Args:
            args: Positional arguments of the call
            kwargs: Keyword arguments of the call

        Returns:
            Mapping of argument path to stream ID, in argument order
        """
        found: Dict[str, str] = {}
        for index, arg in enumerate(args):
            stream_id = self._stream_id(arg)
            if stream_id is not None:
                found[str(index)] = stream_id
            elif isinstance(arg, (list, tuple)):
                for position, item in enumerate(arg):
                    stream_id = self._stream_id(item)
                    if stream_id is not None:
                        found[str(position)] = stream_id
            elif isinstance(arg, Mapping):
                for key, value in arg.items():
                    stream_id = self._stream_id(value)
                    if stream_id is not None:
                        found[str(key)] = stream_id
        for key, value in (kwargs or {}).items():
            stream_id = self._stream_id(value)
            if stream_id is not None:
                found[key] = stream_id
        return found

    def record(
        self,
        operator_name: str,
        result: Any,
        args: Sequence[Any],
        kwargs: Optional[Mapping[str, Any]] = None,
        instance_id: Optional[str] = None,
    ) -> Optional[RelationshipRecord]:
        """
        Record a combinator call.

        Returns:
            The new RelationshipRecord, or None when no argument is a tracked
            stream
        """
        arguments = self.scan(args, kwargs)
        if not arguments:
            return None
        result_id = None
        if result is not None:
            result_id = self._registry.ensure_registered(result).id
        relationship = RelationshipRecord(
            id=self._ids.next(RELATIONSHIP),
            operator_name=operator_name,
            instance_id=instance_id or self._ids.next(TRANSFORM_INSTANCE),
            result_id=result_id,
            arguments=arguments,
        )
        self._registry.add(relationship)
        for stream_id in arguments.values():
            self._used_in[stream_id][relationship.id] = None
        return relationship

    def relationships_using(self, stream_id: str) -> List[RelationshipRecord]:
        """Relationships that take ``stream_id`` as an argument, oldest first."""
        relationship_ids = self._used_in.get(stream_id)
        if not relationship_ids:
            return []
        found = (
            self._registry.by_id(RELATIONSHIP, rel_id)
            for rel_id in sorted(relationship_ids, key=id_index)
        )
        return [relationship for relationship in found if relationship is not None]

    def _stream_id(self, value: Any) -> Optional[str]:
        record = self._registry.get(value)
        return record.id if record is not None else None

    def reset(self) -> None:
        self._used_in.clear()
