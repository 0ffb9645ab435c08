"""
RxScope Argument Crawler - What Was an Operator Built From?
===========================================================

When a tracked operator factory is called (``ops.map(fn)``,
``ops.debounce(0.5)``, ``ops.with_latest_from(other)``), its arguments are
walked and one ArgumentBinding is stored per leaf:

- tracked streams are bound by stream ID,
- callables are bound by name and replaced with a recorder, so every call
  produces an ArgumentInvocation naming the stream it returned (if any),
- other values are stored as they are.

Lists, tuples and dicts are walked up to ``MAX_DEPTH`` levels deep. Paths use
the positional index or keyword name at the top and dot-separated element
indices or dict keys below it: ``"0"``, ``"0.1"``, ``"0.delay"``,
``"scheduler"``.
"""

import functools
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
)

from .context.stacks import ContextStacks
from .errors import guarded
from .ids import IdAllocator
from .records import ARGUMENT, INVOCATION, ArgumentBinding, ArgumentInvocation
from .registry import EntityRegistry

MAX_DEPTH = 10

CallbackWrapper = Callable[[Callable[..., Any]], Callable[..., Any]]


class ArgumentCrawler:
    """
    Records ArgumentBindings for factory calls.

    Usage:
        args, kwargs, bindings = crawler.crawl("fn#0", (project,), {})
        # call the real factory with the returned args/kwargs
    """

    def __init__(
        self,
        ids: IdAllocator,
        registry: EntityRegistry,
        stacks: ContextStacks,
        is_tracking: Callable[[], bool] = lambda: True,
        max_depth: int = MAX_DEPTH,
    ):
        self._ids = ids
        self._registry = registry
        self._stacks = stacks
        self._is_tracking = is_tracking
        self.max_depth = max_depth

    def crawl(
        self,
        owner_id: str,
        args: Sequence[Any],
        kwargs: Dict[str, Any],
        wrap_callback: Optional[CallbackWrapper] = None,
    ) -> Tuple[Tuple[Any, ...], Dict[str, Any], List[ArgumentBinding]]:
        """
        Walk a factory call's arguments.

        Args:
            owner_id: ID of the TransformFactoryRecord owning the bindings
            args: Positional arguments
            kwargs: Keyword arguments
            wrap_callback: Applied to every callable argument before the
                invocation recorder, e.g. to push a transform frame

        Returns:
            ``(args, kwargs, bindings)`` where callables have been replaced
            with recording wrappers
        """
        bindings: List[ArgumentBinding] = []
        new_args = tuple(
            self._visit(owner_id, arg, str(index), 0, bindings, wrap_callback)
            for index, arg in enumerate(args)
        )
        new_kwargs = {
            key: self._visit(owner_id, value, key, 0, bindings, wrap_callback)
            for key, value in kwargs.items()
        }
        return new_args, new_kwargs, bindings

    def _visit(
        self,
        owner_id: str,
        value: Any,
        path: str,
        depth: int,
        bindings: List[ArgumentBinding],
        wrap_callback: Optional[CallbackWrapper],
    ) -> Any:
        if depth > self.max_depth:
            return value

        stream = self._registry.get(value)
        if stream is not None:
            bindings.append(self._bind(owner_id, path, stream_id=stream.id))
            return value

        if callable(value):
            binding = self._bind(
                owner_id,
                path,
                is_function=True,
                function_name=getattr(value, "__name__", type(value).__name__),
            )
            bindings.append(binding)
            if isinstance(value, type):
                return value
            if wrap_callback is not None:
                value = wrap_callback(value)
            return self._recorder(binding.id, value)

        if type(value) in (list, tuple):
            items = [
                self._visit(owner_id, item, f"{path}.{i}", depth + 1, bindings, wrap_callback)
                for i, item in enumerate(value)
            ]
            return type(value)(items)

        if type(value) is dict:
            return {
                key: self._visit(
                    owner_id, item, f"{path}.{key}", depth + 1, bindings, wrap_callback
                )
                for key, item in value.items()
            }

        if value is not None:
            bindings.append(self._bind(owner_id, path, value=value))
        return value

    def _bind(self, owner_id: str, path: str, **fields: Any) -> ArgumentBinding:
        binding = ArgumentBinding(
            id=self._ids.next(ARGUMENT), owner_id=owner_id, path=path, **fields
        )
        self._registry.add(binding)
        return binding

    def _recorder(self, binding_id: str, fn: Callable[..., Any]) -> Callable[..., Any]:
        """Wrap ``fn`` so every call is stored as an ArgumentInvocation."""

        @functools.wraps(fn)
        def recorded(*call_args: Any, **call_kwargs: Any) -> Any:
            result = fn(*call_args, **call_kwargs)
            if self._is_tracking():
                guarded(self.record_invocation, binding_id, call_args, result)
            return result

        return recorded

    def record_invocation(
        self, binding_id: str, input_values: Sequence[Any], result: Any
    ) -> ArgumentInvocation:
        stream = self._registry.get(result) if result is not None else None
        subscription = self._stacks.subscription.peek()
        invocation = ArgumentInvocation(
            id=self._ids.next(INVOCATION),
            binding_id=binding_id,
            stream_id=stream.id if stream is not None else None,
            subscription_id=subscription.subscription_id if subscription else None,
            input_values=list(input_values),
        )
        return self._registry.add(invocation)
