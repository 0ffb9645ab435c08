"""
RxScope Module Sessions - Structural Keys to Stable Wrappers
============================================================

Generated glue code brackets every execution of a module's top level:

    session = sessions.start("app.streams")
    source = session("source", Subject)
    shared = session("shared", lambda: source.pipe(ops.replay(buffer_size=1)))
    shared.connect()
    session.sub("log", lambda: shared.subscribe(print))
    session.end()

Each module keeps one wrapper table for its whole lifetime. The first time a
key is seen, ``factory()`` is called and the result is wrapped; on every later
session the same wrapper is returned and only its target is replaced, so
references held by application code stay valid.

At ``end()``:
    - keys bound in an earlier session but not in this one are orphaned: the
      wrapper completes its subscribers, stops its multicast connection and
      leaves the table,
    - owned subscriptions (``session.sub``) not re-created are disposed,
    - context stacks are restored to their depth at ``start()``; leftover
      frames are reported as a leak.

A key bound twice in one session is honored (last write wins) and reported,
since it usually means a non-deterministic call site.

Used as a context manager, a pass whose module body raises is aborted instead
of ended: nothing is orphaned or disposed, so a failed reload leaves every
held reference working.
"""

import logging
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Tuple,
)

from ..context.stacks import StackDepths
from ..errors import Diagnostic, DiagnosticCode, SessionError
from ..records import (
    APPLICATION,
    ARGUMENT,
    SESSION,
    STREAM,
    WRAPPER,
    ArgumentBinding,
    ModuleSessionRecord,
    StableWrapperRecord,
    StreamRecord,
    now,
)
from .stable import KIND_VALUE, make_wrapper, wrapper_kind

if TYPE_CHECKING:
    from ..tracker import TrackingContext

logger = logging.getLogger(__name__)

KEY_SEPARATOR = ":"


def _binding_shape(binding: ArgumentBinding) -> Tuple[str, str]:
    if binding.stream_id is not None:
        return (binding.path, STREAM)
    if binding.is_function:
        return (binding.path, f"fn:{binding.function_name}")
    return (binding.path, repr(binding.value))


@dataclass
class WrapperEntry:
    wrapper: Any
    record: StableWrapperRecord


@dataclass
class ModuleTable:
    """Per-module state that survives across sessions."""

    module_id: str
    version: int = 0
    wrappers: Dict[str, WrapperEntry] = field(default_factory=dict)
    subscriptions: Dict[str, Any] = field(default_factory=dict)
    values: Dict[str, StableWrapperRecord] = field(default_factory=dict)


# ============================================================================
# SESSION
# ============================================================================


class SessionScope:
    """Binds keys under a prefix. ``scope("a")("b", f)`` binds ``"a:b"``."""

    def __init__(self, session: "Session", prefix: str = ""):
        self._session = session
        self._prefix = prefix

    def _qualify(self, key: str) -> str:
        return f"{self._prefix}{KEY_SEPARATOR}{key}" if self._prefix else key

    def __call__(self, key: str, factory: Callable[[], Any]) -> Any:
        return self._session._bind(self._qualify(key), factory)

    def scope(self, name: str) -> "SessionScope":
        return SessionScope(self._session, self._qualify(name))

    def sub(self, key: str, factory: Callable[[], Any]) -> Any:
        """Create a module-owned subscription, disposing the previous one for ``key``."""
        return self._session._subscribe(self._qualify(key), factory)


class Session(SessionScope):
    """One execution pass over a module's top level."""

    def __init__(
        self,
        sessions: "ModuleSessions",
        table: ModuleTable,
        record: ModuleSessionRecord,
        depths: StackDepths,
    ):
        super().__init__(self)
        self._sessions = sessions
        self.table = table
        self.record = record
        self._depths = depths
        self._bound: Dict[str, None] = {}
        self._sub_keys: Dict[str, None] = {}
        self.ended = False

    @property
    def module_id(self) -> str:
        return self.table.module_id

    @property
    def version(self) -> int:
        return self.table.version

    def _check_open(self) -> None:
        if self.ended:
            raise SessionError(
                f"Session {self.record.id} for {self.module_id!r} already ended"
            )

    def _bind(self, key: str, factory: Callable[[], Any]) -> Any:
        self._check_open()
        if key in self._bound:
            self.record.duplicate_keys.append(key)
            self._sessions._report(
                DiagnosticCode.DUPLICATE_KEY,
                f"Key {key!r} bound twice in one session of {self.module_id!r}",
                module_id=self.module_id,
                key=key,
            )
        self._bound[key] = None
        return self._sessions._resolve(self.table, key, factory)

    def _subscribe(self, key: str, factory: Callable[[], Any]) -> Any:
        self._check_open()
        previous = self.table.subscriptions.pop(key, None)
        if previous is not None:
            previous.dispose()
        handle = factory()
        self.table.subscriptions[key] = handle
        self._sub_keys[key] = None
        return handle

    def end(self) -> ModuleSessionRecord:
        """
        Finish the pass.

        Returns:
            The completed ModuleSessionRecord

        Raises:
            SessionError: If the session already ended
        """
        self._check_open()
        self.ended = True
        try:
            orphaned = [key for key in self.table.wrappers if key not in self._bound]
            for key in orphaned:
                self._sessions._orphan(self.table, key)
            for key in [k for k in self.table.values if k not in self._bound]:
                del self.table.values[key]
            for key in [k for k in self.table.subscriptions if k not in self._sub_keys]:
                self.table.subscriptions.pop(key).dispose()
        finally:
            self._sessions._finish(self)
        self.record.keys = list(self._bound)
        self.record.orphaned_keys = orphaned
        self.record.ended_at = now()
        self._sessions._context.registry.update(self.record)
        return self.record

    def abort(self) -> ModuleSessionRecord:
        """
        Close a pass whose module body raised.

        Nothing is orphaned or disposed: keys the body did not reach keep
        their wrappers and subscriptions for the next pass. Context stacks
        are still restored.
        """
        self._check_open()
        self.ended = True
        self._sessions._finish(self)
        self.record.keys = list(self._bound)
        self.record.aborted = True
        self.record.ended_at = now()
        self._sessions._context.registry.update(self.record)
        logger.debug("Aborted %s for %s", self.record.id, self.module_id)
        return self.record

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.ended:
            return
        if exc_type is None:
            self.end()
        else:
            self.abort()


# ============================================================================
# SESSIONS
# ============================================================================


class ModuleSessions:
    """Wrapper tables for every module, and the stack of running sessions."""

    def __init__(self, context: "TrackingContext"):
        self._context = context
        self._tables: Dict[str, ModuleTable] = {}
        self._running: List[Session] = []

    def start(self, module_id: str) -> Session:
        """Begin a pass over ``module_id``. The module version is bumped."""
        context = self._context
        table = self._tables.get(module_id)
        if table is None:
            table = self._tables[module_id] = ModuleTable(module_id)
        table.version += 1
        record = ModuleSessionRecord(
            id=context.ids.next(SESSION), module_id=module_id, version=table.version
        )
        context.registry.add(record)
        session = Session(self, table, record, context.stacks.depths())
        self._running.append(session)
        logger.debug("Started %s for %s v%d", record.id, module_id, table.version)
        return session

    def current_module_id(self) -> Optional[str]:
        return self._running[-1].module_id if self._running else None

    def current(self) -> Optional[Session]:
        return self._running[-1] if self._running else None

    def wrapper_for(self, module_id: str, key: str) -> Optional[Any]:
        table = self._tables.get(module_id)
        if table is None:
            return None
        entry = table.wrappers.get(key)
        return entry.wrapper if entry is not None else None

    def record_for(self, module_id: str, key: str) -> Optional[StableWrapperRecord]:
        table = self._tables.get(module_id)
        if table is None:
            return None
        entry = table.wrappers.get(key)
        if entry is not None:
            return entry.record
        return table.values.get(key)

    def version_of(self, module_id: str) -> int:
        table = self._tables.get(module_id)
        return table.version if table is not None else 0

    def forget(self, module_id: str) -> None:
        """Drop a module entirely, orphaning its wrappers and disposing its subscriptions."""
        table = self._tables.pop(module_id, None)
        if table is None:
            return
        for key in list(table.wrappers):
            self._orphan(table, key)
        for handle in table.subscriptions.values():
            handle.dispose()
        table.subscriptions.clear()

    # ------------------------------------------------------------------

    def _resolve(self, table: ModuleTable, key: str, factory: Callable[[], Any]) -> Any:
        target = factory()
        kind = wrapper_kind(target)
        entry = table.wrappers.get(key)
        if entry is not None and entry.record.wrapper_kind == kind:
            self._retarget(entry, target)
            return entry.wrapper
        if entry is not None:
            self._report(
                DiagnosticCode.WRAPPER_SHAPE_CHANGED,
                f"Key {key!r} changed from {entry.record.wrapper_kind} to {kind}",
                module_id=table.module_id,
                key=key,
            )
            self._orphan(table, key)

        if kind == KIND_VALUE:
            self._bind_value(table, key)
            return target
        table.values.pop(key, None)
        entry = self._create(table, key, kind, target)
        table.wrappers[key] = entry
        return entry.wrapper

    def _create(self, table: ModuleTable, key: str, kind: str, target: Any) -> WrapperEntry:
        context = self._context
        with context.suspended():
            wrapper = make_wrapper(kind, key, target)
        record = StableWrapperRecord(
            id=context.ids.next(WRAPPER),
            key=key,
            module_id=table.module_id,
            wrapper_kind=kind,
            target_id=self._target_id(target),
        )
        if context.is_tracking() and context.tracker.is_stream(wrapper):
            stream = context.registry.create_stream(wrapper, type(wrapper).__name__)
            record.wrapper_stream_id = stream.id
        context.registry.add(record)
        return WrapperEntry(wrapper, record)

    def _retarget(self, entry: WrapperEntry, target: Any) -> None:
        record = entry.record
        target_id = self._target_id(target)
        record.last_change_structural = self._is_structural(record.target_id, target_id)
        if record.target_id is not None:
            record.prev_target_ids.append(record.target_id)
        record.target_id = target_id
        entry.wrapper.retarget(target)
        record.version = entry.wrapper.version
        record.updated_at = now()
        self._context.registry.update(record)

    def _bind_value(self, table: ModuleTable, key: str) -> None:
        record = table.values.get(key)
        if record is None:
            record = StableWrapperRecord(
                id=self._context.ids.next(WRAPPER),
                key=key,
                module_id=table.module_id,
                wrapper_kind=KIND_VALUE,
            )
            table.values[key] = record
            self._context.registry.add(record)
        else:
            record.version += 1
            record.updated_at = now()
            self._context.registry.update(record)

    def _orphan(self, table: ModuleTable, key: str) -> None:
        entry = table.wrappers.pop(key)
        entry.wrapper.orphan()
        entry.record.orphaned = True
        entry.record.updated_at = now()
        self._context.registry.update(entry.record)
        self._report(
            DiagnosticCode.WRAPPER_ORPHANED,
            f"Key {key!r} of {table.module_id!r} was not bound again",
            module_id=table.module_id,
            key=key,
        )

    def _finish(self, session: Session) -> None:
        try:
            self._running.remove(session)
        except ValueError:
            pass
        dropped = self._context.stacks.restore(session._depths)
        if dropped:
            self._report(
                DiagnosticCode.STACK_LEAK,
                f"{dropped} context frame(s) left open by {session.module_id!r}",
                module_id=session.module_id,
                leaked=dropped,
            )

    def _target_id(self, target: Any) -> Optional[str]:
        context = self._context
        if not context.tracker.is_stream(target):
            return None
        if context.is_tracking():
            return context.registry.ensure_registered(target).id
        record = context.registry.get(target)
        return record.id if record is not None else None

    def _is_structural(self, previous_id: Optional[str], target_id: Optional[str]) -> Optional[bool]:
        if previous_id is None or target_id is None:
            return None
        registry = self._context.registry
        previous = registry.by_id(STREAM, previous_id)
        current = registry.by_id(STREAM, target_id)
        if previous is None or current is None:
            return None
        return self._shape(previous) != self._shape(current)

    def _shape(self, record: StreamRecord) -> Tuple[Any, ...]:
        """
        Operator chain, stream type and factory arguments of a stream.

        Stream arguments count by position only, since every pass builds new
        ones. Function arguments count by name, other values by ``repr``.
        """
        registry = self._context.registry
        arguments = []
        if record.group_id is not None:
            for application in registry.linked(APPLICATION, record.group_id):
                if application.factory_id is None:
                    continue
                bindings = registry.linked(ARGUMENT, application.factory_id)
                arguments.append(tuple(_binding_shape(b) for b in bindings))
        return (record.operators, record.stream_type, arguments)

    def _report(self, code: str, message: str, **details: Any) -> None:
        self._context.report(Diagnostic(code, message, details))

    def reset(self) -> None:
        self._tables.clear()
        self._running.clear()
