"""Deferred values and single-resolution cells.

A ``ResolutionCell`` holds a value that becomes known exactly once, usually
when a resource settles.  Readers suspend on ``wait()`` until the cell is
resolved or failed; there is no polling.

A ``DeferredValue`` is what resource declarations embed in their properties
to reference another resource's outputs.  It carries the static set of
resource ids it depends on, which the dependency resolver turns into graph
edges before planning, plus an async resolver that the engine awaits just
before the consuming resource's operation starts.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Generic, TypeVar

from azconverge.errors import AlreadyResolvedError

T = TypeVar("T")

_UNSET: Any = object()

# Resolver tasks outlive a cancelled consumer because of the shield; tracked
# here until done so shutdown can cancel whatever is still running.
_resolver_tasks: set[asyncio.Task[Any]] = set()


class ResolutionCell(Generic[T]):
    """Write-once async cell.

    ``set`` or ``fail`` may be called exactly once; a second write raises
    ``AlreadyResolvedError``.  ``reset`` is the only way back to the
    unresolved state and is reserved for explicit invalidation.
    """

    def __init__(self, label: str) -> None:
        self.label = label
        self._event = asyncio.Event()
        self._value: Any = _UNSET
        self._error: BaseException | None = None

    @property
    def resolved(self) -> bool:
        return self._event.is_set()

    @property
    def failed(self) -> bool:
        return self._error is not None

    def set(self, value: T) -> None:
        if self._event.is_set():
            raise AlreadyResolvedError(f"{self.label} is already resolved")
        self._value = value
        self._event.set()

    def fail(self, error: BaseException) -> None:
        if self._event.is_set():
            raise AlreadyResolvedError(f"{self.label} is already resolved")
        self._error = error
        self._event.set()

    def reset(self) -> None:
        self._event = asyncio.Event()
        self._value = _UNSET
        self._error = None

    async def wait(self) -> T:
        await self._event.wait()
        if self._error is not None:
            raise self._error
        return self._value  # type: ignore[no-any-return]

    def peek(self) -> T:
        """Return the value without suspending.  Raises if not yet resolved."""
        if not self._event.is_set():
            raise LookupError(f"{self.label} is not resolved yet")
        if self._error is not None:
            raise self._error
        return self._value  # type: ignore[no-any-return]

    def __repr__(self) -> str:
        state = "failed" if self.failed else "resolved" if self.resolved else "pending"
        return f"ResolutionCell({self.label!r}, {state})"


class DeferredValue(Generic[T]):
    """A value known only after the resources in ``dependencies`` settle.

    The underlying resolver runs at most once; concurrent and later callers
    all observe the same result.
    """

    def __init__(
        self,
        dependencies: Iterable[str],
        resolver: Callable[[], Awaitable[T]],
        label: str = "",
    ) -> None:
        self.dependencies: frozenset[str] = frozenset(dependencies)
        self.label = label or ",".join(sorted(self.dependencies)) or "<constant>"
        self._resolver = resolver
        self._task: asyncio.Task[T] | None = None

    async def resolve(self) -> T:
        if self._task is None:
            self._task = asyncio.ensure_future(self._resolver())
            _resolver_tasks.add(self._task)
            self._task.add_done_callback(_resolver_tasks.discard)
        return await asyncio.shield(self._task)

    @property
    def resolved(self) -> bool:
        return self._task is not None and self._task.done() and not self._task.cancelled()

    def apply(self, fn: Callable[[T], Any], label: str = "") -> DeferredValue[Any]:
        """Derive a new deferred value by transforming this one."""

        async def _resolve() -> Any:
            return fn(await self.resolve())

        return DeferredValue(self.dependencies, _resolve, label or f"{self.label}|apply")

    @classmethod
    def constant(cls, value: T) -> DeferredValue[T]:
        async def _resolve() -> T:
            return value

        return cls((), _resolve)

    def __repr__(self) -> str:
        return f"DeferredValue({self.label!r})"


def output_ref(cell_source: Callable[[str], ResolutionCell[dict[str, Any]]], resource_id: str, path: str = "") -> DeferredValue[Any]:
    """Reference ``path`` (dotted) inside ``resource_id``'s outputs."""

    async def _resolve() -> Any:
        outputs = await cell_source(resource_id).wait()
        return lookup(outputs, path)

    label = f"{resource_id}.{path}" if path else resource_id
    return DeferredValue((resource_id,), _resolve, label)


def interpolate(template: str, *values: Any) -> DeferredValue[str]:
    """Format ``template`` with ``str.format`` once every deferred arg resolves.

    Plain (non-deferred) arguments are passed through unchanged.
    """
    deps: set[str] = set()
    for value in values:
        if isinstance(value, DeferredValue):
            deps |= value.dependencies

    async def _resolve() -> str:
        resolved = [await v.resolve() if isinstance(v, DeferredValue) else v for v in values]
        return template.format(*resolved)

    return DeferredValue(deps, _resolve, template)


def lookup(data: Any, path: str) -> Any:
    """Walk a dotted path through nested dicts/lists.  Missing keys yield None."""
    if not path:
        return data
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def find_deferred(value: Any, path: str = "") -> Iterable[tuple[str, DeferredValue[Any]]]:
    """Yield ``(property_path, deferred)`` for every DeferredValue nested in ``value``."""
    if isinstance(value, DeferredValue):
        yield path, value
    elif isinstance(value, dict):
        for key, item in value.items():
            yield from find_deferred(item, f"{path}.{key}" if path else str(key))
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            yield from find_deferred(item, f"{path}[{index}]")


async def resolve_all(value: Any) -> Any:
    """Return a copy of ``value`` with every nested DeferredValue replaced by its result."""
    if isinstance(value, DeferredValue):
        return await resolve_all(await value.resolve())
    if isinstance(value, dict):
        return {key: await resolve_all(item) for key, item in value.items()}
    if isinstance(value, list):
        return [await resolve_all(item) for item in value]
    if isinstance(value, tuple):
        return tuple([await resolve_all(item) for item in value])
    return value


async def cancel_pending() -> int:
    """Cancel resolver tasks still running on this loop; returns how many."""
    loop = asyncio.get_running_loop()
    pending = [task for task in _resolver_tasks if not task.done() and task.get_loop() is loop]
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    return len(pending)
