from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Protocol, runtime_checkable

if TYPE_CHECKING:
    from converge.declaration import TreePath
    from converge.engine.parents import Parents


class Capability(str, Enum):
    GET = "get"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Snapshot:
    """Live state of one collection as returned by a handler's ``get``.

    ``items`` maps instance names to live state; a name missing from it does
    not exist yet. Singleton collections report their one live state in
    ``state`` instead.
    """

    items: Mapping[str, Any] = field(default_factory=dict)
    ignore_keys: frozenset[str] = frozenset()
    property_options: Any = None
    state: Any = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "ignore_keys", frozenset(self.ignore_keys))


def key_by(records: Iterable[Any], key: str | Callable[[Any], str]) -> dict[str, Any]:
    """Index records by a field name or key function, keeping record order."""
    getter = key if callable(key) else (lambda record: record[key])
    return {getter(record): record for record in records}


@runtime_checkable
class Readable(Protocol):
    """Every handler can read the live state of its collection."""

    async def get(self, parents: Parents, path: TreePath) -> Snapshot:
        ...


@runtime_checkable
class Creatable(Protocol):
    async def create(self, name: str, config: dict[str, Any], parents: Parents) -> Any:
        ...


@runtime_checkable
class Updatable(Protocol):
    async def update(
        self,
        name: str,
        config: dict[str, Any],
        parents: Parents,
        existing: Any,
    ) -> Any:
        ...


@runtime_checkable
class Deletable(Protocol):
    async def delete(self, name: str, existing: Any, parents: Parents) -> None:
        ...


@runtime_checkable
class Identified(Protocol):
    """Handlers whose declared config carries the instance key at ``identity_path``."""

    identity_path: tuple[str, ...]


_CAPABILITY_PROTOCOLS: tuple[tuple[Capability, type], ...] = (
    (Capability.GET, Readable),
    (Capability.CREATE, Creatable),
    (Capability.UPDATE, Updatable),
    (Capability.DELETE, Deletable),
)


def capabilities(handler: Any) -> frozenset[Capability]:
    """Capabilities a handler implements."""
    return frozenset(cap for cap, protocol in _CAPABILITY_PROTOCOLS if isinstance(handler, protocol))
