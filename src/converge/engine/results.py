"""Before/after snapshot tree of a reconciliation run."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List

from converge.declaration import TreePath


class ActionKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    UNCHANGED = "unchanged"
    UNMANAGED = "unmanaged"


MUTATING = frozenset({ActionKind.CREATE, ActionKind.UPDATE, ActionKind.DELETE})


@dataclass(frozen=True)
class Action:
    """One decision taken for one item."""

    kind: ActionKind
    path: str
    name: str
    drift: tuple[str, ...] = ()
    planned: bool = False


@dataclass
class ItemResult:
    name: str
    action: ActionKind
    before: Any
    after: Any
    collections: Dict[str, CollectionResult] = field(default_factory=dict)


@dataclass
class CollectionResult:
    """Live state of a visited collection.

    Only collections the walk reached are present; a collection below an
    item that was never resolved does not appear at all.
    """

    name: str
    path: TreePath
    before: Any
    singleton: bool = False
    state: Any = None
    items: Dict[str, ItemResult] = field(default_factory=dict)
    collections: Dict[str, CollectionResult] = field(default_factory=dict)

    @property
    def after(self) -> Any:
        if self.singleton:
            return self.state
        return {name: item.after for name, item in self.items.items() if item.after is not None}

    def children(self) -> Iterator[CollectionResult]:
        yield from self.collections.values()
        for item in self.items.values():
            yield from item.collections.values()


@dataclass
class ReconcileResult:
    collections: Dict[str, CollectionResult]
    actions: List[Action]
    dry_run: bool = False

    def walk(self) -> Iterator[CollectionResult]:
        stack = list(reversed(list(self.collections.values())))
        while stack:
            collection = stack.pop()
            yield collection
            stack.extend(reversed(list(collection.children())))

    @property
    def config_after(self) -> dict[str, Any]:
        """Live state after the run keyed by rendered collection path."""
        return {str(collection.path): collection.after for collection in self.walk()}

    @property
    def config_before(self) -> dict[str, Any]:
        """Live state as first read, keyed by rendered collection path."""
        return {str(collection.path): collection.before for collection in self.walk()}

    def find(self, path: str) -> CollectionResult | None:
        for collection in self.walk():
            if str(collection.path) == path:
                return collection
        return None

    @property
    def changes(self) -> list[Action]:
        return [action for action in self.actions if action.kind in MUTATING]

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    def summary(self) -> dict[str, int]:
        counts = Counter(action.kind.value for action in self.actions)
        return {kind.value: counts.get(kind.value, 0) for kind in ActionKind}


class ResultComposer:
    """Accumulates collection and item results while the walk proceeds."""

    def __init__(self, *, dry_run: bool = False) -> None:
        self.dry_run = dry_run
        self.collections: Dict[str, CollectionResult] = {}
        self.actions: List[Action] = []

    def open_collection(
        self,
        attach_to: Dict[str, CollectionResult],
        name: str,
        path: TreePath,
        before: Any,
        *,
        singleton: bool = False,
    ) -> CollectionResult:
        collection = CollectionResult(
            name=name,
            path=path,
            before=before,
            singleton=singleton,
            state=before if singleton else None,
        )
        attach_to[name] = collection
        return collection

    def record(
        self,
        collection: CollectionResult,
        name: str,
        kind: ActionKind,
        *,
        before: Any,
        after: Any,
        drift: tuple[str, ...] = (),
    ) -> ItemResult:
        item = ItemResult(name=name, action=kind, before=before, after=after)
        collection.items[name] = item
        planned = self.dry_run and kind in MUTATING
        self.actions.append(Action(kind, str(collection.path), name, drift, planned))
        return item

    def result(self) -> ReconcileResult:
        return ReconcileResult(self.collections, self.actions, self.dry_run)
