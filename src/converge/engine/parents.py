"""Ancestor chain handed down the reconciliation walk."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator, Mapping


@dataclass(frozen=True)
class ParentEntry:
    collection: str
    name: str | None
    state: Any


class Parents(Mapping[str, Any]):
    """Read-only ancestor results keyed by collection name.

    ``parents["clusters"]`` is the live state of the nearest enclosing
    ``clusters`` item. Children receive an extended copy; the chain a node
    was given never changes.
    """

    __slots__ = ("_entries",)

    def __init__(self, entries: tuple[ParentEntry, ...] = ()) -> None:
        self._entries = tuple(entries)

    def extend(self, collection: str, name: str | None, state: Any) -> Parents:
        return Parents(self._entries + (ParentEntry(collection, name, state),))

    def entry(self, collection: str) -> ParentEntry:
        for entry in reversed(self._entries):
            if entry.collection == collection:
                return entry
        raise KeyError(collection)

    @property
    def entries(self) -> tuple[ParentEntry, ...]:
        return self._entries

    def names(self) -> list[str | None]:
        """Instance names from the root down."""
        return [entry.name for entry in self._entries]

    def __getitem__(self, collection: str) -> Any:
        return self.entry(collection).state

    def __iter__(self) -> Iterator[str]:
        seen: list[str] = []
        for entry in self._entries:
            if entry.collection not in seen:
                seen.append(entry.collection)
        return iter(seen)

    def __len__(self) -> int:
        return len({entry.collection for entry in self._entries})

    def __repr__(self) -> str:
        chain = " > ".join(f"{e.collection}:{e.name}" if e.name else e.collection for e in self._entries)
        return f"Parents({chain})"
