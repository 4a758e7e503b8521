from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterator, List, Mapping

from converge.core.errors import CapabilityMissingError
from converge.handlers.base import Capability, Readable, capabilities


@dataclass(frozen=True)
class HandlerSpec:
    """Metadata describing a registered handler."""

    collection: str
    handler: Readable
    description: str | None = None

    @property
    def capabilities(self) -> frozenset[Capability]:
        return capabilities(self.handler)


class HandlerRegistry:
    """Maps collection names to the handlers that reconcile them."""

    def __init__(self, handlers: Mapping[str, Readable] | None = None) -> None:
        self._handlers: Dict[str, HandlerSpec] = {}
        for collection, handler in (handlers or {}).items():
            self.register(collection, handler)

    def register(self, collection: str, handler: Readable, *, description: str | None = None) -> None:
        if not collection:
            raise ValueError("Collection name is required")
        if not isinstance(handler, Readable):
            raise CapabilityMissingError(
                f"Handler for '{collection}' cannot read its collection",
                details={"handler": type(handler).__name__},
            )
        self._handlers[collection] = HandlerSpec(collection, handler, description)

    def get(self, collection: str) -> Readable:
        spec = self._handlers.get(collection)
        if spec is None:
            raise CapabilityMissingError(
                f"No handler registered for collection '{collection}'",
                details={"registered": sorted(self._handlers)},
            )
        return spec.handler

    def __contains__(self, collection: object) -> bool:
        return collection in self._handlers

    def __iter__(self) -> Iterator[str]:
        return iter(self._handlers)

    def names(self) -> List[str]:
        return list(self._handlers)

    def list(self) -> List[HandlerSpec]:
        return list(self._handlers.values())
