"""Resource handlers and the capability protocol they implement."""

from converge.handlers.base import (
    Capability,
    Creatable,
    Deletable,
    Identified,
    Readable,
    Snapshot,
    Updatable,
    capabilities,
    key_by,
)
from converge.handlers.registry import HandlerRegistry, HandlerSpec

__all__ = [
    "Capability",
    "Creatable",
    "Deletable",
    "HandlerRegistry",
    "HandlerSpec",
    "Identified",
    "Readable",
    "Snapshot",
    "Updatable",
    "capabilities",
    "key_by",
]
