"""converge - reconcile declared infrastructure trees against live state."""

from converge.declaration import (
    CollectionNode,
    Declaration,
    InstanceNode,
    TreePath,
    parse_declaration,
    to_plain,
)
from converge.engine import Parents, ReconcileResult, Reconciler, apply
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
from converge.handlers.registry import HandlerRegistry
from converge.policy import ForEach, ImmutableWhen, Policy, evaluate, matches_prefix
from converge.readiness import NOT_READY, Failed, Poller, Ready, poll_until

__version__ = "0.1.0"

__all__ = [
    "Capability",
    "CollectionNode",
    "Creatable",
    "Declaration",
    "Deletable",
    "Failed",
    "ForEach",
    "HandlerRegistry",
    "Identified",
    "ImmutableWhen",
    "InstanceNode",
    "NOT_READY",
    "Parents",
    "Policy",
    "Poller",
    "Readable",
    "Ready",
    "ReconcileResult",
    "Reconciler",
    "Snapshot",
    "TreePath",
    "Updatable",
    "apply",
    "capabilities",
    "evaluate",
    "key_by",
    "matches_prefix",
    "parse_declaration",
    "poll_until",
    "to_plain",
]
