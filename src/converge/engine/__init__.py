"""Reconciliation engine: tree walker, parents chain and result composer."""

from converge.engine.parents import ParentEntry, Parents
from converge.engine.reconciler import Reconciler, apply
from converge.engine.results import (
    Action,
    ActionKind,
    CollectionResult,
    ItemResult,
    ReconcileResult,
    ResultComposer,
)

__all__ = [
    "Action",
    "ActionKind",
    "CollectionResult",
    "ItemResult",
    "ParentEntry",
    "Parents",
    "ReconcileResult",
    "Reconciler",
    "ResultComposer",
    "apply",
]
