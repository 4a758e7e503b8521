"""
Tree walker converging live state toward a declaration.

For each collection the handler's ``get`` is awaited first. Declared items
are then created or compared in declaration order, undeclared live items
are deleted (or reported when the handler cannot delete), and finally the
child collections of every resulting item are reconciled with the item's
live state appended to the parents chain.

The first failure aborts the run. Nothing already mutated is rolled back.
"""

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Mapping

import structlog

from converge.core.errors import (
    CapabilityMissingError,
    ConvergeError,
    HandlerError,
    PolicyViolationError,
)
from converge.declaration import CollectionNode, Declaration, InstanceNode, TreePath, parse_declaration
from converge.engine.parents import Parents
from converge.engine.results import (
    ActionKind,
    CollectionResult,
    ReconcileResult,
    ResultComposer,
)
from converge.handlers.base import Creatable, Deletable, Identified, Readable, Snapshot, Updatable
from converge.handlers.registry import HandlerRegistry
from converge.policy import MISSING, evaluate

logger = structlog.get_logger()


class Reconciler:
    """Runs one reconciliation pass per ``apply`` call."""

    def __init__(
        self,
        handlers: HandlerRegistry | Mapping[str, Readable],
        *,
        dry_run: bool = False,
    ) -> None:
        self._registry = handlers if isinstance(handlers, HandlerRegistry) else HandlerRegistry(handlers)
        self.dry_run = dry_run

    async def apply(
        self,
        declaration: Declaration | Mapping[str, Any],
        *,
        parents: Parents | None = None,
    ) -> ReconcileResult:
        if not isinstance(declaration, Declaration):
            declaration = parse_declaration(declaration)

        composer = ResultComposer(dry_run=self.dry_run)
        started = time.monotonic()
        logger.info("reconcile_started", collections=list(declaration.collections), dry_run=self.dry_run)

        await self._reconcile_collections(
            declaration.collections,
            parents or Parents(),
            TreePath(),
            composer.collections,
            composer,
        )

        result = composer.result()
        logger.info(
            "reconcile_finished",
            duration_seconds=round(time.monotonic() - started, 3),
            dry_run=self.dry_run,
            **result.summary(),
        )
        return result

    async def _reconcile_collections(
        self,
        collections: Mapping[str, CollectionNode],
        parents: Parents,
        path: TreePath,
        attach_to: dict[str, CollectionResult],
        composer: ResultComposer,
    ) -> None:
        for name, node in collections.items():
            await self._reconcile_collection(node, parents, path.collection(name), attach_to, composer)

    async def _reconcile_collection(
        self,
        node: CollectionNode,
        parents: Parents,
        path: TreePath,
        attach_to: dict[str, CollectionResult],
        composer: ResultComposer,
    ) -> None:
        handler = self._registry.get(node.name)
        snapshot = await _call(path, "get", None, lambda: handler.get(parents, path))
        if not isinstance(snapshot, Snapshot):
            raise HandlerError(
                f"Handler for '{path}' returned {type(snapshot).__name__} instead of a Snapshot",
                details={"path": str(path)},
            )

        if node.singleton is not None:
            logger.info("collection_fetched", path=str(path), singleton=True)
            collection = composer.open_collection(attach_to, node.name, path, snapshot.state, singleton=True)
            await self._reconcile_collections(
                node.singleton.collections,
                parents.extend(node.name, None, snapshot.state),
                path,
                collection.collections,
                composer,
            )
            return

        live = dict(snapshot.items)
        ignored = snapshot.ignore_keys
        logger.info(
            "collection_fetched",
            path=str(path),
            declared=len(node.instances),
            live=len(live),
            ignored=len(ignored),
        )
        collection = composer.open_collection(
            attach_to,
            node.name,
            path,
            {name: state for name, state in live.items() if name not in ignored},
        )

        resolved: list[InstanceNode] = []
        for name, instance in node.instances.items():
            if name in ignored:
                logger.warning("declared_item_ignored", path=str(path), item=name)
                continue
            _check_identity(handler, instance, path)
            if name in live:
                await self._compare(handler, instance, live[name], snapshot, parents, path, collection, composer)
            else:
                await self._create(handler, instance, snapshot, parents, path, collection, composer)
            if collection.items[name].after is not None:
                resolved.append(instance)

        for name, existing in live.items():
            if name in node.instances or name in ignored:
                continue
            await self._remove(handler, name, existing, parents, path, collection, composer)

        for instance in resolved:
            item = collection.items[instance.name]
            await self._reconcile_collections(
                instance.collections,
                parents.extend(node.name, instance.name, item.after),
                path.instance(instance.name),
                item.collections,
                composer,
            )

    async def _create(
        self,
        handler: Readable,
        instance: InstanceNode,
        snapshot: Snapshot,
        parents: Parents,
        path: TreePath,
        collection: CollectionResult,
        composer: ResultComposer,
    ) -> None:
        if not isinstance(handler, Creatable):
            raise CapabilityMissingError(
                f"'{instance.name}' is declared in '{path}' but does not exist and cannot be created",
                details={"path": str(path), "item": instance.name},
            )
        payload = evaluate(instance.config, MISSING, snapshot.property_options).payload

        if self.dry_run:
            logger.info("item_create_planned", path=str(path), item=instance.name)
            composer.record(collection, instance.name, ActionKind.CREATE, before=None, after=None)
            return

        state = await _call(path, "create", instance.name, lambda: handler.create(instance.name, payload, parents))
        _require_state(state, path, "create", instance.name)
        logger.info("item_created", path=str(path), item=instance.name)
        composer.record(collection, instance.name, ActionKind.CREATE, before=None, after=state)

    async def _compare(
        self,
        handler: Readable,
        instance: InstanceNode,
        existing: Any,
        snapshot: Snapshot,
        parents: Parents,
        path: TreePath,
        collection: CollectionResult,
        composer: ResultComposer,
    ) -> None:
        evaluation = evaluate(instance.config, existing, snapshot.property_options)
        if not evaluation.has_drift:
            logger.debug("item_unchanged", path=str(path), item=instance.name)
            composer.record(collection, instance.name, ActionKind.UNCHANGED, before=existing, after=existing)
            return

        if not isinstance(handler, Updatable):
            raise CapabilityMissingError(
                f"'{instance.name}' in '{path}' has drifted but cannot be updated",
                details={"path": str(path), "item": instance.name, "drift": list(evaluation.drift)},
            )

        if self.dry_run:
            logger.info("item_update_planned", path=str(path), item=instance.name, drift=list(evaluation.drift))
            composer.record(
                collection,
                instance.name,
                ActionKind.UPDATE,
                before=existing,
                after=existing,
                drift=evaluation.drift,
            )
            return

        state = await _call(
            path,
            "update",
            instance.name,
            lambda: handler.update(instance.name, evaluation.payload, parents, existing),
        )
        _require_state(state, path, "update", instance.name)
        logger.info("item_updated", path=str(path), item=instance.name, drift=list(evaluation.drift))
        composer.record(
            collection,
            instance.name,
            ActionKind.UPDATE,
            before=existing,
            after=state,
            drift=evaluation.drift,
        )

    async def _remove(
        self,
        handler: Readable,
        name: str,
        existing: Any,
        parents: Parents,
        path: TreePath,
        collection: CollectionResult,
        composer: ResultComposer,
    ) -> None:
        if not isinstance(handler, Deletable):
            logger.warning("item_unmanaged", path=str(path), item=name)
            composer.record(collection, name, ActionKind.UNMANAGED, before=existing, after=existing)
            return

        if self.dry_run:
            logger.info("item_delete_planned", path=str(path), item=name)
        else:
            await _call(path, "delete", name, lambda: handler.delete(name, existing, parents))
            logger.info("item_deleted", path=str(path), item=name)
        composer.record(collection, name, ActionKind.DELETE, before=existing, after=None)


async def apply(
    declaration: Declaration | Mapping[str, Any],
    handlers: HandlerRegistry | Mapping[str, Readable],
    *,
    dry_run: bool = False,
) -> ReconcileResult:
    """Reconcile ``declaration`` once with the given handlers."""
    return await Reconciler(handlers, dry_run=dry_run).apply(declaration)


async def _call(path: TreePath, operation: str, name: str | None, call: Callable[[], Awaitable[Any]]) -> Any:
    try:
        return await call()
    except ConvergeError:
        raise
    except Exception as exc:
        target = f"{path}/{name}" if name else str(path)
        raise HandlerError(
            f"{operation} failed for '{target}': {exc}",
            details={"path": str(path), "operation": operation, "item": name},
        ) from exc


def _require_state(state: Any, path: TreePath, operation: str, name: str) -> None:
    if state is None:
        raise HandlerError(
            f"{operation} for '{path}/{name}' returned no live state",
            details={"path": str(path), "operation": operation, "item": name},
        )


def _check_identity(handler: Readable, instance: InstanceNode, path: TreePath) -> None:
    if not isinstance(handler, Identified):
        return
    value: Any = instance.config
    for part in handler.identity_path:
        if not isinstance(value, Mapping) or part not in value:
            return
        value = value[part]
    if value != instance.name:
        raise PolicyViolationError(
            f"Name in config '{value}' must match declaration key '{instance.name}'",
            details={"path": str(path), "field": ".".join(handler.identity_path)},
        )
