"""
Declaration tree: the desired-state input of a reconciliation run.

A declaration is built from explicit node types:

- ``CollectionNode``: a named group of same-kind resource instances, or a
  singleton collection whose handler returns exactly one live state.
- ``InstanceNode``: one resource instance. Its ``config`` holds the plain
  scalar/structured fields; its ``collections`` hold owned child resources.

``parse_declaration`` accepts the nested-mapping form used in YAML files,
where keys starting with a marker (``@`` by default) are collections and a
doubled marker escapes a literal field name.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterator, Mapping

from converge.core.errors import DeclarationError

DEFAULT_MARKER = "@"


@dataclass(frozen=True)
class TreePath:
    """Position in a declaration tree, alternating collection and instance names."""

    segments: tuple[tuple[str, bool], ...] = ()

    def collection(self, name: str) -> TreePath:
        return TreePath(self.segments + ((name, True),))

    def instance(self, name: str) -> TreePath:
        return TreePath(self.segments + ((name, False),))

    @property
    def name(self) -> str | None:
        return self.segments[-1][0] if self.segments else None

    def nearest_instance(self) -> str | None:
        """Name of the closest enclosing instance, if any."""
        for name, is_collection in reversed(self.segments):
            if not is_collection:
                return name
        return None

    def render(self, marker: str = DEFAULT_MARKER) -> str:
        return "/".join(f"{marker}{name}" if is_collection else name for name, is_collection in self.segments)

    def __str__(self) -> str:
        return self.render()


@dataclass(frozen=True)
class InstanceNode:
    """A declared resource instance."""

    name: str
    config: Mapping[str, Any] = field(default_factory=dict)
    collections: Mapping[str, CollectionNode] = field(default_factory=dict)

    def __post_init__(self) -> None:
        clash = sorted(set(self.config) & set(self.collections))
        if clash:
            raise DeclarationError(
                f"Instance '{self.name}' uses the same key for a field and a collection",
                details={"keys": clash},
            )
        object.__setattr__(self, "config", MappingProxyType(copy.deepcopy(dict(self.config))))
        object.__setattr__(self, "collections", MappingProxyType(dict(self.collections)))


@dataclass(frozen=True)
class CollectionNode:
    """A declared group of same-kind resources."""

    name: str
    instances: Mapping[str, InstanceNode] = field(default_factory=dict)
    singleton: InstanceNode | None = None

    def __post_init__(self) -> None:
        if self.singleton is not None and self.instances:
            raise DeclarationError(
                f"Collection '{self.name}' cannot be a singleton and hold named instances"
            )
        for key, instance in self.instances.items():
            if key != instance.name:
                raise DeclarationError(
                    f"Instance key '{key}' does not match instance name '{instance.name}'",
                    details={"collection": self.name},
                )
        object.__setattr__(self, "instances", MappingProxyType(dict(self.instances)))

    @property
    def is_singleton(self) -> bool:
        return self.singleton is not None

    @classmethod
    def single(cls, name: str, collections: Mapping[str, CollectionNode] | None = None) -> CollectionNode:
        """Build a singleton collection owning the given child collections."""
        return cls(name, singleton=InstanceNode(name, collections=collections or {}))


@dataclass(frozen=True)
class Declaration:
    """Root of a declaration tree."""

    collections: Mapping[str, CollectionNode] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "collections", MappingProxyType(dict(self.collections)))
        _check_acyclic(self)

    def walk(self) -> Iterator[tuple[TreePath, CollectionNode]]:
        """Yield every collection with its path, depth first in declaration order."""
        yield from _walk(self.collections, TreePath())


def _walk(collections: Mapping[str, CollectionNode], path: TreePath) -> Iterator[tuple[TreePath, CollectionNode]]:
    for name, node in collections.items():
        node_path = path.collection(name)
        yield node_path, node
        if node.singleton is not None:
            yield from _walk(node.singleton.collections, node_path)
            continue
        for instance_name, instance in node.instances.items():
            yield from _walk(instance.collections, node_path.instance(instance_name))


def _check_acyclic(declaration: Declaration) -> None:
    def visit(collections: Mapping[str, CollectionNode], active: frozenset[int]) -> None:
        for node in collections.values():
            if id(node) in active:
                raise DeclarationError(f"Declaration contains a cycle at collection '{node.name}'")
            children = [node.singleton] if node.singleton is not None else list(node.instances.values())
            for instance in children:
                visit(instance.collections, active | {id(node)})

    visit(declaration.collections, frozenset())


def _is_collection_key(key: Any, marker: str) -> bool:
    return isinstance(key, str) and key.startswith(marker) and not key.startswith(marker * 2)


def parse_declaration(data: Mapping[str, Any], *, marker: str = DEFAULT_MARKER) -> Declaration:
    """Build a ``Declaration`` from nested mappings using marker-prefixed collection keys."""
    if not isinstance(data, Mapping):
        raise DeclarationError("Declaration must be a mapping of collections")
    collections, config = _split(data, marker, TreePath(), frozenset({id(data)}))
    if config:
        raise DeclarationError(
            "Declaration root may only contain collections",
            details={"keys": sorted(str(k) for k in config)},
        )
    return Declaration(collections)


def _split(
    data: Mapping[Any, Any],
    marker: str,
    path: TreePath,
    active: frozenset[int],
) -> tuple[dict[str, CollectionNode], dict[str, Any]]:
    collections: dict[str, CollectionNode] = {}
    config: dict[str, Any] = {}
    for key, value in data.items():
        if _is_collection_key(key, marker):
            name = key[len(marker):]
            if not name:
                raise DeclarationError(f"Empty collection name under '{path}'")
            collections[name] = _parse_collection(name, value, marker, path, active)
        elif isinstance(key, str) and key.startswith(marker * 2):
            config[key[len(marker):]] = value
        else:
            config[key] = value
    return collections, config


def _parse_collection(
    name: str,
    value: Any,
    marker: str,
    path: TreePath,
    active: frozenset[int],
) -> CollectionNode:
    node_path = path.collection(name)
    if not isinstance(value, Mapping):
        raise DeclarationError(f"Collection '{node_path}' must be a mapping")
    if id(value) in active:
        raise DeclarationError(f"Declaration contains a cycle at '{node_path}'")
    active = active | {id(value)}

    if value and all(_is_collection_key(key, marker) for key in value):
        children, _ = _split(value, marker, node_path, active)
        return CollectionNode.single(name, children)

    instances: dict[str, InstanceNode] = {}
    for instance_name, instance_value in value.items():
        if _is_collection_key(instance_name, marker):
            raise DeclarationError(
                f"Collection '{node_path}' mixes instances and nested collections",
                details={"key": instance_name},
            )
        if not isinstance(instance_value, Mapping):
            raise DeclarationError(f"Instance '{node_path.instance(str(instance_name))}' must be a mapping")
        if id(instance_value) in active:
            raise DeclarationError(f"Declaration contains a cycle at '{node_path.instance(instance_name)}'")
        children, config = _split(
            instance_value,
            marker,
            node_path.instance(instance_name),
            active | {id(instance_value)},
        )
        instances[instance_name] = InstanceNode(instance_name, config, children)
    return CollectionNode(name, instances=instances)


def to_plain(declaration: Declaration, *, marker: str = DEFAULT_MARKER) -> dict[str, Any]:
    """Render a declaration back into the nested-mapping form."""
    return _collections_to_plain(declaration.collections, marker)


def _collections_to_plain(collections: Mapping[str, CollectionNode], marker: str) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name, node in collections.items():
        if node.singleton is not None:
            out[f"{marker}{name}"] = _collections_to_plain(node.singleton.collections, marker)
            continue
        out[f"{marker}{name}"] = {
            instance_name: _instance_to_plain(instance, marker) for instance_name, instance in node.instances.items()
        }
    return out


def _instance_to_plain(instance: InstanceNode, marker: str) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in instance.config.items():
        if isinstance(key, str) and key.startswith(marker):
            key = f"{marker}{key}"
        out[key] = copy.deepcopy(value)
    out.update(_collections_to_plain(instance.collections, marker))
    return out
