"""
DigitalOcean handlers: domains, Kubernetes clusters and cluster access.

The ``kubeconfig`` collection is a singleton owned by a cluster. Reading it
waits until the cluster is running, downloads its kubeconfig, builds a
Kubernetes API client and waits until enough nodes have joined.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass
from typing import Any, Callable

import structlog
import yaml

from converge.clients.digitalocean import DigitalOceanClient
from converge.core.errors import ConfigurationError
from converge.declaration import TreePath
from converge.engine.parents import Parents
from converge.handlers.base import Creatable, Deletable, Identified, Readable, Snapshot, key_by
from converge.policy import ForEach, Policy, matches_prefix
from converge.readiness import NOT_READY, Ready, Poller

logger = structlog.get_logger()

IMMUTABLE = Policy.IMMUTABLE_RESPONSE

CLUSTER_PROPERTY_OPTIONS: dict[str, Any] = {
    "id": IMMUTABLE,
    "cluster_subnet": IMMUTABLE,
    "service_subnet": IMMUTABLE,
    "vpc_uuid": IMMUTABLE,
    "ipv4": IMMUTABLE,
    "endpoint": IMMUTABLE,
    "auto_upgrade": IMMUTABLE,
    "surge_upgrade": IMMUTABLE,
    "registry_enabled": IMMUTABLE,
    "ha": IMMUTABLE,
    "tags": matches_prefix("k8s"),
    "node_pools": ForEach(
        {
            "id": IMMUTABLE,
            "tags": matches_prefix("k8s"),
            "nodes": IMMUTABLE,
            "auto_scale": IMMUTABLE,
            "min_nodes": IMMUTABLE,
            "max_nodes": IMMUTABLE,
            "labels": IMMUTABLE,
            "taints": IMMUTABLE,
        }
    ),
    "maintenance_policy": IMMUTABLE,
    "status": IMMUTABLE,
    "created_at": IMMUTABLE,
    "updated_at": IMMUTABLE,
}


class DomainsHandler(Readable):
    """Read-only view of the account's DNS domains."""

    def __init__(self, client: DigitalOceanClient) -> None:
        self._client = client

    async def get(self, parents: Parents, path: TreePath) -> Snapshot:
        return Snapshot(items=key_by(await self._client.domains(), "name"))


class ClustersHandler(Readable, Creatable, Deletable, Identified):
    """Kubernetes clusters. Changing a created cluster is not supported."""

    identity_path = ("name",)

    def __init__(self, client: DigitalOceanClient) -> None:
        self._client = client

    async def get(self, parents: Parents, path: TreePath) -> Snapshot:
        return Snapshot(
            items=key_by(await self._client.clusters(), "name"),
            property_options=CLUSTER_PROPERTY_OPTIONS,
        )

    async def create(self, name: str, config: dict[str, Any], parents: Parents) -> Any:
        cluster = await self._client.create_cluster(config)
        logger.info("cluster_requested", cluster=name, id=cluster.get("id"))
        return cluster

    async def delete(self, name: str, existing: Any, parents: Parents) -> None:
        await self._client.delete_cluster(existing["id"])


@dataclass(frozen=True)
class KubeAccess:
    """Live state of a cluster's ``kubeconfig`` singleton."""

    config: dict[str, Any]
    api_client: Any
    namespace: str
    cluster_id: str


def _new_api_client(config: dict[str, Any]) -> Any:
    from kubernetes import config as kube_config

    return kube_config.new_client_from_config_dict(config)


def with_context_namespace(kubeconfig: dict[str, Any], context_name: str, cluster: str, namespace: str) -> dict[str, Any]:
    """Ensure the current context has a namespace, adding a named context when there is none."""
    config = copy.deepcopy(kubeconfig)
    contexts = config.setdefault("contexts", [])
    current = config.get("current-context")
    for entry in contexts:
        if entry.get("name") == current:
            entry.setdefault("context", {}).setdefault("namespace", namespace)
            return config

    contexts.append({"name": context_name, "context": {"cluster": cluster, "namespace": namespace}})
    config["current-context"] = context_name
    return config


def current_namespace(kubeconfig: dict[str, Any], default: str = "default") -> str:
    current = kubeconfig.get("current-context")
    for entry in kubeconfig.get("contexts", []):
        if entry.get("name") == current:
            return entry.get("context", {}).get("namespace", default)
    return default


class KubeconfigHandler(Readable):
    """Cluster access for nested Kubernetes collections."""

    def __init__(
        self,
        client: DigitalOceanClient,
        poller: Poller,
        *,
        namespace: str = "default",
        context_name: str = "dev",
        min_ready_nodes: int = 2,
        api_client_factory: Callable[[dict[str, Any]], Any] = _new_api_client,
    ) -> None:
        self._client = client
        self._poller = poller
        self._namespace = namespace
        self._context_name = context_name
        self._min_ready_nodes = min_ready_nodes
        self._api_client_factory = api_client_factory

    async def get(self, parents: Parents, path: TreePath) -> Snapshot:
        if "clusters" not in parents:
            raise ConfigurationError(f"'{path}' must be declared inside a cluster")
        cluster_id = parents["clusters"]["id"]

        await self._poller.wait_for(
            lambda: self._cluster_running(cluster_id),
            description=f"cluster {cluster_id} to be running",
        )

        raw = await self._client.kubeconfig(cluster_id)
        config = with_context_namespace(
            yaml.safe_load(raw) or {},
            self._context_name,
            path.nearest_instance() or cluster_id,
            self._namespace,
        )
        api_client = self._api_client_factory(config)

        await self._poller.wait_for(
            lambda: self._nodes_ready(api_client),
            description=f"{self._min_ready_nodes} nodes of cluster {cluster_id}",
        )

        return Snapshot(
            state=KubeAccess(
                config=config,
                api_client=api_client,
                namespace=current_namespace(config, self._namespace),
                cluster_id=cluster_id,
            )
        )

    async def _cluster_running(self, cluster_id: str) -> Any:
        cluster = await self._client.cluster(cluster_id)
        state = (cluster.get("status") or {}).get("state")
        if state == "running":
            return Ready(cluster)
        logger.info("cluster_not_running", cluster_id=cluster_id, state=state)
        return NOT_READY

    async def _nodes_ready(self, api_client: Any) -> Any:
        from kubernetes import client as kube_client

        core = kube_client.CoreV1Api(api_client)
        nodes = (await asyncio.to_thread(core.list_node)).items
        ready = [node for node in nodes if _internal_ip_count(node) == 1]
        if len(ready) >= self._min_ready_nodes:
            return Ready(len(ready))
        logger.info("nodes_not_ready", nodes=len(nodes), ready=len(ready), required=self._min_ready_nodes)
        return NOT_READY


def _internal_ip_count(node: Any) -> int:
    addresses = getattr(getattr(node, "status", None), "addresses", None) or []
    return sum(1 for address in addresses if getattr(address, "type", None) == "InternalIP")
