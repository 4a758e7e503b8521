"""
Kubernetes handlers: deployments and services.

Both live below a ``kubeconfig`` singleton and act in the namespace of its
current context. The kubernetes client is synchronous, so every call runs
in a worker thread.
"""

from __future__ import annotations

import asyncio
from functools import partial
from typing import Any, Callable

import structlog

from converge.core.errors import ConfigurationError
from converge.declaration import TreePath
from converge.engine.parents import Parents
from converge.handlers.base import Creatable, Deletable, Identified, Readable, Snapshot, Updatable, key_by
from converge.handlers.digitalocean import KubeAccess
from converge.policy import ForEach, Policy
from converge.readiness import NOT_READY, Poller, Ready

logger = structlog.get_logger()

CREATE_ONLY = Policy.CREATE_ONLY
IMMUTABLE = Policy.IMMUTABLE_RESPONSE

OBJECT_METADATA_OPTIONS: dict[str, Any] = {
    "namespace": IMMUTABLE,
    "selfLink": IMMUTABLE,
    "uid": IMMUTABLE,
    "resourceVersion": IMMUTABLE,
    "generation": IMMUTABLE,
    "creationTimestamp": IMMUTABLE,
    "annotations": IMMUTABLE,
    "managedFields": IMMUTABLE,
}

DEPLOYMENT_PROPERTY_OPTIONS: dict[str, Any] = {
    "apiVersion": CREATE_ONLY,
    "kind": CREATE_ONLY,
    "metadata": OBJECT_METADATA_OPTIONS,
    "spec": {
        "template": {
            "metadata": {"creationTimestamp": IMMUTABLE},
            "spec": {
                "containers": ForEach(
                    {
                        "ports": ForEach({"protocol": IMMUTABLE}),
                        "resources": IMMUTABLE,
                        "terminationMessagePath": IMMUTABLE,
                        "terminationMessagePolicy": IMMUTABLE,
                        "imagePullPolicy": IMMUTABLE,
                    }
                ),
                "restartPolicy": IMMUTABLE,
                "dnsPolicy": IMMUTABLE,
                "terminationGracePeriodSeconds": IMMUTABLE,
                "securityContext": IMMUTABLE,
                "schedulerName": IMMUTABLE,
            },
        },
        "strategy": IMMUTABLE,
        "revisionHistoryLimit": IMMUTABLE,
        "progressDeadlineSeconds": IMMUTABLE,
    },
    "status": IMMUTABLE,
}

SERVICE_PROPERTY_OPTIONS: dict[str, Any] = {
    "apiVersion": CREATE_ONLY,
    "kind": CREATE_ONLY,
    "metadata": OBJECT_METADATA_OPTIONS,
    "spec": {
        "clusterIP": IMMUTABLE,
        "clusterIPs": IMMUTABLE,
        "ipFamilies": IMMUTABLE,
        "ipFamilyPolicy": IMMUTABLE,
        "internalTrafficPolicy": IMMUTABLE,
        "allocateLoadBalancerNodePorts": IMMUTABLE,
        "sessionAffinity": IMMUTABLE,
        "externalTrafficPolicy": IMMUTABLE,
        "ports": ForEach({"nodePort": IMMUTABLE}),
    },
    "status": IMMUTABLE,
}


def _metadata_name(item: dict[str, Any]) -> str:
    return item["metadata"]["name"]


class _KubernetesHandler:
    """Shared plumbing for handlers below a ``kubeconfig`` singleton."""

    identity_path = ("metadata", "name")
    api_name = "CoreV1Api"

    def _access(self, parents: Parents) -> KubeAccess:
        if "kubeconfig" not in parents:
            raise ConfigurationError(f"{type(self).__name__} must be declared inside a kubeconfig collection")
        return parents["kubeconfig"]

    def _api(self, access: KubeAccess) -> Any:
        from kubernetes import client as kube_client

        return getattr(kube_client, self.api_name)(access.api_client)

    async def _call(self, access: KubeAccess, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        result = await asyncio.to_thread(partial(func, *args, **kwargs))
        return access.api_client.sanitize_for_serialization(result)


class DeploymentsHandler(_KubernetesHandler, Readable, Creatable, Updatable, Deletable, Identified):
    api_name = "AppsV1Api"
    ignore_keys = frozenset({"kube-dns", "cilium-operator", "coredns"})

    async def get(self, parents: Parents, path: TreePath) -> Snapshot:
        access = self._access(parents)
        api = self._api(access)
        listing = await self._call(access, api.list_namespaced_deployment, access.namespace)
        return Snapshot(
            items=key_by(listing.get("items") or [], _metadata_name),
            ignore_keys=self.ignore_keys,
            property_options=DEPLOYMENT_PROPERTY_OPTIONS,
        )

    async def create(self, name: str, config: dict[str, Any], parents: Parents) -> Any:
        access = self._access(parents)
        api = self._api(access)
        return await self._call(access, api.create_namespaced_deployment, access.namespace, config)

    async def update(self, name: str, config: dict[str, Any], parents: Parents, existing: Any) -> Any:
        access = self._access(parents)
        api = self._api(access)
        return await self._call(access, api.replace_namespaced_deployment, name, access.namespace, config)

    async def delete(self, name: str, existing: Any, parents: Parents) -> None:
        access = self._access(parents)
        api = self._api(access)
        await self._call(access, api.delete_namespaced_deployment, name, access.namespace)


class ServicesHandler(_KubernetesHandler, Readable, Creatable, Updatable, Deletable, Identified):
    """Services. Reading waits until every load balancer has an ingress IP."""

    api_name = "CoreV1Api"
    ignore_keys = frozenset({"kubernetes", "kube-dns"})

    def __init__(self, poller: Poller) -> None:
        self._poller = poller

    async def get(self, parents: Parents, path: TreePath) -> Snapshot:
        access = self._access(parents)
        api = self._api(access)

        async def check() -> Any:
            listing = await self._call(access, api.list_namespaced_service, access.namespace)
            services = [item for item in listing.get("items") or [] if _metadata_name(item) not in self.ignore_keys]
            pending = [_metadata_name(item) for item in services if _awaits_ingress(item)]
            if pending:
                logger.info("load_balancer_pending", path=str(path), services=pending)
                return NOT_READY
            return Ready(listing.get("items") or [])

        items = await self._poller.wait_for(check, description=f"load balancer IPs under {path}")
        return Snapshot(
            items=key_by(items, _metadata_name),
            ignore_keys=self.ignore_keys,
            property_options=SERVICE_PROPERTY_OPTIONS,
        )

    async def create(self, name: str, config: dict[str, Any], parents: Parents) -> Any:
        access = self._access(parents)
        api = self._api(access)
        return await self._call(access, api.create_namespaced_service, access.namespace, config)

    async def update(self, name: str, config: dict[str, Any], parents: Parents, existing: Any) -> Any:
        access = self._access(parents)
        api = self._api(access)
        body = dict(config)
        body["metadata"] = {**(config.get("metadata") or {}), "resourceVersion": existing["metadata"]["resourceVersion"]}
        spec = dict(config.get("spec") or {})
        if existing.get("spec", {}).get("clusterIP"):
            spec["clusterIP"] = existing["spec"]["clusterIP"]
        body["spec"] = spec
        return await self._call(access, api.replace_namespaced_service, name, access.namespace, body)

    async def delete(self, name: str, existing: Any, parents: Parents) -> None:
        access = self._access(parents)
        api = self._api(access)
        await self._call(access, api.delete_namespaced_service, name, access.namespace)


def _awaits_ingress(service: dict[str, Any]) -> bool:
    return (service.get("spec") or {}).get("type") == "LoadBalancer" and not load_balancer_ip(service)


def load_balancer_ip(service: dict[str, Any]) -> str | None:
    ingress = ((service.get("status") or {}).get("loadBalancer") or {}).get("ingress") or []
    return ingress[0].get("ip") if ingress else None


def _core_api(access: KubeAccess) -> Any:
    from kubernetes import client as kube_client

    return kube_client.CoreV1Api(access.api_client)


async def read_service(access: KubeAccess, name: str) -> dict[str, Any]:
    """Fetch one service from the namespace of the current context."""
    api = _core_api(access)
    result = await asyncio.to_thread(api.read_namespaced_service, name, access.namespace)
    return access.api_client.sanitize_for_serialization(result)
