"""Built-in handler wiring for DigitalOcean Kubernetes deployments."""

from __future__ import annotations

from converge.clients.digitalocean import DigitalOceanClient
from converge.config.settings import Settings
from converge.declaration import Declaration, TreePath
from converge.handlers.checks import HttpChecksHandler
from converge.handlers.digitalocean import ClustersHandler, DomainsHandler, KubeconfigHandler
from converge.handlers.kubernetes import DeploymentsHandler, ServicesHandler
from converge.handlers.registry import HandlerRegistry
from converge.readiness import Poller


def declared_checks(declaration: Declaration, collection: str = "tests") -> dict[TreePath, tuple[str, ...]]:
    """Instance names declared in each collection called ``collection``, keyed by its path."""
    return {
        path: tuple(node.instances)
        for path, node in declaration.walk()
        if node.name == collection and node.instances
    }


def build_default_registry(
    settings: Settings,
    client: DigitalOceanClient,
    *,
    declaration: Declaration | None = None,
    poller: Poller | None = None,
) -> HandlerRegistry:
    poller = poller or Poller.from_settings(settings)
    checks = declared_checks(declaration) if declaration is not None else {}

    registry = HandlerRegistry()
    registry.register("domains", DomainsHandler(client), description="DigitalOcean DNS domains")
    registry.register("clusters", ClustersHandler(client), description="DigitalOcean Kubernetes clusters")
    registry.register(
        "kubeconfig",
        KubeconfigHandler(
            client,
            poller,
            namespace=settings.kube_namespace,
            context_name=settings.kube_context_name,
            min_ready_nodes=settings.min_ready_nodes,
        ),
        description="Cluster access",
    )
    registry.register("deployments", DeploymentsHandler(), description="Kubernetes deployments")
    registry.register("services", ServicesHandler(poller), description="Kubernetes services")
    registry.register(
        "tests",
        HttpChecksHandler(poller, checks, timeout=settings.check_timeout),
        description="HTTP checks against service load balancers",
    )
    return registry
