"""
Post-deployment verification collection.

Tests are read-only: their handler never creates anything, so a declared
check that does not report success fails the run. Each ``tests`` collection
only reports the checks declared at its own path.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Iterable, Mapping

import httpx
import structlog

from converge.declaration import TreePath
from converge.engine.parents import Parents
from converge.handlers.base import Readable, Snapshot
from converge.handlers.digitalocean import KubeAccess
from converge.handlers.kubernetes import load_balancer_ip, read_service
from converge.policy import Policy
from converge.readiness import NOT_READY, Failed, Poller, Ready

logger = structlog.get_logger()

CHECK_PROPERTY_OPTIONS: dict[str, Any] = {
    "impl": Policy.CREATE_ONLY,
    "path": Policy.CREATE_ONLY,
    "success": Policy.IMMUTABLE_RESPONSE,
    "status_code": Policy.IMMUTABLE_RESPONSE,
}

ServiceReader = Callable[[KubeAccess, str], Awaitable[Mapping[str, Any]]]


class HttpChecksHandler(Readable):
    """Waits until the enclosing service's load balancer answers with the expected status.

    ``checks`` maps the path of each ``tests`` collection to the check names
    declared there. A service created in this run has no ingress IP yet, so
    the service is re-read through the cluster access ancestor until one is
    assigned.
    """

    def __init__(
        self,
        poller: Poller,
        checks: Mapping[TreePath, Iterable[str]],
        *,
        request_path: str = "/",
        expected_status: int = 200,
        timeout: float = 3.0,
        transport: httpx.AsyncBaseTransport | None = None,
        service_reader: ServiceReader = read_service,
    ) -> None:
        self._poller = poller
        self._checks = {path: tuple(names) for path, names in checks.items()}
        self._request_path = request_path
        self._expected_status = expected_status
        self._timeout = timeout
        self._transport = transport
        self._service_reader = service_reader

    def checks_for(self, path: TreePath) -> tuple[str, ...]:
        return self._checks.get(path, ())

    async def get(self, parents: Parents, path: TreePath) -> Snapshot:
        names = self.checks_for(path)
        if not names or "services" not in parents:
            return Snapshot(items={})

        service_entry = parents.entry("services")
        access = parents["kubeconfig"] if "kubeconfig" in parents else None

        async def current_ip() -> str | None:
            ip = load_balancer_ip(service_entry.state)
            if ip or access is None or service_entry.name is None:
                return ip
            return load_balancer_ip(await self._service_reader(access, service_entry.name))

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:

            async def check() -> Any:
                ip = await current_ip()
                if not ip:
                    if access is None or not _is_load_balancer(service_entry.state):
                        return Failed(f"service under {path} has no load balancer IP")
                    logger.info("check_waiting_for_ip", path=str(path), service=service_entry.name)
                    return NOT_READY
                url = f"http://{ip}{self._request_path}"
                try:
                    response = await client.get(url)
                except httpx.TransportError as exc:
                    logger.info("check_unreachable", url=url, error=str(exc))
                    return NOT_READY
                if response.status_code == self._expected_status:
                    return Ready(response.status_code)
                logger.info("check_unexpected_status", url=url, status=response.status_code)
                return NOT_READY

            status_code = await self._poller.wait_for(
                check,
                description=f"{path} to answer {self._expected_status}",
            )

        return Snapshot(
            items={name: {"success": True, "status_code": status_code} for name in names},
            property_options=CHECK_PROPERTY_OPTIONS,
        )


def _is_load_balancer(service: Any) -> bool:
    return isinstance(service, Mapping) and (service.get("spec") or {}).get("type") == "LoadBalancer"
