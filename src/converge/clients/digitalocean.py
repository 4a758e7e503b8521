from __future__ import annotations

from typing import Any

import httpx

from converge.clients.base import BaseHTTPClient

DEFAULT_BASE_URL = "https://api.digitalocean.com"
PAGE_SIZE = 200


class DigitalOceanClient(BaseHTTPClient):
    """DigitalOcean v2 API client with retry logic and circuit breaker.

    Constructed by the caller with an explicit token and handed to the
    handlers that need it.
    """

    def __init__(
        self,
        token: str | None,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        max_retries: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(base_url, timeout=timeout, max_retries=max_retries, transport=transport)
        self._token = token

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def account(self) -> dict[str, Any]:
        data = await self.get("/v2/account")
        return data.get("account", {})

    async def domains(self) -> list[dict[str, Any]]:
        data = await self.get("/v2/domains", params={"per_page": PAGE_SIZE})
        return data.get("domains", [])

    async def clusters(self) -> list[dict[str, Any]]:
        data = await self.get("/v2/kubernetes/clusters", params={"per_page": PAGE_SIZE})
        return data.get("kubernetes_clusters", [])

    async def cluster(self, cluster_id: str) -> dict[str, Any]:
        data = await self.get(f"/v2/kubernetes/clusters/{cluster_id}")
        return data.get("kubernetes_cluster", {})

    async def create_cluster(self, config: dict[str, Any]) -> dict[str, Any]:
        data = await self.post("/v2/kubernetes/clusters", json=config)
        return data.get("kubernetes_cluster", {})

    async def delete_cluster(self, cluster_id: str) -> None:
        await self.delete(f"/v2/kubernetes/clusters/{cluster_id}")

    async def kubeconfig(self, cluster_id: str) -> str:
        return await self.get_text(f"/v2/kubernetes/clusters/{cluster_id}/kubeconfig")
