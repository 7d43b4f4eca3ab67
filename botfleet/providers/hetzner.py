"""Hetzner Cloud provisioner."""

from __future__ import annotations

import logging

import httpx

from botfleet.config import settings
from botfleet.errors import ProvisioningError
from botfleet.providers.base import (
    CreatedServer,
    InstanceInfo,
    InstanceState,
    ServerSpec,
    VMProvisioner,
)

logger = logging.getLogger(__name__)


class HetznerProvisioner(VMProvisioner):
    """Talks to the Hetzner Cloud REST API with a project token."""

    def __init__(
        self,
        api_token: str | None = None,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        token = api_token if api_token is not None else settings.hetzner_api_token
        if not token:
            raise ProvisioningError("Hetzner API token is not configured")
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.hetzner_api_url,
            timeout=httpx.Timeout(settings.provider_http_timeout),
        )
        self._headers = {"Authorization": f"Bearer {token}"}

    @property
    def name(self) -> str:
        return "hetzner"

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, path, headers=self._headers, **kwargs)
        except httpx.HTTPError as e:
            raise ProvisioningError(f"Hetzner {method} {path} failed: {e}") from e

    async def create_server(self, spec: ServerSpec) -> CreatedServer:
        body = {
            "name": spec.name,
            "server_type": spec.server_type or settings.hetzner_server_type,
            "image": spec.image or settings.hetzner_image,
            "location": spec.location or settings.hetzner_location,
            "user_data": spec.user_data,
            "start_after_create": True,
            "labels": spec.labels,
        }
        response = await self._request("POST", "/servers", json=body)
        if response.status_code != 201:
            raise ProvisioningError(
                f"Hetzner create_server returned {response.status_code}: {response.text[:500]}"
            )

        payload = response.json()
        server = payload.get("server") or {}
        ipv4 = ((server.get("public_net") or {}).get("ipv4") or {}).get("ip", "")
        created = CreatedServer(
            instance_id=str(server.get("id", "")),
            ip_address=ipv4,
            root_password=payload.get("root_password") or "",
        )
        if not created.instance_id or not created.ip_address:
            raise ProvisioningError(f"Hetzner response missing server id or address for {spec.name}")
        logger.info(f"Created Hetzner server {spec.name} id={created.instance_id} ip={created.ip_address}")
        return created

    async def get_server(self, instance_id: str) -> InstanceInfo:
        response = await self._request("GET", f"/servers/{instance_id}")
        if response.status_code != 200:
            raise ProvisioningError(
                f"Hetzner get_server {instance_id} returned {response.status_code}: {response.text[:500]}"
            )
        server = response.json().get("server") or {}
        try:
            state = InstanceState(server.get("status", "unknown"))
        except ValueError:
            state = InstanceState.UNKNOWN
        ipv4 = ((server.get("public_net") or {}).get("ipv4") or {}).get("ip", "")
        return InstanceInfo(instance_id=instance_id, state=state, ip_address=ipv4)

    async def delete_server(self, instance_id: str) -> None:
        response = await self._request("DELETE", f"/servers/{instance_id}")
        if response.status_code not in (200, 204):
            raise ProvisioningError(
                f"Hetzner delete_server {instance_id} returned {response.status_code}: {response.text[:500]}"
            )
        logger.info(f"Deleted Hetzner server {instance_id}")

    async def close(self) -> None:
        await self._client.aclose()
