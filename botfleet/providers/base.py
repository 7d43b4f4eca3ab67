"""Provisioner interface for the VMs backing the fleet."""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

from botfleet.errors import ProvisioningTimeout

logger = logging.getLogger(__name__)


class InstanceState(str, Enum):
    """Power state reported by the provider."""
    INITIALIZING = "initializing"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    OFF = "off"
    DELETING = "deleting"
    UNKNOWN = "unknown"


@dataclass
class ServerSpec:
    """What to create. ``user_data`` is the first-boot bootstrap payload."""
    name: str
    user_data: str = ""
    server_type: str | None = None
    image: str | None = None
    location: str | None = None
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class CreatedServer:
    instance_id: str
    ip_address: str
    root_password: str


@dataclass
class InstanceInfo:
    instance_id: str
    state: InstanceState
    ip_address: str = ""


class VMProvisioner(ABC):
    """Creates and deletes VMs and reports their state."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def create_server(self, spec: ServerSpec) -> CreatedServer:
        """Create a VM. Raises ProvisioningError."""

    @abstractmethod
    async def get_server(self, instance_id: str) -> InstanceInfo:
        ...

    @abstractmethod
    async def delete_server(self, instance_id: str) -> None:
        ...

    async def wait_for_running(
        self,
        instance_id: str,
        timeout: float,
        poll_interval: float = 5.0,
    ) -> InstanceInfo:
        """Poll until the instance reports ``running``.

        Running only means the VM is powered and reachable; the guest keeps
        bootstrapping after this returns.
        """
        deadline = time.monotonic() + timeout
        while True:
            info = await self.get_server(instance_id)
            if info.state == InstanceState.RUNNING:
                return info
            if time.monotonic() >= deadline:
                raise ProvisioningTimeout(instance_id, timeout, info.state.value)
            logger.debug(f"Instance {instance_id} is {info.state.value}, waiting")
            await asyncio.sleep(poll_interval)

    async def close(self) -> None:
        return None
