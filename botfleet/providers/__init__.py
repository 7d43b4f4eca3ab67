"""VM provisioning backends."""

from botfleet.providers.base import InstanceState, ServerSpec, VMProvisioner, CreatedServer
from botfleet.providers.hetzner import HetznerProvisioner

__all__ = ["CreatedServer", "HetznerProvisioner", "InstanceState", "ServerSpec", "VMProvisioner"]
