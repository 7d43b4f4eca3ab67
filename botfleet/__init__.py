"""Shared-fleet manager and remote deployment orchestrator for tenant bots."""

from botfleet.version import __version__

__all__ = ["__version__"]
