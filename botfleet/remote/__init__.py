"""SSH transport to fleet hosts."""

from botfleet.remote.session import RemoteSession, open_session

__all__ = ["RemoteSession", "open_session"]
