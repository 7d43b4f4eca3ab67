"""Error taxonomy for fleet and deployment operations."""

from __future__ import annotations


class FleetError(Exception):
    """Base class for all botfleet errors."""


class ConnectivityError(FleetError):
    """Transport to a host could not be established or was lost."""


class RemoteCommandError(FleetError):
    """A remote command exited non-zero."""

    def __init__(
        self,
        command: str,
        exit_status: int | None,
        stdout: str = "",
        stderr: str = "",
    ):
        self.command = command
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr
        detail = (stderr or stdout).strip()
        message = f"command exited with status {exit_status}: {_short(command)}"
        if detail:
            message = f"{message}: {detail[-500:]}"
        super().__init__(message)


class RemoteCommandTimeout(RemoteCommandError):
    """A remote command did not finish within its timeout."""

    def __init__(self, command: str, timeout: float):
        self.timeout = timeout
        super().__init__(command, None)
        self.args = (f"command timed out after {timeout:g}s: {_short(command)}",)


class ProvisioningError(FleetError):
    """The VM provider rejected or failed a request."""


class ProvisioningTimeout(ProvisioningError):
    """A VM did not reach the running state in time."""

    def __init__(self, instance_id: str, timeout: float, state: str):
        self.instance_id = instance_id
        self.timeout = timeout
        self.state = state
        super().__init__(f"instance {instance_id} not running after {timeout:g}s (state={state})")


class CapacityExceeded(FleetError):
    """No free execution slot remains on the host."""

    def __init__(self, host_id: str, current: int, maximum: int, reason: str = "host at capacity"):
        self.host_id = host_id
        self.current = current
        self.maximum = maximum
        super().__init__(f"{reason}: host {host_id} ({current}/{maximum})")


class PipelinePhaseError(FleetError):
    """A deployment pipeline phase failed.

    Carries the diagnostic bundle collected from the host right after the
    failure so callers can act without logging in to the machine.
    """

    def __init__(
        self,
        phase: str,
        host_id: str | None,
        tenant_id: str | None,
        bundle: str = "",
        cause: str = "",
    ):
        self.phase = phase
        self.host_id = host_id
        self.tenant_id = tenant_id
        self.bundle = bundle
        self.cause = cause
        message = f"phase {phase} failed (host={host_id}, tenant={tenant_id})"
        if cause:
            message = f"{message}: {cause}"
        if bundle:
            message = f"{message}\n\n{bundle}"
        super().__init__(message)


class HealthCheckTimeout(FleetError):
    """A host never reached the ready state."""


class TenantNotFound(FleetError):
    """No tenant record exists for the given id."""


def _short(command: str, limit: int = 120) -> str:
    first = command.strip().splitlines()[0] if command.strip() else ""
    return first if len(first) <= limit else first[: limit - 3] + "..."
