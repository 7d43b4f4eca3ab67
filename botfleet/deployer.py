"""Upward API for deploying and operating tenant bots.

Each operation opens its own session, uses it, and closes it before
returning. Shared-profile tenants get a host and port from the fleet;
dedicated-profile tenants carry their own host address and are checked
with the host health probe before the pipeline runs.
"""
from __future__ import annotations

import logging
import secrets as secrets_module

from botfleet.config import settings
from botfleet.diagnostics import DiagnosticsCollector, HostHealthProbe
from botfleet.errors import ConnectivityError, FleetError, TenantNotFound
from botfleet.fleet import FleetManager, SessionOpener
from botfleet.log_state import StateReading, inspect
from botfleet.models import DeployStatus, HostStatus, SharedHost, Tenant
from botfleet.pipeline.profiles import RuntimeProfile, get_profile
from botfleet.pipeline.runner import DeploymentPipeline, DeploymentTarget
from botfleet.pipeline.templates import TenantLayout
from botfleet.remote import RemoteSession, open_session
from botfleet.schemas import DeploySecrets
from botfleet.store import TenantStore

logger = logging.getLogger(__name__)


class DeploymentService:
    def __init__(
        self,
        fleet: FleetManager,
        tenants: TenantStore,
        *,
        session_opener: SessionOpener = open_session,
        diagnostics: DiagnosticsCollector | None = None,
        health_probe: HostHealthProbe | None = None,
        source_root: str | None = None,
    ):
        self.fleet = fleet
        self.tenants = tenants
        self._open_session = session_opener
        self.diagnostics = diagnostics or DiagnosticsCollector()
        self.health_probe = health_probe or HostHealthProbe()
        self.source_root = source_root

    # --- Helpers ------------------------------------------------------------

    def get_tenant(self, tenant_id: str) -> Tenant:
        tenant = self.tenants.get(tenant_id)
        if tenant is None:
            raise TenantNotFound(f"tenant {tenant_id} not found")
        return tenant

    def _set_status(self, tenant: Tenant, status: DeployStatus, error: str | None = None) -> Tenant:
        tenant.deploy_status = status.value
        tenant.last_error = error
        return self.tenants.save(tenant)

    def _address(self, tenant: Tenant) -> tuple[str, str, str | None]:
        """(address, password, host_id) for the tenant's current host."""
        if tenant.dedicated_address:
            return tenant.dedicated_address, tenant.dedicated_password or "", None
        if tenant.host_id is None:
            raise FleetError(f"tenant {tenant.id} has no host assigned")
        host = self.fleet.get_host(tenant.host_id)
        if host is None:
            raise FleetError(f"host {tenant.host_id} for tenant {tenant.id} does not exist")
        return host.ip_address, host.root_password, host.id

    async def _session_for(self, tenant: Tenant, **kwargs) -> tuple[RemoteSession, str | None]:
        address, password, host_id = self._address(tenant)
        session = await self._open_session(address, password, **kwargs)
        return session, host_id

    def _pipeline(self, session: RemoteSession) -> DeploymentPipeline:
        return DeploymentPipeline(session, diagnostics=self.diagnostics, source_root=self.source_root)

    def _layout(self, tenant: Tenant) -> TenantLayout:
        return TenantLayout.for_tenant(get_profile(tenant.profile), tenant.id)

    def _target(self, tenant: Tenant, host_id: str | None, secrets: DeploySecrets | None = None) -> DeploymentTarget:
        profile = get_profile(tenant.profile)
        port = tenant.port or profile.fixed_port
        if port is None:
            raise FleetError(f"tenant {tenant.id} has no port assigned")
        return DeploymentTarget(tenant=tenant, profile=profile, port=port, host_id=host_id, secrets=secrets)

    # --- Deploy -------------------------------------------------------------

    async def deploy(self, tenant_id: str, secrets: DeploySecrets | None = None) -> Tenant:
        """Deploy a tenant bot end to end.

        On any failure the tenant is left in ``error`` with the reason
        recorded, a shared-host port is given back, and the error is
        re-raised to the caller.
        """
        tenant = self.get_tenant(tenant_id)
        profile = get_profile(tenant.profile)
        if profile.shared:
            return await self._deploy_shared(tenant, profile, secrets)
        return await self._deploy_dedicated(tenant, profile, secrets)

    async def _deploy_shared(
        self, tenant: Tenant, profile: RuntimeProfile, secrets: DeploySecrets | None
    ) -> Tenant:
        log_extra = {"tenant_id": tenant.id}
        try:
            host, port = await self._shared_slot(tenant)
        except FleetError as e:
            self._set_status(tenant, DeployStatus.ERROR, str(e))
            raise

        tenant.host_id = host.id
        tenant.port = port
        tenant = self._set_status(tenant, DeployStatus.DEPLOYING)
        logger.info(f"Deploying to {host.name} port {port}", extra={**log_extra, "host_id": host.id})

        try:
            await self._run_full(tenant, host, secrets)
        except FleetError as e:
            self._release(host)
            tenant.host_id = None
            tenant.port = None
            self._set_status(tenant, DeployStatus.ERROR, str(e))
            raise
        return self._set_status(tenant, DeployStatus.RUNNING)

    async def _shared_slot(self, tenant: Tenant) -> tuple[SharedHost, int]:
        """The tenant's existing host and port, or a fresh assignment.

        A slot on a host that is no longer ready is given back before a new
        one is taken, so a tenant never holds more than one.
        """
        if tenant.host_id and tenant.port:
            current = self.fleet.get_host(tenant.host_id)
            if current is not None and current.status == HostStatus.READY.value:
                logger.info(f"Reusing port {tenant.port} on {current.name}", extra={"tenant_id": tenant.id})
                return current, tenant.port
            if current is not None:
                self._release(current)
            tenant.host_id = None
            tenant.port = None

        host = await self.fleet.get_or_create_host()
        if host.status == HostStatus.INITIALIZING.value:
            logger.info(f"Host {host.name} still initializing, waiting", extra={"tenant_id": tenant.id})
            host = await self.fleet.wait_until_ready(host)
        return host, self.fleet.assign_port(host)

    def _release(self, host: SharedHost) -> None:
        try:
            self.fleet.release_port(host)
        except FleetError as e:
            logger.error(f"Could not release slot on {host.name}: {e}", extra={"host_id": host.id})

    async def _run_full(self, tenant: Tenant, host: SharedHost, secrets: DeploySecrets | None) -> None:
        session = await self._open_session(
            host.ip_address, host.root_password, connect_attempts=settings.deploy_connect_attempts
        )
        try:
            await self._pipeline(session).run(self._target(tenant, host.id, secrets))
        finally:
            await session.close()

    async def _deploy_dedicated(
        self, tenant: Tenant, profile: RuntimeProfile, secrets: DeploySecrets | None
    ) -> Tenant:
        if not tenant.dedicated_address:
            error = FleetError(f"tenant {tenant.id} uses {profile.name} but has no dedicated host")
            self._set_status(tenant, DeployStatus.ERROR, str(error))
            raise error

        if profile.channel == "meta" and not tenant.webhook_verify_token:
            tenant.webhook_verify_token = secrets_module.token_urlsafe(24)
        tenant.port = tenant.port or profile.fixed_port
        tenant = self._set_status(tenant, DeployStatus.DEPLOYING)

        try:
            session, _ = await self._session_for(tenant, connect_attempts=settings.deploy_connect_attempts)
            try:
                await self.health_probe.ensure_ready(session, profile)
                await self._pipeline(session).run(self._target(tenant, None, secrets))
            finally:
                await session.close()
        except FleetError as e:
            self._set_status(tenant, DeployStatus.ERROR, str(e))
            raise
        return self._set_status(tenant, DeployStatus.RUNNING)

    # --- Operations on a deployed tenant -------------------------------------

    async def stop(self, tenant_id: str) -> Tenant:
        tenant = self.get_tenant(tenant_id)
        session, _ = await self._session_for(tenant)
        try:
            await self._pipeline(session).stop(self._layout(tenant))
        finally:
            await session.close()
        return self._set_status(tenant, DeployStatus.STOPPED)

    async def restart(self, tenant_id: str) -> Tenant:
        tenant = self.get_tenant(tenant_id)
        session, host_id = await self._session_for(tenant)
        try:
            await self._pipeline(session).restart(self._target(tenant, host_id))
        except FleetError as e:
            self._set_status(tenant, DeployStatus.ERROR, str(e))
            raise
        finally:
            await session.close()
        return self._set_status(tenant, DeployStatus.RUNNING)

    async def reconfigure(self, tenant_id: str, secrets: DeploySecrets | None = None) -> Tenant:
        """Re-render configuration and restart after credential changes."""
        tenant = self.get_tenant(tenant_id)
        session, host_id = await self._session_for(tenant)
        try:
            await self._pipeline(session).reconfigure(self._target(tenant, host_id, secrets))
        except FleetError as e:
            self._set_status(tenant, DeployStatus.ERROR, str(e))
            raise
        finally:
            await session.close()
        return self._set_status(tenant, DeployStatus.RUNNING)

    async def update_env_value(self, tenant_id: str, key: str, value: str | None) -> Tenant:
        """Switch one environment key on, off or to a new value, then restart."""
        tenant = self.get_tenant(tenant_id)
        session, host_id = await self._session_for(tenant)
        try:
            pipeline = self._pipeline(session)
            await pipeline.update_env_value(self._layout(tenant), key, value)
            await pipeline.restart(self._target(tenant, host_id))
        finally:
            await session.close()
        logger.info(f"Updated {key} and restarted", extra={"tenant_id": tenant.id})
        return self._set_status(tenant, DeployStatus.RUNNING)

    async def remove(self, tenant_id: str) -> None:
        """Tear the tenant off its host and give its slot back."""
        tenant = self.get_tenant(tenant_id)
        profile = get_profile(tenant.profile)
        if not tenant.dedicated_address and tenant.host_id is None:
            self.tenants.delete(tenant)
            logger.info(f"Removed undeployed tenant {tenant.id}", extra={"tenant_id": tenant.id})
            return
        try:
            session, _ = await self._session_for(tenant)
        except ConnectivityError as e:
            logger.error(f"Host unreachable, unit left in place: {e}", extra={"tenant_id": tenant.id})
            raise
        try:
            await self._pipeline(session).teardown(self._layout(tenant))
        finally:
            await session.close()

        if profile.shared and tenant.host_id:
            host = self.fleet.get_host(tenant.host_id)
            if host is not None:
                self._release(host)
        self.tenants.delete(tenant)
        logger.info(f"Removed tenant {tenant.id}", extra={"tenant_id": tenant.id})

    async def tail(self, tenant_id: str, max_lines: int | None = None) -> str:
        lines = max_lines or settings.log_tail_default
        lines = max(1, min(lines, settings.log_tail_max))
        tenant = self.get_tenant(tenant_id)
        session, _ = await self._session_for(tenant)
        try:
            return await self._pipeline(session).tail(self._layout(tenant), lines)
        finally:
            await session.close()

    async def classify_state(self, tenant_id: str) -> StateReading:
        """Connection state and pairing code from a fresh log tail."""
        text = await self.tail(tenant_id, settings.state_tail_lines)
        return inspect(text, settings.state_tail_lines)
