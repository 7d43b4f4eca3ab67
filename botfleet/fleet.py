"""Shared host fleet: host selection, port slots and readiness verification.

A FleetManager is built once at startup and passed to whatever needs it.
Allocation calls serialize on one lock that is held only around reading,
mutating and saving a host record, never around provider or SSH calls.
Creating a host returns immediately with the host ``initializing``; a
detached task then verifies it and moves it to ``ready`` or ``error``.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError

from botfleet.config import settings
from botfleet.errors import (
    CapacityExceeded,
    ConnectivityError,
    FleetError,
    HealthCheckTimeout,
    ProvisioningError,
    RemoteCommandError,
)
from botfleet.metrics import (
    host_provision_total,
    hosts_by_status,
    port_allocations_total,
    readiness_attempts_total,
)
from botfleet.models import HostStatus, SharedHost
from botfleet.pipeline.profiles import GO_SHARED, RuntimeProfile
from botfleet.pipeline.templates import render_shared_host_bootstrap
from botfleet.providers.base import ServerSpec, VMProvisioner
from botfleet.remote import RemoteSession, open_session
from botfleet.store import HostStore
from botfleet.utils.async_tasks import TaskRegistry

logger = logging.getLogger(__name__)

SessionOpener = Callable[..., Awaitable[RemoteSession]]


@dataclass
class ReadinessPolicy:
    """Timing of host readiness verification, in seconds."""

    initial_delay: float
    poll_interval: float
    max_attempts: int
    check_timeout: float
    running_timeout: float
    running_poll: float
    connect_attempts: int = 3

    @classmethod
    def from_settings(cls) -> "ReadinessPolicy":
        return cls(
            initial_delay=settings.readiness_initial_delay,
            poll_interval=settings.readiness_poll_interval,
            max_attempts=settings.readiness_max_attempts,
            check_timeout=settings.readiness_check_timeout,
            running_timeout=settings.vm_running_timeout,
            running_poll=settings.vm_poll_interval,
        )


def _as_utc(value: datetime) -> datetime:
    # SQLite hands datetimes back naive
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class FleetManager:
    def __init__(
        self,
        store: HostStore,
        provisioner: VMProvisioner,
        *,
        profile: RuntimeProfile = GO_SHARED,
        session_opener: SessionOpener = open_session,
        policy: ReadinessPolicy | None = None,
        tasks: TaskRegistry | None = None,
    ):
        self.store = store
        self.provisioner = provisioner
        self.profile = profile
        self.policy = policy or ReadinessPolicy.from_settings()
        self._open_session = session_opener
        self._tasks = tasks or TaskRegistry()
        self._lock = threading.Lock()
        self._provisioning: dict[str, asyncio.Future[SharedHost]] = {}

    # --- Queries ----------------------------------------------------------

    def get_host(self, host_id: str) -> SharedHost | None:
        return self.store.get(host_id)

    def list_hosts(self, purpose: str | None = None) -> list[SharedHost]:
        filters = {"purpose": purpose} if purpose else {}
        hosts = self.store.find(order_by="created_at", **filters)
        for status in HostStatus:
            hosts_by_status.labels(status=status.value).set(
                sum(1 for host in hosts if host.status == status.value)
            )
        return hosts

    def host_metrics(self, host: SharedHost) -> dict:
        current = self.store.get(host.id) or host
        return current.to_metrics()

    def readiness_task(self, host_id: str) -> asyncio.Task | None:
        return self._tasks.get(f"readiness:{host_id}")

    # --- Allocation -------------------------------------------------------

    def _select_host(self, purpose: str) -> SharedHost | None:
        with self._lock:
            ready = self.store.find(
                order_by="current_agents", purpose=purpose, status=HostStatus.READY.value
            )
            for host in ready:
                if not host.is_at_capacity() and not host.ports_exhausted():
                    return host
            return self.store.first(
                order_by="created_at",
                descending=True,
                purpose=purpose,
                status=HostStatus.INITIALIZING.value,
            )

    async def get_or_create_host(self, purpose: str | None = None) -> SharedHost:
        """Return a usable host for ``purpose``, provisioning one if needed.

        Preference: ready host with spare capacity (fewest tenants first),
        then a host still initializing, then a brand new host. Never
        returns a host in ``error``. Concurrent calls that all find nothing
        share one provisioning request.
        """
        purpose = purpose or settings.shared_host_purpose
        host = self._select_host(purpose)
        if host is not None:
            logger.debug(f"Selected host {host.name} ({host.status}) for {purpose}")
            return host

        in_flight = self._provisioning.get(purpose)
        if in_flight is None:
            in_flight = asyncio.ensure_future(self._provision_host(purpose))
            self._provisioning[purpose] = in_flight

            def _clear(fut: asyncio.Future, purpose: str = purpose) -> None:
                if self._provisioning.get(purpose) is fut:
                    del self._provisioning[purpose]

            in_flight.add_done_callback(_clear)
        return await asyncio.shield(in_flight)

    async def _provision_host(self, purpose: str) -> SharedHost:
        name = f"{settings.host_name_prefix}-{purpose}-{int(time.time())}"
        spec = ServerSpec(
            name=name,
            user_data=render_shared_host_bootstrap(
                self.profile,
                settings.default_base_port,
                settings.default_max_port,
                settings.status_marker_path,
                settings.health_check_script,
                settings.health_check_ready_text,
            ),
            labels={"purpose": purpose, "managed-by": "botfleet"},
        )
        logger.info(f"No usable host for {purpose}, creating {name}")
        try:
            created = await self.provisioner.create_server(spec)
        except ProvisioningError:
            host_provision_total.labels(purpose=purpose, result="create_failed").inc()
            raise

        host = SharedHost(
            name=name,
            purpose=purpose,
            provider_instance_id=created.instance_id,
            ip_address=created.ip_address,
            root_password=created.root_password,
            status=HostStatus.INITIALIZING.value,
            max_agents=settings.default_max_agents,
            current_agents=0,
            next_port=settings.default_base_port,
            base_port=settings.default_base_port,
            max_port=settings.default_max_port,
            readiness_attempts=0,
        )
        try:
            with self._lock:
                host = self.store.save(host)
        except SQLAlchemyError as e:
            host_provision_total.labels(purpose=purpose, result="persist_failed").inc()
            logger.error(f"Could not save host {name}, deleting instance {created.instance_id}: {e}")
            await self._delete_orphan(created.instance_id)
            raise

        host_provision_total.labels(purpose=purpose, result="created").inc()
        logger.info(f"Host {name} saved as initializing", extra={"host_id": host.id})
        self.start_verification(host)
        return host

    async def _delete_orphan(self, instance_id: str) -> None:
        try:
            await self.provisioner.delete_server(instance_id)
        except ProvisioningError as e:
            logger.error(f"Cleanup of instance {instance_id} failed, delete it manually: {e}")
        else:
            logger.info(f"Cleaned up instance {instance_id}")

    def assign_port(self, host: SharedHost) -> int:
        """Take the next port on ``host`` and count one more tenant.

        Raises CapacityExceeded without touching the record when the host
        is full or its port range is used up.
        """
        with self._lock:
            current = self.store.get(host.id)
            if current is None:
                raise FleetError(f"host {host.id} does not exist")
            if current.is_at_capacity():
                port_allocations_total.labels(operation="assign", result="full").inc()
                raise CapacityExceeded(current.id, current.current_agents, current.max_agents)
            if current.ports_exhausted():
                port_allocations_total.labels(operation="assign", result="ports_exhausted").inc()
                raise CapacityExceeded(
                    current.id, current.current_agents, current.max_agents, reason="port range exhausted"
                )

            port = current.next_port_number()
            current.increment_agents()
            current = self.store.save(current)

        host.current_agents = current.current_agents
        host.next_port = current.next_port
        port_allocations_total.labels(operation="assign", result="ok").inc()
        logger.info(
            f"Assigned port {port} on {current.name} ({current.current_agents}/{current.max_agents})",
            extra={"host_id": current.id},
        )
        return port

    def release_port(self, host: SharedHost) -> None:
        """Count one fewer tenant. The port itself is not reused."""
        with self._lock:
            current = self.store.get(host.id)
            if current is None:
                raise FleetError(f"host {host.id} does not exist")
            current.decrement_agents()
            current = self.store.save(current)

        host.current_agents = current.current_agents
        port_allocations_total.labels(operation="release", result="ok").inc()
        logger.info(
            f"Released slot on {current.name} ({current.current_agents}/{current.max_agents})",
            extra={"host_id": current.id},
        )

    # --- Readiness verification ---------------------------------------------

    def _update_host(self, host_id: str, **fields) -> SharedHost | None:
        with self._lock:
            current = self.store.get(host_id)
            if current is None:
                return None
            for key, value in fields.items():
                setattr(current, key, value)
            return self.store.save(current)

    def start_verification(self, host: SharedHost) -> asyncio.Task:
        return self._tasks.spawn(self.verify_host_readiness(host.id), name=f"readiness:{host.id}")

    def resume_pending_verifications(self) -> int:
        """Restart verification for hosts left initializing by a previous process."""
        pending = self.store.find(status=HostStatus.INITIALIZING.value)
        for host in pending:
            logger.info(
                f"Resuming readiness verification for {host.name} at attempt {host.readiness_attempts}",
                extra={"host_id": host.id},
            )
            self.start_verification(host)
        return len(pending)

    async def verify_host_readiness(self, host_id: str) -> bool:
        """Poll a host until bootstrap and toolchains check out.

        Returns True once the host is ready. A host already ready is left
        untouched. Running out of attempts marks the host ``error``, which
        is terminal.
        """
        host = self.store.get(host_id)
        if host is None:
            logger.warning(f"Host {host_id} vanished before verification")
            return False
        if host.status == HostStatus.READY.value:
            return True
        if host.status == HostStatus.ERROR.value:
            return False

        policy = self.policy
        if host.readiness_attempts == 0:
            try:
                await self.provisioner.wait_for_running(
                    host.provider_instance_id, policy.running_timeout, policy.running_poll
                )
            except ProvisioningError as e:
                logger.error(f"Host {host.name} never reached running: {e}", extra={"host_id": host_id})
                self._update_host(host_id, status=HostStatus.ERROR.value, status_message=str(e))
                return False
            delay = policy.initial_delay
        elif host.next_readiness_check_at is not None:
            remaining = _as_utc(host.next_readiness_check_at) - datetime.now(timezone.utc)
            delay = max(remaining.total_seconds(), 0.0)
        else:
            delay = policy.poll_interval

        detail = ""
        for attempt in range(host.readiness_attempts + 1, policy.max_attempts + 1):
            self._update_host(
                host_id, next_readiness_check_at=datetime.now(timezone.utc) + timedelta(seconds=delay)
            )
            await asyncio.sleep(delay)

            ready, detail = await self._check_host(host)
            readiness_attempts_total.labels(result="ready" if ready else "not_ready").inc()
            if ready:
                self._update_host(
                    host_id,
                    status=HostStatus.READY.value,
                    status_message=None,
                    readiness_attempts=attempt,
                    next_readiness_check_at=None,
                )
                logger.info(f"Host {host.name} is ready (attempt {attempt})", extra={"host_id": host_id})
                return True

            self._update_host(host_id, readiness_attempts=attempt)
            logger.info(
                f"Host {host.name} not ready (attempt {attempt}/{policy.max_attempts}): {detail}",
                extra={"host_id": host_id},
            )
            delay = policy.poll_interval

        message = f"not ready after {policy.max_attempts} attempts: {detail}"
        self._update_host(
            host_id, status=HostStatus.ERROR.value, status_message=message, next_readiness_check_at=None
        )
        logger.error(f"Host {host.name} {message}", extra={"host_id": host_id})
        return False

    async def _check_host(self, host: SharedHost) -> tuple[bool, str]:
        """One verification attempt over a fresh session."""
        try:
            session = await self._open_session(
                host.ip_address, host.root_password, connect_attempts=self.policy.connect_attempts
            )
        except ConnectivityError as e:
            return False, str(e)

        try:
            for check in self.profile.readiness_checks:
                try:
                    output = await session.execute_with_timeout(check.command, self.policy.check_timeout)
                except RemoteCommandError as e:
                    return False, f"{check.name} check failed: {e}"
                if not check.passes(output):
                    return False, f"{check.name} check failed: {output.strip()[:200]}"
            return True, ""
        except ConnectivityError as e:
            return False, str(e)
        finally:
            await session.close()

    async def wait_until_ready(
        self,
        host: SharedHost,
        timeout: float | None = None,
        interval: float | None = None,
    ) -> SharedHost:
        """Block a caller until ``host`` is ready, by polling its record."""
        timeout = settings.host_wait_timeout if timeout is None else timeout
        interval = settings.host_wait_interval if interval is None else interval
        deadline = time.monotonic() + timeout
        while True:
            current = self.store.get(host.id)
            if current is None:
                raise FleetError(f"host {host.id} does not exist")
            if current.status == HostStatus.READY.value:
                return current
            if current.status == HostStatus.ERROR.value:
                raise HealthCheckTimeout(f"host {current.name} failed verification: {current.status_message}")
            if time.monotonic() >= deadline:
                raise HealthCheckTimeout(f"host {current.name} still initializing after {timeout:g}s")
            await asyncio.sleep(interval)

    async def shutdown(self) -> None:
        await self._tasks.cancel_all()
