"""Six-phase deployment pipeline.

One pipeline instance drives one open session. Phases run strictly in
order; the first failure stops the run, collects diagnostics from the host
and raises PipelinePhaseError with the report attached.
"""
from __future__ import annotations

import asyncio
import logging
import shlex
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable

from botfleet.config import settings
from botfleet.diagnostics import DiagnosticsCollector
from botfleet.errors import FleetError, PipelinePhaseError, RemoteCommandError
from botfleet.metrics import pipeline_phase_duration
from botfleet.models import Tenant
from botfleet.pipeline import templates
from botfleet.pipeline.profiles import RuntimeProfile
from botfleet.pipeline.templates import TenantLayout
from botfleet.remote import RemoteSession
from botfleet.schemas import DeploySecrets

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    PREPARE_HOST = "PrepareHost"
    TRANSFER_SOURCE = "TransferSource"
    CONFIGURE_ENVIRONMENT = "ConfigureEnvironment"
    COMPILE = "Compile"
    SERVICEIZE = "Serviceize"
    START = "Start"


FULL_RUN = (
    Phase.PREPARE_HOST,
    Phase.TRANSFER_SOURCE,
    Phase.CONFIGURE_ENVIRONMENT,
    Phase.COMPILE,
    Phase.SERVICEIZE,
    Phase.START,
)
RECONFIGURE_RUN = (Phase.CONFIGURE_ENVIRONMENT, Phase.START)
RESTART_RUN = (Phase.START,)


class PhaseCheckFailed(FleetError):
    """A phase's commands succeeded but its postcondition did not hold."""


@dataclass
class DeploymentTarget:
    tenant: Tenant
    profile: RuntimeProfile
    port: int
    host_id: str | None = None
    secrets: DeploySecrets | None = None

    @property
    def layout(self) -> TenantLayout:
        return TenantLayout.for_tenant(self.profile, self.tenant.id)


def collect_source_files(root: Path, manifest: tuple[str, ...]) -> list[tuple[str, Path]]:
    """Expand the manifest into (relative posix path, local path) pairs.

    Directory entries are walked recursively. A missing entry is an error.
    """
    files: list[tuple[str, Path]] = []
    for entry in manifest:
        path = root / entry
        if path.is_dir():
            for child in sorted(path.rglob("*")):
                if child.is_file():
                    files.append((child.relative_to(root).as_posix(), child))
        elif path.is_file():
            files.append((entry, path))
        else:
            raise PhaseCheckFailed(f"source entry {entry!r} not found under {root}")
    return files


class DeploymentPipeline:
    def __init__(
        self,
        session: RemoteSession,
        diagnostics: DiagnosticsCollector | None = None,
        source_root: str | Path | None = None,
    ):
        self.session = session
        self.diagnostics = diagnostics or DiagnosticsCollector()
        self.source_root = Path(source_root or settings.bot_source_root)
        self._handlers: dict[Phase, Callable[[DeploymentTarget], Awaitable[None]]] = {
            Phase.PREPARE_HOST: self.prepare_host,
            Phase.TRANSFER_SOURCE: self.transfer_source,
            Phase.CONFIGURE_ENVIRONMENT: self.configure_environment,
            Phase.COMPILE: self.compile,
            Phase.SERVICEIZE: self.serviceize,
            Phase.START: self.start,
        }

    async def run(self, target: DeploymentTarget) -> None:
        """Take a tenant from nothing to a running unit."""
        await self._run_phases(target, FULL_RUN)

    async def reconfigure(self, target: DeploymentTarget) -> None:
        """Re-render configuration and restart, without re-transfer or rebuild."""
        await self._run_phases(target, RECONFIGURE_RUN)

    async def restart(self, target: DeploymentTarget) -> None:
        await self._run_phases(target, RESTART_RUN)

    async def _run_phases(self, target: DeploymentTarget, phases: tuple[Phase, ...]) -> None:
        log_extra = {"tenant_id": target.tenant.id, "host_id": target.host_id}
        for phase in phases:
            logger.info(f"Phase {phase.value} starting", extra={**log_extra, "phase": phase.value})
            started = time.monotonic()
            try:
                await self._handlers[phase](target)
            except (FleetError, OSError) as e:
                pipeline_phase_duration.labels(phase=phase.value, status="error").observe(
                    time.monotonic() - started
                )
                logger.error(f"Phase {phase.value} failed: {e}", extra={**log_extra, "phase": phase.value})
                failed_stderr = e.stderr if isinstance(e, RemoteCommandError) else str(e)
                report = await self.diagnostics.collect(self.session, target.layout, failed_stderr)
                raise PipelinePhaseError(
                    phase.value,
                    target.host_id,
                    target.tenant.id,
                    bundle=report.render(),
                    cause=str(e),
                ) from e
            pipeline_phase_duration.labels(phase=phase.value, status="success").observe(
                time.monotonic() - started
            )
            logger.info(f"Phase {phase.value} done", extra={**log_extra, "phase": phase.value})

    def _prefix(self, target: DeploymentTarget, phase: Phase) -> str:
        return f"[{target.tenant.id} {phase.value}] "

    # --- Phases -----------------------------------------------------------

    async def prepare_host(self, target: DeploymentTarget) -> None:
        """Working directory, package-lock wait, C toolchain and runtime.

        Safe to re-run: every install is skipped when already present.
        """
        layout = target.layout
        await self.session.execute(f"mkdir -p {shlex.quote(layout.workdir)}")

        try:
            await self.session.execute(
                templates.render_package_lock_wait(settings.package_lock_timeout, settings.package_lock_poll)
            )
        except RemoteCommandError as e:
            if e.exit_status != 124:
                raise
            logger.warning(
                f"Package manager locks still held after {settings.package_lock_timeout}s, continuing"
            )

        prefix = self._prefix(target, Phase.PREPARE_HOST)
        if target.profile.needs_c_toolchain:
            await self.session.execute_streamed(templates.render_toolchain_install(), prefix=prefix)
        await self.session.execute_streamed(templates.render_runtime_install(target.profile), prefix=prefix)

    async def transfer_source(self, target: DeploymentTarget) -> None:
        root = self.source_root / target.profile.source_dir
        files = collect_source_files(root, target.profile.source_manifest)
        workdir = target.layout.workdir
        for relative, local_path in files:
            await self.session.upload_file(local_path.read_bytes(), f"{workdir}/{relative}")
        logger.info(f"Uploaded {len(files)} source files to {workdir}", extra={"tenant_id": target.tenant.id})

    async def configure_environment(self, target: DeploymentTarget) -> None:
        layout = target.layout
        secrets = target.secrets or DeploySecrets()
        has_credentials = bool(secrets.integration_credentials)

        await self.session.upload_file(
            templates.render_business_profile(target.tenant).encode("utf-8"),
            layout.business_profile_path,
        )
        env_text = templates.render_env_file(
            target.profile,
            target.tenant,
            target.port,
            ai_api_key=secrets.ai_api_key,
            has_credentials_file=has_credentials,
        )
        await self.session.upload_file(env_text.encode("utf-8"), layout.env_path, mode=0o600)
        if has_credentials:
            await self.session.upload_file(secrets.integration_credentials, layout.credentials_path, mode=0o600)

    async def compile(self, target: DeploymentTarget) -> None:
        script = templates.render_compile(target.profile, target.layout.workdir)
        output = await self.session.execute_streamed(script, prefix=self._prefix(target, Phase.COMPILE))
        if "BUILD_OK" not in output:
            raise PhaseCheckFailed(f"artifact {target.profile.artifact} missing after build")

    async def serviceize(self, target: DeploymentTarget) -> None:
        layout = target.layout
        unit = templates.render_unit(target.profile, layout, description=f"Bot {target.tenant.name}")
        await self.session.upload_file(unit.encode("utf-8"), layout.unit_path, mode=0o644)
        await self.session.execute(
            f"systemctl daemon-reload && systemctl enable {shlex.quote(layout.unit_name)}"
        )

    async def start(self, target: DeploymentTarget) -> None:
        unit = shlex.quote(target.layout.unit_name)
        await self.session.execute(f"systemctl restart {unit}")
        await asyncio.sleep(settings.start_settle_delay)

        state = "unknown"
        for attempt in range(1, settings.start_confirm_attempts + 1):
            state = await self.unit_state(target.layout)
            if state == "active":
                return
            if state == "failed":
                break
            if attempt < settings.start_confirm_attempts:
                await asyncio.sleep(settings.start_confirm_interval)
        raise PhaseCheckFailed(f"unit {target.layout.unit_name} is {state}, expected active")

    # --- Operations outside the phase sequence -------------------------------

    async def unit_state(self, layout: TenantLayout) -> str:
        # is-active exits non-zero for anything but active; the word is on stdout
        try:
            output = await self.session.execute(f"systemctl is-active {shlex.quote(layout.unit_name)}")
        except RemoteCommandError as e:
            output = e.stdout
        return output.strip() or "unknown"

    async def stop(self, layout: TenantLayout) -> None:
        await self.session.execute(f"systemctl stop {shlex.quote(layout.unit_name)}")

    async def teardown(self, layout: TenantLayout) -> None:
        """Stop and unregister the unit and delete the tenant directory."""
        unit = shlex.quote(layout.unit_name)
        await self.session.execute(f"systemctl stop {unit} || true")
        await self.session.execute(f"systemctl disable {unit} || true")
        await self.session.execute(f"rm -f {shlex.quote(layout.unit_path)} && systemctl daemon-reload")
        await self.session.execute(f"rm -rf {shlex.quote(layout.workdir)}")
        logger.info(f"Removed unit {layout.unit_name} and {layout.workdir}")

    async def tail(self, layout: TenantLayout, lines: int) -> str:
        return await self.session.execute(
            f"tail -n {lines} {shlex.quote(layout.stdout_log)} 2>/dev/null"
            f" || journalctl -u {shlex.quote(layout.unit_name)} -n {lines} --no-pager"
        )

    async def update_env_value(self, layout: TenantLayout, key: str, value: str | None) -> None:
        """Rewrite one key of the tenant environment file in place."""
        current = await self.session.read_file(layout.env_path)
        updated = templates.set_env_value(current, key, value)
        tmp_path = f"{layout.env_path}.tmp"
        await self.session.upload_file(updated.encode("utf-8"), tmp_path, mode=0o600)
        await self.session.execute(f"mv {shlex.quote(tmp_path)} {shlex.quote(layout.env_path)}")
