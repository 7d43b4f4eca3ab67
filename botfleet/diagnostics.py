"""Host health probing and failure diagnostics.

Two things live here:

* ``HostHealthProbe`` decides whether a dedicated host is ready to take a
  deployment, using layered signals checked most-authoritative-first, and
  falls back to a manual remediation routine when the first-boot bootstrap
  never finished.
* ``DiagnosticsCollector`` assembles the ``DiagnosticReport`` attached to a
  failed pipeline phase: a fixed sequence of remote probe outputs with
  secrets removed.
"""
from __future__ import annotations

import asyncio
import logging
import re
import shlex
from dataclasses import dataclass, field

from botfleet.config import settings
from botfleet.errors import FleetError, HealthCheckTimeout, RemoteCommandError
from botfleet.pipeline.profiles import RuntimeProfile
from botfleet.pipeline.templates import TenantLayout
from botfleet.remote import RemoteSession

logger = logging.getLogger(__name__)

SENSITIVE_KEY_PATTERN = re.compile(
    r"(password|secret|token|authorization|api[_-]?key|private[_-]?key|credentials|access[_-]?key)",
    re.IGNORECASE,
)
SENSITIVE_VALUE_PATTERNS = [
    re.compile(r"Bearer\s+[A-Za-z0-9._-]+", re.IGNORECASE),
    re.compile(r"AIza[0-9A-Za-z_-]{20,}"),
    re.compile(r"-----BEGIN [A-Z ]+PRIVATE KEY-----.*?-----END [A-Z ]+PRIVATE KEY-----", re.DOTALL),
]
REDACTED = "[REDACTED]"

MARKER_COMPLETE = ("CLOUD_INIT_COMPLETE", "MANUAL_INSTALL_COMPLETE")


def redact_env(text: str) -> str:
    """Mask the values of secret-looking keys in KEY=value text."""
    out = []
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        bare_key = key.strip().lstrip("#").strip()
        if sep and value.strip() and SENSITIVE_KEY_PATTERN.search(bare_key):
            out.append(f"{key}={REDACTED}")
            continue
        out.append(redact_text(line))
    return "\n".join(out)


def redact_text(text: str) -> str:
    for pattern in SENSITIVE_VALUE_PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text


# ---------------------------------------------------------------------------
# Diagnostic report
# ---------------------------------------------------------------------------


@dataclass
class ReportSection:
    title: str
    body: str
    ok: bool = True


@dataclass
class DiagnosticReport:
    """Ordered, read-only snapshot of a tenant's remote state."""

    tenant_id: str
    sections: list[ReportSection] = field(default_factory=list)

    def section(self, title: str) -> ReportSection | None:
        for section in self.sections:
            if section.title == title:
                return section
        return None

    def render(self) -> str:
        parts = [f"Diagnostics for tenant {self.tenant_id}"]
        for section in self.sections:
            parts.append(f"=== {section.title} ===\n{section.body.rstrip()}")
        return "\n\n".join(parts)

    def __str__(self) -> str:
        return self.render()


SECTION_WORKDIR = "Working directory"
SECTION_ENV = "Environment file"
SECTION_PROFILE = "Business profile"
SECTION_UNIT = "Service status"
SECTION_STDOUT = "Stdout log tail"
SECTION_STDERR = "Stderr log tail"

SECTION_ORDER = (
    SECTION_WORKDIR,
    SECTION_ENV,
    SECTION_PROFILE,
    SECTION_UNIT,
    SECTION_STDOUT,
    SECTION_STDERR,
)


class DiagnosticsCollector:
    """Builds a DiagnosticReport over an open session.

    Never raises for a failing probe: each section records its own error
    text instead, so a half-broken host still yields a full report.
    """

    def __init__(
        self,
        stdout_lines: int = 50,
        stderr_lines: int = 30,
        profile_head_lines: int = 20,
        probe_timeout: float | None = None,
    ):
        self.stdout_lines = stdout_lines
        self.stderr_lines = stderr_lines
        self.profile_head_lines = profile_head_lines
        self.probe_timeout = probe_timeout or settings.command_timeout

    async def _probe(self, session: RemoteSession, command: str) -> tuple[str, bool]:
        try:
            output = await session.execute_with_timeout(command, self.probe_timeout)
            return output, True
        except FleetError as e:
            detail = ""
            if isinstance(e, RemoteCommandError):
                detail = (e.stderr or e.stdout).strip()
            return f"(error: {e})" + (f"\n{detail}" if detail and detail not in str(e) else ""), False

    async def collect(
        self,
        session: RemoteSession,
        layout: TenantLayout,
        failed_stderr: str = "",
    ) -> DiagnosticReport:
        report = DiagnosticReport(tenant_id=layout.tenant_id)
        workdir = shlex.quote(layout.workdir)
        unit = shlex.quote(layout.unit_name)

        body, ok = await self._probe(session, f"ls -lh {workdir}")
        report.sections.append(ReportSection(SECTION_WORKDIR, body, ok))

        body, ok = await self._probe(session, f"cat {shlex.quote(layout.env_path)}")
        report.sections.append(ReportSection(SECTION_ENV, redact_env(body) if ok else body, ok))

        body, ok = await self._probe(
            session, f"head -n {self.profile_head_lines} {shlex.quote(layout.business_profile_path)}"
        )
        report.sections.append(ReportSection(SECTION_PROFILE, redact_text(body), ok))

        # systemctl status exits 3 for inactive units; the text is still what we want
        try:
            body = await session.execute_with_timeout(
                f"systemctl status {unit} --no-pager -l", self.probe_timeout
            )
            ok = True
        except RemoteCommandError as e:
            body = e.stdout or e.stderr or f"(error: {e})"
            ok = False
        except FleetError as e:
            body, ok = f"(error: {e})", False
        report.sections.append(ReportSection(SECTION_UNIT, body, ok))

        body, ok = await self._probe(
            session,
            f"tail -n {self.stdout_lines} {shlex.quote(layout.stdout_log)} 2>/dev/null"
            f" || journalctl -u {unit} -n {self.stdout_lines} --no-pager",
        )
        report.sections.append(ReportSection(SECTION_STDOUT, redact_text(body), ok))

        report.sections.append(await self._stderr_section(session, layout, failed_stderr))
        return report

    async def _stderr_section(
        self, session: RemoteSession, layout: TenantLayout, failed_stderr: str
    ) -> ReportSection:
        parts = []
        if failed_stderr.strip():
            tail = "\n".join(failed_stderr.strip().splitlines()[-self.stderr_lines:])
            parts.append(f"--- failed command ---\n{redact_text(tail)}")

        body, ok = await self._probe(
            session, f"tail -n {self.stderr_lines} {shlex.quote(layout.stderr_log)} 2>/dev/null"
        )
        if ok and not body.strip():
            body = "(no errors recorded)"
        parts.append(f"--- {layout.stderr_log} ---\n{redact_text(body)}")
        return ReportSection(SECTION_STDERR, "\n".join(parts), ok)


# ---------------------------------------------------------------------------
# Host health probe
# ---------------------------------------------------------------------------


@dataclass
class HealthSignals:
    health_script_ok: bool = False
    status_marker: str = ""
    tools: dict[str, bool] = field(default_factory=dict)
    smoke_ok: bool = False

    @property
    def marker_complete(self) -> bool:
        return self.status_marker in MARKER_COMPLETE

    @property
    def tools_ok(self) -> bool:
        return bool(self.tools) and all(self.tools.values())

    @property
    def ready(self) -> bool:
        if self.health_script_ok:
            return True
        return self.marker_complete and self.tools_ok and self.smoke_ok

    def summary(self) -> str:
        tools = ", ".join(f"{name}={'ok' if ok else 'missing'}" for name, ok in self.tools.items())
        return (
            f"health_script={'ok' if self.health_script_ok else 'fail'} "
            f"marker={self.status_marker or '-'} tools=[{tools}] "
            f"smoke={'ok' if self.smoke_ok else 'fail'}"
        )


class HostHealthProbe:
    """Decides whether a host can take a deployment."""

    def __init__(
        self,
        health_check_script: str | None = None,
        ready_text: str | None = None,
        status_marker_path: str | None = None,
        health_check_timeout: float | None = None,
        smoke_timeout: float = 10.0,
        firewall_ports: list[str] | None = None,
    ):
        self.health_check_script = health_check_script or settings.health_check_script
        self.ready_text = ready_text or settings.health_check_ready_text
        self.status_marker_path = status_marker_path or settings.status_marker_path
        self.health_check_timeout = health_check_timeout or settings.health_check_timeout
        self.smoke_timeout = smoke_timeout
        self.firewall_ports = firewall_ports if firewall_ports is not None else settings.firewall_ports

    async def check(self, session: RemoteSession, profile: RuntimeProfile) -> HealthSignals:
        """Collect signals, stopping early once the health script vouches for the host."""
        signals = HealthSignals()

        try:
            output = await session.execute_with_timeout(
                f"{self.health_check_script} 2>/dev/null", self.health_check_timeout
            )
            signals.health_script_ok = self.ready_text in output
        except FleetError as e:
            logger.debug(f"Health script not passing on {session.address}: {e}")
        if signals.health_script_ok:
            return signals

        try:
            marker = await session.execute(
                f"cat {shlex.quote(self.status_marker_path)} 2>/dev/null | tail -1"
            )
            signals.status_marker = marker.strip()
        except FleetError:
            signals.status_marker = ""

        for check in profile.tool_checks:
            try:
                output = await session.execute(check.command)
                signals.tools[check.name] = check.passes(output)
            except FleetError:
                signals.tools[check.name] = False

        if profile.package_manager_smoke:
            try:
                await session.execute_with_timeout(profile.package_manager_smoke, self.smoke_timeout)
                signals.smoke_ok = True
            except FleetError:
                signals.smoke_ok = False
        else:
            signals.smoke_ok = True
        return signals

    async def remediate(self, session: RemoteSession, profile: RuntimeProfile) -> None:
        """Install what the bootstrap should have installed, then mark the host done."""
        logger.warning(f"Running manual remediation on {session.address} for {profile.name}")
        for step in profile.remediation:
            try:
                await session.execute_with_timeout(step.command, step.timeout)
                logger.info(f"Remediation step '{step.description}' done on {session.address}")
            except FleetError as e:
                if step.required:
                    raise
                logger.warning(f"Optional remediation step '{step.description}' failed: {e}")

        for rule in ["--force enable", *(f"allow {port}" for port in self.firewall_ports)]:
            try:
                await session.execute(f"ufw {rule}")
            except FleetError as e:
                logger.warning(f"ufw {rule} failed on {session.address}: {e}")

        marker = shlex.quote(self.status_marker_path)
        marker_dir = shlex.quote(self.status_marker_path.rsplit("/", 1)[0] or "/")
        await session.execute(
            f"mkdir -p {marker_dir} && echo MANUAL_INSTALL_COMPLETE > {marker} && "
            f"date '+%Y-%m-%d %H:%M:%S' > {marker_dir}/init_completed_at"
        )

    async def ensure_ready(
        self,
        session: RemoteSession,
        profile: RuntimeProfile,
        attempts: int | None = None,
        interval: float | None = None,
        remediate_after: int | None = None,
    ) -> HealthSignals:
        """Poll until ready, remediating once if signals stay absent.

        Raises HealthCheckTimeout when the host is still not ready after
        ``attempts`` checks.
        """
        attempts = attempts or settings.health_check_attempts
        interval = settings.health_check_interval if interval is None else interval
        remediate_after = remediate_after or settings.remediation_after_attempts
        remediated = False
        signals = HealthSignals()

        for attempt in range(1, attempts + 1):
            signals = await self.check(session, profile)
            if signals.ready:
                logger.info(f"Host {session.address} ready ({signals.summary()})")
                return signals
            logger.info(
                f"Host {session.address} not ready (attempt {attempt}/{attempts}): {signals.summary()}"
            )

            if not remediated and attempt >= remediate_after:
                remediated = True
                try:
                    await self.remediate(session, profile)
                except FleetError as e:
                    logger.error(f"Manual remediation on {session.address} failed: {e}")
                else:
                    signals = await self.check(session, profile)
                    if signals.ready:
                        logger.info(f"Host {session.address} ready after remediation")
                        return signals

            if attempt < attempts:
                await asyncio.sleep(interval)

        raise HealthCheckTimeout(
            f"host {session.address} not ready after {attempts} checks: {signals.summary()}"
        )
