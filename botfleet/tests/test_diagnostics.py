"""Tests for diagnostic reports and the host health probe."""

import pytest

from botfleet.diagnostics import (
    REDACTED,
    SECTION_ENV,
    SECTION_ORDER,
    SECTION_STDERR,
    SECTION_UNIT,
    DiagnosticsCollector,
    HostHealthProbe,
    redact_env,
    redact_text,
)
from botfleet.errors import ConnectivityError, HealthCheckTimeout, RemoteCommandError
from botfleet.pipeline.profiles import GO_DEDICATED, NODE_DEDICATED
from botfleet.pipeline.templates import TenantLayout

LAYOUT = TenantLayout.for_tenant(GO_DEDICATED, "t-1")


class TestRedaction:

    def test_masks_secret_keys_only(self):
        text = "PORT=8080\nGEMINI_API_KEY=AIzaSECRET\nMETA_ACCESS_TOKEN=EAAB\n#WEBHOOK_VERIFY_TOKEN=\n"

        redacted = redact_env(text)

        assert "PORT=8080" in redacted
        assert f"GEMINI_API_KEY={REDACTED}" in redacted
        assert f"META_ACCESS_TOKEN={REDACTED}" in redacted
        assert "#WEBHOOK_VERIFY_TOKEN=" in redacted
        assert "AIzaSECRET" not in redacted

    def test_masks_secret_values_in_free_text(self):
        text = "auth header Bearer abc.def-123 key AIzaSyA1234567890abcdefghijkl"

        redacted = redact_text(text)

        assert "abc.def-123" not in redacted
        assert "AIzaSyA1234567890abcdefghijkl" not in redacted


class TestDiagnosticsCollector:

    @pytest.mark.asyncio
    async def test_sections_in_fixed_order(self, fake_session_cls):
        session = fake_session_cls(rules=[("ls -lh", "total 12M\n-rwxr-xr-x bot\n")])

        report = await DiagnosticsCollector().collect(session, LAYOUT)

        assert [section.title for section in report.sections] == list(SECTION_ORDER)
        assert "-rwxr-xr-x bot" in report.render()

    @pytest.mark.asyncio
    async def test_env_section_is_redacted(self, fake_session_cls):
        session = fake_session_cls(rules=[(f"cat {LAYOUT.env_path}", "PORT=8080\nMETA_ACCESS_TOKEN=EAAB123\n")])

        report = await DiagnosticsCollector().collect(session, LAYOUT)

        body = report.section(SECTION_ENV).body
        assert "EAAB123" not in body
        assert "PORT=8080" in body

    @pytest.mark.asyncio
    async def test_failed_probe_recorded_not_raised(self, fake_session_cls):
        session = fake_session_cls(
            rules=[
                ("ls -lh", RemoteCommandError("ls -lh", 2, "", "No such file or directory")),
                ("systemctl status", RemoteCommandError("systemctl status", 3, "inactive (dead)\n")),
                ("tail -n 50", ConnectivityError("connection lost")),
            ]
        )

        report = await DiagnosticsCollector().collect(session, LAYOUT)

        assert len(report.sections) == len(SECTION_ORDER)
        workdir = report.sections[0]
        assert not workdir.ok
        assert "No such file or directory" in workdir.body
        assert report.section(SECTION_UNIT).body == "inactive (dead)\n"
        assert "connection lost" in report.sections[4].body

    @pytest.mark.asyncio
    async def test_stderr_section_leads_with_failed_command(self, fake_session_cls):
        session = fake_session_cls(rules=[(f"tail -n 30 {LAYOUT.stderr_log}", "panic: nil map\n")])

        report = await DiagnosticsCollector().collect(session, LAYOUT, failed_stderr="undefined: foo")

        body = report.section(SECTION_STDERR).body
        assert body.index("--- failed command ---") < body.index("undefined: foo") < body.index("panic: nil map")

    @pytest.mark.asyncio
    async def test_empty_stderr_log_is_labelled(self, fake_session_cls):
        report = await DiagnosticsCollector().collect(fake_session_cls(), LAYOUT)

        assert "(no errors recorded)" in report.section(SECTION_STDERR).body


class TestHostHealthProbe:

    @pytest.fixture
    def probe(self):
        return HostHealthProbe(
            health_check_script="/opt/health_check.sh",
            ready_text="READY",
            status_marker_path="/var/log/botfleet/status",
            firewall_ports=["22/tcp", "8080/tcp"],
        )

    @pytest.mark.asyncio
    async def test_health_script_short_circuits(self, probe, fake_session_cls):
        session = fake_session_cls(rules=[("/opt/health_check.sh", "READY\n")])

        signals = await probe.check(session, GO_DEDICATED)

        assert signals.ready
        assert session.commands == ["/opt/health_check.sh 2>/dev/null"]

    @pytest.mark.asyncio
    async def test_marker_and_tools_make_host_ready(self, probe, fake_session_cls):
        session = fake_session_cls(
            rules=[
                ("cat /var/log/botfleet/status", "CLOUD_INIT_COMPLETE\n"),
                ("go version", "go version go1.24.0 linux/amd64"),
                ("gcc --version", "gcc (Ubuntu) 11.4.0"),
            ]
        )

        signals = await probe.check(session, GO_DEDICATED)

        assert signals.marker_complete
        assert signals.tools == {"go": True, "gcc": True}
        assert signals.ready

    @pytest.mark.asyncio
    async def test_missing_tool_is_not_ready(self, probe, fake_session_cls):
        session = fake_session_cls(
            rules=[
                ("cat /var/log/botfleet/status", "CLOUD_INIT_COMPLETE"),
                ("which node", "/usr/bin/node\nv20.11.0"),
                ("which npm", "/usr/bin/npm\n10.2.4"),
                ("which pm2", RemoteCommandError("which pm2", 1)),
            ]
        )

        signals = await probe.check(session, NODE_DEDICATED)

        assert signals.tools["pm2"] is False
        assert not signals.ready
        assert "pm2=missing" in signals.summary()

    @pytest.mark.asyncio
    async def test_remediates_once_then_ready(self, probe, fake_session_cls):
        session = fake_session_cls()
        remediated = []

        def marker(command):
            return "MANUAL_INSTALL_COMPLETE" if remediated else "PHASE_RUNTIME"

        def install(command):
            remediated.append(command)
            return ""

        session.on("cat /var/log/botfleet/status", marker)
        session.on("echo MANUAL_INSTALL_COMPLETE", install)
        session.on("go version", "go version go1.24.0")
        session.on("gcc --version", "gcc 11")

        signals = await probe.ensure_ready(session, GO_DEDICATED, attempts=5, interval=0, remediate_after=2)

        assert signals.ready
        assert len(remediated) == 1
        assert session.ran("ufw allow 8080/tcp")
        assert session.ran("apt-get install -y build-essential gcc")
        assert sum("/opt/health_check.sh" in c for c in session.commands) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self, probe, fake_session_cls):
        session = fake_session_cls()

        with pytest.raises(HealthCheckTimeout, match="not ready after 4 checks"):
            await probe.ensure_ready(session, GO_DEDICATED, attempts=4, interval=0, remediate_after=2)

        assert sum("echo MANUAL_INSTALL_COMPLETE" in c for c in session.commands) == 1

    @pytest.mark.asyncio
    async def test_required_remediation_failure_is_logged(self, probe, fake_session_cls):
        session = fake_session_cls(
            rules=[("apt-get install", RemoteCommandError("apt-get install", 100, "", "E: Unable to locate"))]
        )

        with pytest.raises(HealthCheckTimeout):
            await probe.ensure_ready(session, GO_DEDICATED, attempts=3, interval=0, remediate_after=1)

        assert not session.ran("echo MANUAL_INSTALL_COMPLETE")
