"""Tests for the six-phase deployment pipeline."""

import pytest

from botfleet.config import settings
from botfleet.diagnostics import SECTION_ORDER, SECTION_STDERR
from botfleet.errors import PipelinePhaseError, RemoteCommandError
from botfleet.pipeline.profiles import GO_SHARED, NODE_DEDICATED
from botfleet.pipeline.runner import (
    DeploymentPipeline,
    DeploymentTarget,
    PhaseCheckFailed,
    collect_source_files,
)
from botfleet.schemas import DeploySecrets

GO_OK = [("go build", "BUILD_OK\n"), ("is-active", "active\n")]


@pytest.fixture
def tenant(make_tenant):
    return make_tenant()


def _target(tenant, profile=GO_SHARED, port=3001, secrets=None):
    return DeploymentTarget(tenant=tenant, profile=profile, port=port, host_id="host-1", secrets=secrets)


def _index(session, fragment):
    for i, command in enumerate(session.commands):
        if fragment in command:
            return i
    raise AssertionError(f"{fragment!r} never ran")


class TestFullRun:

    @pytest.mark.asyncio
    async def test_phases_run_in_order(self, fake_session_cls, tenant, source_tree):
        session = fake_session_cls(rules=list(GO_OK))
        target = _target(tenant)
        layout = target.layout

        await DeploymentPipeline(session).run(target)

        order = [
            _index(session, f"mkdir -p {layout.workdir}"),
            _index(session, "timeout 300"),
            _index(session, "build-essential"),
            _index(session, f"<upload {layout.workdir}/main.go>"),
            _index(session, f"<upload {layout.env_path}>"),
            _index(session, "go build"),
            _index(session, f"<upload {layout.unit_path}>"),
            _index(session, "daemon-reload"),
            _index(session, "systemctl restart"),
            _index(session, "systemctl is-active"),
        ]
        assert order == sorted(order)

    @pytest.mark.asyncio
    async def test_transfers_whole_manifest(self, fake_session_cls, tenant, source_tree):
        session = fake_session_cls(rules=list(GO_OK))
        target = _target(tenant)

        await DeploymentPipeline(session).run(target)

        workdir = target.layout.workdir
        for relative in ("go.mod", "go.sum", "main.go", "src/handlers/messages.go", "src/config/config.go"):
            assert f"{workdir}/{relative}" in session.uploads
        assert session.uploads[f"{workdir}/main.go"] == b"package main\nfunc main() {}\n"

    @pytest.mark.asyncio
    async def test_unit_points_at_tenant_workdir(self, fake_session_cls, tenant, source_tree):
        session = fake_session_cls(rules=list(GO_OK))
        target = _target(tenant)

        await DeploymentPipeline(session).run(target)

        unit = session.uploads[target.layout.unit_path].decode()
        assert f"ExecStart={target.layout.workdir}/bot" in unit
        assert "Restart=always" in unit
        assert session.upload_modes[target.layout.unit_path] == 0o644

    @pytest.mark.asyncio
    async def test_node_profile_skips_c_toolchain(self, fake_session_cls, tenant, source_tree):
        session = fake_session_cls(rules=[("npm run build", "BUILD_OK\n"), ("is-active", "active\n")])
        target = _target(tenant, profile=NODE_DEDICATED, port=3000)

        await DeploymentPipeline(session).run(target)

        assert not session.ran("build-essential")
        assert session.ran("nodesource")
        assert f"{target.layout.workdir}/src/app.ts" in session.uploads
        assert "PORT=3000" in session.uploads[target.layout.env_path].decode()


class TestPhaseFailures:

    @pytest.mark.asyncio
    async def test_prepare_failure_stops_before_any_upload(self, fake_session_cls, tenant, source_tree):
        session = fake_session_cls(
            rules=[("mkdir -p", RemoteCommandError("mkdir -p", 1, "", "Read-only file system"))]
        )

        with pytest.raises(PipelinePhaseError) as exc_info:
            await DeploymentPipeline(session).run(_target(tenant))

        assert exc_info.value.phase == "PrepareHost"
        assert session.uploads == {}
        assert "Read-only file system" in exc_info.value.bundle

    @pytest.mark.asyncio
    async def test_compile_failure_carries_compiler_output(self, fake_session_cls, tenant, source_tree):
        session = fake_session_cls(
            rules=[("go build", RemoteCommandError("go build", 1, "", "./main.go:3:2: undefined: foo"))]
        )
        target = _target(tenant)

        with pytest.raises(PipelinePhaseError) as exc_info:
            await DeploymentPipeline(session).run(target)

        error = exc_info.value
        assert error.phase == "Compile"
        assert error.tenant_id == tenant.id
        assert error.host_id == "host-1"
        assert target.layout.env_path in session.uploads
        assert target.layout.unit_path not in session.uploads
        assert not session.ran("systemctl restart")

        stderr_section = error.bundle.split(f"=== {SECTION_STDERR} ===", 1)[1]
        assert "undefined: foo" in stderr_section

    @pytest.mark.asyncio
    async def test_report_sections_follow_fixed_order(self, fake_session_cls, tenant, source_tree):
        session = fake_session_cls(rules=[("go build", RemoteCommandError("go build", 2))])

        with pytest.raises(PipelinePhaseError) as exc_info:
            await DeploymentPipeline(session).run(_target(tenant))

        bundle = exc_info.value.bundle
        positions = [bundle.index(f"=== {title} ===") for title in SECTION_ORDER]
        assert positions == sorted(positions)

    @pytest.mark.asyncio
    async def test_missing_artifact_fails_compile(self, fake_session_cls, tenant, source_tree):
        session = fake_session_cls(rules=[("is-active", "active\n")])

        with pytest.raises(PipelinePhaseError) as exc_info:
            await DeploymentPipeline(session).run(_target(tenant))

        assert exc_info.value.phase == "Compile"
        assert "artifact bot missing" in exc_info.value.cause

    @pytest.mark.asyncio
    async def test_missing_source_entry_fails_transfer(self, fake_session_cls, tenant, source_tree):
        (source_tree / "go-whatsapp-web" / "main.go").unlink()
        session = fake_session_cls(rules=list(GO_OK))

        with pytest.raises(PipelinePhaseError) as exc_info:
            await DeploymentPipeline(session).run(_target(tenant))

        assert exc_info.value.phase == "TransferSource"
        assert "main.go" in exc_info.value.cause
        assert not session.ran("go build")

    @pytest.mark.asyncio
    async def test_lock_wait_timeout_continues(self, fake_session_cls, tenant, source_tree):
        session = fake_session_cls(
            rules=[("timeout 300", RemoteCommandError("timeout 300", 124))] + GO_OK
        )

        await DeploymentPipeline(session).run(_target(tenant))

        assert session.ran("systemctl restart")

    @pytest.mark.asyncio
    async def test_lock_wait_other_failure_stops(self, fake_session_cls, tenant, source_tree):
        session = fake_session_cls(
            rules=[("timeout 300", RemoteCommandError("timeout 300", 1, "", "bash: fuser: not found"))]
        )

        with pytest.raises(PipelinePhaseError) as exc_info:
            await DeploymentPipeline(session).run(_target(tenant))

        assert exc_info.value.phase == "PrepareHost"

    @pytest.mark.asyncio
    async def test_failed_unit_stops_polling(self, fake_session_cls, tenant, source_tree):
        session = fake_session_cls(
            rules=[("go build", "BUILD_OK\n"), ("is-active", RemoteCommandError("is-active", 3, "failed\n"))]
        )

        with pytest.raises(PipelinePhaseError) as exc_info:
            await DeploymentPipeline(session).run(_target(tenant))

        assert exc_info.value.phase == "Start"
        assert "is failed" in exc_info.value.cause
        assert sum("systemctl is-active" in c for c in session.commands) == 1

    @pytest.mark.asyncio
    async def test_unit_never_active_exhausts_confirmations(
        self, monkeypatch, fake_session_cls, tenant, source_tree
    ):
        monkeypatch.setattr(settings, "start_confirm_attempts", 3)
        session = fake_session_cls(rules=[("go build", "BUILD_OK\n"), ("is-active", "activating\n")])

        with pytest.raises(PipelinePhaseError) as exc_info:
            await DeploymentPipeline(session).run(_target(tenant))

        assert "is activating" in exc_info.value.cause
        assert sum("systemctl is-active" in c for c in session.commands) == 3


class TestPartialRuns:

    @pytest.mark.asyncio
    async def test_reconfigure_skips_transfer_and_build(self, fake_session_cls, tenant, source_tree):
        session = fake_session_cls(rules=list(GO_OK))
        target = _target(tenant, secrets=DeploySecrets(ai_api_key="AIzaNEWKEY"))

        await DeploymentPipeline(session).reconfigure(target)

        assert session.upload_order == [target.layout.business_profile_path, target.layout.env_path]
        assert "GEMINI_API_KEY=AIzaNEWKEY" in session.uploads[target.layout.env_path].decode()
        assert not session.ran("mkdir -p")
        assert not session.ran("go build")
        assert session.ran("systemctl restart")

    @pytest.mark.asyncio
    async def test_restart_only_touches_unit(self, fake_session_cls, tenant):
        session = fake_session_cls(rules=list(GO_OK))
        target = _target(tenant)

        await DeploymentPipeline(session).restart(target)

        assert session.uploads == {}
        assert session.commands[0] == f"systemctl restart {target.layout.unit_name}"


class TestConfigureEnvironment:

    @pytest.mark.asyncio
    async def test_credentials_written_private(self, fake_session_cls, tenant):
        session = fake_session_cls()
        secrets = DeploySecrets(ai_api_key="k", integration_credentials=b'{"type": "service_account"}')
        target = _target(tenant, secrets=secrets)

        await DeploymentPipeline(session).configure_environment(target)

        layout = target.layout
        assert session.uploads[layout.credentials_path] == b'{"type": "service_account"}'
        assert session.upload_modes[layout.credentials_path] == 0o600
        assert session.upload_modes[layout.env_path] == 0o600
        assert "GOOGLE_APPLICATION_CREDENTIALS=google.json" in session.uploads[layout.env_path].decode()

    @pytest.mark.asyncio
    async def test_without_credentials_key_stays_commented(self, fake_session_cls, tenant):
        session = fake_session_cls()
        target = _target(tenant)

        await DeploymentPipeline(session).configure_environment(target)

        env = session.uploads[target.layout.env_path].decode()
        assert target.layout.credentials_path not in session.uploads
        assert "#GOOGLE_APPLICATION_CREDENTIALS=" in env
        assert "#GEMINI_API_KEY=" in env
        assert f"AGENT_ID={tenant.id}" in env


class TestHostOperations:

    @pytest.mark.asyncio
    async def test_update_env_value_replaces_atomically(self, fake_session_cls, tenant):
        session = fake_session_cls()
        layout = _target(tenant).layout
        session.files[layout.env_path] = "PORT=3001\n#SPREADSHEETID=\nLOG_LEVEL=INFO\n"

        await DeploymentPipeline(session).update_env_value(layout, "SPREADSHEETID", "sheet-1")

        tmp_path = f"{layout.env_path}.tmp"
        assert session.uploads[tmp_path].decode() == "PORT=3001\nSPREADSHEETID=sheet-1\nLOG_LEVEL=INFO\n"
        assert session.commands[-1] == f"mv {tmp_path} {layout.env_path}"

    @pytest.mark.asyncio
    async def test_teardown_removes_unit_and_workdir(self, fake_session_cls, tenant):
        session = fake_session_cls()
        layout = _target(tenant).layout

        await DeploymentPipeline(session).teardown(layout)

        assert _index(session, "systemctl stop") < _index(session, "systemctl disable")
        assert session.ran(f"rm -f {layout.unit_path}")
        assert session.commands[-1] == f"rm -rf {layout.workdir}"

    @pytest.mark.asyncio
    async def test_unit_state_reads_stdout_of_failed_probe(self, fake_session_cls, tenant):
        session = fake_session_cls(rules=[("is-active", RemoteCommandError("is-active", 3, "inactive\n"))])

        state = await DeploymentPipeline(session).unit_state(_target(tenant).layout)

        assert state == "inactive"

    @pytest.mark.asyncio
    async def test_tail_reads_unit_log(self, fake_session_cls, tenant):
        session = fake_session_cls(rules=[("tail -n 50", "line one\nline two\n")])
        layout = _target(tenant).layout

        output = await DeploymentPipeline(session).tail(layout, 50)

        assert output == "line one\nline two\n"
        assert layout.stdout_log in session.commands[0]


class TestCollectSourceFiles:

    def test_walks_directories(self, source_tree):
        files = collect_source_files(source_tree / "go-whatsapp-web", GO_SHARED.source_manifest)

        relatives = [relative for relative, _ in files]
        assert relatives == [
            "go.mod",
            "go.sum",
            "main.go",
            "src/config/config.go",
            "src/handlers/messages.go",
        ]

    def test_missing_entry_raises(self, tmp_path):
        with pytest.raises(PhaseCheckFailed, match="go.mod"):
            collect_source_files(tmp_path, ("go.mod",))
