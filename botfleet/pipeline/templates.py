"""Renderers for every script and file the pipeline puts on a host.

All functions here are pure: they take plain values and return text, so
they can be tested without a transport. Rendered files carry
TEMPLATE_VERSION so a host's files can be matched to the code that wrote
them.
"""
from __future__ import annotations

import json
import shlex
from dataclasses import dataclass

import yaml

from botfleet.models import Tenant
from botfleet.pipeline.profiles import RuntimeProfile
from botfleet.schemas import BusinessProfile

TEMPLATE_VERSION = "2"

ENV_FILE = ".env"
BUSINESS_PROFILE_FILE = "business_config.json"
CREDENTIALS_FILE = "google.json"
UNIT_DIR = "/etc/systemd/system"

AI_KEY = "GEMINI_API_KEY"

_DPKG_LOCKS = (
    "/var/lib/dpkg/lock-frontend",
    "/var/lib/apt/lists/lock",
    "/var/lib/dpkg/lock",
)


@dataclass(frozen=True)
class TenantLayout:
    """Where a tenant's files live on its host."""

    tenant_id: str
    workdir: str
    unit_name: str

    @classmethod
    def for_tenant(cls, profile: RuntimeProfile, tenant_id: str) -> "TenantLayout":
        return cls(
            tenant_id=tenant_id,
            workdir=profile.workdir(tenant_id),
            unit_name=profile.unit_name(tenant_id),
        )

    @property
    def unit_path(self) -> str:
        return f"{UNIT_DIR}/{self.unit_name}.service"

    @property
    def stdout_log(self) -> str:
        return f"/var/log/{self.unit_name}.log"

    @property
    def stderr_log(self) -> str:
        return f"/var/log/{self.unit_name}-error.log"

    @property
    def env_path(self) -> str:
        return f"{self.workdir}/{ENV_FILE}"

    @property
    def business_profile_path(self) -> str:
        return f"{self.workdir}/{BUSINESS_PROFILE_FILE}"

    @property
    def credentials_path(self) -> str:
        return f"{self.workdir}/{CREDENTIALS_FILE}"


def render_package_lock_wait(timeout: int = 300, poll: int = 5) -> str:
    """Block until no apt/dpkg process holds a package lock.

    Exits 124 when ``timeout`` expires with the locks still held.
    """
    held = " || ".join(f"fuser {lock} >/dev/null 2>&1" for lock in _DPKG_LOCKS)
    loop = f"while {held}; do echo 'waiting for package manager locks'; sleep {poll}; done"
    return f"timeout {timeout} bash -c {shlex.quote(loop)}"


def _retry(command: str, attempts: int = 3, delay: int = 10) -> str:
    return (
        f"for i in $(seq 1 {attempts}); do "
        f"{command} && break; "
        f'if [ "$i" -eq {attempts} ]; then exit 1; fi; '
        f"sleep {delay}; done"
    )


def render_toolchain_install() -> str:
    """Install a C toolchain when gcc is missing."""
    return "\n".join(
        [
            "set -e",
            "export DEBIAN_FRONTEND=noninteractive",
            "if command -v gcc >/dev/null 2>&1; then gcc --version | head -1; exit 0; fi",
            _retry("apt-get update -q"),
            _retry("apt-get install -y -q build-essential gcc"),
            "gcc --version | head -1",
        ]
    )


def render_runtime_install(profile: RuntimeProfile) -> str:
    """Install the profile runtime unless its check already passes."""
    return "\n".join(
        [
            f"if {profile.runtime_check} >/dev/null 2>&1; then {profile.runtime_check}; exit 0; fi",
            profile.runtime_install.rstrip("\n"),
        ]
    )


def render_compile(profile: RuntimeProfile, workdir: str) -> str:
    """Resolve dependencies and build the artifact in ``workdir``."""
    lines = [
        "set -e",
        f"export PATH={profile.path_env}:$PATH",
        "export HOME=/root",
        f"cd {shlex.quote(workdir)}",
        *profile.resolve_commands,
    ]
    if profile.build_command:
        lines.append(profile.build_command)
    artifact = shlex.quote(profile.artifact)
    lines.append(f"chmod +x {artifact}")
    lines.append(f"test -f {artifact} && echo BUILD_OK")
    return "\n".join(lines)


def render_unit(profile: RuntimeProfile, layout: TenantLayout, description: str = "") -> str:
    """systemd unit for one tenant bot."""
    exec_start = profile.exec_start.format(workdir=layout.workdir)
    return (
        f"# botfleet template v{TEMPLATE_VERSION}\n"
        "[Unit]\n"
        f"Description={description or f'Tenant bot {layout.tenant_id}'}\n"
        "After=network-online.target\n"
        "Wants=network-online.target\n"
        "\n"
        "[Service]\n"
        "Type=simple\n"
        "User=root\n"
        f"WorkingDirectory={layout.workdir}\n"
        f"ExecStart={exec_start}\n"
        "Restart=always\n"
        "RestartSec=10\n"
        f"StandardOutput=append:{layout.stdout_log}\n"
        f"StandardError=append:{layout.stderr_log}\n"
        f'Environment="PATH={profile.path_env}"\n'
        "\n"
        "[Install]\n"
        "WantedBy=multi-user.target\n"
    )


def _env_line(key: str, value: str | None) -> str:
    if value:
        return f"{key}={value}"
    return f"#{key}="


def render_env_file(
    profile: RuntimeProfile,
    tenant: Tenant,
    port: int,
    ai_api_key: str = "",
    has_credentials_file: bool = False,
) -> str:
    """Flat KEY=value environment file.

    Integrations the tenant has not configured are written as commented
    ``#KEY=`` lines so set_env_value can switch them on later.
    """
    lines = [
        f"# botfleet template v{TEMPLATE_VERSION}",
        "# Bot identity",
        f"AGENT_ID={tenant.id}",
        f"AGENT_NAME={tenant.name}",
        f"PHONE_NUMBER={tenant.phone_number}",
        f"PORT={port}",
        f"BUSINESS_CONFIG={BUSINESS_PROFILE_FILE}",
        "LOG_LEVEL=INFO",
    ]
    if profile.channel == "meta":
        lines += [
            "",
            "# Meta WhatsApp Business API",
            _env_line("META_ACCESS_TOKEN", tenant.meta_access_token),
            _env_line("META_PHONE_NUMBER_ID", tenant.meta_phone_number_id),
            _env_line("META_WABA_ID", tenant.meta_waba_id),
            _env_line("WEBHOOK_VERIFY_TOKEN", tenant.webhook_verify_token),
        ]
    else:
        lines += ["DATABASE_FILE=whatsapp.db"]

    lines += [
        "",
        "# AI",
        _env_line(AI_KEY, ai_api_key),
        "",
        "# Google Sheets",
        _env_line("SPREADSHEETID", tenant.google_sheet_id),
        _env_line("GOOGLE_APPLICATION_CREDENTIALS", CREDENTIALS_FILE if has_credentials_file else None),
        "",
        "# Google Calendar",
        _env_line("GOOGLE_CALENDAR_ID", tenant.google_calendar_id),
    ]
    for key, value in sorted(profile.extra_env.items()):
        lines.append(_env_line(key, value))
    return "\n".join(lines) + "\n"


def set_env_value(text: str, key: str, value: str | None) -> str:
    """Activate, update or comment out ``key`` in an environment file.

    An empty or None value comments the key out. A key that appears
    nowhere (active or commented) is appended.
    """
    replacement = _env_line(key, value)
    out: list[str] = []
    found = False
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith(f"{key}=") or stripped.startswith(f"#{key}="):
            if not found:
                out.append(replacement)
                found = True
            continue
        out.append(line)
    if not found:
        out.append(replacement)
    return "\n".join(out) + "\n"


def render_business_profile(tenant: Tenant) -> str:
    """JSON business-profile document with the keys the bot reads."""
    profile = BusinessProfile.model_validate(tenant.business_config or {})
    profile = profile.model_copy(
        update={
            "agent_name": profile.agent_name or tenant.name,
            "business_type": profile.business_type or tenant.business_type,
            "phone_number": profile.phone_number or tenant.phone_number,
        }
    )
    return json.dumps(profile.model_dump(by_alias=True), indent=2, ensure_ascii=False)


def render_shared_host_bootstrap(
    profile: RuntimeProfile,
    base_port: int,
    max_port: int,
    status_marker_path: str,
    health_check_script: str = "/opt/health_check.sh",
    ready_text: str = "SERVIDOR LISTO PARA DESPLEGAR BOTS",
) -> str:
    """cloud-init user data for a new shared host.

    Installs the C toolchain and the profile runtime, opens the tenant port
    range, and writes the status marker the health probe reads.
    """
    marker_dir = status_marker_path.rsplit("/", 1)[0]

    def mark(phase: str) -> str:
        return f"echo {phase} > {status_marker_path}"

    config = {
        "package_update": True,
        "packages": ["build-essential", "gcc", "wget", "curl", "ufw", "psmisc"],
        "write_files": [
            {
                "path": health_check_script,
                "permissions": "0755",
                "content": _health_check_script(profile, status_marker_path, ready_text),
            }
        ],
        "runcmd": [
            f"mkdir -p {marker_dir} {profile.workdir_root}",
            mark("PHASE_RUNTIME"),
            ["bash", "-c", profile.runtime_install],
            mark("PHASE_FIREWALL"),
            "ufw allow 22/tcp",
            "ufw allow 80/tcp",
            "ufw allow 443/tcp",
            f"ufw allow {base_port}:{max_port}/tcp",
            "ufw --force enable",
            mark("CLOUD_INIT_COMPLETE"),
            f"date '+%Y-%m-%d %H:%M:%S' > {marker_dir}/init_completed_at",
        ],
    }
    body = yaml.safe_dump(config, sort_keys=False, default_flow_style=False)
    return f"#cloud-config\n# botfleet template v{TEMPLATE_VERSION}\n{body}"


def _health_check_script(profile: RuntimeProfile, status_marker_path: str, ready_text: str) -> str:
    checks = "\n".join(
        f"{check.command} >/dev/null 2>&1 || {{ echo 'missing {check.name}'; exit 1; }}"
        for check in profile.tool_checks
    )
    return (
        "#!/bin/bash\n"
        f'grep -q CLOUD_INIT_COMPLETE {status_marker_path} 2>/dev/null || {{ echo "bootstrap running"; exit 1; }}\n'
        f"{checks}\n"
        f"echo {shlex.quote(ready_text)}\n"
    )
