"""Runtime profiles.

A profile captures everything that differs between the kinds of bot the
fleet runs: which runtime and toolchain a host needs, how the source is
built into an artifact, what the supervisor unit executes, and which
probes prove a host is usable. The deployment pipeline itself is the same
six phases for every profile.
"""
from __future__ import annotations

from dataclasses import dataclass, field

GO_VERSION = "1.24.0"
GO_ROOT = "/usr/local/go"
GO_BIN = f"{GO_ROOT}/bin/go"
NODE_MAJOR = 20

DEFAULT_PATH = "/usr/local/go/bin:/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


@dataclass(frozen=True)
class ToolCheck:
    """A command whose output must contain ``expect`` (and not ``reject``)."""

    name: str
    command: str
    expect: str
    reject: str | None = None

    def passes(self, output: str) -> bool:
        if self.expect not in output:
            return False
        return self.reject is None or self.reject not in output


@dataclass(frozen=True)
class RemediationStep:
    description: str
    command: str
    timeout: float = 60.0
    required: bool = True


@dataclass(frozen=True)
class RuntimeProfile:
    name: str
    shared: bool
    unit_prefix: str
    workdir_root: str
    source_dir: str
    source_manifest: tuple[str, ...]
    runtime_check: str
    runtime_install: str
    needs_c_toolchain: bool
    resolve_commands: tuple[str, ...]
    build_command: str | None
    artifact: str
    exec_start: str
    channel: str  # "whatsapp-web" | "meta"
    readiness_checks: tuple[ToolCheck, ...] = ()
    tool_checks: tuple[ToolCheck, ...] = ()
    package_manager_smoke: str = ""
    remediation: tuple[RemediationStep, ...] = ()
    fixed_port: int | None = None
    path_env: str = DEFAULT_PATH
    extra_env: dict[str, str] = field(default_factory=dict)

    def unit_name(self, tenant_id: str) -> str:
        return f"{self.unit_prefix}-{tenant_id}"

    def workdir(self, tenant_id: str) -> str:
        return f"{self.workdir_root}/{tenant_id}"


def go_install_script(version: str = GO_VERSION) -> str:
    archive = f"go{version}.linux-amd64.tar.gz"
    return (
        "set -e\n"
        "cd /tmp\n"
        f"wget -q https://go.dev/dl/{archive} -O {archive}\n"
        f"rm -rf {GO_ROOT}\n"
        f"tar -C /usr/local -xzf {archive}\n"
        f"rm -f {archive}\n"
        f"{GO_BIN} version\n"
    )


def node_install_script(major: int = NODE_MAJOR) -> str:
    return (
        "set -e\n"
        f"curl -fsSL https://deb.nodesource.com/setup_{major}.x | bash -\n"
        "DEBIAN_FRONTEND=noninteractive apt-get install -y nodejs\n"
        "node --version\n"
    )


_GO_BOOTSTRAP_DONE = ToolCheck(
    name="bootstrap",
    command='cloud-init status --wait 2>&1 || echo "TIMEOUT"',
    expect="done",
    reject="TIMEOUT",
)
_GO_RUNTIME = ToolCheck(
    name="go",
    command=f"export PATH=$PATH:{GO_ROOT}/bin && go version 2>&1",
    expect="go version",
)
_GCC = ToolCheck(name="gcc", command="gcc --version 2>&1", expect="gcc")

_GO_REMEDIATION = (
    RemediationStep("create directories", "mkdir -p /var/log/botfleet /opt/botfleet/tenants", 30),
    RemediationStep(
        "install C toolchain",
        "DEBIAN_FRONTEND=noninteractive apt-get update && "
        "DEBIAN_FRONTEND=noninteractive apt-get install -y build-essential gcc",
        600,
    ),
    RemediationStep("install Go", go_install_script(), 300),
)

_GO_SOURCE_MANIFEST = ("go.mod", "go.sum", "main.go", "src")


GO_SHARED = RuntimeProfile(
    name="go-shared",
    shared=True,
    unit_prefix="botfleet-tenant",
    workdir_root="/opt/botfleet/tenants",
    source_dir="go-whatsapp-web",
    source_manifest=_GO_SOURCE_MANIFEST,
    runtime_check=f"test -x {GO_BIN} && {GO_BIN} version",
    runtime_install=go_install_script(),
    needs_c_toolchain=True,
    resolve_commands=(f"{GO_BIN} mod download", f"{GO_BIN} mod tidy"),
    build_command=f"CGO_ENABLED=1 {GO_BIN} build -o bot main.go",
    artifact="bot",
    exec_start="{workdir}/bot",
    channel="whatsapp-web",
    readiness_checks=(_GO_BOOTSTRAP_DONE, _GO_RUNTIME, _GCC),
    tool_checks=(_GO_RUNTIME, _GCC),
    package_manager_smoke=f"cd /tmp && {GO_BIN} env GOPATH",
    remediation=_GO_REMEDIATION,
)

GO_DEDICATED = RuntimeProfile(
    name="go-dedicated",
    shared=False,
    unit_prefix="botfleet-meta",
    workdir_root="/opt/botfleet/dedicated",
    source_dir="go-meta",
    source_manifest=_GO_SOURCE_MANIFEST,
    runtime_check=f"test -x {GO_BIN} && {GO_BIN} version",
    runtime_install=go_install_script(),
    needs_c_toolchain=True,
    resolve_commands=(f"{GO_BIN} mod download", f"{GO_BIN} mod tidy"),
    build_command=f"{GO_BIN} build -o bot main.go",
    artifact="bot",
    exec_start="{workdir}/bot",
    channel="meta",
    readiness_checks=(_GO_BOOTSTRAP_DONE, _GO_RUNTIME, _GCC),
    tool_checks=(_GO_RUNTIME, _GCC),
    package_manager_smoke=f"cd /tmp && {GO_BIN} env GOPATH",
    remediation=_GO_REMEDIATION,
    fixed_port=8080,
)

NODE_DEDICATED = RuntimeProfile(
    name="node-dedicated",
    shared=False,
    unit_prefix="botfleet-node",
    workdir_root="/opt/botfleet/dedicated",
    source_dir="node-meta",
    source_manifest=("package.json", "package-lock.json", "tsconfig.json", "src"),
    runtime_check="which node && node --version",
    runtime_install=node_install_script(),
    needs_c_toolchain=False,
    resolve_commands=("npm install",),
    build_command="npm run build",
    artifact="dist/app.js",
    exec_start="/usr/bin/node {workdir}/dist/app.js",
    channel="meta",
    tool_checks=(
        ToolCheck("node", "which node && node --version", "v"),
        ToolCheck("npm", "which npm && npm --version", "."),
        ToolCheck("pm2", "which pm2 && pm2 --version", "."),
    ),
    package_manager_smoke="cd /tmp && npm --version",
    remediation=(
        RemediationStep("create directories", "mkdir -p /var/log/botfleet /opt/botfleet/dedicated", 30),
        RemediationStep("install Node.js", node_install_script(), 300),
        RemediationStep("install pm2", "npm install -g pm2 && pm2 --version", 180),
    ),
    fixed_port=3000,
)

PROFILES: dict[str, RuntimeProfile] = {
    profile.name: profile for profile in (GO_SHARED, GO_DEDICATED, NODE_DEDICATED)
}


def get_profile(name: str) -> RuntimeProfile:
    try:
        return PROFILES[name]
    except KeyError:
        raise ValueError(f"unknown runtime profile {name!r}") from None
