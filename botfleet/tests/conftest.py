from __future__ import annotations

import itertools
from typing import Any, Callable

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from botfleet import models
from botfleet.config import settings
from botfleet.fleet import FleetManager, ReadinessPolicy
from botfleet.providers.base import (
    CreatedServer,
    InstanceInfo,
    InstanceState,
    ServerSpec,
    VMProvisioner,
)
from botfleet.store import HostStore, TenantStore


@pytest.fixture(autouse=True)
def _fast_settings(monkeypatch, tmp_path):
    """Zero every delay so tests never actually wait."""
    for name in (
        "start_settle_delay",
        "start_confirm_interval",
        "health_check_interval",
        "ssh_retry_delay",
        "host_wait_interval",
        "readiness_initial_delay",
        "readiness_poll_interval",
    ):
        monkeypatch.setattr(settings, name, 0)
    monkeypatch.setattr(settings, "bot_source_root", str(tmp_path / "bots"))
    yield


@pytest.fixture
def test_engine():
    """In-memory SQLite database engine."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    models.Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(bind=test_engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def host_store(session_factory):
    return HostStore(session_factory)


@pytest.fixture
def tenant_store(session_factory):
    return TenantStore(session_factory)


class FakeSession:
    """Scripted stand-in for RemoteSession.

    ``rules`` maps a command substring to a reply: a string is returned as
    stdout, an exception is raised, a callable is called with the command.
    The first matching rule wins; unmatched commands return "".
    """

    def __init__(self, address: str = "10.0.0.1", rules: list[tuple[str, Any]] | None = None):
        self.address = address
        self.rules: list[tuple[str, Any]] = list(rules or [])
        self.commands: list[str] = []
        self.uploads: dict[str, bytes] = {}
        self.upload_order: list[str] = []
        self.upload_modes: dict[str, int | None] = {}
        self.files: dict[str, str] = {}
        self.closed = 0

    def on(self, fragment: str, reply: Any) -> "FakeSession":
        self.rules.append((fragment, reply))
        return self

    def _reply(self, command: str) -> str:
        for fragment, reply in self.rules:
            if fragment in command:
                if isinstance(reply, BaseException):
                    raise reply
                if callable(reply):
                    return reply(command)
                return reply
        return ""

    async def execute(self, command: str, *, input: str | None = None) -> str:
        self.commands.append(command)
        return self._reply(command)

    async def execute_with_timeout(self, command: str, timeout: float) -> str:
        return await self.execute(command)

    async def execute_streamed(self, command: str, sink=None, prefix: str = "") -> str:
        return await self.execute(command)

    async def upload_file(self, data: bytes, remote_path: str, mode: int | None = None) -> None:
        self.commands.append(f"<upload {remote_path}>")
        self._reply(f"<upload {remote_path}>")
        self.uploads[remote_path] = data
        self.upload_order.append(remote_path)
        self.upload_modes[remote_path] = mode

    async def read_file(self, remote_path: str) -> str:
        self.commands.append(f"cat {remote_path}")
        if remote_path in self.files:
            return self.files[remote_path]
        return self._reply(f"cat {remote_path}")

    async def close(self) -> None:
        self.closed += 1

    def ran(self, fragment: str) -> bool:
        return any(fragment in command for command in self.commands)


class SessionOpener:
    """Hands out FakeSessions and records every open call."""

    def __init__(self, factory: Callable[[], FakeSession] | None = None):
        self.factory = factory or FakeSession
        self.calls: list[tuple[str, str, dict]] = []
        self.sessions: list[FakeSession] = []
        self.error: BaseException | None = None

    async def __call__(self, address: str, password: str, **kwargs) -> FakeSession:
        self.calls.append((address, password, kwargs))
        if self.error is not None:
            raise self.error
        session = self.factory()
        session.address = address
        self.sessions.append(session)
        return session


class FakeProvisioner(VMProvisioner):
    def __init__(self):
        self._ids = itertools.count(1000)
        self.created: list[ServerSpec] = []
        self.deleted: list[str] = []
        self.state = InstanceState.RUNNING
        self.create_error: BaseException | None = None

    @property
    def name(self) -> str:
        return "fake"

    async def create_server(self, spec: ServerSpec) -> CreatedServer:
        if self.create_error is not None:
            raise self.create_error
        self.created.append(spec)
        instance_id = str(next(self._ids))
        return CreatedServer(instance_id=instance_id, ip_address=f"10.0.{instance_id[-2:]}.1", root_password="pw")

    async def get_server(self, instance_id: str) -> InstanceInfo:
        return InstanceInfo(instance_id=instance_id, state=self.state)

    async def delete_server(self, instance_id: str) -> None:
        self.deleted.append(instance_id)


@pytest.fixture
def provisioner():
    return FakeProvisioner()


@pytest.fixture
def opener():
    return SessionOpener()


@pytest.fixture
def zero_policy():
    return ReadinessPolicy(
        initial_delay=0,
        poll_interval=0,
        max_attempts=3,
        check_timeout=5,
        running_timeout=0,
        running_poll=0,
    )


@pytest.fixture
def fleet(host_store, provisioner, opener, zero_policy):
    return FleetManager(host_store, provisioner, session_opener=opener, policy=zero_policy)


@pytest.fixture
def make_host(host_store):
    counter = itertools.count(1)

    def _make(**overrides) -> models.SharedHost:
        n = next(counter)
        values = dict(
            name=f"host-{n}",
            purpose=settings.shared_host_purpose,
            provider_instance_id=f"inst-{n}",
            ip_address=f"192.0.2.{n}",
            root_password="secret",
            status=models.HostStatus.READY.value,
            max_agents=100,
            current_agents=0,
            next_port=3001,
            base_port=3001,
            max_port=3100,
        )
        values.update(overrides)
        return host_store.save(models.SharedHost(**values))

    return _make


@pytest.fixture
def make_tenant(tenant_store):
    def _make(**overrides) -> models.Tenant:
        values = dict(
            name="Barber Shop",
            phone_number="+5215550001",
            business_type="barbershop",
            profile="go-shared",
            business_config={
                "personality": {"tone": "formal"},
                "services": [{"title": "Haircut", "price": 150}],
            },
        )
        values.update(overrides)
        return tenant_store.save(models.Tenant(**values))

    return _make


@pytest.fixture
def fake_session_cls():
    return FakeSession


@pytest.fixture
def opener_factory():
    """Build a SessionOpener whose sessions share the given rules."""

    def _build(rules: list[tuple[str, Any]] | None = None) -> SessionOpener:
        return SessionOpener(lambda: FakeSession(rules=list(rules or [])))

    return _build


@pytest.fixture
def source_tree():
    """Local bot sources for every runtime profile under bot_source_root."""
    from pathlib import Path

    root = Path(settings.bot_source_root)
    go_files = {
        "go.mod": "module bot\n",
        "go.sum": "",
        "main.go": "package main\nfunc main() {}\n",
        "src/handlers/messages.go": "package handlers\n",
        "src/config/config.go": "package config\n",
    }
    for profile_dir in ("go-whatsapp-web", "go-meta"):
        for relative, content in go_files.items():
            path = root / profile_dir / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)

    node_files = {
        "package.json": "{}",
        "package-lock.json": "{}",
        "tsconfig.json": "{}",
        "src/app.ts": "console.log('hi')\n",
    }
    for relative, content in node_files.items():
        path = root / "node-meta" / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root
