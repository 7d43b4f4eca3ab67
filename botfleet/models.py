from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class HostStatus(str, Enum):
    """Lifecycle of a shared host.

    initializing -> ready | error. ``error`` is terminal.
    """

    INITIALIZING = "initializing"
    READY = "ready"
    ERROR = "error"


class DeployStatus(str, Enum):
    PENDING = "pending"
    DEPLOYING = "deploying"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class SharedHost(Base):
    """A VM hosting many tenant bots, one port each."""

    __tablename__ = "shared_hosts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(100))
    purpose: Mapped[str] = mapped_column(String(50), index=True)
    provider_instance_id: Mapped[str] = mapped_column(String(64), unique=True)
    ip_address: Mapped[str] = mapped_column(String(64), default="")
    root_password: Mapped[str] = mapped_column(String(255), default="")
    status: Mapped[str] = mapped_column(String(20), default=HostStatus.INITIALIZING.value, index=True)
    status_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    max_agents: Mapped[int] = mapped_column(Integer, default=100)
    current_agents: Mapped[int] = mapped_column(Integer, default=0)
    next_port: Mapped[int] = mapped_column(Integer, default=3001)
    base_port: Mapped[int] = mapped_column(Integer, default=3001)
    max_port: Mapped[int] = mapped_column(Integer, default=3100)

    # Readiness verification progress, kept so a restart can resume it
    readiness_attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_readiness_check_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def is_ready(self) -> bool:
        return self.status == HostStatus.READY.value

    def is_at_capacity(self) -> bool:
        return self.current_agents >= self.max_agents

    def ports_exhausted(self) -> bool:
        return self.next_port > self.max_port

    def next_port_number(self) -> int:
        return self.next_port

    def increment_agents(self) -> None:
        self.current_agents += 1
        self.next_port += 1

    def decrement_agents(self) -> None:
        if self.current_agents > 0:
            self.current_agents -= 1

    def to_metrics(self) -> dict[str, Any]:
        utilization = 0.0
        if self.max_agents:
            utilization = round(self.current_agents * 100.0 / self.max_agents, 2)
        return {
            "host_id": self.id,
            "name": self.name,
            "status": self.status,
            "current_agents": self.current_agents,
            "max_agents": self.max_agents,
            "available_slots": max(self.max_agents - self.current_agents, 0),
            "utilization_percent": utilization,
            "next_port": self.next_port,
            "port_range": f"{self.base_port}-{self.max_port}",
        }


class Tenant(Base):
    """One customer-configured bot instance."""

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_id: Mapped[str] = mapped_column(String(36), default="")
    name: Mapped[str] = mapped_column(String(100))
    phone_number: Mapped[str] = mapped_column(String(32), default="")
    business_type: Mapped[str] = mapped_column(String(64), default="")
    profile: Mapped[str] = mapped_column(String(32), default="go-shared")

    host_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("shared_hosts.id", ondelete="SET NULL"), nullable=True
    )
    dedicated_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    dedicated_password: Mapped[str | None] = mapped_column(String(255), nullable=True)
    port: Mapped[int | None] = mapped_column(Integer, nullable=True)
    deploy_status: Mapped[str] = mapped_column(String(20), default=DeployStatus.PENDING.value)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    business_config: Mapped[dict] = mapped_column(JSON, default=dict)
    google_sheet_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    google_calendar_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    meta_access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta_phone_number_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    meta_waba_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    webhook_verify_token: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
