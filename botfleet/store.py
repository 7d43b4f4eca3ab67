"""Plain CRUD stores for persisted fleet records.

Stores hand out detached ORM instances: every call opens its own session,
and nothing returned is bound to it. Filters are equality-only; ordering
is by a single column.
"""
from __future__ import annotations

from typing import Any, Generic, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from botfleet import db
from botfleet.models import Base, SharedHost, Tenant

M = TypeVar("M", bound=Base)


class Store(Generic[M]):
    model: type[M]

    def __init__(self, session_factory: sessionmaker | None = None):
        self._session_factory = session_factory

    def get(self, record_id: str) -> M | None:
        with db.get_session(self._session_factory) as session:
            obj = session.get(self.model, record_id)
            if obj is not None:
                session.expunge(obj)
            return obj

    def find(
        self,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        **filters: Any,
    ) -> list[M]:
        stmt = select(self.model).filter_by(**filters)
        if order_by:
            column = getattr(self.model, order_by)
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        with db.get_session(self._session_factory) as session:
            rows = list(session.scalars(stmt))
            session.expunge_all()
            return rows

    def first(self, order_by: str | None = None, descending: bool = False, **filters: Any) -> M | None:
        rows = self.find(order_by=order_by, descending=descending, limit=1, **filters)
        return rows[0] if rows else None

    def save(self, obj: M) -> M:
        with db.get_session(self._session_factory) as session:
            session.add(obj)
            session.commit()
            session.refresh(obj)
            session.expunge(obj)
            return obj

    def delete(self, obj: M) -> None:
        with db.get_session(self._session_factory) as session:
            persistent = session.get(self.model, obj.id)
            if persistent is not None:
                session.delete(persistent)
                session.commit()


class HostStore(Store[SharedHost]):
    model = SharedHost


class TenantStore(Store[Tenant]):
    model = Tenant
