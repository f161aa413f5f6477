from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession

from agriqcert.domain.models import AuditEvent


@dataclass(frozen=True)
class AuditFilter:
    # event_type accepts a trailing ".*" to match a whole family, e.g. "credential.*".
    event_type: str | None = None
    outcome: str | None = None
    actor_id: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    occurred_from: datetime | None = None
    occurred_to: datetime | None = None


def _apply(stmt: Select, filters: AuditFilter) -> Select:
    if filters.event_type:
        if filters.event_type.endswith(".*"):
            stmt = stmt.where(AuditEvent.event_type.startswith(filters.event_type[:-1]))
        else:
            stmt = stmt.where(AuditEvent.event_type == filters.event_type)
    exact = {
        AuditEvent.outcome: filters.outcome,
        AuditEvent.actor_id: filters.actor_id,
        AuditEvent.resource_type: filters.resource_type,
        AuditEvent.resource_id: filters.resource_id,
    }
    for column, value in exact.items():
        if value:
            stmt = stmt.where(column == value)
    if filters.occurred_from:
        stmt = stmt.where(AuditEvent.occurred_at >= filters.occurred_from)
    if filters.occurred_to:
        stmt = stmt.where(AuditEvent.occurred_at <= filters.occurred_to)
    return stmt


async def list_events(
    session: AsyncSession,
    filters: AuditFilter | None = None,
    *,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditEvent]:
    stmt = _apply(select(AuditEvent), filters or AuditFilter())
    stmt = stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc()).offset(offset).limit(limit)
    return list((await session.execute(stmt)).scalars().all())
