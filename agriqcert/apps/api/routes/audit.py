from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from agriqcert.apps.api.deps import Principal, get_db, require_roles
from agriqcert.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from agriqcert.apps.api.response import success_response
from agriqcert.persistence.repos import audit as audit_repo


router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    occurred_at: datetime
    actor_type: str
    actor_id: str | None = None
    actor_role: str | None = None
    event_type: str
    outcome: str
    resource_type: str | None = None
    resource_id: str | None = None
    request_id: str | None = None
    error_code: str | None = None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_json")


@router.get("/events")
async def list_audit_events(
    request: Request,
    event_type: str | None = Query(default=None, description='Exact type or a family such as "credential.*"'),
    outcome: str | None = None,
    actor_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_roles("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    filters = audit_repo.AuditFilter(
        event_type=event_type,
        outcome=outcome,
        actor_id=actor_id,
        resource_type=resource_type,
        resource_id=resource_id,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
    )
    events = await audit_repo.list_events(db, filters, offset=offset, limit=limit)
    items = [AuditEventResponse.model_validate(event).model_dump(mode="json") for event in events]
    # A short page means the trail is exhausted.
    next_offset = offset + len(items) if len(items) == limit else None
    return success_response(request=request, data={"items": items, "next_offset": next_offset})
