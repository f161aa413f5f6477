from __future__ import annotations

from datetime import datetime, timezone
import logging
import re
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from agriqcert.domain.models import AuditEvent
from agriqcert.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

# Credential documents and proofs are never written to the audit trail.
_REDACT_KEYS = re.compile(
    r"api_key|authorization|token|secret|password|signature|proof|credential_json",
    re.IGNORECASE,
)
REDACTED = "[REDACTED]"


def redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(key): REDACTED if _REDACT_KEYS.search(str(key)) else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    """Request id and client hints for audit rows and revocation actors."""
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip() or None
    else:
        ip_address = request.client.host if request.client else None
    return {
        "request_id": getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id"),
        "ip_address": ip_address,
        "user_agent": request.headers.get("user-agent"),
    }


async def _persist(session: AsyncSession, event: AuditEvent, *, commit: bool) -> None:
    session.add(event)
    if commit:
        await session.commit()
    else:
        await session.flush()


async def record_event(
    *,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
    actor_type: str,
    actor_id: str | None,
    actor_role: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool = False,
    best_effort: bool = True,
) -> None:
    """Append an audit row.

    Without a session the row is written in its own transaction. With a
    session it joins the caller's unit of work and is only committed when
    ``commit`` is set. Write failures are logged; with ``best_effort=False``
    they are raised as well.
    """
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata_json=redact(metadata or {}),
        error_code=error_code,
    )
    owns_session = session is None
    target = SessionLocal() if owns_session else session
    try:
        await _persist(target, event, commit=commit or owns_session)
    except SQLAlchemyError:
        if commit or owns_session:
            await target.rollback()
        if not best_effort:
            logger.error("audit_write_failed event_type=%s resource_id=%s", event_type, resource_id)
            raise
        logger.warning(
            "audit_write_failed event_type=%s resource_id=%s",
            event_type,
            resource_id,
            exc_info=True,
        )
    finally:
        if owns_session:
            await target.close()
