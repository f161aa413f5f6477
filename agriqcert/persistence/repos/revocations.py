from __future__ import annotations

from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agriqcert.domain.models import Revocation


async def append(
    session: AsyncSession,
    *,
    certificate_id: str,
    provider_credential_id: str | None,
    credential_hash: str | None,
    revoked_by: str,
    reason: str,
    metadata: dict[str, Any] | None = None,
) -> Revocation:
    # The ledger is append-only; there is deliberately no update or delete helper.
    record = Revocation(
        id=uuid4().hex,
        certificate_id=certificate_id,
        provider_credential_id=provider_credential_id,
        credential_hash=credential_hash,
        revoked_by=revoked_by,
        reason=reason,
        metadata_json=metadata or {},
    )
    session.add(record)
    await session.flush()
    return record


async def find_revocation(
    session: AsyncSession,
    *,
    credential_hash: str | None = None,
    provider_credential_id: str | None = None,
    certificate_id: str | None = None,
) -> Revocation | None:
    # Resolve by the most specific identifier supplied, newest record first.
    stmt = select(Revocation)
    if credential_hash:
        stmt = stmt.where(Revocation.credential_hash == credential_hash)
    elif provider_credential_id:
        stmt = stmt.where(Revocation.provider_credential_id == provider_credential_id)
    elif certificate_id:
        stmt = stmt.where(Revocation.certificate_id == certificate_id)
    else:
        raise ValueError("At least one identifier must be provided")
    result = await session.execute(stmt.order_by(Revocation.created_at.desc(), Revocation.id))
    return result.scalars().first()


async def list_revocations(
    session: AsyncSession,
    *,
    offset: int = 0,
    limit: int = 100,
    revoked_by: str | None = None,
) -> list[Revocation]:
    stmt = select(Revocation)
    if revoked_by:
        stmt = stmt.where(Revocation.revoked_by == revoked_by)
    stmt = stmt.order_by(Revocation.created_at.desc(), Revocation.id).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
