from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from agriqcert.domain.models import (
    CERT_STATUS_ACTIVE,
    CERT_STATUS_EXPIRED,
    CERT_STATUS_REVOKED,
    Certificate,
)


async def create_certificate(
    session: AsyncSession,
    *,
    certificate_id: str,
    batch_id: str,
    credential_json: dict[str, Any],
    provider_credential_id: str | None,
    credential_url: str | None,
    credential_hash: str | None,
    qr_payload: str,
    issued_by: str,
    issued_at: datetime,
    expires_at: datetime | None,
    metadata_json: dict[str, Any],
) -> Certificate:
    certificate = Certificate(
        id=certificate_id,
        batch_id=batch_id,
        credential_json=credential_json,
        provider_credential_id=provider_credential_id,
        credential_url=credential_url,
        credential_hash=credential_hash,
        qr_payload=qr_payload,
        status=CERT_STATUS_ACTIVE,
        revoked=False,
        issued_by=issued_by,
        issued_at=issued_at,
        expires_at=expires_at,
        metadata_json=metadata_json,
    )
    session.add(certificate)
    # Flush so the batch_id unique constraint surfaces inside the caller's try block.
    await session.flush()
    return certificate


async def get_certificate(session: AsyncSession, certificate_id: str) -> Certificate | None:
    result = await session.execute(select(Certificate).where(Certificate.id == certificate_id))
    return result.scalar_one_or_none()


async def get_by_batch(session: AsyncSession, batch_id: str) -> Certificate | None:
    result = await session.execute(select(Certificate).where(Certificate.batch_id == batch_id))
    return result.scalar_one_or_none()


async def get_by_hash(session: AsyncSession, credential_hash: str) -> Certificate | None:
    result = await session.execute(
        select(Certificate).where(Certificate.credential_hash == credential_hash)
    )
    return result.scalars().first()


async def get_by_provider_id(session: AsyncSession, provider_credential_id: str) -> Certificate | None:
    result = await session.execute(
        select(Certificate).where(Certificate.provider_credential_id == provider_credential_id)
    )
    return result.scalars().first()


async def get_by_url(session: AsyncSession, credential_url: str) -> Certificate | None:
    result = await session.execute(
        select(Certificate).where(Certificate.credential_url == credential_url)
    )
    return result.scalars().first()


async def list_for_batches(session: AsyncSession, batch_ids: list[str]) -> list[Certificate]:
    if not batch_ids:
        return []
    result = await session.execute(
        select(Certificate)
        .where(Certificate.batch_id.in_(batch_ids))
        .order_by(Certificate.issued_at.desc(), Certificate.id)
    )
    return list(result.scalars().all())


async def mark_revoked(
    session: AsyncSession,
    certificate_id: str,
    *,
    revoked_by: str,
    reason: str,
    revoked_at: datetime,
) -> bool:
    # Only flip rows that are not yet revoked; a false return means someone else won.
    result = await session.execute(
        update(Certificate)
        .where(Certificate.id == certificate_id, Certificate.revoked.is_(False))
        .values(
            revoked=True,
            status=CERT_STATUS_REVOKED,
            revoked_at=revoked_at,
            revoked_by=revoked_by,
            revocation_reason=reason,
        )
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def mark_active(session: AsyncSession, certificate_id: str) -> bool:
    # Never resurrect revoked certificates; revoked is terminal.
    result = await session.execute(
        update(Certificate)
        .where(
            Certificate.id == certificate_id,
            Certificate.revoked.is_(False),
            Certificate.status != CERT_STATUS_ACTIVE,
        )
        .values(status=CERT_STATUS_ACTIVE)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def mark_expired(session: AsyncSession, certificate_id: str) -> bool:
    # Expiry leaves the revoked flag untouched and never overrides a revoked status.
    result = await session.execute(
        update(Certificate)
        .where(
            Certificate.id == certificate_id,
            Certificate.revoked.is_(False),
            Certificate.status != CERT_STATUS_EXPIRED,
        )
        .values(status=CERT_STATUS_EXPIRED)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def merge_metadata(session: AsyncSession, certificate_id: str, patch: dict[str, Any]) -> None:
    """Merge top-level keys into metadata_json.

    The row is locked (FOR UPDATE on Postgres) and re-read until the caller
    commits, so concurrent merges on one certificate serialize instead of
    dropping each other's keys.
    """
    result = await session.execute(
        select(Certificate)
        .where(Certificate.id == certificate_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    certificate = result.scalar_one_or_none()
    if certificate is None:
        return
    certificate.metadata_json = {**(certificate.metadata_json or {}), **patch}


async def count_summary(session: AsyncSession) -> dict[str, int]:
    total = await session.scalar(select(func.count()).select_from(Certificate))
    active = await session.scalar(
        select(func.count())
        .select_from(Certificate)
        .where(Certificate.status == CERT_STATUS_ACTIVE, Certificate.revoked.is_(False))
    )
    revoked = await session.scalar(
        select(func.count()).select_from(Certificate).where(Certificate.revoked.is_(True))
    )
    expired = await session.scalar(
        select(func.count()).select_from(Certificate).where(Certificate.status == CERT_STATUS_EXPIRED)
    )
    return {
        "total": int(total or 0),
        "active": int(active or 0),
        "revoked": int(revoked or 0),
        "expired": int(expired or 0),
    }
