from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agriqcert.domain.models import Batch, Inspection


async def get_batch(session: AsyncSession, batch_id: str) -> Batch | None:
    result = await session.execute(select(Batch).where(Batch.id == batch_id))
    return result.scalar_one_or_none()


async def list_batch_ids_for_farmer(session: AsyncSession, farmer_id: str) -> list[str]:
    result = await session.execute(select(Batch.id).where(Batch.farmer_id == farmer_id))
    return list(result.scalars().all())


async def get_inspection(session: AsyncSession, inspection_id: str) -> Inspection | None:
    result = await session.execute(select(Inspection).where(Inspection.id == inspection_id))
    return result.scalar_one_or_none()


async def get_latest_inspection(session: AsyncSession, batch_id: str) -> Inspection | None:
    result = await session.execute(
        select(Inspection)
        .where(Inspection.batch_id == batch_id)
        .order_by(Inspection.created_at.desc(), Inspection.id.desc())
    )
    return result.scalars().first()
