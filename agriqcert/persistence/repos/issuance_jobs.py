from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from agriqcert.domain.models import (
    JOB_ACTIVE_STATUSES,
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
    JOB_STATUS_PROCESSING,
    JOB_STATUS_SUCCESS,
    IssuanceJob,
)


_MAX_ERROR_CHARS = 1000


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def create_job(
    session: AsyncSession,
    *,
    job_id: str,
    batch_id: str,
    inspection_id: str | None,
    payload: dict[str, Any],
) -> IssuanceJob:
    # Claim the batch's active slot at insert time; a concurrent duplicate fails the unique index.
    job = IssuanceJob(
        id=job_id,
        batch_id=batch_id,
        inspection_id=inspection_id,
        status=JOB_STATUS_PENDING,
        attempts=0,
        max_attempts=1,
        payload_json=payload,
        active_batch_key=batch_id,
    )
    session.add(job)
    await session.flush()
    return job


async def get_job(session: AsyncSession, job_id: str) -> IssuanceJob | None:
    result = await session.execute(select(IssuanceJob).where(IssuanceJob.id == job_id))
    return result.scalar_one_or_none()


async def get_active_job_for_batch(session: AsyncSession, batch_id: str) -> IssuanceJob | None:
    result = await session.execute(
        select(IssuanceJob).where(
            IssuanceJob.batch_id == batch_id,
            IssuanceJob.status.in_(JOB_ACTIVE_STATUSES),
        )
    )
    return result.scalars().first()


async def list_pending_job_ids(session: AsyncSession, *, limit: int) -> list[str]:
    # Oldest first so the queue drains in enqueue order.
    result = await session.execute(
        select(IssuanceJob.id)
        .where(IssuanceJob.status == JOB_STATUS_PENDING)
        .order_by(IssuanceJob.created_at, IssuanceJob.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def claim_job(session: AsyncSession, job_id: str, *, worker_id: str) -> bool:
    # Compare-and-set pending->processing; only one worker can win the row.
    result = await session.execute(
        update(IssuanceJob)
        .where(IssuanceJob.id == job_id, IssuanceJob.status == JOB_STATUS_PENDING)
        .values(
            status=JOB_STATUS_PROCESSING,
            worker_id=worker_id,
            attempts=IssuanceJob.attempts + 1,
            started_at=_utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def mark_success(session: AsyncSession, job_id: str, *, result: dict[str, Any]) -> bool:
    # Terminal transitions only apply to processing rows, so success/failed never change again.
    outcome = await session.execute(
        update(IssuanceJob)
        .where(IssuanceJob.id == job_id, IssuanceJob.status == JOB_STATUS_PROCESSING)
        .values(
            status=JOB_STATUS_SUCCESS,
            result_json=result,
            last_error=None,
            active_batch_key=None,
            completed_at=_utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    return (outcome.rowcount or 0) == 1


async def mark_failed(session: AsyncSession, job_id: str, *, error: str) -> bool:
    outcome = await session.execute(
        update(IssuanceJob)
        .where(IssuanceJob.id == job_id, IssuanceJob.status == JOB_STATUS_PROCESSING)
        .values(
            status=JOB_STATUS_FAILED,
            last_error=error[:_MAX_ERROR_CHARS],
            active_batch_key=None,
            completed_at=_utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    return (outcome.rowcount or 0) == 1


async def count_by_status(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(
        select(IssuanceJob.status, func.count()).group_by(IssuanceJob.status)
    )
    return {status: int(count) for status, count in result.all()}
