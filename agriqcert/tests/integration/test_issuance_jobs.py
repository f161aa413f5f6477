from __future__ import annotations

from typing import Any

import pytest
from sqlalchemy import func, select

from agriqcert.core.config import get_settings
from agriqcert.core.errors import ConflictError, NotFoundError, ValidationError
from agriqcert.domain.models import Certificate, IssuanceJob, Notification
from agriqcert.persistence.db import SessionLocal
from agriqcert.persistence.repos import issuance_jobs as jobs_repo
from agriqcert.providers.trust.mock import MockTrustProvider
from agriqcert.services.issuance import IssuanceService
from agriqcert.services.notifications import DatabaseNotifier
from agriqcert.services.qr import parse_qr_payload
from agriqcert.tests.utils.seed import create_batch, create_inspection


class _FailingProvider(MockTrustProvider):
    async def issue(self, subject: dict[str, Any], *, expiration_date: str | None = None):
        raise RuntimeError("provider exploded")


@pytest.fixture
def queued(monkeypatch) -> list[str]:
    # Queue mode with the Redis push replaced by a recorder.
    monkeypatch.setenv("ISSUANCE_EXECUTION_MODE", "queue")
    get_settings.cache_clear()
    pushed: list[str] = []

    async def _record_push(job_id: str) -> bool:
        pushed.append(job_id)
        return True

    monkeypatch.setattr("agriqcert.services.issuance.push_issuance_job", _record_push)
    return pushed


async def _count(model) -> int:
    async with SessionLocal() as session:
        return int(await session.scalar(select(func.count()).select_from(model)))


@pytest.mark.asyncio
async def test_enqueue_is_idempotent_while_job_is_active(queued: list[str]) -> None:
    batch_id = await create_batch()
    inspection_id = await create_inspection(batch_id)
    service = IssuanceService(MockTrustProvider())

    first = await service.enqueue(batch_id=batch_id, inspection_id=inspection_id, requested_by="certifier-1")
    second = await service.enqueue(batch_id=batch_id, requested_by="certifier-1")

    assert first.created is True
    assert second.created is False
    assert second.job.id == first.job.id
    assert first.job.status == "pending"
    assert queued == [first.job.id]
    assert await _count(IssuanceJob) == 1


@pytest.mark.asyncio
async def test_worker_cycle_issues_certificate_and_job_stays_terminal(queued: list[str]) -> None:
    batch_id = await create_batch(farmer_id="farmer-7")
    inspection_id = await create_inspection(batch_id, inspector_id="inspector-7")
    service = IssuanceService(MockTrustProvider(), notifier=DatabaseNotifier())
    enqueued = await service.enqueue(batch_id=batch_id, inspection_id=inspection_id, requested_by="c-1")

    processed = await service.run_cycle(worker_id="worker-test")
    replayed = await service.process_job(enqueued.job.id, worker_id="worker-other")

    job = await service.get_job(enqueued.job.id)
    assert processed == 1
    assert replayed is False
    assert job.status == "success"
    assert job.worker_id == "worker-test"
    assert job.attempts == 1
    assert job.result_json["credential_id"].startswith("vc_mock_")

    async with SessionLocal() as session:
        certificate = (
            await session.execute(select(Certificate).where(Certificate.batch_id == batch_id))
        ).scalar_one()
        notifications = (
            await session.execute(select(Notification).where(Notification.user_id == "farmer-7"))
        ).scalars().all()
    assert certificate.issued_by == "inspector-7"
    assert certificate.status == "active"
    assert certificate.metadata_json["job_id"] == job.id
    assert certificate.metadata_json["issuance_method"] == "mock"
    qr = parse_qr_payload(certificate.qr_payload)
    assert qr["certId"] == certificate.id
    assert qr["hash"] == certificate.credential_hash
    assert [item.type for item in notifications] == ["certificate_issued"]

    with pytest.raises(ConflictError):
        await service.enqueue(batch_id=batch_id, requested_by="c-1")


@pytest.mark.asyncio
async def test_provider_failure_marks_job_failed_and_frees_batch() -> None:
    batch_id = await create_batch()
    await create_inspection(batch_id)
    failing = IssuanceService(_FailingProvider())

    result = await failing.enqueue(batch_id=batch_id, requested_by="c-1")
    job = await failing.get_job(result.job.id)

    assert job.status == "failed"
    assert job.last_error == "provider exploded"
    assert job.active_batch_key is None
    assert await _count(Certificate) == 0

    retry = await IssuanceService(MockTrustProvider()).enqueue(batch_id=batch_id, requested_by="c-1")
    assert retry.created is True
    assert retry.job.id != job.id
    assert (await failing.get_job(retry.job.id)).status == "success"


@pytest.mark.asyncio
async def test_enqueue_rejects_missing_or_uncertifiable_inputs() -> None:
    service = IssuanceService(MockTrustProvider())
    batch_id = await create_batch()
    other_batch_id = await create_batch()
    failed_inspection = await create_inspection(batch_id, outcome="fail")
    foreign_inspection = await create_inspection(other_batch_id)
    scheduled_inspection = await create_inspection(batch_id, status="scheduled", outcome=None)

    with pytest.raises(NotFoundError):
        await service.enqueue(batch_id="missing-batch", requested_by="c-1")
    with pytest.raises(NotFoundError):
        await service.enqueue(batch_id=batch_id, inspection_id="missing", requested_by="c-1")
    with pytest.raises(ValidationError):
        await service.enqueue(batch_id=batch_id, inspection_id=failed_inspection, requested_by="c-1")
    with pytest.raises(ValidationError):
        await service.enqueue(batch_id=batch_id, inspection_id=foreign_inspection, requested_by="c-1")
    with pytest.raises(ValidationError):
        await service.enqueue(batch_id=batch_id, inspection_id=scheduled_inspection, requested_by="c-1")
    assert await _count(IssuanceJob) == 0


@pytest.mark.asyncio
async def test_get_job_unknown_id_raises_not_found() -> None:
    with pytest.raises(NotFoundError):
        await IssuanceService(MockTrustProvider()).get_job("nope")


@pytest.mark.asyncio
async def test_enqueue_returns_the_job_a_worker_is_processing(queued: list[str]) -> None:
    batch_id = await create_batch()
    await create_inspection(batch_id)
    service = IssuanceService(MockTrustProvider())
    first = await service.enqueue(batch_id=batch_id, requested_by="certifier-1")

    async with SessionLocal() as session:
        assert await jobs_repo.claim_job(session, first.job.id, worker_id="worker-busy")
        await session.commit()

    second = await service.enqueue(batch_id=batch_id, requested_by="certifier-2")

    assert second.created is False
    assert second.job.id == first.job.id
    assert second.job.status == "processing"
    assert queued == [first.job.id]
    assert await _count(IssuanceJob) == 1
