from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import os
import socket
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agriqcert.core.config import Settings, get_settings
from agriqcert.core.errors import ConflictError, NotFoundError, ValidationError
from agriqcert.domain.credentials import SYSTEM_ACTOR, credential_hash
from agriqcert.domain.models import Batch, Inspection, IssuanceJob
from agriqcert.persistence.db import SessionLocal
from agriqcert.persistence.repos import batches as batches_repo
from agriqcert.persistence.repos import certificates as certificates_repo
from agriqcert.persistence.repos import issuance_jobs as jobs_repo
from agriqcert.providers.trust.base import TrustProvider
from agriqcert.services.audit import record_event
from agriqcert.services.issuance_queue import is_inline_mode, push_issuance_job
from agriqcert.services.notifications import (
    NOTIFICATION_CERTIFICATE_ISSUED,
    NotificationPort,
    NullNotifier,
    notify_best_effort,
)
from agriqcert.services.qr import encode_qr_payload
from agriqcert.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

INSPECTION_COMPLETED = "completed"
INSPECTION_PASS = "pass"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}"


def harvest_season(harvest_date: str | None) -> str | None:
    if not harvest_date:
        return None
    try:
        parsed = datetime.fromisoformat(harvest_date.replace("Z", "+00:00"))
    except ValueError:
        return None
    month = parsed.month
    if month in (3, 4, 5):
        season = "Spring"
    elif month in (6, 7, 8):
        season = "Summer"
    elif month in (9, 10, 11):
        season = "Autumn"
    else:
        season = "Winter"
    return f"{season} {parsed.year}"


def _is_certifiable(inspection: Inspection) -> bool:
    return (
        inspection.status == INSPECTION_COMPLETED
        and (inspection.outcome_classification or "").lower() == INSPECTION_PASS
    )


def build_job_snapshot(
    *,
    batch: Batch,
    inspection: Inspection | None,
    requested_by: str,
    requested_at: datetime,
) -> dict[str, Any]:
    # Everything the worker needs is frozen here; later edits to the batch do not leak in.
    snapshot: dict[str, Any] = {
        "requested_by": requested_by,
        "requested_at": _iso(requested_at),
        "batch": {
            "id": batch.id,
            "farmer_id": batch.farmer_id,
            "farmer_name": batch.farmer_name,
            "farmer_organization": batch.farmer_organization,
            "product_type": batch.product_type,
            "product_name": batch.product_name,
            "quantity": batch.quantity,
            "unit": batch.unit,
            "harvest_date": _iso(batch.harvest_date),
            "location": batch.location_json,
        },
        "inspection": None,
    }
    if inspection is not None:
        snapshot["inspection"] = {
            "id": inspection.id,
            "inspector_id": inspection.inspector_id,
            "inspector_name": inspection.inspector_name,
            "status": inspection.status,
            "outcome": inspection.outcome_classification,
            "quality_grade": inspection.quality_grade,
            "overall_score": inspection.overall_score,
            "notes": inspection.notes,
            "completed_at": _iso(inspection.completed_at),
        }
    return snapshot


def build_credential_subject(snapshot: dict[str, Any]) -> dict[str, Any]:
    batch = snapshot.get("batch") or {}
    subject: dict[str, Any] = {
        "id": f"did:agriqcert:batch:{batch.get('id')}",
        "batchId": batch.get("id"),
        "productType": batch.get("product_type"),
        "productName": batch.get("product_name"),
        "quantity": batch.get("quantity"),
        "unit": batch.get("unit"),
        "harvestDate": batch.get("harvest_date"),
        "farmer": {
            "id": batch.get("farmer_id"),
            "name": batch.get("farmer_name"),
            "organization": batch.get("farmer_organization"),
        },
        "location": batch.get("location"),
        "traceabilityInfo": {
            "farmId": batch.get("farmer_id"),
            "batchNumber": batch.get("id"),
            "harvestSeason": harvest_season(batch.get("harvest_date")),
        },
    }
    inspection = snapshot.get("inspection")
    if inspection:
        subject["inspection"] = {
            "id": inspection.get("id"),
            "inspector": {
                "id": inspection.get("inspector_id"),
                "name": inspection.get("inspector_name"),
            },
            "completedAt": inspection.get("completed_at"),
            "status": inspection.get("status"),
            "outcome": inspection.get("outcome"),
            "qualityGrade": inspection.get("quality_grade"),
            "overallScore": inspection.get("overall_score"),
            "notes": inspection.get("notes"),
        }
    return subject


@dataclass(frozen=True)
class EnqueueResult:
    job: IssuanceJob
    created: bool


class IssuanceService:
    def __init__(
        self,
        provider: TrustProvider,
        *,
        notifier: NotificationPort | None = None,
        session_factory: Callable[[], AsyncSession] | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._provider = provider
        self._notifier = notifier or NullNotifier()
        self._session_factory = session_factory or SessionLocal
        self._settings = settings or get_settings()
        self._clock = clock or _utc_now

    async def _load_inspection(
        self, session: AsyncSession, *, batch_id: str, inspection_id: str | None
    ) -> Inspection | None:
        if inspection_id:
            inspection = await batches_repo.get_inspection(session, inspection_id)
            if inspection is None:
                raise NotFoundError("Inspection not found")
            if inspection.batch_id != batch_id:
                raise ValidationError("Inspection does not belong to this batch")
            if not _is_certifiable(inspection):
                raise ValidationError("Inspection must be completed with a pass outcome")
            return inspection
        if not self._settings.require_passed_inspection:
            return None
        latest = await batches_repo.get_latest_inspection(session, batch_id)
        if latest is None or not _is_certifiable(latest):
            raise ValidationError("Batch has no completed inspection with a pass outcome")
        return latest

    async def enqueue(
        self,
        *,
        batch_id: str,
        inspection_id: str | None = None,
        requested_by: str,
    ) -> EnqueueResult:
        async with self._session_factory() as session:
            batch = await batches_repo.get_batch(session, batch_id)
            if batch is None:
                raise NotFoundError("Batch not found")
            inspection = await self._load_inspection(
                session, batch_id=batch_id, inspection_id=inspection_id
            )
            if await certificates_repo.get_by_batch(session, batch_id) is not None:
                raise ConflictError("Certificate already exists for this batch")

            existing = await jobs_repo.get_active_job_for_batch(session, batch_id)
            if existing is not None:
                logger.info("issuance_enqueue_existing batch_id=%s job_id=%s", batch_id, existing.id)
                return EnqueueResult(job=existing, created=False)

            snapshot = build_job_snapshot(
                batch=batch,
                inspection=inspection,
                requested_by=requested_by,
                requested_at=self._clock(),
            )
            try:
                job = await jobs_repo.create_job(
                    session,
                    job_id=uuid4().hex,
                    batch_id=batch_id,
                    inspection_id=inspection.id if inspection is not None else None,
                    payload=snapshot,
                )
                await session.commit()
            except IntegrityError:
                # Another request won the active_batch_key race; hand back its job.
                await session.rollback()
                winner = await jobs_repo.get_active_job_for_batch(session, batch_id)
                if winner is None:
                    raise ConflictError("Issuance job already exists for this batch")
                return EnqueueResult(job=winner, created=False)

        increment_counter("issuance_jobs_enqueued_total")
        logger.info("issuance_enqueued batch_id=%s job_id=%s", batch_id, job.id)
        await self._dispatch(job.id)
        return EnqueueResult(job=job, created=True)

    async def _dispatch(self, job_id: str) -> None:
        if is_inline_mode():
            await self.process_job(job_id, worker_id="inline")
            return
        await push_issuance_job(job_id)

    async def get_job(self, job_id: str) -> IssuanceJob:
        async with self._session_factory() as session:
            job = await jobs_repo.get_job(session, job_id)
        if job is None:
            raise NotFoundError("Issuance job not found")
        return job

    async def process_job(self, job_id: str, *, worker_id: str | None = None) -> bool:
        """Claim and run one job; returns False when another worker already owns it.

        Failures end the job in ``failed`` and are logged, never raised.
        """
        resolved_worker = worker_id or default_worker_id()
        async with self._session_factory() as session:
            claimed = await jobs_repo.claim_job(session, job_id, worker_id=resolved_worker)
            await session.commit()
        if not claimed:
            logger.info("issuance_claim_skipped job_id=%s worker_id=%s", job_id, resolved_worker)
            return False

        try:
            result = await self._issue(job_id)
        except Exception as exc:  # noqa: BLE001 - any failure ends the job as failed
            message = str(exc) or exc.__class__.__name__
            logger.warning("issuance_job_failed job_id=%s error=%s", job_id, message, exc_info=exc)
            increment_counter("issuance_jobs_failed_total")
            async with self._session_factory() as session:
                await jobs_repo.mark_failed(session, job_id, error=message)
                await session.commit()
            return True

        increment_counter("issuance_jobs_succeeded_total")
        await self._after_issuance(result)
        return True

    async def _issue(self, job_id: str) -> dict[str, Any]:
        async with self._session_factory() as session:
            job = await jobs_repo.get_job(session, job_id)
        if job is None:
            raise NotFoundError("Issuance job not found")
        snapshot = dict(job.payload_json or {})
        batch = snapshot.get("batch") or {}
        inspection = snapshot.get("inspection") or {}

        now = self._clock()
        expires_at = now + timedelta(days=self._settings.vc_default_expiry_days)
        issued = await self._provider.issue(
            build_credential_subject(snapshot), expiration_date=_iso(expires_at)
        )
        content_hash = credential_hash(issued.credential_json)
        certificate_id = uuid4().hex
        credential_url = issued.credential_url or None
        issued_by = inspection.get("inspector_id") or batch.get("farmer_id") or SYSTEM_ACTOR

        requested_at = snapshot.get("requested_at")
        processing_ms = None
        if requested_at:
            try:
                started = datetime.fromisoformat(str(requested_at).replace("Z", "+00:00"))
                processing_ms = int((now - started).total_seconds() * 1000)
            except ValueError:
                processing_ms = None

        result = {
            "credential_id": issued.credential_id,
            "credential_url": credential_url,
            "certificate_id": certificate_id,
        }
        async with self._session_factory() as session:
            try:
                await certificates_repo.create_certificate(
                    session,
                    certificate_id=certificate_id,
                    batch_id=job.batch_id,
                    credential_json=issued.credential_json,
                    provider_credential_id=issued.credential_id,
                    credential_url=credential_url,
                    credential_hash=content_hash,
                    qr_payload=encode_qr_payload(
                        certificate_id=certificate_id,
                        batch_id=job.batch_id,
                        credential_url=credential_url,
                        credential_hash=content_hash,
                    ),
                    issued_by=issued_by,
                    issued_at=now,
                    expires_at=expires_at,
                    metadata_json={
                        "job_id": job.id,
                        "issuance_method": self._provider.mode,
                        "processing_time_ms": processing_ms,
                    },
                )
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError("Certificate already exists for this batch") from exc
            await jobs_repo.mark_success(session, job.id, result=result)
            await session.commit()

        logger.info(
            "issuance_job_succeeded job_id=%s batch_id=%s certificate_id=%s",
            job.id,
            job.batch_id,
            certificate_id,
        )
        return {
            **result,
            "job_id": job.id,
            "batch_id": job.batch_id,
            "farmer_id": batch.get("farmer_id"),
            "product_name": batch.get("product_name"),
            "credential_json": issued.credential_json,
        }

    async def _after_issuance(self, result: dict[str, Any]) -> None:
        farmer_id = result.get("farmer_id")
        if farmer_id:
            await notify_best_effort(
                self._notifier,
                user_id=farmer_id,
                type=NOTIFICATION_CERTIFICATE_ISSUED,
                title="Certificate Issued",
                message=(
                    f"Your certificate for batch {result['batch_id']} "
                    f"({result.get('product_name') or 'product'}) has been successfully issued."
                ),
                data={
                    "batch_id": result["batch_id"],
                    "certificate_id": result["certificate_id"],
                    "credential_id": result["credential_id"],
                },
                priority="high",
            )
        await record_event(
            actor_type="system",
            actor_id=SYSTEM_ACTOR,
            actor_role=None,
            event_type="credential.issued",
            outcome="success",
            resource_type="certificate",
            resource_id=result["certificate_id"],
            metadata={"job_id": result["job_id"], "batch_id": result["batch_id"]},
        )
        if self._settings.wallet_push_enabled and farmer_id:
            try:
                pushed = await self._provider.push(
                    user_id=farmer_id, credential_json=result["credential_json"]
                )
                logger.info(
                    "wallet_push_completed certificate_id=%s success=%s",
                    result["certificate_id"],
                    pushed.success,
                )
            except Exception as exc:  # noqa: BLE001 - wallet delivery is best-effort
                logger.warning(
                    "wallet_push_failed certificate_id=%s", result["certificate_id"], exc_info=exc
                )

    async def run_cycle(self, *, limit: int | None = None, worker_id: str | None = None) -> int:
        # One job at a time, oldest first.
        resolved_limit = limit or self._settings.worker_batch_size
        async with self._session_factory() as session:
            job_ids = await jobs_repo.list_pending_job_ids(session, limit=resolved_limit)
        processed = 0
        for job_id in job_ids:
            if await self.process_job(job_id, worker_id=worker_id):
                processed += 1
        return processed
