from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from agriqcert.apps.api.deps import (
    Principal,
    get_container,
    get_current_principal,
    get_db,
    require_roles,
)
from agriqcert.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from agriqcert.apps.api.response import success_response
from agriqcert.core.errors import NotFoundError
from agriqcert.domain.models import Certificate, IssuanceJob, Revocation
from agriqcert.persistence.repos import batches as batches_repo
from agriqcert.persistence.repos import certificates as certificates_repo
from agriqcert.persistence.repos import issuance_jobs as jobs_repo
from agriqcert.services.audit import get_request_context
from agriqcert.services.container import ServiceContainer
from agriqcert.services.qr import render_qr_svg
from agriqcert.services.revocation import RevocationActor


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/credentials", tags=["credentials"], responses=DEFAULT_ERROR_RESPONSES)

WEBHOOK_SIGNATURE_HEADER = "X-Inji-Signature"


class IssueRequest(BaseModel):
    batch_id: str = Field(min_length=1)
    inspection_id: str | None = None

    model_config = {
        "extra": "forbid",
        "json_schema_extra": {"examples": [{"batch_id": "batch_001", "inspection_id": "insp_001"}]},
    }


class IssueAccepted(BaseModel):
    job_id: str
    status: str
    created_at: datetime | None


class JobResponse(BaseModel):
    id: str
    batch_id: str
    inspection_id: str | None
    status: str
    attempts: int
    max_attempts: int
    worker_id: str | None
    last_error: str | None
    result: dict[str, Any] | None
    created_at: datetime | None
    updated_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None


class CertificateResponse(BaseModel):
    id: str
    batch_id: str
    credential: dict[str, Any]
    provider_credential_id: str | None
    credential_url: str | None
    credential_hash: str | None
    qr_payload: str
    status: str
    revoked: bool
    issued_by: str
    issued_at: datetime | None
    expires_at: datetime | None
    revoked_at: datetime | None
    revoked_by: str | None
    revocation_reason: str | None
    metadata: dict[str, Any]


class RevokeRequest(BaseModel):
    reason: str = Field(min_length=1)

    model_config = {"extra": "forbid"}


class RevocationResponse(BaseModel):
    id: str
    certificate_id: str
    provider_credential_id: str | None
    credential_hash: str | None
    revoked_by: str
    reason: str
    metadata: dict[str, Any]
    created_at: datetime | None


class VerifyRequest(BaseModel):
    credential_json: dict[str, Any] | None = None
    credential_url: str | None = None
    qr_payload: str | None = None

    model_config = {"extra": "forbid"}


def _job_payload(job: IssuanceJob) -> dict[str, Any]:
    return JobResponse(
        id=job.id,
        batch_id=job.batch_id,
        inspection_id=job.inspection_id,
        status=job.status,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        worker_id=job.worker_id,
        last_error=job.last_error,
        result=job.result_json,
        created_at=job.created_at,
        updated_at=job.updated_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    ).model_dump(mode="json")


def _certificate_payload(certificate: Certificate) -> dict[str, Any]:
    return CertificateResponse(
        id=certificate.id,
        batch_id=certificate.batch_id,
        credential=certificate.credential_json,
        provider_credential_id=certificate.provider_credential_id,
        credential_url=certificate.credential_url,
        credential_hash=certificate.credential_hash,
        qr_payload=certificate.qr_payload,
        status=certificate.status,
        revoked=certificate.revoked,
        issued_by=certificate.issued_by,
        issued_at=certificate.issued_at,
        expires_at=certificate.expires_at,
        revoked_at=certificate.revoked_at,
        revoked_by=certificate.revoked_by,
        revocation_reason=certificate.revocation_reason,
        metadata=certificate.metadata_json or {},
    ).model_dump(mode="json")


def _revocation_payload(record: Revocation) -> dict[str, Any]:
    return RevocationResponse(
        id=record.id,
        certificate_id=record.certificate_id,
        provider_credential_id=record.provider_credential_id,
        credential_hash=record.credential_hash,
        revoked_by=record.revoked_by,
        reason=record.reason,
        metadata=record.metadata_json or {},
        created_at=record.created_at,
    ).model_dump(mode="json")


@router.post("/issue", status_code=202)
async def issue_credential(
    payload: IssueRequest,
    request: Request,
    principal: Principal = Depends(require_roles("certifier", "qa_inspector")),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    # New and already-active jobs share one response shape.
    result = await container.issuance.enqueue(
        batch_id=payload.batch_id,
        inspection_id=payload.inspection_id,
        requested_by=principal.subject_id,
    )
    # Inline mode may have finished the job already; report the stored status.
    job = await container.issuance.get_job(result.job.id)
    data = IssueAccepted(job_id=job.id, status=job.status, created_at=job.created_at)
    return success_response(request=request, data=data.model_dump(mode="json"))


@router.get("/jobs/{job_id}")
async def get_issuance_job(
    job_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    job = await container.issuance.get_job(job_id)
    return success_response(request=request, data=_job_payload(job))


@router.get("/certificates/batch/{batch_id}")
async def get_certificate_for_batch(
    batch_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    certificate = await certificates_repo.get_by_batch(db, batch_id)
    if certificate is None:
        raise NotFoundError("Certificate not found for this batch")
    return success_response(request=request, data=_certificate_payload(certificate))


@router.get("/certificates/{certificate_id}")
async def get_certificate(
    certificate_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    certificate = await certificates_repo.get_certificate(db, certificate_id)
    if certificate is None:
        raise NotFoundError("Certificate not found")
    return success_response(request=request, data=_certificate_payload(certificate))


@router.get("/certificates/{certificate_id}/status")
async def get_certificate_status(
    certificate_id: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    # Public endpoint for label scanners; reveals status only.
    status_payload = await container.verification.certificate_status(certificate_id)
    summary = status_payload.get("summary")
    if summary:
        status_payload["summary"] = {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in summary.items()
        }
    return success_response(request=request, data=status_payload)


@router.get("/certificates/{certificate_id}/qr.svg", response_class=Response)
async def get_certificate_qr(
    certificate_id: str,
    db: AsyncSession = Depends(get_db),
) -> Response:
    certificate = await certificates_repo.get_certificate(db, certificate_id)
    if certificate is None:
        raise NotFoundError("Certificate not found")
    return Response(content=render_qr_svg(certificate.qr_payload), media_type="image/svg+xml")


@router.get("/farmer/certificates")
async def list_farmer_certificates(
    request: Request,
    principal: Principal = Depends(require_roles("farmer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    batch_ids = await batches_repo.list_batch_ids_for_farmer(db, principal.subject_id)
    certificates = await certificates_repo.list_for_batches(db, batch_ids)
    return success_response(
        request=request,
        data={"items": [_certificate_payload(item) for item in certificates]},
    )


@router.post("/certificates/{certificate_id}/revoke")
async def revoke_certificate(
    certificate_id: str,
    payload: RevokeRequest,
    request: Request,
    principal: Principal = Depends(require_roles("certifier")),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    request_ctx = get_request_context(request)
    certificate = await container.revocation.revoke(
        certificate_id,
        reason=payload.reason,
        actor=RevocationActor(
            user_id=principal.subject_id,
            role=principal.role,
            ip_address=request_ctx["ip_address"],
            user_agent=request_ctx["user_agent"],
            request_id=request_ctx["request_id"],
        ),
    )
    return success_response(request=request, data=_certificate_payload(certificate))


@router.get("/revocations")
async def list_revocations(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    revoked_by: str | None = Query(default=None),
    principal: Principal = Depends(require_roles("certifier")),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    if revoked_by:
        records = await container.revocation.list_by_actor(revoked_by, limit=limit, offset=offset)
    else:
        records = await container.revocation.list_revocations(limit=limit, offset=offset)
    return success_response(
        request=request,
        data={"items": [_revocation_payload(item) for item in records], "limit": limit, "offset": offset},
    )


@router.post("/verify")
async def verify_credential(
    payload: VerifyRequest,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    verdict = await container.verification.verify(
        credential_json=payload.credential_json,
        credential_url=payload.credential_url,
        qr_payload=payload.qr_payload,
    )
    return success_response(request=request, data=asdict(verdict))


@router.post("/webhook")
async def receive_webhook(
    request: Request,
    signature: str | None = Header(default=None, alias=WEBHOOK_SIGNATURE_HEADER),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    # Signature is computed over the exact bytes received, so read the raw body.
    raw_body = await request.body()
    outcome = await container.webhooks.handle(raw_body, signature)
    return success_response(request=request, data=asdict(outcome))


@router.get("/stats")
async def credential_stats(
    request: Request,
    principal: Principal = Depends(require_roles("certifier")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    certificates = await certificates_repo.count_summary(db)
    jobs = await jobs_repo.count_by_status(db)
    return success_response(request=request, data={"certificates": certificates, "jobs": jobs})
