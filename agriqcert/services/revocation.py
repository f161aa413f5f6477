from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from agriqcert.core.errors import ConflictError, NotFoundError, ValidationError
from agriqcert.domain.credentials import REVOCATION_REASONS
from agriqcert.domain.models import Certificate, Revocation
from agriqcert.persistence.db import SessionLocal
from agriqcert.persistence.repos import batches as batches_repo
from agriqcert.persistence.repos import certificates as certificates_repo
from agriqcert.persistence.repos import revocations as revocations_repo
from agriqcert.services.audit import record_event
from agriqcert.services.notifications import (
    NOTIFICATION_CERTIFICATE_REVOKED,
    NotificationPort,
    NullNotifier,
    notify_best_effort,
)
from agriqcert.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RevocationActor:
    user_id: str
    role: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str | None = None


class RevocationService:
    def __init__(
        self,
        *,
        notifier: NotificationPort | None = None,
        session_factory: Callable[[], AsyncSession] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._notifier = notifier or NullNotifier()
        self._session_factory = session_factory or SessionLocal
        self._clock = clock or _utc_now

    async def revoke(self, certificate_id: str, *, reason: str, actor: RevocationActor) -> Certificate:
        if reason not in REVOCATION_REASONS:
            raise ValidationError(f"Unsupported revocation reason: {reason}")

        async with self._session_factory() as session:
            certificate = await certificates_repo.get_certificate(session, certificate_id)
            if certificate is None:
                raise NotFoundError("Certificate not found")
            changed = await certificates_repo.mark_revoked(
                session,
                certificate_id,
                revoked_by=actor.user_id,
                reason=reason,
                revoked_at=self._clock(),
            )
            if not changed:
                await session.rollback()
                raise ConflictError("Certificate is already revoked")
            await revocations_repo.append(
                session,
                certificate_id=certificate.id,
                provider_credential_id=certificate.provider_credential_id,
                credential_hash=certificate.credential_hash,
                revoked_by=actor.user_id,
                reason=reason,
                metadata={
                    "revoked_via": "api",
                    "ip_address": actor.ip_address,
                    "user_agent": actor.user_agent,
                },
            )
            await session.commit()
            # The guarded update bypassed the identity map; reload the row.
            await session.refresh(certificate)
            batch = await batches_repo.get_batch(session, certificate.batch_id)

        increment_counter("certificates_revoked_total")
        logger.info(
            "certificate_revoked certificate_id=%s revoked_by=%s reason=%s",
            certificate.id,
            actor.user_id,
            reason,
        )
        if batch is not None:
            await notify_best_effort(
                self._notifier,
                user_id=batch.farmer_id,
                type=NOTIFICATION_CERTIFICATE_REVOKED,
                title="Certificate Revoked",
                message=f"Your certificate for batch {batch.id} has been revoked. Reason: {reason}",
                data={"batch_id": batch.id, "certificate_id": certificate.id, "reason": reason},
                priority="high",
            )
        await record_event(
            actor_type="user",
            actor_id=actor.user_id,
            actor_role=actor.role,
            event_type="credential.revoked",
            outcome="success",
            resource_type="certificate",
            resource_id=certificate.id,
            request_id=actor.request_id,
            ip_address=actor.ip_address,
            user_agent=actor.user_agent,
            metadata={"reason": reason, "batch_id": certificate.batch_id},
        )
        return certificate

    async def is_revoked(
        self,
        *,
        credential_hash: str | None = None,
        provider_credential_id: str | None = None,
        certificate_id: str | None = None,
    ) -> bool:
        async with self._session_factory() as session:
            record = await revocations_repo.find_revocation(
                session,
                credential_hash=credential_hash,
                provider_credential_id=provider_credential_id,
                certificate_id=certificate_id,
            )
        return record is not None

    async def list_revocations(self, *, limit: int = 100, offset: int = 0) -> list[Revocation]:
        async with self._session_factory() as session:
            return await revocations_repo.list_revocations(session, offset=offset, limit=limit)

    async def list_by_actor(self, user_id: str, *, limit: int = 100, offset: int = 0) -> list[Revocation]:
        async with self._session_factory() as session:
            return await revocations_repo.list_revocations(
                session, offset=offset, limit=limit, revoked_by=user_id
            )
