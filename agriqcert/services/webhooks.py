from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from agriqcert.domain.credentials import (
    PROVIDER_REVOKED_REASON,
    SYSTEM_ACTOR,
    WebhookEvent,
    WebhookExpired,
    WebhookIssued,
    WebhookRevoked,
    WebhookUnknown,
)
from agriqcert.domain.models import Certificate
from agriqcert.persistence.db import SessionLocal
from agriqcert.persistence.repos import certificates as certificates_repo
from agriqcert.persistence.repos import revocations as revocations_repo
from agriqcert.providers.trust.base import TrustProvider
from agriqcert.services.audit import record_event
from agriqcert.services.telemetry import increment_counter
from agriqcert.services.verification import parse_timestamp


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WebhookOutcome:
    acknowledged: bool
    status: str
    credential_id: str
    changed: bool


class WebhookIngress:
    """Applies provider status callbacks to the certificate store.

    Authentication is delegated to ``provider.parse_webhook``; an
    ``AuthenticationError`` from it is the only fatal outcome. Every mutation is
    a guarded conditional update, so replays and out-of-order deliveries are
    harmless.
    """

    def __init__(
        self,
        provider: TrustProvider,
        *,
        session_factory: Callable[[], AsyncSession] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._provider = provider
        self._session_factory = session_factory or SessionLocal
        self._clock = clock or _utc_now

    async def handle(self, raw_body: bytes, signature: str | None) -> WebhookOutcome:
        event = self._provider.parse_webhook(raw_body, signature)
        increment_counter(f"webhook_events_total.{event.status or 'unknown'}")

        async with self._session_factory() as session:
            certificate = None
            if event.credential_id:
                certificate = await certificates_repo.get_by_provider_id(session, event.credential_id)
            if certificate is None:
                logger.info(
                    "webhook_certificate_unknown credential_id=%s status=%s",
                    event.credential_id,
                    event.status,
                )
                return WebhookOutcome(True, event.status, event.credential_id, False)
            if isinstance(event, WebhookUnknown):
                logger.warning(
                    "webhook_status_unrecognized credential_id=%s status=%s",
                    event.credential_id,
                    event.status,
                )
                return WebhookOutcome(True, event.status, event.credential_id, False)

            changed = await self._apply(session, event, certificate)
            await certificates_repo.merge_metadata(
                session,
                certificate.id,
                {"webhook_received": {"status": event.status, "timestamp": event.timestamp}},
            )
            await session.commit()

        logger.info(
            "webhook_processed credential_id=%s status=%s changed=%s",
            event.credential_id,
            event.status,
            changed,
        )
        await record_event(
            actor_type="system",
            actor_id=SYSTEM_ACTOR,
            actor_role=None,
            event_type=f"credential.webhook.{event.status or 'unknown'}",
            outcome="success",
            resource_type="certificate",
            resource_id=certificate.id,
            metadata={"credential_id": event.credential_id, "changed": changed},
        )
        return WebhookOutcome(True, event.status, event.credential_id, changed)

    async def _apply(self, session: AsyncSession, event: WebhookEvent, certificate: Certificate) -> bool:
        if isinstance(event, WebhookIssued):
            return await certificates_repo.mark_active(session, certificate.id)
        if isinstance(event, WebhookRevoked):
            revoked_at = parse_timestamp(event.timestamp) or self._clock()
            changed = await certificates_repo.mark_revoked(
                session,
                certificate.id,
                revoked_by=SYSTEM_ACTOR,
                reason=PROVIDER_REVOKED_REASON,
                revoked_at=revoked_at,
            )
            if changed:
                # Only the delivery that flipped the flag writes the ledger row.
                await revocations_repo.append(
                    session,
                    certificate_id=certificate.id,
                    provider_credential_id=certificate.provider_credential_id,
                    credential_hash=certificate.credential_hash,
                    revoked_by=SYSTEM_ACTOR,
                    reason=PROVIDER_REVOKED_REASON,
                    metadata={"source": "provider_webhook", "timestamp": event.timestamp},
                )
            return changed
        if isinstance(event, WebhookExpired):
            return await certificates_repo.mark_expired(session, certificate.id)
        return False
