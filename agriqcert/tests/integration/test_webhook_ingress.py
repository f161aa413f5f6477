from __future__ import annotations

import json

import pytest
from sqlalchemy import select

from agriqcert.core.errors import AuthenticationError
from agriqcert.domain.models import Certificate, Revocation
from agriqcert.persistence.db import SessionLocal
from agriqcert.persistence.repos import certificates as certificates_repo
from agriqcert.providers.trust.inji import InjiTrustProvider, build_webhook_signature
from agriqcert.providers.trust.mock import MockTrustProvider
from agriqcert.services.issuance import IssuanceService
from agriqcert.services.revocation import RevocationActor, RevocationService
from agriqcert.services.webhooks import WebhookIngress
from agriqcert.tests.utils.seed import create_batch, create_inspection


async def _issue(provider: MockTrustProvider) -> Certificate:
    batch_id = await create_batch()
    await create_inspection(batch_id)
    await IssuanceService(provider).enqueue(batch_id=batch_id, requested_by="certifier-1")
    return await _reload(batch_id=batch_id)


async def _reload(*, batch_id: str) -> Certificate:
    async with SessionLocal() as session:
        return (
            await session.execute(select(Certificate).where(Certificate.batch_id == batch_id))
        ).scalar_one()


async def _ledger_size() -> int:
    async with SessionLocal() as session:
        return len((await session.execute(select(Revocation))).scalars().all())


def _body(credential_id: str, status: str) -> bytes:
    return json.dumps(
        {"vcId": credential_id, "status": status, "timestamp": "2026-07-01T08:00:00Z"}
    ).encode("utf-8")


@pytest.mark.asyncio
async def test_provider_revocation_is_applied_once() -> None:
    provider = MockTrustProvider()
    certificate = await _issue(provider)
    ingress = WebhookIngress(provider)

    first = await ingress.handle(_body(certificate.provider_credential_id, "revoked"), None)
    replay = await ingress.handle(_body(certificate.provider_credential_id, "revoked"), None)

    stored = await _reload(batch_id=certificate.batch_id)
    assert first.changed is True
    assert replay.changed is False and replay.acknowledged is True
    assert stored.revoked is True
    assert stored.revoked_by == "system"
    assert stored.revocation_reason == "provider_revoked"
    assert stored.metadata_json["webhook_received"]["status"] == "revoked"
    assert await _ledger_size() == 1


@pytest.mark.asyncio
async def test_issued_and_expired_events_never_resurrect_revoked_certificates() -> None:
    provider = MockTrustProvider()
    certificate = await _issue(provider)
    await RevocationService().revoke(
        certificate.id, reason="fraud", actor=RevocationActor(user_id="certifier-9")
    )
    ingress = WebhookIngress(provider)

    issued = await ingress.handle(_body(certificate.provider_credential_id, "issued"), None)
    expired = await ingress.handle(_body(certificate.provider_credential_id, "expired"), None)

    stored = await _reload(batch_id=certificate.batch_id)
    assert issued.changed is False
    assert expired.changed is False
    assert stored.status == "revoked"
    assert stored.revoked is True


@pytest.mark.asyncio
async def test_expired_event_moves_active_certificate_to_expired() -> None:
    provider = MockTrustProvider()
    certificate = await _issue(provider)

    outcome = await WebhookIngress(provider).handle(
        _body(certificate.provider_credential_id, "expired"), None
    )

    stored = await _reload(batch_id=certificate.batch_id)
    assert outcome.changed is True
    assert stored.status == "expired"
    assert stored.revoked is False


@pytest.mark.asyncio
async def test_unknown_status_is_acknowledged_without_mutation() -> None:
    provider = MockTrustProvider()
    certificate = await _issue(provider)

    outcome = await WebhookIngress(provider).handle(
        _body(certificate.provider_credential_id, "suspended"), None
    )

    stored = await _reload(batch_id=certificate.batch_id)
    assert outcome.acknowledged is True
    assert outcome.changed is False
    assert outcome.status == "suspended"
    assert stored.status == "active"
    assert "webhook_received" not in (stored.metadata_json or {})


@pytest.mark.asyncio
async def test_unknown_credential_is_acknowledged() -> None:
    outcome = await WebhookIngress(MockTrustProvider()).handle(_body("vc_nobody", "revoked"), None)

    assert outcome.acknowledged is True
    assert outcome.changed is False
    assert await _ledger_size() == 0


@pytest.mark.asyncio
async def test_live_ingress_rejects_bad_signatures_before_touching_state() -> None:
    provider = MockTrustProvider()
    certificate = await _issue(provider)
    live = InjiTrustProvider(
        api_url="https://inji.test",
        api_key="test-key",
        webhook_secret="whsec_live",
    )
    ingress = WebhookIngress(live)
    body = _body(certificate.provider_credential_id, "revoked")

    with pytest.raises(AuthenticationError):
        await ingress.handle(body, build_webhook_signature("wrong-secret", body))

    stored = await _reload(batch_id=certificate.batch_id)
    assert stored.revoked is False

    outcome = await ingress.handle(body, build_webhook_signature("whsec_live", body))
    assert outcome.changed is True


@pytest.mark.asyncio
async def test_metadata_merge_rereads_the_row_instead_of_overwriting() -> None:
    certificate = await _issue(MockTrustProvider())

    async with SessionLocal() as stale, SessionLocal() as other:
        # The first session loads the row before the second one commits its merge.
        await certificates_repo.get_certificate(stale, certificate.id)
        await certificates_repo.merge_metadata(other, certificate.id, {"webhook_received": {"status": "issued"}})
        await other.commit()
        await certificates_repo.merge_metadata(stale, certificate.id, {"wallet_push": {"success": True}})
        await stale.commit()

    stored = await _reload(batch_id=certificate.batch_id)
    assert stored.metadata_json["webhook_received"] == {"status": "issued"}
    assert stored.metadata_json["wallet_push"] == {"success": True}
    assert stored.metadata_json["job_id"]
