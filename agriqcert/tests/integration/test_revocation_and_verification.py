from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from agriqcert.core.errors import ConflictError, NotFoundError, ProviderError, ValidationError
from agriqcert.domain.credentials import ProviderVerification
from agriqcert.domain.models import Certificate, Revocation
from agriqcert.persistence.db import SessionLocal
from agriqcert.providers.trust.base import PROVIDER_MODE_LIVE
from agriqcert.providers.trust.mock import MockTrustProvider
from agriqcert.services.issuance import IssuanceService
from agriqcert.services.revocation import RevocationActor, RevocationService
from agriqcert.services.verification import VerificationEngine
from agriqcert.tests.utils.seed import create_batch, create_inspection


async def _issue(provider: MockTrustProvider) -> Certificate:
    batch_id = await create_batch()
    inspection_id = await create_inspection(batch_id)
    await IssuanceService(provider).enqueue(
        batch_id=batch_id, inspection_id=inspection_id, requested_by="certifier-1"
    )
    async with SessionLocal() as session:
        return (
            await session.execute(select(Certificate).where(Certificate.batch_id == batch_id))
        ).scalar_one()


async def _ledger() -> list[Revocation]:
    async with SessionLocal() as session:
        return list((await session.execute(select(Revocation))).scalars().all())


@pytest.mark.asyncio
async def test_mock_issued_credential_verifies_through_every_input() -> None:
    provider = MockTrustProvider()
    certificate = await _issue(provider)
    engine = VerificationEngine(provider)

    by_document = await engine.verify(credential_json=certificate.credential_json)
    by_qr = await engine.verify(qr_payload=certificate.qr_payload)
    by_url = await engine.verify(credential_url=certificate.credential_url)

    for verdict in (by_document, by_qr, by_url):
        assert verdict.valid, verdict.errors
        assert verdict.structure_valid and verdict.signature_valid and verdict.issuer_valid
        assert not verdict.revoked and not verdict.expired
        assert verdict.verified_by == "local"
        assert verdict.revocation_checked
        assert verdict.certificate_id == certificate.id
    assert by_document.details == "Credential is valid"
    assert by_qr.credential_hash == certificate.credential_hash


@pytest.mark.asyncio
async def test_verify_requires_exactly_one_input() -> None:
    engine = VerificationEngine(MockTrustProvider())

    with pytest.raises(ValidationError):
        await engine.verify()
    with pytest.raises(ValidationError):
        await engine.verify(credential_json={}, credential_url="https://creds.test/vc/1")
    with pytest.raises(ValidationError):
        await engine.verify(qr_payload='{"hello": "world"}')
    with pytest.raises(ValidationError):
        await engine.verify(qr_payload="not json at all")


@pytest.mark.asyncio
async def test_tampered_or_foreign_documents_fail_closed() -> None:
    provider = MockTrustProvider()
    certificate = await _issue(provider)
    engine = VerificationEngine(provider)

    foreign = dict(certificate.credential_json)
    foreign["issuer"] = "did:example:someone-else"
    unsigned = dict(certificate.credential_json)
    unsigned.pop("proof")
    expired = dict(certificate.credential_json)
    expired["expirationDate"] = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()

    foreign_verdict = await engine.verify(credential_json=foreign)
    unsigned_verdict = await engine.verify(credential_json=unsigned)
    expired_verdict = await engine.verify(credential_json=expired)

    assert not foreign_verdict.valid and not foreign_verdict.issuer_valid
    assert "Untrusted issuer: did:example:someone-else" in foreign_verdict.errors
    assert not unsigned_verdict.valid and not unsigned_verdict.signature_valid
    assert not expired_verdict.valid and expired_verdict.expired
    assert "expired" in expired_verdict.details


@pytest.mark.asyncio
async def test_revocation_is_one_way_and_ledgered_once() -> None:
    provider = MockTrustProvider()
    certificate = await _issue(provider)
    service = RevocationService()
    actor = RevocationActor(user_id="certifier-2", role="certifier")

    revoked = await service.revoke(certificate.id, reason="quality_issue", actor=actor)
    with pytest.raises(ConflictError):
        await service.revoke(certificate.id, reason="fraud", actor=actor)

    assert revoked.revoked is True
    assert revoked.status == "revoked"
    assert revoked.revoked_by == "certifier-2"
    assert revoked.revocation_reason == "quality_issue"
    ledger = await _ledger()
    assert len(ledger) == 1
    assert ledger[0].credential_hash == certificate.credential_hash
    assert ledger[0].metadata_json["revoked_via"] == "api"
    assert await service.is_revoked(credential_hash=certificate.credential_hash)
    assert [item.id for item in await service.list_by_actor("certifier-2")] == [ledger[0].id]

    verdict = await VerificationEngine(provider).verify(qr_payload=certificate.qr_payload)
    assert verdict.revoked and not verdict.valid
    assert "Credential has been revoked" in verdict.errors


@pytest.mark.asyncio
async def test_revoke_validates_reason_and_certificate() -> None:
    service = RevocationService()
    actor = RevocationActor(user_id="certifier-2")

    with pytest.raises(ValidationError):
        await service.revoke("anything", reason="because", actor=actor)
    with pytest.raises(NotFoundError):
        await service.revoke("missing-cert", reason="fraud", actor=actor)


@pytest.mark.asyncio
async def test_ledger_wins_over_a_lagging_certificate_flag() -> None:
    provider = MockTrustProvider()
    certificate = await _issue(provider)
    await RevocationService().revoke(
        certificate.id, reason="fraud", actor=RevocationActor(user_id="certifier-3")
    )
    # Simulate a replica that has the ledger row but not the flag update.
    async with SessionLocal() as session:
        await session.execute(
            update(Certificate)
            .where(Certificate.id == certificate.id)
            .values(revoked=False, status="active")
        )
        await session.commit()

    verdict = await VerificationEngine(provider).verify(credential_json=certificate.credential_json)

    assert verdict.revoked is True
    assert verdict.valid is False


@pytest.mark.asyncio
async def test_certificate_status_reports_existence_and_revocation() -> None:
    provider = MockTrustProvider()
    certificate = await _issue(provider)
    engine = VerificationEngine(provider)

    missing = await engine.certificate_status("missing")
    active = await engine.certificate_status(certificate.id)
    await RevocationService().revoke(
        certificate.id, reason="superseded", actor=RevocationActor(user_id="certifier-4")
    )
    revoked = await engine.certificate_status(certificate.id)

    assert missing["exists"] is False
    assert active["exists"] is True and active["status"] == "active" and not active["expired"]
    assert revoked["revoked"] is True
    assert revoked["summary"]["revocation_reason"] == "superseded"


class _LiveProvider(MockTrustProvider):
    """Live-mode stand-in whose verify answer is scripted per test."""

    def __init__(self, answer: ProviderVerification | Exception) -> None:
        super().__init__()
        self.answer = answer
        self.verify_calls: list[dict] = []

    @property
    def mode(self) -> str:
        return PROVIDER_MODE_LIVE

    async def verify(self, *, credential_json=None, credential_url=None) -> ProviderVerification:
        self.verify_calls.append({"credential_json": credential_json, "credential_url": credential_url})
        if isinstance(self.answer, Exception):
            raise self.answer
        return self.answer

    async def fetch(self, credential_url: str) -> dict:
        raise ProviderError("Credential URL is not hosted by the trust provider")


def _provider_says(*, valid: bool = True, revoked: bool = False, issuer: str) -> ProviderVerification:
    return ProviderVerification(
        valid=valid,
        signature_valid=valid,
        revoked=revoked,
        issuer=issuer,
        issuance_date="2026-06-01T00:00:00Z",
        subject={"batchId": "batch-remote"},
        details=None if valid else "Signature mismatch",
    )


@pytest.mark.asyncio
async def test_live_mode_prefers_the_provider_answer() -> None:
    certificate = await _issue(MockTrustProvider())
    live = _LiveProvider(_provider_says(issuer=certificate.credential_json["issuer"]))

    verdict = await VerificationEngine(live).verify(credential_json=certificate.credential_json)

    assert verdict.valid, verdict.errors
    assert verdict.verified_by == "provider"
    assert verdict.provider_attempted is True
    assert verdict.locally_verified is True
    assert live.verify_calls == [{"credential_json": certificate.credential_json, "credential_url": None}]


@pytest.mark.asyncio
async def test_provider_rejection_overrides_a_plausible_local_proof() -> None:
    certificate = await _issue(MockTrustProvider())
    live = _LiveProvider(_provider_says(valid=False, issuer=certificate.credential_json["issuer"]))

    verdict = await VerificationEngine(live).verify(credential_json=certificate.credential_json)

    assert verdict.valid is False
    assert verdict.signature_valid is False
    assert "Signature mismatch" in verdict.errors


@pytest.mark.asyncio
async def test_provider_failure_falls_back_to_local_checks() -> None:
    certificate = await _issue(MockTrustProvider())
    live = _LiveProvider(ProviderError("Provider error: 503", status_code=503))

    verdict = await VerificationEngine(live).verify(qr_payload=certificate.qr_payload)

    assert verdict.verified_by == "local"
    assert verdict.provider_attempted is True
    assert "Provider verification failed: Provider error: 503" in verdict.errors
    assert verdict.structure_valid and verdict.signature_valid and verdict.issuer_valid
    assert verdict.valid is True


@pytest.mark.asyncio
async def test_ledger_revocation_wins_over_a_provider_that_says_valid() -> None:
    certificate = await _issue(MockTrustProvider())
    await RevocationService().revoke(
        certificate.id, reason="fraud", actor=RevocationActor(user_id="certifier-5")
    )
    live = _LiveProvider(_provider_says(issuer=certificate.credential_json["issuer"]))

    verdict = await VerificationEngine(live).verify(credential_json=certificate.credential_json)

    assert verdict.verified_by == "provider"
    assert verdict.revoked is True
    assert verdict.valid is False


@pytest.mark.asyncio
async def test_foreign_url_is_verified_by_the_provider_not_fetched() -> None:
    live = _LiveProvider(_provider_says(issuer="did:example:untrusted-elsewhere"))
    url = "https://elsewhere.example/vc/42"

    verdict = await VerificationEngine(live).verify(credential_url=url)

    assert live.verify_calls == [{"credential_json": None, "credential_url": url}]
    assert verdict.verified_by == "provider"
    assert verdict.locally_verified is False
    assert verdict.subject == {"batchId": "batch-remote"}
    assert verdict.issuer_valid is False
    assert verdict.valid is False
