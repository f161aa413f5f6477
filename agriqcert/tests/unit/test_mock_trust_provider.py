from __future__ import annotations

from datetime import datetime, timezone

import pytest

from agriqcert.core.errors import ValidationError
from agriqcert.domain.credentials import WebhookRevoked, WebhookUnknown
from agriqcert.providers.trust.base import MOCK_PROOF_MARKER
from agriqcert.providers.trust.mock import MockTrustProvider


def _fixed_clock() -> datetime:
    return datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def _provider() -> MockTrustProvider:
    return MockTrustProvider(
        issuer_did="did:example:issuer",
        credential_base_url="https://creds.test/credentials",
        clock=_fixed_clock,
    )


@pytest.mark.asyncio
async def test_mock_issue_is_deterministic_for_same_call_order() -> None:
    subject = {"batchId": "b-1", "productName": "Rice"}
    first = await _provider().issue(subject)
    second = await _provider().issue(subject)

    assert first.credential_id == second.credential_id
    assert first.credential_id.startswith("vc_mock_")
    assert first.credential_json == second.credential_json


@pytest.mark.asyncio
async def test_mock_issue_produces_distinct_ids_per_call() -> None:
    provider = _provider()
    subject = {"batchId": "b-1"}
    first = await provider.issue(subject)
    second = await provider.issue(subject)

    assert first.credential_id != second.credential_id


@pytest.mark.asyncio
async def test_mock_credential_shape_and_proof_marker() -> None:
    issued = await _provider().issue({"batchId": "b-2"}, expiration_date="2027-05-01T12:00:00Z")
    document = issued.credential_json

    assert issued.credential_url == f"https://creds.test/credentials/{issued.credential_id}"
    assert document["issuer"] == "did:example:issuer"
    assert "VerifiableCredential" in document["type"]
    assert document["expirationDate"] == "2027-05-01T12:00:00Z"
    assert document["proof"]["proofPurpose"] == "assertionMethod"
    assert document["proof"]["proofValue"].startswith(MOCK_PROOF_MARKER)


@pytest.mark.asyncio
async def test_mock_fetch_resolves_own_urls_from_memory() -> None:
    provider = _provider()
    issued = await provider.issue({"batchId": "b-3"})

    fetched = await provider.fetch(issued.credential_url)
    foreign = await provider.fetch("https://elsewhere.test/vc/42")

    assert fetched == issued.credential_json
    assert foreign["id"] == "https://elsewhere.test/vc/42"
    assert foreign["credentialSubject"]["id"].startswith("did:agriqcert:url:")


@pytest.mark.asyncio
async def test_mock_verify_is_structural() -> None:
    provider = _provider()
    issued = await provider.issue({"batchId": "b-4"})

    good = await provider.verify(credential_json=issued.credential_json)
    bad = await provider.verify(credential_json={"issuer": "did:example:issuer"})

    assert good.valid and good.signature_valid
    assert not bad.valid


def test_mock_parse_webhook_accepts_unsigned_payloads() -> None:
    provider = _provider()
    event = provider.parse_webhook(b'{"vcId":"vc_1","status":"revoked","timestamp":"2026-05-02T00:00:00Z"}')
    unknown = provider.parse_webhook(b'{"credentialId":"vc_1","status":"suspended"}')

    assert isinstance(event, WebhookRevoked)
    assert event.credential_id == "vc_1"
    assert isinstance(unknown, WebhookUnknown)
    assert unknown.status == "suspended"


def test_mock_parse_webhook_rejects_malformed_bodies() -> None:
    provider = _provider()
    with pytest.raises(ValidationError):
        provider.parse_webhook(b"not json")
    with pytest.raises(ValidationError):
        provider.parse_webhook(b"[1, 2]")
