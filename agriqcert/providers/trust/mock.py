from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import itertools
import json
import logging
from typing import Any, Callable

from agriqcert.core.config import W3C_CREDENTIALS_CONTEXT, get_settings
from agriqcert.core.errors import ValidationError
from agriqcert.domain.credentials import (
    CREDENTIAL_TYPES,
    IssuedCredential,
    ProviderVerification,
    WalletPushResult,
    WebhookEvent,
    canonical_json,
    webhook_event_from_payload,
)
from agriqcert.providers.trust.base import MOCK_PROOF_MARKER, PROVIDER_MODE_MOCK


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class MockTrustProvider:
    """Deterministic stand-in for the trust provider.

    Credentials are structurally valid W3C documents whose proof value carries
    ``MOCK_PROOF_MARKER``. The marker is recognisable, not cryptographic.
    """

    def __init__(
        self,
        *,
        issuer_did: str | None = None,
        credential_base_url: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        settings = get_settings()
        self._issuer_did = issuer_did or settings.provider_issuer_did or settings.vc_issuer_did
        self._base_url = (credential_base_url or settings.credential_base_url).rstrip("/")
        self._clock = clock or _utc_now
        self._sequence = itertools.count(1)
        self._issued: dict[str, dict[str, Any]] = {}

    @property
    def mode(self) -> str:
        return PROVIDER_MODE_MOCK

    @property
    def issuer_did(self) -> str:
        return self._issuer_did

    def _derive_id(self, seed: str) -> str:
        # Hash the subject with a per-instance sequence so ids are stable for a given call order.
        sequence = next(self._sequence)
        digest = hashlib.sha256(f"{seed}:{sequence}".encode("utf-8")).hexdigest()
        return f"vc_mock_{digest[:20]}"

    def _proof(self, credential_id: str, created: str) -> dict[str, Any]:
        return {
            "type": "Ed25519Signature2020",
            "created": created,
            "verificationMethod": f"{self._issuer_did}#key-1",
            "proofPurpose": "assertionMethod",
            "proofValue": f"{MOCK_PROOF_MARKER}{credential_id}",
        }

    async def issue(
        self, subject: dict[str, Any], *, expiration_date: str | None = None
    ) -> IssuedCredential:
        credential_id = self._derive_id(canonical_json(subject))
        issued_at = _iso(self._clock())
        credential_subject = dict(subject)
        credential_subject.setdefault("id", f"did:example:{credential_id}")
        document: dict[str, Any] = {
            "@context": [W3C_CREDENTIALS_CONTEXT],
            "type": list(CREDENTIAL_TYPES),
            "id": f"{self._base_url}/{credential_id}",
            "issuer": self._issuer_did,
            "issuanceDate": issued_at,
            "credentialSubject": credential_subject,
            "proof": self._proof(credential_id, issued_at),
        }
        if expiration_date is not None:
            document["expirationDate"] = expiration_date
        self._issued[credential_id] = document
        logger.info("mock_provider_issued credential_id=%s", credential_id)
        return IssuedCredential(
            credential_id=credential_id,
            credential_url=f"{self._base_url}/{credential_id}",
            credential_json=document,
        )

    async def verify(
        self,
        *,
        credential_json: dict[str, Any] | None = None,
        credential_url: str | None = None,
    ) -> ProviderVerification:
        document = credential_json
        if document is None and credential_url is not None:
            document = await self.fetch(credential_url)
        if document is None:
            raise ValidationError("No credential supplied for mock verification")
        is_valid = bool(
            document.get("credentialSubject")
            and document.get("issuer")
            and document.get("issuanceDate")
            and document.get("proof")
        )
        return ProviderVerification(
            valid=is_valid,
            signature_valid=is_valid,
            revoked=False,
            issuer=str(document.get("issuer") or self._issuer_did),
            issuance_date=str(document.get("issuanceDate") or ""),
            expiration_date=document.get("expirationDate"),
            subject=dict(document.get("credentialSubject") or {}),
            details="Mock verification successful" if is_valid else "Mock verification failed",
        )

    async def get(self, credential_id: str) -> dict[str, Any]:
        stored = self._issued.get(credential_id)
        if stored is not None:
            return stored
        created = _iso(self._clock())
        return {
            "@context": [W3C_CREDENTIALS_CONTEXT],
            "type": list(CREDENTIAL_TYPES),
            "id": f"{self._base_url}/{credential_id}",
            "issuer": self._issuer_did,
            "issuanceDate": created,
            "credentialSubject": {"id": f"did:example:{credential_id}"},
            "proof": self._proof(credential_id, created),
        }

    async def fetch(self, credential_url: str) -> dict[str, Any]:
        # Resolve our own URLs from memory; synthesize a stand-in for anything else.
        prefix = f"{self._base_url}/"
        if credential_url.startswith(prefix):
            credential_id = credential_url[len(prefix):].strip("/")
            if credential_id:
                return await self.get(credential_id)
        created = _iso(self._clock())
        digest = hashlib.sha256(credential_url.encode("utf-8")).hexdigest()[:20]
        return {
            "@context": [W3C_CREDENTIALS_CONTEXT],
            "type": list(CREDENTIAL_TYPES),
            "id": credential_url,
            "issuer": self._issuer_did,
            "issuanceDate": created,
            "credentialSubject": {"id": f"did:agriqcert:url:{digest}"},
            "proof": self._proof(f"url_{digest}", created),
        }

    async def push(
        self, *, user_id: str, credential_json: dict[str, Any], wallet_id: str | None = None
    ) -> WalletPushResult:
        resolved = wallet_id or f"wallet_{user_id}"
        logger.info("mock_provider_wallet_push user_id=%s wallet_id=%s", user_id, resolved)
        return WalletPushResult(success=True, wallet_id=resolved)

    def parse_webhook(self, raw_body: bytes, signature: str | None = None) -> WebhookEvent:
        # Mock mode trusts the payload; only the body shape is checked.
        _ = signature
        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise ValidationError("Invalid webhook payload") from exc
        if not isinstance(payload, dict):
            raise ValidationError("Invalid webhook payload")
        return webhook_event_from_payload(payload)
