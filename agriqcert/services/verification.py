from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from agriqcert.core.config import W3C_CREDENTIALS_CONTEXT, Settings, get_settings
from agriqcert.core.errors import ValidationError
from agriqcert.domain.credentials import ProviderVerification, Verdict, credential_hash
from agriqcert.domain.models import CERT_STATUS_REVOKED, Certificate
from agriqcert.persistence.db import SessionLocal
from agriqcert.persistence.repos import certificates as certificates_repo
from agriqcert.persistence.repos import revocations as revocations_repo
from agriqcert.providers.trust.base import MOCK_PROOF_MARKER, PROVIDER_MODE_LIVE, TrustProvider
from agriqcert.services.qr import QR_PAYLOAD_TYPES, parse_qr_payload
from agriqcert.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

VERIFIED_BY_PROVIDER = "provider"
VERIFIED_BY_LOCAL = "local"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_expired(expiration_date: Any, *, now: datetime) -> bool:
    # Absent means never expires; an unreadable date is treated as expired.
    if expiration_date is None or expiration_date == "":
        return False
    parsed = parse_timestamp(expiration_date)
    if parsed is None:
        return True
    return parsed <= now


def resolve_issuer(document: dict[str, Any]) -> str:
    issuer = document.get("issuer")
    if isinstance(issuer, dict):
        return str(issuer.get("id") or "")
    return str(issuer or "")


def check_structure(document: dict[str, Any]) -> list[str]:
    problems: list[str] = []
    context = document.get("@context")
    if not isinstance(context, list) or W3C_CREDENTIALS_CONTEXT not in context:
        problems.append("Missing or invalid @context")
    types = document.get("type")
    if not isinstance(types, list) or "VerifiableCredential" not in types:
        problems.append("Missing or invalid type")
    if not resolve_issuer(document):
        problems.append("Missing issuer")
    if not document.get("issuanceDate"):
        problems.append("Missing issuanceDate")
    subject = document.get("credentialSubject")
    if not isinstance(subject, dict) or not subject:
        problems.append("Missing credentialSubject")
    return problems


def check_proof(document: dict[str, Any], *, mock_mode: bool) -> bool:
    # Structural plausibility only; no cryptographic verification happens here.
    proof = document.get("proof")
    if not isinstance(proof, dict):
        return False
    if not proof.get("type") or not proof.get("verificationMethod"):
        return False
    if proof.get("proofPurpose") != "assertionMethod":
        return False
    proof_value = proof.get("proofValue")
    if not isinstance(proof_value, str) or not proof_value:
        return False
    if mock_mode:
        return MOCK_PROOF_MARKER in proof_value
    return True


@dataclass
class _Candidate:
    document: dict[str, Any] | None = None
    url: str | None = None
    certificate: Certificate | None = None
    errors: list[str] = field(default_factory=list)


class VerificationEngine:
    def __init__(
        self,
        provider: TrustProvider,
        *,
        session_factory: Callable[[], AsyncSession] | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._provider = provider
        self._session_factory = session_factory or SessionLocal
        self._settings = settings or get_settings()
        self._clock = clock or _utc_now

    def trusted_issuers(self) -> set[str]:
        issuers = {self._settings.vc_issuer_did, self._provider.issuer_did}
        if self._settings.provider_issuer_did:
            issuers.add(self._settings.provider_issuer_did)
        for raw in self._settings.trusted_issuers.split(","):
            if raw.strip():
                issuers.add(raw.strip())
        return {issuer for issuer in issuers if issuer}

    async def verify(
        self,
        *,
        credential_json: dict[str, Any] | None = None,
        credential_url: str | None = None,
        qr_payload: str | None = None,
    ) -> Verdict:
        supplied = [value for value in (credential_json, credential_url, qr_payload) if value is not None]
        if len(supplied) != 1:
            raise ValidationError(
                "Provide exactly one of credential_json, credential_url or qr_payload"
            )
        if credential_json is not None and not isinstance(credential_json, dict):
            raise ValidationError("credential_json must be a JSON object")

        increment_counter("verifications_total")
        async with self._session_factory() as session:
            candidate = await self._normalize(
                session,
                credential_json=credential_json,
                credential_url=credential_url,
                qr_payload=qr_payload,
            )
            provider_result = await self._verify_with_provider(candidate)
            verdict = self._local_verdict(candidate, provider_result)
            await self._check_revocation(session, candidate, verdict, provider_result)

        verdict.valid = (
            verdict.structure_valid
            and verdict.signature_valid
            and verdict.issuer_valid
            and not verdict.expired
            and not verdict.revoked
        )
        verdict.details = self._summarize(verdict)
        logger.info(
            "verification_completed valid=%s verified_by=%s certificate_id=%s revoked=%s",
            verdict.valid,
            verdict.verified_by,
            verdict.certificate_id,
            verdict.revoked,
        )
        return verdict

    async def _resolve_url(self, session: AsyncSession, candidate: _Candidate, url: str) -> None:
        candidate.url = url
        stored = await certificates_repo.get_by_url(session, url)
        if stored is not None:
            candidate.certificate = stored
            candidate.document = stored.credential_json
            return
        # Mock providers synthesize a stand-in; live providers dereference the URL.
        try:
            candidate.document = await self._provider.fetch(url)
        except Exception as exc:  # noqa: BLE001 - fetch failures become diagnostics
            logger.warning("credential_fetch_failed url=%s", url, exc_info=exc)
            candidate.errors.append(f"Could not fetch credential from URL: {exc}")

    async def _normalize(
        self,
        session: AsyncSession,
        *,
        credential_json: dict[str, Any] | None,
        credential_url: str | None,
        qr_payload: str | None,
    ) -> _Candidate:
        candidate = _Candidate()
        if credential_json is not None:
            candidate.document = credential_json
            return candidate
        if credential_url is not None:
            await self._resolve_url(session, candidate, credential_url)
            return candidate

        payload = parse_qr_payload(qr_payload or "")
        if payload.get("type") in QR_PAYLOAD_TYPES:
            certificate_id = payload.get("certId")
            if certificate_id:
                stored = await certificates_repo.get_certificate(session, str(certificate_id))
                if stored is not None:
                    candidate.certificate = stored
                    candidate.document = stored.credential_json
                    candidate.url = stored.credential_url
                    return candidate
            url = payload.get("url") or payload.get("vcUrl")
            if url:
                await self._resolve_url(session, candidate, str(url))
            else:
                candidate.errors.append("Certificate referenced by QR payload was not found")
            return candidate
        if isinstance(payload.get("vc"), dict):
            candidate.document = payload["vc"]
            return candidate
        if "@context" in payload or "credentialSubject" in payload:
            candidate.document = payload
            return candidate
        raise ValidationError("Unknown QR payload format")

    async def _verify_with_provider(self, candidate: _Candidate) -> ProviderVerification | None:
        if self._provider.mode != PROVIDER_MODE_LIVE:
            return None
        if candidate.document is None and candidate.url is None:
            return None
        try:
            return await self._provider.verify(
                credential_json=candidate.document, credential_url=candidate.url
            )
        except Exception as exc:  # noqa: BLE001 - provider failure falls back to local checks
            logger.warning("provider_verification_failed", exc_info=exc)
            increment_counter("verification_provider_fallbacks_total")
            candidate.errors.append(f"Provider verification failed: {exc}")
            return None

    def _local_verdict(
        self, candidate: _Candidate, provider_result: ProviderVerification | None
    ) -> Verdict:
        document = candidate.document
        now = self._clock()
        errors = list(candidate.errors)
        verdict = Verdict(
            valid=False,
            signature_valid=False,
            issuer_valid=False,
            structure_valid=False,
            expired=False,
            revoked=False,
            issuer="",
            issuance_date="",
            subject={},
            details="",
            verified_by=VERIFIED_BY_PROVIDER if provider_result is not None else VERIFIED_BY_LOCAL,
            provider_attempted=self._provider.mode == PROVIDER_MODE_LIVE
            and (document is not None or candidate.url is not None),
            locally_verified=document is not None,
            revocation_checked=False,
            credential_url=candidate.url,
            certificate_id=candidate.certificate.id if candidate.certificate is not None else None,
            errors=errors,
        )

        if document is not None:
            problems = check_structure(document)
            errors.extend(problems)
            verdict.structure_valid = not problems
            verdict.issuer = resolve_issuer(document)
            verdict.issuance_date = str(document.get("issuanceDate") or "")
            verdict.expiration_date = document.get("expirationDate")
            subject = document.get("credentialSubject")
            verdict.subject = dict(subject) if isinstance(subject, dict) else {}
            verdict.signature_valid = check_proof(
                document, mock_mode=self._provider.mode != PROVIDER_MODE_LIVE
            )
            if not verdict.signature_valid:
                errors.append("Invalid or missing proof")
            verdict.credential_hash = credential_hash(document)
        elif provider_result is None:
            errors.append("No credential document available to verify")

        if provider_result is not None:
            # The provider is authoritative for the signature when it answered.
            verdict.signature_valid = provider_result.signature_valid and provider_result.valid
            if not provider_result.valid:
                errors.append(provider_result.details or "Provider reported credential invalid")
            if document is None:
                verdict.structure_valid = provider_result.valid
                verdict.issuer = provider_result.issuer
                verdict.issuance_date = provider_result.issuance_date
                verdict.expiration_date = provider_result.expiration_date
                verdict.subject = dict(provider_result.subject)

        if verdict.issuer:
            verdict.issuer_valid = verdict.issuer in self.trusted_issuers()
            if not verdict.issuer_valid:
                errors.append(f"Untrusted issuer: {verdict.issuer}")

        verdict.expired = is_expired(verdict.expiration_date, now=now)
        if verdict.expired:
            errors.append("Credential has expired")
        return verdict

    async def _check_revocation(
        self,
        session: AsyncSession,
        candidate: _Candidate,
        verdict: Verdict,
        provider_result: ProviderVerification | None,
    ) -> None:
        revoked = bool(provider_result is not None and provider_result.revoked)
        certificate = candidate.certificate
        hashes = {verdict.credential_hash}
        if certificate is not None:
            hashes.add(certificate.credential_hash)
        hashes.discard(None)

        for value in hashes:
            # The ledger is consulted on its own; a lagging certificate flag cannot hide a revocation.
            if await revocations_repo.find_revocation(session, credential_hash=value) is not None:
                revoked = True
            by_hash = await certificates_repo.get_by_hash(session, value)
            if by_hash is not None:
                if certificate is None:
                    certificate = by_hash
                if by_hash.revoked or by_hash.status == CERT_STATUS_REVOKED:
                    revoked = True

        if certificate is not None:
            if certificate.revoked or certificate.status == CERT_STATUS_REVOKED:
                revoked = True
            if certificate.provider_credential_id:
                record = await revocations_repo.find_revocation(
                    session, provider_credential_id=certificate.provider_credential_id
                )
                if record is not None:
                    revoked = True
            verdict.certificate_id = certificate.id
            if verdict.credential_url is None:
                verdict.credential_url = certificate.credential_url

        verdict.revocation_checked = True
        verdict.revoked = revoked
        if revoked:
            verdict.errors.append("Credential has been revoked")

    @staticmethod
    def _summarize(verdict: Verdict) -> str:
        if verdict.valid:
            return "Credential is valid"
        issues: list[str] = []
        if not verdict.structure_valid:
            issues.append("invalid structure")
        if not verdict.signature_valid:
            issues.append("invalid signature")
        if not verdict.issuer_valid:
            issues.append("untrusted issuer")
        if verdict.expired:
            issues.append("expired")
        if verdict.revoked:
            issues.append("revoked")
        return "Credential is not valid: " + ", ".join(issues)

    async def certificate_status(self, certificate_id: str) -> dict[str, Any]:
        async with self._session_factory() as session:
            certificate = await certificates_repo.get_certificate(session, certificate_id)
        if certificate is None:
            return {
                "certificate_id": certificate_id,
                "exists": False,
                "revoked": False,
                "expired": False,
                "status": None,
                "summary": None,
            }
        expires_at = parse_timestamp(certificate.expires_at)
        expired = expires_at is not None and expires_at <= self._clock()
        return {
            "certificate_id": certificate.id,
            "exists": True,
            "revoked": certificate.revoked,
            "expired": expired,
            "status": certificate.status,
            "summary": {
                "batch_id": certificate.batch_id,
                "issued_at": certificate.issued_at,
                "expires_at": certificate.expires_at,
                "revoked_at": certificate.revoked_at,
                "revocation_reason": certificate.revocation_reason,
            },
        }
