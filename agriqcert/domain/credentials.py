from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
import json
from typing import Any, Union


REVOCATION_REASONS: tuple[str, ...] = (
    "compromised_key",
    "cessation_of_operation",
    "affiliation_changed",
    "superseded",
    "fraud",
    "quality_issue",
    "expired_inspection",
    "administrative",
    "other",
)
# Reason recorded when the provider revokes a credential out of band.
PROVIDER_REVOKED_REASON = "provider_revoked"
SYSTEM_ACTOR = "system"

CREDENTIAL_TYPES = ["VerifiableCredential", "AgricultureQualityCertificate"]


def canonical_json(document: dict[str, Any]) -> str:
    # Sort keys so the same credential hashes identically regardless of key order.
    return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def credential_hash(document: dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json(document).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class IssuedCredential:
    credential_id: str
    credential_url: str
    credential_json: dict[str, Any]


@dataclass(frozen=True)
class ProviderVerification:
    valid: bool
    signature_valid: bool
    revoked: bool
    issuer: str
    issuance_date: str
    subject: dict[str, Any]
    expiration_date: str | None = None
    details: str | None = None


@dataclass(frozen=True)
class WalletPushResult:
    success: bool
    wallet_id: str | None = None


@dataclass(frozen=True)
class WebhookIssued:
    credential_id: str
    timestamp: str
    raw: dict[str, Any] = field(default_factory=dict)
    status: str = "issued"


@dataclass(frozen=True)
class WebhookRevoked:
    credential_id: str
    timestamp: str
    raw: dict[str, Any] = field(default_factory=dict)
    status: str = "revoked"


@dataclass(frozen=True)
class WebhookExpired:
    credential_id: str
    timestamp: str
    raw: dict[str, Any] = field(default_factory=dict)
    status: str = "expired"


@dataclass(frozen=True)
class WebhookUnknown:
    credential_id: str
    timestamp: str
    raw_status: str
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> str:
        return self.raw_status


WebhookEvent = Union[WebhookIssued, WebhookRevoked, WebhookExpired, WebhookUnknown]


def webhook_event_from_payload(payload: dict[str, Any]) -> WebhookEvent:
    # Accept both vcId (provider wire name) and credentialId.
    credential_id = str(payload.get("vcId") or payload.get("credentialId") or "")
    timestamp = str(payload.get("timestamp") or "")
    raw_status = str(payload.get("status") or "")
    if raw_status == "issued":
        return WebhookIssued(credential_id=credential_id, timestamp=timestamp, raw=payload)
    if raw_status == "revoked":
        return WebhookRevoked(credential_id=credential_id, timestamp=timestamp, raw=payload)
    if raw_status == "expired":
        return WebhookExpired(credential_id=credential_id, timestamp=timestamp, raw=payload)
    return WebhookUnknown(
        credential_id=credential_id,
        timestamp=timestamp,
        raw_status=raw_status,
        raw=payload,
    )


@dataclass
class Verdict:
    valid: bool
    signature_valid: bool
    issuer_valid: bool
    structure_valid: bool
    expired: bool
    revoked: bool
    issuer: str
    issuance_date: str
    subject: dict[str, Any]
    details: str
    verified_by: str
    provider_attempted: bool
    locally_verified: bool
    revocation_checked: bool
    expiration_date: str | None = None
    certificate_id: str | None = None
    credential_hash: str | None = None
    credential_url: str | None = None
    errors: list[str] = field(default_factory=list)
