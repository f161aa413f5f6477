from __future__ import annotations

from typing import Any, Protocol

from agriqcert.domain.credentials import (
    IssuedCredential,
    ProviderVerification,
    WalletPushResult,
    WebhookEvent,
)


# Proof values minted by the mock provider start with this marker.
MOCK_PROOF_MARKER = "mock_signature_"

PROVIDER_MODE_MOCK = "mock"
PROVIDER_MODE_LIVE = "live"


class TrustProvider(Protocol):
    @property
    def mode(self) -> str:
        ...

    @property
    def issuer_did(self) -> str:
        ...

    async def issue(
        self, subject: dict[str, Any], *, expiration_date: str | None = None
    ) -> IssuedCredential:
        ...

    async def verify(
        self,
        *,
        credential_json: dict[str, Any] | None = None,
        credential_url: str | None = None,
    ) -> ProviderVerification:
        ...

    async def get(self, credential_id: str) -> dict[str, Any]:
        ...

    async def fetch(self, credential_url: str) -> dict[str, Any]:
        ...

    async def push(
        self, *, user_id: str, credential_json: dict[str, Any], wallet_id: str | None = None
    ) -> WalletPushResult:
        ...

    def parse_webhook(self, raw_body: bytes, signature: str | None = None) -> WebhookEvent:
        ...
