from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Awaitable, Callable

import httpx

from agriqcert.core.config import W3C_CREDENTIALS_CONTEXT, get_settings
from agriqcert.core.errors import AuthenticationError, ProviderConfigError, ProviderError, ValidationError
from agriqcert.domain.credentials import (
    CREDENTIAL_TYPES,
    IssuedCredential,
    ProviderVerification,
    WalletPushResult,
    WebhookEvent,
    webhook_event_from_payload,
)
from agriqcert.providers.trust.base import PROVIDER_MODE_LIVE
from agriqcert.services.resilience import (
    CircuitBreaker,
    get_resilience_redis,
    provider_retry_policy,
    retry_async,
)
from agriqcert.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "trust.inji"
_PUBLIC_FETCH = "credentials.fetch"


def build_webhook_signature(secret: str, raw_body: bytes) -> str:
    # HMAC SHA256 hex digest over the exact bytes the provider sent.
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, TimeoutError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and (status >= 500 or status == 429)


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _origin(url: str) -> tuple[str, str]:
    parsed = httpx.URL(url)
    return parsed.scheme, parsed.netloc.decode("ascii")


def _same_origin(url: str, base_url: str) -> bool:
    if not url.startswith(("http://", "https://")):
        # Relative paths resolve against the provider base URL.
        return url.startswith("/")
    try:
        return _origin(url) == _origin(base_url)
    except (httpx.InvalidURL, UnicodeDecodeError):
        return False


def _under_prefix(url: str, prefix: str | None) -> bool:
    if not prefix or not _same_origin(url, prefix):
        return False
    path, root = httpx.URL(url).path, httpx.URL(prefix).path.rstrip("/")
    return path == root or path.startswith(f"{root}/")


class InjiTrustProvider:
    def __init__(
        self,
        *,
        api_url: str | None = None,
        api_key: str | None = None,
        issuer_did: str | None = None,
        webhook_secret: str | None = None,
        client: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
        public_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        settings = get_settings()
        self._settings = settings
        self._api_url = api_url or settings.provider_api_url
        self._api_key = api_key or settings.provider_api_key
        if not self._api_url or not self._api_key:
            raise ProviderConfigError("PROVIDER_API_URL and PROVIDER_API_KEY are required for the live provider")
        self._issuer_did = issuer_did or settings.provider_issuer_did or settings.vc_issuer_did
        self._webhook_secret = webhook_secret if webhook_secret is not None else settings.provider_webhook_secret
        self._client = client
        self._breaker = breaker
        self._public_client = public_client
        self._sleep = sleep

    @property
    def mode(self) -> str:
        return PROVIDER_MODE_LIVE

    @property
    def issuer_did(self) -> str:
        return self._issuer_did

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(
            base_url=self._api_url,
            timeout=self._settings.provider_timeout_ms / 1000.0,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
            },
        )
        return self._client

    async def _get_breaker(self) -> CircuitBreaker:
        # Share breaker state across processes when Redis is reachable.
        if self._breaker is not None:
            return self._breaker
        redis = await get_resilience_redis()
        self._breaker = CircuitBreaker(_INTEGRATION, redis=redis)
        return self._breaker

    async def aclose(self) -> None:
        for client in (self._client, self._public_client):
            if client is not None:
                await client.aclose()

    async def _fetch_public(self, url: str) -> Any:
        # One anonymous attempt: no provider key, no retries, no breaker bookkeeping.
        if self._public_client is None:
            self._public_client = httpx.AsyncClient(
                timeout=self._settings.provider_timeout_ms / 1000.0, follow_redirects=False
            )
        start = time.monotonic()
        try:
            response = await self._public_client.get(url, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            record_external_call(
                integration=_PUBLIC_FETCH, latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise ProviderError(f"Credential fetch failed: {exc.__class__.__name__}") from exc
        record_external_call(
            integration=_PUBLIC_FETCH,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.status_code < 400,
        )
        if response.status_code >= 400:
            raise ProviderError(
                f"Credential fetch failed: {response.status_code}",
                status_code=response.status_code,
                body=_response_body(response),
            )
        return _response_body(response)

    async def _request(self, method: str, url: str, *, payload: dict[str, Any] | None = None) -> Any:
        client = self._get_client()
        breaker = await self._get_breaker()
        await breaker.before_call()

        async def _call() -> Any:
            response = await client.request(method, url, json=payload)
            if response.status_code >= 400:
                raise ProviderError(
                    f"Provider error: {response.status_code}",
                    status_code=response.status_code,
                    body=_response_body(response),
                )
            return _response_body(response)

        start = time.monotonic()
        try:
            body = await retry_async(
                _call,
                policy=provider_retry_policy(),
                retryable=_retryable,
                sleep=self._sleep,
                label=_INTEGRATION,
            )
        except ProviderError as exc:
            if _retryable(exc):
                await breaker.record_failure()
            record_external_call(
                integration=_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning(
                "provider_call_failed method=%s url=%s status=%s", method, url, exc.status_code
            )
            raise
        except (httpx.HTTPError, TimeoutError) as exc:
            await breaker.record_failure()
            record_external_call(
                integration=_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("provider_call_failed method=%s url=%s", method, url, exc_info=exc)
            raise ProviderError(f"Provider request failed: {exc.__class__.__name__}") from exc

        await breaker.record_success()
        record_external_call(
            integration=_INTEGRATION,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        return body

    async def issue(
        self, subject: dict[str, Any], *, expiration_date: str | None = None
    ) -> IssuedCredential:
        issued_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        credential: dict[str, Any] = {
            "@context": [W3C_CREDENTIALS_CONTEXT],
            "type": list(CREDENTIAL_TYPES),
            "issuer": self._issuer_did,
            "issuanceDate": issued_at,
            "credentialSubject": subject,
        }
        if expiration_date is not None:
            credential["expirationDate"] = expiration_date
        body = await self._request("POST", "/v1/credentials/issue", payload={"credential": credential})
        if not isinstance(body, dict) or not body.get("id") or not isinstance(body.get("credential"), dict):
            raise ProviderError("Provider returned an unexpected issue response", body=body)
        return IssuedCredential(
            credential_id=str(body["id"]),
            credential_url=str(body.get("url") or ""),
            credential_json=body["credential"],
        )

    async def verify(
        self,
        *,
        credential_json: dict[str, Any] | None = None,
        credential_url: str | None = None,
    ) -> ProviderVerification:
        body = await self._request(
            "POST",
            "/v1/credentials/verify",
            payload={"credential": credential_json, "credentialUrl": credential_url},
        )
        if not isinstance(body, dict):
            raise ProviderError("Provider returned an unexpected verify response", body=body)
        return ProviderVerification(
            valid=bool(body.get("valid")),
            signature_valid=bool(body.get("signatureValid")),
            revoked=bool(body.get("revoked") or False),
            issuer=str(body.get("issuer") or ""),
            issuance_date=str(body.get("issuanceDate") or ""),
            expiration_date=body.get("expirationDate"),
            subject=dict(body.get("credentialSubject") or {}),
            details=body.get("details"),
        )

    async def get(self, credential_id: str) -> dict[str, Any]:
        body = await self._request("GET", f"/v1/credentials/{credential_id}")
        if not isinstance(body, dict) or not isinstance(body.get("credential"), dict):
            raise ProviderError("Provider returned an unexpected credential response", body=body)
        return body["credential"]

    async def fetch(self, credential_url: str) -> dict[str, Any]:
        """Dereference a credential URL.

        Only provider URLs travel with the bearer key, retries and breaker.
        Our own credential host is read once, anonymously. Any other host is
        refused without a request; verification then hands the URL to the
        provider's verify endpoint instead.
        """
        if _same_origin(credential_url, self._api_url):
            body = await self._request("GET", credential_url)
        elif _under_prefix(credential_url, self._settings.credential_base_url):
            body = await self._fetch_public(credential_url)
        else:
            logger.info("credential_fetch_refused url=%s", credential_url)
            raise ProviderError("Credential URL is not hosted by the trust provider")
        if isinstance(body, dict) and isinstance(body.get("credential"), dict):
            return body["credential"]
        if not isinstance(body, dict):
            raise ProviderError("Credential URL did not return a JSON document", body=body)
        return body

    async def push(
        self, *, user_id: str, credential_json: dict[str, Any], wallet_id: str | None = None
    ) -> WalletPushResult:
        body = await self._request(
            "POST",
            "/v1/wallet/push",
            payload={"userId": user_id, "credential": credential_json, "walletId": wallet_id},
        )
        if not isinstance(body, dict):
            return WalletPushResult(success=False)
        return WalletPushResult(success=bool(body.get("success")), wallet_id=body.get("walletId"))

    def parse_webhook(self, raw_body: bytes, signature: str | None = None) -> WebhookEvent:
        # Authenticate the raw bytes before parsing anything.
        if not self._webhook_secret:
            raise AuthenticationError("Invalid webhook signature")
        if not signature:
            raise AuthenticationError("Invalid webhook signature")
        received = signature.strip()
        if received.startswith("sha256="):
            received = received[len("sha256="):]
        expected = build_webhook_signature(self._webhook_secret, raw_body)
        if not hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8")):
            raise AuthenticationError("Invalid webhook signature")
        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise ValidationError("Invalid webhook payload") from exc
        if not isinstance(payload, dict):
            raise ValidationError("Invalid webhook payload")
        return webhook_event_from_payload(payload)
