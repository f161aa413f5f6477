from __future__ import annotations

import json

import httpx
import pytest

from agriqcert.core.errors import AuthenticationError, ProviderConfigError, ProviderError
from agriqcert.domain.credentials import WebhookExpired
from agriqcert.providers.trust.inji import InjiTrustProvider, build_webhook_signature
from agriqcert.services.resilience import CircuitBreaker, CircuitBreakerConfig


_ISSUE_BODY = {
    "id": "vc_live_1",
    "url": "https://inji.test/credentials/vc_live_1",
    "credential": {"issuer": "did:example:issuer", "credentialSubject": {"batchId": "b-1"}},
}


def _provider(
    handler,
    *,
    delays: list[float],
    webhook_secret: str | None = None,
    public_handler=None,
    breaker: CircuitBreaker | None = None,
) -> InjiTrustProvider:
    async def _fake_sleep(delay: float) -> None:
        delays.append(delay)

    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        base_url="https://inji.test",
        headers={"Authorization": "Bearer test-key"},
    )
    public_client = None
    if public_handler is not None:
        public_client = httpx.AsyncClient(transport=httpx.MockTransport(public_handler))
    breaker = breaker or CircuitBreaker(
        "trust.inji.test",
        config=CircuitBreakerConfig(failure_threshold=5, open_seconds=30, half_open_trials=1),
    )
    return InjiTrustProvider(
        api_url="https://inji.test",
        api_key="test-key",
        issuer_did="did:example:issuer",
        webhook_secret=webhook_secret,
        client=client,
        breaker=breaker,
        public_client=public_client,
        sleep=_fake_sleep,
    )


def test_live_provider_requires_url_and_key() -> None:
    with pytest.raises(ProviderConfigError):
        InjiTrustProvider(api_url=None, api_key=None)


@pytest.mark.asyncio
async def test_issue_retries_server_errors_with_doubling_backoff() -> None:
    calls: list[str] = []
    delays: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if len(calls) < 3:
            return httpx.Response(503, json={"error": "busy"})
        return httpx.Response(200, json=_ISSUE_BODY)

    provider = _provider(handler, delays=delays)
    issued = await provider.issue({"batchId": "b-1"})

    assert issued.credential_id == "vc_live_1"
    assert calls == ["/v1/credentials/issue"] * 3
    assert delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_issue_gives_up_after_three_attempts() -> None:
    delays: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    provider = _provider(handler, delays=delays)
    with pytest.raises(ProviderError) as exc_info:
        await provider.issue({"batchId": "b-1"})

    assert exc_info.value.status_code == 502
    assert delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_client_errors_are_not_retried() -> None:
    calls: list[int] = []
    delays: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(400, json={"error": "bad credential"})

    provider = _provider(handler, delays=delays)
    with pytest.raises(ProviderError) as exc_info:
        await provider.issue({"batchId": "b-1"})

    assert exc_info.value.status_code == 400
    assert exc_info.value.body == {"error": "bad credential"}
    assert len(calls) == 1
    assert delays == []


@pytest.mark.asyncio
async def test_rate_limits_are_retried() -> None:
    calls: list[int] = []
    delays: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) == 1:
            return httpx.Response(429)
        return httpx.Response(
            200,
            json={"valid": True, "signatureValid": True, "issuer": "did:example:issuer"},
        )

    provider = _provider(handler, delays=delays)
    result = await provider.verify(credential_url="https://inji.test/credentials/vc_live_1")

    assert result.valid and result.signature_valid
    assert delays == [1.0]


@pytest.mark.asyncio
async def test_network_errors_surface_as_provider_errors() -> None:
    delays: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = _provider(handler, delays=delays)
    with pytest.raises(ProviderError):
        await provider.get("vc_live_1")
    assert delays == [1.0, 2.0]


def test_webhook_signature_is_checked_over_raw_bytes() -> None:
    secret = "whsec_test"
    body = json.dumps({"vcId": "vc_live_1", "status": "expired", "timestamp": "2026-05-01T00:00:00Z"}).encode()
    signature = build_webhook_signature(secret, body)
    provider = _provider(lambda request: httpx.Response(200), delays=[], webhook_secret=secret)

    event = provider.parse_webhook(body, signature)
    prefixed = provider.parse_webhook(body, f"sha256={signature}")

    assert isinstance(event, WebhookExpired)
    assert prefixed == event


def test_webhook_single_byte_change_is_rejected() -> None:
    secret = "whsec_test"
    body = b'{"vcId":"vc_live_1","status":"revoked"}'
    signature = build_webhook_signature(secret, body)
    tampered = bytearray(body)
    tampered[-3] ^= 0x01
    provider = _provider(lambda request: httpx.Response(200), delays=[], webhook_secret=secret)

    with pytest.raises(AuthenticationError):
        provider.parse_webhook(bytes(tampered), signature)


def test_webhook_without_signature_or_secret_is_rejected() -> None:
    body = b'{"vcId":"vc_live_1","status":"revoked"}'
    signed = _provider(lambda request: httpx.Response(200), delays=[], webhook_secret="whsec_test")
    unsigned = _provider(lambda request: httpx.Response(200), delays=[], webhook_secret=None)

    with pytest.raises(AuthenticationError):
        signed.parse_webhook(body, None)
    with pytest.raises(AuthenticationError):
        unsigned.parse_webhook(body, build_webhook_signature("whsec_test", body))


@pytest.mark.asyncio
async def test_fetch_refuses_foreign_hosts_without_sending_anything() -> None:
    provider_requests: list[httpx.Request] = []
    public_requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        provider_requests.append(request)
        return httpx.Response(200, json={"credential": {"issuer": "x"}})

    def public_handler(request: httpx.Request) -> httpx.Response:
        public_requests.append(request)
        return httpx.Response(200, json={"issuer": "x"})

    provider = _provider(handler, delays=[], public_handler=public_handler)
    with pytest.raises(ProviderError):
        await provider.fetch("https://attacker.example/vc/1")
    with pytest.raises(ProviderError):
        await provider.fetch("http://inji.test.attacker.example/v1/credentials/vc_1")

    assert provider_requests == []
    assert public_requests == []


@pytest.mark.asyncio
async def test_fetch_sends_the_provider_key_only_to_the_provider() -> None:
    seen: list[tuple[str, str | None]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.host, request.headers.get("Authorization")))
        return httpx.Response(200, json={"credential": {"issuer": "did:example:issuer"}})

    def public_handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.host, request.headers.get("Authorization")))
        return httpx.Response(200, json={"issuer": "did:example:issuer"})

    provider = _provider(handler, delays=[], public_handler=public_handler)
    from_provider = await provider.fetch("https://inji.test/v1/credentials/vc_live_1")
    from_own_host = await provider.fetch("https://api.agriqcert.com/credentials/vc_live_1")

    assert from_provider == {"issuer": "did:example:issuer"}
    assert from_own_host == {"issuer": "did:example:issuer"}
    assert seen == [("inji.test", "Bearer test-key"), ("api.agriqcert.com", None)]


@pytest.mark.asyncio
async def test_failed_public_fetches_leave_the_provider_breaker_closed() -> None:
    delays: list[float] = []
    public_calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_ISSUE_BODY)

    def public_handler(request: httpx.Request) -> httpx.Response:
        public_calls.append(1)
        raise httpx.ConnectError("connection refused", request=request)

    breaker = CircuitBreaker(
        "trust.inji.test",
        config=CircuitBreakerConfig(failure_threshold=2, open_seconds=30, half_open_trials=1),
    )
    provider = _provider(handler, delays=delays, public_handler=public_handler, breaker=breaker)
    for _ in range(5):
        with pytest.raises(ProviderError):
            await provider.fetch("https://api.agriqcert.com/credentials/dead")
        with pytest.raises(ProviderError):
            await provider.fetch("https://dead.example/vc")

    issued = await provider.issue({"batchId": "b-1"})

    assert issued.credential_id == "vc_live_1"
    assert public_calls == [1] * 5
    assert delays == []
    assert (await breaker.before_call()).state == "closed"
