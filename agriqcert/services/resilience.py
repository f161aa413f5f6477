from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from agriqcert.core.config import get_settings
from agriqcert.core.errors import IntegrationUnavailableError
from agriqcert.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"
_STATE_GAUGE = {CLOSED: 0.0, HALF_OPEN: 0.5, OPEN: 1.0}

# One client per event loop; arq workers and test runs each own a loop.
_clients: dict[int, Redis] = {}


async def get_resilience_redis() -> Redis | None:
    """Shared Redis client for breaker state, or None outside a running loop."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    client = _clients.get(id(loop))
    if client is None:
        try:
            client = Redis.from_url(get_settings().redis_url, encoding="utf-8", decode_responses=True)
        except (RedisError, ValueError):
            logger.warning("resilience_redis_unavailable", exc_info=True)
            return None
        _clients.clear()
        _clients[id(loop)] = client
    return client


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int
    jitter: bool = True


def provider_retry_policy() -> RetryPolicy:
    # Trust provider calls back off on a fixed doubling schedule.
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.provider_timeout_ms,
        max_attempts=settings.provider_retry_max_attempts,
        backoff_ms=settings.provider_retry_backoff_ms,
        jitter=False,
    )


def backoff_delay_s(policy: RetryPolicy, attempt: int) -> float:
    """Delay after the given 1-based failed attempt."""
    base = policy.backoff_ms / 1000.0
    delay = base * 2 ** (attempt - 1)
    return delay * random.uniform(0.5, 1.5) if policy.jitter else delay


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    label: str = "external",
) -> Any:
    policy = policy or provider_retry_policy()
    should_retry = retryable or is_transient
    pause = sleep or asyncio.sleep
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - re-raised unless retried
            if attempt == attempts or not should_retry(exc):
                raise
            delay = backoff_delay_s(policy, attempt)
            increment_counter(f"external_retries_total.{label}")
            logger.info(
                "retry_scheduled label=%s next_attempt=%s delay_s=%.2f error=%s",
                label,
                attempt + 1,
                delay,
                type(exc).__name__,
            )
            await pause(delay)
    raise AssertionError("unreachable")


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int


@dataclass(frozen=True)
class CircuitBreakerState:
    state: str = CLOSED
    failures: int = 0
    opened_at: float | None = None
    half_open_trials: int = 0

    def to_mapping(self) -> dict[str, str]:
        return {
            "state": self.state,
            "failures": str(self.failures),
            "opened_at": "" if self.opened_at is None else str(self.opened_at),
            "half_open_trials": str(self.half_open_trials),
        }

    @classmethod
    def from_mapping(cls, raw: dict[str, str]) -> CircuitBreakerState:
        opened_at = raw.get("opened_at")
        return cls(
            state=raw.get("state", CLOSED),
            failures=int(raw.get("failures") or 0),
            opened_at=float(opened_at) if opened_at else None,
            half_open_trials=int(raw.get("half_open_trials") or 0),
        )


class CircuitBreaker:
    """Closed/open/half-open breaker guarding one integration.

    State lives in a Redis hash so API and worker processes agree. When Redis
    is absent or erroring the breaker keeps going on process-local state.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._name = name
        self._redis = redis
        self._config = config or CircuitBreakerConfig(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )
        self._key = f"{settings.cb_redis_prefix}:{name}"
        self._clock = time_source or time.monotonic
        self._local = CircuitBreakerState()

    @property
    def name(self) -> str:
        return self._name

    async def _load(self) -> CircuitBreakerState:
        if self._redis is not None:
            try:
                raw = await self._redis.hgetall(self._key)
            except RedisError:
                logger.warning("circuit_breaker_redis_read_failed name=%s", self._name)
            else:
                if raw:
                    return CircuitBreakerState.from_mapping(raw)
        return self._local

    async def _save(self, state: CircuitBreakerState) -> None:
        self._local = state
        if self._redis is None:
            return
        try:
            await self._redis.hset(self._key, mapping=state.to_mapping())
            await self._redis.expire(self._key, max(self._config.open_seconds * 4, 60))
        except RedisError:
            logger.warning("circuit_breaker_redis_write_failed name=%s", self._name)

    def _move(self, current: CircuitBreakerState, target: str) -> CircuitBreakerState:
        if current.state != target:
            logger.warning(
                "circuit_breaker_transition name=%s from=%s to=%s", self._name, current.state, target
            )
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
            set_gauge(f"circuit_breaker_state.{self._name}", _STATE_GAUGE[target])
        return CircuitBreakerState(state=target, opened_at=self._clock() if target == OPEN else None)

    def _unavailable(self) -> IntegrationUnavailableError:
        return IntegrationUnavailableError(f"{self._name} is temporarily unavailable")

    async def before_call(self) -> CircuitBreakerState:
        state = await self._load()
        if state.state == OPEN:
            cooled = state.opened_at is not None and self._clock() - state.opened_at >= self._config.open_seconds
            if not cooled:
                raise self._unavailable()
            state = self._move(state, HALF_OPEN)
        if state.state == HALF_OPEN:
            if state.half_open_trials >= self._config.half_open_trials:
                raise self._unavailable()
            state = replace(state, half_open_trials=state.half_open_trials + 1)
            await self._save(state)
        return state

    async def record_success(self) -> None:
        state = await self._load()
        await self._save(self._move(state, CLOSED) if state.state != CLOSED else CircuitBreakerState())

    async def record_failure(self) -> None:
        state = await self._load()
        failures = state.failures + 1
        if state.state == HALF_OPEN or failures >= self._config.failure_threshold:
            await self._save(self._move(state, OPEN))
        else:
            await self._save(replace(state, failures=failures))
