from __future__ import annotations

import time
from collections import Counter, deque
from typing import NamedTuple


class CallSample(NamedTuple):
    at: float
    name: str
    latency_ms: float
    ok: bool


# Bounded in-process windows; exported through the health endpoint.
_requests: deque[CallSample] = deque(maxlen=20000)
_provider_calls: deque[CallSample] = deque(maxlen=5000)
_counters: Counter[str] = Counter()
_gauges: dict[str, float] = {}


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    _requests.append(CallSample(time.time(), path, latency_ms, status_code < 500))


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    _provider_calls.append(CallSample(time.time(), integration, latency_ms, success))


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def provider_call_stats(integration: str, window_s: int = 300) -> dict[str, float | int | None]:
    cutoff = time.time() - window_s
    window = [sample for sample in _provider_calls if sample.at >= cutoff and sample.name == integration]
    if not window:
        return {"count": 0, "error_rate": None, "avg_latency_ms": None}
    return {
        "count": len(window),
        "error_rate": sum(not sample.ok for sample in window) / len(window),
        "avg_latency_ms": sum(sample.latency_ms for sample in window) / len(window),
    }


def snapshot() -> dict[str, object]:
    return {"counters": dict(_counters), "gauges": dict(_gauges)}
