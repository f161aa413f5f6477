from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from agriqcert.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from agriqcert.apps.api.response import SuccessEnvelope, success_response
from agriqcert.services.issuance_queue import get_queue_depth, get_worker_heartbeat
from agriqcert.services.telemetry import provider_call_stats, snapshot

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    provider_mode: str | None = None
    queue_depth: int | None = None
    worker_heartbeat_at: str | None = None
    provider_calls: dict | None = None
    telemetry: dict | None = None


# Allow legacy unwrapped responses while v1 middleware wraps them into envelopes.
@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    container = getattr(request.app.state, "container", None)
    heartbeat = await get_worker_heartbeat()
    payload = HealthResponse(
        status="ok",
        provider_mode=container.provider.mode if container is not None else None,
        queue_depth=await get_queue_depth(),
        worker_heartbeat_at=heartbeat.isoformat() if heartbeat else None,
        provider_calls=provider_call_stats("trust.inji"),
        telemetry=snapshot(),
    )
    return success_response(request=request, data=payload.model_dump())
