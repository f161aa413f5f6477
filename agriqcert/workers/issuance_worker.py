from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from agriqcert.core.config import get_settings
from agriqcert.services.container import ServiceContainer, build_container
from agriqcert.services.issuance import default_worker_id
from agriqcert.services.issuance_queue import set_worker_heartbeat


logger = logging.getLogger(__name__)


async def run_issuance_cycle(
    container: ServiceContainer,
    *,
    limit: int | None = None,
    worker_id: str | None = None,
) -> int:
    # Drain up to `limit` pending jobs, one at a time.
    processed = await container.issuance.run_cycle(limit=limit, worker_id=worker_id)
    if processed:
        logger.info("issuance_cycle_completed processed=%s", processed)
    return processed


async def run_issuance_loop(
    container: ServiceContainer,
    *,
    worker_id: str | None = None,
    stop_event: asyncio.Event | None = None,
) -> None:
    # Poll the database queue; this also recovers jobs whose Redis push was lost.
    settings = get_settings()
    interval_s = max(0.1, settings.worker_poll_interval_ms / 1000.0)
    resolved_worker = worker_id or default_worker_id()
    logger.info("issuance_worker_started worker_id=%s interval_s=%.1f", resolved_worker, interval_s)
    while stop_event is None or not stop_event.is_set():
        try:
            await set_worker_heartbeat()
            await run_issuance_cycle(container, worker_id=resolved_worker)
        except Exception:  # noqa: BLE001 - keep the poller alive while surfacing failures in logs.
            logger.exception("issuance poll cycle failed")
        if stop_event is None:
            await asyncio.sleep(interval_s)
            continue
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_s)
        except asyncio.TimeoutError:
            pass
    logger.info("issuance_worker_stopped worker_id=%s", resolved_worker)


async def process_issuance_job(ctx, job_id: str) -> str:
    # Pushed job ids go through the same claim as the poller, so duplicates are skipped.
    container: ServiceContainer = ctx["container"]
    processed = await container.issuance.process_job(job_id, worker_id=ctx.get("worker_id"))
    return "processed" if processed else "skipped"


async def _startup(ctx) -> None:
    ctx["container"] = build_container()
    ctx["worker_id"] = default_worker_id()
    ctx["poller_task"] = asyncio.create_task(
        run_issuance_loop(ctx["container"], worker_id=ctx["worker_id"])
    )


async def _shutdown(ctx) -> None:
    # Cancel the poller to avoid dangling coroutines on exit.
    task = ctx.get("poller_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.issuance_queue_name
    max_tries = 1
    functions = [process_issuance_job]
    on_startup = _startup
    on_shutdown = _shutdown
