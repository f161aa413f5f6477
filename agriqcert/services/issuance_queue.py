from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from redis.exceptions import RedisError

from agriqcert.core.config import get_settings


logger = logging.getLogger(__name__)

PROCESS_ISSUANCE_TASK = "process_issuance_job"
WORKER_HEARTBEAT_KEY = "agriqcert:worker:heartbeat"

_pools: dict[int, ArqRedis] = {}
_pool_lock: asyncio.Lock | None = None

# Redis being down never fails a request; callers degrade to polling or None.
_REDIS_FAILURES = (RedisError, OSError, asyncio.TimeoutError)


def is_inline_mode() -> bool:
    return get_settings().issuance_execution_mode.lower() == "inline"


async def get_redis_pool() -> ArqRedis:
    """arq pool bound to the running event loop."""
    global _pool_lock
    loop_id = id(asyncio.get_running_loop())
    pool = _pools.get(loop_id)
    if pool is not None:
        return pool
    if _pool_lock is None:
        _pool_lock = asyncio.Lock()
    async with _pool_lock:
        pool = _pools.get(loop_id)
        if pool is None:
            settings = get_settings()
            pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.issuance_queue_name,
            )
            _pools.clear()
            _pools[loop_id] = pool
    return pool


async def push_issuance_job(job_id: str) -> bool:
    # The job row stays pending either way, so the worker poller picks up lost pushes.
    try:
        pool = await get_redis_pool()
        await pool.enqueue_job(
            PROCESS_ISSUANCE_TASK,
            job_id,
            _job_id=f"issuance:{job_id}",
            _queue_name=get_settings().issuance_queue_name,
        )
    except _REDIS_FAILURES:
        logger.warning("issuance_push_failed job_id=%s", job_id, exc_info=True)
        return False
    logger.info("issuance_pushed job_id=%s", job_id)
    return True


async def get_queue_depth() -> int | None:
    if is_inline_mode():
        return 0
    try:
        pool = await get_redis_pool()
        return int(await pool.zcard(f"arq:queue:{get_settings().issuance_queue_name}"))
    except _REDIS_FAILURES:
        return None


async def set_worker_heartbeat(*, timestamp: datetime | None = None) -> None:
    if is_inline_mode():
        return
    stamp = (timestamp or datetime.now(timezone.utc)).isoformat()
    try:
        pool = await get_redis_pool()
        await pool.set(WORKER_HEARTBEAT_KEY, stamp)
    except _REDIS_FAILURES:
        logger.warning("worker_heartbeat_failed", exc_info=True)


async def get_worker_heartbeat() -> datetime | None:
    if is_inline_mode():
        return None
    try:
        pool = await get_redis_pool()
        raw = await pool.get(WORKER_HEARTBEAT_KEY)
    except _REDIS_FAILURES:
        return None
    if not raw:
        return None
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    try:
        return datetime.fromisoformat(str(raw))
    except ValueError:
        return None
