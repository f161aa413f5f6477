from __future__ import annotations

import os
import tempfile

# Settings and the engine are built at import time, so the environment must be set first.
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'agriqcert_test.db')}",
)
os.environ["ISSUANCE_EXECUTION_MODE"] = "inline"
os.environ["TRUST_PROVIDER"] = "mock"
os.environ["AUTH_DEV_BYPASS"] = "true"
os.environ["WALLET_PUSH_ENABLED"] = "false"

import pytest

from agriqcert.apps.api.deps import clear_auth_cache
from agriqcert.core.config import get_settings
from agriqcert.domain.models import Base
from agriqcert.persistence.db import engine


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Rebuild tables per test so certificates and ledgers never leak between cases.
    get_settings.cache_clear()
    clear_auth_cache()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
