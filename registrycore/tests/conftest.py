from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before any registrycore module builds it.
_DB_DIR = tempfile.mkdtemp(prefix="registrycore-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/registry.db")

import pytest  # noqa: E402

from registrycore.domain.models import Base  # noqa: E402
from registrycore.persistence.db import engine  # noqa: E402
from registrycore.services.authz.cache import get_permission_cache  # noqa: E402


@pytest.fixture(autouse=True)
async def database() -> None:
    # Fresh tables and an empty permission cache for every test.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    get_permission_cache().clear()
    yield
    async with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            await conn.execute(table.delete())
    get_permission_cache().clear()
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
