"""Integration test fixtures for the export scheduler.

Runs against a throwaway SQLite file by default. Set CADENCE_TEST_DATABASE_URL
(e.g. postgresql+psycopg://postgres:pw@localhost:5432/cadence_test) to run the
same tests on PostgreSQL; tables are emptied before each test.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, AsyncGenerator, Callable

import pytest
import pytest_asyncio
from sqlalchemy import delete

from cadence.core.db.engine import Database
from cadence.core.defaults import MAX_SCHEDULES_PER_TENANT
from cadence.core.models.config import CadenceConfig, DatabaseConfig, SweepConfig
from cadence.core.models.tables import (
    ExportScheduleExecutionModel,
    ExportScheduleModel,
)
from cadence.core.scheduler.ledger import ExecutionLedger
from cadence.core.scheduler.service import ExportScheduler, RequestContext
from cadence.core.scheduler.store import ScheduleStore

from tests.integration.helpers import (
    FakeClock,
    FakePermissions,
    FakeRateLimiter,
    RecordingDelivery,
)

# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    """Database URL; a fresh SQLite file unless overridden by the environment."""
    return os.environ.get(
        'CADENCE_TEST_DATABASE_URL', f'sqlite+aiosqlite:///{tmp_path}/cadence.db'
    )


@pytest_asyncio.fixture
async def database(db_url: str) -> AsyncGenerator[Database, None]:
    """Database with schema initialized and empty tables."""
    db = Database(DatabaseConfig(database_url=db_url))
    init_result = await db.ensure_schema_initialized()
    assert init_result.is_ok(), init_result

    async with db.session_factory() as session:
        async with session.begin():
            await session.execute(delete(ExportScheduleExecutionModel))
            await session.execute(delete(ExportScheduleModel))

    yield db
    await db.close_async()


@pytest.fixture
def ledger(database: Database) -> ExecutionLedger:
    return ExecutionLedger(database.session_factory)


@pytest.fixture
def store(database: Database, ledger: ExecutionLedger) -> ScheduleStore:
    return ScheduleStore(database.session_factory, ledger)


# =============================================================================
# Scheduler
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rate_limiter() -> FakeRateLimiter:
    return FakeRateLimiter()


@pytest.fixture
def permissions() -> FakePermissions:
    return FakePermissions()


@pytest.fixture
def delivery() -> RecordingDelivery:
    return RecordingDelivery()


@pytest.fixture
def make_scheduler(
    database: Database,
    clock: FakeClock,
    rate_limiter: FakeRateLimiter,
    permissions: FakePermissions,
    delivery: RecordingDelivery,
) -> Callable[..., ExportScheduler]:
    """Factory for schedulers sharing the test database and fakes."""

    def _make(
        max_schedules_per_tenant: int = MAX_SCHEDULES_PER_TENANT, **sweep_overrides: Any
    ) -> ExportScheduler:
        config = CadenceConfig(
            database=database.config,
            sweep=SweepConfig(**sweep_overrides),
            max_schedules_per_tenant=max_schedules_per_tenant,
        )
        return ExportScheduler(
            config,
            rate_limiter,
            permissions,
            delivery,
            database=database,
            clock=clock,
        )

    return _make


@pytest_asyncio.fixture
async def scheduler(
    make_scheduler: Callable[..., ExportScheduler],
) -> ExportScheduler:
    """Started scheduler with default sweep settings."""
    sched = make_scheduler()
    await sched.start()
    return sched


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(tenant_id='tenant-a', user_id='alice', client_token='10.0.0.1')


@pytest.fixture
def other_ctx() -> RequestContext:
    return RequestContext(tenant_id='tenant-b', user_id='bob', client_token='10.0.0.2')
