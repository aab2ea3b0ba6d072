# cadence/core/db/engine.py
from __future__ import annotations
import hashlib
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional
from result import Err, Ok
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from cadence.core.db.errors import is_retryable_db_error
from cadence.core.db.result_types import (
    DatabaseErrorCode,
    DatabaseOperationError,
    DatabaseResult,
)
from cadence.core.logging import get_logger
from cadence.core.models.config import DatabaseConfig
from cadence.core.models.tables import Base
from cadence.core.utils.url import mask_database_url

ADVISORY_XACT_LOCK_SQL = text('SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))')


def advisory_key(namespace: str, value: str) -> int:
    """
    Compute a stable signed 64-bit advisory lock key.

    Namespacing keeps schema, tenant-quota and other locks from colliding.
    """
    basis = f'cadence-{namespace}:{value}'.encode('utf-8')
    h = hashlib.sha256(basis).digest()
    return int.from_bytes(h[:8], byteorder='big', signed=True)


async def acquire_advisory_xact_lock(
    session: AsyncSession, namespace: str, value: str
) -> None:
    """Serialize the current transaction on (namespace, value). PostgreSQL only."""
    if session.bind.dialect.name != 'postgresql':
        return
    await session.execute(ADVISORY_XACT_LOCK_SQL, {'key': advisory_key(namespace, value)})


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
    session: Optional[AsyncSession] = None,
) -> AsyncIterator[AsyncSession]:
    """
    Yield the caller's session unchanged, or open a new one in a transaction.

    A borrowed session is neither committed nor closed here; its owner decides.
    An owned session commits when the block exits normally and rolls back otherwise.
    """
    if session is not None:
        yield session
        return
    async with session_factory() as owned:
        async with owned.begin():
            yield owned


def _enable_sqlite_pragmas(dbapi_conn: Any, _connection_record: Any) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute('PRAGMA foreign_keys=ON')
    cursor.execute('PRAGMA busy_timeout=5000')
    cursor.close()


class Database:
    """
    Async engine and session factory shared by the store, ledger and scheduler.

    - PostgreSQL (psycopg3) in production, SQLite (aiosqlite) for local runs/tests
    - Schema creation guarded by an advisory lock on PostgreSQL
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.logger = get_logger('database')

        self.async_engine = create_async_engine(
            self.config.database_url, **self.config.engine_kwargs()
        )
        if self.async_engine.dialect.name == 'sqlite':
            event.listen(self.async_engine.sync_engine, 'connect', _enable_sqlite_pragmas)

        self.session_factory = async_sessionmaker(
            self.async_engine, expire_on_commit=False
        )
        self._initialized = False

        self.logger.info(
            f'Database configured: {mask_database_url(self.config.database_url)}'
        )

    @property
    def dialect_name(self) -> str:
        return self.async_engine.dialect.name

    async def ensure_schema_initialized(self) -> DatabaseResult[None]:
        """
        Create tables and indexes if missing.

        Safe to call multiple times and from multiple processes; on PostgreSQL
        the DDL runs under a transaction-scoped advisory lock.
        """
        if self._initialized:
            return Ok(None)
        try:
            async with self.async_engine.begin() as conn:
                if self.dialect_name == 'postgresql':
                    await conn.execute(
                        ADVISORY_XACT_LOCK_SQL,
                        {'key': advisory_key('schema', self.config.database_url)},
                    )
                await conn.run_sync(Base.metadata.create_all)
        except Exception as e:
            self.logger.error(f'Schema initialization failed: {e}', exc_info=True)
            return Err(
                DatabaseOperationError(
                    code=DatabaseErrorCode.SCHEMA_INIT_FAILED,
                    message=f'schema initialization failed: {type(e).__name__}',
                    retryable=is_retryable_db_error(e),
                    exception=e,
                )
            )
        self._initialized = True
        self.logger.info('Schema initialized')
        return Ok(None)

    async def close_async(self) -> DatabaseResult[None]:
        try:
            await self.async_engine.dispose()
        except Exception as e:
            return Err(
                DatabaseOperationError(
                    code=DatabaseErrorCode.CLOSE_FAILED,
                    message=f'engine dispose failed: {type(e).__name__}',
                    retryable=False,
                    exception=e,
                )
            )
        return Ok(None)
