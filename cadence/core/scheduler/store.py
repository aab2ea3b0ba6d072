# cadence/core/scheduler/store.py
from __future__ import annotations
from datetime import datetime
from typing import Any, Callable, Optional, Sequence
from sqlalchemy import (
    case,
    cast,
    delete,
    func,
    insert,
    literal,
    null,
    select,
    true as sa_true,
    update,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from cadence.core.db.engine import acquire_advisory_xact_lock, session_scope
from cadence.core.logging import get_logger
from cadence.core.models.schedule import ScheduleInput, ScheduleSummary
from cadence.core.models.tables import (
    ExportScheduleExecutionModel,
    ExportScheduleModel,
    UTCDateTime,
)
from cadence.core.scheduler.ledger import ExecutionLedger

logger = get_logger('scheduler.store')

NextFireFn = Callable[[ExportScheduleModel, datetime], datetime]

_schedules = ExportScheduleModel.__table__


def _input_columns(schedule_input: ScheduleInput) -> dict[str, Any]:
    """Column values carried by a validated ScheduleInput."""
    return {
        'name': schedule_input.name,
        'description': schedule_input.description,
        'frequency': schedule_input.frequency,
        'day_of_week': schedule_input.day_of_week,
        'day_of_month': schedule_input.day_of_month,
        'time': schedule_input.time,
        'format': schedule_input.format,
        'recipients': list(schedule_input.recipients),
        'email_subject': schedule_input.email_subject,
        'email_body': schedule_input.email_body,
        'filter_preset_id': schedule_input.filter_preset_id,
        'is_active': schedule_input.is_active,
    }


def _bound_column(name: str, value: Any, dialect_name: str) -> Any:
    """Bind `value` as a SELECT-list column typed like the schedules column `name`."""
    column_type = _schedules.c[name].type
    bound = literal(value, column_type)
    # PostgreSQL cannot infer parameter types in a bare SELECT list
    if dialect_name == 'postgresql':
        bound = cast(bound, column_type)
    return bound.label(name)


class ScheduleStore:
    """
    Persistence for export schedules.

    Every request-path read and write is scoped by tenant_id. The sweep-path
    methods (select_due_ids, claim, release) work across tenants and rely on
    conditional updates for mutual exclusion:

    - claim sets pending_execution_id only while it is NULL and the schedule is due
    - release clears it only when it still holds the caller's execution id

    Every method accepts an optional `session` to join the caller's
    transaction; without one it runs and commits in its own.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: ExecutionLedger,
    ):
        self.session_factory = session_factory
        self.ledger = ledger

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list(
        self, tenant_id: str, session: Optional[AsyncSession] = None
    ) -> list[ScheduleSummary]:
        """
        All schedules of a tenant, newest first, with their execution counts.

        Args:
            tenant_id: Owning tenant

        Returns:
            List of ScheduleSummary
        """
        execution_count = (
            select(func.count())
            .select_from(ExportScheduleExecutionModel)
            .where(ExportScheduleExecutionModel.schedule_id == ExportScheduleModel.id)
            .correlate(ExportScheduleModel)
            .scalar_subquery()
        )
        async with session_scope(self.session_factory, session) as s:
            result = await s.execute(
                select(ExportScheduleModel, execution_count.label('execution_count'))
                .where(ExportScheduleModel.tenant_id == tenant_id)
                .order_by(
                    ExportScheduleModel.created_at.desc(),
                    ExportScheduleModel.id.desc(),
                )
            )
            return [
                ScheduleSummary.model_validate(schedule).model_copy(
                    update={'execution_count': int(count or 0)}
                )
                for schedule, count in result.all()
            ]

    async def get(
        self,
        tenant_id: str,
        schedule_id: str,
        session: Optional[AsyncSession] = None,
    ) -> Optional[ExportScheduleModel]:
        """Retrieve one schedule; None if missing or owned by another tenant."""
        async with session_scope(self.session_factory, session) as s:
            return await s.scalar(
                select(ExportScheduleModel)
                .where(ExportScheduleModel.id == schedule_id)
                .where(ExportScheduleModel.tenant_id == tenant_id)
                .execution_options(populate_existing=True)
            )

    async def count(
        self, tenant_id: str, session: Optional[AsyncSession] = None
    ) -> int:
        async with session_scope(self.session_factory, session) as s:
            total = await s.scalar(
                select(func.count())
                .select_from(ExportScheduleModel)
                .where(ExportScheduleModel.tenant_id == tenant_id)
            )
        return int(total or 0)

    async def filter_owned_ids(
        self,
        tenant_id: str,
        schedule_ids: Sequence[str],
        session: Optional[AsyncSession] = None,
    ) -> list[str]:
        """
        Subset of `schedule_ids` that exist and belong to the tenant.

        Order and duplicates of the input are not preserved.
        """
        if not schedule_ids:
            return []
        async with session_scope(self.session_factory, session) as s:
            result = await s.execute(
                select(ExportScheduleModel.id)
                .where(ExportScheduleModel.tenant_id == tenant_id)
                .where(ExportScheduleModel.id.in_(list(set(schedule_ids))))
            )
            return list(result.scalars())

    # ------------------------------------------------------------------
    # Request-path writes
    # ------------------------------------------------------------------

    async def create(
        self,
        tenant_id: str,
        user_id: str,
        schedule_input: ScheduleInput,
        schedule_id: str,
        now: datetime,
        next_fire_at: Optional[datetime],
        max_per_tenant: int,
        session: Optional[AsyncSession] = None,
    ) -> Optional[ExportScheduleModel]:
        """
        Insert a schedule unless the tenant is already at its cap.

        The row is written by one INSERT ... SELECT guarded by the tenant's
        current count, so concurrent creates cannot overshoot the cap. On
        PostgreSQL the transaction additionally holds a per-tenant advisory
        lock, since READ COMMITTED alone would let two inserts see the same
        count.

        Returns:
            The created ExportScheduleModel, or None when the cap was reached
        """
        values: dict[str, Any] = {
            'id': schedule_id,
            'tenant_id': tenant_id,
            'user_id': user_id,
            **_input_columns(schedule_input),
            'next_fire_at': next_fire_at if schedule_input.is_active else None,
            'pending_execution_id': None,
            'created_at': now,
            'updated_at': now,
        }
        tenant_count = (
            select(func.count())
            .select_from(ExportScheduleModel)
            .where(ExportScheduleModel.tenant_id == tenant_id)
            .scalar_subquery()
        )
        async with session_scope(self.session_factory, session) as s:
            source = select(
                *[
                    _bound_column(name, value, s.bind.dialect.name)
                    for name, value in values.items()
                ]
            ).where(tenant_count < max_per_tenant)
            await acquire_advisory_xact_lock(s, 'tenant-quota', tenant_id)
            result = await s.execute(
                insert(ExportScheduleModel).from_select(list(values), source)
            )
            if getattr(result, 'rowcount', 0) == 0:
                logger.info(
                    f"Schedule quota reached for tenant '{tenant_id}' "
                    f'(max {max_per_tenant}), create rejected'
                )
                return None

            schedule = await s.get(ExportScheduleModel, schedule_id)

        logger.info(
            f"Created schedule '{schedule_id}' for tenant '{tenant_id}', "
            f'next_fire_at={values["next_fire_at"]}'
        )
        return schedule

    async def update(
        self,
        tenant_id: str,
        schedule_id: str,
        schedule_input: ScheduleInput,
        now: datetime,
        next_fire_at: Optional[datetime],
        session: Optional[AsyncSession] = None,
    ) -> Optional[ExportScheduleModel]:
        """
        Replace a schedule's definition.

        An in-flight execution keeps its pending token; the next fire time it
        releases with is computed from the edited recurrence.

        Returns:
            The updated ExportScheduleModel, or None if not found for this tenant
        """
        async with session_scope(self.session_factory, session) as s:
            result = await s.execute(
                update(ExportScheduleModel)
                .where(ExportScheduleModel.id == schedule_id)
                .where(ExportScheduleModel.tenant_id == tenant_id)
                .values(
                    **_input_columns(schedule_input),
                    next_fire_at=next_fire_at if schedule_input.is_active else None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if getattr(result, 'rowcount', 0) == 0:
                return None
            schedule = await self.get(tenant_id, schedule_id, session=s)

        logger.info(f"Updated schedule '{schedule_id}' for tenant '{tenant_id}'")
        return schedule

    async def bulk_set_active(
        self,
        tenant_id: str,
        schedule_ids: Sequence[str],
        active: bool,
        now: datetime,
        next_fire_for: NextFireFn,
        session: Optional[AsyncSession] = None,
    ) -> int:
        """
        Put every addressed schedule of the tenant into the given state.

        Rows that actually flip are written individually: activation computes
        next_fire_at from `now` (missed slots are not backfilled), deactivation
        clears it. Rows already in the requested state are left untouched.

        Returns:
            Number of the tenant's schedules addressed, foreign ids excluded
        """
        if not schedule_ids:
            return 0

        async with session_scope(self.session_factory, session) as s:
            rows = await self._lock_rows(s, tenant_id, schedule_ids)
            for row in rows:
                if row.is_active != active:
                    await self._write_active(s, row, active, now, next_fire_for)

        logger.info(
            f"Set is_active={active} on {len(rows)} schedule(s) for tenant '{tenant_id}'"
        )
        return len(rows)

    async def bulk_toggle_active(
        self,
        tenant_id: str,
        schedule_ids: Sequence[str],
        now: datetime,
        next_fire_for: NextFireFn,
        session: Optional[AsyncSession] = None,
    ) -> int:
        """
        Flip each addressed schedule's own is_active value.

        Mixed batches are not normalized: active rows deactivate, inactive
        rows activate with next_fire_at computed from `now`.

        Returns:
            Number of rows flipped, foreign ids excluded
        """
        if not schedule_ids:
            return 0

        flipped = 0
        async with session_scope(self.session_factory, session) as s:
            rows = await self._lock_rows(s, tenant_id, schedule_ids)
            for row in rows:
                flipped += await self._write_active(
                    s, row, not row.is_active, now, next_fire_for
                )

        logger.info(f"Toggled {flipped} schedule(s) for tenant '{tenant_id}'")
        return flipped

    async def bulk_delete(
        self,
        tenant_id: str,
        schedule_ids: Sequence[str],
        session: Optional[AsyncSession] = None,
    ) -> int:
        """
        Delete the tenant's schedules among `schedule_ids`, executions first.

        Ledger rows and schedule rows go in one transaction. Ids that are
        missing or foreign are skipped, so a partial match is a partial delete.

        Returns:
            Number of schedules deleted
        """
        if not schedule_ids:
            return 0

        async with session_scope(self.session_factory, session) as s:
            # Row locks make a concurrent claim wait, then find nothing to claim
            rows = await self._lock_rows(s, tenant_id, schedule_ids)
            owned = [row.id for row in rows]
            if not owned:
                return 0
            executions = await self.ledger.delete_by_schedule_ids(owned, session=s)
            result = await s.execute(
                delete(ExportScheduleModel)
                .where(ExportScheduleModel.tenant_id == tenant_id)
                .where(ExportScheduleModel.id.in_(owned))
                .execution_options(synchronize_session=False)
            )
            deleted = getattr(result, 'rowcount', 0)

        logger.info(
            f"Deleted {deleted} schedule(s) and {executions} execution(s) "
            f"for tenant '{tenant_id}'"
        )
        return deleted

    async def _lock_rows(
        self, session: AsyncSession, tenant_id: str, schedule_ids: Sequence[str]
    ) -> list[ExportScheduleModel]:
        # FOR UPDATE is dropped by the SQLite compiler; SQLite serializes writers anyway
        result = await session.execute(
            select(ExportScheduleModel)
            .where(ExportScheduleModel.tenant_id == tenant_id)
            .where(ExportScheduleModel.id.in_(list(set(schedule_ids))))
            .order_by(ExportScheduleModel.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars())

    async def _write_active(
        self,
        session: AsyncSession,
        row: ExportScheduleModel,
        active: bool,
        now: datetime,
        next_fire_for: NextFireFn,
    ) -> int:
        """Conditionally flip one row from its observed state. Returns rows written."""
        next_fire_at = next_fire_for(row, now) if active else None
        result = await session.execute(
            update(ExportScheduleModel)
            .where(ExportScheduleModel.id == row.id)
            .where(ExportScheduleModel.tenant_id == row.tenant_id)
            .where(ExportScheduleModel.is_active == row.is_active)
            .values(is_active=active, next_fire_at=next_fire_at, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return getattr(result, 'rowcount', 0)

    # ------------------------------------------------------------------
    # Sweep path
    # ------------------------------------------------------------------

    async def select_due_ids(
        self,
        now: datetime,
        limit: Optional[int] = None,
        session: Optional[AsyncSession] = None,
    ) -> list[str]:
        """
        Ids of active, idle schedules whose next_fire_at has arrived.

        Selection alone marks nothing; each id must still be claimed.

        Args:
            now: Current time in UTC
            limit: Optional cap on the number of ids, earliest due first
        """
        stmt = (
            select(ExportScheduleModel.id)
            .where(ExportScheduleModel.is_active.is_(True))
            .where(ExportScheduleModel.pending_execution_id.is_(None))
            .where(ExportScheduleModel.next_fire_at.is_not(None))
            .where(ExportScheduleModel.next_fire_at <= now)
            .order_by(ExportScheduleModel.next_fire_at.asc(), ExportScheduleModel.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with session_scope(self.session_factory, session) as s:
            result = await s.execute(stmt)
            return list(result.scalars())

    async def claim(
        self,
        schedule_id: str,
        execution_id: str,
        now: datetime,
        session: Optional[AsyncSession] = None,
    ) -> Optional[ExportScheduleModel]:
        """
        Atomically move a due schedule from Active-Idle to Active-Pending.

        A single conditional UPDATE is the test-and-set: of any number of
        concurrent claimers exactly one sees a changed row.

        Returns:
            The claimed ExportScheduleModel, or None if it was not claimable
            (already pending, deactivated, deleted, or no longer due)
        """
        async with session_scope(self.session_factory, session) as s:
            result = await s.execute(
                update(ExportScheduleModel)
                .where(ExportScheduleModel.id == schedule_id)
                .where(ExportScheduleModel.pending_execution_id.is_(None))
                .where(ExportScheduleModel.is_active.is_(True))
                .where(ExportScheduleModel.next_fire_at <= now)
                .values(pending_execution_id=execution_id)
                .execution_options(synchronize_session=False)
            )
            if getattr(result, 'rowcount', 0) == 0:
                logger.debug(f"Schedule '{schedule_id}' not claimable, skipping")
                return None
            return await s.scalar(
                select(ExportScheduleModel)
                .where(ExportScheduleModel.id == schedule_id)
                .execution_options(populate_existing=True)
            )

    async def get_for_release(
        self, schedule_id: str, session: Optional[AsyncSession] = None
    ) -> Optional[ExportScheduleModel]:
        """
        Sweep-side read of a schedule by id, regardless of tenant.

        The row stays locked until the caller's transaction ends, so an
        activation change waits for the release instead of racing it.
        """
        async with session_scope(self.session_factory, session) as s:
            return await s.scalar(
                select(ExportScheduleModel)
                .where(ExportScheduleModel.id == schedule_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )

    async def release(
        self,
        schedule_id: str,
        execution_id: str,
        next_fire_at: Optional[datetime],
        session: Optional[AsyncSession] = None,
    ) -> bool:
        """
        Return a schedule from Active-Pending to Active-Idle (or Inactive).

        Only the holder of the pending token can release it. A schedule that
        was deactivated while pending keeps next_fire_at NULL. An active row
        released with no next_fire_at keeps the one its activation computed.

        Returns:
            True if the token was released, False if it was no longer held
        """
        async with session_scope(self.session_factory, session) as s:
            result = await s.execute(
                update(ExportScheduleModel)
                .where(ExportScheduleModel.id == schedule_id)
                .where(ExportScheduleModel.pending_execution_id == execution_id)
                .values(
                    pending_execution_id=None,
                    next_fire_at=case(
                        (
                            ExportScheduleModel.is_active == sa_true(),
                            func.coalesce(
                                literal(next_fire_at, UTCDateTime()),
                                ExportScheduleModel.next_fire_at,
                            ),
                        ),
                        else_=null(),
                    ),
                )
                .execution_options(synchronize_session=False)
            )
        released = getattr(result, 'rowcount', 0) > 0
        if released:
            logger.debug(
                f"Released schedule '{schedule_id}', next_fire_at={next_fire_at}"
            )
        else:
            logger.warning(
                f"Schedule '{schedule_id}' no longer held by execution '{execution_id}'"
            )
        return released
