# cadence/core/scheduler/ledger.py
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from cadence.core.db.engine import session_scope
from cadence.core.errors import (
    ErrorCode,
    ExecutionNotFoundError,
    InvalidStateTransitionError,
)
from cadence.core.logging import get_logger
from cadence.core.models.schedule import ExecutionView, ExportFormat
from cadence.core.models.tables import ExportScheduleExecutionModel
from cadence.core.types.status import ExecutionStatus

logger = get_logger('scheduler.ledger')


@dataclass(slots=True, frozen=True)
class ExecutionOutcome:
    """Terminal result reported for a pending execution."""

    status: ExecutionStatus
    error_detail: Optional[str] = None

    @classmethod
    def succeeded(cls) -> ExecutionOutcome:
        return cls(ExecutionStatus.SUCCEEDED)

    @classmethod
    def failed(cls, error_detail: str) -> ExecutionOutcome:
        return cls(ExecutionStatus.FAILED, error_detail)


class ExecutionLedger:
    """
    Append-mostly audit trail of export schedule executions.

    Each row moves pending -> succeeded | failed exactly once; after
    completed_at is set the row never changes again.

    Every method accepts an optional `session`. When given, the operation
    joins the caller's transaction and does not commit; otherwise it runs in
    its own transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record_start(
        self,
        schedule_id: str,
        tenant_id: str,
        output_format: ExportFormat,
        started_at: datetime,
        scheduled_for: Optional[datetime],
        execution_id: str,
        session: Optional[AsyncSession] = None,
    ) -> ExportScheduleExecutionModel:
        """
        Insert a pending execution.

        Args:
            schedule_id: Schedule being fired
            tenant_id: Owning tenant, copied for tenant-scoped reads
            output_format: Schedule format at fire time
            started_at: When the sweep selected the schedule (UTC)
            scheduled_for: The due instant being served
            execution_id: Id from the scheduler's id factory

        Returns:
            The created ExportScheduleExecutionModel
        """
        execution = ExportScheduleExecutionModel(
            id=execution_id,
            schedule_id=schedule_id,
            tenant_id=tenant_id,
            status=ExecutionStatus.PENDING,
            output_format=output_format,
            scheduled_for=scheduled_for,
            started_at=started_at,
            completed_at=None,
            error_detail=None,
        )
        async with session_scope(self.session_factory, session) as s:
            s.add(execution)
            await s.flush()
        logger.debug(
            f"Recorded pending execution '{execution_id}' for schedule '{schedule_id}'"
        )
        return execution

    async def record_result(
        self,
        execution_id: str,
        outcome: ExecutionOutcome,
        completed_at: datetime,
        session: Optional[AsyncSession] = None,
    ) -> None:
        """
        Move a pending execution to its terminal status.

        The update is conditional on the row still being pending, so two
        concurrent reporters cannot both complete the same execution.

        Raises:
            ExecutionNotFoundError: No execution with this id
            InvalidStateTransitionError: Execution already terminal, or the
                outcome is not a terminal status
        """
        if not outcome.status.is_terminal:
            raise InvalidStateTransitionError(
                message=f"cannot record non-terminal status '{outcome.status.value}'",
                code=ErrorCode.EXECUTION_INVALID_TRANSITION,
                help_text='report ExecutionOutcome.succeeded() or ExecutionOutcome.failed(...)',
            )

        error_detail = (
            outcome.error_detail if outcome.status == ExecutionStatus.FAILED else None
        )
        async with session_scope(self.session_factory, session) as s:
            result = await s.execute(
                update(ExportScheduleExecutionModel)
                .where(ExportScheduleExecutionModel.id == execution_id)
                .where(ExportScheduleExecutionModel.status == ExecutionStatus.PENDING)
                .values(
                    status=outcome.status,
                    completed_at=completed_at,
                    error_detail=error_detail,
                )
                .execution_options(synchronize_session=False)
            )
            if getattr(result, 'rowcount', 0) > 0:
                logger.debug(
                    f"Execution '{execution_id}' -> {outcome.status.value}"
                )
                return

            current = await s.scalar(
                select(ExportScheduleExecutionModel.status).where(
                    ExportScheduleExecutionModel.id == execution_id
                )
            )

        if current is None:
            raise ExecutionNotFoundError(
                message=f"execution '{execution_id}' not found",
                code=ErrorCode.EXECUTION_NOT_FOUND,
            )
        raise InvalidStateTransitionError(
            message=(
                f"execution '{execution_id}' is already {current.value}; "
                'completed executions are immutable'
            ),
            code=ErrorCode.EXECUTION_INVALID_TRANSITION,
        )

    async def delete_by_schedule_ids(
        self,
        schedule_ids: Sequence[str],
        session: Optional[AsyncSession] = None,
    ) -> int:
        """
        Delete every execution belonging to the given schedules.

        Returns:
            Number of execution rows removed
        """
        if not schedule_ids:
            return 0

        async with session_scope(self.session_factory, session) as s:
            result = await s.execute(
                delete(ExportScheduleExecutionModel)
                .where(ExportScheduleExecutionModel.schedule_id.in_(list(schedule_ids)))
                .execution_options(synchronize_session=False)
            )
        deleted = getattr(result, 'rowcount', 0)
        logger.debug(f'Deleted {deleted} execution(s) for {len(schedule_ids)} schedule(s)')
        return deleted

    async def count_by_schedule_id(
        self, schedule_id: str, session: Optional[AsyncSession] = None
    ) -> int:
        async with session_scope(self.session_factory, session) as s:
            count = await s.scalar(
                select(func.count())
                .select_from(ExportScheduleExecutionModel)
                .where(ExportScheduleExecutionModel.schedule_id == schedule_id)
            )
        return int(count or 0)

    async def list_for_schedule(
        self,
        tenant_id: str,
        schedule_id: str,
        limit: int = 50,
        session: Optional[AsyncSession] = None,
    ) -> list[ExecutionView]:
        """Executions of one schedule, newest first, scoped to the tenant."""
        async with session_scope(self.session_factory, session) as s:
            result = await s.execute(
                select(ExportScheduleExecutionModel)
                .where(ExportScheduleExecutionModel.tenant_id == tenant_id)
                .where(ExportScheduleExecutionModel.schedule_id == schedule_id)
                .order_by(
                    ExportScheduleExecutionModel.started_at.desc(),
                    ExportScheduleExecutionModel.id.desc(),
                )
                .limit(limit)
            )
            return [ExecutionView.model_validate(row) for row in result.scalars()]

    async def find_stale_pending(
        self,
        older_than: datetime,
        session: Optional[AsyncSession] = None,
    ) -> list[ExportScheduleExecutionModel]:
        """
        Pending executions started before `older_than`.

        These belong to deliveries whose process died before reporting back.
        """
        async with session_scope(self.session_factory, session) as s:
            result = await s.execute(
                select(ExportScheduleExecutionModel)
                .where(ExportScheduleExecutionModel.status == ExecutionStatus.PENDING)
                .where(ExportScheduleExecutionModel.started_at < older_than)
                .order_by(ExportScheduleExecutionModel.started_at.asc())
            )
            return list(result.scalars())
