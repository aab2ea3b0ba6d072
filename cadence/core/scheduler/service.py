# cadence/core/scheduler/service.py
from __future__ import annotations
import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional, Sequence
from result import Err, Ok, is_err
from cadence.core.db.engine import Database
from cadence.core.db.errors import is_retryable_db_error
from cadence.core.defaults import ABANDONED_ERROR_DETAIL, TIMEOUT_ERROR_DETAIL
from cadence.core.errors import (
    ExecutionNotFoundError,
    InvalidStateTransitionError,
    MultipleValidationErrors,
    ScheduleValidationError,
    iter_validation_errors,
)
from cadence.core.logging import get_logger
from cadence.core.models.config import CadenceConfig
from cadence.core.models.schedule import (
    BulkDeleteResult,
    BulkUpdateResult,
    ExecutionView,
    ExportScheduleView,
    ScheduleInput,
    ScheduleSummary,
)
from cadence.core.models.tables import ExportScheduleModel
from cadence.core.scheduler.admission import (
    AdmissionControl,
    AdmissionRequest,
    DenialReason,
    quota_message,
)
from cadence.core.scheduler.calculator import calculate_next_fire, next_fire_for
from cadence.core.scheduler.collaborators import (
    DeliveryJob,
    ExportDelivery,
    PermissionChecker,
    RateLimiter,
)
from cadence.core.scheduler.ledger import ExecutionLedger, ExecutionOutcome
from cadence.core.scheduler.result_types import (
    ExportErrorCode,
    ExportOperationError,
    ExportResult,
    FieldError,
)
from cadence.core.scheduler.store import ScheduleStore
from cadence.core.types.status import ExecutionStatus

logger = get_logger('scheduler')

_DENIAL_CODES: dict[DenialReason, ExportErrorCode] = {
    DenialReason.RATE_LIMITED: ExportErrorCode.RATE_LIMITED,
    DenialReason.FORBIDDEN: ExportErrorCode.FORBIDDEN,
    DenialReason.QUOTA_EXCEEDED: ExportErrorCode.QUOTA_EXCEEDED,
}


@dataclass(slots=True, frozen=True)
class RequestContext:
    """
    Resolved identity of a request.

    Fields:
        tenant_id: tenant every read and write is scoped to
        user_id: acting user, checked for the export capability
        client_token: rate-limit key (e.g. forwarded-for address), optional
    """

    tenant_id: str
    user_id: str
    client_token: Optional[str] = None


@dataclass(slots=True, frozen=True)
class SweepReport:
    """Counts from one tick of the sweep."""

    fired: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    abandoned: int = 0


def _default_id_factory() -> str:
    return str(uuid.uuid4())


def _default_clock() -> datetime:
    return datetime.now(timezone.utc)


class ExportScheduler:
    """
    Orchestrates export schedules for many tenants.

    Request path: every public operation is admitted (rate limit, capability,
    and quota on create) before touching storage, and returns an
    ExportResult. Nothing raised below this class reaches the caller.

    Background path: tick() fires due schedules. Each schedule moves through

        Inactive <-> Active-Idle -> Active-Pending -> Active-Idle

    where Active-Pending is held by the schedule's pending_execution_id and
    entered only through an atomic claim.

    The host either calls tick() from its own timer or runs run_forever().
    """

    def __init__(
        self,
        config: CadenceConfig,
        rate_limiter: RateLimiter,
        permissions: PermissionChecker,
        delivery: ExportDelivery,
        *,
        database: Optional[Database] = None,
        id_factory: Callable[[], str] = _default_id_factory,
        clock: Callable[[], datetime] = _default_clock,
    ):
        self.config = config
        self.delivery = delivery
        self.id_factory = id_factory
        self.clock = clock

        self.database = database or Database(config.database)
        self.session_factory = self.database.session_factory
        self.ledger = ExecutionLedger(self.session_factory)
        self.store = ScheduleStore(self.session_factory, self.ledger)
        self.admission = AdmissionControl(
            rate_limiter,
            permissions,
            self.store.count,
            capability=config.export_capability,
            max_schedules_per_tenant=config.max_schedules_per_tenant,
        )

        self._stop = asyncio.Event()
        self._started = False

        logger.info(
            f'Export scheduler initialized, timezone={config.sweep.timezone}, '
            f'check_interval={config.sweep.check_interval_seconds}s, '
            f'max_schedules_per_tenant={config.max_schedules_per_tenant}'
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Initialize the database schema. Raises if it cannot be created."""
        if self._started:
            return

        init_result = await self.database.ensure_schema_initialized()
        if is_err(init_result):
            err = init_result.err_value
            raise RuntimeError(
                f'Schema initialization failed: {err.message}',
            ) from err.exception

        self._started = True
        logger.info('Export scheduler started')

    async def stop(self) -> None:
        """Clean shutdown: stop the loop and dispose the engine."""
        self._stop.set()

        close_result = await self.database.close_async()
        if is_err(close_result):
            logger.error(f'Database close failed: {close_result.err_value.message}')
        else:
            logger.info('Database closed')

        self._started = False
        logger.info('Export scheduler stopped')

    def request_stop(self) -> None:
        """Request the sweep loop to stop gracefully."""
        self._stop.set()

    async def run_forever(self) -> None:
        """Sweep loop: tick, then wait check_interval_seconds or a stop request."""
        logger.info('Starting sweep loop')

        try:
            await self.start()

            while not self._stop.is_set():
                try:
                    report = await self.tick()
                    if report.fired or report.abandoned:
                        logger.info(
                            f'Sweep: fired={report.fired} succeeded={report.succeeded} '
                            f'failed={report.failed} skipped={report.skipped} '
                            f'abandoned={report.abandoned}'
                        )
                except Exception as e:
                    logger.error(f'Error in sweep loop: {e}', exc_info=True)

                try:
                    await asyncio.wait_for(
                        self._stop.wait(),
                        timeout=self.config.sweep.check_interval_seconds,
                    )
                    break
                except asyncio.TimeoutError:
                    continue

        finally:
            await self.stop()

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    async def list_schedules(
        self, ctx: RequestContext
    ) -> ExportResult[list[ScheduleSummary]]:
        """All schedules of the caller's tenant, newest first."""
        admitted = await self._admit(ctx)
        if is_err(admitted):
            return admitted

        try:
            return Ok(await self.store.list(ctx.tenant_id))
        except Exception as e:
            return self._internal('list export schedules', ctx, e)

    async def create_schedule(
        self, ctx: RequestContext, fields: Mapping[str, Any]
    ) -> ExportResult[ExportScheduleView]:
        """
        Validate and create a schedule.

        The body is parsed before admission so validation never depends on
        storage, but a validation failure is only reported once the request
        has been admitted.

        Returns:
            Ok(ExportScheduleView), or Err with RATE_LIMITED, FORBIDDEN,
            QUOTA_EXCEEDED, VALIDATION_FAILED or INTERNAL
        """
        parsed = _parse_input(fields)

        admitted = await self._admit(ctx, check_quota=True)
        if is_err(admitted):
            return admitted
        if is_err(parsed):
            return parsed
        schedule_input = parsed.ok_value

        try:
            now = self.clock()
            schedule = await self.store.create(
                tenant_id=ctx.tenant_id,
                user_id=ctx.user_id,
                schedule_input=schedule_input,
                schedule_id=self.id_factory(),
                now=now,
                next_fire_at=self._initial_fire(schedule_input, now),
                max_per_tenant=self.config.max_schedules_per_tenant,
            )
        except Exception as e:
            return self._internal('create export schedule', ctx, e)

        if schedule is None:
            return Err(
                ExportOperationError(
                    code=ExportErrorCode.QUOTA_EXCEEDED,
                    message=quota_message(self.config.max_schedules_per_tenant),
                )
            )
        return Ok(ExportScheduleView.model_validate(schedule))

    async def update_schedule(
        self, ctx: RequestContext, schedule_id: str, fields: Mapping[str, Any]
    ) -> ExportResult[ExportScheduleView]:
        """
        Replace a schedule's definition with the same validation as create.

        next_fire_at is recomputed from now for an active result.
        """
        parsed = _parse_input(fields)

        admitted = await self._admit(ctx)
        if is_err(admitted):
            return admitted
        if is_err(parsed):
            return parsed
        schedule_input = parsed.ok_value

        try:
            now = self.clock()
            schedule = await self.store.update(
                tenant_id=ctx.tenant_id,
                schedule_id=schedule_id,
                schedule_input=schedule_input,
                now=now,
                next_fire_at=self._initial_fire(schedule_input, now),
            )
        except Exception as e:
            return self._internal('update export schedule', ctx, e)

        if schedule is None:
            return self._not_found(schedule_id)
        return Ok(ExportScheduleView.model_validate(schedule))

    async def bulk_toggle_active(
        self,
        ctx: RequestContext,
        schedule_ids: Sequence[str],
        active: Optional[bool] = None,
    ) -> ExportResult[BulkUpdateResult]:
        """
        Activate, deactivate or flip many schedules.

        Args:
            schedule_ids: Ids to address; ids of other tenants are dropped
            active: True/False sets every addressed schedule explicitly,
                None flips each one's own current state

        Returns:
            Ok(BulkUpdateResult) counting only the caller's schedules
        """
        admitted = await self._admit(ctx)
        if is_err(admitted):
            return admitted

        try:
            owned = await self.store.filter_owned_ids(ctx.tenant_id, schedule_ids)
            dropped = len(set(schedule_ids)) - len(owned)
            if dropped:
                logger.warning(
                    f"Dropped {dropped} id(s) not owned by tenant '{ctx.tenant_id}' "
                    'from bulk toggle'
                )

            now = self.clock()
            if active is None:
                updated = await self.store.bulk_toggle_active(
                    ctx.tenant_id, owned, now, self._next_fire
                )
            else:
                updated = await self.store.bulk_set_active(
                    ctx.tenant_id, owned, active, now, self._next_fire
                )
        except Exception as e:
            return self._internal('update export schedules', ctx, e)

        return Ok(BulkUpdateResult(updated_count=updated))

    async def bulk_delete(
        self, ctx: RequestContext, schedule_ids: Sequence[str]
    ) -> ExportResult[BulkDeleteResult]:
        """
        Delete schedules and their execution history.

        An empty id list is a validation failure; a list matching none of the
        caller's schedules is NOT_FOUND. Partial matches delete what matched.
        """
        admitted = await self._admit(ctx)
        if is_err(admitted):
            return admitted

        if not schedule_ids:
            return Err(
                ExportOperationError(
                    code=ExportErrorCode.VALIDATION_FAILED,
                    message='No schedule IDs provided',
                    fields=(FieldError('ids', 'at least one schedule id is required'),),
                )
            )

        try:
            owned = await self.store.filter_owned_ids(ctx.tenant_id, schedule_ids)
            if not owned:
                return Err(
                    ExportOperationError(
                        code=ExportErrorCode.NOT_FOUND,
                        message='No matching export schedules found',
                    )
                )
            deleted = await self.store.bulk_delete(ctx.tenant_id, owned)
        except Exception as e:
            return self._internal('delete export schedules', ctx, e)

        return Ok(BulkDeleteResult(deleted_count=deleted))

    async def list_executions(
        self, ctx: RequestContext, schedule_id: str, limit: int = 50
    ) -> ExportResult[list[ExecutionView]]:
        """Execution history of one of the caller's schedules, newest first."""
        admitted = await self._admit(ctx)
        if is_err(admitted):
            return admitted

        try:
            schedule = await self.store.get(ctx.tenant_id, schedule_id)
            if schedule is None:
                return self._not_found(schedule_id)
            executions = await self.ledger.list_for_schedule(
                ctx.tenant_id, schedule_id, limit=limit
            )
        except Exception as e:
            return self._internal('list export executions', ctx, e)

        return Ok(executions)

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    async def tick(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Run one sweep.

        1. Fail pending executions older than stale_pending_after_ms as
           `Abandoned` and release their schedules
        2. Select due ids and claim each one atomically; a lost claim is skipped
        3. Deliver all claimed jobs concurrently, each under the delivery timeout
        4. Record each outcome and release the schedule with a next fire time
           computed from the completion instant

        A failure for one schedule never stops the others.
        """
        now = now or self.clock()

        abandoned = await self._reap_stale(now)

        due_ids = await self.store.select_due_ids(now)
        jobs: list[DeliveryJob] = []
        skipped = 0
        for schedule_id in due_ids:
            try:
                job = await self._claim(schedule_id, now)
            except Exception as e:
                logger.error(
                    f"Error claiming schedule '{schedule_id}': {e}", exc_info=True
                )
                job = None
            if job is None:
                skipped += 1
            else:
                jobs.append(job)

        outcomes = await asyncio.gather(*(self._execute(job) for job in jobs))
        succeeded = sum(
            1 for outcome in outcomes if outcome.status == ExecutionStatus.SUCCEEDED
        )

        return SweepReport(
            fired=len(jobs),
            succeeded=succeeded,
            failed=len(jobs) - succeeded,
            skipped=skipped,
            abandoned=abandoned,
        )

    async def _claim(self, schedule_id: str, now: datetime) -> Optional[DeliveryJob]:
        """Claim one schedule and record its pending execution in one transaction."""
        execution_id = self.id_factory()
        async with self.session_factory() as session:
            async with session.begin():
                schedule = await self.store.claim(
                    schedule_id, execution_id, now, session=session
                )
                if schedule is None:
                    return None
                await self.ledger.record_start(
                    schedule_id=schedule.id,
                    tenant_id=schedule.tenant_id,
                    output_format=schedule.format,
                    started_at=now,
                    scheduled_for=schedule.next_fire_at,
                    execution_id=execution_id,
                    session=session,
                )

        logger.info(
            f"Fired schedule '{schedule.id}' ({schedule.name}) for tenant "
            f"'{schedule.tenant_id}', execution '{execution_id}'"
        )
        return DeliveryJob(
            execution_id=execution_id,
            schedule_id=schedule.id,
            tenant_id=schedule.tenant_id,
            user_id=schedule.user_id,
            schedule_name=schedule.name,
            output_format=schedule.format,
            recipients=tuple(schedule.recipients),
            email_subject=schedule.email_subject,
            email_body=schedule.email_body,
            filter_preset_id=schedule.filter_preset_id,
            scheduled_for=schedule.next_fire_at,
        )

    async def _execute(self, job: DeliveryJob) -> ExecutionOutcome:
        """Deliver one job under the timeout and persist whatever happened."""
        timeout = self.config.sweep.delivery_timeout_ms / 1000
        try:
            await asyncio.wait_for(self.delivery.deliver(job), timeout=timeout)
            outcome = ExecutionOutcome.succeeded()
        except asyncio.TimeoutError:
            logger.warning(
                f"Delivery for schedule '{job.schedule_id}' timed out after {timeout}s"
            )
            outcome = ExecutionOutcome.failed(TIMEOUT_ERROR_DETAIL)
        except Exception as e:
            logger.warning(
                f"Delivery for schedule '{job.schedule_id}' failed: {e}", exc_info=True
            )
            outcome = ExecutionOutcome.failed(str(e) or type(e).__name__)

        try:
            await self._finish(job.schedule_id, job.execution_id, outcome, self.clock())
        except Exception as e:
            logger.error(
                f"Error recording outcome of execution '{job.execution_id}': {e}",
                exc_info=True,
            )
        return outcome

    async def _finish(
        self,
        schedule_id: str,
        execution_id: str,
        outcome: ExecutionOutcome,
        completed_at: datetime,
    ) -> None:
        """
        Record a terminal outcome and release the schedule in one transaction.

        The next fire time is computed from `completed_at` with the schedule's
        current recurrence, so a failed run still advances the schedule.
        """
        async with self.session_factory() as session:
            async with session.begin():
                # Schedule row before execution row, the same order claim uses
                schedule = await self.store.get_for_release(schedule_id, session=session)
                try:
                    await self.ledger.record_result(
                        execution_id, outcome, completed_at, session=session
                    )
                except ExecutionNotFoundError:
                    # Schedule deleted mid-delivery; its history went with it
                    logger.info(
                        f"Execution '{execution_id}' vanished before completion, "
                        'schedule was deleted'
                    )
                    return

                next_fire_at = (
                    self._next_fire(schedule, completed_at)
                    if schedule is not None and schedule.is_active
                    else None
                )
                await self.store.release(
                    schedule_id, execution_id, next_fire_at, session=session
                )

        logger.info(
            f"Execution '{execution_id}' of schedule '{schedule_id}' "
            f'{outcome.status.value}, next_fire_at={next_fire_at}'
        )

    async def _reap_stale(self, now: datetime) -> int:
        """Fail executions stuck in pending past the stale threshold."""
        threshold = now - timedelta(milliseconds=self.config.sweep.stale_pending_after_ms)
        try:
            stale = await self.ledger.find_stale_pending(threshold)
        except Exception as e:
            logger.error(f'Error finding stale executions: {e}', exc_info=True)
            return 0

        reaped = 0
        for execution in stale:
            try:
                await self._finish(
                    execution.schedule_id,
                    execution.id,
                    ExecutionOutcome.failed(ABANDONED_ERROR_DETAIL),
                    now,
                )
                reaped += 1
            except InvalidStateTransitionError:
                logger.debug(f"Execution '{execution.id}' completed while reaping")
            except Exception as e:
                logger.error(
                    f"Error abandoning execution '{execution.id}': {e}", exc_info=True
                )

        if reaped:
            logger.warning(f'Abandoned {reaped} stale pending execution(s)')
        return reaped

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _next_fire(self, schedule: ExportScheduleModel, after: datetime) -> datetime:
        return next_fire_for(schedule, after, self.config.sweep.timezone)

    def _initial_fire(
        self, schedule_input: ScheduleInput, now: datetime
    ) -> Optional[datetime]:
        if not schedule_input.is_active:
            return None
        return calculate_next_fire(
            schedule_input.recurrence(), now, self.config.sweep.timezone
        )

    async def _admit(
        self, ctx: RequestContext, *, check_quota: bool = False
    ) -> ExportResult[None]:
        try:
            decision = await self.admission.admit(
                AdmissionRequest(
                    tenant_id=ctx.tenant_id,
                    subject=ctx.user_id,
                    client_token=ctx.client_token,
                    check_quota=check_quota,
                )
            )
        except Exception as e:
            return self._internal('admit request', ctx, e)

        if is_err(decision):
            denial = decision.err_value
            return Err(
                ExportOperationError(
                    code=_DENIAL_CODES[denial.reason],
                    message=denial.message,
                )
            )
        return Ok(None)

    @staticmethod
    def _not_found(schedule_id: str) -> Err[ExportOperationError]:
        return Err(
            ExportOperationError(
                code=ExportErrorCode.NOT_FOUND,
                message=f"Export schedule '{schedule_id}' not found",
            )
        )

    @staticmethod
    def _internal(
        operation: str, ctx: RequestContext, exc: BaseException
    ) -> Err[ExportOperationError]:
        logger.error(
            f"Failed to {operation} for tenant '{ctx.tenant_id}': {exc}",
            exc_info=exc,
        )
        return Err(
            ExportOperationError(
                code=ExportErrorCode.INTERNAL,
                message=f'Failed to {operation}',
                retryable=is_retryable_db_error(exc),
            )
        )


def _parse_input(fields: Mapping[str, Any]) -> ExportResult[ScheduleInput]:
    """Parse a request body, collecting every field problem into one error."""
    try:
        return Ok(ScheduleInput.parse(fields))
    except (ScheduleValidationError, MultipleValidationErrors) as exc:
        problems = tuple(
            FieldError(err.field or 'body', err.message)
            for err in iter_validation_errors(exc)
        )
        return Err(
            ExportOperationError(
                code=ExportErrorCode.VALIDATION_FAILED,
                message=f'Invalid export schedule: {len(problems)} field error(s)',
                fields=problems,
            )
        )