# cadence/core/scheduler/__init__.py
"""
Scheduler module for recurring export schedules.

Main components:
- ExportScheduler: Request-path operations and the background sweep
- ScheduleStore: Tenant-scoped schedule persistence and the atomic claim
- ExecutionLedger: Execution audit trail
- AdmissionControl: Rate limit, capability and quota gate
- calculate_next_fire: Next fire time calculation

Example usage:
    from cadence.core.scheduler import ExportScheduler, RequestContext

    scheduler = ExportScheduler(config, rate_limiter, permissions, delivery)
    await scheduler.start()
    result = await scheduler.list_schedules(RequestContext('tenant-1', 'user-1'))
"""

from cadence.core.scheduler.service import ExportScheduler, RequestContext, SweepReport
from cadence.core.scheduler.store import ScheduleStore
from cadence.core.scheduler.ledger import ExecutionLedger, ExecutionOutcome
from cadence.core.scheduler.admission import AdmissionControl, AdmissionRequest
from cadence.core.scheduler.calculator import calculate_next_fire

__all__ = [
    'ExportScheduler',
    'RequestContext',
    'SweepReport',
    'ScheduleStore',
    'ExecutionLedger',
    'ExecutionOutcome',
    'AdmissionControl',
    'AdmissionRequest',
    'calculate_next_fire',
]
