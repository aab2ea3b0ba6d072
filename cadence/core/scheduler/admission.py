# cadence/core/scheduler/admission.py
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional
from result import Err, Ok, Result
from cadence.core.defaults import (
    ANONYMOUS_CLIENT,
    EXPORT_CAPABILITY,
    MAX_SCHEDULES_PER_TENANT,
)
from cadence.core.logging import get_logger
from cadence.core.scheduler.collaborators import PermissionChecker, RateLimiter

logger = get_logger('admission')


class DenialReason(str, Enum):
    RATE_LIMITED = 'RATE_LIMITED'
    FORBIDDEN = 'FORBIDDEN'
    QUOTA_EXCEEDED = 'QUOTA_EXCEEDED'


@dataclass(slots=True, frozen=True)
class AdmissionDenial:
    reason: DenialReason
    message: str


@dataclass(slots=True, frozen=True)
class AdmissionRequest:
    """
    Everything the gate needs to judge one request.

    Fields:
        tenant_id: tenant the request acts on
        subject: acting user, checked for the export capability
        client_token: client-identifying token for rate limiting (e.g. forwarded IP)
        check_quota: True for schedule creation only
    """

    tenant_id: str
    subject: str
    client_token: Optional[str] = None
    check_quota: bool = False


type AdmissionResult = Result[None, AdmissionDenial]


class AdmissionControl:
    """
    Per-request gate applied before every scheduler operation.

    Checks run in a fixed order and stop at the first denial:
    1. Rate limit, keyed by client token ('anonymous' when absent)
    2. Capability check for the acting subject
    3. Tenant quota (creation only)

    Performs no mutation of its own; the rate limiter's counters belong to
    the limiter.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        permissions: PermissionChecker,
        count_schedules: Callable[[str], Awaitable[int]],
        *,
        capability: str = EXPORT_CAPABILITY,
        max_schedules_per_tenant: int = MAX_SCHEDULES_PER_TENANT,
    ):
        self.rate_limiter = rate_limiter
        self.permissions = permissions
        self.count_schedules = count_schedules
        self.capability = capability
        self.max_schedules_per_tenant = max_schedules_per_tenant

    async def admit(self, request: AdmissionRequest) -> AdmissionResult:
        key = request.client_token or ANONYMOUS_CLIENT
        decision = await self.rate_limiter.rate_limit(key)
        if not decision.allowed:
            logger.warning(f"Rate limit exceeded for client '{key}'")
            return Err(
                AdmissionDenial(DenialReason.RATE_LIMITED, 'Rate limit exceeded')
            )

        if not await self.permissions.has_permission(request.subject, self.capability):
            logger.warning(
                f"Subject '{request.subject}' lacks capability '{self.capability}'"
            )
            return Err(AdmissionDenial(DenialReason.FORBIDDEN, 'Forbidden'))

        if request.check_quota:
            existing = await self.count_schedules(request.tenant_id)
            if existing >= self.max_schedules_per_tenant:
                logger.info(
                    f"Tenant '{request.tenant_id}' at schedule quota "
                    f'({existing}/{self.max_schedules_per_tenant})'
                )
                return Err(
                    AdmissionDenial(
                        DenialReason.QUOTA_EXCEEDED,
                        quota_message(self.max_schedules_per_tenant),
                    )
                )

        return Ok(None)


def quota_message(limit: int) -> str:
    return f'Maximum number of export schedules ({limit}) reached for this tenant'
