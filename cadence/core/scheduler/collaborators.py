# cadence/core/scheduler/collaborators.py
"""
Interfaces of the external collaborators the scheduler depends on.

None of these are implemented here: the host application supplies a rate
limiter, a permission predicate and a delivery backend that renders and
sends the export.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from cadence.core.models.schedule import ExportFormat


@dataclass(slots=True, frozen=True)
class RateLimitDecision:
    allowed: bool


class RateLimiter(Protocol):
    """Request-rate limiter keyed by a client-identifying token."""

    async def rate_limit(self, key: str) -> RateLimitDecision: ...


class PermissionChecker(Protocol):
    """Capability predicate for the acting subject."""

    async def has_permission(self, subject: str, capability: str) -> bool: ...


@dataclass(slots=True, frozen=True)
class DeliveryJob:
    """
    Fully-resolved description of one export to render and send.

    Fields:
        execution_id: ledger row tracking this attempt
        schedule_id / tenant_id / user_id: owning schedule and its creator
        schedule_name: display name, for subjects and logs
        output_format: format snapshot taken at fire time
        recipients: addresses in schedule order
        email_subject / email_body: opaque templates
        filter_preset_id: opaque filter reference
        scheduled_for: the due instant being served
    """

    execution_id: str
    schedule_id: str
    tenant_id: str
    user_id: str
    schedule_name: str
    output_format: ExportFormat
    recipients: tuple[str, ...]
    email_subject: Optional[str]
    email_body: Optional[str]
    filter_preset_id: Optional[str]
    scheduled_for: Optional[datetime]


class ExportDelivery(Protocol):
    """
    Renders and transmits an export.

    Returning normally means success; raising means failure. The call may be
    cancelled when it exceeds the configured delivery timeout.
    """

    async def deliver(self, job: DeliveryJob) -> None: ...
