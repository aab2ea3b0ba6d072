"""Shared helpers and collaborator fakes for integration tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from cadence.core.models.schedule import ScheduleInput
from cadence.core.scheduler.collaborators import DeliveryJob, RateLimitDecision

T0 = datetime(2025, 6, 2, 6, 0, tzinfo=timezone.utc)  # a Monday


def schedule_body(**overrides: Any) -> dict[str, Any]:
    """Valid daily schedule body firing at 07:00."""
    body: dict[str, Any] = {
        'name': 'Daily roster',
        'frequency': 'daily',
        'format': 'csv',
        'recipients': ['ops@example.com', 'hr@example.com'],
        'time': '07:00',
    }
    body.update(overrides)
    return body


def schedule_input(**overrides: Any) -> ScheduleInput:
    return ScheduleInput.parse(schedule_body(**overrides))


# =============================================================================
# Collaborator fakes
# =============================================================================


class FakeClock:
    """Callable clock whose time only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeRateLimiter:
    def __init__(self) -> None:
        self.allowed = True
        self.keys: list[str] = []

    async def rate_limit(self, key: str) -> RateLimitDecision:
        self.keys.append(key)
        return RateLimitDecision(allowed=self.allowed)


class FakePermissions:
    """Grants the export capability to every user not in `denied`."""

    def __init__(self) -> None:
        self.denied: set[str] = set()

    async def has_permission(self, subject: str, capability: str) -> bool:
        return subject not in self.denied


class RecordingDelivery:
    """
    Delivery backend that records jobs.

    behavior(job) may raise to fail the delivery, or await to hold it open.
    """

    def __init__(self) -> None:
        self.jobs: list[DeliveryJob] = []
        self.behavior: Optional[Callable[[DeliveryJob], Any]] = None

    async def deliver(self, job: DeliveryJob) -> None:
        self.jobs.append(job)
        if self.behavior is not None:
            outcome = self.behavior(job)
            if asyncio.iscoroutine(outcome):
                await outcome

