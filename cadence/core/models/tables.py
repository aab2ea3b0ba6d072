from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLAlchemyEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    true as sa_true,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from cadence.core.models.schedule import ExportFormat, Frequency
from cadence.core.types.status import ExecutionStatus


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware DateTime that always round-trips as UTC.

    SQLite drops tzinfo on storage; values are normalized to UTC on the way in
    and re-tagged as UTC on the way out so comparisons stay aware everywhere.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(
        self, value: Optional[datetime], dialect: Dialect
    ) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError('naive datetime passed to a UTC column')
        value = value.astimezone(timezone.utc)
        if dialect.name == 'sqlite':
            return value.replace(tzinfo=None)
        return value

    def process_result_value(
        self, value: Optional[datetime], dialect: Dialect
    ) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


_JsonType = JSONB().with_variant(JSON(), 'sqlite')


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for cadence models"""

    pass


class ExportScheduleModel(Base):
    """
    SQLAlchemy model for recurring export schedules.

    - id: str # uuid4, from the scheduler's id factory
    - tenant_id: str # owning tenant, every query is scoped by it
    - user_id: str # creator
    - name / description: str # display fields
    - frequency: Frequency # DAILY, WEEKLY, MONTHLY
    - day_of_week: int # 0-6 (0=Sunday), weekly only
    - day_of_month: int # 1-31, monthly only, clamped to month length at fire time
    - time: str # HH:MM, evaluated in the configured sweep timezone
    - format: ExportFormat # CSV, XLSX, JSON, PDF
    - recipients: list[str] # delivery addresses, in submission order
    - email_subject / email_body: str # opaque templates for the delivery collaborator
    - filter_preset_id: str # opaque external filter reference
    - is_active: bool # inactive schedules are never selected by the sweep
    - next_fire_at: datetime # next due instant; NULL while inactive
    - pending_execution_id: str # execution in flight; NULL when idle
    - created_at / updated_at: datetime
    """

    __tablename__ = 'cadence_export_schedules'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Recurrence
    frequency: Mapped[Frequency] = mapped_column(
        SQLAlchemyEnum(Frequency, native_enum=False, length=16), nullable=False
    )
    day_of_week: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    time: Mapped[str] = mapped_column(String(5), nullable=False, default='09:00')

    # Delivery
    format: Mapped[ExportFormat] = mapped_column(
        SQLAlchemyEnum(ExportFormat, native_enum=False, length=16), nullable=False
    )
    recipients: Mapped[list[str]] = mapped_column(_JsonType, nullable=False)
    email_subject: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    email_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    filter_preset_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )

    # Lifecycle
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=sa_true()
    )
    next_fire_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(), nullable=True
    )
    # Active-Pending token: set and cleared with conditional UPDATEs only
    pending_execution_id: Mapped[Optional[str]] = mapped_column(
        String(36), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (
        # Sweep selection: active, idle, due
        Index(
            'idx_cadence_schedules_due',
            'is_active',
            'next_fire_at',
        ),
        Index('idx_cadence_schedules_tenant_created', 'tenant_id', 'created_at'),
    )


class ExportScheduleExecutionModel(Base):
    """
    One firing attempt of an export schedule.

    - id: str # uuid4
    - schedule_id: str # owning schedule; rows are removed by the scheduler before the schedule
    - tenant_id: str # copied from the schedule for tenant-scoped reads
    - status: ExecutionStatus # PENDING, SUCCEEDED, FAILED
    - output_format: ExportFormat # schedule format at fire time
    - scheduled_for: datetime # the due instant that triggered this attempt
    - started_at: datetime # when the sweep selected the schedule
    - completed_at: datetime # NULL while pending; immutable once set
    - error_detail: str # only when FAILED
    """

    __tablename__ = 'cadence_export_schedule_executions'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    schedule_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey('cadence_export_schedules.id'),
        nullable=False,
        index=True,
    )
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    status: Mapped[ExecutionStatus] = mapped_column(
        SQLAlchemyEnum(ExecutionStatus, native_enum=False, length=16),
        nullable=False,
        default=ExecutionStatus.PENDING,
        index=True,
    )
    output_format: Mapped[ExportFormat] = mapped_column(
        SQLAlchemyEnum(ExportFormat, native_enum=False, length=16), nullable=False
    )

    scheduled_for: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(), nullable=True
    )
    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(), nullable=True
    )
    error_detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
