"""
LedgerClose - Period Close Models

Period close workflow:
- PeriodClose: one per (tenant, entity, period start, period end)
- CloseTask: fixed, ordered checklist created with the close
- VarianceAlert: balance drift flagged during the close
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid,
    Enum as SQLEnum, Index, JSON, UniqueConstraint, text,
)
from sqlalchemy.orm import Mapped, mapped_column

from ledgerclose.models.base import BaseModel, TenantMixin


# =============================================================================
# ENUMS
# =============================================================================

class CloseStatus(str, Enum):
    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    LOCKED = "locked"
    CLOSED = "closed"
    REOPENED = "reopened"


class CloseTaskType(str, Enum):
    ACCRUAL = "accrual"
    DEPRECIATION = "depreciation"
    PREPAYMENT = "prepayment"
    RECONCILIATION = "reconciliation"
    VALIDATION = "validation"
    REPORT = "report"
    TAX = "tax"
    FILING = "filing"
    APPROVAL = "approval"


class CloseTaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Checklist created for every new close, in execution order
DEFAULT_CLOSE_TASKS = [
    (CloseTaskType.ACCRUAL, "Post accruals"),
    (CloseTaskType.DEPRECIATION, "Post depreciation"),
    (CloseTaskType.PREPAYMENT, "Amortize prepayments"),
    (CloseTaskType.RECONCILIATION, "Complete bank reconciliations"),
    (CloseTaskType.VALIDATION, "Validate balances"),
    (CloseTaskType.REPORT, "Generate trial balance"),
    (CloseTaskType.TAX, "Calculate tax provisions"),
    (CloseTaskType.FILING, "Prepare filing documents"),
    (CloseTaskType.APPROVAL, "Obtain management approval"),
]


# =============================================================================
# MODELS
# =============================================================================

class PeriodClose(BaseModel, TenantMixin):
    """Close of a tenant's books (optionally for one entity) over a date range."""

    __tablename__ = "period_close"

    entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    close_status: Mapped[CloseStatus] = mapped_column(
        SQLEnum(CloseStatus), default=CloseStatus.DRAFT, nullable=False,
    )

    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    reopened_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reopened_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    variance_alerts: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    generated_reports: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    # A NULL entity_id is distinct under the unique constraint, so tenant-wide
    # closes get their own partial index.
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "entity_id", "period_start", "period_end",
            name="uq_period_close_period",
        ),
        Index(
            "uq_period_close_tenant_wide",
            "tenant_id", "period_start", "period_end",
            unique=True,
            postgresql_where=text("entity_id IS NULL"),
            sqlite_where=text("entity_id IS NULL"),
        ),
    )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "tenant_id": str(self.tenant_id),
            "entity_id": str(self.entity_id) if self.entity_id is not None else None,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "close_status": self.close_status.value,
            "locked_at": self.locked_at.isoformat() if self.locked_at is not None else None,
            "locked_by": self.locked_by,
            "closed_at": self.closed_at.isoformat() if self.closed_at is not None else None,
            "closed_by": self.closed_by,
            "variance_alerts": self.variance_alerts or [],
            "generated_reports": self.generated_reports or [],
        }


class CloseTask(BaseModel):
    """One checklist item of a period close."""

    __tablename__ = "close_tasks"

    period_close_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("period_close.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    task_type: Mapped[CloseTaskType] = mapped_column(SQLEnum(CloseTaskType), nullable=False)
    task_name: Mapped[str] = mapped_column(String(200), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[CloseTaskStatus] = mapped_column(
        SQLEnum(CloseTaskStatus), default=CloseTaskStatus.PENDING, nullable=False,
    )
    blocker_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    __table_args__ = (
        UniqueConstraint("period_close_id", "task_type", name="uq_close_tasks_close_type"),
    )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "task_type": self.task_type.value,
            "task_name": self.task_name,
            "priority": self.priority,
            "status": self.status.value,
            "blocker_reason": self.blocker_reason,
            "result_data": self.result_data,
            "completed_at": self.completed_at.isoformat() if self.completed_at is not None else None,
            "completed_by": self.completed_by,
        }


class VarianceAlert(BaseModel, TenantMixin):
    """Balance movement between periods that exceeded the drift threshold."""

    __tablename__ = "variance_alerts"

    period_close_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("period_close.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False)
    account_code: Mapped[str] = mapped_column(String(20), nullable=False)
    current_period_amount: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    prior_period_amount: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    variance_amount: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    variance_percentage: Mapped[Optional[Decimal]] = mapped_column(Numeric(precision=9, scale=2), nullable=True)
    severity: Mapped[AlertSeverity] = mapped_column(SQLEnum(AlertSeverity), nullable=False)
    acknowledged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "period_close_id": str(self.period_close_id),
            "alert_type": self.alert_type,
            "account_code": self.account_code,
            "current_period_amount": float(self.current_period_amount),
            "prior_period_amount": float(self.prior_period_amount),
            "variance_amount": float(self.variance_amount),
            "variance_percentage": float(self.variance_percentage) if self.variance_percentage is not None else None,
            "severity": self.severity.value,
            "acknowledged": self.acknowledged,
        }
