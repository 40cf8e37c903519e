"""
LedgerClose - Accrual and Prepayment Models
"""

import uuid
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import Date, Integer, Numeric, String, Text, Uuid, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from ledgerclose.models.base import BaseModel, TenantMixin


class AccrualStatus(str, Enum):
    PENDING = "pending"
    POSTED = "posted"
    REVERSED = "reversed"


class PrepaymentStatus(str, Enum):
    PENDING = "pending"
    POSTED = "posted"
    AMORTIZED = "amortized"


class Accrual(BaseModel, TenantMixin):
    """Expense incurred in a period but not yet invoiced."""

    __tablename__ = "accruals"

    entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    account_code: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[AccrualStatus] = mapped_column(
        SQLEnum(AccrualStatus), default=AccrualStatus.PENDING, nullable=False,
    )
    transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    reversal_transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "account_code": self.account_code,
            "amount": float(self.amount),
            "description": self.description,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "status": self.status.value,
            "transaction_id": str(self.transaction_id) if self.transaction_id is not None else None,
        }


class Prepayment(BaseModel, TenantMixin):
    """Expense paid in advance and released over several months."""

    __tablename__ = "prepayments"

    entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    account_code: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    amortization_periods: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[PrepaymentStatus] = mapped_column(
        SQLEnum(PrepaymentStatus), default=PrepaymentStatus.PENDING, nullable=False,
    )
    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "account_code": self.account_code,
            "amount": float(self.amount),
            "description": self.description,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "amortization_periods": self.amortization_periods,
            "status": self.status.value,
        }
