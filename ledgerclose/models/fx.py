"""
LedgerClose - Foreign Exchange Models

Exchange rates (one per tenant, pair, date and rate type) and the
remeasurement audit log.
"""

import uuid
from datetime import date
from decimal import Decimal
from enum import Enum

from sqlalchemy import Date, Numeric, String, Uuid, Enum as SQLEnum, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from ledgerclose.models.base import BaseModel, TenantMixin


class RateType(str, Enum):
    SPOT = "spot"
    AVERAGE = "average"
    HISTORICAL = "historical"


class ExchangeRate(BaseModel, TenantMixin):
    """Exchange rate for converting from_currency into to_currency."""

    __tablename__ = "exchange_rates"

    from_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    to_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rate_date: Mapped[date] = mapped_column(Date, nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=8), nullable=False)
    rate_type: Mapped[RateType] = mapped_column(SQLEnum(RateType), default=RateType.SPOT, nullable=False)
    source: Mapped[str] = mapped_column(String(20), default="manual", nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "from_currency", "to_currency", "rate_date", "rate_type",
            name="uq_exchange_rates_pair_date_type",
        ),
        Index("ix_exchange_rates_lookup", "tenant_id", "from_currency", "to_currency", "rate_date"),
    )


class FXRemeasurementLog(BaseModel, TenantMixin):
    """One remeasured ledger entry."""

    __tablename__ = "fx_remeasurement_log"

    ledger_entry_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    original_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    original_amount: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    functional_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    exchange_rate: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=8), nullable=False)
    remeasured_amount: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    fx_gain_loss: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    remeasurement_date: Mapped[date] = mapped_column(Date, nullable=False)
