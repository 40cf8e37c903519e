"""
LedgerClose - Fixed Asset Models

Fixed asset register and the monthly depreciation history posted
during period close.
"""

import uuid
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean, Date, ForeignKey, Integer, Numeric, String, Text, Uuid,
    Enum as SQLEnum, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from ledgerclose.models.base import BaseModel, TenantMixin


class DepreciationMethod(str, Enum):
    STRAIGHT_LINE = "straight_line"
    REDUCING_BALANCE = "reducing_balance"
    UNITS_OF_PRODUCTION = "units_of_production"


class FixedAsset(BaseModel, TenantMixin):
    """A depreciable asset."""

    __tablename__ = "fixed_assets"

    entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    account_code: Mapped[str] = mapped_column(String(20), default="1000", nullable=False)
    purchase_date: Mapped[date] = mapped_column(Date, nullable=False)
    purchase_cost: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    residual_value: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2), default=Decimal("0.00"), nullable=False,
    )
    # Years, or total units for units of production
    useful_life: Mapped[int] = mapped_column(Integer, nullable=False)
    depreciation_method: Mapped[DepreciationMethod] = mapped_column(
        SQLEnum(DepreciationMethod), default=DepreciationMethod.STRAIGHT_LINE, nullable=False,
    )
    # Annual rate for reducing balance, e.g. 0.25
    depreciation_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(precision=7, scale=4), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class DepreciationEntry(BaseModel, TenantMixin):
    """Depreciation posted for one asset and one period end."""

    __tablename__ = "depreciation_entries"

    asset_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("fixed_assets.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    period: Mapped[date] = mapped_column(Date, nullable=False)
    depreciation_amount: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    accumulated_depreciation: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    net_book_value: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    __table_args__ = (
        UniqueConstraint("asset_id", "period", name="uq_depreciation_entries_asset_period"),
    )
