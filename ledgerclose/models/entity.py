"""
LedgerClose - Multi-Entity Models

Reporting entities, intercompany transactions and stored consolidated reports.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Numeric, String, Text, Uuid,
    Enum as SQLEnum, JSON, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from ledgerclose.models.base import BaseModel, TenantMixin


class EntityType(str, Enum):
    PARENT = "parent"
    SUBSIDIARY = "subsidiary"
    DIVISION = "division"
    DEPARTMENT = "department"


class Entity(BaseModel, TenantMixin):
    """Legal or reporting unit; parents form a tree per tenant."""

    __tablename__ = "entities"

    parent_entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("entities.id", ondelete="SET NULL"),
        nullable=True,
    )
    entity_name: Mapped[str] = mapped_column(String(200), nullable=False)
    entity_type: Mapped[EntityType] = mapped_column(SQLEnum(EntityType), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="GBP", nullable=False)
    country_code: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    tax_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "parent_entity_id": str(self.parent_entity_id) if self.parent_entity_id is not None else None,
            "entity_name": self.entity_name,
            "entity_type": self.entity_type.value,
            "currency": self.currency,
            "country_code": self.country_code,
            "tax_id": self.tax_id,
            "is_active": self.is_active,
        }


class IntercompanyTransaction(BaseModel, TenantMixin):
    """Transaction between two entities of the same tenant."""

    __tablename__ = "intercompany_transactions"

    from_entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("entities.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    to_entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("entities.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="GBP", nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_eliminated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    eliminated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class ConsolidatedReport(BaseModel, TenantMixin):
    """Stored output of a consolidation run."""

    __tablename__ = "consolidated_reports"

    report_type: Mapped[str] = mapped_column(String(50), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    base_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    entity_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    report_data: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "report_type", "period_start", "period_end", "base_currency",
            name="uq_consolidated_reports_key",
        ),
    )
