"""
LedgerClose - General Ledger Models

Double-entry ledger storage:
- Ledger entries (one debit or credit line each)
- Ledger transactions (the balanced group of entries posted together)
- Chart of accounts (account type drives the balance sign)
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Numeric, String, Text, Uuid,
    Enum as SQLEnum, JSON, UniqueConstraint, Index, CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from ledgerclose.models.base import BaseModel, TenantMixin


# =============================================================================
# ENUMS
# =============================================================================

class EntryType(str, Enum):
    """Direction of a ledger line."""
    DEBIT = "debit"
    CREDIT = "credit"

    @property
    def opposite(self) -> "EntryType":
        return EntryType.CREDIT if self is EntryType.DEBIT else EntryType.DEBIT


class AccountType(str, Enum):
    """Main account types."""
    ASSET = "asset"
    LIABILITY = "liability"
    EQUITY = "equity"
    REVENUE = "revenue"
    EXPENSE = "expense"

    @property
    def is_debit_normal(self) -> bool:
        """Asset and expense accounts increase with debits."""
        return self in (AccountType.ASSET, AccountType.EXPENSE)

    @classmethod
    def from_account_code(cls, account_code: str) -> "AccountType":
        """Classify an account without a chart record by its leading digit."""
        leading = account_code[:1]
        if leading == "1":
            return cls.ASSET
        if leading == "2":
            return cls.LIABILITY
        if leading == "3":
            return cls.EQUITY
        if leading == "4":
            return cls.REVENUE
        return cls.EXPENSE


# =============================================================================
# MODELS
# =============================================================================

class LedgerTransaction(BaseModel, TenantMixin):
    """A balanced group of ledger entries posted as one unit."""

    __tablename__ = "ledger_transactions"

    document_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    transaction_metadata: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)


class LedgerEntry(BaseModel, TenantMixin):
    """
    A single debit or credit line.

    Amounts are never negative; direction is carried by entry_type.
    Entries are immutable once written apart from the reconciliation flags.
    """

    __tablename__ = "ledger_entries"

    transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("ledger_transactions.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    document_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)

    entry_type: Mapped[EntryType] = mapped_column(SQLEnum(EntryType), nullable=False)
    account_code: Mapped[str] = mapped_column(String(20), nullable=False)
    account_name: Mapped[str] = mapped_column(String(200), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="GBP", nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)

    tax_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(precision=18, scale=2), nullable=True)
    tax_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(precision=7, scale=4), nullable=True)

    # Caller supplied transactionId, lifted out of the metadata for the idempotency key
    source_transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    reconciled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reconciled_with: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    reconciled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    entry_metadata: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "account_code", "entry_type", "amount", "source_transaction_id",
            name="uq_ledger_entries_idempotency",
        ),
        CheckConstraint("amount >= 0", name="amount_non_negative"),
        Index("ix_ledger_entries_tenant_account_date", "tenant_id", "account_code", "transaction_date"),
    )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "transaction_id": str(self.transaction_id) if self.transaction_id is not None else None,
            "entity_id": str(self.entity_id) if self.entity_id is not None else None,
            "document_id": str(self.document_id) if self.document_id is not None else None,
            "entry_type": self.entry_type.value,
            "account_code": self.account_code,
            "account_name": self.account_name,
            "amount": float(self.amount),
            "currency": self.currency,
            "description": self.description,
            "transaction_date": self.transaction_date.isoformat(),
            "tax_amount": float(self.tax_amount) if self.tax_amount is not None else None,
            "tax_rate": float(self.tax_rate) if self.tax_rate is not None else None,
            "reconciled": self.reconciled,
            "reconciled_with": str(self.reconciled_with) if self.reconciled_with is not None else None,
            "metadata": self.entry_metadata or {},
        }


class ChartOfAccounts(BaseModel, TenantMixin):
    """Tenant chart of accounts. The account type decides the balance sign."""

    __tablename__ = "chart_of_accounts"

    account_code: Mapped[str] = mapped_column(String(20), nullable=False)
    account_name: Mapped[str] = mapped_column(String(200), nullable=False)
    account_type: Mapped[AccountType] = mapped_column(SQLEnum(AccountType), nullable=False)
    parent_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "account_code", name="uq_chart_of_accounts_tenant_code"),
    )
