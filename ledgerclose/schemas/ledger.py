"""
LedgerClose - Ledger Schemas

Pydantic schemas for ledger entries, double-entry transactions,
balances and the chart of accounts.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, ConfigDict

from ledgerclose.models.ledger import AccountType, EntryType


# =============================================================================
# ENTRY / TRANSACTION INPUT
# =============================================================================

class EntryLine(BaseModel):
    """One line of a double-entry transaction."""
    entry_type: EntryType
    account_code: str = Field(..., min_length=1, max_length=20)
    account_name: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., ge=0)
    currency: str = Field("GBP", min_length=3, max_length=3)
    description: Optional[str] = None
    tax_amount: Optional[Decimal] = None
    tax_rate: Optional[Decimal] = None
    entity_id: Optional[UUID] = None


class LedgerEntryCreate(EntryLine):
    """A standalone ledger entry."""
    transaction_date: date
    document_id: Optional[UUID] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DoubleEntryTransactionCreate(BaseModel):
    """A balanced group of entries posted atomically."""
    description: str = Field(..., min_length=1)
    transaction_date: date
    created_by: Optional[str] = None
    document_id: Optional[UUID] = None
    entity_id: Optional[UUID] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    entries: List[EntryLine]


class PostingResult(BaseModel):
    transaction_id: UUID
    entry_ids: List[UUID]


# =============================================================================
# QUERIES
# =============================================================================

class LedgerEntryFilters(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    account_code: Optional[str] = None
    entry_type: Optional[EntryType] = None
    reconciled: Optional[bool] = None
    limit: int = Field(100, ge=1, le=1000)
    offset: int = Field(0, ge=0)


class LedgerEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    transaction_id: Optional[UUID] = None
    entity_id: Optional[UUID] = None
    document_id: Optional[UUID] = None
    entry_type: EntryType
    account_code: str
    account_name: str
    amount: Decimal
    currency: str
    description: Optional[str] = None
    transaction_date: date
    tax_amount: Optional[Decimal] = None
    tax_rate: Optional[Decimal] = None
    reconciled: bool
    reconciled_with: Optional[UUID] = None


class ReconcileRequest(BaseModel):
    entry_id_1: UUID
    entry_id_2: UUID


class DocumentPostRequest(BaseModel):
    document_id: UUID


# =============================================================================
# CHART OF ACCOUNTS
# =============================================================================

class ChartAccountUpsert(BaseModel):
    account_code: str = Field(..., min_length=1, max_length=20)
    account_name: str = Field(..., min_length=1, max_length=200)
    account_type: AccountType
    parent_code: Optional[str] = None
    is_active: bool = True


class ChartAccountResponse(ChartAccountUpsert):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
