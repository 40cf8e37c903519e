"""
LedgerClose - Consolidation Schemas

Entities, intercompany transactions and consolidated statements.
"""

from datetime import date
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, ConfigDict, model_validator

from ledgerclose.models.entity import EntityType


class EntityCreate(BaseModel):
    entity_name: str = Field(..., min_length=1, max_length=200)
    entity_type: EntityType
    currency: str = Field("GBP", min_length=3, max_length=3)
    parent_entity_id: Optional[UUID] = None
    country_code: Optional[str] = Field(None, min_length=2, max_length=2)
    tax_id: Optional[str] = Field(None, max_length=50)


class EntityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    parent_entity_id: Optional[UUID] = None
    entity_name: str
    entity_type: EntityType
    currency: str
    country_code: Optional[str] = None
    tax_id: Optional[str] = None
    is_active: bool


class IntercompanyTransactionCreate(BaseModel):
    from_entity_id: UUID
    to_entity_id: UUID
    transaction_date: date
    amount: Decimal = Field(..., gt=0)
    currency: str = Field("GBP", min_length=3, max_length=3)
    description: Optional[str] = None


class IntercompanyTransactionResponse(IntercompanyTransactionCreate):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    is_eliminated: bool


class ConsolidationRequest(BaseModel):
    """Entity set, reporting currency and period for a consolidated statement."""
    entity_ids: List[UUID] = Field(..., min_length=1)
    base_currency: str = Field("GBP", min_length=3, max_length=3)
    period_start: date
    period_end: date
    store: bool = Field(False, description="Persist the generated report")

    @model_validator(mode="after")
    def check_range(self):
        if self.period_end < self.period_start:
            raise ValueError("period_end must not precede period_start")
        return self


class EliminationRequest(BaseModel):
    entity_ids: List[UUID] = Field(..., min_length=1)
    period_start: date
    period_end: date


class EliminationResponse(BaseModel):
    eliminated_count: int
    total_amount: Decimal
