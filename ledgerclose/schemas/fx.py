"""
LedgerClose - FX Schemas
"""

from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from ledgerclose.models.fx import RateType


class CurrencyPair(BaseModel):
    from_currency: str = Field(..., min_length=3, max_length=3)
    to_currency: str = Field(..., min_length=3, max_length=3)

    @field_validator("from_currency", "to_currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class ExchangeRateCreate(CurrencyPair):
    rate_date: date
    rate: Decimal = Field(..., gt=0)
    rate_type: RateType = RateType.SPOT
    source: str = Field("manual", max_length=20)


class ExchangeRateResponse(CurrencyPair):
    rate_date: date
    rate: Decimal


class CurrencyConversionRequest(CurrencyPair):
    amount: Decimal
    rate_date: Optional[date] = None


class CurrencyConversionResponse(CurrencyPair):
    original_amount: Decimal
    exchange_rate: Decimal
    converted_amount: Decimal
    rate_date: date


class RateSyncRequest(BaseModel):
    base_currency: str = Field(..., min_length=3, max_length=3)
    target_currencies: List[str] = Field(..., min_length=1)
    start_date: date
    end_date: date
    provider: Optional[str] = None


class RateSyncResponse(BaseModel):
    synced: int
    failed: int


class RemeasurementRequest(CurrencyPair):
    period_start: date
    period_end: date
    entity_id: Optional[UUID] = None


class RemeasurementResponse(BaseModel):
    remeasured_entries: int
    total_fx_gain_loss: float
    exchange_rate: float


class BatchRateRequest(BaseModel):
    pairs: List[CurrencyPair] = Field(..., min_length=1)
    rate_date: date
    provider: Optional[str] = None


class BatchRateResponse(BaseModel):
    rates: Dict[str, Decimal]
