"""
LedgerClose - Foreign Exchange (FX) Router

API endpoints for multi-currency operations including:
- Exchange rate lookup, manual rates and provider sync
- Currency conversion
- Period-end remeasurement
"""

import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerclose.database import get_db
from ledgerclose.dependencies import get_cache, get_tenant_id
from ledgerclose.schemas.fx import (
    BatchRateRequest,
    BatchRateResponse,
    CurrencyConversionRequest,
    CurrencyConversionResponse,
    ExchangeRateCreate,
    ExchangeRateResponse,
    RateSyncRequest,
    RateSyncResponse,
    RemeasurementRequest,
    RemeasurementResponse,
)
from ledgerclose.services.cache_service import CacheService
from ledgerclose.services.consolidation_service import ConsolidationService
from ledgerclose.services.exchange_rate_service import ExchangeRateService

router = APIRouter(prefix="/api/v1/fx", tags=["Foreign Exchange (FX)"])


# ============================================================================
# EXCHANGE RATES
# ============================================================================

@router.get("/exchange-rates/{from_currency}/{to_currency}", response_model=ExchangeRateResponse)
async def get_exchange_rate(
    from_currency: str = Path(..., min_length=3, max_length=3),
    to_currency: str = Path(..., min_length=3, max_length=3),
    rate_date: Optional[date] = Query(None, description="Rate date, defaults to today"),
    provider: Optional[str] = Query(None, description="ECB or OANDA"),
    force_refresh: bool = Query(False),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    """
    Get the spot rate for a currency pair.

    Served from cache or storage when available, otherwise fetched from the
    provider with the tenant's manual rates as fallback.
    """
    rate_date = rate_date or date.today()
    rate = await ExchangeRateService(db, cache=cache).get_exchange_rate(
        tenant_id, from_currency, to_currency, rate_date, provider=provider, force_refresh=force_refresh,
    )
    return {
        "from_currency": from_currency,
        "to_currency": to_currency,
        "rate_date": rate_date,
        "rate": rate,
    }


@router.post("/exchange-rates/batch", response_model=BatchRateResponse)
async def get_exchange_rates(
    data: BatchRateRequest,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    pairs = [(p.from_currency, p.to_currency, data.rate_date) for p in data.pairs]
    rates = await ExchangeRateService(db, cache=cache).get_exchange_rates(tenant_id, pairs, provider=data.provider)
    return {"rates": rates}


@router.post("/exchange-rates", response_model=ExchangeRateResponse, status_code=status.HTTP_201_CREATED)
async def store_exchange_rate(
    data: ExchangeRateCreate,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    """Create or update a rate for the pair, date and rate type."""
    await ExchangeRateService(db, cache=cache).store_exchange_rate(
        tenant_id=tenant_id,
        from_currency=data.from_currency,
        to_currency=data.to_currency,
        rate_date=data.rate_date,
        rate=data.rate,
        rate_type=data.rate_type,
        source=data.source,
    )
    return data


@router.post("/exchange-rates/sync", response_model=RateSyncResponse)
async def sync_exchange_rates(
    data: RateSyncRequest,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    return await ExchangeRateService(db, cache=cache).sync_exchange_rates(
        tenant_id,
        base_currency=data.base_currency.upper(),
        target_currencies=[c.upper() for c in data.target_currencies],
        start_date=data.start_date,
        end_date=data.end_date,
        provider=data.provider,
    )


# ============================================================================
# CONVERSION & REMEASUREMENT
# ============================================================================

@router.post("/convert", response_model=CurrencyConversionResponse)
async def convert_currency(
    data: CurrencyConversionRequest,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    return await ExchangeRateService(db, cache=cache).convert_amount(
        tenant_id, data.amount, data.from_currency, data.to_currency, data.rate_date,
    )


@router.post("/remeasure", response_model=RemeasurementResponse)
async def remeasure(
    data: RemeasurementRequest,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Remeasure entries in a foreign currency at the stored period-end spot rate."""
    return await ConsolidationService(db).perform_fx_remeasurement(
        tenant_id,
        data.from_currency,
        data.to_currency,
        data.period_start,
        data.period_end,
        data.entity_id,
    )
