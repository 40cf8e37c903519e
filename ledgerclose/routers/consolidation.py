"""
LedgerClose - Consolidation Router

API endpoints for multi-entity consolidation:
- Entity management and hierarchy
- Intercompany transactions and elimination
- Consolidated profit & loss and balance sheet
"""

import uuid
from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerclose.database import get_db
from ledgerclose.dependencies import get_cache, get_tenant_id
from ledgerclose.schemas.consolidation import (
    ConsolidationRequest,
    EliminationRequest,
    EliminationResponse,
    EntityCreate,
    EntityResponse,
    IntercompanyTransactionCreate,
    IntercompanyTransactionResponse,
)
from ledgerclose.services.cache_service import CacheService
from ledgerclose.services.consolidation_service import ConsolidationService

router = APIRouter(prefix="/api/v1/consolidation", tags=["Consolidation"])


# ============================================================================
# ENTITIES
# ============================================================================

@router.post("/entities", response_model=EntityResponse, status_code=status.HTTP_201_CREATED)
async def create_entity(
    data: EntityCreate,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await ConsolidationService(db).create_entity(tenant_id, **data.model_dump())


@router.get("/entities/hierarchy")
async def get_entity_hierarchy(
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return {"entities": await ConsolidationService(db).get_entity_hierarchy(tenant_id)}


@router.get("/entities/{entity_id}", response_model=EntityResponse)
async def get_entity(
    entity_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await ConsolidationService(db).get_entity(tenant_id, entity_id)


# ============================================================================
# INTERCOMPANY
# ============================================================================

@router.post(
    "/intercompany",
    response_model=IntercompanyTransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_intercompany_transaction(
    data: IntercompanyTransactionCreate,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await ConsolidationService(db).create_intercompany_transaction(tenant_id, **data.model_dump())


@router.post("/intercompany/eliminate", response_model=EliminationResponse)
async def eliminate_intercompany_transactions(
    data: EliminationRequest,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await ConsolidationService(db).eliminate_intercompany_transactions(
        tenant_id, data.period_start, data.period_end, data.entity_ids,
    )


# ============================================================================
# CONSOLIDATED STATEMENTS
# ============================================================================

async def _consolidate(
    report_type: str,
    data: ConsolidationRequest,
    tenant_id: uuid.UUID,
    service: ConsolidationService,
):
    if report_type == "profit_loss":
        report = await service.get_consolidated_profit_loss(
            tenant_id, data.entity_ids, data.base_currency, data.period_start, data.period_end,
        )
    else:
        report = await service.get_consolidated_balance_sheet(
            tenant_id, data.entity_ids, data.base_currency, data.period_start, data.period_end,
        )
    if data.store:
        report_id = await service.store_consolidated_report(
            tenant_id,
            report_type,
            data.period_start,
            data.period_end,
            data.base_currency,
            data.entity_ids,
            report,
        )
        report = {**report, "report_id": str(report_id)}
    return report


@router.post("/profit-loss")
async def consolidated_profit_loss(
    data: ConsolidationRequest,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    """Consolidated P&L in the base currency, net of intercompany eliminations."""
    return await _consolidate("profit_loss", data, tenant_id, ConsolidationService(db, cache=cache))


@router.post("/balance-sheet")
async def consolidated_balance_sheet(
    data: ConsolidationRequest,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    return await _consolidate("balance_sheet", data, tenant_id, ConsolidationService(db, cache=cache))
