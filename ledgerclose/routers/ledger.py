"""
LedgerClose - Ledger Router

API endpoints for the double-entry ledger:
- Double-entry posting and document posting
- Entry listing, balances and trial balance
- Reconciliation and duplicate detection
- Chart of accounts
"""

import uuid
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerclose.database import get_db
from ledgerclose.dependencies import get_cache, get_tenant_id, get_user_id
from ledgerclose.models.ledger import EntryType
from ledgerclose.schemas.ledger import (
    ChartAccountResponse,
    ChartAccountUpsert,
    DocumentPostRequest,
    DoubleEntryTransactionCreate,
    LedgerEntryCreate,
    LedgerEntryFilters,
    LedgerEntryResponse,
    PostingResult,
    ReconcileRequest,
)
from ledgerclose.services.cache_service import CacheService
from ledgerclose.services.chart_of_accounts_service import ChartOfAccountsService
from ledgerclose.services.duplicate_detection_service import DuplicateDetector
from ledgerclose.services.ledger_service import LedgerService
from ledgerclose.services.posting_service import PostingService

router = APIRouter(prefix="/api/v1/ledger", tags=["Ledger"])


# ============================================================================
# POSTING
# ============================================================================

@router.post("/transactions", response_model=PostingResult, status_code=status.HTTP_201_CREATED)
async def post_transaction(
    data: DoubleEntryTransactionCreate,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    """
    Post a balanced double-entry transaction.

    Replaying a transaction that carries the same metadata.transactionId
    returns the original ids.
    """
    if data.created_by is None:
        data = data.model_copy(update={"created_by": user_id})
    return await PostingService(db, cache=cache).post_double_entry(tenant_id, data)


@router.post("/documents/post", response_model=PostingResult, status_code=status.HTTP_201_CREATED)
async def post_document(
    data: DocumentPostRequest,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    """Post an extracted source document to the ledger."""
    return await PostingService(db, cache=cache).post_document_to_ledger(tenant_id, data.document_id, user_id)


@router.post("/entries", status_code=status.HTTP_201_CREATED)
async def create_entry(
    data: LedgerEntryCreate,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    """Write a single entry outside a double-entry transaction."""
    entry_id = await LedgerService(db, cache=cache).create_entry(tenant_id, data)
    return {"id": str(entry_id)}


# ============================================================================
# QUERIES
# ============================================================================

@router.get("/entries")
async def list_entries(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    account_code: Optional[str] = Query(None),
    entry_type: Optional[EntryType] = Query(None),
    reconciled: Optional[bool] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    filters = LedgerEntryFilters(
        start_date=start_date,
        end_date=end_date,
        account_code=account_code,
        entry_type=entry_type,
        reconciled=reconciled,
        limit=limit,
        offset=offset,
    )
    return await LedgerService(db, cache=cache).get_entries(tenant_id, filters)


@router.get("/entries/{entry_id}", response_model=LedgerEntryResponse)
async def get_entry(
    entry_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await LedgerService(db).get_entry(tenant_id, entry_id)


@router.get("/entries/{entry_id}/duplicates")
async def find_duplicates(
    entry_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Candidate duplicates of an entry, most similar first."""
    candidates = await DuplicateDetector(db).detect_duplicate_ledger_entries(tenant_id, entry_id)
    return {"entry_id": str(entry_id), "duplicates": candidates}


@router.get("/balances/{account_code}")
async def get_account_balance(
    account_code: str,
    as_of_date: Optional[date] = Query(None),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    balance = await LedgerService(db, cache=cache).get_account_balance(tenant_id, account_code, as_of_date)
    return {
        **balance,
        "balance": float(balance["balance"]),
        "debit_total": float(balance["debit_total"]),
        "credit_total": float(balance["credit_total"]),
    }


@router.get("/trial-balance")
async def get_trial_balance(
    as_of_date: date = Query(...),
    entity_id: Optional[uuid.UUID] = Query(None),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await LedgerService(db).get_trial_balance(tenant_id, as_of_date, entity_id)


# ============================================================================
# RECONCILIATION
# ============================================================================

@router.post("/reconcile")
async def reconcile_entries(
    data: ReconcileRequest,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    return await LedgerService(db, cache=cache).reconcile_entries(
        tenant_id, data.entry_id_1, data.entry_id_2, user_id,
    )


# ============================================================================
# CHART OF ACCOUNTS
# ============================================================================

@router.get("/accounts", response_model=List[ChartAccountResponse])
async def get_chart_of_accounts(
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await ChartOfAccountsService(db).get_chart_of_accounts(tenant_id)


@router.post("/accounts/initialize")
async def initialize_chart_of_accounts(
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Seed the default chart of accounts for the tenant."""
    created = await ChartOfAccountsService(db).initialize_chart_of_accounts(tenant_id)
    return {"accounts_created": created}


@router.put("/accounts")
async def upsert_accounts(
    accounts: List[ChartAccountUpsert],
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    count = await ChartOfAccountsService(db).upsert_accounts(tenant_id, accounts)
    return {"accounts_upserted": count}
