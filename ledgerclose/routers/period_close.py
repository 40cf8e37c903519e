"""
LedgerClose - Period Close Router

API endpoints for the month-end close:
- Close lifecycle (create, start, lock, complete, reopen)
- Task execution and manual task completion
- Variance alerts
- Accruals, prepayments and fixed asset depreciation
"""

import uuid
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerclose.database import get_db
from ledgerclose.dependencies import get_cache, get_tenant_id, get_user_id
from ledgerclose.models.accruals import AccrualStatus
from ledgerclose.schemas.period_close import (
    AccrualCreate,
    AccrualResponse,
    AmortizeRequest,
    CloseTaskResponse,
    DepreciationPreview,
    FixedAssetCreate,
    FixedAssetResponse,
    PeriodCloseCreate,
    PeriodCloseResponse,
    PrepaymentCreate,
    PrepaymentResponse,
    TaskCompleteRequest,
    TaskExecutionSummary,
    TaskSkipRequest,
    VarianceAlertResponse,
)
from ledgerclose.services.accruals_service import AccrualsPrepaymentsService
from ledgerclose.services.cache_service import CacheService
from ledgerclose.services.depreciation_service import DepreciationService
from ledgerclose.services.period_close_service import PeriodCloseService

router = APIRouter(prefix="/api/v1/period-close", tags=["Period Close"])


# ============================================================================
# CLOSE LIFECYCLE
# ============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_period_close(
    data: PeriodCloseCreate,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """
    Create a period close with its task checklist.

    Creating a close for an existing (entity, period) returns the existing id.
    """
    close_id = await PeriodCloseService(db).create_period_close(
        tenant_id, data.period_start, data.period_end, data.entity_id,
    )
    return {"id": str(close_id)}


@router.get("/{close_id}")
async def get_close_status(
    close_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await PeriodCloseService(db).get_close_status(tenant_id, close_id)


@router.get("/{close_id}/tasks", response_model=List[CloseTaskResponse])
async def get_close_tasks(
    close_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await PeriodCloseService(db).get_close_tasks(tenant_id, close_id)


@router.post("/{close_id}/start", response_model=PeriodCloseResponse)
async def start_close(
    close_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await PeriodCloseService(db).start_close(tenant_id, close_id, user_id)


@router.post("/{close_id}/lock", response_model=PeriodCloseResponse)
async def lock_period(
    close_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await PeriodCloseService(db).lock_period(tenant_id, close_id, user_id)


@router.post("/{close_id}/complete", response_model=PeriodCloseResponse)
async def complete_close(
    close_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Close the period. Fails with the list of tasks still open."""
    return await PeriodCloseService(db).complete_close(tenant_id, close_id, user_id)


@router.post("/{close_id}/reopen", response_model=PeriodCloseResponse)
async def reopen_period(
    close_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await PeriodCloseService(db).reopen_period(tenant_id, close_id, user_id)


# ============================================================================
# TASKS
# ============================================================================

@router.post("/{close_id}/execute", response_model=TaskExecutionSummary)
async def execute_close_tasks(
    close_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    """Run every pending automated task in priority order."""
    return await PeriodCloseService(db, cache=cache).execute_close_tasks(tenant_id, close_id, user_id)


@router.post("/{close_id}/tasks/{task_id}/complete", response_model=CloseTaskResponse)
async def complete_task(
    close_id: uuid.UUID,
    task_id: uuid.UUID,
    data: TaskCompleteRequest,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await PeriodCloseService(db).complete_task(tenant_id, close_id, task_id, user_id, data.result_data)


@router.post("/{close_id}/tasks/{task_id}/skip", response_model=CloseTaskResponse)
async def skip_task(
    close_id: uuid.UUID,
    task_id: uuid.UUID,
    data: TaskSkipRequest,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await PeriodCloseService(db).skip_task(tenant_id, close_id, task_id, user_id, data.reason)


# ============================================================================
# VARIANCE ALERTS
# ============================================================================

@router.post("/{close_id}/variance-alerts/check")
async def check_variance_alerts(
    close_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    alerts = await PeriodCloseService(db).check_variance_alerts(tenant_id, close_id)
    return {"alerts": alerts}


@router.get("/{close_id}/variance-alerts", response_model=List[VarianceAlertResponse])
async def list_variance_alerts(
    close_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await PeriodCloseService(db).list_variance_alerts(tenant_id, close_id)


@router.post("/variance-alerts/{alert_id}/acknowledge", response_model=VarianceAlertResponse)
async def acknowledge_variance_alert(
    alert_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await PeriodCloseService(db).acknowledge_variance_alert(tenant_id, alert_id, user_id)


# ============================================================================
# ACCRUALS & PREPAYMENTS
# ============================================================================

@router.post("/accruals", response_model=AccrualResponse, status_code=status.HTTP_201_CREATED)
async def create_accrual(
    data: AccrualCreate,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await AccrualsPrepaymentsService(db).create_accrual(
        tenant_id,
        description=data.description,
        account_code=data.account_code,
        amount=data.amount,
        period_start=data.period_start,
        period_end=data.period_end,
        created_by=user_id,
        entity_id=data.entity_id,
    )


@router.get("/accruals/list", response_model=List[AccrualResponse])
async def list_accruals(
    accrual_status: Optional[AccrualStatus] = Query(None, alias="status"),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await AccrualsPrepaymentsService(db).list_accruals(tenant_id, accrual_status)


@router.post("/accruals/{accrual_id}/post")
async def post_accrual(
    accrual_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    return await AccrualsPrepaymentsService(db, cache=cache).post_accrual(tenant_id, accrual_id)


@router.post("/accruals/{accrual_id}/reverse")
async def reverse_accrual(
    accrual_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    return await AccrualsPrepaymentsService(db, cache=cache).reverse_accrual(tenant_id, accrual_id)


@router.post("/prepayments", response_model=PrepaymentResponse, status_code=status.HTTP_201_CREATED)
async def create_prepayment(
    data: PrepaymentCreate,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    user_id: str = Depends(get_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await AccrualsPrepaymentsService(db).create_prepayment(
        tenant_id,
        description=data.description,
        account_code=data.account_code,
        amount=data.amount,
        period_start=data.period_start,
        period_end=data.period_end,
        created_by=user_id,
        amortization_periods=data.amortization_periods,
        entity_id=data.entity_id,
    )


@router.post("/prepayments/{prepayment_id}/amortize")
async def amortize_prepayment(
    prepayment_id: uuid.UUID,
    data: AmortizeRequest,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
):
    return await AccrualsPrepaymentsService(db, cache=cache).amortize_prepayment(
        tenant_id, prepayment_id, data.periods,
    )


# ============================================================================
# FIXED ASSETS
# ============================================================================

@router.post("/fixed-assets", response_model=FixedAssetResponse, status_code=status.HTTP_201_CREATED)
async def create_fixed_asset(
    data: FixedAssetCreate,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    return await DepreciationService(db).create_fixed_asset(tenant_id, **data.model_dump())


@router.get("/fixed-assets/{asset_id}/depreciation", response_model=DepreciationPreview)
async def preview_depreciation(
    asset_id: uuid.UUID,
    period_end: date = Query(...),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Depreciation for the month ending period_end, without posting."""
    service = DepreciationService(db)
    asset = await service.get_fixed_asset(tenant_id, asset_id)
    return service.calculate_depreciation(asset, period_end)
