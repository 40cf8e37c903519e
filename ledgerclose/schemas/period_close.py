"""
LedgerClose - Period Close Schemas

Pydantic schemas for the period close workflow and the items it posts:
accruals, prepayments and fixed assets.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, ConfigDict, model_validator

from ledgerclose.models.accruals import AccrualStatus, PrepaymentStatus
from ledgerclose.models.fixed_asset import DepreciationMethod
from ledgerclose.models.period_close import CloseStatus, CloseTaskStatus, CloseTaskType, AlertSeverity


class _PeriodRange(BaseModel):
    period_start: date
    period_end: date

    @model_validator(mode="after")
    def check_range(self):
        if self.period_end < self.period_start:
            raise ValueError("period_end must not precede period_start")
        return self


# =============================================================================
# PERIOD CLOSE
# =============================================================================

class PeriodCloseCreate(_PeriodRange):
    entity_id: Optional[UUID] = None


class CloseTaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    task_type: CloseTaskType
    task_name: str
    priority: int
    status: CloseTaskStatus
    blocker_reason: Optional[str] = None
    result_data: Optional[Dict[str, Any]] = None
    completed_by: Optional[str] = None


class PeriodCloseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    entity_id: Optional[UUID] = None
    period_start: date
    period_end: date
    close_status: CloseStatus
    locked_by: Optional[str] = None
    closed_by: Optional[str] = None
    reopened_by: Optional[str] = None
    variance_alerts: List[Dict[str, Any]] = Field(default_factory=list)
    generated_reports: List[Dict[str, Any]] = Field(default_factory=list)


class TaskExecutionSummary(BaseModel):
    completed: int
    failed: int
    blocked: int


class TaskCompleteRequest(BaseModel):
    result_data: Optional[Dict[str, Any]] = None


class TaskSkipRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class VarianceAlertResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    period_close_id: UUID
    alert_type: str
    account_code: str
    current_period_amount: Decimal
    prior_period_amount: Decimal
    variance_amount: Decimal
    variance_percentage: Optional[Decimal] = None
    severity: AlertSeverity
    acknowledged: bool
    acknowledged_by: Optional[str] = None


# =============================================================================
# ACCRUALS & PREPAYMENTS
# =============================================================================

class AccrualCreate(_PeriodRange):
    description: str = Field(..., min_length=1, max_length=500)
    account_code: str = Field(..., min_length=1, max_length=20)
    amount: Decimal = Field(..., gt=0)
    entity_id: Optional[UUID] = None


class AccrualResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_id: Optional[UUID] = None
    description: str
    account_code: str
    amount: Decimal
    period_start: date
    period_end: date
    status: AccrualStatus
    transaction_id: Optional[UUID] = None
    reversal_transaction_id: Optional[UUID] = None


class PrepaymentCreate(_PeriodRange):
    description: str = Field(..., min_length=1, max_length=500)
    account_code: str = Field(..., min_length=1, max_length=20)
    amount: Decimal = Field(..., gt=0)
    amortization_periods: Optional[int] = Field(None, ge=1)
    entity_id: Optional[UUID] = None


class PrepaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_id: Optional[UUID] = None
    description: str
    account_code: str
    amount: Decimal
    period_start: date
    period_end: date
    amortization_periods: int
    status: PrepaymentStatus


class AmortizeRequest(BaseModel):
    periods: Optional[int] = Field(None, ge=1)


# =============================================================================
# FIXED ASSETS
# =============================================================================

class FixedAssetCreate(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    purchase_date: date
    purchase_cost: Decimal = Field(..., gt=0)
    residual_value: Decimal = Field(Decimal("0"), ge=0)
    useful_life: int = Field(..., ge=1, description="Useful life in years")
    depreciation_method: DepreciationMethod = DepreciationMethod.STRAIGHT_LINE
    depreciation_rate: Optional[Decimal] = Field(None, gt=0, le=1)
    account_code: str = Field("1000", min_length=1, max_length=20)
    entity_id: Optional[UUID] = None


class FixedAssetResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_id: Optional[UUID] = None
    description: str
    account_code: str
    purchase_date: date
    purchase_cost: Decimal
    residual_value: Decimal
    useful_life: int
    depreciation_method: DepreciationMethod
    depreciation_rate: Optional[Decimal] = None
    is_active: bool


class DepreciationPreview(BaseModel):
    asset_id: UUID
    period: date
    depreciation_amount: Decimal
    accumulated_depreciation: Decimal
    net_book_value: Decimal
