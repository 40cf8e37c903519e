"""
LedgerClose - SQLAlchemy Models Package

This package contains all database models for the application.
"""

from ledgerclose.models.base import BaseModel, TimestampMixin, TenantMixin
from ledgerclose.models.ledger import (
    EntryType,
    AccountType,
    LedgerTransaction,
    LedgerEntry,
    ChartOfAccounts,
)
from ledgerclose.models.document import DocumentType, DocumentStatus, SourceDocument
from ledgerclose.models.period_close import (
    CloseStatus,
    CloseTaskType,
    CloseTaskStatus,
    AlertSeverity,
    DEFAULT_CLOSE_TASKS,
    PeriodClose,
    CloseTask,
    VarianceAlert,
)
from ledgerclose.models.entity import (
    EntityType,
    Entity,
    IntercompanyTransaction,
    ConsolidatedReport,
)
from ledgerclose.models.fx import RateType, ExchangeRate, FXRemeasurementLog
from ledgerclose.models.accruals import AccrualStatus, PrepaymentStatus, Accrual, Prepayment
from ledgerclose.models.fixed_asset import DepreciationMethod, FixedAsset, DepreciationEntry

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "TenantMixin",
    # Ledger
    "EntryType",
    "AccountType",
    "LedgerTransaction",
    "LedgerEntry",
    "ChartOfAccounts",
    # Documents
    "DocumentType",
    "DocumentStatus",
    "SourceDocument",
    # Period close
    "CloseStatus",
    "CloseTaskType",
    "CloseTaskStatus",
    "AlertSeverity",
    "DEFAULT_CLOSE_TASKS",
    "PeriodClose",
    "CloseTask",
    "VarianceAlert",
    # Multi-entity
    "EntityType",
    "Entity",
    "IntercompanyTransaction",
    "ConsolidatedReport",
    # FX
    "RateType",
    "ExchangeRate",
    "FXRemeasurementLog",
    # Accruals & prepayments
    "AccrualStatus",
    "PrepaymentStatus",
    "Accrual",
    "Prepayment",
    # Fixed assets
    "DepreciationMethod",
    "FixedAsset",
    "DepreciationEntry",
]
