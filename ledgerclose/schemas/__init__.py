"""
LedgerClose - Schemas Package

Pydantic schemas for request/response validation.
"""

from ledgerclose.schemas.ledger import (
    EntryLine,
    LedgerEntryCreate,
    DoubleEntryTransactionCreate,
    PostingResult,
    LedgerEntryFilters,
    LedgerEntryResponse,
    ReconcileRequest,
    DocumentPostRequest,
    ChartAccountUpsert,
    ChartAccountResponse,
)
from ledgerclose.schemas.period_close import (
    PeriodCloseCreate,
    PeriodCloseResponse,
    CloseTaskResponse,
    TaskExecutionSummary,
    TaskCompleteRequest,
    TaskSkipRequest,
    VarianceAlertResponse,
    AccrualCreate,
    AccrualResponse,
    PrepaymentCreate,
    PrepaymentResponse,
    AmortizeRequest,
    FixedAssetCreate,
    FixedAssetResponse,
    DepreciationPreview,
)
from ledgerclose.schemas.fx import (
    CurrencyPair,
    ExchangeRateCreate,
    ExchangeRateResponse,
    CurrencyConversionRequest,
    CurrencyConversionResponse,
    RateSyncRequest,
    RateSyncResponse,
    RemeasurementRequest,
    RemeasurementResponse,
    BatchRateRequest,
    BatchRateResponse,
)
from ledgerclose.schemas.consolidation import (
    EntityCreate,
    EntityResponse,
    IntercompanyTransactionCreate,
    IntercompanyTransactionResponse,
    ConsolidationRequest,
    EliminationRequest,
    EliminationResponse,
)

__all__ = [
    # Ledger
    "EntryLine",
    "LedgerEntryCreate",
    "DoubleEntryTransactionCreate",
    "PostingResult",
    "LedgerEntryFilters",
    "LedgerEntryResponse",
    "ReconcileRequest",
    "DocumentPostRequest",
    "ChartAccountUpsert",
    "ChartAccountResponse",
    # Period close
    "PeriodCloseCreate",
    "PeriodCloseResponse",
    "CloseTaskResponse",
    "TaskExecutionSummary",
    "TaskCompleteRequest",
    "TaskSkipRequest",
    "VarianceAlertResponse",
    "AccrualCreate",
    "AccrualResponse",
    "PrepaymentCreate",
    "PrepaymentResponse",
    "AmortizeRequest",
    "FixedAssetCreate",
    "FixedAssetResponse",
    "DepreciationPreview",
    # FX
    "CurrencyPair",
    "ExchangeRateCreate",
    "ExchangeRateResponse",
    "CurrencyConversionRequest",
    "CurrencyConversionResponse",
    "RateSyncRequest",
    "RateSyncResponse",
    "RemeasurementRequest",
    "RemeasurementResponse",
    "BatchRateRequest",
    "BatchRateResponse",
    # Consolidation
    "EntityCreate",
    "EntityResponse",
    "IntercompanyTransactionCreate",
    "IntercompanyTransactionResponse",
    "ConsolidationRequest",
    "EliminationRequest",
    "EliminationResponse",
]
