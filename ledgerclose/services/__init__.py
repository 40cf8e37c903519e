"""
LedgerClose - Services Package

Business logic services.
"""

from ledgerclose.services.cache_service import CacheService, get_cache_service
from ledgerclose.services.chart_of_accounts_service import ChartOfAccountsService
from ledgerclose.services.ledger_service import LedgerService
from ledgerclose.services.posting_service import PostingService
from ledgerclose.services.duplicate_detection_service import DuplicateDetector
from ledgerclose.services.exchange_rate_service import ExchangeRateService
from ledgerclose.services.accruals_service import AccrualsPrepaymentsService
from ledgerclose.services.depreciation_service import DepreciationService
from ledgerclose.services.consolidation_service import ConsolidationService
from ledgerclose.services.period_close_service import PeriodCloseService

__all__ = [
    "CacheService",
    "get_cache_service",
    "ChartOfAccountsService",
    "LedgerService",
    "PostingService",
    "DuplicateDetector",
    "ExchangeRateService",
    "AccrualsPrepaymentsService",
    "DepreciationService",
    "ConsolidationService",
    "PeriodCloseService",
]
