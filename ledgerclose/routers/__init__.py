"""
LedgerClose - Routers Package

FastAPI route handlers.

Routers:
- ledger: Double-entry posting, balances, reconciliation, chart of accounts
- period_close: Close workflow, tasks, variance alerts, accruals, fixed assets
- fx: Exchange rates, conversion, remeasurement
- consolidation: Entities, intercompany, consolidated statements
"""

from ledgerclose.routers import (
    ledger,
    period_close,
    fx,
    consolidation,
)

__all__ = [
    "ledger",
    "period_close",
    "fx",
    "consolidation",
]
