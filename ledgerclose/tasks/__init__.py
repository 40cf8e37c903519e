"""
LedgerClose - Background Tasks Package

Celery background tasks.
"""

from ledgerclose.tasks.celery_tasks import (
    sync_exchange_rates_task,
    execute_close_tasks_task,
    check_variance_alerts_task,
    run_async,
)

__all__ = [
    "sync_exchange_rates_task",
    "execute_close_tasks_task",
    "check_variance_alerts_task",
    "run_async",
]
