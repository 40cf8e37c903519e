"""
LedgerClose - Celery Tasks

Background tasks for scheduled and long-running close operations.
Arguments are plain strings so they survive JSON serialization.
"""

import asyncio
import logging
import uuid
from datetime import date
from typing import Any, Dict, List, Optional

from celery import shared_task
from sqlalchemy import select

from ledgerclose.config import settings
from ledgerclose.database import async_session_factory

logger = logging.getLogger(__name__)


def run_async(coro):
    """Helper to run async functions in Celery tasks."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


# ===========================================
# FX TASKS
# ===========================================

@shared_task(name='ledgerclose.tasks.celery_tasks.sync_exchange_rates_task')
def sync_exchange_rates_task(
    tenant_id: Optional[str] = None,
    rate_date: Optional[str] = None,
) -> Dict[str, Any]:
    """Sync the configured base/target rates for one tenant or every known tenant."""
    return run_async(_sync_exchange_rates(tenant_id, rate_date))


async def _tenant_ids() -> List[uuid.UUID]:
    from ledgerclose.models.entity import Entity
    from ledgerclose.models.fx import ExchangeRate

    async with async_session_factory() as db:
        tenants = set()
        for column in (Entity.tenant_id, ExchangeRate.tenant_id):
            result = await db.execute(select(column).distinct())
            tenants.update(result.scalars().all())
    return sorted(tenants, key=str)


async def _sync_exchange_rates(tenant_id: Optional[str], rate_date: Optional[str]) -> Dict[str, Any]:
    from ledgerclose.services.exchange_rate_service import ExchangeRateService

    sync_date = date.fromisoformat(rate_date) if rate_date else date.today()
    tenants = [uuid.UUID(tenant_id)] if tenant_id else await _tenant_ids()
    targets = settings.fx_sync_targets_list

    synced = 0
    failed = 0
    for tenant in tenants:
        async with async_session_factory() as db:
            result = await ExchangeRateService(db).sync_exchange_rates(
                tenant,
                base_currency=settings.fx_sync_base_currency,
                target_currencies=targets,
                start_date=sync_date,
                end_date=sync_date,
            )
        synced += result["synced"]
        failed += result["failed"]

    logger.info(
        f"Scheduled FX sync for {sync_date}: {len(tenants)} tenants, "
        f"synced={synced}, failed={failed}"
    )
    return {
        "rate_date": sync_date.isoformat(),
        "tenants": len(tenants),
        "synced": synced,
        "failed": failed,
    }


# ===========================================
# PERIOD CLOSE TASKS
# ===========================================

@shared_task(name='ledgerclose.tasks.celery_tasks.execute_close_tasks_task')
def execute_close_tasks_task(tenant_id: str, close_id: str, user_id: str = "system") -> Dict[str, int]:
    """Run the automated close tasks for a period close."""
    return run_async(_execute_close_tasks(tenant_id, close_id, user_id))


async def _execute_close_tasks(tenant_id: str, close_id: str, user_id: str) -> Dict[str, int]:
    from ledgerclose.services.period_close_service import PeriodCloseService

    async with async_session_factory() as db:
        return await PeriodCloseService(db).execute_close_tasks(
            uuid.UUID(tenant_id), uuid.UUID(close_id), user_id,
        )


@shared_task(name='ledgerclose.tasks.celery_tasks.check_variance_alerts_task')
def check_variance_alerts_task(tenant_id: str, close_id: str) -> Dict[str, Any]:
    """Check cash balance drift for a period close."""
    return run_async(_check_variance_alerts(tenant_id, close_id))


async def _check_variance_alerts(tenant_id: str, close_id: str) -> Dict[str, Any]:
    from ledgerclose.services.period_close_service import PeriodCloseService

    async with async_session_factory() as db:
        alerts = await PeriodCloseService(db).check_variance_alerts(uuid.UUID(tenant_id), uuid.UUID(close_id))
    return {"close_id": close_id, "alerts_raised": len(alerts), "alerts": alerts}
