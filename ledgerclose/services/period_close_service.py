"""
LedgerClose - Period Close Service

Period close workflow:
- draft -> in_progress -> locked -> closed (reopened from closed)
- Fixed, ordered checklist of close tasks created with each close
- Automated tasks run in priority order; a failing task is marked blocked
  and the remaining tasks still run
- complete_close is the only hard gate: every task must be completed or skipped
- Cash balance drift between periods raises variance alerts
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, and_, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerclose.config import settings
from ledgerclose.models.period_close import (
    AlertSeverity,
    CloseStatus,
    CloseTask,
    CloseTaskStatus,
    CloseTaskType,
    DEFAULT_CLOSE_TASKS,
    PeriodClose,
    VarianceAlert,
)
from ledgerclose.services.accruals_service import AccrualsPrepaymentsService
from ledgerclose.services.cache_service import CacheService, get_cache_service
from ledgerclose.services.depreciation_service import DepreciationService
from ledgerclose.services.document_checks import ValidationPipeline
from ledgerclose.services.ledger_service import AMOUNT_TOLERANCE, LedgerService
from ledgerclose.utils.db_helpers import is_postgresql
from ledgerclose.utils.error_handling import (
    AppException,
    BusinessRuleException,
    IncompleteTasksError,
    InvalidCloseTransitionError,
    NotFoundException,
    PeriodCloseNotFoundError,
    ValidationException,
)

logger = logging.getLogger(__name__)

DONE_TASK_STATUSES = {CloseTaskStatus.COMPLETED, CloseTaskStatus.SKIPPED}
MANUAL_TASK_TYPES = {CloseTaskType.TAX, CloseTaskType.FILING, CloseTaskType.APPROVAL}
STARTABLE_STATUSES = {CloseStatus.DRAFT, CloseStatus.IN_PROGRESS, CloseStatus.REOPENED}

# In-process guard per close id; PostgreSQL deployments also take an advisory lock
_close_locks: Dict[uuid.UUID, asyncio.Lock] = {}
# Holders and waiters per close id; the lock is dropped when this reaches zero
_close_lock_users: Dict[uuid.UUID, int] = {}


def _advisory_key(close_id: uuid.UUID) -> int:
    return close_id.int & 0x7FFFFFFFFFFFFFFF


def classify_drift(drift: Decimal) -> Optional[AlertSeverity]:
    """Severity for a cash balance drift, or None below the alert threshold."""
    if drift > Decimal(str(settings.variance_critical_threshold)):
        return AlertSeverity.CRITICAL
    if drift > Decimal(str(settings.variance_high_threshold)):
        return AlertSeverity.HIGH
    if drift > Decimal(str(settings.variance_drift_threshold)):
        return AlertSeverity.MEDIUM
    return None


class PeriodCloseService:
    """Service orchestrating the period close."""

    def __init__(
        self,
        db: AsyncSession,
        validation_pipeline: Optional[ValidationPipeline] = None,
        cache: Optional[CacheService] = None,
    ):
        self.db = db
        self.cache = cache or get_cache_service()
        self.validation_pipeline = validation_pipeline
        self.ledger = LedgerService(db, cache=self.cache)
        self.accruals = AccrualsPrepaymentsService(db, cache=self.cache)
        self.depreciation = DepreciationService(db, posting=self.accruals.posting, cache=self.cache)

    # =========================================================================
    # LOCKING
    # =========================================================================

    @asynccontextmanager
    async def close_lock(self, close_id: uuid.UUID):
        """Serialize task execution and completion for one close id."""
        lock = _close_locks.setdefault(close_id, asyncio.Lock())
        _close_lock_users[close_id] = _close_lock_users.get(close_id, 0) + 1
        try:
            async with lock:
                if not is_postgresql(self.db):
                    yield
                    return
                # Held on its own connection so session commits do not release it
                key = _advisory_key(close_id)
                async with self.db.bind.connect() as conn:
                    await conn.execute(text("SELECT pg_advisory_lock(:key)"), {"key": key})
                    try:
                        yield
                    finally:
                        await conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
        finally:
            remaining = _close_lock_users[close_id] - 1
            if remaining == 0:
                del _close_lock_users[close_id]
                _close_locks.pop(close_id, None)
            else:
                _close_lock_users[close_id] = remaining

    # =========================================================================
    # CREATION & LOOKUP
    # =========================================================================

    async def _find_period_close(
        self,
        tenant_id: uuid.UUID,
        period_start: date,
        period_end: date,
        entity_id: Optional[uuid.UUID],
    ) -> Optional[PeriodClose]:
        entity_match = (
            PeriodClose.entity_id == entity_id if entity_id is not None else PeriodClose.entity_id.is_(None)
        )
        result = await self.db.execute(
            select(PeriodClose).where(and_(
                PeriodClose.tenant_id == tenant_id,
                entity_match,
                PeriodClose.period_start == period_start,
                PeriodClose.period_end == period_end,
            ))
        )
        return result.scalar_one_or_none()

    async def create_period_close(
        self,
        tenant_id: uuid.UUID,
        period_start: date,
        period_end: date,
        entity_id: Optional[uuid.UUID] = None,
    ) -> uuid.UUID:
        """
        Create a close with its checklist, or return the existing close for
        the same (tenant, entity, period start, period end).
        """
        if period_end < period_start:
            raise ValidationException("Period end must not precede period start", field="period_end")

        existing = await self._find_period_close(tenant_id, period_start, period_end, entity_id)
        if existing is not None:
            return existing.id

        close_id = uuid.uuid4()
        self.db.add(PeriodClose(
            id=close_id,
            tenant_id=tenant_id,
            entity_id=entity_id,
            period_start=period_start,
            period_end=period_end,
            close_status=CloseStatus.DRAFT,
            variance_alerts=[],
            generated_reports=[],
        ))
        for priority, (task_type, task_name) in enumerate(DEFAULT_CLOSE_TASKS, start=1):
            self.db.add(CloseTask(
                period_close_id=close_id,
                task_type=task_type,
                task_name=task_name,
                priority=priority,
                status=CloseTaskStatus.PENDING,
            ))

        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self._find_period_close(tenant_id, period_start, period_end, entity_id)
            if existing is None:
                raise
            return existing.id

        logger.info(
            f"Period close created: {close_id} {period_start}..{period_end} "
            f"(tenant {tenant_id}, entity {entity_id})"
        )
        return close_id

    async def get_period_close(self, tenant_id: uuid.UUID, close_id: uuid.UUID) -> PeriodClose:
        result = await self.db.execute(
            select(PeriodClose)
            .where(and_(
                PeriodClose.id == close_id,
                PeriodClose.tenant_id == tenant_id,
            ))
            .execution_options(populate_existing=True)
        )
        period_close = result.scalar_one_or_none()
        if period_close is None:
            raise PeriodCloseNotFoundError(close_id)
        return period_close

    async def get_close_tasks(self, tenant_id: uuid.UUID, close_id: uuid.UUID) -> List[CloseTask]:
        await self.get_period_close(tenant_id, close_id)
        result = await self.db.execute(
            select(CloseTask)
            .where(CloseTask.period_close_id == close_id)
            .order_by(CloseTask.priority)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_close_status(self, tenant_id: uuid.UUID, close_id: uuid.UUID) -> Dict[str, Any]:
        """Close record, its tasks and a per-status summary."""
        period_close = await self.get_period_close(tenant_id, close_id)
        tasks = await self.get_close_tasks(tenant_id, close_id)

        summary = {status.value: 0 for status in CloseTaskStatus}
        for task in tasks:
            summary[task.status.value] += 1

        return {
            **period_close.to_dict(),
            "tasks": [task.to_dict() for task in tasks],
            "task_summary": summary,
            "ready_to_close": all(task.status in DONE_TASK_STATUSES for task in tasks),
        }

    # =========================================================================
    # STATE TRANSITIONS
    # =========================================================================

    async def start_close(self, tenant_id: uuid.UUID, close_id: uuid.UUID, user_id: str) -> PeriodClose:
        period_close = await self.get_period_close(tenant_id, close_id)
        if period_close.close_status not in STARTABLE_STATUSES:
            raise InvalidCloseTransitionError(
                close_id, period_close.close_status.value, CloseStatus.IN_PROGRESS.value,
            )
        period_close.close_status = CloseStatus.IN_PROGRESS
        await self.db.commit()

        logger.info(f"Period close started: {close_id} by {user_id}")
        return period_close

    async def lock_period(self, tenant_id: uuid.UUID, close_id: uuid.UUID, user_id: str) -> PeriodClose:
        period_close = await self.get_period_close(tenant_id, close_id)
        period_close.close_status = CloseStatus.LOCKED
        period_close.locked_at = datetime.now(timezone.utc)
        period_close.locked_by = user_id
        await self.db.commit()

        logger.info(f"Period locked: {close_id} by {user_id}")
        return period_close

    async def complete_close(self, tenant_id: uuid.UUID, close_id: uuid.UUID, user_id: str) -> PeriodClose:
        """
        Mark the period closed.

        Raises IncompleteTasksError listing every task that is neither
        completed nor skipped.
        """
        async with self.close_lock(close_id):
            period_close = await self.get_period_close(tenant_id, close_id)
            tasks = await self.get_close_tasks(tenant_id, close_id)

            incomplete = [
                {"task_id": str(t.id), "task_type": t.task_type.value, "status": t.status.value}
                for t in tasks
                if t.status not in DONE_TASK_STATUSES
            ]
            if incomplete:
                raise IncompleteTasksError(close_id, incomplete)

            if period_close.close_status == CloseStatus.CLOSED:
                return period_close

            period_close.close_status = CloseStatus.CLOSED
            period_close.closed_at = datetime.now(timezone.utc)
            period_close.closed_by = user_id
            await self.db.commit()

        logger.info(f"Period close completed: {close_id} by {user_id}")
        return period_close

    async def reopen_period(self, tenant_id: uuid.UUID, close_id: uuid.UUID, user_id: str) -> PeriodClose:
        period_close = await self.get_period_close(tenant_id, close_id)
        if period_close.close_status != CloseStatus.CLOSED:
            raise InvalidCloseTransitionError(
                close_id, period_close.close_status.value, CloseStatus.REOPENED.value,
            )
        period_close.close_status = CloseStatus.REOPENED
        period_close.reopened_at = datetime.now(timezone.utc)
        period_close.reopened_by = user_id
        await self.db.commit()

        logger.warning(f"Period close reopened: {close_id} by {user_id}")
        return period_close

    # =========================================================================
    # TASK EXECUTION
    # =========================================================================

    async def _update_task(self, task_id: uuid.UUID, **values: Any) -> None:
        await self.db.execute(update(CloseTask).where(CloseTask.id == task_id).values(**values))
        await self.db.commit()

    async def execute_close_tasks(
        self,
        tenant_id: uuid.UUID,
        close_id: uuid.UUID,
        user_id: str = "system",
    ) -> Dict[str, int]:
        """
        Run pending automated tasks in priority order.

        Each task either completes with result_data or is marked blocked
        with the error message; later tasks run regardless. Tax, filing and
        approval stay pending for manual completion.

        Returns counts: completed, blocked (domain errors) and failed
        (unexpected errors). Failed tasks are also left blocked.
        """
        async with self.close_lock(close_id):
            period_close = await self.get_period_close(tenant_id, close_id)
            if period_close.close_status == CloseStatus.CLOSED:
                raise InvalidCloseTransitionError(close_id, period_close.close_status.value, "execute_tasks")

            period_start = period_close.period_start
            period_end = period_close.period_end
            entity_id = period_close.entity_id

            result = await self.db.execute(
                select(CloseTask.id, CloseTask.task_type)
                .where(and_(
                    CloseTask.period_close_id == close_id,
                    CloseTask.status == CloseTaskStatus.PENDING,
                ))
                .order_by(CloseTask.priority)
            )
            pending = [(task_id, task_type) for task_id, task_type in result.all()]

            completed = 0
            blocked = 0
            failed = 0
            for task_id, task_type in pending:
                if task_type in MANUAL_TASK_TYPES:
                    continue

                await self._update_task(
                    task_id, status=CloseTaskStatus.IN_PROGRESS, started_at=datetime.now(timezone.utc),
                )
                try:
                    result_data = await self._run_task(
                        tenant_id, close_id, task_type, period_start, period_end, entity_id,
                    )
                except Exception as e:
                    await self.db.rollback()
                    reason = e.message if isinstance(e, AppException) else str(e) or type(e).__name__
                    if isinstance(e, AppException):
                        blocked += 1
                        logger.warning(f"Close task {task_type.value} blocked for {close_id}: {reason}")
                    else:
                        failed += 1
                        logger.error(
                            f"Close task {task_type.value} failed for {close_id}: {reason}",
                            exc_info=True,
                        )
                    await self._update_task(task_id, status=CloseTaskStatus.BLOCKED, blocker_reason=reason)
                    continue

                await self._update_task(
                    task_id,
                    status=CloseTaskStatus.COMPLETED,
                    result_data=result_data,
                    blocker_reason=None,
                    completed_at=datetime.now(timezone.utc),
                    completed_by=user_id,
                )
                completed += 1
                logger.info(f"Close task {task_type.value} completed for {close_id}")

        logger.info(
            f"Close tasks executed for {close_id}: completed={completed}, "
            f"blocked={blocked}, failed={failed}"
        )
        return {"completed": completed, "failed": failed, "blocked": blocked}

    async def _run_task(
        self,
        tenant_id: uuid.UUID,
        close_id: uuid.UUID,
        task_type: CloseTaskType,
        period_start: date,
        period_end: date,
        entity_id: Optional[uuid.UUID],
    ) -> Dict[str, Any]:
        if task_type == CloseTaskType.ACCRUAL:
            return await self.accruals.post_pending_accruals(tenant_id, period_end, entity_id)
        if task_type == CloseTaskType.DEPRECIATION:
            return await self.depreciation.post_period_depreciation(tenant_id, period_end, entity_id=entity_id)
        if task_type == CloseTaskType.PREPAYMENT:
            return await self.accruals.amortize_due_prepayments(tenant_id, period_start, period_end, entity_id)
        if task_type == CloseTaskType.RECONCILIATION:
            return await self._run_reconciliation(tenant_id, period_end, entity_id)
        if task_type == CloseTaskType.VALIDATION:
            return await self._run_validation(tenant_id, period_start, period_end, entity_id)
        if task_type == CloseTaskType.REPORT:
            return await self._run_report(tenant_id, close_id, period_end, entity_id)
        raise BusinessRuleException(f"Task type {task_type.value} has no automation")

    async def _run_reconciliation(
        self,
        tenant_id: uuid.UUID,
        period_end: date,
        entity_id: Optional[uuid.UUID],
    ) -> Dict[str, Any]:
        unreconciled = await self.ledger.count_unreconciled(
            tenant_id, period_end, settings.cash_account_prefix, entity_id,
        )
        return {
            "unreconciled_count": unreconciled,
            "requires_attention": unreconciled > 0,
        }

    async def _run_validation(
        self,
        tenant_id: uuid.UUID,
        period_start: date,
        period_end: date,
        entity_id: Optional[uuid.UUID],
    ) -> Dict[str, Any]:
        totals = await self.ledger.get_period_totals(tenant_id, period_start, period_end, entity_id)
        difference = abs(totals["total_debits"] - totals["total_credits"])
        is_balanced = difference < AMOUNT_TOLERANCE
        if not is_balanced:
            raise ValidationException(
                f"Ledger does not balance for {period_start}..{period_end}: difference {difference}",
                details={
                    "total_debits": str(totals["total_debits"]),
                    "total_credits": str(totals["total_credits"]),
                },
            )

        pipeline_passed = None
        if self.validation_pipeline is not None:
            signal = await self.validation_pipeline.run(tenant_id, period_start, period_end, entity_id)
            pipeline_passed = signal.passed
            if not signal.passed:
                raise BusinessRuleException(
                    f"Validation pipeline failed: {'; '.join(signal.failures) or 'no details'}",
                    rule="validation_pipeline",
                    details={"failures": signal.failures},
                )

        return {
            "is_balanced": is_balanced,
            "total_debits": float(totals["total_debits"]),
            "total_credits": float(totals["total_credits"]),
            "difference": float(difference),
            "pipeline_passed": pipeline_passed,
        }

    async def _run_report(
        self,
        tenant_id: uuid.UUID,
        close_id: uuid.UUID,
        period_end: date,
        entity_id: Optional[uuid.UUID],
    ) -> Dict[str, Any]:
        trial_balance = await self.ledger.get_trial_balance(tenant_id, period_end, entity_id)

        period_close = await self.get_period_close(tenant_id, close_id)
        report = {
            "type": "trial_balance",
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "as_of_date": period_end.isoformat(),
            "account_count": len(trial_balance["accounts"]),
            "is_balanced": trial_balance["is_balanced"],
        }
        # JSON columns are replaced, not mutated, so the change is flushed
        period_close.generated_reports = [*(period_close.generated_reports or []), report]
        await self.db.commit()

        return {"trial_balance_generated": True, "trial_balance": trial_balance}

    # =========================================================================
    # MANUAL TASKS
    # =========================================================================

    async def _get_task(self, tenant_id: uuid.UUID, close_id: uuid.UUID, task_id: uuid.UUID) -> CloseTask:
        await self.get_period_close(tenant_id, close_id)
        result = await self.db.execute(
            select(CloseTask)
            .where(and_(
                CloseTask.id == task_id,
                CloseTask.period_close_id == close_id,
            ))
            .execution_options(populate_existing=True)
        )
        task = result.scalar_one_or_none()
        if task is None:
            raise NotFoundException("CloseTask", task_id)
        return task

    async def complete_task(
        self,
        tenant_id: uuid.UUID,
        close_id: uuid.UUID,
        task_id: uuid.UUID,
        user_id: str,
        result_data: Optional[Dict[str, Any]] = None,
    ) -> CloseTask:
        """Manually mark a task completed, e.g. tax or approval."""
        task = await self._get_task(tenant_id, close_id, task_id)
        task.status = CloseTaskStatus.COMPLETED
        task.result_data = result_data or {}
        task.blocker_reason = None
        task.completed_at = datetime.now(timezone.utc)
        task.completed_by = user_id
        await self.db.commit()

        logger.info(f"Close task {task.task_type.value} completed manually for {close_id} by {user_id}")
        return task

    async def skip_task(
        self,
        tenant_id: uuid.UUID,
        close_id: uuid.UUID,
        task_id: uuid.UUID,
        user_id: str,
        reason: str,
    ) -> CloseTask:
        task = await self._get_task(tenant_id, close_id, task_id)
        if task.status == CloseTaskStatus.COMPLETED:
            raise BusinessRuleException(
                f"Close task {task_id} is already completed",
                rule="completed_tasks_are_final",
            )
        task.status = CloseTaskStatus.SKIPPED
        task.result_data = {"skip_reason": reason}
        task.completed_at = datetime.now(timezone.utc)
        task.completed_by = user_id
        await self.db.commit()

        logger.info(f"Close task {task.task_type.value} skipped for {close_id} by {user_id}: {reason}")
        return task

    # =========================================================================
    # VARIANCE ALERTS
    # =========================================================================

    async def check_variance_alerts(self, tenant_id: uuid.UUID, close_id: uuid.UUID) -> List[Dict[str, Any]]:
        """
        Compare the cash balance at period end with the balance the day
        before the period started and alert on drift above the threshold.
        """
        period_close = await self.get_period_close(tenant_id, close_id)
        prefix = settings.cash_account_prefix

        current = await self.ledger.get_prefix_balance(
            tenant_id, prefix, period_close.period_end, period_close.entity_id,
        )
        prior = await self.ledger.get_prefix_balance(
            tenant_id, prefix, period_close.period_start - timedelta(days=1), period_close.entity_id,
        )
        drift = abs(current - prior)
        severity = classify_drift(drift)

        alerts: List[Dict[str, Any]] = []
        if severity is not None:
            percentage = (drift / abs(prior) * 100).quantize(Decimal("0.01")) if prior != 0 else None
            alert = VarianceAlert(
                tenant_id=tenant_id,
                period_close_id=close_id,
                alert_type="balance_drift",
                account_code=prefix,
                current_period_amount=current,
                prior_period_amount=prior,
                variance_amount=drift,
                variance_percentage=percentage,
                severity=severity,
                acknowledged=False,
            )
            self.db.add(alert)
            await self.db.flush()
            alerts.append(alert.to_dict())
            logger.warning(
                f"Cash drift of {drift} on {prefix} for close {close_id} ({severity.value})"
            )

        period_close.variance_alerts = alerts
        await self.db.commit()
        return alerts

    async def list_variance_alerts(self, tenant_id: uuid.UUID, close_id: uuid.UUID) -> List[VarianceAlert]:
        await self.get_period_close(tenant_id, close_id)
        result = await self.db.execute(
            select(VarianceAlert)
            .where(and_(
                VarianceAlert.tenant_id == tenant_id,
                VarianceAlert.period_close_id == close_id,
            ))
            .order_by(VarianceAlert.created_at)
        )
        return list(result.scalars().all())

    async def acknowledge_variance_alert(
        self,
        tenant_id: uuid.UUID,
        alert_id: uuid.UUID,
        user_id: str,
    ) -> VarianceAlert:
        result = await self.db.execute(
            select(VarianceAlert).where(and_(
                VarianceAlert.id == alert_id,
                VarianceAlert.tenant_id == tenant_id,
            ))
        )
        alert = result.scalar_one_or_none()
        if alert is None:
            raise NotFoundException("VarianceAlert", alert_id)
        alert.acknowledged = True
        alert.acknowledged_by = user_id
        await self.db.commit()
        return alert
