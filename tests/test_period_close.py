"""
LedgerClose - Period Close Tests

Tests for the close checklist, task execution, state transitions and
variance alerts.
"""

import asyncio
import uuid
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from ledgerclose.models.accruals import AccrualStatus
from ledgerclose.models.ledger import EntryType
from ledgerclose.models.period_close import (
    AlertSeverity,
    CloseStatus,
    CloseTaskStatus,
    CloseTaskType,
    VarianceAlert,
)
from ledgerclose.schemas.ledger import LedgerEntryCreate
from ledgerclose.services.document_checks import PipelineResult, ValidationPipeline
from ledgerclose.services.ledger_service import LedgerService
from ledgerclose.services.period_close_service import (
    MANUAL_TASK_TYPES,
    PeriodCloseService,
    _close_lock_users,
    _close_locks,
    classify_drift,
)
from ledgerclose.services.posting_service import PostingService
from ledgerclose.utils.error_handling import (
    BusinessRuleException,
    IncompleteTasksError,
    InvalidCloseTransitionError,
    PeriodCloseNotFoundError,
    ValidationException,
)
from tests.factories import cash_sale


PERIOD_START = date(2026, 10, 1)
PERIOD_END = date(2026, 10, 31)


class FailingPipeline(ValidationPipeline):
    async def run(self, tenant_id, period_start, period_end, entity_id=None):
        return PipelineResult(passed=False, failures=["Unmatched bank line"])


async def open_close(service, tenant_id):
    return await service.create_period_close(tenant_id, PERIOD_START, PERIOD_END)


async def tasks_by_type(service, tenant_id, close_id):
    return {task.task_type: task for task in await service.get_close_tasks(tenant_id, close_id)}


async def finish_manual_tasks(service, tenant_id, close_id):
    tasks = await tasks_by_type(service, tenant_id, close_id)
    await service.complete_task(tenant_id, close_id, tasks[CloseTaskType.TAX].id, "controller", {"provision": 0})
    await service.complete_task(tenant_id, close_id, tasks[CloseTaskType.APPROVAL].id, "cfo")
    await service.skip_task(tenant_id, close_id, tasks[CloseTaskType.FILING].id, "controller", "Not a filing month")


class TestCreatePeriodClose:
    """Test close creation and its checklist."""

    @pytest.mark.asyncio
    async def test_checklist_is_created_in_order(self, db_session, tenant_id, cache):
        service = PeriodCloseService(db_session, cache=cache)

        close_id = await open_close(service, tenant_id)

        tasks = await service.get_close_tasks(tenant_id, close_id)
        assert [t.priority for t in tasks] == list(range(1, 10))
        assert tasks[0].task_type == CloseTaskType.ACCRUAL
        assert tasks[-1].task_type == CloseTaskType.APPROVAL
        assert all(t.status == CloseTaskStatus.PENDING for t in tasks)

        period_close = await service.get_period_close(tenant_id, close_id)
        assert period_close.close_status == CloseStatus.DRAFT

    @pytest.mark.asyncio
    async def test_creation_is_idempotent(self, db_session, tenant_id, cache):
        service = PeriodCloseService(db_session, cache=cache)

        first = await open_close(service, tenant_id)
        second = await open_close(service, tenant_id)

        assert first == second
        assert len(await service.get_close_tasks(tenant_id, first)) == 9

    @pytest.mark.asyncio
    async def test_entity_closes_are_separate(self, db_session, tenant_id, cache):
        service = PeriodCloseService(db_session, cache=cache)

        tenant_wide = await open_close(service, tenant_id)
        entity_close = await service.create_period_close(tenant_id, PERIOD_START, PERIOD_END, uuid.uuid4())

        assert tenant_wide != entity_close

    @pytest.mark.asyncio
    async def test_backwards_period_rejected(self, db_session, tenant_id, cache):
        service = PeriodCloseService(db_session, cache=cache)

        with pytest.raises(ValidationException):
            await service.create_period_close(tenant_id, PERIOD_END, PERIOD_START)

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_read_close(self, db_session, tenant_id, cache):
        service = PeriodCloseService(db_session, cache=cache)
        close_id = await open_close(service, tenant_id)

        with pytest.raises(PeriodCloseNotFoundError):
            await service.get_period_close(uuid.uuid4(), close_id)


class TestExecuteCloseTasks:
    """Test automated task execution."""

    @pytest.mark.asyncio
    async def test_empty_ledger_completes_automated_tasks(self, db_session, tenant_id, cache):
        service = PeriodCloseService(db_session, cache=cache)
        close_id = await open_close(service, tenant_id)

        result = await service.execute_close_tasks(tenant_id, close_id)

        assert result == {"completed": 6, "failed": 0, "blocked": 0}
        tasks = await tasks_by_type(service, tenant_id, close_id)
        for task_type, task in tasks.items():
            expected = CloseTaskStatus.PENDING if task_type in MANUAL_TASK_TYPES else CloseTaskStatus.COMPLETED
            assert task.status == expected
        assert tasks[CloseTaskType.VALIDATION].result_data["is_balanced"] is True

    @pytest.mark.asyncio
    async def test_report_task_records_trial_balance(self, db_session, tenant_id, cache):
        service = PeriodCloseService(db_session, cache=cache)
        await PostingService(db_session, cache=cache).post_double_entry(tenant_id, cash_sale("250.00"))
        close_id = await open_close(service, tenant_id)

        await service.execute_close_tasks(tenant_id, close_id)

        period_close = await service.get_period_close(tenant_id, close_id)
        assert len(period_close.generated_reports) == 1
        assert period_close.generated_reports[0]["type"] == "trial_balance"
        assert period_close.generated_reports[0]["account_count"] == 2

    @pytest.mark.asyncio
    async def test_reconciliation_counts_unreconciled_cash(self, db_session, tenant_id, cache):
        service = PeriodCloseService(db_session, cache=cache)
        posting = PostingService(db_session, cache=cache)
        await posting.post_double_entry(tenant_id, cash_sale("250.00"))
        await posting.post_double_entry(tenant_id, cash_sale("80.00"))
        close_id = await open_close(service, tenant_id)

        await service.execute_close_tasks(tenant_id, close_id)

        tasks = await tasks_by_type(service, tenant_id, close_id)
        assert tasks[CloseTaskType.RECONCILIATION].result_data == {
            "unreconciled_count": 2,
            "requires_attention": True,
        }

    @pytest.mark.asyncio
    async def test_pending_accruals_are_posted(self, db_session, tenant_id, cache):
        service = PeriodCloseService(db_session, cache=cache)
        accrual = await service.accruals.create_accrual(
            tenant_id, "October audit fee", "5100", Decimal("900.00"), PERIOD_START, PERIOD_END,
        )
        close_id = await open_close(service, tenant_id)

        result = await service.execute_close_tasks(tenant_id, close_id)

        assert result["completed"] == 6
        assert (await service.accruals.get_accrual(tenant_id, accrual.id)).status == AccrualStatus.POSTED
        tasks = await tasks_by_type(service, tenant_id, close_id)
        assert tasks[CloseTaskType.ACCRUAL].result_data["accruals_posted"] == 1

    @pytest.mark.asyncio
    async def test_imbalanced_ledger_blocks_validation(self, db_session, tenant_id, cache):
        service = PeriodCloseService(db_session, cache=cache)
        await LedgerService(db_session, cache=cache).create_entry(tenant_id, LedgerEntryCreate(
            entry_type=EntryType.DEBIT,
            account_code="1100",
            account_name="Cash",
            amount=Decimal("100.00"),
            transaction_date=date(2026, 10, 5),
        ))
        close_id = await open_close(service, tenant_id)

        result = await service.execute_close_tasks(tenant_id, close_id)

        assert result == {"completed": 5, "failed": 0, "blocked": 1}
        task = (await tasks_by_type(service, tenant_id, close_id))[CloseTaskType.VALIDATION]
        assert task.status == CloseTaskStatus.BLOCKED
        assert "does not balance" in task.blocker_reason

    @pytest.mark.asyncio
    async def test_failing_pipeline_blocks_validation(self, db_session, tenant_id, cache):
        service = PeriodCloseService(db_session, validation_pipeline=FailingPipeline(), cache=cache)
        close_id = await open_close(service, tenant_id)

        result = await service.execute_close_tasks(tenant_id, close_id)

        assert result["blocked"] == 1
        task = (await tasks_by_type(service, tenant_id, close_id))[CloseTaskType.VALIDATION]
        assert "Unmatched bank line" in task.blocker_reason

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_task_and_continues(self, db_session, tenant_id, cache):
        service = PeriodCloseService(db_session, cache=cache)
        close_id = await open_close(service, tenant_id)

        with patch.object(
            service.depreciation, "post_period_depreciation", AsyncMock(side_effect=RuntimeError("boom")),
        ):
            result = await service.execute_close_tasks(tenant_id, close_id)

        assert result == {"completed": 5, "failed": 1, "blocked": 0}
        tasks = await tasks_by_type(service, tenant_id, close_id)
        assert tasks[CloseTaskType.DEPRECIATION].status == CloseTaskStatus.BLOCKED
        assert tasks[CloseTaskType.DEPRECIATION].blocker_reason == "boom"
        assert tasks[CloseTaskType.REPORT].status == CloseTaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_blocked_tasks_are_not_rerun(self, db_session, tenant_id, cache):
        service = PeriodCloseService(db_session, validation_pipeline=FailingPipeline(), cache=cache)
        close_id = await open_close(service, tenant_id)
        await service.execute_close_tasks(tenant_id, close_id)

        result = await service.execute_close_tasks(tenant_id, close_id)

        assert result == {"completed": 0, "failed": 0, "blocked": 0}


class TestCloseLock:
    """Test the in-process per-close lock."""

    @pytest.mark.asyncio
    async def test_lock_is_released_after_execution(self, db_session, tenant_id, cache):
        service = PeriodCloseService(db_session, cache=cache)
        close_id = await open_close(service, tenant_id)

        await service.execute_close_tasks(tenant_id, close_id, "controller")

        assert close_id not in _close_locks
        assert close_id not in _close_lock_users

    @pytest.mark.asyncio
    async def test_waiters_share_the_lock_until_the_last_one_leaves(self, db_session, cache):
        service = PeriodCloseService(db_session, cache=cache)
        close_id = uuid.uuid4()
        events = []

        async def hold(label):
            async with service.close_lock(close_id):
                events.append(f"{label} in")
                await asyncio.sleep(0)
                events.append((label, _close_lock_users[close_id]))
                events.append(f"{label} out")

        await asyncio.gather(hold("a"), hold("b"))

        assert events == ["a in", ("a", 2), "a out", "b in", ("b", 1), "b out"]
        assert close_id not in _close_locks
        assert close_id not in _close_lock_users


class TestCloseLifecycle:
    """Test close state transitions."""

    @pytest.mark.asyncio
    async def test_complete_close_lists_incomplete_tasks(self, db_session, tenant_id, cache):
        service = PeriodCloseService(db_session, cache=cache)
        close_id = await open_close(service, tenant_id)

        with pytest.raises(IncompleteTasksError) as exc_info:
            await service.complete_close(tenant_id, close_id, "controller")

        assert len(exc_info.value.details["incomplete_tasks"]) == 9
        period_close = await service.get_period_close(tenant_id, close_id)
        assert period_close.close_status == CloseStatus.DRAFT

    @pytest.mark.asyncio
    async def test_full_close_and_reopen(self, db_session, tenant_id, cache):
        service = PeriodCloseService(db_session, cache=cache)
        close_id = await open_close(service, tenant_id)
        await service.start_close(tenant_id, close_id, "controller")
        await service.execute_close_tasks(tenant_id, close_id)
        await finish_manual_tasks(service, tenant_id, close_id)

        status = await service.get_close_status(tenant_id, close_id)
        assert status["ready_to_close"] is True
        assert status["task_summary"]["completed"] == 8
        assert status["task_summary"]["skipped"] == 1

        closed = await service.complete_close(tenant_id, close_id, "controller")
        assert closed.close_status == CloseStatus.CLOSED
        assert closed.closed_by == "controller"

        reopened = await service.reopen_period(tenant_id, close_id, "cfo")
        assert reopened.close_status == CloseStatus.REOPENED
        assert reopened.reopened_by == "cfo"

        with pytest.raises(InvalidCloseTransitionError):
            await service.reopen_period(tenant_id, close_id, "cfo")

    @pytest.mark.asyncio
    async def test_closed_period_cannot_execute_tasks(self, db_session, tenant_id, cache):
        service = PeriodCloseService(db_session, cache=cache)
        close_id = await open_close(service, tenant_id)
        await service.execute_close_tasks(tenant_id, close_id)
        await finish_manual_tasks(service, tenant_id, close_id)
        await service.complete_close(tenant_id, close_id, "controller")

        with pytest.raises(InvalidCloseTransitionError):
            await service.execute_close_tasks(tenant_id, close_id)

    @pytest.mark.asyncio
    async def test_locked_period_cannot_be_restarted(self, db_session, tenant_id, cache):
        service = PeriodCloseService(db_session, cache=cache)
        close_id = await open_close(service, tenant_id)

        locked = await service.lock_period(tenant_id, close_id, "controller")

        assert locked.close_status == CloseStatus.LOCKED
        assert locked.locked_by == "controller"
        assert locked.locked_at is not None
        with pytest.raises(InvalidCloseTransitionError):
            await service.start_close(tenant_id, close_id, "controller")

    @pytest.mark.asyncio
    async def test_completed_task_cannot_be_skipped(self, db_session, tenant_id, cache):
        service = PeriodCloseService(db_session, cache=cache)
        close_id = await open_close(service, tenant_id)
        tax = (await tasks_by_type(service, tenant_id, close_id))[CloseTaskType.TAX]
        await service.complete_task(tenant_id, close_id, tax.id, "controller")

        with pytest.raises(BusinessRuleException):
            await service.skip_task(tenant_id, close_id, tax.id, "controller", "Changed my mind")


class TestVarianceAlerts:
    """Test cash balance drift alerts."""

    def test_classify_drift(self):
        assert classify_drift(Decimal("1000")) is None
        assert classify_drift(Decimal("1000.01")) == AlertSeverity.MEDIUM
        assert classify_drift(Decimal("5000.01")) == AlertSeverity.HIGH
        assert classify_drift(Decimal("10000.01")) == AlertSeverity.CRITICAL

    @pytest.mark.parametrize("amount,severity", [
        ("500.00", None),
        ("2000.00", AlertSeverity.MEDIUM),
        ("6000.00", AlertSeverity.HIGH),
        ("12000.00", AlertSeverity.CRITICAL),
    ])
    @pytest.mark.asyncio
    async def test_drift_severity(self, db_session, tenant_id, cache, amount, severity):
        service = PeriodCloseService(db_session, cache=cache)
        await PostingService(db_session, cache=cache).post_double_entry(tenant_id, cash_sale(amount))
        close_id = await open_close(service, tenant_id)

        alerts = await service.check_variance_alerts(tenant_id, close_id)

        if severity is None:
            assert alerts == []
        else:
            assert len(alerts) == 1
            assert alerts[0]["severity"] == severity.value
            assert alerts[0]["alert_type"] == "balance_drift"
            assert alerts[0]["variance_amount"] == float(amount)
            assert alerts[0]["variance_percentage"] is None

    @pytest.mark.asyncio
    async def test_percentage_against_prior_balance(self, db_session, tenant_id, cache):
        service = PeriodCloseService(db_session, cache=cache)
        posting = PostingService(db_session, cache=cache)
        await posting.post_double_entry(tenant_id, cash_sale("4000.00", transaction_date=date(2026, 9, 15)))
        await posting.post_double_entry(tenant_id, cash_sale("2000.00"))
        close_id = await open_close(service, tenant_id)

        alerts = await service.check_variance_alerts(tenant_id, close_id)

        assert alerts[0]["prior_period_amount"] == 4000.0
        assert alerts[0]["current_period_amount"] == 6000.0
        assert alerts[0]["variance_percentage"] == 50.0

    @pytest.mark.asyncio
    async def test_acknowledge_alert(self, db_session, tenant_id, cache):
        service = PeriodCloseService(db_session, cache=cache)
        await PostingService(db_session, cache=cache).post_double_entry(tenant_id, cash_sale("2000.00"))
        close_id = await open_close(service, tenant_id)
        alerts = await service.check_variance_alerts(tenant_id, close_id)

        alert = await service.acknowledge_variance_alert(tenant_id, uuid.UUID(alerts[0]["id"]), "controller")

        assert alert.acknowledged is True
        assert alert.acknowledged_by == "controller"
        stored = (await db_session.execute(select(VarianceAlert))).scalars().all()
        assert len(stored) == 1
        period_close = await service.get_period_close(tenant_id, close_id)
        assert period_close.variance_alerts == alerts
