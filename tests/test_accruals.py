"""
LedgerClose - Accruals & Prepayments Tests
"""

import uuid
from datetime import date
from decimal import Decimal

import pytest

from ledgerclose.models.accruals import AccrualStatus, PrepaymentStatus
from ledgerclose.services.accruals_service import (
    AccrualsPrepaymentsService,
    month_end,
    months_spanned,
    split_evenly,
)
from ledgerclose.services.ledger_service import LedgerService
from ledgerclose.utils.error_handling import (
    InvalidAccrualStateError,
    NotFoundException,
    ValidationException,
)


class TestHelpers:
    """Test period arithmetic helpers."""

    def test_split_evenly_puts_remainder_last(self):
        assert split_evenly(Decimal("100"), 3) == [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]

    def test_split_evenly_sums_to_amount(self):
        assert sum(split_evenly(Decimal("1000.01"), 7)) == Decimal("1000.01")

    def test_months_spanned(self):
        assert months_spanned(date(2026, 1, 1), date(2026, 3, 31)) == 3
        assert months_spanned(date(2026, 11, 15), date(2027, 2, 1)) == 4
        assert months_spanned(date(2026, 10, 1), date(2026, 10, 31)) == 1

    def test_month_end(self):
        assert month_end(date(2026, 1, 1), 1) == date(2026, 2, 28)
        assert month_end(date(2026, 12, 15)) == date(2026, 12, 31)


class TestAccruals:
    """Test the accrual lifecycle."""

    async def _accrual(self, service, tenant_id, amount="500.00"):
        return await service.create_accrual(
            tenant_id, "October rent", "5300", Decimal(amount),
            date(2026, 10, 1), date(2026, 10, 31), created_by="user-1",
        )

    @pytest.mark.asyncio
    async def test_post_accrual_books_expense_and_liability(self, db_session, tenant_id, cache):
        service = AccrualsPrepaymentsService(db_session, cache=cache)
        accrual = await self._accrual(service, tenant_id)

        result = await service.post_accrual(tenant_id, accrual.id)

        assert accrual.status == AccrualStatus.POSTED
        assert result["transaction_id"] == str(accrual.transaction_id)
        ledger = LedgerService(db_session, cache=cache)
        assert (await ledger.get_account_balance(tenant_id, "5300"))["balance"] == Decimal("500.00")
        assert (await ledger.get_account_balance(tenant_id, "2100"))["balance"] == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_posting_twice_returns_same_transaction(self, db_session, tenant_id, cache):
        service = AccrualsPrepaymentsService(db_session, cache=cache)
        accrual = await self._accrual(service, tenant_id)

        first = await service.post_accrual(tenant_id, accrual.id)
        second = await service.post_accrual(tenant_id, accrual.id)

        assert first == second

    @pytest.mark.asyncio
    async def test_reversal_is_dated_after_period_end(self, db_session, tenant_id, cache):
        service = AccrualsPrepaymentsService(db_session, cache=cache)
        accrual = await self._accrual(service, tenant_id)
        await service.post_accrual(tenant_id, accrual.id)

        await service.reverse_accrual(tenant_id, accrual.id)

        assert accrual.status == AccrualStatus.REVERSED
        assert accrual.reversal_transaction_id is not None
        ledger = LedgerService(db_session, cache=cache)
        at_period_end = await ledger.get_account_balance(tenant_id, "2100", as_of_date=date(2026, 10, 31))
        after_reversal = await ledger.get_account_balance(tenant_id, "2100", as_of_date=date(2026, 11, 1))
        assert at_period_end["balance"] == Decimal("500.00")
        assert after_reversal["balance"] == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_reversing_twice_raises(self, db_session, tenant_id, cache):
        service = AccrualsPrepaymentsService(db_session, cache=cache)
        accrual = await self._accrual(service, tenant_id)
        await service.post_accrual(tenant_id, accrual.id)
        await service.reverse_accrual(tenant_id, accrual.id)

        with pytest.raises(InvalidAccrualStateError):
            await service.reverse_accrual(tenant_id, accrual.id)

    @pytest.mark.asyncio
    async def test_reversing_pending_accrual_raises(self, db_session, tenant_id, cache):
        service = AccrualsPrepaymentsService(db_session, cache=cache)
        accrual = await self._accrual(service, tenant_id)

        with pytest.raises(InvalidAccrualStateError):
            await service.reverse_accrual(tenant_id, accrual.id)

    @pytest.mark.asyncio
    async def test_posting_reversed_accrual_raises(self, db_session, tenant_id, cache):
        service = AccrualsPrepaymentsService(db_session, cache=cache)
        accrual = await self._accrual(service, tenant_id)
        await service.post_accrual(tenant_id, accrual.id)
        await service.reverse_accrual(tenant_id, accrual.id)

        with pytest.raises(InvalidAccrualStateError):
            await service.post_accrual(tenant_id, accrual.id)

    @pytest.mark.asyncio
    async def test_invalid_amount_and_period(self, db_session, tenant_id, cache):
        service = AccrualsPrepaymentsService(db_session, cache=cache)

        with pytest.raises(ValidationException):
            await self._accrual(service, tenant_id, amount="0")
        with pytest.raises(ValidationException):
            await service.create_accrual(
                tenant_id, "Backwards", "5300", Decimal("10"), date(2026, 10, 31), date(2026, 10, 1),
            )

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_see_accrual(self, db_session, tenant_id, cache):
        service = AccrualsPrepaymentsService(db_session, cache=cache)
        accrual = await self._accrual(service, tenant_id)

        with pytest.raises(NotFoundException):
            await service.get_accrual(uuid.uuid4(), accrual.id)

    @pytest.mark.asyncio
    async def test_post_pending_accruals_only_posts_due(self, db_session, tenant_id, cache):
        service = AccrualsPrepaymentsService(db_session, cache=cache)
        due = await self._accrual(service, tenant_id)
        later = await service.create_accrual(
            tenant_id, "November rent", "5300", Decimal("500.00"), date(2026, 11, 1), date(2026, 11, 30),
        )

        result = await service.post_pending_accruals(tenant_id, date(2026, 10, 31))

        assert result["accruals_posted"] == 1
        assert result["accrual_ids"] == [str(due.id)]
        assert result["total_amount"] == 500.0
        assert later.status == AccrualStatus.PENDING

    @pytest.mark.asyncio
    async def test_list_accruals_by_status(self, db_session, tenant_id, cache):
        service = AccrualsPrepaymentsService(db_session, cache=cache)
        posted = await self._accrual(service, tenant_id)
        await self._accrual(service, tenant_id, amount="75.00")
        await service.post_accrual(tenant_id, posted.id)

        pending = await service.list_accruals(tenant_id, AccrualStatus.PENDING)

        assert [a.amount for a in pending] == [Decimal("75.00")]


class TestPrepayments:
    """Test prepayment amortization."""

    async def _prepayment(self, service, tenant_id, **kwargs):
        return await service.create_prepayment(
            tenant_id, "Q1 insurance", "5300", Decimal("1200.00"),
            date(2026, 1, 1), date(2026, 3, 31), **kwargs,
        )

    @pytest.mark.asyncio
    async def test_periods_default_to_months_spanned(self, db_session, tenant_id, cache):
        service = AccrualsPrepaymentsService(db_session, cache=cache)

        prepayment = await self._prepayment(service, tenant_id)

        assert prepayment.amortization_periods == 3

    @pytest.mark.asyncio
    async def test_amortization_posts_one_slice_per_month(self, db_session, tenant_id, cache):
        service = AccrualsPrepaymentsService(db_session, cache=cache)
        prepayment = await self._prepayment(service, tenant_id)

        result = await service.amortize_prepayment(tenant_id, prepayment.id)

        assert result["periods"] == 3
        assert len(result["transaction_ids"]) == 3
        assert prepayment.status == PrepaymentStatus.AMORTIZED

        ledger = LedgerService(db_session, cache=cache)
        january = await ledger.get_account_balance(tenant_id, "5300", as_of_date=date(2026, 1, 31))
        prepaid = await ledger.get_account_balance(tenant_id, "1400")
        assert january["balance"] == Decimal("400.00")
        assert prepaid["balance"] == Decimal("-1200.00")

    @pytest.mark.asyncio
    async def test_amortizing_twice_raises(self, db_session, tenant_id, cache):
        service = AccrualsPrepaymentsService(db_session, cache=cache)
        prepayment = await self._prepayment(service, tenant_id)
        await service.amortize_prepayment(tenant_id, prepayment.id)

        with pytest.raises(InvalidAccrualStateError):
            await service.amortize_prepayment(tenant_id, prepayment.id)

    @pytest.mark.asyncio
    async def test_explicit_period_count(self, db_session, tenant_id, cache):
        service = AccrualsPrepaymentsService(db_session, cache=cache)
        prepayment = await self._prepayment(service, tenant_id)

        result = await service.amortize_prepayment(tenant_id, prepayment.id, periods=12)

        assert len(result["transaction_ids"]) == 12
        ledger = LedgerService(db_session, cache=cache)
        assert (await ledger.get_account_balance(tenant_id, "5300"))["balance"] == Decimal("1200.00")

    @pytest.mark.asyncio
    async def test_zero_periods_rejected(self, db_session, tenant_id, cache):
        service = AccrualsPrepaymentsService(db_session, cache=cache)

        with pytest.raises(ValidationException):
            await self._prepayment(service, tenant_id, amortization_periods=0)

    @pytest.mark.asyncio
    async def test_amortize_due_prepayments(self, db_session, tenant_id, cache):
        service = AccrualsPrepaymentsService(db_session, cache=cache)
        due = await self._prepayment(service, tenant_id)
        await service.create_prepayment(
            tenant_id, "Annual licence", "5100", Decimal("600.00"), date(2026, 1, 1), date(2026, 12, 31),
        )

        result = await service.amortize_due_prepayments(tenant_id, date(2026, 3, 1), date(2026, 3, 31))

        assert result["prepayments_amortized"] == 1
        assert result["prepayment_ids"] == [str(due.id)]
