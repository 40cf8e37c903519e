"""
LedgerClose - Accruals & Prepayments Service

Accrual and prepayment lifecycle feeding the period close:
- Accruals: pending -> posted -> reversed
  Post:    Dr expense account / Cr 2100 Accrued Expenses at period end
  Reverse: opposite entries on the first day of the next period
- Prepayments: pending -> amortized
  Each month: Dr expense account / Cr 1400 Prepaid Expenses
"""

import logging
import uuid
from datetime import date, timedelta
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, List, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerclose.models.accruals import Accrual, AccrualStatus, Prepayment, PrepaymentStatus
from ledgerclose.models.ledger import EntryType
from ledgerclose.schemas.ledger import DoubleEntryTransactionCreate, EntryLine
from ledgerclose.services.cache_service import CacheService
from ledgerclose.services.chart_of_accounts_service import ChartOfAccountsService
from ledgerclose.services.ledger_service import to_money
from ledgerclose.services.posting_service import PostingService
from ledgerclose.utils.error_handling import (
    InvalidAccrualStateError,
    NotFoundException,
    ValidationException,
)

logger = logging.getLogger(__name__)

ACCRUALS_ACCOUNT_CODE = "2100"
PREPAYMENTS_ACCOUNT_CODE = "1400"


def months_spanned(period_start: date, period_end: date) -> int:
    """Calendar months touched by the period, inclusive."""
    return (period_end.year - period_start.year) * 12 + period_end.month - period_start.month + 1


def month_end(day: date, months_ahead: int = 0) -> date:
    return day + relativedelta(months=months_ahead, day=31)


def split_evenly(amount: Decimal, parts: int) -> List[Decimal]:
    """Equal slices; the last one absorbs the rounding remainder."""
    amount = to_money(amount)
    slice_amount = (amount / parts).quantize(Decimal("0.01"), rounding=ROUND_DOWN)
    slices = [slice_amount] * (parts - 1)
    slices.append(amount - slice_amount * (parts - 1))
    return slices


class AccrualsPrepaymentsService:
    """Service for accruals and prepayments."""

    def __init__(
        self,
        db: AsyncSession,
        posting: Optional[PostingService] = None,
        cache: Optional[CacheService] = None,
    ):
        self.db = db
        self.posting = posting or PostingService(db, cache=cache)
        self.chart = ChartOfAccountsService(db)

    # ===========================================
    # ACCRUALS
    # ===========================================

    async def create_accrual(
        self,
        tenant_id: uuid.UUID,
        description: str,
        account_code: str,
        amount: Decimal,
        period_start: date,
        period_end: date,
        created_by: Optional[str] = None,
        entity_id: Optional[uuid.UUID] = None,
    ) -> Accrual:
        if amount <= 0:
            raise ValidationException("Accrual amount must be positive", field="amount")
        if period_end < period_start:
            raise ValidationException("Period end must not precede period start", field="period_end")

        accrual = Accrual(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            entity_id=entity_id,
            description=description,
            account_code=account_code,
            amount=to_money(amount),
            period_start=period_start,
            period_end=period_end,
            status=AccrualStatus.PENDING,
            created_by=created_by,
        )
        self.db.add(accrual)
        await self.db.commit()

        logger.info(f"Accrual created: {accrual.id} {account_code} {amount} (tenant {tenant_id})")
        return accrual

    async def get_accrual(self, tenant_id: uuid.UUID, accrual_id: uuid.UUID) -> Accrual:
        result = await self.db.execute(
            select(Accrual).where(and_(
                Accrual.id == accrual_id,
                Accrual.tenant_id == tenant_id,
            ))
        )
        accrual = result.scalar_one_or_none()
        if accrual is None:
            raise NotFoundException("Accrual", accrual_id)
        return accrual

    async def list_accruals(
        self,
        tenant_id: uuid.UUID,
        status: Optional[AccrualStatus] = None,
    ) -> List[Accrual]:
        query = select(Accrual).where(Accrual.tenant_id == tenant_id)
        if status is not None:
            query = query.where(Accrual.status == status)
        result = await self.db.execute(query.order_by(Accrual.period_end, Accrual.created_at))
        return list(result.scalars().all())

    async def _accrual_entries(
        self,
        tenant_id: uuid.UUID,
        accrual: Accrual,
        reverse: bool = False,
    ) -> List[EntryLine]:
        expense_name = await self.chart.get_account_name(tenant_id, accrual.account_code)
        accruals_name = await self.chart.get_account_name(tenant_id, ACCRUALS_ACCOUNT_CODE)
        expense_side = EntryType.CREDIT if reverse else EntryType.DEBIT
        return [
            EntryLine(
                entry_type=expense_side,
                account_code=accrual.account_code,
                account_name=expense_name,
                amount=accrual.amount,
                entity_id=accrual.entity_id,
            ),
            EntryLine(
                entry_type=expense_side.opposite,
                account_code=ACCRUALS_ACCOUNT_CODE,
                account_name=accruals_name,
                amount=accrual.amount,
                entity_id=accrual.entity_id,
            ),
        ]

    async def post_accrual(self, tenant_id: uuid.UUID, accrual_id: uuid.UUID) -> Dict[str, Any]:
        """Post a pending accrual at its period end. Posting twice is a no-op."""
        accrual = await self.get_accrual(tenant_id, accrual_id)
        if accrual.status == AccrualStatus.POSTED:
            return {"accrual_id": str(accrual.id), "transaction_id": str(accrual.transaction_id)}
        if accrual.status != AccrualStatus.PENDING:
            raise InvalidAccrualStateError("Accrual", accrual.id, accrual.status.value, "post")

        result = await self.posting.post_double_entry(tenant_id, DoubleEntryTransactionCreate(
            description=f"Accrual: {accrual.description}",
            transaction_date=accrual.period_end,
            created_by="system",
            entity_id=accrual.entity_id,
            metadata={"accrualId": str(accrual.id), "transactionId": f"accrual:{accrual.id}"},
            entries=await self._accrual_entries(tenant_id, accrual),
        ))

        accrual.status = AccrualStatus.POSTED
        accrual.transaction_id = result["transaction_id"]
        await self.db.commit()

        logger.info(f"Accrual posted: {accrual.id} as transaction {result['transaction_id']}")
        return {"accrual_id": str(accrual.id), "transaction_id": str(result["transaction_id"])}

    async def reverse_accrual(self, tenant_id: uuid.UUID, accrual_id: uuid.UUID) -> Dict[str, Any]:
        """Reverse a posted accrual on the day after its period end."""
        accrual = await self.get_accrual(tenant_id, accrual_id)
        if accrual.status != AccrualStatus.POSTED:
            raise InvalidAccrualStateError("Accrual", accrual.id, accrual.status.value, "reverse")

        result = await self.posting.post_double_entry(tenant_id, DoubleEntryTransactionCreate(
            description=f"Accrual Reversal: {accrual.description}",
            transaction_date=accrual.period_end + timedelta(days=1),
            created_by="system",
            entity_id=accrual.entity_id,
            metadata={
                "accrualId": str(accrual.id),
                "reversal": True,
                "transactionId": f"accrual-reversal:{accrual.id}",
            },
            entries=await self._accrual_entries(tenant_id, accrual, reverse=True),
        ))

        accrual.status = AccrualStatus.REVERSED
        accrual.reversal_transaction_id = result["transaction_id"]
        await self.db.commit()

        logger.info(f"Accrual reversed: {accrual.id} as transaction {result['transaction_id']}")
        return {"accrual_id": str(accrual.id), "transaction_id": str(result["transaction_id"])}

    async def post_pending_accruals(
        self,
        tenant_id: uuid.UUID,
        period_end: date,
        entity_id: Optional[uuid.UUID] = None,
    ) -> Dict[str, Any]:
        """Post every pending accrual whose period ends on or before period_end."""
        query = select(Accrual).where(and_(
            Accrual.tenant_id == tenant_id,
            Accrual.status == AccrualStatus.PENDING,
            Accrual.period_end <= period_end,
        ))
        if entity_id is not None:
            query = query.where(Accrual.entity_id == entity_id)
        result = await self.db.execute(query.order_by(Accrual.period_end, Accrual.created_at))
        accruals = list(result.scalars().all())

        total = Decimal("0.00")
        posted_ids = []
        for accrual in accruals:
            await self.post_accrual(tenant_id, accrual.id)
            total += accrual.amount
            posted_ids.append(str(accrual.id))

        return {
            "accruals_posted": len(posted_ids),
            "total_amount": float(total),
            "accrual_ids": posted_ids,
        }

    # ===========================================
    # PREPAYMENTS
    # ===========================================

    async def create_prepayment(
        self,
        tenant_id: uuid.UUID,
        description: str,
        account_code: str,
        amount: Decimal,
        period_start: date,
        period_end: date,
        created_by: Optional[str] = None,
        amortization_periods: Optional[int] = None,
        entity_id: Optional[uuid.UUID] = None,
    ) -> Prepayment:
        if amount <= 0:
            raise ValidationException("Prepayment amount must be positive", field="amount")
        if period_end < period_start:
            raise ValidationException("Period end must not precede period start", field="period_end")
        if amortization_periods is None:
            amortization_periods = months_spanned(period_start, period_end)
        if amortization_periods < 1:
            raise ValidationException("Amortization periods must be at least 1", field="amortization_periods")

        prepayment = Prepayment(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            entity_id=entity_id,
            description=description,
            account_code=account_code,
            amount=to_money(amount),
            period_start=period_start,
            period_end=period_end,
            amortization_periods=amortization_periods,
            status=PrepaymentStatus.PENDING,
            created_by=created_by,
        )
        self.db.add(prepayment)
        await self.db.commit()

        logger.info(f"Prepayment created: {prepayment.id} {account_code} {amount} (tenant {tenant_id})")
        return prepayment

    async def get_prepayment(self, tenant_id: uuid.UUID, prepayment_id: uuid.UUID) -> Prepayment:
        result = await self.db.execute(
            select(Prepayment).where(and_(
                Prepayment.id == prepayment_id,
                Prepayment.tenant_id == tenant_id,
            ))
        )
        prepayment = result.scalar_one_or_none()
        if prepayment is None:
            raise NotFoundException("Prepayment", prepayment_id)
        return prepayment

    async def amortize_prepayment(
        self,
        tenant_id: uuid.UUID,
        prepayment_id: uuid.UUID,
        periods: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Release a prepayment to expense in equal monthly slices.

        Slice i is dated at the end of the i-th month from period start.
        """
        prepayment = await self.get_prepayment(tenant_id, prepayment_id)
        if prepayment.status == PrepaymentStatus.AMORTIZED:
            raise InvalidAccrualStateError("Prepayment", prepayment.id, prepayment.status.value, "amortize")

        periods = periods if periods is not None else prepayment.amortization_periods
        if periods < 1:
            raise ValidationException("Amortization periods must be at least 1", field="periods")

        expense_name = await self.chart.get_account_name(tenant_id, prepayment.account_code)
        prepaid_name = await self.chart.get_account_name(tenant_id, PREPAYMENTS_ACCOUNT_CODE)

        transaction_ids = []
        for index, slice_amount in enumerate(split_evenly(prepayment.amount, periods)):
            result = await self.posting.post_double_entry(tenant_id, DoubleEntryTransactionCreate(
                description=f"Prepayment Amortization: {prepayment.description} (Period {index + 1}/{periods})",
                transaction_date=month_end(prepayment.period_start, index),
                created_by="system",
                entity_id=prepayment.entity_id,
                metadata={
                    "prepaymentId": str(prepayment.id),
                    "period": index + 1,
                    "totalPeriods": periods,
                    "transactionId": f"prepayment:{prepayment.id}:{index + 1}",
                },
                entries=[
                    EntryLine(
                        entry_type=EntryType.DEBIT,
                        account_code=prepayment.account_code,
                        account_name=expense_name,
                        amount=slice_amount,
                    ),
                    EntryLine(
                        entry_type=EntryType.CREDIT,
                        account_code=PREPAYMENTS_ACCOUNT_CODE,
                        account_name=prepaid_name,
                        amount=slice_amount,
                    ),
                ],
            ))
            transaction_ids.append(str(result["transaction_id"]))

        prepayment.status = PrepaymentStatus.AMORTIZED
        await self.db.commit()

        logger.info(f"Prepayment amortized: {prepayment.id} over {periods} periods (tenant {tenant_id})")
        return {
            "prepayment_id": str(prepayment.id),
            "periods": periods,
            "transaction_ids": transaction_ids,
        }

    async def amortize_due_prepayments(
        self,
        tenant_id: uuid.UUID,
        period_start: date,
        period_end: date,
        entity_id: Optional[uuid.UUID] = None,
    ) -> Dict[str, Any]:
        """Amortize every open prepayment whose period ends within the range."""
        query = select(Prepayment).where(and_(
            Prepayment.tenant_id == tenant_id,
            Prepayment.status.in_([PrepaymentStatus.PENDING, PrepaymentStatus.POSTED]),
            Prepayment.period_end >= period_start,
            Prepayment.period_end <= period_end,
        ))
        if entity_id is not None:
            query = query.where(Prepayment.entity_id == entity_id)
        result = await self.db.execute(query.order_by(Prepayment.period_end, Prepayment.created_at))
        prepayments = list(result.scalars().all())

        total = Decimal("0.00")
        amortized_ids = []
        for prepayment in prepayments:
            await self.amortize_prepayment(tenant_id, prepayment.id)
            total += prepayment.amount
            amortized_ids.append(str(prepayment.id))

        return {
            "prepayments_amortized": len(amortized_ids),
            "total_amount": float(total),
            "prepayment_ids": amortized_ids,
        }
