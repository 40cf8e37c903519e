"""
LedgerClose - Depreciation Service

Monthly depreciation of the fixed asset register, posted during period close:
Dr 6000 Depreciation / Cr 1500 Accumulated Depreciation.

Methods:
- straight_line: (cost - residual) / useful life, spread monthly
- reducing_balance: annual rate applied monthly to the book value
- units_of_production: even usage over useful_life units, one twelfth a month
"""

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerclose.models.fixed_asset import DepreciationEntry, DepreciationMethod, FixedAsset
from ledgerclose.models.ledger import EntryType
from ledgerclose.schemas.ledger import DoubleEntryTransactionCreate, EntryLine
from ledgerclose.services.cache_service import CacheService
from ledgerclose.services.chart_of_accounts_service import ChartOfAccountsService
from ledgerclose.services.ledger_service import to_money
from ledgerclose.services.posting_service import PostingService
from ledgerclose.utils.error_handling import NotFoundException, ValidationException

logger = logging.getLogger(__name__)

DEPRECIATION_EXPENSE_ACCOUNT_CODE = "6000"
ACCUMULATED_DEPRECIATION_ACCOUNT_CODE = "1500"


def months_owned(purchase_date: date, period_end: date) -> int:
    return (period_end.year - purchase_date.year) * 12 + period_end.month - purchase_date.month


class DepreciationService:
    """Service for fixed assets and their depreciation."""

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
    # ASSETS
    # ===========================================

    async def create_fixed_asset(
        self,
        tenant_id: uuid.UUID,
        description: str,
        purchase_date: date,
        purchase_cost: Decimal,
        useful_life: int,
        residual_value: Decimal = Decimal("0"),
        depreciation_method: DepreciationMethod = DepreciationMethod.STRAIGHT_LINE,
        depreciation_rate: Optional[Decimal] = None,
        account_code: str = "1000",
        entity_id: Optional[uuid.UUID] = None,
    ) -> FixedAsset:
        if purchase_cost <= 0:
            raise ValidationException("Purchase cost must be positive", field="purchase_cost")
        if residual_value < 0 or residual_value > purchase_cost:
            raise ValidationException("Residual value must be between zero and cost", field="residual_value")
        if useful_life < 1:
            raise ValidationException("Useful life must be at least 1", field="useful_life")

        asset = FixedAsset(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            entity_id=entity_id,
            description=description,
            account_code=account_code,
            purchase_date=purchase_date,
            purchase_cost=to_money(purchase_cost),
            residual_value=to_money(residual_value),
            useful_life=useful_life,
            depreciation_method=depreciation_method,
            depreciation_rate=depreciation_rate,
            is_active=True,
        )
        self.db.add(asset)
        await self.db.commit()

        logger.info(f"Fixed asset created: {asset.id} {description} (tenant {tenant_id})")
        return asset

    async def get_fixed_asset(self, tenant_id: uuid.UUID, asset_id: uuid.UUID) -> FixedAsset:
        result = await self.db.execute(
            select(FixedAsset).where(and_(
                FixedAsset.id == asset_id,
                FixedAsset.tenant_id == tenant_id,
            ))
        )
        asset = result.scalar_one_or_none()
        if asset is None:
            raise NotFoundException("FixedAsset", asset_id)
        return asset

    # ===========================================
    # CALCULATION
    # ===========================================

    @staticmethod
    def _accumulated_after(asset: FixedAsset, months: int) -> Decimal:
        """Accumulated depreciation after a number of months, before clamping."""
        if months <= 0:
            return Decimal("0")

        cost = Decimal(asset.purchase_cost)
        residual = Decimal(asset.residual_value)

        if asset.depreciation_method == DepreciationMethod.REDUCING_BALANCE:
            if asset.depreciation_rate is not None:
                rate = Decimal(asset.depreciation_rate)
            elif residual > 0:
                rate = Decimal(str(1 - float(residual / cost) ** (1 / asset.useful_life)))
            else:
                rate = Decimal("1") / Decimal(asset.useful_life)
            book_value = cost
            for _ in range(months):
                book_value -= book_value * rate / 12
            return cost - book_value

        # Straight line, and units of production under even usage
        monthly = (cost - residual) / Decimal(asset.useful_life) / 12
        return monthly * months

    def calculate_depreciation(self, asset: FixedAsset, period_end: date) -> Dict[str, Any]:
        """
        Depreciation for the month ending period_end.

        Accumulated depreciation never exceeds cost - residual and the net
        book value never drops below the residual value.
        """
        depreciable = Decimal(asset.purchase_cost) - Decimal(asset.residual_value)
        months = months_owned(asset.purchase_date, period_end)

        accumulated = to_money(min(max(self._accumulated_after(asset, months), Decimal("0")), depreciable))
        previous = to_money(min(max(self._accumulated_after(asset, months - 1), Decimal("0")), depreciable))
        net_book_value = max(Decimal(asset.residual_value), Decimal(asset.purchase_cost) - accumulated)

        return {
            "asset_id": asset.id,
            "period": period_end,
            "depreciation_amount": max(accumulated - previous, Decimal("0.00")),
            "accumulated_depreciation": accumulated,
            "net_book_value": to_money(net_book_value),
        }

    # ===========================================
    # POSTING
    # ===========================================

    async def _depreciation_exists(self, asset_id: uuid.UUID, period_end: date) -> bool:
        result = await self.db.execute(
            select(DepreciationEntry.id).where(and_(
                DepreciationEntry.asset_id == asset_id,
                DepreciationEntry.period == period_end,
            ))
        )
        return result.scalar_one_or_none() is not None

    async def post_depreciation(
        self,
        tenant_id: uuid.UUID,
        asset: FixedAsset,
        period_end: date,
        created_by: str = "system",
    ) -> Optional[uuid.UUID]:
        """Post one month of depreciation. Returns None when nothing is due."""
        depreciation = self.calculate_depreciation(asset, period_end)
        amount = depreciation["depreciation_amount"]
        if amount <= 0:
            return None

        result = await self.posting.post_double_entry(tenant_id, DoubleEntryTransactionCreate(
            description=f"Depreciation: {asset.description}",
            transaction_date=period_end,
            created_by=created_by,
            entity_id=asset.entity_id,
            metadata={
                "assetId": str(asset.id),
                "period": period_end.isoformat(),
                "method": asset.depreciation_method.value,
                "transactionId": f"depreciation:{asset.id}:{period_end.isoformat()}",
            },
            entries=[
                EntryLine(
                    entry_type=EntryType.DEBIT,
                    account_code=DEPRECIATION_EXPENSE_ACCOUNT_CODE,
                    account_name=await self.chart.get_account_name(tenant_id, DEPRECIATION_EXPENSE_ACCOUNT_CODE),
                    amount=amount,
                ),
                EntryLine(
                    entry_type=EntryType.CREDIT,
                    account_code=ACCUMULATED_DEPRECIATION_ACCOUNT_CODE,
                    account_name=await self.chart.get_account_name(tenant_id, ACCUMULATED_DEPRECIATION_ACCOUNT_CODE),
                    amount=amount,
                ),
            ],
        ))

        self.db.add(DepreciationEntry(
            tenant_id=tenant_id,
            asset_id=asset.id,
            period=period_end,
            depreciation_amount=amount,
            accumulated_depreciation=depreciation["accumulated_depreciation"],
            net_book_value=depreciation["net_book_value"],
            transaction_id=result["transaction_id"],
        ))
        await self.db.commit()

        logger.info(f"Depreciation posted for asset {asset.id}: {amount} (tenant {tenant_id})")
        return result["transaction_id"]

    async def post_period_depreciation(
        self,
        tenant_id: uuid.UUID,
        period_end: date,
        created_by: str = "system",
        entity_id: Optional[uuid.UUID] = None,
    ) -> Dict[str, Any]:
        """Depreciate every active asset not yet depreciated for period_end."""
        query = select(FixedAsset).where(and_(
            FixedAsset.tenant_id == tenant_id,
            FixedAsset.is_active.is_(True),
            FixedAsset.purchase_date <= period_end,
        ))
        if entity_id is not None:
            query = query.where(FixedAsset.entity_id == entity_id)
        result = await self.db.execute(query.order_by(FixedAsset.purchase_date))
        assets: List[FixedAsset] = list(result.scalars().all())

        depreciated = 0
        skipped = 0
        total = Decimal("0.00")
        for asset in assets:
            if await self._depreciation_exists(asset.id, period_end):
                skipped += 1
                continue
            transaction_id = await self.post_depreciation(tenant_id, asset, period_end, created_by)
            if transaction_id is None:
                skipped += 1
                continue
            depreciated += 1
            total += self.calculate_depreciation(asset, period_end)["depreciation_amount"]

        return {
            "period": period_end.isoformat(),
            "assets_depreciated": depreciated,
            "total_depreciation": float(total),
            "skipped": skipped,
        }
