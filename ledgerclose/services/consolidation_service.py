"""
LedgerClose - Multi-Entity Consolidation Service

Entity hierarchy, intercompany elimination, consolidated statements and
FX remeasurement. Each entity's figures are translated into the base
currency at the spot rate for the period end before they are summed.
"""

import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from sqlalchemy import select, and_, func
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerclose.models.entity import ConsolidatedReport, Entity, EntityType, IntercompanyTransaction
from ledgerclose.models.fx import FXRemeasurementLog, RateType
from ledgerclose.models.ledger import EntryType, LedgerEntry
from ledgerclose.services.cache_service import CacheService
from ledgerclose.services.exchange_rate_service import ExchangeRateService
from ledgerclose.services.ledger_service import LedgerService, to_money
from ledgerclose.utils.db_helpers import dialect_insert
from ledgerclose.utils.error_handling import (
    EntityNotFoundError,
    ProviderError,
    RateNotFoundError,
    ValidationException,
)

logger = logging.getLogger(__name__)

REVENUE_PREFIXES = ["4"]
EXPENSE_PREFIXES = ["5", "6"]
ASSET_PREFIXES = ["1"]
LIABILITY_PREFIXES = ["2"]
EQUITY_PREFIXES = ["3"]

# Parents first in hierarchy listings
ENTITY_TYPE_ORDER = {
    EntityType.PARENT: 0,
    EntityType.SUBSIDIARY: 1,
    EntityType.DIVISION: 2,
    EntityType.DEPARTMENT: 3,
}


class ConsolidationService:
    """Service for multi-entity consolidation."""

    def __init__(
        self,
        db: AsyncSession,
        fx_service: Optional[ExchangeRateService] = None,
        cache: Optional[CacheService] = None,
    ):
        self.db = db
        self.ledger = LedgerService(db, cache=cache)
        self.fx_service = fx_service or ExchangeRateService(db, cache=cache)

    # ===========================================
    # ENTITIES
    # ===========================================

    async def create_entity(
        self,
        tenant_id: uuid.UUID,
        entity_name: str,
        entity_type: EntityType,
        currency: str = "GBP",
        parent_entity_id: Optional[uuid.UUID] = None,
        country_code: Optional[str] = None,
        tax_id: Optional[str] = None,
    ) -> Entity:
        if parent_entity_id is not None:
            await self.get_entity(tenant_id, parent_entity_id)

        entity = Entity(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            parent_entity_id=parent_entity_id,
            entity_name=entity_name,
            entity_type=entity_type,
            currency=currency.upper(),
            country_code=country_code,
            tax_id=tax_id,
            is_active=True,
        )
        self.db.add(entity)
        await self.db.commit()

        logger.info(f"Entity created: {entity.id} {entity_name} ({entity_type.value}, tenant {tenant_id})")
        return entity

    async def get_entity(self, tenant_id: uuid.UUID, entity_id: uuid.UUID) -> Entity:
        result = await self.db.execute(
            select(Entity).where(and_(
                Entity.id == entity_id,
                Entity.tenant_id == tenant_id,
            ))
        )
        entity = result.scalar_one_or_none()
        if entity is None:
            raise EntityNotFoundError(entity_id)
        return entity

    async def get_entities(self, tenant_id: uuid.UUID, entity_ids: List[uuid.UUID]) -> List[Entity]:
        """Entities in the requested order; every id must belong to the tenant."""
        entities = []
        for entity_id in entity_ids:
            entities.append(await self.get_entity(tenant_id, entity_id))
        return entities

    async def get_entity_hierarchy(self, tenant_id: uuid.UUID) -> List[Dict[str, Any]]:
        """Active entities as a nested tree; roots are entities without an active parent."""
        result = await self.db.execute(
            select(Entity).where(and_(
                Entity.tenant_id == tenant_id,
                Entity.is_active.is_(True),
            ))
        )
        entities = sorted(
            result.scalars().all(),
            key=lambda e: (ENTITY_TYPE_ORDER[e.entity_type], e.entity_name),
        )

        nodes = {entity.id: {**entity.to_dict(), "children": []} for entity in entities}
        roots = []
        for entity in entities:
            node = nodes[entity.id]
            parent = nodes.get(entity.parent_entity_id) if entity.parent_entity_id is not None else None
            if parent is not None:
                parent["children"].append(node)
            else:
                roots.append(node)
        return roots

    # ===========================================
    # INTERCOMPANY
    # ===========================================

    async def create_intercompany_transaction(
        self,
        tenant_id: uuid.UUID,
        from_entity_id: uuid.UUID,
        to_entity_id: uuid.UUID,
        transaction_date: date,
        amount: Decimal,
        currency: str = "GBP",
        description: Optional[str] = None,
    ) -> IntercompanyTransaction:
        if from_entity_id == to_entity_id:
            raise ValidationException("Intercompany parties must differ", field="to_entity_id")
        if amount <= 0:
            raise ValidationException("Intercompany amount must be positive", field="amount")
        await self.get_entity(tenant_id, from_entity_id)
        await self.get_entity(tenant_id, to_entity_id)

        transaction = IntercompanyTransaction(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            from_entity_id=from_entity_id,
            to_entity_id=to_entity_id,
            transaction_date=transaction_date,
            amount=to_money(amount),
            currency=currency.upper(),
            description=description,
            is_eliminated=False,
        )
        self.db.add(transaction)
        await self.db.commit()

        logger.info(
            f"Intercompany transaction created: {transaction.id} "
            f"{from_entity_id} -> {to_entity_id} {amount} (tenant {tenant_id})"
        )
        return transaction

    async def eliminate_intercompany_transactions(
        self,
        tenant_id: uuid.UUID,
        period_start: date,
        period_end: date,
        entity_ids: List[uuid.UUID],
    ) -> Dict[str, Any]:
        """
        Mark in-range intercompany transactions between members of the set
        as eliminated. Already eliminated rows are never counted again.
        """
        if not entity_ids:
            return {"eliminated_count": 0, "total_amount": Decimal("0.00")}

        result = await self.db.execute(
            select(IntercompanyTransaction).where(and_(
                IntercompanyTransaction.tenant_id == tenant_id,
                IntercompanyTransaction.transaction_date >= period_start,
                IntercompanyTransaction.transaction_date <= period_end,
                IntercompanyTransaction.from_entity_id.in_(entity_ids),
                IntercompanyTransaction.to_entity_id.in_(entity_ids),
                IntercompanyTransaction.is_eliminated.is_(False),
            ))
        )
        transactions = list(result.scalars().all())

        now = datetime.now(timezone.utc)
        total = Decimal("0.00")
        for transaction in transactions:
            transaction.is_eliminated = True
            transaction.eliminated_at = now
            total += to_money(transaction.amount)
        await self.db.commit()

        logger.info(
            f"Eliminated {len(transactions)} intercompany transactions totalling {total} "
            f"(tenant {tenant_id})"
        )
        return {"eliminated_count": len(transactions), "total_amount": total}

    # ===========================================
    # CONSOLIDATED STATEMENTS
    # ===========================================

    async def _translation_rate(
        self,
        tenant_id: uuid.UUID,
        entity: Entity,
        base_currency: str,
        rate_date: date,
    ) -> Decimal:
        try:
            return await self.fx_service.get_exchange_rate(tenant_id, entity.currency, base_currency, rate_date)
        except ProviderError:
            raise RateNotFoundError(entity.currency, base_currency, rate_date)

    @staticmethod
    def _translate(amount: Decimal, rate: Decimal) -> Decimal:
        return (amount * rate).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    async def get_consolidated_profit_loss(
        self,
        tenant_id: uuid.UUID,
        entity_ids: List[uuid.UUID],
        base_currency: str,
        period_start: date,
        period_end: date,
    ) -> Dict[str, Any]:
        """
        Consolidated P&L across the entity set.

        Revenue is credit entries on 4xxx accounts, expenses are debit
        entries on 5xxx/6xxx accounts, both scoped to each entity.
        """
        base_currency = base_currency.upper()
        entities = await self.get_entities(tenant_id, entity_ids)

        total_revenue = Decimal("0.00")
        total_expenses = Decimal("0.00")
        rates_used: Dict[str, float] = {}
        by_entity = []

        for entity in entities:
            rate = await self._translation_rate(tenant_id, entity, base_currency, period_end)
            rates_used[entity.currency] = float(rate)

            revenue = await self.ledger.sum_amounts(
                tenant_id, EntryType.CREDIT, REVENUE_PREFIXES,
                start_date=period_start, end_date=period_end, entity_id=entity.id,
            )
            expenses = await self.ledger.sum_amounts(
                tenant_id, EntryType.DEBIT, EXPENSE_PREFIXES,
                start_date=period_start, end_date=period_end, entity_id=entity.id,
            )
            revenue = self._translate(revenue, rate)
            expenses = self._translate(expenses, rate)
            total_revenue += revenue
            total_expenses += expenses
            by_entity.append({
                "entity_id": str(entity.id),
                "entity_name": entity.entity_name,
                "currency": entity.currency,
                "exchange_rate": float(rate),
                "revenue": float(revenue),
                "expenses": float(expenses),
            })

        eliminations = await self.eliminate_intercompany_transactions(
            tenant_id, period_start, period_end, entity_ids,
        )

        return {
            "period_start": period_start.isoformat(),
            "period_end": period_end.isoformat(),
            "base_currency": base_currency,
            "revenue": float(total_revenue),
            "expenses": float(total_expenses),
            "net_income": float(total_revenue - total_expenses),
            "exchange_rates_used": rates_used,
            "intercompany_eliminated": float(eliminations["total_amount"]),
            "eliminations_applied": [{
                "type": "intercompany",
                "amount": float(eliminations["total_amount"]),
                "description": f"Eliminated {eliminations['eliminated_count']} intercompany transactions",
            }],
            "by_entity": by_entity,
        }

    async def _section_balance(
        self,
        tenant_id: uuid.UUID,
        prefixes: List[str],
        as_of_date: date,
        entity_id: uuid.UUID,
        debit_normal: bool,
    ) -> Decimal:
        debits = await self.ledger.sum_amounts(
            tenant_id, EntryType.DEBIT, prefixes, end_date=as_of_date, entity_id=entity_id,
        )
        credits = await self.ledger.sum_amounts(
            tenant_id, EntryType.CREDIT, prefixes, end_date=as_of_date, entity_id=entity_id,
        )
        return debits - credits if debit_normal else credits - debits

    async def get_consolidated_balance_sheet(
        self,
        tenant_id: uuid.UUID,
        entity_ids: List[uuid.UUID],
        base_currency: str,
        period_start: date,
        period_end: date,
    ) -> Dict[str, Any]:
        """Consolidated assets, liabilities and equity as of the period end."""
        base_currency = base_currency.upper()
        entities = await self.get_entities(tenant_id, entity_ids)

        totals = {"assets": Decimal("0.00"), "liabilities": Decimal("0.00"), "equity": Decimal("0.00")}
        rates_used: Dict[str, float] = {}
        by_entity = []

        for entity in entities:
            rate = await self._translation_rate(tenant_id, entity, base_currency, period_end)
            rates_used[entity.currency] = float(rate)

            sections = {
                "assets": await self._section_balance(tenant_id, ASSET_PREFIXES, period_end, entity.id, True),
                "liabilities": await self._section_balance(tenant_id, LIABILITY_PREFIXES, period_end, entity.id, False),
                "equity": await self._section_balance(tenant_id, EQUITY_PREFIXES, period_end, entity.id, False),
            }
            translated = {name: self._translate(value, rate) for name, value in sections.items()}
            for name, value in translated.items():
                totals[name] += value
            by_entity.append({
                "entity_id": str(entity.id),
                "entity_name": entity.entity_name,
                "currency": entity.currency,
                "exchange_rate": float(rate),
                **{name: float(value) for name, value in translated.items()},
            })

        eliminations = await self.eliminate_intercompany_transactions(
            tenant_id, period_start, period_end, entity_ids,
        )

        return {
            "as_of_date": period_end.isoformat(),
            "base_currency": base_currency,
            "assets": float(totals["assets"]),
            "liabilities": float(totals["liabilities"]),
            "equity": float(totals["equity"]),
            "exchange_rates_used": rates_used,
            "intercompany_eliminated": float(eliminations["total_amount"]),
            "eliminations_applied": [{
                "type": "intercompany",
                "amount": float(eliminations["total_amount"]),
                "description": f"Eliminated {eliminations['eliminated_count']} intercompany transactions",
            }],
            "by_entity": by_entity,
        }

    async def store_consolidated_report(
        self,
        tenant_id: uuid.UUID,
        report_type: str,
        period_start: date,
        period_end: date,
        base_currency: str,
        entity_ids: List[uuid.UUID],
        report_data: Dict[str, Any],
    ) -> uuid.UUID:
        """Insert or replace the report for its (type, period, base currency) key."""
        stmt = dialect_insert(self.db, ConsolidatedReport.__table__).values(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            report_type=report_type,
            period_start=period_start,
            period_end=period_end,
            base_currency=base_currency.upper(),
            entity_ids=[str(e) for e in entity_ids],
            report_data=report_data,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "report_type", "period_start", "period_end", "base_currency"],
            set_={
                "entity_ids": stmt.excluded.entity_ids,
                "report_data": stmt.excluded.report_data,
                "updated_at": func.now(),
            },
        )
        await self.db.execute(stmt)
        await self.db.commit()

        result = await self.db.execute(
            select(ConsolidatedReport.id).where(and_(
                ConsolidatedReport.tenant_id == tenant_id,
                ConsolidatedReport.report_type == report_type,
                ConsolidatedReport.period_start == period_start,
                ConsolidatedReport.period_end == period_end,
                ConsolidatedReport.base_currency == base_currency.upper(),
            ))
        )
        report_id = result.scalar_one()
        logger.info(f"Consolidated {report_type} report stored: {report_id} (tenant {tenant_id})")
        return report_id

    # ===========================================
    # FX REMEASUREMENT
    # ===========================================

    async def perform_fx_remeasurement(
        self,
        tenant_id: uuid.UUID,
        from_currency: str,
        to_currency: str,
        period_start: date,
        period_end: date,
        entity_id: Optional[uuid.UUID] = None,
    ) -> Dict[str, Any]:
        """
        Re-express every entry in from_currency at the period-end spot rate.

        Each entry is logged with its original amount, remeasured amount and
        gain/loss. Raises RateNotFoundError without a stored spot rate.
        """
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        rate = await self.fx_service.get_stored_rate(
            tenant_id, from_currency, to_currency, period_end, RateType.SPOT,
        )
        if rate is None:
            raise RateNotFoundError(from_currency, to_currency, period_end)

        conditions = [
            LedgerEntry.tenant_id == tenant_id,
            LedgerEntry.currency == from_currency,
            LedgerEntry.transaction_date >= period_start,
            LedgerEntry.transaction_date <= period_end,
        ]
        if entity_id is not None:
            conditions.append(LedgerEntry.entity_id == entity_id)
        result = await self.db.execute(select(LedgerEntry).where(and_(*conditions)))
        entries = list(result.scalars().all())

        total_gain_loss = Decimal("0.00")
        for entry in entries:
            original = to_money(entry.amount)
            remeasured = self._translate(original, rate)
            gain_loss = remeasured - original
            self.db.add(FXRemeasurementLog(
                tenant_id=tenant_id,
                ledger_entry_id=entry.id,
                original_currency=from_currency,
                original_amount=original,
                functional_currency=to_currency,
                exchange_rate=rate,
                remeasured_amount=remeasured,
                fx_gain_loss=gain_loss,
                remeasurement_date=period_end,
            ))
            total_gain_loss += gain_loss
        await self.db.commit()

        logger.info(
            f"FX remeasurement {from_currency}->{to_currency} for {period_end}: "
            f"{len(entries)} entries, gain/loss {total_gain_loss} (tenant {tenant_id})"
        )
        return {
            "remeasured_entries": len(entries),
            "total_fx_gain_loss": float(total_gain_loss),
            "exchange_rate": float(rate),
        }
