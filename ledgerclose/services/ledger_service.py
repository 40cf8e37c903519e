"""
LedgerClose - Ledger Service

Ledger entry persistence and queries:
- Idempotent entry insert (transactionId in metadata)
- Filtered, paginated entry listing
- Chart-of-accounts aware account balances
- Reconciliation pairing of opposite entries
- Trial balance and period totals used by the period close
"""

import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Collection, Dict, List, NamedTuple, Optional, Sequence

from sqlalchemy import select, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerclose.config import settings
from ledgerclose.models.ledger import AccountType, EntryType, LedgerEntry
from ledgerclose.schemas.ledger import EntryLine, LedgerEntryCreate, LedgerEntryFilters
from ledgerclose.services.cache_service import CacheService, get_cache_service
from ledgerclose.services.chart_of_accounts_service import ChartOfAccountsService
from ledgerclose.utils.db_helpers import dialect_insert
from ledgerclose.utils.error_handling import (
    AccountNotFoundError,
    LedgerEntryNotFoundError,
    ReconciliationMismatchError,
)

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """Quantize to 2 decimal places."""
    if value is None:
        return ZERO
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def signed_balance(account_type: AccountType, debit_total: Decimal, credit_total: Decimal) -> Decimal:
    """Balance on the account's normal side."""
    if account_type.is_debit_normal:
        return debit_total - credit_total
    return credit_total - debit_total


class EntryWriteResult(NamedTuple):
    entry_id: uuid.UUID
    created: bool
    # Transaction of the pre-existing entry when the write was deduplicated
    transaction_id: Optional[uuid.UUID] = None


class LedgerService:
    """Service for ledger entry storage, balances and reconciliation."""

    def __init__(self, db: AsyncSession, cache: Optional[CacheService] = None):
        self.db = db
        self.cache = cache or get_cache_service()
        self.chart = ChartOfAccountsService(db)

    # =========================================================================
    # ENTRY WRITES
    # =========================================================================

    async def _find_idempotent_entry(
        self,
        tenant_id: uuid.UUID,
        entry_type: EntryType,
        account_code: str,
        amount: Decimal,
        source_transaction_id: str,
        exact: bool = False,
        exclude_ids: Collection[uuid.UUID] = (),
    ) -> Optional[LedgerEntry]:
        if exact:
            amount_match = LedgerEntry.amount == amount
        else:
            amount_match = LedgerEntry.amount.between(amount - AMOUNT_TOLERANCE, amount + AMOUNT_TOLERANCE)
        conditions = [
            LedgerEntry.tenant_id == tenant_id,
            LedgerEntry.entry_type == entry_type,
            LedgerEntry.account_code == account_code,
            LedgerEntry.source_transaction_id == source_transaction_id,
            amount_match,
        ]
        if exclude_ids:
            conditions.append(LedgerEntry.id.notin_(list(exclude_ids)))
        result = await self.db.execute(
            select(LedgerEntry)
            .where(and_(*conditions))
            .order_by(func.abs(LedgerEntry.amount - amount))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def write_entry(
        self,
        tenant_id: uuid.UUID,
        line: EntryLine,
        transaction_date: date,
        document_id: Optional[uuid.UUID] = None,
        metadata: Optional[Dict[str, Any]] = None,
        transaction_id: Optional[uuid.UUID] = None,
        entity_id: Optional[uuid.UUID] = None,
        occurrence: int = 0,
        exclude_ids: Collection[uuid.UUID] = (),
    ) -> EntryWriteResult:
        """
        Insert one entry inside the caller's transaction (no commit).

        When metadata carries a transactionId, an existing entry with the same
        (tenant, entry type, account, amount, transactionId) is returned instead.
        The insert also skips on the unique constraint so concurrent writers
        cannot both insert.

        occurrence numbers identical lines within one transaction so each keeps
        its own idempotency key; exclude_ids holds entries already claimed by
        earlier lines of the same transaction.
        """
        metadata = dict(metadata or {})
        raw_source_id = metadata.get("transactionId")
        source_transaction_id = None
        if raw_source_id is not None:
            source_transaction_id = str(raw_source_id)
            if occurrence > 0:
                source_transaction_id = f"{source_transaction_id}#{occurrence}"
        amount = to_money(line.amount)

        if source_transaction_id is not None:
            existing = await self._find_idempotent_entry(
                tenant_id, line.entry_type, line.account_code, amount, source_transaction_id,
                exclude_ids=exclude_ids,
            )
            if existing is not None:
                logger.info(
                    f"Idempotent ledger write: reusing entry {existing.id} for "
                    f"transactionId {source_transaction_id}"
                )
                return EntryWriteResult(existing.id, False, existing.transaction_id)

        entry_id = uuid.uuid4()
        stmt = dialect_insert(self.db, LedgerEntry.__table__).values(
            id=entry_id,
            tenant_id=tenant_id,
            transaction_id=transaction_id,
            entity_id=line.entity_id if line.entity_id is not None else entity_id,
            document_id=document_id,
            entry_type=line.entry_type,
            account_code=line.account_code,
            account_name=line.account_name,
            amount=amount,
            currency=line.currency.upper(),
            description=line.description,
            transaction_date=transaction_date,
            tax_amount=to_money(line.tax_amount) if line.tax_amount is not None else None,
            tax_rate=line.tax_rate,
            source_transaction_id=source_transaction_id,
            reconciled=False,
            entry_metadata=metadata,
        )
        if source_transaction_id is not None:
            stmt = stmt.on_conflict_do_nothing(
                index_elements=["tenant_id", "account_code", "entry_type", "amount", "source_transaction_id"],
            )
        result = await self.db.execute(stmt)

        if source_transaction_id is not None and result.rowcount == 0:
            # Lost the race to a concurrent identical write
            existing = await self._find_idempotent_entry(
                tenant_id, line.entry_type, line.account_code, amount, source_transaction_id, exact=True,
            )
            if existing is not None:
                return EntryWriteResult(existing.id, False, existing.transaction_id)

        return EntryWriteResult(entry_id, True, None)

    async def create_entry(self, tenant_id: uuid.UUID, entry: LedgerEntryCreate) -> uuid.UUID:
        """Create a single ledger entry and commit."""
        try:
            written = await self.write_entry(
                tenant_id,
                entry,
                transaction_date=entry.transaction_date,
                document_id=entry.document_id,
                metadata=entry.metadata,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if written.created:
            await self.cache.invalidate_ledger(tenant_id)
            logger.info(
                f"Ledger entry created: {written.entry_id} {entry.entry_type.value} "
                f"{entry.account_code} {entry.amount} (tenant {tenant_id})"
            )
        return written.entry_id

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_entry(self, tenant_id: uuid.UUID, entry_id: uuid.UUID) -> LedgerEntry:
        result = await self.db.execute(
            select(LedgerEntry).where(and_(
                LedgerEntry.id == entry_id,
                LedgerEntry.tenant_id == tenant_id,
            ))
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            raise LedgerEntryNotFoundError(entry_id)
        return entry

    async def get_entries(
        self,
        tenant_id: uuid.UUID,
        filters: Optional[LedgerEntryFilters] = None,
    ) -> Dict[str, Any]:
        """List entries newest first. Returns {"entries": [...], "total": n}."""
        filters = filters or LedgerEntryFilters()
        cache_key = self.cache.ledger_entries_key(tenant_id, filters.model_dump(mode="json"))
        cached = await self.cache.get_json(cache_key)
        if cached is not None:
            return cached

        conditions = [LedgerEntry.tenant_id == tenant_id]
        if filters.start_date is not None:
            conditions.append(LedgerEntry.transaction_date >= filters.start_date)
        if filters.end_date is not None:
            conditions.append(LedgerEntry.transaction_date <= filters.end_date)
        if filters.account_code is not None:
            conditions.append(LedgerEntry.account_code == filters.account_code)
        if filters.entry_type is not None:
            conditions.append(LedgerEntry.entry_type == filters.entry_type)
        if filters.reconciled is not None:
            conditions.append(LedgerEntry.reconciled == filters.reconciled)

        count_result = await self.db.execute(
            select(func.count(LedgerEntry.id)).where(and_(*conditions))
        )
        total = count_result.scalar_one()

        result = await self.db.execute(
            select(LedgerEntry)
            .where(and_(*conditions))
            .order_by(LedgerEntry.transaction_date.desc(), LedgerEntry.created_at.desc())
            .limit(filters.limit)
            .offset(filters.offset)
        )
        response = {
            "entries": [entry.to_dict() for entry in result.scalars().all()],
            "total": total,
        }
        await self.cache.set_json(cache_key, response, settings.cache_ttl_ledger_entries)
        return response

    async def _totals_by_type(self, conditions: Sequence[Any]) -> Dict[EntryType, Decimal]:
        result = await self.db.execute(
            select(LedgerEntry.entry_type, func.coalesce(func.sum(LedgerEntry.amount), 0))
            .where(and_(*conditions))
            .group_by(LedgerEntry.entry_type)
        )
        totals = {EntryType.DEBIT: ZERO, EntryType.CREDIT: ZERO}
        for entry_type, total in result.all():
            totals[entry_type] = to_money(total)
        return totals

    async def get_account_balance(
        self,
        tenant_id: uuid.UUID,
        account_code: str,
        as_of_date: Optional[date] = None,
    ) -> Dict[str, Any]:
        """
        Balance of one account on its normal side.

        Debit-normal (asset, expense): debits - credits.
        Credit-normal (liability, equity, revenue): credits - debits.
        """
        cache_key = self.cache.balance_key(tenant_id, account_code, as_of_date)
        cached = await self.cache.get_json(cache_key)
        if cached is not None:
            return {
                **cached,
                "balance": Decimal(cached["balance"]),
                "debit_total": Decimal(cached["debit_total"]),
                "credit_total": Decimal(cached["credit_total"]),
            }

        conditions = [
            LedgerEntry.tenant_id == tenant_id,
            LedgerEntry.account_code == account_code,
        ]
        if as_of_date is not None:
            conditions.append(LedgerEntry.transaction_date <= as_of_date)

        count_result = await self.db.execute(
            select(func.count(LedgerEntry.id)).where(and_(*conditions))
        )
        entry_count = count_result.scalar_one()

        account = await self.chart.get_account(tenant_id, account_code)
        if entry_count == 0 and account is None:
            raise AccountNotFoundError(account_code)

        totals = await self._totals_by_type(conditions)
        account_type = account.account_type if account is not None else AccountType.from_account_code(account_code)

        if account is not None:
            account_name = account.account_name
        else:
            name_result = await self.db.execute(
                select(LedgerEntry.account_name)
                .where(and_(*conditions))
                .order_by(LedgerEntry.transaction_date.desc())
                .limit(1)
            )
            account_name = name_result.scalar_one_or_none() or account_code

        debit_total = totals[EntryType.DEBIT]
        credit_total = totals[EntryType.CREDIT]
        response = {
            "account_code": account_code,
            "account_name": account_name,
            "account_type": account_type.value,
            "balance": signed_balance(account_type, debit_total, credit_total),
            "debit_total": debit_total,
            "credit_total": credit_total,
            "as_of_date": as_of_date.isoformat() if as_of_date is not None else None,
        }
        await self.cache.set_json(cache_key, response, settings.cache_ttl_balance)
        return response

    async def sum_amounts(
        self,
        tenant_id: uuid.UUID,
        entry_type: Optional[EntryType] = None,
        account_prefixes: Optional[List[str]] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        entity_id: Optional[uuid.UUID] = None,
        currency: Optional[str] = None,
    ) -> Decimal:
        """Sum entry amounts matching the filters."""
        conditions = [LedgerEntry.tenant_id == tenant_id]
        if entry_type is not None:
            conditions.append(LedgerEntry.entry_type == entry_type)
        if account_prefixes:
            conditions.append(or_(*[LedgerEntry.account_code.like(f"{p}%") for p in account_prefixes]))
        if start_date is not None:
            conditions.append(LedgerEntry.transaction_date >= start_date)
        if end_date is not None:
            conditions.append(LedgerEntry.transaction_date <= end_date)
        if entity_id is not None:
            conditions.append(LedgerEntry.entity_id == entity_id)
        if currency is not None:
            conditions.append(LedgerEntry.currency == currency)

        result = await self.db.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(and_(*conditions))
        )
        return to_money(result.scalar_one())

    async def get_prefix_balance(
        self,
        tenant_id: uuid.UUID,
        account_prefix: str,
        as_of_date: date,
        entity_id: Optional[uuid.UUID] = None,
    ) -> Decimal:
        """Normal-side balance across every account starting with a prefix."""
        debits = await self.sum_amounts(
            tenant_id, EntryType.DEBIT, [account_prefix], end_date=as_of_date, entity_id=entity_id,
        )
        credits = await self.sum_amounts(
            tenant_id, EntryType.CREDIT, [account_prefix], end_date=as_of_date, entity_id=entity_id,
        )
        return signed_balance(AccountType.from_account_code(account_prefix), debits, credits)

    async def get_period_totals(
        self,
        tenant_id: uuid.UUID,
        start_date: date,
        end_date: date,
        entity_id: Optional[uuid.UUID] = None,
    ) -> Dict[str, Decimal]:
        """Total debits and credits dated within the period."""
        debits = await self.sum_amounts(
            tenant_id, EntryType.DEBIT, start_date=start_date, end_date=end_date, entity_id=entity_id,
        )
        credits = await self.sum_amounts(
            tenant_id, EntryType.CREDIT, start_date=start_date, end_date=end_date, entity_id=entity_id,
        )
        return {"total_debits": debits, "total_credits": credits}

    async def count_unreconciled(
        self,
        tenant_id: uuid.UUID,
        end_date: date,
        account_prefix: str,
        entity_id: Optional[uuid.UUID] = None,
    ) -> int:
        conditions = [
            LedgerEntry.tenant_id == tenant_id,
            LedgerEntry.reconciled.is_(False),
            LedgerEntry.transaction_date <= end_date,
            LedgerEntry.account_code.like(f"{account_prefix}%"),
        ]
        if entity_id is not None:
            conditions.append(LedgerEntry.entity_id == entity_id)
        result = await self.db.execute(select(func.count(LedgerEntry.id)).where(and_(*conditions)))
        return result.scalar_one()

    async def get_trial_balance(
        self,
        tenant_id: uuid.UUID,
        as_of_date: date,
        entity_id: Optional[uuid.UUID] = None,
    ) -> Dict[str, Any]:
        """Per-account debit and credit totals up to a date."""
        conditions = [
            LedgerEntry.tenant_id == tenant_id,
            LedgerEntry.transaction_date <= as_of_date,
        ]
        if entity_id is not None:
            conditions.append(LedgerEntry.entity_id == entity_id)

        result = await self.db.execute(
            select(
                LedgerEntry.account_code,
                func.max(LedgerEntry.account_name),
                LedgerEntry.entry_type,
                func.coalesce(func.sum(LedgerEntry.amount), 0),
            )
            .where(and_(*conditions))
            .group_by(LedgerEntry.account_code, LedgerEntry.entry_type)
            .order_by(LedgerEntry.account_code)
        )

        accounts: Dict[str, Dict[str, Any]] = {}
        for account_code, account_name, entry_type, total in result.all():
            row = accounts.setdefault(account_code, {
                "account_code": account_code,
                "account_name": account_name,
                "debit_total": ZERO,
                "credit_total": ZERO,
            })
            if entry_type == EntryType.DEBIT:
                row["debit_total"] = to_money(total)
            else:
                row["credit_total"] = to_money(total)

        chart_types = await self.chart.get_account_types(tenant_id)
        total_debits = ZERO
        total_credits = ZERO
        lines = []
        for account_code in sorted(accounts):
            row = accounts[account_code]
            account_type = chart_types.get(account_code) or AccountType.from_account_code(account_code)
            total_debits += row["debit_total"]
            total_credits += row["credit_total"]
            lines.append({
                "account_code": account_code,
                "account_name": row["account_name"],
                "account_type": account_type.value,
                "debit_total": float(row["debit_total"]),
                "credit_total": float(row["credit_total"]),
                "balance": float(signed_balance(account_type, row["debit_total"], row["credit_total"])),
            })

        return {
            "as_of_date": as_of_date.isoformat(),
            "entity_id": str(entity_id) if entity_id is not None else None,
            "accounts": lines,
            "total_debits": float(total_debits),
            "total_credits": float(total_credits),
            "is_balanced": abs(total_debits - total_credits) < AMOUNT_TOLERANCE,
        }

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    async def reconcile_entries(
        self,
        tenant_id: uuid.UUID,
        entry_id_1: uuid.UUID,
        entry_id_2: uuid.UUID,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Pair two opposite entries of equal amount.

        Re-reconciling an already matched pair is a no-op.
        """
        if entry_id_1 == entry_id_2:
            raise ReconciliationMismatchError(
                "An entry cannot be reconciled with itself", [entry_id_1],
            )

        first = await self.get_entry(tenant_id, entry_id_1)
        second = await self.get_entry(tenant_id, entry_id_2)
        pair = [first.id, second.id]

        if first.reconciled_with == second.id and second.reconciled_with == first.id:
            return {"reconciled": True, "already_reconciled": True, "entry_ids": [str(i) for i in pair]}

        for entry, partner in ((first, second), (second, first)):
            if entry.reconciled and entry.reconciled_with != partner.id:
                raise ReconciliationMismatchError(
                    f"Entry {entry.id} is already reconciled with {entry.reconciled_with}", pair,
                )

        if first.entry_type == second.entry_type:
            raise ReconciliationMismatchError(
                f"Entries must have opposite types, both are {first.entry_type.value}", pair,
            )

        if abs(to_money(first.amount) - to_money(second.amount)) > AMOUNT_TOLERANCE:
            raise ReconciliationMismatchError(
                f"Amounts do not match: {first.amount} vs {second.amount}", pair,
            )

        now = datetime.now(timezone.utc)
        first.reconciled = True
        first.reconciled_with = second.id
        first.reconciled_at = now
        second.reconciled = True
        second.reconciled_with = first.id
        second.reconciled_at = now
        await self.db.commit()
        await self.cache.invalidate_ledger(tenant_id)

        logger.info(
            f"Reconciled ledger entries {first.id} <-> {second.id} "
            f"(tenant {tenant_id}, user {user_id})"
        )
        return {"reconciled": True, "already_reconciled": False, "entry_ids": [str(i) for i in pair]}
