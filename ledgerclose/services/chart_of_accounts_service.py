"""
LedgerClose - Chart of Accounts Service

Default UK chart of accounts, account lookup and upsert. The account
type stored here decides which side of the ledger is the normal balance.
"""

import logging
import uuid
from typing import Dict, List, Optional

from sqlalchemy import select, and_, func
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerclose.models.ledger import AccountType, ChartOfAccounts
from ledgerclose.schemas.ledger import ChartAccountUpsert
from ledgerclose.utils.db_helpers import dialect_insert

logger = logging.getLogger(__name__)


# (code, name, type)
DEFAULT_CHART_OF_ACCOUNTS = [
    # Assets
    ("1000", "Fixed Assets", AccountType.ASSET),
    ("1100", "Cash", AccountType.ASSET),
    ("1200", "Accounts Receivable", AccountType.ASSET),
    ("1300", "Inventory", AccountType.ASSET),
    ("1400", "Prepaid Expenses", AccountType.ASSET),
    ("1500", "Accumulated Depreciation", AccountType.ASSET),
    # Liabilities
    ("2000", "Accounts Payable", AccountType.LIABILITY),
    ("2100", "Accrued Expenses", AccountType.LIABILITY),
    ("2200", "VAT Input", AccountType.LIABILITY),
    ("2300", "VAT Output", AccountType.LIABILITY),
    ("2400", "Tax Payable", AccountType.LIABILITY),
    # Equity
    ("3000", "Share Capital", AccountType.EQUITY),
    ("3100", "Retained Earnings", AccountType.EQUITY),
    # Revenue
    ("4000", "Revenue", AccountType.REVENUE),
    ("4100", "Other Income", AccountType.REVENUE),
    # Expenses
    ("5000", "Cost of Goods Sold", AccountType.EXPENSE),
    ("5100", "Operating Expenses", AccountType.EXPENSE),
    ("5200", "Salaries and Wages", AccountType.EXPENSE),
    ("5300", "Rent", AccountType.EXPENSE),
    ("5400", "Utilities", AccountType.EXPENSE),
    ("5500", "Marketing", AccountType.EXPENSE),
    ("6000", "Depreciation", AccountType.EXPENSE),
    ("6100", "Interest Expense", AccountType.EXPENSE),
    ("6200", "Tax Expense", AccountType.EXPENSE),
]


class ChartOfAccountsService:
    """Service for tenant chart of accounts."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def initialize_chart_of_accounts(self, tenant_id: uuid.UUID) -> int:
        """Seed the default chart unless the tenant already has accounts."""
        result = await self.db.execute(
            select(func.count(ChartOfAccounts.id)).where(ChartOfAccounts.tenant_id == tenant_id)
        )
        if result.scalar_one() > 0:
            logger.debug(f"Chart of accounts already initialized for tenant {tenant_id}")
            return 0

        for code, name, account_type in DEFAULT_CHART_OF_ACCOUNTS:
            self.db.add(ChartOfAccounts(
                tenant_id=tenant_id,
                account_code=code,
                account_name=name,
                account_type=account_type,
                is_active=True,
            ))
        await self.db.commit()

        logger.info(f"Initialized chart of accounts for tenant {tenant_id}")
        return len(DEFAULT_CHART_OF_ACCOUNTS)

    async def get_chart_of_accounts(self, tenant_id: uuid.UUID) -> List[ChartOfAccounts]:
        result = await self.db.execute(
            select(ChartOfAccounts)
            .where(ChartOfAccounts.tenant_id == tenant_id)
            .order_by(ChartOfAccounts.account_code)
        )
        return list(result.scalars().all())

    async def get_account(self, tenant_id: uuid.UUID, account_code: str) -> Optional[ChartOfAccounts]:
        result = await self.db.execute(
            select(ChartOfAccounts).where(and_(
                ChartOfAccounts.tenant_id == tenant_id,
                ChartOfAccounts.account_code == account_code,
            ))
        )
        return result.scalar_one_or_none()

    async def validate_account(self, tenant_id: uuid.UUID, account_code: str) -> bool:
        """True when the account exists and is active."""
        account = await self.get_account(tenant_id, account_code)
        return account is not None and account.is_active

    async def get_account_name(self, tenant_id: uuid.UUID, account_code: str) -> str:
        """Chart name for the code, or the code itself when the account is unknown."""
        account = await self.get_account(tenant_id, account_code)
        return account.account_name if account is not None else account_code

    async def get_account_type(self, tenant_id: uuid.UUID, account_code: str) -> AccountType:
        account = await self.get_account(tenant_id, account_code)
        if account is not None:
            return account.account_type
        return AccountType.from_account_code(account_code)

    async def get_account_types(self, tenant_id: uuid.UUID) -> Dict[str, AccountType]:
        """Map of account code to type for every charted account."""
        result = await self.db.execute(
            select(ChartOfAccounts.account_code, ChartOfAccounts.account_type)
            .where(ChartOfAccounts.tenant_id == tenant_id)
        )
        return {code: account_type for code, account_type in result.all()}

    async def upsert_accounts(self, tenant_id: uuid.UUID, accounts: List[ChartAccountUpsert]) -> int:
        """Insert or update accounts by code."""
        for account in accounts:
            stmt = dialect_insert(self.db, ChartOfAccounts.__table__).values(
                id=uuid.uuid4(),
                tenant_id=tenant_id,
                account_code=account.account_code,
                account_name=account.account_name,
                account_type=account.account_type,
                parent_code=account.parent_code,
                is_active=account.is_active,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["tenant_id", "account_code"],
                set_={
                    "account_name": stmt.excluded.account_name,
                    "account_type": stmt.excluded.account_type,
                    "parent_code": stmt.excluded.parent_code,
                    "is_active": stmt.excluded.is_active,
                    "updated_at": func.now(),
                },
            )
            await self.db.execute(stmt)
        await self.db.commit()

        logger.info(f"Upserted {len(accounts)} accounts for tenant {tenant_id}")
        return len(accounts)
