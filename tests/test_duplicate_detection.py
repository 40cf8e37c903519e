"""
LedgerClose - Duplicate Detection Tests

Tests for the duplicate ledger entry heuristics.
"""

import uuid
from datetime import date
from decimal import Decimal

import pytest

from ledgerclose.models.ledger import EntryType
from ledgerclose.schemas.ledger import LedgerEntryCreate
from ledgerclose.services.duplicate_detection_service import DuplicateDetector
from ledgerclose.services.ledger_service import LedgerService
from ledgerclose.utils.error_handling import LedgerEntryNotFoundError


def entry(account_code="5100", amount="250.00", day=date(2026, 10, 10), description=None, document_id=None):
    return LedgerEntryCreate(
        entry_type=EntryType.DEBIT,
        account_code=account_code,
        account_name="Operating Expenses",
        amount=Decimal(amount),
        description=description,
        transaction_date=day,
        document_id=document_id,
    )


class TestDuplicateDetector:
    """Test duplicate ledger entry detection."""

    @pytest.mark.asyncio
    async def test_shared_document_ranks_first(self, db_session, tenant_id, cache):
        ledger = LedgerService(db_session, cache=cache)
        document_id = uuid.uuid4()
        target = await ledger.create_entry(tenant_id, entry(document_id=document_id))
        same_document = await ledger.create_entry(tenant_id, entry(
            account_code="2200", amount="50.00", day=date(2026, 8, 1), document_id=document_id,
        ))
        same_account = await ledger.create_entry(tenant_id, entry(day=date(2026, 10, 11)))

        duplicates = await DuplicateDetector(db_session).detect_duplicate_ledger_entries(tenant_id, target)

        assert [d["entry_id"] for d in duplicates] == [str(same_document), str(same_account)]
        assert duplicates[0]["similarity"] == 1.0
        assert duplicates[0]["reason"] == "same_document"
        assert duplicates[1]["similarity"] == 0.95
        assert duplicates[1]["reason"] == "same_account_amount_date"

    @pytest.mark.asyncio
    async def test_date_window_is_one_day(self, db_session, tenant_id, cache):
        ledger = LedgerService(db_session, cache=cache)
        target = await ledger.create_entry(tenant_id, entry())
        await ledger.create_entry(tenant_id, entry(day=date(2026, 10, 12)))

        duplicates = await DuplicateDetector(db_session).detect_duplicate_ledger_entries(tenant_id, target)

        assert duplicates == []

    @pytest.mark.asyncio
    async def test_same_description_and_close_amount(self, db_session, tenant_id, cache):
        ledger = LedgerService(db_session, cache=cache)
        target = await ledger.create_entry(tenant_id, entry(description="Team lunch", amount="42.00"))
        similar = await ledger.create_entry(tenant_id, entry(
            account_code="5500", description="Team lunch", amount="42.40", day=date(2026, 6, 1),
        ))
        await ledger.create_entry(tenant_id, entry(
            account_code="5500", description="Team lunch", amount="43.00", day=date(2026, 6, 1),
        ))

        duplicates = await DuplicateDetector(db_session).detect_duplicate_ledger_entries(tenant_id, target)

        assert len(duplicates) == 1
        assert duplicates[0]["entry_id"] == str(similar)
        assert duplicates[0]["similarity"] == 0.75

    @pytest.mark.asyncio
    async def test_highest_similarity_wins(self, db_session, tenant_id, cache):
        """A candidate matching several heuristics is listed once."""
        ledger = LedgerService(db_session, cache=cache)
        document_id = uuid.uuid4()
        target = await ledger.create_entry(tenant_id, entry(description="Rent", document_id=document_id))
        twin = await ledger.create_entry(tenant_id, entry(description="Rent", document_id=document_id))

        duplicates = await DuplicateDetector(db_session).detect_duplicate_ledger_entries(tenant_id, target)

        assert len(duplicates) == 1
        assert duplicates[0]["entry_id"] == str(twin)
        assert duplicates[0]["similarity"] == 1.0

    @pytest.mark.asyncio
    async def test_other_tenants_are_ignored(self, db_session, tenant_id, cache):
        ledger = LedgerService(db_session, cache=cache)
        target = await ledger.create_entry(tenant_id, entry())
        await ledger.create_entry(uuid.uuid4(), entry())

        duplicates = await DuplicateDetector(db_session).detect_duplicate_ledger_entries(tenant_id, target)

        assert duplicates == []

    @pytest.mark.asyncio
    async def test_unknown_entry_raises(self, db_session, tenant_id):
        with pytest.raises(LedgerEntryNotFoundError):
            await DuplicateDetector(db_session).detect_duplicate_ledger_entries(tenant_id, uuid.uuid4())

    @pytest.mark.asyncio
    async def test_amount_one_penny_away_still_matches(self, db_session, tenant_id, cache):
        ledger = LedgerService(db_session, cache=cache)
        target = await ledger.create_entry(tenant_id, entry(amount="250.00"))
        penny_more = await ledger.create_entry(tenant_id, entry(amount="250.01", day=date(2026, 10, 11)))
        await ledger.create_entry(tenant_id, entry(amount="250.02", day=date(2026, 10, 11)))

        duplicates = await DuplicateDetector(db_session).detect_duplicate_ledger_entries(tenant_id, target)

        assert [d["entry_id"] for d in duplicates] == [str(penny_more)]
        assert duplicates[0]["similarity"] == 0.95

    @pytest.mark.asyncio
    async def test_description_match_includes_half_unit_difference(self, db_session, tenant_id, cache):
        ledger = LedgerService(db_session, cache=cache)
        target = await ledger.create_entry(tenant_id, entry(description="Courier", amount="42.00"))
        half_more = await ledger.create_entry(tenant_id, entry(
            account_code="5500", description="Courier", amount="42.50", day=date(2026, 6, 1),
        ))
        await ledger.create_entry(tenant_id, entry(
            account_code="5500", description="Courier", amount="42.51", day=date(2026, 6, 1),
        ))

        duplicates = await DuplicateDetector(db_session).detect_duplicate_ledger_entries(tenant_id, target)

        assert [d["entry_id"] for d in duplicates] == [str(half_more)]
        assert duplicates[0]["similarity"] == 0.75
