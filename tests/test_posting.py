"""
LedgerClose - Posting Engine Tests

Tests for balanced double-entry posting, idempotent replays and
document posting with the VAT split.
"""

import uuid
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import select, func

from ledgerclose.models.document import DocumentStatus, DocumentType, SourceDocument
from ledgerclose.models.ledger import EntryType, LedgerEntry, LedgerTransaction
from ledgerclose.schemas.ledger import LedgerEntryCreate
from ledgerclose.services.document_checks import PipelineResult, ThresholdConfidenceGate
from ledgerclose.services.ledger_service import LedgerService
from ledgerclose.services.posting_service import (
    PostingService,
    check_balanced,
    resolve_document_accounts,
)
from ledgerclose.utils.error_handling import (
    AlreadyPostedError,
    DocumentNotFoundError,
    DocumentRequiresReviewError,
    ImbalancedTransactionError,
    PostingValidationError,
    ValidationException,
)
from tests.factories import expense_paid_in_cash, make_transaction


async def count_rows(db_session, model) -> int:
    result = await db_session.execute(select(func.count(model.id)))
    return result.scalar_one()


class TestDocumentAccountMapping:
    """Test the document type to account pair mapping."""

    def test_invoice_maps_to_receivables_and_revenue(self):
        debit, credit = resolve_document_accounts("invoice", Decimal("100"))
        assert debit[0] == "1200"
        assert credit[0] == "4000"

    def test_receipt_and_expense_map_to_expense_and_cash(self):
        for document_type in ("receipt", "expense"):
            debit, credit = resolve_document_accounts(document_type, Decimal("100"))
            assert (debit[0], credit[0]) == ("5000", "1100")

    def test_other_types_map_to_expense_and_payables(self):
        debit, credit = resolve_document_accounts("bill", Decimal("100"))
        assert (debit[0], credit[0]) == ("5000", "2000")

    def test_zero_value_invoice_falls_back_to_payables(self):
        debit, credit = resolve_document_accounts("invoice", Decimal("0"))
        assert (debit[0], credit[0]) == ("5000", "2000")


class TestBalanceCheck:
    """Test the debit/credit tolerance check."""

    def test_within_tolerance_passes(self):
        tx = make_transaction([
            (EntryType.DEBIT, "5000", "Expenses", "100.00"),
            (EntryType.CREDIT, "1100", "Cash", "100.01"),
        ])
        check_balanced(tx.entries)

    def test_outside_tolerance_raises(self):
        tx = make_transaction([
            (EntryType.DEBIT, "5000", "Expenses", "100.00"),
            (EntryType.CREDIT, "1100", "Cash", "99.98"),
        ])
        with pytest.raises(ImbalancedTransactionError) as exc_info:
            check_balanced(tx.entries)
        assert exc_info.value.details["total_debits"] == "100.00"
        assert exc_info.value.details["total_credits"] == "99.98"


class TestPostDoubleEntry:
    """Test atomic double-entry posting."""

    @pytest.mark.asyncio
    async def test_balanced_transaction_updates_balances(self, db_session, tenant_id, cache):
        """Expense of 120.00 paid in cash."""
        service = PostingService(db_session, cache=cache)

        result = await service.post_double_entry(tenant_id, expense_paid_in_cash("120.00"))

        assert len(result["entry_ids"]) == 2
        assert isinstance(result["transaction_id"], uuid.UUID)

        ledger = LedgerService(db_session, cache=cache)
        expense = await ledger.get_account_balance(tenant_id, "5000")
        cash = await ledger.get_account_balance(tenant_id, "1100")
        assert expense["balance"] == Decimal("120.00")
        assert cash["balance"] == Decimal("-120.00")
        assert cash["credit_total"] == Decimal("120.00")

    @pytest.mark.asyncio
    async def test_entries_reference_the_transaction(self, db_session, tenant_id, cache):
        service = PostingService(db_session, cache=cache)

        result = await service.post_double_entry(
            tenant_id, expense_paid_in_cash("75.50", metadata={"batch": "october"}),
        )

        rows = await db_session.execute(
            select(LedgerEntry).where(LedgerEntry.transaction_id == result["transaction_id"])
        )
        entries = rows.scalars().all()
        assert {e.id for e in entries} == set(result["entry_ids"])
        assert all(e.entry_metadata == {"batch": "october"} for e in entries)
        assert all(e.description == "Test transaction" for e in entries)

    @pytest.mark.asyncio
    async def test_imbalanced_transaction_writes_nothing(self, db_session, tenant_id, cache):
        service = PostingService(db_session, cache=cache)
        tx = make_transaction([
            (EntryType.DEBIT, "5000", "Expenses", "120.00"),
            (EntryType.CREDIT, "1100", "Cash", "100.00"),
        ])

        with pytest.raises(ImbalancedTransactionError):
            await service.post_double_entry(tenant_id, tx)

        assert await count_rows(db_session, LedgerEntry) == 0
        assert await count_rows(db_session, LedgerTransaction) == 0

    @pytest.mark.asyncio
    async def test_single_entry_transaction_rejected(self, db_session, tenant_id, cache):
        service = PostingService(db_session, cache=cache)
        tx = make_transaction([(EntryType.DEBIT, "5000", "Expenses", "0.00")])

        with pytest.raises(ValidationException) as exc_info:
            await service.post_double_entry(tenant_id, tx)
        assert exc_info.value.field == "entries"

    @pytest.mark.asyncio
    async def test_replay_with_same_transaction_id_is_idempotent(self, db_session, tenant_id, cache):
        service = PostingService(db_session, cache=cache)
        tx = expense_paid_in_cash("120.00", metadata={"transactionId": "bank-feed-7781"})

        first = await service.post_double_entry(tenant_id, tx)
        second = await service.post_double_entry(tenant_id, tx)

        assert second["transaction_id"] == first["transaction_id"]
        assert second["entry_ids"] == first["entry_ids"]
        assert await count_rows(db_session, LedgerEntry) == 2
        assert await count_rows(db_session, LedgerTransaction) == 1

        balance = await LedgerService(db_session, cache=cache).get_account_balance(tenant_id, "5000")
        assert balance["balance"] == Decimal("120.00")

    @pytest.mark.asyncio
    async def test_same_transaction_id_in_other_tenant_is_independent(self, db_session, tenant_id, cache):
        service = PostingService(db_session, cache=cache)
        tx = expense_paid_in_cash("120.00", metadata={"transactionId": "shared-id"})

        first = await service.post_double_entry(tenant_id, tx)
        other = await service.post_double_entry(uuid.uuid4(), tx)

        assert other["transaction_id"] != first["transaction_id"]
        assert await count_rows(db_session, LedgerEntry) == 4

    @pytest.mark.asyncio
    async def test_posting_invalidates_ledger_cache(self, db_session, tenant_id):
        cache = MagicMock()
        cache.invalidate_ledger = AsyncMock(return_value=0)
        service = PostingService(db_session, cache=cache)

        await service.post_double_entry(tenant_id, expense_paid_in_cash("10.00"))

        cache.invalidate_ledger.assert_awaited_once_with(tenant_id)

    @pytest.mark.asyncio
    async def test_identical_lines_in_one_transaction_are_all_written(self, db_session, tenant_id, cache):
        """A split debit keeps both lines even though they share the transactionId."""
        service = PostingService(db_session, cache=cache)
        tx = make_transaction(
            [
                (EntryType.DEBIT, "5000", "Expenses", "50.00"),
                (EntryType.DEBIT, "5000", "Expenses", "50.00"),
                (EntryType.CREDIT, "1100", "Cash", "100.00"),
            ],
            metadata={"transactionId": "bank-1"},
        )

        first = await service.post_double_entry(tenant_id, tx)
        second = await service.post_double_entry(tenant_id, tx)

        assert len(set(first["entry_ids"])) == 3
        assert second == first
        assert await count_rows(db_session, LedgerEntry) == 3
        assert await count_rows(db_session, LedgerTransaction) == 1

        ledger = LedgerService(db_session, cache=cache)
        assert (await ledger.get_account_balance(tenant_id, "5000"))["balance"] == Decimal("100.00")
        assert (await ledger.get_account_balance(tenant_id, "1100"))["balance"] == Decimal("-100.00")

    @pytest.mark.asyncio
    async def test_lines_a_penny_apart_are_not_merged(self, db_session, tenant_id, cache):
        service = PostingService(db_session, cache=cache)
        tx = make_transaction(
            [
                (EntryType.DEBIT, "5000", "Expenses", "50.00"),
                (EntryType.DEBIT, "5000", "Expenses", "50.01"),
                (EntryType.CREDIT, "1100", "Cash", "100.01"),
            ],
            metadata={"transactionId": "bank-2"},
        )

        first = await service.post_double_entry(tenant_id, tx)
        second = await service.post_double_entry(tenant_id, tx)

        assert len(set(first["entry_ids"])) == 3
        assert second["entry_ids"] == first["entry_ids"]
        balance = await LedgerService(db_session, cache=cache).get_account_balance(tenant_id, "5000")
        assert balance["balance"] == Decimal("100.01")

    @pytest.mark.asyncio
    async def test_replay_one_penny_off_returns_original_entries(self, db_session, tenant_id, cache):
        service = PostingService(db_session, cache=cache)

        first = await service.post_double_entry(
            tenant_id, expense_paid_in_cash("100.00", metadata={"transactionId": "t1"}),
        )
        second = await service.post_double_entry(
            tenant_id, expense_paid_in_cash("100.01", metadata={"transactionId": "t1"}),
        )

        assert second == first
        assert await count_rows(db_session, LedgerEntry) == 2

    @pytest.mark.asyncio
    async def test_failure_after_first_entry_rolls_back_everything(self, db_session, tenant_id, cache):
        service = PostingService(db_session, cache=cache)
        original_write = LedgerService.write_entry
        calls = []

        async def write_then_fail(self, *args, **kwargs):
            calls.append(args)
            if len(calls) == 2:
                raise RuntimeError("connection lost")
            return await original_write(self, *args, **kwargs)

        with patch.object(LedgerService, "write_entry", write_then_fail):
            with pytest.raises(RuntimeError):
                await service.post_double_entry(tenant_id, expense_paid_in_cash("120.00"))

        assert len(calls) == 2
        assert await count_rows(db_session, LedgerEntry) == 0
        assert await count_rows(db_session, LedgerTransaction) == 0

    @pytest.mark.asyncio
    async def test_concurrent_insert_returns_winning_entry(self, db_session, tenant_id, cache):
        """Another writer inserts the same line between the lookup and the insert."""
        ledger = LedgerService(db_session, cache=cache)
        original_find = LedgerService._find_idempotent_entry
        winner_id = uuid.uuid4()

        async def find_after_concurrent_insert(self, tenant, entry_type, account_code, amount,
                                               source_transaction_id, exact=False, exclude_ids=()):
            if not exact:
                self.db.add(LedgerEntry(
                    id=winner_id,
                    tenant_id=tenant,
                    entry_type=entry_type,
                    account_code=account_code,
                    account_name="Cash",
                    amount=amount,
                    currency="GBP",
                    transaction_date=date(2026, 10, 5),
                    source_transaction_id=source_transaction_id,
                    reconciled=False,
                    entry_metadata={"transactionId": source_transaction_id},
                ))
                await self.db.flush()
                return None
            return await original_find(
                self, tenant, entry_type, account_code, amount, source_transaction_id,
                exact=exact, exclude_ids=exclude_ids,
            )

        line = LedgerEntryCreate(
            entry_type=EntryType.DEBIT,
            account_code="1100",
            account_name="Cash",
            amount=Decimal("80.00"),
            transaction_date=date(2026, 10, 5),
            metadata={"transactionId": "feed-42"},
        )
        with patch.object(LedgerService, "_find_idempotent_entry", find_after_concurrent_insert):
            entry_id = await ledger.create_entry(tenant_id, line)

        assert entry_id == winner_id
        assert await count_rows(db_session, LedgerEntry) == 1


class TestPostDocumentToLedger:
    """Test posting extracted documents."""

    @pytest.mark.asyncio
    async def test_receipt_posts_net_vat_and_gross(self, db_session, tenant_id, cache, extracted_receipt):
        service = PostingService(db_session, cache=cache)

        result = await service.post_document_to_ledger(tenant_id, extracted_receipt.id, "user-1")

        assert len(result["entry_ids"]) == 3
        rows = await db_session.execute(
            select(LedgerEntry).where(LedgerEntry.transaction_id == result["transaction_id"])
        )
        lines = {(e.entry_type, e.account_code): e.amount for e in rows.scalars().all()}
        assert lines == {
            (EntryType.DEBIT, "5000"): Decimal("100.00"),
            (EntryType.DEBIT, "2200"): Decimal("20.00"),
            (EntryType.CREDIT, "1100"): Decimal("120.00"),
        }

        await db_session.refresh(extracted_receipt)
        assert extracted_receipt.status == DocumentStatus.POSTED

    @pytest.mark.asyncio
    async def test_document_without_tax_has_two_entries(self, db_session, tenant_id, cache):
        document = SourceDocument(
            tenant_id=tenant_id,
            document_type=DocumentType.BILL,
            status=DocumentStatus.EXTRACTED,
            extracted_data={"vendor": "Landlord Ltd", "total": "900", "date": "2026-10-01"},
            confidence_score=Decimal("0.99"),
        )
        db_session.add(document)
        await db_session.commit()

        result = await PostingService(db_session, cache=cache).post_document_to_ledger(
            tenant_id, document.id, "user-1",
        )

        assert len(result["entry_ids"]) == 2
        balance = await LedgerService(db_session, cache=cache).get_account_balance(tenant_id, "2000")
        assert balance["balance"] == Decimal("900.00")

    @pytest.mark.asyncio
    async def test_posting_twice_raises_already_posted(self, db_session, tenant_id, cache, extracted_receipt):
        service = PostingService(db_session, cache=cache)
        await service.post_document_to_ledger(tenant_id, extracted_receipt.id, "user-1")
        await db_session.refresh(extracted_receipt)

        with pytest.raises(AlreadyPostedError):
            await service.post_document_to_ledger(tenant_id, extracted_receipt.id, "user-1")

        assert await count_rows(db_session, LedgerTransaction) == 1

    @pytest.mark.asyncio
    async def test_low_confidence_requires_review(self, db_session, tenant_id, cache, extracted_receipt):
        extracted_receipt.confidence_score = Decimal("0.5000")
        await db_session.commit()

        with pytest.raises(DocumentRequiresReviewError):
            await PostingService(db_session, cache=cache).post_document_to_ledger(
                tenant_id, extracted_receipt.id, "user-1",
            )
        assert await count_rows(db_session, LedgerEntry) == 0

    @pytest.mark.asyncio
    async def test_missing_confidence_requires_review(self, db_session, tenant_id, extracted_receipt):
        extracted_receipt.confidence_score = None
        gate = ThresholdConfidenceGate(threshold=0.5)

        assert await gate.requires_manual_review(tenant_id, extracted_receipt) is True

    @pytest.mark.asyncio
    async def test_incomplete_extraction_fails_validation(self, db_session, tenant_id, cache, extracted_receipt):
        extracted_receipt.extracted_data = {"vendor": "Acme Stationery", "date": "2026-10-05"}
        await db_session.commit()

        with pytest.raises(PostingValidationError) as exc_info:
            await PostingService(db_session, cache=cache).post_document_to_ledger(
                tenant_id, extracted_receipt.id, "user-1",
            )
        assert "Missing or invalid total" in exc_info.value.details["errors"]

        await db_session.refresh(extracted_receipt)
        assert extracted_receipt.status == DocumentStatus.EXTRACTED

    @pytest.mark.asyncio
    async def test_document_of_other_tenant_not_found(self, db_session, cache, extracted_receipt):
        with pytest.raises(DocumentNotFoundError):
            await PostingService(db_session, cache=cache).post_document_to_ledger(
                uuid.uuid4(), extracted_receipt.id, "user-1",
            )

    @pytest.mark.asyncio
    async def test_custom_collaborators_are_consulted(self, db_session, tenant_id, cache, extracted_receipt):
        """A gate that always asks for review blocks posting."""

        class AlwaysReview(ThresholdConfidenceGate):
            async def requires_manual_review(self, tenant_id, document):
                return True

        service = PostingService(db_session, confidence_gate=AlwaysReview(), cache=cache)
        with pytest.raises(DocumentRequiresReviewError):
            await service.post_document_to_ledger(tenant_id, extracted_receipt.id, "user-1")

    def test_pipeline_result_defaults(self):
        assert PipelineResult(passed=True).failures == []
