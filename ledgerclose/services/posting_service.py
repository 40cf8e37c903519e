"""
LedgerClose - Posting Service

Double-entry posting engine:
- Balanced transactions written atomically (all entries or none)
- Idempotent replays through a transactionId in the metadata
- Source document to ledger translation with VAT input split
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerclose.models.document import DocumentStatus, DocumentType, SourceDocument
from ledgerclose.models.ledger import EntryType, LedgerTransaction
from ledgerclose.schemas.ledger import DoubleEntryTransactionCreate, EntryLine
from ledgerclose.services.cache_service import CacheService, get_cache_service
from ledgerclose.services.document_checks import (
    ConfidenceGate,
    ExtractionPostingValidator,
    NormalizedDocumentData,
    PostingValidator,
    ThresholdConfidenceGate,
)
from ledgerclose.services.ledger_service import AMOUNT_TOLERANCE, LedgerService, to_money
from ledgerclose.utils.error_handling import (
    AlreadyPostedError,
    DocumentNotFoundError,
    DocumentRequiresReviewError,
    ImbalancedTransactionError,
    PostingValidationError,
    ValidationException,
)

logger = logging.getLogger(__name__)


# (account_code, account_name)
RECEIVABLES_ACCOUNT = ("1200", "Accounts Receivable")
REVENUE_ACCOUNT = ("4000", "Revenue")
EXPENSE_ACCOUNT = ("5000", "Expenses")
CASH_ACCOUNT = ("1100", "Cash")
PAYABLES_ACCOUNT = ("2000", "Accounts Payable")
VAT_INPUT_ACCOUNT = ("2200", "VAT Input")

CASH_DOCUMENT_TYPES = {DocumentType.RECEIPT.value, DocumentType.EXPENSE.value}


def resolve_document_accounts(document_type: str, total: Decimal):
    """
    Debit and credit accounts for a document type.

    invoice (total > 0): Accounts Receivable / Revenue
    receipt, expense:    Expenses / Cash
    anything else:       Expenses / Accounts Payable
    """
    if document_type == DocumentType.INVOICE.value and total > 0:
        return RECEIVABLES_ACCOUNT, REVENUE_ACCOUNT
    if document_type in CASH_DOCUMENT_TYPES:
        return EXPENSE_ACCOUNT, CASH_ACCOUNT
    return EXPENSE_ACCOUNT, PAYABLES_ACCOUNT


def check_balanced(entries: List[EntryLine]) -> None:
    """Raise ImbalancedTransactionError unless debits equal credits within 0.01."""
    total_debits = sum(
        (to_money(e.amount) for e in entries if e.entry_type == EntryType.DEBIT), Decimal("0.00"),
    )
    total_credits = sum(
        (to_money(e.amount) for e in entries if e.entry_type == EntryType.CREDIT), Decimal("0.00"),
    )
    if abs(total_debits - total_credits) > AMOUNT_TOLERANCE:
        raise ImbalancedTransactionError(total_debits, total_credits)


class PostingService:
    """Service for posting balanced transactions to the ledger."""

    def __init__(
        self,
        db: AsyncSession,
        confidence_gate: Optional[ConfidenceGate] = None,
        posting_validator: Optional[PostingValidator] = None,
        cache: Optional[CacheService] = None,
    ):
        self.db = db
        self.cache = cache or get_cache_service()
        self.ledger = LedgerService(db, cache=self.cache)
        self.confidence_gate = confidence_gate or ThresholdConfidenceGate()
        self.posting_validator = posting_validator or ExtractionPostingValidator()

    # =========================================================================
    # DOUBLE ENTRY
    # =========================================================================

    async def _write_transaction(
        self,
        tenant_id: uuid.UUID,
        tx: DoubleEntryTransactionCreate,
    ) -> Dict[str, Any]:
        """Write the transaction record and its entries without committing."""
        transaction_id = uuid.uuid4()
        transaction = LedgerTransaction(
            id=transaction_id,
            tenant_id=tenant_id,
            document_id=tx.document_id,
            description=tx.description,
            transaction_date=tx.transaction_date,
            created_by=tx.created_by,
            transaction_metadata=dict(tx.metadata),
        )
        self.db.add(transaction)
        await self.db.flush()

        entry_ids: List[uuid.UUID] = []
        created_count = 0
        existing_transaction_ids: List[uuid.UUID] = []
        occurrences: Dict[Tuple[EntryType, str, Decimal], int] = {}
        for line in tx.entries:
            if line.description is None:
                line = line.model_copy(update={"description": tx.description})
            # Identical lines in one transaction are separate entries
            line_key = (line.entry_type, line.account_code, to_money(line.amount))
            occurrence = occurrences.get(line_key, 0)
            occurrences[line_key] = occurrence + 1
            written = await self.ledger.write_entry(
                tenant_id,
                line,
                transaction_date=tx.transaction_date,
                document_id=tx.document_id,
                metadata=tx.metadata,
                transaction_id=transaction_id,
                entity_id=tx.entity_id,
                occurrence=occurrence,
                exclude_ids=entry_ids,
            )
            entry_ids.append(written.entry_id)
            if written.created:
                created_count += 1
            elif written.transaction_id is not None:
                existing_transaction_ids.append(written.transaction_id)

        replayed_transaction_id = None
        if created_count == 0 and existing_transaction_ids:
            replayed_transaction_id = existing_transaction_ids[0]
        return {
            "transaction": transaction,
            "transaction_id": transaction_id,
            "entry_ids": entry_ids,
            "replayed_transaction_id": replayed_transaction_id,
        }

    async def post_double_entry(
        self,
        tenant_id: uuid.UUID,
        tx: DoubleEntryTransactionCreate,
    ) -> Dict[str, Any]:
        """
        Post a balanced group of entries as one atomic transaction.

        Returns {"transaction_id", "entry_ids"}. Replaying a transaction whose
        metadata carries the same transactionId returns the original ids and
        writes nothing.
        """
        if len(tx.entries) < 2:
            raise ValidationException(
                "A transaction needs at least two entries",
                field="entries",
                details={"entry_count": len(tx.entries)},
            )
        check_balanced(tx.entries)

        try:
            written = await self._write_transaction(tenant_id, tx)
            original_id = written["replayed_transaction_id"]
            if original_id is not None:
                # Every line already existed: keep the original transaction
                await self.db.delete(written["transaction"])
                await self.db.commit()
                logger.info(
                    f"Idempotent replay of transaction {original_id} (tenant {tenant_id})"
                )
                return {
                    "transaction_id": original_id,
                    "entry_ids": written["entry_ids"],
                }
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.cache.invalidate_ledger(tenant_id)
        logger.info(
            f"Double-entry transaction posted: {written['transaction_id']} "
            f"({len(written['entry_ids'])} entries, tenant {tenant_id})"
        )
        return {
            "transaction_id": written["transaction_id"],
            "entry_ids": written["entry_ids"],
        }

    # =========================================================================
    # DOCUMENTS
    # =========================================================================

    async def _get_document(self, tenant_id: uuid.UUID, document_id: uuid.UUID) -> SourceDocument:
        result = await self.db.execute(
            select(SourceDocument)
            .where(and_(
                SourceDocument.id == document_id,
                SourceDocument.tenant_id == tenant_id,
            ))
            .execution_options(populate_existing=True)
        )
        document = result.scalar_one_or_none()
        if document is None:
            raise DocumentNotFoundError(document_id)
        return document

    def build_document_entries(
        self,
        document: SourceDocument,
        normalized: NormalizedDocumentData,
    ) -> List[EntryLine]:
        """
        Entries for a document: net amount on the mapped debit account, VAT on
        2200 when tax > 0, gross amount on the mapped credit account.
        """
        total = to_money(normalized.total)
        tax = to_money(normalized.tax)
        net = total - tax
        document_type = normalized.document_type or document.document_type.value
        (debit_code, debit_name), (credit_code, credit_name) = resolve_document_accounts(document_type, total)

        tax_rate = normalized.tax_rate
        if tax_rate is None and tax > 0 and total > 0:
            tax_rate = (tax / total).quantize(Decimal("0.0001"))

        entries = [
            EntryLine(
                entry_type=EntryType.DEBIT,
                account_code=debit_code,
                account_name=debit_name,
                amount=net,
                currency=normalized.currency,
                tax_amount=tax,
                tax_rate=tax_rate,
            ),
        ]
        if tax > 0:
            entries.append(EntryLine(
                entry_type=EntryType.DEBIT,
                account_code=VAT_INPUT_ACCOUNT[0],
                account_name=VAT_INPUT_ACCOUNT[1],
                amount=tax,
                currency=normalized.currency,
            ))
        entries.append(EntryLine(
            entry_type=EntryType.CREDIT,
            account_code=credit_code,
            account_name=credit_name,
            amount=total,
            currency=normalized.currency,
        ))
        return entries

    async def post_document_to_ledger(
        self,
        tenant_id: uuid.UUID,
        document_id: uuid.UUID,
        user_id: str,
    ) -> Dict[str, Any]:
        """Post an extracted document, then mark it posted."""
        document = await self._get_document(tenant_id, document_id)

        if document.status == DocumentStatus.POSTED:
            raise AlreadyPostedError(document_id)

        if await self.confidence_gate.requires_manual_review(tenant_id, document):
            confidence = float(document.confidence_score) if document.confidence_score is not None else None
            raise DocumentRequiresReviewError(document_id, confidence)

        validation = await self.posting_validator.validate_for_posting(tenant_id, document)
        if not validation.is_valid or validation.normalized_data is None:
            raise PostingValidationError(
                document_id, validation.errors or ["Document failed validation checks"],
            )
        if validation.warnings:
            logger.warning(
                f"Posting document {document_id} with warnings: {'; '.join(validation.warnings)}"
            )

        normalized = validation.normalized_data
        tx = DoubleEntryTransactionCreate(
            description=normalized.description,
            transaction_date=normalized.document_date,
            created_by=user_id,
            document_id=document_id,
            metadata={"documentId": str(document_id), "vendor": normalized.vendor},
            entries=self.build_document_entries(document, normalized),
        )
        result = await self.post_double_entry(tenant_id, tx)

        await self.db.execute(
            update(SourceDocument)
            .where(and_(
                SourceDocument.id == document_id,
                SourceDocument.tenant_id == tenant_id,
            ))
            .values(status=DocumentStatus.POSTED, updated_at=datetime.now(timezone.utc))
        )
        await self.db.commit()

        logger.info(
            f"Document {document_id} posted to ledger as transaction "
            f"{result['transaction_id']} (tenant {tenant_id})"
        )
        return result
