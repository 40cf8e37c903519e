"""
LedgerClose - Duplicate Detection Service

Scores other ledger entries of the same tenant that look like duplicates
of a given entry. Three independent heuristics each assign a similarity;
an entry matched by several keeps its highest score.
"""

import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerclose.models.ledger import LedgerEntry
from ledgerclose.utils.error_handling import LedgerEntryNotFoundError

logger = logging.getLogger(__name__)


class DuplicateDetector:
    """Finds likely duplicate ledger entries."""

    SIMILARITY_SAME_DOCUMENT = 1.0
    SIMILARITY_ACCOUNT_AMOUNT_DATE = 0.95
    SIMILARITY_DESCRIPTION_AMOUNT = 0.75

    AMOUNT_TOLERANCE = Decimal("0.01")
    DESCRIPTION_AMOUNT_TOLERANCE = Decimal("0.5")
    DATE_WINDOW = timedelta(days=1)

    def __init__(self, db: AsyncSession):
        self.db = db

    async def detect_duplicate_ledger_entries(
        self,
        tenant_id: uuid.UUID,
        entry_id: uuid.UUID,
    ) -> List[Dict[str, Any]]:
        """
        Return candidate duplicates of an entry, most similar first.

        Each candidate carries the entry id, similarity and the heuristic
        that matched it.
        """
        result = await self.db.execute(
            select(LedgerEntry).where(and_(
                LedgerEntry.id == entry_id,
                LedgerEntry.tenant_id == tenant_id,
            ))
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            raise LedgerEntryNotFoundError(entry_id)

        candidates: Dict[uuid.UUID, Dict[str, Any]] = {}

        def consider(others: List[LedgerEntry], similarity: float, reason: str) -> None:
            for other in others:
                existing = candidates.get(other.id)
                if existing is not None and existing["similarity"] >= similarity:
                    continue
                candidates[other.id] = {
                    "entry_id": str(other.id),
                    "similarity": similarity,
                    "reason": reason,
                    "account_code": other.account_code,
                    "entry_type": other.entry_type.value,
                    "amount": float(other.amount),
                    "transaction_date": other.transaction_date.isoformat(),
                    "description": other.description,
                    "document_id": str(other.document_id) if other.document_id is not None else None,
                }

        base = and_(LedgerEntry.tenant_id == tenant_id, LedgerEntry.id != entry.id)

        # Same account, same amount, adjacent dates
        result = await self.db.execute(
            select(LedgerEntry).where(and_(
                base,
                LedgerEntry.account_code == entry.account_code,
                LedgerEntry.amount.between(entry.amount - self.AMOUNT_TOLERANCE, entry.amount + self.AMOUNT_TOLERANCE),
                LedgerEntry.transaction_date >= entry.transaction_date - self.DATE_WINDOW,
                LedgerEntry.transaction_date <= entry.transaction_date + self.DATE_WINDOW,
            ))
        )
        consider(list(result.scalars().all()), self.SIMILARITY_ACCOUNT_AMOUNT_DATE, "same_account_amount_date")

        # Posted from the same source document
        if entry.document_id is not None:
            result = await self.db.execute(
                select(LedgerEntry).where(and_(
                    base,
                    LedgerEntry.document_id == entry.document_id,
                ))
            )
            consider(list(result.scalars().all()), self.SIMILARITY_SAME_DOCUMENT, "same_document")

        # Same description, similar amount
        if entry.description is not None:
            result = await self.db.execute(
                select(LedgerEntry).where(and_(
                    base,
                    LedgerEntry.description == entry.description,
                    LedgerEntry.amount.between(
                        entry.amount - self.DESCRIPTION_AMOUNT_TOLERANCE,
                        entry.amount + self.DESCRIPTION_AMOUNT_TOLERANCE,
                    ),
                ))
            )
            consider(list(result.scalars().all()), self.SIMILARITY_DESCRIPTION_AMOUNT, "same_description_amount")

        duplicates = sorted(candidates.values(), key=lambda c: c["similarity"], reverse=True)
        if duplicates:
            logger.info(
                f"Found {len(duplicates)} possible duplicates of ledger entry {entry_id} "
                f"(tenant {tenant_id})"
            )
        return duplicates
