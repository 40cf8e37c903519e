"""
LedgerClose - Source Document Model

Documents arrive here after extraction and classification; the ledger
only reads the normalized extraction and flips the status once posted.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import Numeric, String, Enum as SQLEnum, JSON
from sqlalchemy.orm import Mapped, mapped_column

from ledgerclose.models.base import BaseModel, TenantMixin


class DocumentType(str, Enum):
    INVOICE = "invoice"
    RECEIPT = "receipt"
    EXPENSE = "expense"
    BILL = "bill"
    STATEMENT = "statement"
    OTHER = "other"


class DocumentStatus(str, Enum):
    PENDING = "pending"
    EXTRACTED = "extracted"
    CLASSIFIED = "classified"
    POSTED = "posted"
    REJECTED = "rejected"


class SourceDocument(BaseModel, TenantMixin):
    """Extracted source document awaiting (or after) ledger posting."""

    __tablename__ = "documents"

    file_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    document_type: Mapped[DocumentType] = mapped_column(
        SQLEnum(DocumentType), default=DocumentType.OTHER, nullable=False,
    )
    status: Mapped[DocumentStatus] = mapped_column(
        SQLEnum(DocumentStatus), default=DocumentStatus.PENDING, nullable=False,
    )
    # vendor, total, tax, date, description, currency
    extracted_data: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    confidence_score: Mapped[Optional[Decimal]] = mapped_column(Numeric(precision=5, scale=4), nullable=True)
