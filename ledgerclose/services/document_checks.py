"""
LedgerClose - Posting Collaborators

Checks the ledger consumes before posting a document or closing a period:
- ConfidenceGate: does the extraction need a human before it can post?
- PostingValidator: is the extraction complete, and what are its normalized values?
- ValidationPipeline: pass/fail signal from the validation rule engine for a period

The defaults read what the extraction pipeline stored on the document.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ledgerclose.config import settings
from ledgerclose.models.document import SourceDocument

logger = logging.getLogger(__name__)


class NormalizedDocumentData(BaseModel):
    vendor: Optional[str] = None
    total: Decimal
    tax: Decimal = Decimal("0")
    tax_rate: Optional[Decimal] = None
    document_date: date
    description: str
    document_type: Optional[str] = None
    currency: str = "GBP"


class PostingValidationResult(BaseModel):
    is_valid: bool
    normalized_data: Optional[NormalizedDocumentData] = None
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class PipelineResult(BaseModel):
    passed: bool
    failures: List[str] = Field(default_factory=list)


# =============================================================================
# INTERFACES
# =============================================================================

class ConfidenceGate(ABC):
    @abstractmethod
    async def requires_manual_review(self, tenant_id: uuid.UUID, document: SourceDocument) -> bool:
        pass


class PostingValidator(ABC):
    @abstractmethod
    async def validate_for_posting(
        self,
        tenant_id: uuid.UUID,
        document: SourceDocument,
    ) -> PostingValidationResult:
        pass


class ValidationPipeline(ABC):
    @abstractmethod
    async def run(
        self,
        tenant_id: uuid.UUID,
        period_start: date,
        period_end: date,
        entity_id: Optional[uuid.UUID] = None,
    ) -> PipelineResult:
        pass


# =============================================================================
# DEFAULT IMPLEMENTATIONS
# =============================================================================

class ThresholdConfidenceGate(ConfidenceGate):
    """Requires review when the stored confidence is missing or below the threshold."""

    def __init__(self, threshold: Optional[float] = None):
        self.threshold = Decimal(str(threshold if threshold is not None else settings.posting_confidence_threshold))

    async def requires_manual_review(self, tenant_id: uuid.UUID, document: SourceDocument) -> bool:
        if document.confidence_score is None:
            return True
        return Decimal(str(document.confidence_score)) < self.threshold


def _parse_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _parse_date(value: Any) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


class ExtractionPostingValidator(PostingValidator):
    """Validates and normalizes the extracted_data stored on the document."""

    async def validate_for_posting(
        self,
        tenant_id: uuid.UUID,
        document: SourceDocument,
    ) -> PostingValidationResult:
        data: Dict[str, Any] = document.extracted_data or {}
        errors: List[str] = []
        warnings: List[str] = []

        total = _parse_decimal(data.get("total"))
        if total is None:
            errors.append("Missing or invalid total")
        elif total < 0:
            errors.append("Total cannot be negative")

        tax = _parse_decimal(data.get("tax"))
        if data.get("tax") is not None and tax is None:
            errors.append("Invalid tax amount")
        tax = tax if tax is not None else Decimal("0")
        if tax < 0:
            errors.append("Tax cannot be negative")
        if total is not None and tax > total:
            errors.append("Tax exceeds total")

        document_date = _parse_date(data.get("date"))
        if document_date is None:
            errors.append("Missing or invalid document date")

        vendor = data.get("vendor")
        if vendor is None or str(vendor).strip() == "":
            warnings.append("Vendor not extracted")
            vendor = None

        if errors:
            return PostingValidationResult(is_valid=False, errors=errors, warnings=warnings)

        description = data.get("description")
        if description is None or str(description).strip() == "":
            description = f"{document.document_type.value.title()} from {vendor or 'unknown vendor'}"

        normalized = NormalizedDocumentData(
            vendor=vendor,
            total=total,
            tax=tax,
            tax_rate=_parse_decimal(data.get("tax_rate")),
            document_date=document_date,
            description=str(description),
            document_type=data.get("document_type"),
            currency=str(data.get("currency") or settings.default_currency).upper(),
        )
        return PostingValidationResult(is_valid=True, normalized_data=normalized, warnings=warnings)
