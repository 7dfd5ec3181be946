"""Data models for invoice resolution and the records it produces."""

import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_CURRENCY = "TWD"
DEFAULT_TAX_RATE = Decimal("0.05")

UNKNOWN_MERCHANT = "未知商家"
UNKNOWN_STORE = "未知店家"
UNKNOWN_PAYMENT_METHOD = "未知"
DEFAULT_CATEGORY = "其他"


class DocumentType(str, Enum):
    """Kind of document recognised from free text."""

    ELECTRONIC_INVOICE = "electronic_invoice"
    TRADITIONAL_INVOICE = "traditional_invoice"
    RECEIPT = "receipt"
    INTERNATIONAL_INVOICE = "international_invoice"

    @property
    def display_name(self) -> str:
        return _DOCUMENT_TYPE_NAMES[self]

    @property
    def requires_document_number(self) -> bool:
        return self in (
            DocumentType.ELECTRONIC_INVOICE,
            DocumentType.TRADITIONAL_INVOICE,
        )


_DOCUMENT_TYPE_NAMES = {
    DocumentType.ELECTRONIC_INVOICE: "電子發票",
    DocumentType.TRADITIONAL_INVOICE: "統一發票",
    DocumentType.RECEIPT: "收據",
    DocumentType.INTERNATIONAL_INVOICE: "國際發票",
}


class DataSource(str, Enum):
    """Which source produced the values of a resolved record."""

    CODE = "code"
    RECOGNIZED_TEXT = "recognized_text"
    REMOTE_VERIFIED = "remote_verified"


class VerificationStatus(str, Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    VERIFYING = "verifying"
    FAILED = "failed"


class CodeInvoiceRecord(BaseModel):
    """Decoded e-invoice code payload.

    Amounts are kept as exact decimals in major units (NT$), converted from
    the minor-unit integers carried by the payload.
    """

    model_config = ConfigDict(frozen=True)

    document_number: str
    random_code: str
    issue_date: dt.date
    total_amount: Decimal = Field(gt=0)
    seller_id: str | None = None
    carrier_id: str | None = None
    buyer_id: str | None = None
    pre_tax_amount: Decimal | None = None
    tax_amount: Decimal | None = None
    donation_code: str | None = None

    @model_validator(mode="after")
    def _check_itemized_sum(self) -> "CodeInvoiceRecord":
        if self.pre_tax_amount is not None and self.tax_amount is not None:
            if self.pre_tax_amount + self.tax_amount != self.total_amount:
                raise ValueError("pre_tax_amount + tax_amount must equal total_amount")
        return self

    @property
    def payload_format(self) -> Literal["simple", "itemized"]:
        if self.pre_tax_amount is not None and self.tax_amount is not None:
            return "itemized"
        return "simple"

    @property
    def calculated_tax_amount(self) -> Decimal:
        """Tax amount, derived from the default tax rate when not itemized."""
        if self.pre_tax_amount is not None:
            return self.total_amount - self.pre_tax_amount
        return self.total_amount / (1 + DEFAULT_TAX_RATE) * DEFAULT_TAX_RATE

    @property
    def calculated_pre_tax_amount(self) -> Decimal:
        """Pre-tax amount, derived from the default tax rate when not itemized."""
        if self.pre_tax_amount is not None:
            return self.pre_tax_amount
        return self.total_amount / (1 + DEFAULT_TAX_RATE)

    def to_minor_units(self) -> int:
        """Total amount as the minor-unit integer used on the payload."""
        return int(self.total_amount * 100)


class LineItem(BaseModel):
    """Individual line item on an invoice or receipt."""

    name: str
    quantity: float = 1.0
    unit_price: float
    amount: float
    tax_rate: float | None = None


class ExtractedInvoiceDetails(BaseModel):
    """Fields extracted from recognised text; every field is optional."""

    model_config = ConfigDict(frozen=True)

    merchant_name: str = UNKNOWN_MERCHANT
    document_number: str | None = None
    issue_date: dt.date | None = None
    total_amount: float | None = None
    tax_amount: float | None = None
    line_items: list[LineItem] = Field(default_factory=list)
    seller_id: str | None = None
    seller_address: str | None = None
    payment_method: str | None = None
    raw_text: str = ""


class FormatValidation(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    issues: list[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)


class CompletenessCheck(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    missing_fields: list[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)


class TextValidationResult(BaseModel):
    """Merged outcome of the recognised-text pipeline."""

    model_config = ConfigDict(frozen=True)

    is_valid: bool
    document_type: DocumentType
    format_validation: FormatValidation
    completeness_check: CompletenessCheck
    extracted_details: ExtractedInvoiceDetails
    confidence: float = Field(ge=0.0, le=1.0)
    suggestions: list[str] = Field(default_factory=list)


class RecognizedText(BaseModel):
    """One candidate returned by the text recognition engine."""

    text: str
    confidence: float


class AuthoritativeInvoice(BaseModel):
    """Invoice detail as returned by the national e-invoice platform."""

    invoice_number: str
    issue_date: dt.date
    seller_name: str = UNKNOWN_MERCHANT
    seller_id: str | None = None
    seller_address: str | None = None
    buyer_id: str | None = None
    amount: float
    tax_amount: float
    payment_method: str | None = None
    line_items: list[LineItem] = Field(default_factory=list)


class ResolvedReceiptRecord(BaseModel):
    """Final, confidence-scored record for one scanned document."""

    model_config = ConfigDict(frozen=True)

    merchant: str
    amount: float | None = None
    currency: str = DEFAULT_CURRENCY
    date: str | None = None  # YYYY/MM/DD format
    line_items: list[LineItem] = Field(default_factory=list)
    tax: float | None = None
    total: float | None = None
    payment_method: str = UNKNOWN_PAYMENT_METHOD
    category: str = DEFAULT_CATEGORY
    confidence: float = Field(ge=0.0, le=1.0)
    notes: str = ""
    document_number: str | None = None
    random_code: str | None = None
    seller_id: str | None = None
    issue_date: dt.date | None = None
    data_source: DataSource
    verification_status: VerificationStatus = VerificationStatus.UNVERIFIED
    document_type: DocumentType | None = None
    issues: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    extracted_at: dt.datetime = Field(default_factory=lambda: dt.datetime.now(dt.UTC))

    @model_validator(mode="after")
    def _check_provenance(self) -> "ResolvedReceiptRecord":
        if (
            self.verification_status is VerificationStatus.VERIFIED
            and self.data_source is not DataSource.REMOTE_VERIFIED
        ):
            raise ValueError(
                "verification_status 'verified' requires data_source 'remote_verified'"
            )
        return self

    def with_user_edits(self, note: str, **changes: Any) -> "ResolvedReceiptRecord":
        """Return a new record with user corrections applied and noted.

        Provenance fields can only change as a pair.
        """
        provenance = {"data_source", "verification_status"} & changes.keys()
        if len(provenance) == 1:
            raise ValueError(
                "data_source and verification_status must be changed together"
            )
        notes = f"{self.notes}\n{note}" if self.notes else note
        data = self.model_dump() | changes | {"notes": notes}
        return ResolvedReceiptRecord.model_validate(data)


class ResolutionOutcome(BaseModel):
    """Result of resolving one document in a batch."""

    source: str
    record: ResolvedReceiptRecord | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.record is not None


class ScannedDocument(BaseModel):
    """What the detection engines returned for one image."""

    source: str
    payloads: list[str] = Field(default_factory=list)
    recognized_text: list[RecognizedText] = Field(default_factory=list)
