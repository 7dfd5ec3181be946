"""Resolution pipeline: code payload, then authoritative lookup, then text.

One run resolves one scanned document:

    start -> try_code -> code_verifying -> code_verified
                      -> code_resolved
          -> fallback_text -> text_resolved

Each terminal state yields exactly one ResolvedReceiptRecord. A document
with neither a parseable code nor usable text raises
UnrecognizedDocumentError.
"""

import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import date
from enum import Enum
from typing import Protocol

from slipcheck.models import (
    UNKNOWN_PAYMENT_METHOD,
    UNKNOWN_STORE,
    AuthoritativeInvoice,
    CodeInvoiceRecord,
    DataSource,
    RecognizedText,
    ResolutionOutcome,
    ResolvedReceiptRecord,
    ScannedDocument,
    TextValidationResult,
    VerificationStatus,
)
from slipcheck.recognition import (
    categorize_merchant,
    check_completeness,
    classify_document,
    extract_details,
    validate_format,
)
from slipcheck.recognition.validation import merge_validations
from slipcheck.utils.payload_parser import try_parse_payload

logger = logging.getLogger(__name__)

CODE_CONFIDENCE = 0.95
VERIFIED_CONFIDENCE = 1.0
MIN_TEXT_CONFIDENCE = 0.5
DATE_DISPLAY_FORMAT = "%Y/%m/%d"

CODE_NOTE = "從 QR Code 掃描取得"
VERIFIED_NOTE = "從國稅局 API 驗證取得"
TEXT_NOTE = "從文字辨識取得"
UNRECOGNIZED_MESSAGE = "document not recognized, please retry"


class ResolutionState(str, Enum):
    START = "start"
    TRY_CODE = "try_code"
    CODE_VERIFYING = "code_verifying"
    CODE_VERIFIED = "code_verified"
    CODE_RESOLVED = "code_resolved"
    FALLBACK_TEXT = "fallback_text"
    TEXT_RESOLVED = "text_resolved"


class UnrecognizedDocumentError(Exception):
    """Raised when a document has no parseable code and no usable text."""


class InvoiceLookup(Protocol):
    """Authoritative invoice lookup, e.g. EInvoiceClient."""

    async def query_invoice_detail(
        self,
        invoice_number: str,
        random_code: str,
        issue_date: date | None = None,
    ) -> AuthoritativeInvoice: ...


def join_recognized_text(
    candidates: Iterable[RecognizedText], min_confidence: float = MIN_TEXT_CONFIDENCE
) -> str:
    """Newline-join candidates above the confidence floor, in detection order."""
    return "\n".join(
        candidate.text for candidate in candidates if candidate.confidence > min_confidence
    )


def _format_date(value: date | None) -> str | None:
    return value.strftime(DATE_DISPLAY_FORMAT) if value else None


def record_from_code(code: CodeInvoiceRecord) -> ResolvedReceiptRecord:
    """Build the unverified record for a decoded code payload.

    Codes carry no merchant name or line items; those are left for manual
    entry.
    """
    if code.seller_id:
        merchant = f"店家（統編: {code.seller_id}）"
    else:
        merchant = UNKNOWN_STORE
    tax = code.tax_amount if code.tax_amount is not None else code.calculated_tax_amount
    total = float(code.total_amount)

    return ResolvedReceiptRecord(
        merchant=merchant,
        amount=total,
        date=_format_date(code.issue_date),
        tax=round(float(tax), 2),
        total=total,
        payment_method=UNKNOWN_PAYMENT_METHOD,
        category=categorize_merchant(merchant),
        confidence=CODE_CONFIDENCE,
        notes=CODE_NOTE,
        document_number=code.document_number,
        random_code=code.random_code,
        seller_id=code.seller_id,
        issue_date=code.issue_date,
        data_source=DataSource.CODE,
        verification_status=VerificationStatus.UNVERIFIED,
    )


def record_from_authoritative(
    code: CodeInvoiceRecord, invoice: AuthoritativeInvoice
) -> ResolvedReceiptRecord:
    """Build the verified record from an authoritative lookup result."""
    return ResolvedReceiptRecord(
        merchant=invoice.seller_name,
        amount=invoice.amount,
        date=_format_date(invoice.issue_date),
        line_items=invoice.line_items,
        tax=round(invoice.tax_amount, 2),
        total=invoice.amount,
        payment_method=invoice.payment_method or UNKNOWN_PAYMENT_METHOD,
        category=categorize_merchant(invoice.seller_name),
        confidence=VERIFIED_CONFIDENCE,
        notes=VERIFIED_NOTE,
        document_number=invoice.invoice_number or code.document_number,
        random_code=code.random_code,
        seller_id=invoice.seller_id or code.seller_id,
        issue_date=invoice.issue_date,
        data_source=DataSource.REMOTE_VERIFIED,
        verification_status=VerificationStatus.VERIFIED,
    )


def record_from_text(result: TextValidationResult) -> ResolvedReceiptRecord:
    """Build the record for the recognised-text path."""
    details = result.extracted_details
    issues = list(result.format_validation.issues)
    for field_name in result.completeness_check.missing_fields:
        issue = f"缺少{field_name}"
        if issue not in issues:
            issues.append(issue)

    return ResolvedReceiptRecord(
        merchant=details.merchant_name,
        amount=details.total_amount,
        date=_format_date(details.issue_date),
        line_items=details.line_items,
        tax=details.tax_amount,
        total=details.total_amount,
        payment_method=details.payment_method or UNKNOWN_PAYMENT_METHOD,
        category=categorize_merchant(details.merchant_name),
        confidence=result.confidence,
        notes=TEXT_NOTE,
        document_number=details.document_number,
        seller_id=details.seller_id,
        issue_date=details.issue_date,
        data_source=DataSource.RECOGNIZED_TEXT,
        verification_status=VerificationStatus.UNVERIFIED,
        document_type=result.document_type,
        issues=issues,
        suggestions=result.suggestions,
    )


async def run_text_pipeline(text: str) -> TextValidationResult:
    """Classify, extract, then score format and completeness concurrently."""
    document_type = classify_document(text)
    details = extract_details(text, document_type)

    # The two checks share no state, so they run side by side.
    loop = asyncio.get_running_loop()
    format_validation, completeness_check = await asyncio.gather(
        loop.run_in_executor(None, validate_format, text, document_type),
        loop.run_in_executor(None, check_completeness, details, document_type),
    )
    return merge_validations(document_type, details, format_validation, completeness_check)


def first_parsed_code(payloads: Iterable[str]) -> CodeInvoiceRecord | None:
    """Decode payloads in detection order; the first success wins."""
    for payload in payloads:
        code = try_parse_payload(payload)
        if code is not None:
            return code
    return None


class ResolutionOrchestrator:
    """
    Resolves one scanned document into a ResolvedReceiptRecord.

    The orchestrator holds no per-document state, so one instance can
    serve concurrent resolutions.
    """

    def __init__(
        self,
        lookup: InvoiceLookup | None = None,
        lookup_timeout: float | None = 10.0,
        min_text_confidence: float = MIN_TEXT_CONFIDENCE,
        on_progress: Callable[[str, str], None] | None = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            lookup: Authoritative lookup; None disables verification
            lookup_timeout: Seconds allowed for the lookup (None for no limit)
            min_text_confidence: Recognised text at or below this is dropped
            on_progress: Optional callback for state changes (state, message)
        """
        self.lookup = lookup
        self.lookup_timeout = lookup_timeout
        self.min_text_confidence = min_text_confidence
        self.on_progress = on_progress

    def _report(self, state: ResolutionState, message: str) -> None:
        logger.info("%s: %s", state.value, message)
        if self.on_progress:
            self.on_progress(state.value, message)

    async def _verify(
        self, code: CodeInvoiceRecord, cancel: asyncio.Event | None
    ) -> AuthoritativeInvoice | None:
        """Run the authoritative lookup; any failure, timeout or cancel gives None."""
        if self.lookup is None or not code.document_number or not code.random_code:
            return None

        self._report(
            ResolutionState.CODE_VERIFYING,
            f"Verifying {code.document_number} with the e-invoice platform",
        )
        lookup_task = asyncio.ensure_future(
            self.lookup.query_invoice_detail(
                code.document_number, code.random_code, issue_date=code.issue_date
            )
        )
        waiters = {lookup_task}
        if cancel is not None:
            waiters.add(asyncio.ensure_future(cancel.wait()))

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=self.lookup_timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in waiters:
                if not task.done():
                    task.cancel()

        if lookup_task not in done:
            logger.warning(
                "Lookup of %s timed out or was cancelled", code.document_number
            )
            return None

        try:
            return lookup_task.result()
        except Exception as e:
            logger.warning("Lookup of %s failed: %s", code.document_number, e)
            return None

    async def resolve(
        self,
        payloads: Iterable[str] = (),
        recognized_text: Iterable[RecognizedText] = (),
        cancel: asyncio.Event | None = None,
    ) -> ResolvedReceiptRecord:
        """
        Resolve one document from its detected code payloads and text.

        Args:
            payloads: Code payloads in detection order
            recognized_text: Text recognition candidates in detection order
            cancel: Optional event that abandons the authoritative lookup

        Returns:
            The resolved record

        Raises:
            UnrecognizedDocumentError: If no code parses and no text is usable
        """
        self._report(ResolutionState.START, "Resolving document")

        code = first_parsed_code(payloads)
        if code is not None:
            self._report(
                ResolutionState.TRY_CODE,
                f"Decoded invoice {code.document_number} ({code.payload_format})",
            )
            invoice = await self._verify(code, cancel)
            if invoice is not None:
                record = record_from_authoritative(code, invoice)
                self._report(
                    ResolutionState.CODE_VERIFIED,
                    f"Verified {record.document_number}: {record.merchant}",
                )
                return record

            record = record_from_code(code)
            self._report(
                ResolutionState.CODE_RESOLVED,
                f"Resolved {record.document_number} from code: {record.total} {record.currency}",
            )
            return record

        text = join_recognized_text(recognized_text, self.min_text_confidence)
        if not text.strip():
            raise UnrecognizedDocumentError(UNRECOGNIZED_MESSAGE)

        self._report(ResolutionState.FALLBACK_TEXT, f"Analysing {len(text)} characters of text")
        result = await run_text_pipeline(text)
        record = record_from_text(result)
        self._report(
            ResolutionState.TEXT_RESOLVED,
            f"Resolved {result.document_type.value}: {record.merchant} "
            f"(confidence {record.confidence:.2f})",
        )
        return record


async def resolve_many(
    orchestrator: ResolutionOrchestrator, documents: Iterable[ScannedDocument]
) -> list[ResolutionOutcome]:
    """Resolve documents concurrently; one outcome per document, in input order."""

    async def resolve_one(document: ScannedDocument) -> ResolutionOutcome:
        try:
            record = await orchestrator.resolve(document.payloads, document.recognized_text)
        except UnrecognizedDocumentError as e:
            return ResolutionOutcome(source=document.source, error=str(e))
        return ResolutionOutcome(source=document.source, record=record)

    results = await asyncio.gather(*(resolve_one(document) for document in documents))
    return list(results)
