"""Decoder for Taiwanese e-invoice code payloads.

Payloads are ``||``-delimited. Three layouts are in circulation:

- simple:   number||random||date||amount
- standard: number||random||date||amount||seller||carrier[||donation]
- itemized: number||random||date||pre_tax||tax||total||seller||carrier||donation

The standard and itemized layouts can have the same number of fields and
carry no format tag; they are told apart only by checking whether the
fourth to sixth fields add up (pre_tax + tax == total).
"""

import logging
import re
from datetime import date, datetime
from decimal import Decimal

from slipcheck.models import CodeInvoiceRecord

logger = logging.getLogger(__name__)

FIELD_DELIMITER = "||"
MIN_SEGMENTS = 4

DOCUMENT_NUMBER_PATTERN = re.compile(r"^\d{2}[A-Z]\d{8}$")
RANDOM_CODE_PATTERN = re.compile(r"^[A-Za-z0-9]{4}$")
SELLER_ID_PATTERN = re.compile(r"^\d{8}$")
MINOR_UNITS_PATTERN = re.compile(r"^\d+$")

# (shape, strptime format), tried in order
DATE_FORMATS = [
    (re.compile(r"^\d{8}$"), "%Y%m%d"),
    (re.compile(r"^\d{4}-\d{2}-\d{2}$"), "%Y-%m-%d"),
    (re.compile(r"^\d{4}/\d{2}/\d{2}$"), "%Y/%m/%d"),
]

# Optional fields holding one of these mean "not provided".
ABSENT_VALUES = ("", "0")


class PayloadParseError(ValueError):
    """Raised when a code payload cannot be decoded."""

    def __init__(self, message: str, segment: str | None = None) -> None:
        super().__init__(message)
        self.segment = segment


class MalformedPayloadError(PayloadParseError):
    """Payload has fewer than the four required fields."""


class InvalidDocumentNumberError(PayloadParseError):
    pass


class InvalidRandomCodeError(PayloadParseError):
    pass


class InvalidDateError(PayloadParseError):
    pass


class InvalidAmountError(PayloadParseError):
    pass


def _parse_date(value: str) -> date | None:
    for shape, fmt in DATE_FORMATS:
        if not shape.match(value):
            continue
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def _parse_minor_units(value: str) -> int | None:
    if not MINOR_UNITS_PATTERN.match(value):
        return None
    return int(value)


def _to_major_units(minor_units: int) -> Decimal:
    return Decimal(minor_units) / 100


def _optional(segments: list[str], index: int) -> str | None:
    if index >= len(segments):
        return None
    value = segments[index]
    if value in ABSENT_VALUES:
        return None
    return value


def _optional_seller_id(segments: list[str], index: int) -> str | None:
    value = _optional(segments, index)
    if value is None or not SELLER_ID_PATTERN.match(value):
        return None
    return value


def parse_payload(payload: str) -> CodeInvoiceRecord:
    """
    Decode an e-invoice code payload into a CodeInvoiceRecord.

    Raises:
        MalformedPayloadError: If fewer than four fields are present.
        InvalidDocumentNumberError: If the document number is not 2 digits,
            1 uppercase letter and 8 digits.
        InvalidRandomCodeError: If the random code is not 4 alphanumerics.
        InvalidDateError: If the date matches none of the accepted formats.
        InvalidAmountError: If the amount is not a positive integer.
    """
    segments = [segment.strip() for segment in payload.split(FIELD_DELIMITER)]
    if len(segments) < MIN_SEGMENTS:
        raise MalformedPayloadError(
            f"QR Code 格式錯誤，至少需要 {MIN_SEGMENTS} 個欄位", payload
        )

    document_number, random_code, date_string, amount_string = segments[:4]

    if not DOCUMENT_NUMBER_PATTERN.match(document_number):
        raise InvalidDocumentNumberError(
            f"無效的發票號碼格式: {document_number}", document_number
        )

    if not RANDOM_CODE_PATTERN.match(random_code):
        raise InvalidRandomCodeError(f"無效的隨機碼格式: {random_code}", random_code)

    issue_date = _parse_date(date_string)
    if issue_date is None:
        raise InvalidDateError(f"無效的日期格式: {date_string}", date_string)

    minor_units = _parse_minor_units(amount_string)
    if minor_units is None or minor_units <= 0:
        raise InvalidAmountError(f"無效的金額格式: {amount_string}", amount_string)

    total_amount = _to_major_units(minor_units)
    pre_tax_amount: Decimal | None = None
    tax_amount: Decimal | None = None
    seller_id: str | None = None
    carrier_id: str | None = None
    donation_code: str | None = None

    if len(segments) >= 6:
        pre_tax, tax, total = (_parse_minor_units(s) for s in segments[3:6])
        if (
            pre_tax is not None
            and tax is not None
            and total is not None
            and pre_tax + tax == total
        ):
            pre_tax_amount = _to_major_units(pre_tax)
            tax_amount = _to_major_units(tax)
            total_amount = _to_major_units(total)
            seller_id = _optional_seller_id(segments, 6)
            carrier_id = _optional(segments, 7)
            donation_code = _optional(segments, 8)
        else:
            seller_id = _optional_seller_id(segments, 4)
            carrier_id = _optional(segments, 5)
            donation_code = _optional(segments, 6)

    record = CodeInvoiceRecord(
        document_number=document_number,
        random_code=random_code,
        issue_date=issue_date,
        total_amount=total_amount,
        seller_id=seller_id,
        carrier_id=carrier_id,
        pre_tax_amount=pre_tax_amount,
        tax_amount=tax_amount,
        donation_code=donation_code,
    )
    logger.info(
        "Parsed %s payload: invoice=%s amount=%s",
        record.payload_format,
        record.document_number,
        record.total_amount,
    )
    return record


def try_parse_payload(payload: str) -> CodeInvoiceRecord | None:
    """
    Best-effort decode of a code payload.

    Retries once with single ``|`` delimiters widened to ``||`` for encoders
    that emit the narrow delimiter. Returns None instead of raising.
    """
    try:
        return parse_payload(payload)
    except PayloadParseError as e:
        logger.warning("Payload parse failed, trying delimiter variant: %s", e)

    cleaned = payload.strip()
    if "|" in cleaned and FIELD_DELIMITER not in cleaned:
        try:
            return parse_payload(cleaned.replace("|", FIELD_DELIMITER))
        except PayloadParseError as e:
            logger.debug("Delimiter variant parse failed: %s", e)

    return None
