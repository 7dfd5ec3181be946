"""Heuristic field extraction from recognised invoice and receipt text.

Every extractor is independent and returns None (or an empty list) when
its field cannot be found; nothing here raises on unexpected input.
"""

import logging
import re
from datetime import date, datetime

from slipcheck.models import (
    UNKNOWN_MERCHANT,
    DocumentType,
    ExtractedInvoiceDetails,
    LineItem,
)

logger = logging.getLogger(__name__)

MERCHANT_SCAN_LINES = 5
MERCHANT_SKIP_TERMS = ("發票", "統一編號", "統編", "日期", "Date", "INVOICE", "#")
MERCHANT_AMOUNT_MARKERS = ("$", "NT$", "元", "總計")

AMOUNT = r"(?:NT\$|\$)?\s*(\d{1,3}(?:,\d{3})+(?:\.\d{2})?|\d+(?:\.\d{2})?)"

UNIFORM_NUMBER_PATTERNS = [
    re.compile(r"發票號碼[：:]\s*(\d{2}[A-Z]\d{8})"),
    re.compile(r"發票號[：:]\s*(\d{2}[A-Z]\d{8})"),
    re.compile(r"(\d{2}[A-Z]\d{8})"),
]
LOOSE_NUMBER_PATTERNS = [
    re.compile(r"發票號碼[：:]\s*([A-Z0-9]+)"),
    re.compile(r"發票號[：:]\s*([A-Z0-9]+)"),
    re.compile(r"Invoice\s*#?\s*([A-Z0-9]+)"),
]

DATE_SHAPES = [
    re.compile(r"\d{4}[-/]\d{2}[-/]\d{2}"),
    re.compile(r"\d{2}[-/]\d{2}[-/]\d{4}"),
    re.compile(r"\d{4}年\d{1,2}月\d{1,2}日"),
]
DATE_FORMATS = ["%Y-%m-%d", "%Y/%m/%d", "%m/%d/%Y", "%m-%d-%Y", "%Y年%m月%d日"]

TOTAL_PATTERNS = [
    re.compile(rf"總計[：:]\s*{AMOUNT}"),
    re.compile(rf"合計[：:]\s*{AMOUNT}"),
    re.compile(rf"(?<![A-Za-z])Total[：:]\s*{AMOUNT}", re.IGNORECASE),
    re.compile(rf"小計[：:]\s*{AMOUNT}"),
]
TAX_PATTERNS = [
    re.compile(rf"稅額[：:]\s*{AMOUNT}"),
    re.compile(rf"稅[：:]\s*{AMOUNT}"),
    re.compile(rf"(?<![A-Za-z])Tax[：:]\s*{AMOUNT}", re.IGNORECASE),
]

ITEM_SKIP_TERMS = (
    "總計",
    "合計",
    "小計",
    "稅",
    "發票",
    "統一編號",
    "統編",
    "日期",
    "SUBTOTAL",
    "TOTAL",
    "TAX",
    "INVOICE",
    "DATE",
)
ITEM_MIN_LENGTH = 3
ITEM_MAX_LENGTH = 50
HAS_NUMBER = re.compile(r"\d+(?:\.\d{2})?")

# name x qty price / name qty price / name price
ITEM_PATTERNS = [
    re.compile(rf"(?P<name>.+?)\s+[xX×]\s*(?P<qty>\d+)\s+{AMOUNT}"),
    re.compile(rf"(?P<name>.+?)\s+(?P<qty>\d+)\s+{AMOUNT}"),
    re.compile(rf"(?P<name>.+?)\s+{AMOUNT}"),
]

SELLER_ID_PATTERN = re.compile(r"統一編號[：:]\s*(\d{8})")
SELLER_ADDRESS_PATTERN = re.compile(r"地址[：:]\s*([^\n]+)")

PAYMENT_METHODS = [
    "現金",
    "信用卡",
    "悠遊卡",
    "一卡通",
    "LINE Pay",
    "街口支付",
    "Apple Pay",
    "Google Pay",
    "Cash",
    "Credit Card",
]


def extract_merchant_name(lines: list[str]) -> str:
    for line in lines[:MERCHANT_SCAN_LINES]:
        trimmed = line.strip()
        if (
            not trimmed
            or trimmed.isdigit()
            or any(term in trimmed for term in MERCHANT_SKIP_TERMS)
        ):
            continue
        if 2 <= len(trimmed) <= 50 and not any(
            marker in trimmed for marker in MERCHANT_AMOUNT_MARKERS
        ):
            return trimmed
    return UNKNOWN_MERCHANT


def extract_document_number(text: str, document_type: DocumentType) -> str | None:
    if document_type.requires_document_number:
        patterns = UNIFORM_NUMBER_PATTERNS
    else:
        patterns = LOOSE_NUMBER_PATTERNS

    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def extract_issue_date(text: str) -> date | None:
    for shape in DATE_SHAPES:
        match = shape.search(text)
        if not match:
            continue
        for fmt in DATE_FORMATS:
            try:
                return datetime.strptime(match.group(0), fmt).date()
            except ValueError:
                continue
    return None


def _to_amount(raw: str) -> float:
    return float(raw.replace(",", ""))


def _first_amount(text: str, patterns: list[re.Pattern[str]]) -> float | None:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return _to_amount(match.group(1))
    return None


def extract_total_amount(text: str) -> float | None:
    return _first_amount(text, TOTAL_PATTERNS)


def extract_tax_amount(text: str) -> float | None:
    return _first_amount(text, TAX_PATTERNS)


def parse_item_line(line: str) -> LineItem | None:
    """Parse one candidate item line, e.g. ``Coffee 2 60`` or ``Tea 45``."""
    for pattern in ITEM_PATTERNS:
        match = pattern.match(line)
        if not match:
            continue
        groups = match.groupdict()
        name = groups["name"].strip()
        quantity = float(groups["qty"]) if groups.get("qty") else 1.0
        price = _to_amount(match.group(match.lastindex or 0))
        if name and price > 0:
            return LineItem(
                name=name,
                quantity=quantity,
                unit_price=price,
                amount=price * quantity,
            )
    return None


def extract_line_items(lines: list[str]) -> list[LineItem]:
    items = []
    for line in lines:
        trimmed = line.strip()
        if not trimmed or any(term in trimmed.upper() for term in ITEM_SKIP_TERMS):
            continue
        if not ITEM_MIN_LENGTH <= len(trimmed) <= ITEM_MAX_LENGTH:
            continue
        if not HAS_NUMBER.search(trimmed):
            continue
        item = parse_item_line(trimmed)
        if item:
            items.append(item)
    return items


def extract_seller_id(text: str) -> str | None:
    match = SELLER_ID_PATTERN.search(text)
    return match.group(1) if match else None


def extract_seller_address(text: str) -> str | None:
    match = SELLER_ADDRESS_PATTERN.search(text)
    if not match:
        return None
    return match.group(1).strip() or None


def extract_payment_method(text: str) -> str | None:
    for method in PAYMENT_METHODS:
        if method in text:
            return method
    return None


def extract_details(text: str, document_type: DocumentType) -> ExtractedInvoiceDetails:
    """
    Extract every supported field from recognised text.

    Args:
        text: Newline-joined recognised text
        document_type: Classified type, selects the document number rules

    Returns:
        ExtractedInvoiceDetails with each field found, or left unset
    """
    lines = text.splitlines()
    details = ExtractedInvoiceDetails(
        merchant_name=extract_merchant_name(lines),
        document_number=extract_document_number(text, document_type),
        issue_date=extract_issue_date(text),
        total_amount=extract_total_amount(text),
        tax_amount=extract_tax_amount(text),
        line_items=extract_line_items(lines),
        seller_id=extract_seller_id(text),
        seller_address=extract_seller_address(text),
        payment_method=extract_payment_method(text),
        raw_text=text,
    )
    logger.debug(
        "Extracted %s: merchant=%s number=%s total=%s items=%d",
        document_type.value,
        details.merchant_name,
        details.document_number,
        details.total_amount,
        len(details.line_items),
    )
    return details
