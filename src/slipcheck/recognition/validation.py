"""Format and completeness scoring for recognised documents.

Both checks start from full confidence and subtract a fixed penalty for
every rule that fails, flooring at zero. Format rules look at the raw
text; completeness rules look at the extracted fields.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass

from slipcheck.models import (
    UNKNOWN_MERCHANT,
    CompletenessCheck,
    DocumentType,
    ExtractedInvoiceDetails,
    FormatValidation,
    TextValidationResult,
)

LOW_CONFIDENCE_THRESHOLD = 0.7

FORMAT_SUGGESTION = "發票格式可能不正確，請確保圖片清晰且包含完整的發票資訊"
COMPLETENESS_SUGGESTION = "發票資訊不完整，建議重新拍攝或手動補充缺失資訊"
LOW_CONFIDENCE_SUGGESTION = "發票識別信心度較低，建議在光線充足的地方重新拍攝"


@dataclass(frozen=True)
class FormatRule:
    """A pattern the raw text must contain."""

    field_name: str
    pattern: re.Pattern[str]
    penalty: float
    issue: str


@dataclass(frozen=True)
class CompletenessRule:
    """A predicate the extracted details must satisfy."""

    field_name: str
    check: Callable[[ExtractedInvoiceDetails], bool]
    penalty: float


_DOCUMENT_NUMBER = re.compile(r"\d{2}[A-Z]\d{8}")
_DATE = re.compile(r"\d{4}[-/]\d{2}[-/]\d{2}")
_SELLER_ID = re.compile(r"\d{8}")
_TOTAL_LABEL = re.compile(r"總計|合計|Total")
_AMOUNT = re.compile(r"\d+(?:\.\d{2})?")


def _missing(field_name: str, pattern: re.Pattern[str], penalty: float) -> FormatRule:
    return FormatRule(field_name, pattern, penalty, f"缺少{field_name}")


FORMAT_RULES: dict[DocumentType, list[FormatRule]] = {
    DocumentType.ELECTRONIC_INVOICE: [
        _missing("發票號碼", _DOCUMENT_NUMBER, 0.2),
        _missing("發票日期", _DATE, 0.2),
        _missing("統一編號", _SELLER_ID, 0.2),
        _missing("總計", _TOTAL_LABEL, 0.2),
        FormatRule("金額", _AMOUNT, 0.2, "未找到金額資訊"),
    ],
    DocumentType.TRADITIONAL_INVOICE: [
        _missing("發票號碼", _DOCUMENT_NUMBER, 0.25),
        _missing("發票日期", _DATE, 0.25),
        _missing("統一編號", _SELLER_ID, 0.25),
    ],
    DocumentType.RECEIPT: [
        FormatRule("金額", _AMOUNT, 0.4, "未找到金額資訊"),
        FormatRule("日期", _DATE, 0.2, "未找到日期資訊"),
    ],
    DocumentType.INTERNATIONAL_INVOICE: [
        FormatRule("金額", _AMOUNT, 0.4, "未找到金額資訊"),
    ],
}

COMPLETENESS_RULES: list[CompletenessRule] = [
    CompletenessRule(
        "商家名稱",
        lambda d: bool(d.merchant_name) and d.merchant_name != UNKNOWN_MERCHANT,
        0.3,
    ),
    CompletenessRule("總金額", lambda d: d.total_amount is not None, 0.4),
    CompletenessRule("發票日期", lambda d: d.issue_date is not None, 0.2),
    CompletenessRule("商品明細", lambda d: bool(d.line_items), 0.2),
]

DOCUMENT_NUMBER_RULE = CompletenessRule(
    "發票號碼", lambda d: d.document_number is not None, 0.3
)


def _score(penalties: list[float]) -> float:
    return max(0.0, 1.0 - sum(penalties))


def validate_format(text: str, document_type: DocumentType) -> FormatValidation:
    """Check the raw text for the fields its document type requires."""
    failed = [
        rule for rule in FORMAT_RULES[document_type] if not rule.pattern.search(text)
    ]
    issues = [rule.issue for rule in failed]
    return FormatValidation(
        is_valid=not issues,
        issues=issues,
        confidence=_score([rule.penalty for rule in failed]),
    )


def completeness_rules_for(document_type: DocumentType) -> list[CompletenessRule]:
    if document_type.requires_document_number:
        return [*COMPLETENESS_RULES, DOCUMENT_NUMBER_RULE]
    return list(COMPLETENESS_RULES)


def check_completeness(
    details: ExtractedInvoiceDetails, document_type: DocumentType
) -> CompletenessCheck:
    """Check extracted details for missing business-critical fields."""
    failed = [
        rule for rule in completeness_rules_for(document_type) if not rule.check(details)
    ]
    return CompletenessCheck(
        is_valid=not failed,
        missing_fields=[rule.field_name for rule in failed],
        confidence=_score([rule.penalty for rule in failed]),
    )


def build_suggestions(
    format_validation: FormatValidation, completeness_check: CompletenessCheck
) -> list[str]:
    suggestions = []
    if not format_validation.is_valid:
        suggestions.append(FORMAT_SUGGESTION)
    if not completeness_check.is_valid:
        suggestions.append(COMPLETENESS_SUGGESTION)
    if format_validation.confidence < LOW_CONFIDENCE_THRESHOLD:
        suggestions.append(LOW_CONFIDENCE_SUGGESTION)
    return suggestions


def merge_validations(
    document_type: DocumentType,
    details: ExtractedInvoiceDetails,
    format_validation: FormatValidation,
    completeness_check: CompletenessCheck,
) -> TextValidationResult:
    """Combine the two independent checks; confidence is their plain mean."""
    return TextValidationResult(
        is_valid=format_validation.is_valid and completeness_check.is_valid,
        document_type=document_type,
        format_validation=format_validation,
        completeness_check=completeness_check,
        extracted_details=details,
        confidence=(format_validation.confidence + completeness_check.confidence) / 2,
        suggestions=build_suggestions(format_validation, completeness_check),
    )
