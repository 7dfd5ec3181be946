"""Rule-based recognition over free text: classify, extract, validate."""

from slipcheck.recognition.classifier import categorize_merchant, classify_document
from slipcheck.recognition.extractor import extract_details
from slipcheck.recognition.validation import check_completeness, validate_format

__all__ = [
    "categorize_merchant",
    "check_completeness",
    "classify_document",
    "extract_details",
    "validate_format",
]
