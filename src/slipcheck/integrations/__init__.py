"""Slipcheck integrations module."""

from slipcheck.integrations.einvoice import (
    EInvoiceClient,
    EInvoiceLookupError,
    InvoiceNotFoundError,
    LookupAuthError,
    LookupResponseError,
    LookupTimeoutError,
)
from slipcheck.integrations.ocr import OCREngine

__all__ = [
    "EInvoiceClient",
    "EInvoiceLookupError",
    "InvoiceNotFoundError",
    "LookupAuthError",
    "LookupResponseError",
    "LookupTimeoutError",
    "OCREngine",
]
