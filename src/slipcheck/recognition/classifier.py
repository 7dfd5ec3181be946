"""Keyword classification of recognised text into a DocumentType."""

from slipcheck.models import DEFAULT_CATEGORY, DocumentType

UNIFORM_INVOICE_TERMS = ("統一發票", "電子發票")
E_CARRIER_TERMS = ("電子發票", "載具")
RECEIPT_TERMS = ("收據", "receipt")
INVOICE_TERMS = ("invoice", "tax")


def _contains_any(text: str, terms: tuple[str, ...]) -> bool:
    return any(term in text for term in terms)


def classify_document(text: str) -> DocumentType:
    """
    Assign a document type to recognised text.

    Rules are checked in order and the first match wins. Uniform-invoice
    markers must be checked before the receipt and invoice terms, which
    commonly appear on uniform invoices too. Falls back to RECEIPT.
    """
    lowered = text.lower()

    if _contains_any(lowered, UNIFORM_INVOICE_TERMS):
        if _contains_any(lowered, E_CARRIER_TERMS):
            return DocumentType.ELECTRONIC_INVOICE
        return DocumentType.TRADITIONAL_INVOICE

    if _contains_any(lowered, RECEIPT_TERMS):
        return DocumentType.RECEIPT

    if _contains_any(lowered, INVOICE_TERMS):
        return DocumentType.INTERNATIONAL_INVOICE

    return DocumentType.RECEIPT


# (category, merchant name terms), first match wins
MERCHANT_CATEGORIES = [
    ("購物", ("超商", "7-11", "全家", "萊爾富", "ok")),
    ("餐飲", ("餐廳", "咖啡", "tea")),
    ("交通", ("加油站", "gas")),
    ("醫療", ("藥局", "醫院", "診所")),
]


def categorize_merchant(merchant_name: str) -> str:
    """Guess a spending category from the merchant name."""
    lowered = merchant_name.lower()
    for category, terms in MERCHANT_CATEGORIES:
        if _contains_any(lowered, terms):
            return category
    return DEFAULT_CATEGORY
