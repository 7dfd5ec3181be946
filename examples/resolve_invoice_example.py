"""Example usage of the resolution orchestrator.

Resolves one scanned code payload and one piece of recognised text. Set
EINVOICE_APP_ID to have the code verified against the e-invoice platform.
"""

import asyncio
import os

from slipcheck.integrations import EInvoiceClient
from slipcheck.models import RecognizedText
from slipcheck.resolver import ResolutionOrchestrator


def print_progress(state: str, message: str) -> None:
    print(f"[{state}] {message}")


async def main():
    app_id = os.getenv("EINVOICE_APP_ID")
    lookup = EInvoiceClient(app_id=app_id) if app_id else None
    orchestrator = ResolutionOrchestrator(lookup=lookup, on_progress=print_progress)

    # Left-hand code on an e-invoice proof
    payload = "12A12345678||4076||20251102||19000||12345678||0"

    # Sample OCR text from a receipt without a code
    ocr_text = """早安美芝城 Breakfast & Brunch
電子發票證明聯
發票號碼: 12A12345678
2025-11-02 09:31:43
統一編號: 12345678
總計: 190
現金"""

    try:
        record = await orchestrator.resolve([payload])
        print(f"Merchant: {record.merchant}")
        print(f"Date: {record.date}")
        print(f"Total: {record.total} {record.currency}")
        print(f"Source: {record.data_source.value} ({record.verification_status.value})")
        print(f"Confidence: {record.confidence:.2f}")

        record = await orchestrator.resolve(
            recognized_text=[RecognizedText(text=ocr_text, confidence=0.9)]
        )
        print(f"\nMerchant: {record.merchant}")
        print(f"Type: {record.document_type.display_name}")
        print(f"Total: {record.total} {record.currency}")
        print(f"Confidence: {record.confidence:.2f}")
        for issue in record.issues:
            print(f"  - {issue}")
    finally:
        if lookup is not None:
            await lookup.aclose()


if __name__ == "__main__":
    asyncio.run(main())
