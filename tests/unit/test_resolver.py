"""Unit tests for the resolution orchestrator."""

import asyncio
from datetime import date
from unittest.mock import AsyncMock

import pytest

from slipcheck.integrations.einvoice import InvoiceNotFoundError, LookupAuthError
from slipcheck.models import (
    AuthoritativeInvoice,
    DataSource,
    DocumentType,
    LineItem,
    RecognizedText,
    ScannedDocument,
    VerificationStatus,
)
from slipcheck.resolver import (
    ResolutionOrchestrator,
    UnrecognizedDocumentError,
    join_recognized_text,
    resolve_many,
    run_text_pipeline,
)

pytestmark = pytest.mark.unit

PAYLOAD = "12A12345678||AB12||20250115||150000||12345678||/ABC1234||0"
RECEIPT_TEXT = "小明咖啡店\n收據\n日期: 2025/03/02\n拿鐵 2 80\n合計: 160\n信用卡"


@pytest.fixture
def authoritative_invoice():
    return AuthoritativeInvoice(
        invoice_number="12A12345678",
        issue_date=date(2025, 1, 15),
        seller_name="全家便利商店",
        seller_id="12345678",
        amount=1500.0,
        tax_amount=71.428571,
        line_items=[LineItem(name="咖啡", quantity=1, unit_price=1500, amount=1500)],
    )


@pytest.fixture
def progress():
    events = []

    def on_progress(state, message):
        events.append(state)

    on_progress.events = events
    return on_progress


class SlowLookup:
    """Lookup that never answers in time."""

    async def query_invoice_detail(self, invoice_number, random_code, issue_date=None):
        await asyncio.sleep(10)


class TestJoinRecognizedText:
    def test_keeps_detection_order_above_threshold(self):
        candidates = [
            RecognizedText(text="first", confidence=0.9),
            RecognizedText(text="noise", confidence=0.5),
            RecognizedText(text="second", confidence=0.51),
        ]
        assert join_recognized_text(candidates) == "first\nsecond"

    def test_empty(self):
        assert join_recognized_text([]) == ""


class TestCodePath:
    """Documents with a parseable code payload."""

    @pytest.mark.asyncio
    async def test_code_without_lookup(self, progress):
        orchestrator = ResolutionOrchestrator(on_progress=progress)
        record = await orchestrator.resolve([PAYLOAD])

        assert record.data_source is DataSource.CODE
        assert record.verification_status is VerificationStatus.UNVERIFIED
        assert record.confidence == 0.95
        assert record.merchant == "店家（統編: 12345678）"
        assert record.amount == 1500.0
        assert record.total == 1500.0
        assert record.tax == 71.43
        assert record.date == "2025/01/15"
        assert record.issue_date == date(2025, 1, 15)
        assert record.document_number == "12A12345678"
        assert record.random_code == "AB12"
        assert record.payment_method == "未知"
        assert record.notes == "從 QR Code 掃描取得"
        assert progress.events == ["start", "try_code", "code_resolved"]

    @pytest.mark.asyncio
    async def test_code_without_seller_id(self):
        orchestrator = ResolutionOrchestrator()
        record = await orchestrator.resolve(["12A12345678||AB12||20250115||10500"])

        assert record.merchant == "未知店家"
        assert record.tax == 5.0

    @pytest.mark.asyncio
    async def test_first_parseable_payload_wins(self):
        orchestrator = ResolutionOrchestrator()
        record = await orchestrator.resolve(
            [
                "https://example.com/not-an-invoice",
                "34B87654321||CD34||20250201||20000",
                PAYLOAD,
            ]
        )
        assert record.document_number == "34B87654321"

    @pytest.mark.asyncio
    async def test_code_wins_over_text(self):
        orchestrator = ResolutionOrchestrator()
        record = await orchestrator.resolve(
            [PAYLOAD], [RecognizedText(text=RECEIPT_TEXT, confidence=0.99)]
        )
        assert record.data_source is DataSource.CODE

    @pytest.mark.asyncio
    async def test_verified_lookup(self, authoritative_invoice, progress):
        lookup = AsyncMock()
        lookup.query_invoice_detail.return_value = authoritative_invoice
        orchestrator = ResolutionOrchestrator(lookup=lookup, on_progress=progress)

        record = await orchestrator.resolve([PAYLOAD])

        lookup.query_invoice_detail.assert_awaited_once_with(
            "12A12345678", "AB12", issue_date=date(2025, 1, 15)
        )
        assert record.data_source is DataSource.REMOTE_VERIFIED
        assert record.verification_status is VerificationStatus.VERIFIED
        assert record.confidence == 1.0
        assert record.merchant == "全家便利商店"
        assert record.category == "購物"
        assert record.tax == 71.43
        assert record.random_code == "AB12"
        assert len(record.line_items) == 1
        assert record.notes == "從國稅局 API 驗證取得"
        assert progress.events == ["start", "try_code", "code_verifying", "code_verified"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            InvoiceNotFoundError("not found"),
            LookupAuthError("bad app id"),
            RuntimeError("boom"),
        ],
    )
    async def test_failed_lookup_falls_back_to_code(self, error, progress):
        lookup = AsyncMock()
        lookup.query_invoice_detail.side_effect = error
        orchestrator = ResolutionOrchestrator(lookup=lookup, on_progress=progress)

        record = await orchestrator.resolve([PAYLOAD])

        assert record.data_source is DataSource.CODE
        assert record.verification_status is VerificationStatus.UNVERIFIED
        assert record.confidence == 0.95
        assert progress.events[-1] == "code_resolved"

    @pytest.mark.asyncio
    async def test_lookup_timeout_falls_back_to_code(self):
        orchestrator = ResolutionOrchestrator(lookup=SlowLookup(), lookup_timeout=0.05)

        record = await asyncio.wait_for(orchestrator.resolve([PAYLOAD]), timeout=2)

        assert record.data_source is DataSource.CODE
        assert record.verification_status is VerificationStatus.UNVERIFIED

    @pytest.mark.asyncio
    async def test_cancel_abandons_lookup(self):
        orchestrator = ResolutionOrchestrator(lookup=SlowLookup(), lookup_timeout=None)
        cancel = asyncio.Event()
        cancel.set()

        record = await asyncio.wait_for(
            orchestrator.resolve([PAYLOAD], cancel=cancel), timeout=2
        )

        assert record.data_source is DataSource.CODE


class TestTextPath:
    """Documents without a parseable code."""

    @pytest.mark.asyncio
    async def test_receipt_text(self, progress):
        orchestrator = ResolutionOrchestrator(on_progress=progress)
        record = await orchestrator.resolve(
            ["garbage"], [RecognizedText(text=RECEIPT_TEXT, confidence=0.98)]
        )

        assert record.data_source is DataSource.RECOGNIZED_TEXT
        assert record.verification_status is VerificationStatus.UNVERIFIED
        assert record.document_type is DocumentType.RECEIPT
        assert record.merchant == "小明咖啡店"
        assert record.category == "餐飲"
        assert record.total == 160.0
        assert record.date == "2025/03/02"
        assert record.payment_method == "信用卡"
        assert [item.name for item in record.line_items] == ["拿鐵"]
        assert record.confidence == 1.0
        assert record.issues == []
        assert record.notes == "從文字辨識取得"
        assert progress.events == ["start", "fallback_text", "text_resolved"]

    @pytest.mark.asyncio
    async def test_degraded_text_reports_issues(self):
        orchestrator = ResolutionOrchestrator()
        record = await orchestrator.resolve(
            recognized_text=[RecognizedText(text="謝謝光臨", confidence=0.9)]
        )

        assert record.document_type is DocumentType.RECEIPT
        assert record.total is None
        assert record.date is None
        # format 0.4, completeness 0.2
        assert record.confidence == pytest.approx(0.3)
        assert record.issues == [
            "未找到金額資訊",
            "未找到日期資訊",
            "缺少總金額",
            "缺少發票日期",
            "缺少商品明細",
        ]
        assert record.suggestions

    @pytest.mark.asyncio
    async def test_confidence_is_mean_of_checks(self):
        result = await run_text_pipeline(RECEIPT_TEXT)

        assert result.confidence == pytest.approx(
            (result.format_validation.confidence + result.completeness_check.confidence) / 2
        )

    @pytest.mark.asyncio
    async def test_low_confidence_text_is_ignored(self):
        orchestrator = ResolutionOrchestrator()
        with pytest.raises(UnrecognizedDocumentError):
            await orchestrator.resolve(
                recognized_text=[RecognizedText(text=RECEIPT_TEXT, confidence=0.3)]
            )

    @pytest.mark.asyncio
    async def test_nothing_usable(self):
        orchestrator = ResolutionOrchestrator()
        with pytest.raises(UnrecognizedDocumentError, match="please retry"):
            await orchestrator.resolve(["not a payload"], [])


class TestResolveMany:
    @pytest.mark.asyncio
    async def test_outcomes_in_input_order(self):
        orchestrator = ResolutionOrchestrator()
        documents = [
            ScannedDocument(source="code.jpg", payloads=[PAYLOAD]),
            ScannedDocument(source="blank.jpg"),
            ScannedDocument(
                source="text.jpg",
                recognized_text=[RecognizedText(text=RECEIPT_TEXT, confidence=0.9)],
            ),
        ]

        outcomes = await resolve_many(orchestrator, documents)

        assert [outcome.source for outcome in outcomes] == ["code.jpg", "blank.jpg", "text.jpg"]
        assert outcomes[0].record.data_source is DataSource.CODE
        assert not outcomes[1].success
        assert "please retry" in outcomes[1].error
        assert outcomes[2].record.data_source is DataSource.RECOGNIZED_TEXT

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        assert await resolve_many(ResolutionOrchestrator(), []) == []
