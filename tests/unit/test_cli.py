import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from slipcheck.config import Settings
from slipcheck.main import app
from slipcheck.models import RecognizedText
from tests.utils import clean_cli_output

pytestmark = pytest.mark.unit

runner = CliRunner()

PAYLOAD = "12A12345678||AB12||20250115||150000||12345678||/ABC1234||0"
RECEIPT_TEXT = "小明咖啡店\n收據\n日期: 2025/03/02\n拿鐵 2 80\n合計: 160\n信用卡"


def json_output(output: str) -> dict:
    """Decode the indented JSON document printed after any progress lines."""
    return json.loads(output[output.index("{") :])


def json_lines(output: str) -> list[dict]:
    return [json.loads(line) for line in output.splitlines() if line.startswith("{")]


@pytest.fixture(autouse=True)
def offline_settings():
    """Run every command without an app ID and without touching root logging."""
    with (
        patch("slipcheck.main.get_settings", return_value=Settings()),
        patch("slipcheck.main.configure_logging"),
    ):
        yield


@pytest.fixture
def mock_ocr_engine():
    with patch("slipcheck.main.OCREngine") as mock:
        yield mock


def test_commands_exist():
    """Verify that the parse, resolve and batch commands exist in the CLI."""
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    clean_stdout = clean_cli_output(result.stdout.lower())
    assert "parse" in clean_stdout
    assert "resolve" in clean_stdout
    assert "batch" in clean_stdout


class TestParseCommand:
    def test_parse_valid_payload(self):
        result = runner.invoke(app, ["parse", PAYLOAD])

        assert result.exit_code == 0
        data = json_output(result.stdout)
        assert data["document_number"] == "12A12345678"
        assert data["issue_date"] == "2025-01-15"
        assert data["seller_id"] == "12345678"
        assert float(data["total_amount"]) == 1500.0

    def test_parse_invalid_payload(self):
        result = runner.invoke(app, ["parse", "AB12345678||AB12||20250115||100"])

        assert result.exit_code == 1
        assert "無效的發票號碼格式" in result.output

    def test_single_pipe_needs_lenient(self):
        payload = "12A12345678|AB12|20250115|150000"

        strict = runner.invoke(app, ["parse", payload])
        lenient = runner.invoke(app, ["parse", "--lenient", payload])

        assert strict.exit_code == 1
        assert lenient.exit_code == 0
        assert json_output(lenient.stdout)["random_code"] == "AB12"

    def test_lenient_failure(self):
        result = runner.invoke(app, ["parse", "--lenient", "garbage"])

        assert result.exit_code == 1
        assert "could not be decoded" in result.output


class TestResolveCommand:
    def test_resolve_payload(self):
        result = runner.invoke(app, ["resolve", "--payload", PAYLOAD])

        assert result.exit_code == 0
        data = json_output(result.stdout)
        assert data["data_source"] == "code"
        assert data["verification_status"] == "unverified"
        assert data["merchant"] == "店家（統編: 12345678）"
        assert data["total"] == 1500.0

    def test_resolve_text_file(self, tmp_path):
        text_file = tmp_path / "receipt.txt"
        text_file.write_text(RECEIPT_TEXT, encoding="utf-8")

        result = runner.invoke(app, ["resolve", "--text-file", str(text_file)])

        assert result.exit_code == 0
        data = json_output(result.stdout)
        assert data["data_source"] == "recognized_text"
        assert data["document_type"] == "receipt"
        assert data["merchant"] == "小明咖啡店"
        assert data["total"] == 160.0

    def test_resolve_missing_text_file(self, tmp_path):
        result = runner.invoke(app, ["resolve", "-t", str(tmp_path / "missing.txt")])

        assert result.exit_code == 1
        assert "Error reading" in result.output

    def test_resolve_image(self, mock_ocr_engine, tmp_path):
        mock_ocr_engine.return_value.recognize.return_value = [
            RecognizedText(text=RECEIPT_TEXT, confidence=0.95)
        ]
        image = tmp_path / "receipt.jpg"
        image.write_bytes(b"fake image data")

        result = runner.invoke(app, ["resolve", str(image)])

        assert result.exit_code == 0
        mock_ocr_engine.return_value.recognize.assert_called_once_with(str(image))
        assert json_output(result.stdout)["merchant"] == "小明咖啡店"

    def test_resolve_nothing_recognised(self):
        result = runner.invoke(app, ["resolve", "-p", "garbage"])

        assert result.exit_code == 1
        assert "document not recognized" in result.output

    def test_resolve_verbose_reports_progress(self):
        result = runner.invoke(app, ["resolve", "-v", "-p", PAYLOAD])

        assert result.exit_code == 0
        assert "[start]" in result.output
        assert "[code_resolved]" in result.output


class TestBatchCommand:
    def test_batch_folder(self, mock_ocr_engine, tmp_path):
        for name in ("a.jpg", "b.png", "c.JPEG", "notes.txt"):
            (tmp_path / name).write_bytes(b"fake")

        def recognize(path):
            if path.endswith("b.png"):
                raise RuntimeError("Quota exceeded")
            if path.endswith("c.JPEG"):
                return []
            return [RecognizedText(text=RECEIPT_TEXT, confidence=0.9)]

        mock_ocr_engine.return_value.recognize.side_effect = recognize

        result = runner.invoke(app, ["batch", str(tmp_path)])

        assert result.exit_code == 0
        assert mock_ocr_engine.return_value.recognize.call_count == 3
        outcomes = json_lines(result.stdout)
        assert [outcome["source"] for outcome in outcomes] == ["a.jpg"]
        assert outcomes[0]["record"]["merchant"] == "小明咖啡店"
        clean_output = clean_cli_output(result.output)
        assert "Failedtoresolveb.png:OCRfailed:Quotaexceeded" in clean_output
        assert "Failedtoresolvec.JPEG" in clean_output

    def test_batch_empty_folder(self, mock_ocr_engine, tmp_path):
        result = runner.invoke(app, ["batch", str(tmp_path)])

        assert result.exit_code == 0
        assert "No supported images found" in result.output
        mock_ocr_engine.assert_not_called()

    def test_batch_requires_directory(self, tmp_path):
        result = runner.invoke(app, ["batch", str(tmp_path / "missing")])

        assert result.exit_code == 1
        assert "is not a directory" in result.output
