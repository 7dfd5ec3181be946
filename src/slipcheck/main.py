import asyncio
import os
from pathlib import Path

import typer

# Disable gRPC fork support warnings raised when the Vision client is used
# from thread pools.
os.environ.setdefault("GRPC_ENABLE_FORK_SUPPORT", "0")

from slipcheck.config import Settings, get_settings
from slipcheck.integrations.einvoice import EInvoiceClient
from slipcheck.integrations.ocr import OCREngine
from slipcheck.logging_utils import configure_logging
from slipcheck.models import RecognizedText, ResolutionOutcome, ScannedDocument
from slipcheck.resolver import (
    ResolutionOrchestrator,
    UnrecognizedDocumentError,
    resolve_many,
)
from slipcheck.utils.payload_parser import PayloadParseError, parse_payload, try_parse_payload

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png"}

app = typer.Typer(no_args_is_help=True)


@app.callback(invoke_without_command=True)
def callback(
    ctx: typer.Context,
    log_level: str | None = typer.Option(
        None, "--log-level", help="Logging level (DEBUG/INFO/WARNING/ERROR)"
    ),
):
    """Slipcheck: resolve scanned invoices and receipts."""
    settings = get_settings()
    configure_logging(
        log_level or settings.log_level,
        settings.log_format,
        secrets=[settings.einvoice_app_id],
    )
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


def cli_progress(event_type: str, message: str) -> None:
    """Echo progress events to stderr so stdout stays machine readable."""
    typer.echo(f"[{event_type}] {message}", err=True)


def build_orchestrator(settings: Settings, verbose: bool) -> ResolutionOrchestrator:
    lookup = None
    if settings.lookup_enabled:
        lookup = EInvoiceClient(
            app_id=settings.einvoice_app_id,  # type: ignore[arg-type]
            base_url=settings.einvoice_base_url,
            timeout=settings.einvoice_timeout,
        )
    return ResolutionOrchestrator(
        lookup=lookup,
        lookup_timeout=settings.einvoice_timeout,
        min_text_confidence=settings.min_text_confidence,
        on_progress=cli_progress if verbose else None,
    )


async def _close_lookup(orchestrator: ResolutionOrchestrator) -> None:
    if isinstance(orchestrator.lookup, EInvoiceClient):
        await orchestrator.lookup.aclose()


def _init_ocr_engine() -> OCREngine:
    try:
        ocr_engine = OCREngine()
        # Eagerly initialize the Vision API client in the main thread
        _ = ocr_engine.client
    except Exception as e:
        typer.echo(f"Failed to initialize OCR engine: {e}", err=True)
        raise typer.Exit(code=1) from e
    return ocr_engine


@app.command()
def parse(
    payload: str = typer.Argument(..., help="E-invoice code payload"),
    lenient: bool = typer.Option(
        False, "--lenient", help="Also accept single '|' delimiters"
    ),
):
    """Decode one e-invoice code payload."""
    if lenient:
        record = try_parse_payload(payload)
        if record is None:
            typer.echo("Error: payload could not be decoded", err=True)
            raise typer.Exit(code=1)
    else:
        try:
            record = parse_payload(payload)
        except PayloadParseError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(code=1) from e

    typer.echo(record.model_dump_json(indent=2))


@app.command()
def resolve(
    image: Path | None = typer.Argument(
        None, help="Invoice or receipt image to recognise with Google Vision"
    ),
    payloads: list[str] = typer.Option(
        [], "--payload", "-p", help="Scanned code payload (repeatable, detection order)"
    ),
    text_file: Path | None = typer.Option(
        None, "--text-file", "-t", help="Already recognised text to use instead of OCR"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Report progress"),
):
    """Resolve one document into a confidence-scored record."""
    settings = get_settings()
    recognized: list[RecognizedText] = []

    if text_file is not None:
        try:
            recognized.append(
                RecognizedText(text=text_file.read_text(encoding="utf-8"), confidence=1.0)
            )
        except OSError as e:
            typer.echo(f"Error reading {text_file}: {e}", err=True)
            raise typer.Exit(code=1) from e
    elif image is not None:
        ocr_engine = _init_ocr_engine()
        try:
            recognized = ocr_engine.recognize(str(image))
        except Exception as e:
            typer.echo(f"Failed to recognise text in {image}: {e}", err=True)
            raise typer.Exit(code=1) from e

    orchestrator = build_orchestrator(settings, verbose)

    async def execute():
        try:
            return await orchestrator.resolve(payloads, recognized)
        finally:
            await _close_lookup(orchestrator)

    try:
        record = asyncio.run(execute())
    except UnrecognizedDocumentError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e

    typer.echo(record.model_dump_json(indent=2))


async def run_batch(
    images: list[Path],
    ocr_engine: OCREngine,
    orchestrator: ResolutionOrchestrator,
) -> list[ResolutionOutcome]:
    """Recognise every image in parallel, then resolve them independently."""
    loop = asyncio.get_running_loop()

    async def scan(image: Path) -> ScannedDocument | ResolutionOutcome:
        try:
            recognized = await loop.run_in_executor(None, ocr_engine.recognize, str(image))
        except Exception as e:
            return ResolutionOutcome(source=image.name, error=f"OCR failed: {e}")
        return ScannedDocument(source=image.name, recognized_text=recognized)

    scanned = await asyncio.gather(*(scan(image) for image in images))
    documents = [item for item in scanned if isinstance(item, ScannedDocument)]
    resolved = iter(await resolve_many(orchestrator, documents))

    return [
        item if isinstance(item, ResolutionOutcome) else next(resolved)
        for item in scanned
    ]


@app.command()
def batch(
    folder: Path = typer.Argument(..., help="Directory of invoice images"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Report progress"),
):
    """Resolve every image in a directory, one JSON line per image."""
    if not folder.is_dir():
        typer.echo(f"Error: {folder} is not a directory", err=True)
        raise typer.Exit(code=1)

    images = sorted(p for p in folder.iterdir() if p.suffix.lower() in IMAGE_SUFFIXES)
    if not images:
        typer.echo("No supported images found in folder.")
        return

    settings = get_settings()
    ocr_engine = _init_ocr_engine()
    orchestrator = build_orchestrator(settings, verbose)

    async def execute():
        try:
            return await run_batch(images, ocr_engine, orchestrator)
        finally:
            await _close_lookup(orchestrator)

    outcomes = asyncio.run(execute())
    for outcome in outcomes:
        if outcome.success:
            typer.echo(outcome.model_dump_json())
        else:
            typer.echo(f"Failed to resolve {outcome.source}: {outcome.error}", err=True)


def main():
    app()


if __name__ == "__main__":
    main()
