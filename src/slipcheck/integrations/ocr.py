"""OCR Engine using Google Cloud Vision API for invoice text recognition."""

import threading
from pathlib import Path

from google.cloud import vision

from slipcheck.models import RecognizedText


def _block_text(block) -> str:
    """Rebuild the text of one Vision block, one line per paragraph."""
    paragraphs = []
    for paragraph in block.paragraphs:
        words = ["".join(symbol.text for symbol in word.symbols) for word in paragraph.words]
        paragraphs.append(" ".join(words))
    return "\n".join(paragraphs)


class OCREngine:
    """
    OCR Engine for recognising text on invoice and receipt images.

    Wraps Google Cloud Vision document text detection and returns the
    detected blocks in reading order, each with the engine's confidence.
    """

    def __init__(self, client: vision.ImageAnnotatorClient | None = None) -> None:
        """
        Initialize the OCR Engine.

        Args:
            client: Optional pre-configured ImageAnnotatorClient.
                   If None, a default client will be created lazily on first use.
        """
        self._client = client
        self._client_initialized = client is not None
        self._client_lock = threading.Lock()

    @property
    def client(self) -> vision.ImageAnnotatorClient:
        """Lazily initialize and return the Vision API client.

        Uses double-check locking for thread-safe lazy initialization.
        """
        if not self._client_initialized:
            with self._client_lock:
                if not self._client_initialized:
                    self._client = vision.ImageAnnotatorClient()
                    self._client_initialized = True
        return self._client  # type: ignore[return-value]

    def _load_image(self, image_path: str) -> vision.Image:
        path = Path(image_path)
        if not path.exists() or not path.is_file():
            raise FileNotFoundError(f"Image file not found: {image_path}")

        with path.open("rb") as image_file:
            content = image_file.read()

        return vision.Image(content=content)  # type: ignore

    def recognize(self, image_path: str) -> list[RecognizedText]:
        """
        Recognise text blocks on an image.

        Args:
            image_path: Path to the image file to process.

        Returns:
            RecognizedText candidates in detection order. Empty if no text
            is found.

        Raises:
            FileNotFoundError: If the image file does not exist.
            google.api_core.exceptions.GoogleAPIError: If the API call fails.
        """
        image = self._load_image(image_path)
        response = self.client.document_text_detection(image=image)  # type: ignore

        candidates = []
        for page in response.full_text_annotation.pages:
            for block in page.blocks:
                text = _block_text(block)
                if text:
                    candidates.append(
                        RecognizedText(text=text, confidence=block.confidence)
                    )
        return candidates
