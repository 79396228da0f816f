"""
Contract: OCR Engine

Recognizes raw text on document images. Any engine (EasyOCR, Tesseract,
external API) must implement this contract. Field parsing is NOT the
engine's job — see the Field Extractor.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable

from ekyc.core.entities.document import CapturedImage


@dataclass
class OCRResult:
    """Raw recognition output."""
    text: str                     # recognized text, one line per detected block
    confidence: float             # 0.0 to 1.0
    ocr_engine: str = ""
    details: dict = field(default_factory=dict)


@dataclass
class OCRProgress:
    """Progress event, for UI feedback only (never drives control flow)."""
    stage: str                    # e.g. "loading_models", "recognizing"
    fraction: float               # 0.0 to 1.0


ProgressCallback = Callable[[OCRProgress], None]


class IOCREngine(ABC):
    """
    Port: OCR Engine

    Blocking call; the use case runs it off the event loop.
    """

    @abstractmethod
    def recognize(
        self,
        image: CapturedImage,
        language_hints: list[str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> OCRResult:
        """
        Recognize text on an image.

        Args:
            image: Document image.
            language_hints: Language codes (e.g. ["vi", "en"]).
            on_progress: Optional progress listener.

        Returns:
            OCRResult with text and overall confidence.
        """
        ...
