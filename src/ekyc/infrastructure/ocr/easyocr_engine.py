"""
EasyOCR Engine — Vietnamese + English document text.

The Reader is loaded lazily on first use (model download and load take
seconds) and reused afterwards, one Reader per language set.
"""

import logging
import threading

import cv2
import numpy as np

from ekyc.core.entities.document import CapturedImage
from ekyc.core.interfaces.ocr_engine import IOCREngine, OCRProgress, OCRResult, ProgressCallback

logger = logging.getLogger(__name__)


class EasyOCREngine(IOCREngine):
    """Full-page text recognition with EasyOCR."""

    def __init__(self, languages: list[str] | None = None, use_gpu: bool = False, model_dir: str | None = None):
        self.languages = list(languages or ["vi", "en"])
        self.use_gpu = use_gpu
        self.model_dir = model_dir
        self._readers: dict[tuple[str, ...], object] = {}
        self._lock = threading.Lock()

    def _get_reader(self, languages: tuple[str, ...]):
        with self._lock:
            reader = self._readers.get(languages)
            if reader is None:
                import easyocr
                logger.info(f"Loading EasyOCR reader for {list(languages)} (gpu={self.use_gpu})")
                kwargs = {"model_storage_directory": self.model_dir} if self.model_dir else {}
                reader = easyocr.Reader(list(languages), gpu=self.use_gpu, verbose=False, **kwargs)
                self._readers[languages] = reader
            return reader

    def recognize(
        self,
        image: CapturedImage,
        language_hints: list[str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> OCRResult:
        def progress(stage: str, fraction: float) -> None:
            if on_progress is not None:
                on_progress(OCRProgress(stage=stage, fraction=fraction))

        if image.is_empty:
            return OCRResult(text="", confidence=0.0, ocr_engine="EasyOCR")

        languages = tuple(language_hints or self.languages)
        progress("loading_models", 0.0)
        reader = self._get_reader(languages)

        progress("recognizing", 0.2)
        img = self._preprocess(image.pixels)
        results = reader.readtext(img, paragraph=False)
        progress("recognizing", 1.0)

        lines = []
        confidences = []
        # Top-to-bottom, then left-to-right, so label/value pairs stay adjacent.
        for box, text, conf in sorted(results, key=lambda r: (r[0][0][1], r[0][0][0])):
            text = text.strip()
            if not text:
                continue
            lines.append(text)
            confidences.append(float(conf))

        avg_conf = float(np.mean(confidences)) if confidences else 0.0
        logger.debug(f"EasyOCR: {len(lines)} blocks, avg confidence {avg_conf:.3f}")
        return OCRResult(
            text="\n".join(lines),
            confidence=round(avg_conf, 4),
            ocr_engine="EasyOCR",
            details={"blocks": len(lines), "languages": list(languages)},
        )

    @staticmethod
    def _preprocess(img: np.ndarray) -> np.ndarray:
        """Grayscale + CLAHE, which helps on laminated cards under glare."""
        gray = img if img.ndim == 2 else cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
        return clahe.apply(gray)
