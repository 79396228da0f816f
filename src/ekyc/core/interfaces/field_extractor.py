"""
Contract: Field Extractor

Turns recognized text into the structured field variant of a document
type. Missing fields are not errors at this stage.
"""

from abc import ABC, abstractmethod

from ekyc.core.entities.document import DocumentType
from ekyc.core.entities.extracted_fields import ExtractedFields


class IFieldExtractor(ABC):
    """Port: Field Extractor"""

    @abstractmethod
    def extract(self, raw_text: str, document_type: DocumentType, confidence: float = 0.0) -> ExtractedFields:
        """
        Extract structured fields.

        Args:
            raw_text: Text returned by the OCR engine.
            document_type: Selects the pattern set.
            confidence: Upstream recognition confidence, copied unmodified.

        Returns:
            The ExtractedFields variant for document_type.
        """
        ...
