"""
Contract: QR Decoder

Used only for qr_code sessions, which bypass extraction, validation of
document fields and liveness.
"""

from abc import ABC, abstractmethod

from ekyc.core.entities.document import CapturedImage


class IQRDecoder(ABC):
    """Port: QR Decoder"""

    @abstractmethod
    def decode(self, image: CapturedImage) -> str | None:
        """Return the decoded string, or None when no QR code is found."""
        ...
