"""
Entity: Extracted Fields

Tagged variant of structured document fields, one class per DocumentType.
Each variant declares exactly which fields it may carry.
"""

from dataclasses import dataclass, field
from typing import ClassVar

from ekyc.core.entities.document import DocumentType

ID_NUMBER = "id_number"
FULL_NAME = "full_name"
SURNAME = "surname"
GIVEN_NAMES = "given_names"
DATE_OF_BIRTH = "date_of_birth"
ADDRESS = "address"
ISSUE_DATE = "issue_date"
EXPIRY_DATE = "expiry_date"
LICENSE_CLASS = "license_class"


@dataclass
class ExtractedFields:
    """Candidate field values recognized on one document capture."""
    values: dict[str, str] = field(default_factory=dict)
    confidence: float = 0.0           # OCR confidence, 0.0 to 1.0
    raw_text: str = ""

    DOCUMENT_TYPE: ClassVar[DocumentType]
    REQUIRED_FIELDS: ClassVar[tuple[str, ...]] = (ID_NUMBER, FULL_NAME, DATE_OF_BIRTH)
    OPTIONAL_FIELDS: ClassVar[tuple[str, ...]] = ()

    def __post_init__(self):
        allowed = self.allowed_fields()
        unknown = set(self.values) - allowed
        if unknown:
            raise ValueError(
                f"{type(self).__name__} does not declare fields: {', '.join(sorted(unknown))}"
            )

    @classmethod
    def allowed_fields(cls) -> set[str]:
        return set(cls.REQUIRED_FIELDS) | set(cls.OPTIONAL_FIELDS)

    @property
    def document_type(self) -> DocumentType:
        return self.DOCUMENT_TYPE

    def get(self, name: str) -> str | None:
        return self.values.get(name)

    def missing_required(self) -> list[str]:
        return [name for name in self.REQUIRED_FIELDS if not self.values.get(name)]

    def to_dict(self) -> dict:
        return {
            "document_type": self.DOCUMENT_TYPE.value,
            "values": dict(self.values),
            "confidence": self.confidence,
            "raw_text": self.raw_text,
        }


@dataclass
class IdCardFields(ExtractedFields):
    DOCUMENT_TYPE: ClassVar[DocumentType] = DocumentType.ID_CARD
    OPTIONAL_FIELDS: ClassVar[tuple[str, ...]] = (ADDRESS, ISSUE_DATE, EXPIRY_DATE)


@dataclass
class PassportFields(ExtractedFields):
    DOCUMENT_TYPE: ClassVar[DocumentType] = DocumentType.PASSPORT
    OPTIONAL_FIELDS: ClassVar[tuple[str, ...]] = (SURNAME, GIVEN_NAMES, ISSUE_DATE, EXPIRY_DATE)


@dataclass
class DriverLicenseFields(ExtractedFields):
    DOCUMENT_TYPE: ClassVar[DocumentType] = DocumentType.DRIVER_LICENSE
    OPTIONAL_FIELDS: ClassVar[tuple[str, ...]] = (ADDRESS, ISSUE_DATE, EXPIRY_DATE, LICENSE_CLASS)


@dataclass
class QRPayload(ExtractedFields):
    """Raw decoded QR string; the only payload of a QR session."""
    DOCUMENT_TYPE: ClassVar[DocumentType] = DocumentType.QR_CODE
    REQUIRED_FIELDS: ClassVar[tuple[str, ...]] = ()
    OPTIONAL_FIELDS: ClassVar[tuple[str, ...]] = ()

    @property
    def payload(self) -> str:
        return self.raw_text


FIELD_VARIANTS: dict[DocumentType, type[ExtractedFields]] = {
    DocumentType.ID_CARD: IdCardFields,
    DocumentType.PASSPORT: PassportFields,
    DocumentType.DRIVER_LICENSE: DriverLicenseFields,
    DocumentType.QR_CODE: QRPayload,
}


def fields_for(
    document_type: DocumentType,
    values: dict[str, str] | None = None,
    confidence: float = 0.0,
    raw_text: str = "",
) -> ExtractedFields:
    """Build the variant matching a document type."""
    variant = FIELD_VARIANTS[DocumentType(document_type)]
    return variant(values=dict(values or {}), confidence=confidence, raw_text=raw_text)


def fields_from_dict(data: dict) -> ExtractedFields:
    return fields_for(
        DocumentType(data["document_type"]),
        values=data.get("values") or {},
        confidence=float(data.get("confidence", 0.0)),
        raw_text=data.get("raw_text", ""),
    )
