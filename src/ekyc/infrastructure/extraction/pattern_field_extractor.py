"""
Adapter: Pattern Field Extractor.

Label-anchored regular expressions over recognized text, one ordered rule
set per document type. Labels are bilingual (Vietnamese / English), as
printed on Vietnamese citizen ID cards, passports and driver licenses.
"""

import logging
import re
import unicodedata
from dataclasses import dataclass
from datetime import date

from ekyc.core.entities.document import DocumentType
from ekyc.core.entities.extracted_fields import (
    ADDRESS,
    DATE_OF_BIRTH,
    EXPIRY_DATE,
    FULL_NAME,
    GIVEN_NAMES,
    ID_NUMBER,
    ISSUE_DATE,
    LICENSE_CLASS,
    SURNAME,
    ExtractedFields,
    QRPayload,
    fields_for,
)
from ekyc.core.interfaces.field_extractor import IFieldExtractor

logger = logging.getLogger(__name__)

# ─── Value patterns ─────────────────────────────────────────

_DATE = r"(\d{1,2}\s*[/\-.]\s*\d{1,2}\s*[/\-.]\s*\d{4}|\d{8})"
_NUMERIC_ID = r"(\d(?:[ .]?\d){11})(?!\d)"
_PASSPORT_ID = r"([A-Za-z0-9]{8,9})(?![A-Za-z0-9])"
_LINE = r"([^\n]+)"

# Post-processing kinds
NUMERIC_ID = "numeric_id"
PASSPORT_ID = "passport_id"
NAME = "name"
DATE = "date"
FUTURE_DATE = "future_date"
TEXT = "text"
CLASS = "license_class"


@dataclass(frozen=True)
class FieldRule:
    """One named pattern that may fill one field."""
    name: str
    field: str
    pattern: re.Pattern
    kind: str


def _label(vietnamese: list[str], english: list[str]) -> str:
    """Bilingual label: 'Vi', 'Vi / En' or 'En', followed by an optional colon."""
    vi = "|".join(vietnamese)
    en = "|".join(english)
    return rf"(?<!\w)(?:(?:{vi})(?:\s*/\s*(?:{en}))?|(?:{en}))\s*[:.]*\s*"


def _rule(name: str, field: str, vietnamese: list[str], english: list[str], value: str, kind: str) -> FieldRule:
    pattern = re.compile(_label(vietnamese, english) + value, re.IGNORECASE)
    return FieldRule(name=name, field=field, pattern=pattern, kind=kind)


_ID_CARD_RULES = [
    _rule("id_card.number", ID_NUMBER, ["Số định danh cá nhân", "Số"], ["Personal identification number", "No"], _NUMERIC_ID, NUMERIC_ID),
    FieldRule("id_card.number_bare", ID_NUMBER, re.compile(r"(?<!\d)(\d{12})(?!\d)"), NUMERIC_ID),
    _rule("id_card.name", FULL_NAME, ["Họ, chữ đệm và tên", "Họ và tên"], ["Full name"], _LINE, NAME),
    _rule("id_card.dob", DATE_OF_BIRTH, ["Ngày, tháng, năm sinh", "Ngày sinh"], ["Date of birth"], _DATE, DATE),
    _rule("id_card.address", ADDRESS, ["Nơi thường trú", "Nơi cư trú"], ["Place of residence", "Address"], _LINE, TEXT),
    _rule("id_card.issue", ISSUE_DATE, ["Ngày, tháng, năm cấp", "Ngày cấp"], ["Date of issue"], _DATE, DATE),
    _rule("id_card.expiry", EXPIRY_DATE, ["Có giá trị đến", "Ngày hết hạn"], ["Date of expiry", "Valid until"], _DATE, FUTURE_DATE),
]

_PASSPORT_RULES = [
    _rule("passport.number", ID_NUMBER, ["Số hộ chiếu"], ["Passport No", "Passport number"], _PASSPORT_ID, PASSPORT_ID),
    _rule("passport.surname", SURNAME, ["Họ"], ["Surname"], _LINE, NAME),
    _rule("passport.given_names", GIVEN_NAMES, ["Chữ đệm và tên", "Tên"], ["Given names", "Given name"], _LINE, NAME),
    _rule("passport.dob", DATE_OF_BIRTH, ["Ngày sinh"], ["Date of birth"], _DATE, DATE),
    _rule("passport.issue", ISSUE_DATE, ["Ngày cấp"], ["Date of issue"], _DATE, DATE),
    _rule("passport.expiry", EXPIRY_DATE, ["Có giá trị đến", "Ngày hết hạn"], ["Date of expiry"], _DATE, FUTURE_DATE),
]

_DRIVER_LICENSE_RULES = [
    _rule("driver_license.number", ID_NUMBER, ["Số"], ["No"], _NUMERIC_ID, NUMERIC_ID),
    _rule("driver_license.name", FULL_NAME, ["Họ và tên", "Họ tên"], ["Full name"], _LINE, NAME),
    _rule("driver_license.dob", DATE_OF_BIRTH, ["Ngày sinh"], ["Date of birth"], _DATE, DATE),
    _rule("driver_license.address", ADDRESS, ["Nơi cư trú"], ["Residence", "Address"], _LINE, TEXT),
    _rule("driver_license.class", LICENSE_CLASS, ["Hạng"], ["Class"], r"([A-Za-z0-9][A-Za-z0-9, ]*)", CLASS),
    _rule("driver_license.issue", ISSUE_DATE, ["Ngày cấp"], ["Date of issue"], _DATE, DATE),
    _rule("driver_license.expiry", EXPIRY_DATE, ["Có giá trị đến"], ["Valid until", "Expires"], _DATE, FUTURE_DATE),
]

RULE_SETS: dict[DocumentType, list[FieldRule]] = {
    DocumentType.ID_CARD: _ID_CARD_RULES,
    DocumentType.PASSPORT: _PASSPORT_RULES,
    DocumentType.DRIVER_LICENSE: _DRIVER_LICENSE_RULES,
}

# Any label of any rule: a captured line is cut where the next label starts.
_ANY_LABEL = re.compile(
    "|".join(
        rf"(?<!\w)(?:{label})(?!\w)"
        for label in [
            "Số định danh cá nhân", "Personal identification number",
            "Họ, chữ đệm và tên", "Họ và tên", "Full name",
            "Ngày, tháng, năm sinh", "Ngày sinh", "Date of birth",
            "Giới tính", "Sex", "Quốc tịch", "Nationality",
            "Quê quán", "Place of origin",
            "Nơi thường trú", "Nơi cư trú", "Place of residence",
            "Ngày, tháng, năm cấp", "Ngày cấp", "Date of issue",
            "Có giá trị đến", "Ngày hết hạn", "Date of expiry", "Valid until",
            "Hạng", "Class", "Passport No", "Surname", "Given names", "Chữ đệm và tên",
        ]
    ),
    re.IGNORECASE,
)


class PatternFieldExtractor(IFieldExtractor):
    """
    Ordered, first-match-wins extraction.

    For each field, rules are tried in declaration order; the first rule
    producing a plausible value claims the field and later rules for it
    are skipped. A field nobody matches is simply absent.
    """

    def __init__(self, today: date | None = None):
        self._today = today

    def extract(self, raw_text: str, document_type: DocumentType, confidence: float = 0.0) -> ExtractedFields:
        document_type = DocumentType(document_type)
        if document_type is DocumentType.QR_CODE:
            return QRPayload(raw_text=raw_text, confidence=confidence)

        text = unicodedata.normalize("NFC", raw_text or "")
        values: dict[str, str] = {}
        for rule in RULE_SETS[document_type]:
            if rule.field in values:
                continue
            for match in rule.pattern.finditer(text):
                value = self._post_process(match.group(1), rule.kind)
                if value:
                    values[rule.field] = value
                    logger.debug(f"{rule.name} → {rule.field}={value!r}")
                    break

        if document_type is DocumentType.PASSPORT:
            parts = [values.get(SURNAME), values.get(GIVEN_NAMES)]
            full = " ".join(p for p in parts if p)
            if full:
                values[FULL_NAME] = full

        logger.info(f"Extracted {len(values)} fields from {document_type.value}: {sorted(values)}")
        return fields_for(document_type, values=values, confidence=confidence, raw_text=raw_text)

    # ─── Post-processing ────────────────────────────────────

    def _post_process(self, value: str, kind: str) -> str | None:
        value = value.strip()
        if kind == NUMERIC_ID:
            digits = re.sub(r"\D", "", value)
            return digits if len(digits) == 12 else None
        if kind == PASSPORT_ID:
            cleaned = re.sub(r"[^A-Za-z0-9]", "", value).upper()
            return cleaned if 8 <= len(cleaned) <= 9 else None
        if kind == NAME:
            return clean_name(_cut_at_label(value))
        if kind in (DATE, FUTURE_DATE):
            return format_date(value, today=self._today, allow_future=kind == FUTURE_DATE)
        if kind == CLASS:
            first = re.split(r"[,\s]+", value.strip().upper())[0]
            return first or None
        if kind == TEXT:
            text = re.sub(r"\s+", " ", _cut_at_label(value)).strip(" ,;:")
            return text or None
        return value or None


def _cut_at_label(value: str) -> str:
    match = _ANY_LABEL.search(value)
    return value[: match.start()] if match else value


def clean_name(value: str) -> str | None:
    """Keep letters (Latin + Vietnamese diacritics) and spaces, upper-cased."""
    letters = "".join(ch if (ch.isalpha() or ch.isspace()) else " " for ch in value)
    name = re.sub(r"\s+", " ", letters).strip().upper()
    return name or None


def format_date(value: str, today: date | None = None, allow_future: bool = False) -> str | None:
    """
    Normalize to DD/MM/YYYY.

    Accepts separated (1/2/1990, 01-02-1990) or compact (01021990) forms.
    Day must be 1-31, month 1-12, year 1900 to the current year (or up
    to 100 years ahead for expiry dates). Calendar validity is left to
    the rules engine.
    """
    parts = re.split(r"\s*[/\-.]\s*", value.strip())
    if len(parts) == 3 and all(p.isdigit() for p in parts):
        day, month, year = parts
    else:
        digits = re.sub(r"\D", "", value)
        if len(digits) != 8:
            return None
        day, month, year = digits[:2], digits[2:4], digits[4:]
    if len(year) != 4:
        return None

    d, m, y = int(day), int(month), int(year)
    current_year = (today or date.today()).year
    max_year = current_year + 100 if allow_future else current_year
    if not (1 <= d <= 31 and 1 <= m <= 12 and 1900 <= y <= max_year):
        return None
    return f"{d:02d}/{m:02d}/{y:04d}"
