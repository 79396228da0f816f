"""
Adapter: Vietnamese Document Rules Engine.

Deterministic rules for citizen ID cards (CCCD), passports and driver
licenses. Every rule is a small method returning a violation, a list of
violations or None, so rules are easy to add, remove and test.
"""

import re
from datetime import date
from typing import Callable
from urllib.parse import urlparse

from ekyc.core.entities.document import DocumentType
from ekyc.core.entities.extracted_fields import (
    DATE_OF_BIRTH,
    EXPIRY_DATE,
    FULL_NAME,
    ID_NUMBER,
    ISSUE_DATE,
    LICENSE_CLASS,
    ExtractedFields,
)
from ekyc.core.interfaces.face_matcher import FaceMatchResult
from ekyc.core.interfaces.rules_engine import (
    ERROR,
    WARNING,
    IRulesEngine,
    RuleViolation,
    ValidationResult,
)

DATE_FORMAT = re.compile(r"^(0[1-9]|[12][0-9]|3[01])/(0[1-9]|1[0-2])/\d{4}$")
LICENSE_CLASS_FORMAT = re.compile(r"^[A-E][0-9]?$")

ID_FORMATS = {
    DocumentType.ID_CARD: re.compile(r"^[0-9]{12}$"),
    DocumentType.DRIVER_LICENSE: re.compile(r"^[0-9]{12}$"),
    DocumentType.PASSPORT: re.compile(r"^[A-Z][0-9]{7,8}$"),
}

DATE_LABELS = {
    DATE_OF_BIRTH: "date of birth",
    ISSUE_DATE: "issue date",
    EXPIRY_DATE: "expiry date",
}


def parse_date(value: str) -> date | None:
    """Parse DD/MM/YYYY into a real calendar date (29/02/2001 → None)."""
    match = re.match(r"^(\d{2})/(\d{2})/(\d{4})$", value or "")
    if not match:
        return None
    day, month, year = (int(g) for g in match.groups())
    try:
        return date(year, month, day)
    except ValueError:
        return None


def id_checksum_ok(id_number: str) -> bool:
    """
    Weighted mod-11 check of a 12-digit citizen ID.

    Sum of d[i] * (i + 1) over the first 11 digits, mod 11 (10 counts as
    0), must equal the last digit.
    """
    if len(id_number) != 12 or not id_number.isdigit():
        return False
    digits = [int(c) for c in id_number]
    check = sum(d * (i + 1) for i, d in enumerate(digits[:11])) % 11
    if check == 10:
        check = 0
    return check == digits[11]


def _violation(rule_id: str, severity: str, detail: str) -> RuleViolation:
    return RuleViolation(rule_id=rule_id, severity=severity, detail=detail)


class DocumentRulesEngine(IRulesEngine):
    """
    Rules engine for Vietnamese identity documents.

    Implemented rules:
        1. Required fields — id number, full name, date of birth
        2. ID number — per-type format, CCCD checksum (warning)
        3. Name — charset and length
        4. Dates — format, calendar validity, temporal plausibility
        5. Cross-field — age at issue, expiry after issue
        6. Driver license class
        7. OCR confidence — minimum average
        8. QR payload — length, CCCD pipe format, URL
    """

    RULES_VERSION = "1.0.0"

    def __init__(
        self,
        min_ocr_confidence: float = 0.5,
        face_match_threshold: float = 0.6,
        face_min_confidence: float = 0.5,
        today: Callable[[], date] | None = None,
        rules_version: str | None = None,
    ):
        self._min_ocr_confidence = min_ocr_confidence
        self._face_threshold = face_match_threshold
        self._face_min_confidence = face_min_confidence
        self._today = today or date.today
        self._rules_version = rules_version or self.RULES_VERSION

    def validate(self, fields: ExtractedFields, document_type: DocumentType) -> ValidationResult:
        """Apply every rule of the document type; errors accumulate."""
        document_type = DocumentType(document_type)
        if document_type is DocumentType.QR_CODE:
            return self.validate_qr(fields.raw_text)

        today = self._today()
        values = fields.values

        # Each rule returns a violation, a list of violations, or None
        rules = [
            self._rule_id_number(values, document_type),
            self._rule_name(values, document_type),
            self._rule_date_of_birth(values, today),
            self._rule_issue_date(values, today),
            self._rule_expiry_date(values, today),
            self._rule_license_class(values, document_type),
            self._rule_age_at_issue(values),
            self._rule_expiry_after_issue(values),
            self._rule_ocr_confidence(fields.confidence),
        ]
        return ValidationResult(violations=self._collect(rules), rules_version=self._rules_version)

    def validate_qr(self, payload: str) -> ValidationResult:
        rules = [
            self._rule_qr_empty(payload),
            self._rule_qr_length(payload),
            self._rule_qr_cccd_format(payload),
            self._rule_qr_url(payload),
        ]
        return ValidationResult(violations=self._collect(rules), rules_version=self._rules_version)

    def validate_face_match(self, result: FaceMatchResult) -> ValidationResult:
        violations = []
        if result.similarity < self._face_threshold:
            violations.append(_violation(
                "FACE_SIMILARITY_LOW", ERROR,
                f"Face similarity is low ({round(result.similarity * 100)}%)",
            ))
        elif result.similarity < self._face_threshold + 0.1:
            violations.append(_violation(
                "FACE_SIMILARITY_BORDERLINE", WARNING, "Face similarity is at the threshold",
            ))
        if result.confidence < self._face_min_confidence:
            violations.append(_violation(
                "FACE_CONFIDENCE_LOW", WARNING, "Face comparison confidence is low",
            ))
        if result.degraded:
            violations.append(_violation(
                "FACE_MATCH_DEGRADED", WARNING, "Face models unavailable, similarity is an estimate",
            ))
        return ValidationResult(violations=violations, rules_version=self._rules_version)

    @staticmethod
    def _collect(results: list) -> list[RuleViolation]:
        violations: list[RuleViolation] = []
        for result in results:
            if result is None:
                continue
            if isinstance(result, list):
                violations.extend(result)
            else:
                violations.append(result)
        return violations

    # ─── DOCUMENT RULES ─────────────────────────────────────

    def _rule_id_number(self, values: dict, document_type: DocumentType) -> RuleViolation | None:
        """Rule 1+2: ID number present, well formed, checksum (CCCD only)."""
        id_number = values.get(ID_NUMBER)
        if not id_number:
            return _violation("MISSING_ID_NUMBER", ERROR, "Document number is missing")
        if not ID_FORMATS[document_type].match(id_number):
            return _violation("INVALID_ID_FORMAT", ERROR, f"Document number is not valid: {id_number}")
        if document_type is DocumentType.ID_CARD and not id_checksum_ok(id_number):
            return _violation(
                "ID_CHECKSUM", WARNING,
                "ID number may be inaccurate (checksum does not match)",
            )
        return None

    def _rule_name(self, values: dict, document_type: DocumentType) -> RuleViolation | None:
        """Rule 3: Upper-case letters and spaces only; 2 to 50 characters."""
        name = values.get(FULL_NAME)
        if not name:
            return _violation("MISSING_NAME", ERROR, "Full name is missing")
        if document_type is DocumentType.PASSPORT:
            charset_ok = re.match(r"^[A-Z\s]+$", name) is not None
        else:
            # Vietnamese diacritics allowed (Đ, Ư, Ơ, Ạ, ...)
            charset_ok = all(c.isspace() or (c.isalpha() and c.isupper()) for c in name)
        if not charset_ok:
            return _violation("INVALID_NAME_CHARS", ERROR, "Full name contains invalid characters")
        if len(name) < 2:
            return _violation("NAME_TOO_SHORT", ERROR, "Full name is too short")
        if len(name) > 50:
            return _violation("NAME_TOO_LONG", WARNING, "Full name may be too long")
        return None

    def _check_date_format(self, values: dict, field: str) -> tuple[date | None, RuleViolation | None]:
        value = values.get(field)
        label = DATE_LABELS[field]
        if not DATE_FORMAT.match(value):
            return None, _violation("INVALID_DATE_FORMAT", ERROR, f"Invalid {label} format: {value}")
        parsed = parse_date(value)
        if parsed is None:
            return None, _violation("INVALID_DATE", ERROR, f"Invalid {label}: {value}")
        return parsed, None

    def _rule_date_of_birth(self, values: dict, today: date) -> RuleViolation | None:
        """Rule 4a: Date of birth present, valid and plausible."""
        if not values.get(DATE_OF_BIRTH):
            return _violation("MISSING_DATE_OF_BIRTH", ERROR, "Date of birth is missing")
        dob, error = self._check_date_format(values, DATE_OF_BIRTH)
        if error:
            return error

        age_years = today.year - dob.year
        if dob > today:
            return _violation("FUTURE_BIRTH_DATE", ERROR, "Date of birth cannot be in the future")
        if dob.year < 1900:
            return _violation("ANCIENT_BIRTH_DATE", ERROR, "Date of birth is too far in the past")
        if age_years > 120:
            return _violation("AGE_TOO_HIGH", WARNING, "Age may be too high")
        if age_years < 14:
            return _violation("AGE_TOO_LOW", WARNING, "Holder may be too young for this document")
        return None

    def _rule_issue_date(self, values: dict, today: date) -> RuleViolation | None:
        """Rule 4b: Issue date valid, not in the future."""
        if not values.get(ISSUE_DATE):
            return None
        issued, error = self._check_date_format(values, ISSUE_DATE)
        if error:
            return error
        if issued > today:
            return _violation("FUTURE_ISSUE_DATE", ERROR, "Issue date cannot be in the future")
        if issued.year < 1975:
            return _violation("OLD_ISSUE_DATE", WARNING, "Issue date may be too far in the past")
        return None

    def _rule_expiry_date(self, values: dict, today: date) -> RuleViolation | None:
        """Rule 4c: Expiry date valid; expired documents only warn."""
        if not values.get(EXPIRY_DATE):
            return None
        expiry, error = self._check_date_format(values, EXPIRY_DATE)
        if error:
            return error
        if expiry < today:
            return _violation("DOCUMENT_EXPIRED", WARNING, "Document has expired")
        if expiry.year > today.year + 50:
            return _violation("EXPIRY_TOO_FAR", WARNING, "Expiry date may be too far in the future")
        return None

    def _rule_license_class(self, values: dict, document_type: DocumentType) -> RuleViolation | None:
        """Rule 6: Driver license class A-E with optional digit."""
        if document_type is not DocumentType.DRIVER_LICENSE:
            return None
        license_class = values.get(LICENSE_CLASS)
        if license_class and not LICENSE_CLASS_FORMAT.match(license_class):
            return _violation("INVALID_LICENSE_CLASS", WARNING, f"License class may be inaccurate: {license_class}")
        return None

    def _rule_age_at_issue(self, values: dict) -> RuleViolation | None:
        """Rule 5a: Holder at least 14 (calendar years) when the document was issued."""
        dob = parse_date(values.get(DATE_OF_BIRTH, ""))
        issued = parse_date(values.get(ISSUE_DATE, ""))
        if dob is None or issued is None:
            return None
        if issued.year - dob.year < 14:
            return _violation("AGE_AT_ISSUE", ERROR, "Holder was under 14 when the document was issued")
        return None

    def _rule_expiry_after_issue(self, values: dict) -> RuleViolation | None:
        """Rule 5b: Expiry strictly after issue."""
        issued = parse_date(values.get(ISSUE_DATE, ""))
        expiry = parse_date(values.get(EXPIRY_DATE, ""))
        if issued is None or expiry is None:
            return None
        if expiry <= issued:
            return _violation("EXPIRY_BEFORE_ISSUE", ERROR, "Expiry date must be after the issue date")
        return None

    def _rule_ocr_confidence(self, confidence: float) -> RuleViolation | None:
        """Rule 7: Average OCR confidence above the minimum."""
        if confidence < self._min_ocr_confidence:
            return _violation(
                "LOW_OCR_CONFIDENCE", WARNING,
                f"Low OCR confidence ({confidence:.2f} < {self._min_ocr_confidence})",
            )
        return None

    # ─── QR RULES ───────────────────────────────────────────

    def _rule_qr_empty(self, payload: str) -> RuleViolation | None:
        if not payload or not payload.strip():
            return _violation("QR_EMPTY", ERROR, "QR data is empty")
        return None

    def _rule_qr_length(self, payload: str) -> RuleViolation | None:
        if not payload or not payload.strip():
            return None
        if len(payload) < 10:
            return _violation("QR_TOO_SHORT", WARNING, "QR data may be too short")
        if len(payload) > 1000:
            return _violation("QR_TOO_LONG", WARNING, "QR data may be too long")
        return None

    def _rule_qr_cccd_format(self, payload: str) -> RuleViolation | None:
        """CCCD QR codes are pipe-delimited: id|old id|name|dob|sex|address|issue date."""
        if payload and "|" in payload and len(payload.split("|")) < 6:
            return _violation("QR_INCOMPLETE", WARNING, "CCCD QR format may be incomplete")
        return None

    def _rule_qr_url(self, payload: str) -> RuleViolation | None:
        if not payload or not payload.startswith(("http://", "https://")):
            return None
        try:
            parsed = urlparse(payload)
            valid = bool(parsed.netloc) and parsed.hostname is not None
        except ValueError:
            valid = False
        if not valid:
            return _violation("QR_INVALID_URL", ERROR, "URL in QR code is not valid")
        return None
