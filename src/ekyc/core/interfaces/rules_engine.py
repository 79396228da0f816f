"""
Contract: Rules Engine

Applies deterministic validation rules over extracted fields: presence,
format, checksum, temporal plausibility and cross-field consistency.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from ekyc.core.entities.document import DocumentType
from ekyc.core.entities.extracted_fields import ExtractedFields
from ekyc.core.interfaces.face_matcher import FaceMatchResult

ERROR = "ERROR"
WARNING = "WARNING"


@dataclass
class RuleViolation:
    """One rule that did not hold."""
    rule_id: str              # e.g. "ID_CHECKSUM"
    severity: str             # "ERROR" blocks completion, "WARNING" never does
    detail: str               # e.g. "ID number checksum does not match"

    def to_dict(self) -> dict:
        return {"rule_id": self.rule_id, "severity": self.severity, "detail": self.detail}


@dataclass
class ValidationResult:
    """Outcome of validating one set of extracted fields."""
    violations: list[RuleViolation] = field(default_factory=list)
    rules_version: str = ""

    @property
    def errors(self) -> list[str]:
        return [v.detail for v in self.violations if v.severity == ERROR]

    @property
    def warnings(self) -> list[str]:
        return [v.detail for v in self.violations if v.severity == WARNING]

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def has_rule(self, rule_id: str) -> bool:
        return any(v.rule_id == rule_id for v in self.violations)

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "errors": self.errors,
            "warnings": self.warnings,
            "violations": [v.to_dict() for v in self.violations],
            "rules_version": self.rules_version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ValidationResult":
        return cls(
            violations=[RuleViolation(**v) for v in data.get("violations", [])],
            rules_version=data.get("rules_version", ""),
        )


class IRulesEngine(ABC):
    """
    Port: Rules Engine

    Pure and stateless given its inputs (and the clock it was built with).
    """

    @abstractmethod
    def validate(self, fields: ExtractedFields, document_type: DocumentType) -> ValidationResult:
        """
        Validate extracted fields.

        Args:
            fields: Extracted field variant.
            document_type: Document type (selects which rules apply).

        Returns:
            ValidationResult with ordered errors and warnings.
        """
        ...

    @abstractmethod
    def validate_face_match(self, result: FaceMatchResult) -> ValidationResult:
        """
        Grade a face match result.

        Below threshold is an error; borderline, low-confidence and degraded
        matches are warnings.
        """
        ...
