"""
Medical Necessity Validation.

Checks that the diagnoses on a claim support each billed procedure.
A rule names a CPT code, ICD-10 patterns that must match (``*`` is a
wildcard), patterns that must not match, and whether only the principal
diagnosis may satisfy it. A procedure passes when at least one
diagnosis satisfies at least one of its rules; procedures without rules
pass with a review recommendation.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class NecessityStatus(str, Enum):
    """Medical necessity determination status."""

    MEDICALLY_NECESSARY = "medically_necessary"
    NOT_MEDICALLY_NECESSARY = "not_medically_necessary"
    NO_RULES = "no_rules"


@dataclass(frozen=True)
class NecessityRule:
    """Coverage rule for one procedure code."""

    cpt_code: str
    required_patterns: tuple[str, ...] = ()
    excluded_patterns: tuple[str, ...] = ()
    primary_only: bool = False
    source: Optional[str] = None  # ncd | lcd
    reference: Optional[str] = None


DEFAULT_NECESSITY_RULES: tuple[NecessityRule, ...] = (
    NecessityRule("27447", ("M17.*",), primary_only=True, source="lcd"),  # Total knee: knee OA
    NecessityRule("27130", ("M16.*",), primary_only=True, source="lcd"),  # Total hip: hip OA
    NecessityRule("77067", ("Z12.31", "C50.*"), source="ncd"),  # Screening mammography
    NecessityRule("83036", ("E10.*", "E11.*", "E13.*", "R73.*", "Z13.1"), source="ncd"),  # HbA1c
    NecessityRule("43239", ("K20.*", "K21.*", "K25.*", "R13.*"), excluded_patterns=("Z12.*",)),  # EGD
    NecessityRule("93000", ("I*", "R00.*", "R07.*", "R55", "Z01.810")),  # ECG
)


class CombinationResult(BaseModel):
    """One procedure/diagnosis pair."""

    cpt_code: str
    icd10_code: str
    valid: bool
    reason: str


class NecessityResult(BaseModel):
    """Result of medical necessity validation for one procedure."""

    cpt_code: str
    is_medically_necessary: bool = True
    status: NecessityStatus = NecessityStatus.MEDICALLY_NECESSARY
    diagnosis_codes: list[str] = Field(default_factory=list)
    combinations: list[CombinationResult] = Field(default_factory=list)
    issues: list[str] = Field(default_factory=list)
    references: list[str] = Field(default_factory=list)


def matches_pattern(code: str, pattern: str) -> bool:
    """Wildcard match; ``E11.*`` matches ``E11.9`` and ``E11.65``."""
    regex = "^" + ".*".join(re.escape(part) for part in pattern.upper().split("*")) + "$"
    return re.match(regex, code.strip().upper()) is not None


class MedicalNecessityService:
    """
    Validates diagnosis support for billed procedures.

    Rules are grouped by CPT code; several rules for one code are
    alternatives.
    """

    def __init__(self, rules: Optional[Iterable[NecessityRule]] = None):
        self._rules: dict[str, list[NecessityRule]] = {}
        for rule in DEFAULT_NECESSITY_RULES if rules is None else rules:
            self._rules.setdefault(rule.cpt_code, []).append(rule)

    def rules_for(self, cpt_code: str) -> list[NecessityRule]:
        return list(self._rules.get(cpt_code, []))

    def validate(self, cpt_code: str, diagnosis_codes: list[str]) -> NecessityResult:
        """
        Validate one procedure against the claim's diagnoses.

        Args:
            cpt_code: Procedure code
            diagnosis_codes: ICD-10 codes, principal first

        Returns:
            NecessityResult with per-diagnosis combinations
        """
        result = NecessityResult(cpt_code=cpt_code, diagnosis_codes=list(diagnosis_codes))
        rules = self.rules_for(cpt_code)
        if not rules:
            result.status = NecessityStatus.NO_RULES
            result.combinations = [
                CombinationResult(
                    cpt_code=cpt_code,
                    icd10_code=dx,
                    valid=True,
                    reason="No specific coverage rules found (review recommended)",
                )
                for dx in diagnosis_codes
            ]
            return result

        result.references = sorted({r.reference for r in rules if r.reference})
        for index, dx in enumerate(diagnosis_codes):
            rule = self._matching_rule(rules, dx, is_primary=index == 0)
            if rule is None:
                reason = "Does not meet coverage requirements"
                if index == 0:
                    reason += " - Primary diagnosis must support procedure"
            else:
                reason = "Meets medical necessity requirements"
                if rule.source:
                    reason += f" ({rule.source.upper()})"
            result.combinations.append(
                CombinationResult(cpt_code=cpt_code, icd10_code=dx, valid=rule is not None, reason=reason)
            )

        if not any(c.valid for c in result.combinations):
            result.is_medically_necessary = False
            result.status = NecessityStatus.NOT_MEDICALLY_NECESSARY
            required = sorted({p for r in rules for p in r.required_patterns})
            result.issues.append(
                f"Procedure {cpt_code} requires a diagnosis matching one of: {', '.join(required)}"
            )
            logger.warning(f"Medical necessity not met for {cpt_code} with {diagnosis_codes}")
        return result

    def validate_all(self, cpt_codes: Iterable[str], diagnosis_codes: list[str]) -> list[NecessityResult]:
        return [self.validate(code, diagnosis_codes) for code in cpt_codes]

    @staticmethod
    def _matching_rule(rules: list[NecessityRule], dx: str, is_primary: bool) -> Optional[NecessityRule]:
        for rule in rules:
            if rule.primary_only and not is_primary:
                continue
            if rule.required_patterns and not any(matches_pattern(dx, p) for p in rule.required_patterns):
                continue
            if any(matches_pattern(dx, p) for p in rule.excluded_patterns):
                continue
            return rule
        return None
