"""
SDOH Complexity Scoring.

Scores documented social determinants of health and recommends a CCM
tier. Each factor contributes its Z-code weight times a severity
multiplier:

    score = sum(weight x multiplier)

    complex       score >= 4 and at least one factor
    standard      score >= 2
    not_eligible  otherwise

Homelessness (3) and food insecurity (2), both moderate (x1.5), score
4.5 + 3.0 = 7.5 and land in the complex tier.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from medbill.core.enums import CCMTier, CodeSource, CodeSystem, SDOHSeverity
from medbill.services.billing.records import CandidateCode, DecisionResult, Encounter
from medbill.services.billing.suggestions import Suggestion, SuggestionSource

logger = logging.getLogger(__name__)

COMPLEX_THRESHOLD = Decimal("4")
STANDARD_THRESHOLD = Decimal("2")
DEFAULT_FACTOR_WEIGHT = 1
SDOH_CONFIDENCE = 80


@dataclass(frozen=True)
class SDOHFactorWeight:
    """Weight of one Z-code in the complexity score."""

    code: str
    description: str
    weight: int


SDOH_FACTOR_WEIGHTS: dict[str, SDOHFactorWeight] = {
    w.code: w
    for w in (
        SDOHFactorWeight("Z59.0", "Homelessness", 3),
        SDOHFactorWeight("Z59.1", "Inadequate housing", 2),
        SDOHFactorWeight("Z59.3", "Food insecurity", 2),
        SDOHFactorWeight("Z59.8", "Transportation barriers", 2),
        SDOHFactorWeight("Z60.2", "Social isolation", 1),
        SDOHFactorWeight("Z59.6", "Financial insecurity", 2),
    )
}

SEVERITY_MULTIPLIERS: dict[SDOHSeverity, Decimal] = {
    SDOHSeverity.MILD: Decimal("1.0"),
    SDOHSeverity.MODERATE: Decimal("1.5"),
    SDOHSeverity.SEVERE: Decimal("2.0"),
}


@dataclass
class SDOHFactor:
    """One documented social determinant."""

    code: str
    severity: SDOHSeverity = SDOHSeverity.MILD
    description: str = ""

    def __post_init__(self) -> None:
        self.code = self.code.strip().upper()


@dataclass
class SDOHAssessment:
    """Score, tier and the factors behind them."""

    factors: list[SDOHFactor] = field(default_factory=list)
    score: Decimal = Decimal("0")
    tier: CCMTier = CCMTier.NOT_ELIGIBLE

    def to_candidates(self) -> list[CandidateCode]:
        """One secondary diagnosis per factor."""
        candidates = []
        for factor in self.factors:
            known = SDOH_FACTOR_WEIGHTS.get(factor.code)
            description = factor.description or (known.description if known else "")
            candidates.append(
                CandidateCode(
                    system=CodeSystem.ICD10,
                    code=factor.code,
                    description=description,
                    confidence=SDOH_CONFIDENCE,
                    source=CodeSource.SDOH,
                    rationale=f"SDOH factor documented ({factor.severity.value})",
                )
            )
        return candidates


def factor_weight(code: str) -> int:
    known = SDOH_FACTOR_WEIGHTS.get(code.strip().upper())
    return known.weight if known else DEFAULT_FACTOR_WEIGHT


def complexity_score(factors: list[SDOHFactor]) -> Decimal:
    """Unrounded weighted score."""
    return sum(
        (factor_weight(f.code) * SEVERITY_MULTIPLIERS[f.severity] for f in factors),
        Decimal("0"),
    )


def recommend_tier(score: Decimal, factors: list[SDOHFactor]) -> CCMTier:
    if score >= COMPLEX_THRESHOLD and factors:
        return CCMTier.COMPLEX
    if score >= STANDARD_THRESHOLD:
        return CCMTier.STANDARD
    return CCMTier.NOT_ELIGIBLE


def assess(factors: list[SDOHFactor]) -> SDOHAssessment:
    score = complexity_score(factors)
    return SDOHAssessment(factors=list(factors), score=score, tier=recommend_tier(score, factors))


# =============================================================================
# Suggestion Source
# =============================================================================


class SDOHFactorProvider(ABC):
    """Supplies the SDOH factors documented for a patient."""

    @abstractmethod
    async def factors_for(self, patient_id: str) -> list[SDOHFactor]:
        pass


class InMemorySDOHFactorProvider(SDOHFactorProvider):
    def __init__(self, factors: Optional[dict[str, list[SDOHFactor]]] = None):
        self._factors = factors or {}

    def add(self, patient_id: str, *factors: SDOHFactor) -> None:
        self._factors.setdefault(patient_id, []).extend(factors)

    async def factors_for(self, patient_id: str) -> list[SDOHFactor]:
        return list(self._factors.get(patient_id, []))


class SDOHSuggestionSource(SuggestionSource):
    """Z-code suggestions and a CCM tier recommendation."""

    name = "sdoh"
    source = CodeSource.SDOH

    def __init__(self, provider: SDOHFactorProvider):
        self.provider = provider

    async def suggest(self, encounter: Encounter, decision: DecisionResult) -> Suggestion:
        assessment = assess(await self.provider.factors_for(encounter.patient_id))
        logger.info(
            f"SDOH score {assessment.score} for patient {encounter.patient_id}: {assessment.tier.value}"
        )
        return Suggestion(
            source=self.source,
            candidates=assessment.to_candidates(),
            ccm_tier=assessment.tier,
            notes=[f"SDOH complexity score {assessment.score}"],
        )
