"""
Node D - E/M Level Determination.

Two mutually exclusive methods:

- Time: only when more than half of the visit was counseling or care
  coordination. Total minutes map to a level:
      <20 -> 1, 20-29 -> 2, 30-39 -> 3, 40-59 -> 4, >=60 -> 5
- MDM (default): problems (1/2/3+ -> 1/2/3 points), data reviewed
  (minimal..extensive -> 1..4) and risk (minimal..high -> 1..4) are
  summed and scaled onto 40-100, then mapped:
      40-50 -> 2, 51-75 -> 3, 76-80 -> 4, >=81 -> 5
  An undocumented component counts as its minimal value.

New patients bill 99202-99205 (99201 no longer exists, so level 1
becomes 99202); established patients bill 99211-99215.

Also computes documentation completeness and prolonged-service
(99417) units for high-level visits with documented time.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from medbill.core.enums import DataReviewDepth, EMMethod, NodeStatus, ReviewReason, RiskLevel
from medbill.services.billing.records import DocumentationElements, NodeResult, ReviewFlag

logger = logging.getLogger(__name__)

NODE_ID = "NODE_D"
NODE_NAME = "E/M Level Determination"

PROLONGED_SERVICE_CODE = "99417"
PROLONGED_INCREMENT_MINUTES = 15
PROLONGED_MAX_UNITS = 16

# Base time of each code eligible for prolonged services
PROLONGED_BASE_MINUTES: dict[str, int] = {
    "99204": 45,
    "99205": 60,
    "99214": 40,
    "99215": 55,
}

DATA_POINTS: dict[DataReviewDepth, int] = {
    DataReviewDepth.MINIMAL: 1,
    DataReviewDepth.LIMITED: 2,
    DataReviewDepth.MODERATE: 3,
    DataReviewDepth.EXTENSIVE: 4,
}

RISK_POINTS: dict[RiskLevel, int] = {
    RiskLevel.MINIMAL: 1,
    RiskLevel.LOW: 2,
    RiskLevel.MODERATE: 3,
    RiskLevel.HIGH: 4,
}

MIN_MDM_POINTS = 3
MAX_MDM_POINTS = 11
MDM_SCORE_FLOOR = Decimal("40")
MDM_SCORE_CEILING = Decimal("100")

# Documentation elements and their share of the completeness score
DOCUMENTATION_WEIGHTS: dict[str, int] = {
    "history": 30,
    "exam": 30,
    "medical_decision_making": 40,
}


# =============================================================================
# Data Models
# =============================================================================


@dataclass
class ProlongedService:
    """Extra 99417 line for time beyond the base of the visit code."""

    code: str
    units: int
    extra_minutes: int


@dataclass
class EMLevelResult:
    """Outcome of Node D."""

    level: int
    code: str
    method: EMMethod
    is_new_patient: bool
    confidence: int
    mdm_score: Optional[Decimal] = None
    documentation_score: int = 0
    missing_elements: list[str] = field(default_factory=list)
    prolonged: Optional[ProlongedService] = None
    review_flags: list[ReviewFlag] = field(default_factory=list)

    def to_node_result(self) -> NodeResult:
        basis = (
            f"time-based ({self.method.value})"
            if self.method == EMMethod.TIME
            else f"MDM score {self.mdm_score}"
        )
        rationale = (
            f"E/M level {self.level} determined ({self.code}) from {basis}. "
            f"Documentation score: {self.documentation_score}%"
        )
        if self.prolonged:
            rationale += (
                f". Prolonged services: +{self.prolonged.extra_minutes} minutes "
                f"({self.prolonged.code} x{self.prolonged.units})"
            )
        return NodeResult(
            node_id=NODE_ID,
            name=NODE_NAME,
            status=NodeStatus.REVIEW if self.review_flags else NodeStatus.PASSED,
            confidence=self.confidence,
            rationale=rationale,
        )


# =============================================================================
# Scoring
# =============================================================================


def level_from_minutes(total_minutes: int) -> int:
    """Time-based breakpoints."""
    if total_minutes < 20:
        return 1
    if total_minutes < 30:
        return 2
    if total_minutes < 40:
        return 3
    if total_minutes < 60:
        return 4
    return 5


def problem_points(problem_count: int) -> int:
    return min(max(problem_count, 1), 3)


def mdm_points(documentation: DocumentationElements) -> int:
    """Sum of problem, data and risk points (3-11)."""
    data = DATA_POINTS[documentation.data_reviewed] if documentation.data_reviewed else 1
    risk = RISK_POINTS[documentation.risk] if documentation.risk else 1
    return problem_points(documentation.problem_count) + data + risk


def mdm_score(documentation: DocumentationElements) -> Decimal:
    """MDM points scaled linearly onto 40-100."""
    points = mdm_points(documentation)
    span = MDM_SCORE_CEILING - MDM_SCORE_FLOOR
    return MDM_SCORE_FLOOR + span * (points - MIN_MDM_POINTS) / (MAX_MDM_POINTS - MIN_MDM_POINTS)


def level_from_mdm_score(score: Decimal) -> int:
    if score <= 50:
        return 2
    if score <= 75:
        return 3
    if score <= 80:
        return 4
    return 5


def em_code(level: int, is_new_patient: bool) -> str:
    """Office/outpatient E/M code for a level."""
    if not 1 <= level <= 5:
        raise ValueError(f"E/M level must be 1-5, got {level}")
    if is_new_patient:
        return f"9920{max(level, 2)}"
    return f"9921{level}"


def documentation_completeness(documentation: DocumentationElements) -> tuple[int, list[str]]:
    """Score (0-100) and the names of missing elements."""
    present = {
        "history": bool(documentation.history and documentation.history.strip()),
        "exam": bool(documentation.exam and documentation.exam.strip()),
        "medical_decision_making": documentation.has_mdm,
    }
    score = sum(DOCUMENTATION_WEIGHTS[name] for name, ok in present.items() if ok)
    missing = [name for name, ok in present.items() if not ok]
    return score, missing


def prolonged_service(code: str, total_minutes: Optional[int]) -> Optional[ProlongedService]:
    """99417 units for complete 15-minute increments beyond the code's base time."""
    base = PROLONGED_BASE_MINUTES.get(code)
    if base is None or not total_minutes:
        return None
    extra = total_minutes - base
    if extra < PROLONGED_INCREMENT_MINUTES:
        return None
    units = min(extra // PROLONGED_INCREMENT_MINUTES, PROLONGED_MAX_UNITS)
    return ProlongedService(code=PROLONGED_SERVICE_CODE, units=units, extra_minutes=extra)


def _mdm_confidence(documentation: DocumentationElements) -> int:
    documented = sum(
        [
            documentation.problem_count > 0,
            documentation.data_reviewed is not None,
            documentation.risk is not None,
        ]
    )
    return {3: 90, 2: 80, 1: 70, 0: 50}[documented]


# =============================================================================
# Node D
# =============================================================================


def select_em_level(documentation: DocumentationElements) -> tuple[EMMethod, int, Optional[Decimal]]:
    """Method, level and MDM score (None when time-based) for the documentation."""
    if documentation.total_minutes and documentation.counseling_fraction > 0.5:
        return EMMethod.TIME, level_from_minutes(documentation.total_minutes), None
    score = mdm_score(documentation)
    return EMMethod.MDM, level_from_mdm_score(score), score


def determine_em_level(documentation: DocumentationElements, is_new_patient: bool) -> EMLevelResult:
    """Run Node D."""
    doc_score, missing = documentation_completeness(documentation)
    method, level, score = select_em_level(documentation)
    confidence = 90 if method == EMMethod.TIME else _mdm_confidence(documentation)

    code = em_code(level, is_new_patient)
    result = EMLevelResult(
        level=level,
        code=code,
        method=method,
        is_new_patient=is_new_patient,
        confidence=confidence,
        mdm_score=score,
        documentation_score=doc_score,
        missing_elements=missing,
        prolonged=prolonged_service(code, documentation.total_minutes),
    )

    if missing:
        result.review_flags.append(
            ReviewFlag(
                ReviewReason.INCOMPLETE_DOCUMENTATION,
                f"Missing documentation elements: {', '.join(missing)}",
                NODE_ID,
            )
        )

    logger.info(
        f"E/M level {level} ({code}) via {method.value}, documentation {doc_score}%"
    )
    return result
