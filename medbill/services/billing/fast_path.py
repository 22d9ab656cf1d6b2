"""
Fast-path scenario matching.

Common, low-risk encounters are matched against pre-approved scenarios
before nodes C-F run. Each scenario starts from a base confidence and
loses points for anything that makes the encounter less routine. The
engine only takes the fast path when the final confidence exceeds the
auto-approve threshold and the documented E/M level bills the same code
as the scenario.
"""

from dataclasses import dataclass, field, fields
from typing import Optional

from medbill.core.enums import DataReviewDepth, EncounterType, RiskLevel, ServiceClassification
from medbill.services.billing.em_level import documentation_completeness, em_code, select_em_level
from medbill.services.billing.records import Encounter

PENALTY = 10
COMPLEX_VISIT_MINUTES = 40


@dataclass(frozen=True)
class FastPathScenario:
    """Pre-approved scenario and the code set it bills."""

    name: str
    encounter_type: EncounterType
    cpt_code: str
    description: str
    base_confidence: int = 95
    modifiers: tuple[str, ...] = ()
    allowed_flags: frozenset[str] = frozenset()


FAST_PATH_SCENARIOS: tuple[FastPathScenario, ...] = (
    FastPathScenario(
        name="routine_office_visit",
        encounter_type=EncounterType.OFFICE_VISIT,
        cpt_code="99213",
        description="Established patient office visit, low complexity",
    ),
    FastPathScenario(
        name="telehealth_visit",
        encounter_type=EncounterType.TELEHEALTH,
        cpt_code="99213",
        description="Established patient telehealth visit, low complexity",
        modifiers=("95",),
        allowed_flags=frozenset({"telehealth"}),
    ),
)


@dataclass
class FastPathMatch:
    scenario: FastPathScenario
    confidence: int
    penalties: list[str] = field(default_factory=list)
    documented_code: str = ""

    @property
    def agrees_with_documentation(self) -> bool:
        """True when Node D would bill the scenario code."""
        return self.documented_code == self.scenario.cpt_code


def _raised_flags(encounter: Encounter) -> set[str]:
    return {f.name for f in fields(encounter.flags) if getattr(encounter.flags, f.name)}


def match_fast_path(
    encounter: Encounter,
    classification: ServiceClassification,
    scenarios: tuple[FastPathScenario, ...] = FAST_PATH_SCENARIOS,
) -> Optional[FastPathMatch]:
    """Best scenario for the encounter, or None when nothing applies."""
    if classification != ServiceClassification.EVALUATION_MANAGEMENT or encounter.procedures:
        return None

    encounter_type = encounter.encounter_type.strip().lower()
    doc = encounter.documentation
    documented_code = em_code(select_em_level(doc)[1], encounter.is_new_patient)
    best: Optional[FastPathMatch] = None

    for scenario in scenarios:
        if scenario.encounter_type.value != encounter_type:
            continue

        penalties = []
        if encounter.is_new_patient:
            penalties.append("new patient")
        if (doc.total_minutes or 0) >= COMPLEX_VISIT_MINUTES or doc.counseling_fraction > 0.5:
            penalties.append("extended or counseling-dominant visit")
        if doc.risk == RiskLevel.HIGH or doc.data_reviewed == DataReviewDepth.EXTENSIVE:
            penalties.append("high complexity decision making")
        if _raised_flags(encounter) - scenario.allowed_flags:
            penalties.append("modifier circumstances present")
        if documentation_completeness(doc)[1]:
            penalties.append("incomplete documentation")

        match = FastPathMatch(
            scenario=scenario,
            confidence=max(scenario.base_confidence - PENALTY * len(penalties), 0),
            penalties=penalties,
            documented_code=documented_code,
        )
        if best is None or match.confidence > best.confidence:
            best = match

    return best
