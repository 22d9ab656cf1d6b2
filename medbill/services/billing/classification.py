"""
Node B - Service Classification.

Deterministic rule ladder, first match wins:
1. Encounter type is surgery, procedure, lab or radiology -> procedural (95)
2. Procedures are documented with codes -> procedural (90)
3. Encounter type is an E/M visit type -> evaluation_management (95)
4. Otherwise -> unknown (50)

The place of service is validated against the encounter type; an
unknown POS or a mismatch lowers confidence by 30 and flags the
encounter without halting it.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from medbill.core.enums import EncounterType, NodeStatus, ReviewReason, ServiceClassification
from medbill.services.billing.records import Encounter, NodeResult, ReviewFlag

logger = logging.getLogger(__name__)

NODE_ID = "NODE_B"
NODE_NAME = "Service Classification"

DEFAULT_PLACE_OF_SERVICE = "11"
POS_MISMATCH_PENALTY = 30

PROCEDURAL_TYPES = frozenset(
    {EncounterType.SURGERY, EncounterType.PROCEDURE, EncounterType.LAB, EncounterType.RADIOLOGY}
)
EM_TYPES = frozenset(
    {
        EncounterType.OFFICE_VISIT,
        EncounterType.TELEHEALTH,
        EncounterType.CONSULTATION,
        EncounterType.EMERGENCY,
        EncounterType.INPATIENT,
    }
)


@dataclass(frozen=True)
class PlaceOfService:
    """POS code and the encounter types billable there."""

    code: str
    name: str
    encounter_types: frozenset[EncounterType]


PLACES_OF_SERVICE: dict[str, PlaceOfService] = {
    pos.code: pos
    for pos in (
        PlaceOfService("02", "Telehealth", frozenset({EncounterType.TELEHEALTH})),
        PlaceOfService("10", "Telehealth in Patient's Home", frozenset({EncounterType.TELEHEALTH})),
        PlaceOfService(
            "11",
            "Office",
            frozenset(
                {
                    EncounterType.OFFICE_VISIT,
                    EncounterType.CONSULTATION,
                    EncounterType.LAB,
                    EncounterType.RADIOLOGY,
                }
            ),
        ),
        PlaceOfService("12", "Home", frozenset({EncounterType.OFFICE_VISIT})),
        PlaceOfService("21", "Inpatient Hospital", frozenset({EncounterType.INPATIENT})),
        PlaceOfService(
            "22",
            "Outpatient Hospital",
            frozenset(
                {
                    EncounterType.OFFICE_VISIT,
                    EncounterType.SURGERY,
                    EncounterType.PROCEDURE,
                    EncounterType.LAB,
                    EncounterType.RADIOLOGY,
                }
            ),
        ),
        PlaceOfService("23", "Emergency Room", frozenset({EncounterType.EMERGENCY})),
        PlaceOfService(
            "24",
            "Ambulatory Surgical Center",
            frozenset({EncounterType.SURGERY, EncounterType.PROCEDURE}),
        ),
        PlaceOfService(
            "31",
            "Skilled Nursing Facility",
            frozenset({EncounterType.OFFICE_VISIT, EncounterType.CONSULTATION}),
        ),
        PlaceOfService(
            "32",
            "Nursing Facility",
            frozenset({EncounterType.OFFICE_VISIT, EncounterType.CONSULTATION}),
        ),
    )
}


@dataclass
class PlaceOfServiceCheck:
    valid: bool
    code: str
    message: str


@dataclass
class ClassificationResult:
    """Outcome of Node B."""

    classification: ServiceClassification
    confidence: int
    rationale: str
    place_of_service: str = DEFAULT_PLACE_OF_SERVICE
    review_flags: list[ReviewFlag] = field(default_factory=list)

    def to_node_result(self) -> NodeResult:
        return NodeResult(
            node_id=NODE_ID,
            name=NODE_NAME,
            status=NodeStatus.REVIEW if self.review_flags else NodeStatus.PASSED,
            confidence=self.confidence,
            rationale=self.rationale,
        )


def parse_encounter_type(value: str) -> Optional[EncounterType]:
    try:
        return EncounterType((value or "").strip().lower())
    except ValueError:
        return None


def validate_place_of_service(pos_code: Optional[str], encounter_type: Optional[EncounterType]) -> PlaceOfServiceCheck:
    """Check a POS code exists and allows the encounter type."""
    code = (pos_code or DEFAULT_PLACE_OF_SERVICE).strip()
    pos = PLACES_OF_SERVICE.get(code)
    if pos is None:
        return PlaceOfServiceCheck(False, code, f"Invalid POS code: {code}")
    if encounter_type not in pos.encounter_types:
        label = encounter_type.value if encounter_type else "unknown"
        return PlaceOfServiceCheck(
            False, code, f'POS {code} ({pos.name}) not valid for encounter type "{label}"'
        )
    return PlaceOfServiceCheck(True, code, f"Valid POS {code} - {pos.name}")


def classify_service(encounter: Encounter) -> ClassificationResult:
    """Run the Node B rule ladder."""
    encounter_type = parse_encounter_type(encounter.encounter_type)
    pos_check = validate_place_of_service(encounter.place_of_service, encounter_type)
    has_coded_procedures = any(p.code for p in encounter.procedures)

    if encounter_type in PROCEDURAL_TYPES:
        result = ClassificationResult(
            ServiceClassification.PROCEDURAL,
            95,
            f'Encounter type "{encounter_type.value}" is procedural in nature',
        )
    elif has_coded_procedures:
        result = ClassificationResult(
            ServiceClassification.PROCEDURAL,
            90,
            "Procedure codes documented in encounter",
        )
    elif encounter_type in EM_TYPES:
        result = ClassificationResult(
            ServiceClassification.EVALUATION_MANAGEMENT,
            95,
            f'Encounter type "{encounter_type.value}" is evaluation/management',
        )
    else:
        result = ClassificationResult(
            ServiceClassification.UNKNOWN,
            50,
            "Unable to definitively classify encounter type",
        )
        result.review_flags.append(
            ReviewFlag(
                ReviewReason.UNKNOWN_CLASSIFICATION,
                f'Encounter type "{encounter.encounter_type}" requires manual classification',
                NODE_ID,
            )
        )

    result.place_of_service = pos_check.code
    if not pos_check.valid:
        result.confidence = max(result.confidence - POS_MISMATCH_PENALTY, 0)
        result.rationale = f"{result.rationale}; {pos_check.message}"
        result.review_flags.append(
            ReviewFlag(ReviewReason.PLACE_OF_SERVICE, pos_check.message, NODE_ID)
        )
        logger.warning(f"Encounter {encounter.encounter_id}: {pos_check.message}")
    else:
        result.rationale = f"{result.rationale} at POS {pos_check.code}"

    logger.info(
        f"Encounter {encounter.encounter_id} classified as {result.classification.value} "
        f"(confidence {result.confidence})"
    )
    return result
