"""
Node A - Eligibility and Authorization.

Checks, in order:
1. Patient record exists
2. Policy exists and is active
3. Policy payer matches the encounter payer
4. Service date falls inside the coverage window
5. Prior authorization, when required, has an authorization number
"""

import logging
from dataclasses import dataclass
from typing import Optional

from medbill.core.enums import DenialReason, NodeStatus
from medbill.core.errors import ValidationError
from medbill.services.billing.records import Encounter, NodeResult

logger = logging.getLogger(__name__)

NODE_ID = "NODE_A"
NODE_NAME = "Eligibility and Authorization Check"


@dataclass
class EligibilityResult:
    """Outcome of Node A."""

    eligible: bool
    denial_reason: Optional[DenialReason] = None
    message: str = ""

    def to_node_result(self) -> NodeResult:
        return NodeResult(
            node_id=NODE_ID,
            name=NODE_NAME,
            status=NodeStatus.PASSED if self.eligible else NodeStatus.FAILED,
            confidence=100 if self.eligible else 0,
            rationale=self.message,
        )


def require_encounter_fields(encounter: Encounter) -> None:
    """
    Reject encounters missing the identifiers the pipeline cannot default.

    Raises:
        ValidationError: On the first missing field
    """
    required = {
        "encounter_id": encounter.encounter_id,
        "patient_id": encounter.patient_id,
        "provider_id": encounter.provider_id,
        "payer_id": encounter.payer_id,
        "service_date": encounter.service_date,
        "encounter_type": encounter.encounter_type,
    }
    for field_name, value in required.items():
        if not value:
            raise ValidationError(
                f"Encounter is missing {field_name}",
                field=field_name,
                encounter_id=encounter.encounter_id or None,
            )


def check_eligibility(encounter: Encounter) -> EligibilityResult:
    """Run the Node A checks against the encounter's patient and coverage."""
    if encounter.patient is None:
        return _deny(DenialReason.NOT_FOUND, f"Patient {encounter.patient_id} not found")

    coverage = encounter.coverage
    if coverage is None:
        return _deny(DenialReason.INACTIVE_POLICY, "No insurance policy on file")

    if not coverage.is_active:
        return _deny(DenialReason.INACTIVE_POLICY, f"Policy {coverage.policy_number} is inactive")

    if coverage.payer_id.lower() != encounter.payer_id.lower():
        return _deny(
            DenialReason.PAYER_MISMATCH,
            f"Policy payer {coverage.payer_id} does not match encounter payer {encounter.payer_id}",
        )

    service_date = encounter.service_date
    if coverage.effective_date and service_date < coverage.effective_date:
        return _deny(
            DenialReason.INACTIVE_POLICY,
            f"Service date {service_date} precedes coverage start {coverage.effective_date}",
        )
    if coverage.termination_date and service_date > coverage.termination_date:
        return _deny(
            DenialReason.INACTIVE_POLICY,
            f"Service date {service_date} follows coverage end {coverage.termination_date}",
        )

    if coverage.requires_prior_authorization and not encounter.authorization_number:
        return _deny(DenialReason.AUTH_REQUIRED, "Prior authorization required but not obtained")

    return EligibilityResult(eligible=True, message="Patient has active coverage with payer")


def _deny(reason: DenialReason, message: str) -> EligibilityResult:
    logger.info(f"Eligibility denied ({reason.value}): {message}")
    return EligibilityResult(eligible=False, denial_reason=reason, message=message)
