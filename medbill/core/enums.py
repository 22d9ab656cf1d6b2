"""
Core Enumerations for the Billing Engine.

Value sets shared by the decision engine, reconciler, fee resolver,
X12 serializer and the persistence layer.
"""

from enum import Enum


# =============================================================================
# Encounter and Classification Enums
# =============================================================================


class EncounterType(str, Enum):
    """Encounter types reported by the scheduling/charting collaborator."""

    OFFICE_VISIT = "office_visit"
    TELEHEALTH = "telehealth"
    CONSULTATION = "consultation"
    EMERGENCY = "emergency"
    INPATIENT = "inpatient"
    SURGERY = "surgery"
    PROCEDURE = "procedure"
    LAB = "lab"
    RADIOLOGY = "radiology"
    OTHER = "other"


class ServiceClassification(str, Enum):
    """Node B output."""

    PROCEDURAL = "procedural"
    EVALUATION_MANAGEMENT = "evaluation_management"
    UNKNOWN = "unknown"


class DataReviewDepth(str, Enum):
    """Amount and complexity of data reviewed (MDM element)."""

    MINIMAL = "minimal"
    LIMITED = "limited"
    MODERATE = "moderate"
    EXTENSIVE = "extensive"


class RiskLevel(str, Enum):
    """Risk of complications or morbidity (MDM element)."""

    MINIMAL = "minimal"
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"


class EMMethod(str, Enum):
    """E/M leveling method."""

    TIME = "time"  # >50% counseling/coordination
    MDM = "mdm"  # Medical decision making (default)


# =============================================================================
# Coding Enums
# =============================================================================


class CodeSystem(str, Enum):
    """Code systems handled by the engine."""

    CPT = "CPT"
    HCPCS = "HCPCS"
    ICD10 = "ICD10"

    @property
    def is_procedure(self) -> bool:
        return self in (CodeSystem.CPT, CodeSystem.HCPCS)


class CodeSource(str, Enum):
    """Origin of a candidate code, strongest first."""

    DECISION_ENGINE = "decision_engine"
    AI = "ai"
    SDOH = "sdoh"
    DEFAULT = "default"

    @property
    def priority(self) -> int:
        """Lower number wins during reconciliation."""
        return _SOURCE_PRIORITY[self]


_SOURCE_PRIORITY = {
    CodeSource.DECISION_ENGINE: 0,
    CodeSource.AI: 1,
    CodeSource.SDOH: 2,
    CodeSource.DEFAULT: 3,
}


class CodeCategory(str, Enum):
    """Reconciliation category of a candidate code."""

    PRINCIPAL_DIAGNOSIS = "principal_diagnosis"
    SECONDARY_DIAGNOSIS = "secondary_diagnosis"
    PROCEDURE = "procedure"


class CodeStatus(str, Enum):
    """Reference table row status."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    DELETED = "deleted"


# =============================================================================
# Decision Outcome Enums
# =============================================================================


class DecisionOutcome(str, Enum):
    """Terminal states of the decision engine."""

    COMPLETED = "completed"
    MANUAL_REVIEW_REQUIRED = "manual_review_required"
    DENIED = "denied"


class DenialReason(str, Enum):
    """Fixed eligibility denial reasons (Node A)."""

    NOT_FOUND = "not-found"
    INACTIVE_POLICY = "inactive-policy"
    PAYER_MISMATCH = "payer-mismatch"
    AUTH_REQUIRED = "auth-required"


class NodeStatus(str, Enum):
    """Per-node result in the decision trace."""

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    REVIEW = "review"


class ReviewReason(str, Enum):
    """Why an encounter was routed to manual review."""

    LOW_CONFIDENCE = "low_confidence"
    UNLISTED_PROCEDURE = "unlisted_procedure"
    UNKNOWN_CLASSIFICATION = "unknown_classification"
    PLACE_OF_SERVICE = "place_of_service"
    MEDICAL_NECESSITY = "medical_necessity"
    INCOMPLETE_DOCUMENTATION = "incomplete_documentation"
    MISSING_PROVIDER_DATA = "missing_provider_data"


# =============================================================================
# Fee Enums
# =============================================================================


class RateSource(str, Enum):
    """Fee resolver tier that produced a price."""

    CONTRACTED = "contracted"  # Payer + provider schedule
    CHARGEMASTER = "chargemaster"  # Provider standard charge
    REFERENCE = "reference"  # Published reference rate (Medicare RBRVS)
    DEFAULT = "default"  # Fixed fallback amount


class FeeScheduleKind(str, Enum):
    """Kind of fee schedule row set."""

    CONTRACTED = "contracted"
    CHARGEMASTER = "chargemaster"
    REFERENCE = "reference"


# =============================================================================
# Claim Enums
# =============================================================================


class ClaimStatus(str, Enum):
    """Claim status lifecycle after generation."""

    GENERATED = "generated"
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    APPEALED = "appealed"
    RESUBMITTED = "resubmitted"
    PAID = "paid"


class Gender(str, Enum):
    """X12 DMG03 gender codes."""

    MALE = "M"
    FEMALE = "F"
    UNKNOWN = "U"


# =============================================================================
# SDOH / CCM Enums
# =============================================================================


class SDOHSeverity(str, Enum):
    """Severity of a social determinant factor."""

    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"


class CCMTier(str, Enum):
    """Chronic care management tier recommendation."""

    COMPLEX = "complex"
    STANDARD = "standard"
    NOT_ELIGIBLE = "not_eligible"


# =============================================================================
# Infrastructure Enums
# =============================================================================


class ControlNumberName(str, Enum):
    """X12 envelope counters."""

    ISA = "isa"
    GS = "gs"
    ST = "st"


class OverflowPolicy(str, Enum):
    """What a counter does when it passes its digit-width ceiling."""

    ERROR = "error"
    WRAP = "wrap"


class AuditEventType(str, Enum):
    """Events emitted to the audit/compliance collaborator."""

    MANUAL_REVIEW_FLAGGED = "manual_review_flagged"
    FEE_FALLBACK_USED = "fee_fallback_used"
    ELIGIBILITY_DENIED = "eligibility_denied"
    SUGGESTION_SOURCE_FAILED = "suggestion_source_failed"
    CLAIM_GENERATED = "claim_generated"


class WorkflowStepStatus(str, Enum):
    """Pipeline step status."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
