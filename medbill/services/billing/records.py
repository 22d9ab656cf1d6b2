"""
Billing Domain Records.

Plain dataclasses passed between the decision engine, reconciler,
assembler and X12 serializer. Encounter and its parts are supplied by
external collaborators and treated as read-only here.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from medbill.core.enums import (
    ClaimStatus,
    CodeCategory,
    CodeSource,
    CodeSystem,
    DataReviewDepth,
    DecisionOutcome,
    DenialReason,
    Gender,
    NodeStatus,
    RateSource,
    ReviewReason,
    RiskLevel,
    ServiceClassification,
)

CENTS = Decimal("0.01")


# =============================================================================
# Parties
# =============================================================================


@dataclass
class Address:
    """Postal address; every part optional."""

    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None


@dataclass
class PatientRecord:
    """Patient as known to the practice management collaborator."""

    patient_id: str
    first_name: str
    last_name: str
    member_id: str
    date_of_birth: Optional[date] = None
    gender: Gender = Gender.UNKNOWN
    address: Optional[Address] = None
    is_new_patient: bool = False


@dataclass
class CoverageRecord:
    """Insurance policy covering the patient."""

    payer_id: str
    policy_number: str
    is_active: bool = True
    effective_date: Optional[date] = None
    termination_date: Optional[date] = None
    requires_prior_authorization: bool = False
    group_number: Optional[str] = None


@dataclass
class ProviderRecord:
    """Billing provider."""

    provider_id: str
    npi: Optional[str] = None
    organization_name: Optional[str] = None
    tax_id: Optional[str] = None
    taxonomy_code: Optional[str] = None
    address: Optional[Address] = None


@dataclass
class PayerRecord:
    """Destination payer."""

    payer_id: str
    name: str


# =============================================================================
# Encounter
# =============================================================================


@dataclass
class DocumentedProcedure:
    """Procedure written in the encounter, with or without a code."""

    description: str = ""
    code: Optional[str] = None
    units: int = 1
    modifiers: list[str] = field(default_factory=list)


@dataclass
class DocumentedDiagnosis:
    """Diagnosis written in the encounter; code may be blank when only a term was charted."""

    code: str = ""
    description: str = ""
    is_principal: bool = False


@dataclass
class DocumentationElements:
    """Inputs to E/M leveling and documentation scoring."""

    history: Optional[str] = None
    exam: Optional[str] = None
    problem_count: int = 0
    data_reviewed: Optional[DataReviewDepth] = None
    risk: Optional[RiskLevel] = None
    total_minutes: Optional[int] = None
    counseling_minutes: Optional[int] = None
    notes: str = ""

    @property
    def counseling_fraction(self) -> float:
        """Share of total time spent counseling/coordinating care."""
        if not self.total_minutes or not self.counseling_minutes:
            return 0.0
        return self.counseling_minutes / self.total_minutes

    @property
    def has_mdm(self) -> bool:
        return self.problem_count > 0 or self.data_reviewed is not None or self.risk is not None


@dataclass
class EncounterFlags:
    """Structured circumstance flags set by the charting collaborator."""

    em_with_procedure: bool = False
    bilateral: bool = False
    distinct_procedure: bool = False
    separate_encounter: bool = False
    separate_structure: bool = False
    separate_practitioner: bool = False
    unusual_non_overlapping: bool = False
    repeat_same_provider: bool = False
    repeat_different_provider: bool = False
    repeat_lab_test: bool = False
    telehealth: bool = False
    telehealth_async: bool = False
    telehealth_gt: bool = False
    professional_component: bool = False
    technical_component: bool = False
    left_side: bool = False
    right_side: bool = False
    reduced_service: bool = False
    discontinued: bool = False
    assistant_surgeon: bool = False


@dataclass
class Encounter:
    """A clinical encounter to be billed."""

    encounter_id: str
    patient_id: str
    provider_id: str
    payer_id: str
    service_date: Optional[date]
    encounter_type: str
    place_of_service: Optional[str] = None

    patient: Optional[PatientRecord] = None
    coverage: Optional[CoverageRecord] = None
    provider: Optional[ProviderRecord] = None
    payer: Optional[PayerRecord] = None
    authorization_number: Optional[str] = None

    procedures: list[DocumentedProcedure] = field(default_factory=list)
    diagnoses: list[DocumentedDiagnosis] = field(default_factory=list)
    documentation: DocumentationElements = field(default_factory=DocumentationElements)
    flags: EncounterFlags = field(default_factory=EncounterFlags)
    ccm_minutes: Optional[int] = None  # care-management time aggregated for the period

    @property
    def is_new_patient(self) -> bool:
        return bool(self.patient and self.patient.is_new_patient)


# =============================================================================
# Codes
# =============================================================================


@dataclass
class CandidateCode:
    """
    One code proposed by one source.

    Procedure candidates may carry up to four modifiers, a unit count
    and the diagnosis codes they support (empty means the principal).
    """

    system: CodeSystem
    code: str
    description: str = ""
    confidence: int = 0
    source: CodeSource = CodeSource.DECISION_ENGINE
    rationale: str = ""
    is_principal: bool = False
    modifiers: tuple[str, ...] = ()
    units: int = 1
    supports: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not 0 <= self.confidence <= 100:
            raise ValueError(f"confidence must be 0-100, got {self.confidence}")
        if len(self.modifiers) > 4:
            raise ValueError(f"at most 4 modifiers allowed on {self.code}")
        if self.units < 1:
            raise ValueError(f"units must be positive on {self.code}")
        self.code = self.code.strip().upper()
        self.modifiers = tuple(m.strip().upper() for m in self.modifiers if m and m.strip())

    @property
    def category(self) -> CodeCategory:
        if self.system.is_procedure:
            return CodeCategory.PROCEDURE
        if self.is_principal:
            return CodeCategory.PRINCIPAL_DIAGNOSIS
        return CodeCategory.SECONDARY_DIAGNOSIS

    @property
    def key(self) -> tuple[str, frozenset[str]]:
        """Identity used for de-duplication: (code, modifier set)."""
        return (self.code, frozenset(self.modifiers))


@dataclass
class ReconciledCodeSet:
    """Single authoritative code set for one encounter."""

    principal_diagnosis: CandidateCode
    secondary_diagnoses: list[CandidateCode] = field(default_factory=list)
    procedures: list[CandidateCode] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.principal_diagnosis.system != CodeSystem.ICD10:
            raise ValueError("principal diagnosis must be an ICD-10 code")
        if not self.procedures:
            raise ValueError("reconciled code set needs at least one procedure")
        diagnosis_codes = self.diagnosis_codes
        if len(set(diagnosis_codes)) != len(diagnosis_codes):
            raise ValueError("duplicate diagnosis codes in reconciled set")
        keys = [p.key for p in self.procedures]
        if len(set(keys)) != len(keys):
            raise ValueError("duplicate (code, modifier set) pairs in reconciled set")

    @property
    def diagnoses(self) -> list[CandidateCode]:
        """Principal first, then secondaries in order."""
        return [self.principal_diagnosis, *self.secondary_diagnoses]

    @property
    def diagnosis_codes(self) -> list[str]:
        return [d.code for d in self.diagnoses]


# =============================================================================
# Decision Trace
# =============================================================================


@dataclass
class ReviewFlag:
    """Reason attached to a manual-review routing."""

    reason: ReviewReason
    message: str
    node_id: Optional[str] = None

    def to_dict(self) -> dict[str, Optional[str]]:
        return {"reason": self.reason.value, "message": self.message, "node_id": self.node_id}


@dataclass
class NodeResult:
    """Trace entry for one decision node."""

    node_id: str
    name: str
    status: NodeStatus
    confidence: Optional[int] = None
    rationale: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class FeeQuote:
    """Price for one (code, modifier set) and the tier that produced it."""

    code_system: CodeSystem
    code: str
    modifiers: tuple[str, ...]
    price: Decimal
    rate_source: RateSource
    schedule_id: Optional[str] = None
    unit: str = "UN"
    tiers_tried: list[RateSource] = field(default_factory=list)

    @property
    def key(self) -> tuple[str, frozenset[str]]:
        return (self.code, frozenset(self.modifiers))


@dataclass
class DecisionResult:
    """Outcome of the decision engine for one encounter."""

    encounter_id: str
    outcome: DecisionOutcome
    classification: ServiceClassification = ServiceClassification.UNKNOWN
    place_of_service: Optional[str] = None
    candidates: list[CandidateCode] = field(default_factory=list)
    nodes: list[NodeResult] = field(default_factory=list)
    review_flags: list[ReviewFlag] = field(default_factory=list)
    fee_quotes: list[FeeQuote] = field(default_factory=list)
    modifier_rationale: dict[str, str] = field(default_factory=dict)
    denial_reason: Optional[DenialReason] = None
    fast_path_scenario: Optional[str] = None
    is_unlisted_procedure: bool = False
    documentation_score: Optional[int] = None
    missing_elements: list[str] = field(default_factory=list)

    @property
    def requires_manual_review(self) -> bool:
        return self.outcome == DecisionOutcome.MANUAL_REVIEW_REQUIRED

    @property
    def confidence(self) -> Optional[int]:
        """Lowest confidence reported by any node."""
        values = [n.confidence for n in self.nodes if n.confidence is not None]
        return min(values) if values else None


# =============================================================================
# Claim
# =============================================================================


@dataclass
class ClaimLine:
    """One service line; diagnosis pointers are 1-based claim positions."""

    line_number: int
    procedure_code: str
    charge_amount: Decimal
    code_system: CodeSystem = CodeSystem.CPT
    modifiers: tuple[str, ...] = ()
    units: int = 1
    diagnosis_pointers: tuple[int, ...] = (1,)
    rate_source: RateSource = RateSource.DEFAULT


@dataclass
class ControlNumbers:
    """Envelope control numbers issued by the sequencer."""

    isa: int
    gs: int
    st: int

    @property
    def isa_text(self) -> str:
        return str(self.isa).zfill(9)

    @property
    def gs_text(self) -> str:
        return str(self.gs).zfill(9)

    @property
    def st_text(self) -> str:
        return str(self.st).zfill(4)


@dataclass
class Claim:
    """Assembled professional claim."""

    claim_id: str
    encounter_id: str
    service_date: date
    place_of_service: str
    diagnoses: list[str]
    lines: list[ClaimLine]
    patient: Optional[PatientRecord] = None
    provider: Optional[ProviderRecord] = None
    payer: Optional[PayerRecord] = None
    coverage: Optional[CoverageRecord] = None
    status: ClaimStatus = ClaimStatus.GENERATED
    control_numbers: Optional[ControlNumbers] = None
    review_flags: list[ReviewFlag] = field(default_factory=list)

    @property
    def total_charge(self) -> Decimal:
        """Exact sum of line charges."""
        return sum((line.charge_amount for line in self.lines), Decimal("0.00")).quantize(CENTS)

    @property
    def requires_manual_review(self) -> bool:
        return bool(self.review_flags)
