"""
Pydantic Schemas for the Billing API.

Request bodies mirror the encounter records supplied by the scheduling
and charting collaborators; responses carry the claim, the 837P text and
the decision trace.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from medbill.core.enums import (
    CodeSystem,
    DataReviewDepth,
    Gender,
    RateSource,
    RiskLevel,
)
from medbill.services.billing.records import (
    Address,
    CoverageRecord,
    DocumentationElements,
    DocumentedDiagnosis,
    DocumentedProcedure,
    Encounter,
    EncounterFlags,
    PatientRecord,
    PayerRecord,
    ProviderRecord,
)


# =============================================================================
# Encounter Request
# =============================================================================


class AddressIn(BaseModel):
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None

    def to_record(self) -> Address:
        return Address(**self.model_dump())


class PatientIn(BaseModel):
    patient_id: str = Field(..., min_length=1)
    first_name: str
    last_name: str
    member_id: str
    date_of_birth: Optional[date] = None
    gender: Gender = Gender.UNKNOWN
    address: Optional[AddressIn] = None
    is_new_patient: bool = False

    def to_record(self) -> PatientRecord:
        data = self.model_dump(exclude={"address"})
        return PatientRecord(**data, address=self.address.to_record() if self.address else None)


class CoverageIn(BaseModel):
    payer_id: str = Field(..., min_length=1)
    policy_number: str
    is_active: bool = True
    effective_date: Optional[date] = None
    termination_date: Optional[date] = None
    requires_prior_authorization: bool = False
    group_number: Optional[str] = None

    def to_record(self) -> CoverageRecord:
        return CoverageRecord(**self.model_dump())


class ProviderIn(BaseModel):
    provider_id: str = Field(..., min_length=1)
    npi: Optional[str] = Field(None, description="10-digit NPI")
    organization_name: Optional[str] = None
    tax_id: Optional[str] = None
    taxonomy_code: Optional[str] = None
    address: Optional[AddressIn] = None

    def to_record(self) -> ProviderRecord:
        data = self.model_dump(exclude={"address"})
        return ProviderRecord(**data, address=self.address.to_record() if self.address else None)


class PayerIn(BaseModel):
    payer_id: str = Field(..., min_length=1)
    name: str


class ProcedureIn(BaseModel):
    description: str = ""
    code: Optional[str] = None
    units: int = Field(default=1, ge=1)
    modifiers: list[str] = Field(default_factory=list, max_length=4)


class DiagnosisIn(BaseModel):
    code: str = ""
    description: str = ""
    is_principal: bool = False


class DocumentationIn(BaseModel):
    history: Optional[str] = None
    exam: Optional[str] = None
    problem_count: int = Field(default=0, ge=0)
    data_reviewed: Optional[DataReviewDepth] = None
    risk: Optional[RiskLevel] = None
    total_minutes: Optional[int] = Field(None, ge=0)
    counseling_minutes: Optional[int] = Field(None, ge=0)
    notes: str = ""


class EncounterRequest(BaseModel):
    """Encounter to bill."""

    encounter_id: str = Field(..., min_length=1)
    patient_id: str
    provider_id: str
    payer_id: str
    service_date: Optional[date] = None
    encounter_type: str = Field(..., description="office_visit, telehealth, surgery, ...")
    place_of_service: Optional[str] = Field(None, max_length=2)

    patient: Optional[PatientIn] = None
    coverage: Optional[CoverageIn] = None
    provider: Optional[ProviderIn] = None
    payer: Optional[PayerIn] = None
    authorization_number: Optional[str] = None

    procedures: list[ProcedureIn] = Field(default_factory=list)
    diagnoses: list[DiagnosisIn] = Field(default_factory=list)
    documentation: DocumentationIn = Field(default_factory=DocumentationIn)
    flags: dict[str, bool] = Field(default_factory=dict, description="Circumstance flags, e.g. bilateral")
    ccm_minutes: Optional[int] = Field(None, ge=0)

    @field_validator("flags")
    @classmethod
    def validate_flags(cls, v: dict[str, bool]) -> dict[str, bool]:
        known = set(EncounterFlags.__dataclass_fields__)
        unknown = sorted(set(v) - known)
        if unknown:
            raise ValueError(f"Unknown encounter flags: {', '.join(unknown)}")
        return v

    def to_encounter(self) -> Encounter:
        return Encounter(
            encounter_id=self.encounter_id,
            patient_id=self.patient_id,
            provider_id=self.provider_id,
            payer_id=self.payer_id,
            service_date=self.service_date,
            encounter_type=self.encounter_type,
            place_of_service=self.place_of_service,
            patient=self.patient.to_record() if self.patient else None,
            coverage=self.coverage.to_record() if self.coverage else None,
            provider=self.provider.to_record() if self.provider else None,
            payer=PayerRecord(**self.payer.model_dump()) if self.payer else None,
            authorization_number=self.authorization_number,
            procedures=[DocumentedProcedure(**p.model_dump()) for p in self.procedures],
            diagnoses=[DocumentedDiagnosis(**d.model_dump()) for d in self.diagnoses],
            documentation=DocumentationElements(**self.documentation.model_dump()),
            flags=EncounterFlags(**self.flags),
            ccm_minutes=self.ccm_minutes,
        )


# =============================================================================
# Claim Response
# =============================================================================


class ClaimLineOut(BaseModel):
    line_number: int
    procedure_code: str
    modifiers: list[str]
    units: int
    charge_amount: Decimal
    diagnosis_pointers: list[int]
    rate_source: RateSource


class ReviewFlagOut(BaseModel):
    reason: str
    message: str
    node_id: Optional[str] = None


class NodeOut(BaseModel):
    node_id: str
    name: str
    status: str
    confidence: Optional[int] = None
    rationale: str = ""
    timestamp: datetime


class ClaimResponse(BaseModel):
    """Generated claim with its 837P interchange."""

    claim_id: str
    encounter_id: str
    status: str
    outcome: str
    requires_manual_review: bool
    place_of_service: str
    diagnoses: list[str]
    lines: list[ClaimLineOut]
    total_charge: Decimal
    isa_control_number: str
    segment_count: int
    x12: str
    review_flags: list[ReviewFlagOut] = Field(default_factory=list)
    nodes: list[NodeOut] = Field(default_factory=list)
    steps: list[dict[str, Any]] = Field(default_factory=list)


# =============================================================================
# Fee Lookup
# =============================================================================


class FeeLookupRequest(BaseModel):
    code_system: CodeSystem = CodeSystem.CPT
    code: str = Field(..., min_length=1, max_length=10)
    modifiers: list[str] = Field(default_factory=list, max_length=4)
    payer_id: Optional[str] = None
    provider_id: Optional[str] = None
    service_date: Optional[date] = None


class TierAttemptOut(BaseModel):
    rate_source: RateSource
    outcome: str
    detail: str = ""


class FeeLookupResponse(BaseModel):
    code_system: CodeSystem
    code: str
    modifiers: list[str]
    price: Decimal
    rate_source: RateSource
    schedule_id: Optional[str] = None
    unit: str = "UN"
    attempts: list[TierAttemptOut] = Field(default_factory=list)
