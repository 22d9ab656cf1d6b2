"""
Pytest Configuration and Fixtures.
Shared test fixtures for all test modules.
"""

from datetime import date
from decimal import Decimal

import pytest
import pytest_asyncio

from medbill.core.config import BillingSettings
from medbill.core.enums import (
    CodeStatus,
    CodeSystem,
    DataReviewDepth,
    FeeScheduleKind,
    Gender,
    RateSource,
    RiskLevel,
)
from medbill.db.connection import create_engine, create_session_maker, init_db
from medbill.services.billing.audit import InMemoryAuditEmitter
from medbill.services.billing.code_tables import CodeEntry, InMemoryCodeTable
from medbill.services.billing.fee_resolver import FeeResolver, InMemoryFeeScheduleSource
from medbill.services.billing.records import (
    Address,
    Claim,
    ClaimLine,
    ControlNumbers,
    CoverageRecord,
    DocumentationElements,
    DocumentedDiagnosis,
    Encounter,
    PatientRecord,
    PayerRecord,
    ProviderRecord,
)

SERVICE_DATE = date(2025, 3, 14)
VALID_NPI = "1234567893"
PROVIDER_ID = "PRV-001"
PAYER_ID = "aetna"


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture
def billing_settings():
    """Default settings, isolated from any .env file."""
    return BillingSettings(_env_file=None)


@pytest.fixture
def full_path_settings():
    """Settings with the fast path disabled so nodes C-F always run."""
    return BillingSettings(_env_file=None, FAST_PATH_ENABLED=False)


# =============================================================================
# Parties and Encounters
# =============================================================================


@pytest.fixture
def provider():
    return ProviderRecord(
        provider_id=PROVIDER_ID,
        npi=VALID_NPI,
        organization_name="Acme Family Clinic",
        tax_id="123456789",
        taxonomy_code="207Q00000X",
        address=Address("100 Main St", None, "Springfield", "IL", "62701"),
    )


@pytest.fixture
def patient():
    return PatientRecord(
        patient_id="PAT-001",
        first_name="Jane",
        last_name="Doe",
        member_id="MBR123456",
        date_of_birth=date(1970, 5, 20),
        gender=Gender.FEMALE,
        address=Address("42 Elm St", "Apt 3", "Springfield", "IL", "62704"),
    )


@pytest.fixture
def coverage():
    return CoverageRecord(
        payer_id=PAYER_ID,
        policy_number="POL-778899",
        effective_date=date(2025, 1, 1),
        termination_date=date(2025, 12, 31),
        group_number="GRP-100",
    )


@pytest.fixture
def payer():
    return PayerRecord(payer_id=PAYER_ID, name="Aetna")


@pytest.fixture
def documentation():
    """Complete documentation scoring MDM level 3."""
    return DocumentationElements(
        history="Interval history, medication review",
        exam="Focused cardiovascular and respiratory exam",
        problem_count=2,
        data_reviewed=DataReviewDepth.LIMITED,
        risk=RiskLevel.LOW,
    )


@pytest.fixture
def make_encounter(patient, coverage, provider, payer, documentation):
    """Factory for a routine established-patient office visit; keyword arguments override fields."""

    def _make(**overrides) -> Encounter:
        values = dict(
            encounter_id="ENC-1001",
            patient_id=patient.patient_id,
            provider_id=provider.provider_id,
            payer_id=PAYER_ID,
            service_date=SERVICE_DATE,
            encounter_type="office_visit",
            place_of_service="11",
            patient=patient,
            coverage=coverage,
            provider=provider,
            payer=payer,
            diagnoses=[
                DocumentedDiagnosis("E11.9", "Type 2 diabetes mellitus without complications", True),
                DocumentedDiagnosis("I10", "Essential (primary) hypertension"),
            ],
            documentation=documentation,
        )
        values.update(overrides)
        return Encounter(**values)

    return _make


@pytest.fixture
def make_claim(patient, coverage, provider, payer):
    """Factory for an assembled two-line claim (99213-25 and 20610); keyword arguments override fields."""

    def _make(**overrides) -> Claim:
        values = dict(
            claim_id="CLM0000000001",
            encounter_id="ENC-1001",
            service_date=SERVICE_DATE,
            place_of_service="11",
            diagnoses=["E11.9", "I10"],
            lines=[
                ClaimLine(1, "99213", Decimal("95.00"), modifiers=("25",), rate_source=RateSource.CONTRACTED),
                ClaimLine(2, "20610", Decimal("85.00"), diagnosis_pointers=(2, 1), rate_source=RateSource.CONTRACTED),
            ],
            patient=patient,
            provider=provider,
            payer=payer,
            coverage=coverage,
            control_numbers=ControlNumbers(isa=1, gs=1, st=1),
        )
        values.update(overrides)
        return Claim(**values)

    return _make


# =============================================================================
# Code Table and Fee Schedules
# =============================================================================


def _cpt(code, desc, work=None, pe=None, mp=None, status=CodeStatus.ACTIVE):
    def rvu(v):
        return Decimal(v) if v is not None else None

    return CodeEntry(
        code_system=CodeSystem.CPT,
        code=code,
        long_desc=desc,
        short_desc=desc[:28],
        status=status,
        effective_from=date(2020, 1, 1),
        work_rvu=rvu(work),
        practice_rvu=rvu(pe),
        malpractice_rvu=rvu(mp),
    )


def _icd(code, desc):
    return CodeEntry(code_system=CodeSystem.ICD10, code=code, long_desc=desc, short_desc=desc[:28])


@pytest.fixture
def code_table():
    return InMemoryCodeTable(
        [
            _cpt("99202", "Office or other outpatient visit, new patient, straightforward MDM", "0.93", "0.98", "0.07"),
            _cpt("99203", "Office or other outpatient visit, new patient, low MDM", "1.60", "1.20", "0.10"),
            _cpt("99204", "Office or other outpatient visit, new patient, moderate MDM", "2.60", "1.60", "0.20"),
            _cpt("99211", "Office or other outpatient visit, established patient, minimal", "0.18", "0.40", "0.01"),
            _cpt("99212", "Office or other outpatient visit, established patient, straightforward MDM", "0.70", "0.80", "0.05"),
            _cpt("99213", "Office or other outpatient visit, established patient, low MDM", "1.30", "1.10", "0.10"),
            _cpt("99214", "Office or other outpatient visit, established patient, moderate MDM", "1.92", "1.40", "0.12"),
            _cpt("99215", "Office or other outpatient visit, established patient, high MDM", "2.80", "1.80", "0.20"),
            _cpt("99417", "Prolonged outpatient evaluation and management service, each 15 minutes"),
            _cpt("20610", "Arthrocentesis, aspiration and/or injection, major joint or bursa", "0.79", "0.90", "0.08"),
            _cpt("93000", "Electrocardiogram, routine ECG with at least 12 leads; with interpretation and report"),
            _cpt("27447", "Arthroplasty, knee, condyle and plateau; medial and lateral compartments"),
            _cpt(
                "20005",
                "Incision and drainage of soft tissue abscess, subfascial",
                status=CodeStatus.INACTIVE,
            ),
            _icd("E11.9", "Type 2 diabetes mellitus without complications"),
            _icd("I10", "Essential (primary) hypertension"),
            _icd("Z00.00", "Encounter for general adult medical examination without abnormal findings"),
            _icd("Z59.0", "Homelessness"),
            _icd("Z59.3", "Food insecurity"),
            _icd("M17.11", "Unilateral primary osteoarthritis, right knee"),
            _icd("R07.9", "Chest pain, unspecified"),
        ]
    )


@pytest.fixture
def fee_source():
    """Contracted Aetna schedule for the clinic plus its chargemaster."""
    source = InMemoryFeeScheduleSource()
    source.add_schedule(
        "aetna-acme-2025",
        FeeScheduleKind.CONTRACTED,
        payer_id=PAYER_ID,
        provider_id=PROVIDER_ID,
        effective_date=date(2025, 1, 1),
        expiry_date=date(2025, 12, 31),
    )
    source.add_entry("aetna-acme-2025", "99213", "110.00")
    source.add_entry("aetna-acme-2025", "99213", "95.00", modifiers=("25",))
    source.add_entry("aetna-acme-2025", "99214", "160.00")
    source.add_entry("aetna-acme-2025", "99214", "140.00", modifiers=("25",))
    source.add_entry("aetna-acme-2025", "20610", "85.00")

    source.add_schedule(
        "acme-chargemaster",
        FeeScheduleKind.CHARGEMASTER,
        provider_id=PROVIDER_ID,
        effective_date=date(2024, 1, 1),
    )
    source.add_entry("acme-chargemaster", "93000", "45.00")
    source.add_entry("acme-chargemaster", "99490", "62.00")
    return source


@pytest.fixture
def audit():
    return InMemoryAuditEmitter()


@pytest.fixture
def fee_resolver(fee_source, code_table, billing_settings, audit):
    return FeeResolver.build(fee_source, code_table=code_table, settings=billing_settings, audit=audit)


# =============================================================================
# Database
# =============================================================================


@pytest_asyncio.fixture
async def session_maker():
    """Session factory over a fresh in-memory SQLite database."""
    engine = create_engine("sqlite+aiosqlite:///:memory:")
    await init_db(engine)
    yield create_session_maker(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def file_session_maker(tmp_path):
    """Session factory over a file-backed SQLite database, one connection per session."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    await init_db(engine)
    yield create_session_maker(engine)
    await engine.dispose()


# Configure pytest markers
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "api: mark test as an API test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
