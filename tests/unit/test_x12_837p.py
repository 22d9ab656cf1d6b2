"""
Unit Tests for X12 837P generation and output validation

Tests:
- Envelope layout and control numbers
- Claim, diagnosis and service line segments
- Sanitization and provider fallbacks
- Structural output checks
"""

from dataclasses import replace
from datetime import datetime
from decimal import Decimal

import pytest

from medbill.core.config import BillingSettings
from medbill.core.errors import SerializationError
from medbill.services.billing.records import ClaimLine, ControlNumbers
from medbill.services.edi.x12_837_generator import X12837PGenerator
from medbill.services.edi.x12_base import (
    X12ParseError,
    X12Tokenizer,
    ensure_clean_element,
    format_x12_amount,
    sanitize_x12_text,
    strip_icd_decimal,
    validate_npi,
)
from medbill.services.edi.x12_validator import X12OutputValidator

GENERATED_AT = datetime(2025, 3, 15, 10, 30)


@pytest.fixture
def generator(billing_settings):
    return X12837PGenerator(settings=billing_settings)


def _segments(content):
    return [str(s) for s in X12Tokenizer().tokenize(content)]


def _find(content, prefix):
    return [s for s in _segments(content) if s.startswith(prefix)]


# =============================================================================
# Base Utilities
# =============================================================================


@pytest.mark.unit
class TestX12Utilities:
    """Test formatting helpers"""

    def test_sanitize_removes_separators(self):
        """Test reserved characters are stripped"""
        assert sanitize_x12_text(" Acme*Family~Clinic^ ") == "AcmeFamilyClinic"
        assert sanitize_x12_text(None) == ""

    def test_strip_icd_decimal(self):
        """Test HI codes carry no decimal point"""
        assert strip_icd_decimal("z59.0") == "Z590"
        assert strip_icd_decimal("I10") == "I10"

    def test_amount_format(self):
        """Test two decimal places"""
        assert format_x12_amount(Decimal("95")) == "95.00"
        assert format_x12_amount(Decimal("130.325")) == "130.33"

    @pytest.mark.parametrize("npi,expected", [("1234567893", True), ("1234567890", False), ("12345", False), (None, False)])
    def test_npi_check_digit(self, npi, expected):
        """Test Luhn validation with the 80840 prefix"""
        assert validate_npi(npi) is expected

    def test_dirty_element_rejected(self):
        """Test a separator inside an element raises"""
        with pytest.raises(SerializationError) as exc_info:
            ensure_clean_element("A*B", "NM1", 3)
        assert exc_info.value.segment_id == "NM1"
        assert exc_info.value.element_position == 3

    def test_tokenizer_requires_content(self):
        """Test empty input"""
        with pytest.raises(X12ParseError):
            X12Tokenizer().tokenize("")


# =============================================================================
# Generator
# =============================================================================


@pytest.mark.unit
class TestEnvelope:
    """Test ISA/GS/ST and trailers"""

    def test_isa_is_fixed_width(self, generator, make_claim):
        """Test ISA is 105 characters before the terminator"""
        content = generator.generate(make_claim(), generated_at=GENERATED_AT).content
        isa = content.split("~")[0]
        assert len(isa) == 105
        assert isa == "*".join(
            [
                "ISA", "00", " " * 10, "00", " " * 10,
                "ZZ", "MEDBILL".ljust(15), "ZZ", "CLEARINGHOUSE".ljust(15),
                "250315", "1030", "^", "00501", "000000001", "0", "P", ":",
            ]
        )

    def test_group_and_transaction_headers(self, generator, make_claim):
        """Test GS06 and GE02 are nine digits and ST02 is four digits"""
        numbers = ControlNumbers(isa=42, gs=17, st=3)
        content = generator.generate(make_claim(), numbers, GENERATED_AT).content
        assert _find(content, "GS*") == ["GS*HC*MEDBILL*CLEARINGHOUSE*20250315*1030*000000017*X*005010X222A1"]
        assert _find(content, "ST*") == ["ST*837*0003*005010X222A1"]
        assert _find(content, "GE*") == ["GE*1*000000017"]
        assert _find(content, "IEA*") == ["IEA*1*000000042"]

    def test_segment_count(self, generator, make_claim):
        """Test SE counts ST through SE inclusive"""
        interchange = generator.generate(make_claim(), generated_at=GENERATED_AT)
        assert interchange.segment_count == 28
        assert interchange.claim_count == 1
        assert _find(interchange.content, "SE*") == ["SE*28*0001"]

    def test_test_usage_indicator(self, make_claim):
        """Test ISA15 follows settings"""
        settings = BillingSettings(_env_file=None, X12_USAGE_INDICATOR="t")
        content = X12837PGenerator(settings=settings).generate(make_claim(), generated_at=GENERATED_AT).content
        assert content.split("~")[0].split("*")[15] == "T"

    def test_missing_control_numbers(self, generator, make_claim):
        """Test a claim without control numbers cannot be rendered"""
        with pytest.raises(SerializationError):
            generator.generate(make_claim(control_numbers=None))


@pytest.mark.unit
class TestClaimSegments:
    """Test loops 2010 through 2400"""

    def test_claim_and_diagnoses(self, generator, make_claim):
        """Test CLM and HI"""
        content = generator.generate(make_claim(), generated_at=GENERATED_AT).content
        assert _find(content, "CLM*") == ["CLM*CLM0000000001*180.00***11:B:1*Y*A*Y*Y"]
        assert _find(content, "HI*") == ["HI*BK:E119*BF:I10"]

    def test_service_lines(self, generator, make_claim):
        """Test SV1 composites, pointers and line dates"""
        content = generator.generate(make_claim(), generated_at=GENERATED_AT).content
        assert _find(content, "SV1*") == [
            "SV1*HC:99213:25*95.00*UN*1***1",
            "SV1*HC:20610*85.00*UN*1***2:1",
        ]
        assert _find(content, "LX*") == ["LX*1", "LX*2"]
        assert _find(content, "DTP*") == ["DTP*472*D8*20250314"] * 3

    def test_parties(self, generator, make_claim):
        """Test billing provider, subscriber and payer names"""
        content = generator.generate(make_claim(), generated_at=GENERATED_AT).content
        assert "NM1*85*2*Acme Family Clinic*****XX*1234567893" in _segments(content)
        assert "NM1*IL*1*Doe*Jane****MI*MBR123456" in _segments(content)
        assert "NM1*PR*2*Aetna*****PI*aetna" in _segments(content)
        assert "DMG*D8*19700520*F" in _segments(content)
        assert "REF*EI*123456789" in _segments(content)

    def test_free_text_is_sanitized(self, generator, make_claim, provider):
        """Test separators in names never split a segment"""
        claim = make_claim(provider=replace(provider, organization_name="Acme*Family~Clinic"))
        content = generator.generate(claim, generated_at=GENERATED_AT).content
        assert "NM1*85*2*AcmeFamilyClinic*****XX*1234567893" in _segments(content)
        assert X12OutputValidator().check(content).is_valid is True

    def test_provider_fallbacks(self, generator, make_claim):
        """Test sentinel values when the provider record is missing"""
        content = generator.generate(make_claim(provider=None), generated_at=GENERATED_AT).content
        assert "NM1*85*2*UNKNOWN PROVIDER*****XX*0000000000" in _segments(content)
        assert "PRV*BI*PXC*207Q00000X" in _segments(content)
        assert _find(content, "REF*") == []

    def test_missing_date_of_birth(self, generator, make_claim, patient):
        """Test the sentinel date of birth"""
        claim = make_claim(patient=replace(patient, date_of_birth=None))
        content = generator.generate(claim, generated_at=GENERATED_AT).content
        assert "DMG*D8*19000101*F" in _segments(content)

    def test_pointer_out_of_range(self, generator, make_claim):
        """Test a pointer past the diagnosis list"""
        claim = make_claim(lines=[ClaimLine(1, "99213", Decimal("110.00"), diagnosis_pointers=(3,))])
        with pytest.raises(SerializationError) as exc_info:
            generator.generate(claim)
        assert exc_info.value.segment_id == "SV1"

    def test_too_many_pointers(self, generator, make_claim):
        """Test at most four pointers per line"""
        claim = make_claim(
            diagnoses=["E11.9", "I10", "Z59.0", "Z59.3", "R07.9"],
            lines=[ClaimLine(1, "99213", Decimal("110.00"), diagnosis_pointers=(1, 2, 3, 4, 5))],
        )
        with pytest.raises(SerializationError):
            generator.generate(claim)

    def test_too_many_diagnoses(self, generator, make_claim):
        """Test HI carries at most twelve codes"""
        claim = make_claim(diagnoses=[f"Z59.{i}" for i in range(10)] + ["E11.9", "I10", "R07.9"])
        with pytest.raises(SerializationError) as exc_info:
            generator.generate(claim)
        assert exc_info.value.segment_id == "HI"


# =============================================================================
# Output Validation
# =============================================================================


@pytest.mark.unit
class TestOutputValidator:
    """Test structural checks"""

    @pytest.fixture
    def content(self, generator, make_claim):
        return generator.generate(make_claim(), generated_at=GENERATED_AT).content

    def test_generated_output_is_valid(self, content):
        """Test a generated interchange passes"""
        result = X12OutputValidator().validate(content)
        assert result.is_valid is True
        assert result.segment_count == 32

    def test_wrong_segment_count(self, content):
        """Test an SE count that disagrees with the segments"""
        result = X12OutputValidator().check(content.replace("SE*28*0001", "SE*27*0001"))
        assert result.is_valid is False
        assert any(e.startswith("SE segment count") for e in result.errors)

    def test_interchange_control_mismatch(self, content):
        """Test IEA must echo ISA13"""
        result = X12OutputValidator().check(content.replace("IEA*1*000000001", "IEA*1*000000002"))
        assert any(e.startswith("IEA control number") for e in result.errors)

    def test_missing_isa(self, content):
        """Test the first segment must be ISA"""
        result = X12OutputValidator().check(content[content.index("~") + 1:])
        assert "First segment must be ISA" in result.errors

    def test_unexpected_segment(self, content):
        """Test segments the writer never emits are reported"""
        result = X12OutputValidator().check(content.replace("~SE*", "~NTE*ADD*EXTRA~SE*"))
        assert any(e.startswith("Unexpected segment NTE") for e in result.errors)

    def test_validate_raises(self, content):
        """Test validate raises on the first error"""
        with pytest.raises(SerializationError):
            X12OutputValidator().validate(content.replace("SE*28*0001", "SE*27*0001"))
