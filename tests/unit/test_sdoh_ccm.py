"""
Unit Tests for SDOH complexity scoring and CCM code determination
"""

from decimal import Decimal

import pytest

from medbill.core.enums import CCMTier, CodeSource, DecisionOutcome, SDOHSeverity
from medbill.services.billing.ccm import determine_ccm_codes
from medbill.services.billing.records import DecisionResult
from medbill.services.billing.sdoh import (
    InMemorySDOHFactorProvider,
    SDOHFactor,
    SDOHSuggestionSource,
    assess,
    complexity_score,
    recommend_tier,
)


def _codes(lines):
    return [(line.code, line.units) for line in lines]


# =============================================================================
# SDOH
# =============================================================================


@pytest.mark.unit
class TestSDOHScoring:
    """Test the weighted complexity score"""

    def test_homelessness_and_food_insecurity(self):
        """Test two moderate factors reach the complex tier"""
        factors = [
            SDOHFactor("Z59.0", SDOHSeverity.MODERATE),
            SDOHFactor("Z59.3", SDOHSeverity.MODERATE),
        ]
        assessment = assess(factors)
        assert assessment.score == Decimal("7.5")
        assert assessment.tier == CCMTier.COMPLEX

    def test_standard_tier(self):
        """Test a single mild food insecurity factor"""
        factors = [SDOHFactor("Z59.3")]
        assert complexity_score(factors) == Decimal("2.0")
        assert recommend_tier(complexity_score(factors), factors) == CCMTier.STANDARD

    def test_not_eligible(self):
        """Test social isolation alone is below the standard threshold"""
        assert assess([SDOHFactor("Z60.2")]).tier == CCMTier.NOT_ELIGIBLE
        assert assess([]).tier == CCMTier.NOT_ELIGIBLE

    def test_unknown_code_default_weight(self):
        """Test unlisted Z-codes weigh 1"""
        assert complexity_score([SDOHFactor("z65.8", SDOHSeverity.SEVERE)]) == Decimal("2.0")

    def test_score_is_unrounded(self):
        """Test fractional scores are kept as-is"""
        assert complexity_score([SDOHFactor("Z60.2", SDOHSeverity.MODERATE)]) == Decimal("1.5")

    def test_candidates(self):
        """Test each factor becomes an SDOH secondary diagnosis"""
        candidates = assess([SDOHFactor("Z59.0", SDOHSeverity.SEVERE)]).to_candidates()
        assert len(candidates) == 1
        assert candidates[0].code == "Z59.0"
        assert candidates[0].description == "Homelessness"
        assert candidates[0].source == CodeSource.SDOH
        assert candidates[0].is_principal is False

    @pytest.mark.asyncio
    async def test_suggestion_source(self, make_encounter):
        """Test the suggestion source reports the tier"""
        provider = InMemorySDOHFactorProvider()
        provider.add("PAT-001", SDOHFactor("Z59.0", SDOHSeverity.MODERATE), SDOHFactor("Z59.3", SDOHSeverity.MODERATE))
        source = SDOHSuggestionSource(provider)

        encounter = make_encounter()
        decision = DecisionResult(encounter_id=encounter.encounter_id, outcome=DecisionOutcome.COMPLETED)
        suggestion = await source.suggest(encounter, decision)
        assert suggestion.ccm_tier == CCMTier.COMPLEX
        assert [c.code for c in suggestion.candidates] == ["Z59.0", "Z59.3"]
        assert suggestion.notes == ["SDOH complexity score 7.5"]


# =============================================================================
# CCM
# =============================================================================


@pytest.mark.unit
class TestCCMCodes:
    """Test CCM minute thresholds"""

    def test_complex_base_only(self):
        """Test 75 complex minutes bill 99487 alone"""
        assert _codes(determine_ccm_codes(75, CCMTier.COMPLEX)) == [("99487", 1)]

    def test_complex_with_addon(self):
        """Test 95 complex minutes add one 99489"""
        assert _codes(determine_ccm_codes(95, CCMTier.COMPLEX)) == [("99487", 1), ("99489", 1)]

    def test_complex_tier_under_sixty_minutes(self):
        """Test the complex tier falls back to standard codes below 60 minutes"""
        assert _codes(determine_ccm_codes(45, CCMTier.COMPLEX)) == [("99490", 1), ("99439", 1)]

    def test_standard_with_addon(self):
        """Test 45 minutes bill 99490 and one 99439"""
        assert _codes(determine_ccm_codes(45, CCMTier.STANDARD)) == [("99490", 1), ("99439", 1)]

    def test_standard_addon_cap(self):
        """Test at most two 99439 units"""
        assert _codes(determine_ccm_codes(70, None)) == [("99490", 1), ("99439", 2)]
        assert _codes(determine_ccm_codes(200, CCMTier.STANDARD)) == [("99490", 1), ("99439", 2)]

    @pytest.mark.parametrize("minutes", [None, 0, 15, 19])
    def test_below_threshold(self, minutes):
        """Test under 20 minutes bills nothing"""
        assert determine_ccm_codes(minutes, CCMTier.COMPLEX) == []

    def test_line_source(self):
        """Test CCM lines come from the default source"""
        lines = determine_ccm_codes(20)
        assert lines[0].source == CodeSource.DEFAULT
        assert lines[0].confidence == 90
