"""
Unit Tests for fast-path scenario matching
"""

import pytest

from medbill.core.enums import DataReviewDepth, RiskLevel, ServiceClassification
from medbill.services.billing.fast_path import match_fast_path
from medbill.services.billing.records import (
    DocumentationElements,
    DocumentedProcedure,
    EncounterFlags,
)

EM = ServiceClassification.EVALUATION_MANAGEMENT


@pytest.mark.unit
class TestFastPathMatching:
    """Test scenario selection and penalties"""

    def test_routine_office_visit(self, make_encounter):
        """Test a clean established visit scores the base confidence"""
        match = match_fast_path(make_encounter(), EM)
        assert match.scenario.name == "routine_office_visit"
        assert match.scenario.cpt_code == "99213"
        assert match.confidence == 95
        assert match.penalties == []

    def test_telehealth_flag_allowed(self, make_encounter):
        """Test the telehealth flag is not a penalty for the telehealth scenario"""
        encounter = make_encounter(
            encounter_type="telehealth",
            place_of_service="02",
            flags=EncounterFlags(telehealth=True),
        )
        match = match_fast_path(encounter, EM)
        assert match.scenario.name == "telehealth_visit"
        assert match.scenario.modifiers == ("95",)
        assert match.confidence == 95

    def test_new_patient_penalty(self, make_encounter, patient):
        """Test a new patient drops below auto-approve"""
        patient.is_new_patient = True
        match = match_fast_path(make_encounter(patient=patient), EM)
        assert match.confidence == 85
        assert match.penalties == ["new patient"]

    def test_penalties_accumulate(self, make_encounter, documentation):
        """Test several penalties stack"""
        documentation.total_minutes = 45
        documentation.risk = RiskLevel.HIGH
        encounter = make_encounter(documentation=documentation, flags=EncounterFlags(bilateral=True))
        match = match_fast_path(encounter, EM)
        assert match.confidence == 65
        assert len(match.penalties) == 3

    def test_documented_code_recorded(self, make_encounter):
        """Test a clean visit documents the scenario code"""
        match = match_fast_path(make_encounter(), EM)
        assert match.documented_code == "99213"
        assert match.agrees_with_documentation is True

    def test_moderate_complexity_disagrees(self, make_encounter, documentation):
        """Test moderate MDM with three problems documents a higher level than the scenario"""
        documentation.problem_count = 3
        documentation.data_reviewed = DataReviewDepth.MODERATE
        documentation.risk = RiskLevel.MODERATE
        match = match_fast_path(make_encounter(documentation=documentation), EM)

        assert match.penalties == []
        assert match.documented_code == "99215"
        assert match.agrees_with_documentation is False

    def test_incomplete_documentation_penalty(self, make_encounter):
        """Test missing elements count against the scenario"""
        match = match_fast_path(make_encounter(documentation=DocumentationElements(problem_count=1)), EM)
        assert "incomplete documentation" in match.penalties

    def test_procedures_never_match(self, make_encounter):
        """Test encounters with procedures take the full path"""
        encounter = make_encounter(procedures=[DocumentedProcedure("Joint injection")])
        assert match_fast_path(encounter, EM) is None

    def test_procedural_classification(self, make_encounter):
        """Test only E/M classification is eligible"""
        assert match_fast_path(make_encounter(), ServiceClassification.PROCEDURAL) is None

    def test_unmatched_encounter_type(self, make_encounter):
        """Test types without a scenario"""
        assert match_fast_path(make_encounter(encounter_type="consultation"), EM) is None
