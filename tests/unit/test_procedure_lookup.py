"""
Unit Tests for Node C - Procedure CPT Lookup and the code table.
"""

from datetime import date
from decimal import Decimal

import pytest

from medbill.core.enums import CodeStatus, CodeSystem, NodeStatus, ReviewReason
from medbill.core.errors import UnlistedProcedure
from medbill.services.billing.code_tables import (
    CodeEntry,
    InMemoryCodeTable,
    score_description,
    tokenize_description,
)
from medbill.services.billing.procedure_lookup import (
    detect_code_system,
    ensure_listed,
    is_unlisted_code,
    lookup_procedure,
    lookup_procedures,
)
from medbill.services.billing.records import DocumentedProcedure

SERVICE_DATE = date(2025, 3, 14)


# =============================================================================
# Code Table
# =============================================================================


@pytest.mark.unit
class TestCodeTable:
    """Test in-memory code table behavior"""

    def test_tokenize_drops_stop_words(self):
        """Test stop words and punctuation are removed"""
        assert tokenize_description("Aspiration and/or injection, major joint") == {
            "aspiration",
            "injection",
            "major",
            "joint",
        }

    def test_score_is_query_coverage(self):
        """Test the score is the share of query tokens found"""
        tokens = tokenize_description("knee joint injection")
        assert score_description(tokens, "Arthrocentesis, aspiration and/or injection, major joint") == pytest.approx(2 / 3)

    def test_active_window(self):
        """Test effective dates bound activity"""
        entry = CodeEntry(
            CodeSystem.CPT,
            "99999",
            effective_from=date(2025, 1, 1),
            effective_to=date(2025, 6, 30),
        )
        assert entry.is_active_on(date(2025, 3, 1)) is True
        assert entry.is_active_on(date(2024, 12, 31)) is False
        assert entry.is_active_on(date(2025, 7, 1)) is False
        assert entry.is_active_on() is True

    def test_total_rvu(self):
        """Test RVU components are summed"""
        entry = CodeEntry(CodeSystem.CPT, "99213", work_rvu=Decimal("1.30"), practice_rvu=Decimal("1.10"))
        assert entry.total_rvu == Decimal("2.40")
        assert CodeEntry(CodeSystem.CPT, "99417").total_rvu is None

    @pytest.mark.asyncio
    async def test_search_skips_inactive(self, code_table):
        """Test inactive rows never match"""
        matches = await code_table.search(CodeSystem.CPT, "incision drainage abscess", on=SERVICE_DATE)
        assert all(m.entry.code != "20005" for m in matches)

    @pytest.mark.asyncio
    async def test_search_ranks_best_first(self, code_table):
        """Test the best overlap is returned first"""
        matches = await code_table.search(CodeSystem.CPT, "knee joint injection", on=SERVICE_DATE)
        assert matches[0].entry.code == "20610"

    @pytest.mark.asyncio
    async def test_get_is_case_insensitive(self):
        """Test lookups normalize the code"""
        table = InMemoryCodeTable([CodeEntry(CodeSystem.HCPCS, "G0438", status=CodeStatus.ACTIVE)])
        assert (await table.get(CodeSystem.HCPCS, " g0438 ")).code == "G0438"


# =============================================================================
# Unlisted Codes
# =============================================================================


@pytest.mark.unit
class TestUnlistedCodes:
    """Test unlisted-procedure detection"""

    @pytest.mark.parametrize("code", ["99499", "99199", "17999", "64999"])
    def test_unlisted(self, code):
        """Test 99xxx codes and codes ending in 99"""
        assert is_unlisted_code(code) is True

    @pytest.mark.parametrize("code", ["20610", "93000", "G0438", "1799", "A9999"])
    def test_listed(self, code):
        """Test ordinary and non five-digit codes"""
        assert is_unlisted_code(code) is False

    def test_code_system_detection(self):
        """Test HCPCS Level II detection"""
        assert detect_code_system("G0438") == CodeSystem.HCPCS
        assert detect_code_system("20610") == CodeSystem.CPT


# =============================================================================
# Lookup
# =============================================================================


@pytest.mark.unit
class TestProcedureLookup:
    """Test Node C resolution"""

    @pytest.mark.asyncio
    async def test_provided_active_code(self, code_table):
        """Test an active supplied code is accepted"""
        result = await lookup_procedure(
            DocumentedProcedure("Joint injection", "20610", units=2, modifiers=["rt"]),
            code_table,
            SERVICE_DATE,
            "99499",
        )
        assert result.code == "20610"
        assert result.matched_by == "provided"
        assert result.confidence == 95
        assert result.units == 2
        assert result.documented_modifiers == ("RT",)
        assert result.is_unlisted is False

    @pytest.mark.asyncio
    async def test_inactive_code_falls_back_to_description(self, code_table):
        """Test an inactive supplied code is replaced by a description match"""
        result = await lookup_procedure(
            DocumentedProcedure("knee joint injection", "20005"),
            code_table,
            SERVICE_DATE,
            "99499",
        )
        assert result.code == "20610"
        assert result.matched_by == "description"
        assert result.confidence == 60 + round(35 * 2 / 3)
        assert "not active" in result.rationale

    @pytest.mark.asyncio
    async def test_exact_description_match(self, code_table):
        """Test a full token overlap scores the maximum"""
        result = await lookup_procedure(
            DocumentedProcedure("Arthrocentesis aspiration injection major joint"),
            code_table,
            SERVICE_DATE,
            "99499",
        )
        assert result.code == "20610"
        assert result.confidence == 95

    @pytest.mark.asyncio
    async def test_no_match_uses_unlisted_code(self, code_table):
        """Test an unresolvable description falls back to the unlisted code"""
        result = await lookup_procedure(
            DocumentedProcedure("xyzzy frobnication"),
            code_table,
            SERVICE_DATE,
            "99499",
        )
        assert result.code == "99499"
        assert result.matched_by == "unlisted_fallback"
        assert result.confidence == 40
        assert result.is_unlisted is True

        with pytest.raises(UnlistedProcedure):
            ensure_listed(result)

    @pytest.mark.asyncio
    async def test_summary_flags_unlisted(self, code_table):
        """Test the summary carries one review flag per unlisted line"""
        summary = await lookup_procedures(
            [DocumentedProcedure("Joint injection", "20610"), DocumentedProcedure("xyzzy frobnication")],
            code_table,
            SERVICE_DATE,
            "99499",
        )
        assert [r.code for r in summary.results] == ["20610", "99499"]
        assert summary.is_unlisted is True
        assert summary.confidence == 40
        assert [f.reason for f in summary.review_flags] == [ReviewReason.UNLISTED_PROCEDURE]
        assert summary.to_node_result().status == NodeStatus.REVIEW

    @pytest.mark.asyncio
    async def test_empty_procedure_list(self, code_table):
        """Test a procedural encounter without documented procedures"""
        summary = await lookup_procedures([], code_table, SERVICE_DATE, "99499")
        assert len(summary.results) == 1
        assert summary.results[0].code == "99499"
