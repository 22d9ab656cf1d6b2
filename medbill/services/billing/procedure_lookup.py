"""
Node C - Procedure CPT Lookup.

A code supplied by the caller is accepted when it is active in the code
table on the date of service. Otherwise the procedure description is
matched against long descriptions and the best hit wins. When nothing
matches, the configured unlisted-procedure code is used.

Unlisted codes (five digits in the 99xxx range or ending in 99) always
force manual review, whatever the match confidence.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from medbill.core.enums import CodeSystem, NodeStatus, ReviewReason
from medbill.core.errors import UnlistedProcedure
from medbill.services.billing.code_tables import CodeTable
from medbill.services.billing.records import DocumentedProcedure, NodeResult, ReviewFlag

logger = logging.getLogger(__name__)

NODE_ID = "NODE_C"
NODE_NAME = "Procedure CPT Lookup"

PROVIDED_CODE_CONFIDENCE = 95
DESCRIPTION_BASE_CONFIDENCE = 60
DESCRIPTION_SCORE_WEIGHT = 35
UNLISTED_FALLBACK_CONFIDENCE = 40

_HCPCS_PATTERN = re.compile(r"^[A-V]\d{4}$")


def detect_code_system(code: str) -> CodeSystem:
    """HCPCS Level II codes are a letter followed by four digits."""
    return CodeSystem.HCPCS if _HCPCS_PATTERN.match(code.strip().upper()) else CodeSystem.CPT


def is_unlisted_code(code: str) -> bool:
    """Five-digit CPT in the 99xxx range or ending in 99."""
    code = code.strip()
    if len(code) != 5 or not code.isdigit():
        return False
    return code.startswith("99") or code.endswith("99")


@dataclass
class ProcedureLookupResult:
    """Resolved code for one documented procedure."""

    code: str
    code_system: CodeSystem
    description: str
    confidence: int
    matched_by: str  # provided | description | unlisted_fallback
    is_unlisted: bool = False
    units: int = 1
    documented_modifiers: tuple[str, ...] = ()
    rationale: str = ""


@dataclass
class ProcedureLookupSummary:
    """All Node C results for one encounter."""

    results: list[ProcedureLookupResult] = field(default_factory=list)
    review_flags: list[ReviewFlag] = field(default_factory=list)

    @property
    def is_unlisted(self) -> bool:
        return any(r.is_unlisted for r in self.results)

    @property
    def confidence(self) -> int:
        return min((r.confidence for r in self.results), default=0)

    def to_node_result(self) -> NodeResult:
        return NodeResult(
            node_id=NODE_ID,
            name=NODE_NAME,
            status=NodeStatus.REVIEW if self.is_unlisted else NodeStatus.PASSED,
            confidence=self.confidence,
            rationale="; ".join(r.rationale for r in self.results),
        )


async def lookup_procedure(
    procedure: DocumentedProcedure,
    code_table: CodeTable,
    service_date: Optional[date],
    unlisted_code: str,
) -> ProcedureLookupResult:
    """Resolve one documented procedure to an active code."""
    notes = []

    if procedure.code:
        provided = procedure.code.strip().upper()
        system = detect_code_system(provided)
        entry = await code_table.get(system, provided)
        if entry is not None and entry.is_active_on(service_date):
            return _finish(
                procedure,
                ProcedureLookupResult(
                    code=entry.code,
                    code_system=system,
                    description=entry.long_desc or entry.short_desc,
                    confidence=PROVIDED_CODE_CONFIDENCE,
                    matched_by="provided",
                    rationale=f"Provided code {entry.code} is active",
                ),
            )
        notes.append(f"Provided code {provided} is not active")
        logger.warning(f"Provided procedure code {provided} not active in code table")

    if procedure.description:
        matches = await code_table.search(CodeSystem.CPT, procedure.description, on=service_date, limit=1)
        if matches:
            best = matches[0]
            confidence = DESCRIPTION_BASE_CONFIDENCE + round(DESCRIPTION_SCORE_WEIGHT * best.score)
            notes.append(
                f'Description "{procedure.description}" matched {best.entry.code} '
                f"(score {best.score:.2f})"
            )
            return _finish(
                procedure,
                ProcedureLookupResult(
                    code=best.entry.code,
                    code_system=best.entry.code_system,
                    description=best.entry.long_desc,
                    confidence=confidence,
                    matched_by="description",
                    rationale="; ".join(notes),
                ),
            )
        notes.append(f'No code matches "{procedure.description}"')

    notes.append(f"Falling back to unlisted procedure code {unlisted_code}")
    logger.warning(f"Procedure '{procedure.description}' unresolved, using {unlisted_code}")
    return _finish(
        procedure,
        ProcedureLookupResult(
            code=unlisted_code,
            code_system=CodeSystem.CPT,
            description=procedure.description or "Unlisted procedure",
            confidence=UNLISTED_FALLBACK_CONFIDENCE,
            matched_by="unlisted_fallback",
            rationale="; ".join(notes),
        ),
    )


async def lookup_procedures(
    procedures: list[DocumentedProcedure],
    code_table: CodeTable,
    service_date: Optional[date],
    unlisted_code: str,
) -> ProcedureLookupSummary:
    """Run Node C for every documented procedure (or one empty one)."""
    summary = ProcedureLookupSummary()
    for procedure in procedures or [DocumentedProcedure()]:
        result = await lookup_procedure(procedure, code_table, service_date, unlisted_code)
        summary.results.append(result)
        try:
            ensure_listed(result)
        except UnlistedProcedure as e:
            summary.review_flags.append(ReviewFlag(ReviewReason.UNLISTED_PROCEDURE, e.message, NODE_ID))
    return summary


def ensure_listed(result: ProcedureLookupResult) -> None:
    """
    Raises:
        UnlistedProcedure: If the resolved code is an unlisted code
    """
    if result.is_unlisted:
        raise UnlistedProcedure(result.code)


def _finish(procedure: DocumentedProcedure, result: ProcedureLookupResult) -> ProcedureLookupResult:
    result.units = max(procedure.units or 1, 1)
    result.documented_modifiers = tuple(m.strip().upper() for m in procedure.modifiers if m and m.strip())
    result.is_unlisted = result.matched_by == "unlisted_fallback" or is_unlisted_code(result.code)
    return result
