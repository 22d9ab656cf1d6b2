"""
Code Reconciler.

Merges candidate codes from the decision engine, AI suggestions, SDOH
suggestions and defaults into one ReconciledCodeSet.

Source priority: decision_engine > ai > sdoh > default.

- Principal diagnosis: picked by an ordered list of strategies
  (highest-priority principal, else the engine's best diagnosis, else
  the configured default). Losing principals are dropped.
- Secondary diagnoses: additive across sources, de-duplicated by code;
  the higher-priority copy is kept.
- Procedures: the highest-priority source that produced any procedure
  owns the category; lower-priority procedures are overridden.
  Identical (code, modifier set) pairs are collapsed.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, Optional

from medbill.core.config import BillingSettings, get_billing_settings
from medbill.core.enums import CodeCategory, CodeSource, CodeSystem
from medbill.core.errors import ValidationError
from medbill.services.billing.records import CandidateCode, ReconciledCodeSet

logger = logging.getLogger(__name__)


def _priority_order(candidates: Iterable[CandidateCode]) -> list[CandidateCode]:
    """Stable sort by source priority; order within a source is kept."""
    return sorted(candidates, key=lambda c: c.source.priority)


@dataclass
class ReconciliationResult:
    """Reconciled set plus what was dropped along the way."""

    code_set: ReconciledCodeSet
    overridden: list[CandidateCode] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)


# =============================================================================
# Principal Selection Strategies
# =============================================================================


class PrincipalStrategy(ABC):
    """One step of the principal-diagnosis fallback chain."""

    name: str

    @abstractmethod
    def select(self, principals: list[CandidateCode], secondaries: list[CandidateCode]) -> Optional[CandidateCode]:
        pass


class HighestPriorityPrincipal(PrincipalStrategy):
    name = "highest_priority_principal"

    def select(self, principals: list[CandidateCode], secondaries: list[CandidateCode]) -> Optional[CandidateCode]:
        return principals[0] if principals else None


class EngineBestDiagnosis(PrincipalStrategy):
    """Promote the decision engine's most confident diagnosis."""

    name = "engine_best_diagnosis"

    def select(self, principals: list[CandidateCode], secondaries: list[CandidateCode]) -> Optional[CandidateCode]:
        engine = [c for c in secondaries if c.source == CodeSource.DECISION_ENGINE]
        if not engine:
            return None
        return max(engine, key=lambda c: c.confidence)


class DefaultPrincipal(PrincipalStrategy):
    """Conservative default code."""

    name = "default_principal"

    def __init__(self, code: str):
        self.code = code

    def select(self, principals: list[CandidateCode], secondaries: list[CandidateCode]) -> Optional[CandidateCode]:
        return CandidateCode(
            system=CodeSystem.ICD10,
            code=self.code,
            description="Default principal diagnosis",
            confidence=0,
            source=CodeSource.DEFAULT,
            rationale="No source supplied a principal diagnosis",
            is_principal=True,
        )


# =============================================================================
# Reconciler
# =============================================================================


class CodeReconciler:
    """
    Usage:
        reconciler = CodeReconciler()
        result = reconciler.reconcile([engine_codes, ai_codes, sdoh_codes])
    """

    def __init__(
        self,
        settings: Optional[BillingSettings] = None,
        principal_strategies: Optional[list[PrincipalStrategy]] = None,
    ):
        settings = settings or get_billing_settings()
        self.principal_strategies = principal_strategies or [
            HighestPriorityPrincipal(),
            EngineBestDiagnosis(),
            DefaultPrincipal(settings.DEFAULT_PRINCIPAL_DIAGNOSIS),
        ]

    def reconcile(self, candidate_lists: Iterable[Iterable[CandidateCode]]) -> ReconciliationResult:
        """
        Merge candidate lists into one code set.

        Raises:
            ValidationError: If no source produced a procedure code
        """
        candidates = [c for group in candidate_lists for c in group]
        by_category: dict[CodeCategory, list[CandidateCode]] = {category: [] for category in CodeCategory}
        for candidate in _priority_order(candidates):
            by_category[candidate.category].append(candidate)

        overridden: list[CandidateCode] = []
        notes: list[str] = []

        principal, strategy = self._select_principal(
            by_category[CodeCategory.PRINCIPAL_DIAGNOSIS],
            by_category[CodeCategory.SECONDARY_DIAGNOSIS],
        )
        notes.append(f"Principal {principal.code} from {principal.source.value} ({strategy})")
        for loser in by_category[CodeCategory.PRINCIPAL_DIAGNOSIS]:
            if loser is not principal and loser.code != principal.code:
                overridden.append(loser)
                notes.append(
                    f"Principal {loser.code} from {loser.source.value} overridden by "
                    f"{principal.code} from {principal.source.value}"
                )

        secondaries = self._merge_secondaries(by_category[CodeCategory.SECONDARY_DIAGNOSIS], principal)
        procedures, dropped = self._merge_procedures(by_category[CodeCategory.PROCEDURE])
        overridden.extend(dropped)
        for loser in dropped:
            notes.append(f"Procedure {loser.code} from {loser.source.value} overridden")

        if not procedures:
            raise ValidationError("No procedure codes available to bill", field="procedures")

        code_set = ReconciledCodeSet(
            principal_diagnosis=self._as_principal(principal),
            secondary_diagnoses=secondaries,
            procedures=procedures,
        )
        logger.info(
            f"Reconciled {len(candidates)} candidates into principal {principal.code}, "
            f"{len(secondaries)} secondary, {len(procedures)} procedures"
        )
        return ReconciliationResult(code_set=code_set, overridden=overridden, notes=notes)

    def _select_principal(
        self,
        principals: list[CandidateCode],
        secondaries: list[CandidateCode],
    ) -> tuple[CandidateCode, str]:
        for strategy in self.principal_strategies:
            selected = strategy.select(principals, secondaries)
            if selected is not None:
                return selected, strategy.name
        raise ValidationError("No principal diagnosis could be selected", field="diagnoses")

    @staticmethod
    def _as_principal(candidate: CandidateCode) -> CandidateCode:
        if candidate.is_principal:
            return candidate
        return CandidateCode(
            system=candidate.system,
            code=candidate.code,
            description=candidate.description,
            confidence=candidate.confidence,
            source=candidate.source,
            rationale=f"{candidate.rationale}; promoted to principal".lstrip("; "),
            is_principal=True,
        )

    @staticmethod
    def _merge_secondaries(secondaries: list[CandidateCode], principal: CandidateCode) -> list[CandidateCode]:
        merged: list[CandidateCode] = []
        seen = {principal.code}
        for candidate in secondaries:
            if candidate.code in seen:
                continue
            seen.add(candidate.code)
            merged.append(candidate)
        return merged

    @staticmethod
    def _merge_procedures(procedures: list[CandidateCode]) -> tuple[list[CandidateCode], list[CandidateCode]]:
        if not procedures:
            return [], []
        owner = procedures[0].source
        kept: list[CandidateCode] = []
        dropped: list[CandidateCode] = []
        seen: set[tuple[str, frozenset[str]]] = set()
        for candidate in procedures:
            if candidate.source != owner:
                dropped.append(candidate)
                continue
            if candidate.key in seen:
                continue
            seen.add(candidate.key)
            kept.append(candidate)
        return kept, dropped
