"""
External coding-suggestion sources.

AI coding assistants and SDOH assessment services supply extra
candidate codes to the reconciler. They are treated as slow, unreliable
network collaborators: the pipeline calls them under a timeout and
carries on without them when they fail.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from medbill.core.enums import CCMTier, CodeSource
from medbill.services.billing.records import CandidateCode, DecisionResult, Encounter


@dataclass
class Suggestion:
    """Codes offered by one source, plus its CCM tier recommendation if any."""

    source: CodeSource
    candidates: list[CandidateCode] = field(default_factory=list)
    ccm_tier: Optional[CCMTier] = None
    notes: list[str] = field(default_factory=list)


class SuggestionSource(ABC):
    """Collaborator proposing candidate codes for an encounter."""

    name: str
    source: CodeSource

    @abstractmethod
    async def suggest(self, encounter: Encounter, decision: DecisionResult) -> Suggestion:
        pass


class StaticSuggestionSource(SuggestionSource):
    """Returns a fixed candidate list per encounter id; used for replay and tests."""

    def __init__(
        self,
        name: str,
        source: CodeSource,
        by_encounter: Optional[dict[str, list[CandidateCode]]] = None,
    ):
        self.name = name
        self.source = source
        self._by_encounter = by_encounter or {}

    def add(self, encounter_id: str, candidates: list[CandidateCode]) -> None:
        self._by_encounter.setdefault(encounter_id, []).extend(candidates)

    async def suggest(self, encounter: Encounter, decision: DecisionResult) -> Suggestion:
        return Suggestion(source=self.source, candidates=list(self._by_encounter.get(encounter.encounter_id, [])))
