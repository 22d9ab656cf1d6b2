"""
Node E - Modifier Logic.

Circumstances come from three places:
- structured encounter flags (EncounterFlags attribute names)
- keywords in the free-text documentation notes
- derived facts: an E/M code billed alongside procedures, or a
  telehealth encounter type

Each circumstance maps to one modifier through MODIFIER_RULES. Rules are
evaluated in table order; documented modifiers are kept first and at
most four modifiers survive per line.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from medbill.core.enums import EncounterType, NodeStatus
from medbill.services.billing.records import Encounter, NodeResult

logger = logging.getLogger(__name__)

NODE_ID = "NODE_E"
NODE_NAME = "Modifier Determination"

MAX_MODIFIERS = 4
FLAG_CONFIDENCE = 95
KEYWORD_CONFIDENCE = 80

EM_RANGE = (99201, 99499)


class ModifierScope(str, Enum):
    """Which lines a modifier rule may apply to."""

    EM = "em"
    PROCEDURE = "procedure"
    ANY = "any"


@dataclass(frozen=True)
class ModifierRule:
    """One row of the modifier circumstance table."""

    modifier: str
    circumstance: str
    rationale: str
    scope: ModifierScope = ModifierScope.ANY
    keywords: tuple[str, ...] = ()
    excluded_by: tuple[str, ...] = ()


MODIFIER_RULES: tuple[ModifierRule, ...] = (
    ModifierRule(
        "25",
        "em_with_procedure",
        "Significant, separately identifiable E/M service on same day as procedure",
        ModifierScope.EM,
    ),
    ModifierRule("95", "telehealth", "Telehealth service (synchronous)", keywords=("telehealth", "video visit")),
    ModifierRule("GQ", "telehealth_async", "Telehealth service (asynchronous)", keywords=("store-and-forward",)),
    ModifierRule("GT", "telehealth_gt", "Telehealth service via interactive audio/video"),
    ModifierRule("26", "professional_component", "Professional component only", ModifierScope.PROCEDURE),
    ModifierRule("TC", "technical_component", "Technical component only", ModifierScope.PROCEDURE),
    ModifierRule("XE", "separate_encounter", "Separate encounter", ModifierScope.PROCEDURE),
    ModifierRule("XS", "separate_structure", "Separate structure or organ", ModifierScope.PROCEDURE),
    ModifierRule("XP", "separate_practitioner", "Separate practitioner", ModifierScope.PROCEDURE),
    ModifierRule(
        "XU", "unusual_non_overlapping", "Unusual non-overlapping service", ModifierScope.PROCEDURE
    ),
    ModifierRule(
        "59",
        "distinct_procedure",
        "Distinct procedural service",
        ModifierScope.PROCEDURE,
        keywords=("distinct procedure", "separate site"),
        excluded_by=("XE", "XS", "XP", "XU"),
    ),
    ModifierRule("50", "bilateral", "Bilateral procedure", ModifierScope.PROCEDURE, keywords=("bilateral",)),
    ModifierRule("LT", "left_side", "Left side", ModifierScope.PROCEDURE),
    ModifierRule("RT", "right_side", "Right side", ModifierScope.PROCEDURE),
    ModifierRule("76", "repeat_same_provider", "Repeat procedure by same physician", ModifierScope.PROCEDURE),
    ModifierRule(
        "77", "repeat_different_provider", "Repeat procedure by different physician", ModifierScope.PROCEDURE
    ),
    ModifierRule("91", "repeat_lab_test", "Repeat clinical diagnostic laboratory test", ModifierScope.PROCEDURE),
    ModifierRule("52", "reduced_service", "Reduced services", ModifierScope.PROCEDURE, keywords=("reduced service",)),
    ModifierRule(
        "53", "discontinued", "Discontinued procedure", ModifierScope.PROCEDURE, keywords=("discontinued",)
    ),
    ModifierRule(
        "80", "assistant_surgeon", "Assistant surgeon", ModifierScope.PROCEDURE, keywords=("assistant surgeon",)
    ),
)


@dataclass
class ModifierDecision:
    """Modifiers chosen for one procedure line."""

    code: str
    modifiers: tuple[str, ...] = ()
    rationale: dict[str, str] = field(default_factory=dict)
    circumstances: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    confidence: int = FLAG_CONFIDENCE


def is_em_code(code: str) -> bool:
    """CPT evaluation and management range 99201-99499."""
    if not code or not code.strip().isdigit():
        return False
    return EM_RANGE[0] <= int(code) <= EM_RANGE[1]


def detect_circumstances(code: str, encounter: Encounter) -> tuple[set[str], set[str]]:
    """
    Collect the circumstances that hold for a line.

    Returns:
        (circumstances, keyword_only) where keyword_only holds the ones
        found solely through documentation keywords
    """
    flags = encounter.flags
    found = {rule.circumstance for rule in MODIFIER_RULES if getattr(flags, rule.circumstance, False)}

    if encounter.encounter_type.strip().lower() == EncounterType.TELEHEALTH.value:
        found.add("telehealth")
    if is_em_code(code) and encounter.procedures:
        found.add("em_with_procedure")

    notes = (encounter.documentation.notes or "").lower()
    keyword_only = set()
    if notes:
        for rule in MODIFIER_RULES:
            if rule.circumstance not in found and any(k in notes for k in rule.keywords):
                keyword_only.add(rule.circumstance)

    return found | keyword_only, keyword_only


def _in_scope(rule: ModifierRule, em_line: bool) -> bool:
    if rule.scope == ModifierScope.ANY:
        return True
    return (rule.scope == ModifierScope.EM) == em_line


def determine_modifiers(
    code: str,
    encounter: Encounter,
    documented: Iterable[str] = (),
    rules: Optional[tuple[ModifierRule, ...]] = None,
) -> ModifierDecision:
    """Apply the rule table to one procedure line."""
    rules = rules or MODIFIER_RULES
    em_line = is_em_code(code)
    circumstances, keyword_only = detect_circumstances(code, encounter)

    chosen: list[str] = []
    rationale: dict[str, str] = {}
    for modifier in documented:
        modifier = modifier.strip().upper()
        if modifier and modifier not in chosen:
            chosen.append(modifier)
            rationale[modifier] = "Documented by provider"

    used_keywords = False
    for rule in rules:
        if rule.circumstance not in circumstances or not _in_scope(rule, em_line):
            continue
        if rule.modifier in chosen or any(m in chosen for m in rule.excluded_by):
            continue
        chosen.append(rule.modifier)
        rationale[rule.modifier] = rule.rationale
        used_keywords = used_keywords or rule.circumstance in keyword_only

    kept, dropped = chosen[:MAX_MODIFIERS], chosen[MAX_MODIFIERS:]
    if dropped:
        logger.warning(f"{code}: more than {MAX_MODIFIERS} modifiers, dropping {', '.join(dropped)}")

    return ModifierDecision(
        code=code,
        modifiers=tuple(kept),
        rationale={m: rationale[m] for m in kept},
        circumstances=sorted(circumstances),
        dropped=dropped,
        confidence=KEYWORD_CONFIDENCE if used_keywords else FLAG_CONFIDENCE,
    )


def modifier_node_result(decisions: list[ModifierDecision]) -> NodeResult:
    """Summarize Node E across all lines."""
    applied = [
        f"{d.code}-{m} ({d.rationale[m]})" for d in decisions for m in d.modifiers
    ]
    return NodeResult(
        node_id=NODE_ID,
        name=NODE_NAME,
        status=NodeStatus.PASSED,
        confidence=min((d.confidence for d in decisions), default=FLAG_CONFIDENCE),
        rationale=f"Applied modifiers: {', '.join(applied)}" if applied else "No modifiers required",
    )
